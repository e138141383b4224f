import gc
import json

from gateway.mock_stream import MOCK_FINAL_TEXT, MockStream, mock_script, mock_stream_batches
from gateway.schemas.anthropic import MessagesRequest

from sse_helpers import assert_block_lifecycle, events_of, parse_frames


def _request(tool_results: int) -> MessagesRequest:
    messages = [{"role": "user", "content": "Translate README.md to English"}]
    for i in range(tool_results):
        messages.append(
            {
                "role": "assistant",
                "content": [{"type": "tool_use", "id": f"toolu_{i}", "name": "Read", "input": {}}],
            }
        )
        messages.append(
            {
                "role": "user",
                "content": [{"type": "tool_result", "tool_use_id": f"toolu_{i}", "content": "file body"}],
            }
        )
    return MessagesRequest.model_validate({"model": "claude-sonnet", "stream": True, "messages": messages})


def _events(tool_results: int):
    raw = "".join(mock_stream_batches(_request(tool_results), turn_id="turn_abc"))
    return raw, events_of(parse_frames(raw))


def _tool_starts(events):
    return [
        e["content_block"]
        for e in events
        if e["type"] == "content_block_start" and e["content_block"]["type"] == "tool_use"
    ]


def test_preamble_matches_live_stream():
    for n in (0, 1, 2):
        _, events = _events(n)
        assert [e["type"] for e in events[:3]] == ["message_start", "content_block_start", "ping"]
        assert events[0]["message"]["id"] == "msg_mock_turn_abc"
        assert events[0]["message"]["model"] == "claude-sonnet"
        assert events[1]["index"] == 0


def test_no_tool_results_requests_read():
    raw, events = _events(0)
    starts = _tool_starts(events)
    assert [s["name"] for s in starts] == ["Read"]
    partial = [e["delta"]["partial_json"] for e in events if e["type"] == "content_block_delta" and e["index"] == 1]
    assert json.loads("".join(partial)) == {"path": "README.md"}
    assert events[-2]["delta"]["stop_reason"] == "tool_use"
    assert events[-1]["type"] == "message_stop"
    assert raw.endswith("data: [DONE]\n\n")
    assert_block_lifecycle(events)


def test_one_tool_result_requests_write():
    _, events = _events(1)
    starts = _tool_starts(events)
    assert [s["name"] for s in starts] == ["Write"]
    assert events[-2]["delta"]["stop_reason"] == "tool_use"
    assert_block_lifecycle(events)


def test_two_or_more_tool_results_answer_with_text():
    for n in (2, 5):
        _, events = _events(n)
        assert _tool_starts(events) == []
        text = [e["delta"]["text"] for e in events if e["type"] == "content_block_delta"]
        assert text == [MOCK_FINAL_TEXT]
        assert events[-2]["delta"]["stop_reason"] == "end_turn"
        assert_block_lifecycle(events)


def test_mock_script_reports_tool_calls():
    calls, stop = mock_script(_request(0))
    assert stop == "tool_use" and [c.name for c in calls] == ["Read"]
    calls, stop = mock_script(_request(3))
    assert stop == "end_turn" and calls == []


def test_malformed_tool_results_still_advance_the_script():
    messages = [
        {"role": "user", "content": "Translate README.md to English"},
        {"role": "user", "content": [{"type": "tool_result", "content": "missing tool_use_id"}]},
    ]
    request = MessagesRequest.model_validate({"model": "claude-sonnet", "stream": True, "messages": messages})
    assert request.messages[1].content == []
    calls, stop = mock_script(request)
    assert [c.name for c in calls] == ["Write"] and stop == "tool_use"


def _recording():
    calls = []
    return calls, lambda tool_calls, latency_ms, error: calls.append(([c.name for c in tool_calls], error))


async def test_mock_stream_reports_completion_once():
    calls, hook = _recording()
    stream = MockStream(_request(0), "turn_abc", on_complete=hook)
    raw = "".join([batch async for batch in stream])
    await stream.aclose()
    assert raw.endswith("data: [DONE]\n\n")
    assert calls == [(["Read"], None)]


async def test_mock_stream_closed_before_reading():
    calls, hook = _recording()
    stream = MockStream(_request(1), "turn_abc", on_complete=hook)
    await stream.aclose()
    assert calls == [(["Write"], "client disconnected")]


def test_mock_stream_dropped_unread():
    calls, hook = _recording()
    stream = MockStream(_request(2), "turn_abc", on_complete=hook)
    del stream
    gc.collect()
    assert calls == [([], "client disconnected")]

"""Deterministic SSE script replayed without contacting the upstream.

Simulates a three-turn tool-using conversation keyed on how many tool results
the history already holds: ask to read a file, then ask to write it, then
answer with plain text. The frames are built with the same event builders as
the live re-encoder, so clients see the exact production preamble and
terminal sequence.
"""

from __future__ import annotations

import json
import weakref
from typing import Iterator, List, Optional, Tuple

from .schemas.anthropic import MessagesRequest, ToolCallRecord
from .streaming import (
    DISCONNECTED,
    TEXT_BLOCK_INDEX,
    TEXT_PLACEHOLDER,
    CompletionHook,
    CompletionOnce,
    block_stop_event,
    input_json_delta_event,
    preamble_frames,
    sse,
    terminal_frames,
    text_delta_event,
    tool_block_start_event,
)
from .transform import count_tool_results

MOCK_FILE_PATH = "README.md"
MOCK_FINAL_TEXT = "README.md is already in English.\n\n# Anthropic Gateway\n"

_READ_CALL = ToolCallRecord(
    id="toolu_mock_read",
    name="Read",
    arguments=json.dumps({"path": MOCK_FILE_PATH}),
)
_WRITE_CALL = ToolCallRecord(
    id="toolu_mock_write",
    name="Write",
    arguments=json.dumps({"path": MOCK_FILE_PATH, "content": "(translated content here)"}),
)


def mock_script(request: MessagesRequest) -> Tuple[List[ToolCallRecord], str]:
    """Return the tool calls the scripted turn makes and its stop reason."""
    tool_results = count_tool_results(request)
    if tool_results == 0:
        return [_READ_CALL], "tool_use"
    if tool_results == 1:
        return [_WRITE_CALL], "tool_use"
    return [], "end_turn"


def _tool_turn_frames(call: ToolCallRecord) -> List[str]:
    block = TEXT_BLOCK_INDEX + 1
    return [
        sse(text_delta_event(TEXT_PLACEHOLDER)),
        sse(block_stop_event(TEXT_BLOCK_INDEX)),
        sse(tool_block_start_event(block, call.id, call.name)),
        sse(input_json_delta_event(block, call.arguments)),
        sse(block_stop_event(block)),
    ]


def mock_stream_batches(request: MessagesRequest, turn_id: str) -> Iterator[str]:
    """Yield the scripted SSE batches for one mock turn."""
    tool_calls, stop_reason = mock_script(request)
    yield "".join(preamble_frames(f"msg_mock_{turn_id}", request.model or "mock"))
    if tool_calls:
        body = _tool_turn_frames(tool_calls[0])
    else:
        body = [sse(text_delta_event(MOCK_FINAL_TEXT)), sse(block_stop_event(TEXT_BLOCK_INDEX))]
    yield "".join(body + terminal_frames(stop_reason))


class MockStream:
    """Async iterator over one mock turn with the same completion guarantee as a live relay."""

    def __init__(self, request: MessagesRequest, turn_id: str, on_complete: Optional[CompletionHook] = None) -> None:
        tool_calls, _ = mock_script(request)
        self._batches = mock_stream_batches(request, turn_id)
        self._completion = CompletionOnce(on_complete, lambda: list(tool_calls), f"msg_mock_{turn_id}")
        weakref.finalize(self, self._completion.fire, DISCONNECTED)

    def __aiter__(self) -> "MockStream":
        return self

    async def __anext__(self) -> str:
        try:
            return next(self._batches)
        except StopIteration:
            self._completion.fire(None)
            raise StopAsyncIteration

    async def aclose(self) -> None:
        # No-op once the script ran to completion
        self._completion.fire(DISCONNECTED)

import json

import httpx
import pytest

from gateway import upstream
from gateway.config import settings
from gateway.errors import UpstreamError


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _sse_body(*payloads) -> bytes:
    lines = []
    for p in payloads:
        lines.append(p if isinstance(p, str) else "data: " + json.dumps(p))
        lines.append("")
    return ("\n".join(lines) + "\n").encode("utf-8")


async def _collect(client, payload=None):
    return [c async for c in upstream.stream_chat_completion(payload or {"model": "m", "messages": []}, "sk-up", client=client)]


async def test_stream_decodes_data_lines_until_done():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        seen["accept"] = request.headers["accept"]
        seen["body"] = json.loads(request.content)
        body = _sse_body(
            ": keep-alive comment",
            {"choices": [{"index": 0, "delta": {"content": "a"}}]},
            "event: something",
            {"choices": [{"index": 0, "delta": {"content": "b"}}]},
            "data: [DONE]",
            {"choices": [{"index": 0, "delta": {"content": "never"}}]},
        )
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    async with _client(handler) as client:
        chunks = await _collect(client, {"model": "gpt-x", "messages": [], "stream": False})
    assert [c["choices"][0]["delta"]["content"] for c in chunks] == ["a", "b"]
    assert seen["url"] == settings.chat_completions_url
    assert seen["auth"] == "Bearer sk-up"
    assert seen["accept"] == "text/event-stream"
    assert seen["body"]["stream"] is True


async def test_stream_error_status_uses_upstream_message():
    def handler(request):
        return httpx.Response(429, json={"error": {"message": "rate limited", "type": "rate_limit"}})

    async with _client(handler) as client:
        with pytest.raises(UpstreamError) as exc:
            await _collect(client)
    assert exc.value.message == "rate limited"
    assert exc.value.status == 429


async def test_stream_undecodable_chunk_raises():
    def handler(request):
        return httpx.Response(200, content=_sse_body({"choices": []}, "data: {oops"))

    async with _client(handler) as client:
        with pytest.raises(UpstreamError, match="Undecodable"):
            await _collect(client)


async def test_stream_in_band_error_chunk_raises():
    def handler(request):
        return httpx.Response(200, content=_sse_body({"error": {"message": "context too long"}}))

    async with _client(handler) as client:
        with pytest.raises(UpstreamError, match="context too long"):
            await _collect(client)


async def test_stream_transport_failure_is_wrapped():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    async with _client(handler) as client:
        with pytest.raises(UpstreamError, match="ConnectError"):
            await _collect(client)


async def test_non_stream_returns_body():
    def handler(request):
        assert json.loads(request.content)["stream"] is False
        assert "accept" not in request.headers or request.headers["accept"] != "text/event-stream"
        return httpx.Response(200, json={"id": "c1", "choices": []})

    async with _client(handler) as client:
        data = await upstream.create_chat_completion({"model": "m", "messages": []}, "sk-up", client=client)
    assert data == {"id": "c1", "choices": []}


@pytest.mark.parametrize(
    "response,expected",
    [
        (httpx.Response(500, text="boom"), "boom"),
        (httpx.Response(502), "Upstream returned HTTP 502 without body"),
        (httpx.Response(400, json={"message": "bad model"}), "bad model"),
        (httpx.Response(200, text="not json"), "invalid JSON"),
        (httpx.Response(200, json=[1, 2]), "non-object"),
    ],
)
async def test_non_stream_failures(response, expected):
    async with _client(lambda request: response) as client:
        with pytest.raises(UpstreamError) as exc:
            await upstream.create_chat_completion({"model": "m", "messages": []}, "sk-up", client=client)
    assert expected in exc.value.message

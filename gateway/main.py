from __future__ import annotations

import hashlib
import logging
import time
from typing import Any, Dict, Optional

from fastapi import FastAPI, Header, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from . import upstream
from .config import settings
from .errors import AuthenticationError, GatewayError, UpstreamError, error_payload
from .logging_setup import setup_logging
from .metrics import MetricsStore, TurnRecorder
from .mock_stream import MockStream
from .schemas.anthropic import MessagesRequest
from .streaming import StreamReencoder, relay_stream
from .transform import anthropic_to_openai_payload, openai_to_anthropic_response, parse_usage

setup_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Anthropic-to-OpenAI Gateway")

metrics_store = MetricsStore(
    max_recent_turns=settings.max_recent_turns,
    session_timeout_minutes=settings.session_timeout_minutes,
    max_sessions_per_user=settings.max_sessions_per_user,
)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class ClosingStreamingResponse(StreamingResponse):
    """Closes its body iterator however the response ends, even before the first read."""

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.body_iterator.aclose()


def get_recorder() -> TurnRecorder:
    return metrics_store


def extract_api_key(x_api_key: str | None, authorization: str | None) -> str:
    """Prefer x-api-key, else the token of a Bearer Authorization header."""
    if x_api_key and x_api_key.strip():
        return x_api_key.strip()
    if authorization:
        token = authorization.split(" ", 1)[1] if authorization.lower().startswith("bearer ") else authorization
        if token.strip():
            return token.strip()
    raise AuthenticationError("No API key provided")


def identify_user(api_key: str, x_user_id: str | None) -> str:
    if x_user_id and x_user_id.strip():
        return x_user_id.strip()
    # Only a short one-way fingerprint of the key is ever stored
    return "user_" + hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:12]


def _is_mock_stream(api_key: str, mock_header: str | None) -> bool:
    if not settings.enable_mock_stream:
        return False
    return (mock_header or "").strip().lower() == "true" or api_key.lower() == "dummy"


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


@app.post("/v1/messages")
@app.post("/anthropic/v1/messages")
async def messages(
    request: Request,
    x_api_key: str | None = Header(default=None, alias="x-api-key"),
    authorization: str | None = Header(default=None, alias="authorization"),
    x_user_id: str | None = Header(default=None, alias="x-user-id"),
    x_debug_mock_stream: str | None = Header(default=None, alias="x-debug-mock-stream"),
):
    # Raises AuthenticationError before any turn is recorded or upstream call made
    api_key = extract_api_key(x_api_key, authorization)

    try:
        body = await request.json()
    except ValueError:
        return JSONResponse(status_code=400, content=error_payload("invalid_request_error", "Invalid JSON body"))
    try:
        parsed = MessagesRequest.model_validate(body)
    except ValidationError as e:
        return JSONResponse(status_code=400, content=error_payload("invalid_request_error", str(e)))

    user_id = identify_user(api_key, x_user_id)
    mock = bool(parsed.stream) and _is_mock_stream(api_key, x_debug_mock_stream)
    logger.info(
        "Received request from user: %s, model: %s, stream: %s, mock: %s",
        user_id,
        parsed.model,
        bool(parsed.stream),
        mock,
    )
    recorder = get_recorder()
    turn_id = recorder.begin_turn(user_id, parsed)

    if mock:
        return _mock_stream_response(parsed, user_id, turn_id, recorder)

    oai_payload = anthropic_to_openai_payload(parsed)
    if parsed.stream:
        return _stream_response(parsed, oai_payload, api_key, user_id, turn_id, recorder)

    started = time.monotonic()
    try:
        data = await upstream.create_chat_completion(oai_payload, api_key)
        try:
            # Always echo the originally requested model outward
            response = openai_to_anthropic_response(data, requested_model=parsed.model)
            usage = parse_usage(data)
        except (AttributeError, TypeError, ValueError) as e:
            raise UpstreamError(f"Could not decode upstream completion: {e}") from e
    except UpstreamError as e:
        logger.error("Upstream error for turn %s: %s", turn_id, e.message)
        recorder.record_completion(user_id, turn_id, latency_ms=_elapsed_ms(started), error=e.message)
        return JSONResponse(status_code=500, content=e.to_payload())

    recorder.record_completion(user_id, turn_id, latency_ms=_elapsed_ms(started), usage=usage)
    if response is None:
        logger.warning("Upstream returned no choices for turn %s", turn_id)
        return Response(status_code=204)
    return JSONResponse(content=response.model_dump())


def _stream_response(
    parsed: MessagesRequest,
    oai_payload: Dict[str, Any],
    api_key: str,
    user_id: str,
    turn_id: str,
    recorder: TurnRecorder,
) -> StreamingResponse:
    reencoder = StreamReencoder(requested_model=parsed.model)

    def on_complete(tool_calls, latency_ms: int, error: Optional[str]) -> None:
        recorder.record_completion(user_id, turn_id, latency_ms=latency_ms, tool_calls=tool_calls, error=error)
        if error:
            logger.warning("Stream %s ended with error: %s", reencoder.state.message_id, error)
        else:
            logger.info("Stream %s ended normally (%d tool calls)", reencoder.state.message_id, len(tool_calls))

    logger.info("Opening upstream stream with model: %s", oai_payload.get("model"))
    batches = relay_stream(
        upstream.stream_chat_completion(oai_payload, api_key),
        reencoder,
        on_complete=on_complete,
        queue_size=settings.stream_queue_size,
        debug_sse=settings.debug_sse,
    )
    return ClosingStreamingResponse(batches, media_type="text/event-stream", headers=SSE_HEADERS)


def _mock_stream_response(
    parsed: MessagesRequest,
    user_id: str,
    turn_id: str,
    recorder: TurnRecorder,
) -> StreamingResponse:
    def on_complete(tool_calls, latency_ms: int, error: Optional[str]) -> None:
        recorder.record_completion(user_id, turn_id, latency_ms=latency_ms, tool_calls=tool_calls, error=error)

    stream = MockStream(parsed, turn_id, on_complete=on_complete)
    return ClosingStreamingResponse(stream, media_type="text/event-stream", headers=SSE_HEADERS)


@app.exception_handler(GatewayError)
async def _gateway_error_handler(request: Request, exc: GatewayError):
    logger.error("Rejected request: %s", exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.get("/")
async def root():
    return {"ok": True, "backend": settings.upstream_base_url}


@app.get("/health")
@app.get("/anthropic/health")
async def health():
    return {"status": "healthy"}


@app.get("/metrics/api/summary")
async def metrics_summary():
    return metrics_store.summary()


@app.get("/metrics/api/users")
async def metrics_users():
    return metrics_store.users()


@app.get("/metrics/api/users/{user_id}/sessions")
async def metrics_user_sessions(user_id: str):
    return metrics_store.user_sessions(user_id)


@app.get("/metrics/api/users/{user_id}/turns")
async def metrics_user_turns(user_id: str):
    return metrics_store.turns_for_user(user_id)


@app.get("/metrics/api/turns")
async def metrics_turns(limit: int = 50):
    return metrics_store.recent_turns(limit)


@app.get("/metrics/api/turns/{turn_id}")
async def metrics_turn(turn_id: str):
    turn = metrics_store.get_turn(turn_id)
    if turn is None:
        return JSONResponse(status_code=404, content=error_payload("not_found_error", f"Unknown turn: {turn_id}"))
    return turn


@app.get("/metrics/api/sessions")
async def metrics_sessions(limit: int = 50):
    metrics_store.expire_sessions()
    return metrics_store.recent_sessions(limit)


@app.get("/metrics/api/sessions/{session_id}/turns")
async def metrics_session_turns(session_id: str):
    return metrics_store.turns_for_session(session_id)


# Admin: drop all recorded metrics
@app.delete("/metrics")
async def clear_metrics():
    metrics_store.clear()
    return {"ok": True}


@app.on_event("startup")
async def _startup_client():
    # Initialize shared HTTP client eagerly to establish pools
    _ = upstream.get_httpx_client()


@app.on_event("shutdown")
async def _shutdown_close_client():
    await upstream.close_httpx_client()


def run() -> None:
    import uvicorn

    uvicorn.run("gateway.main:app", host=settings.host, port=settings.port, log_level=settings.log_level.lower())

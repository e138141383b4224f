from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from .config import settings
from .errors import UpstreamError

logger = logging.getLogger(__name__)

# Shared HTTP client (HTTP/1.1 + optional HTTP/2) with connection pooling
_HTTPX_CLIENT: Optional[httpx.AsyncClient] = None


def get_httpx_client() -> httpx.AsyncClient:
    global _HTTPX_CLIENT
    if _HTTPX_CLIENT is None:
        limits = httpx.Limits(
            max_connections=100,
            max_keepalive_connections=20,
            keepalive_expiry=30.0,
        )
        try:
            _HTTPX_CLIENT = httpx.AsyncClient(http2=settings.http2, limits=limits)
        except ImportError:
            # http2 extras not installed
            _HTTPX_CLIENT = httpx.AsyncClient(http2=False, limits=limits)
    return _HTTPX_CLIENT


async def close_httpx_client() -> None:
    global _HTTPX_CLIENT
    if _HTTPX_CLIENT is not None:
        await _HTTPX_CLIENT.aclose()
        _HTTPX_CLIENT = None


def upstream_headers(api_key: str, stream: bool = False) -> Dict[str, str]:
    headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
    if stream:
        headers["Accept"] = "text/event-stream"
    return headers


def _error_message(status: int, body_text: str) -> str:
    try:
        j = json.loads(body_text) if body_text else {}
    except ValueError:
        return body_text or f"Upstream returned HTTP {status} without body"
    if isinstance(j, dict):
        err = j.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if j.get("message"):
            return str(j["message"])
    return json.dumps(j, ensure_ascii=False) if j else f"Upstream returned HTTP {status} without body"


def _log_payload(kind: str, url: str, payload: Dict[str, Any]) -> None:
    if not settings.debug:
        return
    # Never log message bodies or credentials
    summary = {k: v for k, v in payload.items() if k not in ("messages", "tools")}
    summary["messages"] = len(payload.get("messages") or [])
    summary["tools"] = len(payload.get("tools") or [])
    logger.debug("upstream request (%s): %s", kind, json.dumps({"url": url, **summary}, ensure_ascii=False))


async def create_chat_completion(
    payload: Dict[str, Any],
    api_key: str,
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, Any]:
    """Single-shot chat completion; raises UpstreamError on any failure."""
    client = client or get_httpx_client()
    url = settings.chat_completions_url
    body = {**payload, "stream": False}
    _log_payload("non-stream", url, body)
    try:
        resp = await client.post(
            url,
            json=body,
            headers=upstream_headers(api_key),
            timeout=httpx.Timeout(settings.upstream_timeout),
        )
    except httpx.HTTPError as e:
        raise UpstreamError(f"Upstream request failed: {type(e).__name__}: {e}") from e
    if resp.status_code >= 400:
        raise UpstreamError(_error_message(resp.status_code, resp.text), status=resp.status_code)
    try:
        data = resp.json()
    except ValueError as e:
        raise UpstreamError(f"Upstream returned invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise UpstreamError("Upstream returned a non-object JSON body")
    return data


async def stream_chat_completion(
    payload: Dict[str, Any],
    api_key: str,
    client: Optional[httpx.AsyncClient] = None,
) -> AsyncIterator[Dict[str, Any]]:
    """Yield decoded chat-completion chunks until `[DONE]` or end of body.

    Closing the generator closes the upstream response.
    """
    client = client or get_httpx_client()
    url = settings.chat_completions_url
    body = {**payload, "stream": True}
    _log_payload("stream", url, body)
    try:
        async with client.stream(
            "POST",
            url,
            json=body,
            headers=upstream_headers(api_key, stream=True),
            timeout=httpx.Timeout(settings.upstream_timeout, read=None),
        ) as upstream:
            logger.info("upstream stream opened, status: %s", upstream.status_code)
            if upstream.status_code >= 400:
                body_bytes = await upstream.aread()
                body_text = body_bytes.decode("utf-8", errors="ignore") if body_bytes else ""
                raise UpstreamError(_error_message(upstream.status_code, body_text), status=upstream.status_code)
            async for line in upstream.aiter_lines():
                if not line or not line.startswith("data:"):
                    continue
                payload_str = line[5:].strip()
                if payload_str == "[DONE]":
                    return
                try:
                    chunk = json.loads(payload_str)
                except ValueError as e:
                    raise UpstreamError(f"Undecodable upstream chunk: {payload_str[:100]}") from e
                if isinstance(chunk, dict):
                    if chunk.get("error"):
                        raise UpstreamError(_error_message(200, payload_str))
                    yield chunk
    except httpx.HTTPError as e:
        raise UpstreamError(f"Upstream stream failed: {type(e).__name__}: {e}") from e

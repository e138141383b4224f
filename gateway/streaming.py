"""Re-encode OpenAI chat-completion chunks as Anthropic Messages SSE events.

`StreamReencoder` is a synchronous state machine: every upstream chunk fed
to it yields one batch (a string of zero or more SSE frames) that is written
to the client in a single write. `relay_stream` drives it from an async
upstream iterator through a queue so that upstream reads and client writes
proceed independently.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
import weakref
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from .errors import error_payload
from .schemas.anthropic import ToolCallRecord
from .transform import map_finish_reason

logger = logging.getLogger(__name__)

TEXT_BLOCK_INDEX = 0
# Text for block 0 when a tool call closes it before any text arrived
TEXT_PLACEHOLDER = "\u00a0"
DONE_FRAME = "data: [DONE]\n\n"


def sse(data: Dict[str, Any]) -> str:
    return f"event: {data['type']}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


def error_frame(message: str, error_type: str = "api_error") -> str:
    return f"event: error\ndata: {json.dumps(error_payload(error_type, message), ensure_ascii=False)}\n\n"


# Event builders (shared with the mock simulator)


def message_start_event(message_id: str, model: str) -> Dict[str, Any]:
    return {
        "type": "message_start",
        "message": {
            "id": message_id,
            "type": "message",
            "role": "assistant",
            "content": [],
            "model": model or "unknown",
            "stop_reason": None,
            "stop_sequence": None,
            "usage": {
                "input_tokens": 0,
                "cache_creation_input_tokens": 0,
                "cache_read_input_tokens": 0,
                "output_tokens": 0,
            },
        },
    }


def text_block_start_event(index: int = TEXT_BLOCK_INDEX) -> Dict[str, Any]:
    return {"type": "content_block_start", "index": index, "content_block": {"type": "text", "text": ""}}


def tool_block_start_event(index: int, tool_id: str, name: str) -> Dict[str, Any]:
    return {
        "type": "content_block_start",
        "index": index,
        "content_block": {"type": "tool_use", "id": tool_id, "name": name, "input": {}},
    }


def text_delta_event(text: str, index: int = TEXT_BLOCK_INDEX) -> Dict[str, Any]:
    return {"type": "content_block_delta", "index": index, "delta": {"type": "text_delta", "text": text}}


def input_json_delta_event(index: int, partial_json: str) -> Dict[str, Any]:
    return {
        "type": "content_block_delta",
        "index": index,
        "delta": {"type": "input_json_delta", "partial_json": partial_json},
    }


def block_stop_event(index: int) -> Dict[str, Any]:
    return {"type": "content_block_stop", "index": index}


def ping_event() -> Dict[str, Any]:
    return {"type": "ping"}


def message_delta_event(stop_reason: str) -> Dict[str, Any]:
    # Output token counts are not known mid-stream
    return {
        "type": "message_delta",
        "delta": {"stop_reason": stop_reason, "stop_sequence": None},
        "usage": {"output_tokens": 0},
    }


def message_stop_event() -> Dict[str, Any]:
    return {"type": "message_stop"}


def preamble_frames(message_id: str, model: str) -> List[str]:
    return [sse(message_start_event(message_id, model)), sse(text_block_start_event()), sse(ping_event())]


def terminal_frames(stop_reason: str) -> List[str]:
    return [sse(message_delta_event(stop_reason)), sse(message_stop_event()), DONE_FRAME]


@dataclass
class StreamState:
    message_id: str
    message_start_sent: bool = False
    text_block_open: bool = False
    text_block_closed: bool = False
    text_emitted: bool = False
    accumulated_text: str = ""
    # Upstream slot of the tool call currently streaming, and its remapped block index
    active_tool_slot: Optional[int] = None
    active_tool_id: Optional[str] = None
    active_tool_name: str = ""
    active_tool_block: Optional[int] = None
    # Index 0 belongs to the text block; tool blocks count up from 1
    next_tool_block: int = 1
    tool_args: List[str] = field(default_factory=list)
    tool_calls: List[ToolCallRecord] = field(default_factory=list)
    stop_reason: str = "end_turn"
    stop_reading: bool = False
    finished: bool = False


class StreamReencoder:
    """Turns upstream chat-completion chunks into ordered Anthropic SSE batches."""

    def __init__(self, requested_model: str, message_id: Optional[str] = None) -> None:
        self.requested_model = requested_model
        self.state = StreamState(message_id=message_id or f"msg_{uuid.uuid4().hex}")

    @property
    def stop_requested(self) -> bool:
        return self.state.stop_reading

    @property
    def tool_calls(self) -> List[ToolCallRecord]:
        return list(self.state.tool_calls)

    def feed(self, chunk: Dict[str, Any]) -> str:
        """Process one decoded upstream chunk and return its batch of frames."""
        st = self.state
        events: List[str] = self.start()

        choices = chunk.get("choices") or []
        if not choices:
            return "".join(events)
        choice = choices[0] or {}
        delta = choice.get("delta") or {}

        content = delta.get("content")
        if isinstance(content, str) and content:
            st.accumulated_text += content
            # Text streams only while block 0 is still the active block
            if st.active_tool_slot is None and not st.text_block_closed:
                st.text_emitted = True
                events.append(sse(text_delta_event(content)))

        for tool_call in delta.get("tool_calls") or []:
            events.extend(self._tool_call_delta(tool_call))

        finish_reason = choice.get("finish_reason")
        if finish_reason is not None:
            st.stop_reason = map_finish_reason(finish_reason)
            events.extend(self._finalize_tool())
            events.extend(self._close_text_block())
            st.stop_reading = True

        return "".join(events)

    def finish(self) -> str:
        """Close whatever is still open and emit the terminal sequence (once)."""
        st = self.state
        if st.finished:
            return ""
        st.finished = True
        events: List[str] = self.start()
        events.extend(self._finalize_tool())
        events.extend(self._close_text_block())
        events.extend(terminal_frames(st.stop_reason))
        return "".join(events)

    def start(self) -> List[str]:
        """Preamble frames: message_start, open text block 0, ping. Empty once sent."""
        st = self.state
        if st.message_start_sent:
            return []
        st.message_start_sent = True
        st.text_block_open = True
        return preamble_frames(st.message_id, self.requested_model)

    def _tool_call_delta(self, tool_call: Dict[str, Any]) -> List[str]:
        st = self.state
        events: List[str] = []
        fn = tool_call.get("function") or {}
        slot = tool_call.get("index")
        if not isinstance(slot, int):
            slot = 0

        if slot != st.active_tool_slot:
            events.extend(self._close_text_block(placeholder=True))
            events.extend(self._finalize_tool())
            st.active_tool_slot = slot
            st.active_tool_id = tool_call.get("id") or f"toolu_{uuid.uuid4().hex}"
            st.active_tool_name = fn.get("name") or ""
            st.active_tool_block = st.next_tool_block
            st.next_tool_block += 1
            st.tool_args = []
            events.append(sse(tool_block_start_event(st.active_tool_block, st.active_tool_id, st.active_tool_name)))
        elif fn.get("name"):
            st.active_tool_name = fn["name"]

        arguments = fn.get("arguments")
        if isinstance(arguments, str) and arguments:
            st.tool_args.append(arguments)
            events.append(sse(input_json_delta_event(st.active_tool_block, arguments)))
        return events

    def _close_text_block(self, placeholder: bool = False) -> List[str]:
        st = self.state
        if not st.text_block_open or st.text_block_closed:
            return []
        events: List[str] = []
        if placeholder and not st.text_emitted:
            st.text_emitted = True
            events.append(sse(text_delta_event(TEXT_PLACEHOLDER)))
        events.append(sse(block_stop_event(TEXT_BLOCK_INDEX)))
        st.text_block_closed = True
        return events

    def _finalize_tool(self) -> List[str]:
        st = self.state
        if st.active_tool_slot is None:
            return []
        st.tool_calls.append(
            ToolCallRecord(id=st.active_tool_id or "", name=st.active_tool_name, arguments="".join(st.tool_args))
        )
        events = [sse(block_stop_event(st.active_tool_block))]
        st.active_tool_slot = None
        st.active_tool_id = None
        st.active_tool_block = None
        st.tool_args = []
        return events


CompletionHook = Callable[[List[ToolCallRecord], int, Optional[str]], None]

DISCONNECTED = "client disconnected"


class CompletionOnce:
    """Calls a completion hook at most once, timing latency from construction.

    `tool_calls` is read when the hook fires, so it sees whatever the stream
    had finalized by then.
    """

    def __init__(
        self,
        hook: Optional[CompletionHook],
        tool_calls: Callable[[], List[ToolCallRecord]],
        label: str,
    ) -> None:
        self._hook = hook
        self._tool_calls = tool_calls
        self._label = label
        self._started = time.monotonic()
        self.fired = False

    def fire(self, error: Optional[str] = None) -> None:
        if self.fired:
            return
        self.fired = True
        if self._hook is None:
            return
        latency_ms = int((time.monotonic() - self._started) * 1000)
        try:
            self._hook(self._tool_calls(), latency_ms, error)
        except Exception:
            logger.exception("completion hook failed for stream %s", self._label)


class SSERelay:
    """Async iterator of outbound SSE batches for an upstream chunk iterator.

    The first read starts a producer task that pulls upstream and re-encodes;
    batches reach the consumer through a queue. `aclose()` cancels the
    producer, which closes the upstream iterator. The completion hook runs
    exactly once: from the producer, from `aclose()` when no batch was ever
    requested, or from a finalizer if the relay is dropped without either.
    """

    def __init__(
        self,
        chunks: AsyncIterator[Dict[str, Any]],
        reencoder: StreamReencoder,
        on_complete: Optional[CompletionHook] = None,
        queue_size: int = 0,
        debug_sse: bool = False,
    ) -> None:
        self.message_id = reencoder.state.message_id
        self._chunks = chunks
        self._reencoder = reencoder
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue(maxsize=queue_size)
        self._debug_sse = debug_sse
        self._producer: Optional[asyncio.Task] = None
        self._exhausted = False
        self._completion = CompletionOnce(on_complete, lambda: reencoder.tool_calls, self.message_id)
        # The callback must not reference self
        weakref.finalize(self, self._completion.fire, DISCONNECTED)

    def __aiter__(self) -> "SSERelay":
        return self

    async def __anext__(self) -> str:
        if self._exhausted:
            raise StopAsyncIteration
        if self._producer is None:
            self._producer = asyncio.create_task(self._produce())
        try:
            batch = await self._queue.get()
        except asyncio.CancelledError:
            await self.aclose()
            raise
        if batch is None:
            self._exhausted = True
            await self._producer
            raise StopAsyncIteration
        if self._debug_sse:
            logger.debug("[sse][%s] %s", self.message_id, batch.strip())
        return batch

    async def aclose(self) -> None:
        self._exhausted = True
        producer = self._producer
        if producer is None:
            # Nothing was read; upstream was never opened
            self._completion.fire(DISCONNECTED)
            close = getattr(self._chunks, "aclose", None)
            if close is not None:
                await close()
            return
        if not producer.done():
            logger.info("stream %s closed by client", self.message_id)
            producer.cancel()
        try:
            await producer
        except asyncio.CancelledError:
            pass

    async def _produce(self) -> None:
        error: Optional[str] = None
        try:
            async with aclosing(self._chunks) as upstream:
                async for chunk in upstream:
                    batch = self._reencoder.feed(chunk)
                    if batch:
                        await self._queue.put(batch)
                    if self._reencoder.stop_requested:
                        # Upstream may keep the connection open after finish_reason
                        break
            await self._queue.put(self._reencoder.finish())
        except asyncio.CancelledError:
            error = DISCONNECTED
            raise
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.exception("stream %s failed: %s", self.message_id, error)
            await self._queue.put(error_frame(error))
        finally:
            self._completion.fire(error)
        await self._queue.put(None)


def relay_stream(
    chunks: AsyncIterator[Dict[str, Any]],
    reencoder: StreamReencoder,
    on_complete: Optional[CompletionHook] = None,
    queue_size: int = 0,
    debug_sse: bool = False,
) -> SSERelay:
    """Relay upstream chunks as SSE batches; `on_complete(tool_calls, latency_ms, error)` runs once."""
    return SSERelay(chunks, reencoder, on_complete=on_complete, queue_size=queue_size, debug_sse=debug_sse)

from __future__ import annotations

import hashlib
import json
from typing import Any, Dict, List, Optional, Union

from .config import settings
from .schemas.anthropic import (
    MessageInput,
    MessageResponse,
    MessagesRequest,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    Usage,
)


def _system_text(system: Optional[Union[str, List[TextBlock]]]) -> str:
    """Collapse Anthropic `system` (string or list of text blocks) into a plain string."""
    if system is None:
        return ""
    if isinstance(system, str):
        return system
    return "\n".join(block.text for block in system)


def _tool_result_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    return json_dumps_safe(content, default="")


def _convert_message(message: MessageInput) -> List[Dict[str, Any]]:
    """Map one Anthropic message to zero or more OpenAI chat messages.

    Tool results become standalone `tool` messages in scan order; text and
    tool calls are gathered into a single trailing user/assistant message.
    """
    role = message.role
    content = message.content

    # Plain string content short-circuit
    if isinstance(content, str):
        return [{"role": role, "content": content}]

    out: List[Dict[str, Any]] = []
    text_acc: List[str] = []
    tool_calls: List[Dict[str, Any]] = []
    for block in content:
        if isinstance(block, TextBlock):
            text_acc.append(block.text)
        elif isinstance(block, ToolUseBlock):
            tool_calls.append(
                {
                    "id": block.id,
                    "type": "function",
                    "function": {
                        "name": block.name,
                        "arguments": json_dumps_safe(block.input),
                    },
                }
            )
        elif isinstance(block, ToolResultBlock):
            out.append(
                {
                    "role": "tool",
                    "tool_call_id": block.tool_use_id,
                    "content": _tool_result_text(block.content),
                }
            )

    text_content = "".join(text_acc)
    if not text_content and not tool_calls:
        return out

    if role == "assistant":
        msg: Dict[str, Any] = {"role": "assistant", "content": text_content}
        if tool_calls:
            msg["tool_calls"] = tool_calls
        out.append(msg)
    else:
        # User messages never carry tool calls upstream
        out.append({"role": "user", "content": text_content})
    return out


def anthropic_to_openai_payload(request: MessagesRequest) -> Dict[str, Any]:
    """Map an Anthropic v1/messages request to OpenAI Chat Completions parameters."""
    oai_messages: List[Dict[str, Any]] = []
    system_text = _system_text(request.system)
    if system_text:
        oai_messages.append({"role": "system", "content": system_text})

    for m in request.messages:
        oai_messages.extend(_convert_message(m))

    payload: Dict[str, Any] = {
        "model": settings.map_model(request.model),
        "messages": oai_messages,
        "stream": bool(request.stream),
    }
    # Optional params
    if request.max_tokens is not None:
        payload["max_tokens"] = request.max_tokens
    if request.temperature is not None:
        payload["temperature"] = request.temperature
    if request.top_p is not None:
        payload["top_p"] = request.top_p
    if request.stop_sequences:
        payload["stop"] = list(request.stop_sequences)

    # Tools definitions mapping (Anthropic -> OpenAI)
    if request.tools:
        payload["tools"] = [
            {
                "type": "function",
                "function": {
                    "name": t.name,
                    "description": t.description or "",
                    "parameters": t.input_schema,
                },
            }
            for t in request.tools
        ]
    return payload


def openai_to_anthropic_response(oai: Dict[str, Any], requested_model: str) -> Optional[MessageResponse]:
    """Map a non-streaming OpenAI Chat Completions response to an Anthropic message.

    Returns None when the upstream produced no choices. The outward `model`
    is always the model the client asked for.
    """
    choices = oai.get("choices") or []
    if not choices:
        return None
    first_choice = choices[0] or {}
    message = first_choice.get("message") or {}

    content_blocks: List[Union[TextBlock, ToolUseBlock]] = []
    text = message.get("content")
    if isinstance(text, str) and text:
        content_blocks.append(TextBlock(text=text))

    # Convert OpenAI tool_calls to Anthropic tool_use blocks
    for i, tc in enumerate(message.get("tool_calls") or []):
        fn = tc.get("function") or {}
        content_blocks.append(
            ToolUseBlock(
                id=tc.get("id") or _stable_id("toolu", oai, i),
                name=fn.get("name") or "",
                input=json_loads_object(fn.get("arguments")),
            )
        )

    return MessageResponse(
        id=oai.get("id") or _stable_id("msg", oai),
        model=requested_model,
        content=content_blocks,
        stop_reason=map_finish_reason(first_choice.get("finish_reason")),
        usage=parse_usage(oai),
    )


def _stable_id(prefix: str, oai: Dict[str, Any], *salt: Any) -> str:
    # Deterministic fallback ids keep the translation a pure function of its input
    digest = hashlib.sha256((json_dumps_safe(oai, default="") + repr(salt)).encode("utf-8")).hexdigest()
    return f"{prefix}_{digest[:24]}"


def parse_usage(oai: Dict[str, Any]) -> Usage:
    usage = oai.get("usage") or {}
    return Usage(
        input_tokens=int(usage.get("prompt_tokens") or 0),
        output_tokens=int(usage.get("completion_tokens") or 0),
    )


def map_finish_reason(fr: Optional[str]) -> str:
    if not fr:
        return "end_turn"
    reason = str(fr).lower()
    if "tool" in reason:
        return "tool_use"
    if "length" in reason:
        return "max_tokens"
    # "stop", "content_filter" and anything unknown all end the turn
    return "end_turn"


def count_tool_results(request: MessagesRequest) -> int:
    """tool_result items across the whole history, malformed ones included."""
    return sum(m.tool_result_items for m in request.messages)


def json_dumps_safe(obj: Any, default: str = "{}") -> str:
    try:
        return json.dumps(obj, ensure_ascii=False)
    except (TypeError, ValueError):
        return default


def json_loads_object(s: Any) -> Dict[str, Any]:
    """Parse tool arguments; anything that is not a JSON object becomes {}."""
    if isinstance(s, dict):
        return s
    if not isinstance(s, str) or not s.strip():
        return {}
    try:
        parsed = json.loads(s)
    except ValueError:
        return {}
    return parsed if isinstance(parsed, dict) else {}

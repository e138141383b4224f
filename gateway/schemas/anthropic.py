from dataclasses import dataclass
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, PrivateAttr, TypeAdapter, ValidationError, field_validator, model_validator


# Anthropic v1/messages schema (text + tool use)


class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ToolUseBlock(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: Dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    # Either a plain string or arbitrary JSON (usually a list of text blocks)
    content: Any = None


ContentBlock = Annotated[Union[TextBlock, ToolUseBlock, ToolResultBlock], Field(discriminator="type")]

_CONTENT_BLOCK = TypeAdapter(ContentBlock)


def parse_content_block(item: Any) -> Optional[ContentBlock]:
    """Validate one raw content item; None for unknown types or wrong shapes."""
    if isinstance(item, (TextBlock, ToolUseBlock, ToolResultBlock)):
        return item
    try:
        return _CONTENT_BLOCK.validate_python(item)
    except ValidationError:
        return None


def _is_tool_result_item(item: Any) -> bool:
    if isinstance(item, ToolResultBlock):
        return True
    return isinstance(item, dict) and item.get("type") == "tool_result"


class MessageInput(BaseModel):
    role: Literal["user", "assistant"]
    # Support either array-of-blocks (preferred) or a plain string
    content: Union[str, List[ContentBlock]]
    # tool_result items as sent, counted before malformed ones are dropped
    _tool_result_items: int = PrivateAttr(default=0)

    @field_validator("content", mode="before")
    @classmethod
    def _drop_malformed_blocks(cls, value: Any) -> Any:
        if isinstance(value, list):
            blocks = (parse_content_block(item) for item in value)
            return [b for b in blocks if b is not None]
        return value

    @model_validator(mode="wrap")
    @classmethod
    def _count_raw_tool_results(cls, data: Any, handler):
        message = handler(data)
        if isinstance(data, dict) and isinstance(data.get("content"), list):
            message._tool_result_items = sum(1 for item in data["content"] if _is_tool_result_item(item))
        return message

    @property
    def tool_result_items(self) -> int:
        return self._tool_result_items


class ToolDefinition(BaseModel):
    name: str
    description: Optional[str] = None
    input_schema: Dict[str, Any] = Field(default_factory=dict)


class MessagesRequest(BaseModel):
    model: str = Field(..., min_length=1)
    messages: List[MessageInput]
    system: Optional[Union[str, List[TextBlock]]] = None
    max_tokens: Optional[int] = Field(default=None, ge=1)
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    stop_sequences: Optional[List[str]] = None
    stream: Optional[bool] = False
    metadata: Optional[Dict[str, Any]] = None
    tools: Optional[List[ToolDefinition]] = None


class Usage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0


class MessageResponse(BaseModel):
    id: str
    type: Literal["message"] = "message"
    role: Literal["assistant"] = "assistant"
    model: str
    content: List[Union[TextBlock, ToolUseBlock]]
    stop_reason: Optional[Literal["end_turn", "max_tokens", "stop_sequence", "tool_use"]] = None
    stop_sequence: Optional[str] = None
    usage: Usage = Field(default_factory=Usage)


@dataclass(frozen=True)
class ToolCallRecord:
    """A tool call finalized by the stream re-encoder (arguments kept as raw JSON text)."""

    id: str
    name: str
    arguments: str


class ErrorBody(BaseModel):
    type: str
    message: str


class ErrorResponse(BaseModel):
    type: Literal["error"] = "error"
    error: ErrorBody

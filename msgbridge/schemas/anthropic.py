from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# Anthropic v1/messages schema (inbound side)


class TextContent(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImageSource(BaseModel):
    model_config = ConfigDict(extra="allow")

    # base64 | url
    type: str = "base64"
    media_type: Optional[str] = None
    data: Optional[str] = None
    url: Optional[str] = None


class ImageContent(BaseModel):
    type: Literal["image"] = "image"
    source: ImageSource


class ToolUseContent(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: Dict[str, Any] = Field(default_factory=dict)


class ToolResultContent(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    # string, or a list of text/image blocks
    content: Optional[Union[str, List[Dict[str, Any]]]] = None
    is_error: Optional[bool] = False


# Recognised only so they can be rejected with a clear error
class InputAudioContent(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Literal["input_audio"] = "input_audio"


class FileContent(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Literal["file"] = "file"


ContentBlock = Annotated[
    Union[
        TextContent,
        ImageContent,
        ToolUseContent,
        ToolResultContent,
        InputAudioContent,
        FileContent,
    ],
    Field(discriminator="type"),
]


class MessageInput(BaseModel):
    role: Literal["user", "assistant"]
    content: Union[str, List[ContentBlock]]


class ToolDefinition(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    description: Optional[str] = None
    input_schema: Dict[str, Any] = Field(default_factory=dict)


class ToolChoice(BaseModel):
    model_config = ConfigDict(extra="allow")

    # a bare {"name": ...} means type "tool"
    type: Optional[Literal["auto", "any", "tool", "none"]] = None
    name: Optional[str] = None


class MessagesRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: str
    max_tokens: int = Field(..., ge=1)
    messages: List[MessageInput] = Field(..., min_length=1)
    system: Optional[Union[str, List[TextContent]]] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    stop_sequences: Optional[List[str]] = None
    stream: Optional[bool] = False
    metadata: Optional[Dict[str, Any]] = None
    tools: Optional[List[ToolDefinition]] = None
    tool_choice: Optional[ToolChoice] = None


# Outbound side


class Usage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0


class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ToolUseBlock(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: Dict[str, Any] = Field(default_factory=dict)


class MessageResponse(BaseModel):
    id: str
    type: Literal["message"] = "message"
    role: Literal["assistant"] = "assistant"
    model: str
    content: List[Union[TextBlock, ToolUseBlock]]
    stop_reason: Optional[Literal["end_turn", "max_tokens", "stop_sequence", "tool_use"]] = None
    stop_sequence: Optional[str] = None
    usage: Usage = Field(default_factory=Usage)


class ErrorBody(BaseModel):
    type: str
    message: str


class ErrorResponse(BaseModel):
    type: Literal["error"] = "error"
    error: ErrorBody

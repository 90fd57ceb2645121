from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# OpenAI-compatible chat completions (backend side). Lenient: providers add
# their own fields, so unknown keys are kept rather than rejected.


class FunctionCall(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    arguments: Optional[Any] = None  # a JSON string, though some providers send an object


class ToolCall(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    type: Optional[str] = "function"
    function: FunctionCall = Field(default_factory=FunctionCall)


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: Optional[str] = "assistant"
    content: Optional[str] = None
    reasoning_content: Optional[str] = None
    tool_calls: Optional[List[ToolCall]] = None


class Choice(BaseModel):
    model_config = ConfigDict(extra="allow")

    index: int = 0
    message: ChatMessage = Field(default_factory=ChatMessage)
    finish_reason: Optional[str] = None


class CompletionUsage(BaseModel):
    model_config = ConfigDict(extra="allow")

    prompt_tokens: Optional[int] = 0
    completion_tokens: Optional[int] = 0


class ChatCompletionResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    model: Optional[str] = None
    choices: List[Choice]
    usage: Optional[CompletionUsage] = None


# Streaming


class ToolCallDelta(BaseModel):
    model_config = ConfigDict(extra="allow")

    index: int = 0
    id: Optional[str] = None
    type: Optional[str] = None
    function: Optional[FunctionCall] = None


class ChoiceDelta(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: Optional[str] = None
    content: Optional[str] = None
    reasoning_content: Optional[str] = None
    tool_calls: Optional[List[ToolCallDelta]] = None


class StreamChoice(BaseModel):
    model_config = ConfigDict(extra="allow")

    index: int = 0
    delta: ChoiceDelta = Field(default_factory=ChoiceDelta)
    finish_reason: Optional[str] = None


class ChatCompletionChunk(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    model: Optional[str] = None
    # some providers send "choices": null on the trailing usage chunk
    choices: Optional[List[StreamChoice]] = None
    usage: Optional[CompletionUsage] = None


def chat_request_payload(
    model: str,
    messages: List[Dict[str, Any]],
    **options: Any,
) -> Dict[str, Any]:
    """Assemble a chat completions request body, leaving out unset options."""
    payload: Dict[str, Any] = {"model": model, "messages": messages}
    for key, value in options.items():
        if value is not None:
            payload[key] = value
    return payload

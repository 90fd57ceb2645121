from __future__ import annotations

import json
import logging
import re
import uuid
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from .config import ModelMapping, settings
from .errors import ConversionResult, ErrorType
from .schemas.anthropic import (
    FileContent,
    ImageContent,
    InputAudioContent,
    MessageResponse,
    MessagesRequest,
    TextContent,
    ToolResultContent,
    ToolUseContent,
)
from .schemas.openai import ChatCompletionResponse, chat_request_payload
from .tag_parser import ParsedReasoningContent, parse_reasoning_content


logger = logging.getLogger("msgbridge.transform")


class _Rejected(Exception):
    """Raised inside the request converter for input it refuses to translate."""

    def __init__(self, error_type: ErrorType, message: str) -> None:
        super().__init__(message)
        self.error_type = error_type
        self.message = message


def format_validation_error(exc: ValidationError) -> str:
    problems: List[str] = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        problems.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "Invalid request: " + "; ".join(problems)


def _to_text(content: Any) -> str:
    """Collapse tool_result content (string or list of blocks) into a plain string."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    parts: List[str] = []
    for block in content:
        if isinstance(block, dict):
            if block.get("type") == "text":
                parts.append(block.get("text", ""))
        elif getattr(block, "type", None) == "text":
            parts.append(getattr(block, "text", ""))
    return "".join(parts)


def _image_url(block: ImageContent) -> Optional[str]:
    src = block.source
    if (src.type or "").lower() in ("url", "external"):
        return src.url
    if src.data:
        return f"data:{src.media_type or 'image/png'};base64,{src.data}"
    return None


def _image_part(block: ImageContent, image_mode: str) -> Union[str, Dict[str, Any]]:
    if image_mode == "reject":
        raise _Rejected(ErrorType.INVALID_REQUEST, "Image content is not supported by this backend")
    if image_mode == "passthrough":
        url = _image_url(block)
        if not url:
            raise _Rejected(ErrorType.INVALID_REQUEST, "Image block has no usable source")
        return {"type": "image_url", "image_url": {"url": url}}
    src = block.source
    described = src.media_type or src.url or src.type or "image"
    return f"[Image content provided: {described}]"


def _reject_modality(block: Any) -> None:
    if isinstance(block, InputAudioContent):
        raise _Rejected(ErrorType.NOT_SUPPORTED, "Audio input is not supported")
    if isinstance(block, FileContent):
        raise _Rejected(ErrorType.NOT_SUPPORTED, "File upload is not supported")


def _flush_parts(role: str, parts: List[Union[str, Dict[str, Any]]]) -> Dict[str, Any]:
    if any(isinstance(p, dict) for p in parts):
        # multimodal: OpenAI content-part list; adjacent strings become one text part
        content_list: List[Dict[str, Any]] = []
        text_acc: List[str] = []
        for p in parts:
            if isinstance(p, str):
                text_acc.append(p)
                continue
            if text_acc:
                content_list.append({"type": "text", "text": "".join(text_acc)})
                text_acc = []
            content_list.append(p)
        if text_acc:
            content_list.append({"type": "text", "text": "".join(text_acc)})
        return {"role": role, "content": content_list}
    return {"role": role, "content": "".join(p for p in parts if isinstance(p, str))}


def _convert_user_blocks(blocks: List[Any], image_mode: str) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    parts: List[Union[str, Dict[str, Any]]] = []
    for block in blocks:
        _reject_modality(block)
        if isinstance(block, TextContent):
            parts.append(block.text)
        elif isinstance(block, ImageContent):
            parts.append(_image_part(block, image_mode))
        elif isinstance(block, ToolResultContent):
            # text seen so far precedes the tool message
            if parts:
                out.append(_flush_parts("user", parts))
                parts = []
            text = _to_text(block.content)
            if block.is_error:
                text = f"Error: {text}"
            out.append({"role": "tool", "tool_call_id": block.tool_use_id, "content": text})
        elif isinstance(block, ToolUseContent):
            raise _Rejected(ErrorType.INVALID_REQUEST, "tool_use blocks are only allowed in assistant messages")
    if parts or not out:
        out.append(_flush_parts("user", parts))
    return out


def _convert_assistant_blocks(blocks: List[Any], image_mode: str) -> List[Dict[str, Any]]:
    parts: List[Union[str, Dict[str, Any]]] = []
    tool_calls: List[Dict[str, Any]] = []
    for block in blocks:
        _reject_modality(block)
        if isinstance(block, TextContent):
            parts.append(block.text)
        elif isinstance(block, ImageContent):
            parts.append(_image_part(block, image_mode))
        elif isinstance(block, ToolUseContent):
            tool_calls.append(
                {
                    "id": block.id or f"call_{uuid.uuid4().hex}",
                    "type": "function",
                    "function": {
                        "name": block.name,
                        "arguments": json_dumps_safe(block.input),
                    },
                }
            )
        elif isinstance(block, ToolResultContent):
            raise _Rejected(ErrorType.INVALID_REQUEST, "tool_result blocks are only allowed in user messages")
    msg = _flush_parts("assistant", parts)
    if tool_calls:
        msg["tool_calls"] = tool_calls
    return [msg]


def _system_text(system: Any) -> str:
    if system is None:
        return ""
    if isinstance(system, str):
        return system
    return "".join(block.text for block in system)


def _convert_tools(request: MessagesRequest) -> List[Dict[str, Any]]:
    oai_tools: List[Dict[str, Any]] = []
    for t in request.tools or []:
        if not t.name:
            continue
        function: Dict[str, Any] = {"name": t.name, "parameters": t.input_schema or {}}
        if t.description is not None:
            function["description"] = t.description
        oai_tools.append({"type": "function", "function": function})
    return oai_tools


def _convert_tool_choice(request: MessagesRequest) -> Union[str, Dict[str, Any]]:
    choice = request.tool_choice
    if choice is None:
        return "auto"
    if choice.type == "any":
        return "required"
    if choice.type == "none":
        return "none"
    if choice.type is None and choice.name:
        # bare {"name": ...} is already the backend shape
        return {"name": choice.name}
    if choice.type == "tool" and choice.name:
        return {"type": "function", "function": {"name": choice.name}}
    return "auto"


def anthropic_to_openai_payload(
    body: Union[Dict[str, Any], MessagesRequest],
    mapping: Optional[ModelMapping] = None,
    image_mode: Optional[str] = None,
    log: Optional[logging.Logger] = None,
) -> ConversionResult[Dict[str, Any]]:
    """Map an Anthropic v1/messages body to an OpenAI Chat Completions request.

    ``mapping`` and ``image_mode`` default to the process settings. Never raises:
    bad input comes back as a failed ``ConversionResult``.
    """
    log = log or logger
    try:
        request = body if isinstance(body, MessagesRequest) else MessagesRequest.model_validate(body)
    except ValidationError as e:
        return ConversionResult.fail(ErrorType.INVALID_REQUEST, format_validation_error(e))

    mapping = mapping if mapping is not None else settings.model_mapping
    image_mode = image_mode or settings.image_mode
    try:
        oai_messages: List[Dict[str, Any]] = []
        system_text = _system_text(request.system)
        if system_text:
            oai_messages.append({"role": "system", "content": system_text})

        for m in request.messages:
            if isinstance(m.content, str):
                oai_messages.append({"role": m.role, "content": m.content})
            elif m.role == "assistant":
                oai_messages.extend(_convert_assistant_blocks(m.content, image_mode))
            else:
                oai_messages.extend(_convert_user_blocks(m.content, image_mode))

        oai_tools = _convert_tools(request)
        payload = chat_request_payload(
            mapping.resolve(request.model),
            oai_messages,
            max_tokens=request.max_tokens,
            temperature=request.temperature,
            top_p=request.top_p,
            stop=request.stop_sequences or None,
            stream=bool(request.stream),
            tools=oai_tools or None,
            # no effective tools: tool_choice stays unset whatever the caller sent
            tool_choice=_convert_tool_choice(request) if oai_tools else None,
        )
    except _Rejected as e:
        return ConversionResult.fail(e.error_type, e.message)
    except Exception as e:
        log.exception("Request conversion failed")
        return ConversionResult.fail(ErrorType.INTERNAL, f"Request conversion failed: {e}")

    log.debug(
        "Converted request: model %s -> %s, %d messages",
        request.model,
        payload["model"],
        len(oai_messages),
    )
    return ConversionResult.ok(payload)


def map_finish_reason(fr: Optional[str]) -> str:
    if fr == "length":
        return "max_tokens"
    if fr in ("tool_calls", "function_call"):
        return "tool_use"
    # stop, content_filter, empty and unknown values
    return "end_turn"


def _tool_use_or_error(
    name: str,
    arguments: Any,
    call_id: Optional[str] = None,
    log: logging.Logger = logger,
) -> Dict[str, Any]:
    """Build a tool_use block, or an explanatory text block if the arguments are not a JSON object."""
    if arguments is not None and not isinstance(arguments, str):
        arguments = json_dumps_safe(arguments)
    raw = (arguments or "").strip()
    if not raw:
        args: Any = {}
    else:
        args = json_loads_safe(raw)
    if not isinstance(args, dict):
        log.warning("Invalid tool call arguments for %s: %r", name, raw[:200])
        return {"type": "text", "text": f"Error: Invalid tool call arguments for {name}"}
    return {
        "type": "tool_use",
        "id": call_id or f"call_{uuid.uuid4().hex}",
        "name": name,
        "input": args,
    }


def _blocks_from_parsed(parsed: ParsedReasoningContent, log: logging.Logger) -> List[Dict[str, Any]]:
    blocks: List[Dict[str, Any]] = []
    for thought in parsed.thoughts:
        if thought.strip():
            blocks.append({"type": "text", "text": thought})
    for call in parsed.tool_calls:
        blocks.append(_tool_use_or_error(call.name, call.arguments, log=log))
    for raw in parsed.raw_content:
        if raw.strip():
            blocks.append({"type": "text", "text": raw})
    return blocks


def openai_to_anthropic_response(
    oai: Dict[str, Any],
    requested_model: Optional[str] = None,
    log: Optional[logging.Logger] = None,
) -> ConversionResult[Dict[str, Any]]:
    """Map a non-streaming OpenAI Chat Completions response to an Anthropic messages response."""
    log = log or logger
    try:
        parsed = ChatCompletionResponse.model_validate(oai)
    except ValidationError as e:
        log.warning("Backend returned an invalid completion: %s", e)
        return ConversionResult.fail(ErrorType.API, "Invalid response from backend")
    if not parsed.choices:
        return ConversionResult.fail(ErrorType.API, "Backend response contained no choices")

    try:
        choice = parsed.choices[0]
        message = choice.message
        content_blocks: List[Dict[str, Any]] = []
        if message.reasoning_content and message.reasoning_content.strip():
            content_blocks.extend(_blocks_from_parsed(parse_reasoning_content(message.reasoning_content), log))
        if message.content and message.content.strip():
            content_blocks.extend(_blocks_from_parsed(parse_reasoning_content(message.content), log))
        for tc in message.tool_calls or []:
            content_blocks.append(
                _tool_use_or_error(tc.function.name or "unknown_tool", tc.function.arguments, tc.id, log)
            )

        usage = parsed.usage
        response = MessageResponse(
            id=f"msg_{uuid.uuid4().hex}",
            model=requested_model or parsed.model or "unknown-model",
            content=content_blocks or [{"type": "text", "text": ""}],
            stop_reason=map_finish_reason(choice.finish_reason),
            usage={
                "input_tokens": int((usage.prompt_tokens if usage else 0) or 0),
                "output_tokens": int((usage.completion_tokens if usage else 0) or 0),
            },
        )
    except Exception as e:
        log.exception("Response conversion failed")
        return ConversionResult.fail(ErrorType.INTERNAL, f"Response conversion failed: {e}")
    return ConversionResult.ok(response.model_dump())


def json_dumps_safe(obj: Any) -> str:
    try:
        return json.dumps(obj, ensure_ascii=False)
    except Exception:
        return "{}"


def json_loads_safe(s: Any) -> Any:
    """Parse JSON, retrying once with invalid escapes removed. Returns None when both fail."""
    if not isinstance(s, str):
        return s
    try:
        return json.loads(s)
    except ValueError:
        repaired = _repair_invalid_json_escapes(s)
        if repaired != s:
            try:
                return json.loads(repaired)
            except ValueError:
                pass
    return None


_INVALID_ESCAPE_RE = re.compile(r"\\(?![\\\"/bfnrtu])")


def _repair_invalid_json_escapes(raw: str) -> str:
    """Best-effort fix for JSON strings containing invalid escape sequences."""
    return _INVALID_ESCAPE_RE.sub("", raw)

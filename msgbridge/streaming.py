"""Translate an OpenAI chat completions SSE stream into Anthropic Messages SSE events.

Backend lines:
    data: {"choices":[{"delta":{"reasoning_content":"<think>hm"},"index":0}]}
    data: {"choices":[{"delta":{"content":"Hello"},"index":0}]}
    data: {"choices":[{"delta":{},"finish_reason":"stop","index":0}]}
    data: [DONE]

Client frames:
    event: message_start
    data: {"type":"message_start","message":{...}}

    event: content_block_start
    data: {"type":"content_block_start","index":0,"content_block":{"type":"text","text":""}}

    event: content_block_delta
    data: {"type":"content_block_delta","index":0,"delta":{"type":"text_delta","text":"Hello"}}

    event: content_block_stop
    event: message_delta
    event: message_stop

    data: [DONE]

Inline ``<think>`` and DeepSeek tool-call markup in either ``reasoning_content``
or ``content`` goes through one ``StreamingTagParser`` per message, so tags
split across chunks are handled.
"""

from __future__ import annotations

import json
import logging
import uuid
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from pydantic import ValidationError

from .errors import BackendError, error_body, normalize_backend_error
from .schemas.anthropic import MessageResponse
from .schemas.openai import ChatCompletionChunk, ChoiceDelta, ToolCallDelta
from .tag_parser import StreamTagResult, StreamingTagParser
from .transform import json_dumps_safe, map_finish_reason


logger = logging.getLogger("msgbridge.streaming")

Event = Dict[str, Any]


class StreamState(str, Enum):
    NOT_STARTED = "not_started"
    STREAMING = "streaming"
    ENDED = "ended"


def sse(data: Event) -> bytes:
    return f"event: {data['type']}\n".encode() + f"data: {json.dumps(data, ensure_ascii=False)}\n\n".encode()


DONE_FRAME = b"data: [DONE]\n\n"


class StreamTranslator:
    """Per-message state machine: NOT_STARTED -> STREAMING -> ENDED.

    Each ``feed_*`` call returns the list of Anthropic events to send, as
    dicts carrying their own ``type``. Nothing is emitted once ENDED.
    """

    def __init__(
        self,
        requested_model: str,
        message_id: Optional[str] = None,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self.log = log or logger
        self.model = requested_model
        self.message_id = message_id or f"msg_{uuid.uuid4().hex}"
        self.state = StreamState.NOT_STARTED
        self.parser = StreamingTagParser()

        self._next_index = 0
        self._text_index: Optional[int] = None
        # backend tool_call index -> content block index
        self._tool_blocks: Dict[int, int] = {}
        self._open_blocks: List[int] = []

        self._usage_seen = False
        self.input_tokens = 0
        self.output_tokens = 0

    def feed_line(self, line: str) -> Tuple[List[Event], bool]:
        """Handle one raw SSE line. Returns ``(events, done)``; ``done`` is True on ``[DONE]``."""
        line = line.strip()
        if not line or not line.startswith("data:"):
            return [], False
        data = line[5:].strip()
        if data == "[DONE]":
            return [], True
        try:
            chunk = json.loads(data)
        except ValueError:
            self.log.warning("Skipping malformed stream chunk: %s", data[:200])
            return [], False
        if not isinstance(chunk, dict):
            self.log.warning("Skipping non-object stream chunk: %s", data[:200])
            return [], False
        if "error" in chunk and not chunk.get("choices"):
            err = normalize_backend_error(chunk)
            raise BackendError(err.message, err.type, details=err.details)
        return self.feed_chunk(chunk), False

    def feed_chunk(self, chunk: Dict[str, Any]) -> List[Event]:
        if self.state is StreamState.ENDED:
            return []
        try:
            parsed = ChatCompletionChunk.model_validate(chunk)
        except ValidationError as e:
            self.log.warning("Skipping invalid stream chunk: %s", e)
            return []

        events: List[Event] = []
        if self.state is StreamState.NOT_STARTED:
            events.extend(self._start())

        if parsed.usage is not None:
            self._usage_seen = True
            self.input_tokens = int(parsed.usage.prompt_tokens or 0)
            self.output_tokens = int(parsed.usage.completion_tokens or 0)

        if not parsed.choices:
            return events
        choice = parsed.choices[0]
        delta = choice.delta

        for text in (delta.reasoning_content, delta.content):
            if text:
                events.extend(self._emit_text(self.parser.process_chunk(text)))
        if delta.tool_calls:
            events.extend(self._emit_tool_calls(delta.tool_calls))

        if choice.finish_reason:
            if self._suppress_finish(choice.finish_reason, delta):
                # reasoning-only "stop": the answer is expected in a later chunk
                self.log.debug("Deferring finish_reason=stop on a reasoning-only chunk")
                return events
            events.extend(self._finish(map_finish_reason(choice.finish_reason)))
        return events

    def finalize(self) -> List[Event]:
        """Flush withheld or still-open tag content once the backend stream ends."""
        if self.state is not StreamState.STREAMING:
            return []
        return self._emit_text(self.parser.finalize())

    def close(self, stop_reason: str = "end_turn") -> List[Event]:
        """Best-effort terminal events for a stream that ended without a finish_reason."""
        if self.state is StreamState.ENDED:
            return []
        events: List[Event] = []
        if self.state is StreamState.NOT_STARTED:
            events.extend(self._start())
        events.extend(self._finish(stop_reason))
        return events

    @staticmethod
    def _suppress_finish(finish_reason: str, delta: ChoiceDelta) -> bool:
        return (
            finish_reason == "stop"
            and not (delta.content or "").strip()
            and bool((delta.reasoning_content or "").strip())
        )

    def _start(self) -> List[Event]:
        self.state = StreamState.STREAMING
        message = MessageResponse(id=self.message_id, model=self.model, content=[])
        return [
            {"type": "message_start", "message": message.model_dump()},
            self._open_text_block(),
        ]

    def _open_text_block(self) -> Event:
        index = self._next_index
        self._next_index += 1
        self._text_index = index
        self._open_blocks.append(index)
        return {"type": "content_block_start", "index": index, "content_block": {"type": "text", "text": ""}}

    def _stop_block(self, index: int) -> Event:
        self._open_blocks.remove(index)
        if self._text_index == index:
            self._text_index = None
        return {"type": "content_block_stop", "index": index}

    def _emit_text(self, result: StreamTagResult) -> List[Event]:
        events: List[Event] = []
        for segment in result.segments:
            if not segment.text:
                continue
            if self._text_index is None:
                events.append(self._open_text_block())
            events.append(
                {
                    "type": "content_block_delta",
                    "index": self._text_index,
                    "delta": {"type": "text_delta", "text": segment.text},
                }
            )
        return events

    def _emit_tool_calls(self, deltas: List[ToolCallDelta]) -> List[Event]:
        events: List[Event] = []
        for tc in deltas:
            fn = tc.function
            if tc.index not in self._tool_blocks:
                if self._text_index is not None:
                    events.append(self._stop_block(self._text_index))
                index = self._next_index
                self._next_index += 1
                self._tool_blocks[tc.index] = index
                self._open_blocks.append(index)
                events.append(
                    {
                        "type": "content_block_start",
                        "index": index,
                        "content_block": {
                            "type": "tool_use",
                            "id": tc.id or f"call_{uuid.uuid4().hex}",
                            "name": (fn.name if fn else None) or "",
                            "input": {},
                        },
                    }
                )
            if fn is not None and fn.arguments:
                partial = fn.arguments if isinstance(fn.arguments, str) else json_dumps_safe(fn.arguments)
                events.append(
                    {
                        "type": "content_block_delta",
                        "index": self._tool_blocks[tc.index],
                        "delta": {"type": "input_json_delta", "partial_json": partial},
                    }
                )
        return events

    def _finish(self, stop_reason: str) -> List[Event]:
        events = self._emit_text(self.parser.finalize())
        for index in sorted(self._open_blocks):
            events.append(self._stop_block(index))
        message_delta: Event = {
            "type": "message_delta",
            "delta": {"stop_reason": stop_reason, "stop_sequence": None},
        }
        if self._usage_seen:
            message_delta["usage"] = {"output_tokens": self.output_tokens}
        events.append(message_delta)
        events.append({"type": "message_stop"})
        self.state = StreamState.ENDED
        return events


async def translate_stream(lines: AsyncIterator[str], translator: StreamTranslator) -> AsyncIterator[bytes]:
    """Yield client SSE frames for a backend line stream, ending with ``data: [DONE]``.

    A backend failure while iterating becomes an ``error`` event followed by
    the best-effort terminal events.
    """
    try:
        async for line in lines:
            events, done = translator.feed_line(line)
            for event in events:
                yield sse(event)
            if done:
                break
        for event in translator.finalize():
            yield sse(event)
        for event in translator.close():
            yield sse(event)
    except Exception as e:
        err = normalize_backend_error(e)
        translator.log.error("Stream ended with backend error: %s: %s", err.type.value, err.message)
        yield sse(error_body(err))
        for event in translator.close():
            yield sse(event)
    yield DONE_FRAME

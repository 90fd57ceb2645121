"""Parser for inline reasoning and tool-call markup in backend text.

Some backends (DeepSeek-style reasoning models in particular) do not use the
structured ``tool_calls`` / ``reasoning_content`` fields consistently and
instead embed markup such as ``<think>...</think>`` or
``<｜tool▁calls▁begin｜>...<｜tool▁calls▁end｜>`` in the plain text.

Two entry points:

* ``parse_reasoning_content`` for a complete string (non-streaming responses).
* ``StreamingTagParser`` for text that arrives in arbitrary fragments. A tag
  split across two chunks is withheld until it can be recognised, so the
  concatenated output never depends on where the backend cut the stream.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple


THINK_START = "<think>"
THINK_END = "</think>"
TOOL_CALLS_BEGIN = "<｜tool▁calls▁begin｜>"
TOOL_CALLS_END = "<｜tool▁calls▁end｜>"
TOOL_CALL_BEGIN = "<｜tool▁call▁begin｜>"
TOOL_CALL_END = "<｜tool▁call▁end｜>"
TOOL_SEP = "<｜tool▁sep｜>"
REASONING_START = "<reasoning>"
REASONING_END = "</reasoning>"
TOOL_CALL_MARKER = "<tool_call>"

# Declaration order is also the tie-break order for matches at the same index.
ALL_TAGS: Tuple[str, ...] = (
    THINK_START,
    THINK_END,
    TOOL_CALLS_BEGIN,
    TOOL_CALLS_END,
    TOOL_CALL_BEGIN,
    TOOL_CALL_END,
    TOOL_SEP,
    REASONING_START,
    REASONING_END,
    TOOL_CALL_MARKER,
)
MAX_TAG_LENGTH = max(len(t) for t in ALL_TAGS)

# end tag -> start tag
TAG_PAIRS = {
    THINK_END: THINK_START,
    TOOL_CALLS_END: TOOL_CALLS_BEGIN,
    TOOL_CALL_END: TOOL_CALL_BEGIN,
    REASONING_END: REASONING_START,
}
START_TAGS = frozenset(TAG_PAIRS.values())
END_TAGS = frozenset(TAG_PAIRS)

# sorted() is stable, so equal lengths keep declaration order
_TAGS_LONGEST_FIRST: Tuple[str, ...] = tuple(sorted(ALL_TAGS, key=len, reverse=True))
_TAG_SPLIT_RE = re.compile("(" + "|".join(re.escape(t) for t in _TAGS_LONGEST_FIRST) + ")")
_BLANK_LINES_RE = re.compile(r"\n\s*\n")
_FENCED_BLOCK_RE = re.compile(r"```(?:json)?[ \t]*\n?(.*?)(?:\n?```|$)", re.DOTALL)

UNKNOWN_TOOL = "unknown_tool"


def semantic_tag_type(tag: str) -> str:
    if tag in (THINK_START, THINK_END):
        return "thinking"
    if "tool" in tag:
        return "tool_reasoning"
    return "reasoning"


@dataclass
class ToolCallFragment:
    name: str
    arguments: str

    def render(self) -> str:
        return f"Tool call: {self.name}({self.arguments})"


@dataclass
class ParsedReasoningContent:
    thoughts: List[str] = field(default_factory=list)
    tool_calls: List[ToolCallFragment] = field(default_factory=list)
    raw_content: List[str] = field(default_factory=list)
    has_special_tags: bool = False

    def extend(self, other: "ParsedReasoningContent") -> None:
        self.thoughts.extend(other.thoughts)
        self.tool_calls.extend(other.tool_calls)
        self.raw_content.extend(other.raw_content)
        self.has_special_tags = self.has_special_tags or other.has_special_tags

    def is_empty(self) -> bool:
        return not (self.thoughts or self.tool_calls or self.raw_content)


@dataclass(frozen=True)
class Segment:
    """One piece of parser output. ``kind`` is text, thought, tool_call or raw."""

    kind: str
    text: str


@dataclass
class TagStackEntry:
    type: str
    tag: str
    start_index: int


@dataclass
class PartialTagMatch:
    tag: str
    matched_length: int


@dataclass
class TagParserState:
    buffer: str = ""
    tag_stack: List[TagStackEntry] = field(default_factory=list)
    tag_content_buffer: str = ""
    partial_tag_match: Optional[PartialTagMatch] = None

    @property
    def is_in_tag(self) -> bool:
        return bool(self.tag_stack)


@dataclass
class StreamTagResult:
    segments: List[Segment] = field(default_factory=list)
    tag_type: Optional[str] = None
    is_tag_start: bool = False
    is_tag_end: bool = False
    has_partial_tag: bool = False
    extracted_content: Optional[ParsedReasoningContent] = None

    @property
    def cleaned_content(self) -> str:
        return "".join(s.text for s in self.segments)

    def add_extracted(self, extracted: ParsedReasoningContent) -> None:
        if self.extracted_content is None:
            self.extracted_content = ParsedReasoningContent(has_special_tags=True)
        self.extracted_content.extend(extracted)
        self.segments.extend(render_segments(extracted))


def render_segments(parsed: ParsedReasoningContent) -> List[Segment]:
    """Render extracted content as output segments, items separated by newlines."""
    items: List[Tuple[str, str]] = []
    items.extend(("thought", t) for t in parsed.thoughts)
    items.extend(("tool_call", c.render()) for c in parsed.tool_calls)
    items.extend(("raw", r) for r in parsed.raw_content)
    segments: List[Segment] = []
    for i, (kind, text) in enumerate(items):
        segments.append(Segment(kind, text if i == 0 else "\n" + text))
    return segments


def _arguments_to_string(args: Any) -> str:
    if args is None:
        return "{}"
    if isinstance(args, str):
        return args
    try:
        return json.dumps(args, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(args)


def _unwrap_json_string(text: str) -> str:
    # '"{\"a\": 1}"' -> '{"a": 1}'
    if len(text) >= 2 and text.startswith('"') and text.endswith('"'):
        try:
            inner = json.loads(text)
        except (ValueError, RecursionError):
            return text
        if isinstance(inner, str):
            return inner
    return text


def parse_tool_call_content(content: str) -> ToolCallFragment:
    """Best-effort extraction of a tool name and argument string.

    Accepted shapes, tried in order:

    1. a JSON object: ``name``/``function`` and ``arguments``/``parameters``,
       with ``unknown_tool`` when it names no function
    2. ``name<｜tool▁sep｜>arguments``
    3. ``function<｜tool▁sep｜>name`` followed by a fenced ```json block
    4. ``name: arguments``
    5. anything else: the whole content is the name, arguments ``{}``
    """
    if not isinstance(content, str):
        content = "" if content is None else str(content)
    text = content.strip()

    if text.startswith("{"):
        try:
            parsed = json.loads(text)
        except (ValueError, RecursionError):
            parsed = None
        if isinstance(parsed, dict):
            name = parsed.get("name")
            args = parsed.get("arguments", parsed.get("parameters"))
            fn = parsed.get("function")
            if name is None and isinstance(fn, dict):
                name = fn.get("name")
                if args is None:
                    args = fn.get("arguments", fn.get("parameters"))
            elif name is None:
                name = fn
            if not isinstance(name, str) or not name.strip():
                name = UNKNOWN_TOOL
            return ToolCallFragment(name=name.strip(), arguments=_arguments_to_string(args))

    if TOOL_SEP in text:
        before, after = text.split(TOOL_SEP, 1)
        before = before.strip()
        after = after.strip()
        if before == "function":
            first_line, _, rest = after.partition("\n")
            name = first_line.strip() or UNKNOWN_TOOL
            match = _FENCED_BLOCK_RE.search(rest)
            if match:
                args = _unwrap_json_string(match.group(1).strip())
            else:
                args = rest.strip()
            return ToolCallFragment(name=name, arguments=args or "{}")
        return ToolCallFragment(name=before or UNKNOWN_TOOL, arguments=after or "{}")

    if ":" in text:
        name, _, args = text.partition(":")
        return ToolCallFragment(name=name.strip() or UNKNOWN_TOOL, arguments=args.strip() or "{}")

    return ToolCallFragment(name=text or UNKNOWN_TOOL, arguments="{}")


def _split_tool_calls(content: str) -> List[ToolCallFragment]:
    calls: List[ToolCallFragment] = []
    for piece in content.split(TOOL_CALL_BEGIN):
        for literal in (TOOL_CALL_END, TOOL_CALLS_BEGIN, TOOL_CALLS_END):
            piece = piece.replace(literal, "")
        piece = piece.strip()
        if piece:
            calls.append(parse_tool_call_content(piece))
    return calls


def extract_tag_content(content: str, tag_type: str) -> ParsedReasoningContent:
    """Interpret the content of one closed tag according to its semantic type."""
    parsed = ParsedReasoningContent(has_special_tags=True)
    stripped = content.strip()
    if not stripped:
        return parsed
    if tag_type == "thinking":
        parsed.thoughts.append(stripped)
    elif tag_type == "tool_reasoning":
        parsed.tool_calls.extend(_split_tool_calls(content))
    else:
        parsed.raw_content.append(stripped)
    return parsed


def has_special_tags(text: Optional[str]) -> bool:
    return bool(text) and any(tag in text for tag in ALL_TAGS)


def _find_closing(tokens: List[str], start: int, end_tag: str) -> int:
    for j in range(start, len(tokens)):
        if tokens[j] == end_tag:
            return j
    return -1


def parse_reasoning_content(content: Optional[str]) -> ParsedReasoningContent:
    """Parse a complete string into thoughts, tool calls and raw text."""
    result = ParsedReasoningContent()
    if not content:
        return result
    if not has_special_tags(content):
        result.raw_content.append(content)
        return result
    result.has_special_tags = True

    tokens = [t for t in _TAG_SPLIT_RE.split(content) if t]
    i = 0
    while i < len(tokens):
        token = tokens[i]
        if token in (THINK_START, TOOL_CALLS_BEGIN, TOOL_CALL_BEGIN, REASONING_START):
            end_tag = {
                THINK_START: THINK_END,
                TOOL_CALLS_BEGIN: TOOL_CALLS_END,
                TOOL_CALL_BEGIN: TOOL_CALL_END,
                REASONING_START: REASONING_END,
            }[token]
            j = _find_closing(tokens, i + 1, end_tag)
            # unterminated section takes the rest of the text
            stop = j if j >= 0 else len(tokens)
            section = "".join(tokens[i + 1 : stop])
            result.extend(extract_tag_content(section, semantic_tag_type(token)))
            i = stop + 1
        elif token == TOOL_CALL_MARKER:
            j = i + 1
            while j < len(tokens) and tokens[j] not in ALL_TAGS:
                j += 1
            thought = "".join(tokens[i + 1 : j]).strip()
            if thought:
                result.thoughts.append(thought)
            i = j
        elif token in ALL_TAGS:
            # stray end tag or separator
            i += 1
        else:
            text = token.strip()
            if text:
                result.raw_content.append(text)
            i += 1
    return result


def clean_content(content: Optional[str]) -> str:
    """Strip every tag literal and collapse blank-line runs. Idempotent."""
    if not content:
        return ""
    cleaned = content
    while True:
        previous = cleaned
        for tag in ALL_TAGS:
            cleaned = cleaned.replace(tag, "")
        cleaned = _BLANK_LINES_RE.sub("\n", cleaned).strip()
        if cleaned == previous:
            return cleaned


def _find_partial_tag(buffer: str) -> Optional[PartialTagMatch]:
    for tag in _TAGS_LONGEST_FIRST:
        for length in range(min(len(tag) - 1, len(buffer)), 0, -1):
            if buffer.endswith(tag[:length]):
                return PartialTagMatch(tag=tag, matched_length=length)
    return None


def _find_complete_tags(buffer: str) -> List[Tuple[int, str]]:
    found: List[Tuple[int, int, int, str]] = []
    for order, tag in enumerate(ALL_TAGS):
        start = buffer.find(tag)
        while start != -1:
            found.append((start, -len(tag), order, tag))
            start = buffer.find(tag, start + len(tag))
    found.sort()
    return [(index, tag) for index, _, _, tag in found]


class StreamingTagParser:
    """Incremental tag parser for one logical message.

    Feed fragments with ``process_chunk`` in arrival order and call
    ``finalize`` once the stream ends. Text outside any tag is passed
    through as ``text`` segments; the content of a closed tag is rendered
    by the tag's semantic type.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._stack: List[TagStackEntry] = []
        self._tag_content = ""
        self._partial: Optional[PartialTagMatch] = None

    def process_chunk(self, delta: str) -> StreamTagResult:
        result = StreamTagResult()
        if not delta:
            result.has_partial_tag = self._partial is not None
            return result
        self._buffer += delta

        partial = _find_partial_tag(self._buffer)
        if partial is not None:
            # cannot decide yet whether the tail is a tag; withhold the chunk
            self._partial = partial
            result.has_partial_tag = True
            return result

        self._partial = None
        self._consume(result)
        return result

    def finalize(self) -> StreamTagResult:
        """Flush withheld text and any still-open tag content, then reset."""
        result = StreamTagResult()
        if self._buffer:
            self._consume(result)
        if self._stack:
            outer = self._stack[0]
            result.tag_type = outer.type
            extracted = extract_tag_content(self._tag_content, outer.type)
            if not extracted.is_empty():
                result.add_extracted(extracted)
        self.reset()
        return result

    def reset(self) -> None:
        self._buffer = ""
        self._stack = []
        self._tag_content = ""
        self._partial = None

    def get_state(self) -> TagParserState:
        return TagParserState(
            buffer=self._buffer,
            tag_stack=[TagStackEntry(e.type, e.tag, e.start_index) for e in self._stack],
            tag_content_buffer=self._tag_content,
            partial_tag_match=(
                PartialTagMatch(self._partial.tag, self._partial.matched_length) if self._partial else None
            ),
        )

    def _consume(self, result: StreamTagResult) -> None:
        buffer = self._buffer
        pos = 0
        for index, tag in _find_complete_tags(buffer):
            if index < pos:
                continue
            self._route_text(buffer[pos:index], result)
            pos = index + len(tag)
            if tag in START_TAGS:
                self._open(tag, index, result)
            elif tag in END_TAGS:
                self._close(tag, result)
            elif self._stack:
                # separators and bare markers only mean something inside a tag
                self._tag_content += tag
        self._route_text(buffer[pos:], result)
        self._buffer = ""

    def _route_text(self, text: str, result: StreamTagResult) -> None:
        if not text:
            return
        if self._stack:
            self._tag_content += text
        else:
            result.segments.append(Segment("text", text))

    def _open(self, tag: str, index: int, result: StreamTagResult) -> None:
        entry = TagStackEntry(type=semantic_tag_type(tag), tag=tag, start_index=index)
        if self._stack:
            self._tag_content += tag
        else:
            self._tag_content = ""
            result.is_tag_start = True
            result.tag_type = entry.type
        self._stack.append(entry)

    def _close(self, tag: str, result: StreamTagResult) -> None:
        start_tag = TAG_PAIRS[tag]
        for i in range(len(self._stack) - 1, -1, -1):
            if self._stack[i].tag == start_tag:
                break
        else:
            return
        closed = self._stack.pop(i)
        if self._stack:
            self._tag_content += tag
            return
        content = self._tag_content
        self._tag_content = ""
        result.is_tag_end = True
        result.tag_type = closed.type
        result.add_extracted(extract_tag_content(content, closed.type))

"""Stream-json parser — turns assistant stdout into activity events.

The assistant writes one JSON object per line. Lines can be empty, truncated,
not JSON at all, or split across pipe reads; none of that is fatal. Decoding
happens in two steps: ``decode_message`` maps a line onto a closed set of
message types, and ``StreamParser`` turns messages into ``ActivityEvent``s while
tracking which tool calls are still open.
"""

from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Iterator, Union

from .models import (
    ActivityEvent,
    Commit,
    ResultSummary,
    Thought,
    ToolComplete,
    ToolStart,
)

OUTPUT_EXCERPT_LIMIT = 2000

_GIT_COMMIT_RE = re.compile(r"(?:^|[\s;&|(])git\s+(?:-\S+\s+)*commit(?:\s|$)")
_COMMIT_OUTPUT_RE = re.compile(
    r"^\[(?P<branch>[^\s\]]+)(?: \(root-commit\))?\s+(?P<hash>[a-f0-9]{7,40})\]\s+(?P<msg>.+)$",
    re.MULTILINE,
)


# --- Message layer ---


@dataclass(frozen=True)
class SystemMessage:
    session_id: str | None = None
    model: str | None = None
    subtype: str | None = None


@dataclass(frozen=True)
class AssistantMessage:
    content: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class UserMessage:
    content: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class ResultMessage:
    is_error: bool = False
    text: str = ""
    duration_ms: int | None = None
    num_turns: int | None = None
    cost_usd: float | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    session_id: str | None = None


@dataclass(frozen=True)
class UnknownMessage:
    type: str = ""


Message = Union[SystemMessage, AssistantMessage, UserMessage, ResultMessage, UnknownMessage]


def _content_blocks(obj: dict) -> list[dict[str, Any]]:
    message = obj.get("message")
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    if not isinstance(content, list):
        return []
    return [b for b in content if isinstance(b, dict)]


def _int_or_none(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


def _decode_result(obj: dict) -> ResultMessage:
    # claude -p puts the fields at the top level with the final text in
    # "result"; older producers nest them in a "result" object instead.
    nested = obj.get("result")
    src = nested if isinstance(nested, dict) else obj
    usage = src.get("usage") if isinstance(src.get("usage"), dict) else {}
    cost = src.get("total_cost_usd")
    is_error = bool(src.get("is_error", False))
    if obj.get("subtype", "success") not in ("success", None) and "is_error" not in src:
        is_error = True
    return ResultMessage(
        is_error=is_error,
        text=nested if isinstance(nested, str) else "",
        duration_ms=_int_or_none(src.get("duration_ms")),
        num_turns=_int_or_none(src.get("num_turns")),
        cost_usd=float(cost) if isinstance(cost, (int, float)) else None,
        input_tokens=_int_or_none(usage.get("input_tokens")) or 0,
        output_tokens=_int_or_none(usage.get("output_tokens")) or 0,
        session_id=src.get("session_id") or obj.get("session_id"),
    )


def decode_message(line: str) -> Message | None:
    """Decode one stream line. Returns None for blank or non-JSON lines."""
    line = line.strip()
    if not line:
        return None
    try:
        obj = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(obj, dict):
        return None

    msg_type = obj.get("type", "")
    if msg_type == "system":
        message = obj.get("message") if isinstance(obj.get("message"), dict) else {}
        return SystemMessage(
            session_id=obj.get("session_id"),
            model=obj.get("model") or message.get("model"),
            subtype=obj.get("subtype"),
        )
    if msg_type == "assistant":
        return AssistantMessage(content=_content_blocks(obj))
    if msg_type == "user":
        return UserMessage(content=_content_blocks(obj))
    if msg_type == "result":
        return _decode_result(obj)
    return UnknownMessage(type=str(msg_type))


# --- Commit detection ---


def is_git_commit(command: str) -> bool:
    """True if a shell command line runs ``git commit``."""
    return bool(_GIT_COMMIT_RE.search(command.strip()))


def parse_commit_output(output: str) -> tuple[str, str] | None:
    """Extract (hash, subject) from ``git commit`` output, if recognisable."""
    match = _COMMIT_OUTPUT_RE.search(output)
    if not match:
        return None
    return match.group("hash"), match.group("msg").strip()


def result_text(content: Any) -> str:
    """Flatten tool_result content (string or list of text parts)."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, dict):
                text = part.get("text")
                if isinstance(text, str):
                    parts.append(text)
            elif isinstance(part, str):
                parts.append(part)
        return "".join(parts)
    if content is None:
        return ""
    return str(content)


# --- Event layer ---


@dataclass
class _OpenTool:
    name: str
    input: dict[str, Any]
    started_at: float


class StreamParser:
    """Incremental parser for one iteration's stdout."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._buffer = b""
        self._open: dict[str, _OpenTool] = {}
        self.session_id: str | None = None
        self.model: str | None = None
        self.lines_seen = 0
        self.lines_skipped = 0

    @property
    def open_tool_ids(self) -> list[str]:
        return list(self._open)

    def feed(self, chunk: bytes) -> list[ActivityEvent]:
        """Consume a raw chunk and return the events of every completed line."""
        self._buffer += chunk
        events: list[ActivityEvent] = []
        while b"\n" in self._buffer:
            raw_line, self._buffer = self._buffer.split(b"\n", 1)
            events.extend(self.parse_line(raw_line.decode("utf-8", errors="replace")))
        return events

    def flush(self) -> list[ActivityEvent]:
        """Parse whatever is left in the buffer once the stream has ended."""
        raw, self._buffer = self._buffer, b""
        if not raw.strip():
            return []
        return self.parse_line(raw.decode("utf-8", errors="replace"))

    def parse_line(self, line: str) -> list[ActivityEvent]:
        if not line.strip():
            return []
        self.lines_seen += 1
        message = decode_message(line)
        if message is None:
            self.lines_skipped += 1
            return []
        try:
            return self._handle(message)
        except (AttributeError, KeyError, TypeError, ValueError):
            self.lines_skipped += 1
            return []

    def _handle(self, message: Message) -> list[ActivityEvent]:
        if isinstance(message, SystemMessage):
            self.session_id = message.session_id or self.session_id
            self.model = message.model or self.model
            return []
        if isinstance(message, AssistantMessage):
            events: list[ActivityEvent] = []
            for block in message.content:
                events.extend(self._assistant_block(block))
            return events
        if isinstance(message, UserMessage):
            events = []
            for block in message.content:
                if block.get("type") == "tool_result":
                    events.extend(self._tool_result(block))
            return events
        if isinstance(message, ResultMessage):
            self.session_id = message.session_id or self.session_id
            return [
                ResultSummary(
                    is_error=message.is_error,
                    text=message.text,
                    duration_ms=message.duration_ms,
                    num_turns=message.num_turns,
                    cost_usd=message.cost_usd,
                    input_tokens=message.input_tokens,
                    output_tokens=message.output_tokens,
                )
            ]
        return []

    def _assistant_block(self, block: dict[str, Any]) -> list[ActivityEvent]:
        btype = block.get("type")
        if btype == "text":
            text = block.get("text")
            return [Thought(text)] if isinstance(text, str) and text.strip() else []
        if btype == "thinking":
            text = block.get("thinking")
            return [Thought(text)] if isinstance(text, str) and text.strip() else []
        if btype == "tool_use":
            tool_id = str(block.get("id", ""))
            name = str(block.get("name") or "?")
            tool_input = block.get("input")
            if not isinstance(tool_input, dict):
                tool_input = {}
            self._open[tool_id] = _OpenTool(name, tool_input, self._clock())
            return [ToolStart(tool_id, name, tool_input)]
        if btype == "tool_result":
            return self._tool_result(block)
        return []

    def _tool_result(self, block: dict[str, Any]) -> list[ActivityEvent]:
        tool_id = str(block.get("tool_use_id", ""))
        output = result_text(block.get("content"))
        is_error = bool(block.get("is_error", False))
        opened = self._open.pop(tool_id, None)
        if opened is None:
            return [
                ToolComplete(
                    tool_id=tool_id,
                    name="?",
                    output=output[:OUTPUT_EXCERPT_LIMIT],
                    is_error=is_error,
                    duration=None,
                    orphaned=True,
                )
            ]

        events: list[ActivityEvent] = [
            ToolComplete(
                tool_id=tool_id,
                name=opened.name,
                output=output[:OUTPUT_EXCERPT_LIMIT],
                is_error=is_error,
                duration=max(0.0, self._clock() - opened.started_at),
                input=opened.input,
            )
        ]
        if opened.name == "Bash" and not is_error:
            command = opened.input.get("command")
            if isinstance(command, str) and is_git_commit(command):
                commit = parse_commit_output(output)
                if commit:
                    events.append(Commit(*commit))
        return events


def iter_events(
    lines: Iterable[str], parser: StreamParser | None = None
) -> Iterator[ActivityEvent]:
    """Lazily parse an iterable of lines (e.g. a saved iter-N.jsonl file)."""
    parser = parser or StreamParser()
    for line in lines:
        yield from parser.parse_line(line)

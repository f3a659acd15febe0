"""Stats tracking, activity log, failure context and the run report file."""

from __future__ import annotations

import json
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from .models import (
    ActivityEvent,
    Commit,
    FailureContext,
    IterationPhase,
    IterationResult,
    ResultSummary,
    Stats,
    Thought,
    ToolComplete,
    ToolStart,
)
from .tools import (
    CATEGORY_VERBS,
    COMMAND,
    META,
    READ,
    WRITE,
    format_tool_input,
    short_name,
    tool_category,
    tool_description,
)

MAX_ACTIVITY_LOG_SIZE = 50
FAILURE_ACTIVITY_COUNT = 5
FAILURE_OUTPUT_LIMIT = 500
TASK_TEXT_LIMIT = 100

_ACTIVITY_BY_CATEGORY = {
    READ: "reading",
    WRITE: "editing",
    COMMAND: "running",
    META: "thinking",
}


@dataclass(frozen=True)
class ActivityItem:
    """One line of the bounded activity log."""

    kind: str
    timestamp: float
    text: str = ""
    tool_id: str = ""
    tool_name: str = ""
    description: str = ""
    duration: float | None = None
    is_error: bool = False
    orphaned: bool = False

    def render(self) -> str:
        if self.kind == "thought":
            return f"💭 {self.text[:100]}"
        if self.kind == "tool_start":
            return f"▶ {self.description}"
        if self.kind == "tool_complete":
            icon = "✗" if self.is_error else "✓"
            if self.duration is None:
                return f"{icon} {self.description} (orphaned)"
            return f"{icon} {self.description} ({self.duration:.1f}s)"
        if self.kind == "commit":
            return f"📝 {self.text}"
        return self.text


@dataclass
class ToolCall:
    tool_id: str
    name: str
    category: str
    input: dict[str, Any]
    started_at: float
    output: str | None = None
    is_error: bool = False
    duration: float | None = None


class IterationTracker:
    """Folds the activity events of one iteration into counters and a log.

    Counters only ever increase, and ``tools_completed + tools_errored`` never
    exceeds ``tools_started``: completions without a matching start are kept
    for diagnostics but never counted.
    """

    def __init__(
        self,
        iteration: int = 1,
        total_iterations: int = 1,
        clock: Callable[[], float] = time.time,
        max_log: int = MAX_ACTIVITY_LOG_SIZE,
    ) -> None:
        self.iteration = iteration
        self.total_iterations = total_iterations
        self._clock = clock
        self.started_at = clock()
        self.phase = IterationPhase.IDLE
        self.activity = "idle"
        self.task_text: str | None = None
        self.stats = Stats()
        self.open_tools: dict[str, ToolCall] = {}
        self.completed_tools: list[ToolCall] = []
        self.orphaned: list[ToolComplete] = []
        self.commits: list[Commit] = []
        self.result: ResultSummary | None = None
        self.activity_log: deque[ActivityItem] = deque(maxlen=max_log)

    def start(self) -> None:
        self.phase = IterationPhase.RUNNING
        self.activity = "thinking"

    def finish(self) -> None:
        self.phase = IterationPhase.DONE

    @property
    def last_commit(self) -> Commit | None:
        return self.commits[-1] if self.commits else None

    def apply(self, event: ActivityEvent) -> None:
        if isinstance(event, Thought):
            self._thought(event)
        elif isinstance(event, ToolStart):
            self._tool_start(event)
        elif isinstance(event, ToolComplete):
            self._tool_complete(event)
        elif isinstance(event, Commit):
            self.commits.append(event)
            self.activity_log.append(
                ActivityItem("commit", self._clock(), text=f"{event.hash[:7]} {event.message}")
            )
        elif isinstance(event, ResultSummary):
            self.result = event

    def _thought(self, event: Thought) -> None:
        text = event.text.strip()
        if not text:
            return
        if self.task_text is None:
            self.task_text = text[:TASK_TEXT_LIMIT]
        self.activity_log.append(ActivityItem("thought", self._clock(), text=text))
        if not self.open_tools:
            self.activity = "thinking"

    def _tool_start(self, event: ToolStart) -> None:
        category = tool_category(event.name)
        self.open_tools[event.tool_id] = ToolCall(
            event.tool_id, event.name, category, event.input, self._clock()
        )
        self.stats.tools_started += 1
        if category == READ:
            self.stats.reads += 1
        elif category == WRITE:
            self.stats.writes += 1
        elif category == COMMAND:
            self.stats.commands += 1
        else:
            self.stats.meta_ops += 1
        self.activity = _ACTIVITY_BY_CATEGORY[category]
        self.activity_log.append(
            ActivityItem(
                "tool_start",
                self._clock(),
                tool_id=event.tool_id,
                tool_name=event.name,
                description=tool_description(event.name, event.input),
            )
        )

    def _tool_complete(self, event: ToolComplete) -> None:
        call = self.open_tools.pop(event.tool_id, None)
        if call is None:
            self.orphaned.append(event)
            self.activity_log.append(
                ActivityItem(
                    "tool_complete",
                    self._clock(),
                    tool_id=event.tool_id,
                    tool_name=event.name,
                    description=f"{event.name} {event.tool_id}".strip(),
                    is_error=event.is_error,
                    orphaned=True,
                )
            )
            return

        call.output = event.output
        call.is_error = event.is_error
        call.duration = (
            event.duration
            if event.duration is not None
            else max(0.0, self._clock() - call.started_at)
        )
        self.completed_tools.append(call)
        if event.is_error:
            self.stats.tools_errored += 1
        else:
            self.stats.tools_completed += 1
        self._update_activity()
        self.activity_log.append(
            ActivityItem(
                "tool_complete",
                self._clock(),
                tool_id=call.tool_id,
                tool_name=call.name,
                description=tool_description(call.name, call.input),
                duration=call.duration,
                is_error=event.is_error,
            )
        )

    def _update_activity(self) -> None:
        categories = {t.category for t in self.open_tools.values()}
        if COMMAND in categories:
            self.activity = "running"
        elif WRITE in categories:
            self.activity = "editing"
        elif READ in categories:
            self.activity = "reading"
        else:
            self.activity = "thinking"

    def elapsed(self) -> float:
        return self._clock() - self.started_at

    def coalesced_summary(self) -> str:
        """One-line description of what the assistant is doing right now."""
        if self.phase == IterationPhase.DONE:
            return f"Done ({self.stats.tools_completed} tools)"
        if not self.open_tools:
            return "Waiting..." if self.phase == IterationPhase.IDLE else "Thinking..."

        by_category: dict[str, list[str]] = {}
        for call in self.open_tools.values():
            by_category.setdefault(call.category, []).append(
                short_name(call.name, call.input)
            )
        parts = []
        for category, names in by_category.items():
            verb = CATEGORY_VERBS[category]
            if len(names) <= 3:
                parts.append(f"{verb} {', '.join(names)}")
            else:
                parts.append(f"{verb} {len(names)} items")
        return " • ".join(parts)


def build_failure_context(tracker: IterationTracker) -> FailureContext:
    """Snapshot the last tool and recent activity of a failed iteration."""
    tool: ToolCall | None = next(
        (t for t in reversed(tracker.completed_tools) if t.is_error), None
    )
    if tool is None and tracker.completed_tools:
        tool = tracker.completed_tools[-1]
    if tool is None and tracker.open_tools:
        tool = list(tracker.open_tools.values())[-1]

    recent = [item.render() for item in list(tracker.activity_log)[-FAILURE_ACTIVITY_COUNT:]]
    recent.reverse()

    return FailureContext(
        last_tool_name=tool.name if tool else None,
        last_tool_input=format_tool_input(tool.input) if tool and tool.input else None,
        last_tool_output=(
            tool.output[:FAILURE_OUTPUT_LIMIT] if tool and tool.output is not None else None
        ),
        recent_activity=tuple(r for r in recent if r),
    )


def write_stats(
    output_dir: Path,
    started: str,
    settings: dict,
    iterations: list[IterationResult],
    outcome: str | None = None,
) -> None:
    """Write cumulative stats to stats.json."""
    totals_stats = sum((it.stats for it in iterations), Stats())
    totals = {
        "iterations": len(iterations),
        "duration_s": round(sum(it.duration for it in iterations), 1),
        "cost_usd": round(sum(it.cost_usd or 0.0 for it in iterations), 4),
        "input_tokens": sum(it.input_tokens for it in iterations),
        "output_tokens": sum(it.output_tokens for it in iterations),
        "commits": sum(len(it.commits) for it in iterations),
        "stats": totals_stats.to_dict(),
    }
    stats = {
        "started": started,
        "settings": settings,
        "outcome": outcome,
        "iterations": [it.to_dict() for it in iterations],
        "totals": totals,
    }
    output_dir.mkdir(parents=True, exist_ok=True)
    (output_dir / "stats.json").write_text(json.dumps(stats, indent=2, default=str))

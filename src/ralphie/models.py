"""Data models for ralphie."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, fields
from typing import Any, Union

from .errors import IterationError


class ExitCode(enum.IntEnum):
    COMPLETE = 0
    STUCK = 1
    MAX_ITERATIONS = 2
    ERROR = 3


class RunState(str, enum.Enum):
    SELECTING_TASK = "selecting-task"
    ITERATING = "iterating"
    COMPLETE = "complete"
    STUCK = "stuck"
    MAX_ITERATIONS = "max-iterations"
    ERROR = "error"

    @property
    def exit_code(self) -> ExitCode:
        return _EXIT_CODES[self]


_EXIT_CODES = {
    RunState.COMPLETE: ExitCode.COMPLETE,
    RunState.STUCK: ExitCode.STUCK,
    RunState.MAX_ITERATIONS: ExitCode.MAX_ITERATIONS,
    RunState.ERROR: ExitCode.ERROR,
}


class IterationPhase(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    DONE = "done"


# --- Activity events (parser output) ---


@dataclass(frozen=True)
class Thought:
    text: str
    kind: str = "thought"


@dataclass(frozen=True)
class ToolStart:
    tool_id: str
    name: str
    input: dict[str, Any]
    kind: str = "tool_start"


@dataclass(frozen=True)
class ToolComplete:
    tool_id: str
    name: str
    output: str
    is_error: bool
    duration: float | None
    input: dict[str, Any] = field(default_factory=dict)
    orphaned: bool = False
    kind: str = "tool_complete"


@dataclass(frozen=True)
class Commit:
    hash: str
    message: str
    kind: str = "commit"


@dataclass(frozen=True)
class ResultSummary:
    is_error: bool
    text: str = ""
    duration_ms: int | None = None
    num_turns: int | None = None
    cost_usd: float | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    kind: str = "result"


ActivityEvent = Union[Thought, ToolStart, ToolComplete, Commit, ResultSummary]


# --- Aggregates ---


@dataclass
class Stats:
    """Tool counters for one iteration (or a whole run once summed)."""

    tools_started: int = 0
    tools_completed: int = 0
    tools_errored: int = 0
    reads: int = 0
    writes: int = 0
    commands: int = 0
    meta_ops: int = 0

    def __add__(self, other: Stats) -> Stats:
        return Stats(
            **{f.name: getattr(self, f.name) + getattr(other, f.name) for f in fields(self)}
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "toolsStarted": self.tools_started,
            "toolsCompleted": self.tools_completed,
            "toolsErrored": self.tools_errored,
            "reads": self.reads,
            "writes": self.writes,
            "commands": self.commands,
            "metaOps": self.meta_ops,
        }


@dataclass(frozen=True)
class FailureContext:
    """What the assistant was doing when an iteration failed."""

    last_tool_name: str | None
    last_tool_input: str | None
    last_tool_output: str | None
    recent_activity: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_tool_name": self.last_tool_name,
            "last_tool_input": self.last_tool_input,
            "last_tool_output": self.last_tool_output,
            "recent_activity": list(self.recent_activity),
        }


@dataclass
class IterationResult:
    """Result of a single assistant iteration."""

    iteration: int = 1
    total_iterations: int = 1
    phase: IterationPhase = IterationPhase.IDLE
    task_ids: tuple[str, ...] = ()
    text: str = ""
    started_at: float = 0.0
    duration: float = 0.0
    exit_code: int | None = None
    idle_timed_out: bool = False
    cancelled: bool = False
    saw_result: bool = False
    session_id: str | None = None
    stats: Stats = field(default_factory=Stats)
    commits: list[Commit] = field(default_factory=list)
    error: IterationError | None = None
    failure_context: FailureContext | None = None
    stderr_tail: list[str] = field(default_factory=list)
    # Usage is only populated when the iteration succeeded.
    cost_usd: float | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    num_turns: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None and not self.cancelled

    @property
    def status(self) -> str:
        if self.cancelled:
            return "cancelled"
        if self.error is not None:
            return self.error.kind
        return "ok"

    def to_dict(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "status": self.status,
            "tasks": list(self.task_ids),
            "duration_s": round(self.duration, 1),
            "exit_code": self.exit_code,
            "error": str(self.error) if self.error else None,
            "cost_usd": self.cost_usd,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "num_turns": self.num_turns,
            "stats": self.stats.to_dict(),
            "commits": [{"hash": c.hash, "message": c.message} for c in self.commits],
            "failure_context": (
                self.failure_context.to_dict() if self.failure_context else None
            ),
        }


@dataclass(frozen=True)
class RunResult:
    """Terminal output of a full run. Immutable once built."""

    state: RunState
    iterations: tuple[IterationResult, ...]
    duration: float = 0.0
    message: str = ""
    failure_context: FailureContext | None = None
    tasks_total: int = 0
    tasks_done: int = 0
    pending_task_ids: tuple[str, ...] = ()

    @property
    def exit_code(self) -> ExitCode:
        return self.state.exit_code

    @property
    def stats(self) -> Stats:
        return sum((it.stats for it in self.iterations), Stats())

    @property
    def cost_usd(self) -> float:
        return sum(it.cost_usd or 0.0 for it in self.iterations)

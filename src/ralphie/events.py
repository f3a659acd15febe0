"""Event sink interface and the headless JSON-lines emitter."""

from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from typing import IO, Any

from .models import ActivityEvent, Commit, IterationResult, RunResult, ToolComplete, ToolStart
from .progress import ProgressReport
from .spec import SpecSnapshot, SpecTask, TaskSelection
from .stats import IterationTracker
from .tools import COMMAND, META, READ, WRITE, tool_category

_HEADLESS_TOOL_TYPES = {READ: "read", WRITE: "write", COMMAND: "bash", META: "meta"}


class EventSink:
    """Receives lifecycle notifications from the orchestrator.

    Every method is a no-op here; renderers override what they display.
    """

    def run_started(
        self, snapshot: SpecSnapshot | None, model: str | None, harness: str
    ) -> None:
        pass

    def iteration_started(
        self, iteration: int, total: int, selection: TaskSelection | None
    ) -> None:
        pass

    def activity(self, event: ActivityEvent, tracker: IterationTracker) -> None:
        pass

    def task_completed(self, index: int, task: SpecTask) -> None:
        pass

    def iteration_done(self, result: IterationResult) -> None:
        pass

    def warning(self, kind: str, message: str, files: list[str] | None = None) -> None:
        pass

    def stuck(self, result: RunResult, report: ProgressReport) -> None:
        pass

    def max_iterations(self, result: RunResult) -> None:
        pass

    def run_complete(self, result: RunResult) -> None:
        pass

    def run_failed(self, result: RunResult) -> None:
        pass


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _tool_path(event: ToolStart) -> str | None:
    for key in ("file_path", "path", "command", "pattern", "url"):
        value = event.input.get(key)
        if isinstance(value, str) and value:
            return value
    return None


class HeadlessEmitter(EventSink):
    """Writes one JSON object per line, for scripts and CI."""

    def __init__(self, stream: IO[str] | None = None) -> None:
        self.stream = stream

    def emit(self, payload: dict[str, Any]) -> None:
        stream = self.stream or sys.stdout
        stream.write(json.dumps(payload, default=str) + "\n")
        stream.flush()

    def run_started(self, snapshot, model, harness) -> None:
        self.emit(
            {
                "event": "started",
                "spec": str(snapshot.path) if snapshot else None,
                "tasks": snapshot.total if snapshot else 0,
                "model": model,
                "harness": harness,
                "timestamp": _now(),
            }
        )

    def iteration_started(self, iteration, total, selection) -> None:
        self.emit(
            {
                "event": "iteration",
                "n": iteration,
                "total": total,
                "phase": "starting",
                "tasks": list(selection.task_ids) if selection else [],
            }
        )

    def activity(self, event, tracker) -> None:
        if isinstance(event, ToolStart):
            payload: dict[str, Any] = {
                "event": "tool",
                "type": _HEADLESS_TOOL_TYPES[tool_category(event.name)],
                "name": event.name,
            }
            path = _tool_path(event)
            if path is not None:
                payload["path"] = path
            self.emit(payload)
        elif isinstance(event, ToolComplete):
            self.emit(
                {
                    "event": "tool_done",
                    "name": event.name,
                    "duration_ms": (
                        int(event.duration * 1000) if event.duration is not None else None
                    ),
                    "error": event.is_error,
                    "orphaned": event.orphaned,
                }
            )
        elif isinstance(event, Commit):
            self.emit({"event": "commit", "hash": event.hash, "message": event.message})

    def task_completed(self, index, task) -> None:
        self.emit(
            {
                "event": "task_complete",
                "index": index,
                "id": task.id,
                "status": task.status,
                "text": task.title,
            }
        )

    def iteration_done(self, result) -> None:
        self.emit(
            {
                "event": "iteration_done",
                "n": result.iteration,
                "status": result.status,
                "duration_ms": int(result.duration * 1000),
                "stats": result.stats.to_dict(),
                "cost_usd": result.cost_usd,
                "error": str(result.error) if result.error else None,
            }
        )

    def warning(self, kind, message, files=None) -> None:
        event = {"event": "warning", "type": kind, "message": message}
        if files:
            event["files"] = list(files)
        self.emit(event)

    def stuck(self, result, report) -> None:
        self.emit(
            {
                "event": "stuck",
                "reason": "No task progress",
                "iterations_without_progress": report.stalled_iterations,
                "tasks": [t.id for t in report.unchanged],
            }
        )

    def max_iterations(self, result) -> None:
        self.emit(
            {
                "event": "max_iterations",
                "iterations": len(result.iterations),
                "tasks_pending": list(result.pending_task_ids),
            }
        )

    def run_complete(self, result) -> None:
        self.emit(
            {
                "event": "complete",
                "tasks_done": result.tasks_done,
                "total_duration_ms": int(result.duration * 1000),
            }
        )

    def run_failed(self, result) -> None:
        self.emit(
            {
                "event": "failed",
                "error": result.message,
                "failure_context": (
                    result.failure_context.to_dict() if result.failure_context else None
                ),
            }
        )

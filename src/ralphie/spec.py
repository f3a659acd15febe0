"""Spec snapshots and task selection.

The assistant owns the spec file and edits task statuses as it works. This
module only reads it: which tasks exist, their size and their status.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from .errors import SpecAmbiguous, SpecNotFound

PENDING = "pending"
IN_PROGRESS = "in_progress"
PASSED = "passed"
FAILED = "failed"

STATUSES = (PENDING, IN_PROGRESS, PASSED, FAILED)
TERMINAL_STATUSES = frozenset({PASSED, FAILED})

SIZE_POINTS = {"S": 1, "M": 2, "L": 4}
DEFAULT_SIZE = "M"
DEFAULT_BUDGET = 4

ACTIVE_SPECS_DIR = Path(".ralphie") / "specs" / "active"

_TASK_HEADER_RE = re.compile(r"^###\s+(T\d{3,})\s*:\s*(.*)$", re.MULTILINE)
_STATUS_RE = re.compile(r"^[-*]\s*Status\s*:\s*`?(\w+)`?", re.MULTILINE | re.IGNORECASE)
_SIZE_RE = re.compile(r"^[-*]\s*Size\s*:\s*`?([SML])\b", re.MULTILINE | re.IGNORECASE)
_TITLE_RE = re.compile(r"^#\s+(.+)$", re.MULTILINE)


@dataclass(frozen=True)
class SpecTask:
    id: str
    title: str
    status: str = PENDING
    size: str = DEFAULT_SIZE

    @property
    def points(self) -> int:
        return SIZE_POINTS.get(self.size, SIZE_POINTS[DEFAULT_SIZE])

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def display_text(self) -> str:
        return f"{self.id}: {self.title}" if self.title else self.id


@dataclass(frozen=True)
class SpecSnapshot:
    """Task state of the spec file at one point in time."""

    path: Path
    title: str
    tasks: tuple[SpecTask, ...]

    @property
    def total(self) -> int:
        return len(self.tasks)

    @property
    def statuses(self) -> dict[str, str]:
        return {t.id: t.status for t in self.tasks}

    @property
    def completed_texts(self) -> list[str]:
        return [t.display_text for t in self.tasks if t.terminal]

    @property
    def done_count(self) -> int:
        return sum(1 for t in self.tasks if t.terminal)

    @property
    def pending(self) -> list[SpecTask]:
        return [t for t in self.tasks if not t.terminal]

    @property
    def is_complete(self) -> bool:
        return all(t.terminal for t in self.tasks)


@dataclass(frozen=True)
class TaskSelection:
    selected: tuple[SpecTask, ...]
    skipped: tuple[SpecTask, ...]
    budget: int

    @property
    def points(self) -> int:
        return sum(t.points for t in self.selected)

    @property
    def task_ids(self) -> tuple[str, ...]:
        return tuple(t.id for t in self.selected)

    @property
    def warning(self) -> str | None:
        if self.selected or not self.skipped:
            return None
        smallest = min(self.skipped, key=lambda t: t.points)
        return (
            f"No pending task fits the budget of {self.budget} point(s); "
            f"smallest is {smallest.id} ({smallest.size}={smallest.points}pts)"
        )


def locate_active_spec(cwd: Path) -> Path:
    """Return the single active spec under .ralphie/specs/active/."""
    active = cwd / ACTIVE_SPECS_DIR
    if active.is_dir():
        files = sorted(
            p for p in active.iterdir()
            if p.suffix == ".md" and not p.name.startswith(".") and p.is_file()
        )
        if len(files) == 1:
            return files[0]
        if len(files) > 1:
            names = ", ".join(p.name for p in files)
            raise SpecAmbiguous(
                f"Multiple specs found in {active}: {names}. Only one active spec is allowed."
            )
    raise SpecNotFound(f"No spec found. Create one in {ACTIVE_SPECS_DIR}/")


def parse_tasks(content: str) -> list[SpecTask]:
    headers = list(_TASK_HEADER_RE.finditer(content))
    tasks: list[SpecTask] = []
    for i, match in enumerate(headers):
        end = headers[i + 1].start() if i + 1 < len(headers) else len(content)
        body = content[match.end():end]

        status_match = _STATUS_RE.search(body)
        status = status_match.group(1).lower() if status_match else PENDING
        if status not in STATUSES:
            status = PENDING
        size_match = _SIZE_RE.search(body)
        size = size_match.group(1).upper() if size_match else DEFAULT_SIZE

        tasks.append(SpecTask(match.group(1), match.group(2).strip(), status, size))
    return tasks


def parse_snapshot(content: str, path: Path) -> SpecSnapshot | None:
    tasks = parse_tasks(content)
    if not tasks:
        return None
    title_match = _TITLE_RE.search(content)
    title = title_match.group(1).strip() if title_match else path.stem
    return SpecSnapshot(path=path, title=title, tasks=tuple(tasks))


def read_snapshot(path: Path) -> SpecSnapshot | None:
    """Read the spec; None when it is missing, unreadable, or has no tasks."""
    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None
    return parse_snapshot(content, path)


def select_tasks(tasks: list[SpecTask] | tuple[SpecTask, ...], budget: int = DEFAULT_BUDGET) -> TaskSelection:
    """Greedily pick pending tasks in spec order while they fit the budget."""
    selected: list[SpecTask] = []
    skipped: list[SpecTask] = []
    remaining = budget
    for task in tasks:
        if task.terminal:
            continue
        if task.points <= remaining:
            selected.append(task)
            remaining -= task.points
        else:
            skipped.append(task)
    return TaskSelection(tuple(selected), tuple(skipped), budget)

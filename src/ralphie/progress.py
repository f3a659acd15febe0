"""Stuck detection — is the loop still moving tasks forward?"""

from __future__ import annotations

from dataclasses import dataclass

from .spec import TERMINAL_STATUSES, SpecSnapshot, SpecTask

DEFAULT_STUCK_THRESHOLD = 3


@dataclass(frozen=True)
class ProgressReport:
    progressed: bool
    stalled_iterations: int
    stuck: bool
    newly_terminal: tuple[SpecTask, ...] = ()
    unchanged: tuple[SpecTask, ...] = ()
    bypassed: bool = False


def newly_terminal_tasks(before: SpecSnapshot, after: SpecSnapshot) -> list[SpecTask]:
    """Tasks that went from pending/in_progress to passed/failed, in spec order."""
    previous = before.statuses
    return [
        t
        for t in after.tasks
        if t.status in TERMINAL_STATUSES
        and previous.get(t.id) not in TERMINAL_STATUSES
    ]


@dataclass
class ProgressDetector:
    """Counts consecutive iterations without task progress."""

    threshold: int = DEFAULT_STUCK_THRESHOLD
    last: SpecSnapshot | None = None
    stalled_iterations: int = 0

    def seed(self, snapshot: SpecSnapshot | None) -> None:
        self.last = snapshot

    def check(self, snapshot: SpecSnapshot | None, iteration: int) -> ProgressReport:
        if snapshot is None:
            # No spec context: neither progress nor stall can be judged.
            return ProgressReport(
                progressed=False,
                stalled_iterations=self.stalled_iterations,
                stuck=False,
                bypassed=True,
            )

        if self.last is None:
            self.last = snapshot
            self.stalled_iterations = 0
            return ProgressReport(progressed=True, stalled_iterations=0, stuck=False)

        newly = newly_terminal_tasks(self.last, snapshot)
        progressed = bool(newly) or (
            len(set(snapshot.completed_texts)) > len(set(self.last.completed_texts))
        )
        self.last = snapshot

        if progressed:
            self.stalled_iterations = 0
        else:
            self.stalled_iterations += 1

        stuck = (
            iteration > 1
            and not progressed
            and self.stalled_iterations >= self.threshold
        )
        return ProgressReport(
            progressed=progressed,
            stalled_iterations=self.stalled_iterations,
            stuck=stuck,
            newly_terminal=tuple(newly),
            unchanged=tuple(snapshot.pending),
        )


"""Run-level loop: select tasks, run one iteration, decide what happens next."""

from __future__ import annotations

import asyncio
import signal
import time
from pathlib import Path

from .config import RunConfig
from .display import debug_log
from .errors import RunInterrupted, SpecNotFound
from .events import EventSink
from .harness import Harness, get_harness
from .models import FailureContext, IterationResult, RunResult, RunState
from .progress import ProgressDetector, ProgressReport
from .prompt import build_prompt
from .runner import IterationProcess
from .spec import SpecSnapshot, TaskSelection, locate_active_spec, read_snapshot, select_tasks
from .stats import write_stats
from .stubs import find_todo_stubs

_HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)
SPEC_SETTLE_DELAY = 0.5


def _shrunk(before: SpecSnapshot | None, after: SpecSnapshot | None) -> bool:
    return before is not None and after is not None and after.total < before.total


class Orchestrator:
    """Drives iterations until the spec is complete, the loop is stuck,
    an iteration fails, or the iteration limit is reached.

    At most one assistant process exists at any time. ``run()`` returns a
    ``RunResult`` for every terminal state and raises ``RunInterrupted`` when
    a signal stopped the run.
    """

    def __init__(
        self,
        config: RunConfig,
        sink: EventSink | None = None,
        harness: Harness | None = None,
    ) -> None:
        self.config = config
        self.sink = sink or EventSink()
        self.harness = harness or get_harness(config.harness, config.harness_command)
        self.state = RunState.SELECTING_TASK
        self.detector = ProgressDetector(config.stuck_threshold)
        self.iterations: list[IterationResult] = []
        self.spec_path: Path | None = None
        self.snapshot: SpecSnapshot | None = None
        self.current: IterationProcess | None = None
        self.interrupted: str | None = None
        self._installed: list[signal.Signals] = []
        self._run_start = 0.0
        self._started = ""

    # --- Signals ---

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in _HANDLED_SIGNALS:
            loop.add_signal_handler(sig, self.interrupt, sig.name)
            self._installed.append(sig)

    def remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._installed:
            loop.remove_signal_handler(sig)
        self._installed.clear()

    def interrupt(self, signame: str = "SIGINT") -> None:
        """Stop the run: kill the running child and start no further iteration."""
        if self.interrupted is None:
            self.interrupted = signame
        debug_log(f"Received {signame}, stopping", self.config.debug)
        if self.current is not None:
            self.current.kill()

    def _check_interrupted(self) -> None:
        if self.interrupted is not None:
            self._write_stats("interrupted")
            raise RunInterrupted(self.interrupted, len(self.iterations))

    # --- Spec ---

    def _load_spec(self) -> None:
        try:
            self.spec_path = locate_active_spec(self.config.cwd)
        except SpecNotFound as e:
            debug_log(f"{e}; running without task context", self.config.debug)
            return
        self.snapshot = read_snapshot(self.spec_path)

    async def _reread_spec(self) -> SpecSnapshot | None:
        """Fresh snapshot, or None when it can't be trusted this iteration.

        A read with fewer tasks than before may have caught the file
        mid-write, so it is read once more after a short pause. If the
        second read parses, it is accepted as the new state of the spec.
        """
        if self.spec_path is None:
            return None
        previous = self.snapshot
        snapshot = read_snapshot(self.spec_path)
        if _shrunk(previous, snapshot):
            await asyncio.sleep(SPEC_SETTLE_DELAY)
            snapshot = read_snapshot(self.spec_path)
            if _shrunk(previous, snapshot):
                self.sink.warning(
                    "spec_shrunk",
                    f"Spec now has {snapshot.total} tasks, previously {previous.total}",
                )
        if snapshot is None:
            debug_log(f"Could not read {self.spec_path}", self.config.debug)
            return None
        self.snapshot = snapshot
        return snapshot

    # --- Loop ---

    async def run(self) -> RunResult:
        self._run_start = time.monotonic()
        self._started = time.strftime("%Y-%m-%d %H:%M:%S")
        self._load_spec()
        self.detector.seed(self.snapshot)
        self.sink.run_started(self.snapshot, self.config.model, self.harness.name)

        if self.snapshot is not None and self.snapshot.is_complete:
            return self._finish(RunState.COMPLETE, "All tasks already complete")

        total = self.config.max_iterations
        prev: IterationResult | None = None
        for n in range(1, total + 1):
            self._check_interrupted()

            self.state = RunState.SELECTING_TASK
            selection: TaskSelection | None = None
            if self.snapshot is not None:
                selection = select_tasks(self.snapshot.tasks, self.config.budget)
                if selection.warning:
                    self.sink.warning("budget", selection.warning)
            prompt = build_prompt(
                self.config.prompt, n, total, selection, self.snapshot, prev
            )

            self.state = RunState.ITERATING
            self.sink.iteration_started(n, total, selection)
            result = await self._run_iteration(n, total, prompt, selection)
            self.iterations.append(result)
            self.sink.iteration_done(result)
            self._write_stats()
            self._check_interrupted()

            outcome = await self._transition(result, n, total)
            if outcome is not None:
                return outcome
            prev = result

        # Only reached when the loop body never ran.
        return self._finish(RunState.MAX_ITERATIONS, f"Reached {total} iteration(s)")

    async def _run_iteration(
        self, n: int, total: int, prompt: str, selection: TaskSelection | None
    ) -> IterationResult:
        raw_log = None
        if self.config.output_dir is not None:
            self.config.output_dir.mkdir(parents=True, exist_ok=True)
            raw_log = self.config.output_dir / f"iter-{n}.jsonl"
        self.current = IterationProcess(
            self.harness,
            prompt,
            cwd=self.config.cwd,
            iteration=n,
            total_iterations=total,
            idle_timeout=self.config.idle_timeout,
            model=self.config.model,
            task_ids=selection.task_ids if selection else (),
            on_event=self.sink.activity,
            raw_log=raw_log,
            debug=self.config.debug,
        )
        if self.interrupted is not None:
            self.current.kill()
        try:
            return await self.current.run()
        finally:
            self.current = None

    async def _transition(self, result: IterationResult, n: int, total: int) -> RunResult | None:
        if result.error is not None and self.config.stop_on_error:
            return self._finish(
                RunState.ERROR,
                f"Iteration {n} failed: {result.error}",
                result.failure_context,
            )

        snapshot = await self._reread_spec()
        report = self.detector.check(snapshot, n)
        if snapshot is not None:
            positions = {t.id: i for i, t in enumerate(snapshot.tasks, 1)}
            for task in report.newly_terminal:
                self.sink.task_completed(positions[task.id], task)
        if report.newly_terminal:
            stubs = await find_todo_stubs(self.config.cwd)
            if stubs:
                self.sink.warning("todo_stub", "Completed tasks contain TODO/FIXME stubs", stubs)
        debug_log(
            f"Iteration {n}: progressed={report.progressed} "
            f"stalled={report.stalled_iterations} bypassed={report.bypassed}",
            self.config.debug,
        )

        if snapshot is not None and snapshot.is_complete:
            return self._finish(RunState.COMPLETE, "All tasks complete")

        if report.stuck:
            return self._finish(
                RunState.STUCK,
                f"No task progress for {report.stalled_iterations} iteration(s)",
                report=report,
            )

        if n >= total:
            return self._finish(RunState.MAX_ITERATIONS, f"Reached {total} iteration(s)")

        return None

    def _finish(
        self,
        state: RunState,
        message: str,
        failure_context: FailureContext | None = None,
        report: ProgressReport | None = None,
    ) -> RunResult:
        self.state = state
        snapshot = self.snapshot
        result = RunResult(
            state=state,
            iterations=tuple(self.iterations),
            duration=time.monotonic() - self._run_start,
            message=message,
            failure_context=failure_context,
            tasks_total=snapshot.total if snapshot else 0,
            tasks_done=snapshot.done_count if snapshot else 0,
            pending_task_ids=tuple(t.id for t in snapshot.pending) if snapshot else (),
        )
        self._write_stats(state.value)

        if state is RunState.COMPLETE:
            self.sink.run_complete(result)
        elif state is RunState.STUCK:
            assert report is not None
            self.sink.stuck(result, report)
        elif state is RunState.MAX_ITERATIONS:
            self.sink.max_iterations(result)
        else:
            self.sink.run_failed(result)
        return result

    def _write_stats(self, outcome: str | None = None) -> None:
        if self.config.output_dir is None:
            return
        write_stats(
            self.config.output_dir,
            self._started,
            self.config.settings(),
            self.iterations,
            outcome,
        )

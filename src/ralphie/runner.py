"""Iteration process manager — spawns and monitors a single assistant session."""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
import time
from pathlib import Path
from typing import Callable

from .display import debug_log
from .errors import (
    AssistantFailed,
    IdleTimeout,
    IterationError,
    MissingResult,
    ProcessCrashed,
    SpawnFailed,
)
from .harness import Harness
from .models import ActivityEvent, IterationPhase, IterationResult, ResultSummary
from .parser import StreamParser
from .stats import IterationTracker, build_failure_context

READ_CHUNK = 65536
STDERR_TAIL_LINES = 20
REAP_TIMEOUT = 10.0

EventCallback = Callable[[ActivityEvent, IterationTracker], None]


class IdleWatchdog:
    """One reschedulable timer: fires if ``reset()`` isn't called in time."""

    def __init__(self, timeout: float, on_expire: Callable[[], None]) -> None:
        self.timeout = timeout
        self._on_expire = on_expire
        self._loop = asyncio.get_running_loop()
        self._handle: asyncio.TimerHandle | None = None
        self._stopped = False
        self.expired = False

    def reset(self) -> None:
        if self.expired or self._stopped:
            return
        if self._handle is not None:
            self._handle.cancel()
        self._handle = self._loop.call_later(self.timeout, self._fire)

    start = reset

    def cancel(self) -> None:
        self._stopped = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self.expired = True
        self._on_expire()


def _signal_name(returncode: int) -> str:
    try:
        return signal.Signals(-returncode).name
    except ValueError:
        return f"signal {-returncode}"


class IterationProcess:
    """Owns spawn -> stream -> terminate for exactly one assistant process.

    ``run()`` always resolves with an ``IterationResult``; failures are stored
    on ``result.error``. Three things race while it runs: output arriving,
    the process closing and the idle watchdog firing. When the watchdog fires
    the read loop is abandoned at once and the child is killed before
    ``run()`` returns.
    """

    def __init__(
        self,
        harness: Harness,
        prompt: str,
        *,
        cwd: Path,
        iteration: int = 1,
        total_iterations: int = 1,
        idle_timeout: float = 120.0,
        model: str | None = None,
        task_ids: tuple[str, ...] = (),
        on_event: EventCallback | None = None,
        raw_log: Path | None = None,
        debug: bool = False,
    ) -> None:
        self.harness = harness
        self.prompt = prompt
        self.cwd = cwd
        self.iteration = iteration
        self.total_iterations = total_iterations
        self.idle_timeout = idle_timeout
        self.model = model
        self.task_ids = task_ids
        self.on_event = on_event
        self.raw_log = raw_log
        self.debug = debug

        self.tracker = IterationTracker(iteration, total_iterations)
        self.parser = StreamParser()
        self.stderr_lines: list[str] = []
        self.cancelled = False
        self._proc: asyncio.subprocess.Process | None = None
        self._watchdog: IdleWatchdog | None = None
        self._idle = asyncio.Event()

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    # --- Signals ---

    def _send(self, sig: int) -> None:
        # The child leads its own process group so tools it started die with it.
        if self._proc is None:
            return
        try:
            os.killpg(self._proc.pid, sig)
        except ProcessLookupError:
            pass

    def kill(self) -> None:
        """Cancel the iteration and kill the child immediately."""
        self.cancelled = True
        self._send(signal.SIGKILL)

    def _on_idle(self) -> None:
        # Resolve now; the child is killed on the way out if SIGTERM wasn't enough.
        debug_log(
            f"Iteration {self.iteration}: no output for {self.idle_timeout:g}s, terminating",
            self.debug,
        )
        self._send(signal.SIGTERM)
        self._idle.set()

    # --- Lifecycle ---

    async def run(self) -> IterationResult:
        result = IterationResult(
            iteration=self.iteration,
            total_iterations=self.total_iterations,
            task_ids=self.task_ids,
            started_at=time.time(),
        )
        start = time.monotonic()
        cmd = self.harness.command(self.model)
        debug_log(f"Spawning: {' '.join(cmd)}", self.debug)

        self.tracker.start()
        result.phase = IterationPhase.RUNNING
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(self.cwd),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            error = SpawnFailed(f"Failed to start {cmd[0]}: {e}")
            return self._finish(result, start, error)

        if self.cancelled:
            self._send(signal.SIGKILL)

        self._watchdog = IdleWatchdog(self.idle_timeout, self._on_idle)
        self._watchdog.start()
        stderr_task = asyncio.create_task(self._drain_stderr())
        pump_task = asyncio.create_task(self._pump_stdout())
        idle_task = asyncio.create_task(self._idle.wait())
        try:
            await self._write_prompt()
            await asyncio.wait({pump_task, idle_task}, return_when=asyncio.FIRST_COMPLETED)
            if not self._watchdog.expired:
                # Output is closed; from here on only the exit status matters.
                self._watchdog.cancel()
                pump_task.result()
                await self._reap()
                await asyncio.wait({stderr_task}, timeout=1.0)
        except asyncio.CancelledError:
            self.cancelled = True
            self._send(signal.SIGKILL)
            raise
        finally:
            self._watchdog.cancel()
            idle_task.cancel()
            pump_task.cancel()
            stderr_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await pump_task
            # A stderr line over the StreamReader limit ends the drain early.
            with contextlib.suppress(asyncio.CancelledError, ValueError):
                await stderr_task
            if self.running:
                self._send(signal.SIGKILL)
                await self._proc.wait()

        return self._finish(result, start, self._classify())

    async def _write_prompt(self) -> None:
        assert self._proc is not None and self._proc.stdin is not None
        try:
            self._proc.stdin.write(self.prompt.encode("utf-8"))
            await self._proc.stdin.drain()
            self._proc.stdin.close()
        except (BrokenPipeError, ConnectionResetError) as e:
            # The child died before reading its prompt; the exit status tells why.
            debug_log(f"Failed to write prompt: {e}", self.debug)

    async def _drain_stderr(self) -> None:
        assert self._proc is not None and self._proc.stderr is not None
        async for raw in self._proc.stderr:
            assert self._watchdog is not None
            self._watchdog.reset()
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                self.stderr_lines.append(line)
                del self.stderr_lines[:-STDERR_TAIL_LINES]
                debug_log(f"[stderr] {line}", self.debug)

    async def _pump_stdout(self) -> None:
        assert self._proc is not None and self._proc.stdout is not None
        assert self._watchdog is not None
        log_f = open(self.raw_log, "ab") if self.raw_log is not None else None
        try:
            while True:
                chunk = await self._proc.stdout.read(READ_CHUNK)
                if not chunk:
                    break
                self._watchdog.reset()
                if log_f is not None:
                    log_f.write(chunk)
                    log_f.flush()
                for event in self.parser.feed(chunk):
                    self._dispatch(event)
            for event in self.parser.flush():
                self._dispatch(event)
        finally:
            if log_f is not None:
                log_f.close()
        if self.parser.lines_skipped:
            debug_log(
                f"Skipped {self.parser.lines_skipped}/{self.parser.lines_seen} unparseable lines",
                self.debug,
            )

    def _dispatch(self, event: ActivityEvent) -> None:
        self.tracker.apply(event)
        if self.on_event is not None:
            self.on_event(event, self.tracker)

    async def _reap(self) -> None:
        assert self._proc is not None
        try:
            await asyncio.wait_for(self._proc.wait(), timeout=REAP_TIMEOUT)
        except asyncio.TimeoutError:
            self._send(signal.SIGKILL)
            await self._proc.wait()

    def _classify(self) -> IterationError | None:
        if self.cancelled:
            return None
        assert self._proc is not None and self._watchdog is not None
        if self._watchdog.expired:
            return IdleTimeout(self.idle_timeout)

        rc = self._proc.returncode
        summary = self.tracker.result
        if summary is None:
            message = f"Assistant exited with code {rc} without a result message"
            if rc is not None and rc < 0:
                message = f"Assistant killed by {_signal_name(rc)} without a result message"
            if self.stderr_lines:
                message += f": {self.stderr_lines[-1]}"
            return MissingResult(message)
        if summary.is_error:
            return AssistantFailed(summary.text or f"Assistant reported an error (exit {rc})")
        if rc is not None and rc < 0:
            return ProcessCrashed(f"Assistant killed by {_signal_name(rc)}")
        return None

    def _finish(
        self, result: IterationResult, start: float, error: IterationError | None
    ) -> IterationResult:
        self.tracker.finish()
        result.phase = IterationPhase.DONE
        result.duration = time.monotonic() - start
        result.exit_code = self._proc.returncode if self._proc is not None else None
        result.idle_timed_out = isinstance(error, IdleTimeout)
        result.cancelled = self.cancelled
        result.session_id = self.parser.session_id
        result.stats = self.tracker.stats
        result.commits = list(self.tracker.commits)
        result.stderr_tail = list(self.stderr_lines)
        result.error = error

        summary: ResultSummary | None = self.tracker.result
        result.saw_result = summary is not None
        if summary is not None and summary.text:
            result.text = summary.text
        else:
            thoughts = [i.text for i in self.tracker.activity_log if i.kind == "thought"]
            result.text = thoughts[-1] if thoughts else ""

        if error is not None:
            result.failure_context = build_failure_context(self.tracker)
        elif summary is not None and not self.cancelled:
            result.cost_usd = summary.cost_usd
            result.input_tokens = summary.input_tokens
            result.output_tokens = summary.output_tokens
            result.num_turns = summary.num_turns or 0
        return result

"""Terminal display helpers — colors, formatting, and the interactive renderer."""

from __future__ import annotations

import sys
import time
from typing import IO

from .events import EventSink
from .models import Commit, FailureContext, IterationResult, Thought, ToolComplete, ToolStart
from .tools import tool_description

# ANSI colors — 256-color for consistent rendering in iTerm2 + tmux
DIM = "\033[90m"
BOLD = "\033[1m"
RED = "\033[38;5;203m"
GREEN = "\033[38;5;114m"
YELLOW = "\033[38;5;221m"
BLUE = "\033[38;5;75m"
CYAN = "\033[38;5;81m"
WHITE = "\033[38;5;255m"
RESET = "\033[0m"
CLEAR_LINE = "\033[2K\r"

SPINNER_FRAMES = "⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏"
PANEL_WIDTH = 70


def fmt_duration(secs: float) -> str:
    if secs < 60:
        return f"{secs:.0f}s"
    m, s = divmod(int(secs), 60)
    if m < 60:
        return f"{m}m{s:02d}s"
    h, m = divmod(m, 60)
    return f"{h}h{m:02d}m"


def fmt_tokens(n: int) -> str:
    if n >= 1_000_000:
        return f"{n / 1_000_000:.1f}M"
    if n >= 1_000:
        return f"{n / 1_000:.0f}K"
    return str(n)


def log(msg: str) -> None:
    ts = time.strftime("%H:%M:%S")
    print(f"  {DIM}{ts}{RESET}  {msg}", flush=True)


def debug_log(msg: str, debug: bool) -> None:
    if debug:
        ts = time.strftime("%H:%M:%S")
        print(f"[{ts}] [DEBUG] {msg}", file=sys.stderr, flush=True)


def draw_box_line(text: str) -> str:
    ts = time.strftime("%H:%M:%S")
    return f"  {DIM}{ts}  {text}{RESET}"


class ConsoleSink(EventSink):
    """Live terminal view: one line per tool, plus a status line kept at the bottom."""

    def __init__(self, stream: IO[str] | None = None, live: bool | None = None) -> None:
        self.stream = stream
        self._live = live
        self._frame = 0
        self._status_shown = False

    @property
    def out(self) -> IO[str]:
        return self.stream or sys.stdout

    @property
    def live(self) -> bool:
        if self._live is None:
            return self.out.isatty()
        return self._live

    def _print(self, text: str = "") -> None:
        self._clear_status()
        print(text, file=self.out, flush=True)

    def _clear_status(self) -> None:
        if self._status_shown:
            print(CLEAR_LINE, end="", file=self.out)
            self._status_shown = False

    def _status(self, text: str) -> None:
        if not self.live:
            return
        char = SPINNER_FRAMES[self._frame % len(SPINNER_FRAMES)]
        self._frame += 1
        print(f"{CLEAR_LINE}  {CYAN}{char}{RESET}  {DIM}{text}{RESET}", end="", file=self.out, flush=True)
        self._status_shown = True

    def _failure(self, ctx: FailureContext | None) -> None:
        if ctx is None:
            return
        if ctx.last_tool_name:
            self._print(f"     {DIM}Last tool:{RESET} {WHITE}{ctx.last_tool_name}{RESET}")
        if ctx.last_tool_input:
            self._print(f"     {DIM}Input:{RESET}     {ctx.last_tool_input}")
        if ctx.last_tool_output:
            for line in ctx.last_tool_output.strip().splitlines()[-5:]:
                self._print(f"     {DIM}│ {line[:100]}{RESET}")
        if ctx.recent_activity:
            self._print(f"     {DIM}Recent activity:{RESET}")
            for item in ctx.recent_activity:
                self._print(f"       {DIM}{item}{RESET}")

    # --- EventSink ---

    def run_started(self, snapshot, model, harness) -> None:
        self._print()
        self._print(f"  {BOLD}{CYAN}◉ RALPHIE{RESET}")
        self._print(f"  {DIM}{'─' * PANEL_WIDTH}{RESET}")
        if snapshot is not None:
            self._print(
                f"  {DIM}Spec:{RESET} {WHITE}{snapshot.title}{RESET}  {DIM}│{RESET}  "
                f"{DIM}Tasks:{RESET} {WHITE}{snapshot.done_count}/{snapshot.total} done{RESET}"
            )
        else:
            self._print(f"  {YELLOW}No active spec — running without task context{RESET}")
        self._print(
            f"  {DIM}Harness:{RESET} {WHITE}{harness}{RESET}  {DIM}│{RESET}  "
            f"{DIM}Model:{RESET} {WHITE}{model or 'default'}{RESET}"
        )
        self._print(f"  {DIM}{'─' * PANEL_WIDTH}{RESET}")

    def iteration_started(self, iteration, total, selection) -> None:
        self._print(f"\n  {BOLD}{BLUE}━━━ Iteration {iteration}/{total} ━━━{RESET}")
        if selection is not None and selection.selected:
            for task in selection.selected:
                self._print(
                    f"  {DIM}▸{RESET} {WHITE}{task.id}{RESET} {task.title} {DIM}[{task.size}]{RESET}"
                )

    def activity(self, event, tracker) -> None:
        ts = time.strftime("%H:%M:%S")
        if isinstance(event, Thought):
            for tline in event.text.strip().splitlines()[:3]:
                self._print(draw_box_line(tline[:120]))
        elif isinstance(event, ToolStart):
            desc = tool_description(event.name, event.input)
            self._print(f"  {DIM}{ts}{RESET}  {CYAN}→{RESET} {DIM}{desc}{RESET}")
        elif isinstance(event, ToolComplete) and event.is_error:
            self._print(f"  {DIM}{ts}{RESET}  {RED}✗{RESET} {DIM}{event.name} failed{RESET}")
        elif isinstance(event, Commit):
            self._print(
                f"  {DIM}{ts}{RESET}  {GREEN}●{RESET} {WHITE}{event.hash[:7]}{RESET} {event.message}"
            )
        self._status(f"{fmt_duration(tracker.elapsed())}  {tracker.coalesced_summary()}")

    def task_completed(self, index, task) -> None:
        icon = f"{GREEN}✓{RESET}" if task.status == "passed" else f"{RED}✗{RESET}"
        self._print(f"  {icon}  {WHITE}{task.id}{RESET} {task.title} {DIM}({task.status}){RESET}")

    def iteration_done(self, result: IterationResult) -> None:
        if result.cancelled:
            icon, status_text = f"{YELLOW}✗{RESET}", f"{YELLOW}cancelled{RESET}"
        elif result.idle_timed_out:
            icon, status_text = f"{YELLOW}✗{RESET}", f"{YELLOW}timeout{RESET} (idle)"
        elif result.error is not None:
            icon, status_text = f"{RED}✗{RESET}", f"{RED}{result.error.kind}{RESET}"
        else:
            icon, status_text = f"{GREEN}✓{RESET}", f"{GREEN}done{RESET}"

        cost_str = f"${result.cost_usd:.2f}" if result.cost_usd else "$-"
        s = result.stats
        self._print(
            f"\n  {icon}  {status_text}  {DIM}│{RESET}  {fmt_duration(result.duration)}"
            f"  {DIM}│{RESET}  {cost_str}  {DIM}│{RESET}  "
            f"{fmt_tokens(result.input_tokens)} in / {fmt_tokens(result.output_tokens)} out"
            f"  {DIM}│{RESET}  {DIM}{s.reads}r {s.writes}w {s.commands}c {s.meta_ops}m{RESET}"
        )
        if result.error is not None:
            self._print(f"     {RED}{result.error}{RESET}")
            self._failure(result.failure_context)

    def warning(self, kind, message, files=None) -> None:
        self._print(f"  {YELLOW}⚠{RESET}  {message}")
        for name in files or ():
            self._print(f"     {DIM}{name}{RESET}")

    def stuck(self, result, report) -> None:
        self._print(
            f"\n  {BOLD}{YELLOW}◉ Stuck:{RESET} no task progress for "
            f"{report.stalled_iterations} iteration(s)"
        )
        for task in report.unchanged:
            self._print(f"     {DIM}{task.id} {task.title} ({task.status}){RESET}")
        self._summary(result)

    def max_iterations(self, result) -> None:
        self._print(
            f"\n  {BOLD}{YELLOW}◉ Max iterations reached{RESET} "
            f"({len(result.iterations)}) — {len(result.pending_task_ids)} task(s) still pending"
        )
        self._summary(result)

    def run_complete(self, result) -> None:
        self._print(f"\n  {BOLD}{GREEN}◉ All tasks complete!{RESET}")
        self._summary(result)

    def run_failed(self, result) -> None:
        self._print(f"\n  {BOLD}{RED}◉ Run failed:{RESET} {result.message}")
        self._summary(result)

    def _summary(self, result) -> None:
        s = result.stats
        total_in = sum(it.input_tokens for it in result.iterations)
        total_out = sum(it.output_tokens for it in result.iterations)
        self._print()
        self._print(f"  {DIM}{'━' * PANEL_WIDTH}{RESET}")
        self._print(f"  {BOLD}{WHITE}Summary{RESET}")
        self._print(f"  {DIM}{'─' * PANEL_WIDTH}{RESET}")
        self._print(
            f"  {DIM}Iterations:{RESET}   {WHITE}{len(result.iterations)}{RESET}"
            f"  {DIM}│{RESET}  {DIM}Time:{RESET} {WHITE}{fmt_duration(result.duration)}{RESET}"
            f"  {DIM}│{RESET}  {DIM}Cost:{RESET} {BOLD}${result.cost_usd:.2f}{RESET}"
            f"  {DIM}│{RESET}  {DIM}Tokens:{RESET} {WHITE}{fmt_tokens(total_in)} in / "
            f"{fmt_tokens(total_out)} out{RESET}"
        )
        self._print(
            f"  {DIM}Tasks:{RESET}        {WHITE}{result.tasks_done}/{result.tasks_total}{RESET}"
            f"  {DIM}│{RESET}  {DIM}Tools:{RESET} {WHITE}{s.tools_started}{RESET} "
            f"{DIM}({s.tools_errored} errored){RESET}"
        )
        self._print(f"  {DIM}{'━' * PANEL_WIDTH}{RESET}")
        self._print()

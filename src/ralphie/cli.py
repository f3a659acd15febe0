"""ralphie CLI — runs the assistant in a loop against the active spec."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from .config import DEFAULT_IDLE_TIMEOUT, MAX_ALL_ITERATIONS, build_config
from .display import DIM, RED, RESET, YELLOW, ConsoleSink, log
from .errors import ConfigError, RunInterrupted, SpecAmbiguous
from .events import EventSink, HeadlessEmitter
from .models import ExitCode
from .orchestrator import Orchestrator

INTERRUPTED_EXIT = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ralphie",
        description="Run a coding assistant in a loop until the active spec is done.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run iterations against the active spec")
    count = run.add_mutually_exclusive_group()
    count.add_argument(
        "-n", "--iterations", type=int, help="Number of iterations (default: 1)"
    )
    count.add_argument(
        "--all",
        action="store_true",
        dest="run_until_done",
        help=f"Run until done (up to {MAX_ALL_ITERATIONS} iterations)",
    )
    run.add_argument(
        "--timeout-idle",
        type=float,
        dest="idle_timeout",
        help=f"Kill an iteration after this many silent seconds (default: {DEFAULT_IDLE_TIMEOUT:g})",
    )
    run.add_argument(
        "--stuck-threshold",
        type=int,
        help="Iterations without task progress before giving up (default: 3)",
    )
    run.add_argument("--budget", type=int, help="Task size points per iteration (default: 4)")
    run.add_argument("-m", "--model", help="Model to use (default: sonnet)")
    run.add_argument("--harness", help="Assistant harness (default: claude)")
    run.add_argument(
        "--harness-command",
        help="Custom command speaking stream-json; overrides --harness",
    )
    run.add_argument(
        "--headless", action="store_true", help="Emit JSON events on stdout instead of the UI"
    )
    run.add_argument(
        "--continue-on-error",
        action="store_true",
        help="Keep looping after a failed iteration",
    )
    run.add_argument(
        "--output-dir",
        type=Path,
        help="Write raw iteration logs and stats.json here",
    )
    run.add_argument("--prompt", help="Base prompt (default: built-in)")
    run.add_argument("--cwd", type=Path, default=Path.cwd(), help="Project directory")
    run.add_argument("--debug", action="store_true", help="Enable debug output")
    return parser


def _error(msg: str, headless: bool) -> None:
    if headless:
        HeadlessEmitter().emit({"event": "failed", "error": msg})
    else:
        print(f"  {RED}{msg}{RESET}", file=sys.stderr)


async def async_main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = build_config(
            args.cwd,
            iterations=args.iterations,
            run_until_done=args.run_until_done or None,
            idle_timeout=args.idle_timeout,
            stuck_threshold=args.stuck_threshold,
            budget=args.budget,
            model=args.model,
            harness=args.harness,
            harness_command=args.harness_command,
            stop_on_error=False if args.continue_on_error else None,
            prompt=args.prompt,
            output_dir=args.output_dir,
            debug=args.debug or None,
        )
    except ConfigError as e:
        _error(str(e), args.headless)
        return ExitCode.ERROR

    sink: EventSink = HeadlessEmitter() if args.headless else ConsoleSink()
    orchestrator = Orchestrator(config, sink)
    orchestrator.install_signal_handlers()
    try:
        result = await orchestrator.run()
    except SpecAmbiguous as e:
        _error(str(e), args.headless)
        return ExitCode.ERROR
    except RunInterrupted as e:
        if args.headless:
            HeadlessEmitter().emit({"event": "failed", "error": str(e)})
        else:
            log(f"{YELLOW}{e}.{RESET}")
        return INTERRUPTED_EXIT
    finally:
        orchestrator.remove_signal_handlers()

    if config.output_dir is not None and not args.headless:
        print(f"  {DIM}Output:{RESET}      {config.output_dir}")
    return int(result.exit_code)


def main() -> None:
    """Entry point for the ralphie CLI."""
    try:
        code = asyncio.run(async_main())
    except KeyboardInterrupt:
        print(f"\n{DIM}Interrupted.{RESET}", flush=True)
        code = INTERRUPTED_EXIT
    sys.exit(code)


if __name__ == "__main__":
    main()

"""Exception types for ralphie.

Configuration problems are raised. Iteration errors are *captured*: the process
manager stores an instance on the iteration result and the orchestrator decides
what to do with it.
"""

from __future__ import annotations


class RalphieError(Exception):
    """Base class for all ralphie errors."""


class ConfigError(RalphieError):
    pass


class HarnessNotFound(ConfigError):
    def __init__(self, name: str, known: list[str]) -> None:
        super().__init__(f"Unknown harness '{name}' (known: {', '.join(known)})")
        self.name = name


class SpecNotFound(RalphieError):
    pass


class SpecAmbiguous(RalphieError):
    pass


class RunInterrupted(RalphieError):
    """Raised by the orchestrator after a SIGINT/SIGTERM stopped the run."""

    def __init__(self, signame: str, iterations_started: int) -> None:
        super().__init__(f"Interrupted by {signame}")
        self.signame = signame
        self.iterations_started = iterations_started


# --- Iteration-fatal errors ---


class IterationError(RalphieError):
    kind = "error"


class SpawnFailed(IterationError):
    kind = "spawn_failed"


class IdleTimeout(IterationError):
    kind = "idle_timeout"

    def __init__(self, seconds: float) -> None:
        super().__init__(f"Idle timeout: no output for {seconds:g}s")
        self.seconds = seconds


class MissingResult(IterationError):
    kind = "missing_result"


class AssistantFailed(IterationError):
    kind = "assistant_error"


class ProcessCrashed(IterationError):
    kind = "crashed"

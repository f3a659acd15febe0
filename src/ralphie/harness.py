"""Harnesses — which assistant binary is spawned, and how."""

from __future__ import annotations

import shlex

from .errors import HarnessNotFound


class Harness:
    """Builds the command line of an assistant that speaks stream-json.

    The prompt is always delivered on stdin.
    """

    name = "base"

    def command(self, model: str | None = None) -> list[str]:
        raise NotImplementedError


class ClaudeHarness(Harness):
    name = "claude"

    def __init__(self, binary: str = "claude", skip_permissions: bool = True) -> None:
        self.binary = binary
        self.skip_permissions = skip_permissions

    def command(self, model: str | None = None) -> list[str]:
        cmd = [
            self.binary,
            "-p",
            "--verbose",
            "--output-format", "stream-json",
        ]
        if model:
            cmd.extend(["--model", model])
        if self.skip_permissions:
            cmd.extend(["--permission-mode", "bypassPermissions"])
        return cmd


class CommandHarness(Harness):
    """Any user-supplied command that emits the same stream-json protocol."""

    name = "command"

    def __init__(self, argv: list[str] | str) -> None:
        self.argv = shlex.split(argv) if isinstance(argv, str) else list(argv)
        if not self.argv:
            raise ValueError("CommandHarness needs a non-empty command")

    def command(self, model: str | None = None) -> list[str]:
        return list(self.argv)


HARNESSES: dict[str, type[Harness]] = {
    ClaudeHarness.name: ClaudeHarness,
}


def get_harness(name: str = "claude", command: str | None = None) -> Harness:
    """Resolve a harness by name; a custom command always wins."""
    if command:
        return CommandHarness(command)
    try:
        return HARNESSES[name]()
    except KeyError:
        raise HarnessNotFound(name, sorted(HARNESSES)) from None

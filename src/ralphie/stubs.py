"""TODO/FIXME stub detection in files touched by the latest commit."""

from __future__ import annotations

import asyncio
import re
from pathlib import Path

GIT_TIMEOUT = 30
SOURCE_SUFFIXES = {".py", ".ts", ".tsx", ".js", ".jsx"}

STUB_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"//\s*TODO:",
        r"//\s*FIXME:",
        r"#\s*TODO:",
        r"#\s*FIXME:",
        r"throw new Error\(['\"]Not implemented",
        r"raise NotImplementedError",
    )
]


async def _git_lines(cwd: Path, *args: str) -> list[str] | None:
    """Run git and return its non-empty output lines, or None if it failed."""
    try:
        proc = await asyncio.create_subprocess_exec(
            "git",
            *args,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError:
        return None
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=GIT_TIMEOUT)
    except asyncio.TimeoutError:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
        return None
    if proc.returncode != 0:
        return None
    text = stdout.decode("utf-8", errors="replace") if stdout else ""
    return [line.strip() for line in text.splitlines() if line.strip()]


async def changed_files(cwd: Path) -> list[str]:
    """Files changed by the last commit; uncommitted changes if there is only one."""
    files = await _git_lines(cwd, "diff", "--name-only", "--relative", "HEAD~1", "HEAD")
    if files is None:
        files = await _git_lines(cwd, "diff", "--name-only", "--relative", "HEAD")
    return files or []


def has_stub(text: str) -> bool:
    return any(p.search(text) for p in STUB_PATTERNS)


async def find_todo_stubs(cwd: Path) -> list[str]:
    """Changed source files (relative to ``cwd``) that still contain stubs."""
    found = []
    for name in await changed_files(cwd):
        path = cwd / name
        if path.suffix not in SOURCE_SUFFIXES or not path.is_file():
            continue
        try:
            text = path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            continue
        if has_stub(text):
            found.append(name)
    return found

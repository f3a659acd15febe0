"""Tool classification and description formatting."""

from __future__ import annotations

import json
from typing import Any

READ = "read"
WRITE = "write"
COMMAND = "command"
META = "meta"

TOOL_CATEGORIES = {
    "Read": READ,
    "Grep": READ,
    "Glob": READ,
    "LS": READ,
    "WebFetch": READ,
    "WebSearch": READ,
    "LSP": READ,
    "Edit": WRITE,
    "MultiEdit": WRITE,
    "Write": WRITE,
    "NotebookEdit": WRITE,
    "Bash": COMMAND,
    "TodoWrite": META,
    "Task": META,
    "AskUserQuestion": META,
    "EnterPlanMode": META,
    "ExitPlanMode": META,
}

CATEGORY_VERBS = {
    READ: "Reading",
    WRITE: "Editing",
    COMMAND: "Running",
    META: "Processing",
}


def tool_category(name: str) -> str:
    """Map a tool name to read/write/command/meta. Unknown names are meta."""
    return TOOL_CATEGORIES.get(name, META)


def _basename(path: str) -> str:
    return path.rstrip("/").split("/")[-1] or path


def tool_description(name: str, inp: dict[str, Any] | None) -> str:
    """Create a compact, readable description of a tool call."""
    inp = inp if isinstance(inp, dict) else {}
    if name == "Task":
        desc = inp.get("description", "")
        return f"Agent: {desc}" if desc else "Agent"
    if name == "Read":
        path = inp.get("file_path", "")
        return f"Read {_basename(path)}" if path else "Read"
    if name == "Bash":
        cmd = inp.get("command", "")
        return f"$ {cmd[:60]}" if cmd else "Bash"
    if name == "Grep":
        pattern = inp.get("pattern", "")
        return f"Search: {pattern[:50]}" if pattern else "Search"
    if name == "Glob":
        pattern = inp.get("pattern", "")
        return f"Glob: {pattern}" if pattern else "Glob"
    if name in ("Edit", "MultiEdit", "Write", "NotebookEdit"):
        path = inp.get("file_path") or inp.get("notebook_path", "")
        return f"{name} {_basename(path)}" if path else name
    if name == "WebFetch":
        url = inp.get("url", "")
        return f"Fetch: {url[:50]}" if url else "WebFetch"
    # Generic fallback, strip the MCP prefix
    if name.startswith("mcp__"):
        return name.split("__")[-1]
    return name


def short_name(name: str, inp: dict[str, Any] | None) -> str:
    """Short target of a tool call (file name, command word, pattern)."""
    inp = inp if isinstance(inp, dict) else {}
    if name in ("Read", "Edit", "Write") and isinstance(inp.get("file_path"), str):
        return _basename(inp["file_path"])
    if name == "Bash" and isinstance(inp.get("command"), str):
        cmd = inp["command"].split(" ")[0]
        return cmd[:20] + "..." if len(cmd) > 20 else cmd
    if name in ("Glob", "Grep") and isinstance(inp.get("pattern"), str):
        pattern = inp["pattern"]
        return pattern[:20] + "..." if len(pattern) > 20 else pattern
    return name


def format_tool_input(inp: dict[str, Any] | None) -> str:
    """Pick the most telling field of a tool input for diagnostics."""
    inp = inp if isinstance(inp, dict) else {}
    if inp.get("command"):
        return f"command: {str(inp['command'])[:200]}"
    if inp.get("file_path"):
        return f"file: {inp['file_path']}"
    if inp.get("pattern"):
        return f"pattern: {inp['pattern']}"
    if inp.get("prompt"):
        return f"prompt: {str(inp['prompt'])[:100]}"
    try:
        return json.dumps(inp, default=str)[:200]
    except (TypeError, ValueError):
        return repr(inp)[:200]

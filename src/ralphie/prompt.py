"""Prompt construction for each iteration."""

from __future__ import annotations

from .models import IterationResult
from .spec import SpecSnapshot, TaskSelection

DEFAULT_PROMPT = """You are Ralphie, an autonomous coding assistant.

Work through the tasks of the active spec in .ralphie/specs/active/.
Tasks are identified by IDs like T001 and carry a `- Status:` line.

1. Set the task's status to `in_progress` before starting it.
2. Implement it with tests and run its verify command.
3. Set the status to `passed` (or `failed` if it cannot be done).
4. Commit with the task ID in the message.

Never leave TODO/FIXME stubs in a task marked passed."""


def _error_context(prev: IterationResult) -> str:
    if prev.error is None:
        return ""
    if prev.idle_timed_out:
        text = (
            "The previous iteration timed out due to inactivity. "
            "It likely got stuck waiting for a tool call or response. "
            "Try smaller, faster operations and avoid long-running commands."
        )
    elif prev.error.kind == "missing_result":
        text = (
            "The previous iteration ended without finishing its session "
            f"({prev.error}). Check the spec and git log for what was completed "
            "and continue from there."
        )
    else:
        text = f"The previous iteration failed: {prev.error}"

    ctx = prev.failure_context
    if ctx is not None and ctx.last_tool_name:
        text += f"\n\nLast tool: {ctx.last_tool_name}"
        if ctx.last_tool_input:
            text += f" ({ctx.last_tool_input})"
        if ctx.last_tool_output:
            text += f"\n```\n{ctx.last_tool_output}\n```"
    return text


def build_prompt(
    base_prompt: str,
    iteration: int,
    total: int,
    selection: TaskSelection | None = None,
    snapshot: SpecSnapshot | None = None,
    prev_result: IterationResult | None = None,
) -> str:
    parts: list[str] = []

    parts.append(base_prompt or DEFAULT_PROMPT)
    parts.append("")
    parts.append("---")
    parts.append(f"## Outer Loop (Iteration {iteration}/{total})")
    parts.append("")
    parts.append(
        "You're in an outer loop. Each iteration is a fresh session "
        "with no memory of previous sessions; the spec file is the shared state."
    )
    parts.append("")

    if snapshot is not None:
        parts.append(f"Spec: `{snapshot.path}` ({snapshot.done_count}/{snapshot.total} tasks done)")
        parts.append("")

    if selection is not None:
        if selection.selected:
            parts.append("### Tasks for This Iteration")
            parts.append(f"Task IDs: {', '.join(selection.task_ids)}")
            for task in selection.selected:
                parts.append(f"- {task.display_text} [{task.size}]")
            parts.append("")
            parts.append(
                "Work only on these tasks. Update each task's status in the spec "
                "when you finish it."
            )
            parts.append("")
        elif selection.warning:
            # Degraded: nothing fits, let the assistant pick the next pending task.
            parts.append("### Budget Warning")
            parts.append(selection.warning)
            parts.append(
                "Work on the first pending task, splitting it into smaller steps if needed."
            )
            parts.append("")

    if prev_result is not None:
        ctx = _error_context(prev_result)
        if ctx:
            parts.append("### Previous Iteration Status")
            parts.append(ctx)
            parts.append("")

    if iteration > 1:
        parts.append("### Iteration Discipline")
        parts.append("- **Read the spec first.** Task statuses show what is already done.")
        parts.append("- **Never redo completed work.** Skip tasks marked passed or failed.")
        parts.append("- **If stuck, try a different approach** rather than repeating what failed.")
        parts.append("")

    return "\n".join(parts).rstrip() + "\n"

"""Minimal agent instructions written to ``prompt.md``."""

from __future__ import annotations

from attosprint.protocol.models import SprintPaths, TrackerTask


def render_prompt(task: TrackerTask, phase: str, branch_name: str, feedback: str | None = None) -> str:
    result_path = f"{SprintPaths.ACTIVE}/{task.id}/{SprintPaths.RESULT}"
    lines = [f"# {task.title}", "", f"Task id: {task.id}", f"Branch: {branch_name}", ""]
    if task.description:
        lines += [task.description, ""]
    if phase == "review":
        lines += [
            "Review the changes on this branch against the task above.",
            f'When finished, write {{"status": "approved"}} or {{"status": "rejected", "notes": "..."}} '
            f"to {result_path}.",
        ]
    else:
        lines += [
            "Implement the task above in this worktree and commit your work.",
            f'When finished, write {{"status": "success", "summary": "..."}} to {result_path}, '
            'or {"status": "failed", "summary": "..."} if you could not complete it.',
        ]
    if feedback:
        lines += ["", "## Feedback from the previous attempt", "", feedback]
    return "\n".join(lines) + "\n"

"""attosprint error hierarchy."""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorCategory(StrEnum):
    """Category of error for classification and handling."""

    WORKFLOW = "workflow"
    CONFIGURATION = "configuration"
    GIT = "git"
    AGENT = "agent"
    TRACKER = "tracker"
    INTERNAL = "internal"


class AttosprintError(Exception):
    """Base error for all attosprint exceptions."""

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory = ErrorCategory.INTERNAL,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.category = category
        self.retryable = retryable
        self.details: dict[str, Any] = details or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str(self)!r}, category={self.category!r})"


class WorkflowValidationError(AttosprintError):
    """A workflow definition is structurally invalid.

    ``str(exc)`` names the first issue; ``issues`` carries all of them.
    """

    def __init__(self, message: str, issues: list[str]) -> None:
        super().__init__(
            f"Workflow validation failed: {message}",
            category=ErrorCategory.WORKFLOW,
            retryable=False,
            details={"issues": list(issues)},
        )
        self.issues = list(issues)


class ConfigurationError(AttosprintError):
    """Invalid or missing configuration."""

    def __init__(self, message: str) -> None:
        super().__init__(message, category=ErrorCategory.CONFIGURATION, retryable=False)


class GitCommandError(AttosprintError):
    """A git invocation exited non-zero."""

    def __init__(self, args: list[str], returncode: int, stderr: str = "") -> None:
        super().__init__(
            f"git {' '.join(args)} failed ({returncode}): {stderr.strip()}",
            category=ErrorCategory.GIT,
            retryable=False,
            details={"args": list(args), "returncode": returncode},
        )
        self.git_args = list(args)
        self.returncode = returncode
        self.stderr = stderr


class AgentSpawnError(AttosprintError):
    """The agent CLI could not be launched."""

    def __init__(self, message: str, *, agent_type: str | None = None) -> None:
        super().__init__(message, category=ErrorCategory.AGENT, retryable=True)
        self.agent_type = agent_type


class TaskNotFoundError(AttosprintError):
    """The tracker has no task with the requested id."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}", category=ErrorCategory.TRACKER)
        self.task_id = task_id

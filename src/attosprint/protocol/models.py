"""On-disk data model for attosprint.

Everything here is serialized as snake_case JSON.  Timestamps are epoch
seconds (floats).
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Literal

from attosprint.config.schema import AgentConfig

AgentRole = Literal["coder", "reviewer", "merger"]
SuccessCondition = Literal["tests_pass", "review_approved", "manual_approval", "merge_clean", "always"]
StepStatus = Literal["pending", "in_progress", "completed", "failed", "skipped"]
TaskPhase = Literal["coding", "review", "merge"]
SessionStatus = Literal["success", "approved", "rejected", "failed", "crashed", "timeout"]

AGENT_ROLES: frozenset[str] = frozenset({"coder", "reviewer", "merger"})
SUCCESS_CONDITIONS: frozenset[str] = frozenset(
    {"tests_pass", "review_approved", "manual_approval", "merge_clean", "always"}
)
PHASE_BY_ROLE: dict[str, TaskPhase] = {"coder": "coding", "reviewer": "review", "merger": "merge"}


class SprintPaths:
    """Relative on-disk layout shared by every component."""

    ROOT = ".attosprint"
    ACTIVE = ".attosprint/active"
    ASSIGNMENT = "assignment.json"
    HEARTBEAT = "heartbeat.json"
    OUTPUT_LOG = "agent-output.log"
    RESULT = "result.json"
    PROMPT = "prompt.md"
    STATE = ".attosprint/orchestrator-state.json"
    WORKFLOW = ".attosprint/workflow.json"
    SESSIONS = ".attosprint/sessions"
    SESSIONS_DB = ".attosprint/sessions.db"
    EVENTS = ".attosprint/events.jsonl"
    TASKS = ".attosprint/tasks.json"
    # Directory names under ACTIVE with this prefix are reserved, never task ids.
    RESERVED_PREFIX = "_"


def active_root(base_path: str | Path) -> Path:
    return Path(base_path) / SprintPaths.ACTIVE


def active_dir(base_path: str | Path, task_id: str) -> Path:
    return active_root(base_path) / task_id


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class StepRetryPolicy:
    max_attempts: int = 3
    escalate_model: bool = False


@dataclass(slots=True)
class WorkflowStep:
    id: str
    name: str
    agent_role: AgentRole
    success_condition: SuccessCondition = "always"
    depends_on: list[str] = field(default_factory=list)
    retry_policy: StepRetryPolicy = field(default_factory=StepRetryPolicy)


@dataclass(slots=True)
class WorkflowDefinition:
    id: str
    name: str
    version: int
    steps: list[WorkflowStep] = field(default_factory=list)

    def step(self, step_id: str) -> WorkflowStep | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> WorkflowDefinition:
        """Build from JSON; raises ``KeyError``/``TypeError``/``ValueError`` on wrong shape."""
        steps_raw = raw["steps"]
        if not isinstance(steps_raw, list):
            raise TypeError("steps must be a list")
        steps: list[WorkflowStep] = []
        for item in steps_raw:
            if not isinstance(item, dict):
                raise TypeError("each step must be an object")
            role = str(item["agent_role"])
            condition = str(item.get("success_condition", "always"))
            if role not in AGENT_ROLES:
                raise ValueError(f"unknown agent_role {role!r}")
            if condition not in SUCCESS_CONDITIONS:
                raise ValueError(f"unknown success_condition {condition!r}")
            retry_raw = item.get("retry_policy") or {}
            steps.append(
                WorkflowStep(
                    id=str(item["id"]),
                    name=str(item.get("name", item["id"])),
                    agent_role=role,  # type: ignore[arg-type]
                    success_condition=condition,  # type: ignore[arg-type]
                    depends_on=[str(d) for d in item.get("depends_on", [])],
                    retry_policy=StepRetryPolicy(
                        max_attempts=int(retry_raw.get("max_attempts", 3)),
                        escalate_model=bool(retry_raw.get("escalate_model", False)),
                    ),
                )
            )
        return cls(
            id=str(raw["id"]),
            name=str(raw.get("name", raw["id"])),
            version=int(raw.get("version", 1)),
            steps=steps,
        )


@dataclass(slots=True)
class WorkflowExecutionState:
    workflow_id: str
    task_id: str
    step_states: dict[str, StepStatus] = field(default_factory=dict)
    current_step_id: str | None = None


# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class TrackerTask:
    id: str
    title: str
    description: str = ""
    status: str = "open"          # open | in_progress | blocked | closed
    assignee: str = ""
    priority: int = 2
    labels: list[str] = field(default_factory=list)
    blocked_by: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Active-directory records
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class TaskAssignment:
    task_id: str
    project_id: str
    phase: TaskPhase
    branch_name: str
    worktree_path: str
    prompt_path: str
    agent_config: AgentConfig = field(default_factory=AgentConfig)
    attempt: int = 1
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> TaskAssignment:
        agent_raw = raw.get("agent_config") or {}
        return cls(
            task_id=str(raw["task_id"]),
            project_id=str(raw.get("project_id", "")),
            phase=raw.get("phase", "coding"),
            branch_name=str(raw.get("branch_name", "")),
            worktree_path=str(raw.get("worktree_path", "")),
            prompt_path=str(raw.get("prompt_path", "")),
            agent_config=AgentConfig(
                type=str(agent_raw.get("type", "claude")),
                model=str(agent_raw.get("model", "")),
                cli_command=agent_raw.get("cli_command"),
            ),
            attempt=int(raw.get("attempt", 1)),
            created_at=float(raw.get("created_at", 0.0)),
        )


@dataclass(slots=True)
class HeartbeatRecord:
    pid: int
    last_output_timestamp: float
    heartbeat_timestamp: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> HeartbeatRecord:
        return cls(
            pid=int(raw["pid"]),
            last_output_timestamp=float(raw.get("last_output_timestamp", 0.0)),
            heartbeat_timestamp=float(raw.get("heartbeat_timestamp", 0.0)),
        )


@dataclass(slots=True)
class PersistedOrchestratorState:
    project_id: str
    current_task_id: str | None = None
    current_task_title: str | None = None
    current_phase: TaskPhase | None = None
    branch_name: str | None = None
    worktree_path: str | None = None
    agent_pid: int | None = None
    attempt: int = 1
    started_at: float | None = None
    last_transition: float = field(default_factory=time.time)
    last_output_timestamp: float | None = None
    queue_depth: int = 0
    total_completed: int = 0
    total_failed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> PersistedOrchestratorState:
        allowed = set(cls.__dataclass_fields__.keys())
        return cls(**{k: v for k, v in raw.items() if k in allowed})


@dataclass(slots=True)
class TestResults:
    __test__ = False  # not a pytest class

    passed: int = 0
    failed: int = 0
    skipped: int = 0
    total: int = 0
    raw_output: str = ""

    @property
    def ok(self) -> bool:
        return self.failed == 0


@dataclass(slots=True, frozen=True)
class AgentSession:
    task_id: str
    attempt: int
    agent_type: str
    agent_model: str
    started_at: float
    completed_at: float
    status: SessionStatus
    output_log: str = ""
    git_branch: str = ""
    git_diff: str = ""
    test_results: dict[str, Any] | None = None
    failure_reason: str | None = None
    summary: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class OrchestratorEvent:
    """A single notification for UI/observability consumers."""

    type: str               # agent.started | agent.output | agent.completed | task.updated | build.status
    project_id: str
    task_id: str = ""
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

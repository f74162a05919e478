"""Configuration schema for attosprint YAML files."""

from __future__ import annotations

from dataclasses import dataclass, field

MAX_OUTPUT_LOG_BYTES = 5 * 1024 * 1024


@dataclass(slots=True)
class AgentConfig:
    type: str = "claude"          # claude | codex | custom
    model: str = ""               # empty string = the CLI's own default model
    cli_command: list[str] | None = None  # argv prefix for type=custom


@dataclass(slots=True)
class TimingConfig:
    heartbeat_interval_seconds: float = 10.0
    inactivity_check_seconds: float = 30.0
    inactivity_timeout_seconds: float = 300.0
    recovery_poll_seconds: float = 30.0
    kill_grace_seconds: float = 5.0
    watchdog_interval_seconds: float = 300.0
    output_tail_poll_seconds: float = 0.15
    stale_heartbeat_seconds: float = 120.0
    loop_idle_seconds: float = 5.0


@dataclass(slots=True)
class PipelineConfig:
    review_mode: str = "always"   # always | never
    base_branch: str = "main"
    branch_prefix: str = "attosprint/"
    worktree_base: str = ""       # empty = <tmp>/attosprint-worktrees
    test_command: list[str] = field(default_factory=lambda: ["python", "-m", "pytest", "-q"])
    max_output_log_bytes: int = MAX_OUTPUT_LOG_BYTES
    escalation_model: str = ""
    push_after_merge: bool = True


@dataclass(slots=True)
class AgentsConfig:
    coder: AgentConfig = field(default_factory=AgentConfig)
    reviewer: AgentConfig = field(default_factory=AgentConfig)


@dataclass(slots=True)
class ArchiveConfig:
    keep_sessions: int = 100
    retention_interval_seconds: float = 3600.0
    db_path: str = ""           # empty: the repo's own db for one project, ~/.attosprint for several


@dataclass(slots=True)
class ProjectConfig:
    project_id: str
    repo_path: str


@dataclass(slots=True)
class SprintYamlConfig:
    version: int = 1
    timing: TimingConfig = field(default_factory=TimingConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    archive: ArchiveConfig = field(default_factory=ArchiveConfig)
    projects: list[ProjectConfig] = field(default_factory=list)

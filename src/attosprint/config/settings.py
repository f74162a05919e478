"""Per-project settings resolved from the YAML config."""

from __future__ import annotations

from dataclasses import dataclass, field

from attosprint.config.schema import AgentConfig, SprintYamlConfig


@dataclass(slots=True)
class ProjectSettings:
    review_mode: str = "always"
    coder: AgentConfig = field(default_factory=AgentConfig)
    reviewer: AgentConfig = field(default_factory=AgentConfig)
    escalation_model: str = ""
    push_after_merge: bool = True


class StaticSettingsProvider:
    """Serves the same settings to every project, with optional per-project overrides."""

    def __init__(
        self,
        default: ProjectSettings | None = None,
        overrides: dict[str, ProjectSettings] | None = None,
    ) -> None:
        self._default = default or ProjectSettings()
        self._overrides = dict(overrides or {})

    @classmethod
    def from_config(cls, cfg: SprintYamlConfig) -> StaticSettingsProvider:
        return cls(
            ProjectSettings(
                review_mode=cfg.pipeline.review_mode,
                coder=cfg.agents.coder,
                reviewer=cfg.agents.reviewer,
                escalation_model=cfg.pipeline.escalation_model,
                push_after_merge=cfg.pipeline.push_after_merge,
            )
        )

    def get_settings(self, project_id: str) -> ProjectSettings:
        return self._overrides.get(project_id, self._default)

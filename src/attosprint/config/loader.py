"""YAML config loader for attosprint."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from attosprint.config.schema import (
    AgentConfig,
    AgentsConfig,
    ArchiveConfig,
    PipelineConfig,
    ProjectConfig,
    SprintYamlConfig,
    TimingConfig,
)
from attosprint.errors import ConfigurationError

DEFAULT_CONFIG_NAME = "attosprint.yaml"
_REVIEW_MODES = {"always", "never"}


def load_sprint_yaml(path: str | Path) -> SprintYamlConfig:
    p = Path(path)
    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) if p.exists() else {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Cannot parse {p}: {exc}") from exc
    if not isinstance(raw, dict):
        raw = {}

    timing_raw = _section(raw, "timing")
    pipeline_raw = _section(raw, "pipeline")
    agents_raw = _section(raw, "agents")
    archive_raw = _section(raw, "archive")

    timing = TimingConfig(**_pick(timing_raw, TimingConfig))
    pipeline = PipelineConfig(**_pick(pipeline_raw, PipelineConfig))
    if pipeline.review_mode not in _REVIEW_MODES:
        raise ConfigurationError(
            f"pipeline.review_mode must be one of {sorted(_REVIEW_MODES)}, got {pipeline.review_mode!r}"
        )
    if isinstance(pipeline.test_command, str):
        pipeline.test_command = pipeline.test_command.split()

    agents = AgentsConfig(
        coder=parse_agent_config(agents_raw.get("coder")),
        reviewer=parse_agent_config(agents_raw.get("reviewer")),
    )
    archive = ArchiveConfig(**_pick(archive_raw, ArchiveConfig))

    projects: list[ProjectConfig] = []
    raw_projects = raw.get("projects", [])
    if isinstance(raw_projects, list):
        for item in raw_projects:
            if isinstance(item, dict) and "project_id" in item and "repo_path" in item:
                projects.append(ProjectConfig(**_pick(item, ProjectConfig)))

    return SprintYamlConfig(
        version=int(raw.get("version", 1)),
        timing=timing,
        pipeline=pipeline,
        agents=agents,
        archive=archive,
        projects=projects,
    )


def parse_agent_config(raw: Any) -> AgentConfig:
    if not isinstance(raw, dict):
        return AgentConfig()
    return AgentConfig(**_pick(raw, AgentConfig))


def _section(raw: dict[str, Any], key: str) -> dict[str, Any]:
    value = raw.get(key, {})
    return value if isinstance(value, dict) else {}


def _pick(raw: dict[str, Any], model_type: type[Any]) -> dict[str, Any]:
    allowed = set(model_type.__dataclass_fields__.keys())
    return {k: v for k, v in raw.items() if k in allowed}

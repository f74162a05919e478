"""Persisted orchestrator state: one JSON file per project, written atomically."""

from __future__ import annotations

import logging
from pathlib import Path

from attosprint.protocol.io import read_json, unlink_quiet, write_json_atomic
from attosprint.protocol.models import PersistedOrchestratorState, SprintPaths

logger = logging.getLogger(__name__)


class StateStore:
    def path_for(self, repo_path: str | Path) -> Path:
        return Path(repo_path) / SprintPaths.STATE

    def load(self, repo_path: str | Path) -> PersistedOrchestratorState | None:
        raw = read_json(self.path_for(repo_path), default=None)
        if not isinstance(raw, dict) or "project_id" not in raw:
            return None
        try:
            return PersistedOrchestratorState.from_dict(raw)
        except TypeError as exc:
            logger.warning("Discarding malformed orchestrator state in %s: %s", repo_path, exc)
            return None

    def save(self, repo_path: str | Path, state: PersistedOrchestratorState) -> None:
        write_json_atomic(self.path_for(repo_path), state.to_dict())

    def clear(self, repo_path: str | Path) -> None:
        unlink_quiet(self.path_for(repo_path))

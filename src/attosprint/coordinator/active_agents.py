"""Registry of agents currently running, per project."""

from __future__ import annotations

import time
from dataclasses import dataclass, field


@dataclass(slots=True)
class ActiveAgent:
    id: str
    project_id: str
    phase: str
    label: str
    started_at: float = field(default_factory=time.time)
    branch_name: str | None = None


class ActiveAgentsRegistry:
    def __init__(self) -> None:
        self._agents: dict[str, ActiveAgent] = {}

    def register(
        self,
        agent_id: str,
        project_id: str,
        phase: str,
        label: str,
        started_at: float | None = None,
        branch_name: str | None = None,
    ) -> ActiveAgent:
        agent = ActiveAgent(
            id=agent_id,
            project_id=project_id,
            phase=phase,
            label=label,
            started_at=started_at if started_at is not None else time.time(),
            branch_name=branch_name,
        )
        self._agents[agent_id] = agent
        return agent

    def unregister(self, agent_id: str) -> None:
        self._agents.pop(agent_id, None)

    def list(self, project_id: str | None = None) -> list[ActiveAgent]:
        return [a for a in self._agents.values() if project_id is None or a.project_id == project_id]

    def ids(self, project_id: str) -> list[str]:
        return [a.id for a in self.list(project_id)]

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._agents

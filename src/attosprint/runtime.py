"""Wire the concrete collaborators into a runnable supervisor."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from attosprint.adapters.spawner import CliAgentSpawner
from attosprint.archive.retention import SessionRetentionService
from attosprint.archive.sessions import SessionArchive, SessionManager
from attosprint.config.schema import SprintYamlConfig
from attosprint.config.settings import StaticSettingsProvider
from attosprint.coordinator.active_agents import ActiveAgentsRegistry
from attosprint.coordinator.crash_recovery import CrashRecoveryService
from attosprint.coordinator.event_bus import EventBus
from attosprint.coordinator.lifecycle import AgentLifecycleManager
from attosprint.coordinator.orchestrator import Orchestrator
from attosprint.coordinator.recovery import RecoveryService
from attosprint.coordinator.state_store import StateStore
from attosprint.coordinator.watchdog import WatchdogService, WatchdogTarget
from attosprint.protocol.contracts import IssueTracker
from attosprint.protocol.models import SprintPaths
from attosprint.workspace.heartbeat import HeartbeatStore
from attosprint.workspace.test_runner import ShellTestRunner
from attosprint.workspace.tracker import JsonFileTracker
from attosprint.workspace.worktree import GitBranchManager

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SupervisorRuntime:
    config: SprintYamlConfig
    bus: EventBus
    archive: SessionArchive
    orchestrator: Orchestrator
    recovery: RecoveryService
    watchdog: WatchdogService
    retention: SessionRetentionService

    def watchdog_targets(self) -> list[WatchdogTarget]:
        return [
            WatchdogTarget(project_id=pid, repo_path=self.orchestrator.runtime(pid).repo_path)
            for pid in self.orchestrator.project_ids
        ]

    async def start(self) -> None:
        await self.archive.initialize()
        for project_id in self.orchestrator.project_ids:
            await self.orchestrator.ensure_running(project_id)
        self.watchdog.start(self.watchdog_targets)
        self.retention.start()

    async def stop(self) -> None:
        self.watchdog.stop()
        self.retention.stop()
        await self.orchestrator.shutdown()
        await self.archive.close()


def build_runtime(
    cfg: SprintYamlConfig,
    projects: dict[str, Path],
    archive_db: Path,
    tracker: IssueTracker | None = None,
) -> SupervisorRuntime:
    """Assemble a supervisor for *projects* (``project_id -> repo path``)."""
    timing = cfg.timing
    bus = EventBus(persist_path=archive_db.parent / Path(SprintPaths.EVENTS).name)
    tracker = tracker or JsonFileTracker()
    branch_manager = GitBranchManager(cfg.pipeline.worktree_base or None, base_branch=cfg.pipeline.base_branch)
    test_runner = ShellTestRunner(cfg.pipeline.test_command)
    heartbeats = HeartbeatStore()
    sessions = SessionManager()
    archive = SessionArchive(archive_db)
    state_store = StateStore()
    active_agents = ActiveAgentsRegistry()

    lifecycle = AgentLifecycleManager(
        CliAgentSpawner(kill_grace_seconds=timing.kill_grace_seconds, poll_seconds=timing.output_tail_poll_seconds),
        heartbeats,
        bus,
        branch_manager,
        timing=timing,
        max_output_log_bytes=cfg.pipeline.max_output_log_bytes,
    )
    crash_recovery = CrashRecoveryService(
        tracker, branch_manager, test_runner, sessions, archive, heartbeats,
        state_store, bus, active_agents, timing=timing,
    )
    orchestrator = Orchestrator(
        tracker=tracker,
        branch_manager=branch_manager,
        test_runner=test_runner,
        settings=StaticSettingsProvider.from_config(cfg),
        lifecycle=lifecycle,
        crash_recovery=crash_recovery,
        sessions=sessions,
        archive=archive,
        heartbeats=heartbeats,
        state_store=state_store,
        notifier=bus,
        active_agents=active_agents,
        timing=timing,
        branch_prefix=cfg.pipeline.branch_prefix,
    )
    for project_id, repo_path in projects.items():
        orchestrator.register_project(project_id, repo_path)

    recovery = RecoveryService(
        tracker,
        branch_manager,
        heartbeats,
        bus,
        stale_heartbeat_seconds=timing.stale_heartbeat_seconds,
        kill_grace_seconds=timing.kill_grace_seconds,
    )
    watchdog = WatchdogService(recovery, orchestrator, interval_seconds=timing.watchdog_interval_seconds)
    retention = SessionRetentionService(
        archive, keep=cfg.archive.keep_sessions, interval_seconds=cfg.archive.retention_interval_seconds
    )
    return SupervisorRuntime(
        config=cfg,
        bus=bus,
        archive=archive,
        orchestrator=orchestrator,
        recovery=recovery,
        watchdog=watchdog,
        retention=retention,
    )


def default_archive_db(repo_path: Path) -> Path:
    return Path(repo_path) / SprintPaths.SESSIONS_DB


def shared_archive_db() -> Path:
    return Path.home() / SprintPaths.SESSIONS_DB


def resolve_archive_db(cfg: SprintYamlConfig, projects: dict[str, Path]) -> Path:
    """Where the session archive lives for a supervisor over *projects*.

    An explicit ``archive.db_path`` wins.  A single project keeps its
    archive in the repository; several projects share one per-user
    database, rows told apart by ``project_id``.
    """
    if cfg.archive.db_path:
        return Path(cfg.archive.db_path).expanduser()
    if len(projects) == 1:
        return default_archive_db(next(iter(projects.values())))
    return shared_archive_db()

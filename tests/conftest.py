"""Shared fixtures for attosprint tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from attosprint.config.schema import TimingConfig
from tests.helpers.fakes import FakeBranchManager, FakeClock, FakeHeartbeats, RecordingNotifier


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    path = tmp_path / "repo"
    path.mkdir()
    return path


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def heartbeats() -> FakeHeartbeats:
    return FakeHeartbeats()


@pytest.fixture
def branches(tmp_path: Path) -> FakeBranchManager:
    return FakeBranchManager(tmp_path / "worktrees")


@pytest.fixture
def slow_timing() -> TimingConfig:
    """Timing where no periodic job fires during a test unless driven by hand."""
    return TimingConfig(
        heartbeat_interval_seconds=3600,
        inactivity_check_seconds=3600,
        inactivity_timeout_seconds=300,
        recovery_poll_seconds=3600,
        kill_grace_seconds=0,
        watchdog_interval_seconds=3600,
        output_tail_poll_seconds=3600,
        stale_heartbeat_seconds=120,
        loop_idle_seconds=3600,
    )

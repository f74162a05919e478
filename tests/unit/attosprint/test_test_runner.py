"""Tests for test-summary parsing and scoped test runs."""

from __future__ import annotations

from pathlib import Path

import pytest

from attosprint.workspace.test_runner import ShellTestRunner, parse_test_summary


class TestParseTestSummary:
    def test_pytest_summary(self) -> None:
        result = parse_test_summary("==== 12 passed, 2 failed, 1 skipped in 0.4s ====", 1)
        assert (result.passed, result.failed, result.skipped, result.total) == (12, 2, 1, 15)
        assert not result.ok

    def test_errors_count_as_failures(self) -> None:
        result = parse_test_summary("3 passed, 1 error in 1.0s", 1)
        assert result.failed == 1
        assert result.total == 4

    def test_clean_run(self) -> None:
        result = parse_test_summary("5 passed in 0.1s", 0)
        assert result.ok
        assert result.raw_output == "5 passed in 0.1s"

    def test_nonzero_exit_without_counts_fails(self) -> None:
        result = parse_test_summary("ImportError: no module named app", 2)
        assert result.failed == 1
        assert not result.ok

    def test_nothing_collected_is_not_a_failure(self) -> None:
        assert parse_test_summary("no tests ran in 0.01s", 5).ok


class TestShellTestRunner:
    def test_build_command_scopes_to_changed_test_files(self) -> None:
        runner = ShellTestRunner(["pytest", "-q"])
        changed = ["src/app.py", "tests/test_app.py", "pkg/util_test.py", "docs/testing.md"]
        assert runner.build_command(changed) == ["pytest", "-q", "tests/test_app.py", "pkg/util_test.py"]

    def test_build_command_without_test_files_runs_everything(self) -> None:
        assert ShellTestRunner(["pytest"]).build_command(["src/app.py"]) == ["pytest"]

    @pytest.mark.asyncio
    async def test_run_parses_output(self, tmp_path: Path) -> None:
        runner = ShellTestRunner(["sh", "-c", "echo '4 passed, 1 failed in 0.2s'; exit 1"])
        result = await runner.run_scoped_tests(tmp_path, [])
        assert (result.passed, result.failed) == (4, 1)
        assert "4 passed" in result.raw_output

    @pytest.mark.asyncio
    async def test_run_timeout_fails(self, tmp_path: Path) -> None:
        runner = ShellTestRunner(["sleep", "5"], timeout_seconds=0.1)
        result = await runner.run_scoped_tests(tmp_path, [])
        assert result.failed == 1
        assert "timed out" in result.raw_output

"""Tests for agent command building and subprocess spawning."""

from __future__ import annotations

import asyncio
import signal
from pathlib import Path

import pytest

from attosprint.adapters.base import LogTail, PidAgentHandle, is_pid_alive
from attosprint.adapters.spawner import CliAgentSpawner, agent_env, build_agent_command
from attosprint.config.schema import AgentConfig
from attosprint.errors import AgentSpawnError, ConfigurationError
from attosprint.protocol.contracts import SpawnOptions


class TestBuildAgentCommand:
    def test_claude(self) -> None:
        cmd = build_agent_command(AgentConfig(type="claude", model="opus"), "fix it")
        assert cmd == ["claude", "-p", "--dangerously-skip-permissions", "--model", "opus", "fix it"]

    def test_claude_default_model(self) -> None:
        assert "--model" not in build_agent_command(AgentConfig(type="claude"), "fix it")

    def test_codex(self) -> None:
        cmd = build_agent_command(AgentConfig(type="codex", model="o4-mini"), "fix it")
        assert cmd[:2] == ["codex", "exec"]
        assert cmd[-3:] == ["--model", "o4-mini", "fix it"]

    def test_custom(self) -> None:
        cmd = build_agent_command(AgentConfig(type="custom", cli_command=["my-agent", "--fast"]), "fix it")
        assert cmd == ["my-agent", "--fast", "fix it"]

    def test_custom_requires_command(self) -> None:
        with pytest.raises(ConfigurationError):
            build_agent_command(AgentConfig(type="custom"), "fix it")

    def test_unknown_type(self) -> None:
        with pytest.raises(ConfigurationError, match="Unsupported agent type"):
            build_agent_command(AgentConfig(type="gpt-shell"), "fix it")


def test_agent_env_strips_nested_session_vars(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CLAUDECODE", "1")
    monkeypatch.setenv("KEEP_ME", "yes")
    env = agent_env("reviewer")
    assert "CLAUDECODE" not in env
    assert env["KEEP_ME"] == "yes"
    assert env["ATTOSPRINT_AGENT_ROLE"] == "reviewer"


class TestCliAgentSpawner:
    @staticmethod
    def _options(tmp_path: Path, chunks: list[str], codes: list[int | None]) -> SpawnOptions:
        async def on_exit(code: int | None) -> None:
            codes.append(code)

        return SpawnOptions(
            cwd=tmp_path,
            agent_role="coder",
            output_log_path=tmp_path / "active" / "agent-output.log",
            on_output=chunks.append,
            on_exit=on_exit,
        )

    @pytest.mark.asyncio
    async def test_spawn_streams_output_and_reports_exit(self, tmp_path: Path) -> None:
        prompt = tmp_path / "prompt.md"
        prompt.write_text("implement the parser", encoding="utf-8")
        chunks: list[str] = []
        codes: list[int | None] = []
        options = self._options(tmp_path, chunks, codes)
        script = 'echo "got: $0"; echo "$ATTOSPRINT_AGENT_ROLE" >&2'
        config = AgentConfig(type="custom", cli_command=["sh", "-c", script])

        handle = await CliAgentSpawner().invoke_coding_agent(prompt, config, options)
        assert handle.pid is not None
        assert await handle.wait() == 0

        assert codes == [0]
        streamed = "".join(chunks)
        assert sorted(streamed.splitlines()) == ["coder", "got: implement the parser"]
        assert options.output_log_path.read_text(encoding="utf-8") == streamed

    @pytest.mark.asyncio
    async def test_agent_writes_its_own_log_and_earlier_content_is_not_replayed(self, tmp_path: Path) -> None:
        prompt = tmp_path / "prompt.md"
        prompt.write_text("second attempt", encoding="utf-8")
        chunks: list[str] = []
        options = self._options(tmp_path, chunks, [])
        options.output_log_path.parent.mkdir(parents=True)
        options.output_log_path.write_text("attempt one\n", encoding="utf-8")
        config = AgentConfig(type="custom", cli_command=["sh", "-c", "echo attempt two"])

        handle = await CliAgentSpawner(poll_seconds=0.01).invoke_coding_agent(prompt, config, options)
        await handle.wait()

        assert "".join(chunks) == "attempt two\n"
        assert options.output_log_path.read_text(encoding="utf-8") == "attempt one\nattempt two\n"

    @pytest.mark.asyncio
    async def test_log_keeps_growing_when_nobody_watches(self, tmp_path: Path) -> None:
        prompt = tmp_path / "prompt.md"
        prompt.write_text("outlive the supervisor", encoding="utf-8")
        options = self._options(tmp_path, [], [])
        config = AgentConfig(type="custom", cli_command=["sh", "-c", "sleep 0.3; echo late"])

        handle = await CliAgentSpawner(poll_seconds=0.01).invoke_coding_agent(prompt, config, options)
        assert handle._watcher is not None
        handle._watcher.cancel()
        await asyncio.wait_for(handle._process.wait(), timeout=10)

        assert options.output_log_path.read_text(encoding="utf-8") == "late\n"

    @pytest.mark.asyncio
    async def test_kill_escalates_when_sigterm_is_ignored(self, tmp_path: Path) -> None:
        prompt = tmp_path / "prompt.md"
        prompt.write_text("stubborn", encoding="utf-8")
        chunks: list[str] = []
        codes: list[int | None] = []
        options = self._options(tmp_path, chunks, codes)
        script = "trap '' TERM; echo armed; while true; do sleep 0.1; done"
        config = AgentConfig(type="custom", cli_command=["sh", "-c", script])

        spawner = CliAgentSpawner(kill_grace_seconds=0.2, poll_seconds=0.02)
        handle = await spawner.invoke_coding_agent(prompt, config, options)
        for _ in range(250):
            if "armed" in "".join(chunks):
                break
            await asyncio.sleep(0.02)

        handle.kill()
        handle.kill()
        assert await asyncio.wait_for(handle.wait(), timeout=10) == -signal.SIGKILL
        assert codes == [-signal.SIGKILL]

    @pytest.mark.asyncio
    async def test_log_file_exists_before_output(self, tmp_path: Path) -> None:
        prompt = tmp_path / "prompt.md"
        prompt.write_text("quiet", encoding="utf-8")
        codes: list[int | None] = []
        options = self._options(tmp_path, [], codes)
        config = AgentConfig(type="custom", cli_command=["sh", "-c", "sleep 5"])

        handle = await CliAgentSpawner().invoke_review_agent(prompt, config, options)
        assert options.output_log_path.exists()
        assert options.output_log_path.stat().st_size == 0

        handle.kill()
        await handle.wait()
        assert codes and codes[0] != 0

    @pytest.mark.asyncio
    async def test_missing_binary(self, tmp_path: Path) -> None:
        prompt = tmp_path / "prompt.md"
        prompt.write_text("x", encoding="utf-8")
        config = AgentConfig(type="custom", cli_command=["definitely-not-an-agent-binary"])
        with pytest.raises(AgentSpawnError) as info:
            await CliAgentSpawner().invoke_coding_agent(prompt, config, self._options(tmp_path, [], []))
        assert info.value.retryable
        assert info.value.agent_type == "custom"

    @pytest.mark.asyncio
    async def test_missing_prompt(self, tmp_path: Path) -> None:
        config = AgentConfig(type="custom", cli_command=["true"])
        with pytest.raises(AgentSpawnError, match="Cannot read prompt"):
            await CliAgentSpawner().invoke_coding_agent(tmp_path / "nope.md", config, self._options(tmp_path, [], []))


class TestPidHelpers:
    def test_is_pid_alive(self) -> None:
        assert not is_pid_alive(None)
        assert not is_pid_alive(0)

    @pytest.mark.asyncio
    async def test_pid_handle_kills_process(self) -> None:
        proc = await asyncio.create_subprocess_exec("sleep", "30", start_new_session=True)
        assert is_pid_alive(proc.pid)
        PidAgentHandle(proc.pid, kill_grace_seconds=0.1).kill()
        await asyncio.wait_for(proc.wait(), timeout=5)
        assert proc.returncode is not None

    @pytest.mark.asyncio
    async def test_pid_handle_force_kills_after_grace(self) -> None:
        proc = await asyncio.create_subprocess_exec(
            "sh", "-c", "trap '' TERM; echo armed; while true; do sleep 0.1; done",
            stdout=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
        assert proc.stdout is not None
        assert await asyncio.wait_for(proc.stdout.readline(), timeout=5) == b"armed\n"

        PidAgentHandle(proc.pid, kill_grace_seconds=0.2).kill()
        assert await asyncio.wait_for(proc.wait(), timeout=10) == -signal.SIGKILL


class TestLogTail:
    def test_reads_only_appended_text(self, tmp_path: Path) -> None:
        log = tmp_path / "agent-output.log"
        log.write_text("old\n", encoding="utf-8")
        tail = LogTail(log)
        assert tail.read_new() == ""

        with log.open("a", encoding="utf-8") as fh:
            fh.write("new\n")
        assert tail.read_new() == "new\n"
        assert tail.offset == 8
        assert tail.read_new() == ""

    def test_missing_file_starts_at_zero(self, tmp_path: Path) -> None:
        log = tmp_path / "later.log"
        tail = LogTail(log)
        assert tail.offset == 0
        log.write_bytes("héllo".encode())
        assert tail.read_new() == "héllo"

"""Launch agent CLIs (claude, codex or a custom command) as subprocesses."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path

from attosprint.adapters.base import (
    DEFAULT_KILL_GRACE_SECONDS,
    DEFAULT_POLL_SECONDS,
    LogTail,
    SubprocessAgentHandle,
)
from attosprint.config.schema import AgentConfig
from attosprint.errors import AgentSpawnError, ConfigurationError
from attosprint.protocol.contracts import SpawnOptions

logger = logging.getLogger(__name__)

# Env vars that make a nested agent CLI refuse to start inside another session.
_STRIP_ENV_VARS = {
    "CLAUDECODE", "CLAUDE_CODE_ENTRYPOINT", "CLAUDE_REPL",
    "CLAUDE_CODE_PACKAGE_DIR",
}


def build_agent_command(config: AgentConfig, prompt: str) -> list[str]:
    """Build the argv for *config*'s agent CLI with *prompt* as the instruction."""
    if config.type == "claude":
        cmd = ["claude", "-p", "--dangerously-skip-permissions"]
        if config.model:
            cmd.extend(["--model", config.model])
        cmd.append(prompt)
        return cmd
    if config.type == "codex":
        cmd = [
            "codex", "exec", "--json", "--skip-git-repo-check",
            "--sandbox", "workspace-write",
        ]
        if config.model:
            cmd.extend(["--model", config.model])
        cmd.append(prompt)
        return cmd
    if config.type == "custom":
        if not config.cli_command:
            raise ConfigurationError("agent type 'custom' requires cli_command")
        return [*config.cli_command, prompt]
    raise ConfigurationError(f"Unsupported agent type: {config.type!r}")


def agent_env(role: str) -> dict[str, str]:
    env = {k: v for k, v in os.environ.items() if k not in _STRIP_ENV_VARS}
    env["ATTOSPRINT_AGENT_ROLE"] = role
    return env


class CliAgentSpawner:
    """Spawns one agent CLI per call, in its own session."""

    def __init__(
        self,
        *,
        kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
        poll_seconds: float = DEFAULT_POLL_SECONDS,
    ) -> None:
        self._kill_grace_seconds = kill_grace_seconds
        self._poll_seconds = poll_seconds

    async def invoke_coding_agent(
        self, prompt_path: Path, config: AgentConfig, options: SpawnOptions
    ) -> SubprocessAgentHandle:
        return await self._spawn(prompt_path, config, options)

    async def invoke_review_agent(
        self, prompt_path: Path, config: AgentConfig, options: SpawnOptions
    ) -> SubprocessAgentHandle:
        return await self._spawn(prompt_path, config, options)

    async def _spawn(
        self, prompt_path: Path, config: AgentConfig, options: SpawnOptions
    ) -> SubprocessAgentHandle:
        try:
            prompt = prompt_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise AgentSpawnError(f"Cannot read prompt {prompt_path}: {exc}", agent_type=config.type) from exc
        cmd = build_agent_command(config, prompt)

        # Empty log = spawned but silent, missing = never spawned.
        # The agent holds the write end itself; the log keeps growing if we restart.
        log_path = options.output_log_path
        log_path.parent.mkdir(parents=True, exist_ok=True)
        tail = LogTail(log_path)

        with log_path.open("ab") as log_fh:
            try:
                process = await asyncio.create_subprocess_exec(
                    *cmd,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=log_fh,
                    stderr=asyncio.subprocess.STDOUT,
                    cwd=str(options.cwd),
                    env=agent_env(options.agent_role),
                    start_new_session=True,
                )
            except (FileNotFoundError, PermissionError) as exc:
                raise AgentSpawnError(f"Cannot launch {cmd[0]!r}: {exc}", agent_type=config.type) from exc

        logger.info("Spawned %s agent pid=%s in %s", options.agent_role, process.pid, options.cwd)
        handle = SubprocessAgentHandle(
            process,
            tail,
            options.on_output,
            options.on_exit,
            kill_grace_seconds=self._kill_grace_seconds,
            poll_seconds=self._poll_seconds,
        )
        handle.start()
        return handle

"""Per-task git worktrees and branch operations."""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
from pathlib import Path

from attosprint.errors import GitCommandError
from attosprint.protocol.models import SprintPaths

log = logging.getLogger(__name__)

# Runtime files under .attosprint/ never land in agent commits.
_EXCLUDE_RUNTIME = f":(exclude){SprintPaths.ROOT}"


async def run_git(cwd: Path, *args: str, check: bool = True) -> str:
    """Run ``git *args`` in *cwd* and return stdout; raises ``GitCommandError`` when *check*."""
    proc = await asyncio.create_subprocess_exec(
        "git",
        *args,
        cwd=str(cwd),
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await proc.communicate()
    if check and proc.returncode != 0:
        raise GitCommandError(list(args), proc.returncode or 1, stderr.decode("utf-8", errors="replace"))
    return stdout.decode("utf-8", errors="replace")


class GitBranchManager:
    """Git CLI implementation of the branch/worktree contract.

    Each task gets ``<worktree_base>/<task_id>`` checked out on its own
    branch, created from ``base_branch`` on first use.
    """

    def __init__(self, worktree_base: str | Path | None = None, base_branch: str = "main") -> None:
        base = Path(worktree_base) if worktree_base else Path(tempfile.gettempdir()) / "attosprint-worktrees"
        self._worktree_base = base
        self._base_branch = base_branch

    @property
    def worktree_base(self) -> Path:
        return self._worktree_base

    @property
    def base_branch(self) -> str:
        return self._base_branch

    def get_worktree_path(self, task_id: str) -> Path:
        return self._worktree_base / task_id

    async def create_task_worktree(self, repo_path: Path, task_id: str, branch_name: str) -> Path:
        path = self.get_worktree_path(task_id)
        if (path / ".git").exists():
            return path
        await self._prune(repo_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        if await self._branch_exists(repo_path, branch_name):
            await run_git(repo_path, "worktree", "add", str(path), branch_name)
        else:
            await run_git(repo_path, "worktree", "add", "-b", branch_name, str(path), self._base_branch)
        log.info("Created worktree %s on %s", path, branch_name)
        return path

    async def remove_task_worktree(
        self, repo_path: Path, task_id: str, worktree_path: Path | None = None
    ) -> None:
        path = worktree_path or self.get_worktree_path(task_id)
        if Path(path).resolve() == Path(repo_path).resolve():
            return
        try:
            await run_git(repo_path, "worktree", "remove", "--force", str(path))
        except GitCommandError as exc:
            log.debug("git worktree remove %s failed: %s", path, exc.stderr.strip())
        if Path(path).exists():
            shutil.rmtree(path, ignore_errors=True)
        await self._prune(repo_path)

    async def delete_branch(self, repo_path: Path, branch_name: str) -> None:
        await run_git(repo_path, "branch", "-D", branch_name)

    async def commit_wip(self, worktree_path: Path, task_id: str) -> bool:
        """Commit whatever the agent left uncommitted; False when there was nothing."""
        if not Path(worktree_path).exists():
            return False
        await run_git(worktree_path, "add", "-A", "--", ".", _EXCLUDE_RUNTIME)
        staged = await run_git(worktree_path, "diff", "--cached", "--name-only")
        if not staged.strip():
            return False
        await run_git(worktree_path, "commit", "--no-verify", "-m", f"WIP: {task_id} (uncommitted agent work)")
        log.info("Committed WIP for task %s in %s", task_id, worktree_path)
        return True

    async def get_commit_count_ahead(self, repo_path: Path, branch_name: str) -> int:
        try:
            out = await run_git(repo_path, "rev-list", "--count", f"{self._base_branch}..{branch_name}")
        except GitCommandError as exc:
            log.debug("rev-list for %s failed: %s", branch_name, exc.stderr.strip())
            return 0
        try:
            return int(out.strip() or 0)
        except ValueError:
            return 0

    async def capture_branch_diff(self, repo_path: Path, branch_name: str) -> str:
        try:
            return await run_git(repo_path, "diff", f"{self._base_branch}...{branch_name}")
        except GitCommandError as exc:
            log.debug("diff for %s failed: %s", branch_name, exc.stderr.strip())
            return ""

    async def get_changed_files(self, repo_path: Path, branch_name: str) -> list[str]:
        out = await run_git(repo_path, "diff", "--name-only", f"{self._base_branch}...{branch_name}")
        return [line for line in out.splitlines() if line.strip()]

    async def merge_to_main(self, repo_path: Path, branch_name: str) -> None:
        await run_git(repo_path, "checkout", self._base_branch)
        try:
            await run_git(repo_path, "merge", "--no-ff", "-m", f"Merge {branch_name}", branch_name)
        except GitCommandError:
            await run_git(repo_path, "merge", "--abort", check=False)
            raise

    async def push_main(self, repo_path: Path) -> None:
        await run_git(repo_path, "push", "origin", self._base_branch)

    async def _branch_exists(self, repo_path: Path, branch_name: str) -> bool:
        out = await run_git(repo_path, "branch", "--list", branch_name, check=False)
        return bool(out.strip())

    async def _prune(self, repo_path: Path) -> None:
        try:
            await run_git(repo_path, "worktree", "prune")
        except GitCommandError as exc:
            log.warning("git worktree prune failed: %s", exc.stderr)

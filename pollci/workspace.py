"""
Workspace management module for pollci.

Provides job workspace allocation and the git operations a job needs:
init, pull, add remote, fetch and merge.
"""

import asyncio
import os
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

from pollci.logger import get_logger

logger = get_logger(__name__)


class VcsError(Exception):
    """A git command exited with a non-zero status."""

    pass


def allocate_job_dir(
    workspace_dir: str | Path,
    worker_uid: str,
    pr_number: int,
    repo: str,
    now: datetime | None = None,
) -> Path:
    """Create an isolated directory for one job.

    Layout: <workspace_dir>/<worker_uid>/<pr>_<yyyymmddThhmmss>/<repo name>.
    The worker fingerprint keeps workers sharing a disk apart; the timestamp
    keeps repeated runs for the same pull request apart.

    Args:
        workspace_dir: Base directory for all job workspaces
        worker_uid: Ownership fingerprint of this worker
        pr_number: Pull request number
        repo: Repository in 'owner/repo' format
        now: Timestamp to use (defaults to current UTC time)

    Returns:
        Path to the created (empty) job directory
    """
    now = now or datetime.now(UTC)
    job_id = f"{pr_number}_{now.strftime('%Y%m%dT%H%M%S')}"
    repo_name = repo.rstrip("/").split("/")[-1]
    base = Path(workspace_dir).resolve() / worker_uid
    path = base / job_id / repo_name
    suffix = 1
    while path.exists():
        suffix += 1
        path = base / f"{job_id}-{suffix}" / repo_name
    path.mkdir(parents=True)
    logger.debug(f"Allocated job workspace {path}")
    return path


class GitWorkspace:
    """
    Runs git commands in a job workspace.

    Every command is awaited as a subprocess. A non-zero exit raises VcsError
    carrying the command and its output; nothing is retried.
    """

    def __init__(self, path: str | Path, mask: Callable[[str], str] | None = None):
        """
        Initialize the workspace.

        Args:
            path: Directory the repository lives in
            mask: Removes secrets (credentials in remote URLs) from error text
        """
        self.path = Path(path)
        self.mask = mask or (lambda text: text)

    async def _run_git_command(self, args: list[str]) -> str:
        """
        Run a git command with proper error handling.

        Args:
            args: Git command arguments (without 'git' prefix)

        Returns:
            Combined stdout and stderr

        Raises:
            VcsError: If the command fails or git is missing
        """
        cmd = ["git", *args]
        logger.debug(self.mask(f"Running git command: {' '.join(cmd)} in {self.path}"))

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=self.path,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                # Never block on a credential prompt
                env={**os.environ, "GIT_TERMINAL_PROMPT": "0"},
            )
        except OSError as e:
            raise VcsError(f"Failed to run git: {e}") from e

        stdout, _ = await process.communicate()
        output = stdout.decode("utf-8", errors="replace")

        if process.returncode != 0:
            error_msg = f"git {' '.join(args)} failed with exit code {process.returncode}"
            if output.strip():
                error_msg += f": {output.strip()}"
            raise VcsError(self.mask(error_msg))

        if output.strip():
            logger.debug(self.mask(f"Git output: {output.strip()}"))
        return output

    async def init(self) -> None:
        await self._run_git_command(["init", "--quiet"])
        # Merges create commits; give them an identity that exists everywhere
        await self._run_git_command(["config", "user.name", "pollci"])
        await self._run_git_command(["config", "user.email", "pollci@localhost"])

    async def pull(self, url: str, ref: str) -> None:
        await self._run_git_command(["pull", "--quiet", url, ref])

    async def add_remote(self, name: str, url: str) -> None:
        await self._run_git_command(["remote", "add", name, url])

    async def fetch(self, remote: str) -> None:
        await self._run_git_command(["fetch", "--quiet", remote])

    async def merge(self, commit: str) -> None:
        await self._run_git_command(["merge", "--no-edit", "--quiet", commit])


"""Publish-on-merge job.

Tracks open pull requests that target the publish branch. When one of them
disappears from the open list and turns out to be merged, the publish
command runs on a fresh checkout of the branch and its progress is reported
in a single pull request comment.
"""

import asyncio
import shutil
from collections.abc import Callable

from pollci.command_channel import PUBLISH_INDICATOR
from pollci.config import Config
from pollci.interfaces import CIClient, PullRequest
from pollci.logger import clear_pr_context, get_logger, set_pr_context
from pollci.process_runner import start_command
from pollci.workspace import GitWorkspace, VcsError, allocate_job_dir

logger = get_logger(__name__)

COMMENT_HEADER = PUBLISH_INDICATOR + "# release job"

# GitHub rejects comment bodies above 65536 characters
OUTPUT_TAIL_CHARS = 60000


class PublishComment:
    """Progress comment of one publish job, rewritten as the job advances."""

    def __init__(self, client: CIClient, pr_number: int) -> None:
        self.client = client
        self.pr_number = pr_number
        self.comment_id: int | None = None
        self.lines: list[str] = []

    def body(self, footer: str = "") -> str:
        parts = [COMMENT_HEADER]
        if self.lines:
            parts.append("~~~\n" + "".join(f"> {line}\n" for line in self.lines) + "~~~")
        if footer:
            parts.append(footer)
        return "\n".join(parts)

    async def create(self) -> None:
        self.comment_id = await self.client.create_comment(self.pr_number, self.body())

    async def append_line(self, line: str) -> None:
        self.lines.append(line)
        await self._update(self.body())

    async def finish(self, title: str, output: str) -> None:
        await self._update(self.body(f"{title}\n~~~\n{output}\n~~~"))

    async def _update(self, body: str) -> None:
        if self.comment_id is not None:
            await self.client.edit_comment(self.comment_id, body)


class Publisher:
    """Runs the publish command for merged pull requests of one repository."""

    def __init__(
        self,
        config: Config,
        client: CIClient,
        mask: Callable[[str], str] | None = None,
    ) -> None:
        self.config = config
        self.client = client
        self.mask = mask or (lambda text: text)
        self.tracked: set[int] = set()

    async def poll(self, open_prs: list[PullRequest]) -> bool:
        """Update tracking from this cycle's open pull requests and publish merges.

        Returns:
            True if a publish job ran
        """
        ran = False
        open_numbers = {pr.number for pr in open_prs}
        for number in sorted(self.tracked - open_numbers):
            pr = await self.client.get_pull_request(number)
            if pr.state == "open":
                continue
            self.tracked.discard(number)
            if pr.merged:
                logger.info(f"Merged PR #{pr.number} ('{pr.title}')")
                await self.run_job(pr)
                ran = True
            else:
                logger.info(f"Closed PR #{pr.number} ('{pr.title}')")

        for pr in open_prs:
            if pr.base_ref == self.config.publish_branch and pr.number not in self.tracked:
                self.tracked.add(pr.number)
                logger.debug(f"Tracking PR #{pr.number} ('{pr.title}') for publishing")
        return ran

    async def _remove_old_comments(self, pr: PullRequest) -> None:
        for comment in await self.client.list_comments(pr.number):
            if comment.body.startswith(PUBLISH_INDICATOR):
                result = await self.client.try_delete_comment(comment.id)
                if not result.ok:
                    logger.warning(result.warning)

    async def run_job(self, pr: PullRequest) -> bool:
        """Run the publish command for a merged pull request.

        Never raises except on cancellation.

        Returns:
            True if the publish command succeeded
        """
        set_pr_context(self.client.repo, pr.number)
        try:
            return await self._run_job(pr)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Publish job error: {self.mask(str(e))}", exc_info=True)
            return False
        finally:
            clear_pr_context()

    async def _run_job(self, pr: PullRequest) -> bool:
        await self._remove_old_comments(pr)
        job_dir = await asyncio.to_thread(
            allocate_job_dir,
            self.config.workspace_dir,
            f"{self.config.worker_uid}-publish",
            pr.number,
            self.client.repo,
        )
        try:
            comment = PublishComment(self.client, pr.number)
            await comment.create()

            await comment.append_line("fetching")
            logger.info(f"Checking out {pr.base_ref} into {job_dir}")
            git = GitWorkspace(job_dir, mask=self.mask)
            try:
                await git.init()
                await git.pull(self.client.pull_url, pr.base_ref)
            except VcsError as e:
                logger.warning(f"Publish checkout failed: {e}")
                await comment.finish("## error", str(e))
                return False

            await comment.append_line("running publish job")
            logger.info(f"Running publish command: {self.config.publish_command}")
            running = await start_command(self.config.publish_command, str(job_dir))
            deadline = asyncio.get_running_loop().call_later(
                self.config.job_timeout, running.cancel
            )
            try:
                error = await running.result
            finally:
                deadline.cancel()
                running.cancel()

            output = self.mask(running.output())[-OUTPUT_TAIL_CHARS:]
            if error is not None:
                logger.warning(f"Publish command failed: {error}")
                await comment.finish("## error", output or str(error))
                return False
            logger.info("Publish command succeeded")
            await comment.finish("## done", output)
            return True
        finally:
            await asyncio.to_thread(shutil.rmtree, job_dir.parent, True)

"""Poll loop for pollci.

This module provides the worker loop that ties the components together:
- Polls every configured repository for open pull requests
- Classifies each pull request and runs the CI job when needed
- Scans comments for commands addressed to this worker
- Runs the publish job for merged pull requests when configured
"""

import asyncio
import contextlib
import signal
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from tenacity import wait_fixed

from pollci.ci_clients import GitHubCIClient
from pollci.classifier import KNOWN, RESTART, Decision, KnownPullRequests, classify
from pollci.command_channel import CommandChannel
from pollci.config import Config
from pollci.interfaces import CIClient, LogSink, PullRequest
from pollci.job_executor import JobExecutor
from pollci.logger import get_logger
from pollci.publisher import Publisher

logger = get_logger(__name__)


class _BackoffState:
    """Minimal state object for tenacity wait strategies.

    Tenacity's wait functions expect a RetryCallState with an attempt_number.
    This provides a lightweight alternative to avoid importing the full class.
    """

    def __init__(self, attempt_number: int):
        self.attempt_number = attempt_number


@dataclass
class RepoWorker:
    """Collaborators bound to one repository."""

    client: CIClient
    executor: JobExecutor
    commands: CommandChannel
    publisher: Publisher | None = None


class Daemon:
    """Worker that polls pull requests and runs CI jobs for them."""

    def __init__(
        self,
        config: Config,
        sink: LogSink | None = None,
        mask: Callable[[str], str] | None = None,
        client_factory: Callable[[str], CIClient] | None = None,
    ) -> None:
        """Initialize the daemon with configuration.

        Args:
            config: Application configuration
            sink: Log sink for job output, or None to run without logs
            mask: Removes secrets from text that leaves the process
            client_factory: Builds the hosting-service client for a repository
        """
        logger.debug(
            f"Config: repos={config.repos}, status_timeout={config.status_timeout}s, "
            f"job_timeout={config.job_timeout}s, backoff={config.short_backoff}s/"
            f"{config.long_backoff}s"
        )
        self.config = config
        self.sink = sink
        self.mask = mask or (lambda text: text)
        self.known = KnownPullRequests()
        self.cycle = 0
        self._shutdown_event = asyncio.Event()
        self._main_task: asyncio.Task | None = None

        factory = client_factory or self._github_client
        self.workers: dict[str, RepoWorker] = {}
        for repo in config.repos:
            client = factory(repo)
            self.workers[repo] = RepoWorker(
                client=client,
                executor=JobExecutor(config, client, sink, mask=self.mask),
                commands=CommandChannel(client, config.ci_identifier, config.command_users),
                publisher=Publisher(config, client, mask=self.mask)
                if config.publish_command
                else None,
            )
        logger.debug("Daemon initialization complete")

    def _github_client(self, repo: str) -> CIClient:
        return GitHubCIClient(
            repo,
            self.config.github_token,
            self.config.ci_identifier,
            self.config.worker_uid,
        )

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_event.is_set()

    def request_shutdown(self, signum: int | None = None) -> None:
        """Stop after the current await; a second request cancels the running job."""
        name = signal.Signals(signum).name if signum is not None else "shutdown request"
        if self._shutdown_event.is_set():
            logger.warning(f"Received {name} again, cancelling the current job")
            if self._main_task is not None:
                self._main_task.cancel()
            return
        logger.info(f"Received {name}, initiating graceful shutdown...")
        self._shutdown_event.set()

    async def _sleep(self, seconds: float) -> bool:
        """Sleep unless shutdown is requested; returns True if it was."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True

    async def run(self) -> None:
        """Run the poll loop until a shutdown signal is received.

        Routine errors never end the loop. A failed cycle is logged and
        followed by the long back-off, however many cycles failed before it.
        """
        loop = asyncio.get_running_loop()
        self._main_task = asyncio.current_task()
        for signum in (signal.SIGINT, signal.SIGTERM):
            # Not available on Windows event loops
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(signum, self.request_shutdown, signum)

        long_backoff = self.config.long_backoff
        backoff_strategy = wait_fixed(long_backoff)

        logger.info(f"CI identifier: {self.config.ci_identifier}")
        logger.info(f"Worker fingerprint: {self.config.worker_uid}")
        logger.info(f"Repositories: {', '.join(self.config.repos)}")
        logger.info(f"Workspace: {self.config.workspace_dir}")

        consecutive_failures = 0
        try:
            while not self.shutdown_requested:
                try:
                    did_work = await self.poll_once()
                    consecutive_failures = 0
                    delay = self.config.short_backoff if did_work else long_backoff
                except Exception as e:
                    consecutive_failures += 1
                    delay = backoff_strategy(
                        _BackoffState(consecutive_failures)  # type: ignore[arg-type]
                    )
                    logger.error(f"Error during poll cycle: {self.mask(str(e))}", exc_info=True)
                    logger.info(
                        f"Poll failed ({consecutive_failures} consecutive). "
                        f"Backing off for {delay:.0f}s before retry..."
                    )
                if self.shutdown_requested or await self._sleep(delay):
                    break
        except asyncio.CancelledError:
            logger.warning("Poll loop cancelled")
        finally:
            for signum in (signal.SIGINT, signal.SIGTERM):
                with contextlib.suppress(NotImplementedError):
                    loop.remove_signal_handler(signum)
            self._main_task = None
            logger.info("Daemon stopped")

    async def poll_once(self) -> bool:
        """Poll every repository once.

        Returns:
            True if any job ran during the cycle
        """
        self.cycle += 1
        scan_commands = (self.cycle - 1) % max(self.config.command_scan_cycles, 1) == 0
        did_work = False
        for repo, worker in self.workers.items():
            if self.shutdown_requested:
                break
            if await self._poll_repo(repo, worker, scan_commands):
                did_work = True
        return did_work

    async def _poll_repo(self, repo: str, worker: RepoWorker, scan_commands: bool) -> bool:
        logger.info(f"Polling PRs of {repo}")
        prs = await worker.client.list_pull_requests()
        self.known.prune(repo, {pr.number for pr in prs})

        did_work = False
        for pr in prs:
            if self.shutdown_requested:
                return did_work
            decision, pr = await self.classify(repo, worker, pr, scan_commands)
            logger.info(f" - PR #{pr.number} ('{pr.title}'): {decision.classification.value}")
            if decision.cacheable:
                self.known.remember(repo, pr)
            if not decision.run:
                continue
            did_work = True
            outcome = await worker.executor.run(pr)
            if outcome.terminal:
                self.known.remember(repo, pr)
            else:
                self.known.forget(repo, pr.number)

        if worker.publisher is not None and not self.shutdown_requested:
            if await worker.publisher.poll(prs):
                did_work = True
        return did_work

    async def classify(
        self, repo: str, worker: RepoWorker, pr: PullRequest, scan_commands: bool
    ) -> tuple[Decision, PullRequest]:
        """Decide whether to run a job for a pull request.

        Returns the decision and the snapshot the job must run against; a
        processed command rewrites a comment, which changes the pull request,
        so the snapshot is re-read in that case.
        """
        if scan_commands:
            scan = await worker.commands.scan(pr)
            if scan.handled:
                pr = await worker.client.get_pull_request(pr.number)
            if scan.restart:
                self.known.forget(repo, pr.number)
                return RESTART, pr
        if self.known.is_known(repo, pr):
            return KNOWN, pr
        status = await worker.client.get_job_status(pr)
        return classify(status, datetime.now(UTC), self.config.status_timeout), pr

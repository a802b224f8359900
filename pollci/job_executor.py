"""Job execution for a single pull request.

A job moves through created -> fetching -> running -> finalizing and ends in
succeeded, failed or aborted. Every externally visible write is preceded by
a fencing check; losing the fence ends the job silently as aborted.
"""

import asyncio
import html
import shutil
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from pollci.config import Config
from pollci.coordination import Fence
from pollci.interfaces import CIClient, LogSink, LogSinkError, PullRequest, StatusState
from pollci.log_stream import LogStreamer
from pollci.logger import clear_pr_context, get_logger, log_message, set_pr_context
from pollci.process_runner import CommandError, CommandTimeoutError, start_command
from pollci.telemetry import get_tracer, record_job_metrics
from pollci.workspace import GitWorkspace, VcsError, allocate_job_dir

logger = get_logger(__name__)

LOG_PURPOSE = "logs"
LOG_CONTENT_TYPE = "text/html; charset=utf-8"
PR_REMOTE = "pr"


def _no_output() -> str:
    return ""


class JobState(str, Enum):
    CREATED = "created"
    FETCHING = "fetching"
    RUNNING = "running"
    FINALIZING = "finalizing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass
class JobOutcome:
    """Result of one job run.

    Attributes:
        state: Final state (succeeded, failed or aborted)
        reason: Why the job ended the way it did
        log_url: Public URL of the job log, if one was created
        timings: Phase durations in seconds ("fetch", "test")
        warnings: Best-effort failures that did not affect the outcome
    """

    state: JobState
    reason: str = ""
    log_url: str | None = None
    timings: dict[str, float] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    @property
    def terminal(self) -> bool:
        """Succeeded and failed outcomes describe the pull request version for good."""
        return self.state in (JobState.SUCCEEDED, JobState.FAILED)


def format_duration(seconds: float) -> str:
    """Render a duration as '12s', '3m 4s' or '1h 2m'."""
    total = int(round(seconds))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def summarize_timings(timings: dict[str, float]) -> str:
    """'fetch 12s, test 3m 4s' for whichever phases ran."""
    return ", ".join(
        f"{phase} {format_duration(timings[phase])}"
        for phase in ("fetch", "test")
        if phase in timings
    )


def log_header(repo: str, pr: PullRequest, ci_identifier: str) -> str:
    """Minimal HTML page header for a job log; output follows inside <pre>."""
    title = html.escape(f"{repo}#{pr.number} on {ci_identifier}")
    return (
        "<!DOCTYPE html>\n"
        f'<html><head><meta charset="utf-8"><title>{title}</title></head>\n'
        f"<body><h3>{title}</h3>\n"
        f"<p>{html.escape(pr.title)}<br>base {pr.base_id[:8]} ({html.escape(pr.base_ref)}), "
        f"head {pr.head_id[:8]}</p>\n<pre>\n"
    )


class JobExecutor:
    """Runs CI jobs for the pull requests of one repository."""

    def __init__(
        self,
        config: Config,
        client: CIClient,
        sink: LogSink | None,
        mask: Callable[[str], str] | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            config: Worker configuration (command, timeouts, workspace)
            client: Hosting-service client bound to the repository
            sink: Log sink, or None to run without logs
            mask: Removes secrets from text that leaves the process
        """
        self.config = config
        self.client = client
        self.sink = sink
        self.mask = mask or (lambda text: text)
        self.fence = Fence(client)

    async def run(self, pr: PullRequest) -> JobOutcome:
        """Run the job for one pull request snapshot.

        Never raises except on cancellation; every failure is reported
        through the returned JobOutcome.
        """
        repo = self.client.repo
        set_pr_context(repo, pr.number)
        started = time.monotonic()
        tracer = get_tracer()
        try:
            with tracer.start_as_current_span(
                "job.run",
                attributes={
                    "repo": repo,
                    "pr.number": pr.number,
                    "pr.head": pr.head_id,
                    "ci_identifier": self.config.ci_identifier,
                },
            ) as span:
                try:
                    outcome = await self._run(pr)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(f"Job stalled: {e}", exc_info=True)
                    await self._report_stall(pr, e)
                    outcome = JobOutcome(JobState.ABORTED, reason="stalled")
                span.set_attribute("job.state", outcome.state.value)
                span.set_attribute("job.reason", outcome.reason)
            duration = time.monotonic() - started
            record_job_metrics(repo, self.config.ci_identifier, outcome.state.value, duration)
            logger.info(
                f"Job {outcome.state.value} after {format_duration(duration)}"
                + (f": {outcome.reason}" if outcome.reason else "")
            )
            return outcome
        finally:
            clear_pr_context()

    async def _report_stall(self, pr: PullRequest, error: Exception) -> None:
        try:
            await self.client.set_status(pr, StatusState.PENDING, self.mask(f"Stalled: {error}"))
        except Exception as e:
            logger.warning(f"Failed to report stalled job: {e}")

    async def _run(self, pr: PullRequest) -> JobOutcome:
        timings: dict[str, float] = {}

        # Fetching
        await self.client.set_status(pr, StatusState.PENDING, "Fetching")
        job_dir = await asyncio.to_thread(
            allocate_job_dir,
            self.config.workspace_dir,
            self.config.worker_uid,
            pr.number,
            self.client.repo,
        )
        try:
            fetch_started = time.monotonic()
            try:
                await self._fetch(job_dir, pr)
            except VcsError as e:
                message = self.mask(str(e))
                logger.warning(f"Fetch failed: {message}")
                await self.client.set_status(pr, StatusState.FAILURE, message)
                return JobOutcome(JobState.FAILED, reason=message)
            timings["fetch"] = time.monotonic() - fetch_started

            if not await self.fence.holds(pr):
                return JobOutcome(
                    JobState.ABORTED, reason="fence lost before running", timings=timings
                )

            # Running
            streamer, log_url, warnings = await self._open_log(pr, job_dir.parent.name)
            await self.client.set_status(pr, StatusState.PENDING, "Running test job", log_url)
            test_started = time.monotonic()
            error = await self._run_command(str(job_dir), streamer)
            timings["test"] = time.monotonic() - test_started

            # Finalizing
            await streamer.final_flush()
            log_message(logger, "Command output", streamer.source())
            warnings.extend(streamer.warnings)
            if not await self.fence.holds(pr):
                return JobOutcome(
                    JobState.ABORTED,
                    reason="fence lost after running",
                    log_url=log_url,
                    timings=timings,
                    warnings=warnings,
                )

            if error is not None:
                if isinstance(error, CommandTimeoutError):
                    description = f"Timed out after {format_duration(self.config.job_timeout)}"
                else:
                    description = f"Failed: {error} ({summarize_timings(timings)})"
                await self.client.set_status(pr, StatusState.FAILURE, description, log_url)
                marker = await streamer.append_marker(
                    f"\n</pre>\n<h3>FAILED: {html.escape(description)}</h3>\n"
                )
                if marker.warning:
                    warnings.append(marker.warning)
                return JobOutcome(
                    JobState.FAILED,
                    reason=description,
                    log_url=log_url,
                    timings=timings,
                    warnings=warnings,
                )

            description = f"Passed ({summarize_timings(timings)})"
            await self.client.set_status(pr, StatusState.SUCCESS, description, log_url)
            marker = await streamer.append_marker("\n</pre>\n<h3>PASSED</h3>\n")
            if marker.warning:
                warnings.append(marker.warning)
            if await self.fence.was_updated(pr):
                logger.info("Pull request changed while the result was published")
                await self.client.set_status(
                    pr,
                    StatusState.PENDING,
                    "Superseded: pull request changed after this run",
                    log_url,
                )
                return JobOutcome(
                    JobState.ABORTED,
                    reason="superseded",
                    log_url=log_url,
                    timings=timings,
                    warnings=warnings,
                )
            return JobOutcome(
                JobState.SUCCEEDED,
                reason=description,
                log_url=log_url,
                timings=timings,
                warnings=warnings,
            )
        finally:
            await asyncio.to_thread(shutil.rmtree, job_dir.parent, True)

    async def _fetch(self, job_dir: Path, pr: PullRequest) -> None:
        """Check out the base branch and merge the pull request head into it."""
        git = GitWorkspace(job_dir, mask=self.mask)
        logger.info(f"Fetching into {job_dir}")
        await git.init()
        await git.pull(self.client.pull_url, pr.base_ref)
        await git.add_remote(PR_REMOTE, pr.head_repo_url)
        await git.fetch(PR_REMOTE)
        await git.merge(pr.head_id)

    async def _open_log(
        self, pr: PullRequest, job_id: str
    ) -> tuple[LogStreamer, str | None, list[str]]:
        """Create the log object for this job.

        Returns a streamer that discards output when the log object could
        not be created, along with the public log URL (or None).
        """
        # Unique across repositories, CI identifiers and workers sharing the container
        name = (
            f"{self.client.repo}/{self.config.ci_identifier}/"
            f"{job_id}_{self.config.worker_uid}.html"
        )
        warnings: list[str] = []
        if self.sink is None:
            return LogStreamer(None, "", name, _no_output), None, warnings
        try:
            container = await self.sink.ensure_container(LOG_PURPOSE)
            await self.sink.create_append_object(
                container,
                name,
                log_header(self.client.repo, pr, self.config.ci_identifier),
                LOG_CONTENT_TYPE,
            )
        except LogSinkError as e:
            warning = f"Failed to create job log {name}: {e}"
            logger.warning(warning)
            warnings.append(warning)
            return LogStreamer(None, "", name, _no_output), None, warnings
        url = self.sink.object_url(container, name)
        logger.info(f"Job log: {url}")
        return LogStreamer(self.sink, container, name, _no_output), url, warnings

    async def _run_command(self, cwd: str, streamer: LogStreamer) -> CommandError | None:
        """Run the build/test command under the deadline, streaming its output."""
        logger.info(f"Running: {self.config.command}")
        running = await start_command(self.config.command, cwd)
        streamer.source = running.output
        loop = asyncio.get_running_loop()
        deadline = loop.call_later(self.config.job_timeout, running.cancel)

        async def tick() -> None:
            while True:
                await asyncio.sleep(self.config.flush_interval)
                streamer.tick()

        ticker = asyncio.create_task(tick())
        try:
            return await running.result
        finally:
            deadline.cancel()
            ticker.cancel()
            running.cancel()

"""Tests for the job executor.

Git is replaced by FakeGitWorkspace; the build/test command is a real shell
command run in the allocated job directory.
"""

import asyncio
import re
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from unittest.mock import ANY, patch

import pytest

from pollci.interfaces import CIClientError, NetworkError, StatusState
from pollci.job_executor import (
    JobExecutor,
    JobState,
    format_duration,
    log_header,
    summarize_timings,
)
from pollci.logger import get_pr_context
from pollci.workspace import allocate_job_dir
from tests.conftest import CI_IDENTIFIER, REPO
from tests.fakes import FakeCIClient, make_pr


def mask(text: str) -> str:
    return text.replace("ghp_topsecret", "***")


@pytest.mark.unit
class TestFormatting:
    """Tests for duration and header formatting helpers."""

    @pytest.mark.parametrize(
        ("seconds", "expected"),
        [(0, "0s"), (12.4, "12s"), (59.6, "1m 0s"), (184, "3m 4s"), (3725, "1h 2m")],
    )
    def test_format_duration(self, seconds, expected):
        assert format_duration(seconds) == expected

    def test_summarize_timings_skips_missing_phases(self):
        assert summarize_timings({"fetch": 12, "test": 184}) == "fetch 12s, test 3m 4s"
        assert summarize_timings({"fetch": 5}) == "fetch 5s"
        assert summarize_timings({}) == ""

    def test_log_header_escapes_title(self):
        header = log_header(REPO, make_pr(7, title="<script>"), CI_IDENTIFIER)
        assert "&lt;script&gt;" in header
        assert "<script>" not in header
        assert header.rstrip().endswith("<pre>")


@pytest.mark.unit
class TestScenarios:
    """End-to-end job runs against in-memory collaborators."""

    @pytest.mark.asyncio
    async def test_fresh_pull_request_succeeds(self, config, client, sink, pr, fake_git):
        """Scenario A: Fetching -> Running -> Succeeded with both timings reported."""
        executor = JobExecutor(config, client, sink)

        outcome = await executor.run(pr)

        assert outcome.state is JobState.SUCCEEDED
        assert outcome.terminal
        assert set(outcome.timings) == {"fetch", "test"}
        assert [(state, desc) for _, state, desc, _ in client.writes[:2]] == [
            (StatusState.PENDING, "Fetching"),
            (StatusState.PENDING, "Running test job"),
        ]
        _, state, description, url = client.writes[-1]
        assert state is StatusState.SUCCESS
        assert re.fullmatch(r"Passed \(fetch \d+s, test \d+s\)", description)
        assert url == outcome.log_url
        assert client.statuses[pr.head_id].description.startswith("[w0rker01] Passed")

        assert fake_git.calls == [
            ("init",),
            ("pull", client.pull_url, "master"),
            ("add_remote", "pr", pr.head_repo_url),
            ("fetch", "pr"),
            ("merge", pr.head_id),
        ]
        container, name = sink.only_object()
        content = sink.content(container, name)
        assert "hello\n" in content
        assert content.endswith("<h3>PASSED</h3>\n")
        assert outcome.log_url == sink.object_url(container, name)

    @pytest.mark.asyncio
    async def test_foreign_status_during_run_aborts_without_writes(
        self, config, client, sink, now, fake_git
    ):
        """Scenario B: another worker takes over while the command runs."""
        stuck = make_pr(7, updated_at=now)
        client.prs[7] = stuck
        client.set_foreign_status(stuck, StatusState.PENDING, "[dead0000] Running test job")
        config.command = "sleep 0.2"

        def take_over(pr, state, description):
            if description == "Running test job":
                client.set_foreign_status(pr, StatusState.PENDING, "[other] Running test job")

        client.on_write.append(take_over)
        outcome = await JobExecutor(config, client, sink).run(stuck)

        assert outcome.state is JobState.ABORTED
        assert not outcome.terminal
        assert client.written_descriptions() == ["Fetching", "Running test job"]
        assert client.statuses[stuck.head_id].description == "[other] Running test job"
        # No result marker is appended once the fence is lost
        container, name = sink.only_object()
        assert sink.content(container, name) == log_header(REPO, stuck, CI_IDENTIFIER)

    @pytest.mark.asyncio
    async def test_update_during_fetch_aborts_before_running(
        self, config, client, sink, pr, fake_git
    ):
        """Scenario C: the pull request changes between fetching and running."""

        def push(changed, state, description):
            if description == "Fetching":
                client.touch(changed.number)

        client.on_write.append(push)
        outcome = await JobExecutor(config, client, sink).run(pr)

        assert outcome.state is JobState.ABORTED
        assert client.written_descriptions() == ["Fetching"]
        assert sink.objects == {}

    @pytest.mark.asyncio
    async def test_failing_command_reports_failure(self, config, client, sink, pr, fake_git):
        config.command = "echo broken >&2; exit 2"

        outcome = await JobExecutor(config, client, sink).run(pr)

        assert outcome.state is JobState.FAILED
        assert outcome.terminal
        _, state, description, url = client.writes[-1]
        assert state is StatusState.FAILURE
        assert description.startswith("Failed: Command exited with code 2")
        assert url is not None
        content = sink.content(*sink.only_object())
        assert "broken" in content
        assert "<h3>FAILED: " in content

    @pytest.mark.asyncio
    async def test_timeout_forces_failure(self, config, client, sink, pr, fake_git):
        config.command = "echo waiting; sleep 30"
        config.job_timeout = 1

        outcome = await JobExecutor(config, client, sink).run(pr)

        assert outcome.state is JobState.FAILED
        assert client.writes[-1][1] is StatusState.FAILURE
        assert client.writes[-1][2] == "Timed out after 1s"
        assert outcome.timings["test"] < 10
        assert "waiting" in sink.content(*sink.only_object())

    @pytest.mark.asyncio
    async def test_vcs_error_fails_with_masked_text(self, config, client, sink, pr, fake_git):
        fake_git.fail_on = "pull"

        outcome = await JobExecutor(config, client, sink, mask=mask).run(pr)

        assert outcome.state is JobState.FAILED
        assert client.writes[-1][1] is StatusState.FAILURE
        assert "exit code 128" in outcome.reason
        assert all("ghp_topsecret" not in d for d in client.written_descriptions())
        assert "***" in client.writes[-1][2]
        assert sink.objects == {}

    @pytest.mark.asyncio
    async def test_change_after_success_is_superseded(self, config, client, sink, pr, fake_git):
        def push(changed, state, description):
            if state is StatusState.SUCCESS:
                client.touch(changed.number)

        client.on_write.append(push)
        outcome = await JobExecutor(config, client, sink).run(pr)

        assert outcome.state is JobState.ABORTED
        assert outcome.reason == "superseded"
        _, state, description, _ = client.writes[-1]
        assert state is StatusState.PENDING
        assert description == "Superseded: pull request changed after this run"


@pytest.mark.unit
class TestFailureHandling:
    """Tests for stalls and best-effort log handling."""

    @pytest.mark.asyncio
    async def test_unexpected_error_reports_stall(self, config, client, sink, pr, fake_git):
        client.fail["get_pull_request"] = CIClientError("boom")

        outcome = await JobExecutor(config, client, sink).run(pr)

        assert outcome.state is JobState.ABORTED
        assert outcome.reason == "stalled"
        assert client.written_descriptions() == ["Fetching", "Stalled: boom"]

    @pytest.mark.asyncio
    async def test_stall_report_failure_is_swallowed(self, config, client, sink, pr, fake_git):
        client.fail["set_status"] = NetworkError("offline")

        outcome = await JobExecutor(config, client, sink).run(pr)

        assert outcome.state is JobState.ABORTED
        assert outcome.reason == "stalled"
        assert client.writes == []

    @pytest.mark.asyncio
    async def test_log_creation_failure_does_not_fail_job(
        self, config, client, sink, pr, fake_git
    ):
        sink.fail_create = True

        outcome = await JobExecutor(config, client, sink).run(pr)

        assert outcome.state is JobState.SUCCEEDED
        assert outcome.log_url is None
        assert any("Failed to create job log" in w for w in outcome.warnings)
        assert client.writes[1] == (pr.number, StatusState.PENDING, "Running test job", None)

    @pytest.mark.asyncio
    async def test_runs_without_sink(self, config, client, pr, fake_git):
        outcome = await JobExecutor(config, client, None).run(pr)
        assert outcome.state is JobState.SUCCEEDED
        assert outcome.log_url is None

    @pytest.mark.asyncio
    async def test_failed_appends_do_not_fail_job(self, config, client, sink, pr, fake_git):
        sink.failing_appends = 100

        outcome = await JobExecutor(config, client, sink).run(pr)

        assert outcome.state is JobState.SUCCEEDED
        assert outcome.warnings


@pytest.mark.unit
class TestJobEnvironment:
    """Tests for streaming, workspace cleanup, log context and metrics."""

    @pytest.mark.asyncio
    async def test_output_is_streamed_in_order(self, config, client, sink, pr, fake_git):
        config.command = "echo first; sleep 0.3; echo second"

        await JobExecutor(config, client, sink).run(pr)

        container, name = sink.only_object()
        chunks = sink.objects[(container, name)]
        assert len(chunks) >= 4
        body = "".join(chunks[1:])
        assert body.index("first") < body.index("second")
        assert body.count("first") == 1
        assert sink.max_concurrent_appends == 1

    @pytest.mark.asyncio
    async def test_job_directory_is_removed(self, config, client, sink, pr, fake_git, tmp_path):
        await JobExecutor(config, client, sink).run(pr)
        worker_dir = tmp_path / "work" / config.worker_uid
        assert list(worker_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_pr_context_is_cleared(self, config, client, sink, pr, fake_git):
        await JobExecutor(config, client, sink).run(pr)
        assert get_pr_context() == "pollci-worker"

    @pytest.mark.asyncio
    async def test_metrics_are_recorded(self, config, client, sink, pr, fake_git):
        with patch("pollci.job_executor.record_job_metrics") as record:
            await JobExecutor(config, client, sink).run(pr)
        record.assert_called_once_with(REPO, CI_IDENTIFIER, "succeeded", ANY)

    @pytest.mark.asyncio
    async def test_pending_status_written_before_fetch(self, config, client, sink, now, fake_git):
        old = make_pr(9, updated_at=now - timedelta(days=1))
        client.prs[9] = old

        await JobExecutor(config, client, sink).run(old)

        assert client.writes[0][0] == 9
        assert client.writes[0][2] == "Fetching"


@pytest.mark.unit
class TestLogNaming:
    """Tests for job log object names in a shared container."""

    @pytest.fixture
    def same_second(self):
        when = datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)
        with patch(
            "pollci.job_executor.allocate_job_dir",
            lambda *args: allocate_job_dir(*args, now=when),
        ):
            yield

    @pytest.mark.asyncio
    async def test_workers_on_different_platforms_get_separate_logs(
        self, config, client, sink, pr, fake_git, same_second
    ):
        other_config = replace(config, worker_uid="0ther000", ci_identifier="win32-x64")
        other_client = FakeCIClient(
            REPO, worker_uid="0ther000", ci_identifier="win32-x64", prs=[pr]
        )

        first, second = await asyncio.gather(
            JobExecutor(config, client, sink).run(pr),
            JobExecutor(other_config, other_client, sink).run(pr),
        )

        assert first.log_url != second.log_url
        names = sorted(name for _, name in sink.objects)
        assert names == [
            "acme/widgets/linux-x64/42_20240501T120000_w0rker01.html",
            "acme/widgets/win32-x64/42_20240501T120000_0ther000.html",
        ]
        for key in sink.objects:
            assert sink.content(*key).endswith("<h3>PASSED</h3>\n")

    @pytest.mark.asyncio
    async def test_repositories_with_same_name_get_separate_logs(
        self, config, client, sink, pr, fake_git, same_second
    ):
        other_client = FakeCIClient(
            "other/widgets", worker_uid=config.worker_uid, ci_identifier=CI_IDENTIFIER, prs=[pr]
        )

        await JobExecutor(config, client, sink).run(pr)
        await JobExecutor(config, other_client, sink).run(pr)

        assert sorted(name.split("/")[0] for _, name in sink.objects) == ["acme", "other"]

"""Pytest configuration and shared fixtures."""

import os
from datetime import UTC, datetime, timedelta

import pytest
from hypothesis import settings

from pollci.config import Config
from pollci.telemetry import reset_telemetry
from tests.fakes import FakeCIClient, FakeGitWorkspace, FakeLogSink, make_pr

# Configure Hypothesis profiles for different environments
settings.register_profile("ci", max_examples=100, deadline=None)
settings.register_profile("dev", max_examples=50, deadline=None)
settings.load_profile(os.environ.get("HYPOTHESIS_PROFILE", "dev"))

WORKER_UID = "w0rker01"
CI_IDENTIFIER = "linux-x64"
REPO = "acme/widgets"


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "hypothesis: marks property-based tests using Hypothesis",
    )


@pytest.fixture(autouse=True)
def _reset_telemetry():
    yield
    reset_telemetry()


@pytest.fixture
def now():
    return datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def config(tmp_path):
    """Config with short intervals and a workspace under tmp_path."""
    return Config(
        github_token="ghp_topsecret",
        storage_account="acct",
        storage_key="c2VjcmV0LWtleQ==",
        repos=[REPO],
        worker_uid=WORKER_UID,
        ci_identifier=CI_IDENTIFIER,
        command="echo hello",
        workspace_dir=str(tmp_path / "work"),
        status_timeout=300,
        job_timeout=10,
        flush_interval=0.05,
        short_backoff=0.01,
        long_backoff=0.02,
        log_file="",
    )


@pytest.fixture
def pr(now):
    return make_pr(42, updated_at=now - timedelta(minutes=1))


@pytest.fixture
def client(pr):
    return FakeCIClient(REPO, worker_uid=WORKER_UID, ci_identifier=CI_IDENTIFIER, prs=[pr])


@pytest.fixture
def sink():
    return FakeLogSink()


@pytest.fixture
def fake_git(monkeypatch):
    """Replace git with an in-memory recorder in the job executor and publisher."""
    FakeGitWorkspace.reset()
    monkeypatch.setattr("pollci.job_executor.GitWorkspace", FakeGitWorkspace)
    monkeypatch.setattr("pollci.publisher.GitWorkspace", FakeGitWorkspace)
    return FakeGitWorkspace

"""Remote CI client protocol.

This module defines the interface the core consumes from the hosting
service. One client instance is bound to one repository.
"""

from typing import Protocol, runtime_checkable

from pollci.interfaces.models import Comment, JobStatus, PullRequest, StatusState
from pollci.results import BestEffortResult


class CIClientError(Exception):
    """Base exception for hosting-service client errors."""

    pass


class NetworkError(CIClientError):
    """Raised when a call fails due to network connectivity issues.

    Connection refused, DNS failures and timeouts end up here. The poll loop
    treats these like any other transient error: the iteration is abandoned
    and the next cycle retries.
    """

    pass


@runtime_checkable
class CIClient(Protocol):
    """Protocol for hosting-service clients bound to a single repository."""

    @property
    def repo(self) -> str:
        """Repository in 'owner/repo' format."""
        ...

    @property
    def pull_url(self) -> str:
        """Credentialed clone URL of the repository."""
        ...

    @property
    def status_prefix(self) -> str:
        """Ownership fingerprint prepended to every status description."""
        ...

    async def list_pull_requests(self) -> list[PullRequest]:
        """List all open pull requests."""
        ...

    async def get_pull_request(self, number: int) -> PullRequest:
        """Fetch a single pull request by number."""
        ...

    async def get_combined_status(self, commit: str) -> dict[str, JobStatus]:
        """Get all statuses on a commit, keyed by context name."""
        ...

    async def get_job_status(self, pr: PullRequest) -> JobStatus | None:
        """Get this worker's CI identifier status on the pull request head."""
        ...

    async def set_status(
        self,
        pr: PullRequest,
        state: StatusState,
        description: str,
        url: str | None = None,
    ) -> None:
        """Write the status for this worker's CI identifier on the head commit."""
        ...

    async def list_comments(self, number: int) -> list[Comment]:
        """List all comments on a pull request."""
        ...

    async def create_comment(self, number: int, body: str) -> int:
        """Create a comment and return its id."""
        ...

    async def edit_comment(self, comment_id: int, body: str) -> None:
        """Replace the body of a comment."""
        ...

    async def delete_comment(self, comment_id: int) -> None:
        """Delete a comment."""
        ...

    async def try_delete_comment(self, comment_id: int) -> BestEffortResult:
        """Delete a comment, reporting failure instead of raising."""
        ...

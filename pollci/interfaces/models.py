"""Data types shared by the poll loop, the job executor and the clients.

Raw JSON from the hosting service is mapped into these types at the client
boundary; nothing untyped crosses into the core logic.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class StatusState(str, Enum):
    """State of a commit status.

    ``error`` is never written by pollci but other tools write it, so it is
    accepted when reading and treated like ``failure``.
    """

    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self is not StatusState.PENDING


@dataclass(frozen=True)
class PullRequest:
    """Snapshot of a pull request taken at poll time.

    Attributes:
        number: Pull request number, stable within a repository
        updated_at: Last modification time reported by the hosting service
        title: Pull request title
        base_ref: Target branch name
        base_id: Target branch commit SHA
        head_id: Source commit SHA
        head_repo_url: Clone URL of the head repository (may be a fork)
        merged: Whether the pull request has been merged
        state: "open" or "closed"
    """

    number: int
    updated_at: datetime
    title: str
    base_ref: str
    base_id: str
    head_id: str
    head_repo_url: str
    merged: bool = False
    state: str = "open"

    def same_version(self, other: "PullRequest") -> bool:
        """Two snapshots are the same observed version iff updated_at matches."""
        return self.number == other.number and self.updated_at == other.updated_at


@dataclass(frozen=True)
class JobStatus:
    """Commit status written under a CI identifier.

    Attributes:
        state: pending, success or failure
        updated_at: When the status was last written
        description: Free text; carries the ownership fingerprint prefix
        url: Optional link to the job log
    """

    state: StatusState
    updated_at: datetime
    description: str = ""
    url: str | None = None


@dataclass(frozen=True)
class Comment:
    """Pull request (issue) comment.

    Attributes:
        id: Numeric comment identifier
        body: Comment text
        user: Login of the author
    """

    id: int
    body: str
    user: str

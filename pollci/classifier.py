"""Pull request classification.

Decides, from the status this worker's CI identifier left on a pull request
head, whether a job should run. The decision is a pure function of the
status and the clock; the cache of already-finished versions lives beside it.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from pollci.interfaces import JobStatus, PullRequest


class Classification(str, Enum):
    KNOWN = "known"
    FRESH = "fresh"
    DONE = "done"
    LOOKS_ACTIVE = "looks active"
    LOOKS_STUCK = "looks stuck"
    RESTART_REQUESTED = "restart requested"


@dataclass(frozen=True)
class Decision:
    """Classification of one pull request and whether to run a job for it."""

    classification: Classification
    run: bool

    @property
    def cacheable(self) -> bool:
        """Only a terminal status is safe to remember across cycles."""
        return self.classification is Classification.DONE


KNOWN = Decision(Classification.KNOWN, run=False)
RESTART = Decision(Classification.RESTART_REQUESTED, run=True)


def classify(status: JobStatus | None, now: datetime, status_timeout: float) -> Decision:
    """Classify a pull request from its current job status.

    Args:
        status: Status under this worker's CI identifier, or None if absent
        now: Current time (timezone-aware)
        status_timeout: Seconds after which a pending status is presumed dead

    Returns:
        Decision for the pull request
    """
    if status is None:
        return Decision(Classification.FRESH, run=True)
    if status.state.is_terminal:
        return Decision(Classification.DONE, run=False)
    # A clock skewed into the future counts as zero elapsed time
    elapsed = max((now - status.updated_at).total_seconds(), 0.0)
    if elapsed < status_timeout:
        return Decision(Classification.LOOKS_ACTIVE, run=False)
    return Decision(Classification.LOOKS_STUCK, run=True)


class KnownPullRequests:
    """In-memory cache of pull request versions that reached a terminal status.

    Keyed by (repository, number). A lookup only hits when both the head
    commit and the update time are unchanged, so any push, edit or new
    comment makes the pull request eligible for classification again.
    """

    def __init__(self) -> None:
        self._entries: dict[tuple[str, int], tuple[str, datetime]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def is_known(self, repo: str, pr: PullRequest) -> bool:
        return self._entries.get((repo, pr.number)) == (pr.head_id, pr.updated_at)

    def remember(self, repo: str, pr: PullRequest) -> None:
        self._entries[(repo, pr.number)] = (pr.head_id, pr.updated_at)

    def forget(self, repo: str, number: int) -> None:
        self._entries.pop((repo, number), None)

    def prune(self, repo: str, open_numbers: set[int]) -> None:
        """Drop entries of pull requests that are no longer open."""
        for key in [k for k in self._entries if k[0] == repo and k[1] not in open_numbers]:
            del self._entries[key]

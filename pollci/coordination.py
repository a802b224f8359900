"""Optimistic fencing checks.

There is no lock server. Workers approximate mutual exclusion by re-reading
remote state immediately before every externally visible effect:

- owns_status: the latest status on the head commit still carries this
  worker's fingerprint, so nobody else has moved the pull request forward.
- was_updated: the pull request has changed since the snapshot was taken,
  so the code under test is stale.

Both checks are advisory. A window remains between check and write; the
next poll cycle of any worker re-derives the classification from whatever
was written last.
"""

from pollci.config import STATUS_DESCRIPTION_LIMIT
from pollci.interfaces import CIClient, PullRequest
from pollci.logger import get_logger

logger = get_logger(__name__)


def fingerprint_description(
    prefix: str, description: str, limit: int = STATUS_DESCRIPTION_LIMIT
) -> str:
    """Prefix a description with the ownership fingerprint and fit it to the field.

    Truncation is deterministic and never raises: the fingerprint always
    survives and the description is cut to whatever room is left.
    """
    text = prefix + " ".join(description.split())
    if len(text) <= limit:
        return text
    if len(prefix) >= limit:
        return prefix[:limit]
    return text[: limit - 1].rstrip() + "…"


async def owns_status(client: CIClient, pr: PullRequest) -> bool:
    """Check whether the current status on the head commit was written by this worker."""
    status = await client.get_job_status(pr)
    return status is not None and status.description.startswith(client.status_prefix)


async def was_updated(client: CIClient, pr: PullRequest) -> bool:
    """Check whether the pull request changed since the snapshot was taken."""
    current = await client.get_pull_request(pr.number)
    return not current.same_version(pr)


class Fence:
    """Both fencing checks for one repository client."""

    def __init__(self, client: CIClient) -> None:
        self.client = client

    async def holds(self, pr: PullRequest) -> bool:
        """True when this worker still owns the status and the snapshot is current."""
        if not await owns_status(self.client, pr):
            logger.info(f"Aborted: status on {pr.head_id[:8]} was written by another run")
            return False
        if await was_updated(self.client, pr):
            logger.info(f"Aborted: pull request #{pr.number} changed since it was polled")
            return False
        return True

    async def was_updated(self, pr: PullRequest) -> bool:
        return await was_updated(self.client, pr)

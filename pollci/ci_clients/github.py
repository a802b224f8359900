"""GitHub implementation of the CIClient protocol.

This module talks to the GitHub REST API (v3) with requests. Calls are
blocking, so every public coroutine hands the request to a worker thread
with asyncio.to_thread and the event loop stays responsive.
"""

import asyncio
from datetime import datetime
from typing import Any

import requests

from pollci.coordination import fingerprint_description
from pollci.interfaces import (
    CIClientError,
    Comment,
    JobStatus,
    NetworkError,
    PullRequest,
    StatusState,
)
from pollci.logger import get_logger
from pollci.results import BestEffortResult

logger = get_logger(__name__)

GITHUB_API_URL = "https://api.github.com"
USER_AGENT = "pollci"
REQUEST_TIMEOUT = 30

# Upper bound on followed pagination links for one listing
MAX_PAGES = 50


class GitHubAPIError(CIClientError):
    """Raised when GitHub answers with a non-success HTTP status."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


def _parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def parse_pull_request(data: dict[str, Any]) -> PullRequest:
    """Map a pull request JSON object to a PullRequest."""
    head_repo = data["head"].get("repo") or {}
    return PullRequest(
        number=data["number"],
        updated_at=_parse_timestamp(data["updated_at"]),
        title=data.get("title") or "",
        base_ref=data["base"]["ref"],
        base_id=data["base"]["sha"],
        head_id=data["head"]["sha"],
        # A deleted fork leaves head.repo null
        head_repo_url=head_repo.get("clone_url", ""),
        merged=bool(data.get("merged") or data.get("merged_at")),
        state=data.get("state", "open"),
    )


def parse_status(data: dict[str, Any]) -> JobStatus:
    """Map a status JSON object to a JobStatus."""
    return JobStatus(
        state=StatusState(data["state"]),
        updated_at=_parse_timestamp(data["updated_at"]),
        description=data.get("description") or "",
        url=data.get("target_url"),
    )


def parse_comment(data: dict[str, Any]) -> Comment:
    """Map an issue comment JSON object to a Comment."""
    user = data.get("user") or {}
    return Comment(id=data["id"], body=data.get("body") or "", user=user.get("login", ""))


class GitHubCIClient:
    """GitHub implementation of the CIClient protocol for one repository.

    Every status written by this client is prefixed with the worker's
    ownership fingerprint so later fencing checks can recognize it.
    """

    def __init__(
        self,
        repo: str,
        token: str,
        ci_identifier: str,
        worker_uid: str,
        api_url: str = GITHUB_API_URL,
        session: requests.Session | None = None,
    ) -> None:
        """Initialize the GitHub client.

        Args:
            repo: Repository in 'owner/repo' format
            token: Personal access token ('repo' scope)
            ci_identifier: Status context written and read by this worker
            worker_uid: Ownership fingerprint of this worker process
            api_url: REST API root, override for GitHub Enterprise
            session: Optional requests session (shared connection pool)
        """
        self._repo = repo
        self.token = token
        self.ci_identifier = ci_identifier
        self.worker_uid = worker_uid
        self.api_url = api_url.rstrip("/")
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "User-Agent": USER_AGENT,
                "Authorization": f"token {token}",
                "Accept": "application/vnd.github+json",
            }
        )
        logger.debug(f"GitHubCIClient initialized for {repo}")

    @property
    def repo(self) -> str:
        return self._repo

    @property
    def status_prefix(self) -> str:
        return f"[{self.worker_uid}] "

    @property
    def pull_url(self) -> str:
        return f"https://{self.token}@github.com/{self._repo}"

    # Pull requests

    async def list_pull_requests(self) -> list[PullRequest]:
        """List open pull requests (https://docs.github.com/rest/pulls/pulls#list-pull-requests)."""
        items = await asyncio.to_thread(
            self._get_paginated, f"repos/{self._repo}/pulls", {"state": "open", "per_page": 100}
        )
        return [parse_pull_request(item) for item in items]

    async def get_pull_request(self, number: int) -> PullRequest:
        data = await asyncio.to_thread(self._request, "GET", f"repos/{self._repo}/pulls/{number}")
        return parse_pull_request(data)

    # Statuses

    async def get_combined_status(self, commit: str) -> dict[str, JobStatus]:
        """Get the combined status for a ref, keyed by context."""
        data = await asyncio.to_thread(
            self._request, "GET", f"repos/{self._repo}/commits/{commit}/status"
        )
        result: dict[str, JobStatus] = {}
        # Newest first; keep the first entry seen per context
        for item in data.get("statuses", []):
            context = item.get("context")
            if context and context not in result:
                result[context] = parse_status(item)
        return result

    async def get_job_status(self, pr: PullRequest) -> JobStatus | None:
        statuses = await self.get_combined_status(pr.head_id)
        return statuses.get(self.ci_identifier)

    async def set_status(
        self,
        pr: PullRequest,
        state: StatusState,
        description: str,
        url: str | None = None,
    ) -> None:
        """Create a status on the head commit under this worker's CI identifier."""
        payload: dict[str, Any] = {
            "state": state.value,
            "context": self.ci_identifier,
            "description": fingerprint_description(self.status_prefix, description),
        }
        if url:
            payload["target_url"] = url
        await asyncio.to_thread(
            self._request, "POST", f"repos/{self._repo}/statuses/{pr.head_id}", payload
        )
        logger.info(f"Status -> {state.value} on {pr.head_id[:8]}: {description[:80]}")

    # Comments

    async def list_comments(self, number: int) -> list[Comment]:
        items = await asyncio.to_thread(
            self._get_paginated, f"repos/{self._repo}/issues/{number}/comments", {"per_page": 100}
        )
        return [parse_comment(item) for item in items]

    async def create_comment(self, number: int, body: str) -> int:
        data = await asyncio.to_thread(
            self._request, "POST", f"repos/{self._repo}/issues/{number}/comments", {"body": body}
        )
        return data["id"]

    async def edit_comment(self, comment_id: int, body: str) -> None:
        await asyncio.to_thread(
            self._request,
            "PATCH",
            f"repos/{self._repo}/issues/comments/{comment_id}",
            {"body": body},
        )

    async def delete_comment(self, comment_id: int) -> None:
        await asyncio.to_thread(
            self._request, "DELETE", f"repos/{self._repo}/issues/comments/{comment_id}"
        )

    async def try_delete_comment(self, comment_id: int) -> BestEffortResult:
        """Delete a comment; a comment that is already gone counts as deleted."""
        try:
            await self.delete_comment(comment_id)
        except GitHubAPIError as e:
            if e.status_code == 404:
                return BestEffortResult.success()
            return BestEffortResult.failed(f"Failed to delete comment {comment_id}: {e}")
        except CIClientError as e:
            return BestEffortResult.failed(f"Failed to delete comment {comment_id}: {e}")
        return BestEffortResult.success()

    # Transport

    def _request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> Any:
        """Perform one REST call and decode the JSON body.

        Raises:
            NetworkError: On connection failures and timeouts
            GitHubAPIError: On non-2xx responses or undecodable bodies
        """
        url = path if path.startswith("http") else f"{self.api_url}/{path}"
        response = self._send(method, url, payload=payload)
        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise GitHubAPIError(f"Invalid JSON from {method} {path}: {e}") from e

    def _get_paginated(self, path: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        """Follow Link headers and concatenate every page of a listing."""
        url: str | None = f"{self.api_url}/{path}"
        items: list[dict[str, Any]] = []
        pages = 0
        while url and pages < MAX_PAGES:
            pages += 1
            response = self._send("GET", url, params=params if pages == 1 else None)
            try:
                items.extend(response.json())
            except ValueError as e:
                raise GitHubAPIError(f"Invalid JSON from GET {path}: {e}") from e
            url = response.links.get("next", {}).get("url")
        if url:
            logger.warning(f"Stopped following pagination of {path} after {MAX_PAGES} pages")
        return items

    def _send(
        self,
        method: str,
        url: str,
        payload: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> requests.Response:
        logger.debug(f"{method} {url}")
        try:
            response = self.session.request(
                method, url, json=payload, params=params, timeout=REQUEST_TIMEOUT
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise NetworkError(f"GitHub API network error on {method} {url}: {e}") from e
        except requests.RequestException as e:
            raise CIClientError(f"GitHub API request failed on {method} {url}: {e}") from e

        if not response.ok:
            message = response.text[:300]
            raise GitHubAPIError(
                f"GitHub API {method} {url} returned {response.status_code}: {message}",
                status_code=response.status_code,
            )
        return response

"""Hosting-service client implementations."""

from pollci.ci_clients.github import GitHubAPIError, GitHubCIClient

__all__ = [
    "GitHubAPIError",
    "GitHubCIClient",
]

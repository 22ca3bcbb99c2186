"""Builds the source and target hosting clients for a run."""

from __future__ import annotations

from typing import NamedTuple, Protocol

from gitferry.config import Settings
from gitferry.providers.base import HostingClient
from gitferry.providers.github import GitHubClient
from gitferry.providers.gitlab import GitLabClient
from gitferry.schemas import PipelineRequest


class HostingClients(NamedTuple):
    source: HostingClient
    target: HostingClient

    async def close(self) -> None:
        await self.source.close()
        await self.target.close()


class ClientFactory(Protocol):
    def __call__(self, request: PipelineRequest, settings: Settings) -> HostingClients:
        ...


def default_client_factory(request: PipelineRequest, settings: Settings) -> HostingClients:
    """GitHub as the source, GitLab as the target."""
    # GitLab parses the repository URL in its constructor, so build it first
    target = GitLabClient(
        repo_url=request.gitlab_repo_url,
        access_token=request.gitlab_access_token,
        timeout=settings.http_timeout_seconds,
        force_with_lease=settings.gitlab_force_with_lease,
    )
    source = GitHubClient(
        access_token=request.github_access_token,
        base_url=settings.github_api_url,
        timeout=settings.http_timeout_seconds,
        force_with_lease=settings.github_force_with_lease,
    )
    return HostingClients(source=source, target=target)

"""Abstract base class for hosting provider clients."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx

from gitferry.errors import (
    AuthenticationError,
    AuthorizationError,
    IntegrationError,
    NotFoundError,
    PipelineError,
)
from gitferry.schemas import BranchInfo, MergeRequestInfo, ProjectInfo


logger = logging.getLogger(__name__)


class HostingClient(ABC):
    """Abstract base class for code hosting API clients.

    The GitHub (source) and GitLab (target) clients implement this interface
    so the pipeline steps and the git synchronizer can treat both alike.
    Methods take a project reference as returned by ``project_ref``.
    """

    def __init__(
        self,
        access_token: str,
        base_url: str,
        timeout: float = 30.0,
        force_with_lease: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not access_token:
            raise AuthenticationError(f"{self.provider_name} access token is required")

        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self._force_with_lease = force_with_lease
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._auth_headers(),
            timeout=timeout,
            transport=transport,
        )

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name (e.g., 'github', 'gitlab')."""
        ...

    @property
    def supports_force_with_lease(self) -> bool:
        """Whether pushes to this provider may fall back to --force-with-lease."""
        return self._force_with_lease

    @abstractmethod
    def _auth_headers(self) -> dict[str, str]:
        ...

    @abstractmethod
    def project_ref(self, repo_url: str) -> str:
        """Return the provider's project identifier for a repository URL.

        Raises:
            ValidationError: the URL is not a repository URL for this provider
        """
        ...

    @abstractmethod
    def clone_url(self, repo_url: str, authenticated: bool = True) -> str:
        """Return the https clone URL, optionally with the token embedded."""
        ...

    @abstractmethod
    async def get_project(self, project_ref: str) -> ProjectInfo:
        ...

    @abstractmethod
    async def list_branches(self, project_ref: str) -> list[BranchInfo]:
        ...

    @abstractmethod
    async def create_branch(self, project_ref: str, branch: str, ref: str) -> BranchInfo:
        """Create ``branch`` from ``ref``.

        Raises:
            BranchAlreadyExistsError: the branch already exists on the remote
        """
        ...

    @abstractmethod
    async def create_merge_request(
        self,
        project_ref: str,
        source_branch: str,
        target_branch: str,
        title: str,
        description: str = "",
    ) -> MergeRequestInfo:
        ...

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        """Send a request and return the decoded JSON body.

        Status codes are translated into pipeline errors; transport failures
        become IntegrationError.
        """
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise IntegrationError(
                f"{self.provider_name} request timed out: {method} {path}",
                service=self.provider_name,
            ) from e
        except httpx.HTTPError as e:
            raise IntegrationError(
                f"{self.provider_name} request failed: {e}",
                service=self.provider_name,
            ) from e

        if response.is_error:
            raise self._error_for(response)

        if not response.content:
            return None
        return response.json()

    def _error_for(self, response: httpx.Response) -> PipelineError:
        message = self._error_message(response)
        status = response.status_code
        logger.warning(
            f"{self.provider_name} API error {status} on "
            f"{response.request.method} {response.request.url.path}: {message}"
        )

        if status == 401:
            return AuthenticationError(
                f"{self.provider_name} authentication failed: {message}"
            )
        if status == 403:
            return AuthorizationError(
                f"{self.provider_name} access forbidden (rate limit or insufficient permissions): {message}"
            )
        if status == 429:
            return AuthorizationError(f"{self.provider_name} rate limit exceeded: {message}")
        if status == 404:
            return NotFoundError(f"{self.provider_name} resource not found: {message}")
        return IntegrationError(
            f"{self.provider_name} API error ({status}): {message}",
            service=self.provider_name,
            raw=response.text,
            details={"status_code": status},
        )

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or response.reason_phrase

        if isinstance(body, dict):
            for key in ("message", "error", "error_description"):
                value = body.get(key)
                if value:
                    if isinstance(value, (list, dict)):
                        return str(value)
                    return value
        return response.text or response.reason_phrase

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> "HostingClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

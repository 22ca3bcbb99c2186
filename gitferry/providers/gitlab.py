"""GitLab REST v4 client.

The API base URL is derived from the repository URL, so one client serves
one GitLab instance (gitlab.com or self-hosted):
https://gitlab.example.com/group/project.git -> https://gitlab.example.com/api/v4
"""

from __future__ import annotations

from urllib.parse import quote, urlsplit

import httpx

from gitferry.config import get_settings
from gitferry.errors import BranchAlreadyExistsError, IntegrationError, ValidationError
from gitferry.providers.base import HostingClient
from gitferry.schemas import BranchInfo, MergeRequestInfo, ProjectInfo


PAGE_SIZE = 100


def _split_repo_url(repo_url: str) -> tuple[str, str, str]:
    """Return (scheme, host, project path without .git)."""
    parsed = urlsplit((repo_url or "").strip())
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise ValidationError(
            "Invalid GitLab URL format. Expected https://gitlab.com/namespace/project"
        )

    path = parsed.path.strip("/")
    if path.endswith(".git"):
        path = path[:-4]
    if len([part for part in path.split("/") if part]) < 2:
        raise ValidationError("GitLab URL must contain at least namespace/project")

    host = parsed.netloc.rsplit("@", 1)[-1]
    return parsed.scheme, host, path


class GitLabClient(HostingClient):
    """GitLab API client using a personal/project access token."""

    def __init__(
        self,
        repo_url: str,
        access_token: str,
        timeout: float | None = None,
        force_with_lease: bool | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        scheme, host, _ = _split_repo_url(repo_url)
        super().__init__(
            access_token=access_token,
            base_url=f"{scheme}://{host}/api/v4",
            timeout=timeout or settings.http_timeout_seconds,
            force_with_lease=(
                settings.gitlab_force_with_lease if force_with_lease is None else force_with_lease
            ),
            transport=transport,
        )

    @property
    def provider_name(self) -> str:
        return "gitlab"

    def _auth_headers(self) -> dict[str, str]:
        return {
            "Private-Token": self.access_token,
            "Content-Type": "application/json",
        }

    def project_ref(self, repo_url: str) -> str:
        _, _, path = _split_repo_url(repo_url)
        return path

    @staticmethod
    def _project_id(project_ref: str) -> str:
        # group/sub/project -> group%2Fsub%2Fproject
        return quote(project_ref, safe="")

    def clone_url(self, repo_url: str, authenticated: bool = True) -> str:
        scheme, host, path = _split_repo_url(repo_url)
        if authenticated:
            return f"{scheme}://oauth2:{self.access_token}@{host}/{path}.git"
        return f"{scheme}://{host}/{path}.git"

    async def get_project(self, project_ref: str) -> ProjectInfo:
        data = await self._request("GET", f"/projects/{self._project_id(project_ref)}")
        return ProjectInfo(
            id=data["id"],
            path=data.get("path_with_namespace", project_ref),
            name=data.get("name", project_ref.rsplit("/", 1)[-1]),
            default_branch=data.get("default_branch") or "main",
            web_url=data.get("web_url"),
            http_url=data.get("http_url_to_repo"),
            private=(data["visibility"] == "private") if "visibility" in data else None,
        )

    async def list_branches(self, project_ref: str) -> list[BranchInfo]:
        branches: list[BranchInfo] = []
        page = 1
        while True:
            data = await self._request(
                "GET",
                f"/projects/{self._project_id(project_ref)}/repository/branches",
                params={"per_page": PAGE_SIZE, "page": page},
            )
            for item in data or []:
                branches.append(
                    BranchInfo(
                        name=item["name"],
                        commit_sha=(item.get("commit") or {}).get("id"),
                        protected=bool(item.get("protected", False)),
                    )
                )
            if not data or len(data) < PAGE_SIZE:
                return branches
            page += 1

    async def create_branch(self, project_ref: str, branch: str, ref: str) -> BranchInfo:
        try:
            data = await self._request(
                "POST",
                f"/projects/{self._project_id(project_ref)}/repository/branches",
                json={"branch": branch, "ref": ref},
            )
        except IntegrationError as e:
            if "already exists" in e.message.lower():
                raise BranchAlreadyExistsError(
                    f"Branch '{branch}' already exists",
                    service=self.provider_name,
                    raw=e.raw,
                ) from e
            raise

        return BranchInfo(
            name=data.get("name", branch),
            commit_sha=(data.get("commit") or {}).get("id"),
            protected=bool(data.get("protected", False)),
        )

    async def create_merge_request(
        self,
        project_ref: str,
        source_branch: str,
        target_branch: str,
        title: str,
        description: str = "",
    ) -> MergeRequestInfo:
        data = await self._request(
            "POST",
            f"/projects/{self._project_id(project_ref)}/merge_requests",
            json={
                "source_branch": source_branch,
                "target_branch": target_branch,
                "title": title,
                "description": description,
                "remove_source_branch": False,
            },
        )
        return MergeRequestInfo(
            id=data["id"],
            iid=data.get("iid"),
            web_url=data["web_url"],
            title=data.get("title", title),
            state=data.get("state"),
            source_branch=data.get("source_branch", source_branch),
            target_branch=data.get("target_branch", target_branch),
        )

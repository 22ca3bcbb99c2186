"""GitHub REST v3 client.

Used for the source side of the pipeline: resolving the repository (and its
default branch) before cloning. Branch and pull request calls are here too so
GitHub can also serve as a target.
"""

from __future__ import annotations

import re
from urllib.parse import urlsplit

import httpx

from gitferry.config import get_settings
from gitferry.errors import BranchAlreadyExistsError, IntegrationError, ValidationError
from gitferry.providers.base import HostingClient
from gitferry.schemas import BranchInfo, MergeRequestInfo, ProjectInfo


_SSH_URL = re.compile(r"^git@(?P<host>[^:]+):(?P<owner>[^/]+)/(?P<repo>.+?)(?:\.git)?/?$")

PAGE_SIZE = 100


class GitHubClient(HostingClient):
    """GitHub API client using token authentication."""

    def __init__(
        self,
        access_token: str,
        base_url: str | None = None,
        timeout: float | None = None,
        force_with_lease: bool | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        super().__init__(
            access_token=access_token,
            base_url=base_url or settings.github_api_url,
            timeout=timeout or settings.http_timeout_seconds,
            force_with_lease=(
                settings.github_force_with_lease if force_with_lease is None else force_with_lease
            ),
            transport=transport,
        )

    @property
    def provider_name(self) -> str:
        return "github"

    def _auth_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"token {self.access_token}",
            "Accept": "application/vnd.github+json",
            "User-Agent": "gitferry",
        }

    @staticmethod
    def parse_repository_url(repo_url: str) -> tuple[str, str, str]:
        """Split a GitHub URL into (host, owner, repo).

        Accepts ``https://github.com/owner/repo[.git]`` and
        ``git@github.com:owner/repo.git``.
        """
        repo_url = (repo_url or "").strip()
        match = _SSH_URL.match(repo_url)
        if match:
            return match.group("host"), match.group("owner"), match.group("repo")

        parsed = urlsplit(repo_url)
        parts = [part for part in parsed.path.split("/") if part]
        if parsed.scheme not in ("http", "https") or not parsed.hostname or len(parts) != 2:
            raise ValidationError("Invalid GitHub repository URL format")

        owner, repo = parts
        if repo.endswith(".git"):
            repo = repo[:-4]
        if not repo:
            raise ValidationError("Invalid GitHub repository URL format")
        return parsed.netloc.rsplit("@", 1)[-1], owner, repo

    def project_ref(self, repo_url: str) -> str:
        _, owner, repo = self.parse_repository_url(repo_url)
        return f"{owner}/{repo}"

    def clone_url(self, repo_url: str, authenticated: bool = True) -> str:
        host, owner, repo = self.parse_repository_url(repo_url)
        if authenticated:
            return f"https://{self.access_token}@{host}/{owner}/{repo}.git"
        return f"https://{host}/{owner}/{repo}.git"

    async def get_project(self, project_ref: str) -> ProjectInfo:
        data = await self._request("GET", f"/repos/{project_ref}")
        return ProjectInfo(
            id=data["id"],
            path=data.get("full_name", project_ref),
            name=data.get("name", project_ref.rsplit("/", 1)[-1]),
            default_branch=data.get("default_branch") or "main",
            web_url=data.get("html_url"),
            http_url=data.get("clone_url"),
            private=data.get("private"),
        )

    async def list_branches(self, project_ref: str) -> list[BranchInfo]:
        branches: list[BranchInfo] = []
        page = 1
        while True:
            data = await self._request(
                "GET",
                f"/repos/{project_ref}/branches",
                params={"per_page": PAGE_SIZE, "page": page},
            )
            for item in data or []:
                branches.append(
                    BranchInfo(
                        name=item["name"],
                        commit_sha=(item.get("commit") or {}).get("sha"),
                        protected=bool(item.get("protected", False)),
                    )
                )
            if not data or len(data) < PAGE_SIZE:
                return branches
            page += 1

    async def create_branch(self, project_ref: str, branch: str, ref: str) -> BranchInfo:
        base = await self._request("GET", f"/repos/{project_ref}/git/ref/heads/{ref}")
        sha = (base.get("object") or {}).get("sha")
        if not sha:
            raise IntegrationError(
                f"Could not resolve base branch '{ref}' on github",
                service=self.provider_name,
            )

        try:
            data = await self._request(
                "POST",
                f"/repos/{project_ref}/git/refs",
                json={"ref": f"refs/heads/{branch}", "sha": sha},
            )
        except IntegrationError as e:
            if "already exists" in e.message.lower():
                raise BranchAlreadyExistsError(
                    f"Branch '{branch}' already exists",
                    service=self.provider_name,
                    raw=e.raw,
                ) from e
            raise

        return BranchInfo(name=branch, commit_sha=(data.get("object") or {}).get("sha", sha))

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
            f"/repos/{project_ref}/pulls",
            json={
                "title": title,
                "head": source_branch,
                "base": target_branch,
                "body": description,
            },
        )
        return MergeRequestInfo(
            id=data["id"],
            iid=data.get("number"),
            web_url=data.get("html_url") or data.get("url", ""),
            title=data.get("title", title),
            state=data.get("state"),
            source_branch=source_branch,
            target_branch=target_branch,
        )

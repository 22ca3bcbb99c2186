"""Git synchronization for pipeline working directories.

Provides the git operations the pipeline steps are built from:
- clone / clone_with_progress / fetch / fetch_with_progress / checkout_branch / checkout_commit
- stage_all / has_staged_changes / configure_identity / commit
- ensure_remote_branch: idempotent branch creation through a hosting client
- push_branch: push, merge remote changes on rejection, force as last resort
- authenticated_remote: put a token into ``origin`` only while it is needed
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator

from gitferry.config import Settings, get_settings
from gitferry.errors import (
    AuthenticationError,
    AuthorizationError,
    BranchAlreadyExistsError,
    IntegrationError,
    PipelineError,
)
from gitferry.providers.base import HostingClient
from gitferry.schemas import BranchInfo, CommandResult, PushOutcome, PushStrategy
from gitferry.tools.process import GitRunner, LineCallback, StartCallback, command_error
from gitferry.tools.sanitize import redact_token


logger = logging.getLogger(__name__)

REJECTION_MARKERS = ("non-fast-forward", "[rejected]", "fetch first", "updates were rejected")
AUTH_MARKERS = (
    "authentication failed",
    "could not read username",
    "invalid username or password",
    "http basic: access denied",
    "terminal prompts disabled",
)
PERMISSION_MARKERS = (
    "permission denied",
    "not allowed to push",
    "protected branch",
    "the requested url returned error: 403",
)


def is_push_rejection(result: CommandResult) -> bool:
    text = result.output.lower()
    return any(marker in text for marker in REJECTION_MARKERS)


def classify_git_error(result: CommandResult) -> PipelineError:
    """Turn a failed git command into an auth, permission or integration error."""
    text = result.output.lower()
    if any(marker in text for marker in AUTH_MARKERS):
        return AuthenticationError(f"Git authentication failed: {result.output}")
    if any(marker in text for marker in PERMISSION_MARKERS):
        return AuthorizationError(f"Git permission denied: {result.output}")
    return command_error(result)


class GitSynchronizer:
    """Git operations on local working directories."""

    def __init__(self, runner: GitRunner, push_timeout: float = 300.0):
        self.runner = runner
        self.push_timeout = push_timeout

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "GitSynchronizer":
        settings = settings or get_settings()
        return cls(
            runner=GitRunner.from_settings(settings),
            push_timeout=settings.git_push_timeout_seconds,
        )

    async def _git(self, repo: str, *args: str, timeout: float | None = None) -> CommandResult:
        result = await self.runner.run(list(args), cwd=repo, timeout=timeout)
        if not result.ok:
            raise classify_git_error(result)
        return result

    # =========================================================================
    # Repositories
    # =========================================================================

    @staticmethod
    def is_repository(path: str) -> bool:
        return os.path.isdir(os.path.join(path, ".git"))

    async def clone(self, url: str, destination: str) -> CommandResult:
        destination = os.path.abspath(destination)
        parent = os.path.dirname(destination)
        os.makedirs(parent, exist_ok=True)
        logger.info(f"Cloning {redact_token(url)} into {destination}")
        result = await self.runner.run(
            ["clone", url, destination], cwd=parent, timeout=self.push_timeout
        )
        if not result.ok:
            raise classify_git_error(result)
        return result

    async def clone_with_progress(
        self,
        url: str,
        destination: str,
        on_line: LineCallback | None = None,
        on_start: StartCallback | None = None,
    ) -> CommandResult:
        """Clone with ``--progress``; the caller inspects the result."""
        destination = os.path.abspath(destination)
        parent = os.path.dirname(destination)
        os.makedirs(parent, exist_ok=True)
        logger.info(f"Cloning {redact_token(url)} into {destination} with progress")
        return await self.runner.stream(
            ["clone", "--progress", url, destination],
            cwd=parent,
            on_line=on_line,
            on_start=on_start,
        )

    async def set_remote_url(self, repo: str, url: str, remote: str = "origin") -> None:
        await self._git(repo, "remote", "set-url", remote, url)

    @asynccontextmanager
    async def authenticated_remote(
        self,
        repo: str,
        auth_url: str,
        plain_url: str,
    ) -> AsyncIterator[None]:
        """Point ``origin`` at ``auth_url`` and restore ``plain_url`` on exit."""
        await self.set_remote_url(repo, auth_url)
        try:
            yield
        finally:
            await self.set_remote_url(repo, plain_url)

    async def fetch(self, repo: str, remote: str = "origin") -> None:
        await self._git(repo, "fetch", "--prune", remote, timeout=self.push_timeout)

    async def fetch_with_progress(
        self,
        repo: str,
        on_line: LineCallback | None = None,
        on_start: StartCallback | None = None,
        remote: str = "origin",
    ) -> CommandResult:
        """Fetch with ``--progress``; the caller inspects the result."""
        logger.info(f"Fetching {remote} into {repo} with progress")
        return await self.runner.stream(
            ["fetch", "--progress", "--prune", remote],
            cwd=repo,
            on_line=on_line,
            on_start=on_start,
        )

    async def checkout_branch(self, repo: str, branch: str, start_point: str | None = None) -> None:
        """Force the local branch to ``start_point`` (default origin/<branch>) and check it out."""
        await self._git(repo, "checkout", "-f", "-B", branch, start_point or f"origin/{branch}")

    async def has_commit(self, repo: str, sha: str) -> bool:
        result = await self.runner.run(["cat-file", "-t", sha], cwd=repo)
        return result.ok and result.stdout.strip() == "commit"

    async def checkout_commit(self, repo: str, sha: str) -> None:
        await self._git(repo, "checkout", "-f", sha)

    async def head_sha(self, repo: str, ref: str = "HEAD") -> str:
        result = await self._git(repo, "rev-parse", ref)
        return result.stdout.strip()

    async def remote_ref_sha(self, repo: str, branch: str, remote: str = "origin") -> str | None:
        result = await self.runner.run(
            ["rev-parse", "--verify", "--quiet", f"refs/remotes/{remote}/{branch}"], cwd=repo
        )
        return result.stdout.strip() if result.ok else None

    # =========================================================================
    # Commits
    # =========================================================================

    async def stage_all(self, repo: str) -> None:
        await self._git(repo, "add", "--all", ".")

    async def has_staged_changes(self, repo: str) -> bool:
        result = await self._git(repo, "status", "--porcelain")
        return bool(result.stdout.strip())

    async def configure_identity(self, repo: str, name: str, email: str) -> None:
        await self._git(repo, "config", "user.name", name)
        await self._git(repo, "config", "user.email", email)

    async def commit(self, repo: str, message: str) -> str:
        await self._git(repo, "commit", "-m", message)
        return await self.head_sha(repo)

    # =========================================================================
    # Branches
    # =========================================================================

    async def ensure_remote_branch(
        self,
        client: HostingClient,
        project_ref: str,
        branch: str,
        base: str,
    ) -> tuple[BranchInfo, bool]:
        """Make sure ``branch`` exists remotely; returns (branch, created).

        An existing branch is reused. Losing a creation race to another
        writer counts as success.
        """
        existing = await self._find_branch(client, project_ref, branch)
        if existing is not None:
            logger.info(f"Branch {branch} already exists on {client.provider_name}; reusing it")
            return existing, False

        try:
            created = await client.create_branch(project_ref, branch, base)
        except BranchAlreadyExistsError:
            logger.info(f"Branch {branch} was created concurrently; reusing it")
            existing = await self._find_branch(client, project_ref, branch)
            return existing or BranchInfo(name=branch), False

        logger.info(f"Created branch {branch} from {base} on {client.provider_name}")
        return created, True

    @staticmethod
    async def _find_branch(client: HostingClient, project_ref: str, branch: str) -> BranchInfo | None:
        for info in await client.list_branches(project_ref):
            if info.name == branch:
                return info
        return None

    # =========================================================================
    # Push
    # =========================================================================

    async def _push(self, repo: str, args: list[str]) -> CommandResult:
        return await self.runner.run(args, cwd=repo, timeout=self.push_timeout)

    async def push_branch(self, repo: str, branch: str, lease_supported: bool = True) -> PushOutcome:
        """Push ``branch`` to origin, resolving non-fast-forward rejections.

        1. Plain push.
        2. On rejection: fetch, merge origin/<branch> (no rebase), push again.
        3. If the merge conflicts or the push is still rejected: force push,
           with a lease on the last fetched remote sha when supported.

        Step 3 overwrites remote commits and is logged as a warning.
        """
        result = await self._push(repo, ["push", "origin", branch])
        if result.ok:
            return PushOutcome(
                strategy=PushStrategy.FAST_FORWARD,
                commit_sha=await self.head_sha(repo),
            )
        if not is_push_rejection(result):
            raise classify_git_error(result)

        logger.warning(f"Push of {branch} rejected as non-fast-forward; merging remote changes")
        await self.fetch(repo)
        lease_sha = await self.remote_ref_sha(repo, branch)
        attempts = 1

        pull = await self.runner.run(
            ["pull", "--no-rebase", "--no-edit", "origin", branch],
            cwd=repo,
            timeout=self.push_timeout,
        )
        if pull.ok:
            attempts += 1
            retry = await self._push(repo, ["push", "origin", branch])
            if retry.ok:
                logger.info(f"Pushed {branch} after merging remote changes")
                return PushOutcome(
                    strategy=PushStrategy.MERGE,
                    commit_sha=await self.head_sha(repo),
                    attempts=attempts,
                )
            if not is_push_rejection(retry):
                raise classify_git_error(retry)
            logger.warning(f"Push of {branch} still rejected after merge")
            lease_sha = await self.remote_ref_sha(repo, branch)
        else:
            logger.warning(f"Merging origin/{branch} failed: {pull.output}")
            abort = await self.runner.run(["merge", "--abort"], cwd=repo)
            if not abort.ok:
                logger.debug(f"merge --abort: {abort.output}")

        if lease_supported and lease_sha:
            args = ["push", f"--force-with-lease=refs/heads/{branch}:{lease_sha}", "origin", branch]
            strategy = PushStrategy.FORCE_WITH_LEASE
        else:
            args = ["push", "--force", "origin", branch]
            strategy = PushStrategy.FORCE

        logger.warning(
            f"Force pushing {branch} ({strategy.value}); commits on the remote branch "
            f"that are not in the local history will be overwritten"
        )
        attempts += 1
        forced = await self._push(repo, args)
        if not forced.ok:
            error = classify_git_error(forced)
            if isinstance(error, IntegrationError):
                raise IntegrationError(
                    f"Force push of {branch} failed: {forced.output}",
                    service="git",
                    raw=forced.output,
                )
            raise error

        return PushOutcome(
            strategy=strategy,
            commit_sha=await self.head_sha(repo),
            attempts=attempts,
            overwrote_remote=True,
        )

"""The five pipeline steps.

Each step takes the run's StepContext, does its work, and returns a
StepOutcome or raises a PipelineError. Steps never write run records
themselves; the orchestrator does all status bookkeeping around them.

1. clone_github          - fetch the source repository (progress, cancellable)
2. create_gitlab_branch  - ensure the target branch exists, prepare the checkout
3. copy_files            - place the selected files into the checkout
4. commit_changes        - commit and push, resolving push conflicts
5. create_merge_request  - open the merge request
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, Field

from gitferry.config import Settings
from gitferry.errors import (
    AuthenticationError,
    OperationCancelledError,
    OperationTimeoutError,
    PipelineError,
    ValidationError,
)
from gitferry.pipeline.progress import OperationProgress, ProgressRegistry
from gitferry.providers.factory import HostingClients
from gitferry.schemas import (
    CancelReason,
    CommandResult,
    MergeRequestInfo,
    PipelineRequest,
    ProgressPhase,
    PushOutcome,
    StepName,
)
from gitferry.tools.file_copy import CopyResult, copy_selection, select_patterns
from gitferry.tools.git_ops import GitSynchronizer, classify_git_error
from gitferry.tools.process import StartCallback
from gitferry.tools.sanitize import (
    sanitize_branch_name,
    sanitize_commit_message,
    sanitize_file_path,
)


logger = logging.getLogger(__name__)


class StepOutcome(BaseModel):
    """What a step reports back to the orchestrator."""
    message: str
    data: dict[str, Any] = Field(default_factory=dict)


class StepContext:
    """Everything a step needs, plus the values earlier steps produced."""

    def __init__(
        self,
        run_id: str,
        operation_id: str,
        request: PipelineRequest,
        clients: HostingClients,
        git: GitSynchronizer,
        progress: ProgressRegistry,
        settings: Settings,
    ):
        self.run_id = run_id
        self.operation_id = operation_id
        self.request = request
        self.clients = clients
        self.git = git
        self.progress = progress
        self.settings = settings

        # Filled in as steps complete
        self.source_path: str | None = None
        self.source_commit: str | None = None
        self.checkout_path: str | None = None
        self.target_project_ref: str | None = None
        self.copy_result: CopyResult | None = None
        self.commit_sha: str | None = None
        self.push_outcome: PushOutcome | None = None
        self.merge_request: MergeRequestInfo | None = None


StepAction = Callable[[StepContext], Awaitable[StepOutcome]]


async def _remove_path(path: str) -> None:
    if os.path.isdir(path) and not os.path.islink(path):
        await asyncio.to_thread(shutil.rmtree, path)
    elif os.path.lexists(path):
        os.remove(path)


def _require(value: str | None, name: str) -> str:
    if value is None:
        raise PipelineError(f"{name} is not available; an earlier step did not complete")
    return value


# =============================================================================
# Step 1: clone-github
# =============================================================================

async def clone_github(ctx: StepContext) -> StepOutcome:
    """Clone (or refresh) the source repository with realtime progress."""
    request = ctx.request
    if not request.github_access_token:
        raise AuthenticationError("GitHub access token is required")

    source = ctx.clients.source
    progress = OperationProgress(
        ctx.progress,
        ctx.operation_id,
        teardown_delay=ctx.settings.progress_teardown_delay_seconds,
    )

    try:
        progress.progress("Validating repository access...", 5, ProgressPhase.INITIALIZING)
        project_ref = source.project_ref(request.github_repo_url)
        project = await source.get_project(project_ref)

        local_path = os.path.join(
            request.github_download_location, project_ref.replace("/", "-")
        )
        auth_url = source.clone_url(request.github_repo_url, authenticated=True)
        plain_url = source.clone_url(request.github_repo_url, authenticated=False)
        progress.progress(
            f"Repository {project.path} found, preparing {local_path}",
            10,
            ProgressPhase.INITIALIZING,
        )

        reused = ctx.git.is_repository(local_path)
        if reused:
            progress.status("Existing clone found, fetching latest changes...")
            async with ctx.git.authenticated_remote(local_path, auth_url, plain_url):
                await _fetch_with_progress(ctx, progress, local_path)
            if not request.github_target_commit_id:
                await ctx.git.checkout_branch(local_path, project.default_branch)
        else:
            if os.path.lexists(local_path):
                logger.info(f"Removing non-repository directory {local_path}")
                await _remove_path(local_path)
            await _clone_with_progress(ctx, progress, auth_url, local_path)
            await ctx.git.set_remote_url(local_path, plain_url)

        if request.github_target_commit_id:
            commit = request.github_target_commit_id
            progress.status(f"Checking out commit {commit}...")
            if not await ctx.git.has_commit(local_path, commit):
                raise ValidationError(f"Commit {commit} not found in repository")
            await ctx.git.checkout_commit(local_path, commit)

        ctx.source_path = local_path
        ctx.source_commit = await ctx.git.head_sha(local_path)
    except Exception as e:
        progress.error(e.message if isinstance(e, PipelineError) else str(e))
        raise

    progress.complete(f"Repository ready at {local_path}")
    verb = "Updated existing clone of" if reused else "Cloned"
    return StepOutcome(
        message=f"{verb} {project.path} at {ctx.source_commit[:12]}",
        data={
            "local_path": local_path,
            "commit": ctx.source_commit,
            "default_branch": project.default_branch,
            "reused_clone": reused,
            "repository": project.model_dump(mode="json"),
        },
    )


async def _clone_with_progress(
    ctx: StepContext,
    progress: OperationProgress,
    auth_url: str,
    local_path: str,
) -> None:
    progress.progress("Starting clone...", 10, ProgressPhase.INITIALIZING)
    try:
        await _run_tracked(
            ctx,
            "Clone",
            lambda on_start: ctx.git.clone_with_progress(
                auth_url, local_path, on_line=progress.line, on_start=on_start
            ),
        )
    except PipelineError:
        await _remove_path(local_path)
        raise


async def _fetch_with_progress(ctx: StepContext, progress: OperationProgress, local_path: str) -> None:
    await _run_tracked(
        ctx,
        "Fetch",
        lambda on_start: ctx.git.fetch_with_progress(
            local_path, on_line=progress.line, on_start=on_start
        ),
    )


async def _run_tracked(
    ctx: StepContext,
    action: str,
    command: Callable[[StartCallback], Awaitable[CommandResult]],
) -> CommandResult:
    """Run a source fetch under the registry so it can be cancelled or timed out."""
    registry = ctx.progress
    operation_id = ctx.operation_id
    timeout = ctx.settings.clone_timeout_seconds
    loop = asyncio.get_running_loop()
    timer: asyncio.TimerHandle | None = None

    def on_start(process: asyncio.subprocess.Process) -> None:
        nonlocal timer
        registry.register_process(operation_id, process)
        timer = loop.call_later(timeout, registry.cancel, operation_id, CancelReason.TIMEOUT)

    try:
        result = await command(on_start)
    finally:
        if timer is not None:
            timer.cancel()
        registry.unregister_process(operation_id)

    reason = registry.cancel_reason(operation_id)
    registry.clear_cancel(operation_id)

    if reason == CancelReason.TIMEOUT:
        raise OperationTimeoutError(f"{action} timed out after {timeout:g} seconds")
    if reason == CancelReason.USER:
        raise OperationCancelledError(f"{action} was cancelled")
    if not result.ok:
        raise classify_git_error(result)
    return result


# =============================================================================
# Step 2: create-gitlab-branch
# =============================================================================

async def create_gitlab_branch(ctx: StepContext) -> StepOutcome:
    """Ensure the target branch exists remotely and check it out locally."""
    request = ctx.request
    target = ctx.clients.target
    branch = sanitize_branch_name(request.gitlab_branch_name)
    base = sanitize_branch_name(request.gitlab_base_branch)

    project_ref = target.project_ref(request.gitlab_repo_url)
    project = await target.get_project(project_ref)
    info, created = await ctx.git.ensure_remote_branch(target, project_ref, branch, base)

    checkout = request.gitlab_checkout_location
    auth_url = target.clone_url(request.gitlab_repo_url, authenticated=True)
    plain_url = target.clone_url(request.gitlab_repo_url, authenticated=False)

    reused = ctx.git.is_repository(checkout)
    if reused:
        logger.info(f"Reusing existing checkout at {checkout}")
        async with ctx.git.authenticated_remote(checkout, auth_url, plain_url):
            await ctx.git.fetch(checkout)
    else:
        if os.path.lexists(checkout):
            logger.info(f"Removing non-repository directory {checkout}")
            await _remove_path(checkout)
        await ctx.git.clone(auth_url, checkout)
        await ctx.git.set_remote_url(checkout, plain_url)

    await ctx.git.checkout_branch(checkout, branch)

    ctx.checkout_path = checkout
    ctx.target_project_ref = project_ref
    action = "Created" if created else "Using existing"
    return StepOutcome(
        message=f"{action} branch {branch} in {project.path}",
        data={
            "branch": branch,
            "base_branch": base,
            "branch_created": created,
            "branch_commit": info.commit_sha,
            "checkout_path": checkout,
            "reused_clone": reused,
        },
    )


# =============================================================================
# Step 3: copy-files
# =============================================================================

def _resolve(path: str, base: str) -> str:
    if not path:
        return base
    if os.path.isabs(path):
        return os.path.normpath(path)
    return sanitize_file_path(base, path)


async def copy_files(ctx: StepContext) -> StepOutcome:
    """Copy the selected files from the source clone into the checkout."""
    request = ctx.request
    source_root = _resolve(request.source_path, _require(ctx.source_path, "Source clone"))
    destination_root = _resolve(
        request.destination_path, _require(ctx.checkout_path, "Target checkout")
    )
    patterns = select_patterns(request.copy_mode, request.files, request.include_folders)

    logger.info(
        f"Copying {len(patterns) or 'all'} entries ({request.copy_mode.value} mode) "
        f"from {source_root} to {destination_root}"
    )
    result = await asyncio.to_thread(
        copy_selection,
        source_root,
        destination_root,
        patterns,
        request.preserve_folder_structure,
        request.exclude_patterns,
    )
    ctx.copy_result = result

    return StepOutcome(
        message=(
            f"Copied {result.files_copied} files and {result.directories_copied} directories "
            f"from {source_root} to {destination_root} using {request.copy_mode.value} mode"
        ),
        data={
            "source_path": source_root,
            "destination_path": destination_root,
            "copy_mode": request.copy_mode.value,
            "patterns": patterns or "all",
            "files_processed": result.files_copied,
            "directories_copied": result.directories_copied,
        },
    )


# =============================================================================
# Step 4: commit-changes
# =============================================================================

async def commit_changes(ctx: StepContext) -> StepOutcome:
    """Commit everything in the checkout and push it to the target branch."""
    request = ctx.request
    target = ctx.clients.target
    repo = _require(ctx.checkout_path, "Target checkout")
    branch = sanitize_branch_name(request.gitlab_branch_name)

    await ctx.git.stage_all(repo)
    if not await ctx.git.has_staged_changes(repo):
        logger.info(f"Run {ctx.run_id}: nothing to commit in {repo}")
        return StepOutcome(message="No changes to commit", data={"committed": False})

    await ctx.git.configure_identity(
        repo, ctx.settings.git_user_name, ctx.settings.git_user_email
    )
    message = sanitize_commit_message(request.merge_request.commit_message)
    ctx.commit_sha = await ctx.git.commit(repo, message)

    auth_url = target.clone_url(request.gitlab_repo_url, authenticated=True)
    plain_url = target.clone_url(request.gitlab_repo_url, authenticated=False)
    async with ctx.git.authenticated_remote(repo, auth_url, plain_url):
        outcome = await ctx.git.push_branch(
            repo, branch, lease_supported=target.supports_force_with_lease
        )
    ctx.push_outcome = outcome
    ctx.commit_sha = outcome.commit_sha or ctx.commit_sha

    return StepOutcome(
        message=f"Changes committed and pushed to {branch} ({outcome.strategy.value})",
        data={
            "committed": True,
            "commit_sha": ctx.commit_sha,
            "push_strategy": outcome.strategy.value,
            "overwrote_remote": outcome.overwrote_remote,
        },
    )


# =============================================================================
# Step 5: create-merge-request
# =============================================================================

async def create_merge_request(ctx: StepContext) -> StepOutcome:
    """Open the merge request from the pipeline branch."""
    request = ctx.request
    target = ctx.clients.target
    config = request.merge_request
    project_ref = ctx.target_project_ref or target.project_ref(request.gitlab_repo_url)

    merge_request = await target.create_merge_request(
        project_ref,
        source_branch=config.source_branch or request.gitlab_branch_name,
        target_branch=config.target_branch,
        title=config.title,
        description=config.full_description(),
    )
    ctx.merge_request = merge_request

    return StepOutcome(
        message=f"Merge request created: {merge_request.web_url}",
        data={
            "merge_request_id": merge_request.id,
            "merge_request_iid": merge_request.iid,
            "merge_request_url": merge_request.web_url,
        },
    )


DEFAULT_STEPS: list[tuple[StepName, StepAction]] = [
    (StepName.CLONE_GITHUB, clone_github),
    (StepName.CREATE_GITLAB_BRANCH, create_gitlab_branch),
    (StepName.COPY_FILES, copy_files),
    (StepName.COMMIT_CHANGES, commit_changes),
    (StepName.CREATE_MERGE_REQUEST, create_merge_request),
]

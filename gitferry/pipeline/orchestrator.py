"""Pipeline orchestrator.

Runs the step list in order for one run. Before each step the step record
goes to in_progress, afterwards to success or failed; the first failure
stops the run, leaves every later step idle and records which step failed.
Side effects of completed steps (clones, remote branches, pushed commits)
are not rolled back.
"""

from __future__ import annotations

import asyncio
import logging
from uuid import uuid4

from gitferry.config import Settings, get_settings
from gitferry.database.run_store import RunStore
from gitferry.errors import IntegrationError, PipelineError, StateTransitionError
from gitferry.pipeline.progress import ProgressRegistry
from gitferry.pipeline.steps import DEFAULT_STEPS, StepAction, StepContext
from gitferry.providers.factory import ClientFactory, HostingClients, default_client_factory
from gitferry.schemas import (
    PIPELINE_EXECUTION_STEP,
    ErrorDetail,
    PipelineRequest,
    PipelineResult,
    PipelineRun,
    RunStatus,
    StepName,
    StepStatus,
)
from gitferry.tools.git_ops import GitSynchronizer


logger = logging.getLogger(__name__)


class PipelineOrchestrator:
    """Drives runs through the fixed step sequence."""

    def __init__(
        self,
        store: RunStore,
        progress: ProgressRegistry,
        git: GitSynchronizer | None = None,
        settings: Settings | None = None,
        client_factory: ClientFactory = default_client_factory,
        steps: list[tuple[StepName, StepAction]] | None = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.progress = progress
        self.git = git or GitSynchronizer.from_settings(self.settings)
        self.client_factory = client_factory
        self.steps = list(steps or DEFAULT_STEPS)

    async def create_run(self, owner_id: str, request: PipelineRequest) -> tuple[str, str]:
        """Record a new run; returns (run_id, operation_id)."""
        run_id = str(uuid4())
        operation_id = request.operation_id or run_id
        await self.store.create(owner_id, request.snapshot(), run_id=run_id)
        return run_id, operation_id

    async def execute(
        self,
        run_id: str,
        request: PipelineRequest,
        operation_id: str | None = None,
    ) -> PipelineRun | None:
        """Run every step for ``run_id`` and leave the run terminal."""
        operation_id = operation_id or request.operation_id or run_id
        clients: HostingClients | None = None
        logger.info(f"Starting execution of run {run_id}")

        try:
            clients = self.client_factory(request, self.settings)
            ctx = StepContext(
                run_id=run_id,
                operation_id=operation_id,
                request=request,
                clients=clients,
                git=self.git,
                progress=self.progress,
                settings=self.settings,
            )
            if await self._run_steps(ctx):
                await self.store.update_result(run_id, self._build_result(ctx))
                await self.store.update_status(run_id, RunStatus.SUCCESS)
                logger.info(f"Run {run_id} completed successfully")
        except asyncio.CancelledError:
            await self._mark_failed(run_id, IntegrationError("Pipeline execution was cancelled"))
            raise
        except Exception as e:
            logger.exception(f"Pipeline execution failed for run {run_id}")
            error = e if isinstance(e, PipelineError) else IntegrationError(f"Unexpected error: {e}")
            await self._mark_failed(run_id, error)
        finally:
            if clients is not None:
                await clients.close()

        return await self.store.get(run_id)

    async def _run_steps(self, ctx: StepContext) -> bool:
        """Execute the steps in order; False when one failed."""
        for name, action in self.steps:
            await self.store.update_step(ctx.run_id, name, StepStatus.IN_PROGRESS)
            logger.info(f"Run {ctx.run_id}: {name.value} started")

            try:
                outcome = await action(ctx)
            except PipelineError as e:
                error = e
            except Exception as e:
                logger.exception(f"Run {ctx.run_id}: unexpected error in {name.value}")
                error = IntegrationError(f"Unexpected error: {e}")
            else:
                await self.store.update_step(
                    ctx.run_id, name, StepStatus.SUCCESS, message=outcome.message, data=outcome.data
                )
                logger.info(f"Run {ctx.run_id}: {name.value} succeeded - {outcome.message}")
                continue

            logger.error(f"Run {ctx.run_id}: {name.value} failed - {error.message}")
            await self.store.update_step(
                ctx.run_id,
                name,
                StepStatus.FAILED,
                message=error.message,
                error_message=error.message,
            )
            await self.store.update_status(
                ctx.run_id,
                RunStatus.FAILED,
                ErrorDetail(step=name.value, message=error.message, error_code=error.error_code),
            )
            return False
        return True

    async def _mark_failed(self, run_id: str, error: PipelineError) -> None:
        """Best-effort terminal write when the orchestration itself broke."""
        try:
            await self.store.update_status(
                run_id,
                RunStatus.FAILED,
                ErrorDetail(
                    step=PIPELINE_EXECUTION_STEP,
                    message=error.message,
                    error_code=error.error_code,
                ),
            )
        except StateTransitionError:
            logger.debug(f"Run {run_id} already terminal")
        except Exception:
            logger.exception(f"Could not mark run {run_id} as failed")

    @staticmethod
    def _build_result(ctx: StepContext) -> PipelineResult:
        result = PipelineResult(commit_sha=ctx.commit_sha)
        if ctx.copy_result is not None:
            result.files_processed = ctx.copy_result.files_copied
            result.directories_copied = ctx.copy_result.directories_copied
        if ctx.push_outcome is not None:
            result.push_strategy = ctx.push_outcome.strategy
        if ctx.merge_request is not None:
            result.merge_request_id = ctx.merge_request.id
            result.merge_request_iid = ctx.merge_request.iid
            result.merge_request_url = ctx.merge_request.web_url
        return result

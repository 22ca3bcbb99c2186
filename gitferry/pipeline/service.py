"""Service container wiring the store, progress registry, orchestrator and reporter."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from gitferry.config import Settings, get_settings
from gitferry.database.run_store import RunStore
from gitferry.errors import ValidationError
from gitferry.pipeline.orchestrator import PipelineOrchestrator
from gitferry.pipeline.progress import ProgressRegistry
from gitferry.pipeline.reporter import StatusReporter
from gitferry.pipeline.steps import StepAction
from gitferry.providers.factory import ClientFactory, default_client_factory
from gitferry.schemas import PipelineRequest, RunSubmitResponse, StepName
from gitferry.tools.git_ops import GitSynchronizer


logger = logging.getLogger(__name__)


def parse_request(payload: PipelineRequest | dict[str, Any]) -> PipelineRequest:
    """Validate a submission, raising ValidationError with every problem found."""
    if isinstance(payload, PipelineRequest):
        return payload
    try:
        return PipelineRequest.model_validate(payload)
    except PydanticValidationError as e:
        problems = [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in e.errors()
        ]
        raise ValidationError(
            "Invalid pipeline configuration: " + "; ".join(problems),
            details={"errors": problems},
        ) from e


class PipelineService:
    """One instance per process; owns everything a run touches."""

    def __init__(
        self,
        store: RunStore | None = None,
        settings: Settings | None = None,
        git: GitSynchronizer | None = None,
        client_factory: ClientFactory = default_client_factory,
        steps: list[tuple[StepName, StepAction]] | None = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or RunStore()
        self.progress = ProgressRegistry()
        self.orchestrator = PipelineOrchestrator(
            store=self.store,
            progress=self.progress,
            git=git,
            settings=self.settings,
            client_factory=client_factory,
            steps=steps,
        )
        self.reporter = StatusReporter(self.store, self.progress, self.settings)
        self._tasks: set[asyncio.Task] = set()

    async def create_run(
        self,
        owner_id: str,
        payload: PipelineRequest | dict[str, Any],
    ) -> tuple[RunSubmitResponse, PipelineRequest]:
        """Validate and record a run without starting it."""
        request = parse_request(payload)
        run_id, operation_id = await self.orchestrator.create_run(owner_id, request)
        logger.info(f"Created run {run_id} (operation {operation_id}) for owner {owner_id}")
        return RunSubmitResponse(run_id=run_id, operation_id=operation_id), request

    async def execute(self, run_id: str, request: PipelineRequest, operation_id: str) -> None:
        await self.orchestrator.execute(run_id, request, operation_id)

    async def submit(
        self,
        owner_id: str,
        payload: PipelineRequest | dict[str, Any],
    ) -> RunSubmitResponse:
        """Record a run and start it in the background; returns immediately."""
        response, request = await self.create_run(owner_id, payload)
        task = asyncio.create_task(
            self.execute(response.run_id, request, response.operation_id),
            name=f"pipeline-run-{response.run_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return response

    async def wait_for_runs(self) -> None:
        """Wait for every run started with ``submit``."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.wait_for_runs()

"""Status reporting for runs: polling, stats, progress streams, retention."""

from __future__ import annotations

import asyncio
import json
import logging
import math
from typing import AsyncIterator, Awaitable, Callable

from gitferry.config import Settings, get_settings
from gitferry.database.run_store import RunStore
from gitferry.errors import AuthorizationError, NotFoundError
from gitferry.pipeline.progress import ProgressRegistry
from gitferry.schemas import (
    CancelReason,
    CancelResponse,
    CleanupResponse,
    PipelineRun,
    PipelineStats,
    RunListResponse,
)


logger = logging.getLogger(__name__)

DisconnectCheck = Callable[[], Awaitable[bool]]


def format_sse(payload: dict) -> str:
    """One server-sent event carrying a JSON payload."""
    return f"data: {json.dumps(payload, default=str)}\n\n"


class StatusReporter:
    """Read side of the pipeline, plus fetch cancellation and cleanup."""

    def __init__(
        self,
        store: RunStore,
        progress: ProgressRegistry,
        settings: Settings | None = None,
    ):
        self.store = store
        self.progress = progress
        self.settings = settings or get_settings()

    async def get_run(self, run_id: str, owner_id: str) -> PipelineRun:
        run = await self.store.get(run_id)
        if run is None:
            raise NotFoundError(f"Pipeline run {run_id} not found")
        if run.owner_id != owner_id:
            raise AuthorizationError("Access denied to this pipeline run")
        return run

    async def list_runs(self, owner_id: str, page: int = 1, page_size: int = 10) -> RunListResponse:
        runs, total = await self.store.list_by_owner(owner_id, page=page, page_size=page_size)
        return RunListResponse(
            runs=runs,
            total=total,
            total_pages=math.ceil(total / page_size) if page_size else 0,
            page=page,
            page_size=page_size,
        )

    async def get_stats(self, owner_id: str) -> PipelineStats:
        return await self.store.aggregate_stats(owner_id)

    async def get_global_stats(self) -> PipelineStats:
        return await self.store.aggregate_stats()

    def cancel_fetch(self, operation_id: str) -> CancelResponse:
        cancelled = self.progress.cancel(operation_id, CancelReason.USER)
        if not cancelled:
            logger.info(f"No running fetch for operation {operation_id}")
        return CancelResponse(operation_id=operation_id, cancelled=cancelled)

    async def cleanup(self, days_old: int | None = None) -> CleanupResponse:
        days = days_old or self.settings.retention_default_days
        deleted = await self.store.delete_older_than(days, terminal_only=True)
        return CleanupResponse(deleted_count=deleted, days_old=days)

    async def progress_stream(
        self,
        operation_id: str,
        is_disconnected: DisconnectCheck | None = None,
    ) -> AsyncIterator[str]:
        """Server-sent events for a fetch.

        Starts with a ``connected`` event, sends heartbeat comments while
        idle and ends after ``complete`` or ``error``, when the client goes
        away, or when nothing has been published for the max idle period.
        A fetch that already finished replays its final event and ends.
        """
        heartbeat = self.settings.progress_stream_idle_seconds
        max_idle = self.settings.progress_stream_max_idle_seconds

        async with self.progress.subscribe(operation_id) as subscription:
            yield format_sse(
                {
                    "type": "connected",
                    "operation_id": operation_id,
                    "message": "Connected to progress stream",
                }
            )

            final = self.progress.final_event(operation_id)
            if final is not None:
                yield format_sse(final.model_dump(mode="json"))
                return

            idle = 0.0
            while True:
                try:
                    event = await subscription.get(timeout=heartbeat)
                except asyncio.TimeoutError:
                    idle += heartbeat
                    if is_disconnected is not None and await is_disconnected():
                        logger.debug(f"Progress client for {operation_id} disconnected")
                        return
                    if idle >= max_idle:
                        logger.info(f"Progress stream {operation_id} idle for {int(idle)}s; closing")
                        return
                    yield ": heartbeat\n\n"
                    continue

                if event is None:
                    return
                idle = 0.0
                yield format_sse(event.model_dump(mode="json"))
                if event.is_terminal:
                    return

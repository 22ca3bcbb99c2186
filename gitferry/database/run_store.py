"""Durable storage for pipeline runs and their step records.

Every operation opens its own session and commits before returning, so a
write is visible to pollers on other connections as soon as the call ends.
Status writes are monotonic: steps go idle -> in_progress -> success|failed
and runs go in_progress -> success|failed; anything else raises
StateTransitionError.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from sqlalchemy import delete, distinct, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from gitferry.database.models import Run, RunStep
from gitferry.database.session import async_session_maker, session_scope
from gitferry.errors import NotFoundError, StateTransitionError, ValidationError
from gitferry.schemas import (
    STEP_ORDER,
    TERMINAL_RUN_STATUSES,
    TERMINAL_STEP_STATUSES,
    ConfigurationSnapshot,
    ErrorDetail,
    PipelineResult,
    PipelineRun,
    PipelineStats,
    RunStatus,
    StepName,
    StepRecord,
    StepStatus,
    utcnow,
)


logger = logging.getLogger(__name__)

RECENT_RUNS_LIMIT = 5

_ALLOWED_STEP_TRANSITIONS: dict[StepStatus, tuple[StepStatus, ...]] = {
    StepStatus.IDLE: (StepStatus.IN_PROGRESS,),
    # a running step may refresh its message
    StepStatus.IN_PROGRESS: (StepStatus.IN_PROGRESS, StepStatus.SUCCESS, StepStatus.FAILED),
    StepStatus.SUCCESS: (),
    StepStatus.FAILED: (),
}


def _as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; every stored value is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _duration_ms(start: datetime, end: datetime) -> int:
    return max(0, int((_as_utc(end) - _as_utc(start)).total_seconds() * 1000))


class RunStore:
    """Run Store backed by SQLModel tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self._session_factory = session_factory or async_session_maker

    def _session(self):
        return session_scope(self._session_factory)

    # =========================================================================
    # Writes
    # =========================================================================

    async def create(
        self,
        owner_id: str,
        configuration: ConfigurationSnapshot,
        run_id: str | None = None,
    ) -> str:
        """Create a run in ``in_progress`` with all five steps ``idle``."""
        run_id = run_id or str(uuid4())
        now = utcnow()

        async with self._session() as session:
            session.add(
                Run(
                    run_id=run_id,
                    owner_id=owner_id,
                    status=RunStatus.IN_PROGRESS.value,
                    start_time=now,
                    configuration=configuration.model_dump_json(),
                    created_at=now,
                    updated_at=now,
                )
            )
            for order, name in enumerate(STEP_ORDER, start=1):
                session.add(
                    RunStep(
                        run_id=run_id,
                        name=name.value,
                        step_order=order,
                        status=StepStatus.IDLE.value,
                    )
                )

        logger.info(f"Created pipeline run {run_id} for owner {owner_id}")
        return run_id

    async def update_status(
        self,
        run_id: str,
        status: RunStatus,
        error_detail: ErrorDetail | None = None,
    ) -> None:
        async with self._session() as session:
            run = await self._get_run_row(session, run_id)
            current = RunStatus(run.status)

            if current in TERMINAL_RUN_STATUSES:
                raise StateTransitionError(
                    f"Run {run_id} is already {current.value}; cannot move to {status.value}"
                )

            now = utcnow()
            run.status = status.value
            run.updated_at = now
            if status in TERMINAL_RUN_STATUSES:
                run.end_time = now
                run.duration_ms = _duration_ms(run.start_time, now)
            if error_detail is not None:
                run.error_step = error_detail.step
                run.error_message = error_detail.message
                run.error_code = error_detail.error_code
            session.add(run)

        logger.info(f"Run {run_id} status -> {status.value}")

    async def update_step(
        self,
        run_id: str,
        step_name: StepName,
        status: StepStatus,
        message: str | None = None,
        error_message: str | None = None,
        data: dict | None = None,
    ) -> None:
        async with self._session() as session:
            result = await session.execute(
                select(RunStep).where(RunStep.run_id == run_id, RunStep.name == step_name.value)
            )
            step = result.scalar_one_or_none()
            if step is None:
                raise NotFoundError(f"Step {step_name.value} of run {run_id} not found")

            current = StepStatus(step.status)
            if status not in _ALLOWED_STEP_TRANSITIONS[current]:
                raise StateTransitionError(
                    f"Step {step_name.value} of run {run_id} cannot move "
                    f"from {current.value} to {status.value}"
                )

            now = utcnow()
            step.status = status.value
            if status == StepStatus.IN_PROGRESS and step.start_time is None:
                step.start_time = now
            if status in TERMINAL_STEP_STATUSES and step.start_time and step.end_time is None:
                step.end_time = now
                step.duration_ms = _duration_ms(step.start_time, now)
            if message is not None:
                step.message = message
            if error_message is not None:
                step.error_message = error_message
            if data is not None:
                step.data = json.dumps(data, default=str)
            session.add(step)

            run = await self._get_run_row(session, run_id)
            run.updated_at = now
            session.add(run)

        logger.debug(f"Run {run_id} step {step_name.value} -> {status.value}")

    async def update_result(self, run_id: str, result: PipelineResult) -> None:
        async with self._session() as session:
            run = await self._get_run_row(session, run_id)
            run.result = result.model_dump_json()
            run.updated_at = utcnow()
            session.add(run)

    # =========================================================================
    # Reads
    # =========================================================================

    async def get(self, run_id: str) -> PipelineRun | None:
        async with self._session() as session:
            result = await session.execute(select(Run).where(Run.run_id == run_id))
            run = result.scalar_one_or_none()
            if run is None:
                return None
            steps = await self._steps_for(session, [run_id])
            return self._to_schema(run, steps.get(run_id, []))

    async def list_by_owner(
        self,
        owner_id: str,
        page: int = 1,
        page_size: int = 10,
    ) -> tuple[list[PipelineRun], int]:
        """Return one page of the owner's runs, newest first, and the total count."""
        page = max(page, 1)
        page_size = max(page_size, 1)

        async with self._session() as session:
            total = await session.scalar(
                select(func.count()).select_from(Run).where(Run.owner_id == owner_id)
            )
            result = await session.execute(
                select(Run)
                .where(Run.owner_id == owner_id)
                .order_by(Run.created_at.desc(), Run.id.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            runs = list(result.scalars().all())
            return await self._hydrate(session, runs), int(total or 0)

    async def aggregate_stats(self, owner_id: str | None = None) -> PipelineStats:
        """Counts by status and average duration of successful runs.

        With ``owner_id`` the stats cover that owner and include the five most
        recent runs; without it they are global and include the owner count.
        """
        async with self._session() as session:
            counts_query = select(Run.status, func.count()).group_by(Run.status)
            avg_query = select(func.avg(Run.duration_ms)).where(
                Run.status == RunStatus.SUCCESS.value,
                Run.duration_ms.is_not(None),
            )
            if owner_id is not None:
                counts_query = counts_query.where(Run.owner_id == owner_id)
                avg_query = avg_query.where(Run.owner_id == owner_id)

            counts = {status: count for status, count in (await session.execute(counts_query)).all()}
            average = await session.scalar(avg_query)

            stats = PipelineStats(
                success_count=counts.get(RunStatus.SUCCESS.value, 0),
                failed_count=counts.get(RunStatus.FAILED.value, 0),
                in_progress_count=counts.get(RunStatus.IN_PROGRESS.value, 0),
                average_duration_ms=round(average or 0),
            )
            stats.total = stats.success_count + stats.failed_count + stats.in_progress_count
            if stats.total:
                stats.success_rate = round(stats.success_count / stats.total * 100, 1)

            if owner_id is not None:
                result = await session.execute(
                    select(Run)
                    .where(Run.owner_id == owner_id)
                    .order_by(Run.created_at.desc(), Run.id.desc())
                    .limit(RECENT_RUNS_LIMIT)
                )
                stats.recent_runs = await self._hydrate(session, list(result.scalars().all()))
            else:
                stats.total_owners = int(
                    await session.scalar(select(func.count(distinct(Run.owner_id)))) or 0
                )
            return stats

    # =========================================================================
    # Retention
    # =========================================================================

    async def delete_older_than(self, days: int, terminal_only: bool = True) -> int:
        """Delete finished runs created more than ``days`` days ago.

        Runs still ``in_progress`` are never deleted.
        """
        if not terminal_only:
            raise ValidationError("Runs still in progress cannot be deleted")
        if days < 1:
            raise ValidationError("days must be at least 1")

        cutoff = utcnow() - timedelta(days=days)
        terminal = [status.value for status in TERMINAL_RUN_STATUSES]

        async with self._session() as session:
            result = await session.execute(
                select(Run.run_id).where(Run.created_at < cutoff, Run.status.in_(terminal))
            )
            run_ids = list(result.scalars().all())
            if not run_ids:
                return 0

            await session.execute(delete(RunStep).where(RunStep.run_id.in_(run_ids)))
            await session.execute(delete(Run).where(Run.run_id.in_(run_ids)))

        logger.info(f"Deleted {len(run_ids)} pipeline runs older than {days} days")
        return len(run_ids)

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    async def _get_run_row(session: AsyncSession, run_id: str) -> Run:
        result = await session.execute(select(Run).where(Run.run_id == run_id))
        run = result.scalar_one_or_none()
        if run is None:
            raise NotFoundError(f"Pipeline run {run_id} not found")
        return run

    @staticmethod
    async def _steps_for(session: AsyncSession, run_ids: list[str]) -> dict[str, list[RunStep]]:
        if not run_ids:
            return {}
        result = await session.execute(
            select(RunStep).where(RunStep.run_id.in_(run_ids)).order_by(RunStep.step_order)
        )
        grouped: dict[str, list[RunStep]] = {}
        for step in result.scalars().all():
            grouped.setdefault(step.run_id, []).append(step)
        return grouped

    async def _hydrate(self, session: AsyncSession, runs: list[Run]) -> list[PipelineRun]:
        steps = await self._steps_for(session, [run.run_id for run in runs])
        return [self._to_schema(run, steps.get(run.run_id, [])) for run in runs]

    @staticmethod
    def _to_schema(run: Run, steps: list[RunStep]) -> PipelineRun:
        error_detail = None
        if run.error_step:
            error_detail = ErrorDetail(
                step=run.error_step,
                message=run.error_message or "",
                error_code=run.error_code,
            )

        return PipelineRun(
            id=run.run_id,
            owner_id=run.owner_id,
            status=RunStatus(run.status),
            start_time=_as_utc(run.start_time),
            end_time=_as_utc(run.end_time),
            duration_ms=run.duration_ms,
            configuration=ConfigurationSnapshot.model_validate(json.loads(run.configuration)),
            steps=[
                StepRecord(
                    name=StepName(step.name),
                    order=step.step_order,
                    status=StepStatus(step.status),
                    start_time=_as_utc(step.start_time),
                    end_time=_as_utc(step.end_time),
                    duration_ms=step.duration_ms,
                    message=step.message,
                    error_message=step.error_message,
                    data=json.loads(step.data) if step.data else {},
                )
                for step in steps
            ],
            result=PipelineResult.model_validate_json(run.result) if run.result else None,
            error_detail=error_detail,
            created_at=_as_utc(run.created_at),
            updated_at=_as_utc(run.updated_at),
        )

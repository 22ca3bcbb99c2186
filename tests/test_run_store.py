"""Tests for the Run Store: initial shape, monotonic writes, stats, retention."""

from datetime import timedelta

import pytest
from sqlalchemy import update

from gitferry.database.models import Run
from gitferry.errors import NotFoundError, StateTransitionError, ValidationError
from gitferry.schemas import (
    STEP_ORDER,
    ErrorDetail,
    PipelineRequest,
    PipelineResult,
    PushStrategy,
    RunStatus,
    StepName,
    StepStatus,
    utcnow,
)


@pytest.fixture
def snapshot(request_payload):
    return PipelineRequest.model_validate(request_payload).snapshot()


async def _age(store, run_id: str, days: int) -> None:
    async with store._session() as session:
        await session.execute(
            update(Run).where(Run.run_id == run_id).values(created_at=utcnow() - timedelta(days=days))
        )


async def _finish(store, run_id: str, status: RunStatus = RunStatus.SUCCESS) -> None:
    await store.update_status(run_id, status)


# ===========================================================================
# Creation
# ===========================================================================


class TestCreate:
    async def test_initial_shape(self, store, snapshot):
        run_id = await store.create("owner-1", snapshot)
        run = await store.get(run_id)

        assert run.id == run_id
        assert run.owner_id == "owner-1"
        assert run.status == RunStatus.IN_PROGRESS
        assert [step.name for step in run.steps] == list(STEP_ORDER)
        assert [step.order for step in run.steps] == [1, 2, 3, 4, 5]
        assert all(step.status == StepStatus.IDLE for step in run.steps)
        assert run.result is None
        assert run.error_detail is None
        assert run.end_time is None
        assert run.completion_percentage == 0

    async def test_snapshot_has_no_tokens(self, store, snapshot):
        run = await store.get(await store.create("owner-1", snapshot))

        dumped = run.configuration.model_dump_json()
        assert "ghp_test" not in dumped
        assert "glpat_test" not in dumped
        assert run.configuration.merge_request.source_branch == "sync/widgets"

    async def test_explicit_run_id(self, store, snapshot):
        assert await store.create("owner-1", snapshot, run_id="fixed-id") == "fixed-id"

    async def test_unknown_run(self, store):
        assert await store.get("missing") is None
        with pytest.raises(NotFoundError):
            await store.update_status("missing", RunStatus.SUCCESS)


# ===========================================================================
# Status writes
# ===========================================================================


class TestStepTransitions:
    async def test_step_lifecycle_records_timing(self, store, snapshot):
        run_id = await store.create("owner-1", snapshot)

        await store.update_step(run_id, StepName.CLONE_GITHUB, StepStatus.IN_PROGRESS)
        await store.update_step(run_id, StepName.CLONE_GITHUB, StepStatus.SUCCESS, message="Cloned")

        step = (await store.get(run_id)).step(StepName.CLONE_GITHUB)
        assert step.status == StepStatus.SUCCESS
        assert step.message == "Cloned"
        assert step.start_time is not None
        assert step.end_time >= step.start_time
        assert step.duration_ms >= 0

    async def test_timestamps_come_back_as_utc(self, store, snapshot):
        before = utcnow()
        run_id = await store.create("owner-1", snapshot)
        await store.update_step(run_id, StepName.CLONE_GITHUB, StepStatus.IN_PROGRESS)
        await store.update_step(run_id, StepName.CLONE_GITHUB, StepStatus.FAILED, error_message="boom")
        await store.update_status(run_id, RunStatus.FAILED)

        run = await store.get(run_id)
        step = run.step(StepName.CLONE_GITHUB)
        for value in (run.created_at, run.updated_at, run.start_time, run.end_time, step.start_time, step.end_time):
            assert value.utcoffset() == timedelta(0)
        assert run.created_at >= before - timedelta(seconds=1)
        assert run.end_time >= run.start_time

    async def test_completion_percentage(self, store, snapshot):
        run_id = await store.create("owner-1", snapshot)
        for name in STEP_ORDER[:2]:
            await store.update_step(run_id, name, StepStatus.IN_PROGRESS)
            await store.update_step(run_id, name, StepStatus.SUCCESS)

        assert (await store.get(run_id)).completion_percentage == 40

    async def test_idle_cannot_jump_to_terminal(self, store, snapshot):
        run_id = await store.create("owner-1", snapshot)
        with pytest.raises(StateTransitionError):
            await store.update_step(run_id, StepName.COPY_FILES, StepStatus.SUCCESS)

    async def test_terminal_step_cannot_move(self, store, snapshot):
        run_id = await store.create("owner-1", snapshot)
        await store.update_step(run_id, StepName.COPY_FILES, StepStatus.IN_PROGRESS)
        await store.update_step(run_id, StepName.COPY_FILES, StepStatus.FAILED, error_message="boom")

        with pytest.raises(StateTransitionError):
            await store.update_step(run_id, StepName.COPY_FILES, StepStatus.IN_PROGRESS)

        step = (await store.get(run_id)).step(StepName.COPY_FILES)
        assert step.status == StepStatus.FAILED
        assert step.error_message == "boom"


class TestRunTransitions:
    async def test_failure_records_error_detail(self, store, snapshot):
        run_id = await store.create("owner-1", snapshot)
        await store.update_status(
            run_id,
            RunStatus.FAILED,
            ErrorDetail(step="copy-files", message="Source path does not exist", error_code="NOT_FOUND_ERROR"),
        )

        run = await store.get(run_id)
        assert run.status == RunStatus.FAILED
        assert run.error_detail.step == "copy-files"
        assert run.error_detail.error_code == "NOT_FOUND_ERROR"
        assert run.end_time is not None
        assert run.duration_ms >= 0

    async def test_terminal_run_is_final(self, store, snapshot):
        run_id = await store.create("owner-1", snapshot)
        await _finish(store, run_id)

        with pytest.raises(StateTransitionError):
            await store.update_status(run_id, RunStatus.FAILED)
        assert (await store.get(run_id)).status == RunStatus.SUCCESS

    async def test_result_round_trips(self, store, snapshot):
        run_id = await store.create("owner-1", snapshot)
        await store.update_result(
            run_id,
            PipelineResult(
                files_processed=3,
                directories_copied=1,
                merge_request_id=1001,
                merge_request_iid=1,
                merge_request_url="https://gitlab.test/mr/1",
                push_strategy=PushStrategy.MERGE,
            ),
        )

        result = (await store.get(run_id)).result
        assert result.files_processed == 3
        assert result.push_strategy == PushStrategy.MERGE


# ===========================================================================
# Listing and stats
# ===========================================================================


class TestListing:
    async def test_newest_first_and_paged(self, store, snapshot):
        ids = [await store.create("owner-1", snapshot) for _ in range(3)]
        await store.create("owner-2", snapshot)
        await _age(store, ids[0], days=2)
        await _age(store, ids[1], days=1)

        first_page, total = await store.list_by_owner("owner-1", page=1, page_size=2)
        second_page, _ = await store.list_by_owner("owner-1", page=2, page_size=2)

        assert total == 3
        assert [run.id for run in first_page] == [ids[2], ids[1]]
        assert [run.id for run in second_page] == [ids[0]]


class TestStats:
    async def test_owner_stats(self, store, snapshot):
        ok = await store.create("owner-1", snapshot)
        bad = await store.create("owner-1", snapshot)
        await store.create("owner-1", snapshot)
        await store.create("owner-2", snapshot)
        await _finish(store, ok, RunStatus.SUCCESS)
        await _finish(store, bad, RunStatus.FAILED)

        stats = await store.aggregate_stats("owner-1")

        assert stats.total == 3
        assert stats.success_count == 1
        assert stats.failed_count == 1
        assert stats.in_progress_count == 1
        assert stats.success_rate == pytest.approx(33.3)
        assert len(stats.recent_runs) == 3
        assert stats.total_owners is None

    async def test_global_stats(self, store, snapshot):
        await store.create("owner-1", snapshot)
        await store.create("owner-2", snapshot)

        stats = await store.aggregate_stats()

        assert stats.total == 2
        assert stats.total_owners == 2
        assert stats.recent_runs == []
        assert stats.average_duration_ms == 0

    async def test_empty(self, store):
        stats = await store.aggregate_stats("nobody")
        assert stats.total == 0
        assert stats.success_rate == 0.0


# ===========================================================================
# Retention
# ===========================================================================


class TestRetention:
    async def test_never_deletes_in_progress(self, store, snapshot):
        old_done = await store.create("owner-1", snapshot)
        old_running = await store.create("owner-1", snapshot)
        recent_done = await store.create("owner-1", snapshot)
        await _finish(store, old_done)
        await _finish(store, recent_done, RunStatus.FAILED)
        await _age(store, old_done, days=40)
        await _age(store, old_running, days=40)

        deleted = await store.delete_older_than(30)

        assert deleted == 1
        assert await store.get(old_done) is None
        assert (await store.get(old_running)).status == RunStatus.IN_PROGRESS
        assert await store.get(recent_done) is not None

    async def test_nothing_to_delete(self, store):
        assert await store.delete_older_than(30) == 0

    async def test_rejects_non_terminal_sweep(self, store):
        with pytest.raises(ValidationError):
            await store.delete_older_than(30, terminal_only=False)

    async def test_rejects_invalid_days(self, store):
        with pytest.raises(ValidationError):
            await store.delete_older_than(0)

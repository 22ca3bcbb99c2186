"""SQLModel database tables for pipeline runs.

Tables:
- Run: one pipeline execution, with its configuration snapshot and outcome
- RunStep: the five step records of a run, in fixed order
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel

from gitferry.schemas import RunStatus, StepStatus, utcnow


# =============================================================================
# Run Model
# =============================================================================

class Run(SQLModel, table=True):
    """A pipeline run."""

    __tablename__ = "pipeline_runs"
    __table_args__ = (
        Index("ix_pipeline_runs_owner_created", "owner_id", "created_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    run_id: str = Field(unique=True, index=True, description="UUID for the run")
    owner_id: str = Field(index=True)

    # Status
    status: str = Field(default=RunStatus.IN_PROGRESS.value, index=True)
    start_time: datetime = Field(
        default_factory=utcnow, sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    end_time: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    duration_ms: int | None = Field(default=None)

    # JSON documents
    configuration: str = Field(sa_column=Column(Text, nullable=False))
    result: str | None = Field(default=None, sa_column=Column(Text))

    # Failure
    error_step: str | None = Field(default=None)
    error_code: str | None = Field(default=None)
    error_message: str | None = Field(default=None, sa_column=Column(Text))

    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )
    updated_at: datetime = Field(
        default_factory=utcnow, sa_column=Column(DateTime(timezone=True), nullable=False)
    )


# =============================================================================
# Step Model
# =============================================================================

class RunStep(SQLModel, table=True):
    """One step of a pipeline run."""

    __tablename__ = "pipeline_steps"
    __table_args__ = (
        UniqueConstraint("run_id", "name", name="uq_pipeline_steps_run_name"),
    )

    id: int | None = Field(default=None, primary_key=True)
    run_id: str = Field(foreign_key="pipeline_runs.run_id", index=True)
    name: str
    step_order: int
    status: str = Field(default=StepStatus.IDLE.value)

    start_time: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    end_time: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    duration_ms: int | None = Field(default=None)

    message: str | None = Field(default=None, sa_column=Column(Text))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    data: str | None = Field(default=None, sa_column=Column(Text))

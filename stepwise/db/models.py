from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Column, DateTime, Index, UniqueConstraint
from sqlmodel import Field, SQLModel

from ..utils.clock import utcnow


class ProcessInstanceRow(SQLModel, table=True):
    """One execution of a process type for a business key."""

    __tablename__ = "process_instance"
    __table_args__ = (
        UniqueConstraint("process_type", "business_key", name="uq_process_business_key"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    process_type: str
    business_key: str
    status: str = Field(default="RUNNING")
    payload: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    source_job_id: Optional[int] = None
    started_at: datetime = Field(
        default_factory=utcnow, sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    finished_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )


class ProcessStepRow(SQLModel, table=True):
    """One node of a process instance; unique per (instance, step name)."""

    __tablename__ = "process_step"
    __table_args__ = (
        UniqueConstraint("process_instance_id", "step_name", name="uq_process_step_name"),
        Index("ix_process_step_join_group", "process_instance_id", "join_group"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    process_instance_id: int = Field(foreign_key="process_instance.id")
    step_name: str
    status: str = Field(default="PENDING")
    attempt: int = 0
    join_group: Optional[str] = None
    input_payload: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    output_payload: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    locked_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    last_error: Optional[str] = None
    created_at: datetime = Field(
        default_factory=utcnow, sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    finished_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )


class ContextEntryRow(SQLModel, table=True):
    """Append-only journal of step outputs. Rows are never updated."""

    __tablename__ = "process_context"
    __table_args__ = (
        Index("ix_process_context_instance", "process_instance_id", "id"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    process_instance_id: int = Field(foreign_key="process_instance.id")
    step_name: str
    payload: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(
        default_factory=utcnow, sa_column=Column(DateTime(timezone=True), nullable=False)
    )


class ScheduledJobRow(SQLModel, table=True):
    """Timed trigger consumed by the scheduler."""

    __tablename__ = "scheduled_jobs"
    __table_args__ = (Index("ix_scheduled_jobs_due", "status", "scheduled_at"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    job_type: str
    process_type: str
    business_key: str
    payload: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    scheduled_at: datetime = Field(
        default_factory=utcnow, sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    status: str = Field(default="NEW")
    locked_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))

"""Data models for persisted process state."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..constants import START_PROCESS_JOB
from ..utils.clock import utcnow


class ProcessStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class StepStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    DONE = "DONE"
    FAILED = "FAILED"


class JobStatus(str, Enum):
    NEW = "NEW"
    LOCKED = "LOCKED"
    DONE = "DONE"


class ProcessInstance(BaseModel):
    """One execution of a process type for a business key."""

    id: int
    process_type: str
    business_key: str
    status: ProcessStatus = ProcessStatus.RUNNING
    payload: dict[str, Any] = Field(default_factory=dict)
    source_job_id: Optional[int] = None
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (ProcessStatus.COMPLETED, ProcessStatus.FAILED)


class ProcessStep(BaseModel):
    """Record of a single node of a process instance."""

    id: int
    process_instance_id: int
    step_name: str
    status: StepStatus = StepStatus.PENDING
    attempt: int = 0
    join_group: Optional[str] = None
    input_payload: dict[str, Any] = Field(default_factory=dict)
    output_payload: Optional[dict[str, Any]] = None
    locked_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        """DONE and FAILED absorb every later operation."""
        return self.status in (StepStatus.DONE, StepStatus.FAILED)


class ContextEntry(BaseModel):
    """Immutable journal entry holding one step's output."""

    id: int
    process_instance_id: int
    step_name: str
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class ScheduledJob(BaseModel):
    """Timed trigger that starts a process instance."""

    id: int
    job_type: str = START_PROCESS_JOB
    process_type: str
    business_key: str
    payload: dict[str, Any] = Field(default_factory=dict)
    scheduled_at: datetime = Field(default_factory=utcnow)
    status: JobStatus = JobStatus.NEW
    locked_at: Optional[datetime] = None

"""Core message contracts for the stepwise orchestration engine."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field


class RunStepMessage(BaseModel):
    """Envelope exchanged over the bus asking a worker to run one step."""

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    process_id: int
    step_name: str
    input: Dict[str, Any] = Field(default_factory=dict)
    source_job_id: Optional[int] = None
    delivery_attempt: int = 1
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    spec_version: str = "1.0"

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "RunStepMessage":
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)

    def bump_attempt(self) -> "RunStepMessage":
        """Copy of this message for redelivery, with a fresh id."""
        return self.model_copy(
            update={
                "message_id": str(uuid.uuid4()),
                "delivery_attempt": self.delivery_attempt + 1,
                "timestamp": datetime.now(timezone.utc),
            }
        )


class StepContext:
    """What a business executor sees while running one step.

    ``data`` is the merged process context at the time the step started.
    ``set`` only changes this invocation's view; persisted state comes from
    the output returned by the executor.
    """

    def __init__(
        self,
        process_id: int,
        step_name: str,
        input: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        source_job_id: Optional[int] = None,
    ) -> None:
        self.process_id = process_id
        self.step_name = step_name
        self.input: Dict[str, Any] = dict(input or {})
        self.data: Dict[str, Any] = dict(data or {})
        self.source_job_id = source_job_id

    def get(self, key: str, default: Any = None) -> Any:
        """Look ``key`` up in the shared data, then in the step input."""
        if key in self.data:
            return self.data[key]
        return self.input.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.data[key] = value

    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return (
            f"StepContext(process_id={self.process_id}, step_name={self.step_name!r}, "
            f"input={self.input!r}, data={self.data!r})"
        )


@runtime_checkable
class StepExecutor(Protocol):
    """Business logic for one named step."""

    async def execute(self, context: StepContext) -> Dict[str, Any] | None:
        """Run the step and return its output payload."""
        ...

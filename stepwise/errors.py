"""Exception hierarchy for stepwise."""

from __future__ import annotations


class StepwiseError(Exception):
    """Base class for all stepwise errors."""


class NotFoundError(StepwiseError):
    """A referenced record does not exist."""


class ProcessNotFoundError(NotFoundError):
    def __init__(self, process_id: int) -> None:
        super().__init__(f"process_instance not found: {process_id}")
        self.process_id = process_id


class StepNotFoundError(NotFoundError):
    def __init__(self, process_id: int, step_name: str) -> None:
        super().__init__(f"process_step not found: {process_id} / {step_name}")
        self.process_id = process_id
        self.step_name = step_name


class UnknownProcessTypeError(NotFoundError):
    def __init__(self, process_type: str) -> None:
        super().__init__(f"No process definition registered for '{process_type}'")
        self.process_type = process_type


class DuplicateKeyError(StepwiseError):
    """Unique constraint race on insert.

    Raised by the persistence layer when a concurrent caller inserted the same
    natural key first. Callers recover by re-reading the existing row.
    """


class JoinGroupEmptyError(StepwiseError):
    def __init__(self, process_id: int, join_group: str) -> None:
        super().__init__(
            f"Join group '{join_group}' is empty for process {process_id}"
        )
        self.process_id = process_id
        self.join_group = join_group


class GraphValidationError(StepwiseError, ValueError):
    """Process graph definition is structurally invalid."""

"""Process catalog and executor registry."""

from __future__ import annotations

from .models import (
    ExecutorRegistry,
    FunctionExecutor,
    ProcessCatalog,
    ProcessDefinition,
)

# Process definitions known to this interpreter. Modules defining processes
# register themselves here on import; workers and the scheduler look process
# types up in it unless handed a catalog explicitly.
CATALOG = ProcessCatalog()


def register_process(definition: ProcessDefinition) -> ProcessDefinition:
    """Add ``definition`` to ``CATALOG``, replacing any earlier one for its type."""

    CATALOG.register(definition)
    return definition


__all__ = [
    "ExecutorRegistry",
    "FunctionExecutor",
    "ProcessCatalog",
    "ProcessDefinition",
    "CATALOG",
    "register_process",
]

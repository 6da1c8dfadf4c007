"""Persistence layer for stepwise processes."""

from __future__ import annotations

import os
from typing import Optional

from ..config import StepwiseConfig, load_config
from .inmemory import InMemoryProcessRepository
from .models import (
    ContextEntry,
    JobStatus,
    ProcessInstance,
    ProcessStatus,
    ProcessStep,
    ScheduledJob,
    StepStatus,
)
from .repository import ProcessRepository, ProcessTransaction
from .sql import SQLProcessRepository

_repository_instance: ProcessRepository | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[StepwiseConfig] = None
) -> ProcessRepository:
    """Factory function to obtain a process repository.

    The backend is selected from ``database_url`` which can be provided
    explicitly, via environment variable ``STEPWISE_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("STEPWISE_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        _repository_instance = InMemoryProcessRepository()
    elif database_url.startswith(("sqlite", "postgres")):
        _repository_instance = SQLProcessRepository(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


__all__ = [
    "ContextEntry",
    "JobStatus",
    "ProcessInstance",
    "ProcessStatus",
    "ProcessStep",
    "ScheduledJob",
    "StepStatus",
    "ProcessRepository",
    "ProcessTransaction",
    "InMemoryProcessRepository",
    "SQLProcessRepository",
    "get_repository",
]

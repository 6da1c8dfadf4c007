from .models import ContextEntryRow, ProcessInstanceRow, ProcessStepRow, ScheduledJobRow
from .process_db import ProcessDB, normalize_database_url

__all__ = [
    "ProcessInstanceRow",
    "ProcessStepRow",
    "ContextEntryRow",
    "ScheduledJobRow",
    "ProcessDB",
    "normalize_database_url",
]

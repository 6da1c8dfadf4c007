"""Shared constants for stepwise."""

DEFAULT_INITIAL_STEP = "prepare"
DEFAULT_TERMINAL_STEP = "finalize"

RUN_STEP_TOPIC = "stepwise.run_step"
START_PROCESS_JOB = "START_PROCESS"

MAX_ERROR_LENGTH = 4000
SCHEDULER_BATCH_SIZE = 10
SCHEDULER_POLL_INTERVAL = 5.0
DEFAULT_MAX_DELIVERIES = 3

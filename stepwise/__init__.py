"""stepwise: durable asynchronous process orchestration."""

from .context_store import ContextStore
from .contracts import RunStepMessage, StepContext, StepExecutor
from .dispatch import StepDispatcher, TransportDispatcher
from .execute import StepRunner, StepWorker
from .graph import FanOut, Next, ProcessGraph
from .orchestrator import Orchestrator
from .persistence import get_repository
from .registry import CATALOG, ExecutorRegistry, ProcessDefinition, register_process
from .scheduler import Scheduler
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "ContextStore",
    "RunStepMessage",
    "StepContext",
    "StepExecutor",
    "StepDispatcher",
    "TransportDispatcher",
    "StepRunner",
    "StepWorker",
    "FanOut",
    "Next",
    "ProcessGraph",
    "Orchestrator",
    "Scheduler",
    "get_repository",
    "get_transport",
    "CATALOG",
    "ExecutorRegistry",
    "ProcessDefinition",
    "register_process",
]

"""Executor registry and process definitions."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, Iterator, Optional

from ..contracts import StepContext, StepExecutor
from ..errors import GraphValidationError, UnknownProcessTypeError
from ..graph import ProcessGraph

StepFunction = Callable[[StepContext], Awaitable[Optional[Dict[str, Any]]]]


class FunctionExecutor:
    """Adapts a plain ``async def fn(context)`` to :class:`StepExecutor`."""

    def __init__(self, func: StepFunction) -> None:
        self._func = func
        self.__name__ = getattr(func, "__name__", type(self).__name__)

    async def execute(self, context: StepContext) -> Optional[Dict[str, Any]]:
        return await self._func(context)


class ExecutorRegistry:
    """Maps step names to their business executors.

    Steps without an entry are orchestration-only nodes.
    """

    def __init__(self, executors: Optional[Dict[str, StepExecutor]] = None) -> None:
        self._executors: Dict[str, StepExecutor] = {}
        for name, executor in (executors or {}).items():
            self.register(name, executor)

    def register(self, step_name: str, executor: StepExecutor) -> None:
        if not isinstance(executor, StepExecutor):
            raise TypeError(f"Executor for '{step_name}' has no async execute(context)")
        self._executors[step_name] = executor

    def step(self, step_name: str) -> Callable[[StepFunction], StepFunction]:
        """Decorator registering an async function as the executor for ``step_name``."""

        def decorator(func: StepFunction) -> StepFunction:
            self.register(step_name, FunctionExecutor(func))
            return func

        return decorator

    def get(self, step_name: str) -> Optional[StepExecutor]:
        return self._executors.get(step_name)

    def __contains__(self, step_name: object) -> bool:
        return step_name in self._executors

    def __iter__(self) -> Iterator[str]:
        return iter(self._executors)


class ProcessDefinition:
    """Graph plus executors for one process type."""

    def __init__(
        self,
        process_type: str,
        graph: ProcessGraph,
        executors: Optional[ExecutorRegistry] = None,
    ) -> None:
        self.process_type = process_type
        self.graph = graph
        self.executors = executors or ExecutorRegistry()
        unknown = [name for name in self.executors if name not in graph]
        if unknown:
            raise GraphValidationError(
                f"Executors registered for undeclared steps of '{process_type}': "
                + ", ".join(sorted(unknown))
            )


class ProcessCatalog:
    """Process definitions keyed by process type."""

    def __init__(self) -> None:
        self._definitions: Dict[str, ProcessDefinition] = {}

    def register(self, definition: ProcessDefinition) -> None:
        self._definitions[definition.process_type] = definition

    def get(self, process_type: str) -> ProcessDefinition:
        try:
            return self._definitions[process_type]
        except KeyError:
            raise UnknownProcessTypeError(process_type)

    def __contains__(self, process_type: object) -> bool:
        return process_type in self._definitions

    def __iter__(self) -> Iterator[str]:
        return iter(self._definitions)

    def __len__(self) -> int:
        return len(self._definitions)

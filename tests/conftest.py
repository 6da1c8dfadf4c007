import pytest

import stepwise.persistence as persistence
from stepwise.constants import RUN_STEP_TOPIC
from stepwise.context_store import ContextStore
from stepwise.dispatch import TransportDispatcher
from stepwise.execute import StepRunner
from stepwise.orchestrator import Orchestrator
from stepwise.persistence import InMemoryProcessRepository
from stepwise.processes import load_builtin_processes
from stepwise.registry import ProcessCatalog
from stepwise.transports import InMemoryTransport


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch, tmp_path):
    for name in (
        "STEPWISE_CONFIG",
        "STEPWISE_DATABASE_URL",
        "DATABASE_URL",
        "STEPWISE_TRANSPORT",
        "STEPWISE_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("STEPWISE_CONFIG", str(tmp_path / "missing.yaml"))
    persistence._repository_instance = None
    yield
    persistence._repository_instance = None


@pytest.fixture
def catalog() -> ProcessCatalog:
    return load_builtin_processes(ProcessCatalog())


@pytest.fixture
def repository() -> InMemoryProcessRepository:
    return InMemoryProcessRepository()


@pytest.fixture
def transport() -> InMemoryTransport:
    return InMemoryTransport()


@pytest.fixture
def orchestrator(repository, transport, catalog) -> Orchestrator:
    return Orchestrator(repository, TransportDispatcher(transport), catalog)


@pytest.fixture
def runner(repository, orchestrator) -> StepRunner:
    return StepRunner(repository, orchestrator, ContextStore(repository))


@pytest.fixture
def drain(transport, runner):
    """Run queued run-step messages until the topic is empty."""

    async def _drain(limit: int = 100) -> list[str]:
        executed = []
        queue = transport._queues[RUN_STEP_TOPIC]
        while queue and limit:
            limit -= 1
            _, _, message = queue.popleft()
            if await runner.handle(message):
                executed.append(message.step_name)
        return executed

    return _drain

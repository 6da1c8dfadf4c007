"""Example running the order fulfillment process in a single interpreter.

Uses the in-memory repository and transport unless STEPWISE_DATABASE_URL /
STEPWISE_TRANSPORT point somewhere else.
"""

import asyncio
import sys

from stepwise import (
    ContextStore,
    Orchestrator,
    Scheduler,
    StepRunner,
    StepWorker,
    TransportDispatcher,
    get_repository,
    get_transport,
)
from stepwise.processes import load_builtin_processes


async def main():
    business_key = sys.argv[1] if len(sys.argv) > 1 else "ORDER-1"
    load_builtin_processes()

    repository = get_repository()
    transport = get_transport()
    await transport.connect()

    orchestrator = Orchestrator(repository, TransportDispatcher(transport))
    runner = StepRunner(repository, orchestrator)
    scheduler = Scheduler(repository, orchestrator)

    await scheduler.schedule("order_fulfillment", business_key, {"orderId": 42})
    await scheduler.run_once()

    # Drain the run-step queue for a few seconds
    await StepWorker(transport, runner).start(lifespan=3)

    for proc in await repository.list_processes():
        print(proc.id, proc.business_key, proc.status.value)
        for step in await repository.list_steps(proc.id):
            print("  ", step.step_name, step.status.value)
        print("  context:", await ContextStore(repository).load(proc.id))

    await transport.disconnect()
    await repository.close()


if __name__ == "__main__":
    asyncio.run(main())

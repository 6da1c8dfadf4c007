"""Command line interface for running stepwise workers and schedulers."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import typer

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
from stepwise.config import StepwiseConfig, load_config
from stepwise.contracts import RunStepMessage
from stepwise.errors import StepwiseError
from stepwise.persistence import ProcessRepository
from stepwise.processes import import_process_modules, load_builtin_processes
from stepwise.transports import BaseTransport

app = typer.Typer(help="CLI for stepwise processes")

# Command groups
worker_app = typer.Typer(help="Commands for running step workers")
scheduler_app = typer.Typer(help="Commands for running the job scheduler")
job_app = typer.Typer(help="Commands for managing scheduled jobs")
process_app = typer.Typer(help="Commands for managing process instances")
step_app = typer.Typer(help="Commands for inspecting and debugging steps")

app.add_typer(worker_app, name="worker")
app.add_typer(scheduler_app, name="scheduler")
app.add_typer(job_app, name="job")
app.add_typer(process_app, name="process")
app.add_typer(step_app, name="step")


@dataclass
class Runtime:
    config: StepwiseConfig
    repository: ProcessRepository
    transport: BaseTransport
    orchestrator: Orchestrator
    runner: StepRunner

    async def __aenter__(self) -> "Runtime":
        await self.transport.connect()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.transport.disconnect()
        await self.repository.close()


def _runtime(config: StepwiseConfig) -> Runtime:
    repository = get_repository(database_url=config.database_url)
    transport = get_transport(config=config)
    dispatcher = TransportDispatcher(transport, topic=config.worker.topic)
    orchestrator = Orchestrator(repository, dispatcher)
    runner = StepRunner(repository, orchestrator, ContextStore(repository))
    return Runtime(config, repository, transport, orchestrator, runner)


def _parse_payload(payload: Optional[str]) -> Dict[str, Any]:
    if not payload:
        return {}
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"Payload is not valid JSON: {exc}")
    if not isinstance(data, dict):
        raise typer.BadParameter("Payload must be a JSON object")
    return data


@app.callback()
def main(
    ctx: typer.Context,
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a YAML config file"
    ),
) -> None:
    """stepwise CLI entry point."""
    config = load_config(str(config_path) if config_path else None)
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    load_builtin_processes()
    import_process_modules(config.process_modules)
    ctx.obj = config


@worker_app.command("run")
def worker_run(ctx: typer.Context, lifespan: Optional[float] = None) -> None:
    """
    Run a worker process that executes process steps.

    Listens on the configured run-step topic, claims each delivered step and
    executes it, then drives the process to its next steps.

    Example:
        stepwise worker run
        stepwise worker run --lifespan 300
    """
    config: StepwiseConfig = ctx.obj

    async def _run() -> None:
        async with _runtime(config) as rt:
            worker = StepWorker(
                rt.transport,
                rt.runner,
                topic=config.worker.topic,
                max_deliveries=config.worker.max_deliveries,
                backoff_base=config.worker.backoff_base,
            )
            await worker.start(lifespan=lifespan)

    typer.echo(f"Starting worker on topic: {config.worker.topic}")
    asyncio.run(_run())


@scheduler_app.command("run")
def scheduler_run(
    ctx: typer.Context,
    once: bool = typer.Option(False, help="Process a single batch and exit"),
    lifespan: Optional[float] = None,
) -> None:
    """
    Start processes for due scheduled jobs.

    Example:
        stepwise scheduler run --once
        stepwise scheduler run --lifespan 3600
    """
    config: StepwiseConfig = ctx.obj

    async def _run() -> None:
        async with _runtime(config) as rt:
            scheduler = Scheduler(
                rt.repository,
                rt.orchestrator,
                batch_size=config.scheduler.batch_size,
                poll_interval=config.scheduler.poll_interval,
            )
            if once:
                done = await scheduler.run_once()
                typer.echo(f"Started {len(done)} job(s): {done}")
            else:
                await scheduler.start(lifespan=lifespan)

    asyncio.run(_run())


@job_app.command("schedule")
def job_schedule(
    ctx: typer.Context,
    process_type: str,
    business_key: str,
    payload: Optional[str] = typer.Option(None, help="JSON object passed to the process"),
) -> None:
    """
    Insert a NEW scheduled job that starts a process when due.

    Example:
        stepwise job schedule order_fulfillment ORDER-42 --payload '{"orderId": 42}'
    """
    config: StepwiseConfig = ctx.obj
    data = _parse_payload(payload)

    async def _run():
        async with _runtime(config) as rt:
            scheduler = Scheduler(rt.repository, rt.orchestrator)
            return await scheduler.schedule(process_type, business_key, data)

    job = asyncio.run(_run())
    typer.echo(f"Scheduled job {job.id}: {job.process_type}/{job.business_key}")


@process_app.command("start")
def process_start(
    ctx: typer.Context,
    process_type: str,
    business_key: str,
    payload: Optional[str] = typer.Option(None, help="JSON object passed to the process"),
) -> None:
    """
    Start a process immediately, bypassing the scheduler.

    Starting the same process type and business key twice returns the same id.
    """
    config: StepwiseConfig = ctx.obj
    data = _parse_payload(payload)

    async def _run() -> int:
        async with _runtime(config) as rt:
            return await rt.orchestrator.start_process(process_type, business_key, data)

    try:
        process_id = asyncio.run(_run())
    except StepwiseError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Process id: {process_id}")


@process_app.command("list")
def process_list(ctx: typer.Context) -> None:
    """
    List all process instances with their status.

    Example:
        stepwise process list
        # Output: 1    order_fulfillment    ORDER-42    COMPLETED
    """
    repo = get_repository(database_url=ctx.obj.database_url)

    async def _load():
        try:
            return await repo.list_processes()
        finally:
            await repo.close()

    processes = asyncio.run(_load())
    if not processes:
        typer.echo("No processes found")
        return
    for proc in processes:
        typer.echo(
            f"{proc.id}\t{proc.process_type}\t{proc.business_key}\t{proc.status.value}"
        )


@process_app.command("show")
def process_show(ctx: typer.Context, process_id: int) -> None:
    """
    Show a process instance, its steps and its merged context.

    Example:
        stepwise process show 1
        # Output: Process 1 (order_fulfillment/ORDER-42): COMPLETED
        #         - prepare: DONE attempt=1
        #         ...
    """
    repo = get_repository(database_url=ctx.obj.database_url)

    async def _load():
        try:
            proc = await repo.get_process(process_id)
            if proc is None:
                return None, [], {}
            steps = await repo.list_steps(process_id)
            context = await ContextStore(repo).load(process_id)
            return proc, steps, context
        finally:
            await repo.close()

    proc, steps, context = asyncio.run(_load())
    if proc is None:
        typer.echo("Process not found")
        raise typer.Exit(code=1)

    typer.echo(
        f"Process {proc.id} ({proc.process_type}/{proc.business_key}): {proc.status.value}"
    )
    if proc.source_job_id is not None:
        typer.echo(f"Source job: {proc.source_job_id}")
    for step in steps:
        line = f"- {step.step_name}: {step.status.value} attempt={step.attempt}"
        if step.join_group:
            line += f" group={step.join_group}"
        if step.last_error:
            line += f" error={step.last_error}"
        typer.echo(line)
    if context:
        typer.echo(f"Context: {json.dumps(context, default=str)}")


@step_app.command("debug")
def step_debug(
    ctx: typer.Context,
    process_id: int,
    step_name: str,
    show_payload: bool = typer.Option(
        False, "--show-payload", help="Print the step's input/output before and after"
    ),
) -> None:
    """
    Run one step synchronously through the full step-runner protocol.

    Example:
        stepwise step debug 1 prepare --show-payload
    """
    config: StepwiseConfig = ctx.obj

    def _report(label: str, step) -> None:
        if step is None:
            typer.echo(f"{label}: step not found")
            return
        typer.echo(f"{label}: status={step.status.value} attempt={step.attempt}")
        typer.echo(f"  input: {json.dumps(step.input_payload, default=str)}")
        typer.echo(f"  output: {json.dumps(step.output_payload, default=str)}")

    async def _run() -> bool:
        async with _runtime(config) as rt:
            if show_payload:
                _report("Before", await rt.repository.get_step(process_id, step_name))
            instance = await rt.repository.get_process(process_id)
            message = RunStepMessage(
                process_id=process_id,
                step_name=step_name,
                source_job_id=instance.source_job_id if instance else None,
            )
            try:
                return await rt.runner.handle(message)
            finally:
                if show_payload:
                    _report("After", await rt.repository.get_step(process_id, step_name))

    typer.echo(f"Running process {process_id} step {step_name}")
    try:
        executed = asyncio.run(_run())
    except Exception as exc:
        typer.secho(f"ERROR: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo("OK" if executed else "SKIPPED (step not runnable)")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()

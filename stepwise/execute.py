"""Step execution engine for stepwise processes."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .constants import DEFAULT_MAX_DELIVERIES, RUN_STEP_TOPIC
from .context_store import ContextStore
from .contracts import RunStepMessage, StepContext
from .graph import FanOut, Next, ProcessGraph
from .orchestrator import Orchestrator
from .persistence import ProcessRepository, ProcessStep, StepStatus
from .registry import ProcessDefinition
from .transports import BaseTransport
from .utils import retry

logger = logging.getLogger(__name__)


class StepRunner:
    """Handles one delivered run-step message.

    The step row, not the message, decides who may execute: a handler only
    runs business logic after its conditional PENDING -> RUNNING update
    succeeded. Duplicates of settled or in-flight steps are dropped.
    """

    def __init__(
        self,
        repository: ProcessRepository,
        orchestrator: Orchestrator,
        context_store: Optional[ContextStore] = None,
    ) -> None:
        self._repository = repository
        self._orchestrator = orchestrator
        self._context_store = context_store or ContextStore(repository)

    async def handle(self, message: RunStepMessage) -> bool:
        """Run the step named by ``message``.

        Returns ``True`` when this call executed the step, ``False`` when the
        message was dropped. Business failures are recorded on the step and
        re-raised for the delivery layer.
        """
        claimed = await self._claim(message)
        if claimed is None:
            return False
        step, definition = claimed

        process_id, step_name = message.process_id, message.step_name
        try:
            merged = await self._context_store.load(process_id)
            context = StepContext(
                process_id=process_id,
                step_name=step_name,
                input=step.input_payload or message.input,
                data=merged,
                source_job_id=message.source_job_id,
            )
            output = await self._execute(definition, context)

            await self._context_store.append(process_id, step_name, output)
            await self._orchestrator.mark_step_done(process_id, step_name, output)
            await self._apply_transition(definition.graph, process_id, step_name, output)

            if step.join_group:
                target = definition.graph.resolve_join_target(step.join_group)
                await self._orchestrator.try_join(process_id, step.join_group, target)
        except Exception as exc:
            logger.exception(f"Step {step_name} failed for process_id={process_id}")
            await self._orchestrator.mark_step_failed(
                process_id, step_name, str(exc) or exc.__class__.__name__
            )
            raise

        logger.info(f"Step {step_name} done for process_id={process_id}")
        return True

    async def is_settled(self, message: RunStepMessage) -> bool:
        """Whether the step named by ``message`` is already DONE or FAILED."""
        step = await self._repository.get_step(message.process_id, message.step_name)
        return step is not None and step.is_terminal

    async def _claim(
        self, message: RunStepMessage
    ) -> Optional[tuple[ProcessStep, ProcessDefinition]]:
        process_id, step_name = message.process_id, message.step_name
        async with self._repository.transaction() as tx:
            step = await tx.get_step(process_id, step_name, for_update=True)
            if step is None:
                logger.warning(f"Dropping message for unknown step {process_id}/{step_name}")
                tx.rollback()
                return None

            if step.is_terminal:
                logger.info(
                    f"Dropping duplicate delivery of {step.status.value} step "
                    f"{step_name} for process_id={process_id}"
                )
                tx.rollback()
                return None

            if step.status == StepStatus.RUNNING and step.attempt > 1:
                logger.info(
                    f"Dropping delivery of in-flight step {step_name} "
                    f"(attempt {step.attempt}) for process_id={process_id}"
                )
                tx.rollback()
                return None

            instance = await tx.get_instance(process_id)
            if instance is None:
                logger.warning(f"Dropping message for unknown process {process_id}")
                tx.rollback()
                return None
            definition = self._orchestrator.catalog.get(instance.process_type)

            if not await tx.claim_step(step.id):
                logger.info(
                    f"Lost claim on {step_name} ({step.status.value}) for process_id={process_id}"
                )
                tx.rollback()
                return None

        logger.debug(f"Claimed {step_name} for process_id={process_id}")
        return step, definition

    async def _execute(
        self, definition: ProcessDefinition, context: StepContext
    ) -> Dict[str, Any]:
        executor = definition.executors.get(context.step_name)
        if executor is None:
            # orchestration-only node
            return {}
        output = await executor.execute(context)
        return dict(output or {})

    async def _apply_transition(
        self,
        graph: ProcessGraph,
        process_id: int,
        step_name: str,
        output: Dict[str, Any],
    ) -> None:
        transition = graph.transition_for(step_name)
        if isinstance(transition, Next):
            await self._orchestrator.create_step(process_id, transition.target, output)
        elif isinstance(transition, FanOut):
            await self._orchestrator.fan_out(
                process_id, transition.group, transition.members, output
            )


class StepWorker:
    """Consumes run-step messages from a transport and hands them to a runner.

    A failed message is republished with a bumped ``delivery_attempt`` after
    an exponential backoff until ``max_deliveries`` is reached, then
    rejected without requeue.
    A failure the runner already recorded on the step is acknowledged
    instead, since every redelivery of it would be dropped by the claim.
    """

    def __init__(
        self,
        transport: BaseTransport,
        runner: StepRunner,
        topic: str = RUN_STEP_TOPIC,
        max_deliveries: int = DEFAULT_MAX_DELIVERIES,
        backoff_base: float = 1.5,
    ) -> None:
        self._transport = transport
        self._runner = runner
        self._topic = topic
        self._max_deliveries = max_deliveries
        self._backoff_base = backoff_base

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Start listening for run-step messages on the configured topic."""
        logger.info(f"Worker listening on {self._topic}")
        async for raw_message, message in self._transport.subscribe(
            self._topic, lifespan=lifespan
        ):
            await self.process(raw_message, message)

    async def process(self, raw_message: Any, message: RunStepMessage) -> bool:
        """Handle one delivery and settle it with the transport."""
        try:
            executed = await self._runner.handle(message)
        except Exception as exc:
            if await self._already_settled(message):
                logger.error(
                    f"Step {message.step_name} for process_id={message.process_id} "
                    f"is already settled, not redelivering: {exc}"
                )
                await self._transport.ack(raw_message)
            else:
                await self._redeliver(raw_message, message, exc)
            return False
        await self._transport.ack(raw_message)
        return executed

    async def _already_settled(self, message: RunStepMessage) -> bool:
        try:
            return await self._runner.is_settled(message)
        except Exception:
            logger.exception(
                f"Could not read {message.step_name} for process_id={message.process_id}"
            )
            return False

    async def _redeliver(self, raw_message: Any, message: RunStepMessage, exc: Exception) -> None:
        if message.delivery_attempt >= self._max_deliveries:
            logger.error(
                f"Giving up on {message.step_name} for process_id={message.process_id} "
                f"after {message.delivery_attempt} deliveries: {exc}"
            )
            await self._transport.nack(raw_message, requeue=False)
            return

        await retry.schedule_retry(message.delivery_attempt, base=self._backoff_base)
        await self._transport.publish(self._topic, message.bump_attempt())
        await self._transport.ack(raw_message)
        logger.warning(
            f"Redelivering {message.step_name} for process_id={message.process_id} "
            f"(delivery {message.delivery_attempt + 1}/{self._max_deliveries})"
        )

"""Process orchestrator: the only writer of instance and step status.

Every public operation is idempotent. Messages are dispatched only after the
transaction that created the step has committed, and only by the call that
actually inserted the row, so a retried caller never produces a second
message for the same logical step.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from .constants import MAX_ERROR_LENGTH
from .contracts import RunStepMessage
from .dispatch import StepDispatcher
from .errors import (
    DuplicateKeyError,
    JoinGroupEmptyError,
    ProcessNotFoundError,
    StepNotFoundError,
)
from .persistence import ProcessRepository, ProcessStatus, ProcessTransaction, StepStatus
from .registry import CATALOG, ProcessCatalog

logger = logging.getLogger(__name__)


@dataclass
class ProcessStart:
    """Outcome of a start whose transaction has not been committed yet."""

    process_id: int
    step_name: str
    payload: Dict[str, Any]
    created: bool


class Orchestrator:
    """Owns every legal state transition of process instances and steps."""

    def __init__(
        self,
        repository: ProcessRepository,
        dispatcher: StepDispatcher,
        catalog: Optional[ProcessCatalog] = None,
    ) -> None:
        self._repository = repository
        self._dispatcher = dispatcher
        self._catalog = catalog if catalog is not None else CATALOG

    @property
    def catalog(self) -> ProcessCatalog:
        return self._catalog

    async def start_process(
        self,
        process_type: str,
        business_key: str,
        payload: Optional[Dict[str, Any]] = None,
        source_job_id: Optional[int] = None,
    ) -> int:
        """Create (or find) the instance for the business key and seed its first step.

        Returns the instance id whether it was created by this call or already
        existed.
        """
        async with self._repository.transaction() as tx:
            start = await self.start_process_in(
                tx, process_type, business_key, payload, source_job_id
            )
        await self.dispatch_start(start)
        return start.process_id

    async def start_process_in(
        self,
        tx: ProcessTransaction,
        process_type: str,
        business_key: str,
        payload: Optional[Dict[str, Any]] = None,
        source_job_id: Optional[int] = None,
    ) -> ProcessStart:
        """Do the writes of :meth:`start_process` inside the caller's transaction.

        Nothing is dispatched; pass the result to :meth:`dispatch_start` once
        ``tx`` has committed.
        """
        graph = self._catalog.get(process_type).graph
        payload = payload or {}

        instance = await tx.find_instance(process_type, business_key, for_update=True)
        if instance is None:
            try:
                instance = await tx.insert_instance(
                    process_type, business_key, payload, source_job_id
                )
                logger.info(
                    f"Started {process_type} process_id={instance.id} "
                    f"business_key={business_key}"
                )
            except DuplicateKeyError:
                instance = await tx.find_instance(process_type, business_key)
                if instance is None:
                    raise
                logger.info(
                    f"Lost start race for {process_type}/{business_key}, "
                    f"using process_id={instance.id}"
                )
        created = await tx.insert_step_if_absent(instance.id, graph.initial_step, payload)
        return ProcessStart(instance.id, graph.initial_step, payload, created)

    async def dispatch_start(self, start: ProcessStart) -> None:
        """Dispatch the initial step of a committed start, if that start created it."""
        if start.created:
            await self._dispatch_step(start.process_id, start.step_name, start.payload)

    async def create_step(
        self,
        process_id: int,
        step_name: str,
        input_payload: Optional[Dict[str, Any]] = None,
        join_group: Optional[str] = None,
    ) -> bool:
        """Insert ``step_name`` if absent; dispatch it only when this call created it."""
        async with self._repository.transaction() as tx:
            created = await tx.insert_step_if_absent(
                process_id, step_name, input_payload, join_group
            )
        if created:
            await self._dispatch_step(process_id, step_name, input_payload)
        else:
            logger.debug(f"Step {step_name} already exists for process_id={process_id}")
        return created

    async def fan_out(
        self,
        process_id: int,
        join_group: str,
        member_steps: Sequence[str],
        payload: Optional[Dict[str, Any]] = None,
    ) -> List[str]:
        """Create every member of ``join_group`` in one transaction.

        Returns the members inserted by this call; only those are dispatched.
        """
        created: List[str] = []
        async with self._repository.transaction() as tx:
            for step_name in member_steps:
                if await tx.insert_step_if_absent(process_id, step_name, payload, join_group):
                    created.append(step_name)

        logger.info(
            f"Fan-out {join_group} for process_id={process_id}: "
            f"created {created or 'nothing'} of {list(member_steps)}"
        )
        for step_name in created:
            await self._dispatch_step(process_id, step_name, payload)
        return created

    async def try_join(self, process_id: int, join_group: str, next_step: str) -> bool:
        """Create ``next_step`` once every member of ``join_group`` is DONE.

        Of several branches calling this concurrently, only the one that sees
        the whole group DONE and inserts ``next_step`` dispatches it.
        """
        async with self._repository.transaction() as tx:
            members = await tx.lock_join_group(process_id, join_group)
            if not members:
                raise JoinGroupEmptyError(process_id, join_group)
            waiting = [m.step_name for m in members if m.status != StepStatus.DONE]
            if waiting:
                logger.debug(
                    f"Join {join_group} for process_id={process_id} waiting on {waiting}"
                )
                return False
            created = await tx.insert_step_if_absent(process_id, next_step)

        if created:
            logger.info(f"Join {join_group} complete for process_id={process_id} -> {next_step}")
            await self._dispatch_step(process_id, next_step)
        return created

    async def mark_step_done(
        self,
        process_id: int,
        step_name: str,
        output_payload: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Set the step DONE; completes the instance when it is the terminal step."""
        async with self._repository.transaction() as tx:
            step = await tx.get_step(process_id, step_name, for_update=True)
            if step is None:
                raise StepNotFoundError(process_id, step_name)
            if step.status == StepStatus.DONE:
                return False
            if step.status == StepStatus.FAILED:
                logger.warning(
                    f"Ignoring completion of FAILED step {step_name} for process_id={process_id}"
                )
                return False

            await tx.complete_step(step.id, output_payload or {})

            instance = await tx.get_instance(process_id, for_update=True)
            if instance is None:
                raise ProcessNotFoundError(process_id)
            graph = self._catalog.get(instance.process_type).graph
            if step_name == graph.terminal_step:
                await tx.update_instance_status(
                    process_id, ProcessStatus.COMPLETED, finished=True
                )
                logger.info(f"Process {process_id} ({instance.process_type}) completed")
        return True

    async def mark_step_failed(self, process_id: int, step_name: str, error: str) -> bool:
        """Set the step FAILED and fail the instance unless it already finished.

        A DONE step stays DONE.
        """
        async with self._repository.transaction() as tx:
            step = await tx.get_step(process_id, step_name, for_update=True)
            if step is None:
                raise StepNotFoundError(process_id, step_name)
            if step.is_terminal:
                return False

            await tx.fail_step(step.id, error[:MAX_ERROR_LENGTH])
            await tx.update_instance_status(
                process_id,
                ProcessStatus.FAILED,
                unless=(ProcessStatus.COMPLETED, ProcessStatus.FAILED),
                finished=True,
            )
        logger.error(f"Step {step_name} failed for process_id={process_id}: {error}")
        return True

    async def _dispatch_step(
        self,
        process_id: int,
        step_name: str,
        input_payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        async with self._repository.transaction() as tx:
            instance = await tx.get_instance(process_id)
        source_job_id = instance.source_job_id if instance else None
        await self._dispatcher.dispatch(
            RunStepMessage(
                process_id=process_id,
                step_name=step_name,
                input=input_payload or {},
                source_job_id=source_job_id,
            )
        )

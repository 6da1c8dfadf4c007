"""Order fulfillment process.

prepare fans out to the external calls and document generation, which join
into archive; archive fans out to the two archival steps, which join into
finalize.
"""

from __future__ import annotations

import random
from typing import Any, Dict

from ..contracts import StepContext
from ..graph import FanOut, ProcessGraph
from ..registry import ExecutorRegistry, ProcessDefinition
from ..utils.clock import utcnow

PROCESS_TYPE = "order_fulfillment"

GRAPH = ProcessGraph(
    {
        "prepare": FanOut(
            group="dispatch_group",
            members=("call_api_a", "call_api_b", "generate_doc"),
            join_to="archive",
        ),
        "call_api_a": None,
        "call_api_b": None,
        "generate_doc": None,
        "archive": FanOut(
            group="archive_group",
            members=("archive_db", "archive_files"),
            join_to="finalize",
        ),
        "archive_db": None,
        "archive_files": None,
        "finalize": None,
    }
)


class PrepareOrder:
    async def execute(self, context: StepContext) -> Dict[str, Any]:
        return {
            "orderId": context.input.get("orderId"),
            "preparedAt": utcnow().isoformat(),
        }


class CallApiA:
    async def execute(self, context: StepContext) -> Dict[str, Any]:
        return {"apiA": "ok"}


class CallApiB:
    async def execute(self, context: StepContext) -> Dict[str, Any]:
        return {"apiB": "ok"}


class GenerateDocument:
    async def execute(self, context: StepContext) -> Dict[str, Any]:
        return {"documentId": random.randint(1000, 9999)}


class ArchiveDb:
    async def execute(self, context: StepContext) -> Dict[str, Any]:
        return {"dbArchived": True}


class ArchiveFiles:
    async def execute(self, context: StepContext) -> Dict[str, Any]:
        return {"filesArchived": True}


class Finalize:
    async def execute(self, context: StepContext) -> Dict[str, Any]:
        return {"finalized": True, "documentId": context.get("documentId")}


def build_definition() -> ProcessDefinition:
    executors = ExecutorRegistry(
        {
            "prepare": PrepareOrder(),
            "call_api_a": CallApiA(),
            "call_api_b": CallApiB(),
            "generate_doc": GenerateDocument(),
            "archive_db": ArchiveDb(),
            "archive_files": ArchiveFiles(),
            "finalize": Finalize(),
        }
    )
    return ProcessDefinition(PROCESS_TYPE, GRAPH, executors)

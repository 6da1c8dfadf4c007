"""Built-in process definitions."""

from __future__ import annotations

import importlib
from typing import Iterable, Optional

from ..registry import CATALOG, ProcessCatalog
from . import order_fulfillment


def load_builtin_processes(catalog: Optional[ProcessCatalog] = None) -> ProcessCatalog:
    """Register the processes shipped with stepwise."""
    catalog = catalog if catalog is not None else CATALOG
    if order_fulfillment.PROCESS_TYPE not in catalog:
        catalog.register(order_fulfillment.build_definition())
    return catalog


def import_process_modules(modules: Iterable[str]) -> None:
    """Import modules that register their own definitions on import."""
    for module in modules:
        importlib.import_module(module)


__all__ = ["load_builtin_processes", "import_process_modules"]

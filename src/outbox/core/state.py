# src/outbox/core/state.py

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ..connectors.connectivity import HttpConnectivityMonitor, ManualConnectivityMonitor
from ..tasks.http_handler import HttpRequestHandler
from ..tasks.task_handlers import TaskHandlerRegistry
from ..tasks.task_queue import TaskQueueEngine
from ..tasks.task_runner import TaskRunner
from .ports import PersistedTaskSource


@dataclass
class AppState:
    """Process-wide handles, built once by the composition root and passed around explicitly."""

    settings: Any
    store: PersistedTaskSource
    engine: TaskQueueEngine
    handlers: TaskHandlerRegistry
    connectivity: ManualConnectivityMonitor | HttpConnectivityMonitor
    runner: TaskRunner
    http_handler: HttpRequestHandler | None = None

# src/outbox/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the core.

The engine and the runner depend on Protocols instead of concrete implementations.
This keeps storage/connectivity/task kinds swappable and makes testing easier.
"""

from collections.abc import Callable, Iterable, Mapping
from enum import StrEnum
from typing import Any, Awaitable, Protocol

from ..tasks.task_models import TaskRecord

# Full current record set; records may arrive as TaskRecord or as raw persisted mappings.
RecordSet = Iterable[TaskRecord | Mapping[str, Any]]
Unsubscribe = Callable[[], None]


class ConnectivityStatus(StrEnum):
    ONLINE = "online"
    OFFLINE = "offline"


class PersistedTaskSource(Protocol):
    """
    Durable owner of task records.

    subscribe() delivers the complete current set right away and again after every
    change (insert, update, delete). Never deltas.
    """

    def subscribe(self, on_change: Callable[[RecordSet], None]) -> Unsubscribe: ...
    def upsert(self, record: TaskRecord) -> None: ...
    def delete(self, task_id: str) -> None: ...
    def prune_completed(self, keep: int) -> int:
        """Drop old terminal records, keeping any still named in an unfinished depends_on."""
        ...


class ConnectivityMonitor(Protocol):
    """Delivers the current status on subscribe, then every transition."""

    def subscribe(self, on_status_change: Callable[[ConnectivityStatus], None]) -> Unsubscribe: ...


class TaskHandler(Protocol):
    """
    Behavior of one task kind.

    perform_local / rollback may be sync or return an awaitable.
    perform_remote is awaited; raise to signal failure and let is_transient()
    decide between retry and rollback.
    """

    local_waits_for_dependencies: bool

    def perform_local(self, record: TaskRecord) -> Awaitable[None] | None: ...
    def perform_remote(self, record: TaskRecord) -> Awaitable[None]: ...
    def rollback(self, record: TaskRecord) -> Awaitable[None] | None: ...
    def is_transient(self, exc: BaseException) -> bool: ...

# src/outbox/tasks/task_handlers.py

from __future__ import annotations

import logging
from collections.abc import Iterator
from typing import Awaitable

import httpx

from ..core.ports import TaskHandler
from .task_errors import RemoteTransientError
from .task_models import TaskRecord

logger = logging.getLogger(__name__)


class BaseTaskHandler:
    """
    Convenience base for task kinds.

    Defaults:
    - local phase and rollback do nothing,
    - the local phase does not wait for dependencies (optimistic),
    - RemoteTransientError and httpx transport errors are transient; anything else is permanent.
    """

    local_waits_for_dependencies: bool = False

    def perform_local(self, record: TaskRecord) -> Awaitable[None] | None:
        return None

    async def perform_remote(self, record: TaskRecord) -> None:
        raise NotImplementedError(f"{type(self).__name__} has no remote phase")

    def rollback(self, record: TaskRecord) -> Awaitable[None] | None:
        return None

    def is_transient(self, exc: BaseException) -> bool:
        return isinstance(exc, (RemoteTransientError, httpx.TransportError))


class TaskHandlerRegistry:
    """Maps a task kind to the handler that runs it."""

    def __init__(self) -> None:
        self._handlers: dict[str, TaskHandler] = {}

    def register(self, kind: str, handler: TaskHandler) -> None:
        key = (kind or "").strip()
        if not key:
            raise ValueError("kind is required")
        if key in self._handlers:
            logger.warning("Replacing handler for task kind %s", key)
        self._handlers[key] = handler

    def get(self, kind: str) -> TaskHandler | None:
        return self._handlers.get(kind)

    def kinds(self) -> list[str]:
        return sorted(self._handlers)

    def __contains__(self, kind: object) -> bool:
        return kind in self._handlers

    def __iter__(self) -> Iterator[str]:
        return iter(self.kinds())

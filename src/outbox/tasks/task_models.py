# src/outbox/tasks/task_models.py

from __future__ import annotations

import itertools
import os
import time
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any

from .task_errors import MalformedTaskRecordError


class TaskStatus(StrEnum):
    """
    Task lifecycle status.

    queued -> local-complete -> remote-pending (-> remote-pending)* -> complete | failed
    queued -> failed when the local phase raises.
    """

    QUEUED = "queued"
    LOCAL_COMPLETE = "local-complete"
    REMOTE_PENDING = "remote-pending"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETE, TaskStatus.FAILED)


_id_counter = itertools.count()


def new_task_id() -> str:
    """Clock-derived id; lexical order follows creation order within a process."""
    seq = next(_id_counter) % 1_000_000
    return f"{time.time_ns():020d}-{seq:06d}-{os.urandom(3).hex()}"


@dataclass(slots=True, frozen=True)
class TaskRecord:
    id: str
    kind: str
    payload: dict[str, Any] = field(default_factory=dict)
    status: TaskStatus = TaskStatus.QUEUED
    depends_on: tuple[str, ...] = ()
    created_at: float = 0.0
    updated_at: float = 0.0
    attempts: int = 0
    error: str | None = None

    @classmethod
    def create(
        cls,
        kind: str,
        payload: Mapping[str, Any] | None = None,
        depends_on: Any = None,
    ) -> TaskRecord:
        if not kind or not kind.strip():
            raise ValueError("kind is required")
        now = time.time()
        return cls(
            id=new_task_id(),
            kind=kind.strip(),
            payload=dict(payload or {}),
            status=TaskStatus.QUEUED,
            depends_on=_normalize_depends_on(depends_on),
            created_at=now,
            updated_at=now,
        )

    @property
    def sort_key(self) -> tuple[float, str]:
        return (self.created_at, self.id)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def with_status(self, status: TaskStatus, **changes: Any) -> TaskRecord:
        return replace(self, status=status, updated_at=time.time(), **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "payload": dict(self.payload),
            "status": self.status.value,
            "depends_on": list(self.depends_on),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "attempts": self.attempts,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> TaskRecord:
        """
        Parse a persisted record.

        Raises MalformedTaskRecordError for anything the engine must not mirror:
        missing id/kind, unknown status, non-mapping payload, bad numbers.
        """
        if not isinstance(d, Mapping):
            raise MalformedTaskRecordError(f"record is not a mapping: {type(d).__name__}")

        task_id = d.get("id")
        kind = d.get("kind")
        if not isinstance(task_id, str) or not task_id:
            raise MalformedTaskRecordError(f"bad id: {task_id!r}")
        if not isinstance(kind, str) or not kind:
            raise MalformedTaskRecordError(f"bad kind for {task_id}: {kind!r}")

        try:
            status = TaskStatus(d.get("status", TaskStatus.QUEUED.value))
        except ValueError:
            raise MalformedTaskRecordError(
                f"unknown status for {task_id}: {d.get('status')!r}"
            ) from None

        payload = d.get("payload") or {}
        if not isinstance(payload, Mapping):
            raise MalformedTaskRecordError(f"payload of {task_id} is not a mapping")

        try:
            depends_on = _normalize_depends_on(d.get("depends_on"))
            created_at = float(d.get("created_at") or 0.0)
            updated_at = float(d.get("updated_at") or created_at)
            attempts = int(d.get("attempts") or 0)
        except (TypeError, ValueError) as e:
            raise MalformedTaskRecordError(f"bad field in {task_id}: {e}") from e

        error = d.get("error")
        return cls(
            id=task_id,
            kind=kind,
            payload=dict(payload),
            status=status,
            depends_on=depends_on,
            created_at=created_at,
            updated_at=updated_at,
            attempts=attempts,
            error=str(error) if error is not None else None,
        )


def _normalize_depends_on(raw: Any) -> tuple[str, ...]:
    if not raw:
        return ()
    if isinstance(raw, str):
        raw = [raw]
    out: list[str] = []
    for item in raw:
        dep = item.id if isinstance(item, TaskRecord) else item
        if not isinstance(dep, str) or not dep:
            raise TypeError(f"dependency ids must be non-empty strings, got {dep!r}")
        if dep not in out:
            out.append(dep)
    return tuple(out)

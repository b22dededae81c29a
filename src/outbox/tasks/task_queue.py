# src/outbox/tasks/task_queue.py

from __future__ import annotations

"""
Task queue engine.

An in-process mirror of the persisted task set:
- rebuilt wholesale from every change notification of the source,
- split into `queue` (not terminal) and `completed` (complete/failed),
- brokers waiters for the "performed locally" and "performed remotely" milestones.

The engine never mutates its mirror directly. enqueue/dequeue write through the
source and the mirror follows when the change notification comes back.
"""

import asyncio
import logging
import threading
from collections import Counter
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from ..core.ports import PersistedTaskSource, RecordSet, Unsubscribe
from .task_errors import MalformedTaskRecordError
from .task_matching import MatchCriteria, filter_tasks, task_matches
from .task_models import TaskRecord, TaskStatus

logger = logging.getLogger(__name__)

TaskRef = TaskRecord | str
ChangeListener = Callable[[], None]


def _task_id(task: TaskRef) -> str:
    return task.id if isinstance(task, TaskRecord) else str(task)


def _resolve_future(fut: asyncio.Future[TaskRecord], record: TaskRecord) -> None:
    """Resolve on the future's own loop; hop threads if we're elsewhere."""
    loop = fut.get_loop()
    try:
        running = asyncio.get_running_loop()
    except RuntimeError:
        running = None

    if running is loop:
        if not fut.done():
            fut.set_result(record)
        return

    def _set() -> None:
        if not fut.done():
            fut.set_result(record)

    if not loop.is_closed():
        loop.call_soon_threadsafe(_set)


class TaskQueueEngine:
    def __init__(self, source: PersistedTaskSource) -> None:
        self._source = source
        self._queue: tuple[TaskRecord, ...] = ()
        self._completed: tuple[TaskRecord, ...] = ()
        self._by_id: dict[str, TaskRecord] = {}

        self._local_waiters: dict[str, list[asyncio.Future[TaskRecord]]] = {}
        self._remote_waiters: dict[str, list[asyncio.Future[TaskRecord]]] = {}
        self._listeners: list[ChangeListener] = []

        # Single-writer reconciliation: notifications that arrive while a pass runs
        # are coalesced into the latest full set and handled by that same pass.
        self._lock = threading.Lock()
        self._reconciling = False
        self._pending: list[Any] | None = None

        self._unsubscribe: Unsubscribe | None = None

    # ---- lifecycle ----

    def attach(self) -> None:
        """Subscribe to the source. The source delivers its current set right away."""
        if self._unsubscribe is None:
            self._unsubscribe = self._source.subscribe(self.on_source_changed)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def add_listener(self, listener: ChangeListener) -> Unsubscribe:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    # ---- reconciliation ----

    def on_source_changed(self, all_records: RecordSet) -> None:
        """
        Replace both partitions from the full record set, resolve waiters, notify.

        Never raises. Safe to call re-entrantly (from a listener) or from other
        threads; such calls are folded into the running pass.
        """
        snapshot = list(all_records)
        with self._lock:
            self._pending = snapshot
            if self._reconciling:
                return
            self._reconciling = True

        drained = False
        try:
            while True:
                with self._lock:
                    batch, self._pending = self._pending, None
                    if batch is None:
                        self._reconciling = False
                        drained = True
                        return
                try:
                    self._reconcile(batch)
                except Exception:
                    logger.exception("Reconciliation pass failed; keeping previous mirror")
        finally:
            if not drained:
                with self._lock:
                    self._reconciling = False

    def _reconcile(self, raw_records: list[Any]) -> None:
        by_id: dict[str, TaskRecord] = {}
        for raw in raw_records:
            record = self._coerce(raw)
            if record is None:
                continue
            if record.id in by_id:
                logger.warning("Duplicate task id %s in source; keeping the last one", record.id)
            by_id[record.id] = record

        ordered = sorted(by_id.values(), key=lambda r: r.sort_key)
        queue = tuple(r for r in ordered if not r.is_terminal)
        completed = tuple(r for r in ordered if r.is_terminal)

        with self._lock:
            self._by_id = by_id
            self._queue = queue
            self._completed = completed
            local_ready = self._pop_waiters(self._local_waiters, by_id)
            remote_ready = self._pop_waiters(
                self._remote_waiters, {r.id: r for r in completed}
            )

        for fut, record in local_ready + remote_ready:
            _resolve_future(fut, record)

        logger.debug(
            "Reconciled: queue=%d completed=%d resolved_waiters=%d",
            len(queue),
            len(completed),
            len(local_ready) + len(remote_ready),
        )

        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.exception("Task queue listener failed")

    @staticmethod
    def _coerce(raw: Any) -> TaskRecord | None:
        if isinstance(raw, TaskRecord):
            return raw
        try:
            return TaskRecord.from_dict(raw)
        except MalformedTaskRecordError as e:
            logger.error("Ignoring malformed task record: %s", e)
            return None

    @staticmethod
    def _pop_waiters(
        registry: dict[str, list[asyncio.Future[TaskRecord]]],
        available: Mapping[str, TaskRecord],
    ) -> list[tuple[asyncio.Future[TaskRecord], TaskRecord]]:
        ready: list[tuple[asyncio.Future[TaskRecord], TaskRecord]] = []
        for task_id in [tid for tid in registry if tid in available]:
            for fut in registry.pop(task_id):
                ready.append((fut, available[task_id]))
        return ready

    # ---- accessors ----

    def queue(self) -> tuple[TaskRecord, ...]:
        return self._queue

    def completed(self) -> tuple[TaskRecord, ...]:
        return self._completed

    def all_tasks(self) -> tuple[TaskRecord, ...]:
        return self._queue + self._completed

    def get_task(self, task: TaskRef) -> TaskRecord | None:
        """Lookup in the combined set (queued or completed)."""
        return self._by_id.get(_task_id(task))

    def resolve_task(self, task: TaskRef) -> TaskRecord | None:
        """The queue's canonical record for a task or id; None if it left the queue."""
        record = self._by_id.get(_task_id(task))
        if record is None or record.is_terminal:
            return None
        return record

    def counts(self) -> dict[str, int]:
        c = Counter(r.status.value for r in self.all_tasks())
        return {s.value: c.get(s.value, 0) for s in TaskStatus}

    # ---- matching ----

    def find_task(self, kind: str, match_criteria: MatchCriteria = None) -> TaskRecord | None:
        for record in self._queue:
            if task_matches(record, kind, match_criteria):
                return record
        return None

    def find_tasks(
        self,
        kind: str,
        match_criteria: MatchCriteria = None,
        *,
        include_completed: bool = False,
    ) -> list[TaskRecord]:
        records: Iterable[TaskRecord] = self._queue
        if include_completed:
            records = self._queue + self._completed
        return filter_tasks(records, kind, match_criteria)

    # ---- waiting ----

    def wait_for_perform_local(self, task: TaskRef) -> asyncio.Future[TaskRecord]:
        """
        Resolves once a record with this id exists in any phase.

        Existing implies the local phase already happened (or was skipped by a failure).
        """
        return self._register_waiter(self._local_waiters, task, terminal_only=False)

    def wait_for_perform_remote(self, task: TaskRef) -> asyncio.Future[TaskRecord]:
        """Resolves once the record is complete or failed."""
        return self._register_waiter(self._remote_waiters, task, terminal_only=True)

    def _register_waiter(
        self,
        registry: dict[str, list[asyncio.Future[TaskRecord]]],
        task: TaskRef,
        *,
        terminal_only: bool,
    ) -> asyncio.Future[TaskRecord]:
        task_id = _task_id(task)
        fut: asyncio.Future[TaskRecord] = asyncio.get_running_loop().create_future()

        with self._lock:
            current = self._by_id.get(task_id)
            if current is not None and (current.is_terminal or not terminal_only):
                fut.set_result(current)
                return fut
            registry.setdefault(task_id, []).append(fut)

        def _forget(done: asyncio.Future[TaskRecord]) -> None:
            if not done.cancelled():
                return
            with self._lock:
                waiting = registry.get(task_id)
                if waiting and done in waiting:
                    waiting.remove(done)
                    if not waiting:
                        del registry[task_id]

        fut.add_done_callback(_forget)
        return fut

    def pending_waiter_count(self) -> int:
        with self._lock:
            return sum(len(v) for v in self._local_waiters.values()) + sum(
                len(v) for v in self._remote_waiters.values()
            )

    # ---- submission / cancellation ----

    def enqueue(
        self,
        kind: str,
        payload: Mapping[str, Any] | None = None,
        depends_on: Iterable[TaskRef] | None = None,
    ) -> str:
        """Persist a new queued task. The mirror picks it up on the next notification."""
        record = TaskRecord.create(kind, payload, depends_on)
        self._source.upsert(record)
        logger.info(
            "Task enqueued id=%s kind=%s depends_on=%s", record.id, record.kind, list(record.depends_on)
        )
        return record.id

    def dequeue_matching(self, kind: str, match_criteria: MatchCriteria = None) -> int:
        """
        Delete matching queued tasks through the source. Returns how many deletes were issued.

        A task already running its remote phase is removed too; the runner notices
        on its next write and drops the result.
        """
        matches = self.find_tasks(kind, match_criteria)
        for record in matches:
            self._source.delete(record.id)
            logger.info("Task dequeued id=%s kind=%s status=%s", record.id, record.kind, record.status.value)
        return len(matches)

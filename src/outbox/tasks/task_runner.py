# src/outbox/tasks/task_runner.py

from __future__ import annotations

"""
Task runner.

Drives queued tasks through their phases:
- queued          -> local-complete   (local apply, once, never retried)
- local-complete  -> remote-pending   (dependencies complete + online)
- remote-pending  -> complete | failed (retry transient errors with backoff,
                                        roll back once before a permanent failure)

The runner never touches the engine's mirror. Every transition is written to the
persisted source and comes back through the engine's change notification, which
is also what wakes the runner up. Connectivity changes wake it the same way.
"""

import asyncio
import inspect
import logging
import threading
from collections.abc import Callable
from typing import Any

from ..core.ports import (
    ConnectivityMonitor,
    ConnectivityStatus,
    PersistedTaskSource,
    TaskHandler,
    Unsubscribe,
)
from .task_errors import DependencyFailedError, LocalApplyError
from .task_handlers import TaskHandlerRegistry
from .task_models import TaskRecord, TaskStatus
from .task_queue import TaskQueueEngine

logger = logging.getLogger(__name__)

BackoffPolicy = Callable[[int], float]


def exponential_backoff(base_seconds: float = 2.0, max_seconds: float = 300.0) -> BackoffPolicy:
    """Delay before retry number `attempt` (1-based): base * 2^(attempt-1), capped."""
    base = max(0.0, float(base_seconds))
    cap = max(base, float(max_seconds))

    def policy(attempt: int) -> float:
        return min(cap, base * (2 ** max(0, attempt - 1)))

    return policy


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


def _describe(exc: BaseException) -> str:
    text = str(exc).strip()
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__


class TaskRunner:
    def __init__(
        self,
        engine: TaskQueueEngine,
        source: PersistedTaskSource,
        handlers: TaskHandlerRegistry,
        connectivity: ConnectivityMonitor | None = None,
        *,
        parallelism: int = 4,
        backoff: BackoffPolicy | None = None,
        max_attempts: int = 0,
        completed_retention: int = 0,
    ) -> None:
        self._engine = engine
        self._source = source
        self._handlers = handlers
        self._connectivity = connectivity
        self._parallelism = max(1, int(parallelism))
        self._backoff = backoff or exponential_backoff()
        self._max_attempts = max(0, int(max_attempts))
        self._completed_retention = max(0, int(completed_retention))

        # Without a monitor we assume the network is there.
        self._online = connectivity is None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._loop_thread: int | None = None
        self._wake: asyncio.Event | None = None
        self._online_event: asyncio.Event | None = None

        self._remote_tasks: dict[str, asyncio.Task[None]] = {}
        self._rolled_back: set[str] = set()
        # Local outcomes not yet persisted: None = applied, else the error to fail with.
        self._local_outcomes: dict[str, LocalApplyError | None] = {}
        self._retry_handle: asyncio.TimerHandle | None = None

    @property
    def online(self) -> bool:
        return self._online

    def in_flight(self) -> list[str]:
        return list(self._remote_tasks)

    # ---- lifecycle ----

    async def run(self) -> None:
        """Process tasks until cancelled. To stop the runner, cancel the coroutine/task."""
        self._loop = asyncio.get_running_loop()
        self._loop_thread = threading.get_ident()
        self._wake = asyncio.Event()
        self._online_event = asyncio.Event()
        if self._online:
            self._online_event.set()

        unsubscribers: list[Unsubscribe] = [self._engine.add_listener(self._poke)]
        if self._connectivity is not None:
            unsubscribers.append(self._connectivity.subscribe(self._on_connectivity))

        logger.info("Task runner started (parallelism=%d online=%s)", self._parallelism, self._online)
        self._wake.set()
        try:
            while True:
                await self._wake.wait()
                self._wake.clear()
                try:
                    await self.run_pass()
                except Exception:
                    logger.exception("Task runner pass failed")
        finally:
            for unsubscribe in unsubscribers:
                unsubscribe()
            await self.stop()
            logger.info("Task runner stopped")

    async def stop(self) -> None:
        """Cancel in-flight remote phases. Their records stay remote-pending and resume later."""
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None
        tasks = list(self._remote_tasks.values())
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._remote_tasks.clear()

    def _call_in_loop(self, fn: Callable[[], None]) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        if self._loop_thread == threading.get_ident():
            fn()
        else:
            loop.call_soon_threadsafe(fn)

    def _poke(self) -> None:
        wake = self._wake
        if wake is not None:
            self._call_in_loop(wake.set)

    def _on_connectivity(self, status: ConnectivityStatus) -> None:
        def apply() -> None:
            online = status == ConnectivityStatus.ONLINE
            if online != self._online:
                logger.info("Connectivity -> %s", status.value)
            self._online = online
            if self._online_event is not None:
                if online:
                    self._online_event.set()
                else:
                    self._online_event.clear()
            if self._wake is not None:
                self._wake.set()

        self._call_in_loop(apply)

    # ---- scheduling ----

    async def run_pass(self) -> None:
        """One scan over the queue in FIFO order."""
        for snapshot in self._engine.queue():
            if snapshot.id in self._remote_tasks:
                continue

            # Our own writes during this pass refresh the mirror; always act on the latest.
            record = self._engine.resolve_task(snapshot)
            if record is None:
                continue

            handler = self._handlers.get(record.kind)
            if handler is None:
                err = LocalApplyError(f"no handler registered for kind {record.kind!r}")
                await self._fail(record, err, None)
                continue

            failed_dep, waiting_dep = self._dependency_state(record)
            if failed_dep is not None:
                # Only tasks that applied locally have something to undo.
                applied = record.status != TaskStatus.QUEUED or (
                    record.id in self._local_outcomes and self._local_outcomes[record.id] is None
                )
                await self._fail(
                    record,
                    DependencyFailedError(record.id, failed_dep),
                    handler if applied else None,
                )
                continue

            if record.status == TaskStatus.QUEUED:
                if waiting_dep is not None and handler.local_waits_for_dependencies:
                    continue
                await self._perform_local(record, handler)
                continue

            # local-complete, or remote-pending left over from a previous process.
            if waiting_dep is not None or not self._online:
                continue
            if len(self._remote_tasks) >= self._parallelism:
                continue
            self._start_remote(record, handler)

    def _dependency_state(self, record: TaskRecord) -> tuple[str | None, str | None]:
        """(first failed dependency, first unfinished dependency). Missing ids count as done."""
        waiting: str | None = None
        for dep_id in record.depends_on:
            dep = self._engine.get_task(dep_id)
            if dep is None:
                continue
            if dep.status == TaskStatus.FAILED:
                return dep_id, waiting
            if dep.status != TaskStatus.COMPLETE and waiting is None:
                waiting = dep_id
        return None, waiting

    # ---- phases ----

    async def _perform_local(self, record: TaskRecord, handler: TaskHandler) -> None:
        if record.id in self._local_outcomes:
            logger.debug("Task %s already applied locally; retrying the status write", record.id)
        else:
            try:
                await _maybe_await(handler.perform_local(record))
            except Exception as e:
                logger.warning("Local apply failed task_id=%s kind=%s: %s", record.id, record.kind, e)
                self._local_outcomes[record.id] = LocalApplyError(_describe(e))
            else:
                self._local_outcomes[record.id] = None

        error = self._local_outcomes[record.id]
        if error is not None:
            written = await self._fail(record, error, None)
        else:
            written = self._write(record.with_status(TaskStatus.LOCAL_COMPLETE))
            if written:
                logger.info("Task %s -> local-complete", record.id)

        if written or self._engine.resolve_task(record.id) is None:
            self._local_outcomes.pop(record.id, None)

    def _start_remote(self, record: TaskRecord, handler: TaskHandler) -> None:
        assert self._loop is not None
        task = self._loop.create_task(self._run_remote(record.id, handler), name=f"remote:{record.id}")
        self._remote_tasks[record.id] = task

        def _done(t: asyncio.Task[None]) -> None:
            if self._remote_tasks.get(record.id) is t:
                del self._remote_tasks[record.id]
            if not t.cancelled() and t.exception() is not None:
                logger.error("Remote phase crashed task_id=%s", record.id, exc_info=t.exception())
            self._poke()

        task.add_done_callback(_done)

    async def _run_remote(self, task_id: str, handler: TaskHandler) -> None:
        assert self._online_event is not None
        while True:
            record = self._engine.resolve_task(task_id)
            if record is None:
                logger.info("Task %s left the queue; dropping remote phase", task_id)
                return

            if not self._online:
                logger.debug("Task %s parked until online", task_id)
                await self._online_event.wait()
                continue

            record = record.with_status(TaskStatus.REMOTE_PENDING, attempts=record.attempts + 1)
            if not self._write(record):
                return

            try:
                await handler.perform_remote(record)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if self._should_retry(handler, record, e):
                    delay = self._backoff(record.attempts)
                    logger.warning(
                        "Remote attempt %d failed task_id=%s, retry in %.1fs: %s",
                        record.attempts,
                        task_id,
                        delay,
                        _describe(e),
                    )
                    if not self._write(record.with_status(TaskStatus.REMOTE_PENDING, error=_describe(e))):
                        return
                    await asyncio.sleep(delay)
                    continue

                logger.warning("Remote phase failed permanently task_id=%s: %s", task_id, _describe(e))
                latest = self._engine.resolve_task(task_id) or record
                await self._fail(latest, e, handler)
                return

            if self._write(record.with_status(TaskStatus.COMPLETE, error=None)):
                logger.info("Task %s -> complete", task_id)
            return

    def _should_retry(self, handler: TaskHandler, record: TaskRecord, exc: Exception) -> bool:
        try:
            transient = bool(handler.is_transient(exc))
        except Exception:
            logger.exception("is_transient raised for task_id=%s; treating as permanent", record.id)
            return False
        if not transient:
            return False
        return self._max_attempts == 0 or record.attempts < self._max_attempts

    async def _fail(self, record: TaskRecord, exc: BaseException, handler: TaskHandler | None) -> bool:
        """
        Roll back (at most once, only when a handler is given), then write the terminal status.

        Returns whether the failed status was persisted.
        """
        if handler is not None and record.id not in self._rolled_back:
            self._rolled_back.add(record.id)
            try:
                await _maybe_await(handler.rollback(record))
            except Exception:
                logger.exception("Rollback failed task_id=%s", record.id)

        written = self._write(record.with_status(TaskStatus.FAILED, error=_describe(exc)))
        if written:
            logger.info("Task %s -> failed (%s)", record.id, type(exc).__name__)
        if written or self._engine.resolve_task(record.id) is None:
            self._rolled_back.discard(record.id)
            self._local_outcomes.pop(record.id, None)
        return written

    # ---- persistence ----

    def _write(self, record: TaskRecord) -> bool:
        """
        Persist a transition if the task is still queued.

        Returns False when the task was dequeued meanwhile or the store failed.
        A store failure schedules another pass after the first backoff delay,
        since no change notification will arrive to wake the runner.
        """
        if self._engine.resolve_task(record.id) is None:
            logger.info("Task %s was removed; skipping %s write", record.id, record.status.value)
            return False
        try:
            self._source.upsert(record)
        except Exception:
            logger.exception("Persisting task_id=%s status=%s failed", record.id, record.status.value)
            self._schedule_repass()
            return False

        if record.is_terminal and self._completed_retention > 0:
            try:
                self._source.prune_completed(self._completed_retention)
            except Exception:
                logger.exception("prune_completed failed")
        return True

    def _schedule_repass(self) -> None:
        if self._loop is None or (self._retry_handle is not None and not self._retry_handle.cancelled()):
            return

        def fire() -> None:
            self._retry_handle = None
            self._poke()

        self._retry_handle = self._loop.call_later(max(0.0, self._backoff(1)), fire)

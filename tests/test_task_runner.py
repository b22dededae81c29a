# tests/test_task_runner.py

from __future__ import annotations

import asyncio

import pytest

from outbox.connectors.connectivity import ManualConnectivityMonitor
from outbox.tasks.task_errors import RemotePermanentError, RemoteTransientError
from outbox.tasks.task_handlers import TaskHandlerRegistry
from outbox.tasks.task_models import TaskRecord, TaskStatus
from outbox.tasks.task_queue import TaskQueueEngine
from outbox.tasks.task_runner import TaskRunner, exponential_backoff

from .fakes import FakeTaskSource, RecordingHandler, running, status_of, wait_until

DONE = TaskStatus.COMPLETE
FAILED = TaskStatus.FAILED


@pytest.mark.asyncio
async def test_task_goes_through_every_phase(engine, source, handler, runner) -> None:
    async with running(runner):
        task_id = engine.enqueue("test", {"name": "a"})
        record = await asyncio.wait_for(engine.wait_for_perform_remote(task_id), 2.0)

    assert record.status == DONE
    assert record.attempts == 1
    assert source.history(task_id) == [
        TaskStatus.QUEUED,
        TaskStatus.LOCAL_COMPLETE,
        TaskStatus.REMOTE_PENDING,
        DONE,
    ]
    assert handler.local_calls == ["a"]
    assert handler.remote_calls == ["a"]
    assert handler.rollback_calls == []


@pytest.mark.asyncio
async def test_dependent_remote_phase_starts_only_after_dependency_is_complete(engine, source, handler, runner) -> None:
    dep_status_at_start: list[TaskStatus | None] = []
    ids: dict[str, str] = {}

    def on_remote(record: TaskRecord) -> None:
        if record.payload["name"] == "b":
            dep_status_at_start.append(status_of(engine, ids["a"]))

    handler.on_remote = on_remote
    handler.gates["a"] = asyncio.Event()

    async with running(runner):
        ids["a"] = engine.enqueue("test", {"name": "a"})
        ids["b"] = engine.enqueue("test", {"name": "b"}, depends_on=[ids["a"]])

        await asyncio.wait_for(handler.started("a").wait(), 2.0)
        # B applied locally right away but must not go remote while A is in flight.
        await wait_until(engine, lambda: status_of(engine, ids["b"]) == TaskStatus.LOCAL_COMPLETE)
        await asyncio.sleep(0.05)
        assert handler.remote_calls == ["a"]

        handler.gates["a"].set()
        record_b = await asyncio.wait_for(engine.wait_for_perform_remote(ids["b"]), 2.0)

    assert record_b.status == DONE
    assert handler.remote_calls == ["a", "b"]
    assert dep_status_at_start == [DONE]


@pytest.mark.asyncio
async def test_offline_task_parks_at_local_complete_until_online(engine, source, handler, runner, connectivity) -> None:
    connectivity.set_online(False)

    async with running(runner):
        task_id = engine.enqueue("test", {"name": "c"})
        await asyncio.wait_for(engine.wait_for_perform_local(task_id), 2.0)
        await wait_until(engine, lambda: status_of(engine, task_id) == TaskStatus.LOCAL_COMPLETE)

        await asyncio.sleep(0.05)
        assert status_of(engine, task_id) == TaskStatus.LOCAL_COMPLETE
        assert handler.remote_calls == []
        assert not runner.online

        connectivity.set_online(True)
        record = await asyncio.wait_for(engine.wait_for_perform_remote(task_id), 2.0)

    assert record.status == DONE
    assert handler.remote_calls == ["c"]


@pytest.mark.asyncio
async def test_transient_errors_are_retried(engine, source, handler, runner) -> None:
    handler.remote_outcomes["r"] = [RemoteTransientError("503"), RemoteTransientError("timeout"), None]

    async with running(runner):
        task_id = engine.enqueue("test", {"name": "r"})
        record = await asyncio.wait_for(engine.wait_for_perform_remote(task_id), 2.0)

    assert record.status == DONE
    assert record.attempts == 3
    assert record.error is None
    assert handler.remote_calls == ["r", "r", "r"]
    assert handler.rollback_calls == []
    assert any(r.error and "timeout" in r.error for r in source.upserts if r.id == task_id)


@pytest.mark.asyncio
async def test_permanent_error_rolls_back_once_before_failing(engine, source, handler, runner) -> None:
    handler.remote_outcomes["p"] = [RemotePermanentError("HTTP 404")]

    async with running(runner):
        task_id = engine.enqueue("test", {"name": "p"})
        record = await asyncio.wait_for(engine.wait_for_perform_remote(task_id), 2.0)

    assert record.status == FAILED
    assert "HTTP 404" in (record.error or "")
    assert handler.rollback_calls == ["p"]
    # Rollback ran while the task was still non-terminal.
    assert handler.rollback_seen_status == [TaskStatus.REMOTE_PENDING]


@pytest.mark.asyncio
async def test_unclassified_exception_counts_as_permanent(engine, source, handler, runner) -> None:
    handler.remote_outcomes["x"] = [KeyError("server said no")]

    async with running(runner):
        task_id = engine.enqueue("test", {"name": "x"})
        record = await asyncio.wait_for(engine.wait_for_perform_remote(task_id), 2.0)

    assert record.status == FAILED
    assert handler.remote_calls == ["x"]
    assert handler.rollback_calls == ["x"]


@pytest.mark.asyncio
async def test_exhausted_retries_fail_with_rollback(engine, source, handler) -> None:
    handlers = TaskHandlerRegistry()
    handlers.register("test", handler)
    runner = TaskRunner(engine, source, handlers, backoff=lambda attempt: 0.0, max_attempts=2)
    handler.remote_outcomes["m"] = [RemoteTransientError("again")] * 5

    async with running(runner):
        task_id = engine.enqueue("test", {"name": "m"})
        record = await asyncio.wait_for(engine.wait_for_perform_remote(task_id), 2.0)

    assert record.status == FAILED
    assert record.attempts == 2
    assert handler.remote_calls == ["m", "m"]
    assert handler.rollback_calls == ["m"]


@pytest.mark.asyncio
async def test_failed_dependency_cascades_transitively(engine, source, handler, runner) -> None:
    handler.remote_outcomes["a"] = [RemotePermanentError("rejected")]

    async with running(runner):
        a = engine.enqueue("test", {"name": "a"})
        b = engine.enqueue("test", {"name": "b"}, depends_on=[a])
        c = engine.enqueue("test", {"name": "c"}, depends_on=[b])

        records = await asyncio.wait_for(
            asyncio.gather(*(engine.wait_for_perform_remote(t) for t in (a, b, c))), 2.0
        )

    assert [r.status for r in records] == [FAILED, FAILED, FAILED]
    assert "DependencyFailedError" in (records[1].error or "")
    assert a in (records[1].error or "")
    assert b in (records[2].error or "")
    assert sorted(handler.rollback_calls) == ["a", "b", "c"]
    assert handler.remote_calls == ["a"]


@pytest.mark.asyncio
async def test_local_failure_is_final_without_remote_or_rollback(engine, source, handler, runner) -> None:
    handler.local_errors["l"] = ValueError("bad draft")

    async with running(runner):
        task_id = engine.enqueue("test", {"name": "l"})
        record = await asyncio.wait_for(engine.wait_for_perform_remote(task_id), 2.0)

    assert record.status == FAILED
    assert "LocalApplyError" in (record.error or "")
    assert "bad draft" in (record.error or "")
    assert source.history(task_id) == [TaskStatus.QUEUED, FAILED]
    assert handler.remote_calls == []
    assert handler.rollback_calls == []


@pytest.mark.asyncio
async def test_unknown_kind_fails(engine, source, runner) -> None:
    async with running(runner):
        task_id = engine.enqueue("nobody-handles-this")
        record = await asyncio.wait_for(engine.wait_for_perform_remote(task_id), 2.0)

    assert record.status == FAILED
    assert "no handler registered" in (record.error or "")


@pytest.mark.asyncio
async def test_dequeue_while_remote_call_is_in_flight(engine, source, handler, runner) -> None:
    handler.gates["slow"] = asyncio.Event()

    async with running(runner):
        slow = engine.enqueue("test", {"name": "slow"})
        await asyncio.wait_for(handler.started("slow").wait(), 2.0)
        assert status_of(engine, slow) == TaskStatus.REMOTE_PENDING

        assert engine.dequeue_matching("test", {"name": "slow"}) == 1
        assert engine.get_task(slow) is None

        handler.gates["slow"].set()
        for _ in range(200):
            if not runner.in_flight():
                break
            await asyncio.sleep(0.01)
        assert runner.in_flight() == []

        # The finished call must not resurrect the deleted record.
        assert slow not in source.records

        # The runner keeps working.
        nxt = engine.enqueue("test", {"name": "next"})
        record = await asyncio.wait_for(engine.wait_for_perform_remote(nxt), 2.0)

    assert record.status == DONE
    assert handler.rollback_calls == []


@pytest.mark.asyncio
async def test_parallelism_limit_keeps_fifo_order(engine, source, handler) -> None:
    handlers = TaskHandlerRegistry()
    handlers.register("test", handler)
    runner = TaskRunner(engine, source, handlers, parallelism=1, backoff=lambda attempt: 0.0)
    handler.gates["one"] = asyncio.Event()

    async with running(runner):
        one = engine.enqueue("test", {"name": "one"})
        two = engine.enqueue("test", {"name": "two"})
        await asyncio.wait_for(handler.started("one").wait(), 2.0)
        await wait_until(engine, lambda: status_of(engine, two) == TaskStatus.LOCAL_COMPLETE)
        await asyncio.sleep(0.05)
        assert handler.remote_calls == ["one"]

        handler.gates["one"].set()
        await asyncio.wait_for(engine.wait_for_perform_remote(two), 2.0)

    assert handler.remote_calls == ["one", "two"]
    assert status_of(engine, one) == DONE


@pytest.mark.asyncio
async def test_remote_pending_task_from_previous_run_is_resumed(handler) -> None:
    leftover = TaskRecord(
        id="leftover",
        kind="test",
        payload={"name": "leftover"},
        status=TaskStatus.REMOTE_PENDING,
        created_at=1.0,
        updated_at=1.0,
        attempts=1,
    )
    source = FakeTaskSource([leftover])
    engine = TaskQueueEngine(source)
    engine.attach()
    handlers = TaskHandlerRegistry()
    handlers.register("test", handler)
    runner = TaskRunner(engine, source, handlers, ManualConnectivityMonitor(), backoff=lambda attempt: 0.0)

    async with running(runner):
        record = await asyncio.wait_for(engine.wait_for_perform_remote("leftover"), 2.0)

    assert record.status == DONE
    assert record.attempts == 2
    assert handler.local_calls == []


@pytest.mark.asyncio
async def test_completed_retention_prunes_old_finished_tasks(engine, source, handler) -> None:
    handlers = TaskHandlerRegistry()
    handlers.register("test", handler)
    runner = TaskRunner(engine, source, handlers, backoff=lambda attempt: 0.0, completed_retention=1)

    async with running(runner):
        first = engine.enqueue("test", {"name": "first"})
        await asyncio.wait_for(engine.wait_for_perform_remote(first), 2.0)
        second = engine.enqueue("test", {"name": "second"})
        await asyncio.wait_for(engine.wait_for_perform_remote(second), 2.0)
        await wait_until(engine, lambda: len(engine.completed()) == 1)

    assert [r.id for r in engine.completed()] == [second]


def test_exponential_backoff_is_capped() -> None:
    policy = exponential_backoff(1.0, 5.0)
    assert [policy(n) for n in (1, 2, 3, 4, 5)] == [1.0, 2.0, 4.0, 5.0, 5.0]


@pytest.mark.asyncio
async def test_failed_dependency_survives_pruning_until_dependents_fail(engine, source, handler) -> None:
    handlers = TaskHandlerRegistry()
    handlers.register("test", handler)
    runner = TaskRunner(engine, source, handlers, parallelism=2, backoff=lambda attempt: 0.0, completed_retention=1)
    handler.gates["a"] = asyncio.Event()
    handler.gates["x"] = asyncio.Event()
    handler.remote_outcomes["a"] = [RemotePermanentError("rejected")]

    async with running(runner):
        a = engine.enqueue("test", {"name": "a"})
        engine.enqueue("test", {"name": "x"})
        b = engine.enqueue("test", {"name": "b"}, depends_on=[a])
        await asyncio.wait_for(handler.started("a").wait(), 2.0)
        await asyncio.wait_for(handler.started("x").wait(), 2.0)

        # A fails and X completes in the same tick; X's terminal write prunes.
        handler.gates["a"].set()
        handler.gates["x"].set()
        record_b = await asyncio.wait_for(engine.wait_for_perform_remote(b), 2.0)

    assert record_b.status == FAILED
    assert a in (record_b.error or "")
    assert "b" not in handler.remote_calls
    assert "b" in handler.rollback_calls


class FlakySource(FakeTaskSource):
    """Raises on the first `fail_first` upserts of the given status."""

    def __init__(self, status: TaskStatus, fail_first: int = 1) -> None:
        super().__init__()
        self.status = status
        self.failures_left = fail_first

    def upsert(self, record: TaskRecord) -> None:
        if record.status == self.status and self.failures_left > 0:
            self.failures_left -= 1
            raise OSError("disk full")
        super().upsert(record)


@pytest.mark.asyncio
async def test_local_apply_runs_once_when_status_write_fails(handler) -> None:
    source = FlakySource(TaskStatus.LOCAL_COMPLETE)
    engine = TaskQueueEngine(source)
    engine.attach()
    handlers = TaskHandlerRegistry()
    handlers.register("test", handler)
    runner = TaskRunner(engine, source, handlers, backoff=lambda attempt: 0.0)

    async with running(runner):
        task_id = engine.enqueue("test", {"name": "a"})
        record = await asyncio.wait_for(engine.wait_for_perform_remote(task_id), 2.0)

    assert source.failures_left == 0
    assert record.status == DONE
    assert handler.local_calls == ["a"]
    assert handler.remote_calls == ["a"]


@pytest.mark.asyncio
async def test_local_failure_is_not_reapplied_when_failed_write_fails(handler) -> None:
    source = FlakySource(TaskStatus.FAILED)
    engine = TaskQueueEngine(source)
    engine.attach()
    handlers = TaskHandlerRegistry()
    handlers.register("test", handler)
    runner = TaskRunner(engine, source, handlers, backoff=lambda attempt: 0.0)
    handler.local_errors["l"] = ValueError("bad draft")

    async with running(runner):
        task_id = engine.enqueue("test", {"name": "l"})
        record = await asyncio.wait_for(engine.wait_for_perform_remote(task_id), 2.0)

    assert record.status == FAILED
    assert "bad draft" in (record.error or "")
    assert handler.local_calls == ["l"]


@pytest.mark.asyncio
async def test_rollback_bookkeeping_is_dropped_when_task_is_dequeued(engine, source, handler, runner) -> None:
    handler.remote_outcomes["gone"] = [RemotePermanentError("HTTP 410")]
    record_rollback = handler.rollback

    def rollback_then_dequeue(record: TaskRecord) -> None:
        record_rollback(record)
        engine.dequeue_matching("test", {"name": "gone"})

    handler.rollback = rollback_then_dequeue

    async with running(runner):
        task_id = engine.enqueue("test", {"name": "gone"})
        await asyncio.wait_for(handler.started("gone").wait(), 2.0)
        for _ in range(200):
            if not runner.in_flight():
                break
            await asyncio.sleep(0.01)
        assert runner.in_flight() == []

    assert handler.rollback_calls == ["gone"]
    assert task_id not in source.records
    assert FAILED not in source.history(task_id)
    assert runner._rolled_back == set()

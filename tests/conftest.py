# tests/conftest.py

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest

from outbox.connectors.connectivity import ManualConnectivityMonitor
from outbox.tasks.task_handlers import TaskHandlerRegistry
from outbox.tasks.task_queue import TaskQueueEngine
from outbox.tasks.task_runner import TaskRunner

from .fakes import FakeTaskSource, RecordingHandler


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """
    Minimal settings object compatible with the composition root.

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated and deterministic.
    """
    return SimpleNamespace(
        app_name="outbox-test",
        log_level="DEBUG",
        data_dir=tmp_path,
        tasks_db_path=tmp_path / "tasks.sqlite3",
        runner_parallelism=2,
        retry_base_delay_seconds=0.0,
        retry_max_delay_seconds=0.0,
        retry_max_attempts=0,
        completed_retention=0,
        connectivity_probe_url=None,
        connectivity_probe_interval_seconds=1.0,
        connectivity_probe_timeout_seconds=1.0,
        http_timeout_seconds=1.0,
    )


@pytest.fixture()
def source() -> FakeTaskSource:
    return FakeTaskSource()


@pytest.fixture()
def engine(source: FakeTaskSource) -> TaskQueueEngine:
    eng = TaskQueueEngine(source)
    eng.attach()
    return eng


@pytest.fixture()
def handler() -> RecordingHandler:
    return RecordingHandler()


@pytest.fixture()
def connectivity() -> ManualConnectivityMonitor:
    return ManualConnectivityMonitor()


@pytest.fixture()
def runner(
    engine: TaskQueueEngine,
    source: FakeTaskSource,
    handler: RecordingHandler,
    connectivity: ManualConnectivityMonitor,
) -> TaskRunner:
    """
    Runner wired to in-memory fakes, with zero backoff.

    NOTE: the handler is registered for kind "test".
    """
    handlers = TaskHandlerRegistry()
    handlers.register("test", handler)
    return TaskRunner(
        engine,
        source,
        handlers,
        connectivity,
        parallelism=4,
        backoff=lambda attempt: 0.0,
    )

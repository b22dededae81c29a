# src/outbox/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures local (gitignored) directories exist,
- wires concrete implementations into AppState (store/engine/connectivity/runner).
"""

from __future__ import annotations

import logging

from ..config import get_settings
from ..connectors.connectivity import HttpConnectivityMonitor, ManualConnectivityMonitor
from ..core.state import AppState
from ..tasks.http_handler import HTTP_REQUEST_KIND, HttpRequestHandler
from ..tasks.task_handlers import TaskHandlerRegistry
from ..tasks.task_queue import TaskQueueEngine
from ..tasks.task_runner import TaskRunner, exponential_backoff
from ..tasks.task_store import SQLiteTaskStore

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.tasks_db_path.parent.mkdir(parents=True, exist_ok=True)


def create_initial_state(*, settings=None) -> AppState:
    """
    Create AppState from the provided settings.

    Keeping settings injectable makes the app easier to test and avoids hidden global config reads.
    If settings is None, falls back to get_settings().
    """
    if settings is None:
        settings = get_settings()

    _ensure_local_dirs(settings)

    store = SQLiteTaskStore(settings.tasks_db_path)
    engine = TaskQueueEngine(store)

    handlers = TaskHandlerRegistry()
    http_handler = HttpRequestHandler(timeout_seconds=settings.http_timeout_seconds)
    handlers.register(HTTP_REQUEST_KIND, http_handler)

    connectivity: ManualConnectivityMonitor | HttpConnectivityMonitor
    if settings.connectivity_probe_url:
        connectivity = HttpConnectivityMonitor(
            settings.connectivity_probe_url,
            interval_seconds=settings.connectivity_probe_interval_seconds,
            timeout_seconds=settings.connectivity_probe_timeout_seconds,
        )
    else:
        connectivity = ManualConnectivityMonitor()

    runner = TaskRunner(
        engine,
        store,
        handlers,
        connectivity,
        parallelism=settings.runner_parallelism,
        backoff=exponential_backoff(settings.retry_base_delay_seconds, settings.retry_max_delay_seconds),
        max_attempts=settings.retry_max_attempts,
        completed_retention=settings.completed_retention,
    )

    # Loads the persisted set (tasks left over from a previous run included).
    engine.attach()
    logger.info("Task queue loaded: %s", engine.counts())

    return AppState(
        settings=settings,
        store=store,
        engine=engine,
        handlers=handlers,
        connectivity=connectivity,
        runner=runner,
        http_handler=http_handler,
    )

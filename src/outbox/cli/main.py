# src/outbox/cli/main.py

"""
CLI entrypoint.

Initializes logging, builds AppState, then runs on one asyncio loop:
- the task runner,
- the connectivity probe (when a probe URL is configured),
- the console REPL (until /exit, EOF or a signal).
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal

from ..cli.bootstrap import create_initial_state
from ..config import get_settings
from ..connectors.connectivity import HttpConnectivityMonitor
from ..connectors.console_connector import run_console_loop
from ..core.state import AppState
from ..logging_setup import setup_logging

logger = logging.getLogger(__name__)


async def _shutdown(state: AppState, background: list[asyncio.Task]) -> None:
    """Best-effort shutdown (no exceptions should escape)."""
    for t in background:
        t.cancel()
    results = await asyncio.gather(*background, return_exceptions=True)
    for res in results:
        if isinstance(res, Exception):
            logger.error("Background task ended with an error", exc_info=res)

    state.engine.detach()

    if state.http_handler is not None:
        try:
            await state.http_handler.aclose()
        except Exception:
            logger.debug("HTTP client close failed.", exc_info=True)

    close = getattr(state.store, "close", None)
    if callable(close):
        try:
            close()
        except Exception:
            logger.debug("Store close failed.", exc_info=True)


async def run_app(state: AppState) -> None:
    background: list[asyncio.Task] = [asyncio.create_task(state.runner.run(), name="task-runner")]
    if isinstance(state.connectivity, HttpConnectivityMonitor):
        background.append(asyncio.create_task(state.connectivity.run(), name="connectivity"))

    # Use an Event so a signal can end the app while the console waits on stdin.
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Some platforms (Windows) have no loop signal handlers.
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, stop.set)

    console = asyncio.create_task(run_console_loop(state), name="console")
    stopper = asyncio.create_task(stop.wait(), name="stop-signal")
    try:
        await asyncio.wait({console, stopper}, return_when=asyncio.FIRST_COMPLETED)
        if stop.is_set():
            logger.info("Signal received, shutting down...")
    finally:
        stopper.cancel()
        console.cancel()
        await _shutdown(state, background)


def main() -> None:
    settings = get_settings()

    level_name = str(getattr(settings, "log_level", "INFO")).upper()
    console_level = getattr(logging, level_name, logging.INFO)
    setup_logging(log_dir=settings.data_dir, console_level=console_level)

    logger.info("Starting %s...", settings.app_name)
    state = create_initial_state(settings=settings)

    try:
        asyncio.run(run_app(state))
    except KeyboardInterrupt:
        pass
    logger.info("Bye.")


if __name__ == "__main__":
    main()

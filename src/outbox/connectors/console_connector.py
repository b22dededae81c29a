# src/outbox/connectors/console_connector.py

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from datetime import datetime

from ..cli.commands import registry as command_registry
from ..core.state import AppState

logger = logging.getLogger(__name__)


def _ts_local() -> str:
    return datetime.now().astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _print_ts(text: str) -> None:
    print(f"[{_ts_local()}] {text}")


async def _read_line(prompt: str) -> str:
    """input() on a daemon thread, so a pending prompt never blocks interpreter exit."""
    loop = asyncio.get_running_loop()
    fut: asyncio.Future[str] = loop.create_future()

    def _deliver(result: str | None, exc: BaseException | None) -> None:
        if fut.done():
            return
        if exc is not None:
            fut.set_exception(exc)
        else:
            fut.set_result(result or "")

    def _worker() -> None:
        try:
            line = input(prompt)
        except BaseException as e:  # EOFError, KeyboardInterrupt
            result: tuple[str | None, BaseException | None] = (None, e)
        else:
            result = (line, None)
        # The loop may already be closed when the app exits while the prompt waits.
        with contextlib.suppress(RuntimeError):
            loop.call_soon_threadsafe(_deliver, *result)

    threading.Thread(target=_worker, name="console-input", daemon=True).start()
    return await fut


async def run_console_loop(state: AppState) -> None:
    """
    Read commands from stdin until /exit or EOF.

    The prompt waits on a daemon thread so the runner keeps working on the event loop.
    """
    logger.info("Console connector started.")
    _print_ts("[CONSOLE] Use /help for commands. Use /exit to quit.\n")

    while True:
        try:
            line = (await _read_line(">>> ")).strip()
        except EOFError:
            logger.info("Console EOF received, exiting.")
            break
        except KeyboardInterrupt:
            logger.info("Console KeyboardInterrupt, exiting.")
            print()
            break

        if not line:
            continue

        if line.lower() in ("/exit", "/quit"):
            logger.info("Console exit command received.")
            break

        try:
            response = command_registry.handle(state, line)
        except Exception:
            logger.exception("Command handler crashed.")
            response = "Internal error while handling a command."

        if response is None:
            response = "Not a command. Use /help to list available commands."
        _print_ts(response)

    logger.info("Console connector finished.")

# src/outbox/cli/commands.py

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from ..connectors.connectivity import ManualConnectivityMonitor
from ..core.state import AppState
from ..tasks.task_models import TaskRecord

CommandHandler = Callable[[AppState, list[str]], str]

logger = logging.getLogger(__name__)


class CommandRegistry:
    """Simple slash-command registry used by the console connector (/help, /enqueue, ...)."""

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._help: dict[str, str] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        help_text: str,
        aliases: list[str] | None = None,
    ) -> None:
        aliases = aliases or []
        key = name.lower()
        self._handlers[key] = handler
        self._help[key] = help_text
        for alias in aliases:
            self._handlers[alias.lower()] = handler

    def handle(self, state: AppState, line: str) -> str | None:
        """
        Handle a string like "/command args".
        Returns a reply string or None if not a command.
        """
        if not line.startswith("/"):
            return None

        parts = line[1:].split()
        if not parts:
            return "Empty command. Use /help to list available commands."

        name = parts[0].lower()
        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown command: /{name}. Use /help to list available commands."
        return handler(state, parts[1:])

    def build_help(self) -> str:
        lines = ["Available commands:"]
        for name, help_text in self._help.items():
            lines.append(f"  /{name} - {help_text}")
        return "\n".join(lines)


registry = CommandRegistry()


def _fmt_ts(ts: float) -> str:
    return datetime.fromtimestamp(ts).astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _fmt_task(r: TaskRecord) -> str:
    line = f"{r.id}  {r.kind}  [{r.status.value}]  created {_fmt_ts(r.created_at)}"
    if r.depends_on:
        line += f"  after {','.join(r.depends_on)}"
    if r.attempts:
        line += f"  attempts={r.attempts}"
    if r.error:
        line += f"  error={r.error}"
    return line


def _parse_json_arg(args: list[str]) -> Any:
    """Rejoin the remaining tokens and parse them as one JSON value (None if empty)."""
    raw = " ".join(args).strip()
    if not raw:
        return None
    return json.loads(raw)


def _criteria(args: list[str]) -> dict[str, Any] | None:
    value = _parse_json_arg(args)
    if value is not None and not isinstance(value, dict):
        raise ValueError("match criteria must be a JSON object")
    return value


def cmd_help(state: AppState, args: list[str]) -> str:
    return registry.build_help()


def cmd_status(state: AppState, args: list[str]) -> str:
    counts = state.engine.counts()
    lines = ["Status:", f"  Connectivity: {'online' if state.runner.online else 'offline'}"]
    lines += [f"  {status}: {n}" for status, n in counts.items()]
    lines.append(f"  In flight: {len(state.runner.in_flight())}")
    lines.append(f"  Kinds: {', '.join(state.handlers.kinds()) or '-'}")
    return "\n".join(lines)


def cmd_enqueue(state: AppState, args: list[str]) -> str:
    """
    /enqueue <kind> [json payload] [after=<id>,<id>]
    """
    if not args:
        return "Usage: /enqueue <kind> [json payload] [after=<id>,<id>]"

    kind, rest = args[0], args[1:]
    depends_on: list[str] = []
    for token in [t for t in rest if t.startswith("after=")]:
        rest.remove(token)
        depends_on.extend(p for p in token[len("after="):].split(",") if p)

    if kind not in state.handlers:
        return f"Unknown task kind {kind!r}. Known: {', '.join(state.handlers.kinds()) or '-'}"

    try:
        payload = _parse_json_arg(rest) or {}
        if not isinstance(payload, dict):
            return "Payload must be a JSON object."
        task_id = state.engine.enqueue(kind, payload, depends_on)
    except ValueError as e:
        return f"Cannot enqueue: {e}"
    return f"Enqueued {task_id}"


def cmd_queue(state: AppState, args: list[str]) -> str:
    queue = state.engine.queue()
    if not queue:
        return "Queue is empty."
    return "\n".join([f"Queued tasks ({len(queue)}):"] + [_fmt_task(r) for r in queue])


def cmd_completed(state: AppState, args: list[str]) -> str:
    """
    /completed [n] -> last n finished tasks (default 10)
    """
    try:
        limit = int(args[0]) if args else 10
    except ValueError:
        return "Usage: /completed [n]"
    done = state.engine.completed()[-max(1, limit):]
    if not done:
        return "No finished tasks."
    return "\n".join([f"Finished tasks (last {len(done)}):"] + [_fmt_task(r) for r in done])


def cmd_find(state: AppState, args: list[str]) -> str:
    """
    /find <kind> [json criteria]  (also searches finished tasks)
    """
    if not args:
        return "Usage: /find <kind> [json criteria]"
    try:
        criteria = _criteria(args[1:])
    except ValueError as e:
        return f"Bad criteria: {e}"
    found = state.engine.find_tasks(args[0], criteria, include_completed=True)
    if not found:
        return "No matching tasks."
    return "\n".join(_fmt_task(r) for r in found)


def cmd_cancel(state: AppState, args: list[str]) -> str:
    """
    /cancel <kind> [json criteria]  (queued tasks only)
    """
    if not args:
        return "Usage: /cancel <kind> [json criteria]"
    try:
        criteria = _criteria(args[1:])
    except ValueError as e:
        return f"Bad criteria: {e}"
    n = state.engine.dequeue_matching(args[0], criteria)
    logger.debug("cancel kind=%s criteria=%s -> %d", args[0], criteria, n)
    return f"Dequeued {n} task(s)."


def _set_online(state: AppState, online: bool) -> str:
    monitor = state.connectivity
    if not isinstance(monitor, ManualConnectivityMonitor):
        return "Connectivity is probed automatically (OUTBOX_CONNECTIVITY_PROBE_URL is set)."
    monitor.set_online(online)
    return f"Connectivity set to {'online' if online else 'offline'}."


def cmd_online(state: AppState, args: list[str]) -> str:
    return _set_online(state, True)


def cmd_offline(state: AppState, args: list[str]) -> str:
    return _set_online(state, False)


registry.register("help", cmd_help, help_text="Show available commands.", aliases=["h", "?"])
registry.register("status", cmd_status, help_text="Show task counts and connectivity.")
registry.register(
    "enqueue", cmd_enqueue, help_text="Queue a task: /enqueue <kind> [json] [after=<id>,...]."
)
registry.register("queue", cmd_queue, help_text="List queued (unfinished) tasks.", aliases=["q"])
registry.register("completed", cmd_completed, help_text="List finished tasks: /completed [n].")
registry.register("find", cmd_find, help_text="Find tasks: /find <kind> [json criteria].")
registry.register("cancel", cmd_cancel, help_text="Dequeue tasks: /cancel <kind> [json criteria].")
registry.register("online", cmd_online, help_text="Mark the network as online (manual mode).")
registry.register("offline", cmd_offline, help_text="Mark the network as offline (manual mode).")

# src/outbox/tasks/task_errors.py

"""
Error taxonomy for the task subsystem.

Only MatchPredicateError and MalformedTaskRecordError ever reach callers as
exceptions. Everything raised inside a task's execution is converted by the
runner into a terminal `failed` status with the message stored on the record.
"""

from __future__ import annotations


class TaskError(Exception):
    """Base class for task subsystem errors."""


class LocalApplyError(TaskError):
    """The local-apply procedure raised. Fatal for the task, never retried."""


class RemoteTransientError(TaskError):
    """Remote call failed in a way worth retrying (network blip, 5xx, 429)."""


class RemotePermanentError(TaskError):
    """Remote call failed for good. The task is rolled back and failed."""


class DependencyFailedError(TaskError):
    def __init__(self, task_id: str, dependency_id: str) -> None:
        super().__init__(f"dependency {dependency_id} of task {task_id} failed")
        self.task_id = task_id
        self.dependency_id = dependency_id


class MatchPredicateError(TaskError):
    """A caller-supplied match predicate raised during a query."""


class MalformedTaskRecordError(TaskError, ValueError):
    """A persisted record could not be parsed into a TaskRecord."""

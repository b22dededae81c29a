"""Durable optimistic task queue: apply locally now, execute remotely when possible."""

from .tasks.task_models import TaskRecord, TaskStatus
from .tasks.task_queue import TaskQueueEngine
from .tasks.task_runner import TaskRunner

__all__ = ["TaskQueueEngine", "TaskRecord", "TaskRunner", "TaskStatus"]
__version__ = "0.1.0"

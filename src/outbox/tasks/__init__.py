"""
Task subsystem.

Components:
- task_models.py: data structures (TaskRecord, TaskStatus)
- task_errors.py: error taxonomy
- task_matching.py: kind + criteria matching used by queries and dequeue
- task_store.py: SQLite-backed persisted task source
- task_queue.py: TaskQueueEngine, the in-memory mirror with waiters
- task_runner.py: TaskRunner, the local/remote execution state machine
- task_handlers.py: handler base class and kind registry
- http_handler.py: the `http_request` task kind
"""

# src/outbox/tasks/task_matching.py

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import fields
from typing import Any, Union

from .task_errors import MatchPredicateError
from .task_models import TaskRecord

MatchCriteria = Union[Mapping[str, Any], Callable[[TaskRecord], bool], None]

_MISSING = object()
_RECORD_FIELDS = frozenset(f.name for f in fields(TaskRecord))


def _field_value(record: TaskRecord, name: str) -> Any:
    # Payload keys win over record attributes ("id", "status", ...).
    if name in record.payload:
        return record.payload[name]
    if name in _RECORD_FIELDS:
        return getattr(record, name)
    return _MISSING


def task_matches(record: TaskRecord, kind: str, criteria: MatchCriteria = None) -> bool:
    """
    Kind is compared by value. Criteria is either:
    - None: any task of that kind,
    - a mapping: every key must be present with an equal value,
    - a predicate: called with the record.

    A predicate that raises is surfaced as MatchPredicateError.
    """
    if record.kind != kind:
        return False
    if criteria is None:
        return True
    if callable(criteria):
        try:
            return bool(criteria(record))
        except Exception as e:
            raise MatchPredicateError(f"match predicate raised for task {record.id}: {e!r}") from e

    for name, expected in criteria.items():
        actual = _field_value(record, name)
        if actual is _MISSING or actual != expected:
            return False
    return True


def filter_tasks(
    records: Iterable[TaskRecord], kind: str, criteria: MatchCriteria = None
) -> list[TaskRecord]:
    return [r for r in records if task_matches(r, kind, criteria)]

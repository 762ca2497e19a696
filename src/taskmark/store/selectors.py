# src/taskmark/store/selectors.py

"""
Derived views over the cache.

Pure functions: same (entities, filter, sort) in, same list out; inputs are
never mutated. The console renders only what these return.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit

from ..entities.collections import Collection
from ..entities.entity_models import (
    Bookmark,
    Entity,
    EntityFilter,
    SortOrder,
    Task,
    TaskPriority,
    TaskStatus,
)

# Sort rank for enum columns (alphabetical order would put "high" before "low").
_PRIORITY_RANK = {TaskPriority.LOW: 0, TaskPriority.MEDIUM: 1, TaskPriority.HIGH: 2}
_STATUS_RANK = {TaskStatus.PENDING: 0, TaskStatus.IN_PROGRESS: 1, TaskStatus.COMPLETED: 2}


def matches_filter(entity: Entity, flt: EntityFilter, search_fields: Sequence[str]) -> bool:
    if flt.status is not None and getattr(entity, "status", None) != flt.status:
        return False
    if flt.priority is not None and getattr(entity, "priority", None) != flt.priority:
        return False
    if flt.search:
        needle = flt.search.lower()
        for name in search_fields:
            value = getattr(entity, name, None)
            if value and needle in str(value).lower():
                return True
        return False
    return True


def filter_entities(
    entities: Sequence[Entity],
    flt: EntityFilter,
    collection: Collection,
) -> list[Entity]:
    return [e for e in entities if matches_filter(e, flt, collection.search_fields)]


def _sort_value(entity: Entity, field_name: str) -> Any:
    value = getattr(entity, field_name, None)
    if field_name == "priority" and value is not None:
        return _PRIORITY_RANK.get(value, 1)
    if field_name == "status" and value is not None:
        return _STATUS_RANK.get(value, 0)
    if isinstance(value, str):
        return value.lower()
    return value


def sort_entities(entities: Sequence[Entity], by: str, order: SortOrder) -> list[Entity]:
    """Stable sort on one field; entities missing the value always go last."""
    present = [e for e in entities if _sort_value(e, by) is not None]
    missing = [e for e in entities if _sort_value(e, by) is None]
    present.sort(key=lambda e: _sort_value(e, by), reverse=(order == SortOrder.DESC))
    return present + missing


def visible_entities(
    entities: Sequence[Entity],
    flt: EntityFilter,
    collection: Collection,
    by: str,
    order: SortOrder,
) -> list[Entity]:
    return sort_entities(filter_entities(entities, flt, collection), by, order)


@dataclass(frozen=True, slots=True)
class TaskStats:
    total: int
    pending: int
    in_progress: int
    completed: int
    low: int
    medium: int
    high: int
    high_priority_open: int

    @property
    def completion_rate(self) -> int:
        """Percentage of completed tasks, rounded; 0 for an empty list."""
        if self.total == 0:
            return 0
        return round(self.completed / self.total * 100)


def task_stats(tasks: Sequence[Task]) -> TaskStats:
    by_status = Counter(t.status for t in tasks)
    by_priority = Counter(t.priority for t in tasks)
    return TaskStats(
        total=len(tasks),
        pending=by_status[TaskStatus.PENDING],
        in_progress=by_status[TaskStatus.IN_PROGRESS],
        completed=by_status[TaskStatus.COMPLETED],
        low=by_priority[TaskPriority.LOW],
        medium=by_priority[TaskPriority.MEDIUM],
        high=by_priority[TaskPriority.HIGH],
        high_priority_open=sum(
            1 for t in tasks if t.priority == TaskPriority.HIGH and t.status != TaskStatus.COMPLETED
        ),
    )


def url_domain(url: str) -> str:
    """Hostname without a leading "www."; the raw URL when it doesn't parse."""
    try:
        host = urlsplit(url).hostname
    except ValueError:
        host = None
    if not host:
        return url
    return host.removeprefix("www.")


@dataclass(frozen=True, slots=True)
class BookmarkStats:
    total: int
    domains: dict[str, int]


def bookmark_stats(bookmarks: Sequence[Bookmark]) -> BookmarkStats:
    return BookmarkStats(
        total=len(bookmarks),
        domains=dict(Counter(url_domain(b.url) for b in bookmarks)),
    )

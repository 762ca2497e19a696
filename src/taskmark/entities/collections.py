# src/taskmark/entities/collections.py

"""
Static description of each entity table.

The store and selectors are generic; everything table-specific (decoder,
searchable/sortable/filterable columns) lives here.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from .entity_models import Bookmark, Entity, Row, SortOrder, Task


@dataclass(frozen=True, slots=True)
class Collection:
    name: str
    table: str
    from_row: Callable[[Row], Entity]
    search_fields: tuple[str, ...]
    sort_fields: tuple[str, ...]
    filter_fields: tuple[str, ...]
    default_sort: str = "created_at"
    default_order: SortOrder = SortOrder.DESC

    def check_sort_field(self, field_name: str) -> str:
        if field_name not in self.sort_fields:
            allowed = ", ".join(self.sort_fields)
            raise ValueError(f"Cannot sort {self.name} by {field_name!r} (allowed: {allowed})")
        return field_name


TASKS = Collection(
    name="tasks",
    table="tasks",
    from_row=Task.from_row,
    search_fields=("title", "description"),
    sort_fields=("created_at", "updated_at", "due_date", "title", "priority", "status"),
    filter_fields=("status", "priority"),
)

BOOKMARKS = Collection(
    name="bookmarks",
    table="bookmarks",
    from_row=Bookmark.from_row,
    search_fields=("title", "url"),
    sort_fields=("created_at", "title"),
    filter_fields=(),
)

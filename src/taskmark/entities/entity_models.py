# src/taskmark/entities/entity_models.py

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

Row = dict[str, Any]
# A raw record as the backend returns it (JSON object).


class TaskStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"

    @classmethod
    def from_db(cls, raw: str | None) -> TaskStatus:
        if not raw:
            return cls.PENDING
        try:
            return cls(raw)
        except ValueError:
            return cls.PENDING


class TaskPriority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @classmethod
    def from_db(cls, raw: str | None) -> TaskPriority:
        if not raw:
            return cls.MEDIUM
        try:
            return cls(raw)
        except ValueError:
            return cls.MEDIUM


class SortOrder(StrEnum):
    ASC = "asc"
    DESC = "desc"


def parse_ts(raw: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp as PostgREST/GoTrue emit it. Bad input -> None."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw
    try:
        return datetime.fromisoformat(str(raw))
    except ValueError:
        return None


@dataclass(slots=True)
class User:
    id: str
    email: str
    display_name: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_auth(cls, raw: Row) -> User:
        """Build from a GoTrue user object (display name lives in user_metadata)."""
        meta = raw.get("user_metadata") or {}
        display_name = meta.get("display_name") if isinstance(meta, dict) else None
        return cls(
            id=str(raw["id"]),
            email=str(raw.get("email") or ""),
            display_name=display_name or None,
            created_at=parse_ts(raw.get("created_at")),
        )

    def to_dict(self) -> Row:
        return {
            "id": self.id,
            "email": self.email,
            "user_metadata": {"display_name": self.display_name},
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass(slots=True)
class Session:
    access_token: str
    refresh_token: str | None
    expires_at: float | None
    user: User

    def expires_within(self, seconds: float, *, now_ts: float) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at - now_ts <= seconds


@dataclass(slots=True)
class Task:
    id: str
    user_id: str
    title: str
    status: TaskStatus
    priority: TaskPriority
    created_at: datetime | None
    updated_at: datetime | None
    description: str | None = None
    due_date: datetime | None = None

    @classmethod
    def from_row(cls, row: Row) -> Task:
        return cls(
            id=str(row["id"]),
            user_id=str(row.get("user_id") or ""),
            title=str(row.get("title") or ""),
            status=TaskStatus.from_db(row.get("status")),
            priority=TaskPriority.from_db(row.get("priority")),
            created_at=parse_ts(row.get("created_at")),
            updated_at=parse_ts(row.get("updated_at")),
            description=row.get("description") or None,
            due_date=parse_ts(row.get("due_date")),
        )


@dataclass(slots=True)
class Bookmark:
    id: str
    user_id: str
    title: str
    url: str
    created_at: datetime | None
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Row) -> Bookmark:
        return cls(
            id=str(row["id"]),
            user_id=str(row.get("user_id") or ""),
            title=str(row.get("title") or ""),
            url=str(row.get("url") or ""),
            created_at=parse_ts(row.get("created_at")),
            updated_at=parse_ts(row.get("updated_at")),
        )


Entity = Task | Bookmark


@dataclass(frozen=True, slots=True)
class EntityFilter:
    """Optional predicates; None means "don't filter on this field"."""

    status: TaskStatus | None = None
    priority: TaskPriority | None = None
    search: str | None = None

    @property
    def is_empty(self) -> bool:
        return self.status is None and self.priority is None and not self.search

    def equality_predicates(self) -> dict[str, str]:
        out: dict[str, str] = {}
        if self.status is not None:
            out["status"] = self.status.value
        if self.priority is not None:
            out["priority"] = self.priority.value
        return out


@dataclass(frozen=True, slots=True)
class RowQuery:
    """What the store asks the backend for (owner scoping is mandatory)."""

    owner_id: str
    order_by: str
    ascending: bool
    equals: dict[str, str] = field(default_factory=dict)
    search: str | None = None
    search_fields: tuple[str, ...] = ()

# src/taskmark/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the core.

The stores depend on Protocols instead of the concrete Supabase client.
This keeps the backend swappable and makes testing easier (see tests/fakes.py).
"""

from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Protocol

from ..entities.entity_models import Row, RowQuery, Session, User


class ChangeType(StrEnum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """One row-level change pushed by the backend."""

    type: ChangeType
    table: str
    new: Row | None = None
    old: Row | None = None
    commit_timestamp: str | None = None

    @property
    def row_id(self) -> str | None:
        for rec in (self.new, self.old):
            if rec and rec.get("id") is not None:
                return str(rec["id"])
        return None


class AuthGateway(Protocol):
    """Managed auth service. Raises AuthError / BackendError."""

    async def sign_in_with_password(self, *, email: str, password: str) -> Session: ...

    async def sign_up(
            self,
            *,
            email: str,
            password: str,
            display_name: str | None = None,
    ) -> Session | None: ...

    async def sign_out(self, access_token: str) -> None: ...
    async def get_user(self, access_token: str) -> User: ...
    async def refresh_session(self, refresh_token: str) -> Session: ...
    async def reset_password_for_email(self, email: str) -> None: ...
    async def update_user(self, access_token: str, *, data: dict[str, Any]) -> User: ...


class EntityRepo(Protocol):
    """Row-level access to one backend table, always scoped to an owner."""

    async def select_rows(self, table: str, query: RowQuery, *, access_token: str) -> list[Row]: ...
    async def insert_row(self, table: str, row: Row, *, access_token: str) -> Row: ...

    async def update_row(
            self,
            table: str,
            row_id: str,
            owner_id: str,
            patch: Row,
            *,
            access_token: str,
    ) -> Row | None: ...

    async def delete_row(self, table: str, row_id: str, owner_id: str, *, access_token: str) -> None: ...


class ChangeChannel(Protocol):
    """
    Subscription handle for one table's change feed.

    events() is lazy: nothing is sent to the server until it is iterated, and
    calling it again after the iterator ended restarts the stream.
    close() must be called to release the server-side subscription.
    """

    @property
    def closed(self) -> bool: ...

    def events(self) -> AsyncIterator[ChangeEvent]: ...
    async def set_access_token(self, access_token: str) -> None: ...
    async def close(self) -> None: ...


# Called before every (re)join so a rotated token is picked up.
TokenProvider = Callable[[], Awaitable[str | None]]


class RealtimeFeed(Protocol):
    def channel(
        self,
        table: str,
        *,
        owner_id: str,
        access_token: str,
        token_provider: TokenProvider | None = None,
    ) -> ChangeChannel: ...


class SessionSource(Protocol):
    """What the entity stores need from the auth layer."""

    async def current_session(self) -> Session | None: ...

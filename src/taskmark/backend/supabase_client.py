# src/taskmark/backend/supabase_client.py

from __future__ import annotations

"""
Thin async client for a Supabase project (GoTrue auth + PostgREST tables).

Implements the AuthGateway and EntityRepo ports and hands out realtime
channels (RealtimeFeed). It only speaks the HTTP API: filtering, ordering,
row ownership and token issuing all happen on the server.

Errors:
- auth endpoints rejecting the request -> AuthError
- data endpoints answering 401         -> NotAuthenticatedError
- anything else >= 300 / network       -> BackendError
"""

import logging
import re
import time
from typing import Any

import httpx

from ..core.ports import TokenProvider
from ..entities.entity_models import Row, RowQuery, Session, User
from ..errors import AuthError, BackendError, NotAuthenticatedError
from .realtime import RealtimeChannel, realtime_url

logger = logging.getLogger(__name__)

# PostgREST reserves these inside or=(...) filters.
_RESERVED_FILTER_CHARS = re.compile(r"[,()*\\]")


def _extract_error(response: httpx.Response) -> str:
    """Best-effort human message from a GoTrue/PostgREST error body."""
    try:
        body = response.json()
        if isinstance(body, dict):
            if isinstance(body.get("error"), dict):
                msg = body["error"].get("message")
                if msg:
                    return str(msg)
            msg = (
                body.get("msg")
                or body.get("message")
                or body.get("error_description")
                or body.get("error")
            )
            if msg:
                return str(msg)
    except ValueError:
        pass
    text = (response.text or "").strip()
    if text:
        return f"HTTP {response.status_code}: {text[:300]}"
    return f"HTTP {response.status_code}: request failed"


def _search_clause(term: str, fields: tuple[str, ...]) -> str:
    cleaned = _RESERVED_FILTER_CHARS.sub(" ", term).strip()
    parts = [f"{f}.ilike.*{cleaned}*" for f in fields]
    return f"({','.join(parts)})"


def build_select_params(query: RowQuery) -> list[tuple[str, str]]:
    """PostgREST query string for a RowQuery (owner filter is always present)."""
    params: list[tuple[str, str]] = [
        ("select", "*"),
        ("user_id", f"eq.{query.owner_id}"),
    ]
    for column, value in sorted(query.equals.items()):
        params.append((column, f"eq.{value}"))
    if query.search and query.search_fields:
        params.append(("or", _search_clause(query.search, query.search_fields)))
    direction = "asc" if query.ascending else "desc"
    params.append(("order", f"{query.order_by}.{direction}.nullslast"))
    return params


class SupabaseClient:
    def __init__(
        self,
        url: str,
        anon_key: str,
        *,
        timeout: float = 30.0,
        realtime_heartbeat_seconds: float = 25.0,
        realtime_reconnect_seconds: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        url = (url or "").strip().rstrip("/")
        if not url or not anon_key:
            raise ValueError("Supabase is not configured: set TASKMARK_SUPABASE_URL and TASKMARK_SUPABASE_ANON_KEY")

        self._url = url
        self._anon_key = anon_key
        self._heartbeat_s = realtime_heartbeat_seconds
        self._reconnect_s = realtime_reconnect_seconds
        self._http = httpx.AsyncClient(
            base_url=url,
            headers={"apikey": anon_key},
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    # ---- low-level helpers ----

    @staticmethod
    def _bearer(access_token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"}

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._http.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.warning("%s %s failed: %r", method, path, e)
            raise BackendError(f"Network error: {e.__class__.__name__}") from e

    async def _auth_call(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self._request(method, path, **kwargs)
        if response.status_code >= 500:
            raise BackendError(_extract_error(response), status_code=response.status_code)
        if response.status_code >= 300:
            raise AuthError(_extract_error(response))
        if not response.content:
            return None
        return response.json()

    async def _rest_call(self, method: str, table: str, *, access_token: str, **kwargs: Any) -> Any:
        headers = {**self._bearer(access_token), **kwargs.pop("headers", {})}
        response = await self._request(method, f"/rest/v1/{table}", headers=headers, **kwargs)
        if response.status_code == 401:
            raise NotAuthenticatedError(_extract_error(response))
        if response.status_code >= 300:
            raise BackendError(_extract_error(response), status_code=response.status_code)
        if not response.content:
            return None
        return response.json()

    def _session_from(self, body: Any) -> Session:
        if not isinstance(body, dict) or not body.get("access_token") or not isinstance(body.get("user"), dict):
            raise BackendError("Auth response contained no session")
        expires_at = body.get("expires_at")
        if expires_at is None and body.get("expires_in") is not None:
            expires_at = time.time() + float(body["expires_in"])
        return Session(
            access_token=str(body["access_token"]),
            refresh_token=body.get("refresh_token") or None,
            expires_at=float(expires_at) if expires_at is not None else None,
            user=User.from_auth(body["user"]),
        )

    # ---- AuthGateway ----

    async def sign_in_with_password(self, *, email: str, password: str) -> Session:
        body = await self._auth_call(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "password"},
            json={"email": email.strip(), "password": password},
        )
        return self._session_from(body)

    async def refresh_session(self, refresh_token: str) -> Session:
        body = await self._auth_call(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "refresh_token"},
            json={"refresh_token": refresh_token},
        )
        return self._session_from(body)

    async def sign_up(
        self,
        *,
        email: str,
        password: str,
        display_name: str | None = None,
    ) -> Session | None:
        body = await self._auth_call(
            "POST",
            "/auth/v1/signup",
            json={
                "email": email.strip(),
                "password": password,
                "data": {"display_name": display_name},
            },
        )
        # With email confirmation on, GoTrue answers with the bare user object.
        if isinstance(body, dict) and body.get("access_token"):
            return self._session_from(body)
        return None

    async def sign_out(self, access_token: str) -> None:
        await self._auth_call("POST", "/auth/v1/logout", headers=self._bearer(access_token))

    async def get_user(self, access_token: str) -> User:
        body = await self._auth_call("GET", "/auth/v1/user", headers=self._bearer(access_token))
        if not isinstance(body, dict) or not body.get("id"):
            raise BackendError("Auth response contained no user")
        return User.from_auth(body)

    async def reset_password_for_email(self, email: str) -> None:
        await self._auth_call("POST", "/auth/v1/recover", json={"email": email.strip()})

    async def update_user(self, access_token: str, *, data: dict[str, Any]) -> User:
        body = await self._auth_call(
            "PUT",
            "/auth/v1/user",
            headers=self._bearer(access_token),
            json={"data": data},
        )
        if not isinstance(body, dict) or not body.get("id"):
            raise BackendError("Auth response contained no user")
        return User.from_auth(body)

    # ---- EntityRepo ----

    async def select_rows(self, table: str, query: RowQuery, *, access_token: str) -> list[Row]:
        body = await self._rest_call("GET", table, access_token=access_token, params=build_select_params(query))
        if not isinstance(body, list):
            raise BackendError("Unexpected response format while loading rows.")
        return [r for r in body if isinstance(r, dict)]

    async def insert_row(self, table: str, row: Row, *, access_token: str) -> Row:
        body = await self._rest_call(
            "POST",
            table,
            access_token=access_token,
            headers={"Prefer": "return=representation"},
            json=row,
        )
        if not isinstance(body, list) or not body or not isinstance(body[0], dict):
            raise BackendError("Insert returned no row")
        return body[0]

    async def update_row(
        self,
        table: str,
        row_id: str,
        owner_id: str,
        patch: Row,
        *,
        access_token: str,
    ) -> Row | None:
        body = await self._rest_call(
            "PATCH",
            table,
            access_token=access_token,
            headers={"Prefer": "return=representation"},
            params=[("id", f"eq.{row_id}"), ("user_id", f"eq.{owner_id}")],
            json=patch,
        )
        if isinstance(body, list) and body and isinstance(body[0], dict):
            return body[0]
        return None

    async def delete_row(self, table: str, row_id: str, owner_id: str, *, access_token: str) -> None:
        await self._rest_call(
            "DELETE",
            table,
            access_token=access_token,
            params=[("id", f"eq.{row_id}"), ("user_id", f"eq.{owner_id}")],
        )

    # ---- RealtimeFeed ----

    def channel(
        self,
        table: str,
        *,
        owner_id: str,
        access_token: str,
        token_provider: TokenProvider | None = None,
    ) -> RealtimeChannel:
        return RealtimeChannel(
            url=realtime_url(self._url, self._anon_key),
            table=table,
            owner_id=owner_id,
            access_token=access_token,
            token_provider=token_provider,
            heartbeat_seconds=self._heartbeat_s,
            reconnect_delay_seconds=self._reconnect_s,
        )

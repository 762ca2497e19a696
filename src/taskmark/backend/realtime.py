# src/taskmark/backend/realtime.py

from __future__ import annotations

"""
Realtime change feed (Supabase Realtime, Phoenix channel protocol over websocket).

One RealtimeChannel = one table's postgres_changes subscription, scoped to the
owner. events() is a lazy async iterator: the socket is opened when iteration
starts, closed when it stops, and a fresh call resumes the stream. Dropped
connections are re-established after reconnect_delay_seconds until close().
Every join asks the token provider (when given) for the current access token,
and set_access_token() pushes a rotated token to a live channel.
"""

import asyncio
import contextlib
import itertools
import json
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any
from urllib.parse import urlencode

import websockets
from websockets.exceptions import WebSocketException

from ..core.ports import ChangeEvent, ChangeType, TokenProvider
from ..errors import RealtimeError, TaskmarkError

logger = logging.getLogger(__name__)

PHOENIX_TOPIC = "phoenix"


def realtime_url(base_url: str, api_key: str) -> str:
    """wss://<project>/realtime/v1/websocket?apikey=...&vsn=1.0.0 from the project URL."""
    base = base_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    query = urlencode({"apikey": api_key, "vsn": "1.0.0"})
    return f"{base}/realtime/v1/websocket?{query}"


def channel_topic(table: str) -> str:
    return f"realtime:{table}-changes"


def build_join_message(
    *,
    topic: str,
    table: str,
    owner_id: str | None,
    access_token: str | None,
    ref: str,
    schema: str = "public",
) -> dict[str, Any]:
    change: dict[str, Any] = {"event": "*", "schema": schema, "table": table}
    if owner_id:
        change["filter"] = f"user_id=eq.{owner_id}"
    payload: dict[str, Any] = {
        "config": {
            "broadcast": {"self": False},
            "presence": {"key": ""},
            "postgres_changes": [change],
        },
    }
    if access_token:
        payload["access_token"] = access_token
    return {"topic": topic, "event": "phx_join", "payload": payload, "ref": ref, "join_ref": ref}


def parse_change_message(message: dict[str, Any]) -> ChangeEvent | None:
    """
    Decode a postgres_changes push; anything else (replies, presence, system) -> None.

    Raises RealtimeError on a change message with an unknown type.
    """
    if message.get("event") != "postgres_changes":
        return None
    payload = message.get("payload") or {}
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, dict):
        return None

    raw_type = str(data.get("type") or data.get("eventType") or "").upper()
    try:
        change_type = ChangeType(raw_type)
    except ValueError:
        raise RealtimeError(f"Unknown change type {raw_type!r}") from None

    record = data.get("record")
    old_record = data.get("old_record")
    return ChangeEvent(
        type=change_type,
        table=str(data.get("table") or ""),
        new=record if isinstance(record, dict) and record else None,
        old=old_record if isinstance(old_record, dict) and old_record else None,
        commit_timestamp=data.get("commit_timestamp"),
    )


class RealtimeChannel:
    def __init__(
        self,
        *,
        url: str,
        table: str,
        owner_id: str | None,
        access_token: str | None,
        token_provider: TokenProvider | None = None,
        heartbeat_seconds: float = 25.0,
        reconnect_delay_seconds: float = 5.0,
        connect: Callable[[str], Any] = websockets.connect,
    ) -> None:
        self._url = url
        self._table = table
        self._owner_id = owner_id
        self._access_token = access_token
        self._token_provider = token_provider
        self._heartbeat_s = max(0.01, float(heartbeat_seconds))
        self._reconnect_s = max(0.0, float(reconnect_delay_seconds))
        self._connect = connect

        self._topic = channel_topic(table)
        self._refs = itertools.count(1)
        self._ws: Any = None
        self._join_ref: str | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def table(self) -> str:
        return self._table

    def _next_ref(self) -> str:
        return str(next(self._refs))

    async def _send(self, ws: Any, message: dict[str, Any]) -> None:
        await ws.send(json.dumps(message))

    async def _heartbeat(self, ws: Any) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_s)
            await self._send(ws, {"topic": PHOENIX_TOPIC, "event": "heartbeat", "payload": {}, "ref": self._next_ref()})

    def _handle_raw(self, raw: str | bytes) -> ChangeEvent | None:
        try:
            message = json.loads(raw)
        except ValueError:
            logger.warning("Realtime: non-JSON frame dropped")
            return None
        if not isinstance(message, dict):
            return None

        event = message.get("event")
        if event == "phx_reply" and message.get("ref") == self._join_ref:
            payload = message.get("payload") or {}
            if payload.get("status") != "ok":
                raise RealtimeError(f"Join rejected for {self._topic}: {payload.get('response')!r}")
            logger.debug("Realtime joined %s", self._topic)
            return None
        if event in ("phx_error", "phx_close") and message.get("topic") == self._topic:
            raise RealtimeError(f"Channel {self._topic} closed by server ({event})")

        try:
            return parse_change_message(message)
        except RealtimeError:
            logger.warning("Realtime: undecodable change on %s", self._topic, exc_info=True)
            return None

    async def _current_token(self) -> str | None:
        if self._token_provider is not None:
            try:
                token = await self._token_provider()
            except TaskmarkError as e:
                logger.warning("Realtime %s: token lookup failed: %s", self._topic, e.message)
            else:
                if token:
                    self._access_token = token
        return self._access_token

    async def set_access_token(self, access_token: str) -> None:
        """Use a rotated token from now on; a joined channel gets it right away."""
        self._access_token = access_token
        ws = self._ws
        if ws is None or self._closed:
            return
        with contextlib.suppress(OSError, WebSocketException):
            await self._send(
                ws,
                {
                    "topic": self._topic,
                    "event": "access_token",
                    "payload": {"access_token": access_token},
                    "ref": self._next_ref(),
                },
            )

    async def events(self) -> AsyncIterator[ChangeEvent]:
        while not self._closed:
            try:
                access_token = await self._current_token()
                if self._closed:
                    break
                async with self._connect(self._url) as ws:
                    self._join_ref = self._next_ref()
                    await self._send(
                        ws,
                        build_join_message(
                            topic=self._topic,
                            table=self._table,
                            owner_id=self._owner_id,
                            access_token=access_token,
                            ref=self._join_ref,
                        ),
                    )
                    self._ws = ws
                    heartbeat = asyncio.create_task(self._heartbeat(ws))
                    try:
                        async for raw in ws:
                            change = self._handle_raw(raw)
                            if change is not None:
                                yield change
                    finally:
                        heartbeat.cancel()
                        with contextlib.suppress(asyncio.CancelledError, Exception):
                            await heartbeat
                        self._ws = None
            except (OSError, WebSocketException, RealtimeError) as e:
                if self._closed:
                    break
                logger.warning("Realtime %s disconnected: %r", self._topic, e)

            if self._closed:
                break
            logger.info("Realtime %s reconnecting in %.1fs", self._topic, self._reconnect_s)
            await asyncio.sleep(self._reconnect_s)

    async def close(self) -> None:
        """Leave the channel and close the socket (releases the server-side subscription)."""
        if self._closed:
            return
        self._closed = True
        ws = self._ws
        if ws is None:
            return
        with contextlib.suppress(OSError, WebSocketException):
            await self._send(ws, {"topic": self._topic, "event": "phx_leave", "payload": {}, "ref": self._next_ref()})
        with contextlib.suppress(OSError, WebSocketException):
            await ws.close()

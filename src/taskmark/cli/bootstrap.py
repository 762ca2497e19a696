# src/taskmark/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures local (gitignored) directories exist,
- wires concrete implementations into AppState (Supabase client, auth, stores),
- ties store lifecycles to the session (sign-out empties every cache).
"""

from __future__ import annotations

import contextlib
import logging
from typing import Any

from ..auth.auth_store import AuthEvent, AuthStore
from ..auth.session_file import SessionFile
from ..backend.supabase_client import SupabaseClient
from ..config import get_settings
from ..core.ports import AuthGateway, EntityRepo, RealtimeFeed
from ..core.state import AppState
from ..entities.collections import BOOKMARKS, TASKS
from ..entities.entity_models import User
from ..store.entity_store import EntityStore, FilterMode, InsertPolicy

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.session_path.parent.mkdir(parents=True, exist_ok=True)


def build_app_state(
    settings: Any,
    *,
    gateway: AuthGateway,
    repo: EntityRepo,
    realtime: RealtimeFeed | None,
    backend: Any = None,
) -> AppState:
    """Wire ports into stores. Split out from create_app_state() so tests can inject fakes."""
    auth = AuthStore(gateway, SessionFile(settings.session_path))

    feed = realtime if getattr(settings, "realtime_enabled", True) else None
    insert_policy = InsertPolicy(getattr(settings, "insert_policy", "optimistic"))
    if feed is None:
        insert_policy = InsertPolicy.OPTIMISTIC
    filter_mode = FilterMode(getattr(settings, "filter_mode", "client"))

    def _store(collection) -> EntityStore:
        return EntityStore(
            collection,
            repo,
            auth,
            realtime=feed,
            insert_policy=insert_policy,
            filter_mode=filter_mode,
        )

    state = AppState(
        settings=settings,
        auth=auth,
        tasks=_store(TASKS),
        bookmarks=_store(BOOKMARKS),
        backend=backend,
    )

    async def _on_session_change(event: AuthEvent, user: User | None) -> None:
        if event == AuthEvent.SIGNED_OUT:
            for store in state.stores():
                await store.reset()
        elif event == AuthEvent.TOKEN_REFRESHED and auth.session is not None:
            for store in state.stores():
                await store.update_realtime_token(auth.session.access_token)

    state.unsubscribers.append(auth.on_session_change(_on_session_change))
    logger.debug(
        "AppState wired (insert_policy=%s filter_mode=%s realtime=%s)",
        insert_policy.value,
        filter_mode.value,
        feed is not None,
    )
    return state


def create_app_state(*, settings=None) -> AppState:
    """
    Create AppState from the provided settings.

    Keeping settings injectable makes the app easier to test and avoids hidden global config reads.
    If settings is None, falls back to get_settings().
    """
    if settings is None:
        settings = get_settings()

    _ensure_local_dirs(settings)

    client = SupabaseClient(
        settings.supabase_url,
        settings.supabase_anon_key,
        timeout=settings.http_timeout_seconds,
        realtime_heartbeat_seconds=settings.realtime_heartbeat_seconds,
        realtime_reconnect_seconds=settings.realtime_reconnect_seconds,
    )
    return build_app_state(settings, gateway=client, repo=client, realtime=client, backend=client)


async def activate_session(state: AppState) -> None:
    """Load data for the signed-in user and start realtime sync."""
    if not state.auth.signed_in:
        return
    for store in state.stores():
        await store.fetch()
        if getattr(state.settings, "realtime_enabled", True):
            try:
                await store.subscribe_realtime()
            except Exception:
                logger.warning("Realtime subscribe failed for %s", store.collection.name, exc_info=True)


async def dispose_app_state(state: AppState) -> None:
    """Best-effort teardown (no exceptions should escape)."""
    for unsubscribe in state.unsubscribers:
        with contextlib.suppress(Exception):
            unsubscribe()
    state.unsubscribers.clear()

    for store in state.stores():
        try:
            await store.dispose()
        except Exception:
            logger.debug("Store dispose failed (%s).", store.collection.name, exc_info=True)

    backend = state.backend
    if backend is not None and hasattr(backend, "aclose"):
        try:
            await backend.aclose()
        except Exception:
            logger.debug("Backend close failed.", exc_info=True)

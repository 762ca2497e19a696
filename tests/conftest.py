# tests/conftest.py

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest
import pytest_asyncio

from taskmark.cli.bootstrap import build_app_state, dispose_app_state
from taskmark.entities.collections import TASKS
from taskmark.entities.entity_models import Session, User
from taskmark.store.entity_store import EntityStore, FilterMode, InsertPolicy

from .fakes import ALICE, BOB, PASSWORD, FakeBackend, FakeSessions


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """
    Minimal settings object compatible with bootstrap and AppState.

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated from the developer's environment/.env.
    """
    return SimpleNamespace(
        app_name="taskmark-test",
        log_level="DEBUG",
        supabase_url="https://project.supabase.co",
        supabase_anon_key="anon-key",
        http_timeout_seconds=5.0,
        realtime_enabled=True,
        realtime_heartbeat_seconds=25.0,
        realtime_reconnect_seconds=0.01,
        insert_policy="optimistic",
        filter_mode="client",
        data_dir=tmp_path,
        session_path=tmp_path / "session.json",
    )


@pytest.fixture()
def backend() -> FakeBackend:
    b = FakeBackend()
    b.add_user(ALICE, PASSWORD, display_name="Alice")
    b.add_user(BOB, PASSWORD)
    return b


@pytest.fixture()
def alice(backend: FakeBackend) -> User:
    return backend.accounts[ALICE].user


@pytest.fixture()
def alice_session(backend: FakeBackend) -> Session:
    return backend.issue_session(ALICE)


@pytest_asyncio.fixture()
async def make_store(backend: FakeBackend, alice_session: Session):
    """Factory for stores bound to alice's session (one call = one client session)."""
    created: list[EntityStore] = []

    def _make(
        collection=TASKS,
        *,
        session: Session | None = None,
        realtime: bool = True,
        insert_policy: InsertPolicy = InsertPolicy.OPTIMISTIC,
        filter_mode: FilterMode = FilterMode.CLIENT,
    ) -> EntityStore:
        store = EntityStore(
            collection,
            backend,
            FakeSessions(session or alice_session),
            realtime=backend if realtime else None,
            insert_policy=insert_policy,
            filter_mode=filter_mode,
        )
        created.append(store)
        return store

    yield _make

    for store in created:
        await store.dispose()


@pytest_asyncio.fixture()
async def state(settings: SimpleNamespace, backend: FakeBackend):
    """AppState wired with the fake backend in place of Supabase."""
    app_state = build_app_state(settings, gateway=backend, repo=backend, realtime=backend)
    yield app_state
    await dispose_app_state(app_state)

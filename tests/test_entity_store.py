# tests/test_entity_store.py

from __future__ import annotations

import asyncio

import pytest

from taskmark.core.ports import ChangeEvent, ChangeType
from taskmark.entities.collections import BOOKMARKS, TASKS
from taskmark.entities.entity_models import EntityFilter, SortOrder, Task, TaskPriority, TaskStatus
from taskmark.errors import BackendError, NotAuthenticatedError
from taskmark.store.entity_store import (
    EntityStore,
    FilterMode,
    InsertPolicy,
    merge_delete,
    merge_insert,
    merge_update,
)

from .fakes import ALICE, BOB, FakeChannel, FakeSessions


def _task(task_id: str, title: str = "t") -> Task:
    return Task(
        id=task_id,
        user_id="u1",
        title=title,
        status=TaskStatus.PENDING,
        priority=TaskPriority.MEDIUM,
        created_at=None,
        updated_at=None,
    )


def _reasons(store: EntityStore) -> list[str]:
    seen: list[str] = []
    store.add_listener(lambda _store, reason: seen.append(reason))
    return seen


# ---- merge rules ----


def test_merge_insert_adds_each_id_once() -> None:
    a = _task("a")
    once, changed1 = merge_insert([], a)
    twice, changed2 = merge_insert(once, a)

    assert changed1 is True
    assert changed2 is False
    assert [e.id for e in twice] == ["a"]


def test_merge_update_replaces_known_and_ignores_unknown() -> None:
    entities = [_task("a", "old"), _task("b")]

    updated, changed = merge_update(entities, _task("a", "new"))
    assert changed is True
    assert [e.title for e in updated] == ["new", "t"]
    assert entities[0].title == "old"  # input untouched

    same, changed = merge_update(entities, _task("zzz"))
    assert changed is False
    assert [e.id for e in same] == ["a", "b"]


def test_merge_update_with_identical_record_is_not_a_change() -> None:
    entities = [_task("a", "same")]
    out, changed = merge_update(entities, _task("a", "same"))
    assert changed is False
    assert out == entities


def test_merge_delete_absent_id_is_noop() -> None:
    entities = [_task("a")]
    out, changed = merge_delete(entities, "missing")
    assert changed is False
    assert [e.id for e in out] == ["a"]

    out, changed = merge_delete(out, "a")
    assert changed is True
    assert out == []


# ---- fetch ----


@pytest.mark.asyncio
async def test_fetch_loads_only_own_rows_newest_first(backend, alice, make_store) -> None:
    bob = backend.accounts[BOB].user
    backend.seed("tasks", alice, title="first")
    backend.seed("tasks", bob, title="not mine")
    backend.seed("tasks", alice, title="second")

    store = make_store()
    reasons = _reasons(store)
    await store.fetch()

    assert [t.title for t in store.entities] == ["second", "first"]
    assert store.loading is False
    assert store.error is None
    assert reasons == ["loading", "fetched"]


@pytest.mark.asyncio
async def test_fetch_failure_keeps_cache_and_records_error(backend, alice, make_store) -> None:
    backend.seed("tasks", alice, title="cached")
    store = make_store()
    await store.fetch()

    backend.fail("select_rows", BackendError("relation does not exist", status_code=500))
    await store.fetch()

    assert store.error == "relation does not exist"
    assert store.loading is False
    assert [t.title for t in store.entities] == ["cached"]

    store.clear_error()
    assert store.error is None


@pytest.mark.asyncio
async def test_fetch_without_session_reports_not_authenticated(backend) -> None:
    store = EntityStore(TASKS, backend, FakeSessions(None))
    await store.fetch()
    assert store.error == "User not authenticated"
    assert store.entities == []


@pytest.mark.asyncio
async def test_fetch_skips_malformed_rows(backend, alice, make_store) -> None:
    backend.seed("tasks", alice, title="good")
    backend.tables["tasks"]["broken"] = {
        "user_id": alice.id,
        "title": "no id",
        "created_at": "2026-10-01T08:00:00+00:00",
    }
    store = make_store()
    await store.fetch()
    assert [t.title for t in store.entities] == ["good"]


@pytest.mark.asyncio
async def test_response_after_reset_is_dropped(backend, alice, make_store) -> None:
    backend.seed("tasks", alice, title="from the previous user")
    store = make_store()

    gate = backend.hold("select_rows")
    fetching = asyncio.create_task(store.fetch())
    await asyncio.sleep(0)

    await store.reset()
    gate.set()
    await fetching

    assert store.entities == []
    assert store.loading is False
    assert store.error is None


# ---- mutations ----


@pytest.mark.asyncio
async def test_create_adds_owner_and_merges_once_with_realtime_echo(backend, alice, make_store) -> None:
    store = make_store()
    await store.fetch()
    await store.subscribe_realtime()
    reasons = _reasons(store)

    task = await store.create({"title": "Buy milk", "priority": "high", "status": "pending"})
    await backend.settle()

    assert task.user_id == alice.id
    assert [t.id for t in store.entities] == [task.id]
    assert store.entities[0].priority == TaskPriority.HIGH
    assert reasons == ["inserted"]


@pytest.mark.asyncio
async def test_echo_arriving_before_response_does_not_duplicate(backend, make_store, monkeypatch) -> None:
    store = make_store()
    await store.fetch()
    await store.subscribe_realtime()

    original = backend.insert_row

    async def echo_first(table, row, *, access_token):
        created = await original(table, row, access_token=access_token)
        await backend.settle()
        return created

    monkeypatch.setattr(backend, "insert_row", echo_first)

    task = await store.create({"title": "Race"})
    assert [t.id for t in store.entities] == [task.id]


@pytest.mark.asyncio
async def test_realtime_policy_waits_for_echo(backend, make_store) -> None:
    store = make_store(insert_policy=InsertPolicy.REALTIME)
    await store.fetch()
    await store.subscribe_realtime()

    task = await store.create({"title": "Echo me"})
    assert store.get(task.id) is None

    await backend.settle()
    assert store.get(task.id) is not None
    assert len(store.entities) == 1


@pytest.mark.asyncio
async def test_realtime_policy_reports_own_create_as_local(backend, make_store) -> None:
    store = make_store(insert_policy=InsertPolicy.REALTIME)
    await store.fetch()
    await store.subscribe_realtime()
    reasons = _reasons(store)

    await store.create({"title": "Mine"})
    await backend.settle()

    assert reasons == ["inserted"]


@pytest.mark.asyncio
async def test_identical_update_echo_is_silent(backend, alice, make_store) -> None:
    row = backend.seed("tasks", alice, title="draft")
    store = make_store()
    await store.fetch()
    await store.subscribe_realtime()
    reasons = _reasons(store)

    await store.update(row["id"], {"status": "completed"})
    await backend.settle()

    assert reasons == ["updated"]


def test_realtime_policy_requires_a_feed(backend, alice_session) -> None:
    with pytest.raises(ValueError):
        EntityStore(TASKS, backend, FakeSessions(alice_session), insert_policy=InsertPolicy.REALTIME)


@pytest.mark.asyncio
async def test_create_failure_leaves_cache_untouched(backend, alice, make_store) -> None:
    backend.seed("tasks", alice, title="kept")
    store = make_store()
    await store.fetch()

    backend.fail("insert_row", BackendError("duplicate key value", status_code=409))
    with pytest.raises(BackendError):
        await store.create({"title": "nope"})

    assert [t.title for t in store.entities] == ["kept"]


@pytest.mark.asyncio
async def test_create_requires_session(backend) -> None:
    store = EntityStore(TASKS, backend, FakeSessions(None))
    with pytest.raises(NotAuthenticatedError):
        await store.create({"title": "x"})
    assert backend.tables["tasks"] == {}


@pytest.mark.asyncio
async def test_update_replaces_cached_record(backend, alice, make_store) -> None:
    row = backend.seed("tasks", alice, title="draft", description="old")
    store = make_store()
    await store.fetch()

    updated = await store.update(row["id"], {"status": "completed"})

    assert updated is not None
    assert updated.status == TaskStatus.COMPLETED
    cached = store.get(row["id"])
    assert cached is not None
    assert cached.status == TaskStatus.COMPLETED
    assert cached.description == "old"


@pytest.mark.asyncio
async def test_update_of_uncached_row_does_not_insert_it(backend, alice, make_store) -> None:
    store = make_store()
    await store.fetch()
    row = backend.seed("tasks", alice, title="created elsewhere")

    updated = await store.update(row["id"], {"title": "renamed"})

    assert updated is not None
    assert updated.title == "renamed"
    assert store.entities == []


@pytest.mark.asyncio
async def test_update_missing_row_returns_none(make_store) -> None:
    store = make_store()
    await store.fetch()
    assert await store.update("does-not-exist", {"title": "x"}) is None


@pytest.mark.asyncio
async def test_delete_removes_and_absent_delete_is_noop(backend, alice, make_store) -> None:
    row = backend.seed("tasks", alice, title="bye")
    store = make_store()
    await store.fetch()
    reasons = _reasons(store)

    await store.delete(row["id"])
    await store.delete(row["id"])

    assert store.entities == []
    assert reasons == ["deleted"]


# ---- realtime ----


@pytest.mark.asyncio
async def test_two_sessions_converge_through_realtime(backend, make_store) -> None:
    first = make_store()
    second = make_store(session=backend.issue_session(ALICE))
    for s in (first, second):
        await s.fetch()
        await s.subscribe_realtime()
    second_reasons = _reasons(second)

    task = await first.create({"title": "Shared"})
    await backend.settle()
    assert [t.id for t in first.entities] == [task.id]
    assert [t.id for t in second.entities] == [task.id]

    await first.update(task.id, {"title": "Shared and renamed"})
    await backend.settle()
    assert second.get(task.id).title == "Shared and renamed"

    await second.delete(task.id)
    await backend.settle()
    assert first.entities == []
    assert second.entities == []

    assert second_reasons == ["realtime-insert", "realtime-update", "deleted"]


@pytest.mark.asyncio
async def test_other_users_changes_are_not_delivered(backend, make_store) -> None:
    alice_store = make_store()
    bob_store = make_store(session=backend.issue_session(BOB))
    for s in (alice_store, bob_store):
        await s.fetch()
        await s.subscribe_realtime()

    await alice_store.create({"title": "private"})
    await backend.settle()

    assert bob_store.entities == []


@pytest.mark.asyncio
async def test_apply_change_ignores_noise(backend, alice, make_store) -> None:
    store = make_store()
    await store.fetch()
    reasons = _reasons(store)

    events = [
        ChangeEvent(type=ChangeType.DELETE, table="tasks", old={"id": "never-seen"}),
        ChangeEvent(type=ChangeType.UPDATE, table="tasks", new={"id": "never-seen", "user_id": alice.id}),
        ChangeEvent(type=ChangeType.INSERT, table="bookmarks", new={"id": "b1", "user_id": alice.id}),
        ChangeEvent(type=ChangeType.INSERT, table="tasks", new={"title": "no id"}),
        ChangeEvent(type=ChangeType.INSERT, table="tasks", new={"id": "x1", "user_id": "someone-else"}),
        ChangeEvent(type=ChangeType.INSERT, table="tasks", new=None),
    ]
    assert [store.apply_change(ev) for ev in events] == [False] * len(events)
    assert store.entities == []
    assert reasons == []


@pytest.mark.asyncio
async def test_realtime_insert_is_idempotent(backend, alice, make_store) -> None:
    store = make_store()
    await store.fetch()
    row = {"id": "t-1", "user_id": alice.id, "title": "once", "created_at": "2026-10-02T10:00:00+00:00"}
    event = ChangeEvent(type=ChangeType.INSERT, table="tasks", new=row)

    assert store.apply_change(event) is True
    assert store.apply_change(event) is False
    assert [t.id for t in store.entities] == ["t-1"]


@pytest.mark.asyncio
async def test_unsubscribe_closes_channel(backend, make_store) -> None:
    store = make_store()
    await store.subscribe_realtime()
    await store.subscribe_realtime()  # already open

    assert store.realtime_active
    assert len(backend.channels) == 1

    await store.unsubscribe_realtime()
    assert not store.realtime_active
    assert backend.channels[0].closed


@pytest.mark.asyncio
async def test_subscribe_without_feed_is_noop(backend, make_store) -> None:
    store = make_store(realtime=False)
    await store.subscribe_realtime()
    assert not store.realtime_active
    assert backend.channels == []


@pytest.mark.asyncio
async def test_ended_feed_marks_realtime_inactive_and_allows_resubscribe(backend, make_store) -> None:
    store = make_store()
    await store.subscribe_realtime()
    consumer = store._consumer

    await backend.channels[0].close()
    await asyncio.wait_for(consumer, timeout=2.0)

    assert not store.realtime_active
    await store.subscribe_realtime()
    assert store.realtime_active
    assert len(backend.channels) == 2


class _BrokenChannel(FakeChannel):
    async def events(self):
        raise RuntimeError("socket exploded")
        yield  # pragma: no cover


class _BrokenFeed:
    def channel(self, table, *, owner_id, access_token, token_provider=None):
        return _BrokenChannel(table, owner_id, access_token, token_provider)


@pytest.mark.asyncio
async def test_crashed_feed_marks_realtime_inactive(backend, alice_session) -> None:
    store = EntityStore(TASKS, backend, FakeSessions(alice_session), realtime=_BrokenFeed())
    await store.subscribe_realtime()
    consumer = store._consumer

    await asyncio.wait_for(consumer, timeout=2.0)

    assert not store.realtime_active
    await store.dispose()


@pytest.mark.asyncio
async def test_subscribe_replaces_channel_of_previous_user(backend) -> None:
    sessions = FakeSessions(backend.issue_session(ALICE))
    store = EntityStore(TASKS, backend, sessions, realtime=backend)
    await store.subscribe_realtime()

    bob_session = backend.issue_session(BOB)
    sessions.session = bob_session
    await store.subscribe_realtime()

    first, second = backend.channels
    assert first.closed
    assert second.owner_id == bob_session.user.id
    assert second.access_token == bob_session.access_token
    await store.dispose()


@pytest.mark.asyncio
async def test_channel_asks_for_current_token(backend) -> None:
    sessions = FakeSessions(backend.issue_session(ALICE))
    store = EntityStore(TASKS, backend, sessions, realtime=backend)
    await store.subscribe_realtime()
    channel = backend.channels[0]

    rotated = backend.issue_session(ALICE)
    sessions.session = rotated
    assert await channel.token_provider() == rotated.access_token

    await store.update_realtime_token(rotated.access_token)
    assert channel.pushed_tokens == [rotated.access_token]

    sessions.session = backend.issue_session(BOB)
    assert await channel.token_provider() is None
    await store.dispose()


# ---- filter / sort ----


@pytest.mark.asyncio
async def test_client_filter_does_not_refetch(backend, alice, make_store) -> None:
    backend.seed("tasks", alice, title="Write report", status="completed")
    backend.seed("tasks", alice, title="Call plumber", description="About the REPORT leak")
    backend.seed("tasks", alice, title="Walk", priority="high")
    store = make_store()
    await store.fetch()
    calls_before = len(backend.calls)

    await store.set_filter(EntityFilter(search="report"))
    assert sorted(t.title for t in store.visible()) == ["Call plumber", "Write report"]

    await store.set_filter(EntityFilter(search="report", status=TaskStatus.COMPLETED))
    assert [t.title for t in store.visible()] == ["Write report"]

    assert len(backend.calls) == calls_before
    assert len(store.entities) == 3


@pytest.mark.asyncio
async def test_server_filter_refetches_with_predicates(backend, alice, make_store) -> None:
    backend.seed("tasks", alice, title="Low", priority="low")
    backend.seed("tasks", alice, title="High", priority="high")
    store = make_store(filter_mode=FilterMode.SERVER)
    await store.fetch()

    await store.set_filter(EntityFilter(priority=TaskPriority.HIGH))

    assert [t.title for t in store.entities] == ["High"]
    _, query = backend.calls[-1]
    assert query.equals == {"priority": "high"}


@pytest.mark.asyncio
async def test_bookmarks_reject_task_only_filters(make_store) -> None:
    store = make_store(BOOKMARKS)
    with pytest.raises(ValueError):
        await store.set_filter(EntityFilter(status=TaskStatus.PENDING))


@pytest.mark.asyncio
async def test_set_sorting_refetches_in_new_order(backend, alice, make_store) -> None:
    for title in ("banana", "Apple", "cherry"):
        backend.seed("bookmarks", alice, title=title, url=f"https://{title.lower()}.example")
    store = make_store(BOOKMARKS)
    await store.fetch()

    await store.set_sorting("title", SortOrder.ASC)

    _, query = backend.calls[-1]
    assert query.order_by == "title"
    assert query.ascending is True
    assert [b.title for b in store.visible()] == ["Apple", "banana", "cherry"]

    with pytest.raises(ValueError):
        await store.set_sorting("url")


# ---- lifecycle ----


@pytest.mark.asyncio
async def test_clear_resets_everything(backend, alice, make_store) -> None:
    backend.seed("tasks", alice, title="x")
    store = make_store()
    await store.fetch()
    await store.set_filter(EntityFilter(status=TaskStatus.COMPLETED))
    await store.set_sorting("title", SortOrder.ASC)
    reasons = _reasons(store)

    store.clear()

    assert store.entities == []
    assert store.filter.is_empty
    assert (store.sort_by, store.sort_order) == ("created_at", SortOrder.DESC)
    assert reasons == ["cleared"]


@pytest.mark.asyncio
async def test_disposed_store_rejects_actions(backend, make_store) -> None:
    store = make_store()
    await store.subscribe_realtime()
    await store.dispose()

    assert store.disposed
    assert backend.channels[0].closed
    with pytest.raises(RuntimeError):
        await store.fetch()


# ---- end-to-end scenarios ----


@pytest.mark.asyncio
async def test_buy_milk_lifecycle(backend, make_store) -> None:
    store = make_store()
    await store.fetch()

    task = await store.create({"title": "Buy milk", "priority": "low", "status": "pending"})
    assert len(store.entities) == 1
    assert task.id and task.created_at is not None

    done = await store.update(task.id, {"status": "completed"})
    assert done.id == task.id
    assert [t.status for t in store.entities] == [TaskStatus.COMPLETED]

    await store.delete(task.id)
    assert store.get(task.id) is None
    assert len(store.entities) == 0


@pytest.mark.asyncio
async def test_bookmark_created_in_one_session_appears_once_in_another(backend, make_store) -> None:
    first = make_store(BOOKMARKS)
    second = make_store(BOOKMARKS, session=backend.issue_session(ALICE))
    for s in (first, second):
        await s.fetch()
        await s.subscribe_realtime()

    created = await first.create({"title": "Docs", "url": "https://docs.python.org/3/"})
    await backend.settle()

    assert [b.id for b in second.entities] == [created.id]
    assert second.entities[0].url == "https://docs.python.org/3/"

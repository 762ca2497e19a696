# src/taskmark/store/entity_store.py

from __future__ import annotations

"""
Client state store for one entity collection (tasks or bookmarks).

Holds the cache plus loading/error/filter/sort state, issues backend calls
through injected ports, and reconciles results and realtime pushes.

Reconciliation rules (every path goes through them, so duplicates are
impossible regardless of which of "direct response" / "realtime echo" lands
first):
- insert: add only if the ID is absent
- update: replace the matching record wholesale; unknown IDs and identical records are ignored
- delete: remove by ID if present; absent IDs are a no-op

Responses that arrive after reset()/dispose() are dropped (epoch check).
"""

import asyncio
import contextlib
import logging
from collections.abc import Callable, Sequence
from enum import StrEnum

from ..core.ports import ChangeChannel, ChangeEvent, ChangeType, EntityRepo, RealtimeFeed, SessionSource
from ..entities.collections import Collection
from ..entities.entity_models import Entity, EntityFilter, Row, RowQuery, Session, SortOrder
from ..errors import NotAuthenticatedError, TaskmarkError
from .selectors import sort_entities, visible_entities

logger = logging.getLogger(__name__)

StoreListener = Callable[["EntityStore", str], None]


class InsertPolicy(StrEnum):
    OPTIMISTIC = "optimistic"  # merge the insert response into the cache right away
    REALTIME = "realtime"  # skip local insertion; the realtime INSERT echo adds the row


class FilterMode(StrEnum):
    CLIENT = "client"  # selectors filter the cached rows
    SERVER = "server"  # filter is part of the query; changing it re-fetches


def merge_insert(entities: Sequence[Entity], entity: Entity) -> tuple[list[Entity], bool]:
    if any(e.id == entity.id for e in entities):
        return list(entities), False
    return [*entities, entity], True


def merge_update(entities: Sequence[Entity], entity: Entity) -> tuple[list[Entity], bool]:
    out = list(entities)
    for i, e in enumerate(out):
        if e.id == entity.id:
            if e == entity:
                return out, False
            out[i] = entity
            return out, True
    return out, False


def merge_delete(entities: Sequence[Entity], entity_id: str) -> tuple[list[Entity], bool]:
    out = [e for e in entities if e.id != entity_id]
    return out, len(out) != len(entities)


class EntityStore:
    def __init__(
        self,
        collection: Collection,
        repo: EntityRepo,
        sessions: SessionSource,
        *,
        realtime: RealtimeFeed | None = None,
        insert_policy: InsertPolicy = InsertPolicy.OPTIMISTIC,
        filter_mode: FilterMode = FilterMode.CLIENT,
    ) -> None:
        insert_policy = InsertPolicy(insert_policy)
        if insert_policy == InsertPolicy.REALTIME and realtime is None:
            raise ValueError("realtime insert policy requires a realtime feed")

        self.collection = collection
        self.insert_policy = insert_policy
        self.filter_mode = FilterMode(filter_mode)

        self.entities: list[Entity] = []
        self.loading = False
        self.error: str | None = None
        self.filter = EntityFilter()
        self.sort_by = collection.default_sort
        self.sort_order = collection.default_order

        self._repo = repo
        self._sessions = sessions
        self._realtime = realtime

        self._owner_id: str | None = None
        self._channel: ChangeChannel | None = None
        self._channel_owner: str | None = None
        self._consumer: asyncio.Task[None] | None = None
        self._listeners: list[StoreListener] = []
        # IDs created here under the realtime policy whose INSERT echo has not arrived yet
        self._awaiting_echo: set[str] = set()
        self._epoch = 0
        self._disposed = False

    # ---- views ----

    @property
    def realtime_active(self) -> bool:
        return self._channel is not None

    @property
    def disposed(self) -> bool:
        return self._disposed

    def visible(self) -> list[Entity]:
        """Filtered + sorted view of the cache (what the UI shows)."""
        return visible_entities(self.entities, self.filter, self.collection, self.sort_by, self.sort_order)

    def get(self, entity_id: str) -> Entity | None:
        for e in self.entities:
            if e.id == entity_id:
                return e
        return None

    def add_listener(self, listener: StoreListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return _remove

    # ---- internals ----

    def _notify(self, reason: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(self, reason)
            except Exception:
                logger.exception("Store listener failed (%s, reason=%s)", self.collection.name, reason)

    def _check_alive(self) -> None:
        if self._disposed:
            raise RuntimeError(f"{self.collection.name} store is disposed")

    def _is_stale(self, epoch: int) -> bool:
        return self._disposed or epoch != self._epoch

    async def _require_session(self) -> Session:
        session = await self._sessions.current_session()
        if session is None:
            raise NotAuthenticatedError()
        self._owner_id = session.user.id
        return session

    def _decode(self, row: Row) -> Entity:
        return self.collection.from_row(row)

    def _decode_rows(self, rows: list[Row]) -> list[Entity]:
        out: list[Entity] = []
        for row in rows:
            try:
                out.append(self._decode(row))
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed %s row: %r", self.collection.name, row)
        return out

    def _build_query(self, owner_id: str) -> RowQuery:
        ascending = self.sort_order == SortOrder.ASC
        if self.filter_mode == FilterMode.CLIENT:
            return RowQuery(owner_id=owner_id, order_by=self.sort_by, ascending=ascending)
        return RowQuery(
            owner_id=owner_id,
            order_by=self.sort_by,
            ascending=ascending,
            equals=self.filter.equality_predicates(),
            search=self.filter.search or None,
            search_fields=self.collection.search_fields,
        )

    def _apply_insert(self, entity: Entity, *, reason: str) -> bool:
        merged, changed = merge_insert(self.entities, entity)
        if changed:
            self.entities = sort_entities(merged, self.sort_by, self.sort_order)
            self._notify(reason)
        return changed

    def _apply_update(self, entity: Entity, *, reason: str) -> bool:
        merged, changed = merge_update(self.entities, entity)
        if changed:
            self.entities = merged
            self._notify(reason)
        return changed

    def _apply_delete(self, entity_id: str, *, reason: str) -> bool:
        merged, changed = merge_delete(self.entities, entity_id)
        if changed:
            self.entities = merged
            self._notify(reason)
        return changed

    # ---- actions ----

    async def fetch(self) -> None:
        """
        Replace the cache with the server's current row set.

        On failure the error is recorded and the previous cache is kept;
        retrying is up to the user (/refresh).
        """
        self._check_alive()
        epoch = self._epoch

        self.loading = True
        self.error = None
        self._notify("loading")

        try:
            session = await self._require_session()
            rows = await self._repo.select_rows(
                self.collection.table,
                self._build_query(session.user.id),
                access_token=session.access_token,
            )
        except Exception as e:
            if self._is_stale(epoch):
                logger.debug("Dropping failed %s fetch after reset", self.collection.name)
                return
            if isinstance(e, TaskmarkError):
                message = e.message
                logger.warning("Fetch %s failed: %s", self.collection.name, message)
            else:
                message = f"Failed to fetch {self.collection.name}"
                logger.exception("Fetch %s crashed", self.collection.name)
            self.loading = False
            self.error = message
            self._notify("error")
            return

        if self._is_stale(epoch):
            logger.debug("Dropping stale %s fetch result (%d rows)", self.collection.name, len(rows))
            return

        self.entities = self._decode_rows(rows)
        self.loading = False
        self.error = None
        logger.info("Fetched %d %s", len(self.entities), self.collection.name)
        self._notify("fetched")

    async def create(self, data: Row) -> Entity:
        """
        Insert a new row (already validated by the caller) owned by the current user.

        Raises AuthError/BackendError; the cache is untouched on failure.
        """
        self._check_alive()
        epoch = self._epoch
        session = await self._require_session()

        row = {**data, "user_id": session.user.id}
        created = await self._repo.insert_row(self.collection.table, row, access_token=session.access_token)
        entity = self._decode(created)

        if self._is_stale(epoch):
            return entity

        if self.insert_policy == InsertPolicy.OPTIMISTIC:
            self._apply_insert(entity, reason="inserted")
        elif self.get(entity.id) is None:
            self._awaiting_echo.add(entity.id)
            logger.debug("Created %s id=%s; waiting for realtime echo", self.collection.name, entity.id)

        logger.info("Created %s id=%s", self.collection.name, entity.id)
        return entity

    async def update(self, entity_id: str, patch: Row) -> Entity | None:
        """
        Partial update scoped by ID and owner.

        Returns the updated entity, or None when the backend has no such row.
        IDs missing from the cache are not inserted.
        """
        self._check_alive()
        epoch = self._epoch
        session = await self._require_session()

        row = await self._repo.update_row(
            self.collection.table,
            entity_id,
            session.user.id,
            dict(patch),
            access_token=session.access_token,
        )
        if row is None:
            logger.info("Update %s id=%s matched no row", self.collection.name, entity_id)
            return None

        entity = self._decode(row)
        if not self._is_stale(epoch):
            self._apply_update(entity, reason="updated")
        return entity

    async def delete(self, entity_id: str) -> None:
        self._check_alive()
        epoch = self._epoch
        session = await self._require_session()

        await self._repo.delete_row(
            self.collection.table,
            entity_id,
            session.user.id,
            access_token=session.access_token,
        )
        if not self._is_stale(epoch):
            self._apply_delete(entity_id, reason="deleted")
        logger.info("Deleted %s id=%s", self.collection.name, entity_id)

    async def set_filter(self, flt: EntityFilter) -> None:
        self._check_alive()
        for name in ("status", "priority"):
            if getattr(flt, name) is not None and name not in self.collection.filter_fields:
                raise ValueError(f"{self.collection.name} cannot be filtered by {name}")

        self.filter = flt
        self._notify("filter")
        if self.filter_mode == FilterMode.SERVER:
            await self.fetch()

    async def set_sorting(self, by: str, order: SortOrder | str = SortOrder.DESC) -> None:
        """Change the ordering and re-fetch so the server returns rows in that order."""
        self._check_alive()
        self.sort_by = self.collection.check_sort_field(by)
        self.sort_order = SortOrder(order)
        self.entities = sort_entities(self.entities, self.sort_by, self.sort_order)
        self._notify("sort")
        await self.fetch()

    def clear_error(self) -> None:
        self.error = None
        self._notify("error")

    # ---- realtime ----

    def apply_change(self, event: ChangeEvent) -> bool:
        """
        Merge one pushed change into the cache. Idempotent; returns whether the cache changed.

        Bad payloads are logged and dropped: the next full fetch repairs the cache.
        """
        if self._disposed or event.table != self.collection.table:
            return False

        if event.type == ChangeType.DELETE:
            entity_id = event.row_id
            if entity_id is None:
                logger.warning("Realtime DELETE without id on %s", self.collection.table)
                return False
            return self._apply_delete(entity_id, reason="realtime-delete")

        if not event.new:
            logger.warning("Realtime %s without record on %s", event.type.value, self.collection.table)
            return False
        try:
            entity = self._decode(event.new)
        except (KeyError, TypeError, ValueError):
            logger.warning("Malformed realtime %s row on %s: %r", event.type.value, self.collection.table, event.new)
            return False

        if self._owner_id is not None and entity.user_id and entity.user_id != self._owner_id:
            logger.debug("Ignoring realtime row owned by another user id=%s", entity.id)
            return False

        if event.type == ChangeType.INSERT:
            if entity.id in self._awaiting_echo:
                self._awaiting_echo.discard(entity.id)
                return self._apply_insert(entity, reason="inserted")
            return self._apply_insert(entity, reason="realtime-insert")
        return self._apply_update(entity, reason="realtime-update")

    async def subscribe_realtime(self) -> None:
        """
        Open the change channel for this collection.

        No-op without a feed or when a channel for the current user is already open;
        a channel left over from another user is replaced.
        """
        self._check_alive()
        if self._realtime is None:
            return

        session = await self._require_session()
        owner_id = session.user.id
        if self._channel is not None:
            if self._channel_owner == owner_id:
                return
            logger.info("Realtime channel for %s belongs to another user; reopening", self.collection.table)
            await self.unsubscribe_realtime()

        channel = self._realtime.channel(
            self.collection.table,
            owner_id=owner_id,
            access_token=session.access_token,
            token_provider=self._realtime_token,
        )
        self._channel = channel
        self._channel_owner = owner_id
        self._consumer = asyncio.create_task(
            self._consume(channel),
            name=f"realtime-{self.collection.table}",
        )
        logger.info("Realtime subscribed: %s", self.collection.table)

    async def _realtime_token(self) -> str | None:
        session = await self._sessions.current_session()
        if session is None or session.user.id != self._channel_owner:
            return None
        return session.access_token

    async def update_realtime_token(self, access_token: str) -> None:
        """Hand a rotated access token to the open channel."""
        channel = self._channel
        if channel is None:
            return
        try:
            await channel.set_access_token(access_token)
        except Exception:
            logger.warning("Realtime token update failed for %s", self.collection.table, exc_info=True)

    async def _consume(self, channel: ChangeChannel) -> None:
        try:
            async for event in channel.events():
                self.apply_change(event)
            logger.info("Realtime feed for %s ended", self.collection.table)
        except asyncio.CancelledError:
            raise
        except Exception:
            # Delivery problems are never user-facing; the next fetch converges the cache.
            logger.warning("Realtime feed for %s stopped", self.collection.table, exc_info=True)
        finally:
            if self._channel is channel:
                self._channel = None
                self._channel_owner = None
                self._consumer = None

    async def unsubscribe_realtime(self) -> None:
        channel, consumer = self._channel, self._consumer
        self._channel = None
        self._channel_owner = None
        self._consumer = None

        # Close first so the channel can say goodbye to the server, then stop the consumer.
        if channel is not None:
            try:
                await channel.close()
            except Exception:
                logger.warning("Realtime channel close failed for %s", self.collection.table, exc_info=True)
            logger.info("Realtime unsubscribed: %s", self.collection.table)

        if consumer is not None:
            consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await consumer

    # ---- lifecycle ----

    def clear(self) -> None:
        """Forget everything user-specific. In-flight responses from before this call are dropped."""
        self._epoch += 1
        self._owner_id = None
        self._awaiting_echo.clear()
        self.entities = []
        self.loading = False
        self.error = None
        self.filter = EntityFilter()
        self.sort_by = self.collection.default_sort
        self.sort_order = self.collection.default_order
        self._notify("cleared")

    async def reset(self) -> None:
        await self.unsubscribe_realtime()
        self.clear()

    async def dispose(self) -> None:
        if self._disposed:
            return
        await self.reset()
        self._disposed = True
        self._listeners.clear()

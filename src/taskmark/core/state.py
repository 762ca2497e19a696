# src/taskmark/core/state.py

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from ..auth.auth_store import AuthStore
from ..store.entity_store import EntityStore


@dataclass
class AppState:
    """
    Everything the UI needs, built once by cli.bootstrap and passed around explicitly.

    There is no module-level store: create with create_app_state(), tear down
    with dispose_app_state().
    """

    settings: Any
    auth: AuthStore
    tasks: EntityStore
    bookmarks: EntityStore

    # Closed on dispose (the HTTP client); None in tests.
    backend: Any = None
    # Unsubscribe callables registered during wiring.
    unsubscribers: list[Any] = field(default_factory=list)

    def stores(self) -> list[EntityStore]:
        return [self.tasks, self.bookmarks]

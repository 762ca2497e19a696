# src/taskmark/connectors/console_connector.py

from __future__ import annotations

import asyncio
import logging
import sys
from datetime import datetime

from ..cli.commands import registry as command_registry
from ..core.state import AppState
from ..store.entity_store import EntityStore

logger = logging.getLogger(__name__)

EXIT_COMMANDS = ("/exit", "/quit")

_REALTIME_VERBS = {
    "realtime-insert": "added",
    "realtime-update": "changed",
    "realtime-delete": "removed",
}


def _ts_local() -> str:
    return datetime.now().astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _rewrite_prev_line(line: str) -> None:
    """
    Replace the last terminal line with `line`.
    Best-effort: if not a TTY, just print a new line.
    """
    try:
        if sys.stdout.isatty():
            sys.stdout.write("\033[1A\033[2K\r")
            sys.stdout.write(line + "\n")
            sys.stdout.flush()
        else:
            print(line)
    except OSError:
        print(line)


def _print_ts(text: str) -> None:
    print(f"[{_ts_local()}] {text}", flush=True)


def _watch_realtime(state: AppState) -> list:
    """Print a one-liner whenever another session changes our data."""

    def _on_change(store: EntityStore, reason: str) -> None:
        verb = _REALTIME_VERBS.get(reason)
        if verb is None:
            return
        noun = store.collection.name.rstrip("s")
        _print_ts(f"[SYNC] A {noun} was {verb} elsewhere ({len(store.entities)} {store.collection.name} now).")

    return [store.add_listener(_on_change) for store in state.stores()]


async def run_console_loop(state: AppState) -> None:
    user = state.auth.user
    logger.info("Console connector started (user=%s).", user.email if user else None)
    _print_ts("[CONSOLE] Use /help for commands. Use /exit to quit.")
    if user is None:
        if state.auth.error:
            _print_ts(f"[AUTH] {state.auth.error}")
        _print_ts("[AUTH] Not signed in. Use /login <email> <password> or /signup.")
    else:
        _print_ts(f"[AUTH] Signed in as {user.email}.")

    unsubscribers = _watch_realtime(state)

    try:
        while True:
            try:
                user_input = (await asyncio.to_thread(input, ">>> ")).strip()
                _rewrite_prev_line(f"[{_ts_local()}] >>> {user_input}")
            except EOFError:
                logger.info("Console EOF received, exiting.")
                break
            except KeyboardInterrupt:
                logger.info("Console KeyboardInterrupt, exiting.")
                print()
                break

            if not user_input:
                continue

            if user_input.lower() in EXIT_COMMANDS:
                logger.info("Console exit command received.")
                break

            try:
                reply = await command_registry.handle(state, user_input, emit=_print_ts)
            except Exception:
                logger.exception("Command handler crashed.")
                reply = "Internal error while handling a command."

            if reply is None:
                reply = "Commands start with '/'. Use /help to list them."
            _print_ts(reply)
    finally:
        for unsubscribe in unsubscribers:
            unsubscribe()

    logger.info("Console connector finished.")

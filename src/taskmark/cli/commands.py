# src/taskmark/cli/commands.py

from __future__ import annotations

import inspect
import logging
import shlex
from collections.abc import Awaitable, Callable
from typing import Any, cast

from ..cli.bootstrap import activate_session
from ..core.state import AppState
from ..entities.entity_models import (
    Bookmark,
    Entity,
    EntityFilter,
    SortOrder,
    Task,
    TaskPriority,
    TaskStatus,
)
from ..errors import AuthError, BackendError, FormValidationError, TaskmarkError
from ..forms import (
    BookmarkForm,
    LoginForm,
    ProfileForm,
    ResetPasswordForm,
    SignupForm,
    TaskForm,
    TaskPatchForm,
    validate_form,
)
from ..store.entity_store import EntityStore
from ..store.selectors import bookmark_stats, task_stats, url_domain

CommandEmitter = Callable[[str], None]
CommandResult = str | Awaitable[str]
CommandHandler2 = Callable[[AppState, list[str]], CommandResult]
CommandHandler3 = Callable[[AppState, list[str], CommandEmitter | None], CommandResult]
CommandHandler = CommandHandler2 | CommandHandler3

logger = logging.getLogger(__name__)


class CommandRegistry:
    """Slash-command registry used by the console connector (/help, /task, ...)."""

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._help: dict[str, str] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        help_text: str,
        aliases: list[str] | None = None,
    ) -> None:
        aliases = aliases or []
        key = name.lower()
        self._handlers[key] = handler
        self._help[key] = help_text
        for alias in aliases:
            self._handlers[alias.lower()] = handler

    async def handle(
        self,
        state: AppState,
        line: str,
        emit: CommandEmitter | None = None,
    ) -> str | None:
        """
        Handle a string like "/command args".
        Returns a reply string or None if not a command.
        """
        if not line.startswith("/"):
            return None

        try:
            parts = shlex.split(line[1:])
        except ValueError as e:
            return f"Could not parse command: {e}"
        if not parts:
            return "Empty command. Use /help to list available commands."

        name = parts[0].lower()
        args = parts[1:]

        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown command: /{name}. Use /help to list available commands."

        try:
            nparams = len(inspect.signature(handler).parameters)
        except (TypeError, ValueError):
            nparams = 3

        if nparams >= 3:
            result = cast(CommandHandler3, handler)(state, args, emit)
        else:
            result = cast(CommandHandler2, handler)(state, args)

        if inspect.isawaitable(result):
            return await result
        return result

    def build_help(self) -> str:
        lines = ["Available commands:"]
        for name, help_text in self._help.items():
            lines.append(f"  /{name} - {help_text}")
        return "\n".join(lines)


registry = CommandRegistry()


# ---- helpers ----


def split_kv(args: list[str]) -> tuple[list[str], dict[str, str]]:
    """Separate "key=value" tokens from positional words."""
    words: list[str] = []
    kv: dict[str, str] = {}
    for a in args:
        key, sep, value = a.partition("=")
        if sep and key and key.isidentifier():
            kv[key.lower()] = value
        else:
            words.append(a)
    return words, kv


def resolve_id(store: EntityStore, token: str) -> str:
    """Exact ID or a unique prefix of a cached ID."""
    if store.get(token) is not None:
        return token
    hits = [e.id for e in store.entities if e.id.startswith(token)]
    if len(hits) == 1:
        return hits[0]
    noun = store.collection.name.rstrip("s")
    if not hits:
        raise ValueError(f"No {noun} matches {token!r}.")
    raise ValueError(f"{token!r} is ambiguous ({len(hits)} {store.collection.name} match).")


def _fmt_date(value) -> str:
    return value.strftime("%Y-%m-%d") if value else "-"


def format_task(t: Task) -> str:
    due = f" (due {_fmt_date(t.due_date)})" if t.due_date else ""
    line = f"{t.id[:8]}  [{t.status.value}/{t.priority.value}] {t.title}{due}"
    if t.description:
        desc = t.description if len(t.description) <= 60 else t.description[:57] + "..."
        line += f"\n          {desc}"
    return line


def format_bookmark(b: Bookmark) -> str:
    return f"{b.id[:8]}  {b.title}  <{url_domain(b.url)}>  {b.url}  (added {_fmt_date(b.created_at)})"


def format_entity(e: Entity) -> str:
    if isinstance(e, Task):
        return format_task(e)
    return format_bookmark(e)


def describe_error(e: TaskmarkError) -> str:
    """One prefix per error family so the user can tell local and server rejections apart."""
    if isinstance(e, FormValidationError):
        return f"Invalid input: {e.message}"
    if isinstance(e, AuthError):
        return f"Auth error: {e.message}"
    if isinstance(e, BackendError):
        return f"Server rejected the request: {e.message}"
    return e.message


def render_list(store: EntityStore) -> str:
    noun = store.collection.name
    if store.loading:
        return f"Loading {noun}..."
    if store.error:
        return f"Error: {store.error}\nUse /{_cmd_for(store)} refresh to try again."

    items = store.visible()
    if not items:
        if store.filter.is_empty:
            return f"No {noun} yet. Add your first {noun.rstrip('s')}!"
        return f"No {noun} found matching your criteria."

    lines = [format_entity(e) for e in items]
    word = noun.rstrip("s") if len(items) == 1 else noun
    lines.append(f"{len(items)} {word} found")
    return "\n".join(lines)


def _cmd_for(store: EntityStore) -> str:
    return "task" if store.collection.name == "tasks" else "bm"


def _parse_order(raw: str | None) -> SortOrder:
    if raw is None:
        return SortOrder.DESC
    try:
        return SortOrder(raw.lower())
    except ValueError:
        raise ValueError("Order must be asc or desc.") from None


# ---- auth commands ----


def cmd_help(state: AppState, args: list[str]) -> str:
    return registry.build_help()


def cmd_status(state: AppState, args: list[str]) -> str:
    user = state.auth.user
    who = f"{user.display_name or user.email} ({user.email})" if user else "not signed in"
    settings = state.settings
    lines = [
        "Status:",
        f"  User: {who}",
        f"  Tasks cached: {len(state.tasks.entities)}",
        f"  Bookmarks cached: {len(state.bookmarks.entities)}",
        f"  Realtime: {'ON' if state.tasks.realtime_active else 'OFF'}",
        f"  Insert policy: {getattr(settings, 'insert_policy', 'optimistic')}",
        f"  Filter mode: {getattr(settings, 'filter_mode', 'client')}",
    ]
    if state.auth.error:
        lines.append(f"  Last auth error: {state.auth.error}")
    return "\n".join(lines)


async def cmd_login(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    if len(args) < 2:
        return "Usage: /login <email> <password>"
    try:
        form = validate_form(LoginForm, {"email": args[0], "password": args[1]})
        user = await state.auth.sign_in(form.email, form.password)
    except TaskmarkError as e:
        return describe_error(e)

    if emit:
        emit(f"Signed in as {user.email}. Loading your data...")
    await activate_session(state)
    return f"Welcome, {user.display_name or user.email}."


async def cmd_signup(state: AppState, args: list[str]) -> str:
    if len(args) < 3:
        return "Usage: /signup <email> <password> <confirm-password> [display name]"
    data: dict[str, Any] = {
        "email": args[0],
        "password": args[1],
        "confirm_password": args[2],
        "display_name": " ".join(args[3:]) or None,
    }
    try:
        form = validate_form(SignupForm, data)
        user = await state.auth.sign_up(form.email, form.password, form.display_name)
    except TaskmarkError as e:
        return describe_error(e)

    if user is None:
        return "Account created. Check your email to confirm it, then /login."
    await activate_session(state)
    return f"Account created. Signed in as {user.email}."


async def cmd_logout(state: AppState, args: list[str]) -> str:
    if not state.auth.signed_in:
        return "Not signed in."
    await state.auth.sign_out()
    return "Signed out."


async def cmd_reset(state: AppState, args: list[str]) -> str:
    if not args:
        return "Usage: /reset <email>"
    try:
        form = validate_form(ResetPasswordForm, {"email": args[0]})
        await state.auth.reset_password(form.email)
    except TaskmarkError as e:
        return describe_error(e)
    return "If the account exists, a password reset email is on its way."


async def cmd_profile(state: AppState, args: list[str]) -> str:
    user = state.auth.user
    if user is None:
        return "Not signed in."
    if not args:
        return f"Profile:\n  Name: {user.display_name or '-'}\n  Email: {user.email}"
    try:
        form = validate_form(ProfileForm, {"display_name": " ".join(args)})
        user = await state.auth.update_profile(form.display_name)
    except TaskmarkError as e:
        return describe_error(e)
    return f"Display name updated to {user.display_name}."


# ---- entity commands ----

_TASK_USAGE = (
    "Tasks:\n"
    "  /task list\n"
    "  /task add <title> [priority=low|medium|high] [status=pending|in-progress|completed]"
    " [due=YYYY-MM-DD] [desc=...]\n"
    "  /task edit <id> [title=...] [priority=...] [status=...] [due=...] [desc=...]\n"
    "  /task done <id>\n"
    "  /task rm <id>\n"
    "  /task filter [status=...] [priority=...] [search=...] | /task filter clear\n"
    "  /task sort <created_at|updated_at|due_date|title|priority|status> [asc|desc]\n"
    "  /task stats\n"
    "  /task refresh"
)

_TASK_FIELD_ALIASES = {"desc": "description", "due": "due_date"}


def _task_fields(kv: dict[str, str]) -> dict[str, Any]:
    return {_TASK_FIELD_ALIASES.get(k, k): v for k, v in kv.items()}


def _optional_enum(enum_cls, raw: str | None):
    if raw is None or raw == "" or raw.lower() == "all":
        return None
    try:
        return enum_cls(raw.lower())
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValueError(f"Unknown value {raw!r} (allowed: {allowed}).") from None


async def _sort_cmd(store: EntityStore, args: list[str]) -> str:
    if not args:
        return f"Sorted by {store.sort_by} {store.sort_order.value}. Fields: {', '.join(store.collection.sort_fields)}"
    await store.set_sorting(args[0], _parse_order(args[1] if len(args) > 1 else None))
    return f"Sorted by {store.sort_by} {store.sort_order.value}.\n{render_list(store)}"


async def _refresh_cmd(store: EntityStore) -> str:
    store.clear_error()
    await store.fetch()
    return render_list(store)


async def cmd_task(state: AppState, args: list[str]) -> str:
    if not args:
        return _TASK_USAGE
    if not state.auth.signed_in:
        return "Not signed in. Use /login first."

    store = state.tasks
    sub, rest = args[0].lower(), args[1:]

    try:
        if sub in ("list", "ls"):
            return render_list(store)

        if sub == "add":
            words, kv = split_kv(rest)
            data = {"title": " ".join(words), **_task_fields(kv)}
            form = validate_form(TaskForm, data)
            task = await store.create(form.to_row())
            return f"Created task {task.id[:8]}: {task.title}"

        if sub == "edit":
            if not rest:
                return "Usage: /task edit <id> field=value ..."
            task_id = resolve_id(store, rest[0])
            words, kv = split_kv(rest[1:])
            if words:
                return f"Unexpected words {' '.join(words)!r}; use field=value."
            form = validate_form(TaskPatchForm, _task_fields(kv))
            updated = await store.update(task_id, form.to_patch())
            return f"Updated: {format_task(updated)}" if updated else "Task no longer exists."

        if sub == "done":
            if not rest:
                return "Usage: /task done <id>"
            updated = await store.update(resolve_id(store, rest[0]), {"status": TaskStatus.COMPLETED.value})
            return f"Completed: {updated.title}" if updated else "Task no longer exists."

        if sub in ("rm", "delete"):
            if not rest:
                return "Usage: /task rm <id>"
            task_id = resolve_id(store, rest[0])
            await store.delete(task_id)
            return f"Deleted task {task_id[:8]}."

        if sub == "filter":
            if rest and rest[0].lower() == "clear":
                await store.set_filter(EntityFilter())
                return render_list(store)
            _, kv = split_kv(rest)
            flt = EntityFilter(
                status=_optional_enum(TaskStatus, kv.get("status")),
                priority=_optional_enum(TaskPriority, kv.get("priority")),
                search=kv.get("search") or None,
            )
            await store.set_filter(flt)
            return render_list(store)

        if sub == "sort":
            return await _sort_cmd(store, rest)

        if sub == "stats":
            s = task_stats(store.entities)
            lines = [
                f"Total: {s.total}  Pending: {s.pending}  In progress: {s.in_progress}  Completed: {s.completed}",
                f"Priority: low {s.low}, medium {s.medium}, high {s.high}",
            ]
            if s.high_priority_open:
                word = "task" if s.high_priority_open == 1 else "tasks"
                lines.append(f"{s.high_priority_open} high priority {word} need attention")
            if s.total:
                lines.append(f"Completion rate: {s.completion_rate}%")
            return "\n".join(lines)

        if sub == "refresh":
            return await _refresh_cmd(store)

    except TaskmarkError as e:
        return describe_error(e)
    except ValueError as e:
        return str(e)

    return _TASK_USAGE


_BM_USAGE = (
    "Bookmarks:\n"
    "  /bm list\n"
    "  /bm add <title> <url>\n"
    "  /bm rm <id>\n"
    "  /bm search [text]   (no text clears the search)\n"
    "  /bm sort <created_at|title> [asc|desc]\n"
    "  /bm stats\n"
    "  /bm refresh"
)


async def cmd_bm(state: AppState, args: list[str]) -> str:
    if not args:
        return _BM_USAGE
    if not state.auth.signed_in:
        return "Not signed in. Use /login first."

    store = state.bookmarks
    sub, rest = args[0].lower(), args[1:]

    try:
        if sub in ("list", "ls"):
            return render_list(store)

        if sub == "add":
            if len(rest) < 2:
                return "Usage: /bm add <title> <url>"
            form = validate_form(BookmarkForm, {"title": " ".join(rest[:-1]), "url": rest[-1]})
            bookmark = await store.create(form.to_row())
            return f"Saved bookmark {bookmark.id[:8]}: {bookmark.title}"

        if sub in ("rm", "delete"):
            if not rest:
                return "Usage: /bm rm <id>"
            bookmark_id = resolve_id(store, rest[0])
            await store.delete(bookmark_id)
            return f"Deleted bookmark {bookmark_id[:8]}."

        if sub in ("search", "find"):
            await store.set_filter(EntityFilter(search=" ".join(rest) or None))
            return render_list(store)

        if sub == "sort":
            return await _sort_cmd(store, rest)

        if sub == "stats":
            s = bookmark_stats(store.entities)
            lines = [f"Total bookmarks: {s.total}"]
            for domain, n in sorted(s.domains.items(), key=lambda kv: (-kv[1], kv[0]))[:5]:
                lines.append(f"  {domain}: {n}")
            return "\n".join(lines)

        if sub == "refresh":
            return await _refresh_cmd(store)

    except TaskmarkError as e:
        return describe_error(e)
    except ValueError as e:
        return str(e)

    return _BM_USAGE


registry.register("help", cmd_help, help_text="Show available commands.", aliases=["h", "?"])
registry.register("status", cmd_status, help_text="Show session, cache and sync status.")
registry.register("login", cmd_login, help_text="Sign in: /login <email> <password>.")
registry.register(
    "signup",
    cmd_signup,
    help_text="Create an account: /signup <email> <password> <confirm> [display name].",
)
registry.register("logout", cmd_logout, help_text="Sign out and clear local data.")
registry.register("reset", cmd_reset, help_text="Send a password reset email: /reset <email>.")
registry.register("profile", cmd_profile, help_text="Show or set your display name: /profile [name].")
registry.register("task", cmd_task, help_text="Tasks: /task list|add|edit|done|rm|filter|sort|stats|refresh.")
registry.register("bm", cmd_bm, help_text="Bookmarks: /bm list|add|rm|search|sort|stats|refresh.", aliases=["bookmark"])

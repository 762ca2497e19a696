# src/taskmark/auth/auth_store.py

from __future__ import annotations

"""
Session handling on top of the managed auth service.

The store never touches credentials beyond passing them through; token
issuing/refresh/hashing are the backend's job. What it owns:
- the current Session (persisted via SessionFile)
- loading/error flags for the auth forms
- session-change notifications (SIGNED_IN / SIGNED_OUT / TOKEN_REFRESHED / USER_UPDATED)
"""

import contextlib
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from enum import StrEnum

from ..core.ports import AuthGateway
from ..entities.entity_models import Session, User
from ..errors import AuthError, BackendError, TaskmarkError
from .session_file import SessionFile

logger = logging.getLogger(__name__)

# Refresh a little before the access token actually expires.
REFRESH_MARGIN_SECONDS = 60.0


class AuthEvent(StrEnum):
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"


SessionListener = Callable[[AuthEvent, User | None], Awaitable[None] | None]


class AuthStore:
    def __init__(
        self,
        gateway: AuthGateway,
        session_file: SessionFile,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._gateway = gateway
        self._file = session_file
        self._clock = clock
        self._session: Session | None = None
        self._listeners: list[SessionListener] = []

        # Until initialize() has validated the persisted session we don't know who we are.
        self.loading = True
        self.error: str | None = None

    @property
    def user(self) -> User | None:
        return self._session.user if self._session else None

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def signed_in(self) -> bool:
        return self._session is not None

    def on_session_change(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return _remove

    async def _emit(self, event: AuthEvent) -> None:
        user = self.user
        for listener in list(self._listeners):
            try:
                result = listener(event, user)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Session listener failed (event=%s)", event.value)

    def _set_session(self, session: Session) -> None:
        self._session = session
        try:
            self._file.save(session)
        except OSError:
            # Still signed in for this run; only persistence across restarts is lost.
            logger.exception("Failed to persist session to %s", self._file.path)

    def _drop_session(self) -> None:
        self._session = None
        try:
            self._file.clear()
        except OSError:
            logger.exception("Failed to remove session file %s", self._file.path)

    async def _replace_session(self, session: Session) -> None:
        """Install a new session; a different account's session is signed out first."""
        previous = self._session
        if previous is not None and previous.user.id != session.user.id:
            logger.info(
                "Switching account from %s to %s",
                previous.user.email or previous.user.id,
                session.user.email or session.user.id,
            )
            try:
                await self._gateway.sign_out(previous.access_token)
            except TaskmarkError as e:
                logger.warning("Remote sign-out of previous account failed: %s", e.message)
            self._session = None
            await self._emit(AuthEvent.SIGNED_OUT)
        self._set_session(session)

    # ---- startup ----

    async def initialize(self) -> User | None:
        """
        Validate the persisted session against the backend.

        - valid token           -> signed in with fresh user data
        - rejected token        -> one refresh attempt, else the session is discarded
        - backend unreachable   -> error is set, the file is kept for the next start
        """
        self.loading = True
        self.error = None

        stored = self._file.load()
        if stored is None:
            self.loading = False
            return None

        try:
            try:
                user = await self._gateway.get_user(stored.access_token)
            except AuthError:
                logger.info("Persisted session rejected; trying refresh")
                await self._refresh_or_drop(stored)
            else:
                stored.user = user
                self._set_session(stored)
                logger.info("Restored session for %s", user.email or user.id)
        except BackendError as e:
            logger.warning("Could not validate persisted session: %s", e.message)
            self.error = e.message
            self._session = None
        finally:
            self.loading = False

        if self._session is not None:
            await self._emit(AuthEvent.SIGNED_IN)
        return self.user

    async def _refresh_or_drop(self, stale: Session) -> bool:
        if not stale.refresh_token:
            self._drop_session()
            return False
        try:
            fresh = await self._gateway.refresh_session(stale.refresh_token)
        except AuthError:
            logger.info("Refresh token rejected; signing out locally")
            self._drop_session()
            return False
        self._set_session(fresh)
        return True

    async def current_session(self) -> Session | None:
        """Current session, refreshed first when the access token is about to expire."""
        session = self._session
        if session is None:
            return None
        if session.refresh_token and session.expires_within(REFRESH_MARGIN_SECONDS, now_ts=self._clock()):
            try:
                refreshed = await self._refresh_or_drop(session)
            except BackendError as e:
                # Keep the old token; the data call will report if it is really dead.
                logger.warning("Token refresh failed: %s", e.message)
                return session
            if refreshed:
                await self._emit(AuthEvent.TOKEN_REFRESHED)
            else:
                await self._emit(AuthEvent.SIGNED_OUT)
        return self._session

    # ---- actions ----

    async def sign_in(self, email: str, password: str) -> User:
        self.loading = True
        self.error = None
        try:
            session = await self._gateway.sign_in_with_password(email=email, password=password)
        except TaskmarkError as e:
            self.error = e.message
            raise
        finally:
            self.loading = False

        await self._replace_session(session)
        logger.info("Signed in as %s", session.user.email or session.user.id)
        await self._emit(AuthEvent.SIGNED_IN)
        return session.user

    async def sign_up(self, email: str, password: str, display_name: str | None = None) -> User | None:
        """
        Register a new account.

        Returns the signed-in user when the backend issues a session right away,
        or None when the account must be confirmed by email first.
        """
        self.loading = True
        self.error = None
        try:
            session = await self._gateway.sign_up(email=email, password=password, display_name=display_name)
        except TaskmarkError as e:
            self.error = e.message
            raise
        finally:
            self.loading = False

        if session is None:
            logger.info("Signed up %s; confirmation pending", email)
            return None

        await self._replace_session(session)
        await self._emit(AuthEvent.SIGNED_IN)
        return session.user

    async def sign_out(self) -> None:
        """Always ends the local session; a failing remote logout is only logged."""
        session = self._session
        if session is not None:
            try:
                await self._gateway.sign_out(session.access_token)
            except TaskmarkError as e:
                logger.warning("Remote sign-out failed: %s", e.message)

        self._drop_session()
        self.error = None
        self.loading = False
        logger.info("Signed out")
        await self._emit(AuthEvent.SIGNED_OUT)

    async def reset_password(self, email: str) -> None:
        try:
            await self._gateway.reset_password_for_email(email)
        except TaskmarkError as e:
            self.error = e.message
            raise
        logger.info("Password reset requested for %s", email)

    async def update_profile(self, display_name: str) -> User:
        session = await self.current_session()
        if session is None:
            raise AuthError("User not authenticated")

        try:
            user = await self._gateway.update_user(session.access_token, data={"display_name": display_name})
        except TaskmarkError as e:
            self.error = e.message
            raise

        session.user = user
        self._set_session(session)
        await self._emit(AuthEvent.USER_UPDATED)
        return user

# src/taskmark/auth/session_file.py

from __future__ import annotations

import contextlib
import json
import logging
import os
from pathlib import Path
from typing import Any

from ..entities.entity_models import Session, User

logger = logging.getLogger(__name__)


def _load_json(path: Path) -> dict[str, Any]:
    raw = path.read_text("utf-8")
    val = json.loads(raw)
    if isinstance(val, dict):
        return val
    raise ValueError("Expected JSON object")


def _atomic_write_json(path: Path, data: dict[str, Any]) -> None:
    tmp = path.with_suffix(".tmp")
    tmp.write_text(json.dumps(data, ensure_ascii=False), "utf-8")
    os.replace(tmp, path)
    with contextlib.suppress(OSError):
        # Tokens inside: keep the file private where the FS allows it.
        os.chmod(path, 0o600)


class SessionFile:
    """
    Local persistence of the signed-in session (survives restarts).

    The file holds access/refresh tokens and must live under a gitignored dir.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> Session | None:
        if not self._path.exists():
            return None
        try:
            data = _load_json(self._path)
            access_token = data.get("access_token")
            user_raw = data.get("user")
            if not access_token or not isinstance(user_raw, dict) or not user_raw.get("id"):
                raise ValueError("session file is missing required fields")
            expires_at = data.get("expires_at")
            return Session(
                access_token=str(access_token),
                refresh_token=data.get("refresh_token") or None,
                expires_at=float(expires_at) if expires_at is not None else None,
                user=User.from_auth(user_raw),
            )
        except (OSError, ValueError, TypeError):
            logger.warning("Ignoring unreadable session file %s", self._path, exc_info=True)
            return None

    def save(self, session: Session) -> None:
        data = {
            "access_token": session.access_token,
            "refresh_token": session.refresh_token,
            "expires_at": session.expires_at,
            "user": session.user.to_dict(),
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        _atomic_write_json(self._path, data)
        logger.debug("Session saved to %s (user=%s)", self._path, session.user.id)

    def clear(self) -> None:
        with contextlib.suppress(FileNotFoundError):
            self._path.unlink()

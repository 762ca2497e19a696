# src/taskmark/errors.py

"""
Error taxonomy.

- AuthError: bad credentials, rejected sign-up, missing/expired session.
- FormValidationError: client-side input validation; never reaches the backend.
- BackendError: network failure or a rejected query/mutation (HTTP >= 300).
- RealtimeError: change-feed protocol failures; logged, never shown to the user.
"""

from __future__ import annotations


class TaskmarkError(Exception):
    """Base class. `message` is safe to show to the user."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AuthError(TaskmarkError):
    pass


class NotAuthenticatedError(AuthError):
    def __init__(self, message: str = "User not authenticated") -> None:
        super().__init__(message)


class FormValidationError(TaskmarkError):
    def __init__(self, field_errors: dict[str, str]) -> None:
        self.field_errors = dict(field_errors)
        summary = "; ".join(f"{k}: {v}" for k, v in self.field_errors.items())
        super().__init__(summary or "Invalid input")


class BackendError(TaskmarkError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RealtimeError(TaskmarkError):
    pass

# src/taskmark/forms.py

"""
Input validation for everything the user submits.

Rules mirror the web forms: a submission that fails here never reaches the
backend. Server-side rejections come back later as BackendError and are
reported separately.
"""

from __future__ import annotations

from datetime import date, datetime, time, timezone
from typing import Annotated, Any, TypeVar

from pydantic import (
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    HttpUrl,
    StringConstraints,
    TypeAdapter,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)

from .entities.entity_models import TaskPriority, TaskStatus
from .errors import FormValidationError

M = TypeVar("M", bound=BaseModel)

_HTTP_URL = TypeAdapter(HttpUrl)


def _blank_to_none(v: Any) -> Any:
    if isinstance(v, str) and not v.strip():
        return None
    return v


def _due_date_iso(d: date | None) -> str | None:
    if d is None:
        return None
    return datetime.combine(d, time.min, tzinfo=timezone.utc).isoformat()


Title100 = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=100)]
Title200 = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=200)]
Text = Annotated[str, StringConstraints(strip_whitespace=True)]


class _Form(BaseModel):
    # Whitespace is stripped per field (never from passwords).
    model_config = ConfigDict(extra="forbid")

    @field_validator("email", mode="before", check_fields=False)
    @classmethod
    def _strip_email(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v


class TaskForm(_Form):
    title: Title100
    description: Text | None = None
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.PENDING
    due_date: date | None = None

    @field_validator("description", "due_date", mode="before")
    @classmethod
    def _blank_optional(cls, v: Any) -> Any:
        return _blank_to_none(v)

    def to_row(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "priority": self.priority.value,
            "status": self.status.value,
            "due_date": _due_date_iso(self.due_date),
        }


class TaskPatchForm(_Form):
    """Edit form: only the fields the user actually touched are sent."""

    title: Title100 | None = None
    description: Text | None = None
    priority: TaskPriority | None = None
    status: TaskStatus | None = None
    due_date: date | None = None

    @field_validator("description", "due_date", mode="before")
    @classmethod
    def _blank_optional(cls, v: Any) -> Any:
        return _blank_to_none(v)

    @model_validator(mode="after")
    def _at_least_one(self) -> TaskPatchForm:
        if not self.model_fields_set:
            raise ValueError("Nothing to update")
        return self

    def to_patch(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for name in self.model_fields_set:
            value = getattr(self, name)
            if name == "due_date":
                out[name] = _due_date_iso(value)
            elif isinstance(value, (TaskPriority, TaskStatus)):
                out[name] = value.value
            elif name == "description":
                out[name] = value or None
            else:
                out[name] = value
        return out


class BookmarkForm(_Form):
    title: Title200
    url: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]

    @field_validator("url")
    @classmethod
    def _check_url(cls, v: str) -> str:
        # Users type "example.com"; store it with a scheme.
        if not v.startswith(("http://", "https://")):
            v = "https://" + v
        try:
            _HTTP_URL.validate_python(v)
        except ValidationError:
            raise ValueError("Please enter a valid URL (e.g., https://example.com)") from None
        return v

    def to_row(self) -> dict[str, Any]:
        return {"title": self.title, "url": self.url}


class LoginForm(_Form):
    email: EmailStr
    password: str = Field(min_length=6)


class SignupForm(_Form):
    email: EmailStr
    password: str = Field(min_length=6)
    confirm_password: str
    display_name: Annotated[str, StringConstraints(strip_whitespace=True, max_length=100)] | None = None

    @field_validator("display_name", mode="before")
    @classmethod
    def _blank_optional(cls, v: Any) -> Any:
        return _blank_to_none(v)

    @field_validator("confirm_password")
    @classmethod
    def _passwords_match(cls, v: str, info: ValidationInfo) -> str:
        # Skipped when the password itself already failed validation.
        if "password" in info.data and v != info.data["password"]:
            raise ValueError("Passwords don't match")
        return v


class ResetPasswordForm(_Form):
    email: EmailStr


class ProfileForm(_Form):
    display_name: Title100


def validate_form(model: type[M], data: dict[str, Any]) -> M:
    """Validate raw input; raises FormValidationError with one message per field."""
    try:
        return model.model_validate(data)
    except ValidationError as e:
        field_errors: dict[str, str] = {}
        for err in e.errors():
            loc = ".".join(str(p) for p in err.get("loc", ())) or "form"
            msg = str(err.get("msg", "invalid value"))
            # pydantic prefixes custom messages with "Value error, "
            msg = msg.removeprefix("Value error, ")
            field_errors.setdefault(loc, msg)
        raise FormValidationError(field_errors) from None

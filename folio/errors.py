"""Typed workflow failures.

Every failure the core can surface is a :class:`WorkflowError` subclass with a
machine-checkable ``kind`` and ``code`` plus a localized human-readable
``message``. Transports render :meth:`WorkflowError.to_dict` unchanged.
"""

from __future__ import annotations

from typing import Any

from folio.messages import error_message


class WorkflowError(Exception):
    """Base class for all editorial workflow failures."""

    kind: str = "workflow_error"
    status_code: int = 400

    def __init__(self, code: str, message: str | None = None, **details: Any) -> None:
        self.code = code
        self.details = details
        self.message = message or error_message(code, **details)
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.kind, "code": self.code, "detail": self.message}
        for key, value in self.details.items():
            payload.setdefault(key, value)
        return payload

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r})"


class Unauthorized(WorkflowError):
    """No resolvable actor."""

    kind = "unauthorized"
    status_code = 401


class Forbidden(WorkflowError):
    """The actor's role lacks permission for the requested transition or action."""

    kind = "forbidden"
    status_code = 403


class NotFound(WorkflowError):
    kind = "not_found"
    status_code = 404


class InvalidTransition(WorkflowError):
    """Target status unreachable from the current status."""

    kind = "invalid_transition"
    status_code = 409


class AlreadyFinalized(WorkflowError):
    kind = "already_finalized"
    status_code = 409


class Conflict(WorkflowError):
    """A concurrent mutation won the race; the caller may reload and retry."""

    kind = "conflict"
    status_code = 409


class ValidationError(WorkflowError):
    kind = "validation_error"
    status_code = 422


def from_pydantic(exc: Any) -> ValidationError:
    """Convert a pydantic ValidationError into a workflow ValidationError."""
    fields = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()))
        fields.append({"field": loc, "message": err.get("msg", "")})
    return ValidationError("invalid_payload", fields=fields)

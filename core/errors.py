"""
core/errors.py -- Typed error taxonomy shared by the service layer and the API.

The session and invite managers raise ServiceError with a stable ErrorKind.
The API layer renders any ServiceError into the standard error envelope
without knowing what caused it: the HTTP status lives in _STATUS_BY_KIND,
next to the kinds themselves, not in the routes.

DuplicateKey and EmailDeliveryError are collaborator-level failures. Stores
raise DuplicateKey when a unique constraint rejects a write; managers turn it
into a business kind (conflict, duplicate_pending). Email senders raise
EmailDeliveryError; managers downgrade it to a warning once the state change
it was announcing has been committed.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    conflict = "conflict"
    invalid_credentials = "invalid_credentials"
    email_not_verified = "email_not_verified"
    invalid_or_expired = "invalid_or_expired"
    not_found = "not_found"
    forbidden = "forbidden"
    already_processed = "already_processed"
    seat_limit_reached = "seat_limit_reached"
    plan_not_eligible = "plan_not_eligible"
    no_subscription = "no_subscription"
    already_member = "already_member"
    already_on_team = "already_on_team"
    duplicate_pending = "duplicate_pending"
    expired = "expired"
    inactive = "inactive"
    password_changed = "password_changed"
    invalid_token = "invalid_token"
    token_expired = "token_expired"
    already_verified = "already_verified"
    invalid_input = "invalid_input"
    email_delivery_failed = "email_delivery_failed"
    internal = "internal"


_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.conflict: 409,
    ErrorKind.invalid_credentials: 401,
    ErrorKind.email_not_verified: 403,
    ErrorKind.invalid_or_expired: 400,
    ErrorKind.not_found: 404,
    ErrorKind.forbidden: 403,
    ErrorKind.already_processed: 400,
    ErrorKind.seat_limit_reached: 400,
    ErrorKind.plan_not_eligible: 400,
    ErrorKind.no_subscription: 400,
    ErrorKind.already_member: 400,
    ErrorKind.already_on_team: 400,
    ErrorKind.duplicate_pending: 409,
    ErrorKind.expired: 400,
    ErrorKind.inactive: 401,
    ErrorKind.password_changed: 401,
    ErrorKind.invalid_token: 401,
    ErrorKind.token_expired: 401,
    ErrorKind.already_verified: 400,
    ErrorKind.invalid_input: 422,
    ErrorKind.email_delivery_failed: 502,
    ErrorKind.internal: 500,
}


class ServiceError(Exception):
    """A business-rule violation with a stable, client-facing kind.

    message is safe to show to end users. detail carries structured extras
    (e.g. the current invite status) and is rendered as-is by the API.
    """

    def __init__(self, kind: ErrorKind, message: str, detail: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.detail = detail or {}

    @property
    def status_code(self) -> int:
        return _STATUS_BY_KIND.get(self.kind, 500)

    def __repr__(self) -> str:
        return f"ServiceError({self.kind.value!r}, {self.message!r})"


class DuplicateKey(Exception):
    """A unique constraint rejected a write. field names the offending column set."""

    def __init__(self, field: str) -> None:
        super().__init__(f"Duplicate value for unique field {field!r}")
        self.field = field


class EmailDeliveryError(Exception):
    """The email transport failed to accept a message."""

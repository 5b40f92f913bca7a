from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Type


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code rendered in the error envelope:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    - service_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ServiceUnavailableError(ServiceError):
    """A required dependency (database, cache) did not answer (503)."""
    status_code = 503
    error_code = "service_unavailable"


class RejectionKind(str, Enum):
    """Why a credential operation did not succeed."""

    MALFORMED = "malformed"
    BAD_SIGNATURE = "bad_signature"
    WRONG_TYPE = "wrong_type"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"
    ALREADY_CONSUMED = "already_consumed"
    ALREADY_ACCEPTED = "already_accepted"
    INVALID = "invalid"
    USER_NOT_FOUND = "user_not_found"
    USER_INACTIVE = "user_inactive"
    UNAUTHENTICATED = "unauthenticated"
    UNAUTHORIZED = "unauthorized"
    CONFLICT = "conflict"
    RATE_LIMITED = "rate_limited"
    DEPENDENCY_UNAVAILABLE = "dependency_unavailable"


_DEFAULT_MESSAGES = {
    RejectionKind.MALFORMED: "token is malformed",
    RejectionKind.BAD_SIGNATURE: "token signature is invalid",
    RejectionKind.WRONG_TYPE: "token type is not accepted here",
    RejectionKind.EXPIRED: "credential has expired",
    RejectionKind.NOT_FOUND: "credential not found",
    RejectionKind.ALREADY_CONSUMED: "credential has already been used",
    RejectionKind.ALREADY_ACCEPTED: "invitation has already been accepted",
    RejectionKind.INVALID: "credential is invalid",
    RejectionKind.USER_NOT_FOUND: "user not found",
    RejectionKind.USER_INACTIVE: "user account is inactive",
    RejectionKind.UNAUTHENTICATED: "authentication required",
    RejectionKind.UNAUTHORIZED: "insufficient permissions",
    RejectionKind.CONFLICT: "conflicting record exists",
    RejectionKind.RATE_LIMITED: "too many requests",
    RejectionKind.DEPENDENCY_UNAVAILABLE: "a required service is unavailable",
}

_ERROR_FOR_KIND: dict[RejectionKind, Type[ServiceError]] = {
    RejectionKind.MALFORMED: AuthenticationError,
    RejectionKind.BAD_SIGNATURE: AuthenticationError,
    RejectionKind.WRONG_TYPE: AuthenticationError,
    RejectionKind.USER_NOT_FOUND: AuthenticationError,
    RejectionKind.USER_INACTIVE: AuthenticationError,
    RejectionKind.UNAUTHENTICATED: AuthenticationError,
    RejectionKind.EXPIRED: ValidationError,
    RejectionKind.ALREADY_CONSUMED: ValidationError,
    RejectionKind.INVALID: ValidationError,
    RejectionKind.NOT_FOUND: NotFoundError,
    RejectionKind.ALREADY_ACCEPTED: ConflictError,
    RejectionKind.CONFLICT: ConflictError,
    RejectionKind.UNAUTHORIZED: ForbiddenError,
    RejectionKind.RATE_LIMITED: RateLimitedError,
    RejectionKind.DEPENDENCY_UNAVAILABLE: ServiceUnavailableError,
}


@dataclass(frozen=True)
class Rejection:
    """Typed, non-exceptional failure returned by credential services.

    ``cause`` records the underlying kind when a rejection is re-wrapped, e.g.
    the gate reports ``UNAUTHENTICATED`` with ``cause=EXPIRED``.
    """

    kind: RejectionKind
    message: str = ""
    cause: Optional[RejectionKind] = None

    def __post_init__(self) -> None:
        if not self.message:
            object.__setattr__(self, "message", _DEFAULT_MESSAGES[self.kind])

    def wrap(self, kind: RejectionKind, message: str = "") -> "Rejection":
        """Re-express this rejection as ``kind`` while keeping the original cause."""
        return Rejection(kind, message, cause=self.cause or self.kind)

    def to_error(
        self,
        message: Optional[str] = None,
        *,
        error_cls: Optional[Type[ServiceError]] = None,
    ) -> ServiceError:
        """Convert into the ServiceError raised by HTTP handlers."""
        cls = error_cls or _ERROR_FOR_KIND[self.kind]
        detail = {"reason": self.kind.value}
        if self.cause is not None:
            detail["cause"] = self.cause.value
        return cls(message or self.message, detail=detail)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "ServiceUnavailableError",
    "RejectionKind",
    "Rejection",
]

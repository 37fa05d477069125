"""Error kinds and the uniform error envelope for aumai-qmgateway."""

from __future__ import annotations

import enum
from typing import Any

import structlog

from aumai_qmgateway.models import ErrorEnvelope

logger = structlog.get_logger(__name__)


class ErrorKind(str, enum.Enum):
    """Stable, machine-readable error discriminant."""

    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    CIRCUIT_OPEN = "circuit_open"
    UPSTREAM_API = "upstream_api"
    UNKNOWN = "unknown"


class GatewayError(Exception):
    """Single error type for the gateway, tagged by :class:`ErrorKind`.

    Args:
        kind: Error discriminant.
        message: Human-readable explanation.
        status_code: HTTP-style status associated with the error, if any.
        details: Extra JSON-serializable context (e.g. upstream body).
        retry_after: Seconds until a rate-limited caller may retry.
        retryable: Whether the retry policy may repeat the failed attempt.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        status_code: int | None = None,
        details: Any = None,
        retry_after: int | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code
        self.details = details
        self.retry_after = retry_after
        self.retryable = retryable

    def __repr__(self) -> str:
        return f"GatewayError(kind={self.kind.value!r}, message={self.message!r})"

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def validation(cls, message: str, details: Any = None) -> GatewayError:
        return cls(ErrorKind.VALIDATION, message, status_code=400, details=details)

    @classmethod
    def authentication(cls, message: str = "authentication failed") -> GatewayError:
        return cls(ErrorKind.AUTHENTICATION, message, status_code=401)

    @classmethod
    def authorization(cls, message: str = "insufficient permissions") -> GatewayError:
        return cls(ErrorKind.AUTHORIZATION, message, status_code=403)

    @classmethod
    def not_found(cls, resource: str, identifier: str | None = None) -> GatewayError:
        if identifier:
            message = f"{resource} with id '{identifier}' not found"
        else:
            message = f"{resource} not found"
        return cls(ErrorKind.NOT_FOUND, message, status_code=404)

    @classmethod
    def rate_limited(cls, retry_after: int | None = None) -> GatewayError:
        return cls(
            ErrorKind.RATE_LIMITED,
            "rate limit exceeded",
            status_code=429,
            details={"retry_after": retry_after} if retry_after is not None else None,
            retry_after=retry_after,
        )

    @classmethod
    def circuit_open(cls, endpoint: str) -> GatewayError:
        return cls(
            ErrorKind.CIRCUIT_OPEN,
            f"circuit breaker for endpoint '{endpoint}' is open - service unavailable",
            status_code=503,
        )

    @classmethod
    def upstream(
        cls,
        message: str,
        status_code: int | None = None,
        details: Any = None,
        *,
        retryable: bool = False,
    ) -> GatewayError:
        return cls(
            ErrorKind.UPSTREAM_API,
            message,
            status_code=status_code,
            details=details,
            retryable=retryable,
        )


def to_envelope(exc: BaseException) -> ErrorEnvelope:
    """Normalize any exception into the external :class:`ErrorEnvelope`.

    :class:`GatewayError` keeps its kind, message and details; anything
    else is reported as :attr:`ErrorKind.UNKNOWN`.
    """
    if isinstance(exc, GatewayError):
        return ErrorEnvelope(kind=exc.kind.value, message=exc.message, details=exc.details)

    logger.error("unclassified_error", error_type=type(exc).__name__, error=str(exc))
    message = str(exc) or "unknown error occurred"
    return ErrorEnvelope(kind=ErrorKind.UNKNOWN.value, message=message)


__all__ = ["ErrorKind", "GatewayError", "to_envelope"]

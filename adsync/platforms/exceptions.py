"""Error taxonomy for the platform connector layer.

Every failure coming back from a native platform API is classified exactly
once, at the connector boundary, into one of the ``ErrorKind`` values below.
The retry handler and the circuit breaker only ever look at ``kind`` (and
``retry_after``); the orchestrator converts whatever surfaces into a
``DeploymentResult``.
"""

from __future__ import annotations

import enum
from typing import Any

import httpx


class ErrorKind(str, enum.Enum):
    AUTHENTICATION = "authentication"
    RATE_LIMITED = "rate_limited"
    VALIDATION = "validation"
    NETWORK = "network"
    TIMEOUT = "timeout"
    PLATFORM = "platform"
    UNKNOWN = "unknown"
    CIRCUIT_OPEN = "circuit_open"
    CANCELLED = "cancelled"


RETRYABLE_KINDS = frozenset(
    {
        ErrorKind.RATE_LIMITED,
        ErrorKind.NETWORK,
        ErrorKind.TIMEOUT,
        ErrorKind.PLATFORM,
        ErrorKind.UNKNOWN,
    }
)

# Outcomes that say something about platform health; the rest mean the
# platform answered and rejected the request.
BREAKER_COUNTED_KINDS = RETRYABLE_KINDS


class PlatformError(Exception):
    """Base exception for all platform-related errors."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        *,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = details or {}
        self.retry_after = retry_after
        # Set by the retry handler once the operation gives up.
        self.attempts: int = 1

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(kind={self.kind.value!r}, message={self.message!r})"


class AuthenticationError(PlatformError):
    """Credential rejected or expired."""

    kind = ErrorKind.AUTHENTICATION


class CredentialRevokedError(AuthenticationError):
    """The user's credential was revoked; no refresh is attempted."""


class CredentialRefreshError(AuthenticationError):
    """The platform refused to issue a new access token."""


class RateLimitedError(PlatformError):
    """Throttled, either by the platform or by the local rate limiter."""

    kind = ErrorKind.RATE_LIMITED


class ValidationError(PlatformError):
    """Malformed or unsupported request data."""

    kind = ErrorKind.VALIDATION


class MappingValidationError(ValidationError):
    """The unified ad lacks data the target platform requires."""

    def __init__(self, platform: str, problems: list[str]) -> None:
        super().__init__(
            f"{platform}: " + "; ".join(problems),
            details={"platform": platform, "problems": problems},
        )
        self.problems = problems


class NativeObjectMissingError(ValidationError):
    """The bound native campaign no longer exists on the platform."""


class NetworkError(PlatformError):
    kind = ErrorKind.NETWORK


class CallTimeoutError(PlatformError):
    kind = ErrorKind.TIMEOUT


class PlatformServerError(PlatformError):
    """5xx-equivalent failure on the platform side."""

    kind = ErrorKind.PLATFORM


class UnknownPlatformError(PlatformError):
    kind = ErrorKind.UNKNOWN


class CircuitOpenError(PlatformError):
    kind = ErrorKind.CIRCUIT_OPEN

    def __init__(self, platform: str, endpoint: str, retry_after: float | None = None) -> None:
        super().__init__(
            "circuit open",
            details={"platform": platform, "endpoint": endpoint},
            retry_after=retry_after,
        )
        self.attempts = 0


class SyncCancelledError(PlatformError):
    kind = ErrorKind.CANCELLED


# ---------------------------------------------------------------------------
# Boundary classification
# ---------------------------------------------------------------------------


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header given in seconds."""
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return max(seconds, 0.0)


def classify_http_response(
    response: httpx.Response, message: str | None = None
) -> PlatformError:
    """Map a non-2xx HTTP response onto the error taxonomy."""
    status = response.status_code
    try:
        body = response.json()
    except ValueError:
        body = {"text": response.text[:500]}
    error = body.get("error", {}) if isinstance(body, dict) else {}
    if not isinstance(error, dict):
        error = {"message": str(error)}
    text = message or error.get("message") or f"HTTP {status}"
    details = {"status_code": status, "error": error}

    if status in (401, 403):
        return AuthenticationError(text, details)
    if status == 429:
        return RateLimitedError(
            text, details, retry_after=parse_retry_after(response.headers.get("Retry-After"))
        )
    if status == 404:
        return NativeObjectMissingError(text, details)
    if status in (400, 409, 422):
        return ValidationError(text, details)
    if status == 408:
        return CallTimeoutError(text, details)
    if status >= 500:
        return PlatformServerError(
            text, details, retry_after=parse_retry_after(response.headers.get("Retry-After"))
        )
    return UnknownPlatformError(text, details)


def classify_exception(exc: BaseException) -> PlatformError:
    """Classify a transport-level exception raised by a native call."""
    if isinstance(exc, PlatformError):
        return exc
    if isinstance(exc, (httpx.TimeoutException, TimeoutError)):
        return CallTimeoutError(f"Request timed out: {exc}" if str(exc) else "Request timed out")
    if isinstance(exc, (httpx.TransportError, ConnectionError)):
        return NetworkError(f"Connection error: {exc}")
    return UnknownPlatformError(str(exc) or exc.__class__.__name__, {"type": exc.__class__.__name__})

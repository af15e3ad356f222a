"""
Error Classifier — maps any failure met while talking to the ad platform
(or while persisting its results) onto a small, typed error taxonomy.

Classification happens in two steps:

1. ``describe_failure`` inspects a caught exception once and turns it into a
   tagged failure variant (remote failure, rejected credential, rate limit,
   persistence conflict, ...).
2. ``classify`` maps a variant onto a ``ClassifiedError`` with a code, an
   HTTP-equivalent status and optional details.

``ClassifiedError`` is the only exception type that leaves the sync core.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import httpx
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from adsync.config import get_settings

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER_SECONDS = 60
REDACTED_MESSAGE = "An unexpected error occurred"


class ErrorCode(str, enum.Enum):
    VALIDATION = "VALIDATION"
    AUTH = "AUTH"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    DUPLICATE = "DUPLICATE"
    RATE_LIMIT = "RATE_LIMIT"
    REMOTE_API = "REMOTE_API"
    DATABASE = "DATABASE"


class ClassifiedError(Exception):
    """Typed failure record: code, human message, status code, optional details."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status_code: int,
        details: Optional[dict] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details

    def to_dict(self) -> dict:
        body = {"code": self.code.value, "message": self.message, "statusCode": self.status_code}
        if self.details is not None:
            body["details"] = self.details
        return body

    def __repr__(self) -> str:
        return f"ClassifiedError({self.code.value}, {self.status_code}, {self.message!r})"


# ── Raised by lower layers, described below ──────────────────────────

class PlatformAPIError(Exception):
    """Non-2xx response from the ad platform, status and JSON body intact."""

    def __init__(self, status_code: int, payload: Any = None, retry_after: Optional[int] = None):
        message = "Ad platform API error"
        if isinstance(payload, dict) and payload.get("message"):
            message = str(payload["message"])
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload
        self.retry_after = retry_after


class RateLimitExceeded(Exception):
    """Raised by the local per-user limiter."""

    def __init__(self, retry_after: int, endpoint: str = "api"):
        super().__init__("Too many requests, please retry later")
        self.retry_after = retry_after
        self.endpoint = endpoint


class DuplicateKeyError(Exception):
    """Uniqueness violation reported by a store, with the offending key."""

    def __init__(self, field: str, value: Any):
        super().__init__(f"Duplicate value for {field}: {value}")
        self.field = field
        self.value = value


class ConcurrentWriteError(Exception):
    """A read-modify-write lost every compare-and-swap attempt."""


class DeadlineExceeded(asyncio.TimeoutError):
    """The caller's deadline elapsed before a remote call completed."""

    def __init__(self, deadline: float):
        super().__init__(f"Deadline of {deadline}s exceeded")
        self.deadline = deadline


# ── Failure variants ─────────────────────────────────────────────────

@dataclass(frozen=True)
class PersistenceConflict:
    field: Optional[str] = None
    value: Any = None


@dataclass(frozen=True)
class PersistenceFailure:
    message: str


@dataclass(frozen=True)
class RemoteFailure:
    status_code: Optional[int]
    payload: Any = None
    message: str = "Ad platform API error"


@dataclass(frozen=True)
class CredentialRejected:
    payload: Any = None


@dataclass(frozen=True)
class RateLimited:
    retry_after: int
    source: str = "remote"
    payload: Any = None


@dataclass(frozen=True)
class InvalidInput:
    message: str
    errors: list = field(default_factory=list)


@dataclass(frozen=True)
class Unknown:
    message: str


Failure = Union[
    PersistenceConflict, PersistenceFailure, RemoteFailure, CredentialRejected,
    RateLimited, InvalidInput, Unknown,
]


def _retry_after_from_payload(payload: Any) -> Optional[int]:
    if isinstance(payload, dict):
        for key in ("retry_after", "retryAfter"):
            val = payload.get(key)
            if val is not None:
                try:
                    return int(val)
                except (TypeError, ValueError):
                    return None
    return None


def _duplicate_key_from_integrity(exc: IntegrityError) -> PersistenceConflict:
    """Best-effort extraction of the violated column from the driver message."""
    text = str(getattr(exc, "orig", exc))
    for column in ("campaign_id", "remote_account_id"):
        if column in text:
            return PersistenceConflict(field=column)
    return PersistenceConflict()


def describe_failure(exc: BaseException) -> Failure:
    """Turn a caught exception into a tagged failure variant."""
    if isinstance(exc, DuplicateKeyError):
        return PersistenceConflict(field=exc.field, value=exc.value)
    if isinstance(exc, IntegrityError):
        return _duplicate_key_from_integrity(exc)
    if isinstance(exc, PlatformAPIError):
        if exc.status_code == 401:
            return CredentialRejected(payload=exc.payload)
        if exc.status_code == 429:
            retry_after = exc.retry_after or _retry_after_from_payload(exc.payload) or DEFAULT_RETRY_AFTER_SECONDS
            return RateLimited(retry_after=retry_after, source="remote", payload=exc.payload)
        return RemoteFailure(status_code=exc.status_code, payload=exc.payload, message=str(exc))
    if isinstance(exc, RateLimitExceeded):
        return RateLimited(retry_after=exc.retry_after, source="local", payload={"endpoint": exc.endpoint})
    if isinstance(exc, (ConcurrentWriteError, SQLAlchemyError)):
        return PersistenceFailure(message=str(exc))
    if isinstance(exc, asyncio.TimeoutError):
        return RemoteFailure(status_code=504, payload={"message": "Deadline exceeded"}, message="Deadline exceeded")
    if isinstance(exc, httpx.TimeoutException):
        return RemoteFailure(status_code=504, payload={"message": str(exc)}, message="Ad platform timed out")
    if isinstance(exc, httpx.TransportError):
        return RemoteFailure(status_code=502, payload={"message": str(exc)}, message="Ad platform unreachable")
    if isinstance(exc, ValidationError):
        errors = [
            {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg")}
            for err in exc.errors()
        ]
        return InvalidInput(message="Invalid request data", errors=errors)
    return Unknown(message=str(exc) or type(exc).__name__)


def classify(failure: Failure, production: bool = False) -> ClassifiedError:
    """Map a failure variant to its classified error."""
    if isinstance(failure, PersistenceConflict):
        return ClassifiedError(
            ErrorCode.DUPLICATE,
            "An entry already exists with this value",
            409,
            {"field": failure.field, "value": failure.value},
        )
    if isinstance(failure, RemoteFailure):
        return ClassifiedError(
            ErrorCode.REMOTE_API,
            failure.message,
            failure.status_code or 500,
            {"status": failure.status_code, "payload": failure.payload},
        )
    if isinstance(failure, CredentialRejected):
        return ClassifiedError(
            ErrorCode.AUTH,
            "Platform credential is invalid or expired",
            401,
            {"payload": failure.payload} if failure.payload is not None else None,
        )
    if isinstance(failure, RateLimited):
        return ClassifiedError(
            ErrorCode.RATE_LIMIT,
            "Too many requests, please retry later",
            429,
            {"retryAfter": failure.retry_after, "source": failure.source},
        )
    if isinstance(failure, PersistenceFailure):
        return ClassifiedError(
            ErrorCode.DATABASE,
            REDACTED_MESSAGE if production else failure.message,
            500,
        )
    if isinstance(failure, InvalidInput):
        return ClassifiedError(ErrorCode.VALIDATION, failure.message, 400, {"errors": failure.errors})
    return ClassifiedError(
        ErrorCode.REMOTE_API,
        REDACTED_MESSAGE if production else failure.message,
        500,
    )


def classify_exception(exc: BaseException, production: Optional[bool] = None) -> ClassifiedError:
    """Single entry point: already-classified errors pass through unchanged."""
    if isinstance(exc, ClassifiedError):
        return exc
    if production is None:
        production = get_settings().is_production
    return classify(describe_failure(exc), production=production)


# ── Helpers for failures raised locally ──────────────────────────────

def validation_error(message: str, errors: Optional[list] = None) -> ClassifiedError:
    return ClassifiedError(ErrorCode.VALIDATION, message, 400, {"errors": errors or []})


def not_found(message: str) -> ClassifiedError:
    return ClassifiedError(ErrorCode.NOT_FOUND, message, 404)


def forbidden(message: str) -> ClassifiedError:
    return ClassifiedError(ErrorCode.FORBIDDEN, message, 403)

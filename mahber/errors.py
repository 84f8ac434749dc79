"""
mahber.errors — Error Kinds & Operation Envelope
=================================================

Every request-path operation either returns data or raises one of the
:class:`MahberError` subclasses below.  :func:`operation` turns both into
the ``{success, data?, error?}`` envelope that transports hand back to
callers, with no stack traces attached.

Transient datastore failures (``OperationalError``) are retried with
exponential backoff before surfacing as ``service_unavailable``.
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, ParamSpec

from sqlalchemy.exc import OperationalError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

P = ParamSpec("P")

# Two retries after the first failure.
TRANSIENT_ATTEMPTS = 3


class MahberError(Exception):
    """Base class for errors surfaced to callers."""

    code = "error"
    status = 400

    def __init__(self, message: str = "", **details: Any) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        payload.update(self.details)
        return payload


class InvalidFieldError(MahberError):
    code = "invalid_field"
    status = 400


class NotFoundError(MahberError):
    code = "not_found"
    status = 404


class ForbiddenError(MahberError):
    code = "forbidden"
    status = 403


class ContentFlaggedError(MahberError):
    code = "content_flagged"
    status = 400

    def __init__(self, flags: list[str], message: str = "Content was flagged") -> None:
        super().__init__(message, flags=list(flags))
        self.flags = list(flags)


class RateLimitedError(MahberError):
    code = "rate_limited"
    status = 429

    def __init__(self, reason: str, retry_after: int | None = None) -> None:
        super().__init__(reason, retry_after=retry_after)
        self.reason = reason
        self.retry_after = retry_after


class ConflictError(MahberError):
    code = "conflict"
    status = 400


class ServiceUnavailableError(MahberError):
    code = "service_unavailable"
    status = 503


class InvariantViolation(MahberError):
    """A runtime check on stored state failed.  Logged, never repaired."""

    code = "internal_error"
    status = 500


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class OperationResult:
    success: bool
    data: Any = None
    error: dict[str, Any] | None = None
    status: int = 200

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"success": self.success}
        if self.data is not None:
            body["data"] = self.data
        if self.error is not None:
            body["error"] = self.error
        return body


transient_retry = retry(
    stop=stop_after_attempt(TRANSIENT_ATTEMPTS),
    wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
    retry=retry_if_exception_type(OperationalError),
    reraise=True,
)


def operation(func: Callable[P, Any]) -> Callable[P, OperationResult]:
    """Wrap a service call so it always returns an :class:`OperationResult`."""
    retrying = transient_retry(func)

    @functools.wraps(func)
    def wrapper(*args: P.args, **kwargs: P.kwargs) -> OperationResult:
        try:
            data = retrying(*args, **kwargs)
        except InvariantViolation as exc:
            logger.error("Invariant violation in %s: %s", func.__name__, exc.message)
            return OperationResult(False, error=exc.to_dict(), status=exc.status)
        except MahberError as exc:
            return OperationResult(False, error=exc.to_dict(), status=exc.status)
        except OperationalError:
            logger.exception("Datastore unavailable during %s", func.__name__)
            err = ServiceUnavailableError("The datastore is temporarily unavailable")
            return OperationResult(False, error=err.to_dict(), status=err.status)
        return OperationResult(True, data=data)

    return wrapper

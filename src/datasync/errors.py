"""
Typed error hierarchy for the sync subsystem.

Library and driver errors are converted into a SyncError variant at the
boundary where they are caught (see as_sync_error), so the error classifier
matches on a closed set of types instead of ad hoc exception shapes.
"""
import asyncio
from typing import Any, Dict, List, Optional

import requests
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError, OperationalError


class SyncError(Exception):
    """Base class for every error raised by the sync subsystem."""


# ─── Record / transport failures (classified) ─────────────────────────────────

class NetworkError(SyncError):
    """Transport failure talking to a source or target.

    reason is one of "timeout", "connection_refused", "connection_reset",
    "bad_status" or any other short identifier.
    """

    def __init__(self, reason: str = "timeout", message: str = ""):
        self.reason = reason
        super().__init__(message or f"network error: {reason}")


class ConstraintError(SyncError):
    """Uniqueness / foreign-key / not-null violation in the target store."""

    def __init__(self, kind: str = "constraint_violation", message: str = ""):
        self.kind = kind
        super().__init__(message or f"constraint violated: {kind}")


class RecordValidationError(SyncError):
    """A record failed schema or domain validation."""

    def __init__(self, errors: Optional[List[Dict[str, Any]]] = None, message: str = ""):
        self.errors = errors or []
        if not message:
            fields = ", ".join(str(e.get("field")) for e in self.errors if e.get("field"))
            message = f"invalid record: {fields}" if fields else "invalid record"
        super().__init__(message)


class PerformanceError(SyncError):
    """The target is overloaded (lock timeouts, pool exhaustion)."""


class ApplicationError(SyncError):
    """Anything the conversion layer could not recognize."""

    def __init__(self, message: str = "", original: Optional[BaseException] = None):
        self.original = original
        super().__init__(message or (str(original) if original else "application error"))


# ─── Execution-control signals ────────────────────────────────────────────────

class CircuitOpenError(SyncError):
    """A call was declined because the named circuit is open."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"circuit '{name}' is open")


class RateLimitedError(SyncError):
    """A call was declined because the named limiter's window is full."""

    def __init__(self, name: str, retry_after_ms: Optional[int] = None):
        self.name = name
        self.retry_after_ms = retry_after_ms
        super().__init__(f"rate limit exceeded for '{name}'")


class RetryExhaustedError(SyncError):
    """Every permitted attempt failed. Callers must give up."""

    def __init__(self, attempts: int, last_error: Optional[BaseException] = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"retry exhausted after {attempts} attempts: {last_error}")


class ForbiddenError(SyncError):
    """The target resource's authorizer rejected the actor."""

    def __init__(self, action: str, actor: Any = None):
        self.action = action
        self.actor = actor
        super().__init__(f"actor {actor!r} may not perform '{action}'")


class SyncCancelledError(SyncError):
    def __init__(self, session_id: Optional[str] = None):
        self.session_id = session_id
        super().__init__(f"sync cancelled: {session_id}")


# ─── Configuration / lookup failures ──────────────────────────────────────────

class ConfigurationError(SyncError):
    pass


class SyncInitializationError(ConfigurationError):
    """Config rejected before any side effect."""

    def __init__(self, detail: Any):
        self.detail = detail
        super().__init__(f"sync initialization failed: {detail}")


class TargetResolutionError(ConfigurationError):
    """The target resource name is not registered."""

    def __init__(self, target_resource: str):
        self.target_resource = target_resource
        super().__init__(f"module not found: {target_resource}")


class MissingConfigFieldsError(ConfigurationError):
    def __init__(self, fields: List[str]):
        self.fields = list(fields)
        super().__init__(f"missing config fields: {', '.join(self.fields)}")


class SourceAdapterError(SyncError):
    """Adapter could not be resolved, initialized, or reached."""


class SessionNotFoundError(SyncError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"session not found: {session_id}")


class InvalidSessionTransitionError(SyncError):
    def __init__(self, session_id: str, current: str, target: str):
        self.session_id = session_id
        self.current = current
        self.target = target
        super().__init__(f"session {session_id}: cannot go from {current} to {target}")


class UnknownVerificationModeError(SyncError):
    def __init__(self, mode: Any):
        self.mode = mode
        super().__init__(f"unknown verification mode: {mode!r}")


class UnknownResourceTypeError(SyncError):
    def __init__(self, resource_type: str):
        self.resource_type = resource_type
        super().__init__(f"unknown resource type: {resource_type}")


# ─── Boundary conversion ──────────────────────────────────────────────────────

_OVERLOAD_MARKERS = ("timeout", "locked", "too many connections", "queuepool")


def as_sync_error(exc: BaseException) -> SyncError:
    """Convert a raw library error into its SyncError variant.

    SyncError instances are returned unchanged.
    """
    if isinstance(exc, SyncError):
        return exc

    if isinstance(exc, IntegrityError):
        text = str(exc.orig).lower() if exc.orig is not None else str(exc).lower()
        if "unique" in text:
            kind = "unique_violation"
        elif "foreign key" in text:
            kind = "foreign_key_violation"
        elif "not null" in text:
            kind = "not_null_violation"
        else:
            kind = "constraint_violation"
        return ConstraintError(kind, str(exc.orig or exc))

    if isinstance(exc, OperationalError):
        text = str(exc).lower()
        if any(marker in text for marker in _OVERLOAD_MARKERS):
            return PerformanceError(str(exc.orig or exc))
        return ApplicationError(original=exc)

    if isinstance(exc, (requests.Timeout, asyncio.TimeoutError, TimeoutError)):
        return NetworkError("timeout", str(exc) or "request timed out")

    if isinstance(exc, requests.ConnectionError):
        return NetworkError("connection_refused", str(exc))

    if isinstance(exc, ConnectionResetError):
        return NetworkError("connection_reset", str(exc))

    if isinstance(exc, ConnectionError):
        return NetworkError("connection_refused", str(exc))

    if isinstance(exc, PydanticValidationError):
        errors = [
            {"field": ".".join(str(p) for p in e.get("loc", ())), "message": e.get("msg")}
            for e in exc.errors()
        ]
        return RecordValidationError(errors)

    return ApplicationError(original=exc)

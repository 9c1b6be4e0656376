# src/taskmirror/core/errors.py

"""
Error taxonomy.

Remote store adapters raise StoreError with a coarse kind. Everything that
crosses an I/O boundary is converted with classify_error() before it reaches
the mutation API, so callers only ever see TaskMirrorError subclasses.
"""

from __future__ import annotations

from enum import StrEnum


class StoreErrorKind(StrEnum):
    QUOTA_EXCEEDED = "resource-exhausted"
    PERMISSION_DENIED = "permission-denied"
    UNAVAILABLE = "unavailable"
    OTHER = "other"

    @classmethod
    def from_code(cls, raw: str | None) -> StoreErrorKind:
        if not raw:
            return cls.OTHER
        code = str(raw).strip().lower().replace("_", "-")
        try:
            return cls(code)
        except ValueError:
            return cls.OTHER


class StoreError(Exception):
    """Raised by RemoteStore implementations."""

    def __init__(self, kind: StoreErrorKind | str, message: str = "") -> None:
        self.kind = kind if isinstance(kind, StoreErrorKind) else StoreErrorKind.from_code(kind)
        self.message = message or self.kind.value
        super().__init__(self.message)


class TaskMirrorError(Exception):
    """Base class for every failure surfaced by the engine."""


class QuotaExceeded(TaskMirrorError):
    """The remote store rejected an operation for resource exhaustion."""


class PermissionDenied(TaskMirrorError):
    """The remote store refused access; needs operator intervention."""


class StoreUnavailable(TaskMirrorError):
    """The remote store could not be reached."""


class RemoteOperationFailed(TaskMirrorError):
    """Any other remote failure."""


class NotInitialized(TaskMirrorError):
    """A mutation was issued before the engine finished starting."""


_BY_KIND: dict[StoreErrorKind, type[TaskMirrorError]] = {
    StoreErrorKind.QUOTA_EXCEEDED: QuotaExceeded,
    StoreErrorKind.PERMISSION_DENIED: PermissionDenied,
    StoreErrorKind.UNAVAILABLE: StoreUnavailable,
    StoreErrorKind.OTHER: RemoteOperationFailed,
}


def _looks_like_quota(text: str) -> bool:
    low = text.lower()
    return "quota" in low or "resource-exhausted" in low or "resource_exhausted" in low


def classify_error(exc: BaseException) -> TaskMirrorError:
    """Convert any exception raised at an I/O boundary into the taxonomy."""
    if isinstance(exc, TaskMirrorError):
        return exc

    if isinstance(exc, StoreError):
        if exc.kind == StoreErrorKind.OTHER and _looks_like_quota(exc.message):
            err: TaskMirrorError = QuotaExceeded(exc.message)
        else:
            err = _BY_KIND[exc.kind](exc.message)
        err.__cause__ = exc
        return err

    # Adapters that forget to wrap still get a best-effort classification.
    code = getattr(exc, "code", None)
    if isinstance(code, str) and StoreErrorKind.from_code(code) != StoreErrorKind.OTHER:
        err = _BY_KIND[StoreErrorKind.from_code(code)](str(exc) or code)
    elif _looks_like_quota(str(exc)):
        err = QuotaExceeded(str(exc))
    elif isinstance(exc, (ConnectionError, TimeoutError)):
        err = StoreUnavailable(str(exc) or type(exc).__name__)
    else:
        err = RemoteOperationFailed(str(exc) or type(exc).__name__)
    err.__cause__ = exc
    return err


def is_quota_error(exc: BaseException) -> bool:
    return isinstance(classify_error(exc), QuotaExceeded)

import enum
import functools
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class ErrorKind(str, enum.Enum):
    validation = "validation_error"
    not_found = "not_found"
    permission_denied = "permission_denied"
    invalid_transition = "invalid_transition"
    insufficient_stock = "insufficient_stock"


class DomainError(Exception):
    """An expected, recoverable failure of a workflow operation."""

    kind: ErrorKind

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(DomainError):
    kind = ErrorKind.validation


class NotFound(DomainError):
    kind = ErrorKind.not_found


class PermissionDenied(DomainError):
    kind = ErrorKind.permission_denied


class InvalidTransition(DomainError):
    kind = ErrorKind.invalid_transition


class InsufficientStock(DomainError):
    kind = ErrorKind.insufficient_stock


@dataclass
class Result:
    data: Any = None
    error: Optional[ErrorKind] = None
    message: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, data: Any = None) -> "Result":
        return cls(data=data)

    @classmethod
    def failure(cls, exc: DomainError) -> "Result":
        return cls(error=exc.kind, message=exc.message, details=exc.details)


def operation(func):
    """Run a mutating operation and report domain failures as a Result.

    The wrapped function takes the SQLAlchemy session as its first argument.
    On a DomainError the session is rolled back so nothing the operation
    flushed survives. Other exceptions propagate unchanged.
    """

    @functools.wraps(func)
    def wrapper(db, *args, **kwargs):
        try:
            return Result.success(func(db, *args, **kwargs))
        except DomainError as exc:
            db.rollback()
            logger.info("%s failed: %s (%s)", func.__name__, exc.message, exc.kind.value)
            return Result.failure(exc)

    return wrapper

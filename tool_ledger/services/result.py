"""Result type for ledger operations that can fail."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

T = TypeVar("T")

LOGGER = logging.getLogger("tool_ledger.engine")


class ErrorKind(str, Enum):
    NOT_FOUND = "NotFound"
    INVALID_STATE = "InvalidState"
    INVALID_QUANTITY = "InvalidQuantity"
    INVALID_DATE = "InvalidDate"
    INVALID_INPUT = "InvalidInput"
    INSUFFICIENT_UNITS = "InsufficientUnits"
    INSUFFICIENT_STOCK = "InsufficientStock"
    UNIT_UNAVAILABLE = "UnitUnavailable"
    INCOMPLETE_RETURN = "IncompleteReturn"
    ALREADY_COMPLETED = "AlreadyCompleted"
    CONFLICT = "Conflict"
    STORAGE_ERROR = "StorageError"


class LedgerError(Exception):
    def __init__(self, kind: ErrorKind, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        return f"LedgerError({self.kind.value}, {self.message!r})"


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    error: LedgerError

    @property
    def ok(self) -> bool:
        return False

    @property
    def kind(self) -> ErrorKind:
        return self.error.kind


Result = Union[Ok[T], Err]


def run_atomic(db: Session, operation: str, work: Callable[[], T]) -> Result[T]:
    """Run ``work`` as one unit of work against ``db``.

    Commits on success. Any ``LedgerError`` or storage failure rolls the whole
    session back, so no partial effects are ever persisted, and is returned as
    ``Err`` instead of propagating. Any other exception is a programming
    error: the session is rolled back and the exception re-raised.
    """
    try:
        value = work()
        db.commit()
    except LedgerError as exc:
        db.rollback()
        LOGGER.info("%s rejected: kind=%s", operation, exc.kind.value)
        return Err(exc)
    except SQLAlchemyError:
        db.rollback()
        LOGGER.exception("%s failed in storage", operation)
        return Err(LedgerError(ErrorKind.STORAGE_ERROR, "Storage failure, nothing was changed.", {"operation": operation}))
    except Exception:
        db.rollback()
        LOGGER.exception("%s failed unexpectedly", operation)
        raise
    return Ok(value)

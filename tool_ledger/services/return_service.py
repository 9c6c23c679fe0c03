from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.orm import Session

from models.enums import ActivityAction, BorrowingStatus, EntityType
from models.ledger_models import BorrowingTransaction
from schemas.borrowings import ReturnItemDto, ReturnRequest, UnitReturnDto
from services.activity_service import log_activity
from services.borrowing_service import get_borrowing_or_raise, serialize_borrowing
from services.result import ErrorKind, LedgerError, Result, run_atomic
from services.tool_service import release_tool_units
from services.unit_store import coerce_condition, set_availability, worst_condition

LOGGER = logging.getLogger("tool_ledger.returns")


def _match_returns(
    transaction: BorrowingTransaction,
    request: ReturnRequest,
) -> dict[int, tuple[UnitReturnDto, ReturnItemDto]]:
    """Pair every borrowed unit of ``transaction`` with exactly one submitted return."""
    items_by_id = {item.BorrowingItemID: item for item in transaction.BorrowingItems}
    owner_of = {
        borrowed.BorrowedUnitID: item.BorrowingItemID
        for item in transaction.BorrowingItems
        for borrowed in item.BorrowedUnits
    }

    matched: dict[int, tuple[UnitReturnDto, ReturnItemDto]] = {}
    for submitted in request.items:
        if submitted.borrowingItemID not in items_by_id:
            raise LedgerError(
                ErrorKind.INCOMPLETE_RETURN,
                f"Borrowing item {submitted.borrowingItemID} is not part of this borrowing.",
                {"borrowingItemID": submitted.borrowingItemID},
            )
        for unit_return in submitted.unitReturns:
            owner = owner_of.get(unit_return.borrowedUnitID)
            if owner != submitted.borrowingItemID:
                raise LedgerError(
                    ErrorKind.INCOMPLETE_RETURN,
                    f"Borrowed unit {unit_return.borrowedUnitID} does not belong to item {submitted.borrowingItemID}.",
                    {"borrowedUnitID": unit_return.borrowedUnitID},
                )
            if unit_return.borrowedUnitID in matched:
                raise LedgerError(
                    ErrorKind.INCOMPLETE_RETURN,
                    f"Borrowed unit {unit_return.borrowedUnitID} was returned twice.",
                    {"borrowedUnitID": unit_return.borrowedUnitID},
                )
            matched[unit_return.borrowedUnitID] = (unit_return, submitted)

    missing = sorted(set(owner_of) - set(matched))
    if missing:
        raise LedgerError(
            ErrorKind.INCOMPLETE_RETURN,
            "All borrowed units must be returned together.",
            {"missingBorrowedUnitIDs": missing},
        )
    return matched


def return_borrowing(
    db: Session,
    transaction_id: int,
    request: ReturnRequest,
    *,
    actor_name: str | None = None,
    now: datetime | None = None,
) -> Result[BorrowingTransaction]:
    """Close a borrowing by returning every unit it holds.

    The whole return is one unit of work: unit conditions, availability,
    tool counters and the transaction status change together or not at all.
    """
    stamp = now or datetime.now()

    def work() -> BorrowingTransaction:
        transaction = get_borrowing_or_raise(db, transaction_id)
        if transaction.Status == BorrowingStatus.COMPLETED.value:
            raise LedgerError(ErrorKind.ALREADY_COMPLETED, "Borrowing is already completed.")

        matched = _match_returns(transaction, request)

        notes = transaction.Notes
        if request.notes:
            notes = f"{notes}\n\nReturn Notes: {request.notes}" if notes else f"Return Notes: {request.notes}"

        # A second concurrent return fails this claim.
        claim = db.execute(
            update(BorrowingTransaction)
            .where(BorrowingTransaction.BorrowingID == transaction_id)
            .where(BorrowingTransaction.Status != BorrowingStatus.COMPLETED.value)
            .values(
                Status=BorrowingStatus.COMPLETED.value,
                ReturnDate=stamp,
                Notes=notes,
                UpdatedDate=stamp,
            )
            .execution_options(synchronize_session="fetch")
        )
        if claim.rowcount != 1:
            raise LedgerError(ErrorKind.ALREADY_COMPLETED, "Borrowing is already completed.")

        released: Counter[int] = Counter()
        for item in transaction.BorrowingItems:
            conditions = []
            item_notes = None
            for borrowed in item.BorrowedUnits:
                unit_return, submitted = matched[borrowed.BorrowedUnitID]
                condition = coerce_condition(unit_return.returnCondition)
                item_notes = submitted.notes

                if set_availability(db, borrowed.ToolUnitID, True, stamp):
                    released[item.ToolID] += 1
                else:
                    LOGGER.warning(
                        "unit already available on return borrowing_id=%s tool_unit_id=%s",
                        transaction_id,
                        borrowed.ToolUnitID,
                    )
                unit = borrowed.ToolUnit
                unit.Condition = condition.value
                unit.Notes = unit_return.notes
                unit.UpdatedDate = stamp

                borrowed.ReturnCondition = condition.value
                borrowed.Notes = unit_return.notes
                conditions.append(condition)

            returned = worst_condition(conditions)
            item.ReturnCondition = returned.value if returned else None
            item.ReturnDate = stamp
            if item_notes:
                item.Notes = item_notes

        for tool_id, count in released.items():
            release_tool_units(db, tool_id, count, stamp)

        db.flush()
        log_activity(
            db,
            EntityType.BORROWING_TRANSACTION,
            transaction_id,
            ActivityAction.RETURN,
            actor_name=actor_name or transaction.BorrowerName,
            new_values=serialize_borrowing(transaction, stamp),
            metadata={"unitsReturned": len(matched)},
            created_at=stamp,
        )
        LOGGER.info("return committed borrowing_id=%s units=%s", transaction_id, len(matched))
        return transaction

    return run_atomic(db, "return_borrowing", work)

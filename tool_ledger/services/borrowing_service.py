from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session, selectinload

from models.enums import OPEN_BORROWING_STATES, ActivityAction, BorrowingStatus, EntityType
from models.ledger_models import BorrowedUnit, BorrowingItem, BorrowingTransaction, Tool, ToolUnit
from schemas.borrowings import BorrowItemDto, BorrowRequest
from services.activity_service import log_activity
from services.numbering import generate_borrowing_number
from services.result import ErrorKind, LedgerError, Result, run_atomic
from services.tool_service import get_tool_or_raise, reserve_tool_units
from services.unit_store import (
    SelectionPreference,
    coerce_preference,
    list_available,
    rank_units,
    set_availability,
    worst_condition,
)

LOGGER = logging.getLogger("tool_ledger.borrowing")

DEFAULT_MAX_EXTENSION_DAYS = 30
SECONDS_PER_DAY = 24 * 60 * 60


def is_overdue(transaction: BorrowingTransaction, now: datetime) -> bool:
    if transaction.Status == BorrowingStatus.COMPLETED.value:
        return False
    return transaction.DueDate is not None and now > transaction.DueDate


def effective_status(transaction: BorrowingTransaction, now: datetime) -> str:
    if transaction.Status == BorrowingStatus.COMPLETED.value:
        return BorrowingStatus.COMPLETED.value
    if is_overdue(transaction, now):
        return BorrowingStatus.OVERDUE.value
    return BorrowingStatus.ACTIVE.value


def days_overdue(transaction: BorrowingTransaction, now: datetime) -> int:
    if not is_overdue(transaction, now):
        return 0
    return math.floor((now - transaction.DueDate).total_seconds() / SECONDS_PER_DAY)


def can_extend(transaction: BorrowingTransaction, now: datetime) -> bool:
    return effective_status(transaction, now) in OPEN_BORROWING_STATES


def sweep_overdue(db: Session, now: datetime | None = None) -> Result[int]:
    """Materialise OVERDUE for every ACTIVE transaction past its due date.

    The stored status is a cache; ``effective_status`` stays the source of truth.
    """
    stamp = now or datetime.now()

    def work() -> int:
        result = db.execute(
            update(BorrowingTransaction)
            .where(BorrowingTransaction.Status == BorrowingStatus.ACTIVE.value)
            .where(BorrowingTransaction.DueDate < stamp)
            .values(Status=BorrowingStatus.OVERDUE.value, UpdatedDate=stamp)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount:
            LOGGER.info("overdue sweep promoted %s transaction(s)", result.rowcount)
        return result.rowcount or 0

    return run_atomic(db, "sweep_overdue", work)


def _borrowing_query():
    return select(BorrowingTransaction).options(
        selectinload(BorrowingTransaction.BorrowingItems).selectinload(BorrowingItem.Tool),
        selectinload(BorrowingTransaction.BorrowingItems)
        .selectinload(BorrowingItem.BorrowedUnits)
        .selectinload(BorrowedUnit.ToolUnit),
    )


def get_borrowing_or_raise(db: Session, transaction_id: int) -> BorrowingTransaction:
    transaction = db.execute(
        _borrowing_query().where(BorrowingTransaction.BorrowingID == transaction_id)
    ).scalars().first()
    if not transaction:
        raise LedgerError(
            ErrorKind.NOT_FOUND,
            f"Borrowing transaction {transaction_id} not found.",
            {"transactionID": transaction_id},
        )
    return transaction


def get_borrowing(db: Session, transaction_id: int) -> Result[BorrowingTransaction]:
    return run_atomic(db, "get_borrowing", lambda: get_borrowing_or_raise(db, transaction_id))


def list_borrowings(
    db: Session,
    statuses: list[str] | None = None,
    search: str | None = None,
) -> list[BorrowingTransaction]:
    stmt = _borrowing_query().order_by(BorrowingTransaction.BorrowingID.desc())
    if statuses:
        stmt = stmt.where(BorrowingTransaction.Status.in_(statuses))
    if search:
        pattern = f"%{search.strip()}%"
        stmt = stmt.where(
            or_(
                BorrowingTransaction.BorrowerName.ilike(pattern),
                BorrowingTransaction.Purpose.ilike(pattern),
                BorrowingTransaction.BorrowingNumber.ilike(pattern),
            )
        )
    return list(db.execute(stmt).scalars().all())


def _claim_listed_units(
    db: Session,
    tool: Tool,
    item: BorrowItemDto,
    now: datetime,
) -> list[tuple[ToolUnit, str]]:
    unit_ids = list(item.unitIDs)
    if len(set(unit_ids)) != len(unit_ids):
        raise LedgerError(ErrorKind.INVALID_INPUT, "The same unit was requested more than once.")
    if item.quantity is not None and item.quantity != len(unit_ids):
        raise LedgerError(ErrorKind.INVALID_INPUT, "Quantity does not match the number of selected units.")
    rows = db.execute(
        select(ToolUnit).where(ToolUnit.ToolUnitID.in_(unit_ids)).with_for_update()
    ).scalars().all()
    by_id = {unit.ToolUnitID: unit for unit in rows}
    missing = [unit_id for unit_id in unit_ids if unit_id not in by_id]
    if missing:
        raise LedgerError(ErrorKind.NOT_FOUND, f"Tool unit(s) not found: {missing}", {"unitIDs": missing})
    foreign = [unit_id for unit_id in unit_ids if by_id[unit_id].ToolID != tool.ToolID]
    if foreign:
        raise LedgerError(
            ErrorKind.INVALID_INPUT,
            f"Unit(s) {foreign} do not belong to tool {tool.ToolName}.",
            {"unitIDs": foreign, "toolID": tool.ToolID},
        )
    busy = [unit_id for unit_id in unit_ids if not by_id[unit_id].IsAvailable or by_id[unit_id].IsRetired]
    if busy:
        raise LedgerError(
            ErrorKind.UNIT_UNAVAILABLE,
            f"Some units of tool {tool.ToolName} are not available.",
            {"unitIDs": busy, "toolID": tool.ToolID},
        )

    taken = []
    for unit_id in unit_ids:
        unit = by_id[unit_id]
        condition_at_borrow = unit.Condition
        if not set_availability(db, unit_id, False, now):
            raise LedgerError(
                ErrorKind.UNIT_UNAVAILABLE,
                f"Unit {unit.UnitNumber} of {tool.ToolName} was taken by another request.",
                {"unitID": unit_id, "toolID": tool.ToolID},
            )
        taken.append((unit, condition_at_borrow))
    return taken


def _claim_ranked_units(
    db: Session,
    tool: Tool,
    quantity: int,
    preference: SelectionPreference | str,
    now: datetime,
) -> list[tuple[ToolUnit, str]]:
    """Claim ``quantity`` units in preference order.

    A candidate that another request flipped first is skipped and the next
    ranked unit is tried, so concurrent borrows of the same tool only fail
    when the candidates run out.
    """
    if quantity < 1:
        raise LedgerError(ErrorKind.INVALID_QUANTITY, "Quantity must be at least 1.")
    candidates = list_available(db, tool.ToolID)
    if len(candidates) < quantity:
        raise LedgerError(
            ErrorKind.INSUFFICIENT_UNITS,
            f"Requested {quantity} unit(s) of {tool.ToolName} but only {len(candidates)} available.",
            {"toolID": tool.ToolID, "requested": quantity, "available": len(candidates)},
        )

    taken = []
    for unit in rank_units(candidates, preference):
        if len(taken) == quantity:
            break
        condition_at_borrow = unit.Condition
        if set_availability(db, unit.ToolUnitID, False, now):
            taken.append((unit, condition_at_borrow))
        else:
            LOGGER.info(
                "unit claimed concurrently, trying next tool_id=%s tool_unit_id=%s",
                tool.ToolID,
                unit.ToolUnitID,
            )
    if len(taken) < quantity:
        raise LedgerError(
            ErrorKind.INSUFFICIENT_UNITS,
            f"Requested {quantity} unit(s) of {tool.ToolName} but only {len(taken)} could be claimed.",
            {"toolID": tool.ToolID, "requested": quantity, "available": len(taken)},
        )
    return taken


def _validate_borrow_request(request: BorrowRequest, now: datetime) -> None:
    if not (request.borrowerName or "").strip():
        raise LedgerError(ErrorKind.INVALID_INPUT, "Borrower name is required.")
    if not (request.purpose or "").strip():
        raise LedgerError(ErrorKind.INVALID_INPUT, "Purpose is required.")
    if not request.items:
        raise LedgerError(ErrorKind.INVALID_INPUT, "At least one item is required.")
    if request.dueDate <= now:
        raise LedgerError(ErrorKind.INVALID_DATE, "Due date must be in the future.")


def borrow_tools(
    db: Session,
    request: BorrowRequest,
    *,
    now: datetime | None = None,
    preference: SelectionPreference | str = SelectionPreference.BEST_FIRST,
) -> Result[BorrowingTransaction]:
    stamp = now or datetime.now()

    def work() -> BorrowingTransaction:
        _validate_borrow_request(request, stamp)
        order = coerce_preference(preference)

        transaction = BorrowingTransaction(
            BorrowingNumber=generate_borrowing_number(db, stamp.date()),
            BorrowerName=request.borrowerName.strip(),
            BorrowDate=stamp,
            DueDate=request.dueDate,
            Status=BorrowingStatus.ACTIVE.value,
            Purpose=request.purpose.strip(),
            Notes=request.notes,
            CreatedDate=stamp,
            UpdatedDate=stamp,
        )
        db.add(transaction)

        items_by_tool: dict[int, BorrowingItem] = {}
        for requested in request.items:
            tool = get_tool_or_raise(db, requested.toolID)
            if requested.unitIDs:
                taken = _claim_listed_units(db, tool, requested, stamp)
            elif requested.quantity is None:
                raise LedgerError(ErrorKind.INVALID_INPUT, "Each item needs unitIDs or a quantity.")
            else:
                taken = _claim_ranked_units(db, tool, requested.quantity, order, stamp)
            reserve_tool_units(db, tool.ToolID, len(taken), stamp)

            line = items_by_tool.get(tool.ToolID)
            if line is None:
                line = BorrowingItem(ToolID=tool.ToolID, Tool=tool, Quantity=0, Notes=requested.notes)
                items_by_tool[tool.ToolID] = line
                transaction.BorrowingItems.append(line)
            for unit, condition_at_borrow in taken:
                line.BorrowedUnits.append(
                    BorrowedUnit(ToolUnitID=unit.ToolUnitID, ToolUnit=unit, OriginalCondition=condition_at_borrow)
                )
            line.Quantity = len(line.BorrowedUnits)
            line.OriginalCondition = worst_condition(bu.OriginalCondition for bu in line.BorrowedUnits).value

        db.flush()
        total_units = sum(line.Quantity for line in items_by_tool.values())
        log_activity(
            db,
            EntityType.BORROWING_TRANSACTION,
            transaction.BorrowingID,
            ActivityAction.BORROW,
            actor_name=transaction.BorrowerName,
            new_values=serialize_borrowing(transaction, stamp),
            metadata={"itemCount": len(items_by_tool), "totalQuantity": total_units},
            created_at=stamp,
        )
        LOGGER.info(
            "borrow committed borrowing_id=%s tools=%s units=%s",
            transaction.BorrowingID,
            len(items_by_tool),
            total_units,
        )
        return transaction

    return run_atomic(db, "borrow_tools", work)


def extend_borrowing(
    db: Session,
    transaction_id: int,
    new_due_date: datetime,
    reason: str,
    *,
    actor_name: str | None = None,
    now: datetime | None = None,
    max_extension_days: int | None = DEFAULT_MAX_EXTENSION_DAYS,
) -> Result[BorrowingTransaction]:
    stamp = now or datetime.now()

    def work() -> BorrowingTransaction:
        transaction = get_borrowing_or_raise(db, transaction_id)
        if not can_extend(transaction, stamp):
            raise LedgerError(ErrorKind.INVALID_STATE, "Can only extend active or overdue borrowings.")
        clean_reason = (reason or "").strip()
        if not clean_reason:
            raise LedgerError(ErrorKind.INVALID_INPUT, "Reason is required.")
        if new_due_date <= stamp:
            raise LedgerError(ErrorKind.INVALID_DATE, "New due date must be in the future.")
        if new_due_date <= transaction.DueDate:
            raise LedgerError(ErrorKind.INVALID_DATE, "New due date must be later than current due date.")
        if max_extension_days is not None and new_due_date > stamp + timedelta(days=max_extension_days):
            raise LedgerError(
                ErrorKind.INVALID_DATE,
                f"Extension cannot be more than {max_extension_days} days from today.",
            )

        old_due = transaction.DueDate
        old_status = transaction.Status
        line = f"Extended on {stamp:%Y-%m-%d}: {clean_reason}"
        notes = f"{transaction.Notes}\n\n{line}" if transaction.Notes else line

        # Old due date and open status must still hold.
        result = db.execute(
            update(BorrowingTransaction)
            .where(BorrowingTransaction.BorrowingID == transaction_id)
            .where(BorrowingTransaction.Status != BorrowingStatus.COMPLETED.value)
            .where(BorrowingTransaction.DueDate == old_due)
            .values(
                DueDate=new_due_date,
                Status=BorrowingStatus.ACTIVE.value,
                Notes=notes,
                UpdatedDate=stamp,
            )
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount != 1:
            raise LedgerError(ErrorKind.INVALID_STATE, "Borrowing changed while extending, reload and retry.")

        log_activity(
            db,
            EntityType.BORROWING_TRANSACTION,
            transaction_id,
            ActivityAction.EXTEND,
            actor_name=actor_name or transaction.BorrowerName,
            old_values={"dueDate": old_due, "status": old_status},
            new_values={"dueDate": new_due_date, "status": BorrowingStatus.ACTIVE.value},
            metadata={
                "reason": clean_reason,
                "extensionDays": math.ceil((new_due_date - old_due).total_seconds() / SECONDS_PER_DAY),
            },
            created_at=stamp,
        )
        LOGGER.info("borrowing extended borrowing_id=%s", transaction_id)
        return transaction

    return run_atomic(db, "extend_borrowing", work)


def serialize_borrowing(transaction: BorrowingTransaction, now: datetime | None = None) -> dict:
    stamp = now or datetime.now()
    items = []
    for item in transaction.BorrowingItems:
        items.append(
            {
                "borrowingItemID": item.BorrowingItemID,
                "toolID": item.ToolID,
                "toolName": item.Tool.ToolName if item.Tool else None,
                "quantity": item.Quantity,
                "originalCondition": item.OriginalCondition,
                "returnCondition": item.ReturnCondition,
                "returnDate": item.ReturnDate,
                "notes": item.Notes,
                "borrowedUnits": [
                    {
                        "borrowedUnitID": borrowed.BorrowedUnitID,
                        "toolUnitID": borrowed.ToolUnitID,
                        "unitNumber": borrowed.ToolUnit.UnitNumber if borrowed.ToolUnit else None,
                        "originalCondition": borrowed.OriginalCondition,
                        "returnCondition": borrowed.ReturnCondition,
                        "notes": borrowed.Notes,
                    }
                    for borrowed in item.BorrowedUnits
                ],
            }
        )
    return {
        "borrowingID": transaction.BorrowingID,
        "borrowingNumber": transaction.BorrowingNumber,
        "borrowerName": transaction.BorrowerName,
        "purpose": transaction.Purpose,
        "status": effective_status(transaction, stamp),
        "borrowDate": transaction.BorrowDate,
        "dueDate": transaction.DueDate,
        "returnDate": transaction.ReturnDate,
        "notes": transaction.Notes,
        "isOverdue": is_overdue(transaction, stamp),
        "daysOverdue": days_overdue(transaction, stamp),
        "canExtend": can_extend(transaction, stamp),
        "totalItems": sum(int(item.Quantity or 0) for item in transaction.BorrowingItems),
        "itemsReturned": sum(1 for item in transaction.BorrowingItems if item.ReturnDate),
        "borrowingItems": items,
    }

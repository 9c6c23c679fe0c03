from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime
from enum import Enum

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, selectinload

from models.enums import CONDITION_RANK, ActivityAction, EntityType, ToolCondition
from models.ledger_models import BorrowedUnit, BorrowingItem, Tool, ToolUnit
from services.activity_service import log_activity
from services.result import ErrorKind, LedgerError, Result, run_atomic


class SelectionPreference(str, Enum):
    BEST_FIRST = "BEST_FIRST"
    WORST_FIRST = "WORST_FIRST"


def coerce_condition(raw: ToolCondition | str | None) -> ToolCondition:
    if isinstance(raw, ToolCondition):
        return raw
    try:
        return ToolCondition(str(raw or "").strip().upper())
    except ValueError as exc:
        raise LedgerError(ErrorKind.INVALID_INPUT, f"Unknown condition: {raw}") from exc


def condition_rank(raw: ToolCondition | str | None) -> int:
    try:
        return CONDITION_RANK[coerce_condition(raw)]
    except LedgerError:
        return 0


def worst_condition(conditions: Iterable[ToolCondition | str]) -> ToolCondition | None:
    ranked = [coerce_condition(c) for c in conditions]
    if not ranked:
        return None
    return min(ranked, key=lambda c: CONDITION_RANK[c])


def coerce_preference(raw: SelectionPreference | str | None) -> SelectionPreference:
    if isinstance(raw, SelectionPreference):
        return raw
    try:
        return SelectionPreference(str(raw or "").strip().upper())
    except ValueError as exc:
        raise LedgerError(ErrorKind.INVALID_INPUT, f"Unknown selection preference: {raw}") from exc


def rank_units(
    available_units: Sequence[ToolUnit],
    preference: SelectionPreference | str = SelectionPreference.BEST_FIRST,
) -> list[ToolUnit]:
    direction = -1 if coerce_preference(preference) == SelectionPreference.BEST_FIRST else 1
    return sorted(
        available_units,
        key=lambda unit: (direction * condition_rank(unit.Condition), unit.UnitNumber),
    )


def select_units(
    available_units: Sequence[ToolUnit],
    quantity: int,
    preference: SelectionPreference | str = SelectionPreference.BEST_FIRST,
) -> list[int]:
    """Pick ``quantity`` unit ids out of ``available_units``.

    Units are ranked by condition (best first unless ``preference`` says
    otherwise), ties broken by ascending unit number so the outcome is
    deterministic.
    """
    if quantity < 1:
        raise LedgerError(ErrorKind.INVALID_QUANTITY, "Quantity must be at least 1.")
    if len(available_units) < quantity:
        raise LedgerError(
            ErrorKind.INSUFFICIENT_UNITS,
            f"Requested {quantity} unit(s) but only {len(available_units)} available.",
            {"requested": quantity, "available": len(available_units)},
        )
    return [unit.ToolUnitID for unit in rank_units(available_units, preference)[:quantity]]


def select_units_to_retire(available_units: Sequence[ToolUnit], count: int) -> list[ToolUnit]:
    # Worst condition goes first, newest unit number breaks ties.
    ranked = sorted(
        available_units,
        key=lambda unit: (condition_rank(unit.Condition), -unit.UnitNumber),
    )
    return list(ranked[:count])


def next_unit_number(db: Session, tool: Tool) -> int:
    current = 0
    if tool.ToolID is not None:
        current = db.execute(
            select(func.max(ToolUnit.UnitNumber)).where(ToolUnit.ToolID == tool.ToolID)
        ).scalar() or 0
    for unit in tool.Units:
        if unit.UnitNumber and unit.UnitNumber > current:
            current = unit.UnitNumber
    return current + 1


def create_units(
    db: Session,
    tool: Tool,
    count: int,
    initial_condition: ToolCondition | str = ToolCondition.GOOD,
    now: datetime | None = None,
) -> list[ToolUnit]:
    if count < 0:
        raise LedgerError(ErrorKind.INVALID_QUANTITY, "Unit count cannot be negative.")
    condition = coerce_condition(initial_condition)
    stamp = now or datetime.now()
    start = next_unit_number(db, tool)
    units = []
    for offset in range(count):
        unit = ToolUnit(
            UnitNumber=start + offset,
            Condition=condition.value,
            IsAvailable=True,
            IsRetired=False,
            CreatedDate=stamp,
            UpdatedDate=stamp,
        )
        tool.Units.append(unit)
        units.append(unit)
    return units


def get_unit_or_raise(db: Session, unit_id: int) -> ToolUnit:
    unit = db.get(ToolUnit, unit_id)
    if not unit:
        raise LedgerError(ErrorKind.NOT_FOUND, f"Tool unit {unit_id} not found.", {"unitID": unit_id})
    return unit


def apply_condition(unit: ToolUnit, condition: ToolCondition | str, notes: str | None, now: datetime) -> dict:
    previous = {"condition": unit.Condition, "notes": unit.Notes}
    unit.Condition = coerce_condition(condition).value
    # None leaves the existing notes in place.
    if notes is not None:
        unit.Notes = notes
    unit.UpdatedDate = now
    return previous


def set_condition(
    db: Session,
    unit_id: int,
    condition: ToolCondition | str,
    notes: str | None = None,
    now: datetime | None = None,
) -> Result[ToolUnit]:
    stamp = now or datetime.now()

    def work() -> ToolUnit:
        unit = get_unit_or_raise(db, unit_id)
        previous = apply_condition(unit, condition, notes, stamp)
        log_activity(
            db,
            EntityType.TOOL_UNIT,
            unit.ToolUnitID,
            ActivityAction.UPDATE,
            old_values=previous,
            new_values={"condition": unit.Condition, "notes": unit.Notes},
            metadata={"toolID": unit.ToolID, "unitNumber": unit.UnitNumber},
            created_at=stamp,
        )
        return unit

    return run_atomic(db, "set_condition", work)


def bulk_update_conditions(
    db: Session,
    updates: Sequence[tuple[int, ToolCondition | str, str | None]],
    now: datetime | None = None,
) -> Result[list[ToolUnit]]:
    stamp = now or datetime.now()

    def work() -> list[ToolUnit]:
        changed = []
        for unit_id, condition, notes in updates:
            unit = get_unit_or_raise(db, unit_id)
            previous = apply_condition(unit, condition, notes, stamp)
            log_activity(
                db,
                EntityType.TOOL_UNIT,
                unit.ToolUnitID,
                ActivityAction.UPDATE,
                old_values=previous,
                new_values={"condition": unit.Condition, "notes": unit.Notes},
                metadata={"toolID": unit.ToolID, "unitNumber": unit.UnitNumber, "bulk": True},
                created_at=stamp,
            )
            changed.append(unit)
        return changed

    return run_atomic(db, "bulk_update_conditions", work)


def set_availability(db: Session, unit_id: int, is_available: bool, now: datetime | None = None) -> bool:
    """Flip one unit's availability flag with a compare-and-swap UPDATE.

    Returns False when the unit was not in the opposite state, which is how a
    lost race between two borrowers shows up.
    """
    result = db.execute(
        update(ToolUnit)
        .where(ToolUnit.ToolUnitID == unit_id)
        .where(ToolUnit.IsAvailable == (not is_available))
        .where(ToolUnit.IsRetired == False)  # noqa: E712
        .values(IsAvailable=is_available, UpdatedDate=now or datetime.now())
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount == 1


def retire_unit(db: Session, unit_id: int, now: datetime | None = None) -> bool:
    # Only an available unit can be retired; a lent unit stays with its borrower.
    result = db.execute(
        update(ToolUnit)
        .where(ToolUnit.ToolUnitID == unit_id)
        .where(ToolUnit.IsAvailable == True)  # noqa: E712
        .where(ToolUnit.IsRetired == False)  # noqa: E712
        .values(IsAvailable=False, IsRetired=True, UpdatedDate=now or datetime.now())
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount == 1


def list_available(db: Session, tool_id: int) -> list[ToolUnit]:
    return list(
        db.execute(
            select(ToolUnit)
            .where(ToolUnit.ToolID == tool_id)
            .where(ToolUnit.IsAvailable == True)  # noqa: E712
            .where(ToolUnit.IsRetired == False)  # noqa: E712
            .order_by(ToolUnit.UnitNumber)
        ).scalars().all()
    )


def list_units(db: Session, tool_id: int, include_retired: bool = False) -> list[ToolUnit]:
    stmt = select(ToolUnit).where(ToolUnit.ToolID == tool_id).order_by(ToolUnit.UnitNumber)
    if not include_retired:
        stmt = stmt.where(ToolUnit.IsRetired == False)  # noqa: E712
    return list(db.execute(stmt).scalars().all())


def unit_history(db: Session, unit_id: int) -> Result[dict]:
    def work() -> dict:
        unit = get_unit_or_raise(db, unit_id)
        rows = db.execute(
            select(BorrowedUnit)
            .options(selectinload(BorrowedUnit.BorrowingItem).selectinload(BorrowingItem.BorrowingTransaction))
            .where(BorrowedUnit.ToolUnitID == unit_id)
            .order_by(BorrowedUnit.BorrowedUnitID.desc())
        ).scalars().all()
        history = []
        for row in rows:
            transaction = row.BorrowingItem.BorrowingTransaction
            history.append(
                {
                    "borrowingID": transaction.BorrowingID,
                    "borrowingNumber": transaction.BorrowingNumber,
                    "borrowerName": transaction.BorrowerName,
                    "purpose": transaction.Purpose,
                    "status": transaction.Status,
                    "borrowDate": transaction.BorrowDate,
                    "dueDate": transaction.DueDate,
                    "returnDate": transaction.ReturnDate,
                    "originalCondition": row.OriginalCondition,
                    "returnCondition": row.ReturnCondition,
                    "notes": row.Notes,
                }
            )
        payload = serialize_unit(unit)
        payload["history"] = history
        payload["timesBorrowed"] = len(history)
        return payload

    return run_atomic(db, "unit_history", work)


def serialize_unit(unit: ToolUnit) -> dict:
    return {
        "toolUnitID": unit.ToolUnitID,
        "toolID": unit.ToolID,
        "unitNumber": unit.UnitNumber,
        "condition": unit.Condition,
        "isAvailable": bool(unit.IsAvailable),
        "isRetired": bool(unit.IsRetired),
        "notes": unit.Notes,
        "createdDate": unit.CreatedDate,
        "updatedDate": unit.UpdatedDate,
    }

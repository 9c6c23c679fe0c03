from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session

from models.enums import OPEN_BORROWING_STATES, ActivityAction, CategoryType, EntityType, ToolCondition
from models.ledger_models import BorrowingItem, BorrowingTransaction, Tool, ToolUnit
from services.activity_service import log_activity
from services.category_service import require_category
from services.numbering import generate_tool_number
from services.result import ErrorKind, LedgerError, Result, run_atomic
from services.unit_store import create_units, list_available, retire_unit, select_units_to_retire, serialize_unit

LOGGER = logging.getLogger("tool_ledger.tools")

TOOL_DETAIL_FIELDS = {
    "toolName": "ToolName",
    "categoryID": "CategoryID",
    "location": "Location",
    "supplier": "Supplier",
    "purchaseDate": "PurchaseDate",
    "purchasePrice": "PurchasePrice",
    "notes": "Notes",
}


def _map_tool_field(field: str) -> str:
    mapped = TOOL_DETAIL_FIELDS.get(field)
    if not mapped:
        raise LedgerError(ErrorKind.INVALID_INPUT, f"Field '{field}' cannot be edited.")
    return mapped


def borrowed_quantity(tool: Tool) -> int:
    return int(tool.TotalQuantity or 0) - int(tool.AvailableQuantity or 0)


def get_tool_or_raise(db: Session, tool_id: int) -> Tool:
    tool = db.get(Tool, tool_id)
    if not tool:
        raise LedgerError(ErrorKind.NOT_FOUND, f"Tool {tool_id} not found.", {"toolID": tool_id})
    return tool


def count_open_borrowing_items(db: Session, tool_id: int) -> int:
    return db.execute(
        select(func.count(BorrowingItem.BorrowingItemID))
        .join(BorrowingTransaction, BorrowingTransaction.BorrowingID == BorrowingItem.BorrowingID)
        .where(BorrowingItem.ToolID == tool_id)
        .where(BorrowingTransaction.Status.in_(OPEN_BORROWING_STATES))
    ).scalar() or 0


def count_borrowing_items(db: Session, tool_id: int) -> int:
    return db.execute(
        select(func.count(BorrowingItem.BorrowingItemID)).where(BorrowingItem.ToolID == tool_id)
    ).scalar() or 0


def has_active_borrowing(db: Session, tool_id: int) -> bool:
    return count_open_borrowing_items(db, tool_id) > 0


def reserve_tool_units(db: Session, tool_id: int, count: int, now: datetime) -> None:
    """Decrement the available counter as one conditional UPDATE."""
    result = db.execute(
        update(Tool)
        .where(Tool.ToolID == tool_id)
        .where(Tool.AvailableQuantity >= count)
        .values(AvailableQuantity=Tool.AvailableQuantity - count, UpdatedDate=now)
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount != 1:
        raise LedgerError(
            ErrorKind.INSUFFICIENT_UNITS,
            f"Tool {tool_id} does not have {count} unit(s) available.",
            {"toolID": tool_id, "requested": count},
        )


def release_tool_units(db: Session, tool_id: int, count: int, now: datetime) -> None:
    restored = Tool.AvailableQuantity + count
    db.execute(
        update(Tool)
        .where(Tool.ToolID == tool_id)
        .values(
            AvailableQuantity=case((restored > Tool.TotalQuantity, Tool.TotalQuantity), else_=restored),
            UpdatedDate=now,
        )
        .execution_options(synchronize_session="fetch")
    )


def create_tool(
    db: Session,
    *,
    name: str,
    category_id: int,
    total_quantity: int,
    initial_condition: ToolCondition | str = ToolCondition.GOOD,
    location: str | None = None,
    supplier: str | None = None,
    purchase_date: datetime | None = None,
    purchase_price: Decimal | float | None = None,
    notes: str | None = None,
    actor_name: str | None = None,
    now: datetime | None = None,
) -> Result[Tool]:
    stamp = now or datetime.now()

    def work() -> Tool:
        clean_name = (name or "").strip()
        if not clean_name:
            raise LedgerError(ErrorKind.INVALID_INPUT, "Tool name is required.")
        if total_quantity < 1:
            raise LedgerError(ErrorKind.INVALID_QUANTITY, "Total quantity must be at least 1.")
        require_category(db, category_id, CategoryType.TOOL)

        tool = Tool(
            ToolNumber=generate_tool_number(db),
            ToolName=clean_name,
            CategoryID=category_id,
            TotalQuantity=total_quantity,
            AvailableQuantity=total_quantity,
            Location=location,
            Supplier=supplier,
            PurchaseDate=purchase_date,
            PurchasePrice=purchase_price,
            Notes=notes,
            CreatedDate=stamp,
            UpdatedDate=stamp,
        )
        db.add(tool)
        create_units(db, tool, total_quantity, initial_condition, stamp)
        db.flush()
        log_activity(
            db,
            EntityType.TOOL,
            tool.ToolID,
            ActivityAction.CREATE,
            actor_name=actor_name,
            new_values=serialize_tool(tool),
            metadata={"unitsCreated": total_quantity},
            created_at=stamp,
        )
        LOGGER.info("tool created tool_id=%s units=%s", tool.ToolID, total_quantity)
        return tool

    return run_atomic(db, "create_tool", work)


def _apply_quantity_adjustment(db: Session, tool: Tool, new_total: int, now: datetime) -> dict[str, Any]:
    if new_total < 1:
        raise LedgerError(ErrorKind.INVALID_QUANTITY, "Total quantity must be at least 1.")

    old_total = int(tool.TotalQuantity or 0)
    old_available = int(tool.AvailableQuantity or 0)
    borrowed = old_total - old_available
    if new_total < borrowed:
        raise LedgerError(
            ErrorKind.INVALID_QUANTITY,
            f"Cannot reduce total quantity below borrowed amount ({borrowed} currently borrowed).",
            {"toolID": tool.ToolID, "borrowed": borrowed, "requestedTotal": new_total},
        )

    delta = new_total - old_total
    new_available = min(max(old_available + delta, 0), new_total)

    # Optimistic check: the counters must still be the ones the rule was computed from.
    result = db.execute(
        update(Tool)
        .where(Tool.ToolID == tool.ToolID)
        .where(Tool.TotalQuantity == old_total)
        .where(Tool.AvailableQuantity == old_available)
        .values(TotalQuantity=new_total, AvailableQuantity=new_available, UpdatedDate=now)
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount != 1:
        raise LedgerError(ErrorKind.CONFLICT, "Tool quantities changed concurrently, reload and retry.")

    created: list[ToolUnit] = []
    retired: list[ToolUnit] = []
    if delta > 0:
        created = create_units(db, tool, delta, ToolCondition.EXCELLENT, now)
    elif delta < 0:
        candidates = select_units_to_retire(list_available(db, tool.ToolID), -delta)
        if len(candidates) < -delta:
            raise LedgerError(
                ErrorKind.INVALID_QUANTITY,
                "Not enough available units to retire.",
                {"toolID": tool.ToolID, "toRetire": -delta, "available": len(candidates)},
            )
        for unit in candidates:
            if not retire_unit(db, unit.ToolUnitID, now):
                raise LedgerError(ErrorKind.UNIT_UNAVAILABLE, f"Unit {unit.UnitNumber} was lent out concurrently.")
            retired.append(unit)

    db.flush()
    return {
        "oldTotal": old_total,
        "oldAvailable": old_available,
        "newTotal": new_total,
        "newAvailable": new_available,
        "createdUnits": [unit.UnitNumber for unit in created],
        "retiredUnits": [unit.UnitNumber for unit in retired],
    }


def adjust_tool_quantity(
    db: Session,
    tool_id: int,
    new_total: int,
    actor_name: str | None = None,
    now: datetime | None = None,
) -> Result[Tool]:
    stamp = now or datetime.now()

    def work() -> Tool:
        tool = get_tool_or_raise(db, tool_id)
        change = _apply_quantity_adjustment(db, tool, new_total, stamp)
        log_activity(
            db,
            EntityType.TOOL,
            tool.ToolID,
            ActivityAction.UPDATE,
            actor_name=actor_name,
            old_values={"totalQuantity": change["oldTotal"], "availableQuantity": change["oldAvailable"]},
            new_values={"totalQuantity": change["newTotal"], "availableQuantity": change["newAvailable"]},
            metadata={"createdUnits": change["createdUnits"], "retiredUnits": change["retiredUnits"]},
            created_at=stamp,
        )
        LOGGER.info(
            "tool quantity adjusted tool_id=%s total=%s->%s",
            tool.ToolID,
            change["oldTotal"],
            change["newTotal"],
        )
        return tool

    return run_atomic(db, "adjust_tool_quantity", work)


def update_tool_details(
    db: Session,
    tool_id: int,
    changes: dict[str, Any],
    actor_name: str | None = None,
    now: datetime | None = None,
) -> Result[Tool]:
    stamp = now or datetime.now()

    def work() -> Tool:
        tool = get_tool_or_raise(db, tool_id)
        before = serialize_tool(tool)
        pending = dict(changes)
        new_total = pending.pop("totalQuantity", None)

        for field, value in pending.items():
            column = _map_tool_field(field)
            if column == "CategoryID":
                require_category(db, value, CategoryType.TOOL)
            if column == "ToolName":
                value = (value or "").strip()
                if not value:
                    raise LedgerError(ErrorKind.INVALID_INPUT, "Tool name is required.")
            setattr(tool, column, value)
        tool.UpdatedDate = stamp

        metadata = None
        if new_total is not None and int(new_total) != int(tool.TotalQuantity):
            metadata = _apply_quantity_adjustment(db, tool, int(new_total), stamp)

        db.flush()
        log_activity(
            db,
            EntityType.TOOL,
            tool.ToolID,
            ActivityAction.UPDATE,
            actor_name=actor_name,
            old_values=before,
            new_values=serialize_tool(tool),
            metadata=metadata,
            created_at=stamp,
        )
        return tool

    return run_atomic(db, "update_tool_details", work)


def delete_tool(db: Session, tool_id: int, actor_name: str | None = None, now: datetime | None = None) -> Result[None]:
    stamp = now or datetime.now()

    def work() -> None:
        tool = get_tool_or_raise(db, tool_id)
        open_items = count_open_borrowing_items(db, tool_id)
        if open_items > 0:
            raise LedgerError(
                ErrorKind.CONFLICT,
                "Cannot delete tool. It has active borrowings.",
                {"toolID": tool_id, "openBorrowingItems": open_items},
            )
        history_items = count_borrowing_items(db, tool_id)
        if history_items > 0:
            raise LedgerError(
                ErrorKind.CONFLICT,
                "Cannot delete tool. It has borrowing history.",
                {"toolID": tool_id, "borrowingItems": history_items},
            )
        log_activity(
            db,
            EntityType.TOOL,
            tool_id,
            ActivityAction.DELETE,
            actor_name=actor_name,
            old_values=serialize_tool(tool),
            created_at=stamp,
        )
        db.delete(tool)
        LOGGER.info("tool deleted tool_id=%s", tool_id)

    return run_atomic(db, "delete_tool", work)


def list_tools(db: Session, availability: str | None = None) -> list[Tool]:
    stmt = select(Tool).order_by(Tool.ToolName)
    if availability == "available":
        stmt = stmt.where(Tool.AvailableQuantity > 0)
    elif availability == "unavailable":
        stmt = stmt.where(Tool.AvailableQuantity == 0)
    elif availability == "borrowed":
        stmt = stmt.where(Tool.AvailableQuantity < Tool.TotalQuantity)
    return list(db.execute(stmt).scalars().all())


def check_tool_invariants(db: Session, tool: Tool) -> list[str]:
    """Return a description of every way ``tool`` disagrees with its units."""
    problems = []
    units = db.execute(
        select(ToolUnit).where(ToolUnit.ToolID == tool.ToolID).where(ToolUnit.IsRetired == False)  # noqa: E712
    ).scalars().all()
    total = int(tool.TotalQuantity or 0)
    available = int(tool.AvailableQuantity or 0)
    if not 0 <= available <= total:
        problems.append(f"availableQuantity={available} outside 0..{total}")
    if total != len(units):
        problems.append(f"totalQuantity={total} but {len(units)} active unit(s)")
    free_units = sum(1 for unit in units if unit.IsAvailable)
    if available != free_units:
        problems.append(f"availableQuantity={available} but {free_units} available unit(s)")
    return problems


def serialize_tool(tool: Tool, has_active: bool | None = None, include_units: bool = False) -> dict:
    payload = {
        "toolID": tool.ToolID,
        "toolNumber": tool.ToolNumber,
        "toolName": tool.ToolName,
        "categoryID": tool.CategoryID,
        "totalQuantity": tool.TotalQuantity,
        "availableQuantity": tool.AvailableQuantity,
        "borrowedQuantity": borrowed_quantity(tool),
        "location": tool.Location,
        "supplier": tool.Supplier,
        "purchaseDate": tool.PurchaseDate,
        "purchasePrice": tool.PurchasePrice,
        "notes": tool.Notes,
        "createdDate": tool.CreatedDate,
        "updatedDate": tool.UpdatedDate,
    }
    if has_active is not None:
        payload["hasActiveBorrowing"] = has_active
    if include_units:
        payload["units"] = [serialize_unit(unit) for unit in tool.Units if not unit.IsRetired]
    return payload

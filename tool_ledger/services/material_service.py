from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from models.enums import ActivityAction, CategoryType, EntityType
from models.ledger_models import ConsumptionItem, Material
from services.activity_service import log_activity
from services.category_service import require_category
from services.numbering import generate_material_number
from services.result import ErrorKind, LedgerError, Result, run_atomic

LOGGER = logging.getLogger("tool_ledger.materials")


MATERIAL_DETAIL_FIELDS = {
    "materialName": "MaterialName",
    "categoryID": "CategoryID",
    "currentQuantity": "CurrentQuantity",
    "thresholdQuantity": "ThresholdQuantity",
    "unit": "Unit",
    "location": "Location",
    "supplier": "Supplier",
    "unitPrice": "UnitPrice",
    "notes": "Notes",
}


def to_decimal(value: Decimal | float | int | str | None, field: str) -> Decimal:
    if value is None:
        raise LedgerError(ErrorKind.INVALID_QUANTITY, f"{field} is required.")
    try:
        amount = Decimal(str(value))
    except (ArithmeticError, ValueError) as exc:
        raise LedgerError(ErrorKind.INVALID_QUANTITY, f"{field} must be a number.") from exc
    if not amount.is_finite():
        raise LedgerError(ErrorKind.INVALID_QUANTITY, f"{field} must be a finite number.")
    return amount


def _optional_price(value: Decimal | float | None) -> Decimal | None:
    if value is None:
        return None
    price = to_decimal(value, "Unit price")
    if price < 0:
        raise LedgerError(ErrorKind.INVALID_QUANTITY, "Unit price cannot be negative.")
    return price


def is_low_stock(material: Material) -> bool:
    return Decimal(str(material.CurrentQuantity or 0)) <= Decimal(str(material.ThresholdQuantity or 0))


def get_material_or_raise(db: Session, material_id: int) -> Material:
    material = db.get(Material, material_id)
    if not material:
        raise LedgerError(ErrorKind.NOT_FOUND, f"Material {material_id} not found.", {"materialID": material_id})
    return material


def _validate_bounds(current: Decimal, threshold: Decimal) -> None:
    if current < 0:
        raise LedgerError(ErrorKind.INVALID_QUANTITY, "Current quantity cannot be negative.")
    if threshold < 0:
        raise LedgerError(ErrorKind.INVALID_QUANTITY, "Threshold quantity cannot be negative.")


def create_material(
    db: Session,
    *,
    name: str,
    category_id: int,
    current_quantity: Decimal | float,
    threshold_quantity: Decimal | float,
    unit: str,
    location: str | None = None,
    supplier: str | None = None,
    unit_price: Decimal | float | None = None,
    notes: str | None = None,
    actor_name: str | None = None,
    now: datetime | None = None,
) -> Result[Material]:
    stamp = now or datetime.now()

    def work() -> Material:
        clean_name = (name or "").strip()
        if not clean_name:
            raise LedgerError(ErrorKind.INVALID_INPUT, "Material name is required.")
        if not (unit or "").strip():
            raise LedgerError(ErrorKind.INVALID_INPUT, "Unit is required.")
        current = to_decimal(current_quantity, "Current quantity")
        threshold = to_decimal(threshold_quantity, "Threshold quantity")
        _validate_bounds(current, threshold)
        require_category(db, category_id, CategoryType.MATERIAL)

        material = Material(
            MaterialNumber=generate_material_number(db),
            MaterialName=clean_name,
            CategoryID=category_id,
            CurrentQuantity=current,
            ThresholdQuantity=threshold,
            Unit=unit.strip(),
            Location=location,
            Supplier=supplier,
            UnitPrice=_optional_price(unit_price),
            Notes=notes,
            CreatedDate=stamp,
            UpdatedDate=stamp,
        )
        db.add(material)
        db.flush()
        log_activity(
            db,
            EntityType.MATERIAL,
            material.MaterialID,
            ActivityAction.CREATE,
            actor_name=actor_name,
            new_values=serialize_material(material),
            created_at=stamp,
        )
        return material

    return run_atomic(db, "create_material", work)


def update_material_quantity(
    db: Session,
    material_id: int,
    new_current: Decimal | float | None = None,
    new_threshold: Decimal | float | None = None,
    actor_name: str | None = None,
    now: datetime | None = None,
) -> Result[Material]:
    stamp = now or datetime.now()

    def work() -> Material:
        material = get_material_or_raise(db, material_id)
        before: dict[str, Any] = {
            "currentQuantity": material.CurrentQuantity,
            "thresholdQuantity": material.ThresholdQuantity,
        }
        current = to_decimal(
            new_current if new_current is not None else material.CurrentQuantity, "Current quantity"
        )
        threshold = to_decimal(
            new_threshold if new_threshold is not None else material.ThresholdQuantity, "Threshold quantity"
        )
        _validate_bounds(current, threshold)
        material.CurrentQuantity = current
        material.ThresholdQuantity = threshold
        material.UpdatedDate = stamp
        log_activity(
            db,
            EntityType.MATERIAL,
            material.MaterialID,
            ActivityAction.UPDATE,
            actor_name=actor_name,
            old_values=before,
            new_values={"currentQuantity": current, "thresholdQuantity": threshold},
            created_at=stamp,
        )
        return material

    return run_atomic(db, "update_material_quantity", work)


def update_material_details(
    db: Session,
    material_id: int,
    changes: dict[str, Any],
    actor_name: str | None = None,
    now: datetime | None = None,
) -> Result[Material]:
    """Apply a partial edit; keys absent from ``changes`` keep their value."""
    stamp = now or datetime.now()

    def work() -> Material:
        material = get_material_or_raise(db, material_id)
        before = serialize_material(material)
        for field, value in changes.items():
            column = MATERIAL_DETAIL_FIELDS.get(field)
            if not column:
                raise LedgerError(ErrorKind.INVALID_INPUT, f"Field '{field}' cannot be edited.")
            if column == "CategoryID":
                require_category(db, value, CategoryType.MATERIAL)
            elif column in ("MaterialName", "Unit"):
                value = (value or "").strip()
                if not value:
                    raise LedgerError(ErrorKind.INVALID_INPUT, f"{field} is required.")
            elif column in ("CurrentQuantity", "ThresholdQuantity"):
                value = to_decimal(value, field)
            elif column == "UnitPrice":
                value = _optional_price(value)
            setattr(material, column, value)
        _validate_bounds(
            to_decimal(material.CurrentQuantity, "Current quantity"),
            to_decimal(material.ThresholdQuantity, "Threshold quantity"),
        )
        material.UpdatedDate = stamp
        db.flush()
        log_activity(
            db,
            EntityType.MATERIAL,
            material.MaterialID,
            ActivityAction.UPDATE,
            actor_name=actor_name,
            old_values=before,
            new_values=serialize_material(material),
            created_at=stamp,
        )
        return material

    return run_atomic(db, "update_material_details", work)


def delete_material(
    db: Session,
    material_id: int,
    actor_name: str | None = None,
    now: datetime | None = None,
) -> Result[None]:
    stamp = now or datetime.now()

    def work() -> None:
        material = get_material_or_raise(db, material_id)
        used = db.execute(
            select(func.count(ConsumptionItem.ConsumptionItemID)).where(ConsumptionItem.MaterialID == material_id)
        ).scalar() or 0
        if used:
            raise LedgerError(
                ErrorKind.CONFLICT,
                "Cannot delete material. It has consumption history.",
                {"materialID": material_id, "consumptionItems": used},
            )
        log_activity(
            db,
            EntityType.MATERIAL,
            material_id,
            ActivityAction.DELETE,
            actor_name=actor_name,
            old_values=serialize_material(material),
            created_at=stamp,
        )
        db.delete(material)
        LOGGER.info("material deleted material_id=%s", material_id)

    return run_atomic(db, "delete_material", work)


def consume_material(db: Session, material_id: int, quantity: Decimal | float, now: datetime | None = None) -> Material:
    """Decrement stock by ``quantity`` as a single floor-checked UPDATE.

    Raises ``LedgerError``; callers run it inside their own unit of work.
    """
    amount = to_decimal(quantity, "Quantity")
    if amount <= 0:
        raise LedgerError(ErrorKind.INVALID_QUANTITY, "Quantity must be greater than 0.")
    material = get_material_or_raise(db, material_id)
    result = db.execute(
        update(Material)
        .where(Material.MaterialID == material_id)
        .where(Material.CurrentQuantity >= amount)
        .values(CurrentQuantity=Material.CurrentQuantity - amount, UpdatedDate=now or datetime.now())
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount != 1:
        raise LedgerError(
            ErrorKind.INSUFFICIENT_STOCK,
            f"Insufficient stock for {material.MaterialName}.",
            {"materialID": material_id, "requested": amount, "available": material.CurrentQuantity},
        )
    LOGGER.info("material consumed material_id=%s quantity=%s", material_id, amount)
    return material


def list_materials(db: Session, low_stock_only: bool = False) -> list[Material]:
    materials = db.execute(select(Material).order_by(Material.MaterialName)).scalars().all()
    if low_stock_only:
        return [material for material in materials if is_low_stock(material)]
    return list(materials)


def serialize_material(material: Material) -> dict:
    return {
        "materialID": material.MaterialID,
        "materialNumber": material.MaterialNumber,
        "materialName": material.MaterialName,
        "categoryID": material.CategoryID,
        "currentQuantity": material.CurrentQuantity,
        "thresholdQuantity": material.ThresholdQuantity,
        "unit": material.Unit,
        "location": material.Location,
        "supplier": material.Supplier,
        "unitPrice": material.UnitPrice,
        "notes": material.Notes,
        "isLowStock": is_low_stock(material),
        "createdDate": material.CreatedDate,
        "updatedDate": material.UpdatedDate,
    }

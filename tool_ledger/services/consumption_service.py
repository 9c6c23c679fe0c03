from __future__ import annotations

import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from models.enums import ActivityAction, EntityType
from models.ledger_models import ConsumptionItem, ConsumptionTransaction
from schemas.materials import ConsumeRequest
from services.activity_service import log_activity
from services.material_service import consume_material, to_decimal
from services.numbering import generate_consumption_number
from services.result import ErrorKind, LedgerError, Result, run_atomic

LOGGER = logging.getLogger("tool_ledger.consumption")

CENT = Decimal("0.01")


def _line_value(quantity: Decimal, unit_price: Decimal | None) -> Decimal | None:
    if unit_price is None:
        return None
    return (quantity * unit_price).quantize(CENT, rounding=ROUND_HALF_UP)


def consume_materials(
    db: Session,
    request: ConsumeRequest,
    *,
    now: datetime | None = None,
) -> Result[ConsumptionTransaction]:
    stamp = now or datetime.now()

    def work() -> ConsumptionTransaction:
        if not (request.consumerName or "").strip():
            raise LedgerError(ErrorKind.INVALID_INPUT, "Consumer name is required.")
        if not (request.purpose or "").strip():
            raise LedgerError(ErrorKind.INVALID_INPUT, "Purpose is required.")
        if not request.items:
            raise LedgerError(ErrorKind.INVALID_INPUT, "At least one item is required.")

        transaction = ConsumptionTransaction(
            ConsumptionNumber=generate_consumption_number(db, stamp.date()),
            ConsumerName=request.consumerName.strip(),
            ConsumptionDate=stamp,
            Purpose=request.purpose.strip(),
            ProjectName=request.projectName,
            Notes=request.notes,
            CreatedDate=stamp,
        )

        total = Decimal("0")
        priced = False
        for requested in request.items:
            material = consume_material(db, requested.materialID, requested.quantity, stamp)
            quantity = to_decimal(requested.quantity, "Quantity")
            unit_price = to_decimal(requested.unitPrice, "Unit price") if requested.unitPrice is not None else None
            if unit_price is None and material.UnitPrice is not None:
                unit_price = Decimal(str(material.UnitPrice))
            value = _line_value(quantity, unit_price)
            if value is not None:
                total += value
                priced = True
            transaction.ConsumptionItems.append(
                ConsumptionItem(
                    MaterialID=material.MaterialID,
                    Material=material,
                    Quantity=quantity,
                    UnitPrice=unit_price,
                    TotalValue=value,
                    Notes=requested.notes,
                )
            )
        transaction.TotalValue = total if priced else None

        db.add(transaction)
        db.flush()
        log_activity(
            db,
            EntityType.CONSUMPTION_TRANSACTION,
            transaction.ConsumptionID,
            ActivityAction.CONSUME,
            actor_name=transaction.ConsumerName,
            new_values=serialize_consumption(transaction),
            metadata={"itemCount": len(transaction.ConsumptionItems)},
            created_at=stamp,
        )
        LOGGER.info(
            "consumption committed consumption_id=%s items=%s",
            transaction.ConsumptionID,
            len(transaction.ConsumptionItems),
        )
        return transaction

    return run_atomic(db, "consume_materials", work)


def _consumption_query():
    return select(ConsumptionTransaction).options(
        selectinload(ConsumptionTransaction.ConsumptionItems).selectinload(ConsumptionItem.Material)
    )


def get_consumption(db: Session, consumption_id: int) -> ConsumptionTransaction | None:
    return db.execute(
        _consumption_query().where(ConsumptionTransaction.ConsumptionID == consumption_id)
    ).scalars().first()


def list_consumptions(db: Session, consumer_name: str | None = None) -> list[ConsumptionTransaction]:
    stmt = _consumption_query().order_by(ConsumptionTransaction.ConsumptionID.desc())
    if consumer_name:
        stmt = stmt.where(ConsumptionTransaction.ConsumerName.ilike(f"%{consumer_name.strip()}%"))
    return list(db.execute(stmt).scalars().all())


def serialize_consumption(transaction: ConsumptionTransaction) -> dict:
    return {
        "consumptionID": transaction.ConsumptionID,
        "consumptionNumber": transaction.ConsumptionNumber,
        "consumerName": transaction.ConsumerName,
        "consumptionDate": transaction.ConsumptionDate,
        "purpose": transaction.Purpose,
        "projectName": transaction.ProjectName,
        "totalValue": transaction.TotalValue,
        "notes": transaction.Notes,
        "consumptionItems": [
            {
                "consumptionItemID": item.ConsumptionItemID,
                "materialID": item.MaterialID,
                "materialName": item.Material.MaterialName if item.Material else None,
                "quantity": item.Quantity,
                "unitPrice": item.UnitPrice,
                "totalValue": item.TotalValue,
                "notes": item.Notes,
            }
            for item in transaction.ConsumptionItems
        ],
    }

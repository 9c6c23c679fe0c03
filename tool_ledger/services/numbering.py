from __future__ import annotations

from datetime import date

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.ledger_models import BorrowingTransaction, ConsumptionTransaction, Material, Tool


def _next_suffix(numbers: list[str | None], prefix: str) -> int:
    max_suffix = 0
    for raw in numbers:
        number = (raw or "").strip()
        if not number.startswith(prefix):
            continue
        suffix = number[len(prefix):]
        if not suffix.isdigit():
            continue
        if int(suffix) > max_suffix:
            max_suffix = int(suffix)
    return max_suffix + 1


def generate_tool_number(db: Session) -> str:
    prefix = "TL-"
    rows = db.execute(select(Tool.ToolNumber).where(Tool.ToolNumber.like(f"{prefix}%"))).scalars().all()
    return f"{prefix}{_next_suffix(rows, prefix):03d}"


def generate_material_number(db: Session) -> str:
    prefix = "MT-"
    rows = db.execute(
        select(Material.MaterialNumber).where(Material.MaterialNumber.like(f"{prefix}%"))
    ).scalars().all()
    return f"{prefix}{_next_suffix(rows, prefix):03d}"


def generate_borrowing_number(db: Session, created_on: date | None = None) -> str:
    current_date = created_on or date.today()
    prefix = f"BR-{current_date.year}-"
    rows = db.execute(
        select(BorrowingTransaction.BorrowingNumber).where(BorrowingTransaction.BorrowingNumber.like(f"{prefix}%"))
    ).scalars().all()
    return f"{prefix}{_next_suffix(rows, prefix):03d}"


def generate_consumption_number(db: Session, created_on: date | None = None) -> str:
    current_date = created_on or date.today()
    prefix = f"CS-{current_date.year}-"
    rows = db.execute(
        select(ConsumptionTransaction.ConsumptionNumber).where(
            ConsumptionTransaction.ConsumptionNumber.like(f"{prefix}%")
        )
    ).scalars().all()
    return f"{prefix}{_next_suffix(rows, prefix):03d}"

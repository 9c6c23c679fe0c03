from __future__ import annotations

from datetime import datetime
from typing import Union, assert_never

from sqlalchemy.orm import Session

from models.ledger_models import BorrowingTransaction, ConsumptionTransaction
from schemas.borrowings import BorrowRequest
from schemas.materials import ConsumeRequest
from services.borrowing_service import borrow_tools
from services.consumption_service import consume_materials
from services.result import Result
from services.unit_store import SelectionPreference


def submit_transaction(
    db: Session,
    request: Union[BorrowRequest, ConsumeRequest],
    *,
    now: datetime | None = None,
    preference: SelectionPreference = SelectionPreference.BEST_FIRST,
) -> Result[Union[BorrowingTransaction, ConsumptionTransaction]]:
    """Route a tagged transaction request to the engine that owns it."""
    if isinstance(request, BorrowRequest):
        return borrow_tools(db, request, now=now, preference=preference)
    if isinstance(request, ConsumeRequest):
        return consume_materials(db, request, now=now)
    assert_never(request)

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, field_validator

from models.enums import ToolCondition


def _as_local_naive(value: datetime) -> datetime:
    # Stored timestamps are naive local time.
    if value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value


class BorrowItemDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    toolID: int
    unitIDs: List[int] = []
    quantity: Optional[int] = None
    notes: Optional[str] = None


class BorrowRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: Literal["BORROW"] = "BORROW"
    borrowerName: str
    dueDate: datetime
    purpose: str
    notes: Optional[str] = None
    items: List[BorrowItemDto] = []

    @field_validator("dueDate")
    @classmethod
    def _normalise_due(cls, value: datetime) -> datetime:
        return _as_local_naive(value)


class UnitReturnDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    borrowedUnitID: int
    returnCondition: ToolCondition
    notes: Optional[str] = None


class ReturnItemDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    borrowingItemID: int
    unitReturns: List[UnitReturnDto] = []
    notes: Optional[str] = None


class ReturnRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    items: List[ReturnItemDto] = []
    notes: Optional[str] = None


class ExtensionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    newDueDate: datetime
    reason: str

    @field_validator("newDueDate")
    @classmethod
    def _normalise_new_due(cls, value: datetime) -> datetime:
        return _as_local_naive(value)

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from models.enums import CategoryType, ToolCondition


class CategoryCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    categoryName: str
    categoryType: CategoryType
    description: Optional[str] = None


class CategoryUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    categoryName: Optional[str] = None
    categoryType: Optional[CategoryType] = None
    description: Optional[str] = None


class ToolCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    toolName: str
    categoryID: int
    totalQuantity: int = 1
    initialCondition: ToolCondition = ToolCondition.GOOD
    location: Optional[str] = None
    supplier: Optional[str] = None
    purchaseDate: Optional[datetime] = None
    purchasePrice: Optional[float] = None
    notes: Optional[str] = None
    actorName: Optional[str] = None


class ToolUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    toolName: Optional[str] = None
    categoryID: Optional[int] = None
    totalQuantity: Optional[int] = None
    location: Optional[str] = None
    supplier: Optional[str] = None
    purchaseDate: Optional[datetime] = None
    purchasePrice: Optional[float] = None
    notes: Optional[str] = None
    actorName: Optional[str] = None


class QuantityAdjustmentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    totalQuantity: int
    actorName: Optional[str] = None


class UnitConditionUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    condition: ToolCondition
    notes: Optional[str] = None


class BulkUnitConditionItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    unitID: int
    condition: ToolCondition
    notes: Optional[str] = None


class BulkUnitConditionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    units: List[BulkUnitConditionItem] = []

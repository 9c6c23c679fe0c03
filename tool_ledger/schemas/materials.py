from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict


class MaterialCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    materialName: str
    categoryID: int
    currentQuantity: Decimal
    thresholdQuantity: Decimal
    unit: str
    location: Optional[str] = None
    supplier: Optional[str] = None
    unitPrice: Optional[Decimal] = None
    notes: Optional[str] = None
    actorName: Optional[str] = None


class MaterialQuantityUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    currentQuantity: Optional[Decimal] = None
    thresholdQuantity: Optional[Decimal] = None
    actorName: Optional[str] = None


class ConsumeItemDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    materialID: int
    quantity: Decimal
    unitPrice: Optional[Decimal] = None
    notes: Optional[str] = None


class ConsumeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: Literal["CONSUME"] = "CONSUME"
    consumerName: str
    purpose: str
    projectName: Optional[str] = None
    notes: Optional[str] = None
    items: List[ConsumeItemDto] = []


class MaterialUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    materialName: Optional[str] = None
    categoryID: Optional[int] = None
    currentQuantity: Optional[Decimal] = None
    thresholdQuantity: Optional[Decimal] = None
    unit: Optional[str] = None
    location: Optional[str] = None
    supplier: Optional[str] = None
    unitPrice: Optional[Decimal] = None
    notes: Optional[str] = None
    actorName: Optional[str] = None

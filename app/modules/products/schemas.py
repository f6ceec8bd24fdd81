from pydantic import BaseModel, Field
from typing import Optional
from uuid import UUID
from decimal import Decimal
from datetime import datetime


class WasteCreate(BaseModel):
    """Registrar merma de un producto"""
    quantity: int = Field(..., gt=0, description="Unidades perdidas")
    notes: Optional[str] = Field(None, max_length=500)


class StockMovementOut(BaseModel):
    id: UUID
    product_id: UUID
    type: str
    quantity: int
    unit_cost: Decimal
    usage_log_id: Optional[UUID] = None
    notes: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class RentalCreate(BaseModel):
    description: str = Field(..., min_length=1, max_length=200)
    amount: Decimal = Field(..., gt=0)


class RentalOut(BaseModel):
    id: UUID
    description: str
    amount: Decimal
    created_at: datetime

    model_config = {"from_attributes": True}

from pydantic import BaseModel, Field
from typing import Optional
from uuid import UUID
from decimal import Decimal


class RatesUpdate(BaseModel):
    """Esquema para actualizar tarifa y tolerancia de arqueo"""
    hourly_rate: Decimal = Field(..., ge=0, description="Tarifa por hora, IVA incluido")
    cash_tolerance: Optional[Decimal] = Field(None, ge=0, description="Tolerancia del arqueo ciego")


class TenantOut(BaseModel):
    id: UUID
    name: str
    slug: str
    is_active: bool
    hourly_rate: Decimal
    currency: str
    tax_rate: Decimal
    tax_name: str
    is_tax_exempt: bool
    cash_tolerance: Optional[Decimal] = None

    model_config = {"from_attributes": True}

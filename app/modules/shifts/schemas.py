from pydantic import BaseModel, Field
from typing import List, Optional
from uuid import UUID
from decimal import Decimal
from datetime import datetime


class ShiftCloseRequest(BaseModel):
    """Arqueo ciego: el efectivo se declara antes de ver los totales del sistema"""
    cash_in_hand: Decimal = Field(..., ge=0, description="Efectivo contado en caja")
    notes: Optional[str] = Field(None, max_length=1000)


class ShiftSummary(BaseModel):
    total_revenue: Decimal
    time_revenue: Decimal
    product_revenue: Decimal
    membership_revenue: Decimal
    rental_revenue: Decimal
    cash_revenue: Decimal
    card_revenue: Decimal
    credit_revenue: Decimal
    total_cost: Decimal
    waste_cost: Decimal
    maintenance_cost: Decimal
    net_profit: Decimal
    session_count: int


class ShiftCloseOut(BaseModel):
    balance_id: UUID
    has_cash_alert: bool
    cash_difference: Decimal
    integrity_hash: str
    summary: ShiftSummary


class BalanceOut(BaseModel):
    id: UUID
    period_start: datetime
    period_end: datetime
    session_count: int
    total_revenue: Decimal
    net_profit: Decimal
    cash_in_hand: Decimal
    cash_difference: Decimal
    has_cash_alert: bool
    closed_by: str
    created_at: datetime

    model_config = {"from_attributes": True}


class BalanceSessionOut(BaseModel):
    id: UUID
    table_id: UUID
    started_at: datetime
    ended_at: Optional[datetime] = None
    duration_minutes: Optional[int] = None
    amount_charged: Optional[Decimal] = None
    product_total: Decimal
    payment_status: str
    abandoned: bool

    model_config = {"from_attributes": True}


class BalanceDetailOut(BalanceOut):
    time_revenue: Decimal
    product_revenue: Decimal
    membership_revenue: Decimal
    rental_revenue: Decimal
    cash_revenue: Decimal
    card_revenue: Decimal
    credit_revenue: Decimal
    total_cost: Decimal
    waste_cost: Decimal
    maintenance_cost: Decimal
    notes: Optional[str] = None
    integrity_hash: str
    sessions: List[BalanceSessionOut] = []


class IntegrityCheckOut(BaseModel):
    balance_id: UUID
    valid: bool
    stored_hash: str
    computed_hash: str

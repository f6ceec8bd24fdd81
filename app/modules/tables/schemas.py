from pydantic import BaseModel, Field
from typing import List, Optional
from uuid import UUID
from decimal import Decimal
from datetime import datetime
from enum import Enum

from app.modules.tables.models import TableStatus


class Settlement(str, Enum):
    IMMEDIATE = "immediate"  # La mesa pasa a limpieza; el pago se registra aparte
    DEFERRED = "deferred"    # La mesa queda en PAYMENT_PENDING con link de pago


class IssuanceRequest(BaseModel):
    """Solicitud de documento tributario al cerrar la sesión"""
    document_type: Optional[int] = Field(None, description="33 factura, 39 boleta, 41 boleta exenta")
    receiver: Optional[str] = Field(None, max_length=200, description="RUT o nombre del receptor")


class TransitionRequest(BaseModel):
    expected_status: TableStatus = Field(..., description="Estado actual que el cliente cree ver")
    member_id: Optional[UUID] = None
    issuance: Optional[IssuanceRequest] = None
    settlement: Settlement = Settlement.IMMEDIATE


class TransitionOut(BaseModel):
    table_id: UUID
    status: TableStatus
    usage_log_id: Optional[UUID] = None
    duration_minutes: Optional[int] = None
    amount_charged: Optional[Decimal] = None
    discount_applied: Optional[Decimal] = None
    product_total: Optional[Decimal] = None
    net_amount: Optional[Decimal] = None
    tax_amount: Optional[Decimal] = None
    document_status: Optional[str] = None
    document_reference: Optional[str] = None
    payment_url: Optional[str] = None
    degraded: bool = False
    maintenance_due: bool = False


class TableOut(BaseModel):
    id: UUID
    number: int
    name: Optional[str] = None
    status: TableStatus
    current_session_id: Optional[UUID] = None
    last_session_start: Optional[datetime] = None
    total_play_hours: Decimal
    maintenance_threshold_hours: Decimal

    model_config = {"from_attributes": True}


class OrderItemCreate(BaseModel):
    product_id: UUID
    quantity: int = Field(..., gt=0, le=1000)


class OrderItemOut(BaseModel):
    id: UUID
    usage_log_id: UUID
    product_id: UUID
    quantity: int
    unit_price: Decimal
    total_price: Decimal

    model_config = {"from_attributes": True}


class SessionOut(BaseModel):
    """Sesión en curso con consumo y cobro estimado"""
    table_id: UUID
    usage_log_id: UUID
    member_id: Optional[UUID] = None
    started_at: datetime
    elapsed_minutes: int
    product_total: Decimal
    estimated_total: Decimal
    items: List[OrderItemOut] = []


class MaintenanceCreate(BaseModel):
    cost: Decimal = Field(..., ge=0)
    notes: Optional[str] = Field(None, max_length=1000)


class MaintenanceOut(BaseModel):
    id: UUID
    table_id: UUID
    cost: Decimal
    notes: Optional[str] = None
    play_hours_at_service: Decimal
    created_at: datetime

    model_config = {"from_attributes": True}


class AuditResult(BaseModel):
    fixed_count: int
    fixed_table_ids: List[UUID] = []

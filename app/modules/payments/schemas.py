from pydantic import BaseModel, Field
from typing import Optional
from uuid import UUID
from decimal import Decimal
from datetime import datetime

from app.modules.payments.models import PaymentMethod


class PaymentCreate(BaseModel):
    """Registrar el pago de una sesión cerrada"""
    usage_log_id: UUID
    amount: Decimal = Field(..., gt=0, description="Monto entregado por el cliente")
    method: PaymentMethod = PaymentMethod.CASH
    transaction_id: Optional[str] = Field(None, max_length=100, description="Voucher o ID externo")


class PaymentOut(BaseModel):
    success: bool
    payment_id: UUID
    usage_log_id: UUID
    method: PaymentMethod
    amount: Decimal
    change: Decimal = Decimal("0")
    table_released: bool = False


class PaymentRecordOut(BaseModel):
    id: UUID
    usage_log_id: UUID
    method: str
    amount: Decimal
    status: str
    provider: Optional[str] = None
    transaction_id: Optional[str] = None
    payment_url: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class WebhookResult(BaseModel):
    success: bool
    processed: str
    reference_id: str
    already_processed: bool = False

"""
Pasarela de pagos para cobro diferido (QR / link de pago).

Los webhooks son públicos y se autentican con HMAC-SHA256 sobre
"transaction_id|amount|reference_id" usando PAYMENT_WEBHOOK_SECRET.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional, Union
from uuid import UUID
import hashlib
import hmac
import json
import logging
import secrets

from app.core.config import settings
from app.modules.taxes.calculator import round2

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentIntentRequest:
    tenant_id: UUID
    amount: Decimal
    reference_id: str
    description: str = ""


@dataclass(frozen=True)
class PaymentIntentResponse:
    success: bool
    transaction_id: Optional[str] = None
    payment_url: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class WebhookVerification:
    is_valid: bool
    status: Optional[str] = None
    transaction_id: Optional[str] = None
    reference_id: Optional[str] = None
    amount: Optional[Decimal] = None
    error: Optional[str] = None


class PaymentProvider(ABC):

    name = "abstract"

    @abstractmethod
    def create_payment_intent(self, request: PaymentIntentRequest) -> PaymentIntentResponse:
        """Crear una intención de pago y devolver la URL de checkout"""

    @abstractmethod
    def handle_webhook(self, raw_body: Union[bytes, str], signature: str) -> WebhookVerification:
        """Verificar la firma y extraer la confirmación de pago"""


class MockPaymentProvider(PaymentProvider):

    name = "mock"

    def __init__(self, secret: Optional[str] = None, base_url: Optional[str] = None):
        self.secret = secret or settings.PAYMENT_WEBHOOK_SECRET
        self.base_url = base_url or settings.PAYMENT_BASE_URL

    def sign(self, transaction_id: str, amount: Decimal, reference_id: str) -> str:
        payload = f"{transaction_id}|{format(round2(amount), 'f')}|{reference_id}"
        return hmac.new(self.secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()

    def create_payment_intent(self, request: PaymentIntentRequest) -> PaymentIntentResponse:
        logger.info(f"Creando intención de pago por {request.amount} (ref: {request.reference_id})")
        transaction_id = f"txn_{secrets.token_hex(8)}"
        signature = self.sign(transaction_id, request.amount, request.reference_id)
        payment_url = (
            f"{self.base_url}?txn={transaction_id}&ref={request.reference_id}"
            f"&amount={format(round2(request.amount), 'f')}&sig={signature}"
        )
        return PaymentIntentResponse(success=True, transaction_id=transaction_id, payment_url=payment_url)

    def handle_webhook(self, raw_body: Union[bytes, str], signature: str) -> WebhookVerification:
        try:
            data = json.loads(raw_body)
            transaction_id = str(data["transaction_id"])
            reference_id = str(data["reference_id"])
            amount = Decimal(str(data["amount"]))
        except (ValueError, KeyError, TypeError, InvalidOperation) as exc:
            return WebhookVerification(is_valid=False, error=f"Payload inválido: {exc.__class__.__name__}")

        expected = self.sign(transaction_id, amount, reference_id)
        if not signature or not hmac.compare_digest(expected, signature):
            logger.warning(f"Firma de webhook inválida para {reference_id}")
            return WebhookVerification(is_valid=False, error="Firma inválida")

        return WebhookVerification(
            is_valid=True,
            status=str(data.get("status", "PAID")),
            transaction_id=transaction_id,
            reference_id=reference_id,
            amount=amount
        )


payment_provider: PaymentProvider = MockPaymentProvider()

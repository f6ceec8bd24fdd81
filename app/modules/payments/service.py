from decimal import Decimal
from typing import Optional, Union
from uuid import UUID
import logging

from fastapi import HTTPException
from sqlalchemy.orm import Session

from app.common.exceptions import (
    ConsistencyError, NotFoundError, PermissionDeniedError, ValidationError, internal_error
)
from app.modules.auth.schemas import AuthContext
from app.modules.billing.provider import (
    DocumentIssuanceProvider, EmissionRequest, default_document_type,
    document_provider as default_document_provider, issue_document
)
from app.modules.members.models import MembershipPayment, MembershipPaymentStatus
from app.modules.members.service import settle_membership_payment
from app.modules.payments.models import PaymentRecord, PaymentMethod, PaymentRecordStatus
from app.modules.payments.provider import (
    PaymentProvider, WebhookVerification, payment_provider as default_payment_provider
)
from app.modules.payments.schemas import PaymentCreate, PaymentOut, WebhookResult
from app.modules.system.service import record_security_event
from app.modules.tables.models import UsageLog, PaymentStatus
from app.modules.tables.service import TableSessionService
from app.modules.taxes.calculator import round2, split_tax
from app.modules.taxes.service import TaxConfigService
from app.modules.tenancy.repository import AdminRepository, TenantRepository, system_context

logger = logging.getLogger(__name__)

TABLE_PREFIX = "TAB_"
MEMBERSHIP_PREFIX = "MEM_"
SETTLED_STATUSES = {"PAID", "COMPLETED"}


class PaymentService:
    """Registro de pagos de sesiones y confirmaciones de la pasarela"""

    def __init__(self, db: Session,
                 payment_provider: Optional[PaymentProvider] = None,
                 document_provider: Optional[DocumentIssuanceProvider] = None):
        self.db = db
        self.payment_provider = payment_provider or default_payment_provider
        self.document_provider = document_provider or default_document_provider

    def register_payment(self, context: AuthContext, data: PaymentCreate) -> PaymentOut:
        """
        Registrar un pago COMPLETED para una sesión cerrada.

        - La sesión debe estar cerrada y sin pago completado previo
        - El monto entregado no puede ser menor al cobro
        - Si la mesa sigue apuntando a esta sesión, queda AVAILABLE
        """
        try:
            log = TenantRepository(self.db, UsageLog, context, label="Sesión").get(data.usage_log_id, for_update=True)
            record, released = self._complete(context, log, data.method, data.amount, data.transaction_id)
            self.db.commit()

            amount_due = Decimal(record.amount)
            logger.info(f"Pago {data.method.value} registrado para la sesión {log.id}")
            return PaymentOut(
                success=True,
                payment_id=record.id,
                usage_log_id=log.id,
                method=data.method,
                amount=amount_due,
                change=round2(data.amount - amount_due),
                table_released=released
            )
        except HTTPException:
            self.db.rollback()
            raise
        except Exception:
            self.db.rollback()
            logger.exception("Error registrando pago")
            raise internal_error()

    def _complete(self, context: AuthContext, log: UsageLog, method: PaymentMethod, tendered: Decimal,
                  transaction_id: Optional[str] = None, provider: Optional[str] = None):
        if log.ended_at is None:
            raise ConsistencyError("La sesión sigue abierta; deténgala antes de cobrar")

        payments = TenantRepository(self.db, PaymentRecord, context, label="Pago")
        completed = payments.list(
            PaymentRecord.usage_log_id == log.id,
            PaymentRecord.status == PaymentRecordStatus.COMPLETED.value
        )
        if completed or log.payment_status == PaymentStatus.PAID.value:
            raise ConsistencyError("La sesión ya tiene un pago completado")

        amount_due = round2(log.amount_charged or 0)
        if round2(tendered) < amount_due:
            raise ValidationError(f"Monto insuficiente: se requieren {amount_due}")

        pending = None
        if transaction_id:
            matches = payments.list(
                PaymentRecord.usage_log_id == log.id,
                PaymentRecord.transaction_id == transaction_id,
                PaymentRecord.status == PaymentRecordStatus.PENDING.value
            )
            pending = matches[0] if matches else None

        if pending is not None:
            pending.status = PaymentRecordStatus.COMPLETED.value
            pending.tendered_amount = round2(tendered)
            record = pending
        else:
            record = payments.create(
                usage_log_id=log.id,
                method=method.value,
                amount=amount_due,
                tendered_amount=round2(tendered),
                status=PaymentRecordStatus.COMPLETED.value,
                provider=provider,
                transaction_id=transaction_id,
                recorded_by=context.user_id
            )

        paid = TenantRepository(self.db, UsageLog, context).update_where(
            {"payment_status": PaymentStatus.PAID.value},
            UsageLog.id == log.id,
            UsageLog.payment_status == PaymentStatus.PENDING.value
        )
        if paid != 1:
            raise ConsistencyError("La sesión ya fue pagada por otra operación")

        released = TableSessionService(self.db).release_after_payment(context, log)
        self.db.flush()
        return record, released

    # ------------------------------------------------------------------
    # Webhook de la pasarela
    # ------------------------------------------------------------------

    def handle_webhook(self, raw_body: Union[bytes, str], signature: str) -> WebhookResult:
        """
        Procesar una confirmación de pago firmada.

        TAB_<usage_log_id>: salda la sesión de mesa y emite el documento si falta.
        MEM_<membership_payment_id>: marca el pago de membresía y reactiva al socio.
        Los reintentos de la pasarela sobre referencias ya pagadas son idempotentes.
        """
        verification = self.payment_provider.handle_webhook(raw_body, signature)
        if not verification.is_valid or not verification.reference_id:
            record_security_event(
                self.db, f"Webhook de pagos rechazado: {verification.error}", None, {}
            )
            raise PermissionDeniedError("Validación criptográfica fallida")

        reference = verification.reference_id
        if (verification.status or "").upper() not in SETTLED_STATUSES:
            logger.warning(f"Webhook {reference} con estado {verification.status}; no se registra el pago")
            raise ValidationError(f"Estado de pago no confirmado: {verification.status}")

        try:
            if reference.startswith(TABLE_PREFIX):
                result = self._settle_table(verification, reference[len(TABLE_PREFIX):])
            elif reference.startswith(MEMBERSHIP_PREFIX):
                result = self._settle_membership(verification, reference[len(MEMBERSHIP_PREFIX):])
            else:
                raise ValidationError(f"Prefijo de referencia desconocido: {reference}")
            self.db.commit()
            return result
        except HTTPException:
            self.db.rollback()
            raise
        except Exception:
            self.db.rollback()
            logger.exception(f"Error procesando webhook {reference}")
            raise internal_error()

    @staticmethod
    def _parse_reference(value: str, label: str) -> UUID:
        try:
            return UUID(value)
        except ValueError:
            raise NotFoundError(f"{label} no encontrado")

    def _settle_table(self, verification: WebhookVerification, raw_id: str) -> WebhookResult:
        log_id = self._parse_reference(raw_id, "Sesión")
        log = AdminRepository(self.db, UsageLog, label="Sesión").get(log_id, for_update=True)
        context = system_context(log.tenant_id)

        if log.payment_status == PaymentStatus.PAID.value:
            logger.info(f"Webhook repetido para la sesión {log.id}; ya estaba pagada")
            return WebhookResult(success=True, processed="TAB", reference_id=verification.reference_id,
                                 already_processed=True)

        self._complete(
            context, log, PaymentMethod.QR, verification.amount,
            transaction_id=verification.transaction_id, provider=self.payment_provider.name
        )

        if not log.document_reference and Decimal(log.amount_charged or 0) > 0:
            self._issue_fallback_document(context, log)

        logger.info(f"Sesión {log.id} pagada vía pasarela ({verification.transaction_id})")
        return WebhookResult(success=True, processed="TAB", reference_id=verification.reference_id)

    def _issue_fallback_document(self, context: AuthContext, log: UsageLog) -> None:
        """Emitir el documento post-pago cuando el cierre no lo generó"""
        tax_config = TaxConfigService(self.db).get_tax_config(context.tenant_id)
        if log.net_amount is not None and log.tax_amount is not None:
            net, tax, gross = Decimal(log.net_amount), Decimal(log.tax_amount), Decimal(log.amount_charged)
        else:
            breakdown = split_tax(log.amount_charged, log.tax_rate or 0, tax_config.exempt).rounded()
            net, tax, gross = breakdown.net_amount, breakdown.tax_amount, breakdown.gross_amount

        outcome = issue_document(
            self.document_provider,
            self.db,
            EmissionRequest(
                tenant_id=context.tenant_id,
                document_type=log.document_type or default_document_type(tax_config.exempt),
                net_amount=net,
                tax_amount=tax,
                gross_amount=gross
            )
        )
        log.document_type = outcome.document_type
        log.document_reference = outcome.reference_id
        log.document_status = outcome.status
        log.document_error = outcome.error

    def _settle_membership(self, verification: WebhookVerification, raw_id: str) -> WebhookResult:
        payment_id = self._parse_reference(raw_id, "Pago de membresía")
        payment = AdminRepository(self.db, MembershipPayment, label="Pago de membresía").get(
            payment_id, for_update=True
        )

        if payment.status == MembershipPaymentStatus.PAID.value:
            return WebhookResult(success=True, processed="MEM", reference_id=verification.reference_id,
                                 already_processed=True)

        settle_membership_payment(self.db, payment, verification.transaction_id)
        return WebhookResult(success=True, processed="MEM", reference_id=verification.reference_id)

"""
Máquina de estados de sesiones de mesa.

    AVAILABLE ──start──> OCCUPIED ──stop──> CLEANING ──release──> AVAILABLE
                             │
                             └──stop (cobro diferido)──> PAYMENT_PENDING ──pago──> AVAILABLE

Cada transición corre en una sola transacción: la fila de la mesa se
bloquea (SELECT ... FOR UPDATE) y los cambios se aplican con UPDATE
condicionados al estado leído. Si otra transacción ganó la carrera el
UPDATE no afecta filas y se responde ConsistencyError.
"""
from decimal import Decimal
from typing import List, Optional
from uuid import UUID
import logging

from fastapi import HTTPException
from sqlalchemy.orm import Session

from app.common.exceptions import ConsistencyError, NotFoundError, ValidationError, internal_error
from app.common.mixins import utcnow
from app.core.config import settings
from app.modules.auth.schemas import AuthContext
from app.modules.billing.provider import (
    DocumentIssuanceProvider, EmissionRequest, IssuanceOutcome, default_document_type,
    document_provider as default_document_provider, issue_document
)
from app.modules.members.service import MemberLookup
from app.modules.payments.models import PaymentRecord, PaymentMethod, PaymentRecordStatus
from app.modules.payments.provider import (
    PaymentProvider, PaymentIntentRequest, PaymentIntentResponse,
    payment_provider as default_payment_provider
)
from app.modules.products.models import StockMovementType
from app.modules.products.service import ProductService
from app.modules.system.models import LogLevel, Notification, NotificationType
from app.modules.system.service import record_system_log
from app.modules.tables.models import Table, TableStatus, UsageLog, OrderItem, MaintenanceLog
from app.modules.tables.schemas import (
    TransitionOut, IssuanceRequest, Settlement, OrderItemCreate, OrderItemOut,
    SessionOut, MaintenanceCreate
)
from app.modules.taxes.calculator import compute_charge, split_tax, round2, elapsed_minutes
from app.modules.taxes.service import TaxConfigService
from app.modules.tenancy.models import Tenant
from app.modules.tenancy.repository import TenantRepository

logger = logging.getLogger(__name__)

SIXTY = Decimal("60")


class TableSessionService:

    def __init__(self, db: Session,
                 document_provider: Optional[DocumentIssuanceProvider] = None,
                 payment_provider: Optional[PaymentProvider] = None):
        self.db = db
        self.document_provider = document_provider or default_document_provider
        self.payment_provider = payment_provider or default_payment_provider

    def _tables(self, context: AuthContext) -> TenantRepository[Table]:
        return TenantRepository(self.db, Table, context, label="Mesa")

    def _logs(self, context: AuthContext) -> TenantRepository[UsageLog]:
        return TenantRepository(self.db, UsageLog, context, label="Sesión")

    # ------------------------------------------------------------------
    # Punto de entrada de transiciones
    # ------------------------------------------------------------------

    def transition(
        self,
        context: AuthContext,
        table_id: UUID,
        expected_status: TableStatus,
        member_id: Optional[UUID] = None,
        issuance: Optional[IssuanceRequest] = None,
        settlement: Settlement = Settlement.IMMEDIATE
    ) -> TransitionOut:
        """
        Ejecutar la transición que corresponde al estado que el cliente ve.

        - OCCUPIED: detener la sesión y cobrar
        - AVAILABLE / PAYMENT_PENDING: iniciar una sesión
        - CLEANING: liberar la mesa

        Si el estado real no coincide con expected_status la mesa cambió
        en otra transacción y se responde ConsistencyError.
        """
        expected_status = TableStatus(expected_status)
        try:
            table = self._tables(context).get(table_id, for_update=True)

            if table.status != expected_status.value:
                raise ConsistencyError(
                    f"La mesa {table.number} está en estado {table.status}, no {expected_status.value}. "
                    f"Actualice y reintente"
                )

            if expected_status == TableStatus.OCCUPIED:
                result = self._stop(context, table, issuance, Settlement(settlement), member_id)
            elif expected_status == TableStatus.CLEANING:
                result = self._release(context, table)
            else:
                result = self._start(context, table, member_id)

            self.db.commit()
            logger.info(f"Mesa {table.number}: {expected_status.value} -> {result.status.value}")
            return result

        except HTTPException:
            self.db.rollback()
            raise
        except Exception:
            self.db.rollback()
            logger.exception(f"Error en transición de la mesa {table_id}")
            raise internal_error()

    # ------------------------------------------------------------------
    # start
    # ------------------------------------------------------------------

    def _start(self, context: AuthContext, table: Table, member_id: Optional[UUID]) -> TransitionOut:
        now = utcnow()
        logs = self._logs(context)
        previous_status = table.status
        previous_session_id = table.current_session_id

        if previous_session_id is not None:
            current = logs.find(previous_session_id, for_update=True)
            if current is not None and current.ended_at is None:
                raise ConsistencyError(f"La mesa {table.number} ya tiene una sesión activa")

        if previous_status == TableStatus.PAYMENT_PENDING.value:
            if settings.REQUIRE_WRITE_OFF_BEFORE_REUSE:
                raise ConsistencyError(
                    f"La mesa {table.number} tiene un cobro pendiente; regístrelo antes de reutilizarla"
                )
            logger.warning(f"Mesa {table.number} reutilizada con cobro pendiente (sesión {previous_session_id})")
            record_system_log(
                self.db, LogLevel.WARN,
                f"Mesa {table.number} reutilizada con cobro pendiente sin registrar",
                context.tenant_id,
                {"usage_log_id": previous_session_id, "user_id": context.user_id}
            )

        if member_id is not None:
            try:
                MemberLookup(self.db).get_member(member_id, context)
            except NotFoundError:
                raise ValidationError("Socio no encontrado")

        self._abandon_orphans(context, table, now)

        log = logs.create(
            table_id=table.id,
            member_id=member_id,
            started_at=now,
            opened_by=context.user_id
        )

        claimed = self._tables(context).update_where(
            {
                "status": TableStatus.OCCUPIED.value,
                "current_session_id": log.id,
                "last_session_start": now,
            },
            Table.id == table.id,
            Table.status == previous_status,
            Table.current_session_id == previous_session_id
        )
        if claimed != 1:
            raise ConsistencyError(f"La mesa {table.number} cambió de estado durante el inicio")

        return TransitionOut(table_id=table.id, status=TableStatus.OCCUPIED, usage_log_id=log.id)

    def _abandon_orphans(self, context: AuthContext, table: Table, now) -> List[UUID]:
        """Cerrar sin cobro cualquier sesión abierta que haya quedado en la mesa"""
        orphans = self._logs(context).list(UsageLog.table_id == table.id, UsageLog.ended_at.is_(None))
        for orphan in orphans:
            orphan.ended_at = now
            orphan.duration_minutes = elapsed_minutes(orphan.started_at, now)
            orphan.amount_charged = Decimal("0")
            orphan.product_total = Decimal("0")
            orphan.net_amount = Decimal("0")
            orphan.tax_amount = Decimal("0")
            orphan.abandoned = True
            orphan.closed_by = context.user_id
            logger.warning(f"Sesión huérfana {orphan.id} cerrada como abandonada en mesa {table.number}")
        if orphans:
            record_system_log(
                self.db, LogLevel.WARN,
                f"{len(orphans)} sesión(es) huérfana(s) cerradas sin cobro en mesa {table.number}",
                context.tenant_id,
                {"usage_log_ids": [str(orphan.id) for orphan in orphans]}
            )
            self.db.flush()
        return [orphan.id for orphan in orphans]

    # ------------------------------------------------------------------
    # stop
    # ------------------------------------------------------------------

    def _find_open_log(self, context: AuthContext, table: Table) -> Optional[UsageLog]:
        logs = self._logs(context)
        if table.current_session_id is not None:
            log = logs.find(table.current_session_id, for_update=True)
            if log is not None and log.ended_at is None:
                return log
        candidates = logs.list(
            UsageLog.table_id == table.id, UsageLog.ended_at.is_(None),
            order_by=UsageLog.started_at.desc(), limit=1
        )
        return candidates[0] if candidates else None

    def _degrade(self, context: AuthContext, table: Table) -> TransitionOut:
        """Mesa OCCUPIED sin sesión abierta: se libera directamente"""
        updated = self._tables(context).update_where(
            {"status": TableStatus.AVAILABLE.value, "current_session_id": None, "last_session_start": None},
            Table.id == table.id,
            Table.status == TableStatus.OCCUPIED.value
        )
        if updated != 1:
            raise ConsistencyError(f"La mesa {table.number} cambió de estado durante el cierre")
        logger.warning(f"Mesa {table.number} marcada OCCUPIED sin sesión abierta; liberada sin cobro")
        record_system_log(
            self.db, LogLevel.WARN,
            f"Inconsistencia: mesa {table.number} ocupada sin sesión abierta, liberada sin cobro",
            context.tenant_id,
            {"table_id": table.id, "current_session_id": table.current_session_id}
        )
        return TransitionOut(table_id=table.id, status=TableStatus.AVAILABLE, degraded=True)

    def _stop(self, context: AuthContext, table: Table, issuance: Optional[IssuanceRequest],
              settlement: Settlement, member_id: Optional[UUID] = None) -> TransitionOut:
        now = utcnow()
        log = self._find_open_log(context, table)
        if log is None:
            return self._degrade(context, table)

        product_total = sum((Decimal(item.total_price) for item in log.items), Decimal("0"))

        tenant = self.db.query(Tenant).filter(Tenant.id == context.tenant_id).first()
        tax_config = TaxConfigService(self.db).get_tax_config(context.tenant_id)

        discount_percent = None
        subscription_active = False
        if member_id is not None:
            # socio indicado al cobrar: reemplaza al de la apertura
            try:
                member = MemberLookup(self.db).get_member(member_id, context)
            except NotFoundError:
                raise ValidationError("Socio no encontrado")
            discount_percent = member.discount_percent
            subscription_active = member.subscription_active
        elif log.member_id is not None:
            try:
                member = MemberLookup(self.db).get_member(log.member_id, context)
                discount_percent = member.discount_percent
                subscription_active = member.subscription_active
            except NotFoundError:
                logger.warning(f"Socio {log.member_id} de la sesión {log.id} no existe; se cobra sin descuento")

        charge = compute_charge(
            started_at=log.started_at,
            now=now,
            hourly_rate=tenant.hourly_rate,
            product_total=product_total,
            member_discount_percent=discount_percent,
            subscription_active=subscription_active
        )
        taxes = split_tax(charge.subtotal, tax_config.rate_percent, tax_config.exempt).rounded()

        outcome: Optional[IssuanceOutcome] = None
        if issuance is not None:
            outcome = issue_document(
                self.document_provider,
                self.db,
                EmissionRequest(
                    tenant_id=context.tenant_id,
                    document_type=issuance.document_type or default_document_type(tax_config.exempt),
                    net_amount=taxes.net_amount,
                    tax_amount=taxes.tax_amount,
                    gross_amount=taxes.gross_amount,
                    receiver=issuance.receiver
                )
            )
            if not outcome.succeeded:
                logger.warning(f"Documento de la sesión {log.id} quedó en estado {outcome.status}: {outcome.error}")

        close_values = {
            "ended_at": now,
            "duration_minutes": charge.duration_minutes,
            "amount_charged": charge.subtotal,
            "discount_applied": round2(charge.discount_amount),
            "product_total": round2(product_total),
            "net_amount": taxes.net_amount,
            "tax_amount": taxes.tax_amount,
            "tax_rate": tax_config.rate_percent,
            "tax_name": tax_config.name,
            "closed_by": context.user_id,
        }
        if member_id is not None:
            close_values["member_id"] = member_id
        if outcome is not None:
            close_values.update({
                "document_type": outcome.document_type,
                "document_reference": outcome.reference_id,
                "document_status": outcome.status,
                "document_error": outcome.error,
            })

        closed = self._logs(context).update_where(
            close_values,
            UsageLog.id == log.id,
            UsageLog.ended_at.is_(None),
            UsageLog.daily_balance_id.is_(None)
        )
        if closed != 1:
            raise ConsistencyError("La sesión ya fue cerrada por otra operación")

        deferred = settlement == Settlement.DEFERRED
        next_status = TableStatus.PAYMENT_PENDING if deferred else TableStatus.CLEANING
        played_hours = Decimal(charge.duration_minutes) / SIXTY
        previous_hours = Decimal(table.total_play_hours or 0)
        new_total_hours = previous_hours + played_hours

        moved = self._tables(context).update_where(
            {
                "status": next_status.value,
                "current_session_id": log.id,
                "total_play_hours": new_total_hours,
            },
            Table.id == table.id,
            Table.status == TableStatus.OCCUPIED.value,
            Table.current_session_id == table.current_session_id
        )
        if moved != 1:
            raise ConsistencyError(f"La mesa {table.number} cambió de estado durante el cierre")

        maintenance_due = self._check_maintenance(context, table, previous_hours, new_total_hours)

        payment_url = None
        if deferred:
            payment_url = self._request_payment(context, log, charge.subtotal)

        return TransitionOut(
            table_id=table.id,
            status=next_status,
            usage_log_id=log.id,
            duration_minutes=charge.duration_minutes,
            amount_charged=charge.subtotal,
            discount_applied=round2(charge.discount_amount),
            product_total=round2(product_total),
            net_amount=taxes.net_amount,
            tax_amount=taxes.tax_amount,
            document_status=outcome.status if outcome else None,
            document_reference=outcome.reference_id if outcome else None,
            payment_url=payment_url,
            maintenance_due=maintenance_due
        )

    def _check_maintenance(self, context: AuthContext, table: Table,
                           previous_hours: Decimal, new_total_hours: Decimal) -> bool:
        """Emitir aviso cuando las horas desde el último mantenimiento cruzan el umbral"""
        threshold = Decimal(table.maintenance_threshold_hours or settings.DEFAULT_MAINTENANCE_THRESHOLD_HOURS)
        baseline = Decimal(table.hours_at_last_maintenance or 0)
        before = previous_hours - baseline
        after = new_total_hours - baseline
        if not (before < threshold <= after):
            return False

        TenantRepository(self.db, Notification, context).create(
            type=NotificationType.MAINTENANCE_DUE.value,
            table_id=table.id,
            message=(
                f"La mesa {table.number} alcanzó {after.quantize(Decimal('0.01'))} horas de juego "
                f"desde su último mantenimiento (umbral {threshold})"
            )
        )
        logger.info(f"Mantenimiento requerido para la mesa {table.number}")
        return True

    def _request_payment(self, context: AuthContext, log: UsageLog, amount: Decimal) -> Optional[str]:
        """Solicitar link de pago; el resultado se guarda como PaymentRecord PENDING o FAILED"""
        request = PaymentIntentRequest(
            tenant_id=context.tenant_id,
            amount=amount,
            reference_id=f"TAB_{log.id}",
            description=f"Sesión de mesa {log.id}"
        )
        try:
            response = self.payment_provider.create_payment_intent(request)
        except Exception as exc:
            logger.exception(f"Falló la intención de pago para la sesión {log.id}")
            response = PaymentIntentResponse(success=False, error=str(exc)[:500] or exc.__class__.__name__)

        TenantRepository(self.db, PaymentRecord, context).create(
            usage_log_id=log.id,
            method=PaymentMethod.QR.value,
            amount=amount,
            status=PaymentRecordStatus.PENDING.value if response.success else PaymentRecordStatus.FAILED.value,
            provider=self.payment_provider.name,
            transaction_id=response.transaction_id,
            payment_url=response.payment_url,
            error=response.error,
            recorded_by=context.user_id
        )
        return response.payment_url if response.success else None

    # ------------------------------------------------------------------
    # release
    # ------------------------------------------------------------------

    def _release(self, context: AuthContext, table: Table) -> TransitionOut:
        released = self._tables(context).update_where(
            {"status": TableStatus.AVAILABLE.value, "current_session_id": None, "last_session_start": None},
            Table.id == table.id,
            Table.status == TableStatus.CLEANING.value
        )
        if released != 1:
            raise ConsistencyError(f"La mesa {table.number} cambió de estado durante la liberación")
        return TransitionOut(table_id=table.id, status=TableStatus.AVAILABLE)

    def release_after_payment(self, context: AuthContext, log: UsageLog) -> bool:
        """
        Liberar la mesa si su sesión vigente es la que se acaba de pagar.
        No hace commit: corre dentro de la transacción del pago.
        """
        released = self._tables(context).update_where(
            {"status": TableStatus.AVAILABLE.value, "current_session_id": None, "last_session_start": None},
            Table.id == log.table_id,
            Table.current_session_id == log.id,
            Table.status != TableStatus.OCCUPIED.value
        )
        return released == 1

    # ------------------------------------------------------------------
    # Consumo, consulta y mantenimiento
    # ------------------------------------------------------------------

    def list_tables(self, context: AuthContext) -> List[Table]:
        return self._tables(context).list(order_by=Table.number)

    def _open_session_for(self, context: AuthContext, table: Table, for_update: bool = False) -> UsageLog:
        if table.status != TableStatus.OCCUPIED.value or table.current_session_id is None:
            raise ConsistencyError(f"La mesa {table.number} no tiene una sesión activa")
        log = self._logs(context).find(table.current_session_id, for_update=for_update)
        if log is None or log.ended_at is not None:
            raise ConsistencyError(f"La mesa {table.number} no tiene una sesión activa")
        return log

    def add_product(self, context: AuthContext, table_id: UUID, data: OrderItemCreate) -> OrderItemOut:
        """Agregar consumo del bar a la sesión abierta de la mesa"""
        try:
            table = self._tables(context).get(table_id, for_update=True)
            log = self._open_session_for(context, table, for_update=True)

            movement = ProductService(self.db).take_stock(
                context, data.product_id, data.quantity, StockMovementType.SALE, usage_log_id=log.id
            )
            product = movement.product

            item = TenantRepository(self.db, OrderItem, context).create(
                usage_log_id=log.id,
                product_id=product.id,
                quantity=data.quantity,
                unit_price=product.price,
                total_price=round2(Decimal(product.price) * data.quantity),
                unit_cost=product.cost_price
            )
            self.db.commit()
            self.db.refresh(item)
            return OrderItemOut.model_validate(item)

        except HTTPException:
            self.db.rollback()
            raise
        except Exception:
            self.db.rollback()
            logger.exception(f"Error agregando producto a la mesa {table_id}")
            raise internal_error()

    def get_session(self, context: AuthContext, table_id: UUID) -> SessionOut:
        """Sesión en curso con el cobro que se aplicaría si se cerrara ahora"""
        table = self._tables(context).get(table_id)
        log = self._open_session_for(context, table)
        now = utcnow()

        product_total = sum((Decimal(item.total_price) for item in log.items), Decimal("0"))
        tenant = self.db.query(Tenant).filter(Tenant.id == context.tenant_id).first()

        discount_percent = None
        subscription_active = False
        if log.member_id is not None:
            try:
                member = MemberLookup(self.db).get_member(log.member_id, context)
                discount_percent = member.discount_percent
                subscription_active = member.subscription_active
            except NotFoundError:
                logger.warning(f"Socio {log.member_id} de la sesión {log.id} no existe; estimación sin descuento")

        charge = compute_charge(
            log.started_at, now, tenant.hourly_rate, product_total, discount_percent, subscription_active
        )
        return SessionOut(
            table_id=table.id,
            usage_log_id=log.id,
            member_id=log.member_id,
            started_at=log.started_at,
            elapsed_minutes=charge.duration_minutes,
            product_total=round2(product_total),
            estimated_total=charge.subtotal,
            items=[OrderItemOut.model_validate(item) for item in log.items]
        )

    def record_maintenance(self, context: AuthContext, table_id: UUID, data: MaintenanceCreate) -> MaintenanceLog:
        """Registrar mantenimiento y reiniciar el contador de horas"""
        try:
            table = self._tables(context).get(table_id, for_update=True)
            entry = TenantRepository(self.db, MaintenanceLog, context).create(
                table_id=table.id,
                cost=round2(data.cost),
                notes=data.notes,
                play_hours_at_service=table.total_play_hours or Decimal("0"),
                performed_by=context.user_id
            )
            table.hours_at_last_maintenance = table.total_play_hours or Decimal("0")
            self.db.commit()
            self.db.refresh(entry)
            logger.info(f"Mantenimiento registrado en mesa {table.number} (costo {entry.cost})")
            return entry

        except HTTPException:
            self.db.rollback()
            raise
        except Exception:
            self.db.rollback()
            logger.exception(f"Error registrando mantenimiento de la mesa {table_id}")
            raise internal_error()

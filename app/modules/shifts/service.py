"""
Motor de cierre de turno (Z-report).

Consolida en un DailyBalance inmutable todas las sesiones cerradas que aún
no pertenecen a ningún cierre. El balance y la reclamación de sus sesiones
ocurren en una sola transacción: o se reclaman todas o ninguna.
"""
from decimal import Decimal
from typing import List, Optional
from uuid import UUID, uuid4
import logging

from fastapi import HTTPException
from sqlalchemy.orm import Session

from app.common.exceptions import (
    ConsistencyError, NothingToCloseError, PermissionDeniedError, ValidationError, internal_error
)
from app.common.mixins import utcnow
from app.core.config import settings
from app.modules.auth.schemas import AuthContext
from app.modules.payments.models import PaymentRecord, PaymentMethod, PaymentRecordStatus
from app.modules.shifts.aggregator import ShiftCostAggregator
from app.modules.shifts.integrity import compute_balance_hash, fields_of, verify_integrity
from app.modules.shifts.models import DailyBalance
from app.modules.shifts.schemas import (
    ShiftCloseOut, ShiftSummary, BalanceOut, BalanceDetailOut, BalanceSessionOut, IntegrityCheckOut
)
from app.modules.system.models import LogLevel
from app.modules.system.service import record_system_log
from app.modules.tables.models import UsageLog
from app.modules.taxes.calculator import round2
from app.modules.tenancy.models import Tenant
from app.modules.tenancy.repository import TenantRepository

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

CASH_METHODS = {PaymentMethod.CASH.value}
CARD_METHODS = {PaymentMethod.CARD.value, PaymentMethod.TRANSFER.value}


def payment_bucket(method: str) -> str:
    """CASH -> cash, CARD/TRANSFER -> card, cualquier otro -> credit"""
    normalized = (method or "").upper()
    if normalized in CASH_METHODS:
        return "cash"
    if normalized in CARD_METHODS:
        return "card"
    return "credit"


class ShiftReconciliationService:

    def __init__(self, db: Session):
        self.db = db

    def _balances(self, context: AuthContext) -> TenantRepository[DailyBalance]:
        return TenantRepository(self.db, DailyBalance, context, label="Cierre")

    def _logs(self, context: AuthContext) -> TenantRepository[UsageLog]:
        return TenantRepository(self.db, UsageLog, context, label="Sesión")

    def close_shift(self, context: AuthContext, cash_in_hand: Decimal, notes: Optional[str] = None,
                    closed_by: Optional[str] = None) -> ShiftCloseOut:
        """
        Cerrar el turno con arqueo ciego.

        Args:
            context: Contexto del cajero/administrador que cierra
            cash_in_hand: Efectivo contado antes de ver los totales
            notes: Observaciones libres
            closed_by: Nombre a registrar; por defecto el del contexto

        Raises:
            NothingToCloseError: no hay sesiones cerradas sin consolidar
            ConsistencyError: otra operación reclamó alguna sesión primero
        """
        if not context.is_privileged:
            raise PermissionDeniedError("Solo un administrador puede cerrar el turno")

        cash_in_hand = Decimal(cash_in_hand)
        if cash_in_hand < 0:
            raise ValidationError("El efectivo declarado no puede ser negativo")

        logs_repo = self._logs(context)
        try:
            logs = (
                logs_repo.query()
                .filter(UsageLog.ended_at.isnot(None), UsageLog.daily_balance_id.is_(None))
                .order_by(UsageLog.started_at)
                .with_for_update()
                .all()
            )
            if not logs:
                raise NothingToCloseError("No hay sesiones cerradas pendientes de consolidar")

            log_ids = [log.id for log in logs]
            now = utcnow()
            tenant = self.db.query(Tenant).filter(Tenant.id == context.tenant_id).first()
            previous = self._balances(context).list(order_by=DailyBalance.period_end.desc(), limit=1)
            if previous:
                period_start = previous[0].period_end
            else:
                period_start = min([tenant.created_at] + [log.started_at for log in logs])

            # Ingresos por mesas
            product_revenue = sum((Decimal(log.product_total or 0) for log in logs), ZERO)
            time_revenue = sum(
                (Decimal(log.amount_charged or 0) - Decimal(log.product_total or 0) for log in logs), ZERO
            )

            # Desglose teórico por medio de pago
            buckets = {"cash": ZERO, "card": ZERO, "credit": ZERO}
            payments = TenantRepository(self.db, PaymentRecord, context).list(
                PaymentRecord.usage_log_id.in_(log_ids),
                PaymentRecord.status == PaymentRecordStatus.COMPLETED.value
            )
            for payment in payments:
                buckets[payment_bucket(payment.method)] += Decimal(payment.amount)

            totals = ShiftCostAggregator(self.db, context).totals(log_ids, period_start, now)

            total_revenue = time_revenue + product_revenue + totals.membership_revenue + totals.rental_revenue
            net_profit = total_revenue - totals.cost_of_goods - totals.waste_cost - totals.maintenance_cost

            # Arqueo ciego
            tolerance = (
                Decimal(tenant.cash_tolerance) if tenant.cash_tolerance is not None
                else settings.CASH_ALERT_TOLERANCE
            )
            cash_difference = round2(cash_in_hand) - round2(buckets["cash"])
            has_cash_alert = abs(cash_difference) > tolerance

            values = {
                "id": uuid4(),
                "tenant_id": context.tenant_id,
                "period_start": period_start,
                "period_end": now,
                "session_count": len(logs),
                "time_revenue": round2(time_revenue),
                "product_revenue": round2(product_revenue),
                "membership_revenue": round2(totals.membership_revenue),
                "rental_revenue": round2(totals.rental_revenue),
                "total_revenue": round2(total_revenue),
                "cash_revenue": round2(buckets["cash"]),
                "card_revenue": round2(buckets["card"]),
                "credit_revenue": round2(buckets["credit"]),
                "total_cost": round2(totals.cost_of_goods),
                "waste_cost": round2(totals.waste_cost),
                "maintenance_cost": round2(totals.maintenance_cost),
                "net_profit": round2(net_profit),
                "cash_in_hand": round2(cash_in_hand),
                "cash_difference": cash_difference,
                "has_cash_alert": has_cash_alert,
                "closed_by": closed_by or context.display_name,
                "notes": notes,
            }
            integrity_hash = compute_balance_hash(values, log_ids)

            balance = self._balances(context).create(
                closed_by_id=context.user_id,
                integrity_hash=integrity_hash,
                **values
            )

            claimed = logs_repo.update_where(
                {"daily_balance_id": balance.id},
                UsageLog.id.in_(log_ids),
                UsageLog.ended_at.isnot(None),
                UsageLog.daily_balance_id.is_(None)
            )
            if claimed != len(log_ids):
                raise ConsistencyError("Otra operación consolidó sesiones de este turno. Reintente el cierre")

            record_system_log(
                self.db, LogLevel.INFO,
                f"Cierre Z sellado: {len(log_ids)} sesiones",
                context.tenant_id,
                {"balance_id": balance.id, "integrity_hash": integrity_hash, "closed_by": values["closed_by"]}
            )
            if has_cash_alert:
                direction = "Sobran" if cash_difference > 0 else "Faltan"
                record_system_log(
                    self.db, LogLevel.WARN,
                    f"Descuadre de caja en cierre Z: {direction} {abs(cash_difference)}. "
                    f"Teórico: {values['cash_revenue']} | Declarado: {values['cash_in_hand']}",
                    context.tenant_id,
                    {
                        "balance_id": balance.id,
                        "theoretical": values["cash_revenue"],
                        "declared": values["cash_in_hand"],
                        "difference": cash_difference,
                        "closed_by": values["closed_by"],
                    }
                )
                logger.warning(f"Descuadre de caja {cash_difference} en el cierre {balance.id}")

            self.db.commit()
            logger.info(f"Cierre Z {values['id']} creado con {len(log_ids)} sesiones")

            return ShiftCloseOut(
                balance_id=values["id"],
                has_cash_alert=has_cash_alert,
                cash_difference=cash_difference,
                integrity_hash=integrity_hash,
                summary=ShiftSummary(
                    total_revenue=values["total_revenue"],
                    time_revenue=values["time_revenue"],
                    product_revenue=values["product_revenue"],
                    membership_revenue=values["membership_revenue"],
                    rental_revenue=values["rental_revenue"],
                    cash_revenue=values["cash_revenue"],
                    card_revenue=values["card_revenue"],
                    credit_revenue=values["credit_revenue"],
                    total_cost=values["total_cost"],
                    waste_cost=values["waste_cost"],
                    maintenance_cost=values["maintenance_cost"],
                    net_profit=values["net_profit"],
                    session_count=values["session_count"]
                )
            )

        except HTTPException:
            self.db.rollback()
            raise
        except Exception:
            self.db.rollback()
            logger.exception("Error al procesar el cierre Z")
            raise internal_error()

    def list_balances(self, context: AuthContext, limit: Optional[int] = None) -> List[DailyBalance]:
        """Historial de cierres, el más reciente primero"""
        return self._balances(context).list(
            order_by=DailyBalance.period_end.desc(),
            limit=limit or settings.BALANCE_HISTORY_LIMIT
        )

    def _claimed_log_ids(self, context: AuthContext, balance_id: UUID) -> List[UUID]:
        rows = self._logs(context).query().filter(UsageLog.daily_balance_id == balance_id).with_entities(UsageLog.id)
        return [row.id for row in rows.all()]

    def get_balance_detail(self, context: AuthContext, balance_id: UUID) -> BalanceDetailOut:
        balance = self._balances(context).get(balance_id)
        sessions = self._logs(context).list(UsageLog.daily_balance_id == balance.id, order_by=UsageLog.started_at)

        detail = BalanceDetailOut.model_validate(balance)
        detail.sessions = [BalanceSessionOut.model_validate(log) for log in sessions]
        return detail

    def verify_balance(self, context: AuthContext, balance_id: UUID) -> IntegrityCheckOut:
        """Recalcular el sello desde los valores almacenados"""
        balance = self._balances(context).get(balance_id)
        log_ids = self._claimed_log_ids(context, balance.id)
        computed = compute_balance_hash(fields_of(balance), log_ids)
        valid = verify_integrity(balance, log_ids)

        if not valid:
            logger.error(f"Sello de integridad inválido en el cierre {balance.id}")
            record_system_log(
                self.db, LogLevel.CRITICAL,
                "Sello de integridad del cierre Z no coincide con los valores almacenados",
                context.tenant_id,
                {"balance_id": balance.id, "stored_hash": balance.integrity_hash, "computed_hash": computed}
            )
            self.db.commit()

        return IntegrityCheckOut(
            balance_id=balance.id,
            valid=valid,
            stored_hash=balance.integrity_hash,
            computed_hash=computed
        )

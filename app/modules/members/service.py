from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID
import calendar
import logging

from sqlalchemy.orm import Session

from app.common.mixins import utcnow
from app.modules.auth.schemas import AuthContext
from app.modules.members.models import (
    Member, MembershipPayment, SubscriptionStatus, BillingCycle, MembershipPaymentStatus
)
from app.modules.tenancy.repository import TenantRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MemberSnapshot:
    id: UUID
    discount_percent: Decimal
    subscription_status: str

    @property
    def subscription_active(self) -> bool:
        return self.subscription_status == SubscriptionStatus.ACTIVE.value


def add_months(moment: datetime, months: int) -> datetime:
    """Sumar meses calendario ajustando el día al último del mes destino"""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


class MemberLookup:
    """Consulta de socios acotada al tenant"""

    def __init__(self, db: Session):
        self.db = db

    def get_member(self, member_id: UUID, context: AuthContext) -> MemberSnapshot:
        """
        Obtener descuento y estado de suscripción del socio.
        Un socio de otro tenant se reporta como inexistente.
        """
        member = TenantRepository(self.db, Member, context, label="Socio").get(member_id)
        return MemberSnapshot(
            id=member.id,
            discount_percent=Decimal(member.discount_percent or 0),
            subscription_status=member.subscription_status
        )


def settle_membership_payment(db: Session, payment: MembershipPayment,
                              transaction_id: Optional[str] = None) -> Member:
    """
    Marcar el pago como PAID y reactivar al socio.

    El nuevo período parte desde el mayor entre ahora y el vencimiento
    actual, de modo que pagar por adelantado no pierde días.
    """
    now = utcnow()
    member = payment.member

    payment.status = MembershipPaymentStatus.PAID.value
    payment.paid_at = now
    if transaction_id:
        payment.transaction_id = transaction_id

    base = max(now, member.current_period_end or now)
    months = 12 if member.billing_cycle == BillingCycle.YEARLY.value else payment.months or 1
    member.subscription_status = SubscriptionStatus.ACTIVE.value
    member.current_period_end = add_months(base, months)

    logger.info(f"Socio {member.id} activado hasta {member.current_period_end.isoformat()}")
    return member

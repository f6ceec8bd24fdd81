from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Sequence
from uuid import UUID

from sqlalchemy.orm import Session

from app.modules.auth.schemas import AuthContext
from app.modules.members.models import MembershipPayment, MembershipPaymentStatus
from app.modules.products.models import StockMovement, StockMovementType, RentalCharge
from app.modules.tables.models import OrderItem, MaintenanceLog
from app.modules.tenancy.repository import TenantRepository

ZERO = Decimal("0")


@dataclass(frozen=True)
class ShiftTotals:
    cost_of_goods: Decimal
    waste_cost: Decimal
    maintenance_cost: Decimal
    membership_revenue: Decimal
    rental_revenue: Decimal


class ShiftCostAggregator:
    """
    Totales de costos e ingresos complementarios de un turno.

    Ventana semiabierta [start, end). COGS usa el costo fijado en cada
    OrderItem al momento de la venta, no el costo vigente del producto.
    """

    def __init__(self, db: Session, context: AuthContext):
        self.db = db
        self.context = context

    def _repo(self, model):
        return TenantRepository(self.db, model, self.context)

    def cost_of_goods(self, usage_log_ids: Sequence[UUID]) -> Decimal:
        if not usage_log_ids:
            return ZERO
        items = self._repo(OrderItem).list(OrderItem.usage_log_id.in_(list(usage_log_ids)))
        return sum((Decimal(item.unit_cost or 0) * item.quantity for item in items), ZERO)

    def waste_cost(self, start: datetime, end: datetime) -> Decimal:
        movements = self._repo(StockMovement).list(
            StockMovement.type == StockMovementType.WASTE.value,
            StockMovement.created_at >= start,
            StockMovement.created_at < end
        )
        return sum((Decimal(m.unit_cost or 0) * abs(m.quantity) for m in movements), ZERO)

    def maintenance_cost(self, start: datetime, end: datetime) -> Decimal:
        entries = self._repo(MaintenanceLog).list(
            MaintenanceLog.created_at >= start,
            MaintenanceLog.created_at < end
        )
        return sum((Decimal(entry.cost or 0) for entry in entries), ZERO)

    def membership_revenue(self, start: datetime, end: datetime) -> Decimal:
        payments = self._repo(MembershipPayment).list(
            MembershipPayment.status == MembershipPaymentStatus.PAID.value,
            MembershipPayment.paid_at >= start,
            MembershipPayment.paid_at < end
        )
        return sum((Decimal(payment.amount) for payment in payments), ZERO)

    def rental_revenue(self, start: datetime, end: datetime) -> Decimal:
        rentals = self._repo(RentalCharge).list(
            RentalCharge.created_at >= start,
            RentalCharge.created_at < end
        )
        return sum((Decimal(rental.amount) for rental in rentals), ZERO)

    def totals(self, usage_log_ids: Sequence[UUID], start: datetime, end: datetime) -> ShiftTotals:
        return ShiftTotals(
            cost_of_goods=self.cost_of_goods(usage_log_ids),
            waste_cost=self.waste_cost(start, end),
            maintenance_cost=self.maintenance_cost(start, end),
            membership_revenue=self.membership_revenue(start, end),
            rental_revenue=self.rental_revenue(start, end)
        )

"""
Socios del club y pagos de membresía.

El descuento del socio solo aplica sobre el tiempo de mesa y solo cuando
la suscripción está ACTIVE al momento de cerrar la sesión.
"""
from app.database.database import Base
from sqlalchemy import Column, String, DateTime, ForeignKey, Numeric, Integer, Uuid
from sqlalchemy.orm import relationship
from app.common.mixins import BaseMixin
import enum


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    PENDING = "PENDING"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class BillingCycle(str, enum.Enum):
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class MembershipPaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"


class Member(Base, BaseMixin):
    __tablename__ = "members"

    name = Column(String(150), nullable=False)
    email = Column(String(150), nullable=True, index=True)
    phone = Column(String(40), nullable=True)

    discount_percent = Column(Numeric(5, 2), nullable=False, default=0)
    subscription_status = Column(String(20), nullable=False, default=SubscriptionStatus.PENDING.value, index=True)
    billing_cycle = Column(String(10), nullable=False, default=BillingCycle.MONTHLY.value)
    current_period_end = Column(DateTime, nullable=True)

    payments = relationship("MembershipPayment", back_populates="member")


class MembershipPayment(Base, BaseMixin):
    __tablename__ = "membership_payments"

    member_id = Column(Uuid(as_uuid=True), ForeignKey("members.id"), nullable=False, index=True)
    amount = Column(Numeric(15, 2), nullable=False)
    status = Column(String(20), nullable=False, default=MembershipPaymentStatus.PENDING.value, index=True)
    months = Column(Integer, nullable=False, default=1)
    transaction_id = Column(String(100), nullable=True)
    paid_at = Column(DateTime, nullable=True, index=True)

    member = relationship("Member", back_populates="payments")

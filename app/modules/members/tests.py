import pytest
from datetime import datetime, timedelta
from decimal import Decimal

from app.common.exceptions import NotFoundError
from app.common.mixins import utcnow
from app.modules.members.models import (
    Member, MembershipPayment, MembershipPaymentStatus, SubscriptionStatus, BillingCycle
)
from app.modules.members.service import MemberLookup, add_months, settle_membership_payment

from conftest import make_context


def make_member(db_session, tenant, **overrides):
    values = {
        "tenant_id": tenant.id,
        "name": "Socio",
        "discount_percent": Decimal("15"),
        "subscription_status": SubscriptionStatus.EXPIRED.value,
    }
    values.update(overrides)
    member = Member(**values)
    db_session.add(member)
    db_session.commit()
    return member


def make_payment(db_session, member, months=1):
    payment = MembershipPayment(
        tenant_id=member.tenant_id, member_id=member.id, amount=Decimal("20000"), months=months
    )
    db_session.add(payment)
    db_session.commit()
    return payment


class TestAddMonths:

    @pytest.mark.parametrize("start,months,expected", [
        (datetime(2026, 1, 15), 1, datetime(2026, 2, 15)),
        (datetime(2026, 1, 31), 1, datetime(2026, 2, 28)),
        (datetime(2028, 1, 31), 1, datetime(2028, 2, 29)),
        (datetime(2026, 11, 30), 3, datetime(2027, 2, 28)),
        (datetime(2026, 5, 10), 12, datetime(2027, 5, 10)),
    ])
    def test_calendar_months(self, start, months, expected):
        assert add_months(start, months) == expected


class TestMemberLookup:

    def test_snapshot(self, db_session, active_member, admin_context):
        snapshot = MemberLookup(db_session).get_member(active_member.id, admin_context)

        assert snapshot.discount_percent == Decimal("20")
        assert snapshot.subscription_active is True

    def test_expired_member_is_not_active(self, db_session, tenant, admin_context):
        member = make_member(db_session, tenant)
        assert MemberLookup(db_session).get_member(member.id, admin_context).subscription_active is False

    def test_member_of_other_tenant(self, db_session, active_member, other_tenant):
        with pytest.raises(NotFoundError):
            MemberLookup(db_session).get_member(active_member.id, make_context(other_tenant))


class TestSettleMembershipPayment:
    """Tests para la reactivación de socios al confirmar el pago"""

    def test_expired_member_starts_from_now(self, db_session, tenant):
        member = make_member(db_session, tenant, current_period_end=utcnow() - timedelta(days=40))
        payment = make_payment(db_session, member)

        settle_membership_payment(db_session, payment, "txn_1")
        db_session.commit()

        assert payment.status == MembershipPaymentStatus.PAID.value
        assert payment.transaction_id == "txn_1"
        assert member.subscription_status == SubscriptionStatus.ACTIVE.value
        assert member.current_period_end > utcnow() + timedelta(days=27)
        assert member.current_period_end < utcnow() + timedelta(days=32)

    def test_early_renewal_keeps_remaining_days(self, db_session, tenant):
        current_end = utcnow() + timedelta(days=10)
        member = make_member(
            db_session, tenant,
            subscription_status=SubscriptionStatus.ACTIVE.value,
            current_period_end=current_end
        )
        payment = make_payment(db_session, member, months=2)

        settle_membership_payment(db_session, payment)

        assert member.current_period_end == add_months(current_end, 2)

    def test_yearly_cycle(self, db_session, tenant):
        member = make_member(db_session, tenant, billing_cycle=BillingCycle.YEARLY.value)
        payment = make_payment(db_session, member)

        settle_membership_payment(db_session, payment)

        assert member.current_period_end > utcnow() + timedelta(days=360)

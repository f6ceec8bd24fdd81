"""
Tests para registro de pagos y webhooks de la pasarela
"""

import json
import pytest
from datetime import timedelta
from decimal import Decimal

from app.common.exceptions import ConsistencyError, NotFoundError, PermissionDeniedError, ValidationError
from app.common.mixins import utcnow
from app.modules.billing.models import FolioRange
from app.modules.members.models import (
    Member, MembershipPayment, MembershipPaymentStatus, SubscriptionStatus, BillingCycle
)
from app.modules.payments.models import PaymentRecord, PaymentMethod, PaymentRecordStatus
from app.modules.payments.provider import MockPaymentProvider, payment_provider
from app.modules.payments.schemas import PaymentCreate
from app.modules.payments.service import PaymentService
from app.modules.system.models import SystemLog, LogLevel
from app.modules.tables.models import TableStatus, UsageLog, PaymentStatus, DocumentStatus
from app.modules.tables.schemas import Settlement
from app.modules.tables.service import TableSessionService

from conftest import DuplicateFolioProvider, make_context, make_table, open_session_at


def stop_table(db_session, table, context, settlement=Settlement.IMMEDIATE, minutes=30):
    open_session_at(db_session, table, minutes)
    return TableSessionService(db_session).transition(
        context, table.id, TableStatus.OCCUPIED, settlement=settlement
    )


def signed_body(transaction_id, amount, reference_id, status="PAID"):
    body = json.dumps({
        "transaction_id": transaction_id,
        "amount": str(amount),
        "reference_id": reference_id,
        "status": status,
    })
    return body, payment_provider.sign(transaction_id, Decimal(str(amount)), reference_id)


class TestRegisterPayment:
    """Tests para PaymentService.register_payment"""

    def test_cash_payment_releases_table(self, db_session, table, admin_context):
        stopped = stop_table(db_session, table, admin_context, settlement=Settlement.DEFERRED)

        result = PaymentService(db_session).register_payment(
            admin_context,
            PaymentCreate(usage_log_id=stopped.usage_log_id, amount=Decimal("5000"), method=PaymentMethod.CASH)
        )

        assert result.success is True
        assert result.amount == Decimal("3000.00")
        assert result.change == Decimal("2000.00")
        assert result.table_released is True

        log = db_session.get(UsageLog, stopped.usage_log_id)
        assert log.payment_status == PaymentStatus.PAID.value
        db_session.refresh(table)
        assert table.status == TableStatus.AVAILABLE.value
        assert table.current_session_id is None

    def test_payment_does_not_release_reused_table(self, db_session, table, admin_context):
        stopped = stop_table(db_session, table, admin_context, settlement=Settlement.DEFERRED)
        TableSessionService(db_session).transition(admin_context, table.id, TableStatus.PAYMENT_PENDING)

        result = PaymentService(db_session).register_payment(
            admin_context, PaymentCreate(usage_log_id=stopped.usage_log_id, amount=Decimal("3000"))
        )

        assert result.table_released is False
        db_session.refresh(table)
        assert table.status == TableStatus.OCCUPIED.value

    def test_insufficient_amount(self, db_session, table, admin_context):
        stopped = stop_table(db_session, table, admin_context)

        with pytest.raises(ValidationError):
            PaymentService(db_session).register_payment(
                admin_context, PaymentCreate(usage_log_id=stopped.usage_log_id, amount=Decimal("2999.99"))
            )

        assert db_session.query(PaymentRecord).count() == 0

    def test_open_session_cannot_be_paid(self, db_session, table, admin_context):
        log = open_session_at(db_session, table, 30)

        with pytest.raises(ConsistencyError):
            PaymentService(db_session).register_payment(
                admin_context, PaymentCreate(usage_log_id=log.id, amount=Decimal("3000"))
            )

    def test_double_payment_is_rejected(self, db_session, table, admin_context):
        stopped = stop_table(db_session, table, admin_context)
        service = PaymentService(db_session)
        data = PaymentCreate(usage_log_id=stopped.usage_log_id, amount=Decimal("3000"), method=PaymentMethod.CARD)
        service.register_payment(admin_context, data)

        with pytest.raises(ConsistencyError):
            service.register_payment(admin_context, data)

        completed = db_session.query(PaymentRecord).filter(
            PaymentRecord.status == PaymentRecordStatus.COMPLETED.value
        ).count()
        assert completed == 1

    def test_foreign_session_is_not_found(self, db_session, table, other_tenant, admin_context):
        foreign_context = make_context(other_tenant)
        foreign_table = make_table(db_session, other_tenant, 1)
        stopped = stop_table(db_session, foreign_table, foreign_context)

        with pytest.raises(NotFoundError):
            PaymentService(db_session).register_payment(
                admin_context, PaymentCreate(usage_log_id=stopped.usage_log_id, amount=Decimal("3000"))
            )


class TestMockPaymentProvider:

    def test_signature_round_trip(self):
        provider = MockPaymentProvider(secret="s3cret")
        body = json.dumps({"transaction_id": "txn_1", "amount": "3000", "reference_id": "TAB_x"})

        verification = provider.handle_webhook(body, provider.sign("txn_1", Decimal("3000.00"), "TAB_x"))

        assert verification.is_valid is True
        assert verification.amount == Decimal("3000")

    def test_tampered_amount_is_rejected(self):
        provider = MockPaymentProvider(secret="s3cret")
        signature = provider.sign("txn_1", Decimal("3000"), "TAB_x")
        body = json.dumps({"transaction_id": "txn_1", "amount": "30", "reference_id": "TAB_x"})

        assert provider.handle_webhook(body, signature).is_valid is False

    def test_malformed_body(self):
        provider = MockPaymentProvider(secret="s3cret")
        verification = provider.handle_webhook("no es json", "abc")
        assert verification.is_valid is False
        assert "Payload" in verification.error


class TestPaymentWebhook:
    """Tests para PaymentService.handle_webhook"""

    def test_table_reference_settles_session(self, db_session, table, admin_context):
        stopped = stop_table(db_session, table, admin_context, settlement=Settlement.DEFERRED)
        pending = db_session.query(PaymentRecord).one()
        reference = f"TAB_{stopped.usage_log_id}"
        body, signature = signed_body(pending.transaction_id, "3000.00", reference)

        result = PaymentService(db_session).handle_webhook(body, signature)

        assert result.processed == "TAB"
        assert result.already_processed is False
        db_session.refresh(pending)
        assert pending.status == PaymentRecordStatus.COMPLETED.value
        assert db_session.query(PaymentRecord).count() == 1

        log = db_session.get(UsageLog, stopped.usage_log_id)
        assert log.payment_status == PaymentStatus.PAID.value
        assert log.document_status == DocumentStatus.GENERATED.value
        assert log.document_reference == "39-1"
        db_session.refresh(table)
        assert table.status == TableStatus.AVAILABLE.value

    def test_repeated_webhook_is_idempotent(self, db_session, table, admin_context):
        stopped = stop_table(db_session, table, admin_context, settlement=Settlement.DEFERRED)
        pending = db_session.query(PaymentRecord).one()
        body, signature = signed_body(pending.transaction_id, "3000.00", f"TAB_{stopped.usage_log_id}")
        service = PaymentService(db_session)
        service.handle_webhook(body, signature)

        again = service.handle_webhook(body, signature)

        assert again.already_processed is True
        completed = db_session.query(PaymentRecord).filter(
            PaymentRecord.status == PaymentRecordStatus.COMPLETED.value
        ).count()
        assert completed == 1

    def test_invalid_signature_is_security_event(self, db_session, table, admin_context):
        stopped = stop_table(db_session, table, admin_context, settlement=Settlement.DEFERRED)
        body, _ = signed_body("txn_fake", "3000.00", f"TAB_{stopped.usage_log_id}")

        with pytest.raises(PermissionDeniedError):
            PaymentService(db_session).handle_webhook(body, "0" * 64)

        log = db_session.get(UsageLog, stopped.usage_log_id)
        assert log.payment_status == PaymentStatus.PENDING.value
        events = db_session.query(SystemLog).filter(SystemLog.level == LogLevel.SECURITY.value).count()
        assert events == 1

    def test_rejected_payment_does_not_settle(self, db_session, table, admin_context):
        stopped = stop_table(db_session, table, admin_context, settlement=Settlement.DEFERRED)
        pending = db_session.query(PaymentRecord).one()
        body, signature = signed_body(
            pending.transaction_id, "3000.00", f"TAB_{stopped.usage_log_id}", status="REJECTED"
        )

        with pytest.raises(ValidationError):
            PaymentService(db_session).handle_webhook(body, signature)

        db_session.refresh(pending)
        assert pending.status == PaymentRecordStatus.PENDING.value
        log = db_session.get(UsageLog, stopped.usage_log_id)
        assert log.payment_status == PaymentStatus.PENDING.value
        db_session.refresh(table)
        assert table.status == TableStatus.PAYMENT_PENDING.value

    def test_folio_error_does_not_abort_settlement(self, db_session, tenant, table, admin_context):
        stopped = stop_table(db_session, table, admin_context, settlement=Settlement.DEFERRED)
        db_session.add(FolioRange(tenant_id=tenant.id, document_type=39, end_folio=100, current_folio=0))
        db_session.commit()
        pending = db_session.query(PaymentRecord).one()
        body, signature = signed_body(pending.transaction_id, "3000.00", f"TAB_{stopped.usage_log_id}")

        service = PaymentService(db_session, document_provider=DuplicateFolioProvider())
        result = service.handle_webhook(body, signature)

        assert result.success is True
        log = db_session.get(UsageLog, stopped.usage_log_id)
        assert log.payment_status == PaymentStatus.PAID.value
        assert log.document_status == DocumentStatus.FAILED.value
        assert db_session.query(FolioRange).count() == 1
        db_session.refresh(table)
        assert table.status == TableStatus.AVAILABLE.value

    def test_unknown_prefix(self, db_session):
        body, signature = signed_body("txn_1", "1000.00", "XYZ_123")
        with pytest.raises(ValidationError):
            PaymentService(db_session).handle_webhook(body, signature)

    def test_membership_reference_activates_member(self, db_session, tenant):
        member = Member(
            tenant_id=tenant.id,
            name="Socio Moroso",
            discount_percent=Decimal("10"),
            subscription_status=SubscriptionStatus.EXPIRED.value,
            billing_cycle=BillingCycle.MONTHLY.value
        )
        db_session.add(member)
        db_session.flush()
        payment = MembershipPayment(
            tenant_id=tenant.id,
            member_id=member.id,
            amount=Decimal("25000"),
            months=1,
            status=MembershipPaymentStatus.PENDING.value
        )
        db_session.add(payment)
        db_session.commit()

        body, signature = signed_body("txn_mem", "25000.00", f"MEM_{payment.id}")
        result = PaymentService(db_session).handle_webhook(body, signature)

        assert result.processed == "MEM"
        db_session.refresh(payment)
        db_session.refresh(member)
        assert payment.status == MembershipPaymentStatus.PAID.value
        assert payment.paid_at is not None
        assert member.subscription_status == SubscriptionStatus.ACTIVE.value
        assert member.current_period_end > utcnow() + timedelta(days=27)


class TestPaymentsAPI:

    def test_register_payment_endpoint(self, client, db_session, table, admin_context, waiter_headers):
        stopped = stop_table(db_session, table, admin_context)

        response = client.post(
            "/api/v1/payments",
            json={"usage_log_id": str(stopped.usage_log_id), "amount": "3000", "method": "CARD"},
            headers=waiter_headers
        )

        assert response.status_code == 201
        assert response.json()["table_released"] is True

    def test_webhook_is_public_but_signed(self, client, db_session, table, admin_context):
        stopped = stop_table(db_session, table, admin_context, settlement=Settlement.DEFERRED)
        pending = db_session.query(PaymentRecord).one()
        body, signature = signed_body(pending.transaction_id, "3000.00", f"TAB_{stopped.usage_log_id}")

        response = client.post(
            "/api/v1/webhooks/payments",
            content=body,
            headers={"Content-Type": "application/json", "X-Webhook-Signature": signature}
        )

        assert response.status_code == 200
        assert response.json()["success"] is True

    def test_webhook_without_signature(self, client):
        response = client.post("/api/v1/webhooks/payments", content="{}")
        assert response.status_code == 401

    def test_webhook_with_bad_signature(self, client):
        body, _ = signed_body("txn_1", "1.00", "TAB_x")
        response = client.post(
            "/api/v1/webhooks/payments",
            content=body,
            headers={"X-Webhook-Signature": "bad"}
        )
        assert response.status_code == 403

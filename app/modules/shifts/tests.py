"""
Tests del cierre de turno (Z-report)

Cubren:
- Arqueo ciego y alerta de descuadre
- Consolidación atómica de sesiones (nunca dos veces la misma)
- Aritmética de ingresos, costos y utilidad
- Sello de integridad e inmutabilidad del balance
"""

import pytest
from decimal import Decimal

from app.common.exceptions import (
    ImmutabilityViolationError, NothingToCloseError, PermissionDeniedError, ValidationError
)
from app.common.mixins import utcnow
from app.modules.members.models import Member, MembershipPayment, MembershipPaymentStatus, SubscriptionStatus
from app.modules.payments.models import PaymentMethod
from app.modules.payments.schemas import PaymentCreate
from app.modules.payments.service import PaymentService
from app.modules.products.schemas import WasteCreate, RentalCreate
from app.modules.products.service import ProductService, RentalService
from app.modules.shifts.integrity import verify_integrity
from app.modules.shifts.models import DailyBalance
from app.modules.shifts.service import ShiftReconciliationService, payment_bucket
from app.modules.system.models import SystemLog, LogLevel
from app.modules.tables.models import TableStatus, UsageLog, PaymentStatus
from app.modules.tables.schemas import OrderItemCreate, MaintenanceCreate
from app.modules.tables.service import TableSessionService

from conftest import make_table, open_session_at


def play_and_pay(db_session, table, context, minutes=30, method=PaymentMethod.CASH, pay=True):
    """Jugar `minutes` minutos, cerrar la mesa y (opcionalmente) pagar el cobro exacto"""
    open_session_at(db_session, table, minutes)
    service = TableSessionService(db_session)
    stopped = service.transition(context, table.id, TableStatus.OCCUPIED)
    if pay:
        PaymentService(db_session).register_payment(
            context, PaymentCreate(usage_log_id=stopped.usage_log_id, amount=stopped.amount_charged, method=method)
        )
    else:
        service.transition(context, table.id, TableStatus.CLEANING)
    return stopped


def logs_at_level(db_session, level):
    return db_session.query(SystemLog).filter(SystemLog.level == level.value).all()


class TestPaymentBucket:

    @pytest.mark.parametrize("method,bucket", [
        ("CASH", "cash"),
        ("cash", "cash"),
        ("CARD", "card"),
        ("TRANSFER", "card"),
        ("QR", "credit"),
        ("CREDIT", "credit"),
        ("OTHER", "credit"),
        (None, "credit"),
    ])
    def test_method_buckets(self, method, bucket):
        assert payment_bucket(method) == bucket


class TestCloseShift:
    """Tests para ShiftReconciliationService.close_shift"""

    def test_cash_shortage_raises_alert(self, db_session, tenant, table, admin_context):
        """Teórico 100000 en efectivo, declarado 95000: faltan 5000"""
        tenant.hourly_rate = Decimal("100000")
        db_session.commit()
        play_and_pay(db_session, table, admin_context, minutes=60)

        result = ShiftReconciliationService(db_session).close_shift(admin_context, Decimal("95000"))

        assert result.summary.cash_revenue == Decimal("100000.00")
        assert result.cash_difference == Decimal("-5000.00")
        assert result.has_cash_alert is True

        warnings = [log for log in logs_at_level(db_session, LogLevel.WARN) if "Descuadre" in log.message]
        assert len(warnings) == 1
        assert "Faltan" in warnings[0].message

    def test_exact_cash_has_no_alert(self, db_session, table, admin_context):
        play_and_pay(db_session, table, admin_context)

        result = ShiftReconciliationService(db_session).close_shift(admin_context, Decimal("3000"))

        assert result.cash_difference == Decimal("0.00")
        assert result.has_cash_alert is False

    def test_tenant_tolerance_override(self, db_session, tenant, table, admin_context):
        tenant.cash_tolerance = Decimal("500")
        db_session.commit()
        play_and_pay(db_session, table, admin_context)

        within = ShiftReconciliationService(db_session).close_shift(admin_context, Decimal("2600"))
        assert within.has_cash_alert is False
        assert within.cash_difference == Decimal("-400.00")

    def test_payment_methods_are_bucketed(self, db_session, tenant, admin_context):
        play_and_pay(db_session, make_table(db_session, tenant, 1), admin_context, method=PaymentMethod.CASH)
        play_and_pay(db_session, make_table(db_session, tenant, 2), admin_context, method=PaymentMethod.TRANSFER)
        play_and_pay(db_session, make_table(db_session, tenant, 3), admin_context, method=PaymentMethod.CREDIT)

        result = ShiftReconciliationService(db_session).close_shift(admin_context, Decimal("3000"))

        assert result.summary.cash_revenue == Decimal("3000.00")
        assert result.summary.card_revenue == Decimal("3000.00")
        assert result.summary.credit_revenue == Decimal("3000.00")
        assert result.summary.session_count == 3

    def test_revenue_cost_and_profit(self, db_session, tenant, table, admin_context, product):
        service = TableSessionService(db_session)
        log = open_session_at(db_session, table, 30)
        service.add_product(admin_context, table.id, OrderItemCreate(product_id=product.id, quantity=2))
        stopped = service.transition(admin_context, table.id, TableStatus.OCCUPIED)
        PaymentService(db_session).register_payment(
            admin_context,
            PaymentCreate(usage_log_id=log.id, amount=stopped.amount_charged, method=PaymentMethod.CARD)
        )

        ProductService(db_session).register_waste(admin_context, product.id, WasteCreate(quantity=1))
        service.record_maintenance(admin_context, table.id, MaintenanceCreate(cost=Decimal("15000")))
        RentalService(db_session).record_rental(
            admin_context, RentalCreate(description="Salón privado", amount=Decimal("5000"))
        )
        member = Member(tenant_id=tenant.id, name="Socio", subscription_status=SubscriptionStatus.ACTIVE.value)
        db_session.add(member)
        db_session.flush()
        db_session.add(MembershipPayment(
            tenant_id=tenant.id, member_id=member.id, amount=Decimal("25000"),
            status=MembershipPaymentStatus.PAID.value, paid_at=utcnow()
        ))
        db_session.commit()

        summary = ShiftReconciliationService(db_session).close_shift(admin_context, Decimal("0")).summary

        assert summary.time_revenue == Decimal("3000.00")
        assert summary.product_revenue == Decimal("5000.00")
        assert summary.membership_revenue == Decimal("25000.00")
        assert summary.rental_revenue == Decimal("5000.00")
        assert summary.total_revenue == Decimal("38000.00")
        assert summary.total_cost == Decimal("2000.00")
        assert summary.waste_cost == Decimal("1000.00")
        assert summary.maintenance_cost == Decimal("15000.00")
        assert summary.net_profit == Decimal("20000.00")
        assert summary.total_revenue == (
            summary.time_revenue + summary.product_revenue + summary.membership_revenue + summary.rental_revenue
        )
        assert summary.net_profit == (
            summary.total_revenue - summary.total_cost - summary.waste_cost - summary.maintenance_cost
        )

    def test_nothing_to_close(self, db_session, tenant, admin_context):
        with pytest.raises(NothingToCloseError):
            ShiftReconciliationService(db_session).close_shift(admin_context, Decimal("0"))
        assert db_session.query(DailyBalance).count() == 0

    def test_second_close_has_nothing_to_close(self, db_session, table, admin_context):
        play_and_pay(db_session, table, admin_context)
        service = ShiftReconciliationService(db_session)
        service.close_shift(admin_context, Decimal("3000"))

        with pytest.raises(NothingToCloseError):
            service.close_shift(admin_context, Decimal("3000"))

        assert db_session.query(DailyBalance).count() == 1

    def test_sessions_are_never_claimed_twice(self, db_session, tenant, admin_context):
        first_table = make_table(db_session, tenant, 1)
        second_table = make_table(db_session, tenant, 2)
        service = ShiftReconciliationService(db_session)

        first_stop = play_and_pay(db_session, first_table, admin_context)
        first = service.close_shift(admin_context, Decimal("3000"))
        second_stop = play_and_pay(db_session, second_table, admin_context, minutes=15)
        open_session_at(db_session, first_table, 5)
        second = service.close_shift(admin_context, Decimal("1500"))

        assert second.summary.session_count == 1
        assert db_session.get(UsageLog, first_stop.usage_log_id).daily_balance_id == first.balance_id
        assert db_session.get(UsageLog, second_stop.usage_log_id).daily_balance_id == second.balance_id

        still_open = db_session.query(UsageLog).filter(UsageLog.ended_at.is_(None)).one()
        assert still_open.daily_balance_id is None

        first_balance = db_session.get(DailyBalance, first.balance_id)
        second_balance = db_session.get(DailyBalance, second.balance_id)
        assert second_balance.period_start == first_balance.period_end

    def test_unpaid_sessions_are_consolidated(self, db_session, table, admin_context):
        play_and_pay(db_session, table, admin_context, pay=False)

        result = ShiftReconciliationService(db_session).close_shift(admin_context, Decimal("0"))

        assert result.summary.time_revenue == Decimal("3000.00")
        assert result.summary.cash_revenue == Decimal("0.00")
        assert result.has_cash_alert is False

    def test_waiter_cannot_close(self, db_session, table, admin_context, waiter_context):
        play_and_pay(db_session, table, admin_context)

        with pytest.raises(PermissionDeniedError):
            ShiftReconciliationService(db_session).close_shift(waiter_context, Decimal("3000"))

    def test_negative_cash_is_rejected(self, db_session, table, admin_context):
        with pytest.raises(ValidationError):
            ShiftReconciliationService(db_session).close_shift(admin_context, Decimal("-1"))

    def test_seal_is_logged(self, db_session, table, admin_context):
        play_and_pay(db_session, table, admin_context)

        result = ShiftReconciliationService(db_session).close_shift(admin_context, Decimal("3000"))

        seals = [log for log in logs_at_level(db_session, LogLevel.INFO) if "sellado" in log.message]
        assert len(seals) == 1
        assert seals[0].details["integrity_hash"] == result.integrity_hash


class TestIntegrity:
    """Sello de integridad del balance"""

    def test_stored_balance_verifies(self, db_session, table, admin_context):
        play_and_pay(db_session, table, admin_context)
        service = ShiftReconciliationService(db_session)
        closed = service.close_shift(admin_context, Decimal("3000"), notes="Turno noche")
        db_session.expire_all()

        check = service.verify_balance(admin_context, closed.balance_id)

        assert check.valid is True
        assert check.stored_hash == closed.integrity_hash
        assert len(check.stored_hash) == 64

    def test_in_memory_tamper_is_detected(self, db_session, table, admin_context):
        stopped = play_and_pay(db_session, table, admin_context)
        closed = ShiftReconciliationService(db_session).close_shift(admin_context, Decimal("3000"))
        balance = db_session.get(DailyBalance, closed.balance_id)

        balance.total_revenue = Decimal("1")

        assert verify_integrity(balance, [stopped.usage_log_id]) is False
        db_session.rollback()

    def test_database_tamper_is_reported(self, db_session, table, admin_context):
        play_and_pay(db_session, table, admin_context)
        service = ShiftReconciliationService(db_session)
        closed = service.close_shift(admin_context, Decimal("3000"))

        balances = DailyBalance.__table__
        db_session.execute(
            balances.update().where(balances.c.id == closed.balance_id).values(cash_revenue=Decimal("1"))
        )
        db_session.commit()
        db_session.expire_all()

        check = service.verify_balance(admin_context, closed.balance_id)

        assert check.valid is False
        assert check.computed_hash != check.stored_hash
        assert len(logs_at_level(db_session, LogLevel.CRITICAL)) == 1

    def test_claimed_log_set_is_part_of_seal(self, db_session, table, admin_context):
        stopped = play_and_pay(db_session, table, admin_context)
        closed = ShiftReconciliationService(db_session).close_shift(admin_context, Decimal("3000"))
        balance = db_session.get(DailyBalance, closed.balance_id)

        assert verify_integrity(balance, [stopped.usage_log_id]) is True
        assert verify_integrity(balance, []) is False


class TestImmutability:
    """Los registros sellados rechazan escrituras a nivel ORM"""

    @pytest.fixture
    def sealed(self, db_session, table, admin_context):
        stopped = play_and_pay(db_session, table, admin_context, pay=False)
        closed = ShiftReconciliationService(db_session).close_shift(admin_context, Decimal("0"))
        return db_session.get(DailyBalance, closed.balance_id), db_session.get(UsageLog, stopped.usage_log_id)

    def test_balance_update_is_rejected(self, db_session, sealed):
        balance, _ = sealed
        balance.notes = "corregido"

        with pytest.raises(ImmutabilityViolationError):
            db_session.flush()
        db_session.rollback()

    def test_balance_delete_is_rejected(self, db_session, sealed):
        balance, _ = sealed
        db_session.delete(balance)

        with pytest.raises(ImmutabilityViolationError):
            db_session.flush()
        db_session.rollback()

    def test_claimed_log_financials_are_frozen(self, db_session, sealed):
        _, log = sealed
        log.amount_charged = Decimal("1")

        with pytest.raises(ImmutabilityViolationError):
            db_session.flush()
        db_session.rollback()

    def test_claimed_log_reconciliation_fields_stay_writable(self, db_session, sealed):
        """Un pago tardío o la emisión diferida del documento siguen permitidos"""
        _, log = sealed
        log.payment_status = PaymentStatus.PAID.value
        log.document_status = "GENERATED"
        log.document_reference = "39-77"
        db_session.commit()

        db_session.refresh(log)
        assert log.document_reference == "39-77"
        assert log.payment_status == PaymentStatus.PAID.value

    def test_claimed_log_cannot_be_deleted(self, db_session, sealed):
        _, log = sealed
        db_session.delete(log)

        with pytest.raises(ImmutabilityViolationError):
            db_session.flush()
        db_session.rollback()


class TestShiftsAPI:
    """Tests de endpoints de cierre"""

    def test_close_list_detail_and_verify(self, client, db_session, table, admin_context, admin_headers):
        play_and_pay(db_session, table, admin_context)

        response = client.post("/api/v1/shifts/close", json={"cash_in_hand": "3000"}, headers=admin_headers)
        assert response.status_code == 201
        balance_id = response.json()["balance_id"]

        listed = client.get("/api/v1/shifts", headers=admin_headers)
        assert listed.status_code == 200
        assert [item["id"] for item in listed.json()] == [balance_id]

        detail = client.get(f"/api/v1/shifts/{balance_id}", headers=admin_headers)
        assert detail.status_code == 200
        assert len(detail.json()["sessions"]) == 1

        verify = client.get(f"/api/v1/shifts/{balance_id}/verify", headers=admin_headers)
        assert verify.status_code == 200
        assert verify.json()["valid"] is True

    def test_nothing_to_close_is_422(self, client, tenant, admin_headers):
        response = client.post("/api/v1/shifts/close", json={"cash_in_hand": "0"}, headers=admin_headers)
        assert response.status_code == 422

    def test_waiter_cannot_close(self, client, tenant, waiter_headers):
        response = client.post("/api/v1/shifts/close", json={"cash_in_hand": "0"}, headers=waiter_headers)
        assert response.status_code == 403

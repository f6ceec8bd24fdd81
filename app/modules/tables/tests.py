"""
Tests de la máquina de estados de mesas

Cubren:
- Inicio / cierre / liberación con sus cobros
- Transiciones concurrentes (expected_status desactualizado)
- Degradación de mesas OCCUPIED sin sesión
- Emisión de documentos y cobro diferido que no bloquean el cierre
- Aviso de mantenimiento por horas de juego
- Auditor de sesiones atascadas
"""

import pytest
from decimal import Decimal
from uuid import uuid4

from app.common.exceptions import ConsistencyError, ValidationError
from app.common.mixins import utcnow
from app.core.config import settings
from app.modules.billing.models import FolioRange
from app.modules.billing.provider import DocumentIssuanceProvider
from app.modules.payments.models import PaymentRecord, PaymentMethod, PaymentRecordStatus
from app.modules.payments.provider import PaymentProvider
from app.modules.products.models import StockMovement, StockMovementType
from app.modules.system.models import SystemLog, LogLevel, Notification, NotificationType
from app.modules.tables.auditor import SessionIntegrityAuditor
from app.modules.tables.models import TableStatus, UsageLog, DocumentStatus
from app.modules.tables.schemas import IssuanceRequest, Settlement, OrderItemCreate, MaintenanceCreate
from app.modules.tables.service import TableSessionService
from app.modules.tables.tasks import sweep_stale_sessions

from conftest import DuplicateFolioProvider, make_tenant, make_context, make_table, open_session_at


class FailingDocumentProvider(DocumentIssuanceProvider):
    name = "failing"

    def emit_document(self, db, request):
        raise RuntimeError("timeout del SII")


class FailingPaymentProvider(PaymentProvider):
    name = "failing"

    def create_payment_intent(self, request):
        raise ConnectionError("pasarela caída")

    def handle_webhook(self, raw_body, signature):
        raise NotImplementedError


def warnings_containing(db_session, text):
    logs = db_session.query(SystemLog).filter(SystemLog.level == LogLevel.WARN.value).all()
    return [log for log in logs if text in log.message]


class TestStartSession:
    """Tests para el inicio de sesiones"""

    def test_start_occupies_table(self, db_session, table, admin_context):
        result = TableSessionService(db_session).transition(admin_context, table.id, TableStatus.AVAILABLE)

        db_session.refresh(table)
        assert result.status == TableStatus.OCCUPIED
        assert table.status == TableStatus.OCCUPIED.value
        assert table.current_session_id == result.usage_log_id
        assert table.last_session_start is not None

        log = db_session.get(UsageLog, result.usage_log_id)
        assert log.ended_at is None
        assert log.opened_by == admin_context.user_id

    def test_double_start_is_rejected(self, db_session, table, admin_context, waiter_context):
        """Dos clientes que ven la mesa AVAILABLE: solo uno la ocupa"""
        service = TableSessionService(db_session)
        service.transition(admin_context, table.id, TableStatus.AVAILABLE)

        with pytest.raises(ConsistencyError):
            service.transition(waiter_context, table.id, TableStatus.AVAILABLE)

        open_logs = db_session.query(UsageLog).filter(
            UsageLog.table_id == table.id, UsageLog.ended_at.is_(None)
        ).count()
        assert open_logs == 1

    def test_unknown_member_is_rejected(self, db_session, table, admin_context):
        with pytest.raises(ValidationError):
            TableSessionService(db_session).transition(
                admin_context, table.id, TableStatus.AVAILABLE, member_id=uuid4()
            )

        db_session.refresh(table)
        assert table.status == TableStatus.AVAILABLE.value
        assert db_session.query(UsageLog).count() == 0

    def test_orphan_sessions_are_abandoned(self, db_session, table, admin_context):
        orphan = UsageLog(tenant_id=table.tenant_id, table_id=table.id, started_at=utcnow())
        db_session.add(orphan)
        db_session.commit()

        result = TableSessionService(db_session).transition(admin_context, table.id, TableStatus.AVAILABLE)

        db_session.refresh(orphan)
        assert orphan.abandoned is True
        assert orphan.ended_at is not None
        assert orphan.amount_charged == Decimal("0")
        assert result.usage_log_id != orphan.id
        assert len(warnings_containing(db_session, "huérfana")) == 1

    def test_restart_from_payment_pending_warns(self, db_session, table, admin_context):
        service = TableSessionService(db_session)
        open_session_at(db_session, table, 30)
        stopped = service.transition(admin_context, table.id, TableStatus.OCCUPIED, settlement=Settlement.DEFERRED)
        assert stopped.status == TableStatus.PAYMENT_PENDING

        restarted = service.transition(admin_context, table.id, TableStatus.PAYMENT_PENDING)

        assert restarted.status == TableStatus.OCCUPIED
        assert len(warnings_containing(db_session, "cobro pendiente")) == 1
        unpaid = db_session.get(UsageLog, stopped.usage_log_id)
        assert unpaid.payment_status == "PENDING"

    def test_restart_from_payment_pending_can_be_blocked(self, db_session, table, admin_context, monkeypatch):
        monkeypatch.setattr(settings, "REQUIRE_WRITE_OFF_BEFORE_REUSE", True)
        service = TableSessionService(db_session)
        open_session_at(db_session, table, 30)
        service.transition(admin_context, table.id, TableStatus.OCCUPIED, settlement=Settlement.DEFERRED)

        with pytest.raises(ConsistencyError):
            service.transition(admin_context, table.id, TableStatus.PAYMENT_PENDING)

        db_session.refresh(table)
        assert table.status == TableStatus.PAYMENT_PENDING.value


class TestStopSession:
    """Tests para el cierre y cobro de sesiones"""

    def test_half_hour_charge_with_iva(self, db_session, table, admin_context):
        log = open_session_at(db_session, table, 30)

        result = TableSessionService(db_session).transition(admin_context, table.id, TableStatus.OCCUPIED)

        assert result.status == TableStatus.CLEANING
        assert result.duration_minutes == 30
        assert result.amount_charged == Decimal("3000.00")
        assert result.net_amount == Decimal("2521.01")
        assert result.tax_amount == Decimal("478.99")

        db_session.refresh(log)
        assert log.ended_at is not None
        assert log.amount_charged == Decimal("3000.00")
        assert log.tax_rate == Decimal("19")
        assert log.tax_name == "IVA"
        assert log.closed_by == admin_context.user_id

        db_session.refresh(table)
        assert table.status == TableStatus.CLEANING.value
        assert table.current_session_id == log.id
        assert table.total_play_hours == Decimal("0.5")

    def test_member_discount(self, db_session, table, admin_context, active_member):
        open_session_at(db_session, table, 30, member_id=active_member.id)

        result = TableSessionService(db_session).transition(admin_context, table.id, TableStatus.OCCUPIED)

        assert result.discount_applied == Decimal("600.00")
        assert result.amount_charged == Decimal("2400.00")

    def test_member_given_at_close(self, db_session, table, admin_context, active_member):
        log = open_session_at(db_session, table, 30)

        result = TableSessionService(db_session).transition(
            admin_context, table.id, TableStatus.OCCUPIED, member_id=active_member.id
        )

        assert result.discount_applied == Decimal("600.00")
        assert result.amount_charged == Decimal("2400.00")
        db_session.refresh(log)
        assert log.member_id == active_member.id

    def test_unknown_member_at_close(self, db_session, table, admin_context):
        log = open_session_at(db_session, table, 30)

        with pytest.raises(ValidationError):
            TableSessionService(db_session).transition(
                admin_context, table.id, TableStatus.OCCUPIED, member_id=uuid4()
            )

        db_session.refresh(log)
        db_session.refresh(table)
        assert log.ended_at is None
        assert table.status == TableStatus.OCCUPIED.value

    def test_exempt_tenant_has_no_tax(self, db_session, admin_context):
        exempt = make_tenant(db_session, "club-exento", is_tax_exempt=True)
        context = make_context(exempt)
        table = make_table(db_session, exempt, 1)
        open_session_at(db_session, table, 30)

        result = TableSessionService(db_session).transition(context, table.id, TableStatus.OCCUPIED)

        assert result.net_amount == Decimal("3000.00")
        assert result.tax_amount == Decimal("0.00")

    def test_second_stop_fails_cleanly(self, db_session, table, admin_context, waiter_context):
        """Dos cierres simultáneos: el segundo recibe 409 y existe un solo cobro"""
        open_session_at(db_session, table, 30)
        service = TableSessionService(db_session)
        service.transition(admin_context, table.id, TableStatus.OCCUPIED)

        with pytest.raises(ConsistencyError):
            service.transition(waiter_context, table.id, TableStatus.OCCUPIED)

        closed = db_session.query(UsageLog).filter(UsageLog.ended_at.isnot(None)).all()
        assert len(closed) == 1
        assert closed[0].amount_charged == Decimal("3000.00")

    def test_occupied_without_session_degrades(self, db_session, table, admin_context):
        table.status = TableStatus.OCCUPIED.value
        db_session.commit()

        result = TableSessionService(db_session).transition(admin_context, table.id, TableStatus.OCCUPIED)

        assert result.degraded is True
        assert result.status == TableStatus.AVAILABLE
        assert result.amount_charged is None
        db_session.refresh(table)
        assert table.status == TableStatus.AVAILABLE.value
        assert len(warnings_containing(db_session, "sin sesión abierta")) == 1

    def test_stop_finds_open_log_without_pointer(self, db_session, table, admin_context):
        log = open_session_at(db_session, table, 30)
        table.current_session_id = None
        db_session.commit()

        result = TableSessionService(db_session).transition(admin_context, table.id, TableStatus.OCCUPIED)

        assert result.usage_log_id == log.id
        assert result.degraded is False

    def test_products_are_added_to_charge(self, db_session, table, admin_context, product):
        open_session_at(db_session, table, 30)
        service = TableSessionService(db_session)
        service.add_product(admin_context, table.id, OrderItemCreate(product_id=product.id, quantity=2))

        result = service.transition(admin_context, table.id, TableStatus.OCCUPIED)

        assert result.product_total == Decimal("5000.00")
        assert result.amount_charged == Decimal("8000.00")


class TestIssuance:
    """La emisión del documento nunca bloquea el cierre"""

    def test_document_generated_with_sequential_folio(self, db_session, table, admin_context):
        service = TableSessionService(db_session)

        open_session_at(db_session, table, 30)
        first = service.transition(admin_context, table.id, TableStatus.OCCUPIED, issuance=IssuanceRequest())
        service.transition(admin_context, table.id, TableStatus.CLEANING)
        open_session_at(db_session, table, 15)
        second = service.transition(admin_context, table.id, TableStatus.OCCUPIED, issuance=IssuanceRequest())

        assert first.document_status == DocumentStatus.GENERATED.value
        assert first.document_reference == "39-1"
        assert second.document_reference == "39-2"

    def test_provider_failure_is_recorded(self, db_session, table, admin_context):
        log = open_session_at(db_session, table, 30)
        service = TableSessionService(db_session, document_provider=FailingDocumentProvider())

        result = service.transition(admin_context, table.id, TableStatus.OCCUPIED, issuance=IssuanceRequest())

        assert result.status == TableStatus.CLEANING
        assert result.document_status == DocumentStatus.FAILED.value
        db_session.refresh(log)
        assert log.ended_at is not None
        assert log.document_status == DocumentStatus.FAILED.value
        assert "timeout" in log.document_error

    def test_folio_conflict_keeps_the_close(self, db_session, tenant, table, admin_context):
        """Un error de base de datos dentro del proveedor no deshace el cierre"""
        db_session.add(FolioRange(tenant_id=tenant.id, document_type=39, end_folio=100, current_folio=0))
        db_session.commit()
        log = open_session_at(db_session, table, 30)
        service = TableSessionService(db_session, document_provider=DuplicateFolioProvider())

        result = service.transition(admin_context, table.id, TableStatus.OCCUPIED, issuance=IssuanceRequest())

        assert result.status == TableStatus.CLEANING
        assert result.document_status == DocumentStatus.FAILED.value
        db_session.refresh(log)
        assert log.ended_at is not None
        assert log.amount_charged == Decimal("3000.00")
        db_session.refresh(table)
        assert table.status == TableStatus.CLEANING.value
        assert db_session.query(FolioRange).count() == 1


class TestDeferredSettlement:
    """Tests para el cobro diferido con link de pago"""

    def test_deferred_stop_creates_pending_qr_payment(self, db_session, table, admin_context):
        log = open_session_at(db_session, table, 30)

        result = TableSessionService(db_session).transition(
            admin_context, table.id, TableStatus.OCCUPIED, settlement=Settlement.DEFERRED
        )

        assert result.status == TableStatus.PAYMENT_PENDING
        assert result.payment_url is not None
        assert f"TAB_{log.id}" in result.payment_url

        record = db_session.query(PaymentRecord).filter(PaymentRecord.usage_log_id == log.id).one()
        assert record.method == PaymentMethod.QR.value
        assert record.status == PaymentRecordStatus.PENDING.value
        assert record.amount == Decimal("3000.00")
        assert record.transaction_id is not None

    def test_payment_intent_failure_does_not_block(self, db_session, table, admin_context):
        log = open_session_at(db_session, table, 30)
        service = TableSessionService(db_session, payment_provider=FailingPaymentProvider())

        result = service.transition(admin_context, table.id, TableStatus.OCCUPIED, settlement=Settlement.DEFERRED)

        assert result.status == TableStatus.PAYMENT_PENDING
        assert result.payment_url is None
        record = db_session.query(PaymentRecord).filter(PaymentRecord.usage_log_id == log.id).one()
        assert record.status == PaymentRecordStatus.FAILED.value
        assert "pasarela" in record.error


class TestRelease:

    def test_cleaning_to_available(self, db_session, table, admin_context):
        open_session_at(db_session, table, 30)
        service = TableSessionService(db_session)
        service.transition(admin_context, table.id, TableStatus.OCCUPIED)

        result = service.transition(admin_context, table.id, TableStatus.CLEANING)

        assert result.status == TableStatus.AVAILABLE
        db_session.refresh(table)
        assert table.current_session_id is None

    def test_stale_expected_status(self, db_session, table, admin_context):
        with pytest.raises(ConsistencyError):
            TableSessionService(db_session).transition(admin_context, table.id, TableStatus.CLEANING)


class TestOrderItems:
    """Tests para el consumo del bar"""

    def test_add_product_snapshots_price_and_cost(self, db_session, table, admin_context, product):
        log = open_session_at(db_session, table, 10)

        item = TableSessionService(db_session).add_product(
            admin_context, table.id, OrderItemCreate(product_id=product.id, quantity=2)
        )

        assert item.usage_log_id == log.id
        assert item.unit_price == Decimal("2500.00")
        assert item.total_price == Decimal("5000.00")

        db_session.refresh(product)
        assert product.stock == 22
        movement = db_session.query(StockMovement).one()
        assert movement.type == StockMovementType.SALE.value
        assert movement.quantity == -2
        assert movement.usage_log_id == log.id

    def test_add_product_requires_open_session(self, db_session, table, admin_context, product):
        with pytest.raises(ConsistencyError):
            TableSessionService(db_session).add_product(
                admin_context, table.id, OrderItemCreate(product_id=product.id, quantity=1)
            )

    def test_insufficient_stock(self, db_session, table, admin_context, product):
        open_session_at(db_session, table, 10)

        with pytest.raises(ValidationError):
            TableSessionService(db_session).add_product(
                admin_context, table.id, OrderItemCreate(product_id=product.id, quantity=25)
            )

        db_session.refresh(product)
        assert product.stock == 24

    def test_session_estimate(self, db_session, table, admin_context, product):
        open_session_at(db_session, table, 30)
        service = TableSessionService(db_session)
        service.add_product(admin_context, table.id, OrderItemCreate(product_id=product.id, quantity=1))

        session = service.get_session(admin_context, table.id)

        assert session.elapsed_minutes == 30
        assert session.product_total == Decimal("2500.00")
        assert session.estimated_total == Decimal("5500.00")
        assert len(session.items) == 1

    def test_session_estimate_with_missing_member(self, db_session, table, admin_context, caplog):
        open_session_at(db_session, table, 30, member_id=uuid4())

        with caplog.at_level("WARNING", logger="app.modules.tables.service"):
            session = TableSessionService(db_session).get_session(admin_context, table.id)

        assert session.estimated_total == Decimal("3000.00")
        assert "estimación sin descuento" in caplog.text


class TestMaintenance:
    """Aviso de mantenimiento por horas acumuladas"""

    def test_crossing_threshold_notifies_once(self, db_session, tenant, admin_context):
        table = make_table(db_session, tenant, 9, maintenance_threshold_hours=Decimal("0.5"))
        service = TableSessionService(db_session)

        open_session_at(db_session, table, 30)
        first = service.transition(admin_context, table.id, TableStatus.OCCUPIED)
        service.transition(admin_context, table.id, TableStatus.CLEANING)
        open_session_at(db_session, table, 30)
        second = service.transition(admin_context, table.id, TableStatus.OCCUPIED)

        assert first.maintenance_due is True
        assert second.maintenance_due is False
        notifications = db_session.query(Notification).filter(Notification.table_id == table.id).all()
        assert len(notifications) == 1
        assert notifications[0].type == NotificationType.MAINTENANCE_DUE.value

    def test_record_maintenance_resets_counter(self, db_session, tenant, admin_context):
        table = make_table(db_session, tenant, 9, maintenance_threshold_hours=Decimal("0.5"))
        service = TableSessionService(db_session)
        open_session_at(db_session, table, 30)
        service.transition(admin_context, table.id, TableStatus.OCCUPIED)
        service.transition(admin_context, table.id, TableStatus.CLEANING)

        entry = service.record_maintenance(admin_context, table.id, MaintenanceCreate(cost=Decimal("15000")))

        db_session.refresh(table)
        assert entry.cost == Decimal("15000.00")
        assert entry.play_hours_at_service == Decimal("0.5")
        assert table.hours_at_last_maintenance == table.total_play_hours

        open_session_at(db_session, table, 30)
        again = service.transition(admin_context, table.id, TableStatus.OCCUPIED)
        assert again.maintenance_due is True


class TestSessionIntegrityAuditor:
    """Tests para el barrido de mesas atascadas"""

    def test_occupied_without_pointer_is_fixed(self, db_session, table, admin_context):
        table.status = TableStatus.OCCUPIED.value
        table.current_session_id = None
        db_session.commit()

        result = SessionIntegrityAuditor(db_session).sweep(admin_context)

        assert result.fixed_count == 1
        assert result.fixed_table_ids == [table.id]
        db_session.refresh(table)
        assert table.status == TableStatus.AVAILABLE.value
        assert len(warnings_containing(db_session, "Auditor")) == 1

    def test_stale_session_is_fixed(self, db_session, tenant, admin_context):
        stale = make_table(db_session, tenant, 1)
        fresh = make_table(db_session, tenant, 2)
        open_session_at(db_session, stale, 13 * 60)
        open_session_at(db_session, fresh, 30)

        result = SessionIntegrityAuditor(db_session, stale_hours=12).sweep(admin_context)

        assert result.fixed_table_ids == [stale.id]
        db_session.refresh(fresh)
        assert fresh.status == TableStatus.OCCUPIED.value

    def test_nothing_to_fix(self, db_session, table, admin_context):
        result = SessionIntegrityAuditor(db_session).sweep(admin_context)
        assert result.fixed_count == 0

    def test_periodic_task_sweeps_every_tenant(self, db_session, tenant, other_tenant):
        stuck_a = make_table(db_session, tenant, 1)
        stuck_b = make_table(db_session, other_tenant, 1)
        for stuck in (stuck_a, stuck_b):
            stuck.status = TableStatus.OCCUPIED.value
        db_session.commit()

        summary = sweep_stale_sessions.apply().get()

        assert summary["tenants"] == 2
        assert summary["fixed_count"] == 2
        assert summary["failed_tenants"] == []

    def test_sweep_is_tenant_scoped(self, db_session, other_tenant, admin_context):
        foreign = make_table(db_session, other_tenant, 1)
        foreign.status = TableStatus.OCCUPIED.value
        db_session.commit()

        result = SessionIntegrityAuditor(db_session).sweep(admin_context)

        assert result.fixed_count == 0
        db_session.refresh(foreign)
        assert foreign.status == TableStatus.OCCUPIED.value


class TestTablesAPI:
    """Tests de endpoints de mesas"""

    def test_list_tables(self, client, table, waiter_headers):
        response = client.get("/api/v1/tables", headers=waiter_headers)
        assert response.status_code == 200
        assert response.json()[0]["number"] == 1

    def test_stop_via_api(self, client, db_session, table, waiter_headers):
        open_session_at(db_session, table, 30)

        response = client.post(
            f"/api/v1/tables/{table.id}/transition",
            json={"expected_status": "OCCUPIED"},
            headers=waiter_headers
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "CLEANING"
        assert Decimal(data["amount_charged"]) == Decimal("3000.00")

    def test_conflict_via_api(self, client, table, waiter_headers):
        response = client.post(
            f"/api/v1/tables/{table.id}/transition",
            json={"expected_status": "OCCUPIED"},
            headers=waiter_headers
        )
        assert response.status_code == 409

    def test_audit_requires_admin(self, client, waiter_headers, admin_headers):
        assert client.post("/api/v1/tables/audit", headers=waiter_headers).status_code == 403
        response = client.post("/api/v1/tables/audit", headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["fixed_count"] == 0

    def test_requires_token(self, client, table, tenant):
        response = client.get("/api/v1/tables", headers={"X-Company-ID": str(tenant.id)})
        assert response.status_code in (401, 403)

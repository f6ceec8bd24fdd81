"""
Tests para la compuerta de aislamiento multi-tenant

Todas las referencias a filas de otro tenant deben responder "no encontrado"
y dejar un evento de seguridad persistido.
"""

import pytest
from decimal import Decimal
from uuid import uuid4

from app.common.exceptions import NotFoundError, PermissionDeniedError
from app.modules.auth.schemas import AuthContext, Role
from app.modules.system.models import SystemLog, LogLevel
from app.modules.tables.models import Table, TableStatus, UsageLog
from app.modules.tables.service import TableSessionService
from app.modules.shifts.service import ShiftReconciliationService
from app.modules.taxes.schemas import TaxConfigUpdate
from app.modules.tenancy.models import Tenant
from app.modules.tenancy.repository import TenantRepository, AdminRepository, system_context
from app.modules.tenancy.schemas import RatesUpdate
from app.modules.tenancy.service import TenantAdminService

from conftest import make_context, make_table, open_session_at


def security_events(db_session):
    return db_session.query(SystemLog).filter(SystemLog.level == LogLevel.SECURITY.value).all()


class TestTenantRepository:
    """Tests para TenantRepository"""

    def test_requires_tenant_in_context(self, db_session):
        context = AuthContext(user_id=uuid4(), tenant_id=None, user_role=Role.ADMIN)
        with pytest.raises(PermissionDeniedError):
            TenantRepository(db_session, Table, context)

    def test_queries_are_scoped(self, db_session, tenant, other_tenant, admin_context):
        make_table(db_session, tenant, 1)
        make_table(db_session, other_tenant, 1)
        make_table(db_session, other_tenant, 2)

        tables = TenantRepository(db_session, Table, admin_context).list()

        assert len(tables) == 1
        assert tables[0].tenant_id == tenant.id

    def test_create_stamps_context_tenant(self, db_session, tenant, other_tenant, admin_context):
        repository = TenantRepository(db_session, Table, admin_context)

        table = repository.create(number=7, tenant_id=other_tenant.id)
        db_session.commit()

        assert table.tenant_id == tenant.id
        assert len(security_events(db_session)) == 1

    def test_waiter_cannot_delete(self, db_session, table, waiter_context):
        repository = TenantRepository(db_session, Table, waiter_context)
        with pytest.raises(PermissionDeniedError):
            repository.delete(table)


class TestTenantIsolation:
    """Un tenant nunca ve, modifica ni elimina filas de otro"""

    def test_read_foreign_table_is_not_found(self, db_session, other_tenant, admin_context):
        foreign = make_table(db_session, other_tenant, 1)

        with pytest.raises(NotFoundError):
            TenantRepository(db_session, Table, admin_context, label="Mesa").get(foreign.id)

        events = security_events(db_session)
        assert len(events) == 1
        assert events[0].tenant_id == admin_context.tenant_id

    def test_missing_row_is_not_a_security_event(self, db_session, admin_context):
        with pytest.raises(NotFoundError):
            TenantRepository(db_session, Table, admin_context).get(uuid4())
        assert security_events(db_session) == []

    def test_transition_on_foreign_table(self, db_session, other_tenant, admin_context):
        foreign = make_table(db_session, other_tenant, 1)
        foreign_log = open_session_at(db_session, foreign, 30)

        with pytest.raises(NotFoundError):
            TableSessionService(db_session).transition(admin_context, foreign.id, TableStatus.OCCUPIED)

        db_session.refresh(foreign)
        db_session.refresh(foreign_log)
        assert foreign.status == TableStatus.OCCUPIED.value
        assert foreign_log.ended_at is None

    def test_delete_foreign_log_is_not_found(self, db_session, other_tenant, admin_context):
        foreign = make_table(db_session, other_tenant, 1)
        foreign_log = open_session_at(db_session, foreign, 30)

        with pytest.raises(NotFoundError):
            TenantRepository(db_session, UsageLog, admin_context).delete(foreign_log)

        assert db_session.get(UsageLog, foreign_log.id) is not None

    def test_foreign_balance_is_not_found(self, db_session, other_tenant, admin_context):
        foreign_context = make_context(other_tenant)
        foreign_table = make_table(db_session, other_tenant, 1)
        open_session_at(db_session, foreign_table, 30)
        service = TableSessionService(db_session)
        service.transition(foreign_context, foreign_table.id, TableStatus.OCCUPIED)
        closed = ShiftReconciliationService(db_session).close_shift(foreign_context, Decimal("0"))

        with pytest.raises(NotFoundError):
            ShiftReconciliationService(db_session).get_balance_detail(admin_context, closed.balance_id)
        with pytest.raises(NotFoundError):
            ShiftReconciliationService(db_session).verify_balance(admin_context, closed.balance_id)


class TestAdminRepository:
    """Tests para AdminRepository"""

    def test_system_context_reads_globally(self, db_session, tenant, other_tenant):
        tenants = AdminRepository(db_session, Tenant).list()
        assert {t.id for t in tenants} == {tenant.id, other_tenant.id}

    def test_non_privileged_update_is_denied(self, db_session, tenant, waiter_context):
        repository = AdminRepository(db_session, Tenant, waiter_context)
        with pytest.raises(PermissionDeniedError):
            repository.update(tenant, hourly_rate=Decimal("1"))
        assert len(security_events(db_session)) == 1

    def test_admin_cannot_update_other_tenant(self, db_session, other_tenant, admin_context):
        repository = AdminRepository(db_session, Tenant, admin_context)
        with pytest.raises(NotFoundError):
            repository.update(other_tenant, hourly_rate=Decimal("1"))

    def test_only_superadmin_deletes(self, db_session, tenant, admin_context):
        with pytest.raises(PermissionDeniedError):
            AdminRepository(db_session, Tenant, admin_context).delete(tenant)

    def test_system_context_is_superadmin(self, tenant):
        context = system_context(tenant.id)
        assert context.user_role == Role.SUPERADMIN
        assert context.tenant_id == tenant.id


class TestTenantAdminService:
    """Tests para TenantAdminService"""

    def test_update_tax_config_stores_fraction(self, db_session, tenant, admin_context):
        updated = TenantAdminService(db_session).update_tax_config(
            admin_context, TaxConfigUpdate(rate_percent=Decimal("18"), name="igv", exempt=False)
        )

        assert updated.tax_rate == Decimal("0.1800")
        assert updated.tax_name == "IGV"

    def test_waiter_cannot_update_tax_config(self, db_session, tenant, waiter_context):
        with pytest.raises(PermissionDeniedError):
            TenantAdminService(db_session).update_tax_config(
                waiter_context, TaxConfigUpdate(rate_percent=Decimal("0"), name="IVA", exempt=True)
            )
        db_session.refresh(tenant)
        assert tenant.is_tax_exempt is False

    def test_update_rates(self, db_session, tenant, admin_context):
        updated = TenantAdminService(db_session).update_rates(
            admin_context, RatesUpdate(hourly_rate=Decimal("7500"), cash_tolerance=Decimal("500"))
        )
        assert updated.hourly_rate == Decimal("7500.00")
        assert updated.cash_tolerance == Decimal("500.00")


class TestTenantAPI:
    """Tests de endpoints del tenant"""

    def test_put_tax_config(self, client, tenant, admin_headers):
        response = client.put(
            "/api/v1/tenant/tax-config",
            json={"rate_percent": "19", "name": "IVA", "exempt": True},
            headers=admin_headers
        )
        assert response.status_code == 200
        assert response.json()["is_tax_exempt"] is True

    def test_put_tax_config_requires_admin(self, client, tenant, waiter_headers):
        response = client.put(
            "/api/v1/tenant/tax-config",
            json={"rate_percent": "19", "name": "IVA", "exempt": True},
            headers=waiter_headers
        )
        assert response.status_code == 403

    def test_missing_company_header(self, client, admin_headers):
        headers = {"Authorization": admin_headers["Authorization"]}
        response = client.get("/api/v1/tenant/tax-config", headers=headers)
        assert response.status_code == 400

    def test_header_tenant_must_match_token(self, client, other_tenant, admin_headers):
        headers = dict(admin_headers, **{"X-Company-ID": str(other_tenant.id)})
        response = client.get("/api/v1/tenant/tax-config", headers=headers)
        assert response.status_code == 403

    def test_health_is_public(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

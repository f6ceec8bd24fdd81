"""
Fixtures compartidas de tests.

Base de datos SQLite en memoria (una conexión compartida vía StaticPool);
las tablas se recrean para cada test.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENVIRONMENT"] = "test"
os.environ.setdefault("PAYMENT_WEBHOOK_SECRET", "test-webhook-secret")

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.database.database import Base, SessionLocal, get_db, sync_engine
from app.common.mixins import utcnow
from app.modules.auth.schemas import AuthContext, Role
from app.modules.auth.utils import create_access_token
from app.modules.billing.models import FolioRange
from app.modules.billing.provider import MockDocumentProvider
from app.modules.members.models import Member, SubscriptionStatus
from app.modules.products.models import Product
from app.modules.tables.models import Table, TableStatus, UsageLog
from app.modules.tenancy.models import Tenant


@pytest.fixture
def db_session():
    Base.metadata.create_all(bind=sync_engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        Base.metadata.drop_all(bind=sync_engine)


def make_tenant(db, slug: str, **overrides) -> Tenant:
    values = {
        "name": f"Club {slug}",
        "slug": slug,
        "hourly_rate": Decimal("6000"),
        "tax_rate": Decimal("0.19"),
        "tax_name": "IVA",
        "is_tax_exempt": False,
        "currency": "CLP",
    }
    values.update(overrides)
    tenant = Tenant(**values)
    db.add(tenant)
    db.commit()
    db.refresh(tenant)
    return tenant


def make_context(tenant, role: Role = Role.ADMIN) -> AuthContext:
    return AuthContext(user_id=uuid4(), tenant_id=tenant.id, user_role=role, user_name=f"{role.value} test")


def make_table(db, tenant, number: int = 1, **overrides) -> Table:
    table = Table(tenant_id=tenant.id, number=number, status=TableStatus.AVAILABLE.value, **overrides)
    db.add(table)
    db.commit()
    db.refresh(table)
    return table


def open_session_at(db, table, minutes_ago: int, member_id=None) -> UsageLog:
    """Dejar la mesa OCCUPIED con una sesión iniciada hace `minutes_ago` minutos"""
    started = utcnow() - timedelta(minutes=minutes_ago)
    log = UsageLog(tenant_id=table.tenant_id, table_id=table.id, started_at=started, member_id=member_id)
    db.add(log)
    db.flush()
    table.status = TableStatus.OCCUPIED.value
    table.current_session_id = log.id
    table.last_session_start = started
    db.commit()
    db.refresh(log)
    return log


class DuplicateFolioProvider(MockDocumentProvider):
    """Proveedor que choca con un correlativo creado por otra transacción"""

    def _next_folio(self, db, tenant_id, document_type):
        db.add(FolioRange(tenant_id=tenant_id, document_type=document_type, end_folio=100, current_folio=0))
        db.flush()
        return 1


@pytest.fixture
def tenant(db_session):
    return make_tenant(db_session, "club-a")


@pytest.fixture
def other_tenant(db_session):
    return make_tenant(db_session, "club-b")


@pytest.fixture
def admin_context(tenant):
    return make_context(tenant, Role.ADMIN)


@pytest.fixture
def waiter_context(tenant):
    return make_context(tenant, Role.WAITER)


@pytest.fixture
def table(db_session, tenant):
    return make_table(db_session, tenant, 1)


@pytest.fixture
def active_member(db_session, tenant):
    member = Member(
        tenant_id=tenant.id,
        name="Socio Activo",
        discount_percent=Decimal("20"),
        subscription_status=SubscriptionStatus.ACTIVE.value
    )
    db_session.add(member)
    db_session.commit()
    db_session.refresh(member)
    return member


@pytest.fixture
def product(db_session, tenant):
    item = Product(
        tenant_id=tenant.id,
        name="Cerveza",
        sku="BEER-01",
        price=Decimal("2500"),
        cost_price=Decimal("1000"),
        stock=24
    )
    db_session.add(item)
    db_session.commit()
    db_session.refresh(item)
    return item


@pytest.fixture
def client(db_session):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def auth_headers_for(context: AuthContext) -> dict:
    token = create_access_token(
        user_id=context.user_id,
        tenant_id=context.tenant_id,
        role=context.user_role,
        name=context.user_name
    )
    return {"Authorization": f"Bearer {token}", "X-Company-ID": str(context.tenant_id)}


@pytest.fixture
def admin_headers(admin_context):
    return auth_headers_for(admin_context)


@pytest.fixture
def waiter_headers(waiter_context):
    return auth_headers_for(waiter_context)

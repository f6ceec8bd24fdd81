"""
Common mixins for multi-tenant models
"""
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Uuid
from sqlalchemy.sql import func
from uuid import uuid4


def utcnow() -> datetime:
    """UTC actual sin tzinfo (las columnas DateTime se guardan en UTC naive)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TenantMixin:
    """Mixin for multi-tenant models that adds tenant_id and ensures tenant isolation"""

    tenant_id = Column(Uuid(as_uuid=True), nullable=False, index=True)


class TimestampMixin:
    """Mixin for models that need timestamp tracking"""

    created_at = Column(DateTime, default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False)


class IdMixin:
    """Primary key UUID generada en Python"""

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4, index=True)


class BaseMixin(IdMixin, TenantMixin, TimestampMixin):
    """Combines tenant and timestamp functionality for most business models"""

from decimal import Decimal
import logging

from fastapi import HTTPException
from sqlalchemy.orm import Session

from app.common.exceptions import internal_error
from app.modules.auth.schemas import AuthContext
from app.modules.system.models import LogLevel
from app.modules.system.service import record_system_log
from app.modules.taxes.calculator import round2
from app.modules.taxes.schemas import TaxConfigUpdate
from app.modules.tenancy.models import Tenant
from app.modules.tenancy.repository import AdminRepository
from app.modules.tenancy.schemas import RatesUpdate

logger = logging.getLogger(__name__)


class TenantAdminService:
    """Administración de la configuración comercial del tenant"""

    def __init__(self, db: Session):
        self.db = db

    def _repository(self, context: AuthContext) -> AdminRepository[Tenant]:
        return AdminRepository(self.db, Tenant, context, label="Empresa")

    def update_tax_config(self, context: AuthContext, data: TaxConfigUpdate) -> Tenant:
        """
        Actualizar tasa, nombre y exención del impuesto.
        La tasa llega en porcentaje y se almacena como fracción.
        """
        repository = self._repository(context)
        try:
            tenant = repository.get(context.tenant_id)
            repository.update(
                tenant,
                tax_rate=(data.rate_percent / Decimal("100")).quantize(Decimal("0.0001")),
                tax_name=data.name,
                is_tax_exempt=data.exempt
            )
            record_system_log(
                self.db, LogLevel.INFO,
                f"Configuración fiscal actualizada: {data.name} {data.rate_percent}% exento={data.exempt}",
                tenant.id,
                {"user_id": context.user_id}
            )
            self.db.commit()
            self.db.refresh(tenant)
            logger.info(f"Tax config updated for tenant {tenant.id} by {context.display_name}")
            return tenant
        except HTTPException:
            self.db.rollback()
            raise
        except Exception:
            self.db.rollback()
            logger.exception("Error actualizando configuración fiscal")
            raise internal_error()

    def update_rates(self, context: AuthContext, data: RatesUpdate) -> Tenant:
        """Actualizar tarifa por hora y tolerancia del arqueo"""
        repository = self._repository(context)
        try:
            tenant = repository.get(context.tenant_id)
            repository.update(
                tenant,
                hourly_rate=round2(data.hourly_rate),
                cash_tolerance=round2(data.cash_tolerance) if data.cash_tolerance is not None else None
            )
            self.db.commit()
            self.db.refresh(tenant)
            return tenant
        except HTTPException:
            self.db.rollback()
            raise
        except Exception:
            self.db.rollback()
            logger.exception("Error actualizando tarifas")
            raise internal_error()

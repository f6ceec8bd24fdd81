from decimal import Decimal
from uuid import UUID
import logging

from sqlalchemy.orm import Session

from app.common.exceptions import NotFoundError
from app.modules.system.models import LogLevel
from app.modules.system.service import record_system_log
from app.modules.taxes.schemas import TaxConfig
from app.modules.tenancy.models import Tenant

logger = logging.getLogger(__name__)


class TaxConfigService:
    """Lectura de la configuración fiscal del tenant"""

    def __init__(self, db: Session):
        self.db = db

    def get_tax_config(self, tenant_id: UUID) -> TaxConfig:
        """
        Obtener y validar la configuración de impuesto del tenant

        Reglas:
        - tax_rate fuera de [0, 1) se reemplaza por 0 y se registra ERROR
        - tax_rate 0 en un tenant NO exento se registra como WARN
        """
        tenant = self.db.query(Tenant).filter(Tenant.id == tenant_id).first()
        if not tenant:
            raise NotFoundError("Empresa no encontrada")

        rate = Decimal(tenant.tax_rate or 0)
        exempt = bool(tenant.is_tax_exempt)
        name = tenant.tax_name or "IVA"

        if rate < 0 or rate >= 1:
            logger.error(f"Tasa de impuesto inválida ({rate}) para tenant {tenant_id}; se usará 0")
            record_system_log(
                self.db, LogLevel.ERROR,
                f"Tax audit: taxRate inválido ({rate}). Debe estar entre 0.0 y 1.0. Se usará 0.",
                tenant_id
            )
            rate = Decimal("0")

        if rate == 0 and not exempt:
            logger.warning(f"Tenant {tenant_id} factura con 0% sin estar marcado como exento")
            record_system_log(
                self.db, LogLevel.WARN,
                "Tax audit: el tenant factura con 0% pero NO está marcado como exento.",
                tenant_id
            )

        return TaxConfig(rate_percent=rate * 100, name=name, exempt=exempt)

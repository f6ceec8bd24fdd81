from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.database.database import get_db
from app.modules.auth.dependencies import AuthDependencies
from app.modules.auth.schemas import AuthContext
from app.modules.taxes.schemas import TaxConfig, TaxConfigUpdate
from app.modules.taxes.service import TaxConfigService
from app.modules.tenancy.schemas import RatesUpdate, TenantOut
from app.modules.tenancy.service import TenantAdminService

tenant_router = APIRouter(prefix="/tenant", tags=["Tenant"])


@tenant_router.get("/tax-config", response_model=TaxConfig)
def get_tax_config(
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_any_role())
):
    """Configuración fiscal vigente del tenant"""
    config = TaxConfigService(db).get_tax_config(auth_context.tenant_id)
    db.commit()
    return config


@tenant_router.put("/tax-config", response_model=TenantOut)
def update_tax_config(
    data: TaxConfigUpdate,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_admin())
):
    """
    Actualizar la configuración fiscal

    Solo administradores. La tasa se informa en porcentaje (19 = 19%).
    """
    return TenantAdminService(db).update_tax_config(auth_context, data)


@tenant_router.put("/rates", response_model=TenantOut)
def update_rates(
    data: RatesUpdate,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_admin())
):
    """Actualizar tarifa por hora y tolerancia del arqueo ciego"""
    return TenantAdminService(db).update_rates(auth_context, data)

"""
Tareas Celery del módulo de mesas
"""
import logging

from app.core.celery import celery_app
import app.database.models  # noqa: F401
from app.database.database import SessionLocal
from app.modules.tables.auditor import SessionIntegrityAuditor
from app.modules.tenancy.models import Tenant
from app.modules.tenancy.repository import AdminRepository, system_context

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=3)
def sweep_stale_sessions(self):
    """
    Barrido periódico de integridad para todos los tenants activos.
    Un tenant que falla no detiene el barrido de los demás.
    """
    db = SessionLocal()
    try:
        tenants = AdminRepository(db, Tenant).list(Tenant.is_active.is_(True), order_by=Tenant.created_at)
        tenant_ids = [tenant.id for tenant in tenants]
        db.commit()

        summary = {"tenants": len(tenant_ids), "fixed_count": 0, "failed_tenants": []}
        for tenant_id in tenant_ids:
            try:
                result = SessionIntegrityAuditor(db).sweep(system_context(tenant_id))
                summary["fixed_count"] += result.fixed_count
            except Exception:
                logger.exception(f"Barrido falló para el tenant {tenant_id}")
                summary["failed_tenants"].append(str(tenant_id))

        logger.info(f"Barrido de integridad completado: {summary}")
        return summary

    except Exception as exc:
        logger.error(f"Error en el barrido de integridad: {exc}")
        raise self.retry(exc=exc, countdown=60)
    finally:
        db.close()

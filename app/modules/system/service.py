from typing import Any, Dict, Optional
from uuid import UUID
import logging

from sqlalchemy.orm import Session

from app.modules.system.models import SystemLog, LogLevel

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("app.security")


def _json_safe(details: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if details is None:
        return None
    return {key: (str(value) if not isinstance(value, (int, float, bool, str, type(None), list)) else value)
            for key, value in details.items()}


def record_system_log(
    db: Session,
    level: LogLevel,
    message: str,
    tenant_id: Optional[UUID] = None,
    details: Optional[Dict[str, Any]] = None
) -> SystemLog:
    """Agregar un SystemLog a la transacción en curso (sin commit)"""
    entry = SystemLog(
        tenant_id=tenant_id,
        level=level.value,
        message=message,
        details=_json_safe(details)
    )
    db.add(entry)
    return entry


def record_security_event(
    db: Session,
    message: str,
    tenant_id: Optional[UUID],
    details: Optional[Dict[str, Any]] = None
) -> None:
    """
    Registrar una violación de aislamiento.

    Se escribe en una sesión independiente del llamador: el evento debe
    quedar persistido aunque la operación que lo disparó haga rollback.
    """
    security_logger.warning(f"{message} | tenant={tenant_id} | details={details}")
    bind = db.get_bind()
    audit_session = Session(bind=bind)
    try:
        record_system_log(audit_session, LogLevel.SECURITY, message, tenant_id, details)
        audit_session.commit()
    except Exception:
        audit_session.rollback()
        logger.exception("No se pudo persistir el evento de seguridad")
    finally:
        audit_session.close()

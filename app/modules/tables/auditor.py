from datetime import timedelta
from typing import Optional
import logging

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.common.exceptions import internal_error
from app.common.mixins import utcnow
from app.core.config import settings
from app.modules.auth.schemas import AuthContext
from app.modules.system.models import LogLevel
from app.modules.system.service import record_system_log
from app.modules.tables.models import Table, TableStatus
from app.modules.tables.schemas import AuditResult
from app.modules.tenancy.repository import TenantRepository

logger = logging.getLogger(__name__)


class SessionIntegrityAuditor:
    """
    Repara mesas atascadas en OCCUPIED.

    Una mesa se considera inconsistente si está OCCUPIED y no tiene sesión
    vigente, o si su sesión comenzó hace más de STALE_SESSION_HOURS. Se
    liberan con un UPDATE masivo; cero coincidencias no es un error.
    """

    def __init__(self, db: Session, stale_hours: Optional[int] = None):
        self.db = db
        self.stale_hours = stale_hours if stale_hours is not None else settings.STALE_SESSION_HOURS

    def sweep(self, context: AuthContext) -> AuditResult:
        cutoff = utcnow() - timedelta(hours=self.stale_hours)
        tables = TenantRepository(self.db, Table, context, label="Mesa")
        criteria = (
            Table.status == TableStatus.OCCUPIED.value,
            or_(Table.current_session_id.is_(None), Table.last_session_start < cutoff),
        )

        try:
            stuck = tables.query().filter(*criteria).with_entities(Table.id, Table.number).all()
            if not stuck:
                return AuditResult(fixed_count=0, fixed_table_ids=[])

            stuck_ids = [row.id for row in stuck]
            fixed = tables.update_where(
                {"status": TableStatus.AVAILABLE.value, "current_session_id": None, "last_session_start": None},
                Table.id.in_(stuck_ids),
                *criteria
            )
            record_system_log(
                self.db, LogLevel.WARN,
                f"Auditor de sesiones: {fixed} mesa(s) liberadas por estado inconsistente",
                context.tenant_id,
                {"table_numbers": [row.number for row in stuck], "stale_hours": self.stale_hours}
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.exception(f"Error en el barrido de integridad del tenant {context.tenant_id}")
            raise internal_error()

        logger.warning(f"Auditor liberó {fixed} mesa(s) del tenant {context.tenant_id}")
        return AuditResult(fixed_count=fixed, fixed_table_ids=stuck_ids)

"""
Registros operativos persistidos: SystemLog y Notification.

SystemLog guarda eventos de negocio relevantes (descuadres de caja, sellos
de integridad, reparaciones del auditor, eventos de seguridad) para que
puedan revisarse desde el panel sin acceso a los logs del servidor.
"""
from app.database.database import Base
from sqlalchemy import Column, String, Text, JSON, Boolean, ForeignKey, Uuid
from app.common.mixins import IdMixin, TimestampMixin
import enum


class LogLevel(str, enum.Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    SECURITY = "SECURITY"
    CRITICAL = "CRITICAL"


class NotificationType(str, enum.Enum):
    MAINTENANCE_DUE = "MAINTENANCE_DUE"


class SystemLog(Base, IdMixin, TimestampMixin):
    __tablename__ = "system_logs"

    # Nullable: algunos eventos (tareas globales) no pertenecen a un tenant
    tenant_id = Column(Uuid(as_uuid=True), nullable=True, index=True)
    level = Column(String(20), nullable=False, index=True)
    message = Column(Text, nullable=False)
    details = Column(JSON, nullable=True)


class Notification(Base, IdMixin, TimestampMixin):
    __tablename__ = "notifications"

    tenant_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    type = Column(String(40), nullable=False, index=True)
    table_id = Column(Uuid(as_uuid=True), ForeignKey("pool_tables.id"), nullable=True, index=True)
    message = Column(Text, nullable=False)
    is_read = Column(Boolean, nullable=False, default=False)

"""
Modelos de mesas de billar y sesiones de uso.

Invariante: status == OCCUPIED si y solo si current_session_id apunta a un
UsageLog con ended_at IS NULL. Una mesa tiene a lo sumo un UsageLog abierto.

Un UsageLog es inmutable en sus campos financieros una vez que
daily_balance_id queda asignado por un cierre Z.
"""
from app.database.database import Base
from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, ForeignKey, Numeric, Text, UniqueConstraint, Uuid
)
from sqlalchemy.orm import relationship
from app.common.mixins import BaseMixin
import enum


class TableStatus(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    OCCUPIED = "OCCUPIED"
    CLEANING = "CLEANING"
    PAYMENT_PENDING = "PAYMENT_PENDING"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"


class DocumentStatus(str, enum.Enum):
    GENERATED = "GENERATED"
    PENDING = "PENDING"
    FAILED = "FAILED"


class Table(Base, BaseMixin):
    __tablename__ = "pool_tables"

    number = Column(Integer, nullable=False)
    name = Column(String(100), nullable=True)
    status = Column(String(20), nullable=False, default=TableStatus.AVAILABLE.value, index=True)

    # Referencia débil (sin FK) a la sesión abierta
    current_session_id = Column(Uuid(as_uuid=True), nullable=True)
    last_session_start = Column(DateTime, nullable=True)

    # Horas acumuladas de juego (monótono) y punto de reinicio del mantenimiento
    total_play_hours = Column(Numeric(12, 4), nullable=False, default=0)
    hours_at_last_maintenance = Column(Numeric(12, 4), nullable=False, default=0)
    maintenance_threshold_hours = Column(Numeric(10, 2), nullable=False, default=500)

    usage_logs = relationship("UsageLog", back_populates="table")

    __table_args__ = (
        UniqueConstraint("tenant_id", "number", name="uq_table_tenant_number"),
    )


class UsageLog(Base, BaseMixin):
    __tablename__ = "usage_logs"

    table_id = Column(Uuid(as_uuid=True), ForeignKey("pool_tables.id"), nullable=False, index=True)
    member_id = Column(Uuid(as_uuid=True), ForeignKey("members.id"), nullable=True, index=True)

    started_at = Column(DateTime, nullable=False)
    ended_at = Column(DateTime, nullable=True, index=True)
    duration_minutes = Column(Integer, nullable=True)

    # Montos al cierre (amount_charged es bruto, IVA incluido)
    amount_charged = Column(Numeric(15, 2), nullable=True)
    discount_applied = Column(Numeric(15, 2), nullable=False, default=0)
    product_total = Column(Numeric(15, 2), nullable=False, default=0)
    net_amount = Column(Numeric(15, 2), nullable=True)
    tax_amount = Column(Numeric(15, 2), nullable=True)
    tax_rate = Column(Numeric(7, 4), nullable=True)  # Porcentaje vigente al cierre (19.0000)
    tax_name = Column(String(20), nullable=True)

    payment_status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True)
    daily_balance_id = Column(Uuid(as_uuid=True), ForeignKey("daily_balances.id"), nullable=True, index=True)

    # Resultado de la emisión del documento tributario
    document_type = Column(Integer, nullable=True)
    document_reference = Column(String(100), nullable=True)
    document_status = Column(String(20), nullable=True)
    document_error = Column(Text, nullable=True)

    # Sesión cerrada sin cobro al reutilizar la mesa
    abandoned = Column(Boolean, nullable=False, default=False)

    opened_by = Column(Uuid(as_uuid=True), nullable=True)
    closed_by = Column(Uuid(as_uuid=True), nullable=True)

    table = relationship("Table", back_populates="usage_logs")
    member = relationship("Member")
    items = relationship("OrderItem", back_populates="usage_log", order_by="OrderItem.created_at")
    payments = relationship("PaymentRecord", back_populates="usage_log")


class OrderItem(Base, BaseMixin):
    """Consumo del bar durante una sesión; precio y costo se fijan al agregar"""
    __tablename__ = "order_items"

    usage_log_id = Column(Uuid(as_uuid=True), ForeignKey("usage_logs.id"), nullable=False, index=True)
    product_id = Column(Uuid(as_uuid=True), ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(15, 2), nullable=False)
    total_price = Column(Numeric(15, 2), nullable=False)
    unit_cost = Column(Numeric(15, 2), nullable=False, default=0)

    usage_log = relationship("UsageLog", back_populates="items")
    product = relationship("Product")


class MaintenanceLog(Base, BaseMixin):
    __tablename__ = "maintenance_logs"

    table_id = Column(Uuid(as_uuid=True), ForeignKey("pool_tables.id"), nullable=False, index=True)
    cost = Column(Numeric(15, 2), nullable=False, default=0)
    notes = Column(Text, nullable=True)
    play_hours_at_service = Column(Numeric(12, 4), nullable=False, default=0)
    performed_by = Column(Uuid(as_uuid=True), nullable=True)

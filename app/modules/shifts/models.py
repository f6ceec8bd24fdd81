"""
Cierre de turno (Z-report).

Un DailyBalance se crea una sola vez y nunca se actualiza ni elimina.
integrity_hash es un digest de sus campos agregados más los IDs de las
sesiones consolidadas; detecta alteraciones pero no autentica al emisor.
"""
from app.database.database import Base
from sqlalchemy import Column, String, Boolean, DateTime, Numeric, Integer, Text, Uuid
from sqlalchemy.orm import relationship
from app.common.mixins import BaseMixin


class DailyBalance(Base, BaseMixin):
    __tablename__ = "daily_balances"

    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False, index=True)
    session_count = Column(Integer, nullable=False, default=0)

    # Ingresos
    time_revenue = Column(Numeric(15, 2), nullable=False, default=0)
    product_revenue = Column(Numeric(15, 2), nullable=False, default=0)
    membership_revenue = Column(Numeric(15, 2), nullable=False, default=0)
    rental_revenue = Column(Numeric(15, 2), nullable=False, default=0)
    total_revenue = Column(Numeric(15, 2), nullable=False, default=0)

    # Desglose por medio de pago (teórico, según pagos registrados)
    cash_revenue = Column(Numeric(15, 2), nullable=False, default=0)
    card_revenue = Column(Numeric(15, 2), nullable=False, default=0)
    credit_revenue = Column(Numeric(15, 2), nullable=False, default=0)

    # Costos
    total_cost = Column(Numeric(15, 2), nullable=False, default=0)
    waste_cost = Column(Numeric(15, 2), nullable=False, default=0)
    maintenance_cost = Column(Numeric(15, 2), nullable=False, default=0)
    net_profit = Column(Numeric(15, 2), nullable=False, default=0)

    # Arqueo ciego
    cash_in_hand = Column(Numeric(15, 2), nullable=False)
    cash_difference = Column(Numeric(15, 2), nullable=False)
    has_cash_alert = Column(Boolean, nullable=False, default=False)

    closed_by = Column(String(150), nullable=False)
    closed_by_id = Column(Uuid(as_uuid=True), nullable=True)
    notes = Column(Text, nullable=True)
    integrity_hash = Column(String(64), nullable=False)

    usage_logs = relationship("UsageLog", viewonly=True, order_by="UsageLog.started_at")

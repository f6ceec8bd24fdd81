from app.database.database import Base
from sqlalchemy import Column, String, ForeignKey, Numeric, Text, Uuid
from sqlalchemy.orm import relationship
from app.common.mixins import BaseMixin
import enum


class PaymentMethod(str, enum.Enum):
    CASH = "CASH"
    CARD = "CARD"
    TRANSFER = "TRANSFER"
    QR = "QR"
    CREDIT = "CREDIT"
    OTHER = "OTHER"


class PaymentRecordStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class PaymentRecord(Base, BaseMixin):
    """
    Pago de una sesión de mesa.
    A lo sumo un registro COMPLETED por UsageLog.
    """
    __tablename__ = "payment_records"

    usage_log_id = Column(Uuid(as_uuid=True), ForeignKey("usage_logs.id"), nullable=False, index=True)
    method = Column(String(20), nullable=False)
    amount = Column(Numeric(15, 2), nullable=False)
    tendered_amount = Column(Numeric(15, 2), nullable=True)  # Monto entregado (efectivo con vuelto)
    status = Column(String(20), nullable=False, default=PaymentRecordStatus.PENDING.value, index=True)

    provider = Column(String(50), nullable=True)
    transaction_id = Column(String(100), nullable=True, index=True)
    payment_url = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    recorded_by = Column(Uuid(as_uuid=True), nullable=True)

    usage_log = relationship("UsageLog", back_populates="payments")

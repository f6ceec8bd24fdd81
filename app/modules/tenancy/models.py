from app.database.database import Base
from sqlalchemy import Column, String, Boolean, Numeric
from app.common.mixins import IdMixin, TimestampMixin


class Tenant(Base, IdMixin, TimestampMixin):
    """
    Club / sala de billar: frontera de aislamiento de datos.

    Tarifa y configuración fiscal se leen como snapshot al momento de
    cerrar cada sesión de mesa.
    """
    __tablename__ = "tenants"

    name = Column(String(150), nullable=False)
    slug = Column(String(80), nullable=False, unique=True, index=True)
    is_active = Column(Boolean, nullable=False, default=True)

    # Tarifa por hora (precio al público, IVA incluido)
    hourly_rate = Column(Numeric(15, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="CLP")

    # Configuración fiscal: tasa como fracción (0.19 = 19%)
    tax_rate = Column(Numeric(7, 4), nullable=False, default=0)
    tax_name = Column(String(20), nullable=False, default="IVA")
    is_tax_exempt = Column(Boolean, nullable=False, default=False)

    # Tolerancia del arqueo ciego; None usa settings.CASH_ALERT_TOLERANCE
    cash_tolerance = Column(Numeric(15, 2), nullable=True)

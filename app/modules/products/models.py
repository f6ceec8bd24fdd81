from app.database.database import Base
from sqlalchemy import Column, Integer, String, Boolean, ForeignKey, Numeric, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship
from app.common.mixins import BaseMixin
import enum


class StockMovementType(str, enum.Enum):
    SALE = "SALE"              # Consumo asociado a una sesión de mesa
    WASTE = "WASTE"            # Merma
    ADJUSTMENT = "ADJUSTMENT"  # Ajuste manual de inventario


class Product(Base, BaseMixin):
    """Producto del bar. price es precio al público, cost_price es costo unitario."""
    __tablename__ = "products"

    name = Column(String(100), nullable=False)
    sku = Column(String(50), nullable=False)
    price = Column(Numeric(15, 2), nullable=False, default=0)
    cost_price = Column(Numeric(15, 2), nullable=False, default=0)
    stock = Column(Integer, nullable=False, default=0)
    sell_in_negative = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)

    movements = relationship("StockMovement", back_populates="product")

    __table_args__ = (
        UniqueConstraint("tenant_id", "sku", name="uq_product_tenant_sku"),
    )


class StockMovement(Base, BaseMixin):
    """
    Movimiento de inventario. quantity es negativa en salidas.
    unit_cost es el costo vigente al momento del movimiento.
    """
    __tablename__ = "stock_movements"

    product_id = Column(Uuid(as_uuid=True), ForeignKey("products.id"), nullable=False, index=True)
    type = Column(String(20), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    unit_cost = Column(Numeric(15, 2), nullable=False, default=0)
    usage_log_id = Column(Uuid(as_uuid=True), ForeignKey("usage_logs.id"), nullable=True, index=True)
    notes = Column(Text, nullable=True)
    created_by = Column(Uuid(as_uuid=True), nullable=True)

    product = relationship("Product", back_populates="movements")


class RentalCharge(Base, BaseMixin):
    """Arriendo cobrado fuera de las mesas (tacos, casilleros, salón privado)"""
    __tablename__ = "rental_charges"

    description = Column(String(200), nullable=False)
    amount = Column(Numeric(15, 2), nullable=False)
    created_by = Column(Uuid(as_uuid=True), nullable=True)

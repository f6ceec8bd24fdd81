from uuid import UUID
import logging

from fastapi import HTTPException
from sqlalchemy.orm import Session

from app.common.exceptions import ValidationError, internal_error
from app.modules.auth.schemas import AuthContext
from app.modules.products.models import Product, StockMovement, StockMovementType, RentalCharge
from app.modules.products.schemas import WasteCreate, RentalCreate
from app.modules.taxes.calculator import round2
from app.modules.tenancy.repository import TenantRepository

logger = logging.getLogger(__name__)


class ProductService:
    """Movimientos de inventario del bar"""

    def __init__(self, db: Session):
        self.db = db

    def take_stock(self, context: AuthContext, product_id: UUID, quantity: int,
                   movement_type: StockMovementType, usage_log_id: UUID = None,
                   notes: str = None) -> StockMovement:
        """
        Descontar unidades y registrar el movimiento (sin commit).
        Bloquea la fila del producto mientras dura la transacción.
        """
        if quantity <= 0:
            raise ValidationError("La cantidad debe ser mayor a 0")

        products = TenantRepository(self.db, Product, context, label="Producto")
        product = products.get(product_id, for_update=True)

        if not product.is_active:
            raise ValidationError("El producto no está activo")
        if product.stock < quantity and not product.sell_in_negative:
            raise ValidationError(f"Stock insuficiente para {product.name}: disponible {product.stock}")

        product.stock -= quantity

        movement = TenantRepository(self.db, StockMovement, context).create(
            product_id=product.id,
            type=movement_type.value,
            quantity=-quantity,
            unit_cost=product.cost_price,
            usage_log_id=usage_log_id,
            notes=notes,
            created_by=context.user_id
        )
        return movement

    def register_waste(self, context: AuthContext, product_id: UUID, data: WasteCreate) -> StockMovement:
        """Registrar una merma; su costo se imputa al próximo cierre Z"""
        try:
            movement = self.take_stock(context, product_id, data.quantity, StockMovementType.WASTE, notes=data.notes)
            self.db.commit()
            self.db.refresh(movement)
            logger.info(f"Merma registrada: producto {product_id} x{data.quantity}")
            return movement
        except HTTPException:
            self.db.rollback()
            raise
        except Exception:
            self.db.rollback()
            logger.exception("Error registrando merma")
            raise internal_error()


class RentalService:

    def __init__(self, db: Session):
        self.db = db

    def record_rental(self, context: AuthContext, data: RentalCreate) -> RentalCharge:
        try:
            rental = TenantRepository(self.db, RentalCharge, context).create(
                description=data.description,
                amount=round2(data.amount),
                created_by=context.user_id
            )
            self.db.commit()
            self.db.refresh(rental)
            return rental
        except HTTPException:
            self.db.rollback()
            raise
        except Exception:
            self.db.rollback()
            logger.exception("Error registrando arriendo")
            raise internal_error()

from fastapi import APIRouter, status
from uuid import UUID

from app.dependencies.dbDependecies import db_dependency, staff_context
from app.modules.products.schemas import WasteCreate, StockMovementOut, RentalCreate, RentalOut
from app.modules.products.service import ProductService, RentalService

product_router = APIRouter(tags=["Inventory"])


@product_router.post("/products/{product_id}/waste", response_model=StockMovementOut,
                     status_code=status.HTTP_201_CREATED)
def register_waste(product_id: UUID, data: WasteCreate, db: db_dependency, auth_context: staff_context):
    """Registrar merma de inventario; su costo se imputa al próximo cierre Z"""
    return ProductService(db).register_waste(auth_context, product_id, data)


@product_router.post("/rentals", response_model=RentalOut, status_code=status.HTTP_201_CREATED)
def record_rental(data: RentalCreate, db: db_dependency, auth_context: staff_context):
    return RentalService(db).record_rental(auth_context, data)

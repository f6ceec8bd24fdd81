import pytest
from decimal import Decimal
from uuid import uuid4

from app.common.exceptions import NotFoundError, ValidationError
from app.modules.products.models import StockMovement, StockMovementType, RentalCharge
from app.modules.products.schemas import WasteCreate, RentalCreate
from app.modules.products.service import ProductService, RentalService

from conftest import make_context


class TestProductService:
    """Tests para movimientos de inventario"""

    def test_register_waste(self, db_session, product, waiter_context):
        movement = ProductService(db_session).register_waste(
            waiter_context, product.id, WasteCreate(quantity=3, notes="Botellas rotas")
        )

        assert movement.type == StockMovementType.WASTE.value
        assert movement.quantity == -3
        assert movement.unit_cost == Decimal("1000.00")
        assert movement.usage_log_id is None
        db_session.refresh(product)
        assert product.stock == 21

    def test_waste_above_stock(self, db_session, product, waiter_context):
        with pytest.raises(ValidationError):
            ProductService(db_session).register_waste(waiter_context, product.id, WasteCreate(quantity=30))
        assert db_session.query(StockMovement).count() == 0

    def test_sell_in_negative(self, db_session, product, waiter_context):
        product.sell_in_negative = True
        db_session.commit()

        ProductService(db_session).register_waste(waiter_context, product.id, WasteCreate(quantity=30))

        db_session.refresh(product)
        assert product.stock == -6

    def test_inactive_product(self, db_session, product, waiter_context):
        product.is_active = False
        db_session.commit()

        with pytest.raises(ValidationError):
            ProductService(db_session).register_waste(waiter_context, product.id, WasteCreate(quantity=1))

    def test_foreign_product(self, db_session, product, other_tenant):
        with pytest.raises(NotFoundError):
            ProductService(db_session).register_waste(
                make_context(other_tenant), product.id, WasteCreate(quantity=1)
            )

    def test_unknown_product(self, db_session, tenant, waiter_context):
        with pytest.raises(NotFoundError):
            ProductService(db_session).take_stock(waiter_context, uuid4(), 1, StockMovementType.ADJUSTMENT)


class TestRentalService:

    def test_record_rental(self, db_session, tenant, waiter_context):
        rental = RentalService(db_session).record_rental(
            waiter_context, RentalCreate(description="Arriendo de taco", amount=Decimal("1500.499"))
        )

        assert rental.tenant_id == tenant.id
        assert rental.amount == Decimal("1500.50")
        assert db_session.query(RentalCharge).count() == 1


class TestInventoryAPI:

    def test_waste_endpoint(self, client, product, waiter_headers):
        response = client.post(
            f"/api/v1/products/{product.id}/waste",
            json={"quantity": 2},
            headers=waiter_headers
        )
        assert response.status_code == 201
        assert response.json()["quantity"] == -2

    def test_rental_endpoint(self, client, tenant, waiter_headers):
        response = client.post(
            "/api/v1/rentals",
            json={"description": "Casillero", "amount": "3000"},
            headers=waiter_headers
        )
        assert response.status_code == 201
        assert Decimal(response.json()["amount"]) == Decimal("3000.00")

    def test_rental_requires_positive_amount(self, client, tenant, waiter_headers):
        response = client.post(
            "/api/v1/rentals",
            json={"description": "Casillero", "amount": "0"},
            headers=waiter_headers
        )
        assert response.status_code == 422

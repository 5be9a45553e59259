"""
Inventory ledger and product catalog tests.

Verifies:
- Product.stock changes only through IN/OUT movements
- Manual write-offs beyond stock are rejected and leave no trace
- Every manual posting is audited with before/after stock
- verify_stock detects cache drift
- Product SKU uniqueness and the read-only stock field over the API
"""

import pytest

from printcrm.extensions import db
from printcrm.models import AuditLog, InventoryMovement, Product
from printcrm.services import inventory_service, product_service
from printcrm.validation import ConflictError, NotFoundError, ValidationError


pytestmark = pytest.mark.inventory


# ============================================================================
# LEDGER POSTINGS
# ============================================================================

class TestManualPostings:

    def test_receive_and_write_off(self, make_product, users):
        admin = users["ADMIN"]
        product = make_product()

        inventory_service.receive_stock(product_id=product.id, quantity=50, user_id=admin.id, note="delivery")
        movement = inventory_service.write_off_stock(product_id=product.id, quantity=20, user_id=admin.id)

        assert movement.type == "OUT"
        assert movement.stock_after == 30
        assert db.session.get(Product, product.id).stock == 30
        assert inventory_service.get_ledger_stock(product.id) == 30

    def test_write_off_beyond_stock_is_rejected(self, make_product, users):
        product = make_product(stock=5)

        with pytest.raises(ValidationError):
            inventory_service.write_off_stock(product_id=product.id, quantity=6, user_id=users["ADMIN"].id)

        assert db.session.get(Product, product.id).stock == 5
        assert db.session.query(InventoryMovement).filter_by(product_id=product.id, type="OUT").count() == 0

    @pytest.mark.parametrize("quantity", [0, -3, 1.5, True])
    def test_quantity_must_be_positive_integer(self, make_product, users, quantity):
        product = make_product(stock=5)
        with pytest.raises(ValidationError):
            inventory_service.receive_stock(product_id=product.id, quantity=quantity, user_id=users["ADMIN"].id)

    def test_unknown_product(self, users):
        with pytest.raises(NotFoundError):
            inventory_service.receive_stock(product_id=999, quantity=1, user_id=users["ADMIN"].id)

    def test_inactive_product_cannot_receive(self, make_product, users):
        product = make_product(stock=5)
        product_service.update_product(product_id=product.id, patch={"is_active": False}, user_id=users["ADMIN"].id)

        with pytest.raises(ValidationError):
            inventory_service.receive_stock(product_id=product.id, quantity=1, user_id=users["ADMIN"].id)
        # Remaining stock of a retired product can still be written off
        inventory_service.write_off_stock(product_id=product.id, quantity=5, user_id=users["ADMIN"].id)
        assert db.session.get(Product, product.id).stock == 0

    def test_posting_is_audited(self, make_product, users):
        product = make_product(stock=7)

        entry = (
            db.session.query(AuditLog)
            .filter_by(action="STOCK_MOVEMENT", entity_id=product.id)
            .one()
        )
        assert entry.before == {"stock": 0}
        assert entry.after["stock"] == 7
        assert entry.after["type"] == "IN"


# ============================================================================
# LEDGER VERIFICATION
# ============================================================================

class TestVerifyStock:

    def test_consistent_ledger(self, make_product, users):
        product = make_product(stock=10)
        inventory_service.write_off_stock(product_id=product.id, quantity=4, user_id=users["ADMIN"].id)

        (row,) = inventory_service.verify_stock(product.id)
        assert row == {
            "product_id": product.id,
            "sku": product.sku,
            "cached_stock": 6,
            "ledger_stock": 6,
            "consistent": True,
        }

    def test_drift_is_reported(self, make_product):
        product = make_product(stock=10)
        db.session.get(Product, product.id).stock = 11
        db.session.commit()

        (row,) = inventory_service.verify_stock(product.id)
        assert row["consistent"] is False
        assert row["ledger_stock"] == 10

    def test_product_without_movements(self, make_product):
        product = make_product()
        (row,) = inventory_service.verify_stock(product.id)
        assert row["ledger_stock"] == 0
        assert row["consistent"] is True

    def test_unknown_product(self, app):
        with pytest.raises(NotFoundError):
            inventory_service.verify_stock(999)


# ============================================================================
# PRODUCT CATALOG
# ============================================================================

class TestProductCatalog:

    def test_duplicate_sku_conflicts(self, make_product):
        make_product(sku="PAPER-A4")
        with pytest.raises(ConflictError):
            make_product(sku="PAPER-A4")

    def test_stock_is_not_writable(self, make_product, users):
        product = make_product(stock=3)
        with pytest.raises(ValidationError):
            product_service.update_product(product_id=product.id, patch={"stock": 100}, user_id=users["ADMIN"].id)
        assert db.session.get(Product, product.id).stock == 3

    def test_negative_price_rejected(self, users):
        with pytest.raises(ValidationError):
            product_service.create_product(
                patch={"sku": "INK-1", "name": "Ink", "sale_price_cents": -1},
                user_id=users["ADMIN"].id,
            )

    def test_low_stock_filter(self, make_product):
        low = make_product(stock=2, min_stock=5)
        make_product(stock=10, min_stock=5)

        assert [p.id for p in product_service.list_products(low_stock=True)] == [low.id]


# ============================================================================
# API
# ============================================================================

@pytest.mark.api
class TestInventoryApi:

    def test_create_product_with_stock_is_rejected(self, client, headers):
        resp = client.post(
            "/api/products",
            json={"sku": "INK-1", "name": "Ink", "stock": 5},
            headers=headers("ADMIN"),
        )
        assert resp.status_code == 400

    def test_create_product_requires_manage_products(self, client, headers):
        resp = client.post("/api/products", json={"sku": "INK-1", "name": "Ink"}, headers=headers("MANAGER"))
        assert resp.status_code == 403

    def test_duplicate_sku_is_409(self, client, headers):
        assert client.post("/api/products", json={"sku": "INK-1", "name": "Ink"}, headers=headers("ADMIN")).status_code == 201
        resp = client.post("/api/products", json={"sku": "INK-1", "name": "Ink 2"}, headers=headers("ADMIN"))
        assert resp.status_code == 409

    def test_post_movements(self, client, headers, make_product):
        product = make_product()

        resp = client.post(
            "/api/inventory/movements",
            json={"product_id": product.id, "type": "IN", "quantity": 12},
            headers=headers("WAREHOUSE"),
        )
        assert resp.status_code == 201
        assert resp.get_json()["movement"]["stock_after"] == 12

        resp = client.post(
            "/api/inventory/movements",
            json={"product_id": product.id, "type": "OUT", "quantity": 13},
            headers=headers("WAREHOUSE"),
        )
        assert resp.status_code == 400

        resp = client.get(f"/api/inventory/products/{product.id}/movements", headers=headers("ACCOUNTANT"))
        assert resp.status_code == 200
        assert resp.get_json()["product"]["stock"] == 12
        assert len(resp.get_json()["movements"]) == 1

    def test_movement_type_must_be_in_or_out(self, client, headers, make_product):
        product = make_product()
        resp = client.post(
            "/api/inventory/movements",
            json={"product_id": product.id, "type": "ADJUST", "quantity": 1},
            headers=headers("ADMIN"),
        )
        assert resp.status_code == 400

    def test_postings_require_manage_inventory(self, client, headers, make_product):
        product = make_product()
        resp = client.post(
            "/api/inventory/movements",
            json={"product_id": product.id, "type": "IN", "quantity": 1},
            headers=headers("ACCOUNTANT"),
        )
        assert resp.status_code == 403

    def test_verify_endpoint(self, client, headers, make_product):
        make_product(stock=4)
        resp = client.get("/api/inventory/verify", headers=headers("ADMIN"))
        assert resp.status_code == 200
        assert resp.get_json()["consistent"] is True

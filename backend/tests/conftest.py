"""
Pytest fixtures for PrintCRM backend tests.

Provides an in-memory database per test, one user (and bearer token) per
role, product/client factories and a helper that walks a deal through the
workflow to a given status.
"""

import pytest

from printcrm import create_app
from printcrm.config import TestingConfig
from printcrm.extensions import db
from printcrm.models import Deal
from printcrm.models.users import VALID_ROLES
from printcrm.services import (
    auth_service,
    client_service,
    deal_service,
    inventory_service,
    product_service,
    session_service,
    shipment_service,
)
from printcrm.services import deal_workflow as wf


PASSWORD = "Password123!"

SHIPMENT_DATA = {
    "vehicle_type": "Van",
    "vehicle_number": "AB1234",
    "driver_name": "Ivan Driver",
    "departure_time": "2026-03-01T09:00:00Z",
    "delivery_note_number": "DN-0001",
    "shipment_comment": "Fragile",
}


@pytest.fixture(scope='function')
def app():
    """Create application with a fresh in-memory database."""
    app = create_app(TestingConfig)

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def shipment_data():
    """Complete shipment form (a fresh copy per test)."""
    return dict(SHIPMENT_DATA)


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def users(app):
    """One active user per role, keyed by role name (username = role in lower case)."""
    created = {}
    for role in VALID_ROLES:
        created[role] = auth_service.create_user(
            username=role.lower(),
            password=PASSWORD,
            role=role,
            full_name=role.replace("_", " ").title(),
        )
    db.session.commit()
    return created


@pytest.fixture(scope='function')
def other_manager(users):
    """Second MANAGER, used for ownership/visibility checks."""
    user = auth_service.create_user(username="manager2", password=PASSWORD, role="MANAGER")
    db.session.commit()
    return user


@pytest.fixture(scope='function')
def tokens(users):
    result = {}
    for role, user in users.items():
        _, token = session_service.create_session(user)
        result[role] = token
    db.session.commit()
    return result


@pytest.fixture(scope='function')
def headers(tokens):
    """headers("MANAGER") -> Authorization header for that role."""
    def _headers(role: str) -> dict:
        return {'Authorization': f'Bearer {tokens[role]}'}
    return _headers


@pytest.fixture(scope='function')
def make_product(users):
    """Create a product; opening stock is posted as an IN movement."""
    admin = users["ADMIN"]
    counter = iter(range(1, 10_000))

    def _make(stock: int = 0, *, sku: str | None = None, name: str | None = None, min_stock: int = 0):
        n = next(counter)
        product = product_service.create_product(
            patch={"sku": sku or f"PAPER-{n:03d}", "name": name or f"Coated paper {n}", "min_stock": min_stock},
            user_id=admin.id,
        )
        if stock:
            inventory_service.receive_stock(
                product_id=product.id,
                quantity=stock,
                user_id=admin.id,
                note="opening stock",
            )
        return product

    return _make


@pytest.fixture(scope='function')
def customer(users):
    """Client managed by the MANAGER user."""
    return client_service.create_client(
        patch={"company_name": "Acme Print House", "contact_name": "Olga"},
        user=users["MANAGER"],
    )


@pytest.fixture(scope='function')
def new_deal(users, customer, make_product):
    """
    new_deal(products=[p1, p2]) -> NEW deal owned by MANAGER.

    Without products, one product with stock 100 is created.
    """
    def _new_deal(products=None, **kwargs):
        products = products or [make_product(stock=100)]
        return deal_service.create_deal(
            user=users["MANAGER"],
            client_id=customer.id,
            items=[{"product_id": p.id, "request_comment": "please check"} for p in products],
            title=kwargs.pop("title", "Leaflets"),
            **kwargs,
        )
    return _new_deal


@pytest.fixture(scope='function')
def deal_at(users, new_deal, make_product):
    """
    Walk a fresh deal through the workflow until it reaches `status`.

    deal_at(status, quantities=(10,), stock=100, price_cents=1000,
            discount_cents=0, priced=True, products=None)

    One product (with `stock` on hand) is created per quantity unless
    `products` (one per quantity, repeats allowed) is given. When
    `priced` is true the items are priced right after stock confirmation.
    """
    manager = users["MANAGER"]
    warehouse = users["WAREHOUSE"]
    accountant = users["ACCOUNTANT"]
    admin = users["ADMIN"]
    shipper = users["WAREHOUSE_MANAGER"]

    def _deal_at(status, *, quantities=(10,), stock=100, price_cents=1000, discount_cents=0, priced=True,
                 products=None):
        products = products or [make_product(stock=stock) for _ in quantities]
        deal = new_deal(products=products)
        deal_id = deal.id

        def price():
            items = db.session.get(Deal, deal_id).items
            deal_service.set_item_quantities(
                deal_id,
                manager,
                items=[
                    {"deal_item_id": item.id, "requested_qty": qty, "price_cents": price_cents}
                    for item, qty in zip(items, quantities)
                ],
                discount_cents=discount_cents,
            )

        def confirm_stock():
            items = db.session.get(Deal, deal_id).items
            deal_service.submit_warehouse_response(
                deal_id,
                warehouse,
                [{"deal_item_id": item.id, "warehouse_comment": "available"} for item in items],
            )
            if priced:
                price()

        main_line = [
            (wf.IN_PROGRESS, lambda: deal_service.start_work(deal_id, manager)),
            (wf.WAITING_STOCK_CONFIRMATION, lambda: deal_service.request_stock_confirmation(deal_id, manager)),
            (wf.STOCK_CONFIRMED, confirm_stock),
            (wf.FINANCE_APPROVED, lambda: deal_service.approve_finance(deal_id, accountant)),
            (wf.ADMIN_APPROVED, lambda: deal_service.approve_admin(deal_id, admin)),
            (wf.READY_FOR_SHIPMENT, lambda: deal_service.mark_ready_for_shipment(deal_id, admin)),
            (wf.SHIPPED, lambda: shipment_service.submit_shipment(deal_id, shipper, dict(SHIPMENT_DATA))),
            (wf.CLOSED, lambda: deal_service.close_deal(deal_id, admin)),
        ]
        side_edges = {
            wf.REJECTED: (wf.STOCK_CONFIRMED, lambda: deal_service.reject_finance(deal_id, accountant, "Price too low")),
            wf.SHIPMENT_ON_HOLD: (wf.READY_FOR_SHIPMENT, lambda: deal_service.hold_shipment(deal_id, shipper, "Truck broke down")),
            wf.CANCELED: (wf.IN_PROGRESS, lambda: deal_service.cancel_deal(deal_id, manager, "Client changed mind")),
        }

        target = status
        if status in side_edges:
            target, _ = side_edges[status]

        for to_status, step in main_line:
            if db.session.get(Deal, deal_id).status == target:
                break
            step()

        if status in side_edges:
            side_edges[status][1]()

        deal = db.session.get(Deal, deal_id)
        assert deal.status == status
        return deal

    return _deal_at

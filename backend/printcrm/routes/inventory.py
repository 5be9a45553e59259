# backend/printcrm/routes/inventory.py
"""
Inventory ledger routes.

SECURITY: All routes require authentication.
- Manual postings (IN receive, OUT write-off) require manage_inventory
- Ledger verification requires manage_inventory

Shipment OUT movements are not posted here; they come from
POST /api/deals/<id>/shipment.
"""
from flask import Blueprint, request, g

from ..models import InventoryMovement
from ..models.inventory import MOVEMENT_IN
from ..services import inventory_service, product_service
from ..validation import (
    ModelValidationPolicy,
    validate_payload,
    ValidationError,
)
from ..decorators import require_auth, require_permission, handle_domain_errors


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")

MOVEMENT_POLICY = ModelValidationPolicy(
    writable_fields={"product_id", "type", "quantity", "note"},
    required_on_create={"product_id", "type", "quantity"},
)


@inventory_bp.post("/movements")
@require_auth
@require_permission("manage_inventory")
@handle_domain_errors("Failed to post inventory movement")
def post_movement_route():
    """
    Manual stock posting.

    Request body:
    {
        "product_id": 1,
        "type": "IN" | "OUT",
        "quantity": 10,
        "note": "supplier delivery"    (optional)
    }

    An OUT larger than the current stock is rejected (400).
    """
    patch = validate_payload(
        model=InventoryMovement,
        payload=request.get_json(silent=True) or {},
        policy=MOVEMENT_POLICY,
        partial=False,
    )

    if patch["type"] not in ("IN", "OUT"):
        raise ValidationError("type must be IN or OUT")
    post = (
        inventory_service.receive_stock
        if patch["type"] == MOVEMENT_IN
        else inventory_service.write_off_stock
    )

    movement = post(
        product_id=patch["product_id"],
        quantity=patch["quantity"],
        user_id=g.current_user.id,
        note=patch.get("note"),
    )
    return {"movement": movement.to_dict(), "product": movement.product.to_ref()}, 201


@inventory_bp.get("/movements")
@require_auth
@handle_domain_errors("Failed to list inventory movements")
def list_movements_route():
    """
    Query params:
    - product_id, deal_id: filters
    - type: IN or OUT
    - limit: max rows (default 200, capped at 1000)
    """
    movements = inventory_service.list_movements(
        product_id=request.args.get("product_id", type=int),
        deal_id=request.args.get("deal_id", type=int),
        movement_type=request.args.get("type") or None,
        limit=request.args.get("limit", default=200, type=int),
    )
    return {"movements": [m.to_dict() for m in movements]}


@inventory_bp.get("/products/<int:product_id>/movements")
@require_auth
@handle_domain_errors("Failed to list product movements")
def product_movements_route(product_id: int):
    product = product_service.get_product(product_id)
    movements = inventory_service.list_movements(
        product_id=product.id,
        limit=request.args.get("limit", default=200, type=int),
    )
    return {"product": product.to_dict(), "movements": [m.to_dict() for m in movements]}


@inventory_bp.get("/verify")
@require_auth
@require_permission("manage_inventory")
@handle_domain_errors("Failed to verify stock")
def verify_stock_route():
    """Cached stock vs ledger replay, per product (query param product_id optional)."""
    report = inventory_service.verify_stock(request.args.get("product_id", type=int))
    return {
        "products": report,
        "consistent": all(row["consistent"] for row in report),
    }

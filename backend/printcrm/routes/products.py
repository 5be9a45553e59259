# backend/printcrm/routes/products.py
"""
Product catalog routes.

SECURITY: All routes require authentication.
- Read operations: any authenticated user (deal forms need the catalog)
- Write operations require manage_products

stock is read-only here; it changes only through inventory movements.
"""
from flask import Blueprint, request, g

from ..services import product_service
from ..models import Product
from ..validation import (
    PRODUCT_POLICY,
    validate_payload,
    ValidationError,
)
from ..decorators import require_auth, require_permission, handle_domain_errors

products_bp = Blueprint("products", __name__, url_prefix="/api/products")


def _flag(name: str) -> bool:
    return request.args.get(name, "").lower() in ("1", "true", "yes")


def _payload() -> dict:
    payload = request.get_json(silent=True) or {}
    if isinstance(payload, dict) and "stock" in payload:
        raise ValidationError("stock cannot be set directly; post an inventory movement")
    return payload


@products_bp.get("")
@require_auth
@handle_domain_errors("Failed to list products")
def list_products():
    """
    Query params:
    - active_only: only active products
    - low_stock: only products below min_stock
    - search: substring of name or SKU
    """
    products = product_service.list_products(
        active_only=_flag("active_only"),
        low_stock=_flag("low_stock"),
        search=request.args.get("search") or None,
    )
    return {"products": [p.to_dict() for p in products]}


@products_bp.post("")
@require_auth
@require_permission("manage_products")
@handle_domain_errors("Failed to create product")
def create_product_route():
    """
    Create a new product with zero stock.

    Returns:
        201: created
        400: invalid payload
        409: SKU already exists
    """
    patch = validate_payload(model=Product, payload=_payload(), policy=PRODUCT_POLICY, partial=False)
    created = product_service.create_product(patch=patch, user_id=g.current_user.id)
    return {"product": created.to_dict()}, 201


@products_bp.get("/<int:product_id>")
@require_auth
@handle_domain_errors("Failed to get product")
def get_product_route(product_id: int):
    return {"product": product_service.get_product(product_id).to_dict()}


@products_bp.put("/<int:product_id>")
@require_auth
@require_permission("manage_products")
@handle_domain_errors("Failed to update product")
def update_product_route(product_id: int):
    patch = validate_payload(model=Product, payload=_payload(), policy=PRODUCT_POLICY, partial=True)
    if not patch:
        raise ValidationError("No fields to update")
    updated = product_service.update_product(product_id=product_id, patch=patch, user_id=g.current_user.id)
    return {"product": updated.to_dict()}

"""
Product Catalog Service

Products are never deleted (movements and deal items reference them);
deactivate with is_active=False instead. stock is not in
PRODUCT_MUTABLE_FIELDS: only inventory_service.post_movement writes it.
"""
from __future__ import annotations

from ..extensions import db
from ..models import Product
from ..validation import ConflictError, NotFoundError, ValidationError, enforce_rules_product
from . import audit_service
from .concurrency import lock_for_update, run_with_retry

PRODUCT_MUTABLE_FIELDS = {
    "sku", "name", "unit", "category", "min_stock",
    "purchase_price_cents", "sale_price_cents", "is_active",
}


def apply_product_patch(p: Product, patch: dict) -> None:
    for k, v in patch.items():
        if k not in PRODUCT_MUTABLE_FIELDS:
            continue
        setattr(p, k, v)


def _ensure_unique_sku(sku: str, exclude_id: int | None = None) -> None:
    q = db.session.query(Product).filter(Product.sku == sku)
    if exclude_id is not None:
        q = q.filter(Product.id != exclude_id)
    if q.first():
        raise ConflictError(f"SKU '{sku}' already exists")


def list_products(*, active_only: bool = False, low_stock: bool = False, search: str | None = None) -> list[Product]:
    q = db.session.query(Product)
    if active_only:
        q = q.filter(Product.is_active.is_(True))
    if low_stock:
        q = q.filter(Product.stock < Product.min_stock)
    if search:
        like = f"%{search.strip()}%"
        q = q.filter(db.or_(Product.name.ilike(like), Product.sku.ilike(like)))
    return q.order_by(Product.name.asc(), Product.id.asc()).all()


def get_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError(f"Product {product_id} not found")
    return product


def create_product(*, patch: dict, user_id: int) -> Product:
    """
    Create product using a validated patch dict.

    Raises:
        ConflictError: SKU already exists
    """
    if "stock" in patch:
        raise ValidationError("stock cannot be set directly; post an inventory movement")
    enforce_rules_product(patch)

    def _op():
        _ensure_unique_sku(patch["sku"])

        product = Product(stock=0)
        apply_product_patch(product, patch)
        db.session.add(product)
        db.session.flush()

        audit_service.record(
            user_id=user_id,
            action="CREATE",
            entity_type=audit_service.ENTITY_PRODUCT,
            entity_id=product.id,
            after={k: patch[k] for k in sorted(patch)},
        )
        db.session.commit()
        return product

    return run_with_retry(_op)


def update_product(*, product_id: int, patch: dict, user_id: int) -> Product:
    """
    Update catalog fields of a product.

    Raises:
        NotFoundError: unknown product
        ConflictError: new SKU already exists
    """
    if "stock" in patch:
        raise ValidationError("stock cannot be set directly; post an inventory movement")
    enforce_rules_product(patch)

    def _op():
        product = lock_for_update(
            db.session.query(Product).filter(Product.id == product_id)
        ).first()
        if product is None:
            raise NotFoundError(f"Product {product_id} not found")

        if "sku" in patch and patch["sku"] != product.sku:
            _ensure_unique_sku(patch["sku"], exclude_id=product.id)

        before = {k: getattr(product, k) for k in sorted(patch)}
        apply_product_patch(product, patch)

        audit_service.record(
            user_id=user_id,
            action="UPDATE",
            entity_type=audit_service.ENTITY_PRODUCT,
            entity_id=product.id,
            before=before,
            after={k: patch[k] for k in sorted(patch)},
        )
        db.session.commit()
        return product

    return run_with_retry(_op)

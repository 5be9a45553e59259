"""
Inventory Ledger Invariants (authoritative)

Ledger model:
- InventoryMovement rows are append-only (IN or OUT, quantity > 0).
- Product.stock is a cache of SUM(IN) - SUM(OUT) per product.
- post_movement() is the only code path that writes Product.stock; it locks
  the product row, appends the movement and updates the cache in the same
  transaction.

Business invariants:
- Stock never goes negative. Manual write-offs beyond stock are rejected;
  only the shipment path caps its OUT quantity (see shipment_service).
- Replaying the movements of a product reproduces Product.stock
  (verify_stock reports any drift).

Audit:
- Manual postings append a STOCK_MOVEMENT audit entry in the same transaction.
"""

from __future__ import annotations

from sqlalchemy import case, func

from ..extensions import db
from ..models import Product, InventoryMovement
from ..models.inventory import MOVEMENT_IN, MOVEMENT_OUT, VALID_MOVEMENT_TYPES
from ..validation import ValidationError, NotFoundError
from . import audit_service
from .concurrency import lock_for_update, run_with_retry


def get_product_for_update(product_id: int) -> Product:
    product = lock_for_update(
        db.session.query(Product).filter(Product.id == product_id)
    ).first()
    if product is None:
        raise NotFoundError(f"Product {product_id} not found")
    return product


def post_movement(
    *,
    product_id: int,
    movement_type: str,
    quantity: int,
    user_id: int | None,
    deal_id: int | None = None,
    note: str | None = None,
) -> InventoryMovement:
    """
    Append one movement and update the cached stock. No commit.

    Raises:
        ValidationError: bad type, non-positive quantity, or an OUT larger
            than current stock
        NotFoundError: unknown product
    """
    if movement_type not in VALID_MOVEMENT_TYPES:
        raise ValidationError(f"Invalid movement type '{movement_type}'")
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError("quantity must be a positive integer")

    product = get_product_for_update(product_id)

    if movement_type == MOVEMENT_OUT and quantity > product.stock:
        raise ValidationError(
            f"Insufficient stock for {product.sku}: requested {quantity}, available {product.stock}"
        )

    new_stock = product.stock + quantity if movement_type == MOVEMENT_IN else product.stock - quantity

    movement = InventoryMovement(
        product_id=product.id,
        type=movement_type,
        quantity=quantity,
        deal_id=deal_id,
        note=note,
        stock_after=new_stock,
        created_by=user_id,
    )
    db.session.add(movement)
    product.stock = new_stock
    db.session.flush()
    return movement


def _manual_posting(
    *,
    product_id: int,
    movement_type: str,
    quantity: int,
    user_id: int,
    note: str | None,
) -> InventoryMovement:
    def _op():
        product = get_product_for_update(product_id)
        if not product.is_active and movement_type == MOVEMENT_IN:
            raise ValidationError(f"Product {product.sku} is inactive")
        before = {"stock": product.stock}

        movement = post_movement(
            product_id=product_id,
            movement_type=movement_type,
            quantity=quantity,
            user_id=user_id,
            note=note,
        )

        audit_service.record(
            user_id=user_id,
            action="STOCK_MOVEMENT",
            entity_type=audit_service.ENTITY_PRODUCT,
            entity_id=product_id,
            before=before,
            after={
                "stock": movement.stock_after,
                "movement_id": movement.id,
                "type": movement_type,
                "quantity": quantity,
            },
        )

        db.session.commit()
        return movement

    return run_with_retry(_op)


def receive_stock(*, product_id: int, quantity: int, user_id: int, note: str | None = None) -> InventoryMovement:
    """Manual IN posting (goods received)."""
    return _manual_posting(
        product_id=product_id,
        movement_type=MOVEMENT_IN,
        quantity=quantity,
        user_id=user_id,
        note=note,
    )


def write_off_stock(*, product_id: int, quantity: int, user_id: int, note: str | None = None) -> InventoryMovement:
    """Manual OUT posting. Rejected when quantity exceeds current stock."""
    return _manual_posting(
        product_id=product_id,
        movement_type=MOVEMENT_OUT,
        quantity=quantity,
        user_id=user_id,
        note=note,
    )


def get_ledger_stock(product_id: int) -> int:
    """Replay the product's movements in creation order (IN minus OUT)."""
    movements = (
        db.session.query(InventoryMovement)
        .filter(InventoryMovement.product_id == product_id)
        .order_by(InventoryMovement.created_at.asc(), InventoryMovement.id.asc())
        .all()
    )
    return sum(m.signed_quantity for m in movements)


def verify_stock(product_id: int | None = None) -> list[dict]:
    """
    Compare the cached Product.stock with the ledger-derived value.

    Returns one row per product checked; "consistent" is False where the
    cache has drifted from the ledger.
    """
    signed = case(
        (InventoryMovement.type == MOVEMENT_IN, InventoryMovement.quantity),
        else_=-InventoryMovement.quantity,
    )
    ledger_rows = db.session.query(
        InventoryMovement.product_id,
        func.coalesce(func.sum(signed), 0),
    ).group_by(InventoryMovement.product_id)
    if product_id is not None:
        ledger_rows = ledger_rows.filter(InventoryMovement.product_id == product_id)
    ledger = {pid: int(total) for pid, total in ledger_rows.all()}

    products = db.session.query(Product)
    if product_id is not None:
        products = products.filter(Product.id == product_id)

    report = []
    for product in products.order_by(Product.id.asc()).all():
        ledger_stock = ledger.get(product.id, 0)
        report.append({
            "product_id": product.id,
            "sku": product.sku,
            "cached_stock": product.stock,
            "ledger_stock": ledger_stock,
            "consistent": product.stock == ledger_stock,
        })

    if product_id is not None and not report:
        raise NotFoundError(f"Product {product_id} not found")
    return report


def list_movements(
    *,
    product_id: int | None = None,
    deal_id: int | None = None,
    movement_type: str | None = None,
    limit: int = 200,
) -> list[InventoryMovement]:
    q = db.session.query(InventoryMovement)
    if product_id is not None:
        q = q.filter(InventoryMovement.product_id == product_id)
    if deal_id is not None:
        q = q.filter(InventoryMovement.deal_id == deal_id)
    if movement_type is not None:
        if movement_type not in VALID_MOVEMENT_TYPES:
            raise ValidationError(f"Invalid movement type '{movement_type}'")
        q = q.filter(InventoryMovement.type == movement_type)

    limit = max(1, min(int(limit), 1000))
    return (
        q.order_by(InventoryMovement.created_at.desc(), InventoryMovement.id.desc())
        .limit(limit)
        .all()
    )

"""
Deal Operations

Every operation here is one request, one DB transaction and (at least) one
audit entry. Status changes are delegated to deal_workflow.require_transition;
stock movements on shipment live in shipment_service.

AMOUNTS:
    subtotal = SUM(requested_qty * price_cents) over priced items
    amount   = subtotal - discount     (rejected when negative)
Any change to items, prices or discount recomputes amount and re-derives
payment_status from the cached paid amount. paid_amount_cents is never
written here.
"""

from __future__ import annotations

from datetime import date

from sqlalchemy import desc

from ..extensions import db
from ..models import Client, Contract, Deal, DealComment, DealItem, InventoryMovement, Product, User
from ..models.deals import PAYMENT_TYPES
from ..validation import NotFoundError, ValidationError, MAX_PRICE_CENTS, clean_text, coerce_int
from printcrm.time_utils import utcnow
from . import audit_service, payment_service, permission_service
from . import deal_workflow as wf
from .concurrency import run_in_transaction
from .permission_service import PermissionDeniedError


# =============================================================================
# HELPERS
# =============================================================================

def _get_active_product(product_id) -> Product:
    product = db.session.get(Product, coerce_int(product_id, "product_id"))
    if product is None or not product.is_active:
        raise NotFoundError(f"Product {product_id} not found or inactive")
    return product


def _get_client_contract(contract_id, client_id: int) -> Contract:
    contract = db.session.query(Contract).filter_by(
        id=coerce_int(contract_id, "contract_id"),
        client_id=client_id,
    ).first()
    if contract is None:
        raise NotFoundError(f"Contract {contract_id} not found for client {client_id}")
    return contract


def _find_item(deal: Deal, item_id) -> DealItem:
    item_id = coerce_int(item_id, "deal_item_id")
    for item in deal.items:
        if item.id == item_id:
            return item
    raise ValidationError(f"Item {item_id} does not belong to deal {deal.id}")


def _require_manager_or_admin(deal: Deal, user: User, action: str) -> None:
    if not permission_service.is_full_access(user) and deal.manager_id != user.id:
        raise PermissionDeniedError(f"Only the deal's manager or an administrator can {action}")


def _require_item_editable(deal: Deal) -> None:
    if deal.status not in wf.ITEM_EDITABLE_STATUSES:
        raise ValidationError(
            f"Items can only be changed while the deal is {', '.join(sorted(wf.ITEM_EDITABLE_STATUSES))}"
        )


def _add_comment(deal: Deal, user: User, text: str) -> DealComment:
    comment = DealComment(deal_id=deal.id, user_id=user.id, text=text, created_at=utcnow())
    db.session.add(comment)
    db.session.flush()
    return comment


def compute_subtotal(deal: Deal) -> int:
    return sum(item.line_total_cents for item in deal.items if item.is_priced)


def recalculate_amount(deal: Deal, *, discount_cents: int | None = None) -> None:
    """
    Recompute subtotal/amount (and payment status) from the items.

    Raises:
        ValidationError: discount larger than the subtotal
    """
    discount = deal.discount_cents if discount_cents is None else discount_cents
    subtotal = compute_subtotal(deal)
    amount = subtotal - discount
    if amount < 0:
        raise ValidationError(
            f"Deal amount cannot be negative (discount {discount} exceeds subtotal {subtotal})"
        )
    deal.subtotal_cents = subtotal
    deal.discount_cents = discount
    deal.amount_cents = amount
    deal.payment_status = payment_service.derive_payment_status(deal.paid_amount_cents, amount)


def _parse_discount(value) -> int:
    discount = coerce_int(value, "discount_cents")
    if discount < 0:
        raise ValidationError("discount_cents must be >= 0")
    if discount > MAX_PRICE_CENTS:
        raise ValidationError(f"discount_cents cannot exceed {MAX_PRICE_CENTS}")
    return discount


# =============================================================================
# READS
# =============================================================================

def list_deals(
    user: User,
    *,
    status: str | None = None,
    include_closed: bool = False,
    client_id: int | None = None,
    include_archived: bool = False,
) -> list[Deal]:
    q = wf.scoped_deals(user, include_archived=include_archived)
    if status:
        wf.validate_status(status)
        q = q.filter(Deal.status == status)
    elif not include_closed:
        q = q.filter(Deal.status != wf.CLOSED)
    if client_id is not None:
        q = q.filter(Deal.client_id == client_id)
    return q.order_by(Deal.created_at.desc(), Deal.id.desc()).all()


def get_deal(deal_id: int, user: User) -> Deal:
    return wf.get_visible_deal(deal_id, user)


def get_deal_detail(deal_id: int, user: User) -> dict:
    deal = wf.get_visible_deal(deal_id, user)
    data = deal.to_dict()
    data["comments"] = [c.to_dict() for c in reversed(deal.comments)]
    data["allowed_transitions"] = [
        to for to in wf.allowed_targets(deal.status)
        if permission_service.user_has_permission(user, wf.required_permission(deal.status, to))
    ]
    return data


def list_items(deal_id: int, user: User) -> list[DealItem]:
    return list(wf.get_visible_deal(deal_id, user).items)


def get_logs(deal_id: int, user: User) -> list[dict]:
    deal = wf.get_visible_deal(deal_id, user)
    return [entry.to_dict() for entry in audit_service.list_for_deal(deal.id)]


def get_history(deal_id: int, user: User) -> list[dict]:
    """Audit entries and stock movements of a deal merged into one timeline, newest first."""
    deal = wf.get_visible_deal(deal_id, user)

    timeline = [{"kind": "audit", **entry.to_dict()} for entry in audit_service.list_for_deal(deal.id)]
    movements = (
        db.session.query(InventoryMovement)
        .filter(InventoryMovement.deal_id == deal.id)
        .order_by(desc(InventoryMovement.created_at), desc(InventoryMovement.id))
        .all()
    )
    timeline.extend({"kind": "movement", **m.to_dict()} for m in movements)

    # ISO-8601 Z strings sort chronologically
    timeline.sort(key=lambda row: (row["created_at"] or "", row["id"]), reverse=True)
    return timeline


def list_comments(deal_id: int, user: User) -> list[DealComment]:
    deal = wf.get_visible_deal(deal_id, user)
    return (
        db.session.query(DealComment)
        .filter(DealComment.deal_id == deal.id)
        .order_by(desc(DealComment.created_at), desc(DealComment.id))
        .all()
    )


# =============================================================================
# CREATE / UPDATE
# =============================================================================

def create_deal(
    *,
    user: User,
    client_id,
    items: list[dict],
    title: str | None = None,
    contract_id=None,
) -> Deal:
    """
    Create a NEW deal with unpriced items.

    Amounts start at zero and the deal is UNPAID; quantities and prices are
    set after the warehouse has answered (set_item_quantities).
    """
    permission_service.require_permission(user, "manage_deals", resource="deal:create")
    if not isinstance(items, list) or not items:
        raise ValidationError("A deal needs at least one item")

    def _op():
        client_q = db.session.query(Client).filter(
            Client.id == coerce_int(client_id, "client_id"),
            Client.is_archived.is_(False),
        )
        if not permission_service.can_view_all_deals(user) and not permission_service.can_view_all_clients(user):
            client_q = client_q.filter(Client.manager_id == user.id)
        client = client_q.first()
        if client is None:
            raise NotFoundError(f"Client {client_id} not found")

        contract = _get_client_contract(contract_id, client.id) if contract_id is not None else None

        deal = Deal(
            title=(title or "").strip() or f"Deal {utcnow().date().isoformat()}",
            status=wf.NEW,
            subtotal_cents=0,
            discount_cents=0,
            amount_cents=0,
            client_id=client.id,
            manager_id=user.id,
            contract_id=contract.id if contract else None,
            payment_type="FULL",
            paid_amount_cents=0,
            payment_status=payment_service.PAYMENT_STATUS_UNPAID,
        )
        db.session.add(deal)
        db.session.flush()

        for raw in items:
            if not isinstance(raw, dict):
                raise ValidationError("Each item must be an object")
            product = _get_active_product(raw.get("product_id"))
            db.session.add(DealItem(
                deal_id=deal.id,
                product_id=product.id,
                request_comment=raw.get("request_comment"),
            ))
        db.session.flush()

        audit_service.record(
            user_id=user.id,
            action="CREATE",
            entity_type=audit_service.ENTITY_DEAL,
            entity_id=deal.id,
            after={
                "title": deal.title,
                "status": deal.status,
                "client_id": deal.client_id,
                "amount_cents": 0,
                "items_count": len(items),
            },
        )
        db.session.commit()
        return deal

    return run_in_transaction(_op)


UPDATABLE_FIELDS = {"title", "terms", "contract_id", "manager_id", "discount_cents", "status", "reason"}
STATUS_FIELDS = {"status", "reason"}
# Amount-affecting edits end once finance has approved the price
PRICING_STATUSES = wf.ITEM_EDITABLE_STATUSES | {wf.STOCK_CONFIRMED}


def update_deal(*, deal_id: int, user: User, payload: dict) -> Deal:
    """
    Patch deal fields.

    - manager_id: administrators only
    - discount_cents: recomputes amount
    - status: routed through the transition table, same guard as the
      dedicated workflow endpoints (shipment excluded: use submit_shipment)
    """
    if not isinstance(payload, dict) or not payload:
        raise ValidationError("No fields to update")
    unknown = set(payload) - UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(f"Field not allowed: {', '.join(sorted(unknown))}")
    if set(payload) - STATUS_FIELDS:
        permission_service.require_permission(user, "manage_deals", resource=f"deal:{deal_id}")

    def _op():
        deal = wf.get_deal_for_update(deal_id, user)
        before: dict = {}
        after: dict = {}

        if "title" in payload:
            title = (payload["title"] or "").strip() if isinstance(payload["title"], str) else None
            if not title:
                raise ValidationError("title cannot be blank")
            before["title"], after["title"] = deal.title, title
            deal.title = title

        if "terms" in payload:
            terms = clean_text(payload["terms"], "terms")
            before["terms"], after["terms"] = deal.terms, terms
            deal.terms = terms

        if "contract_id" in payload:
            contract_id = payload["contract_id"]
            if contract_id is not None:
                contract_id = _get_client_contract(contract_id, deal.client_id).id
            before["contract_id"], after["contract_id"] = deal.contract_id, contract_id
            deal.contract_id = contract_id

        if "manager_id" in payload and payload["manager_id"] != deal.manager_id:
            if not permission_service.is_full_access(user):
                raise PermissionDeniedError("Only administrators can change the deal's manager")
            manager = db.session.get(User, coerce_int(payload["manager_id"], "manager_id"))
            if manager is None or not manager.is_active:
                raise NotFoundError(f"Manager {payload['manager_id']} not found or inactive")
            before["manager_id"], after["manager_id"] = deal.manager_id, manager.id
            deal.manager_id = manager.id

        if "discount_cents" in payload:
            if deal.status not in PRICING_STATUSES:
                raise ValidationError("The discount can only change before finance approval")
            discount = _parse_discount(payload["discount_cents"])
            before["discount_cents"] = deal.discount_cents
            before["amount_cents"] = deal.amount_cents
            recalculate_amount(deal, discount_cents=discount)
            after["discount_cents"] = deal.discount_cents
            after["amount_cents"] = deal.amount_cents

        if "status" in payload:
            to_status = payload["status"]
            wf.validate_status(to_status)
            if (deal.status, to_status) in wf.SIDE_EFFECT_EDGES:
                raise ValidationError("Use the shipment endpoint to ship a deal")
            details = {}
            reason = clean_text(payload.get("reason"), "reason")
            if reason:
                details["reason"] = reason
            wf.require_transition(deal, to_status, user, details=details)

        if before:
            audit_service.record(
                user_id=user.id,
                action="UPDATE",
                entity_type=audit_service.ENTITY_DEAL,
                entity_id=deal.id,
                before=before,
                after=after,
            )
        db.session.commit()
        return deal

    return run_in_transaction(_op)


# =============================================================================
# ITEMS
# =============================================================================

def add_item(*, deal_id: int, user: User, product_id, request_comment: str | None = None) -> DealItem:
    permission_service.require_permission(user, "manage_deals", resource=f"deal:{deal_id}")

    def _op():
        deal = wf.get_deal_for_update(deal_id, user)
        _require_item_editable(deal)
        product = _get_active_product(product_id)

        item = DealItem(deal_id=deal.id, product_id=product.id, request_comment=request_comment)
        db.session.add(item)
        db.session.flush()

        audit_service.record(
            user_id=user.id,
            action="UPDATE",
            entity_type=audit_service.ENTITY_DEAL,
            entity_id=deal.id,
            after={"added_item_id": item.id, "product_id": product.id},
        )
        db.session.commit()
        return item

    return run_in_transaction(_op)


def remove_item(*, deal_id: int, item_id: int, user: User) -> Deal:
    permission_service.require_permission(user, "manage_deals", resource=f"deal:{deal_id}")

    def _op():
        deal = wf.get_deal_for_update(deal_id, user)
        _require_item_editable(deal)
        item = next((i for i in deal.items if i.id == item_id), None)
        if item is None:
            raise NotFoundError(f"Item {item_id} not found in deal {deal_id}")

        before = {"amount_cents": deal.amount_cents, "items_count": len(deal.items)}
        deal.items.remove(item)
        db.session.flush()
        recalculate_amount(deal)

        audit_service.record(
            user_id=user.id,
            action="UPDATE",
            entity_type=audit_service.ENTITY_DEAL,
            entity_id=deal.id,
            before=before,
            after={
                "removed_item_id": item_id,
                "amount_cents": deal.amount_cents,
                "items_count": len(deal.items),
            },
        )
        db.session.commit()
        return deal

    return run_in_transaction(_op)


# =============================================================================
# WORKFLOW OPERATIONS
# =============================================================================

def _transition(deal_id: int, user: User, to_status: str, *, details: dict | None = None,
                comment: str | None = None) -> Deal:
    """Lock the deal, take one edge, optionally leave a comment, commit."""
    def _op():
        deal = wf.get_deal_for_update(deal_id, user)
        wf.require_transition(deal, to_status, user, details=details)
        if comment:
            _add_comment(deal, user, comment)
        db.session.commit()
        return deal

    return run_in_transaction(_op)


def start_work(deal_id: int, user: User) -> Deal:
    return _transition(deal_id, user, wf.IN_PROGRESS)


def request_stock_confirmation(deal_id: int, user: User) -> Deal:
    return _transition(deal_id, user, wf.WAITING_STOCK_CONFIRMATION)


def submit_warehouse_response(deal_id: int, user: User, items: list[dict]) -> Deal:
    """
    Warehouse answers the stock request: one comment per item, then
    WAITING_STOCK_CONFIRMATION -> STOCK_CONFIRMED.
    """
    if not isinstance(items, list) or not items:
        raise ValidationError("At least one item response is required")

    def _op():
        deal = wf.get_deal_for_update(deal_id, user)
        wf.check_transition(deal, wf.STOCK_CONFIRMED, user)

        now = utcnow()
        responses = []
        for raw in items:
            if not isinstance(raw, dict):
                raise ValidationError("Each item response must be an object")
            item = _find_item(deal, raw.get("deal_item_id"))
            comment = raw.get("warehouse_comment")
            if not isinstance(comment, str) or not comment.strip():
                raise ValidationError(f"warehouse_comment is required for item {item.id}")
            responses.append((item, comment.strip()))

        for item, comment in responses:
            item.warehouse_comment = comment
            item.confirmed_by = user.id
            item.confirmed_at = now

        wf.require_transition(deal, wf.STOCK_CONFIRMED, user, details={"responded_items": len(responses)})
        db.session.commit()
        return deal

    return run_in_transaction(_op)


def set_item_quantities(
    deal_id: int,
    user: User,
    *,
    items: list[dict],
    discount_cents=0,
    payment_type: str = "FULL",
    due_date: date | None = None,
    terms: str | None = None,
) -> Deal:
    """
    Manager prices the deal after stock confirmation.

    Only in STOCK_CONFIRMED, only by the deal's manager or an administrator.
    Does not change status and never touches the paid amount.
    """
    if not isinstance(items, list) or not items:
        raise ValidationError("At least one item is required")
    discount = _parse_discount(discount_cents or 0)
    payment_type = payment_type or "FULL"
    if payment_type not in PAYMENT_TYPES:
        raise ValidationError(f"payment_type must be one of: {', '.join(PAYMENT_TYPES)}")
    if payment_type in ("PARTIAL", "DEBT") and due_date is None:
        raise ValidationError("due_date is required for PARTIAL and DEBT payment types")
    terms = clean_text(terms, "terms")

    def _op():
        deal = wf.get_deal_for_update(deal_id, user)
        if deal.status != wf.STOCK_CONFIRMED:
            raise ValidationError("Quantities can only be set while the deal is STOCK_CONFIRMED")
        _require_manager_or_admin(deal, user, "set quantities")

        priced = []
        seen = set()
        for raw in items:
            if not isinstance(raw, dict):
                raise ValidationError("Each item must be an object")
            item = _find_item(deal, raw.get("deal_item_id"))
            if item.id in seen:
                raise ValidationError(f"Item {item.id} is listed twice")
            seen.add(item.id)

            qty = coerce_int(raw.get("requested_qty"), "requested_qty")
            price = coerce_int(raw.get("price_cents"), "price_cents")
            if qty <= 0:
                raise ValidationError("requested_qty must be > 0")
            if price < 0:
                raise ValidationError("price_cents must be >= 0")
            if price > MAX_PRICE_CENTS:
                raise ValidationError(f"price_cents cannot exceed {MAX_PRICE_CENTS}")
            priced.append((item, qty, price))

        before = {
            "subtotal_cents": deal.subtotal_cents,
            "discount_cents": deal.discount_cents,
            "amount_cents": deal.amount_cents,
            "payment_type": deal.payment_type,
        }
        for item, qty, price in priced:
            item.requested_qty = qty
            item.price_cents = price

        recalculate_amount(deal, discount_cents=discount)
        deal.payment_type = payment_type
        deal.due_date = due_date
        if terms is not None:
            deal.terms = terms

        audit_service.record(
            user_id=user.id,
            action="UPDATE",
            entity_type=audit_service.ENTITY_DEAL,
            entity_id=deal.id,
            before=before,
            after={
                "subtotal_cents": deal.subtotal_cents,
                "discount_cents": deal.discount_cents,
                "amount_cents": deal.amount_cents,
                "payment_type": deal.payment_type,
                "payment_status": deal.payment_status,
                "due_date": deal.due_date,
            },
        )
        db.session.commit()
        return deal

    return run_in_transaction(_op)


def approve_finance(deal_id: int, user: User) -> Deal:
    return _transition(deal_id, user, wf.FINANCE_APPROVED)


def reject_finance(deal_id: int, user: User, reason: str) -> Deal:
    reason = (reason or "").strip() if isinstance(reason, str) else ""
    return _transition(
        deal_id, user, wf.REJECTED,
        details={"reason": reason},
        comment=f"Rejected by finance: {reason}",
    )


def approve_admin(deal_id: int, user: User) -> Deal:
    return _transition(deal_id, user, wf.ADMIN_APPROVED)


def mark_ready_for_shipment(deal_id: int, user: User) -> Deal:
    return _transition(deal_id, user, wf.READY_FOR_SHIPMENT)


def hold_shipment(deal_id: int, user: User, reason: str) -> Deal:
    reason = (reason or "").strip() if isinstance(reason, str) else ""
    return _transition(
        deal_id, user, wf.SHIPMENT_ON_HOLD,
        details={"reason": reason},
        comment=f"Shipment on hold: {reason}",
    )


def release_shipment_hold(deal_id: int, user: User) -> Deal:
    return _transition(deal_id, user, wf.READY_FOR_SHIPMENT)


def close_deal(deal_id: int, user: User) -> Deal:
    return _transition(deal_id, user, wf.CLOSED)


def cancel_deal(deal_id: int, user: User, reason: str | None = None) -> Deal:
    reason = reason.strip() if isinstance(reason, str) and reason.strip() else None
    return _transition(
        deal_id, user, wf.CANCELED,
        details={"reason": reason} if reason else None,
        comment=f"Canceled: {reason}" if reason else None,
    )


def rework_deal(deal_id: int, user: User) -> Deal:
    return _transition(deal_id, user, wf.IN_PROGRESS)


# =============================================================================
# ARCHIVE / COMMENTS
# =============================================================================

def archive_deal(deal_id: int, user: User) -> Deal:
    if not (permission_service.is_full_access(user)
            or permission_service.user_has_permission(user, "archive_deals")):
        raise PermissionDeniedError("Missing permission: archive_deals")

    def _op():
        deal = wf.get_deal_for_update(deal_id, user)
        deal.is_archived = True
        audit_service.record(
            user_id=user.id,
            action="ARCHIVE",
            entity_type=audit_service.ENTITY_DEAL,
            entity_id=deal.id,
            before={"is_archived": False},
            after={"is_archived": True},
        )
        db.session.commit()
        return deal

    return run_in_transaction(_op)


def add_comment(deal_id: int, user: User, text: str) -> DealComment:
    if not isinstance(text, str) or not text.strip():
        raise ValidationError("Comment text cannot be empty")

    def _op():
        deal = wf.get_deal_for_update(deal_id, user)
        comment = _add_comment(deal, user, text.strip())
        db.session.commit()
        return comment

    return run_in_transaction(_op)


# =============================================================================
# WORKFLOW QUEUES
# =============================================================================

QUEUES = {
    "stock-confirmation": ((wf.WAITING_STOCK_CONFIRMATION,), "stock_confirm"),
    "finance": ((wf.STOCK_CONFIRMED,), "finance_approve"),
    "admin-approval": ((wf.FINANCE_APPROVED,), "admin_approve"),
    "shipment": ((wf.READY_FOR_SHIPMENT, wf.SHIPMENT_ON_HOLD), "confirm_shipment"),
}


def get_queue(queue: str, user: User) -> list[dict]:
    """
    Deals waiting for one role, derived from current status only.

    The finance queue also carries each client's open debt.
    """
    if queue not in QUEUES:
        raise NotFoundError(f"Unknown queue '{queue}'")
    statuses, permission = QUEUES[queue]
    permission_service.require_permission(user, permission, resource=f"queue:{queue}")

    deals = (
        db.session.query(Deal)
        .filter(Deal.status.in_(statuses), Deal.is_archived.is_(False))
        .order_by(Deal.created_at.desc(), Deal.id.desc())
        .all()
    )
    rows = [deal.to_dict() for deal in deals]

    if queue == "finance":
        debt = payment_service.client_open_debt(sorted({d.client_id for d in deals}))
        for row in rows:
            row["client_debt_cents"] = debt.get(row["client_id"], 0)
    return rows


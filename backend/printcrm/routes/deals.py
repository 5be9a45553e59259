# backend/printcrm/routes/deals.py
"""
Deal API Routes

Every workflow step has its own endpoint; each one calls a single
deal_service operation, which takes one edge of the transition table.

SECURITY:
- All routes require authentication
- Edge permissions are enforced by the workflow engine, not by decorators,
  so PATCH {"status": ...} and the dedicated endpoints share one guard
- The acting user is always g.current_user, never taken from the body
- Deals outside the caller's visibility answer 404

Error responses (all endpoints):
    400: bad payload or unmet precondition
    401: not authenticated
    403: missing permission
    404: deal not found or not visible
    409: illegal status transition
"""

from flask import Blueprint, request, jsonify, g

from ..services import deal_service, shipment_service
from ..validation import ValidationError, coerce_date
from ..decorators import require_auth, require_permission, handle_domain_errors


deals_bp = Blueprint("deals", __name__, url_prefix="/api/deals")


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON payload")
    return data


def _flag(name: str) -> bool:
    return request.args.get(name, "").lower() in ("1", "true", "yes")


def _deal_response(deal, status_code: int = 200):
    return jsonify({"deal": deal.to_dict()}), status_code


# =============================================================================
# QUEUES
# =============================================================================

@deals_bp.get("/queues/<string:queue>")
@require_auth
@handle_domain_errors("Failed to load deal queue")
def queue_route(queue: str):
    """
    Deals waiting for a role: stock-confirmation, finance, admin-approval, shipment.

    The finance queue rows carry client_debt_cents.
    """
    deals = deal_service.get_queue(queue, g.current_user)
    return jsonify({"queue": queue, "deals": deals, "count": len(deals)}), 200


# =============================================================================
# CRUD
# =============================================================================

@deals_bp.get("")
@require_auth
@handle_domain_errors("Failed to list deals")
def list_deals_route():
    """
    Query params:
    - status: exact status filter
    - include_closed: include CLOSED deals when no status is given
    - client_id: filter by client
    - include_archived: include archived deals
    """
    deals = deal_service.list_deals(
        g.current_user,
        status=request.args.get("status") or None,
        include_closed=_flag("include_closed"),
        client_id=request.args.get("client_id", type=int),
        include_archived=_flag("include_archived"),
    )
    return jsonify({"deals": [d.to_dict(include_items=False) for d in deals]}), 200


@deals_bp.post("")
@require_auth
@require_permission("manage_deals")
@handle_domain_errors("Failed to create deal")
def create_deal_route():
    """
    Request body:
    {
        "client_id": 1,
        "title": "Business cards",      (optional, generated when blank)
        "contract_id": 3,               (optional, must belong to the client)
        "items": [{"product_id": 7, "request_comment": "matte"}]
    }
    """
    data = _json_body()
    deal = deal_service.create_deal(
        user=g.current_user,
        client_id=data.get("client_id"),
        items=data.get("items"),
        title=data.get("title"),
        contract_id=data.get("contract_id"),
    )
    return _deal_response(deal, 201)


@deals_bp.get("/<int:deal_id>")
@require_auth
@handle_domain_errors("Failed to get deal")
def get_deal_route(deal_id: int):
    """Deal with items, shipment, comments and the transitions the caller may take."""
    return jsonify({"deal": deal_service.get_deal_detail(deal_id, g.current_user)}), 200


@deals_bp.patch("/<int:deal_id>")
@require_auth
@handle_domain_errors("Failed to update deal")
def update_deal_route(deal_id: int):
    """
    Patch title, terms, contract_id, manager_id (admins), discount_cents
    or status (+ reason).
    """
    deal = deal_service.update_deal(deal_id=deal_id, user=g.current_user, payload=_json_body())
    return _deal_response(deal)


@deals_bp.post("/<int:deal_id>/archive")
@require_auth
@handle_domain_errors("Failed to archive deal")
def archive_deal_route(deal_id: int):
    deal = deal_service.archive_deal(deal_id, g.current_user)
    return _deal_response(deal)


@deals_bp.get("/<int:deal_id>/history")
@require_auth
@handle_domain_errors("Failed to load deal history")
def history_route(deal_id: int):
    """Audit entries and stock movements, newest first; each row has a "kind"."""
    return jsonify({"history": deal_service.get_history(deal_id, g.current_user)}), 200


@deals_bp.get("/<int:deal_id>/logs")
@require_auth
@handle_domain_errors("Failed to load deal logs")
def logs_route(deal_id: int):
    return jsonify({"logs": deal_service.get_logs(deal_id, g.current_user)}), 200


# =============================================================================
# COMMENTS
# =============================================================================

@deals_bp.get("/<int:deal_id>/comments")
@require_auth
@handle_domain_errors("Failed to list comments")
def list_comments_route(deal_id: int):
    comments = deal_service.list_comments(deal_id, g.current_user)
    return jsonify({"comments": [c.to_dict() for c in comments]}), 200


@deals_bp.post("/<int:deal_id>/comments")
@require_auth
@handle_domain_errors("Failed to add comment")
def add_comment_route(deal_id: int):
    comment = deal_service.add_comment(deal_id, g.current_user, _json_body().get("text"))
    return jsonify({"comment": comment.to_dict()}), 201


# =============================================================================
# ITEMS
# =============================================================================

@deals_bp.get("/<int:deal_id>/items")
@require_auth
@handle_domain_errors("Failed to list deal items")
def list_items_route(deal_id: int):
    items = deal_service.list_items(deal_id, g.current_user)
    return jsonify({"items": [i.to_dict() for i in items]}), 200


@deals_bp.post("/<int:deal_id>/items")
@require_auth
@require_permission("manage_deals")
@handle_domain_errors("Failed to add deal item")
def add_item_route(deal_id: int):
    data = _json_body()
    item = deal_service.add_item(
        deal_id=deal_id,
        user=g.current_user,
        product_id=data.get("product_id"),
        request_comment=data.get("request_comment"),
    )
    return jsonify({"item": item.to_dict()}), 201


@deals_bp.delete("/<int:deal_id>/items/<int:item_id>")
@require_auth
@require_permission("manage_deals")
@handle_domain_errors("Failed to remove deal item")
def remove_item_route(deal_id: int, item_id: int):
    deal = deal_service.remove_item(deal_id=deal_id, item_id=item_id, user=g.current_user)
    return _deal_response(deal)


# =============================================================================
# WORKFLOW
# =============================================================================

@deals_bp.post("/<int:deal_id>/start")
@require_auth
@handle_domain_errors("Failed to start deal")
def start_route(deal_id: int):
    """NEW -> IN_PROGRESS (manage_deals)"""
    return _deal_response(deal_service.start_work(deal_id, g.current_user))


@deals_bp.post("/<int:deal_id>/request-stock")
@require_auth
@handle_domain_errors("Failed to request stock confirmation")
def request_stock_route(deal_id: int):
    """IN_PROGRESS -> WAITING_STOCK_CONFIRMATION (manage_deals, needs items)"""
    return _deal_response(deal_service.request_stock_confirmation(deal_id, g.current_user))


@deals_bp.post("/<int:deal_id>/stock-confirm")
@require_auth
@handle_domain_errors("Failed to confirm stock")
def stock_confirm_route(deal_id: int):
    """
    WAITING_STOCK_CONFIRMATION -> STOCK_CONFIRMED (stock_confirm)

    Request body:
    {
        "items": [{"deal_item_id": 1, "warehouse_comment": "in stock"}]
    }
    """
    deal = deal_service.submit_warehouse_response(deal_id, g.current_user, _json_body().get("items"))
    return _deal_response(deal)


@deals_bp.post("/<int:deal_id>/set-quantities")
@require_auth
@handle_domain_errors("Failed to set quantities")
def set_quantities_route(deal_id: int):
    """
    Price the deal (STOCK_CONFIRMED only, deal manager or admin). Status unchanged.

    Request body:
    {
        "items": [{"deal_item_id": 1, "requested_qty": 10, "price_cents": 1000}],
        "discount_cents": 0,
        "payment_type": "FULL" | "PARTIAL" | "DEBT",
        "due_date": "2026-01-31",       (required for PARTIAL and DEBT)
        "terms": "..."
    }
    """
    data = _json_body()
    deal = deal_service.set_item_quantities(
        deal_id,
        g.current_user,
        items=data.get("items"),
        discount_cents=data.get("discount_cents", 0),
        payment_type=data.get("payment_type") or "FULL",
        due_date=coerce_date(data.get("due_date"), "due_date"),
        terms=data.get("terms"),
    )
    return _deal_response(deal)


@deals_bp.post("/<int:deal_id>/finance-approve")
@require_auth
@handle_domain_errors("Failed to approve deal (finance)")
def finance_approve_route(deal_id: int):
    """STOCK_CONFIRMED -> FINANCE_APPROVED (finance_approve, every item priced)"""
    return _deal_response(deal_service.approve_finance(deal_id, g.current_user))


@deals_bp.post("/<int:deal_id>/finance-reject")
@require_auth
@handle_domain_errors("Failed to reject deal (finance)")
def finance_reject_route(deal_id: int):
    """STOCK_CONFIRMED -> REJECTED (finance_approve, {"reason": "..."})"""
    deal = deal_service.reject_finance(deal_id, g.current_user, _json_body().get("reason"))
    return _deal_response(deal)


@deals_bp.post("/<int:deal_id>/admin-approve")
@require_auth
@handle_domain_errors("Failed to approve deal (admin)")
def admin_approve_route(deal_id: int):
    """FINANCE_APPROVED -> ADMIN_APPROVED (admin_approve)"""
    return _deal_response(deal_service.approve_admin(deal_id, g.current_user))


@deals_bp.post("/<int:deal_id>/ready-for-shipment")
@require_auth
@handle_domain_errors("Failed to mark deal ready for shipment")
def ready_for_shipment_route(deal_id: int):
    """ADMIN_APPROVED -> READY_FOR_SHIPMENT (admin_approve)"""
    return _deal_response(deal_service.mark_ready_for_shipment(deal_id, g.current_user))


@deals_bp.post("/<int:deal_id>/shipment")
@require_auth
@handle_domain_errors("Failed to submit shipment")
def submit_shipment_route(deal_id: int):
    """
    READY_FOR_SHIPMENT -> SHIPPED (confirm_shipment)

    Posts one OUT movement per item, capped to stock on hand.

    Request body:
    {
        "vehicle_type": "Van",
        "vehicle_number": "AB123",
        "driver_name": "...",
        "departure_time": "2026-01-31T09:00:00Z",
        "delivery_note_number": "DN-001",
        "shipment_comment": "..."      (optional)
    }
    """
    deal = shipment_service.submit_shipment(deal_id, g.current_user, _json_body())
    return _deal_response(deal)


@deals_bp.get("/<int:deal_id>/shipment")
@require_auth
@handle_domain_errors("Failed to get shipment")
def get_shipment_route(deal_id: int):
    shipment = shipment_service.get_shipment(deal_id, g.current_user)
    return jsonify({"shipment": shipment.to_dict()}), 200


@deals_bp.post("/<int:deal_id>/shipment-hold")
@require_auth
@handle_domain_errors("Failed to hold shipment")
def shipment_hold_route(deal_id: int):
    """READY_FOR_SHIPMENT -> SHIPMENT_ON_HOLD (confirm_shipment, {"reason": "..."})"""
    deal = deal_service.hold_shipment(deal_id, g.current_user, _json_body().get("reason"))
    return _deal_response(deal)


@deals_bp.post("/<int:deal_id>/shipment-release")
@require_auth
@handle_domain_errors("Failed to release shipment hold")
def shipment_release_route(deal_id: int):
    """SHIPMENT_ON_HOLD -> READY_FOR_SHIPMENT (confirm_shipment)"""
    return _deal_response(deal_service.release_shipment_hold(deal_id, g.current_user))


@deals_bp.post("/<int:deal_id>/close")
@require_auth
@handle_domain_errors("Failed to close deal")
def close_route(deal_id: int):
    """SHIPPED -> CLOSED (close_deals)"""
    return _deal_response(deal_service.close_deal(deal_id, g.current_user))


@deals_bp.post("/<int:deal_id>/cancel")
@require_auth
@handle_domain_errors("Failed to cancel deal")
def cancel_route(deal_id: int):
    """Any open status before SHIPPED -> CANCELED (manage_deals, optional reason)"""
    deal = deal_service.cancel_deal(deal_id, g.current_user, _json_body().get("reason"))
    return _deal_response(deal)


@deals_bp.post("/<int:deal_id>/rework")
@require_auth
@handle_domain_errors("Failed to rework deal")
def rework_route(deal_id: int):
    """REJECTED -> IN_PROGRESS (manage_deals)"""
    return _deal_response(deal_service.rework_deal(deal_id, g.current_user))

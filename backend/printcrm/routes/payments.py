# backend/printcrm/routes/payments.py
"""
Payment Ledger API Routes

DESIGN:
- Record payments against a deal (partial payments and overpayment allowed)
- Reverse a payment with a REVERSAL entry, never by editing it
- Payment summary: due, paid, remaining, overpaid
- Debts view across visible deals

SECURITY:
- manage_deals or finance_approve to record a payment
- finance_approve to reverse a payment
- Deals outside the caller's visibility answer 404
"""

from flask import Blueprint, request, jsonify, g

from ..services import payment_service
from ..validation import ValidationError, coerce_date, coerce_datetime, coerce_int, clean_text
from ..decorators import require_auth, require_permission, require_any_permission, handle_domain_errors


payments_bp = Blueprint("payments", __name__, url_prefix="/api")


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON payload")
    return data


@payments_bp.get("/deals/<int:deal_id>/payments")
@require_auth
@handle_domain_errors("Failed to list payments")
def list_payments_route(deal_id: int):
    payments = payment_service.list_payments(deal_id, g.current_user)
    return jsonify({"payments": [p.to_dict() for p in payments]}), 200


@payments_bp.post("/deals/<int:deal_id>/payments")
@require_auth
@require_any_permission("manage_deals", "finance_approve")
@handle_domain_errors("Failed to record payment")
def record_payment_route(deal_id: int):
    """
    Request body:
    {
        "amount_cents": 40000,
        "paid_at": "2026-01-31T10:00:00Z",   (optional, defaults to now)
        "method": "bank transfer",            (optional)
        "note": "..."                         (optional)
    }

    Returns:
        201: payment and the updated summary
        400: non-positive amount, canceled/rejected deal
    """
    data = _json_body()
    if data.get("amount_cents") is None:
        raise ValidationError("amount_cents is required")

    payment = payment_service.record_payment(
        deal_id=deal_id,
        user=g.current_user,
        amount_cents=coerce_int(data["amount_cents"], "amount_cents"),
        paid_at=coerce_datetime(data.get("paid_at"), "paid_at"),
        method=clean_text(data.get("method"), "method", max_length=32),
        note=clean_text(data.get("note"), "note"),
    )
    summary = payment_service.get_payment_summary(deal_id, g.current_user)
    return jsonify({"payment": payment.to_dict(), "summary": summary}), 201


@payments_bp.get("/deals/<int:deal_id>/payments/summary")
@require_auth
@handle_domain_errors("Failed to get payment summary")
def payment_summary_route(deal_id: int):
    return jsonify(payment_service.get_payment_summary(deal_id, g.current_user)), 200


@payments_bp.patch("/deals/<int:deal_id>/payment-terms")
@require_auth
@require_permission("manage_deals")
@handle_domain_errors("Failed to update payment terms")
def payment_terms_route(deal_id: int):
    """
    Change payment_type, due_date and/or terms. Keys sent as null clear
    due_date or terms; paid amounts cannot be set here.
    """
    data = _json_body()
    fields = {k for k in ("payment_type", "due_date", "terms") if k in data}
    unknown = set(data) - {"payment_type", "due_date", "terms"}
    if unknown:
        raise ValidationError(f"Field not allowed: {', '.join(sorted(unknown))}")

    deal = payment_service.update_payment_terms(
        deal_id=deal_id,
        user=g.current_user,
        payment_type=data.get("payment_type"),
        due_date=coerce_date(data.get("due_date"), "due_date"),
        terms=clean_text(data.get("terms"), "terms"),
        fields=fields,
    )
    return jsonify({"deal": deal.to_dict()}), 200


@payments_bp.post("/payments/<int:payment_id>/reverse")
@require_auth
@require_permission("finance_approve")
@handle_domain_errors("Failed to reverse payment")
def reverse_payment_route(payment_id: int):
    """
    Request body: {"reason": "..."}

    Returns:
        201: the REVERSAL entry
        400: already reversed, or a reversal entry
    """
    reversal = payment_service.reverse_payment(
        payment_id=payment_id,
        user=g.current_user,
        reason=_json_body().get("reason"),
    )
    return jsonify({"reversal": reversal.to_dict()}), 201


@payments_bp.get("/payments/debts")
@require_auth
@handle_domain_errors("Failed to list debts")
def debts_route():
    """Deals still owing money. Query param: client_id (optional)."""
    return jsonify(payment_service.list_debts(
        g.current_user,
        client_id=request.args.get("client_id", type=int),
    )), 200

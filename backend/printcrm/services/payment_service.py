"""
Payment Ledger Service

WHY: Track what each client has paid against each deal, with a history that
can be audited and corrected without editing the past.

DESIGN PRINCIPLES:
- Payments are append-only rows; a correction is a REVERSAL row carrying the
  negated amount of the payment it cancels
- Deal.paid_amount_cents is a cache of SUM(Payment.amount_cents) and is only
  written here, right after a ledger append
- payment_status is always re-derived from (paid, due), never set by callers
- Overpayment is accepted and reported as overpaid_cents
"""

from __future__ import annotations

from datetime import date

from sqlalchemy import func

from ..extensions import db
from ..models import Deal, Payment, User
from ..models.deals import PAYMENT_TYPES
from ..models.payments import PAYMENT_KIND_PAYMENT, PAYMENT_KIND_REVERSAL
from ..validation import NotFoundError, ValidationError, MAX_PRICE_CENTS
from printcrm.time_utils import utcnow, to_iso_date
from . import audit_service
from . import deal_workflow
from .concurrency import lock_for_update, run_in_transaction


class PaymentError(ValueError):
    """Raised for payment operation errors."""
    pass


# =============================================================================
# PAYMENT STATUS (CONSTANTS)
# =============================================================================

PAYMENT_STATUS_UNPAID = "UNPAID"
PAYMENT_STATUS_PARTIAL = "PARTIAL"
PAYMENT_STATUS_PAID = "PAID"

# Deals in these statuses take no new payments
NON_PAYABLE_STATUSES = frozenset({deal_workflow.CANCELED, deal_workflow.REJECTED})


def derive_payment_status(paid_cents: int, due_cents: int) -> str:
    """
    PAYMENT STATUS:
    - PAID: paid >= due and due > 0, or nothing due and something paid
    - PARTIAL: 0 < paid < due
    - UNPAID: otherwise
    """
    if paid_cents > 0 and paid_cents >= due_cents:
        return PAYMENT_STATUS_PAID
    if 0 < paid_cents < due_cents:
        return PAYMENT_STATUS_PARTIAL
    return PAYMENT_STATUS_UNPAID


def ledger_paid_amount(deal_id: int) -> int:
    total = db.session.query(
        func.coalesce(func.sum(Payment.amount_cents), 0)
    ).filter(Payment.deal_id == deal_id).scalar()
    return int(total or 0)


def refresh_payment_state(deal: Deal) -> None:
    """Re-derive paid amount and status from the ledger. No commit."""
    db.session.flush()
    deal.paid_amount_cents = ledger_paid_amount(deal.id)
    deal.payment_status = derive_payment_status(deal.paid_amount_cents, deal.amount_cents)


def _payment_snapshot(deal: Deal) -> dict:
    return {
        "paid_amount_cents": deal.paid_amount_cents,
        "payment_status": deal.payment_status,
    }


# =============================================================================
# LEDGER APPENDS
# =============================================================================

def record_payment(
    *,
    deal_id: int,
    user: User,
    amount_cents: int,
    paid_at=None,
    method: str | None = None,
    note: str | None = None,
) -> Payment:
    """
    Append a payment to a deal's ledger.

    Raises:
        PaymentError: non-positive amount, or a canceled/rejected deal
        NotFoundError: unknown, invisible or archived deal
    """
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        raise PaymentError("Payment amount must be a positive integer (cents)")
    if amount_cents > MAX_PRICE_CENTS:
        raise PaymentError(f"Payment amount cannot exceed {MAX_PRICE_CENTS}")

    def _op():
        deal = deal_workflow.get_deal_for_update(deal_id, user)
        if deal.status in NON_PAYABLE_STATUSES:
            raise PaymentError(f"Cannot record a payment on a {deal.status} deal")

        before = _payment_snapshot(deal)
        payment = Payment(
            deal_id=deal.id,
            client_id=deal.client_id,
            kind=PAYMENT_KIND_PAYMENT,
            amount_cents=amount_cents,
            paid_at=paid_at or utcnow(),
            method=method,
            note=note,
            created_by=user.id,
            created_at=utcnow(),
        )
        db.session.add(payment)
        refresh_payment_state(deal)

        audit_service.record(
            user_id=user.id,
            action="PAYMENT_CREATE",
            entity_type=audit_service.ENTITY_DEAL,
            entity_id=deal.id,
            before=before,
            after={"payment_id": payment.id, "amount_cents": amount_cents, **_payment_snapshot(deal)},
        )
        db.session.commit()
        return payment

    return run_in_transaction(_op)


def reverse_payment(*, payment_id: int, user: User, reason: str) -> Payment:
    """
    Cancel a payment by appending a REVERSAL row with the negated amount.

    A payment can be reversed once; reversal rows cannot be reversed.
    """
    if not isinstance(reason, str) or not reason.strip():
        raise ValidationError("reason is required")

    def _op():
        original = lock_for_update(db.session.query(Payment).filter(Payment.id == payment_id)).first()
        if original is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        # Visibility of the payment follows its deal
        deal = deal_workflow.get_deal_for_update(original.deal_id, user)

        if original.kind == PAYMENT_KIND_REVERSAL:
            raise PaymentError("A reversal cannot be reversed")
        if original.is_reversed:
            raise PaymentError(f"Payment {payment_id} has already been reversed")

        before = _payment_snapshot(deal)
        reversal = Payment(
            deal_id=original.deal_id,
            client_id=original.client_id,
            kind=PAYMENT_KIND_REVERSAL,
            amount_cents=-original.amount_cents,
            reverses_payment_id=original.id,
            paid_at=utcnow(),
            method=original.method,
            note=reason.strip(),
            created_by=user.id,
            created_at=utcnow(),
        )
        db.session.add(reversal)
        refresh_payment_state(deal)

        audit_service.record(
            user_id=user.id,
            action="PAYMENT_REVERSE",
            entity_type=audit_service.ENTITY_DEAL,
            entity_id=deal.id,
            before=before,
            after={
                "payment_id": original.id,
                "reversal_id": reversal.id,
                "amount_cents": reversal.amount_cents,
                "reason": reversal.note,
                **_payment_snapshot(deal),
            },
        )
        db.session.commit()
        return reversal

    return run_in_transaction(_op)


def update_payment_terms(
    *,
    deal_id: int,
    user: User,
    payment_type: str | None = None,
    due_date: date | None = None,
    terms: str | None = None,
    fields: set[str] | None = None,
) -> Deal:
    """
    Change payment_type, due_date and terms.

    fields names the keys the caller actually sent, so an explicit null can
    clear due_date or terms. paid_amount_cents is never written here.
    """
    fields = fields if fields is not None else {
        k for k, v in (("payment_type", payment_type), ("due_date", due_date), ("terms", terms)) if v is not None
    }
    if not fields:
        raise ValidationError("No payment terms to update")

    def _op():
        deal = deal_workflow.get_deal_for_update(deal_id, user)
        if deal.status in deal_workflow.TERMINAL_STATUSES:
            raise ValidationError(f"Cannot change payment terms of a {deal.status} deal")

        new_type = payment_type if "payment_type" in fields else deal.payment_type
        new_due = due_date if "due_date" in fields else deal.due_date
        if new_type not in PAYMENT_TYPES:
            raise ValidationError(f"payment_type must be one of: {', '.join(PAYMENT_TYPES)}")
        if new_type in ("PARTIAL", "DEBT") and new_due is None:
            raise ValidationError("due_date is required for PARTIAL and DEBT payment types")

        before = {
            "payment_type": deal.payment_type,
            "due_date": deal.due_date,
            "terms": deal.terms,
        }
        deal.payment_type = new_type
        deal.due_date = new_due
        if "terms" in fields:
            deal.terms = terms

        audit_service.record(
            user_id=user.id,
            action="UPDATE",
            entity_type=audit_service.ENTITY_DEAL,
            entity_id=deal.id,
            before=before,
            after={"payment_type": deal.payment_type, "due_date": deal.due_date, "terms": deal.terms},
        )
        db.session.commit()
        return deal

    return run_in_transaction(_op)


# =============================================================================
# QUERIES
# =============================================================================

def list_payments(deal_id: int, user: User) -> list[Payment]:
    deal = deal_workflow.get_visible_deal(deal_id, user)
    return (
        db.session.query(Payment)
        .filter(Payment.deal_id == deal.id)
        .order_by(Payment.paid_at.desc(), Payment.id.desc())
        .all()
    )


def get_payment_summary(deal_id: int, user: User) -> dict:
    """
    Returns:
        - amount_due_cents: what the deal costs after discount
        - paid_cents: ledger total
        - remaining_cents: still owed (never negative)
        - overpaid_cents: paid beyond what is due
        - payment_status: UNPAID, PARTIAL, PAID
        - payments: ledger rows, newest first
    """
    deal = deal_workflow.get_visible_deal(deal_id, user)
    payments = list_payments(deal_id, user)
    paid = deal.paid_amount_cents
    due = deal.amount_cents
    return {
        "deal_id": deal.id,
        "payment_type": deal.payment_type,
        "amount_due_cents": due,
        "paid_cents": paid,
        "remaining_cents": max(0, due - paid),
        "overpaid_cents": max(0, paid - due),
        "payment_status": deal.payment_status,
        "due_date": to_iso_date(deal.due_date),
        "payments": [p.to_dict() for p in payments],
    }


def list_debts(user: User, *, client_id: int | None = None) -> dict:
    """Deals still owing money (UNPAID or PARTIAL), excluding canceled and rejected ones."""
    q = deal_workflow.scoped_deals(user).filter(
        Deal.payment_status.in_((PAYMENT_STATUS_UNPAID, PAYMENT_STATUS_PARTIAL)),
        Deal.status.notin_(NON_PAYABLE_STATUSES),
        Deal.amount_cents > 0,
    )
    if client_id is not None:
        q = q.filter(Deal.client_id == client_id)
    deals = q.order_by(Deal.due_date.is_(None), Deal.due_date.asc(), Deal.id.asc()).all()

    today = utcnow().date()
    rows = []
    for deal in deals:
        data = deal.to_dict(include_items=False)
        data["debt_cents"] = deal.amount_cents - deal.paid_amount_cents
        data["is_overdue"] = deal.due_date is not None and deal.due_date < today
        rows.append(data)

    return {
        "deals": rows,
        "count": len(rows),
        "total_due_cents": sum(d.amount_cents for d in deals),
        "total_paid_cents": sum(d.paid_amount_cents for d in deals),
        "total_debt_cents": sum(r["debt_cents"] for r in rows),
    }


def client_open_debt(client_ids: list[int]) -> dict[int, int]:
    """Outstanding debt per client across its open (non-archived, non-terminal) deals."""
    if not client_ids:
        return {}
    rows = (
        db.session.query(Deal.client_id, Deal.amount_cents, Deal.paid_amount_cents)
        .filter(
            Deal.client_id.in_(client_ids),
            Deal.is_archived.is_(False),
            Deal.status.notin_((deal_workflow.CANCELED, deal_workflow.REJECTED, deal_workflow.CLOSED)),
        )
        .all()
    )
    debt: dict[int, int] = {cid: 0 for cid in client_ids}
    for client_id, amount, paid in rows:
        debt[client_id] += max(0, amount - paid)
    return debt


def verify_payment_consistency(deal_id: int | None = None) -> list[dict]:
    """
    Re-derive paid amount and status from the ledger and compare them with
    the cached values on each deal.
    """
    q = db.session.query(Deal)
    if deal_id is not None:
        q = q.filter(Deal.id == deal_id)

    report = []
    for deal in q.order_by(Deal.id.asc()).all():
        ledger_paid = ledger_paid_amount(deal.id)
        ledger_status = derive_payment_status(ledger_paid, deal.amount_cents)
        report.append({
            "deal_id": deal.id,
            "cached_paid_cents": deal.paid_amount_cents,
            "ledger_paid_cents": ledger_paid,
            "cached_status": deal.payment_status,
            "ledger_status": ledger_status,
            "consistent": deal.paid_amount_cents == ledger_paid and deal.payment_status == ledger_status,
        })

    if deal_id is not None and not report:
        raise NotFoundError(f"Deal {deal_id} not found")
    return report

"""
Payment ledger tests.

Verifies:
- payment_status is derived from (paid, due) and never drifts from the ledger
- Partial payments accumulate; overpayment is accepted and reported
- A reversal appends a negated row, once per payment
- Canceled and rejected deals take no payments
- Payment terms validation (PARTIAL/DEBT need a due date)
- Debts are scoped to the caller's visible deals
"""

from datetime import date

import pytest

from printcrm.extensions import db
from printcrm.models import AuditLog, Deal, Payment
from printcrm.models.payments import PAYMENT_KIND_REVERSAL
from printcrm.services import payment_service, deal_workflow as wf
from printcrm.services.payment_service import PaymentError, derive_payment_status
from printcrm.validation import NotFoundError, ValidationError


pytestmark = pytest.mark.payments


@pytest.fixture
def priced_deal(deal_at):
    """FINANCE_APPROVED deal worth 100000 cents (100 x 1000)."""
    return deal_at(wf.FINANCE_APPROVED, quantities=(100,), price_cents=1000)


# ============================================================================
# STATUS DERIVATION
# ============================================================================

class TestDerivePaymentStatus:

    @pytest.mark.parametrize("paid,due,expected", [
        (0, 0, "UNPAID"),
        (0, 100, "UNPAID"),
        (40, 100, "PARTIAL"),
        (100, 100, "PAID"),
        (150, 100, "PAID"),
        (10, 0, "PAID"),
    ])
    def test_derivation(self, paid, due, expected):
        assert derive_payment_status(paid, due) == expected


# ============================================================================
# RECORDING PAYMENTS
# ============================================================================

class TestRecordPayment:

    def test_two_partial_payments_settle_the_deal(self, priced_deal, users):
        accountant = users["ACCOUNTANT"]
        assert priced_deal.amount_cents == 100000

        payment_service.record_payment(deal_id=priced_deal.id, user=accountant, amount_cents=40000)
        deal = db.session.get(Deal, priced_deal.id)
        assert deal.paid_amount_cents == 40000
        assert deal.payment_status == "PARTIAL"

        payment_service.record_payment(deal_id=priced_deal.id, user=accountant, amount_cents=60000, method="bank")
        deal = db.session.get(Deal, priced_deal.id)
        assert deal.paid_amount_cents == 100000
        assert deal.payment_status == "PAID"

        summary = payment_service.get_payment_summary(priced_deal.id, accountant)
        assert summary["remaining_cents"] == 0
        assert summary["overpaid_cents"] == 0
        assert len(summary["payments"]) == 2

    def test_overpayment_is_accepted(self, priced_deal, users):
        payment_service.record_payment(deal_id=priced_deal.id, user=users["MANAGER"], amount_cents=120000)

        summary = payment_service.get_payment_summary(priced_deal.id, users["MANAGER"])
        assert summary["payment_status"] == "PAID"
        assert summary["overpaid_cents"] == 20000
        assert summary["remaining_cents"] == 0

    @pytest.mark.parametrize("amount", [0, -100, 10.5, True, "100"])
    def test_amount_must_be_positive_integer(self, priced_deal, users, amount):
        with pytest.raises(PaymentError):
            payment_service.record_payment(deal_id=priced_deal.id, user=users["ACCOUNTANT"], amount_cents=amount)
        assert db.session.query(Payment).count() == 0

    @pytest.mark.parametrize("status", [wf.CANCELED, wf.REJECTED])
    def test_non_payable_statuses(self, deal_at, users, status):
        deal = deal_at(status)
        with pytest.raises(PaymentError):
            payment_service.record_payment(deal_id=deal.id, user=users["ADMIN"], amount_cents=100)
        assert db.session.get(Deal, deal.id).paid_amount_cents == 0

    def test_invisible_deal_is_not_found(self, priced_deal, other_manager):
        with pytest.raises(NotFoundError):
            payment_service.record_payment(deal_id=priced_deal.id, user=other_manager, amount_cents=100)

    def test_payment_is_audited(self, priced_deal, users):
        payment = payment_service.record_payment(deal_id=priced_deal.id, user=users["ACCOUNTANT"], amount_cents=500)
        entry = db.session.query(AuditLog).filter_by(action="PAYMENT_CREATE", entity_id=priced_deal.id).one()
        assert entry.after["payment_id"] == payment.id
        assert entry.before["paid_amount_cents"] == 0
        assert entry.after["paid_amount_cents"] == 500


# ============================================================================
# REVERSALS
# ============================================================================

class TestReversePayment:

    def test_reversal_appends_negated_row(self, priced_deal, users):
        accountant = users["ACCOUNTANT"]
        payment = payment_service.record_payment(deal_id=priced_deal.id, user=accountant, amount_cents=40000)

        reversal = payment_service.reverse_payment(payment_id=payment.id, user=accountant, reason="Bounced")

        assert reversal.kind == PAYMENT_KIND_REVERSAL
        assert reversal.amount_cents == -40000
        assert reversal.reverses_payment_id == payment.id
        assert db.session.get(Payment, payment.id).amount_cents == 40000

        deal = db.session.get(Deal, priced_deal.id)
        assert deal.paid_amount_cents == 0
        assert deal.payment_status == "UNPAID"

    def test_payment_reversed_only_once(self, priced_deal, users):
        accountant = users["ACCOUNTANT"]
        payment = payment_service.record_payment(deal_id=priced_deal.id, user=accountant, amount_cents=100)
        payment_service.reverse_payment(payment_id=payment.id, user=accountant, reason="Duplicate")

        with pytest.raises(PaymentError):
            payment_service.reverse_payment(payment_id=payment.id, user=accountant, reason="Again")
        assert db.session.get(Deal, priced_deal.id).paid_amount_cents == 0

    def test_reversal_cannot_be_reversed(self, priced_deal, users):
        accountant = users["ACCOUNTANT"]
        payment = payment_service.record_payment(deal_id=priced_deal.id, user=accountant, amount_cents=100)
        reversal = payment_service.reverse_payment(payment_id=payment.id, user=accountant, reason="Duplicate")

        with pytest.raises(PaymentError):
            payment_service.reverse_payment(payment_id=reversal.id, user=accountant, reason="Undo")

    def test_reason_required(self, priced_deal, users):
        payment = payment_service.record_payment(deal_id=priced_deal.id, user=users["ACCOUNTANT"], amount_cents=100)
        with pytest.raises(ValidationError):
            payment_service.reverse_payment(payment_id=payment.id, user=users["ACCOUNTANT"], reason="  ")

    def test_unknown_payment(self, users):
        with pytest.raises(NotFoundError):
            payment_service.reverse_payment(payment_id=999, user=users["ACCOUNTANT"], reason="x")


# ============================================================================
# PAYMENT TERMS
# ============================================================================

class TestPaymentTerms:

    def test_debt_requires_due_date(self, priced_deal, users):
        with pytest.raises(ValidationError):
            payment_service.update_payment_terms(deal_id=priced_deal.id, user=users["MANAGER"], payment_type="DEBT")
        assert db.session.get(Deal, priced_deal.id).payment_type == "FULL"

    def test_debt_with_due_date(self, priced_deal, users):
        deal = payment_service.update_payment_terms(
            deal_id=priced_deal.id,
            user=users["MANAGER"],
            payment_type="DEBT",
            due_date=date(2026, 12, 31),
            terms="Net 30",
        )
        assert deal.payment_type == "DEBT"
        assert deal.due_date == date(2026, 12, 31)
        assert deal.terms == "Net 30"
        assert deal.paid_amount_cents == 0

    def test_unknown_payment_type(self, priced_deal, users):
        with pytest.raises(ValidationError):
            payment_service.update_payment_terms(deal_id=priced_deal.id, user=users["MANAGER"], payment_type="BARTER")

    def test_explicit_null_clears_terms(self, priced_deal, users):
        payment_service.update_payment_terms(deal_id=priced_deal.id, user=users["MANAGER"], terms="Net 30")
        deal = payment_service.update_payment_terms(
            deal_id=priced_deal.id, user=users["MANAGER"], terms=None, fields={"terms"},
        )
        assert deal.terms is None

    def test_terminal_deal_terms_are_frozen(self, deal_at, users):
        deal = deal_at(wf.CANCELED)
        with pytest.raises(ValidationError):
            payment_service.update_payment_terms(deal_id=deal.id, user=users["ADMIN"], terms="late")


# ============================================================================
# DEBTS AND CONSISTENCY
# ============================================================================

class TestDebtsAndConsistency:

    def test_debts_list_open_balances(self, priced_deal, users):
        payment_service.record_payment(deal_id=priced_deal.id, user=users["ACCOUNTANT"], amount_cents=30000)

        debts = payment_service.list_debts(users["ACCOUNTANT"])
        assert debts["count"] == 1
        assert debts["deals"][0]["id"] == priced_deal.id
        assert debts["deals"][0]["debt_cents"] == 70000
        assert debts["total_debt_cents"] == 70000

    def test_paid_deals_leave_the_debt_list(self, priced_deal, users):
        payment_service.record_payment(deal_id=priced_deal.id, user=users["ACCOUNTANT"], amount_cents=100000)
        assert payment_service.list_debts(users["ACCOUNTANT"])["count"] == 0

    def test_debts_are_scoped(self, priced_deal, users, other_manager):
        assert payment_service.list_debts(users["MANAGER"])["count"] == 1
        assert payment_service.list_debts(other_manager)["count"] == 0

    def test_overdue_flag(self, priced_deal, users):
        payment_service.update_payment_terms(
            deal_id=priced_deal.id, user=users["MANAGER"], payment_type="DEBT", due_date=date(2000, 1, 1),
        )
        row = payment_service.list_debts(users["ADMIN"])["deals"][0]
        assert row["is_overdue"] is True

    def test_cache_matches_ledger(self, priced_deal, users):
        accountant = users["ACCOUNTANT"]
        payment = payment_service.record_payment(deal_id=priced_deal.id, user=accountant, amount_cents=40000)
        payment_service.record_payment(deal_id=priced_deal.id, user=accountant, amount_cents=10000)
        payment_service.reverse_payment(payment_id=payment.id, user=accountant, reason="Bounced")

        (row,) = payment_service.verify_payment_consistency(priced_deal.id)
        assert row["consistent"] is True
        assert row["ledger_paid_cents"] == 10000

    def test_drift_is_reported(self, priced_deal, users):
        payment_service.record_payment(deal_id=priced_deal.id, user=users["ACCOUNTANT"], amount_cents=40000)
        deal = db.session.get(Deal, priced_deal.id)
        deal.paid_amount_cents = 1
        db.session.commit()

        (row,) = payment_service.verify_payment_consistency(priced_deal.id)
        assert row["consistent"] is False
        assert row["ledger_paid_cents"] == 40000

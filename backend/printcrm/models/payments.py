from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


PAYMENT_KIND_PAYMENT = "PAYMENT"
PAYMENT_KIND_REVERSAL = "REVERSAL"


class Payment(db.Model):
    """
    Append-only payment ledger row.

    A correction is a REVERSAL row carrying the negated amount of the payment
    it reverses. Rows are never updated or deleted, so the sum of amount_cents
    per deal is always the deal's paid amount.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.CheckConstraint(
            "(kind = 'PAYMENT' AND amount_cents > 0) OR (kind = 'REVERSAL' AND amount_cents < 0)",
            name="amount_sign_matches_kind",
        ),
        db.Index("ix_payments_deal_created", "deal_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    deal_id = db.Column(db.Integer, db.ForeignKey("deals.id"), nullable=False, index=True)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id"), nullable=False, index=True)

    kind = db.Column(db.String(16), nullable=False, default=PAYMENT_KIND_PAYMENT)
    amount_cents = db.Column(db.Integer, nullable=False)

    # Set on REVERSAL rows only; unique so a payment is reversed at most once
    reverses_payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=True, unique=True)

    paid_at = db.Column(db.DateTime(timezone=True), nullable=False)
    method = db.Column(db.String(32), nullable=True)
    note = db.Column(db.Text, nullable=True)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    deal = db.relationship("Deal", backref=db.backref("payments", lazy="dynamic"))
    creator = db.relationship("User", foreign_keys=[created_by])
    reversed_payment = db.relationship(
        "Payment",
        remote_side=[id],
        backref=db.backref("reversal", uselist=False),
    )

    @property
    def is_reversed(self) -> bool:
        return self.reversal is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "deal_id": self.deal_id,
            "client_id": self.client_id,
            "kind": self.kind,
            "amount_cents": self.amount_cents,
            "reverses_payment_id": self.reverses_payment_id,
            "is_reversed": self.is_reversed if self.kind == PAYMENT_KIND_PAYMENT else False,
            "paid_at": to_utc_z(self.paid_at),
            "method": self.method,
            "note": self.note,
            "created_by": self.created_by,
            "creator": self.creator.to_ref() if self.creator else None,
            "created_at": to_utc_z(self.created_at),
        }

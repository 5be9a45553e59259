from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, to_iso_date


PAYMENT_TYPES = ("FULL", "PARTIAL", "DEBT")


class Deal(db.Model):
    """
    Sales deal moving through the workflow state machine.

    AMOUNTS:
    - subtotal_cents: sum(requested_qty * price_cents) over priced items
    - discount_cents: flat discount set by the manager
    - amount_cents: subtotal - discount, the amount due (never negative)
    - paid_amount_cents: cached sum of the deal's Payment ledger rows

    status is changed only through deal_workflow.require_transition.
    paid_amount_cents is changed only through payment_service.
    """
    __tablename__ = "deals"
    __table_args__ = (
        db.CheckConstraint("amount_cents >= 0", name="amount_non_negative"),
        db.CheckConstraint("discount_cents >= 0", name="discount_non_negative"),
        db.Index("ix_deals_status_archived", "status", "is_archived"),
        db.Index("ix_deals_manager_status", "manager_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    status = db.Column(db.String(32), nullable=False, default="NEW", index=True)

    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    amount_cents = db.Column(db.Integer, nullable=False, default=0)

    client_id = db.Column(db.Integer, db.ForeignKey("clients.id"), nullable=False, index=True)
    manager_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    contract_id = db.Column(db.Integer, db.ForeignKey("contracts.id"), nullable=True, index=True)

    payment_type = db.Column(db.String(16), nullable=False, default="FULL")
    paid_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    payment_status = db.Column(db.String(16), nullable=False, default="UNPAID", index=True)
    due_date = db.Column(db.Date, nullable=True)
    terms = db.Column(db.Text, nullable=True)

    is_archived = db.Column(db.Boolean, nullable=False, default=False)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    client = db.relationship("Client", backref=db.backref("deals", lazy="dynamic"))
    manager = db.relationship("User", foreign_keys=[manager_id])
    contract = db.relationship("Contract", backref=db.backref("deals", lazy="dynamic"))
    items = db.relationship(
        "DealItem",
        back_populates="deal",
        cascade="all, delete-orphan",
        order_by="DealItem.id",
        lazy=True,
    )
    comments = db.relationship(
        "DealComment",
        back_populates="deal",
        cascade="all, delete-orphan",
        order_by="DealComment.id",
        lazy=True,
    )
    shipment = db.relationship(
        "Shipment",
        back_populates="deal",
        cascade="all, delete-orphan",
        uselist=False,
    )

    def __repr__(self) -> str:
        return f"<Deal id={self.id} status={self.status} amount_cents={self.amount_cents}>"

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "title": self.title,
            "status": self.status,
            "subtotal_cents": self.subtotal_cents,
            "discount_cents": self.discount_cents,
            "amount_cents": self.amount_cents,
            "client_id": self.client_id,
            "client": self.client.to_ref() if self.client else None,
            "manager_id": self.manager_id,
            "manager": self.manager.to_ref() if self.manager else None,
            "contract_id": self.contract_id,
            "contract": self.contract.to_ref() if self.contract else None,
            "payment_type": self.payment_type,
            "paid_amount_cents": self.paid_amount_cents,
            "payment_status": self.payment_status,
            "due_date": to_iso_date(self.due_date),
            "terms": self.terms,
            "is_archived": self.is_archived,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
            data["shipment"] = self.shipment.to_dict() if self.shipment else None
        return data


class DealItem(db.Model):
    """
    Product line on a deal.

    requested_qty and price_cents stay NULL until the manager prices the
    deal after stock confirmation. Finance approval requires both on every item.
    """
    __tablename__ = "deal_items"
    __table_args__ = (
        db.CheckConstraint("requested_qty IS NULL OR requested_qty > 0", name="requested_qty_positive"),
        db.CheckConstraint("price_cents IS NULL OR price_cents >= 0", name="price_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    deal_id = db.Column(db.Integer, db.ForeignKey("deals.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    request_comment = db.Column(db.Text, nullable=True)
    warehouse_comment = db.Column(db.Text, nullable=True)

    requested_qty = db.Column(db.Integer, nullable=True)
    price_cents = db.Column(db.Integer, nullable=True)

    confirmed_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    deal = db.relationship("Deal", back_populates="items")
    product = db.relationship("Product")
    confirmer = db.relationship("User", foreign_keys=[confirmed_by])

    @property
    def is_priced(self) -> bool:
        return self.requested_qty is not None and self.price_cents is not None

    @property
    def line_total_cents(self) -> int | None:
        if not self.is_priced:
            return None
        return self.requested_qty * self.price_cents

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "deal_id": self.deal_id,
            "product_id": self.product_id,
            "product": self.product.to_ref() if self.product else None,
            "request_comment": self.request_comment,
            "warehouse_comment": self.warehouse_comment,
            "requested_qty": self.requested_qty,
            "price_cents": self.price_cents,
            "line_total_cents": self.line_total_cents,
            "confirmed_by": self.confirmed_by,
            "confirmer": self.confirmer.to_ref() if self.confirmer else None,
            "confirmed_at": to_utc_z(self.confirmed_at),
        }


class DealComment(db.Model):
    __tablename__ = "deal_comments"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    deal_id = db.Column(db.Integer, db.ForeignKey("deals.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    text = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    deal = db.relationship("Deal", back_populates="comments")
    author = db.relationship("User")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "deal_id": self.deal_id,
            "user_id": self.user_id,
            "author": self.author.to_ref() if self.author else None,
            "text": self.text,
            "created_at": to_utc_z(self.created_at),
        }


class Shipment(db.Model):
    """Shipment record, created exactly once when a deal becomes SHIPPED."""
    __tablename__ = "shipments"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    deal_id = db.Column(db.Integer, db.ForeignKey("deals.id"), nullable=False, unique=True)

    vehicle_type = db.Column(db.String(64), nullable=True)
    vehicle_number = db.Column(db.String(32), nullable=True)
    driver_name = db.Column(db.String(255), nullable=True)
    departure_time = db.Column(db.DateTime(timezone=True), nullable=True)
    delivery_note_number = db.Column(db.String(64), nullable=True)
    shipment_comment = db.Column(db.Text, nullable=True)

    shipped_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    shipped_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    deal = db.relationship("Deal", back_populates="shipment")
    shipper = db.relationship("User", foreign_keys=[shipped_by])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "deal_id": self.deal_id,
            "vehicle_type": self.vehicle_type,
            "vehicle_number": self.vehicle_number,
            "driver_name": self.driver_name,
            "departure_time": to_utc_z(self.departure_time),
            "delivery_note_number": self.delivery_note_number,
            "shipment_comment": self.shipment_comment,
            "shipped_by": self.shipped_by,
            "shipper": self.shipper.to_ref() if self.shipper else None,
            "shipped_at": to_utc_z(self.shipped_at),
        }

from __future__ import annotations

import json

from ..extensions import db
from ..time_utils import to_utc_z


AUDIT_ACTIONS = (
    "CREATE",
    "UPDATE",
    "STATUS_CHANGE",
    "STOCK_WRITE_OFF",
    "STOCK_MOVEMENT",
    "PAYMENT_CREATE",
    "PAYMENT_REVERSE",
    "ARCHIVE",
)


class AuditLog(db.Model):
    """
    Append-only audit trail.

    before/after hold JSON snapshots of the fields an action touched.
    Rows are written in the same transaction as the change they describe.
    """
    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("ix_audit_entity", "entity_type", "entity_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    action = db.Column(db.String(32), nullable=False, index=True)
    entity_type = db.Column(db.String(32), nullable=False)
    entity_id = db.Column(db.Integer, nullable=False)

    before_json = db.Column(db.Text, nullable=True)
    after_json = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    user = db.relationship("User")

    @property
    def before(self) -> dict | None:
        return json.loads(self.before_json) if self.before_json else None

    @property
    def after(self) -> dict | None:
        return json.loads(self.after_json) if self.after_json else None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "user": self.user.to_ref() if self.user else None,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "before": self.before,
            "after": self.after,
            "created_at": to_utc_z(self.created_at),
        }

"""
Shipment (READY_FOR_SHIPMENT -> SHIPPED)

One transaction:
    1. lock the deal, run every guard of the SHIPPED edge
    2. per item: OUT movement of min(requested_qty, stock), shortfall flagged
    3. STOCK_WRITE_OFF audit entry with per-item requested/posted/shortfall
    4. create the Shipment record
    5. move status to SHIPPED (STATUS_CHANGE audit)

A failure anywhere rolls back all of it: no movement, no shipment row, no
status change.

SHORTFALL POLICY (SHIPMENT_CAP_TO_STOCK):
- True (default): ship what is on hand, never drive stock negative, log a
  warning
- False: any shortfall rejects the shipment
"""

from __future__ import annotations

import logging

from flask import current_app

from ..extensions import db
from ..models import Deal, Shipment, User
from ..models.inventory import MOVEMENT_OUT
from ..validation import NotFoundError, ValidationError, clean_text, coerce_datetime
from printcrm.time_utils import utcnow
from . import audit_service, inventory_service
from . import deal_workflow as wf
from .concurrency import run_in_transaction


logger = logging.getLogger(__name__)


REQUIRED_FIELDS = ("vehicle_type", "vehicle_number", "driver_name", "departure_time", "delivery_note_number")


def parse_shipment_data(data: dict) -> dict:
    """Validate the shipment form; shipment_comment is the only optional field."""
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON payload")

    missing = [f for f in REQUIRED_FIELDS if data.get(f) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    return {
        "vehicle_type": clean_text(data["vehicle_type"], "vehicle_type", required=True, max_length=64),
        "vehicle_number": clean_text(data["vehicle_number"], "vehicle_number", required=True, max_length=32),
        "driver_name": clean_text(data["driver_name"], "driver_name", required=True, max_length=255),
        "departure_time": coerce_datetime(data["departure_time"], "departure_time"),
        "delivery_note_number": clean_text(
            data["delivery_note_number"], "delivery_note_number", required=True, max_length=64
        ),
        "shipment_comment": clean_text(data.get("shipment_comment"), "shipment_comment"),
    }


def plan_write_off(deal: Deal) -> list[dict]:
    """
    Per-item OUT quantities against current (locked) stock.

    Items are grouped by product so two lines of the same product cannot
    together take more than is on hand.
    """
    available: dict[int, int] = {}
    plan = []
    for item in deal.items:
        if not item.is_priced:
            raise ValidationError(f"Item {item.id} has no quantity")
        if item.product_id not in available:
            available[item.product_id] = inventory_service.get_product_for_update(item.product_id).stock

        posted = min(item.requested_qty, available[item.product_id])
        available[item.product_id] -= posted
        plan.append({
            "deal_item_id": item.id,
            "product_id": item.product_id,
            "requested": item.requested_qty,
            "posted": posted,
            "shortfall": item.requested_qty - posted,
        })
    return plan


def submit_shipment(deal_id: int, user: User, data: dict) -> Deal:
    """
    Ship a deal.

    Raises:
        TransitionError: deal not READY_FOR_SHIPMENT (incl. already shipped)
        PermissionDeniedError: missing confirm_shipment
        ValidationError: bad form, or a shortfall with capping disabled
        NotFoundError: unknown or invisible deal
    """
    fields = parse_shipment_data(data)
    cap_to_stock = current_app.config.get("SHIPMENT_CAP_TO_STOCK", True)

    def _op():
        deal = wf.get_deal_for_update(deal_id, user)
        wf.check_transition(deal, wf.SHIPPED, user)

        plan = plan_write_off(deal)
        short = [row for row in plan if row["shortfall"] > 0]
        if short and not cap_to_stock:
            raise ValidationError(
                "Insufficient stock for items: "
                + ", ".join(f"{row['deal_item_id']} (short {row['shortfall']})" for row in short)
            )

        for row in plan:
            if row["posted"] == 0:
                continue
            movement = inventory_service.post_movement(
                product_id=row["product_id"],
                movement_type=MOVEMENT_OUT,
                quantity=row["posted"],
                user_id=user.id,
                deal_id=deal.id,
                note=f"Shipment of deal {deal.id}",
            )
            row["movement_id"] = movement.id

        if short:
            logger.warning(
                "Deal %s shipped with stock shortfall: %s",
                deal.id,
                ", ".join(f"item {r['deal_item_id']} requested {r['requested']} posted {r['posted']}" for r in short),
            )

        audit_service.record(
            user_id=user.id,
            action="STOCK_WRITE_OFF",
            entity_type=audit_service.ENTITY_DEAL,
            entity_id=deal.id,
            after={"items": plan, "shortfall": sum(row["shortfall"] for row in plan)},
        )

        shipment = Shipment(deal_id=deal.id, shipped_by=user.id, shipped_at=utcnow(), **fields)
        db.session.add(shipment)
        db.session.flush()

        wf.require_transition(
            deal,
            wf.SHIPPED,
            user,
            details={
                "shipment_id": shipment.id,
                "delivery_note_number": shipment.delivery_note_number,
                "items": [
                    {k: row[k] for k in ("deal_item_id", "requested", "posted")}
                    for row in plan
                ],
            },
        )
        db.session.commit()
        return deal

    return run_in_transaction(_op)


def get_shipment(deal_id: int, user: User) -> Shipment:
    deal = wf.get_visible_deal(deal_id, user)
    if deal.shipment is None:
        raise NotFoundError(f"Deal {deal_id} has no shipment")
    return deal.shipment

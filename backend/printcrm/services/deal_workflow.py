"""
Deal Workflow State Machine

================================================================================
PURPOSE: One table of legal status edges, one guarded function that applies them
================================================================================

STATE MACHINE:
    NEW -> IN_PROGRESS -> WAITING_STOCK_CONFIRMATION -> STOCK_CONFIRMED
        -> FINANCE_APPROVED -> ADMIN_APPROVED -> READY_FOR_SHIPMENT -> SHIPPED -> CLOSED

    STOCK_CONFIRMED -> REJECTED -> IN_PROGRESS      (finance rejection, rework)
    READY_FOR_SHIPMENT <-> SHIPMENT_ON_HOLD         (hold / release)
    any open status before SHIPPED -> CANCELED       (REJECTED excluded)

    CLOSED and CANCELED are terminal.

RULES:
1. Every status change goes through require_transition(); nothing else
   assigns Deal.status.
2. Each edge carries exactly one permission code.
3. Guard order: edge legality (TransitionError), then permission
   (PermissionDeniedError), then edge preconditions (ValidationError).
   Nothing is written until all three pass.
4. Every applied edge appends one STATUS_CHANGE audit entry in the same
   transaction.
5. Re-submitting an edge that was already applied is illegal from the new
   status and is rejected the same way every time.

VISIBILITY:
Users without view_all_deals (and outside the unscoped roles) only see deals
they manage. Invisible and archived deals are reported as not found.
================================================================================
"""

from __future__ import annotations

import logging
from typing import Callable

from ..extensions import db
from ..models import Deal, User
from ..validation import NotFoundError, ValidationError
from . import audit_service, permission_service
from .concurrency import lock_for_update


logger = logging.getLogger(__name__)


NEW = "NEW"
IN_PROGRESS = "IN_PROGRESS"
WAITING_STOCK_CONFIRMATION = "WAITING_STOCK_CONFIRMATION"
STOCK_CONFIRMED = "STOCK_CONFIRMED"
FINANCE_APPROVED = "FINANCE_APPROVED"
ADMIN_APPROVED = "ADMIN_APPROVED"
READY_FOR_SHIPMENT = "READY_FOR_SHIPMENT"
SHIPMENT_ON_HOLD = "SHIPMENT_ON_HOLD"
SHIPPED = "SHIPPED"
CLOSED = "CLOSED"
CANCELED = "CANCELED"
REJECTED = "REJECTED"

DEAL_STATUSES = (
    NEW,
    IN_PROGRESS,
    WAITING_STOCK_CONFIRMATION,
    STOCK_CONFIRMED,
    FINANCE_APPROVED,
    ADMIN_APPROVED,
    READY_FOR_SHIPMENT,
    SHIPMENT_ON_HOLD,
    SHIPPED,
    CLOSED,
    CANCELED,
    REJECTED,
)

TERMINAL_STATUSES = frozenset({CLOSED, CANCELED})

# Items may be added or removed only before the warehouse sees the deal,
# or after finance sent it back
ITEM_EDITABLE_STATUSES = frozenset({NEW, IN_PROGRESS, REJECTED})

_CANCELABLE_FROM = (
    NEW,
    IN_PROGRESS,
    WAITING_STOCK_CONFIRMATION,
    STOCK_CONFIRMED,
    FINANCE_APPROVED,
    ADMIN_APPROVED,
    READY_FOR_SHIPMENT,
    SHIPMENT_ON_HOLD,
)

# (from, to) -> permission required to take the edge
TRANSITIONS: dict[tuple[str, str], str] = {
    (NEW, IN_PROGRESS): "manage_deals",
    (IN_PROGRESS, WAITING_STOCK_CONFIRMATION): "manage_deals",
    (WAITING_STOCK_CONFIRMATION, STOCK_CONFIRMED): "stock_confirm",
    (STOCK_CONFIRMED, FINANCE_APPROVED): "finance_approve",
    (STOCK_CONFIRMED, REJECTED): "finance_approve",
    (FINANCE_APPROVED, ADMIN_APPROVED): "admin_approve",
    (ADMIN_APPROVED, READY_FOR_SHIPMENT): "admin_approve",
    (READY_FOR_SHIPMENT, SHIPPED): "confirm_shipment",
    (READY_FOR_SHIPMENT, SHIPMENT_ON_HOLD): "confirm_shipment",
    (SHIPMENT_ON_HOLD, READY_FOR_SHIPMENT): "confirm_shipment",
    (SHIPPED, CLOSED): "close_deals",
    (REJECTED, IN_PROGRESS): "manage_deals",
    **{(status, CANCELED): "manage_deals" for status in _CANCELABLE_FROM},
}

# Edges whose side effects live in a dedicated operation; the generic
# status field of update_deal cannot take them
SIDE_EFFECT_EDGES = frozenset({(READY_FOR_SHIPMENT, SHIPPED)})


class TransitionError(ValueError):
    """
    Raised when a status change is not an edge of the transition table.

    This is a domain error, not a technical error: the deal is in a state
    from which the requested status cannot be reached.
    """
    pass


# =============================================================================
# EDGE PRECONDITIONS
# =============================================================================

def _require_items(deal: Deal, details: dict) -> None:
    if not deal.items:
        raise ValidationError("Cannot request stock confirmation for a deal without items")


def _require_priced_items(deal: Deal, details: dict) -> None:
    if not deal.items:
        raise ValidationError("Cannot approve a deal without items")
    unpriced = [item.id for item in deal.items if not item.is_priced]
    if unpriced:
        raise ValidationError(
            f"Every item needs a quantity and a price before finance approval (unpriced items: "
            f"{', '.join(str(i) for i in unpriced)})"
        )


def _require_reason(deal: Deal, details: dict) -> None:
    reason = details.get("reason")
    if not isinstance(reason, str) or not reason.strip():
        raise ValidationError("reason is required")


PRECONDITIONS: dict[tuple[str, str], Callable[[Deal, dict], None]] = {
    (IN_PROGRESS, WAITING_STOCK_CONFIRMATION): _require_items,
    (STOCK_CONFIRMED, FINANCE_APPROVED): _require_priced_items,
    (STOCK_CONFIRMED, REJECTED): _require_reason,
    (READY_FOR_SHIPMENT, SHIPMENT_ON_HOLD): _require_reason,
}


# =============================================================================
# TABLE QUERIES
# =============================================================================

def validate_status(status: str) -> None:
    if status not in DEAL_STATUSES:
        raise ValidationError(
            f"Invalid status '{status}'. Must be one of: {', '.join(DEAL_STATUSES)}"
        )


def can_transition(from_status: str, to_status: str) -> bool:
    return (from_status, to_status) in TRANSITIONS


def allowed_targets(from_status: str) -> list[str]:
    """Statuses reachable in one step from from_status, in table order."""
    return [to for (frm, to) in TRANSITIONS if frm == from_status]


def required_permission(from_status: str, to_status: str) -> str | None:
    return TRANSITIONS.get((from_status, to_status))


# =============================================================================
# GUARDED DISPATCH
# =============================================================================

def check_transition(deal: Deal, to_status: str, user: User, details: dict | None = None) -> str:
    """
    Run every guard for deal.status -> to_status without writing anything.

    Returns the permission code of the edge.

    Raises:
        ValidationError: unknown status or unmet edge precondition
        TransitionError: not an edge of the table
        PermissionDeniedError: user lacks the edge's permission
    """
    validate_status(to_status)
    edge = (deal.status, to_status)
    permission = TRANSITIONS.get(edge)
    if permission is None:
        raise TransitionError(f"Cannot change deal status from {deal.status} to {to_status}")

    permission_service.require_permission(user, permission, resource=f"deal:{deal.id}")

    precondition = PRECONDITIONS.get(edge)
    if precondition is not None:
        precondition(deal, details or {})
    return permission


def require_transition(deal: Deal, to_status: str, user: User, *, details: dict | None = None):
    """
    The single writer of Deal.status.

    Guards the edge (see check_transition), assigns the new status and
    appends a STATUS_CHANGE audit entry. Does not commit.

    Args:
        details: extra fields recorded in the audit "after" snapshot
            (e.g. reason, shipment data)

    Returns:
        The AuditLog entry
    """
    details = details or {}
    check_transition(deal, to_status, user, details)

    from_status = deal.status
    deal.status = to_status
    db.session.flush()

    entry = audit_service.record(
        user_id=user.id,
        action="STATUS_CHANGE",
        entity_type=audit_service.ENTITY_DEAL,
        entity_id=deal.id,
        before={"status": from_status},
        after={"status": to_status, **details},
    )
    logger.info("Deal %s: %s -> %s by user %s", deal.id, from_status, to_status, user.id)
    return entry


# =============================================================================
# SCOPED LOOKUPS
# =============================================================================

def scoped_deals(user: User, *, include_archived: bool = False):
    q = db.session.query(Deal)
    if not include_archived:
        q = q.filter(Deal.is_archived.is_(False))
    if not permission_service.can_view_all_deals(user):
        q = q.filter(Deal.manager_id == user.id)
    return q


def get_visible_deal(deal_id: int, user: User, *, include_archived: bool = True) -> Deal:
    deal = scoped_deals(user, include_archived=include_archived).filter(Deal.id == deal_id).first()
    if deal is None:
        raise NotFoundError(f"Deal {deal_id} not found")
    return deal


def get_deal_for_update(deal_id: int, user: User) -> Deal:
    """Lock a visible, non-archived deal for a mutating operation."""
    deal = lock_for_update(scoped_deals(user).filter(Deal.id == deal_id)).first()
    if deal is None:
        raise NotFoundError(f"Deal {deal_id} not found")
    return deal

"""
Audit Log Sink

Invariants:
- Append-only: there is no update or delete path for AuditLog rows.
- No domain logic here; callers decide what to record.
- Entries are written inside the caller's transaction (flush, never commit),
  so a failed operation leaves no audit row behind.
"""

from __future__ import annotations

import json
from typing import Any

from sqlalchemy import desc

from ..extensions import db
from ..models import AuditLog
from ..models.audit import AUDIT_ACTIONS


ENTITY_DEAL = "deal"
ENTITY_PRODUCT = "product"
ENTITY_CLIENT = "client"
ENTITY_CONTRACT = "contract"


def _dump(value: dict | None) -> str | None:
    if value is None:
        return None
    return json.dumps(value, default=str, sort_keys=True)


def record(
    *,
    user_id: int | None,
    action: str,
    entity_type: str,
    entity_id: int,
    before: dict[str, Any] | None = None,
    after: dict[str, Any] | None = None,
) -> AuditLog:
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action '{action}'")
    entry = AuditLog(
        user_id=user_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        before_json=_dump(before),
        after_json=_dump(after),
    )
    db.session.add(entry)
    db.session.flush()  # assigns entry.id without committing
    return entry


def list_for_entity(entity_type: str, entity_id: int, *, limit: int = 200) -> list[AuditLog]:
    return (
        db.session.query(AuditLog)
        .filter_by(entity_type=entity_type, entity_id=entity_id)
        .order_by(desc(AuditLog.created_at), desc(AuditLog.id))
        .limit(limit)
        .all()
    )


def list_for_deal(deal_id: int, *, limit: int = 200) -> list[AuditLog]:
    return list_for_entity(ENTITY_DEAL, deal_id, limit=limit)

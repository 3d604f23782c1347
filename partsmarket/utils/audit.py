from __future__ import annotations

import json

from partsmarket.models import AuditLog
from partsmarket.utils.events import _safe_value


def log_action(
    session,
    action: str,
    entity_type: str,
    entity_id,
    *,
    performed_by: int | None = None,
    details: dict | None = None,
) -> AuditLog:
    """Append an audit row to the caller's unit of work. Does not commit."""
    row = AuditLog(
        action=(action or "").strip().upper()[:64],
        entity_type=(entity_type or "").strip().upper()[:32],
        entity_id=str(entity_id)[:64],
        performed_by=int(performed_by) if performed_by is not None else None,
        details_json=json.dumps(_safe_value(details or {}), separators=(",", ":")),
    )
    session.add(row)
    return row

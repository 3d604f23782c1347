from __future__ import annotations

import json
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from partsmarket.extensions import db
from partsmarket.models import PlatformEvent
from partsmarket.models.platform_event import EventSeverity
from partsmarket.utils.observability import get_request_id

logger = logging.getLogger(__name__)


def _safe_value(value: Any):
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _safe_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_safe_value(v) for v in value]
    return str(value)


def _severity(value: str | None) -> str:
    normalized = (value or "").strip().upper()
    return normalized if normalized in EventSeverity.ALL else EventSeverity.INFO


def _safe_json(data: Any) -> str:
    normalized = _safe_value(data if isinstance(data, dict) else {"value": data})
    return json.dumps(normalized, separators=(",", ":"), ensure_ascii=False)


def log_event(
    event_type: str,
    *,
    actor_user_id: int | None = None,
    subject_type: str | None = None,
    subject_id: int | str | None = None,
    severity: str = EventSeverity.INFO,
    request_id: str | None = None,
    idempotency_key: str | None = None,
    metadata: dict | None = None,
    commit: bool = False,
) -> PlatformEvent | None:
    """Best-effort operational event logger.

    The row is written inside a savepoint so a failure here never poisons the
    caller's unit of work. Pass ``commit=True`` when there is no surrounding
    unit (e.g. alerts raised after the main commit already happened).
    """
    try:
        if not request_id:
            request_id = get_request_id()
        key = (idempotency_key or "").strip()[:180] or None
        if key:
            existing = PlatformEvent.query.filter_by(idempotency_key=key).first()
            if existing:
                return existing

        event = PlatformEvent(
            event_type=(event_type or "unknown").strip()[:80],
            actor_user_id=int(actor_user_id) if actor_user_id is not None else None,
            subject_type=(subject_type or "").strip()[:80] or None,
            subject_id=str(subject_id)[:120] if subject_id is not None else None,
            request_id=(request_id or "").strip()[:80] or None,
            idempotency_key=key,
            severity=_severity(severity),
            metadata_json=_safe_json(metadata or {}),
        )
        with db.session.begin_nested():
            db.session.add(event)
        if commit:
            db.session.commit()
        return event
    except Exception:
        logger.exception("platform_event_write_failed event_type=%s", event_type)
        if commit:
            db.session.rollback()
        return None

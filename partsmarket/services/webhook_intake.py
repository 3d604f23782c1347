"""Shared plumbing for gateway callbacks: signature check and delivery log."""
from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from partsmarket.integrations.payments.base import GatewayEvent
from partsmarket.models import WebhookEvent
from partsmarket.utils.observability import get_request_id
from partsmarket.utils.signatures import payload_digest, verify_secret_hash

logger = logging.getLogger(__name__)


class WebhookStatus:
    RECEIVED = "received"
    PROCESSED = "processed"
    IGNORED = "ignored"
    FAILED = "failed"


def verify_signature(config, signature: str | None) -> bool:
    expected = (config.get("FLUTTERWAVE_SECRET_HASH") or "").strip()
    return verify_secret_hash(signature, expected)


def record_delivery(session, *, provider: str, event: GatewayEvent, raw_body: bytes | None) -> WebhookEvent:
    """Log one arrival of ``event``; redeliveries bump ``delivery_count`` on the same row."""
    existing = session.query(WebhookEvent).filter_by(provider=provider, event_id=event.event_id).first()
    if existing is not None:
        existing.delivery_count = int(existing.delivery_count or 0) + 1
        session.commit()
        logger.info(
            "webhook_redelivered provider=%s event_id=%s count=%s",
            provider,
            event.event_id,
            existing.delivery_count,
        )
        return existing

    row = WebhookEvent(
        provider=provider,
        event_id=event.event_id,
        event_type=event.event[:64],
        reference=event.reference or None,
        status=WebhookStatus.RECEIVED,
        delivery_count=1,
        request_id=(get_request_id() or "")[:64] or None,
        payload_hash=payload_digest(raw_body),
    )
    session.add(row)
    try:
        session.commit()
    except IntegrityError:
        # Concurrent delivery of the same event won the insert.
        session.rollback()
        row = session.query(WebhookEvent).filter_by(provider=provider, event_id=event.event_id).first()
        if row is None:
            raise
        row.delivery_count = int(row.delivery_count or 0) + 1
        session.commit()
    return row


def finish_delivery(session, row: WebhookEvent, *, status: str, error: str = "") -> None:
    row.status = status
    row.processed_at = datetime.utcnow()
    row.error = (error or "")[:500] or None
    session.commit()

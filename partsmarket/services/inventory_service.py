from __future__ import annotations

import json
import logging

from flask import current_app

from partsmarket.extensions import db
from partsmarket.models import Notification, Part, Vendor
from partsmarket.utils.observability import get_request_id

logger = logging.getLogger(__name__)


def check_low_stock(part_id: int) -> Notification | None:
    """Notify the owning vendor when a part is at or below its alert threshold.

    At most one unread LOW_STOCK notification exists per part.
    """
    part = db.session.get(Part, int(part_id))
    if part is None:
        return None
    stock = int(part.stock_quantity or 0)
    threshold = int(part.low_stock_alert or 0)
    if stock > threshold:
        return None
    vendor = db.session.get(Vendor, int(part.vendor_id))
    if vendor is None:
        return None

    marker = f'"part_id":{int(part.id)}'
    existing = (
        Notification.query.filter_by(user_id=int(vendor.user_id), kind="LOW_STOCK", is_read=False)
        .filter(Notification.meta.contains(marker))
        .first()
    )
    if existing is not None:
        existing.message = f"{part.name} is running low: {stock} left (alert at {threshold})."
        db.session.commit()
        return existing

    row = Notification(
        user_id=int(vendor.user_id),
        kind="LOW_STOCK",
        title="Low stock",
        message=f"{part.name} is running low: {stock} left (alert at {threshold}).",
        meta=json.dumps({"part_id": int(part.id), "stock_quantity": stock, "low_stock_alert": threshold}, separators=(",", ":")),
    )
    db.session.add(row)
    db.session.commit()
    logger.info("low_stock_alert part_id=%s stock=%s threshold=%s", part.id, stock, threshold)
    return row


def _queue_enabled() -> bool:
    return bool(current_app.config.get("LOW_STOCK_QUEUE", False))


def schedule_low_stock_checks(part_ids) -> None:
    """Fire-and-forget low-stock checks after an order commits.

    Uses the Celery task when queueing is enabled and falls back to running
    inline. Never raises: a failed notification must not fail the order.
    """
    ids = sorted({int(pid) for pid in part_ids})
    if not ids:
        return
    if _queue_enabled():
        try:
            from partsmarket.tasks.inventory_tasks import check_low_stock_task

            for pid in ids:
                check_low_stock_task.delay(part_id=pid, trace_id=get_request_id())
            return
        except Exception:
            logger.warning("low_stock_enqueue_failed part_ids=%s falling_back=inline", ids, exc_info=True)
    for pid in ids:
        try:
            check_low_stock(pid)
        except Exception:
            db.session.rollback()
            logger.exception("low_stock_check_failed part_id=%s", pid)

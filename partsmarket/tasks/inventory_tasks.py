from __future__ import annotations

import json
import time
from datetime import datetime

from celery import shared_task
from flask import current_app
from sqlalchemy.exc import OperationalError

from partsmarket.extensions import db
from partsmarket.services.inventory_service import check_low_stock


def _retry_countdown(retries: int) -> int:
    return int(min(600, max(5, 5 * (2 ** int(max(0, retries))))))


def _task_log(task_name: str, *, status: str, started_at: float, trace_id: str = "", **extra):
    duration_ms = int(max(0.0, (time.perf_counter() - float(started_at))) * 1000.0)
    payload = {
        "task_name": task_name,
        "status": status,
        "duration_ms": duration_ms,
        "trace_id": str(trace_id or ""),
        "timestamp": datetime.utcnow().isoformat(),
    }
    payload.update(extra or {})
    current_app.logger.info(json.dumps(payload))


@shared_task(bind=True, name="partsmarket.tasks.inventory_tasks.check_low_stock", max_retries=3)
def check_low_stock_task(self, part_id: int, trace_id: str = ""):
    started = time.perf_counter()
    try:
        row = check_low_stock(int(part_id))
    except OperationalError as exc:
        db.session.rollback()
        if int(self.request.retries or 0) < int(self.max_retries or 0):
            countdown = _retry_countdown(int(self.request.retries or 0))
            _task_log(
                "check_low_stock",
                status="retrying",
                started_at=started,
                trace_id=trace_id,
                part_id=int(part_id),
                countdown=countdown,
                detail=type(exc).__name__,
            )
            raise self.retry(exc=exc, countdown=countdown)
        _task_log("check_low_stock", status="failed", started_at=started, trace_id=trace_id, part_id=int(part_id))
        raise
    status = "notified" if row is not None else "above_threshold"
    _task_log("check_low_stock", status=status, started_at=started, trace_id=trace_id, part_id=int(part_id))
    return {"ok": True, "part_id": int(part_id), "notified": row is not None}

from __future__ import annotations

import json
import time
from datetime import datetime

from celery import shared_task
from flask import current_app

from partsmarket.extensions import db
from partsmarket.services.reconciliation_service import recompute_payee_balances, recompute_refund_counters
from partsmarket.utils.events import log_event


@shared_task(bind=True, name="partsmarket.tasks.ledger_tasks.scan_ledger_drift")
def scan_ledger_drift(self, trace_id: str = ""):
    """Periodic drift scan; raises one ALERT event per scope with drift."""
    started = time.perf_counter()
    reports = [recompute_payee_balances(db.session), recompute_refund_counters(db.session)]
    drifted = 0
    for report in reports:
        count = int(report.get("drift_count") or 0)
        if count:
            drifted += count
            log_event(
                "ledger_drift_detected",
                subject_type=report["scope"],
                severity="ALERT",
                request_id=trace_id or None,
                metadata={"drift_count": count, "drift_items": report["drift_items"][:20]},
                commit=True,
            )
    current_app.logger.info(
        json.dumps(
            {
                "task_name": "scan_ledger_drift",
                "status": "drift" if drifted else "clean",
                "drift_count": drifted,
                "duration_ms": int((time.perf_counter() - started) * 1000.0),
                "trace_id": str(trace_id or ""),
                "timestamp": datetime.utcnow().isoformat(),
            }
        )
    )
    return {"ok": True, "drift_count": drifted}

from __future__ import annotations

import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def main() -> int:
    try:
        from celery_app import celery

        # Touch the registry so task modules are imported, not just the app object.
        wanted = (
            "partsmarket.tasks.inventory_tasks.check_low_stock",
            "partsmarket.tasks.ledger_tasks.scan_ledger_drift",
        )
        missing = [name for name in wanted if name not in celery.tasks]
        if missing:
            print(f"error: celery tasks not registered -> {', '.join(missing)}", file=sys.stderr)
            return 1
        _ = str(celery.conf.broker_url or "")
        print("ok: celery_app:celery import succeeded")
        return 0
    except Exception as exc:
        print(f"error: failed to import celery_app:celery -> {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _bootstrap_app():
    from partsmarket import create_app

    app = create_app()
    app.app_context().push()
    return app


def main():
    parser = argparse.ArgumentParser(description="Recompute payee earnings and refund counters from transactions and report drift.")
    parser.add_argument("--tolerance", type=float, default=0.01, help="Largest difference treated as rounding noise.")
    parser.add_argument(
        "--scope",
        choices=("all", "payees", "refunds"),
        default="all",
        help="Which counters to check.",
    )
    args = parser.parse_args()

    _bootstrap_app()
    from partsmarket.extensions import db
    from partsmarket.services.reconciliation_service import recompute_payee_balances, recompute_refund_counters

    reports = []
    if args.scope in ("all", "payees"):
        reports.append(recompute_payee_balances(db.session, tolerance=args.tolerance))
    if args.scope in ("all", "refunds"):
        reports.append(recompute_refund_counters(db.session, tolerance=args.tolerance))

    drift_count = sum(int(r.get("drift_count") or 0) for r in reports)
    print(json.dumps({"ok": True, "drift_count": drift_count, "reports": reports}, indent=2))
    return 0 if drift_count == 0 else 2


if __name__ == "__main__":
    os.environ.setdefault("FLASK_APP", "main.py")
    sys.exit(main())

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields


def load_json_object(raw: str | None) -> dict:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except Exception:
        return {}
    return parsed if isinstance(parsed, dict) else {}


class _JsonRecord:
    """Round-trips a dataclass through a TEXT column, ignoring unknown keys."""

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str | None):
        data = load_json_object(raw)
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class BankSnapshot(_JsonRecord):
    bank_name: str = ""
    bank_account_name: str = ""
    bank_account_number: str = ""
    bank_code: str = ""


@dataclass
class RequestedEarnings(_JsonRecord):
    total_earnings: float = 0.0
    total_paid_out: float = 0.0
    unpaid_amount: float = 0.0
    requested_amount: float = 0.0


@dataclass
class TransactionMetadata(_JsonRecord):
    order_number: str | None = None
    payout_request_id: int | None = None
    refund_id: int | None = None
    user_type: str | None = None
    session_url: str | None = None
    provider: str | None = None
    gateway_amount: float | None = None
    gateway_message: str | None = None
    vendor_credit: float | None = None
    delivery_id: int | None = None
    driver_credit: float | None = None
    bank_name: str | None = None
    bank_account_number: str | None = None
    bank_code: str | None = None

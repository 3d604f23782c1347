from __future__ import annotations

import hashlib
import hmac


def verify_secret_hash(provided: str | None, expected: str | None) -> bool:
    """Constant-time comparison of the gateway's ``verif-hash`` header."""
    got = (provided or "").strip()
    want = (expected or "").strip()
    if not got or not want:
        return False
    return hmac.compare_digest(got.encode("utf-8"), want.encode("utf-8"))


def payload_digest(raw: bytes | None) -> str:
    return hashlib.sha256(raw or b"").hexdigest()

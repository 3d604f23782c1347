from __future__ import annotations

import random
import time


def _epoch_ms() -> int:
    return int(time.time() * 1000)


def generate_reference(prefix: str) -> str:
    """``PREFIX-<epoch ms>-<4 digits>``, e.g. ``PAY-1718000000000-0421``."""
    return f"{prefix.strip().upper()}-{_epoch_ms()}-{random.randint(0, 9999):04d}"


def generate_order_number() -> str:
    """``ORD-<last 8 digits of epoch ms>-<3 digits>``."""
    return f"ORD-{str(_epoch_ms())[-8:]}-{random.randint(0, 999):03d}"


def unique_value(generator, exists, *, attempts: int = 8) -> str:
    """Draw from ``generator`` until ``exists`` says the value is free."""
    value = generator()
    for _ in range(max(1, attempts) - 1):
        if not exists(value):
            return value
        value = generator()
    if exists(value):
        raise RuntimeError("reference_space_exhausted")
    return value

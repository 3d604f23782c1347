from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from partsmarket.utils.money import money_float, quantize_money, to_decimal

DEFAULT_COMMISSION_RATE = 5.0
DEFAULT_TAX_RATE = 0.05
PAYMENT_FEE_RATE = Decimal("0.015")
PAYMENT_FEE_CAP = Decimal("200")
PAYOUT_FEE_RATE = Decimal("0.01")
PAYOUT_FEE_CAP = Decimal("100")
DRIVER_SHARE_RATE = Decimal("0.8")
DRIVER_EARNING_FEE_RATE = Decimal("0.02")


@dataclass(frozen=True)
class FeeSchedule:
    base_fee: int = 500
    free_distance_km: float = 5.0
    per_km_fee: int = 100
    free_item_count: int = 3
    per_item_fee: int = 50
    minimum_fee: int = 500
    default_fee: int = 1000
    tax_rate: float = DEFAULT_TAX_RATE
    default_commission_rate: float = DEFAULT_COMMISSION_RATE

    @classmethod
    def from_config(cls, config) -> "FeeSchedule":
        defaults = cls()

        def pick(key, current):
            value = config.get(key) if config is not None else None
            return current if value is None else type(current)(value)

        return cls(
            base_fee=pick("DELIVERY_BASE_FEE", defaults.base_fee),
            free_distance_km=pick("DELIVERY_FREE_DISTANCE_KM", defaults.free_distance_km),
            per_km_fee=pick("DELIVERY_PER_KM_FEE", defaults.per_km_fee),
            free_item_count=pick("DELIVERY_FREE_ITEM_COUNT", defaults.free_item_count),
            per_item_fee=pick("DELIVERY_PER_ITEM_FEE", defaults.per_item_fee),
            minimum_fee=pick("DELIVERY_MINIMUM_FEE", defaults.minimum_fee),
            default_fee=pick("DELIVERY_DEFAULT_FEE", defaults.default_fee),
            tax_rate=pick("TAX_RATE", defaults.tax_rate),
            default_commission_rate=pick("DEFAULT_COMMISSION_RATE", defaults.default_commission_rate),
        )


@dataclass(frozen=True)
class PricedLine:
    part_id: int
    name: str
    quantity: int
    unit_price: float
    subtotal: float


@dataclass(frozen=True)
class OrderQuote:
    subtotal: float
    delivery_fee: float
    discount: float
    tax: float
    total: float
    commission_rate: float
    commission_amount: float
    vendor_earning: float


def unit_price(price, discounted_price=None) -> float:
    if discounted_price is not None and to_decimal(discounted_price) > 0:
        return money_float(discounted_price)
    return money_float(price)


def line_subtotal(price, quantity: int) -> float:
    return money_float(quantize_money(price) * int(quantity))


def items_subtotal(lines) -> float:
    total = Decimal("0")
    for line in lines:
        total += quantize_money(line.subtotal)
    return money_float(total)


def delivery_fee(distance_km: float | None, item_count: int, schedule: FeeSchedule = FeeSchedule()) -> float:
    """Whole-unit delivery fee; ``None`` distance means coordinates were unavailable."""
    if distance_km is None:
        return float(schedule.default_fee)
    fee = int(schedule.base_fee)
    excess_km = float(distance_km) - float(schedule.free_distance_km)
    if excess_km > 0:
        fee += math.ceil(excess_km) * int(schedule.per_km_fee)
    extra_items = int(item_count) - int(schedule.free_item_count)
    if extra_items > 0:
        fee += extra_items * int(schedule.per_item_fee)
    return float(max(fee, int(schedule.minimum_fee)))


def promotion_discount(promotion, subtotal, *, vendor_id: int, now: datetime | None = None) -> float:
    if promotion is None or not bool(promotion.is_active):
        return 0.0
    if int(promotion.vendor_id) != int(vendor_id):
        return 0.0
    now = now or datetime.utcnow()
    if promotion.start_date and now < promotion.start_date:
        return 0.0
    if promotion.end_date and now > promotion.end_date:
        return 0.0
    sub = quantize_money(subtotal)
    if promotion.minimum_order_value is not None and sub < quantize_money(promotion.minimum_order_value):
        return 0.0
    value = to_decimal(promotion.discount_value)
    if bool(promotion.is_percentage):
        discount = sub * value / Decimal("100")
    else:
        discount = value
    discount = max(Decimal("0"), min(discount, sub))
    return money_float(discount)


def tax(subtotal, discount, rate: float = DEFAULT_TAX_RATE) -> float:
    taxable = max(Decimal("0"), quantize_money(subtotal) - quantize_money(discount))
    return money_float(taxable * to_decimal(rate))


def commission_split(subtotal, rate: float | None, default_rate: float = DEFAULT_COMMISSION_RATE) -> tuple[float, float, float]:
    """Returns ``(rate, commission_amount, vendor_earning)`` computed on the item subtotal."""
    effective = float(default_rate if rate is None else rate)
    sub = quantize_money(subtotal)
    commission = quantize_money(sub * to_decimal(effective) / Decimal("100"))
    return effective, float(commission), money_float(sub - commission)


def quote(
    lines,
    *,
    distance_km: float | None,
    collection: bool,
    promotion=None,
    vendor_id: int,
    commission_rate: float | None,
    schedule: FeeSchedule = FeeSchedule(),
    now: datetime | None = None,
) -> OrderQuote:
    lines = list(lines)
    subtotal = items_subtotal(lines)
    fee = 0.0 if collection else delivery_fee(distance_km, len(lines), schedule)
    discount = promotion_discount(promotion, subtotal, vendor_id=vendor_id, now=now)
    tax_amount = tax(subtotal, discount, schedule.tax_rate)
    total = quantize_money(subtotal) + quantize_money(fee) + quantize_money(tax_amount) - quantize_money(discount)
    rate, commission, earning = commission_split(subtotal, commission_rate, schedule.default_commission_rate)
    return OrderQuote(
        subtotal=subtotal,
        delivery_fee=money_float(fee),
        discount=discount,
        tax=tax_amount,
        total=money_float(total),
        commission_rate=rate,
        commission_amount=commission,
        vendor_earning=earning,
    )


def payment_fee(amount) -> float:
    return money_float(min(quantize_money(amount) * PAYMENT_FEE_RATE, PAYMENT_FEE_CAP))


def payout_fee(amount) -> float:
    return money_float(min(quantize_money(amount) * PAYOUT_FEE_RATE, PAYOUT_FEE_CAP))


def driver_delivery_earning(fee) -> tuple[float, float, float]:
    """Returns ``(gross, transaction_fee, net)``: the driver keeps 80% of the fee less 2% of it."""
    base = quantize_money(fee)
    gross = quantize_money(base * DRIVER_SHARE_RATE)
    charge = quantize_money(base * DRIVER_EARNING_FEE_RATE)
    return float(gross), float(charge), money_float(max(Decimal("0"), gross - charge))

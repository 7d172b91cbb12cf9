"""
Module: stock_engines.lot_metrics
Responsibility:
    Lot-level indicators: lot rotation and average stay, usage percentage,
    days-to-expiration status, sale priority score, performance score,
    carrying cost and stock value.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - rotation = ((initial - current) / max(days, 1) * 365) / initial;
      fast >= 12, medium >= 6, slow >= 2, else very_slow.
    - usage = (initial - current) / initial * 100; warning >= 70,
      critical >= 90.
    - sale priority = expiration points (40/35/25/15/5) + FIFO points
      max(0, 30 - 5 * position) + sell-out points (30/20/10), capped at 100;
      warning >= 60, critical >= 80.
    - performance = usage * 0.3 + min(rotation / target, 1) * 70;
      excellent >= 80, good >= 60, average >= 40, else poor.
    - carrying cost = value * annual rate / 365 * days.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal

from stock_kernel.logging_config import get_logger
from stock_engines.expiration import days_to_sell_out
from stock_engines.tracer import traced_engine

logger = get_logger("engines.lot_metrics")

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")
_CENT = Decimal("0.01")


def _cents(value: Decimal) -> Decimal:
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Indicator:
    value: Decimal
    unit: str
    status: str  # normal | warning | critical
    message: str | None = None


@dataclass(frozen=True)
class LotRotation:
    rotation_rate: Decimal
    average_stay_days: int
    classification: str  # fast | medium | slow | very_slow
    recommendation: str


@dataclass(frozen=True)
class LotPerformance:
    usage: Indicator
    rotation: LotRotation
    performance_score: Decimal
    classification: str  # excellent | good | average | poor


@dataclass(frozen=True)
class LotMetricsInput:
    quantity_initial: int
    quantity_remaining: int
    unit_cost: Decimal
    reception_date: date
    expiration_date: date | None
    daily_sales: Decimal
    fifo_position: int


@dataclass(frozen=True)
class LotMetrics:
    days_in_stock: int
    performance: LotPerformance
    days_to_expiration: Indicator | None
    sale_priority: Indicator | None
    stock_value: Decimal
    carrying_cost: Decimal


_ROTATION_CLASSES = (
    (Decimal("12"), "fast", "Fast-moving lot, watch for stockouts"),
    (Decimal("6"), "medium", "Normal rotation, keep current levels"),
    (Decimal("2"), "slow", "Slow rotation, consider reducing orders"),
)


def lot_rotation(initial: int, current: int, days_in_stock: int) -> LotRotation:
    used = Decimal(initial - current)
    daily = used / Decimal(max(days_in_stock, 1))
    rate = (daily * 365 / Decimal(initial)) if initial > 0 else _ZERO

    classification, recommendation = "very_slow", "Very slow rotation, review the purchasing strategy"
    for bound, name, advice in _ROTATION_CLASSES:
        if rate >= bound:
            classification, recommendation = name, advice
            break

    stay = _ZERO
    if current > 0:
        stay = Decimal(current) / max(daily, Decimal("0.1"))
    return LotRotation(
        rotation_rate=_cents(rate),
        average_stay_days=int(stay.quantize(Decimal("1"), rounding=ROUND_HALF_UP)),
        classification=classification,
        recommendation=recommendation,
    )


def usage_percentage(initial: int, current: int) -> Indicator:
    usage = Decimal(initial - current) * _HUNDRED / Decimal(initial) if initial > 0 else _ZERO
    status = "normal"
    if usage >= 90:
        status = "critical"
    elif usage >= 70:
        status = "warning"
    return Indicator(_cents(usage), "%", status)


def days_to_expiration(expiration_date: date, today: date) -> Indicator:
    days = (expiration_date - today).days
    status = "normal"
    if days <= 7:
        status = "critical"
    elif days <= 30:
        status = "warning"
    return Indicator(Decimal(days), "days", status)


def sale_priority(
    days_to_exp: int,
    quantity: int,
    daily_sales: Decimal,
    fifo_position: int,
) -> Indicator:
    if days_to_exp <= 0:
        points = 40
    elif days_to_exp <= 7:
        points = 35
    elif days_to_exp <= 30:
        points = 25
    elif days_to_exp <= 90:
        points = 15
    else:
        points = 5

    points += max(0, 30 - fifo_position * 5)

    sell_out = days_to_sell_out(quantity, daily_sales)
    if sell_out > days_to_exp and days_to_exp > 0:
        points += 30
    elif sell_out > Decimal(days_to_exp) * Decimal("0.8"):
        points += 20
    else:
        points += 10

    status, message = "normal", "Normal sale"
    if points >= 80:
        status, message = "critical", "Urgent priority sale"
    elif points >= 60:
        status, message = "warning", "Priority sale"
    return Indicator(Decimal(min(100, points)), "points", status, message)


def performance(
    initial: int, current: int, days_in_stock: int, target_rotation: Decimal = Decimal("6")
) -> LotPerformance:
    usage = usage_percentage(initial, current)
    rotation = lot_rotation(initial, current, days_in_stock)
    score = usage.value * Decimal("0.3") + min(rotation.rotation_rate / target_rotation, Decimal("1")) * 70
    score = _cents(score)
    if score >= 80:
        classification = "excellent"
    elif score >= 60:
        classification = "good"
    elif score >= 40:
        classification = "average"
    else:
        classification = "poor"
    return LotPerformance(usage, rotation, score, classification)


def carrying_cost(stock_value: Decimal, days_in_stock: int, annual_rate: Decimal = Decimal("0.15")) -> Decimal:
    return _cents(stock_value * annual_rate / Decimal("365") * Decimal(days_in_stock))


def stock_value(quantity: int, unit_cost: Decimal) -> Decimal:
    return _cents(Decimal(quantity) * unit_cost)


class LotMetricsEngine:
    def __init__(self, carrying_cost_rate: Decimal = Decimal("0.15"), target_rotation: Decimal = Decimal("6")):
        self.carrying_cost_rate = carrying_cost_rate
        self.target_rotation = target_rotation

    @traced_engine("lot_metrics", "1.0", fingerprint_fields=("lot", "today"))
    def compute(self, lot: LotMetricsInput, today: date) -> LotMetrics:
        days_in_stock = max(0, (today - lot.reception_date).days)
        value = stock_value(lot.quantity_remaining, lot.unit_cost)

        expiry = None
        priority = None
        if lot.expiration_date is not None:
            expiry = days_to_expiration(lot.expiration_date, today)
            priority = sale_priority(
                int(expiry.value), lot.quantity_remaining, lot.daily_sales, lot.fifo_position
            )

        return LotMetrics(
            days_in_stock=days_in_stock,
            performance=performance(
                lot.quantity_initial, lot.quantity_remaining, days_in_stock, self.target_rotation
            ),
            days_to_expiration=expiry,
            sale_priority=priority,
            stock_value=value,
            carrying_cost=carrying_cost(value, days_in_stock, self.carrying_cost_rate),
        )

"""
Module: stock_engines.rotation
Responsibility:
    Stock turnover per product over an analysis window: average stock,
    annualized consumption, turnover rate and class, days to sell out,
    stock value, consumption change against the previous window, plus
    portfolio statistics, metrics and recommendations.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Inputs are assembled by
    stock_services.rotation_service from lots and sale movements.

Invariants enforced:
    - average_stock = mean over the product's lots of (initial + remaining) / 2.
    - annual_consumption = units_sold * 365 / window_days.
    - turnover = annual_consumption / average_stock, 0 when average stock is 0.
    - Class thresholds (inclusive lower bounds): excellent >= 10,
      good >= 6, medium >= 3, weak >= 1, else critical.  Classification
      uses the unrounded rate, so more units sold never lowers the class.
    - Decimal arithmetic throughout.

Usage:
    engine = RotationEngine()
    analysis = engine.analyze(inputs=products, window_days=30)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Sequence
from uuid import UUID

from stock_kernel.logging_config import get_logger
from stock_engines.tracer import traced_engine

logger = get_logger("engines.rotation")

_ZERO = Decimal("0")
_DAYS_PER_YEAR = Decimal("365")
_NO_SELL_OUT_DAYS = 999


class RotationClass(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    MEDIUM = "medium"
    WEAK = "weak"
    CRITICAL = "critical"


@dataclass(frozen=True)
class RotationThresholds:
    """Inclusive lower bounds of each class, in turns per year."""

    excellent: Decimal = Decimal("10")
    good: Decimal = Decimal("6")
    medium: Decimal = Decimal("3")
    weak: Decimal = Decimal("1")

    def __post_init__(self) -> None:
        if not (self.excellent > self.good > self.medium > self.weak >= _ZERO):
            raise ValueError("rotation thresholds must be strictly decreasing and non-negative")

    def classify(self, rate: Decimal) -> RotationClass:
        if rate >= self.excellent:
            return RotationClass.EXCELLENT
        if rate >= self.good:
            return RotationClass.GOOD
        if rate >= self.medium:
            return RotationClass.MEDIUM
        if rate >= self.weak:
            return RotationClass.WEAK
        return RotationClass.CRITICAL


@dataclass(frozen=True)
class LotStock:
    quantity_initial: int
    quantity_remaining: int


@dataclass(frozen=True)
class ProductRotationInput:
    """Everything the engine needs about one product for one window."""

    product_id: UUID
    product_name: str
    family: str | None
    cost_price: Decimal
    lots: tuple[LotStock, ...]
    units_sold: int
    previous_units_sold: int = 0
    last_movement_at: datetime | None = None


@dataclass(frozen=True)
class ProductRotation:
    product_id: UUID
    product_name: str
    family: str | None
    average_stock: Decimal
    units_sold: int
    annual_consumption: Decimal
    rotation_rate: Decimal
    rotation_class: RotationClass
    days_to_sell_out: int
    stock_value: Decimal
    consumption_change_percent: Decimal
    last_movement_at: datetime | None


@dataclass(frozen=True)
class RotationStats:
    excellent: int = 0
    good: int = 0
    medium: int = 0
    weak: int = 0
    critical: int = 0

    def count(self, rotation_class: RotationClass) -> int:
        return getattr(self, rotation_class.name.lower())


@dataclass(frozen=True)
class RotationMetrics:
    average_rotation: Decimal
    products_analyzed: int
    stock_value_analyzed: Decimal
    rotation_alerts: int


@dataclass(frozen=True)
class Recommendation:
    kind: str  # warning | info | success
    message: str
    products: tuple[str, ...]


@dataclass(frozen=True)
class RotationAnalysis:
    window_days: int
    products: tuple[ProductRotation, ...]
    stats: RotationStats
    metrics: RotationMetrics
    recommendations: tuple[Recommendation, ...] = field(default_factory=tuple)


def _one_decimal(value: Decimal) -> Decimal:
    return value.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)


def average_stock(lots: Sequence[LotStock]) -> Decimal:
    if not lots:
        return _ZERO
    total = sum(
        (Decimal(lot.quantity_initial + lot.quantity_remaining) / 2 for lot in lots),
        _ZERO,
    )
    return total / Decimal(len(lots))


def annual_consumption(units_sold: int, window_days: int) -> Decimal:
    if window_days <= 0:
        raise ValueError("window_days must be positive")
    return Decimal(units_sold) * _DAYS_PER_YEAR / Decimal(window_days)


def turnover_rate(consumption: Decimal, avg_stock: Decimal) -> Decimal:
    if avg_stock <= _ZERO:
        return _ZERO
    return consumption / avg_stock


def consumption_change_percent(units_sold: int, previous_units_sold: int) -> Decimal:
    """Change against the previous window; 100 when starting from zero sales."""
    if previous_units_sold <= 0:
        return Decimal("100.0") if units_sold > 0 else Decimal("0.0")
    change = Decimal(units_sold - previous_units_sold) * 100 / Decimal(previous_units_sold)
    return _one_decimal(change)


class RotationEngine:
    """Turnover analysis over a set of products."""

    def __init__(self, thresholds: RotationThresholds | None = None):
        self.thresholds = thresholds or RotationThresholds()

    def analyze_product(self, product: ProductRotationInput, window_days: int) -> ProductRotation:
        avg = average_stock(product.lots)
        consumption = annual_consumption(product.units_sold, window_days)
        rate = turnover_rate(consumption, avg)
        rotation_class = self.thresholds.classify(rate)

        days_to_sell_out = _NO_SELL_OUT_DAYS
        if rate > _ZERO:
            days_to_sell_out = int((_DAYS_PER_YEAR / rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

        return ProductRotation(
            product_id=product.product_id,
            product_name=product.product_name,
            family=product.family,
            average_stock=_one_decimal(avg),
            units_sold=product.units_sold,
            annual_consumption=_one_decimal(consumption),
            rotation_rate=_one_decimal(rate),
            rotation_class=rotation_class,
            days_to_sell_out=days_to_sell_out,
            stock_value=(avg * product.cost_price).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP),
            consumption_change_percent=consumption_change_percent(
                product.units_sold, product.previous_units_sold
            ),
            last_movement_at=product.last_movement_at,
        )

    @traced_engine("rotation", "1.0", fingerprint_fields=("inputs", "window_days"))
    def analyze(
        self,
        inputs: Sequence[ProductRotationInput],
        window_days: int,
        status: RotationClass | str | None = None,
    ) -> RotationAnalysis:
        """
        Analyze every product, then keep those matching ``status`` if given.

        Stats and metrics describe the products that are returned.
        """
        products = [self.analyze_product(p, window_days) for p in inputs]
        if status is not None:
            wanted = RotationClass(status)
            products = [p for p in products if p.rotation_class == wanted]

        products.sort(key=lambda p: (p.rotation_rate, p.product_name))

        stats = RotationStats(
            **{
                c.name.lower(): sum(1 for p in products if p.rotation_class == c)
                for c in RotationClass
            }
        )
        metrics = self.metrics(products, stats)
        analysis = RotationAnalysis(
            window_days=window_days,
            products=tuple(products),
            stats=stats,
            metrics=metrics,
            recommendations=tuple(self.recommendations(products)),
        )
        logger.info(
            "rotation_analyzed",
            extra={
                "window_days": window_days,
                "products_analyzed": metrics.products_analyzed,
                "rotation_alerts": metrics.rotation_alerts,
            },
        )
        return analysis

    @staticmethod
    def metrics(products: Sequence[ProductRotation], stats: RotationStats) -> RotationMetrics:
        average = _ZERO
        if products:
            average = sum((p.rotation_rate for p in products), _ZERO) / Decimal(len(products))
        return RotationMetrics(
            average_rotation=_one_decimal(average),
            products_analyzed=len(products),
            stock_value_analyzed=sum((p.stock_value for p in products), _ZERO),
            rotation_alerts=stats.weak + stats.critical,
        )

    @staticmethod
    def recommendations(products: Sequence[ProductRotation]) -> list[Recommendation]:
        def names(rotation_class: RotationClass) -> tuple[str, ...]:
            return tuple(p.product_name for p in products if p.rotation_class == rotation_class)

        result = []
        critical = names(RotationClass.CRITICAL)
        if critical:
            result.append(Recommendation(
                "warning",
                f"{len(critical)} product(s) with critical rotation need immediate attention",
                critical,
            ))
        weak = names(RotationClass.WEAK)
        if weak:
            result.append(Recommendation(
                "info",
                f"{len(weak)} slow-moving product(s) could benefit from a review of orders",
                weak,
            ))
        excellent = names(RotationClass.EXCELLENT)
        if excellent:
            result.append(Recommendation(
                "success",
                f"{len(excellent)} product(s) with excellent rotation, watch for stockouts",
                excellent,
            ))
        return result

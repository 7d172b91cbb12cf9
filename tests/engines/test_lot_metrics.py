"""
Tests for lot-level indicators.
"""

from datetime import date, timedelta
from decimal import Decimal

import pytest

from stock_engines import LotMetricsEngine, LotMetricsInput
from stock_engines.lot_metrics import (
    carrying_cost,
    days_to_expiration,
    lot_rotation,
    performance,
    sale_priority,
    stock_value,
    usage_percentage,
)

TODAY = date(2024, 6, 15)


class TestRotation:
    def test_rate_and_stay(self):
        rotation = lot_rotation(100, 40, 30)

        assert rotation.rotation_rate == Decimal("7.30")
        assert rotation.classification == "medium"
        assert rotation.average_stay_days == 20

    def test_same_day_reception_counts_one_day(self):
        assert lot_rotation(100, 99, 0).rotation_rate == lot_rotation(100, 99, 1).rotation_rate

    def test_untouched_lot_is_very_slow(self):
        rotation = lot_rotation(100, 100, 30)

        assert rotation.classification == "very_slow"
        assert rotation.rotation_rate == Decimal("0.00")

    def test_empty_initial(self):
        assert lot_rotation(0, 0, 10).rotation_rate == Decimal("0.00")


class TestIndicators:
    @pytest.mark.parametrize(
        "remaining,value,status",
        [(5, "95.00", "critical"), (25, "75.00", "warning"), (60, "40.00", "normal")],
    )
    def test_usage(self, remaining, value, status):
        usage = usage_percentage(100, remaining)

        assert usage.value == Decimal(value)
        assert usage.status == status

    @pytest.mark.parametrize("days,status", [(7, "critical"), (8, "warning"), (30, "warning"), (31, "normal")])
    def test_days_to_expiration(self, days, status):
        indicator = days_to_expiration(TODAY + timedelta(days=days), TODAY)

        assert indicator.value == Decimal(days)
        assert indicator.status == status

    def test_values(self):
        assert stock_value(40, Decimal("2.50")) == Decimal("100.00")
        assert carrying_cost(Decimal("100.00"), 30) == Decimal("1.23")


class TestSalePriority:
    def test_unsold_lot_close_to_expiry(self):
        priority = sale_priority(5, 100, Decimal("0"), 0)

        assert priority.value == Decimal("95")
        assert priority.status == "critical"
        assert priority.message == "Urgent priority sale"

    def test_distant_expiry_late_in_fifo(self):
        priority = sale_priority(200, 10, Decimal("1"), 6)

        assert priority.value == Decimal("15")
        assert priority.status == "normal"

    def test_expired_lot(self):
        assert sale_priority(-3, 10, Decimal("1"), 0).value == Decimal("90")


class TestPerformance:
    def test_score(self):
        result = performance(100, 40, 30)

        assert result.performance_score == Decimal("88.00")
        assert result.classification == "excellent"

    def test_untouched_lot_is_poor(self):
        assert performance(100, 100, 30).classification == "poor"


class TestEngine:
    def _lot(self, **overrides):
        values = dict(
            quantity_initial=100,
            quantity_remaining=40,
            unit_cost=Decimal("2.50"),
            reception_date=TODAY - timedelta(days=30),
            expiration_date=TODAY + timedelta(days=60),
            daily_sales=Decimal("1"),
            fifo_position=1,
        )
        values.update(overrides)
        return LotMetricsInput(**values)

    def test_compute(self):
        metrics = LotMetricsEngine().compute(lot=self._lot(), today=TODAY)

        assert metrics.days_in_stock == 30
        assert metrics.stock_value == Decimal("100.00")
        assert metrics.carrying_cost == Decimal("1.23")
        assert metrics.days_to_expiration.value == Decimal("60")
        assert metrics.sale_priority.value == Decimal("50")
        assert metrics.performance.classification == "excellent"

    def test_lot_without_expiry(self):
        metrics = LotMetricsEngine().compute(lot=self._lot(expiration_date=None), today=TODAY)

        assert metrics.days_to_expiration is None
        assert metrics.sale_priority is None

    def test_future_reception_date(self):
        metrics = LotMetricsEngine().compute(
            lot=self._lot(reception_date=TODAY + timedelta(days=2)), today=TODAY
        )

        assert metrics.days_in_stock == 0
        assert metrics.carrying_cost == Decimal("0.00")

"""
Module: stock_engines.fifo
Responsibility:
    First-in-first-out compliance of a lot choice: how many days newer the
    selected lot is than the oldest available one, whether that stays within
    tolerance, and the exposure of picking out of order.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - deviation_days = max(0, selected_date - oldest_date).
    - compliant iff deviation_days <= tolerance_days.
    - exposure = deviation_days * loss_per_day, only when non-compliant.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from stock_kernel.logging_config import get_logger
from stock_engines.tracer import traced_engine

logger = get_logger("engines.fifo")


@dataclass(frozen=True)
class FifoAnalysis:
    compliant: bool
    deviation_days: int
    suggested_lot: str | None = None
    potential_loss: Decimal | None = None


class FifoEngine:
    def __init__(
        self,
        tolerance_days: int = 7,
        loss_per_day: Decimal = Decimal("0.10"),
    ):
        if tolerance_days < 0:
            raise ValueError("tolerance_days cannot be negative")
        self.tolerance_days = tolerance_days
        self.loss_per_day = loss_per_day

    @traced_engine("fifo", "1.0", fingerprint_fields=("selected_date", "oldest_date"))
    def analyze(
        self,
        selected_date: date,
        oldest_date: date,
        oldest_lot_number: str | None = None,
    ) -> FifoAnalysis:
        """
        Args:
            selected_date: reception date of the lot being picked.
            oldest_date: reception date of the oldest available lot.
            oldest_lot_number: reported as the suggestion when out of order.
        """
        days = (selected_date - oldest_date).days
        compliant = days <= self.tolerance_days
        if compliant:
            return FifoAnalysis(compliant=True, deviation_days=max(0, days))

        logger.info(
            "fifo_deviation_detected",
            extra={"deviation_days": days, "tolerance_days": self.tolerance_days},
        )
        return FifoAnalysis(
            compliant=False,
            deviation_days=days,
            suggested_lot=oldest_lot_number or "oldest_available",
            potential_loss=Decimal(days) * self.loss_per_day,
        )

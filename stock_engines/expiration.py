"""
Module: stock_engines.expiration
Responsibility:
    Expiration risk of a lot given its remaining quantity and sales
    velocity, and the predicted stockout date of a quantity.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  ``today`` is always passed
    in by the caller.

Invariants enforced:
    - days_to_sell_out = remaining / velocity, infinite when velocity is 0.
    - Levels, first match wins:
        critical  days_to_expiration <= 0, or inside the high window with
                  stock and zero velocity (nothing will sell before expiry)
        high      days_to_expiration <= high_days, or sell-out exceeds
                  expiration
        medium    days_to_expiration <= medium_days
        low       otherwise
    - Loss: critical = remaining x cost x critical_loss_rate; high =
      max(0, remaining - days_to_expiration x velocity) x cost x
      high_loss_rate when sell-out exceeds expiration, else 0.
    - Stockout = today + floor(remaining / (velocity x (1 + variation))),
      None when velocity or remaining is not positive.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from enum import Enum

from stock_kernel.logging_config import get_logger
from stock_engines.tracer import traced_engine

logger = get_logger("engines.expiration")

INFINITE_DAYS = Decimal("Infinity")
_ZERO = Decimal("0")


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


_ACTIONS = {
    "expired": (
        "Withdraw from saleable stock immediately",
        "Destroy according to protocol",
        "Investigate the causes",
    ),
    "unsellable": (
        "Urgent promotion",
        "Contact supplier for return",
        "Prepare withdrawal at expiry",
    ),
    RiskLevel.HIGH: (
        "Urgent promotion",
        "Priority sale",
        "Contact supplier for return",
    ),
    RiskLevel.MEDIUM: (
        "Reinforced monitoring",
        "Preventive promotion",
        "Adjust future orders",
    ),
    RiskLevel.LOW: ("Normal monitoring",),
}


@dataclass(frozen=True)
class ExpirationRisk:
    risk_level: RiskLevel
    days_to_expiration: int
    days_to_sell_out: Decimal
    unsellable_quantity: int
    estimated_loss: Decimal
    recommended_actions: tuple[str, ...] = field(default_factory=tuple)

    @property
    def sells_out_in_time(self) -> bool:
        return self.days_to_sell_out <= self.days_to_expiration


def days_to_sell_out(remaining: int, velocity: Decimal) -> Decimal:
    if velocity <= _ZERO:
        return INFINITE_DAYS
    return Decimal(remaining) / velocity


class ExpirationRiskEngine:
    def __init__(
        self,
        high_days: int = 7,
        medium_days: int = 30,
        high_loss_rate: Decimal = Decimal("0.80"),
        critical_loss_rate: Decimal = Decimal("1.00"),
        stockout_variation: Decimal = Decimal("0.20"),
    ):
        if not 0 <= high_days <= medium_days:
            raise ValueError("risk windows must satisfy 0 <= high_days <= medium_days")
        self.high_days = high_days
        self.medium_days = medium_days
        self.high_loss_rate = high_loss_rate
        self.critical_loss_rate = critical_loss_rate
        self.stockout_variation = stockout_variation

    @traced_engine(
        "expiration_risk",
        "1.0",
        fingerprint_fields=("expiration_date", "remaining", "velocity", "unit_cost", "today"),
    )
    def assess(
        self,
        expiration_date: date,
        remaining: int,
        velocity: Decimal,
        unit_cost: Decimal,
        today: date,
    ) -> ExpirationRisk:
        """
        Args:
            velocity: average units sold per day (>= 0).
        """
        if velocity < _ZERO:
            raise ValueError("velocity cannot be negative")

        dte = (expiration_date - today).days
        sell_out = days_to_sell_out(remaining, velocity)
        cost = Decimal(unit_cost)

        if dte <= 0:
            level, actions, unsellable = RiskLevel.CRITICAL, _ACTIONS["expired"], remaining
        elif dte <= self.high_days and velocity == _ZERO and remaining > 0:
            level, actions, unsellable = RiskLevel.CRITICAL, _ACTIONS["unsellable"], remaining
        elif dte <= self.high_days or sell_out > dte:
            level, actions = RiskLevel.HIGH, _ACTIONS[RiskLevel.HIGH]
            unsellable = 0
            if sell_out > dte:
                unsellable = max(0, int(Decimal(remaining) - Decimal(dte) * velocity))
        elif dte <= self.medium_days:
            level, actions, unsellable = RiskLevel.MEDIUM, _ACTIONS[RiskLevel.MEDIUM], 0
        else:
            level, actions, unsellable = RiskLevel.LOW, _ACTIONS[RiskLevel.LOW], 0

        rate = _ZERO
        if level == RiskLevel.CRITICAL:
            rate = self.critical_loss_rate
        elif level == RiskLevel.HIGH:
            rate = self.high_loss_rate
        loss = (Decimal(unsellable) * cost * rate).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

        if level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
            logger.info(
                "expiration_risk_detected",
                extra={
                    "risk_level": level.value,
                    "days_to_expiration": dte,
                    "remaining": remaining,
                    "estimated_loss": str(loss),
                },
            )
        return ExpirationRisk(
            risk_level=level,
            days_to_expiration=dte,
            days_to_sell_out=sell_out,
            unsellable_quantity=unsellable,
            estimated_loss=loss,
            recommended_actions=actions,
        )

    def predict_stockout(
        self,
        remaining: int,
        velocity: Decimal,
        today: date,
        variation: Decimal | None = None,
    ) -> date | None:
        if velocity <= _ZERO or remaining <= 0:
            return None
        if variation is None:
            variation = self.stockout_variation
        adjusted = velocity * (Decimal("1") + variation)
        days = (Decimal(remaining) / adjusted).to_integral_value(rounding=ROUND_FLOOR)
        return today + timedelta(days=int(days))

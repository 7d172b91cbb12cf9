"""
Stock policy schema.

Frozen dataclasses parsed from YAML by ``stock_config.loader``.  Each
section validates itself in ``__post_init__`` and raises ``ValueError`` on
an inconsistent value, so an invalid policy never reaches a service.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

MISSING_LOT_NUMBER_ACTIONS = ("abort", "skip")


@dataclass(frozen=True)
class LotPolicy:
    one_lot_per_reception: bool = False
    auto_generate_lot_numbers: bool = True
    lot_number_prefix: str = "LOT"
    missing_lot_number_action: str = "abort"

    def __post_init__(self) -> None:
        if self.missing_lot_number_action not in MISSING_LOT_NUMBER_ACTIONS:
            raise ValueError(
                f"lots.missing_lot_number_action must be one of {MISSING_LOT_NUMBER_ACTIONS}, "
                f"got {self.missing_lot_number_action!r}"
            )
        if not self.lot_number_prefix or "-" in self.lot_number_prefix:
            raise ValueError("lots.lot_number_prefix must be non-empty and contain no '-'")


@dataclass(frozen=True)
class FifoPolicy:
    tolerance_days: int = 7
    loss_per_day: Decimal = Decimal("0.10")

    def __post_init__(self) -> None:
        if self.tolerance_days < 0:
            raise ValueError("fifo.tolerance_days cannot be negative")
        if self.loss_per_day < 0:
            raise ValueError("fifo.loss_per_day cannot be negative")


@dataclass(frozen=True)
class RiskPolicy:
    high_days: int = 7
    medium_days: int = 30
    high_loss_rate: Decimal = Decimal("0.80")
    critical_loss_rate: Decimal = Decimal("1.00")
    stockout_variation: Decimal = Decimal("0.20")
    velocity_lookback_days: int = 30
    alert_horizon_days: int = 30

    def __post_init__(self) -> None:
        if not 0 <= self.high_days <= self.medium_days:
            raise ValueError("risk windows must satisfy 0 <= high_days <= medium_days")
        for name in ("high_loss_rate", "critical_loss_rate"):
            value = getattr(self, name)
            if not Decimal("0") <= value <= Decimal("1"):
                raise ValueError(f"risk.{name} must be between 0 and 1")
        if self.stockout_variation < 0:
            raise ValueError("risk.stockout_variation cannot be negative")
        if self.velocity_lookback_days <= 0:
            raise ValueError("risk.velocity_lookback_days must be positive")
        if self.alert_horizon_days < 0:
            raise ValueError("risk.alert_horizon_days cannot be negative")


@dataclass(frozen=True)
class RotationPolicy:
    excellent: Decimal = Decimal("10")
    good: Decimal = Decimal("6")
    medium: Decimal = Decimal("3")
    weak: Decimal = Decimal("1")
    lot_target_rotation: Decimal = Decimal("6")
    carrying_cost_rate: Decimal = Decimal("0.15")

    def __post_init__(self) -> None:
        if not (self.excellent > self.good > self.medium > self.weak >= 0):
            raise ValueError("rotation thresholds must be strictly decreasing and non-negative")
        if self.lot_target_rotation <= 0:
            raise ValueError("rotation.lot_target_rotation must be positive")


@dataclass(frozen=True)
class ReconciliationPolicy:
    prefer_ledger_snapshot: bool = True


@dataclass(frozen=True)
class BatchPolicy:
    chunk_size: int = 500

    def __post_init__(self) -> None:
        if self.chunk_size <= 0:
            raise ValueError("batch.chunk_size must be positive")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_seconds: float = 0.5

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("retry.max_attempts must be at least 1")
        if self.backoff_seconds < 0:
            raise ValueError("retry.backoff_seconds cannot be negative")


@dataclass(frozen=True)
class StockPolicy:
    """The effective policy; ``checksum`` identifies the source it came from."""

    lots: LotPolicy = field(default_factory=LotPolicy)
    fifo: FifoPolicy = field(default_factory=FifoPolicy)
    risk: RiskPolicy = field(default_factory=RiskPolicy)
    rotation: RotationPolicy = field(default_factory=RotationPolicy)
    reconciliation: ReconciliationPolicy = field(default_factory=ReconciliationPolicy)
    batch: BatchPolicy = field(default_factory=BatchPolicy)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    checksum: str = ""

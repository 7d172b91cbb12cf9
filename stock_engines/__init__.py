"""
Module: stock_engines
Responsibility:
    Pure calculation engines for stock analysis: turnover, FIFO compliance,
    expiration risk and stockout prediction, lot indicators, reception
    validation.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May import stock_kernel.domain and stock_kernel.logging_config only.
    MUST NOT import stock_services or stock_config.

Invariants enforced:
    - Engines never read the clock; ``today`` is always a parameter.
    - Decimal arithmetic for rates, money and velocities.
    - Every top-level invocation is traced via ``@traced_engine``
      (STOCK_ENGINE_TRACE).
"""

from stock_engines.expiration import ExpirationRisk, ExpirationRiskEngine, RiskLevel
from stock_engines.fifo import FifoAnalysis, FifoEngine
from stock_engines.lot_metrics import LotMetrics, LotMetricsEngine, LotMetricsInput
from stock_engines.reception_validation import (
    ReceptionContext,
    ReceptionReport,
    ReceptionValidation,
    ReceptionValidationEngine,
)
from stock_engines.rotation import (
    LotStock,
    ProductRotation,
    ProductRotationInput,
    RotationAnalysis,
    RotationClass,
    RotationEngine,
    RotationThresholds,
)
from stock_engines.tracer import traced_engine

__all__ = [
    "ExpirationRisk",
    "ExpirationRiskEngine",
    "FifoAnalysis",
    "FifoEngine",
    "LotMetrics",
    "LotMetricsEngine",
    "LotMetricsInput",
    "LotStock",
    "ProductRotation",
    "ProductRotationInput",
    "ReceptionContext",
    "ReceptionReport",
    "ReceptionValidation",
    "ReceptionValidationEngine",
    "RiskLevel",
    "RotationAnalysis",
    "RotationClass",
    "RotationEngine",
    "RotationThresholds",
    "traced_engine",
]

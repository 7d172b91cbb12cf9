"""
Stock services -- orchestration above the kernel, engines and config.

StockCore is the facade callers use; it owns transactions, chunking and
retry.  RotationService and RiskService are read-only orchestrators over
the kernel selectors and the calculation engines.
"""

from stock_services.export import export_rotation
from stock_services.risk_service import ExpirationAlert, RiskService, StockoutForecast
from stock_services.rotation_service import (
    RotationFilters,
    RotationService,
    RotationWindow,
)
from stock_services.stock_core import StockCore, StockServices, chunk_groups

__all__ = [
    "ExpirationAlert",
    "RiskService",
    "RotationFilters",
    "RotationService",
    "RotationWindow",
    "StockCore",
    "StockServices",
    "StockoutForecast",
    "chunk_groups",
    "export_rotation",
]

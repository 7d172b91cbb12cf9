"""Selectors for the stock kernel (read side)."""

from stock_kernel.selectors.lot_selector import LotSelector
from stock_kernel.selectors.movement_selector import MovementSelector
from stock_kernel.selectors.session_selector import SessionSelector

__all__ = [
    "LotSelector",
    "MovementSelector",
    "SessionSelector",
]

"""Domain models for the stock kernel."""

from stock_kernel.models.inventory import (
    InventoryItem,
    InventorySession,
    ItemStatus,
    SessionStatus,
    SessionType,
)
from stock_kernel.models.lot import SHARED_ORIGIN, Lot
from stock_kernel.models.movement import (
    MovementType,
    ReferenceType,
    StockMovement,
    signed_delta_for,
)
from stock_kernel.models.reception import (
    ComplianceStatus,
    Reception,
    ReceptionLine,
    ReceptionLineApplication,
    ReceptionStatus,
)
from stock_kernel.models.reference import Product, SaleLine

__all__ = [
    "Lot",
    "SHARED_ORIGIN",
    "StockMovement",
    "MovementType",
    "ReferenceType",
    "signed_delta_for",
    "Reception",
    "ReceptionLine",
    "ReceptionLineApplication",
    "ReceptionStatus",
    "ComplianceStatus",
    "InventorySession",
    "InventoryItem",
    "SessionType",
    "SessionStatus",
    "ItemStatus",
    "Product",
    "SaleLine",
]

"""Pure domain layer: clock, DTOs, collaborator protocols."""

from stock_kernel.domain.clock import (
    Clock,
    DeterministicClock,
    SystemClock,
)
from stock_kernel.domain.collaborators import (
    ProductCatalog,
    ProductInfo,
    SalesLedger,
    SoldQuantity,
)
from stock_kernel.domain.dtos import (
    LineError,
    LotSpec,
    MovementReference,
    OperatorContext,
    ReceptionHeaderInput,
    ReceptionLineInput,
    ReceptionResult,
)

__all__ = [
    "Clock",
    "SystemClock",
    "DeterministicClock",
    "ProductCatalog",
    "ProductInfo",
    "SalesLedger",
    "SoldQuantity",
    "OperatorContext",
    "MovementReference",
    "LotSpec",
    "ReceptionHeaderInput",
    "ReceptionLineInput",
    "ReceptionResult",
    "LineError",
]

"""Services for the stock kernel (write side)."""

from stock_kernel.services.catalog_adapter import SqlProductCatalog, SqlSalesLedger
from stock_kernel.services.lot_numbering import LotNumberGenerator, deterministic_lot_number
from stock_kernel.services.lot_store import LotStore
from stock_kernel.services.movement_ledger import MovementLedger
from stock_kernel.services.reception_resolver import ReceptionResolver
from stock_kernel.services.reconciliation_engine import ReconciliationEngine
from stock_kernel.services.retry_service import RetryService

__all__ = [
    "LotNumberGenerator",
    "LotStore",
    "MovementLedger",
    "ReceptionResolver",
    "ReconciliationEngine",
    "RetryService",
    "SqlProductCatalog",
    "SqlSalesLedger",
    "deterministic_lot_number",
]

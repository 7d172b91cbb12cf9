"""
Collaborator interfaces consumed by the kernel.

The product catalog and the sales ledger belong to other systems.  The kernel
only depends on these protocols; services/catalog_adapter.py provides
SQL-backed implementations over the reference tables.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol
from uuid import UUID


@dataclass(frozen=True)
class ProductInfo:
    product_id: UUID
    name: str
    family: str | None
    cost_price: Decimal
    sale_price: Decimal | None
    barcode: str | None = None
    is_active: bool = True


@dataclass(frozen=True)
class SoldQuantity:
    """Sold units of one (product, lot) within a sales session."""

    product_id: UUID
    lot_id: UUID | None
    quantity: int


class ProductCatalog(Protocol):
    def resolve(self, tenant_id: UUID, product_id: UUID) -> ProductInfo:
        """Return the product, or raise ProductNotResolvedError."""
        ...

    def update_sale_price(
        self, tenant_id: UUID, product_id: UUID, sale_price: Decimal
    ) -> None:
        ...

    def list_products(
        self, tenant_id: UUID, family: str | None = None
    ) -> list[ProductInfo]:
        ...

    def list_families(self, tenant_id: UUID) -> list[str]:
        ...


class SalesLedger(Protocol):
    def aggregate_sales_session(
        self, tenant_id: UUID, sales_session_id: UUID
    ) -> list[SoldQuantity]:
        ...

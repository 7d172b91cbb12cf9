"""
Module: stock_kernel.models.reference
Responsibility: Minimal tables for data owned by external collaborators (the
    product catalog and the point-of-sale ledger) so the SQL-backed
    collaborator adapters have something to read.
Architecture position: Kernel > Models.  May import from db/base.py only.

These tables are read by services/catalog_adapter.py.  The kernel writes only
Product.sale_price (default sale price propagated from a reception line).
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Boolean, DateTime, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from stock_kernel.db.base import Base, UUIDString


class Product(Base):
    """Catalog product reference."""

    __tablename__ = "products"

    __table_args__ = (
        Index("idx_product_tenant_family", "tenant_id", "family"),
    )

    tenant_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    name: Mapped[str] = mapped_column(String(300), nullable=False)

    barcode: Mapped[str | None] = mapped_column(String(100), nullable=True)

    family: Mapped[str | None] = mapped_column(String(100), nullable=True)

    cost_price: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False, default=Decimal("0"))

    sale_price: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<Product {self.name}>"


class SaleLine(Base):
    """One sold (product, lot, quantity) line of a sales session."""

    __tablename__ = "sale_lines"

    __table_args__ = (
        Index("idx_sale_line_session", "sales_session_id"),
    )

    tenant_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    sales_session_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    product_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    lot_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    quantity: Mapped[int] = mapped_column(nullable=False)

    sold_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

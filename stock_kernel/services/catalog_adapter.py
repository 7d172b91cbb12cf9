"""
SQL-backed implementations of the catalog and sales-ledger collaborators.

They read the ``products`` and ``sale_lines`` reference tables through the
caller's session.  Deployments where the catalog lives elsewhere provide
their own ProductCatalog / SalesLedger instead.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from stock_kernel.domain.collaborators import ProductInfo, SoldQuantity
from stock_kernel.exceptions import ProductNotResolvedError
from stock_kernel.logging_config import get_logger
from stock_kernel.models.reference import Product, SaleLine

logger = get_logger("services.catalog_adapter")


def _to_info(product: Product) -> ProductInfo:
    return ProductInfo(
        product_id=product.id,
        name=product.name,
        family=product.family,
        cost_price=product.cost_price,
        sale_price=product.sale_price,
        barcode=product.barcode,
        is_active=product.is_active,
    )


class SqlProductCatalog:
    def __init__(self, session: Session):
        self.session = session

    def _get(self, tenant_id: UUID, product_id: UUID) -> Product:
        product = self.session.execute(
            select(Product).where(Product.id == product_id, Product.tenant_id == tenant_id)
        ).scalar_one_or_none()
        if product is None:
            raise ProductNotResolvedError(str(product_id))
        return product

    def resolve(self, tenant_id: UUID, product_id: UUID) -> ProductInfo:
        return _to_info(self._get(tenant_id, product_id))

    def update_sale_price(self, tenant_id: UUID, product_id: UUID, sale_price: Decimal) -> None:
        product = self._get(tenant_id, product_id)
        if product.sale_price != sale_price:
            product.sale_price = sale_price
            self.session.flush()
            logger.info(
                "product_sale_price_updated",
                extra={"product_id": str(product_id), "sale_price": sale_price},
            )

    def list_products(self, tenant_id: UUID, family: str | None = None) -> list[ProductInfo]:
        stmt = select(Product).where(Product.tenant_id == tenant_id, Product.is_active.is_(True))
        if family is not None:
            stmt = stmt.where(Product.family == family)
        return [_to_info(p) for p in self.session.execute(stmt.order_by(Product.name)).scalars()]

    def list_families(self, tenant_id: UUID) -> list[str]:
        rows = self.session.execute(
            select(Product.family)
            .where(Product.tenant_id == tenant_id, Product.family.is_not(None))
            .distinct()
            .order_by(Product.family)
        ).scalars()
        return list(rows)


class SqlSalesLedger:
    def __init__(self, session: Session):
        self.session = session

    def aggregate_sales_session(self, tenant_id: UUID, sales_session_id: UUID) -> list[SoldQuantity]:
        rows = self.session.execute(
            select(SaleLine.product_id, SaleLine.lot_id, func.sum(SaleLine.quantity))
            .where(
                SaleLine.tenant_id == tenant_id,
                SaleLine.sales_session_id == sales_session_id,
            )
            .group_by(SaleLine.product_id, SaleLine.lot_id)
        ).all()
        return [
            SoldQuantity(product_id=product_id, lot_id=lot_id, quantity=int(total or 0))
            for product_id, lot_id, total in rows
        ]

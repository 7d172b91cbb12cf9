"""
Module: stock_kernel.selectors.lot_selector
Responsibility: Read-only access to lots: lookup, FIFO ordering per product,
    oldest lot on hand, expiring lots, shelf-life history.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - FIFO order is expiration date ascending (lots without expiration
      last), then reception date, then lot number.  The order is total, so
      repeated reads agree.
    - The oldest available lot is the earliest received unexpired lot with
      stock (ties broken by lot number); it is what FIFO compliance
      compares a picked lot against.

Failure modes:
    - Returns None or an empty list on absence of data; never raises.
"""

from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from stock_kernel.domain.dtos import LotView
from stock_kernel.models.lot import Lot
from stock_kernel.selectors.base import BaseSelector


def _fifo_order():
    return (
        Lot.expiration_date.is_(None),
        Lot.expiration_date,
        Lot.reception_date,
        Lot.lot_number,
    )


class LotSelector(BaseSelector[Lot]):
    """Queries over the lots table."""

    def get(self, tenant_id: UUID, lot_id: UUID) -> LotView | None:
        lot = self.session.execute(
            select(Lot).where(Lot.id == lot_id, Lot.tenant_id == tenant_id)
        ).scalar_one_or_none()
        return LotView.from_model(lot) if lot is not None else None

    def lots_for_product(
        self,
        tenant_id: UUID,
        product_id: UUID,
        include_empty: bool = False,
    ) -> list[LotView]:
        """Lots of one product in FIFO order."""
        stmt = select(Lot).where(Lot.tenant_id == tenant_id, Lot.product_id == product_id)
        if not include_empty:
            stmt = stmt.where(Lot.quantity_remaining > 0)
        lots = self.session.execute(stmt.order_by(*_fifo_order())).scalars()
        return [LotView.from_model(lot) for lot in lots]

    def oldest_available(
        self, tenant_id: UUID, product_id: UUID, as_of: date
    ) -> LotView | None:
        """Earliest received lot that still has stock and is not expired."""
        lot = self.session.execute(
            select(Lot)
            .where(
                Lot.tenant_id == tenant_id,
                Lot.product_id == product_id,
                Lot.quantity_remaining > 0,
                (Lot.expiration_date.is_(None)) | (Lot.expiration_date > as_of),
            )
            .order_by(Lot.reception_date, Lot.lot_number)
            .limit(1)
        ).scalar_one_or_none()
        return LotView.from_model(lot) if lot is not None else None

    def expiring_within(
        self, tenant_id: UUID, as_of: date, horizon_days: int
    ) -> list[LotView]:
        """Lots with stock whose expiration falls on or before as_of + horizon."""
        limit = as_of + timedelta(days=horizon_days)
        lots = self.session.execute(
            select(Lot)
            .where(
                Lot.tenant_id == tenant_id,
                Lot.quantity_remaining > 0,
                Lot.expiration_date.is_not(None),
                Lot.expiration_date <= limit,
            )
            .order_by(Lot.expiration_date, Lot.lot_number)
        ).scalars()
        return [LotView.from_model(lot) for lot in lots]

    def lots_for_products(self, tenant_id: UUID, product_ids: list[UUID]) -> list[LotView]:
        """All lots (empty ones included) of the given products."""
        if not product_ids:
            return []
        lots = self.session.execute(
            select(Lot)
            .where(Lot.tenant_id == tenant_id, Lot.product_id.in_(product_ids))
            .order_by(Lot.product_id, *_fifo_order())
        ).scalars()
        return [LotView.from_model(lot) for lot in lots]

    def existing_lot_keys(
        self, tenant_id: UUID, product_ids: list[UUID]
    ) -> frozenset[tuple[UUID, str]]:
        """(product_id, lot_number) pairs already on file for these products."""
        if not product_ids:
            return frozenset()
        rows = self.session.execute(
            select(Lot.product_id, Lot.lot_number)
            .where(Lot.tenant_id == tenant_id, Lot.product_id.in_(product_ids))
            .distinct()
        ).all()
        return frozenset((product_id, number) for product_id, number in rows)

    def average_shelf_life_days(
        self, tenant_id: UUID, product_ids: list[UUID], sample_size: int = 10
    ) -> dict[UUID, Decimal]:
        """
        Mean (expiration - reception) in days over each product's most
        recent lots.  Products without dated lots are absent from the result.
        """
        if not product_ids:
            return {}
        lots = self.session.execute(
            select(Lot.product_id, Lot.reception_date, Lot.expiration_date)
            .where(
                Lot.tenant_id == tenant_id,
                Lot.product_id.in_(product_ids),
                Lot.expiration_date.is_not(None),
            )
            .order_by(Lot.product_id, Lot.reception_date.desc())
        ).all()

        samples: dict[UUID, list[int]] = {}
        for product_id, received, expires in lots:
            bucket = samples.setdefault(product_id, [])
            if len(bucket) < sample_size:
                bucket.append((expires - received).days)
        return {
            product_id: Decimal(sum(days)) / Decimal(len(days))
            for product_id, days in samples.items()
        }

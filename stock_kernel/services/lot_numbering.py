"""
Lot number generation for reception lines that arrive without one.

The number is a deterministic function of (tenant, product, reception, line
index), so a retried reception generates the same number for the same line.
Uniqueness is enforced by the lots table (uq_lot_identity); the generator
only searches for a free suffix when the base number is already taken.

Format: ``{prefix}-{YYYYMMDD}-{HASH8}`` e.g. ``LOT-20240115-3FA2C91B``,
then ``-2``, ``-3`` ... on collision.
"""

from __future__ import annotations

import hashlib
from datetime import date
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from stock_kernel.logging_config import get_logger
from stock_kernel.models.lot import Lot

logger = get_logger("services.lot_numbering")

MAX_SUFFIX = 1000


def deterministic_lot_number(
    tenant_id: UUID,
    product_id: UUID,
    reception_id: UUID | None,
    line_index: int,
    reception_date: date,
    prefix: str = "LOT",
) -> str:
    """Base lot number for one reception line.  Pure."""
    seed = f"{tenant_id}|{product_id}|{reception_id or ''}|{line_index}"
    digest = hashlib.sha256(seed.encode("utf-8")).hexdigest()[:8].upper()
    return f"{prefix}-{reception_date.strftime('%Y%m%d')}-{digest}"


class LotNumberGenerator:
    """Picks a free lot number for a product, starting from the deterministic base."""

    def __init__(self, session: Session, prefix: str = "LOT"):
        self.session = session
        self.prefix = prefix

    def generate(
        self,
        tenant_id: UUID,
        product_id: UUID,
        reception_id: UUID | None,
        line_index: int,
        reception_date: date,
    ) -> str:
        base = deterministic_lot_number(
            tenant_id, product_id, reception_id, line_index, reception_date, self.prefix
        )
        taken = self._numbers_starting_with(tenant_id, product_id, base)
        if base not in taken:
            return base

        for suffix in range(2, MAX_SUFFIX):
            candidate = f"{base}-{suffix}"
            if candidate not in taken:
                logger.info(
                    "lot_number_collision_resolved",
                    extra={"base": base, "lot_number": candidate},
                )
                return candidate

        raise RuntimeError(f"No free lot number for base {base}")

    def _numbers_starting_with(self, tenant_id: UUID, product_id: UUID, base: str) -> set[str]:
        rows = self.session.execute(
            select(Lot.lot_number).where(
                Lot.tenant_id == tenant_id,
                Lot.product_id == product_id,
                Lot.lot_number.startswith(base, autoescape=True),
            )
        ).scalars()
        return set(rows)

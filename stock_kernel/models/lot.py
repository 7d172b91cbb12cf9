"""
Module: stock_kernel.models.lot
Responsibility: ORM persistence for stock lots: discrete, dated, cost-bearing
    batches of one product.
Architecture position: Kernel > Models.  May import from db/base.py only.
    MUST NOT import from services/, selectors/, domain/, or outer layers.

Invariants enforced:
    L1 -- quantity_remaining >= 0 (CHECK constraint + ledger pre-check).
    L2 -- quantity_remaining is written only by the movement ledger through a
          compare-and-swap on (id, version, quantity_remaining).  The ORM
          listener in db/immutability.py rejects any other edit.
    L3 -- (tenant_id, product_id, lot_number, origin_key) is unique.  Shared
          lots carry an empty origin_key; lots created under the
          one-lot-per-reception policy carry their reception id.
    L4 -- quantity_initial is set once, at creation.
    L5 -- version counts committed movements; the next movement's
          lot_sequence is version + 1.

Failure modes:
    - IntegrityError on duplicate lot identity (L3).
    - IntegrityError on negative remaining (L1) if a raw write bypasses the
      ledger.
"""

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    Date,
    Index,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from stock_kernel.db.base import TrackedBase, UUIDString

SHARED_ORIGIN = ""


class Lot(TrackedBase):
    """
    A batch of one product received (or adjusted) into stock.

    Contract:
        quantity_remaining always equals the quantity_after of the lot's most
        recent movement, and the signed sum of all its movement deltas.

    Non-goals:
        - Pricing strategy.  sale_price / tax_rate / markup_rate are copied
          from the reception line as-is.
    """

    __tablename__ = "lots"

    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "product_id",
            "lot_number",
            "origin_key",
            name="uq_lot_identity",
        ),
        CheckConstraint("quantity_remaining >= 0", name="ck_lot_remaining_non_negative"),
        CheckConstraint("quantity_initial >= 0", name="ck_lot_initial_non_negative"),
        # Query: FIFO ordering within a product
        Index("idx_lot_product_expiration", "tenant_id", "product_id", "expiration_date"),
        Index("idx_lot_reception", "reception_id"),
    )

    tenant_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    product_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    lot_number: Mapped[str] = mapped_column(String(100), nullable=False)

    origin_key: Mapped[str] = mapped_column(
        String(36),
        nullable=False,
        default=SHARED_ORIGIN,
    )

    # INVARIANT L4: immutable after creation
    quantity_initial: Mapped[int] = mapped_column(nullable=False)

    # INVARIANT L1/L2: ledger-owned
    quantity_remaining: Mapped[int] = mapped_column(nullable=False)

    # INVARIANT L5: movement counter, bumped by the ledger's compare-and-swap
    version: Mapped[int] = mapped_column(nullable=False, default=0)

    # NULL means expiration is not tracked for this lot
    expiration_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    reception_date: Mapped[date] = mapped_column(Date, nullable=False)

    supplier_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    # NULL for lots created by a manual adjustment
    reception_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    unit_cost: Mapped[Decimal] = mapped_column(
        Numeric(38, 9),
        nullable=False,
        default=Decimal("0"),
    )

    sale_price: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)

    tax_rate: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)

    markup_rate: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)

    location: Mapped[str | None] = mapped_column(String(200), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<Lot {self.lot_number} product={self.product_id} "
            f"remaining={self.quantity_remaining}>"
        )

    @property
    def is_shared(self) -> bool:
        """True if the lot may be incremented by later receptions."""
        return self.origin_key == SHARED_ORIGIN

    def is_expired(self, as_of: date) -> bool:
        if self.expiration_date is None:
            return False
        return self.expiration_date <= as_of

    @property
    def stock_value(self) -> Decimal:
        return Decimal(self.quantity_remaining) * (self.unit_cost or Decimal("0"))

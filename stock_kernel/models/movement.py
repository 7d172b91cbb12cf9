"""
Module: stock_kernel.models.movement
Responsibility: ORM persistence for the append-only stock movement ledger.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    M1 -- quantity_after = quantity_before + signed_delta.  Checked by the
          ledger before insert and by a CHECK constraint.
    M2 -- (lot_id, lot_sequence) is unique.  lot_sequence is the lot's version
          after the movement; two writers racing on the same lot cannot both
          commit the same sequence number.
    M3 -- Movements are immutable from creation (db/immutability.py).
          Corrections are new movements.

Sign convention:
    entry / exit store a positive magnitude in quantity_delta; the movement
    type gives the direction.  adjustment stores a signed delta.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from stock_kernel.db.base import Base, UUIDString


class MovementType(str, Enum):
    """Direction of a quantity change."""

    ENTRY = "entry"
    EXIT = "exit"
    ADJUSTMENT = "adjustment"


class ReferenceType(str, Enum):
    """Business document a movement originates from."""

    RECEPTION = "reception"
    SALE = "sale"
    INVENTORY = "inventory"
    ADJUSTMENT = "adjustment"


def signed_delta_for(movement_type: str, quantity_delta: int) -> int:
    """Signed quantity change for a stored (type, delta) pair."""
    if movement_type == MovementType.EXIT.value:
        return -quantity_delta
    return quantity_delta


class StockMovement(Base):
    """
    One quantity change on one lot.

    Contract:
        Rows are written only by MovementLedger.record() and never updated
        or deleted.  quantity_before of a movement equals quantity_after of
        the previous movement on the same lot (ordered by lot_sequence).
    """

    __tablename__ = "stock_movements"

    __table_args__ = (
        UniqueConstraint("lot_id", "lot_sequence", name="uq_movement_lot_sequence"),
        CheckConstraint("quantity_before >= 0", name="ck_movement_before_non_negative"),
        CheckConstraint("quantity_after >= 0", name="ck_movement_after_non_negative"),
        CheckConstraint(
            "(movement_type = 'entry' AND quantity_after = quantity_before + quantity_delta)"
            " OR (movement_type = 'exit' AND quantity_after = quantity_before - quantity_delta)"
            " OR (movement_type = 'adjustment' AND quantity_after = quantity_before + quantity_delta)",
            name="ck_movement_before_after",
        ),
        Index("idx_movement_product_created", "tenant_id", "product_id", "created_at"),
        Index("idx_movement_reference", "reference_type", "reference_id"),
    )

    tenant_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    lot_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("lots.id"),
        nullable=False,
    )

    product_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    movement_type: Mapped[str] = mapped_column(String(20), nullable=False)

    quantity_before: Mapped[int] = mapped_column(nullable=False)

    quantity_delta: Mapped[int] = mapped_column(nullable=False)

    quantity_after: Mapped[int] = mapped_column(nullable=False)

    reference_type: Mapped[str] = mapped_column(String(20), nullable=False)

    reference_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # INVARIANT M2: 1-based position in the lot's ledger
    lot_sequence: Mapped[int] = mapped_column(nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    def __repr__(self) -> str:
        return (
            f"<StockMovement {self.movement_type} lot={self.lot_id} "
            f"{self.quantity_before}->{self.quantity_after}>"
        )

    @property
    def signed_delta(self) -> int:
        return signed_delta_for(self.movement_type, self.quantity_delta)

"""
Module: stock_kernel.models.inventory
Responsibility: ORM persistence for inventory count sessions and their items.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    S1 -- status moves in_progress -> completed only; completed sessions and
          their items are frozen (db/immutability.py).
    S2 -- One item per (session, lot) (UNIQUE constraint).  Seeding is
          therefore resumable: a restarted initialization skips lots that
          already have an item.
    S3 -- items_total / items_counted / discrepancies / progress_percent are a
          cache of the item table, recomputed from it after every count or
          reset, never incremented in place.
    S4 -- Counting never writes to lots.
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

from stock_kernel.db.base import Base, TrackedBase, UUIDString


class SessionType(str, Enum):
    STANDARD = "standard"
    RECEPTION = "reception"
    SALES = "sales"


class SessionStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class ItemStatus(str, Enum):
    """Count state of one inventory item."""

    NON_COMPTE = "non_compte"
    COMPTE = "compte"
    ECART = "ecart"
    VALIDE = "valide"


class InventorySession(TrackedBase):
    """
    One inventory count campaign.

    Contract:
        reception sessions carry reception_id; sales sessions carry
        sales_session_id.  initialized_at is set once seeding has completed.
    """

    __tablename__ = "inventory_sessions"

    __table_args__ = (
        Index("idx_inventory_session_tenant_status", "tenant_id", "status"),
    )

    tenant_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    name: Mapped[str] = mapped_column(String(200), nullable=False)

    session_type: Mapped[str] = mapped_column(String(20), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=SessionStatus.IN_PROGRESS.value,
    )

    reception_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    sales_session_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    # INVARIANT S3: cached aggregates
    items_total: Mapped[int] = mapped_column(nullable=False, default=0)

    items_counted: Mapped[int] = mapped_column(nullable=False, default=0)

    discrepancies: Mapped[int] = mapped_column(nullable=False, default=0)

    progress_percent: Mapped[int] = mapped_column(nullable=False, default=0)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    initialized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<InventorySession {self.name} {self.session_type} "
            f"status={self.status} {self.items_counted}/{self.items_total}>"
        )

    @property
    def is_completed(self) -> bool:
        return self.status == SessionStatus.COMPLETED.value


class InventoryItem(Base):
    """One (product, lot) line of an inventory session."""

    __tablename__ = "inventory_items"

    __table_args__ = (
        UniqueConstraint("session_id", "lot_id", name="uq_inventory_item_session_lot"),
        CheckConstraint(
            "quantity_counted IS NULL OR quantity_counted >= 0",
            name="ck_inventory_item_counted_non_negative",
        ),
        Index("idx_inventory_item_session_status", "session_id", "status"),
    )

    session_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("inventory_sessions.id"),
        nullable=False,
    )

    lot_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("lots.id"),
        nullable=False,
    )

    product_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    barcode: Mapped[str | None] = mapped_column(String(100), nullable=True)

    product_label: Mapped[str] = mapped_column(String(300), nullable=False, default="")

    lot_number: Mapped[str] = mapped_column(String(100), nullable=False)

    theoretical_location: Mapped[str | None] = mapped_column(String(200), nullable=True)

    actual_location: Mapped[str | None] = mapped_column(String(200), nullable=True)

    # Computed once at seeding
    quantity_theoretical: Mapped[int] = mapped_column(nullable=False)

    # NULL until counted
    quantity_counted: Mapped[int | None] = mapped_column(nullable=True)

    # Derivation audit: theoretical = initial +/- movement
    quantity_initial: Mapped[int] = mapped_column(nullable=False, default=0)

    quantity_movement: Mapped[int] = mapped_column(nullable=False, default=0)

    unit: Mapped[str] = mapped_column(String(20), nullable=False, default="unit")

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=ItemStatus.NON_COMPTE.value,
    )

    counted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    operator_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<InventoryItem lot={self.lot_number} theoretical={self.quantity_theoretical} "
            f"counted={self.quantity_counted} status={self.status}>"
        )

    @property
    def difference(self) -> int | None:
        if self.quantity_counted is None:
            return None
        return self.quantity_counted - self.quantity_theoretical

"""
Module: stock_kernel.models.reception
Responsibility: ORM persistence for supplier deliveries (receptions), their
    ordered lines, and the per-line "applied" markers written when a line's
    lot mutation commits.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    RC1 -- A reception is created once.  The only later change is the status
           flip draft -> validated (db/immutability.py).
    RC2 -- Reception lines are immutable from creation.
    RC3 -- At most one application row per line (UNIQUE line_id).  The row is
           written in the same transaction as the line's lot and movement, so
           a retried resolution skips exactly the lines already applied.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stock_kernel.db.base import Base, TrackedBase, UUIDString


class ReceptionStatus(str, Enum):
    DRAFT = "draft"
    VALIDATED = "validated"


class ComplianceStatus(str, Enum):
    """Quality-control verdict on a delivered line."""

    CONFORME = "conforme"
    NON_CONFORME = "non-conforme"
    PARTIELLEMENT_CONFORME = "partiellement-conforme"


class Reception(TrackedBase):
    """
    Header of one supplier delivery.

    Contract:
        Lines are ordered by line_index.  status becomes validated only when
        every line with a positive accepted quantity has been applied.
    """

    __tablename__ = "receptions"

    __table_args__ = (
        Index("idx_reception_tenant_date", "tenant_id", "reception_date"),
        Index("idx_reception_supplier", "supplier_id"),
    )

    tenant_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    supplier_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    reception_date: Mapped[date] = mapped_column(Date, nullable=False)

    agent_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    invoice_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)

    total_ht: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False, default=Decimal("0"))

    total_tva: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False, default=Decimal("0"))

    total_ttc: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False, default=Decimal("0"))

    # Quality-control flags
    packaging_intact: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    temperature_compliant: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    documents_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=ReceptionStatus.DRAFT.value,
    )

    validated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    lines: Mapped[list["ReceptionLine"]] = relationship(
        back_populates="reception",
        order_by="ReceptionLine.line_index",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Reception {self.id} status={self.status} lines={len(self.lines)}>"

    @property
    def is_validated(self) -> bool:
        return self.status == ReceptionStatus.VALIDATED.value


class ReceptionLine(Base):
    """One delivered product line of a reception.  Immutable."""

    __tablename__ = "reception_lines"

    __table_args__ = (
        UniqueConstraint("reception_id", "line_index", name="uq_reception_line_index"),
        Index("idx_reception_line_product", "product_id", "lot_number"),
    )

    reception_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("receptions.id"),
        nullable=False,
    )

    line_index: Mapped[int] = mapped_column(nullable=False)

    product_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    quantity_ordered: Mapped[int] = mapped_column(nullable=False, default=0)

    quantity_received: Mapped[int] = mapped_column(nullable=False, default=0)

    quantity_accepted: Mapped[int] = mapped_column(nullable=False, default=0)

    lot_number: Mapped[str | None] = mapped_column(String(100), nullable=True)

    expiration_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    unit_cost: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False, default=Decimal("0"))

    sale_price: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)

    tax_rate: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)

    markup_rate: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)

    compliance_status: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        default=ComplianceStatus.CONFORME.value,
    )

    comment: Mapped[str | None] = mapped_column(Text, nullable=True)

    reception: Mapped["Reception"] = relationship(back_populates="lines")

    def __repr__(self) -> str:
        return (
            f"<ReceptionLine #{self.line_index} product={self.product_id} "
            f"accepted={self.quantity_accepted}>"
        )


class ReceptionLineApplication(Base):
    """Marker that a reception line's lot mutation has been committed."""

    __tablename__ = "reception_line_applications"

    __table_args__ = (
        UniqueConstraint("line_id", name="uq_reception_line_application"),
        Index("idx_reception_application_reception", "reception_id"),
    )

    reception_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("receptions.id"),
        nullable=False,
    )

    line_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("reception_lines.id"),
        nullable=False,
    )

    lot_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("lots.id"),
        nullable=False,
    )

    # True when the line created the lot, False when it incremented one
    created_lot: Mapped[bool] = mapped_column(Boolean, nullable=False)

    applied_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

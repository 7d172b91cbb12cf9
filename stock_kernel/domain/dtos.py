"""
DTOs -- Pure domain data transfer objects.

Responsibility:
    Defines the immutable data structures that cross the kernel boundary:
    operator context, reception input (header + lines), lot creation specs,
    movement references, resolution results, and read-side views returned by
    selectors.

Architecture position:
    Kernel > Domain -- pure, zero I/O.  Free of ORM dependencies.
    from_model() class methods are boundary converters used by selectors
    and services only.

Invariants enforced:
    - Quantities are integers (whole dispensing units).
    - Money and rates are Decimal, never float.
    - Results are frozen; partial-success counters are explicit fields.

Data flow:
    ReceptionHeaderInput + ReceptionLineInput[] -> ReceptionResolver
        -> ResolutionGroup[] -> ChunkOutcome[] -> ReceptionResult
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

if TYPE_CHECKING:
    from stock_kernel.models.inventory import InventoryItem, InventorySession
    from stock_kernel.models.lot import Lot
    from stock_kernel.models.movement import StockMovement


@dataclass(frozen=True)
class OperatorContext:
    """
    Tenant + operator identity supplied by the authentication collaborator.

    Every write is scoped to tenant_id and attributed to operator_id.
    """

    tenant_id: UUID
    operator_id: UUID
    correlation_id: str | None = None


@dataclass(frozen=True)
class MovementReference:
    """Business document behind a movement."""

    reference_type: str
    reference_id: UUID | None = None
    reason: str | None = None


# ---------------------------------------------------------------------------
# Lots
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LotSpec:
    """
    Everything needed to create a lot.

    quantity becomes both quantity_initial and, through the opening entry
    movement, quantity_remaining.
    """

    tenant_id: UUID
    product_id: UUID
    lot_number: str
    quantity: int
    reception_date: date
    expiration_date: date | None = None
    supplier_id: UUID | None = None
    reception_id: UUID | None = None
    unit_cost: Decimal = Decimal("0")
    sale_price: Decimal | None = None
    tax_rate: Decimal | None = None
    markup_rate: Decimal | None = None
    location: str | None = None
    origin_key: str = ""


@dataclass(frozen=True)
class LotView:
    """Read-only snapshot of a lot."""

    lot_id: UUID
    tenant_id: UUID
    product_id: UUID
    lot_number: str
    quantity_initial: int
    quantity_remaining: int
    version: int
    expiration_date: date | None
    reception_date: date
    supplier_id: UUID | None
    reception_id: UUID | None
    unit_cost: Decimal
    sale_price: Decimal | None
    location: str | None

    @classmethod
    def from_model(cls, lot: "Lot") -> "LotView":
        return cls(
            lot_id=lot.id,
            tenant_id=lot.tenant_id,
            product_id=lot.product_id,
            lot_number=lot.lot_number,
            quantity_initial=lot.quantity_initial,
            quantity_remaining=lot.quantity_remaining,
            version=lot.version,
            expiration_date=lot.expiration_date,
            reception_date=lot.reception_date,
            supplier_id=lot.supplier_id,
            reception_id=lot.reception_id,
            unit_cost=lot.unit_cost,
            sale_price=lot.sale_price,
            location=lot.location,
        )


@dataclass(frozen=True)
class MovementView:
    """Read-only snapshot of a ledger movement."""

    movement_id: UUID
    lot_id: UUID
    product_id: UUID
    movement_type: str
    quantity_before: int
    quantity_delta: int
    quantity_after: int
    signed_delta: int
    reference_type: str
    reference_id: UUID | None
    reason: str | None
    lot_sequence: int
    created_at: datetime

    @classmethod
    def from_model(cls, movement: "StockMovement") -> "MovementView":
        return cls(
            movement_id=movement.id,
            lot_id=movement.lot_id,
            product_id=movement.product_id,
            movement_type=movement.movement_type,
            quantity_before=movement.quantity_before,
            quantity_delta=movement.quantity_delta,
            quantity_after=movement.quantity_after,
            signed_delta=movement.signed_delta,
            reference_type=movement.reference_type,
            reference_id=movement.reference_id,
            reason=movement.reason,
            lot_sequence=movement.lot_sequence,
            created_at=movement.created_at,
        )


# ---------------------------------------------------------------------------
# Receptions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReceptionHeaderInput:
    """
    Reception header as captured at the delivery desk.

    reception_id may be supplied by the caller so that a retried call
    addresses the same reception instead of creating a second one.
    """

    supplier_id: UUID | None
    reception_date: date
    agent_id: UUID | None = None
    invoice_reference: str | None = None
    total_ht: Decimal = Decimal("0")
    total_tva: Decimal = Decimal("0")
    total_ttc: Decimal = Decimal("0")
    packaging_intact: bool = True
    temperature_compliant: bool = True
    documents_complete: bool = True
    reception_id: UUID | None = None


@dataclass(frozen=True)
class ReceptionLineInput:
    product_id: UUID
    quantity_ordered: int
    quantity_received: int
    quantity_accepted: int
    lot_number: str | None = None
    expiration_date: date | None = None
    unit_cost: Decimal = Decimal("0")
    sale_price: Decimal | None = None
    tax_rate: Decimal | None = None
    markup_rate: Decimal | None = None
    compliance_status: str = "conforme"
    comment: str | None = None
    location: str | None = None


@dataclass(frozen=True)
class ResolutionGroup:
    """
    One lot mutation planned from one or more reception lines.

    Lines sharing (product, lot_number) are merged into a single group so a
    reception never creates two lots for the same identity.
    """

    product_id: UUID
    lot_number: str | None
    line_ids: tuple[UUID, ...]
    line_indexes: tuple[int, ...]
    quantity_accepted: int
    expiration_date: date | None
    unit_cost: Decimal
    sale_price: Decimal | None = None
    tax_rate: Decimal | None = None
    markup_rate: Decimal | None = None

    @property
    def first_line_index(self) -> int:
        return self.line_indexes[0]


@dataclass(frozen=True)
class ReceptionPlan:
    """Pending work for a reception, computed from its persisted lines."""

    reception_id: UUID
    groups: tuple[ResolutionGroup, ...]
    lines_total: int
    lines_skipped: int
    lines_already_applied: int


@dataclass(frozen=True)
class LineError:
    """A line-level failure, reported with its position."""

    line_index: int
    product_id: UUID
    code: str
    message: str
    lot_number: str | None = None


@dataclass(frozen=True)
class ChunkOutcome:
    """What one transactional chunk of a reception resolution did."""

    lots_created: int = 0
    lots_updated: int = 0
    movements_written: int = 0
    lines_processed: int = 0
    errors: tuple[LineError, ...] = ()
    aborted: bool = False


@dataclass(frozen=True)
class ReceptionResult:
    """
    Outcome of resolve_reception.

    Contract:
        lines_processed counts lines whose lot mutation is committed
        (including lines applied by an earlier attempt).  summary gives the
        explicit "N of M lines processed" partial-success statement.
    """

    reception_id: UUID
    status: str
    lots_created: int
    lots_updated: int
    movements_written: int
    lines_total: int
    lines_processed: int
    lines_skipped: int
    errors: tuple[LineError, ...] = ()
    warnings: tuple[str, ...] = ()
    aborted: bool = False

    @property
    def lines_positive(self) -> int:
        return self.lines_total - self.lines_skipped

    @property
    def summary(self) -> str:
        return f"{self.lines_processed} of {self.lines_positive} lines processed"

    @property
    def is_complete(self) -> bool:
        return not self.errors and not self.aborted


# ---------------------------------------------------------------------------
# Inventory
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SessionView:
    session_id: UUID
    name: str
    session_type: str
    status: str
    reception_id: UUID | None
    sales_session_id: UUID | None
    items_total: int
    items_counted: int
    discrepancies: int
    progress_percent: int
    started_at: datetime
    initialized_at: datetime | None
    completed_at: datetime | None

    @classmethod
    def from_model(cls, session: "InventorySession") -> "SessionView":
        return cls(
            session_id=session.id,
            name=session.name,
            session_type=session.session_type,
            status=session.status,
            reception_id=session.reception_id,
            sales_session_id=session.sales_session_id,
            items_total=session.items_total,
            items_counted=session.items_counted,
            discrepancies=session.discrepancies,
            progress_percent=session.progress_percent,
            started_at=session.started_at,
            initialized_at=session.initialized_at,
            completed_at=session.completed_at,
        )


@dataclass(frozen=True)
class ItemView:
    item_id: UUID
    session_id: UUID
    lot_id: UUID
    product_id: UUID
    lot_number: str
    product_label: str
    theoretical_location: str | None
    actual_location: str | None
    quantity_theoretical: int
    quantity_counted: int | None
    quantity_initial: int
    quantity_movement: int
    status: str
    counted_at: datetime | None
    operator_id: UUID | None

    @classmethod
    def from_model(cls, item: "InventoryItem") -> "ItemView":
        return cls(
            item_id=item.id,
            session_id=item.session_id,
            lot_id=item.lot_id,
            product_id=item.product_id,
            lot_number=item.lot_number,
            product_label=item.product_label,
            theoretical_location=item.theoretical_location,
            actual_location=item.actual_location,
            quantity_theoretical=item.quantity_theoretical,
            quantity_counted=item.quantity_counted,
            quantity_initial=item.quantity_initial,
            quantity_movement=item.quantity_movement,
            status=item.status,
            counted_at=item.counted_at,
            operator_id=item.operator_id,
        )


@dataclass(frozen=True)
class SessionAggregates:
    items_total: int
    items_counted: int
    discrepancies: int
    progress_percent: int


@dataclass(frozen=True)
class InitializationOutcome:
    """Result of one seeding pass over an inventory session."""

    session_id: UUID
    items_created: int
    item_count: int
    complete: bool
    # One entry per item seeded for a product the catalog could not resolve.
    errors: tuple[str, ...] = ()


@dataclass(frozen=True)
class ReconciliationLine:
    item_id: UUID
    product_id: UUID
    lot_number: str
    quantity_theoretical: int
    quantity_counted: int | None
    quantity_difference: int | None
    unit_cost: Decimal
    value_difference: Decimal | None
    status: str


@dataclass(frozen=True)
class ReconciliationReport:
    """Per-item differences and overall accuracy for one session."""

    session_id: UUID
    lines: tuple[ReconciliationLine, ...]
    items_total: int
    items_counted: int
    items_exact: int
    discrepancies: int
    total_quantity_difference: int
    total_value_difference: Decimal
    accuracy_rate: Decimal


@dataclass(frozen=True)
class AggregateCheck:
    """Stored aggregates compared with a from-scratch recount."""

    session_id: UUID
    stored: SessionAggregates
    recomputed: SessionAggregates

    @property
    def consistent(self) -> bool:
        return self.stored == self.recomputed


# ---------------------------------------------------------------------------
# Ledger verification
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MovementStats:
    lot_id: UUID
    total_entries: int
    total_exits: int
    adjustment_count: int
    net_movement: int
    movement_count: int
    trend: str


@dataclass(frozen=True)
class LedgerVerification:
    """
    Findings of a full replay of one lot's ledger.

    conserved: quantity_remaining == sum of signed deltas.
    continuous: every before == previous after, every after == before + delta,
        and sequences are 1..n without gaps.
    """

    lot_id: UUID
    quantity_remaining: int
    ledger_sum: int
    movement_count: int
    conserved: bool
    continuous: bool
    findings: tuple[str, ...] = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        return self.conserved and self.continuous

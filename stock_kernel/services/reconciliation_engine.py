"""
ReconciliationEngine -- inventory count sessions.

Responsibility:
    Opens inventory sessions, seeds their items from a baseline (standard
    count, reception, sales session), records and resets counts, lets a
    supervisor validate counted items, and completes sessions.  Keeps the
    session's cached aggregates equal to a recount of its item table.

Architecture position:
    Kernel > Services -- imperative shell.

Invariants enforced:
    - Sessions move in_progress -> completed only.  Counts, resets and
      validations on a completed session raise SessionClosedError.
    - Counting writes to inventory items only, never to lots.
    - Aggregates are recomputed from the item table after every change,
      under a row lock on the session, so concurrent operators counting
      different items always converge on the same numbers.
    - Seeding is idempotent and resumable: one item per (session, lot),
      chunks may commit separately, and initialized_at marks completion.

Baselines:
    standard   initial = remaining, movement = 0, theoretical = remaining
    reception  ledger snapshot: initial = quantity_before of the
               reception's first entry on the lot, movement = sum of the
               reception's entries; fallback: initial = max(0, current -
               accepted), theoretical = initial + accepted
    sales      ledger snapshot: initial = quantity_before of the earliest
               exit referencing the sales session; fallback: initial =
               current + sold; theoretical = initial - sold
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from stock_kernel.domain.clock import Clock, SystemClock
from stock_kernel.domain.collaborators import ProductCatalog, SalesLedger
from stock_kernel.domain.dtos import InitializationOutcome, SessionAggregates
from stock_kernel.exceptions import (
    InvalidQuantityError,
    InvalidSessionSourceError,
    InventoryItemNotFoundError,
    ItemNotCountedError,
    ProductNotResolvedError,
    SessionClosedError,
    SessionNotFoundError,
)
from stock_kernel.logging_config import LogContext, get_logger
from stock_kernel.models.inventory import (
    InventoryItem,
    InventorySession,
    ItemStatus,
    SessionStatus,
    SessionType,
)
from stock_kernel.models.lot import Lot
from stock_kernel.models.movement import MovementType, ReferenceType, StockMovement
from stock_kernel.models.reception import (
    Reception,
    ReceptionLine,
    ReceptionLineApplication,
)
from stock_kernel.services.base import BaseService

logger = get_logger("services.reconciliation_engine")

_SESSION_TYPES = frozenset(t.value for t in SessionType)


@dataclass(frozen=True)
class ItemSeed:
    """Baseline for one item before it is written."""

    lot: Lot
    quantity_initial: int
    quantity_movement: int
    quantity_theoretical: int
    source: str


def progress_percent(counted: int, total: int) -> int:
    """round(counted / total * 100), halves rounded up; 0 for an empty session."""
    if total <= 0:
        return 0
    ratio = Decimal(counted) * Decimal(100) / Decimal(total)
    return int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class ReconciliationEngine(BaseService[InventorySession]):
    """
    Inventory session lifecycle.

    Contract:
        Every public write returns after flush; the caller commits.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        sales_ledger: SalesLedger | None = None,
        catalog: ProductCatalog | None = None,
        prefer_ledger_snapshot: bool = True,
    ):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self.sales_ledger = sales_ledger
        self.catalog = catalog
        self.prefer_ledger_snapshot = prefer_ledger_snapshot

    # ------------------------------------------------------------------
    # Session lookup
    # ------------------------------------------------------------------

    def get_session(self, tenant_id: UUID, session_id: UUID, lock: bool = False) -> InventorySession:
        stmt = select(InventorySession).where(
            InventorySession.id == session_id,
            InventorySession.tenant_id == tenant_id,
        )
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        inv_session = self.session.execute(stmt).scalar_one_or_none()
        if inv_session is None:
            raise SessionNotFoundError(str(session_id))
        return inv_session

    def _open_session(self, tenant_id: UUID, session_id: UUID, operation: str) -> InventorySession:
        inv_session = self.get_session(tenant_id, session_id, lock=True)
        if inv_session.is_completed:
            logger.warning(
                "session_closed_rejected",
                extra={"session_id": str(session_id), "operation": operation},
            )
            raise SessionClosedError(str(session_id), operation)
        return inv_session

    def _get_item(self, inv_session: InventorySession, item_id: UUID) -> InventoryItem:
        item = self.session.execute(
            select(InventoryItem).where(
                InventoryItem.id == item_id,
                InventoryItem.session_id == inv_session.id,
            )
        ).scalar_one_or_none()
        if item is None:
            raise InventoryItemNotFoundError(str(inv_session.id), str(item_id))
        return item

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start_session(
        self,
        tenant_id: UUID,
        name: str,
        session_type: str,
        actor_id: UUID,
        reception_id: UUID | None = None,
        sales_session_id: UUID | None = None,
    ) -> InventorySession:
        if session_type not in _SESSION_TYPES:
            raise InvalidSessionSourceError("new", session_type, "unknown session type")
        if session_type == SessionType.RECEPTION.value:
            if reception_id is None:
                raise InvalidSessionSourceError("new", session_type, "reception_id is required")
            exists = self.session.execute(
                select(Reception.id).where(
                    Reception.id == reception_id, Reception.tenant_id == tenant_id
                )
            ).scalar_one_or_none()
            if exists is None:
                raise InvalidSessionSourceError(
                    "new", session_type, f"reception {reception_id} not found"
                )
        if session_type == SessionType.SALES.value and sales_session_id is None:
            raise InvalidSessionSourceError("new", session_type, "sales_session_id is required")

        inv_session = InventorySession(
            tenant_id=tenant_id,
            name=name,
            session_type=session_type,
            status=SessionStatus.IN_PROGRESS.value,
            reception_id=reception_id,
            sales_session_id=sales_session_id,
            started_at=self._clock.now(),
            created_by_id=actor_id,
        )
        self.session.add(inv_session)
        self.session.flush()
        logger.info(
            "inventory_session_started",
            extra={"session_id": str(inv_session.id), "session_type": session_type},
        )
        return inv_session

    def initialize_session_items(
        self,
        tenant_id: UUID,
        session_id: UUID,
        max_items: int | None = None,
    ) -> InitializationOutcome:
        """
        Seed items from the session's baseline.

        Args:
            max_items: insert at most this many new items in this call; the
                caller commits and calls again until ``complete``.

        Returns:
            InitializationOutcome with the number of items created now, the
            total item count and an error entry for every item whose product
            the catalog could not resolve.  Such items are still seeded,
            without a label.
        """
        inv_session = self._open_session(tenant_id, session_id, "initialize")

        with LogContext.bind(session_id=str(inv_session.id)):
            if inv_session.initialized_at is not None:
                total = self._item_count(inv_session.id)
                logger.info("session_initialization_skipped", extra={"item_count": total})
                return InitializationOutcome(inv_session.id, 0, total, True)

            seeded_lots = set(
                self.session.execute(
                    select(InventoryItem.lot_id).where(InventoryItem.session_id == inv_session.id)
                ).scalars()
            )
            seeds = [s for s in self._baseline(inv_session) if s.lot.id not in seeded_lots]
            batch = seeds if max_items is None else seeds[:max_items]

            errors: list[str] = []
            for seed in batch:
                self.session.add(self._item_from_seed(inv_session, seed, errors))
            self.session.flush()

            complete = len(batch) == len(seeds)
            if complete:
                inv_session.initialized_at = self._clock.now()
            self._store_aggregates(inv_session)

            total = self._item_count(inv_session.id)
            logger.info(
                "session_items_initialized",
                extra={
                    "session_type": inv_session.session_type,
                    "items_created": len(batch),
                    "item_count": total,
                    "complete": complete,
                    "error_count": len(errors),
                },
            )
            return InitializationOutcome(
                inv_session.id, len(batch), total, complete, errors=tuple(errors)
            )

    def record_count(
        self,
        tenant_id: UUID,
        session_id: UUID,
        item_id: UUID,
        counted_quantity: int,
        location: str | None,
        operator_id: UUID,
    ) -> InventoryItem:
        """Record a count.  Retry-safe: the same call twice yields the same item."""
        if counted_quantity is None or counted_quantity < 0:
            raise InvalidQuantityError(
                "quantity_counted", counted_quantity, "counted quantity cannot be negative"
            )
        inv_session = self._open_session(tenant_id, session_id, "count")
        item = self._get_item(inv_session, item_id)

        item.quantity_counted = counted_quantity
        item.actual_location = location
        item.status = (
            ItemStatus.COMPTE.value
            if counted_quantity == item.quantity_theoretical
            else ItemStatus.ECART.value
        )
        item.counted_at = self._clock.now()
        item.operator_id = operator_id
        self.session.flush()

        self._store_aggregates(inv_session)
        logger.info(
            "count_recorded",
            extra={
                "session_id": str(inv_session.id),
                "item_id": str(item.id),
                "quantity_theoretical": item.quantity_theoretical,
                "quantity_counted": counted_quantity,
                "status": item.status,
            },
        )
        return item

    def reset_count(self, tenant_id: UUID, session_id: UUID, item_id: UUID) -> InventoryItem:
        inv_session = self._open_session(tenant_id, session_id, "reset")
        item = self._get_item(inv_session, item_id)

        item.quantity_counted = None
        item.actual_location = None
        item.operator_id = None
        item.counted_at = None
        item.status = ItemStatus.NON_COMPTE.value
        self.session.flush()

        self._store_aggregates(inv_session)
        logger.info(
            "count_reset",
            extra={"session_id": str(inv_session.id), "item_id": str(item.id)},
        )
        return item

    def validate_item(
        self, tenant_id: UUID, session_id: UUID, item_id: UUID, supervisor_id: UUID
    ) -> InventoryItem:
        """Supervisor sign-off on a counted item (compte/ecart -> valide)."""
        inv_session = self._open_session(tenant_id, session_id, "validate")
        item = self._get_item(inv_session, item_id)
        if item.quantity_counted is None:
            raise ItemNotCountedError(str(inv_session.id), str(item.id))

        item.status = ItemStatus.VALIDE.value
        item.operator_id = supervisor_id
        self.session.flush()

        self._store_aggregates(inv_session)
        logger.info(
            "count_validated",
            extra={"session_id": str(inv_session.id), "item_id": str(item.id)},
        )
        return item

    def complete_session(self, tenant_id: UUID, session_id: UUID, actor_id: UUID) -> InventorySession:
        """in_progress -> completed.  Completing twice returns the session unchanged."""
        inv_session = self.get_session(tenant_id, session_id, lock=True)
        if inv_session.is_completed:
            return inv_session

        self._store_aggregates(inv_session)
        inv_session.status = SessionStatus.COMPLETED.value
        inv_session.completed_at = self._clock.now()
        inv_session.updated_by_id = actor_id
        self.session.flush()
        logger.info(
            "inventory_session_completed",
            extra={
                "session_id": str(inv_session.id),
                "items_total": inv_session.items_total,
                "items_counted": inv_session.items_counted,
                "discrepancies": inv_session.discrepancies,
            },
        )
        return inv_session

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    def compute_aggregates(self, session_id: UUID) -> SessionAggregates:
        """Recount the item table.  Read-only."""
        total, counted, discrepancies = self.session.execute(
            select(
                func.count(InventoryItem.id),
                func.coalesce(
                    func.sum(case((InventoryItem.status != ItemStatus.NON_COMPTE.value, 1), else_=0)),
                    0,
                ),
                func.coalesce(
                    func.sum(case((InventoryItem.status == ItemStatus.ECART.value, 1), else_=0)),
                    0,
                ),
            ).where(InventoryItem.session_id == session_id)
        ).one()
        total = int(total)
        counted = int(counted)
        return SessionAggregates(
            items_total=total,
            items_counted=counted,
            discrepancies=int(discrepancies),
            progress_percent=progress_percent(counted, total),
        )

    def _store_aggregates(self, inv_session: InventorySession) -> SessionAggregates:
        aggregates = self.compute_aggregates(inv_session.id)
        inv_session.items_total = aggregates.items_total
        inv_session.items_counted = aggregates.items_counted
        inv_session.discrepancies = aggregates.discrepancies
        inv_session.progress_percent = aggregates.progress_percent
        self.session.flush()
        return aggregates

    def _item_count(self, session_id: UUID) -> int:
        return int(
            self.session.execute(
                select(func.count(InventoryItem.id)).where(InventoryItem.session_id == session_id)
            ).scalar_one()
        )

    # ------------------------------------------------------------------
    # Baselines
    # ------------------------------------------------------------------

    def _baseline(self, inv_session: InventorySession) -> list[ItemSeed]:
        if inv_session.session_type == SessionType.STANDARD.value:
            return self._standard_baseline(inv_session)
        if inv_session.session_type == SessionType.RECEPTION.value:
            return self._reception_baseline(inv_session)
        return self._sales_baseline(inv_session)

    def _standard_baseline(self, inv_session: InventorySession) -> list[ItemSeed]:
        lots = self.session.execute(
            select(Lot)
            .where(
                Lot.tenant_id == inv_session.tenant_id,
                Lot.quantity_remaining > 0,
            )
            .order_by(Lot.product_id, Lot.expiration_date, Lot.lot_number)
        ).scalars()
        return [
            ItemSeed(lot, lot.quantity_remaining, 0, lot.quantity_remaining, "current")
            for lot in lots
        ]

    def _reception_baseline(self, inv_session: InventorySession) -> list[ItemSeed]:
        if inv_session.reception_id is None:
            raise InvalidSessionSourceError(
                str(inv_session.id), inv_session.session_type, "reception_id is missing"
            )
        accepted_rows = self.session.execute(
            select(ReceptionLineApplication.lot_id, func.sum(ReceptionLine.quantity_accepted))
            .join(ReceptionLine, ReceptionLine.id == ReceptionLineApplication.line_id)
            .where(ReceptionLineApplication.reception_id == inv_session.reception_id)
            .group_by(ReceptionLineApplication.lot_id)
        ).all()

        seeds = []
        for lot_id, accepted in accepted_rows:
            lot = self.session.get(Lot, lot_id)
            accepted = int(accepted or 0)
            snapshot = (
                self._reception_snapshot(lot.id, inv_session.reception_id)
                if self.prefer_ledger_snapshot
                else None
            )
            if snapshot is not None:
                initial, movement = snapshot
                seeds.append(ItemSeed(lot, initial, movement, initial + movement, "ledger"))
            else:
                initial = max(0, lot.quantity_remaining - accepted)
                seeds.append(ItemSeed(lot, initial, accepted, initial + accepted, "reconstructed"))
        return seeds

    def _reception_snapshot(self, lot_id: UUID, reception_id: UUID) -> tuple[int, int] | None:
        movements = self.session.execute(
            select(StockMovement)
            .where(
                StockMovement.lot_id == lot_id,
                StockMovement.reference_type == ReferenceType.RECEPTION.value,
                StockMovement.reference_id == reception_id,
                StockMovement.movement_type == MovementType.ENTRY.value,
            )
            .order_by(StockMovement.lot_sequence)
        ).scalars().all()
        if not movements:
            return None
        return movements[0].quantity_before, sum(m.quantity_delta for m in movements)

    def _sales_baseline(self, inv_session: InventorySession) -> list[ItemSeed]:
        if inv_session.sales_session_id is None:
            raise InvalidSessionSourceError(
                str(inv_session.id), inv_session.session_type, "sales_session_id is missing"
            )
        if self.sales_ledger is None:
            raise InvalidSessionSourceError(
                str(inv_session.id), inv_session.session_type, "no sales ledger configured"
            )

        sold_by_lot: dict[UUID, int] = {}
        for sold in self.sales_ledger.aggregate_sales_session(
            inv_session.tenant_id, inv_session.sales_session_id
        ):
            if sold.lot_id is None:
                logger.warning(
                    "sale_line_without_lot_ignored",
                    extra={"product_id": str(sold.product_id), "quantity": sold.quantity},
                )
                continue
            sold_by_lot[sold.lot_id] = sold_by_lot.get(sold.lot_id, 0) + sold.quantity

        seeds = []
        for lot_id, sold in sold_by_lot.items():
            lot = self.session.get(Lot, lot_id)
            if lot is None or lot.tenant_id != inv_session.tenant_id:
                logger.warning("sale_line_unknown_lot_ignored", extra={"lot_id": str(lot_id)})
                continue
            before = (
                self._sales_snapshot(lot.id, inv_session.sales_session_id)
                if self.prefer_ledger_snapshot
                else None
            )
            if before is not None:
                seeds.append(ItemSeed(lot, before, sold, max(0, before - sold), "ledger"))
            else:
                initial = lot.quantity_remaining + sold
                seeds.append(ItemSeed(lot, initial, sold, initial - sold, "reconstructed"))
        return seeds

    def _sales_snapshot(self, lot_id: UUID, sales_session_id: UUID) -> int | None:
        first = self.session.execute(
            select(StockMovement)
            .where(
                StockMovement.lot_id == lot_id,
                StockMovement.reference_type == ReferenceType.SALE.value,
                StockMovement.reference_id == sales_session_id,
                StockMovement.movement_type == MovementType.EXIT.value,
            )
            .order_by(StockMovement.lot_sequence)
            .limit(1)
        ).scalar_one_or_none()
        return None if first is None else first.quantity_before

    def _item_from_seed(
        self, inv_session: InventorySession, seed: ItemSeed, errors: list[str]
    ) -> InventoryItem:
        label, barcode = "", None
        if self.catalog is not None:
            try:
                info = self.catalog.resolve(inv_session.tenant_id, seed.lot.product_id)
                label, barcode = info.name, info.barcode
            except ProductNotResolvedError:
                logger.warning(
                    "inventory_item_product_unresolved",
                    extra={"product_id": str(seed.lot.product_id)},
                )
                errors.append(
                    f"Lot {seed.lot.lot_number}: product {seed.lot.product_id} not found in catalog"
                )
        return InventoryItem(
            session_id=inv_session.id,
            lot_id=seed.lot.id,
            product_id=seed.lot.product_id,
            barcode=barcode,
            product_label=label,
            lot_number=seed.lot.lot_number,
            theoretical_location=seed.lot.location,
            quantity_theoretical=seed.quantity_theoretical,
            quantity_initial=seed.quantity_initial,
            quantity_movement=seed.quantity_movement,
            status=ItemStatus.NON_COMPTE.value,
        )

"""
Module: stock_kernel.selectors.movement_selector
Responsibility: Read-only access to the movement ledger: per-lot history,
    sales volumes over a window, movement statistics, and full ledger
    verification of a lot.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Units sold are derived from exit movements referencing sales, never
      from stored counters.
    - History is ordered by lot_sequence.

Audit relevance:
    verify_lot_ledger() replays a lot's ledger from scratch and reports
    conservation (remaining == sum of signed deltas) and continuity
    (before == previous after, after == before + delta, sequences 1..n).
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import func, select

from stock_kernel.domain.dtos import LedgerVerification, MovementStats, MovementView
from stock_kernel.models.lot import Lot
from stock_kernel.models.movement import MovementType, ReferenceType, StockMovement
from stock_kernel.selectors.base import BaseSelector


class MovementSelector(BaseSelector[StockMovement]):
    """Queries over the stock_movements table."""

    def movements_for_lot(self, tenant_id: UUID, lot_id: UUID) -> list[MovementView]:
        movements = self.session.execute(
            select(StockMovement)
            .where(StockMovement.tenant_id == tenant_id, StockMovement.lot_id == lot_id)
            .order_by(StockMovement.lot_sequence)
        ).scalars()
        return [MovementView.from_model(m) for m in movements]

    def last_movement(self, tenant_id: UUID, lot_id: UUID) -> MovementView | None:
        movement = self.session.execute(
            select(StockMovement)
            .where(StockMovement.tenant_id == tenant_id, StockMovement.lot_id == lot_id)
            .order_by(StockMovement.lot_sequence.desc())
            .limit(1)
        ).scalar_one_or_none()
        return MovementView.from_model(movement) if movement is not None else None

    def last_movement_at_by_product(self, tenant_id: UUID) -> dict[UUID, datetime]:
        rows = self.session.execute(
            select(StockMovement.product_id, func.max(StockMovement.created_at))
            .where(StockMovement.tenant_id == tenant_id)
            .group_by(StockMovement.product_id)
        ).all()
        return {product_id: last for product_id, last in rows}

    def _sold_filter(self, tenant_id: UUID, start: datetime, end: datetime):
        return (
            StockMovement.tenant_id == tenant_id,
            StockMovement.movement_type == MovementType.EXIT.value,
            StockMovement.reference_type == ReferenceType.SALE.value,
            StockMovement.created_at >= start,
            StockMovement.created_at < end,
        )

    def units_sold_by_product(
        self, tenant_id: UUID, start: datetime, end: datetime
    ) -> dict[UUID, int]:
        """Units sold per product in [start, end)."""
        rows = self.session.execute(
            select(StockMovement.product_id, func.sum(StockMovement.quantity_delta))
            .where(*self._sold_filter(tenant_id, start, end))
            .group_by(StockMovement.product_id)
        ).all()
        return {product_id: int(total or 0) for product_id, total in rows}

    def units_sold_for_lot(
        self, tenant_id: UUID, lot_id: UUID, start: datetime, end: datetime
    ) -> int:
        total = self.session.execute(
            select(func.coalesce(func.sum(StockMovement.quantity_delta), 0)).where(
                StockMovement.lot_id == lot_id,
                *self._sold_filter(tenant_id, start, end),
            )
        ).scalar_one()
        return int(total)

    def movement_stats(self, tenant_id: UUID, lot_id: UUID) -> MovementStats:
        entries = exits = adjustments = adjustment_sum = count = 0
        for movement in self.movements_for_lot(tenant_id, lot_id):
            count += 1
            if movement.movement_type == MovementType.ENTRY.value:
                entries += movement.quantity_delta
            elif movement.movement_type == MovementType.EXIT.value:
                exits += movement.quantity_delta
            else:
                adjustments += 1
                adjustment_sum += movement.quantity_delta

        net = entries - exits + adjustment_sum
        if net > 0:
            trend = "increasing"
        elif net < 0:
            trend = "decreasing"
        else:
            trend = "stable"
        return MovementStats(
            lot_id=lot_id,
            total_entries=entries,
            total_exits=exits,
            adjustment_count=adjustments,
            net_movement=net,
            movement_count=count,
            trend=trend,
        )

    def verify_lot_ledger(self, tenant_id: UUID, lot_id: UUID) -> LedgerVerification | None:
        """Replay one lot's ledger.  None if the lot does not exist."""
        lot = self.session.execute(
            select(Lot).where(Lot.id == lot_id, Lot.tenant_id == tenant_id)
        ).scalar_one_or_none()
        if lot is None:
            return None

        movements = self.movements_for_lot(tenant_id, lot_id)
        chain_findings: list[str] = []
        running = 0
        ledger_sum = 0
        for expected_seq, movement in enumerate(movements, start=1):
            if movement.lot_sequence != expected_seq:
                chain_findings.append(
                    f"sequence gap: expected {expected_seq}, found {movement.lot_sequence}"
                )
            if movement.quantity_before != running:
                chain_findings.append(
                    f"movement {movement.lot_sequence}: before {movement.quantity_before} "
                    f"!= previous after {running}"
                )
            if movement.quantity_after != movement.quantity_before + movement.signed_delta:
                chain_findings.append(
                    f"movement {movement.lot_sequence}: after {movement.quantity_after} "
                    f"!= before {movement.quantity_before} + delta {movement.signed_delta}"
                )
            running = movement.quantity_after
            ledger_sum += movement.signed_delta

        if lot.version != len(movements):
            chain_findings.append(f"lot version {lot.version} != movement count {len(movements)}")

        findings = list(chain_findings)
        conserved = ledger_sum == lot.quantity_remaining
        if not conserved:
            findings.append(
                f"quantity_remaining {lot.quantity_remaining} != ledger sum {ledger_sum}"
            )
        return LedgerVerification(
            lot_id=lot.id,
            quantity_remaining=lot.quantity_remaining,
            ledger_sum=ledger_sum,
            movement_count=len(movements),
            conserved=conserved,
            continuous=not chain_findings,
            findings=tuple(findings),
        )

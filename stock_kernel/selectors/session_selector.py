"""
Module: stock_kernel.selectors.session_selector
Responsibility: Read-only access to inventory sessions and items, the
    reconciliation report of a session, and verification of a session's
    cached aggregates against its item table.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Report figures are derived from inventory_items joined to lots;
      cached session aggregates are only ever compared, never trusted.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from sqlalchemy import case, func, select

from stock_kernel.domain.dtos import (
    AggregateCheck,
    ItemView,
    ReconciliationLine,
    ReconciliationReport,
    SessionAggregates,
    SessionView,
)
from stock_kernel.models.inventory import InventoryItem, InventorySession, ItemStatus
from stock_kernel.models.lot import Lot
from stock_kernel.selectors.base import BaseSelector

_HUNDRED = Decimal("100")
_CENT = Decimal("0.01")


class SessionSelector(BaseSelector[InventorySession]):
    """Queries over inventory_sessions and inventory_items."""

    def _session(self, tenant_id: UUID, session_id: UUID) -> InventorySession | None:
        return self.session.execute(
            select(InventorySession).where(
                InventorySession.id == session_id,
                InventorySession.tenant_id == tenant_id,
            )
        ).scalar_one_or_none()

    def get_session(self, tenant_id: UUID, session_id: UUID) -> SessionView | None:
        inv_session = self._session(tenant_id, session_id)
        return SessionView.from_model(inv_session) if inv_session is not None else None

    def list_sessions(self, tenant_id: UUID, status: str | None = None) -> list[SessionView]:
        stmt = select(InventorySession).where(InventorySession.tenant_id == tenant_id)
        if status is not None:
            stmt = stmt.where(InventorySession.status == status)
        sessions = self.session.execute(
            stmt.order_by(InventorySession.started_at.desc())
        ).scalars()
        return [SessionView.from_model(s) for s in sessions]

    def items(self, session_id: UUID, status: str | None = None) -> list[ItemView]:
        stmt = select(InventoryItem).where(InventoryItem.session_id == session_id)
        if status is not None:
            stmt = stmt.where(InventoryItem.status == status)
        items = self.session.execute(
            stmt.order_by(InventoryItem.product_label, InventoryItem.lot_number)
        ).scalars()
        return [ItemView.from_model(item) for item in items]

    def item(self, session_id: UUID, item_id: UUID) -> ItemView | None:
        item = self.session.execute(
            select(InventoryItem).where(
                InventoryItem.id == item_id,
                InventoryItem.session_id == session_id,
            )
        ).scalar_one_or_none()
        return ItemView.from_model(item) if item is not None else None

    def recount(self, session_id: UUID) -> SessionAggregates:
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
        total, counted = int(total), int(counted)
        progress = 0
        if total:
            progress = int(
                (Decimal(counted) * _HUNDRED / Decimal(total)).quantize(
                    Decimal("1"), rounding=ROUND_HALF_UP
                )
            )
        return SessionAggregates(total, counted, int(discrepancies), progress)

    def verify_aggregates(self, tenant_id: UUID, session_id: UUID) -> AggregateCheck | None:
        """Stored aggregates next to a from-scratch recount."""
        inv_session = self._session(tenant_id, session_id)
        if inv_session is None:
            return None
        stored = SessionAggregates(
            items_total=inv_session.items_total,
            items_counted=inv_session.items_counted,
            discrepancies=inv_session.discrepancies,
            progress_percent=inv_session.progress_percent,
        )
        return AggregateCheck(inv_session.id, stored, self.recount(inv_session.id))

    def reconciliation_report(
        self, tenant_id: UUID, session_id: UUID
    ) -> ReconciliationReport | None:
        """
        Per-item quantity and value differences.

        accuracy_rate is the share of counted items whose count matched the
        theoretical quantity, as a percentage with two decimals (100 when
        nothing has been counted yet).
        """
        inv_session = self._session(tenant_id, session_id)
        if inv_session is None:
            return None

        rows = self.session.execute(
            select(InventoryItem, Lot.unit_cost)
            .join(Lot, Lot.id == InventoryItem.lot_id)
            .where(InventoryItem.session_id == inv_session.id)
            .order_by(InventoryItem.product_label, InventoryItem.lot_number)
        ).all()

        lines: list[ReconciliationLine] = []
        counted = exact = discrepancies = 0
        quantity_diff = 0
        value_diff = Decimal("0")
        for item, unit_cost in rows:
            difference = item.difference
            value = None
            if difference is not None:
                counted += 1
                value = Decimal(difference) * unit_cost
                quantity_diff += difference
                value_diff += value
                if difference == 0:
                    exact += 1
                else:
                    discrepancies += 1
            lines.append(
                ReconciliationLine(
                    item_id=item.id,
                    product_id=item.product_id,
                    lot_number=item.lot_number,
                    quantity_theoretical=item.quantity_theoretical,
                    quantity_counted=item.quantity_counted,
                    quantity_difference=difference,
                    unit_cost=unit_cost,
                    value_difference=value,
                    status=item.status,
                )
            )

        accuracy = _HUNDRED
        if counted:
            accuracy = (Decimal(exact) * _HUNDRED / Decimal(counted)).quantize(
                _CENT, rounding=ROUND_HALF_UP
            )
        return ReconciliationReport(
            session_id=inv_session.id,
            lines=tuple(lines),
            items_total=len(rows),
            items_counted=counted,
            items_exact=exact,
            discrepancies=discrepancies,
            total_quantity_difference=quantity_diff,
            total_value_difference=value_diff,
            accuracy_rate=accuracy,
        )

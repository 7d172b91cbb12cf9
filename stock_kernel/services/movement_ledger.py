"""
MovementLedger -- the only writer of lot quantities.

Responsibility:
    Records one movement on one lot: reads the lot under a row lock, checks
    ledger continuity, computes before/after, updates the lot through a
    compare-and-swap, and inserts the movement -- all inside the caller's
    transaction.

Architecture position:
    Kernel > Services -- imperative shell.  Used by LotStore, the reception
    resolver and StockCore.

Invariants enforced:
    - after = before + delta (entry), before - delta (exit),
      before + signed delta (adjustment).
    - after >= 0, otherwise NegativeQuantityError (nothing written).
    - The movement's quantity_before equals the previous movement's
      quantity_after and the lot's quantity_remaining at commit time.
    - Serialization per lot:
        1. SELECT ... FOR UPDATE on the lot row (PostgreSQL).
        2. UPDATE lots SET ... WHERE id = :id AND version = :v AND
           quantity_remaining = :before.  rowcount != 1 means another
           writer got in between -> LedgerIntegrityError.
        3. UNIQUE (lot_id, lot_sequence) on the movement insert.

Failure modes:
    - InvalidQuantityError: non-positive delta for entry/exit, zero delta
      for adjustment, unknown movement type.
    - LotNotFoundError: lot does not exist for the tenant.
    - NegativeQuantityError: the movement would drive remaining below 0.
    - LedgerIntegrityError: broken chain, compare-and-swap miss, or
      sequence collision.  Fatal; never retried.

Usage:
    ledger = MovementLedger(session, clock)
    movement = ledger.record(
        tenant_id=tenant_id,
        lot_id=lot.id,
        product_id=lot.product_id,
        movement_type=MovementType.EXIT,
        delta=3,
        reference=MovementReference(ReferenceType.SALE.value, sale_id),
        actor_id=operator_id,
    )
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from stock_kernel.domain.clock import Clock, SystemClock
from stock_kernel.domain.dtos import MovementReference
from stock_kernel.exceptions import (
    InvalidQuantityError,
    LedgerIntegrityError,
    LotNotFoundError,
    NegativeQuantityError,
)
from stock_kernel.logging_config import get_logger
from stock_kernel.models.lot import Lot
from stock_kernel.models.movement import (
    MovementType,
    StockMovement,
    signed_delta_for,
)
from stock_kernel.services.base import BaseService

logger = get_logger("services.movement_ledger")

_MOVEMENT_TYPES = frozenset(t.value for t in MovementType)


class MovementLedger(BaseService[StockMovement]):
    """
    Append-only movement ledger.

    Contract:
        record() either writes exactly one lot update and one movement, or
        raises and writes nothing of its own.  It never commits.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session)
        self._clock = clock or SystemClock()

    def record(
        self,
        tenant_id: UUID,
        lot_id: UUID,
        product_id: UUID,
        movement_type: MovementType | str,
        delta: int,
        reference: MovementReference,
        actor_id: UUID,
    ) -> StockMovement:
        """
        Record one movement and apply it to the lot.

        Args:
            delta: positive magnitude for entry/exit; signed, non-zero
                change for adjustment.

        Returns:
            The flushed StockMovement.
        """
        kind = movement_type.value if isinstance(movement_type, MovementType) else movement_type
        self._validate_delta(kind, delta)

        lot = self._lock_lot(tenant_id, lot_id)

        if lot.product_id != product_id:
            self._integrity_failure(
                lot,
                expected=None,
                actual=None,
                reason=f"movement product {product_id} does not match lot product {lot.product_id}",
            )

        self._check_continuity(lot)

        before = lot.quantity_remaining
        after = before + signed_delta_for(kind, delta)
        if after < 0:
            logger.warning(
                "movement_rejected_negative",
                extra={
                    "lot_id": str(lot.id),
                    "movement_type": kind,
                    "quantity_before": before,
                    "delta": delta,
                },
            )
            raise NegativeQuantityError(str(lot.id), before, abs(delta))

        now = self._clock.now()
        sequence = self._compare_and_swap(lot, before, after, actor_id, now)

        movement = StockMovement(
            tenant_id=tenant_id,
            lot_id=lot.id,
            product_id=lot.product_id,
            movement_type=kind,
            quantity_before=before,
            quantity_delta=delta,
            quantity_after=after,
            reference_type=reference.reference_type,
            reference_id=reference.reference_id,
            reason=reference.reason,
            lot_sequence=sequence,
            created_at=now,
            actor_id=actor_id,
        )
        self.session.add(movement)
        try:
            self.session.flush()
        except IntegrityError as exc:
            logger.error(
                "movement_sequence_collision",
                extra={"lot_id": str(lot.id), "lot_sequence": sequence},
            )
            raise LedgerIntegrityError(
                str(lot.id),
                expected_before=before,
                actual_before=None,
                reason=f"lot_sequence {sequence} already recorded",
            ) from exc

        logger.info(
            "movement_recorded",
            extra={
                "lot_id": str(lot.id),
                "product_id": str(lot.product_id),
                "movement_type": kind,
                "quantity_before": before,
                "quantity_delta": delta,
                "quantity_after": after,
                "reference_type": reference.reference_type,
                "lot_sequence": sequence,
            },
        )
        return movement

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_delta(kind: str, delta: int) -> None:
        if kind not in _MOVEMENT_TYPES:
            raise InvalidQuantityError("movement_type", 0, f"unknown movement type '{kind}'")
        if kind == MovementType.ADJUSTMENT.value:
            if delta == 0:
                raise InvalidQuantityError("delta", delta, "adjustment delta must be non-zero")
        elif delta <= 0:
            raise InvalidQuantityError("delta", delta, f"{kind} delta must be positive")

    def _lock_lot(self, tenant_id: UUID, lot_id: UUID) -> Lot:
        lot = self.session.execute(
            select(Lot)
            .where(Lot.id == lot_id, Lot.tenant_id == tenant_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if lot is None:
            raise LotNotFoundError(str(lot_id))
        return lot

    def _last_movement(self, lot_id: UUID) -> StockMovement | None:
        return self.session.execute(
            select(StockMovement)
            .where(StockMovement.lot_id == lot_id)
            .order_by(StockMovement.lot_sequence.desc())
            .limit(1)
        ).scalar_one_or_none()

    def _check_continuity(self, lot: Lot) -> None:
        """The lot must agree with the tail of its own ledger."""
        last = self._last_movement(lot.id)
        if last is None:
            if lot.quantity_remaining != 0 or lot.version != 0:
                self._integrity_failure(
                    lot,
                    expected=0,
                    actual=lot.quantity_remaining,
                    reason="lot holds stock but has no movements",
                )
            return

        if last.quantity_after != lot.quantity_remaining:
            self._integrity_failure(
                lot,
                expected=last.quantity_after,
                actual=lot.quantity_remaining,
                reason="lot remaining does not match last movement",
            )
        if last.lot_sequence != lot.version:
            self._integrity_failure(
                lot,
                expected=last.lot_sequence,
                actual=lot.version,
                reason="lot version does not match last movement sequence",
            )

    def _compare_and_swap(self, lot: Lot, before: int, after: int, actor_id: UUID, now) -> int:
        """
        Write the new remaining quantity only if nobody else did first.

        Returns:
            The new lot version, used as the movement's lot_sequence.
        """
        expected_version = lot.version
        new_version = expected_version + 1
        result = self.session.execute(
            update(Lot)
            .where(
                Lot.id == lot.id,
                Lot.version == expected_version,
                Lot.quantity_remaining == before,
            )
            .values(
                quantity_remaining=after,
                version=new_version,
                updated_at=now,
                updated_by_id=actor_id,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self._integrity_failure(
                lot,
                expected=before,
                actual=None,
                reason="concurrent modification detected (compare-and-swap missed)",
            )

        # The ORM instance must not carry a pending change for these fields.
        set_committed_value(lot, "quantity_remaining", after)
        set_committed_value(lot, "version", new_version)
        set_committed_value(lot, "updated_at", now)
        set_committed_value(lot, "updated_by_id", actor_id)
        return new_version

    @staticmethod
    def _integrity_failure(lot: Lot, expected, actual, reason: str):
        logger.error(
            "ledger_integrity_violation",
            extra={
                "lot_id": str(lot.id),
                "expected_before": expected,
                "actual_before": actual,
                "reason": reason,
            },
        )
        raise LedgerIntegrityError(
            str(lot.id),
            expected_before=expected,
            actual_before=actual,
            reason=reason,
        )

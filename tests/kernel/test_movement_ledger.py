"""
Tests for the movement ledger.

Covers:
- Opening entry of a new lot
- Exit / entry / adjustment arithmetic and sequence numbers
- Rejections that write nothing (negative result, bad deltas, unknown lot)
- Detection of a lot that disagrees with its own ledger
- Immutability of movements and of ledger-owned lot fields
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select, text

from stock_kernel.domain.dtos import MovementReference
from stock_kernel.exceptions import (
    ImmutabilityViolationError,
    InvalidQuantityError,
    LedgerIntegrityError,
    LotNotFoundError,
    NegativeQuantityError,
)
from stock_kernel.models.movement import MovementType, ReferenceType, StockMovement
from stock_kernel.selectors import MovementSelector
from stock_kernel.services import MovementLedger

SALE = MovementReference(ReferenceType.SALE.value, uuid4())


def _movement_count(session, lot_id) -> int:
    return session.execute(
        select(func.count(StockMovement.id)).where(StockMovement.lot_id == lot_id)
    ).scalar_one()


@pytest.fixture
def ledger(session, deterministic_clock):
    return MovementLedger(session, deterministic_clock)


@pytest.fixture
def lot(create_product, create_lot):
    return create_lot(create_product(), quantity=100)


class TestOpeningEntry:
    def test_new_lot_has_one_entry_from_zero(self, session, lot, tenant_id):
        movements = MovementSelector(session).movements_for_lot(tenant_id, lot.id)

        assert len(movements) == 1
        opening = movements[0]
        assert opening.movement_type == MovementType.ENTRY.value
        assert opening.quantity_before == 0
        assert opening.quantity_delta == 100
        assert opening.quantity_after == 100
        assert opening.lot_sequence == 1
        assert lot.quantity_initial == 100
        assert lot.quantity_remaining == 100
        assert lot.version == 1


class TestRecord:
    def test_exit_decrements_and_chains(self, session, ledger, lot, tenant_id, test_actor_id):
        movement = ledger.record(
            tenant_id=tenant_id,
            lot_id=lot.id,
            product_id=lot.product_id,
            movement_type=MovementType.EXIT,
            delta=30,
            reference=SALE,
            actor_id=test_actor_id,
        )

        assert movement.quantity_before == 100
        assert movement.quantity_after == 70
        assert movement.lot_sequence == 2
        assert movement.signed_delta == -30
        assert lot.quantity_remaining == 70
        assert lot.version == 2

    def test_adjustment_accepts_signed_delta(self, ledger, lot, tenant_id, test_actor_id):
        reference = MovementReference(ReferenceType.ADJUSTMENT.value, None, "breakage")
        down = ledger.record(
            tenant_id=tenant_id, lot_id=lot.id, product_id=lot.product_id,
            movement_type="adjustment", delta=-5, reference=reference, actor_id=test_actor_id,
        )
        up = ledger.record(
            tenant_id=tenant_id, lot_id=lot.id, product_id=lot.product_id,
            movement_type="adjustment", delta=3, reference=reference, actor_id=test_actor_id,
        )

        assert (down.quantity_before, down.quantity_after) == (100, 95)
        assert (up.quantity_before, up.quantity_after) == (95, 98)
        assert lot.quantity_remaining == 98

    def test_exit_to_exactly_zero_is_allowed(self, ledger, lot, tenant_id, test_actor_id):
        ledger.record(
            tenant_id=tenant_id, lot_id=lot.id, product_id=lot.product_id,
            movement_type=MovementType.EXIT, delta=100, reference=SALE, actor_id=test_actor_id,
        )

        assert lot.quantity_remaining == 0

    def test_ledger_verifies_after_mixed_movements(self, session, ledger, lot, tenant_id, test_actor_id):
        for kind, delta in [("exit", 10), ("entry", 25), ("adjustment", -7), ("exit", 40)]:
            ledger.record(
                tenant_id=tenant_id, lot_id=lot.id, product_id=lot.product_id,
                movement_type=kind, delta=delta, reference=SALE, actor_id=test_actor_id,
            )

        verification = MovementSelector(session).verify_lot_ledger(tenant_id, lot.id)

        assert verification.ok
        assert verification.movement_count == 5
        assert verification.ledger_sum == 68
        assert verification.quantity_remaining == 68


class TestRejections:
    def test_exit_beyond_remaining_writes_nothing(self, session, ledger, lot, tenant_id, test_actor_id):
        with pytest.raises(NegativeQuantityError) as exc_info:
            ledger.record(
                tenant_id=tenant_id, lot_id=lot.id, product_id=lot.product_id,
                movement_type=MovementType.EXIT, delta=101, reference=SALE, actor_id=test_actor_id,
            )

        assert exc_info.value.code == "NEGATIVE_QUANTITY"
        assert exc_info.value.quantity_before == 100
        assert _movement_count(session, lot.id) == 1
        assert lot.quantity_remaining == 100

    def test_negative_adjustment_beyond_remaining(self, ledger, lot, tenant_id, test_actor_id):
        with pytest.raises(NegativeQuantityError):
            ledger.record(
                tenant_id=tenant_id, lot_id=lot.id, product_id=lot.product_id,
                movement_type=MovementType.ADJUSTMENT, delta=-150, reference=SALE,
                actor_id=test_actor_id,
            )

    @pytest.mark.parametrize(
        "kind,delta",
        [("entry", 0), ("exit", -3), ("exit", 0), ("adjustment", 0), ("transfer", 5)],
    )
    def test_invalid_deltas(self, ledger, lot, tenant_id, test_actor_id, kind, delta):
        with pytest.raises(InvalidQuantityError):
            ledger.record(
                tenant_id=tenant_id, lot_id=lot.id, product_id=lot.product_id,
                movement_type=kind, delta=delta, reference=SALE, actor_id=test_actor_id,
            )

    def test_unknown_lot(self, ledger, tenant_id, test_actor_id):
        with pytest.raises(LotNotFoundError):
            ledger.record(
                tenant_id=tenant_id, lot_id=uuid4(), product_id=uuid4(),
                movement_type=MovementType.EXIT, delta=1, reference=SALE, actor_id=test_actor_id,
            )

    def test_other_tenant_cannot_see_lot(self, ledger, lot, test_actor_id):
        with pytest.raises(LotNotFoundError):
            ledger.record(
                tenant_id=uuid4(), lot_id=lot.id, product_id=lot.product_id,
                movement_type=MovementType.EXIT, delta=1, reference=SALE, actor_id=test_actor_id,
            )

    def test_product_mismatch_is_integrity_error(self, ledger, lot, tenant_id, test_actor_id):
        with pytest.raises(LedgerIntegrityError):
            ledger.record(
                tenant_id=tenant_id, lot_id=lot.id, product_id=uuid4(),
                movement_type=MovementType.EXIT, delta=1, reference=SALE, actor_id=test_actor_id,
            )


class TestIntegrityDetection:
    def test_out_of_band_quantity_change_is_detected(self, session, ledger, lot, tenant_id, test_actor_id):
        # Raw SQL bypasses both the ledger and the ORM listeners.
        session.execute(
            text("UPDATE lots SET quantity_remaining = 999 WHERE id = :id"),
            {"id": str(lot.id)},
        )

        with pytest.raises(LedgerIntegrityError) as exc_info:
            ledger.record(
                tenant_id=tenant_id, lot_id=lot.id, product_id=lot.product_id,
                movement_type=MovementType.EXIT, delta=1, reference=SALE, actor_id=test_actor_id,
            )

        assert exc_info.value.expected_before == 100
        assert exc_info.value.actual_before == 999

    def test_verification_reports_broken_conservation(self, session, lot, tenant_id):
        session.execute(
            text("UPDATE lots SET quantity_remaining = 90 WHERE id = :id"),
            {"id": str(lot.id)},
        )
        session.expire_all()

        verification = MovementSelector(session).verify_lot_ledger(tenant_id, lot.id)

        assert not verification.conserved
        assert verification.continuous
        assert not verification.ok
        assert any("ledger sum 100" in finding for finding in verification.findings)


class TestImmutability:
    def test_movement_cannot_be_edited(self, session, lot, tenant_id):
        movement = session.execute(
            select(StockMovement).where(StockMovement.lot_id == lot.id)
        ).scalar_one()
        movement.quantity_delta = 1

        with pytest.raises(ImmutabilityViolationError):
            session.flush()
        session.rollback()

    def test_movement_cannot_be_deleted(self, session, lot):
        movement = session.execute(
            select(StockMovement).where(StockMovement.lot_id == lot.id)
        ).scalar_one()
        session.delete(movement)

        with pytest.raises(ImmutabilityViolationError):
            session.flush()
        session.rollback()

    def test_lot_quantity_cannot_be_edited_through_the_orm(self, session, lot):
        lot.quantity_remaining = 5

        with pytest.raises(ImmutabilityViolationError) as exc_info:
            session.flush()
        assert "quantity_remaining" in str(exc_info.value)
        session.rollback()

    def test_lot_location_is_editable(self, session, lot):
        lot.location = "Shelf B2"
        session.flush()

        assert lot.location == "Shelf B2"
        assert lot.unit_cost == Decimal("2.50")

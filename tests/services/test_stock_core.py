"""
Tests for the StockCore facade.

Covers the end-to-end paths callers use: reception resolution with
validation, chunked commits with retry and resume, counting sessions, and
exits and adjustments.  Every call goes through ``StockCore`` so each unit
of work is its own committed (savepoint) transaction.
"""

from datetime import date, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from stock_config import BatchPolicy, LotPolicy, StockPolicy
from stock_kernel.exceptions import (
    InvalidSessionSourceError,
    LotNotFoundError,
    NegativeQuantityError,
    ReceptionAlreadyValidatedError,
    ReceptionNotFoundError,
    ReceptionValidationError,
    RetryExhaustedError,
    SessionClosedError,
    SessionNotFoundError,
    TransientInfrastructureError,
)
from stock_kernel.services import SqlProductCatalog
from stock_services import chunk_groups
from stock_kernel.domain.dtos import ResolutionGroup


class FlakyCatalog:
    """Catalog that fails ``resolve`` for chosen products a number of times."""

    def __init__(self, inner, failures, make_error):
        self.inner = inner
        self.failures = failures  # product_id -> remaining failures, shared
        self.make_error = make_error

    def resolve(self, tenant_id, product_id):
        if self.failures.get(product_id, 0) > 0:
            self.failures[product_id] -= 1
            raise self.make_error()
        return self.inner.resolve(tenant_id, product_id)

    def update_sale_price(self, tenant_id, product_id, sale_price):
        return self.inner.update_sale_price(tenant_id, product_id, sale_price)

    def list_products(self, tenant_id, family=None):
        return self.inner.list_products(tenant_id, family)

    def list_families(self, tenant_id):
        return self.inner.list_families(tenant_id)


def _flaky_factory(failures, make_error):
    return lambda session: FlakyCatalog(SqlProductCatalog(session), failures, make_error)


@pytest.fixture
def product(create_product):
    return create_product()


# =============================================================================
# Receptions
# =============================================================================


class TestResolveReception:
    def test_repeated_lot_lines_make_one_lot(self, core, ctx, product, make_header, make_line):
        result = core.resolve_reception(
            ctx, make_header(), [make_line(product.id, 30), make_line(product.id, 20)]
        )

        assert result.status == "validated"
        assert result.lots_created == 1
        assert result.movements_written == 1
        assert result.summary == "2 of 2 lines processed"
        assert result.is_complete
        lots = core.lots_for_product(ctx, product.id)
        assert [(lot.lot_number, lot.quantity_remaining) for lot in lots] == [("A1", 50)]
        assert lots[0].reception_id == result.reception_id

    def test_conflicting_repeat_rejected_before_any_write(
        self, core, ctx, product, make_header, make_line
    ):
        reception_id = uuid4()
        lines = [
            make_line(product.id, 30),
            make_line(product.id, 20, expiration_date=date(2025, 12, 31)),
        ]

        with pytest.raises(ReceptionValidationError) as exc_info:
            core.resolve_reception(ctx, make_header(reception_id=reception_id), lines)

        assert exc_info.value.errors == [
            "Line 1: lot A1 repeats line 0 with a different expiration date"
        ]
        assert core.lots_for_product(ctx, product.id) == []
        with pytest.raises(ReceptionNotFoundError):
            core.reception_report(ctx, reception_id)

    def test_warnings_are_carried_on_the_result(self, core, ctx, product, make_header, make_line, today):
        result = core.resolve_reception(
            ctx, make_header(), [make_line(product.id, expiration_date=today + timedelta(days=20))]
        )

        assert result.status == "validated"
        assert "Line 0: product expires in 20 days" in result.warnings

    def test_validation_sees_existing_lots(self, core, ctx, product, create_lot, make_header, make_line):
        create_lot(product, lot_number="A1")

        validation = core.validate_reception(ctx, make_header(), [make_line(product.id)])

        assert validation.is_valid
        assert [w.code for w in validation.warnings] == ["LOT_EXISTS"]

    def test_validated_reception_cannot_be_resolved_again(
        self, core, ctx, product, make_header, make_line
    ):
        header = make_header(reception_id=uuid4())
        core.resolve_reception(ctx, header, [make_line(product.id)])

        with pytest.raises(ReceptionAlreadyValidatedError):
            core.resolve_reception(ctx, header, [make_line(product.id)])

        lots = core.lots_for_product(ctx, product.id)
        assert [lot.quantity_remaining for lot in lots] == [50]

    def test_missing_lot_number_aborts_remaining_lines(
        self, make_core, ctx, create_product, make_header, make_line
    ):
        core = make_core(StockPolicy(lots=LotPolicy(auto_generate_lot_numbers=False)))
        a, b, c = create_product(name="A"), create_product(name="B"), create_product(name="C")

        result = core.resolve_reception(
            ctx,
            make_header(),
            [
                make_line(a.id, 10),
                make_line(b.id, 5, lot_number=None),
                make_line(c.id, 7, lot_number="C1"),
            ],
        )

        assert result.aborted
        assert not result.is_complete
        assert result.status == "draft"
        assert result.summary == "1 of 3 lines processed"
        assert [(e.line_index, e.code) for e in result.errors] == [(1, "MISSING_LOT_NUMBER")]
        assert len(core.lots_for_product(ctx, a.id)) == 1
        assert core.lots_for_product(ctx, c.id) == []

    def test_reception_report(self, core, ctx, create_product, make_header, make_line):
        a, b = create_product(name="A"), create_product(name="B")
        result = core.resolve_reception(
            ctx,
            make_header(),
            [
                make_line(a.id, quantity_ordered=100, quantity_received=100, quantity_accepted=80),
                make_line(
                    b.id,
                    lot_number="B1",
                    quantity_ordered=50,
                    quantity_received=40,
                    quantity_accepted=20,
                    compliance_status="non-conforme",
                    comment="broken seals",
                ),
            ],
        )

        report = core.reception_report(ctx, result.reception_id)

        assert (report.total_ordered, report.total_received, report.total_accepted) == (150, 140, 100)
        assert report.reception_rate == Decimal("93.3")
        assert report.acceptance_rate == Decimal("71.4")
        assert report.conformity_rate == Decimal("50.0")


class TestRetryAndResume:
    def test_transient_failure_is_retried_after_reauthentication(
        self, make_core, ctx, product, make_header, make_line
    ):
        reauthentications = []
        sleeps = []
        core = make_core(
            catalog_factory=_flaky_factory(
                {product.id: 1}, lambda: TransientInfrastructureError("resolve", "token expired")
            ),
            reauthenticate=lambda: reauthentications.append(True),
            sleep=sleeps.append,
        )

        result = core.resolve_reception(ctx, make_header(), [make_line(product.id)])

        assert result.status == "validated"
        assert result.lots_created == 1
        assert reauthentications == [True]
        assert sleeps == [0.5]

    def test_exhausted_retries_leave_a_resumable_draft(
        self, make_core, ctx, product, make_header, make_line
    ):
        reception_id = uuid4()
        flaky = make_core(
            catalog_factory=_flaky_factory(
                {product.id: 10}, lambda: TransientInfrastructureError("resolve", "timeout")
            )
        )

        with pytest.raises(RetryExhaustedError) as exc_info:
            flaky.resolve_reception(
                ctx, make_header(reception_id=reception_id), [make_line(product.id)]
            )
        assert exc_info.value.attempts == 3

        result = make_core().resume_reception(ctx, reception_id)

        assert result.status == "validated"
        assert result.summary == "1 of 1 lines processed"

    def test_failure_mid_reception_keeps_committed_chunks(
        self, make_core, ctx, create_product, make_header, make_line
    ):
        a, b, c = create_product(name="A"), create_product(name="B"), create_product(name="C")
        reception_id = uuid4()
        lines = [
            make_line(a.id, 10),
            make_line(b.id, 5, lot_number="B1"),
            make_line(c.id, 7, lot_number="C1"),
        ]
        failing = make_core(
            StockPolicy(batch=BatchPolicy(chunk_size=1)),
            catalog_factory=_flaky_factory({b.id: 1}, lambda: RuntimeError("catalog down")),
        )

        with pytest.raises(RuntimeError):
            failing.resolve_reception(ctx, make_header(reception_id=reception_id), lines)

        core = make_core()
        assert [lot.quantity_remaining for lot in core.lots_for_product(ctx, a.id)] == [10]
        assert core.lots_for_product(ctx, b.id) == []

        result = core.resume_reception(ctx, reception_id)

        assert result.status == "validated"
        assert result.lots_created == 2
        assert result.summary == "3 of 3 lines processed"
        assert [lot.quantity_remaining for lot in core.lots_for_product(ctx, a.id)] == [10]

    def test_small_chunks_commit_every_line(self, small_chunk_core, ctx, create_product, make_header, make_line):
        products = [create_product(name=f"P{i}") for i in range(3)]

        result = small_chunk_core.resolve_reception(
            ctx, make_header(), [make_line(p.id, 4) for p in products]
        )

        assert result.status == "validated"
        assert result.lots_created == 3
        assert result.movements_written == 3


class TestChunking:
    def _group(self, lines):
        return ResolutionGroup(
            product_id=uuid4(),
            lot_number="X",
            line_ids=tuple(uuid4() for _ in range(lines)),
            line_indexes=tuple(range(lines)),
            quantity_accepted=lines,
            expiration_date=None,
            unit_cost=Decimal("1"),
        )

    def test_groups_are_never_split(self):
        groups = [self._group(3), self._group(1), self._group(1), self._group(2)]

        chunks = list(chunk_groups(groups, 2))

        assert [[len(g.line_ids) for g in chunk] for chunk in chunks] == [[3], [1, 1], [2]]

    def test_no_groups(self):
        assert list(chunk_groups([], 10)) == []


# =============================================================================
# Inventory sessions
# =============================================================================


class TestInventoryThroughFacade:
    def test_count_validate_complete(self, core, ctx, product, create_lot):
        lot = create_lot(product, quantity=40, lot_number="S1")

        view = core.start_session(ctx, "June count", "standard")
        assert core.initialize_session(ctx, view.session_id) == 1
        (item,) = core.session_items(ctx, view.session_id)

        counted = core.record_count(ctx, view.session_id, item.item_id, 38, location="B2")
        assert counted.status == "ecart"
        assert counted.actual_location == "B2"

        report = core.reconciliation_report(ctx, view.session_id)
        assert report.discrepancies == 1
        assert report.total_quantity_difference == -2
        assert report.total_value_difference == Decimal("-5.00")
        assert report.accuracy_rate == 0

        assert core.validate_item(ctx, view.session_id, item.item_id).status == "valide"
        done = core.complete_session(ctx, view.session_id)
        assert done.status == "completed"
        assert done.items_counted == 1
        # A validated item is no longer an open discrepancy.
        assert done.discrepancies == 0
        assert core.reconciliation_report(ctx, view.session_id).discrepancies == 1

        with pytest.raises(SessionClosedError):
            core.record_count(ctx, view.session_id, item.item_id, 40)
        assert core.verify_session_aggregates(ctx, view.session_id).consistent
        # Counting never moves stock.
        assert core.get_lot(ctx, lot.id).quantity_remaining == 40

        assert [s.session_id for s in core.list_sessions(ctx, status="completed")] == [view.session_id]
        assert core.list_sessions(ctx, status="in_progress") == []

    def test_initialize_twice_keeps_items(self, core, ctx, product, create_lot):
        create_lot(product, quantity=5)
        view = core.start_session(ctx, "count", "standard")

        assert core.initialize_session(ctx, view.session_id) == 1
        assert core.initialize_session(ctx, view.session_id) == 1
        assert len(core.session_items(ctx, view.session_id)) == 1

    def test_source_must_match_session(self, core, ctx, product, make_header, make_line):
        result = core.resolve_reception(ctx, make_header(), [make_line(product.id)])
        view = core.start_session(ctx, "after delivery", "reception", reception_id=result.reception_id)

        with pytest.raises(InvalidSessionSourceError):
            core.initialize_session(ctx, view.session_id, source_type="sales")
        with pytest.raises(InvalidSessionSourceError):
            core.initialize_session(ctx, view.session_id, source_ref=uuid4())

        count = core.initialize_session(
            ctx, view.session_id, source_type="reception", source_ref=result.reception_id
        )
        assert count == 1

    def test_reception_session_baseline(self, core, ctx, product, make_header, make_line):
        result = core.resolve_reception(ctx, make_header(), [make_line(product.id)])
        view = core.start_session(ctx, "after delivery", "reception", reception_id=result.reception_id)

        core.initialize_session(ctx, view.session_id)
        (item,) = core.session_items(ctx, view.session_id)

        assert (item.quantity_initial, item.quantity_movement, item.quantity_theoretical) == (0, 50, 50)
        assert item.product_label == "Paracetamol 500mg"

    def test_sales_session_baseline(self, core, ctx, product, create_lot, record_sale_lines):
        lot = create_lot(product, quantity=100)
        sales_session_id = uuid4()
        record_sale_lines(sales_session_id, [(product.id, lot.id, 30)])
        core.record_exit(ctx, lot.id, 30, reference_id=sales_session_id)

        view = core.start_session(ctx, "after sales", "sales", sales_session_id=sales_session_id)
        core.initialize_session(ctx, view.session_id)
        (item,) = core.session_items(ctx, view.session_id)

        assert (item.quantity_initial, item.quantity_movement, item.quantity_theoretical) == (100, 30, 70)

    def test_unknown_session(self, core, ctx):
        missing = uuid4()

        with pytest.raises(SessionNotFoundError):
            core.get_session(ctx, missing)
        with pytest.raises(SessionNotFoundError):
            core.session_items(ctx, missing)
        with pytest.raises(SessionNotFoundError):
            core.reconciliation_report(ctx, missing)


# =============================================================================
# Lots, exits and adjustments
# =============================================================================


class TestExitsAndAdjustments:
    def test_manual_lot_uses_catalog_cost(self, core, ctx, product):
        lot = core.create_manual_lot(ctx, product.id, 20, lot_number="M1")

        assert lot.quantity_initial == lot.quantity_remaining == 20
        assert lot.unit_cost == Decimal("2.50")
        assert lot.reception_id is None

    def test_manual_lot_number_generated(self, core, ctx, product):
        lot = core.create_manual_lot(ctx, product.id, 5)

        assert lot.lot_number.startswith("LOT-20240615-")

    def test_exit_then_adjustments(self, core, ctx, product):
        lot = core.create_manual_lot(ctx, product.id, 20, lot_number="M1")

        assert core.record_exit(ctx, lot.lot_id, 5).quantity_remaining == 15
        assert core.record_adjustment(ctx, lot.lot_id, -3, "inventory discrepancy").quantity_remaining == 12
        assert core.record_adjustment(ctx, lot.lot_id, 2, "found in reserve").quantity_remaining == 14

        stats = core.movement_stats(ctx, lot.lot_id)
        assert stats.total_entries == 20
        assert stats.total_exits == 5
        assert stats.adjustment_count == 2
        verification = core.verify_lot_ledger(ctx, lot.lot_id)
        assert verification.ok
        assert verification.ledger_sum == 14
        assert verification.movement_count == 4

    def test_exit_beyond_remaining_is_rejected(self, core, ctx, product):
        lot = core.create_manual_lot(ctx, product.id, 10, lot_number="M2")

        with pytest.raises(NegativeQuantityError):
            core.record_exit(ctx, lot.lot_id, 11)

        assert core.get_lot(ctx, lot.lot_id).quantity_remaining == 10

    def test_unknown_lot(self, core, ctx):
        with pytest.raises(LotNotFoundError):
            core.get_lot(ctx, uuid4())
        with pytest.raises(LotNotFoundError):
            core.verify_lot_ledger(ctx, uuid4())
        with pytest.raises(LotNotFoundError):
            core.record_exit(ctx, uuid4(), 1)

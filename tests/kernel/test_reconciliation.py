"""
Tests for the inventory ReconciliationEngine.

Covers:
- Count / recount / reset status transitions and cached aggregates
- Standard, reception and sales baselines (ledger snapshot and fallback)
- Resumable, idempotent item seeding
- Session lifecycle and closed-session rejections
- Reconciliation report figures
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from stock_kernel.domain.dtos import MovementReference
from stock_kernel.exceptions import (
    ImmutabilityViolationError,
    InvalidQuantityError,
    InvalidSessionSourceError,
    InventoryItemNotFoundError,
    ItemNotCountedError,
    SessionClosedError,
    SessionNotFoundError,
)
from stock_kernel.models.inventory import ItemStatus, SessionStatus
from stock_kernel.models.movement import MovementType, ReferenceType
from stock_kernel.selectors import SessionSelector
from stock_kernel.services import MovementLedger, ReceptionResolver, ReconciliationEngine
from stock_kernel.services.reconciliation_engine import progress_percent


@pytest.fixture
def engine(session, deterministic_clock, sales_ledger, catalog):
    return ReconciliationEngine(
        session, deterministic_clock, sales_ledger=sales_ledger, catalog=catalog
    )


@pytest.fixture
def selector(session):
    return SessionSelector(session)


@pytest.fixture
def standard_session(engine, tenant_id, test_actor_id):
    """Start and seed a standard session; returns its id."""

    def _start(name="Inventaire annuel"):
        inv = engine.start_session(tenant_id, name, "standard", test_actor_id)
        engine.initialize_session_items(tenant_id, inv.id)
        return inv.id

    return _start


def _only_item(selector, session_id):
    items = selector.items(session_id)
    assert len(items) == 1
    return items[0]


class TestCounting:
    def test_exact_then_off_by_one_then_reset(
        self, engine, selector, standard_session, create_product, create_lot, tenant_id, test_actor_id
    ):
        create_lot(create_product(), quantity=100)
        session_id = standard_session()
        item = _only_item(selector, session_id)
        before = selector.recount(session_id)
        assert before.items_counted == 0

        counted = engine.record_count(tenant_id, session_id, item.item_id, 100, "Shelf A1", test_actor_id)
        assert counted.status == ItemStatus.COMPTE.value
        stored = selector.get_session(tenant_id, session_id)
        assert (stored.items_counted, stored.discrepancies, stored.progress_percent) == (1, 0, 100)

        off = engine.record_count(tenant_id, session_id, item.item_id, 99, "Shelf A1", test_actor_id)
        assert off.status == ItemStatus.ECART.value
        assert selector.get_session(tenant_id, session_id).discrepancies == 1

        reset = engine.reset_count(tenant_id, session_id, item.item_id)
        assert reset.status == ItemStatus.NON_COMPTE.value
        assert reset.quantity_counted is None
        assert reset.actual_location is None
        assert selector.recount(session_id) == before
        assert selector.verify_aggregates(tenant_id, session_id).consistent

    def test_count_writes_no_movement(
        self, session, engine, selector, standard_session, create_product, create_lot, tenant_id, test_actor_id
    ):
        lot = create_lot(create_product(), quantity=20)
        session_id = standard_session()
        item = _only_item(selector, session_id)

        engine.record_count(tenant_id, session_id, item.item_id, 3, None, test_actor_id)

        assert lot.version == 1
        assert lot.quantity_remaining == 20

    def test_recording_same_count_twice_is_stable(
        self, engine, selector, standard_session, create_product, create_lot, tenant_id, test_actor_id
    ):
        create_lot(create_product(), quantity=20)
        session_id = standard_session()
        item = _only_item(selector, session_id)

        engine.record_count(tenant_id, session_id, item.item_id, 18, None, test_actor_id)
        engine.record_count(tenant_id, session_id, item.item_id, 18, None, test_actor_id)

        check = selector.verify_aggregates(tenant_id, session_id)
        assert check.consistent
        assert check.stored.discrepancies == 1

    def test_negative_count_rejected(
        self, engine, selector, standard_session, create_product, create_lot, tenant_id, test_actor_id
    ):
        create_lot(create_product(), quantity=20)
        session_id = standard_session()
        item = _only_item(selector, session_id)

        with pytest.raises(InvalidQuantityError):
            engine.record_count(tenant_id, session_id, item.item_id, -1, None, test_actor_id)

    def test_unknown_item(self, engine, standard_session, tenant_id, test_actor_id):
        session_id = standard_session()

        with pytest.raises(InventoryItemNotFoundError):
            engine.record_count(tenant_id, session_id, uuid4(), 1, None, test_actor_id)

    def test_validate_requires_a_count(
        self, engine, selector, standard_session, create_product, create_lot, tenant_id, test_actor_id
    ):
        create_lot(create_product(), quantity=20)
        session_id = standard_session()
        item = _only_item(selector, session_id)
        supervisor = uuid4()

        with pytest.raises(ItemNotCountedError):
            engine.validate_item(tenant_id, session_id, item.item_id, supervisor)

        engine.record_count(tenant_id, session_id, item.item_id, 20, None, test_actor_id)
        validated = engine.validate_item(tenant_id, session_id, item.item_id, supervisor)

        assert validated.status == ItemStatus.VALIDE.value
        assert validated.operator_id == supervisor
        assert selector.get_session(tenant_id, session_id).items_counted == 1

    @pytest.mark.parametrize(
        "counted,total,expected",
        [(0, 0, 0), (1, 8, 13), (2, 3, 67), (1, 3, 33), (3, 3, 100)],
    )
    def test_progress_rounds_half_up(self, counted, total, expected):
        assert progress_percent(counted, total) == expected


class TestStandardBaseline:
    def test_seeds_lots_with_stock_only(
        self, engine, selector, create_product, create_lot, lot_store, tenant_id, test_actor_id
    ):
        product = create_product()
        kept = create_lot(product, quantity=15, location="Reserve")
        emptied = create_lot(product, quantity=5)
        lot_store.decrement_lot(
            tenant_id, emptied.id, 5, test_actor_id,
            MovementReference(ReferenceType.SALE.value, uuid4()),
        )

        inv = engine.start_session(tenant_id, "Tournant", "standard", test_actor_id)
        outcome = engine.initialize_session_items(tenant_id, inv.id)

        assert outcome.items_created == 1
        assert outcome.complete
        item = _only_item(selector, inv.id)
        assert item.lot_id == kept.id
        assert item.quantity_initial == 15
        assert item.quantity_movement == 0
        assert item.quantity_theoretical == 15
        assert item.theoretical_location == "Reserve"
        assert item.product_label == "Paracetamol 500mg"

    def test_unresolved_product_is_seeded_and_reported(
        self, session, engine, selector, create_product, create_lot, tenant_id, test_actor_id
    ):
        known = create_product(name="Ibuprofene 400mg")
        gone = create_product(name="Retired")
        create_lot(known, quantity=4, lot_number="K1")
        orphan = create_lot(gone, quantity=6, lot_number="R1")
        session.delete(gone)
        session.flush()

        inv = engine.start_session(tenant_id, "Tournant", "standard", test_actor_id)
        outcome = engine.initialize_session_items(tenant_id, inv.id)

        assert outcome.items_created == 2
        assert outcome.errors == (
            f"Lot R1: product {orphan.product_id} not found in catalog",
        )
        labels = {item.lot_number: item.product_label for item in selector.items(inv.id)}
        assert labels == {"K1": "Ibuprofene 400mg", "R1": ""}
        # A second pass seeds nothing and reports nothing.
        assert engine.initialize_session_items(tenant_id, inv.id).errors == ()

    def test_seeding_in_chunks_resumes(
        self, engine, create_product, create_lot, tenant_id, test_actor_id
    ):
        product = create_product()
        for _ in range(3):
            create_lot(product, quantity=4)
        inv = engine.start_session(tenant_id, "Chunked", "standard", test_actor_id)

        first = engine.initialize_session_items(tenant_id, inv.id, max_items=2)
        second = engine.initialize_session_items(tenant_id, inv.id, max_items=2)
        third = engine.initialize_session_items(tenant_id, inv.id, max_items=2)

        assert (first.items_created, first.item_count, first.complete) == (2, 2, False)
        assert (second.items_created, second.item_count, second.complete) == (1, 3, True)
        assert (third.items_created, third.item_count, third.complete) == (0, 3, True)
        assert inv.initialized_at is not None
        assert inv.items_total == 3


class TestReceptionBaseline:
    @pytest.fixture
    def received_lot(self, session, catalog, deterministic_clock, create_product, create_lot,
                     make_header, make_line, tenant_id, test_actor_id):
        """Shared lot of 10 receiving 50 more, then selling 5."""
        product = create_product()
        lot = create_lot(product, quantity=10, lot_number="A1")
        resolver = ReceptionResolver(session, catalog, deterministic_clock)
        result = resolver.resolve(tenant_id, make_header(), [make_line(product.id, 50)], test_actor_id)
        MovementLedger(session, deterministic_clock).record(
            tenant_id=tenant_id, lot_id=lot.id, product_id=product.id,
            movement_type=MovementType.EXIT, delta=5,
            reference=MovementReference(ReferenceType.SALE.value, uuid4()),
            actor_id=test_actor_id,
        )
        return lot, result.reception_id

    def test_ledger_snapshot(self, engine, selector, received_lot, tenant_id, test_actor_id):
        lot, reception_id = received_lot
        inv = engine.start_session(tenant_id, "Controle reception", "reception", test_actor_id,
                                   reception_id=reception_id)
        engine.initialize_session_items(tenant_id, inv.id)

        item = _only_item(selector, inv.id)
        assert item.lot_id == lot.id
        assert item.quantity_initial == 10
        assert item.quantity_movement == 50
        assert item.quantity_theoretical == 60

    def test_reconstruction_fallback(
        self, session, deterministic_clock, selector, received_lot, tenant_id, test_actor_id
    ):
        lot, reception_id = received_lot
        engine = ReconciliationEngine(session, deterministic_clock, prefer_ledger_snapshot=False)
        inv = engine.start_session(tenant_id, "Controle reception", "reception", test_actor_id,
                                   reception_id=reception_id)
        engine.initialize_session_items(tenant_id, inv.id)

        item = _only_item(selector, inv.id)
        assert item.quantity_initial == 5
        assert item.quantity_movement == 50
        assert item.quantity_theoretical == 55


class TestSalesBaseline:
    @pytest.fixture
    def sold_lot(self, session, deterministic_clock, create_product, create_lot, record_sale_lines,
                 tenant_id, test_actor_id):
        """Lot of 100, 30 sold in one sales session, then 10 written off."""
        product = create_product()
        lot = create_lot(product, quantity=100)
        sales_session_id = uuid4()
        ledger = MovementLedger(session, deterministic_clock)
        ledger.record(
            tenant_id=tenant_id, lot_id=lot.id, product_id=product.id,
            movement_type=MovementType.EXIT, delta=30,
            reference=MovementReference(ReferenceType.SALE.value, sales_session_id),
            actor_id=test_actor_id,
        )
        ledger.record(
            tenant_id=tenant_id, lot_id=lot.id, product_id=product.id,
            movement_type=MovementType.ADJUSTMENT, delta=-10,
            reference=MovementReference(ReferenceType.ADJUSTMENT.value, None, "breakage"),
            actor_id=test_actor_id,
        )
        record_sale_lines(sales_session_id, [(product.id, lot.id, 30), (product.id, None, 2)])
        return lot, sales_session_id

    def test_ledger_snapshot(self, engine, selector, sold_lot, tenant_id, test_actor_id):
        lot, sales_session_id = sold_lot
        inv = engine.start_session(tenant_id, "Apres ventes", "sales", test_actor_id,
                                   sales_session_id=sales_session_id)
        engine.initialize_session_items(tenant_id, inv.id)

        item = _only_item(selector, inv.id)
        assert item.quantity_initial == 100
        assert item.quantity_movement == 30
        assert item.quantity_theoretical == 70

    def test_reconstruction_fallback(
        self, session, deterministic_clock, sales_ledger, selector, sold_lot, tenant_id, test_actor_id
    ):
        lot, sales_session_id = sold_lot
        engine = ReconciliationEngine(
            session, deterministic_clock, sales_ledger=sales_ledger, prefer_ledger_snapshot=False
        )
        inv = engine.start_session(tenant_id, "Apres ventes", "sales", test_actor_id,
                                   sales_session_id=sales_session_id)
        engine.initialize_session_items(tenant_id, inv.id)

        item = _only_item(selector, inv.id)
        assert item.quantity_initial == 90
        assert item.quantity_theoretical == 60

    def test_no_sales_ledger_configured(self, session, deterministic_clock, tenant_id, test_actor_id):
        engine = ReconciliationEngine(session, deterministic_clock)
        inv = engine.start_session(tenant_id, "Apres ventes", "sales", test_actor_id,
                                   sales_session_id=uuid4())

        with pytest.raises(InvalidSessionSourceError):
            engine.initialize_session_items(tenant_id, inv.id)


class TestSessionSources:
    def test_unknown_type(self, engine, tenant_id, test_actor_id):
        with pytest.raises(InvalidSessionSourceError):
            engine.start_session(tenant_id, "X", "monthly", test_actor_id)

    def test_reception_type_needs_reception(self, engine, tenant_id, test_actor_id):
        with pytest.raises(InvalidSessionSourceError):
            engine.start_session(tenant_id, "X", "reception", test_actor_id)
        with pytest.raises(InvalidSessionSourceError) as exc_info:
            engine.start_session(tenant_id, "X", "reception", test_actor_id, reception_id=uuid4())
        assert "not found" in exc_info.value.reason

    def test_sales_type_needs_sales_session(self, engine, tenant_id, test_actor_id):
        with pytest.raises(InvalidSessionSourceError):
            engine.start_session(tenant_id, "X", "sales", test_actor_id)

    def test_unknown_session(self, engine, tenant_id):
        with pytest.raises(SessionNotFoundError):
            engine.initialize_session_items(tenant_id, uuid4())


class TestCompletion:
    def test_completed_session_rejects_changes(
        self, engine, selector, standard_session, create_product, create_lot, tenant_id, test_actor_id
    ):
        create_lot(create_product(), quantity=20)
        session_id = standard_session()
        item = _only_item(selector, session_id)
        engine.record_count(tenant_id, session_id, item.item_id, 20, None, test_actor_id)

        completed = engine.complete_session(tenant_id, session_id, test_actor_id)
        assert completed.status == SessionStatus.COMPLETED.value
        assert completed.completed_at is not None

        with pytest.raises(SessionClosedError) as exc_info:
            engine.record_count(tenant_id, session_id, item.item_id, 19, None, test_actor_id)
        assert exc_info.value.operation == "count"
        with pytest.raises(SessionClosedError):
            engine.reset_count(tenant_id, session_id, item.item_id)
        with pytest.raises(SessionClosedError):
            engine.validate_item(tenant_id, session_id, item.item_id, test_actor_id)
        with pytest.raises(SessionClosedError):
            engine.initialize_session_items(tenant_id, session_id)

    def test_complete_twice_is_a_no_op(self, engine, standard_session, tenant_id, test_actor_id):
        session_id = standard_session()
        first = engine.complete_session(tenant_id, session_id, test_actor_id)
        completed_at = first.completed_at

        again = engine.complete_session(tenant_id, session_id, test_actor_id)

        # SQLite hands datetimes back without tzinfo
        assert again.completed_at.replace(tzinfo=None) == completed_at.replace(tzinfo=None)
        assert again.status == SessionStatus.COMPLETED.value

    def test_completed_session_row_is_frozen(self, session, engine, standard_session, tenant_id, test_actor_id):
        session_id = standard_session()
        completed = engine.complete_session(tenant_id, session_id, test_actor_id)

        completed.name = "renamed"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()
        session.rollback()


class TestReport:
    def test_report_figures(
        self, engine, selector, standard_session, create_product, create_lot, tenant_id, test_actor_id
    ):
        product = create_product()
        create_lot(product, quantity=10, lot_number="R1", unit_cost=Decimal("2.00"))
        create_lot(product, quantity=20, lot_number="R2", unit_cost=Decimal("1.50"))
        create_lot(product, quantity=30, lot_number="R3")
        session_id = standard_session()
        items = {i.lot_number: i for i in selector.items(session_id)}

        engine.record_count(tenant_id, session_id, items["R1"].item_id, 10, None, test_actor_id)
        engine.record_count(tenant_id, session_id, items["R2"].item_id, 16, None, test_actor_id)

        report = selector.reconciliation_report(tenant_id, session_id)

        assert report.items_total == 3
        assert report.items_counted == 2
        assert report.items_exact == 1
        assert report.discrepancies == 1
        assert report.total_quantity_difference == -4
        assert report.total_value_difference == Decimal("-6.00")
        assert report.accuracy_rate == Decimal("50.00")
        uncounted = next(line for line in report.lines if line.lot_number == "R3")
        assert uncounted.quantity_difference is None
        assert uncounted.value_difference is None

    def test_accuracy_is_full_when_nothing_counted(
        self, selector, standard_session, create_product, create_lot, tenant_id
    ):
        create_lot(create_product(), quantity=10)
        session_id = standard_session()

        report = selector.reconciliation_report(tenant_id, session_id)

        assert report.accuracy_rate == Decimal("100")
        assert report.items_counted == 0

    def test_list_sessions_by_status(self, engine, selector, standard_session, tenant_id, test_actor_id):
        open_id = standard_session("Open")
        closed_id = standard_session("Closed")
        engine.complete_session(tenant_id, closed_id, test_actor_id)

        in_progress = selector.list_sessions(tenant_id, status="in_progress")

        assert [s.session_id for s in in_progress] == [open_id]
        assert len(selector.list_sessions(tenant_id)) == 2

"""
stock_services.stock_core -- the public facade of the stock core.

Responsibility:
    Exposes every externally callable operation (reception resolution,
    counting sessions, exits and adjustments, rotation and risk analysis)
    and owns the transaction boundaries around them.  Each operation runs
    in one or more ``session_scope`` transactions; kernel services inside
    only flush.

Architecture position:
    Services -- top of the stack.  The only layer that reads
    ``stock_config``, maps policy onto kernel constructor arguments and
    commits.

Invariants enforced:
    - Reception lines are applied in chunks of ``batch.chunk_size`` lines,
      one committed transaction per chunk.  A failure leaves earlier chunks
      applied and the reception in ``draft``; ``resume_reception`` picks up
      the pending lines.
    - Reception chunks, session seeding, counts, resets and reads are
      retried on transient infrastructure failures (with the
      re-authentication hook).  Exits, adjustments and lot or session
      creation are not idempotent and run exactly once.
    - Results leave the facade as frozen DTOs, never as ORM instances.

Failure modes:
    - ReceptionValidationError: the reception failed validation; nothing
      was written.
    - RetryExhaustedError: a transient failure outlived the retry budget;
      committed chunks stand.
    - Any kernel error (NegativeQuantityError, SessionClosedError,
      LedgerIntegrityError, ...) propagates unchanged.

Usage:
    core = StockCore(get_session_factory(), policy=get_active_config())
    ctx = OperatorContext(tenant_id=tenant, operator_id=user)
    result = core.resolve_reception(ctx, header, lines)
    if not result.is_complete:
        report(result.summary, result.errors)
"""

from __future__ import annotations

import dataclasses
import time
from contextlib import contextmanager
from datetime import date
from decimal import Decimal
from typing import Callable, Iterator, Sequence, TypeVar
from uuid import UUID, uuid4

from sqlalchemy.orm import Session, sessionmaker

from stock_config import StockPolicy, get_active_config
from stock_engines.expiration import ExpirationRisk
from stock_engines.fifo import FifoAnalysis
from stock_engines.lot_metrics import LotMetrics
from stock_engines.reception_validation import (
    ReceptionContext,
    ReceptionReport,
    ReceptionValidation,
    ReceptionValidationEngine,
)
from stock_engines.rotation import RotationAnalysis
from stock_kernel.db.engine import session_scope
from stock_kernel.domain.clock import Clock, SystemClock
from stock_kernel.domain.collaborators import ProductCatalog, SalesLedger
from stock_kernel.domain.dtos import (
    AggregateCheck,
    ChunkOutcome,
    ItemView,
    LedgerVerification,
    LotSpec,
    LotView,
    MovementReference,
    MovementStats,
    OperatorContext,
    ReceptionHeaderInput,
    ReceptionLineInput,
    ReceptionResult,
    ReconciliationReport,
    ResolutionGroup,
    SessionView,
)
from stock_kernel.exceptions import (
    InvalidSessionSourceError,
    LotNotFoundError,
    ReceptionValidationError,
    SessionNotFoundError,
)
from stock_kernel.logging_config import LogContext, get_logger
from stock_kernel.models.movement import ReferenceType
from stock_kernel.selectors import LotSelector, MovementSelector, SessionSelector
from stock_kernel.services import (
    LotStore,
    MovementLedger,
    ReceptionResolver,
    ReconciliationEngine,
    RetryService,
    SqlProductCatalog,
    SqlSalesLedger,
)
from stock_services.export import export_rotation
from stock_services.risk_service import ExpirationAlert, RiskService, StockoutForecast
from stock_services.rotation_service import RotationFilters, RotationService, RotationWindow

logger = get_logger("services.stock_core")

T = TypeVar("T")


def chunk_groups(
    groups: Sequence[ResolutionGroup], chunk_size: int
) -> Iterator[list[ResolutionGroup]]:
    """
    Split groups into chunks of about ``chunk_size`` lines.

    A group is never split: its lines share one lot and one movement.
    """
    chunk: list[ResolutionGroup] = []
    lines = 0
    for group in groups:
        chunk.append(group)
        lines += len(group.line_ids)
        if lines >= chunk_size:
            yield chunk
            chunk, lines = [], 0
    if chunk:
        yield chunk


class StockServices:
    """
    Kernel services wired over one session.

    Built once per transaction by StockCore.unit_of_work(); every service
    shares the same Session and Clock.
    """

    def __init__(
        self,
        session: Session,
        policy: StockPolicy,
        clock: Clock,
        catalog: ProductCatalog,
        sales_ledger: SalesLedger,
    ):
        self.session = session
        self.catalog = catalog
        self.ledger = MovementLedger(session, clock)
        self.lot_store = LotStore(
            session,
            clock,
            ledger=self.ledger,
            auto_generate_lot_numbers=policy.lots.auto_generate_lot_numbers,
            lot_number_prefix=policy.lots.lot_number_prefix,
        )
        self.resolver = ReceptionResolver(
            session,
            catalog,
            clock,
            lot_store=self.lot_store,
            one_lot_per_reception=policy.lots.one_lot_per_reception,
            missing_lot_number_action=policy.lots.missing_lot_number_action,
        )
        self.reconciliation = ReconciliationEngine(
            session,
            clock,
            sales_ledger=sales_ledger,
            catalog=catalog,
            prefer_ledger_snapshot=policy.reconciliation.prefer_ledger_snapshot,
        )
        self.lot_selector = LotSelector(session)
        self.movement_selector = MovementSelector(session)
        self.session_selector = SessionSelector(session)
        self.rotation = RotationService(session, catalog, policy.rotation)
        self.risk = RiskService(session, clock, policy)


class StockCore:
    """
    Facade over the stock kernel.

    Contract:
        Every public method takes the OperatorContext established by the
        caller's authentication layer.  Tenant scoping and attribution come
        from it; nothing here authenticates.

    Non-goals:
        - Does NOT apply inventory discrepancies to lots; that is an
          explicit adjustment (record_adjustment).
        - Does NOT render or deliver alerts.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        policy: StockPolicy | None = None,
        clock: Clock | None = None,
        catalog_factory: Callable[[Session], ProductCatalog] = SqlProductCatalog,
        sales_ledger_factory: Callable[[Session], SalesLedger] = SqlSalesLedger,
        reauthenticate: Callable[[], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._session_factory = session_factory
        self.policy = policy or get_active_config()
        self._clock = clock or SystemClock()
        self._catalog_factory = catalog_factory
        self._sales_ledger_factory = sales_ledger_factory
        self._reauthenticate = reauthenticate
        self.retry = RetryService(
            max_attempts=self.policy.retry.max_attempts,
            backoff_seconds=self.policy.retry.backoff_seconds,
            sleep=sleep,
        )
        self.validation_engine = ReceptionValidationEngine()

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def unit_of_work(self) -> Iterator[StockServices]:
        """One committed transaction with its services."""
        with session_scope(self._session_factory) as session:
            yield StockServices(
                session,
                self.policy,
                self._clock,
                self._catalog_factory(session),
                self._sales_ledger_factory(session),
            )

    def _run(
        self,
        operation: str,
        work: Callable[[StockServices], T],
        retry: bool = True,
    ) -> T:
        def attempt() -> T:
            with self.unit_of_work() as services:
                return work(services)

        if not retry:
            return attempt()
        return self.retry.run(operation, attempt, reauthenticate=self._reauthenticate)

    @staticmethod
    def _bind(ctx: OperatorContext, **extra: str | None):
        return LogContext.bind(
            correlation_id=ctx.correlation_id,
            tenant_id=str(ctx.tenant_id),
            operator_id=str(ctx.operator_id),
            **extra,
        )

    # ------------------------------------------------------------------
    # Receptions
    # ------------------------------------------------------------------

    def validate_reception(
        self,
        ctx: OperatorContext,
        header: ReceptionHeaderInput,
        lines: Sequence[ReceptionLineInput],
    ) -> ReceptionValidation:
        """Errors, warnings and suggestions for a reception; writes nothing."""
        product_ids = sorted({line.product_id for line in lines}, key=str)

        def read_context(services: StockServices) -> ReceptionContext:
            return ReceptionContext(
                existing_lots=services.lot_selector.existing_lot_keys(ctx.tenant_id, product_ids),
                average_shelf_life_days=services.lot_selector.average_shelf_life_days(
                    ctx.tenant_id, product_ids
                ),
            )

        context = self._run("reception_context", read_context)
        return self.validation_engine.validate(
            header=header, lines=lines, today=self._clock.today(), context=context
        )

    def resolve_reception(
        self,
        ctx: OperatorContext,
        header: ReceptionHeaderInput,
        lines: Sequence[ReceptionLineInput],
    ) -> ReceptionResult:
        """
        Validate, persist and apply a reception.

        The reception id is fixed before the first write, so a retried
        creation finds its own draft instead of creating a second one.

        Raises:
            ReceptionValidationError: validation errors; nothing written.
        """
        if header.reception_id is None:
            header = dataclasses.replace(header, reception_id=uuid4())
        reception_id = header.reception_id

        with self._bind(ctx, reception_id=str(reception_id)):
            validation = self.validate_reception(ctx, header, lines)
            if not validation.is_valid:
                logger.warning(
                    "reception_validation_failed",
                    extra={"error_count": len(validation.errors)},
                )
                raise ReceptionValidationError(str(reception_id), validation.error_messages)

            self._run(
                "reception_create",
                lambda s: s.resolver.create_reception(
                    ctx.tenant_id, header, lines, ctx.operator_id
                ).id,
            )
            return self._apply_pending(ctx, reception_id, validation.warning_messages)

    def resume_reception(self, ctx: OperatorContext, reception_id: UUID) -> ReceptionResult:
        """Apply the lines a previous resolution left pending."""
        with self._bind(ctx, reception_id=str(reception_id)):
            logger.info("reception_resume_requested")
            return self._apply_pending(ctx, reception_id, ())

    def _apply_pending(
        self,
        ctx: OperatorContext,
        reception_id: UUID,
        warnings: Sequence[str],
    ) -> ReceptionResult:
        plan = self._run("reception_plan", lambda s: s.resolver.plan(ctx.tenant_id, reception_id))

        outcomes: list[ChunkOutcome] = []
        for number, chunk in enumerate(chunk_groups(plan.groups, self.policy.batch.chunk_size), 1):
            outcome = self._run(
                "reception_chunk",
                lambda s, chunk=chunk: s.resolver.apply_groups(
                    ctx.tenant_id, reception_id, chunk, ctx.operator_id
                ),
            )
            outcomes.append(outcome)
            logger.info(
                "reception_chunk_committed",
                extra={
                    "chunk": number,
                    "groups": len(chunk),
                    "lines_processed": outcome.lines_processed,
                    "aborted": outcome.aborted,
                },
            )
            if outcome.aborted:
                break

        def finish(services: StockServices) -> ReceptionResult:
            services.resolver.finalize(ctx.tenant_id, reception_id, ctx.operator_id)
            return services.resolver.build_result(ctx.tenant_id, reception_id, outcomes, warnings)

        return self._run("reception_finalize", finish)

    def reception_report(self, ctx: OperatorContext, reception_id: UUID) -> ReceptionReport:
        def read_lines(services: StockServices) -> list[ReceptionLineInput]:
            reception = services.resolver.get_reception(ctx.tenant_id, reception_id)
            return [
                ReceptionLineInput(
                    product_id=line.product_id,
                    quantity_ordered=line.quantity_ordered,
                    quantity_received=line.quantity_received,
                    quantity_accepted=line.quantity_accepted,
                    lot_number=line.lot_number,
                    expiration_date=line.expiration_date,
                    unit_cost=line.unit_cost,
                    compliance_status=line.compliance_status,
                    comment=line.comment,
                )
                for line in reception.lines
            ]

        return self.validation_engine.report(lines=self._run("reception_report", read_lines))

    # ------------------------------------------------------------------
    # Inventory sessions
    # ------------------------------------------------------------------

    def start_session(
        self,
        ctx: OperatorContext,
        name: str,
        session_type: str,
        reception_id: UUID | None = None,
        sales_session_id: UUID | None = None,
    ) -> SessionView:
        with self._bind(ctx):
            return self._run(
                "session_start",
                lambda s: SessionView.from_model(
                    s.reconciliation.start_session(
                        ctx.tenant_id,
                        name,
                        session_type,
                        ctx.operator_id,
                        reception_id=reception_id,
                        sales_session_id=sales_session_id,
                    )
                ),
                retry=False,
            )

    def initialize_session(
        self,
        ctx: OperatorContext,
        session_id: UUID,
        source_type: str | None = None,
        source_ref: UUID | None = None,
    ) -> int:
        """
        Seed the session's items in committed chunks; returns the item count.

        ``source_type`` / ``source_ref``, when given, must match what the
        session was started with.  Calling again on a seeded session
        returns the existing count.
        """
        with self._bind(ctx, session_id=str(session_id)):
            if source_type is not None or source_ref is not None:
                self._check_source(ctx, session_id, source_type, source_ref)

            chunk_size = self.policy.batch.chunk_size
            while True:
                outcome = self._run(
                    "session_initialize",
                    lambda s: s.reconciliation.initialize_session_items(
                        ctx.tenant_id, session_id, max_items=chunk_size
                    ),
                )
                if outcome.complete:
                    return outcome.item_count

    def _check_source(
        self,
        ctx: OperatorContext,
        session_id: UUID,
        source_type: str | None,
        source_ref: UUID | None,
    ) -> None:
        view = self.get_session(ctx, session_id)
        if source_type is not None and source_type != view.session_type:
            raise InvalidSessionSourceError(
                str(session_id), source_type, f"session was started as {view.session_type}"
            )
        if source_ref is not None and source_ref not in (view.reception_id, view.sales_session_id):
            raise InvalidSessionSourceError(
                str(session_id), view.session_type, f"session is not linked to {source_ref}"
            )

    def record_count(
        self,
        ctx: OperatorContext,
        session_id: UUID,
        item_id: UUID,
        counted_quantity: int,
        location: str | None = None,
    ) -> ItemView:
        with self._bind(ctx, session_id=str(session_id)):
            return self._run(
                "record_count",
                lambda s: ItemView.from_model(
                    s.reconciliation.record_count(
                        ctx.tenant_id,
                        session_id,
                        item_id,
                        counted_quantity,
                        location,
                        ctx.operator_id,
                    )
                ),
            )

    def reset_count(self, ctx: OperatorContext, session_id: UUID, item_id: UUID) -> ItemView:
        with self._bind(ctx, session_id=str(session_id)):
            return self._run(
                "reset_count",
                lambda s: ItemView.from_model(
                    s.reconciliation.reset_count(ctx.tenant_id, session_id, item_id)
                ),
            )

    def validate_item(self, ctx: OperatorContext, session_id: UUID, item_id: UUID) -> ItemView:
        """Supervisor sign-off of a counted item."""
        with self._bind(ctx, session_id=str(session_id)):
            return self._run(
                "validate_item",
                lambda s: ItemView.from_model(
                    s.reconciliation.validate_item(
                        ctx.tenant_id, session_id, item_id, ctx.operator_id
                    )
                ),
            )

    def complete_session(self, ctx: OperatorContext, session_id: UUID) -> SessionView:
        with self._bind(ctx, session_id=str(session_id)):
            return self._run(
                "complete_session",
                lambda s: SessionView.from_model(
                    s.reconciliation.complete_session(ctx.tenant_id, session_id, ctx.operator_id)
                ),
            )

    def get_session(self, ctx: OperatorContext, session_id: UUID) -> SessionView:
        view = self._run(
            "get_session", lambda s: s.session_selector.get_session(ctx.tenant_id, session_id)
        )
        if view is None:
            raise SessionNotFoundError(str(session_id))
        return view

    def list_sessions(self, ctx: OperatorContext, status: str | None = None) -> list[SessionView]:
        """Sessions of the tenant, newest first."""
        return self._run(
            "list_sessions", lambda s: s.session_selector.list_sessions(ctx.tenant_id, status)
        )

    def session_items(
        self, ctx: OperatorContext, session_id: UUID, status: str | None = None
    ) -> list[ItemView]:
        self.get_session(ctx, session_id)
        return self._run("session_items", lambda s: s.session_selector.items(session_id, status))

    def reconciliation_report(self, ctx: OperatorContext, session_id: UUID) -> ReconciliationReport:
        report = self._run(
            "reconciliation_report",
            lambda s: s.session_selector.reconciliation_report(ctx.tenant_id, session_id),
        )
        if report is None:
            raise SessionNotFoundError(str(session_id))
        return report

    def verify_session_aggregates(self, ctx: OperatorContext, session_id: UUID) -> AggregateCheck:
        check = self._run(
            "verify_aggregates",
            lambda s: s.session_selector.verify_aggregates(ctx.tenant_id, session_id),
        )
        if check is None:
            raise SessionNotFoundError(str(session_id))
        if not check.consistent:
            logger.error(
                "session_aggregates_drifted",
                extra={
                    "session_id": str(session_id),
                    "stored": dataclasses.asdict(check.stored),
                    "recomputed": dataclasses.asdict(check.recomputed),
                },
            )
        return check

    # ------------------------------------------------------------------
    # Lots and movements
    # ------------------------------------------------------------------

    def get_lot(self, ctx: OperatorContext, lot_id: UUID) -> LotView:
        lot = self._run("get_lot", lambda s: s.lot_selector.get(ctx.tenant_id, lot_id))
        if lot is None:
            raise LotNotFoundError(str(lot_id))
        return lot

    def record_exit(
        self,
        ctx: OperatorContext,
        lot_id: UUID,
        quantity: int,
        reference_type: str = ReferenceType.SALE.value,
        reference_id: UUID | None = None,
        reason: str | None = None,
    ) -> LotView:
        """Take ``quantity`` units out of a lot (sale, destruction...)."""
        reference = MovementReference(reference_type, reference_id, reason)
        with self._bind(ctx, lot_id=str(lot_id)):
            return self._run(
                "record_exit",
                lambda s: LotView.from_model(
                    s.lot_store.decrement_lot(
                        ctx.tenant_id, lot_id, quantity, ctx.operator_id, reference
                    )
                ),
                retry=False,
            )

    def record_adjustment(
        self,
        ctx: OperatorContext,
        lot_id: UUID,
        delta: int,
        reason: str,
        reference_type: str = ReferenceType.ADJUSTMENT.value,
        reference_id: UUID | None = None,
    ) -> LotView:
        """Signed correction, e.g. applying an inventory discrepancy."""
        reference = MovementReference(reference_type, reference_id, reason)
        with self._bind(ctx, lot_id=str(lot_id)):
            return self._run(
                "record_adjustment",
                lambda s: LotView.from_model(
                    s.lot_store.adjust_lot(
                        ctx.tenant_id, lot_id, delta, ctx.operator_id, reference
                    )
                ),
                retry=False,
            )

    def create_manual_lot(
        self,
        ctx: OperatorContext,
        product_id: UUID,
        quantity: int,
        lot_number: str | None = None,
        expiration_date: date | None = None,
        unit_cost: Decimal | None = None,
        location: str | None = None,
        reason: str | None = None,
    ) -> LotView:
        """
        Open a lot outside any reception (found stock, opening balance).

        The unit cost defaults to the product's catalog cost price.
        """

        def create(services: StockServices) -> LotView:
            product = services.catalog.resolve(ctx.tenant_id, product_id)
            today = self._clock.today()
            number, _ = services.lot_store.resolve_lot_number(
                ctx.tenant_id, product_id, lot_number, None, 0, today
            )
            lot = services.lot_store.create_lot(
                LotSpec(
                    tenant_id=ctx.tenant_id,
                    product_id=product_id,
                    lot_number=number,
                    quantity=quantity,
                    reception_date=today,
                    expiration_date=expiration_date,
                    unit_cost=unit_cost if unit_cost is not None else product.cost_price,
                    location=location,
                ),
                ctx.operator_id,
                MovementReference(
                    ReferenceType.ADJUSTMENT.value, None, reason or "manual lot creation"
                ),
            )
            return LotView.from_model(lot)

        with self._bind(ctx):
            return self._run("create_manual_lot", create, retry=False)

    def lots_for_product(
        self, ctx: OperatorContext, product_id: UUID, include_empty: bool = False
    ) -> list[LotView]:
        return self._run(
            "lots_for_product",
            lambda s: s.lot_selector.lots_for_product(ctx.tenant_id, product_id, include_empty),
        )

    def movement_stats(self, ctx: OperatorContext, lot_id: UUID) -> MovementStats:
        self.get_lot(ctx, lot_id)
        return self._run(
            "movement_stats", lambda s: s.movement_selector.movement_stats(ctx.tenant_id, lot_id)
        )

    def verify_lot_ledger(self, ctx: OperatorContext, lot_id: UUID) -> LedgerVerification:
        verification = self._run(
            "verify_lot_ledger",
            lambda s: s.movement_selector.verify_lot_ledger(ctx.tenant_id, lot_id),
        )
        if verification is None:
            raise LotNotFoundError(str(lot_id))
        if not verification.ok:
            logger.error(
                "lot_ledger_verification_failed",
                extra={"lot_id": str(lot_id), "findings": list(verification.findings)},
            )
        return verification

    # ------------------------------------------------------------------
    # Rotation and risk
    # ------------------------------------------------------------------

    def analyze_rotation(
        self,
        ctx: OperatorContext,
        window: RotationWindow | str = "monthly",
        filters: RotationFilters | None = None,
    ) -> RotationAnalysis:
        """
        Args:
            window: a RotationWindow, or a period name (monthly,
                quarterly, yearly) ending today.
        """
        if isinstance(window, str):
            window = RotationWindow.ending(window, self._clock.today())
        return self._run(
            "analyze_rotation", lambda s: s.rotation.analyze(ctx.tenant_id, window, filters)
        )

    def export_rotation(
        self,
        ctx: OperatorContext,
        window: RotationWindow | str = "monthly",
        filters: RotationFilters | None = None,
        fmt: str = "csv",
    ) -> str | bytes:
        return export_rotation(self.analyze_rotation(ctx, window, filters), fmt)

    def list_families(self, ctx: OperatorContext) -> list[str]:
        return self._run("list_families", lambda s: s.rotation.list_families(ctx.tenant_id))

    def assess_expiration_risk(
        self,
        ctx: OperatorContext,
        lot_id: UUID,
        sales_velocity: Decimal | None = None,
    ) -> ExpirationRisk:
        """
        Args:
            sales_velocity: units per day; None derives it from the lot's
                recent sale exits.
        """
        return self._run(
            "assess_expiration_risk",
            lambda s: s.risk.assess_lot(ctx.tenant_id, lot_id, sales_velocity),
        )

    def expiration_alerts(
        self, ctx: OperatorContext, horizon_days: int | None = None
    ) -> list[ExpirationAlert]:
        return self._run(
            "expiration_alerts", lambda s: s.risk.expiration_alerts(ctx.tenant_id, horizon_days)
        )

    def predict_stockout(
        self,
        ctx: OperatorContext,
        product_id: UUID,
        sales_velocity: Decimal | None = None,
    ) -> StockoutForecast:
        return self._run(
            "predict_stockout",
            lambda s: s.risk.predict_stockout(ctx.tenant_id, product_id, sales_velocity),
        )

    def check_fifo(self, ctx: OperatorContext, lot_id: UUID) -> FifoAnalysis:
        return self._run("check_fifo", lambda s: s.risk.check_fifo(ctx.tenant_id, lot_id))

    def lot_metrics(self, ctx: OperatorContext, lot_id: UUID) -> LotMetrics:
        return self._run("lot_metrics", lambda s: s.risk.lot_metrics(ctx.tenant_id, lot_id))

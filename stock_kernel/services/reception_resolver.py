"""
ReceptionResolver -- turns a supplier delivery into lot creations/increments.

Responsibility:
    Persists a reception (header + ordered lines), plans the lot mutations
    its lines imply, applies them through LotStore/MovementLedger, and marks
    every applied line so that a retried resolution skips it.

Architecture position:
    Kernel > Services -- imperative shell.  Chunking across transactions is
    the caller's job (stock_services.stock_core.StockCore); this service
    works inside whatever transaction it is given.

Resolution rules:
    - Lines with accepted quantity <= 0 are skipped without error.
    - Lines sharing (product, lot_number) are merged into one mutation.
    - one_lot_per_reception: every group creates a new lot whose origin key
      is the reception id.  Otherwise an existing shared lot with the same
      (product, lot_number) is incremented; no match creates a lot.
    - A new lot gets quantity_initial = accepted and an opening entry
      movement from 0.  An increment writes an entry movement whose
      quantity_before is the lot's value before this reception.
    - Resolved sale price / tax / markup propagate to the lot, and the sale
      price to the product's default sale price.
    - ProductNotResolvedError: the group is excluded and reported.
    - Missing lot number with generation disabled: "abort" stops the
      remaining groups (earlier ones stay applied), "skip" reports and
      continues.

Invariants enforced:
    - One ReceptionLineApplication per applied line, written in the same
      transaction as the line's lot and movement.
    - The reception flips to validated only once every positive line is
      applied.
"""

from __future__ import annotations

from collections import OrderedDict
from typing import Iterable, Sequence
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from stock_kernel.domain.clock import Clock, SystemClock
from stock_kernel.domain.collaborators import ProductCatalog
from stock_kernel.domain.dtos import (
    ChunkOutcome,
    LineError,
    LotSpec,
    MovementReference,
    ReceptionHeaderInput,
    ReceptionLineInput,
    ReceptionPlan,
    ReceptionResult,
    ResolutionGroup,
)
from stock_kernel.exceptions import (
    DuplicateLotError,
    MissingLotNumberError,
    ProductNotResolvedError,
    ReceptionAlreadyValidatedError,
    ReceptionNotFoundError,
    ReceptionValidationError,
)
from stock_kernel.logging_config import LogContext, get_logger
from stock_kernel.models.lot import SHARED_ORIGIN
from stock_kernel.models.movement import ReferenceType
from stock_kernel.models.reception import (
    ComplianceStatus,
    Reception,
    ReceptionLine,
    ReceptionLineApplication,
    ReceptionStatus,
)
from stock_kernel.services.base import BaseService
from stock_kernel.services.lot_store import LotStore

logger = get_logger("services.reception_resolver")

MISSING_LOT_ABORT = "abort"
MISSING_LOT_SKIP = "skip"

_COMPLIANCE_VALUES = frozenset(s.value for s in ComplianceStatus)


class ReceptionResolver(BaseService[Reception]):
    """
    Resolves receptions into lot mutations.

    Contract:
        apply_groups() never raises for line-level problems (unresolved
        product, missing lot number); they come back as LineError entries.
        Ledger failures (NegativeQuantityError, LedgerIntegrityError)
        propagate and the caller's transaction must be rolled back.
    """

    def __init__(
        self,
        session: Session,
        catalog: ProductCatalog,
        clock: Clock | None = None,
        lot_store: LotStore | None = None,
        one_lot_per_reception: bool = False,
        missing_lot_number_action: str = MISSING_LOT_ABORT,
        auto_generate_lot_numbers: bool = True,
        lot_number_prefix: str = "LOT",
    ):
        super().__init__(session)
        if missing_lot_number_action not in (MISSING_LOT_ABORT, MISSING_LOT_SKIP):
            raise ValueError(
                f"missing_lot_number_action must be 'abort' or 'skip', got {missing_lot_number_action!r}"
            )
        self._clock = clock or SystemClock()
        self.catalog = catalog
        self.lot_store = lot_store or LotStore(
            session,
            self._clock,
            auto_generate_lot_numbers=auto_generate_lot_numbers,
            lot_number_prefix=lot_number_prefix,
        )
        self.one_lot_per_reception = one_lot_per_reception
        self.missing_lot_number_action = missing_lot_number_action

    # ------------------------------------------------------------------
    # Reception records
    # ------------------------------------------------------------------

    def get_reception(self, tenant_id: UUID, reception_id: UUID) -> Reception:
        reception = self.session.execute(
            select(Reception).where(Reception.id == reception_id, Reception.tenant_id == tenant_id)
        ).scalar_one_or_none()
        if reception is None:
            raise ReceptionNotFoundError(str(reception_id))
        return reception

    def create_reception(
        self,
        tenant_id: UUID,
        header: ReceptionHeaderInput,
        lines: Sequence[ReceptionLineInput],
        actor_id: UUID,
    ) -> Reception:
        """
        Persist a draft reception, or return the existing draft on retry.

        Raises:
            ReceptionValidationError: structural problems; nothing written.
            ReceptionAlreadyValidatedError: header.reception_id names a
                validated reception.
        """
        if header.reception_id is not None:
            existing = self.session.execute(
                select(Reception).where(
                    Reception.id == header.reception_id,
                    Reception.tenant_id == tenant_id,
                )
            ).scalar_one_or_none()
            if existing is not None:
                if existing.is_validated:
                    raise ReceptionAlreadyValidatedError(str(existing.id))
                logger.info("reception_resumed", extra={"reception_id": str(existing.id)})
                return existing

        reception_id = header.reception_id or uuid4()
        errors = structural_errors(header, lines)
        if errors:
            logger.warning(
                "reception_rejected",
                extra={"reception_id": str(reception_id), "error_count": len(errors)},
            )
            raise ReceptionValidationError(str(reception_id), errors)

        reception = Reception(
            id=reception_id,
            tenant_id=tenant_id,
            supplier_id=header.supplier_id,
            reception_date=header.reception_date,
            agent_id=header.agent_id or actor_id,
            invoice_reference=header.invoice_reference,
            total_ht=header.total_ht,
            total_tva=header.total_tva,
            total_ttc=header.total_ttc,
            packaging_intact=header.packaging_intact,
            temperature_compliant=header.temperature_compliant,
            documents_complete=header.documents_complete,
            status=ReceptionStatus.DRAFT.value,
            created_by_id=actor_id,
        )
        self.session.add(reception)
        for index, line in enumerate(lines):
            self.session.add(
                ReceptionLine(
                    reception_id=reception_id,
                    line_index=index,
                    product_id=line.product_id,
                    quantity_ordered=line.quantity_ordered,
                    quantity_received=line.quantity_received,
                    quantity_accepted=line.quantity_accepted,
                    lot_number=line.lot_number.strip() if line.lot_number else None,
                    expiration_date=line.expiration_date,
                    unit_cost=line.unit_cost,
                    sale_price=line.sale_price,
                    tax_rate=line.tax_rate,
                    markup_rate=line.markup_rate,
                    compliance_status=line.compliance_status,
                    comment=line.comment,
                )
            )
        self.session.flush()
        # Lines were added by foreign key; reload the collection on access.
        self.session.expire(reception, ["lines"])

        logger.info(
            "reception_created",
            extra={"reception_id": str(reception_id), "line_count": len(lines)},
        )
        return reception

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def applied_line_ids(self, reception_id: UUID) -> set[UUID]:
        rows = self.session.execute(
            select(ReceptionLineApplication.line_id).where(
                ReceptionLineApplication.reception_id == reception_id
            )
        ).scalars()
        return set(rows)

    def plan(self, tenant_id: UUID, reception_id: UUID) -> ReceptionPlan:
        """Group the reception's pending positive lines into lot mutations."""
        reception = self.get_reception(tenant_id, reception_id)
        applied = self.applied_line_ids(reception.id)

        positive = [line for line in reception.lines if line.quantity_accepted > 0]
        pending = [line for line in positive if line.id not in applied]

        return ReceptionPlan(
            reception_id=reception.id,
            groups=tuple(group_lines(pending)),
            lines_total=len(reception.lines),
            lines_skipped=len(reception.lines) - len(positive),
            lines_already_applied=len(positive) - len(pending),
        )

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------

    def apply_groups(
        self,
        tenant_id: UUID,
        reception_id: UUID,
        groups: Iterable[ResolutionGroup],
        actor_id: UUID,
    ) -> ChunkOutcome:
        reception = self.get_reception(tenant_id, reception_id)
        if reception.is_validated:
            raise ReceptionAlreadyValidatedError(str(reception.id))

        applied = self.applied_line_ids(reception.id)
        lots_created = 0
        updated_lots: set[UUID] = set()
        movements = 0
        processed = 0
        errors: list[LineError] = []
        aborted = False

        with LogContext.bind(reception_id=str(reception.id), tenant_id=str(tenant_id)):
            for group in groups:
                # A group commits with all of its lines, so one marker is enough.
                if group.line_ids and group.line_ids[0] in applied:
                    logger.info(
                        "reception_group_already_applied",
                        extra={"line_indexes": list(group.line_indexes)},
                    )
                    continue
                try:
                    self.catalog.resolve(tenant_id, group.product_id)
                except ProductNotResolvedError as exc:
                    logger.warning(
                        "reception_line_product_unresolved",
                        extra={
                            "product_id": str(group.product_id),
                            "line_indexes": list(group.line_indexes),
                        },
                    )
                    errors.extend(_line_errors(group, exc.code, str(exc)))
                    continue

                try:
                    lot_number, generated = self.lot_store.resolve_lot_number(
                        tenant_id,
                        group.product_id,
                        group.lot_number,
                        reception.id,
                        group.first_line_index,
                        reception.reception_date,
                    )
                except MissingLotNumberError as exc:
                    errors.extend(_line_errors(group, exc.code, str(exc)))
                    if self.missing_lot_number_action == MISSING_LOT_SKIP:
                        logger.warning(
                            "reception_line_skipped_missing_lot",
                            extra={"line_indexes": list(group.line_indexes)},
                        )
                        continue
                    logger.warning(
                        "reception_aborted_missing_lot",
                        extra={
                            "line_index": group.first_line_index,
                            "product_id": str(group.product_id),
                            "lines_processed": processed,
                        },
                    )
                    aborted = True
                    break

                lot_id, created = self._apply_group(reception, group, lot_number, actor_id)
                movements += 1
                processed += len(group.line_ids)
                if created:
                    lots_created += 1
                else:
                    updated_lots.add(lot_id)

        return ChunkOutcome(
            lots_created=lots_created,
            lots_updated=len(updated_lots),
            movements_written=movements,
            lines_processed=processed,
            errors=tuple(errors),
            aborted=aborted,
        )

    def _apply_group(
        self,
        reception: Reception,
        group: ResolutionGroup,
        lot_number: str,
        actor_id: UUID,
    ) -> tuple[UUID, bool]:
        origin = str(reception.id) if self.one_lot_per_reception else SHARED_ORIGIN
        reference = MovementReference(
            reference_type=ReferenceType.RECEPTION.value,
            reference_id=reception.id,
            reason="reception line " + ",".join(str(i) for i in group.line_indexes),
        )

        existing = self.lot_store.find_lot(
            reception.tenant_id, group.product_id, lot_number, origin
        )
        if existing is None:
            try:
                lot = self.lot_store.create_lot(
                    LotSpec(
                        tenant_id=reception.tenant_id,
                        product_id=group.product_id,
                        lot_number=lot_number,
                        quantity=group.quantity_accepted,
                        reception_date=reception.reception_date,
                        expiration_date=group.expiration_date,
                        supplier_id=reception.supplier_id,
                        reception_id=reception.id,
                        unit_cost=group.unit_cost,
                        sale_price=group.sale_price,
                        tax_rate=group.tax_rate,
                        markup_rate=group.markup_rate,
                        origin_key=origin,
                    ),
                    actor_id,
                    reference,
                )
                created = True
            except DuplicateLotError:
                # Another reception inserted this lot after the lookup.  Only
                # the insert savepoint rolled back; increment the winner's lot.
                existing = self.lot_store.find_lot(
                    reception.tenant_id, group.product_id, lot_number, origin
                )
                if existing is None:
                    raise
                logger.info(
                    "reception_lot_created_concurrently",
                    extra={"lot_id": str(existing.id), "lot_number": lot_number},
                )

        if existing is not None:
            lot = self.lot_store.increment_lot(
                reception.tenant_id, existing.id, group.quantity_accepted, actor_id, reference
            )
            self.lot_store.apply_pricing(
                lot,
                actor_id,
                sale_price=group.sale_price,
                tax_rate=group.tax_rate,
                markup_rate=group.markup_rate,
            )
            created = False

        if group.sale_price is not None:
            self.catalog.update_sale_price(reception.tenant_id, group.product_id, group.sale_price)

        now = self._clock.now()
        for line_id in group.line_ids:
            self.session.add(
                ReceptionLineApplication(
                    reception_id=reception.id,
                    line_id=line_id,
                    lot_id=lot.id,
                    created_lot=created,
                    applied_at=now,
                )
            )
        self.session.flush()

        logger.info(
            "reception_line_applied",
            extra={
                "line_indexes": list(group.line_indexes),
                "lot_id": str(lot.id),
                "lot_number": lot_number,
                "quantity": group.quantity_accepted,
                "created_lot": created,
            },
        )
        return lot.id, created

    def finalize(self, tenant_id: UUID, reception_id: UUID, actor_id: UUID) -> Reception:
        """Flip draft -> validated once every positive line is applied."""
        reception = self.get_reception(tenant_id, reception_id)
        if reception.is_validated:
            return reception

        applied = self.applied_line_ids(reception.id)
        pending = [
            line.line_index
            for line in reception.lines
            if line.quantity_accepted > 0 and line.id not in applied
        ]
        if pending:
            logger.info(
                "reception_left_draft",
                extra={"reception_id": str(reception.id), "pending_lines": pending},
            )
            return reception

        reception.status = ReceptionStatus.VALIDATED.value
        reception.validated_at = self._clock.now()
        reception.updated_by_id = actor_id
        self.session.flush()
        logger.info("reception_validated", extra={"reception_id": str(reception.id)})
        return reception

    # ------------------------------------------------------------------
    # One-shot resolution
    # ------------------------------------------------------------------

    def resolve(
        self,
        tenant_id: UUID,
        header: ReceptionHeaderInput,
        lines: Sequence[ReceptionLineInput],
        actor_id: UUID,
        warnings: Sequence[str] = (),
    ) -> ReceptionResult:
        """Create, apply and finalize a reception inside the current transaction."""
        reception = self.create_reception(tenant_id, header, lines, actor_id)
        plan = self.plan(tenant_id, reception.id)
        outcome = self.apply_groups(tenant_id, reception.id, plan.groups, actor_id)
        reception = self.finalize(tenant_id, reception.id, actor_id)
        return self.build_result(tenant_id, reception.id, [outcome], warnings)

    def build_result(
        self,
        tenant_id: UUID,
        reception_id: UUID,
        outcomes: Sequence[ChunkOutcome],
        warnings: Sequence[str] = (),
    ) -> ReceptionResult:
        reception = self.get_reception(tenant_id, reception_id)
        applied = self.applied_line_ids(reception.id)
        positive = [line for line in reception.lines if line.quantity_accepted > 0]
        errors: list[LineError] = []
        for outcome in outcomes:
            errors.extend(outcome.errors)

        result = ReceptionResult(
            reception_id=reception.id,
            status=reception.status,
            lots_created=sum(o.lots_created for o in outcomes),
            lots_updated=sum(o.lots_updated for o in outcomes),
            movements_written=sum(o.movements_written for o in outcomes),
            lines_total=len(reception.lines),
            lines_processed=sum(1 for line in positive if line.id in applied),
            lines_skipped=len(reception.lines) - len(positive),
            errors=tuple(errors),
            warnings=tuple(warnings),
            aborted=any(o.aborted for o in outcomes),
        )
        logger.info(
            "reception_resolved",
            extra={
                "reception_id": str(reception.id),
                "status": result.status,
                "summary": result.summary,
                "lots_created": result.lots_created,
                "lots_updated": result.lots_updated,
                "error_count": len(result.errors),
                "aborted": result.aborted,
            },
        )
        return result


# ----------------------------------------------------------------------
# Pure helpers
# ----------------------------------------------------------------------


def structural_errors(
    header: ReceptionHeaderInput, lines: Sequence[ReceptionLineInput]
) -> list[str]:
    """Problems that make a reception impossible to persist."""
    errors: list[str] = []
    if not lines:
        errors.append("At least one reception line is required")
    for index, line in enumerate(lines):
        if line.quantity_ordered < 0:
            errors.append(f"Line {index}: ordered quantity cannot be negative")
        if line.quantity_received < 0:
            errors.append(f"Line {index}: received quantity cannot be negative")
        if line.quantity_accepted < 0:
            errors.append(f"Line {index}: accepted quantity cannot be negative")
        if line.quantity_accepted > line.quantity_received:
            errors.append(f"Line {index}: accepted quantity exceeds received quantity")
        if line.compliance_status not in _COMPLIANCE_VALUES:
            errors.append(f"Line {index}: unknown compliance status '{line.compliance_status}'")
    return errors


def group_lines(lines: Sequence[ReceptionLine]) -> list[ResolutionGroup]:
    """
    Merge lines sharing (product, lot_number); keep first-appearance order.

    Lines without a lot number are never merged: each one gets its own
    generated number.
    """
    buckets: "OrderedDict[tuple, list[ReceptionLine]]" = OrderedDict()
    for line in sorted(lines, key=lambda l: l.line_index):
        number = line.lot_number.strip() if line.lot_number else ""
        key = (line.product_id, number) if number else (line.product_id, None, line.id)
        buckets.setdefault(key, []).append(line)

    groups = []
    for bucket in buckets.values():
        first = bucket[0]
        expirations = [l.expiration_date for l in bucket if l.expiration_date is not None]
        groups.append(
            ResolutionGroup(
                product_id=first.product_id,
                lot_number=first.lot_number.strip() if first.lot_number else None,
                line_ids=tuple(l.id for l in bucket),
                line_indexes=tuple(l.line_index for l in bucket),
                quantity_accepted=sum(l.quantity_accepted for l in bucket),
                expiration_date=min(expirations) if expirations else None,
                unit_cost=first.unit_cost,
                sale_price=_first_set(l.sale_price for l in bucket),
                tax_rate=_first_set(l.tax_rate for l in bucket),
                markup_rate=_first_set(l.markup_rate for l in bucket),
            )
        )
    return groups


def _first_set(values):
    for value in values:
        if value is not None:
            return value
    return None


def _line_errors(group: ResolutionGroup, code: str, message: str) -> list[LineError]:
    return [
        LineError(
            line_index=index,
            product_id=group.product_id,
            code=code,
            message=message,
            lot_number=group.lot_number,
        )
        for index in group.line_indexes
    ]

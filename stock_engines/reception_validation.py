"""
Module: stock_engines.reception_validation
Responsibility:
    Pre-write validation of a reception (errors, warnings, suggestions) and
    the reception summary report (totals, reception / acceptance /
    conformity rates, lines per compliance status).

Architecture position:
    Engines -- pure calculation layer, zero I/O.  What the engine needs
    from the database (existing lot numbers, average shelf life per
    product) is passed in a ReceptionContext built by the caller.

Invariants enforced:
    - Errors block the reception; warnings and suggestions never do.
    - Lines repeating a (product, lot number) are merged downstream, so a
      repeat is only an error when its expiration date or unit cost
      disagrees with the first occurrence.
    - Rates are percentages rounded to one decimal; a rate whose
      denominator is zero is reported as 0 and raises no warning.

Usage:
    engine = ReceptionValidationEngine()
    result = engine.validate(header=header, lines=lines, today=today, context=ctx)
    if not result.is_valid:
        raise ReceptionValidationError(..., result.error_messages)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Mapping, Sequence
from uuid import UUID

from stock_kernel.domain.dtos import ReceptionHeaderInput, ReceptionLineInput
from stock_kernel.logging_config import get_logger
from stock_engines.tracer import traced_engine

logger = get_logger("engines.reception_validation")

CONFORME = "conforme"
NON_CONFORME = "non-conforme"
PARTIELLEMENT_CONFORME = "partiellement-conforme"

# Repeated lines of one lot must agree on these when both set them.
_PRICING_FIELDS = (
    ("sale_price", "sale price"),
    ("tax_rate", "tax rate"),
    ("markup_rate", "markup rate"),
)


@dataclass(frozen=True)
class ReceptionContext:
    """Facts about existing stock the checks depend on."""

    existing_lots: frozenset[tuple[UUID, str]] = frozenset()
    # product_id -> mean (expiration - reception) in days over recent lots
    average_shelf_life_days: Mapping[UUID, Decimal] = field(default_factory=dict)


@dataclass(frozen=True)
class ValidationIssue:
    code: str
    message: str
    line_index: int | None = None
    product_id: UUID | None = None


@dataclass(frozen=True)
class ReceptionValidation:
    errors: tuple[ValidationIssue, ...] = ()
    warnings: tuple[ValidationIssue, ...] = ()
    suggestions: tuple[ValidationIssue, ...] = ()

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def error_messages(self) -> list[str]:
        return [e.message for e in self.errors]

    @property
    def warning_messages(self) -> list[str]:
        return [w.message for w in self.warnings]


@dataclass(frozen=True)
class ReceptionReport:
    total_lines: int
    total_ordered: int
    total_received: int
    total_accepted: int
    reception_rate: Decimal
    acceptance_rate: Decimal
    conformity_rate: Decimal
    by_status: Mapping[str, int]


def _rate(numerator: int, denominator: int) -> Decimal:
    if denominator <= 0:
        return Decimal("0.0")
    return (Decimal(numerator) * 100 / Decimal(denominator)).quantize(
        Decimal("0.1"), rounding=ROUND_HALF_UP
    )


class _Collector:
    def __init__(self) -> None:
        self.errors: list[ValidationIssue] = []
        self.warnings: list[ValidationIssue] = []
        self.suggestions: list[ValidationIssue] = []

    def error(self, code, message, index=None, product_id=None):
        self.errors.append(ValidationIssue(code, message, index, product_id))

    def warning(self, code, message, index=None, product_id=None):
        self.warnings.append(ValidationIssue(code, message, index, product_id))

    def suggest(self, code, message, index=None, product_id=None):
        self.suggestions.append(ValidationIssue(code, message, index, product_id))

    def result(self) -> ReceptionValidation:
        return ReceptionValidation(tuple(self.errors), tuple(self.warnings), tuple(self.suggestions))


class ReceptionValidationEngine:
    def __init__(
        self,
        near_expiry_days: int = 30,
        short_expiry_days: int = 90,
        shelf_life_tolerance: Decimal = Decimal("0.5"),
        gap_warning_percent: Decimal = Decimal("10"),
        gap_suggestion_percent: Decimal = Decimal("5"),
        min_reception_rate: Decimal = Decimal("90"),
        min_acceptance_rate: Decimal = Decimal("95"),
        max_reception_rate: Decimal = Decimal("110"),
    ):
        self.near_expiry_days = near_expiry_days
        self.short_expiry_days = short_expiry_days
        self.shelf_life_tolerance = shelf_life_tolerance
        self.gap_warning_percent = gap_warning_percent
        self.gap_suggestion_percent = gap_suggestion_percent
        self.min_reception_rate = min_reception_rate
        self.min_acceptance_rate = min_acceptance_rate
        self.max_reception_rate = max_reception_rate

    @traced_engine("reception_validation", "1.0", fingerprint_fields=("header", "lines", "today"))
    def validate(
        self,
        header: ReceptionHeaderInput,
        lines: Sequence[ReceptionLineInput],
        today: date,
        context: ReceptionContext | None = None,
    ) -> ReceptionValidation:
        context = context or ReceptionContext()
        out = _Collector()

        if header.supplier_id is None:
            out.error("MISSING_SUPPLIER", "Supplier is required")
        if not lines:
            out.error("NO_LINES", "At least one reception line is required")

        for index, line in enumerate(lines):
            self._check_line(index, line, header, today, context, out)

        self._check_duplicates(lines, out)
        self._check_rates(lines, out)

        result = out.result()
        logger.info(
            "reception_validated",
            extra={
                "lines": len(lines),
                "errors": len(result.errors),
                "warnings": len(result.warnings),
                "suggestions": len(result.suggestions),
            },
        )
        return result

    def _check_line(
        self,
        index: int,
        line: ReceptionLineInput,
        header: ReceptionHeaderInput,
        today: date,
        context: ReceptionContext,
        out: _Collector,
    ) -> None:
        pid = line.product_id
        prefix = f"Line {index}"

        if line.quantity_received < 0:
            out.error("NEGATIVE_RECEIVED", f"{prefix}: received quantity cannot be negative", index, pid)
        if line.quantity_accepted < 0:
            out.error("NEGATIVE_ACCEPTED", f"{prefix}: accepted quantity cannot be negative", index, pid)
        if line.quantity_accepted > line.quantity_received:
            out.error(
                "ACCEPTED_EXCEEDS_RECEIVED",
                f"{prefix}: accepted quantity cannot exceed received quantity",
                index,
                pid,
            )

        lot_number = line.lot_number.strip() if line.lot_number else ""
        if not lot_number:
            out.warning("MISSING_LOT_NUMBER", f"{prefix}: no lot number", index, pid)
        elif (pid, lot_number) in context.existing_lots:
            out.warning("LOT_EXISTS", f"{prefix}: lot {lot_number} already exists for this product", index, pid)
            out.suggest(
                "LOT_EXISTS",
                f"{prefix}: check this is not a duplicate or use a different lot number",
                index,
                pid,
            )

        if line.expiration_date is not None:
            days_to_expiry = (line.expiration_date - today).days
            if line.expiration_date <= today:
                out.error("ALREADY_EXPIRED", f"{prefix}: product already expired", index, pid)
            elif days_to_expiry <= self.near_expiry_days:
                out.warning("NEAR_EXPIRY", f"{prefix}: product expires in {days_to_expiry} days", index, pid)
            elif days_to_expiry <= self.short_expiry_days:
                out.warning("SHORT_EXPIRY", f"{prefix}: close expiration date, {days_to_expiry} days", index, pid)

            average = context.average_shelf_life_days.get(pid)
            if average is not None and average > 0:
                shelf_life = Decimal((line.expiration_date - header.reception_date).days)
                if abs(shelf_life - average) > average * self.shelf_life_tolerance:
                    out.warning(
                        "UNUSUAL_SHELF_LIFE",
                        f"{prefix}: unusual expiration date for this product",
                        index,
                        pid,
                    )
        else:
            out.warning("MISSING_EXPIRATION", f"{prefix}: expiration date missing", index, pid)

        gap = line.quantity_received - line.quantity_ordered
        if gap != 0 and line.quantity_ordered > 0:
            percent = Decimal(abs(gap)) * 100 / Decimal(line.quantity_ordered)
            signed = f"+{gap}" if gap > 0 else str(gap)
            if percent > self.gap_warning_percent:
                out.warning(
                    "QUANTITY_GAP",
                    f"{prefix}: large quantity gap {signed} units "
                    f"({percent.quantize(Decimal('0.1'), rounding=ROUND_HALF_UP)}%)",
                    index,
                    pid,
                )
            elif percent > self.gap_suggestion_percent:
                out.suggest("QUANTITY_GAP", f"{prefix}: small quantity gap {signed} units", index, pid)

        if line.compliance_status == NON_CONFORME and line.quantity_accepted > 0:
            out.warning(
                "ACCEPTED_NON_CONFORMING",
                f"{prefix}: quantity accepted on a non-conforming line",
                index,
                pid,
            )
        if line.compliance_status == CONFORME and line.quantity_accepted < line.quantity_received:
            out.suggest(
                "PARTIAL_ACCEPTANCE",
                f"{prefix}: conforming line with partial acceptance, check the reason",
                index,
                pid,
            )
        if line.compliance_status in (NON_CONFORME, PARTIELLEMENT_CONFORME) and not (
            line.comment and line.comment.strip()
        ):
            out.warning(
                "MISSING_COMMENT",
                f"{prefix}: a comment is recommended for non-conforming products",
                index,
                pid,
            )

    def _check_duplicates(self, lines: Sequence[ReceptionLineInput], out: _Collector) -> None:
        first_seen: dict[tuple[UUID, str], tuple[int, ReceptionLineInput]] = {}
        for index, line in enumerate(lines):
            number = line.lot_number.strip() if line.lot_number else ""
            if not number:
                continue
            key = (line.product_id, number)
            if key not in first_seen:
                first_seen[key] = (index, line)
                continue
            first_index, first = first_seen[key]
            conflicts = []
            if (
                first.expiration_date is not None
                and line.expiration_date is not None
                and first.expiration_date != line.expiration_date
            ):
                conflicts.append("expiration date")
            if first.unit_cost != line.unit_cost:
                conflicts.append("unit cost")
            for attr, label in _PRICING_FIELDS:
                a, b = getattr(first, attr), getattr(line, attr)
                if a is not None and b is not None and a != b:
                    conflicts.append(label)
            if conflicts:
                out.error(
                    "DUPLICATE_LOT_CONFLICT",
                    f"Line {index}: lot {number} repeats line {first_index} "
                    f"with a different {', '.join(conflicts)}",
                    index,
                    line.product_id,
                )

    def _check_rates(self, lines: Sequence[ReceptionLineInput], out: _Collector) -> None:
        ordered = sum(l.quantity_ordered for l in lines)
        received = sum(l.quantity_received for l in lines)
        accepted = sum(l.quantity_accepted for l in lines)

        if ordered > 0:
            reception_rate = _rate(received, ordered)
            if reception_rate < self.min_reception_rate:
                out.warning("LOW_RECEPTION_RATE", f"Low reception rate: {reception_rate}%")
                out.suggest("LOW_RECEPTION_RATE", "Contact the supplier about the missing quantities")
            if reception_rate > self.max_reception_rate:
                out.warning("OVER_DELIVERY", f"Over-delivery detected: {reception_rate}%")
                out.suggest("OVER_DELIVERY", "Check whether this is an error or a supplier bonus")
        if received > 0:
            acceptance_rate = _rate(accepted, received)
            if acceptance_rate < self.min_acceptance_rate:
                out.warning("LOW_ACCEPTANCE_RATE", f"Low acceptance rate: {acceptance_rate}%")
                out.suggest(
                    "LOW_ACCEPTANCE_RATE",
                    "Review the causes of non-conformity with the supplier",
                )

    @traced_engine("reception_report", "1.0", fingerprint_fields=("lines",))
    def report(self, lines: Sequence[ReceptionLineInput]) -> ReceptionReport:
        ordered = sum(l.quantity_ordered for l in lines)
        received = sum(l.quantity_received for l in lines)
        accepted = sum(l.quantity_accepted for l in lines)
        by_status: dict[str, int] = {}
        for line in lines:
            by_status[line.compliance_status] = by_status.get(line.compliance_status, 0) + 1
        return ReceptionReport(
            total_lines=len(lines),
            total_ordered=ordered,
            total_received=received,
            total_accepted=accepted,
            reception_rate=_rate(received, ordered),
            acceptance_rate=_rate(accepted, received),
            conformity_rate=_rate(by_status.get(CONFORME, 0), len(lines)),
            by_status=by_status,
        )

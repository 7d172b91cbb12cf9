"""
stock_services.rotation_service -- turnover analysis over a reporting window.

Responsibility:
    Gathers, per catalog product, the lots it holds and the units it sold
    in the window (and in the window of the same length just before), then
    hands them to ``stock_engines.rotation.RotationEngine``.

Architecture position:
    Services -- read-only orchestration over kernel selectors + engines.
    Never writes; safe to run against a read replica.

Windows:
    ``monthly`` / ``quarterly`` / ``yearly`` end on the as-of date
    (included) and start the same calendar day 1 / 3 / 12 months earlier.
    ``custom`` takes explicit first and last days.  Internally every window
    is half-open, [start, end), at UTC midnight.

Usage:
    service = RotationService(session, catalog, policy.rotation)
    window = RotationWindow.ending("quarterly", clock.today())
    analysis = service.analyze(tenant_id, window, RotationFilters(family="antalgique"))
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from uuid import UUID

from sqlalchemy.orm import Session

from stock_config import RotationPolicy
from stock_engines.rotation import (
    LotStock,
    ProductRotationInput,
    RotationAnalysis,
    RotationClass,
    RotationEngine,
    RotationThresholds,
)
from stock_kernel.domain.collaborators import ProductCatalog
from stock_kernel.logging_config import get_logger
from stock_kernel.selectors import LotSelector, MovementSelector

logger = get_logger("services.rotation")

PERIOD_MONTHS = {"monthly": 1, "quarterly": 3, "yearly": 12}
CUSTOM_PERIOD = "custom"


def shift_months(day: date, months: int) -> date:
    """Move ``day`` by whole calendar months, clamping to the month's end."""
    index = day.year * 12 + (day.month - 1) + months
    year, month = divmod(index, 12)
    month += 1
    return date(year, month, min(day.day, calendar.monthrange(year, month)[1]))


def _utc_midnight(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


@dataclass(frozen=True)
class RotationWindow:
    """Half-open window [start, end) of business dates."""

    period: str
    start: date
    end: date

    def __post_init__(self) -> None:
        if self.period not in PERIOD_MONTHS and self.period != CUSTOM_PERIOD:
            raise ValueError(f"unknown rotation period {self.period!r}")
        if self.end <= self.start:
            raise ValueError("rotation window must end after it starts")

    @classmethod
    def ending(cls, period: str, as_of: date) -> RotationWindow:
        """The ``period`` whose last day is ``as_of``."""
        if period not in PERIOD_MONTHS:
            raise ValueError(f"unknown rotation period {period!r}")
        end = as_of + timedelta(days=1)
        return cls(period, shift_months(end, -PERIOD_MONTHS[period]), end)

    @classmethod
    def custom(cls, first_day: date, last_day: date) -> RotationWindow:
        return cls(CUSTOM_PERIOD, first_day, last_day + timedelta(days=1))

    @property
    def days(self) -> int:
        return (self.end - self.start).days

    def previous(self) -> RotationWindow:
        """Window of the same length immediately before this one."""
        return RotationWindow(self.period, self.start - timedelta(days=self.days), self.start)

    def bounds(self) -> tuple[datetime, datetime]:
        return _utc_midnight(self.start), _utc_midnight(self.end)


@dataclass(frozen=True)
class RotationFilters:
    family: str | None = None
    status: RotationClass | str | None = None


class RotationService:
    """Builds engine inputs from the lot and movement tables."""

    def __init__(
        self,
        session: Session,
        catalog: ProductCatalog,
        policy: RotationPolicy | None = None,
    ):
        policy = policy or RotationPolicy()
        self.catalog = catalog
        self.lots = LotSelector(session)
        self.movements = MovementSelector(session)
        self.engine = RotationEngine(
            RotationThresholds(
                excellent=policy.excellent,
                good=policy.good,
                medium=policy.medium,
                weak=policy.weak,
            )
        )

    def gather(
        self, tenant_id: UUID, window: RotationWindow, family: str | None = None
    ) -> list[ProductRotationInput]:
        products = self.catalog.list_products(tenant_id, family)
        product_ids = [p.product_id for p in products]

        # Lots received after the window closed did not exist during it.
        held: dict[UUID, list[LotStock]] = {}
        for lot in self.lots.lots_for_products(tenant_id, product_ids):
            if lot.reception_date < window.end:
                held.setdefault(lot.product_id, []).append(
                    LotStock(lot.quantity_initial, lot.quantity_remaining)
                )

        sold = self.movements.units_sold_by_product(tenant_id, *window.bounds())
        sold_before = self.movements.units_sold_by_product(tenant_id, *window.previous().bounds())
        last_movement = self.movements.last_movement_at_by_product(tenant_id)

        return [
            ProductRotationInput(
                product_id=p.product_id,
                product_name=p.name,
                family=p.family,
                cost_price=p.cost_price,
                lots=tuple(held.get(p.product_id, ())),
                units_sold=sold.get(p.product_id, 0),
                previous_units_sold=sold_before.get(p.product_id, 0),
                last_movement_at=last_movement.get(p.product_id),
            )
            for p in products
        ]

    def analyze(
        self,
        tenant_id: UUID,
        window: RotationWindow,
        filters: RotationFilters | None = None,
    ) -> RotationAnalysis:
        filters = filters or RotationFilters()
        inputs = self.gather(tenant_id, window, filters.family)
        analysis = self.engine.analyze(
            inputs=inputs, window_days=window.days, status=filters.status
        )
        logger.info(
            "rotation_window_analyzed",
            extra={
                "period": window.period,
                "start": window.start.isoformat(),
                "end": window.end.isoformat(),
                "family": filters.family,
                "status": getattr(filters.status, "value", filters.status),
                "products_analyzed": analysis.metrics.products_analyzed,
            },
        )
        return analysis

    def list_families(self, tenant_id: UUID) -> list[str]:
        return self.catalog.list_families(tenant_id)

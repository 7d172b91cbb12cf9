"""
stock_services.risk_service -- lot-level risk read models.

Responsibility:
    Expiration risk of a lot, expiration alerts over a horizon, stockout
    prediction per product, FIFO compliance of a lot choice and lot
    indicators.  Reads lots and sale exits through the kernel selectors and
    delegates every calculation to ``stock_engines``.

Architecture position:
    Services -- read-only orchestration over kernel selectors + engines.

Sales velocity:
    When the caller does not supply one, velocity is the units sold
    (``exit`` movements referencing a sale) over the last
    ``risk.velocity_lookback_days`` days, today included, divided by that
    number of days.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from stock_config import StockPolicy
from stock_engines.expiration import ExpirationRisk, ExpirationRiskEngine
from stock_engines.fifo import FifoAnalysis, FifoEngine
from stock_engines.lot_metrics import LotMetrics, LotMetricsEngine, LotMetricsInput
from stock_kernel.domain.clock import Clock, SystemClock
from stock_kernel.domain.dtos import LotView
from stock_kernel.exceptions import ExpirationNotTrackedError, LotNotFoundError
from stock_kernel.logging_config import get_logger
from stock_kernel.selectors import LotSelector, MovementSelector

logger = get_logger("services.risk")


@dataclass(frozen=True)
class ExpirationAlert:
    lot: LotView
    risk: ExpirationRisk
    sales_velocity: Decimal


@dataclass(frozen=True)
class StockoutForecast:
    product_id: UUID
    quantity_on_hand: int
    sales_velocity: Decimal
    stockout_date: date | None


class RiskService:
    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        policy: StockPolicy | None = None,
    ):
        policy = policy or StockPolicy()
        self._clock = clock or SystemClock()
        self.lots = LotSelector(session)
        self.movements = MovementSelector(session)
        self.lookback_days = policy.risk.velocity_lookback_days
        self.alert_horizon_days = policy.risk.alert_horizon_days
        self.expiration = ExpirationRiskEngine(
            high_days=policy.risk.high_days,
            medium_days=policy.risk.medium_days,
            high_loss_rate=policy.risk.high_loss_rate,
            critical_loss_rate=policy.risk.critical_loss_rate,
            stockout_variation=policy.risk.stockout_variation,
        )
        self.fifo = FifoEngine(
            tolerance_days=policy.fifo.tolerance_days,
            loss_per_day=policy.fifo.loss_per_day,
        )
        self.lot_metrics_engine = LotMetricsEngine(
            carrying_cost_rate=policy.rotation.carrying_cost_rate,
            target_rotation=policy.rotation.lot_target_rotation,
        )

    # ------------------------------------------------------------------
    # Velocity
    # ------------------------------------------------------------------

    def _lookback_bounds(self) -> tuple[datetime, datetime]:
        end = datetime.combine(
            self._clock.today() + timedelta(days=1), time.min, tzinfo=timezone.utc
        )
        return end - timedelta(days=self.lookback_days), end

    def lot_velocity(self, tenant_id: UUID, lot_id: UUID) -> Decimal:
        sold = self.movements.units_sold_for_lot(tenant_id, lot_id, *self._lookback_bounds())
        return Decimal(sold) / Decimal(self.lookback_days)

    def product_velocity(self, tenant_id: UUID, product_id: UUID) -> Decimal:
        sold = self.movements.units_sold_by_product(tenant_id, *self._lookback_bounds())
        return Decimal(sold.get(product_id, 0)) / Decimal(self.lookback_days)

    def _lot(self, tenant_id: UUID, lot_id: UUID) -> LotView:
        lot = self.lots.get(tenant_id, lot_id)
        if lot is None:
            raise LotNotFoundError(str(lot_id))
        return lot

    # ------------------------------------------------------------------
    # Expiration
    # ------------------------------------------------------------------

    def assess_lot(
        self,
        tenant_id: UUID,
        lot_id: UUID,
        sales_velocity: Decimal | None = None,
    ) -> ExpirationRisk:
        """
        Raises:
            LotNotFoundError: unknown lot.
            ExpirationNotTrackedError: the lot carries no expiration date.
        """
        lot = self._lot(tenant_id, lot_id)
        if lot.expiration_date is None:
            raise ExpirationNotTrackedError(str(lot_id))
        if sales_velocity is None:
            sales_velocity = self.lot_velocity(tenant_id, lot_id)
        return self.expiration.assess(
            expiration_date=lot.expiration_date,
            remaining=lot.quantity_remaining,
            velocity=Decimal(sales_velocity),
            unit_cost=lot.unit_cost,
            today=self._clock.today(),
        )

    def expiration_alerts(
        self, tenant_id: UUID, horizon_days: int | None = None
    ) -> list[ExpirationAlert]:
        """Lots with stock expiring within the horizon, soonest first."""
        if horizon_days is None:
            horizon_days = self.alert_horizon_days
        today = self._clock.today()
        alerts = []
        for lot in self.lots.expiring_within(tenant_id, today, horizon_days):
            velocity = self.lot_velocity(tenant_id, lot.lot_id)
            risk = self.expiration.assess(
                expiration_date=lot.expiration_date,
                remaining=lot.quantity_remaining,
                velocity=velocity,
                unit_cost=lot.unit_cost,
                today=today,
            )
            alerts.append(ExpirationAlert(lot=lot, risk=risk, sales_velocity=velocity))
        logger.info(
            "expiration_alerts_computed",
            extra={"horizon_days": horizon_days, "alert_count": len(alerts)},
        )
        return alerts

    def predict_stockout(
        self,
        tenant_id: UUID,
        product_id: UUID,
        sales_velocity: Decimal | None = None,
    ) -> StockoutForecast:
        on_hand = sum(
            lot.quantity_remaining for lot in self.lots.lots_for_product(tenant_id, product_id)
        )
        if sales_velocity is None:
            sales_velocity = self.product_velocity(tenant_id, product_id)
        return StockoutForecast(
            product_id=product_id,
            quantity_on_hand=on_hand,
            sales_velocity=Decimal(sales_velocity),
            stockout_date=self.expiration.predict_stockout(
                on_hand, Decimal(sales_velocity), self._clock.today()
            ),
        )

    # ------------------------------------------------------------------
    # FIFO and lot indicators
    # ------------------------------------------------------------------

    def check_fifo(self, tenant_id: UUID, lot_id: UUID) -> FifoAnalysis:
        """Compare a lot chosen for picking with the oldest available lot."""
        selected = self._lot(tenant_id, lot_id)
        oldest = self.lots.oldest_available(tenant_id, selected.product_id, self._clock.today())
        if oldest is None:
            return FifoAnalysis(compliant=True, deviation_days=0)
        return self.fifo.analyze(
            selected_date=selected.reception_date,
            oldest_date=oldest.reception_date,
            oldest_lot_number=oldest.lot_number,
        )

    def lot_metrics(self, tenant_id: UUID, lot_id: UUID) -> LotMetrics:
        lot = self._lot(tenant_id, lot_id)
        queue = [l.lot_id for l in self.lots.lots_for_product(tenant_id, lot.product_id)]
        position = queue.index(lot.lot_id) if lot.lot_id in queue else len(queue)
        return self.lot_metrics_engine.compute(
            lot=LotMetricsInput(
                quantity_initial=lot.quantity_initial,
                quantity_remaining=lot.quantity_remaining,
                unit_cost=lot.unit_cost,
                reception_date=lot.reception_date,
                expiration_date=lot.expiration_date,
                daily_sales=self.lot_velocity(tenant_id, lot.lot_id),
                fifo_position=position,
            ),
            today=self._clock.today(),
        )

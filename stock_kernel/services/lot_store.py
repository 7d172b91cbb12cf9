"""
LotStore -- lot records: lookup, creation, quantity changes.

Responsibility:
    Owns lot identity (product, lot number, origin) and lot-number policy.
    Every quantity change is delegated to the MovementLedger, so a lot and
    its movement are always written in the same unit of work.

Architecture position:
    Kernel > Services -- imperative shell.

Invariants enforced:
    - A new lot starts at quantity_remaining = 0 and receives its stock
      through an opening entry movement, so remaining always equals the
      signed sum of the lot's movements.
    - quantity_initial is written once, at creation.
    - (tenant, product, lot_number, origin_key) is unique; a duplicate raises
      DuplicateLotError.

Failure modes:
    - InvalidQuantityError: creation with quantity <= 0.
    - MissingLotNumberError: no number supplied and generation disabled.
    - DuplicateLotError: lot identity already taken.
    - Anything MovementLedger.record raises.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stock_kernel.domain.clock import Clock, SystemClock
from stock_kernel.domain.dtos import LotSpec, MovementReference
from stock_kernel.exceptions import (
    DuplicateLotError,
    InvalidQuantityError,
    LotNotFoundError,
    MissingLotNumberError,
)
from stock_kernel.logging_config import get_logger
from stock_kernel.models.lot import SHARED_ORIGIN, Lot
from stock_kernel.models.movement import MovementType, ReferenceType
from stock_kernel.services.base import BaseService
from stock_kernel.services.lot_numbering import LotNumberGenerator
from stock_kernel.services.movement_ledger import MovementLedger

logger = get_logger("services.lot_store")


class LotStore(BaseService[Lot]):
    """
    Lot persistence and quantity operations.

    Contract:
        increment_lot / decrement_lot / adjust_lot return the lot with its
        new quantity_remaining; the movement is flushed alongside.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        ledger: MovementLedger | None = None,
        auto_generate_lot_numbers: bool = True,
        lot_number_prefix: str = "LOT",
    ):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self.ledger = ledger or MovementLedger(session, self._clock)
        self.auto_generate_lot_numbers = auto_generate_lot_numbers
        self._numbering = LotNumberGenerator(session, prefix=lot_number_prefix)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def find_lot(
        self,
        tenant_id: UUID,
        product_id: UUID,
        lot_number: str,
        origin_key: str = SHARED_ORIGIN,
    ) -> Lot | None:
        return self.session.execute(
            select(Lot).where(
                Lot.tenant_id == tenant_id,
                Lot.product_id == product_id,
                Lot.lot_number == lot_number,
                Lot.origin_key == origin_key,
            )
        ).scalar_one_or_none()

    def get_lot(self, tenant_id: UUID, lot_id: UUID) -> Lot:
        lot = self.session.execute(
            select(Lot).where(Lot.id == lot_id, Lot.tenant_id == tenant_id)
        ).scalar_one_or_none()
        if lot is None:
            raise LotNotFoundError(str(lot_id))
        return lot

    def resolve_lot_number(
        self,
        tenant_id: UUID,
        product_id: UUID,
        lot_number: str | None,
        reception_id: UUID | None,
        line_index: int,
        reception_date,
    ) -> tuple[str, bool]:
        """
        Lot number to use for a line.

        Returns:
            (lot_number, generated) where generated is True if the number
            was produced by the generator.

        Raises:
            MissingLotNumberError: no number and generation disabled.
        """
        if lot_number is not None and lot_number.strip():
            return lot_number.strip(), False
        if not self.auto_generate_lot_numbers:
            raise MissingLotNumberError(str(product_id), line_index)
        generated = self._numbering.generate(
            tenant_id, product_id, reception_id, line_index, reception_date
        )
        return generated, True

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_lot(
        self,
        spec: LotSpec,
        actor_id: UUID,
        reference: MovementReference | None = None,
    ) -> Lot:
        """
        Insert a lot and its opening entry movement (0 -> quantity).

        Postconditions:
            quantity_initial == quantity_remaining == spec.quantity.
        """
        if spec.quantity <= 0:
            raise InvalidQuantityError("quantity", spec.quantity, "a new lot needs a positive quantity")

        if self.find_lot(spec.tenant_id, spec.product_id, spec.lot_number, spec.origin_key):
            raise DuplicateLotError(str(spec.product_id), spec.lot_number)

        lot = Lot(
            tenant_id=spec.tenant_id,
            product_id=spec.product_id,
            lot_number=spec.lot_number,
            origin_key=spec.origin_key,
            quantity_initial=spec.quantity,
            quantity_remaining=0,
            version=0,
            expiration_date=spec.expiration_date,
            reception_date=spec.reception_date,
            supplier_id=spec.supplier_id,
            reception_id=spec.reception_id,
            unit_cost=spec.unit_cost,
            sale_price=spec.sale_price,
            tax_rate=spec.tax_rate,
            markup_rate=spec.markup_rate,
            location=spec.location,
            created_by_id=actor_id,
        )

        try:
            with self.session.begin_nested():
                self.session.add(lot)
                self.session.flush()
        except IntegrityError as exc:
            raise DuplicateLotError(str(spec.product_id), spec.lot_number) from exc

        if reference is None:
            reference = MovementReference(
                reference_type=(
                    ReferenceType.RECEPTION.value
                    if spec.reception_id is not None
                    else ReferenceType.ADJUSTMENT.value
                ),
                reference_id=spec.reception_id,
                reason="lot opening",
            )

        self.ledger.record(
            tenant_id=spec.tenant_id,
            lot_id=lot.id,
            product_id=spec.product_id,
            movement_type=MovementType.ENTRY,
            delta=spec.quantity,
            reference=reference,
            actor_id=actor_id,
        )

        logger.info(
            "lot_created",
            extra={
                "lot_id": str(lot.id),
                "product_id": str(spec.product_id),
                "lot_number": spec.lot_number,
                "quantity": spec.quantity,
                "origin_key": spec.origin_key,
            },
        )
        return lot

    def increment_lot(
        self,
        tenant_id: UUID,
        lot_id: UUID,
        delta: int,
        actor_id: UUID,
        reference: MovementReference,
    ) -> Lot:
        return self._move(tenant_id, lot_id, MovementType.ENTRY, delta, actor_id, reference)

    def decrement_lot(
        self,
        tenant_id: UUID,
        lot_id: UUID,
        delta: int,
        actor_id: UUID,
        reference: MovementReference,
    ) -> Lot:
        """Raises NegativeQuantityError when delta exceeds the remaining quantity."""
        return self._move(tenant_id, lot_id, MovementType.EXIT, delta, actor_id, reference)

    def adjust_lot(
        self,
        tenant_id: UUID,
        lot_id: UUID,
        delta: int,
        actor_id: UUID,
        reference: MovementReference,
    ) -> Lot:
        """Signed correction (inventory adjustment, breakage, found stock)."""
        return self._move(tenant_id, lot_id, MovementType.ADJUSTMENT, delta, actor_id, reference)

    def apply_pricing(
        self,
        lot: Lot,
        actor_id: UUID,
        sale_price: Decimal | None = None,
        tax_rate: Decimal | None = None,
        markup_rate: Decimal | None = None,
    ) -> Lot:
        """Copy resolved pricing fields onto the lot.  None leaves a field as is."""
        changed = False
        if sale_price is not None and lot.sale_price != sale_price:
            lot.sale_price = sale_price
            changed = True
        if tax_rate is not None and lot.tax_rate != tax_rate:
            lot.tax_rate = tax_rate
            changed = True
        if markup_rate is not None and lot.markup_rate != markup_rate:
            lot.markup_rate = markup_rate
            changed = True
        if changed:
            lot.updated_by_id = actor_id
            self.session.flush()
        return lot

    def _move(
        self,
        tenant_id: UUID,
        lot_id: UUID,
        movement_type: MovementType,
        delta: int,
        actor_id: UUID,
        reference: MovementReference,
    ) -> Lot:
        lot = self.get_lot(tenant_id, lot_id)
        self.ledger.record(
            tenant_id=tenant_id,
            lot_id=lot.id,
            product_id=lot.product_id,
            movement_type=movement_type,
            delta=delta,
            reference=reference,
            actor_id=actor_id,
        )
        return lot

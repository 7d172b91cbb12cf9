"""
Typed Exception Hierarchy for the Stock Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Stock operations fail for very different reasons: a count on a closed
session, a delivery line without a lot number, a ledger that no longer agrees
with its lot. Callers must react differently to each (report to the operator,
skip the line, stop everything and escalate), so every failure has:

  1. A TYPED exception class (catch by type, not message)
  2. A CODE class attribute (machine-readable, API-safe)
  3. Structured DATA as attributes (line index, product, lot, session...)

Example:
    try:
        ledger.record(...)
    except NegativeQuantityError as e:
        report(code=e.code, lot=e.lot_id, available=e.quantity_before)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from StockKernelError:

    StockKernelError (base)
    |
    +-- QuantityError
    |   +-- NegativeQuantityError
    |   +-- InvalidQuantityError
    |
    +-- LotError
    |   +-- LotNotFoundError
    |   +-- MissingLotNumberError
    |   +-- DuplicateLotError
    |   +-- ExpirationNotTrackedError
    |
    +-- LedgerError
    |   +-- LedgerIntegrityError
    |
    +-- ReceptionError
    |   +-- ReceptionNotFoundError
    |   +-- ReceptionValidationError
    |   +-- ReceptionAlreadyValidatedError
    |
    +-- InventorySessionError
    |   +-- SessionNotFoundError
    |   +-- SessionClosedError
    |   +-- InventoryItemNotFoundError
    |   +-- InvalidSessionSourceError
    |   +-- ItemNotCountedError
    |
    +-- CatalogError
    |   +-- ProductNotResolvedError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- InfrastructureError
        +-- TransientInfrastructureError
        +-- RetryExhaustedError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category      | Code                         | When Raised
--------------|------------------------------|-------------------------------------------
Quantity      | NEGATIVE_QUANTITY            | Movement would drive remaining below 0
              | INVALID_QUANTITY             | Negative count, non-positive delta
--------------|------------------------------|-------------------------------------------
Lot           | LOT_NOT_FOUND                | Lot ID doesn't exist for the tenant
              | MISSING_LOT_NUMBER           | Number required, generation disabled
              | DUPLICATE_LOT                | Lot identity already exists
              | EXPIRATION_NOT_TRACKED       | Expiry analysis on a lot without expiry
--------------|------------------------------|-------------------------------------------
Ledger        | LEDGER_INTEGRITY             | before/after chain broken, CAS missed
--------------|------------------------------|-------------------------------------------
Reception     | RECEPTION_NOT_FOUND          | Reception ID doesn't exist
              | RECEPTION_VALIDATION_FAILED  | Structural validation errors
              | RECEPTION_ALREADY_VALIDATED  | Re-creating a validated reception
--------------|------------------------------|-------------------------------------------
Session       | SESSION_NOT_FOUND            | Inventory session doesn't exist
              | SESSION_CLOSED               | Count/reset on a completed session
              | INVENTORY_ITEM_NOT_FOUND     | Item not in the session
              | INVALID_SESSION_SOURCE       | Source reception/sales ref missing
              | ITEM_NOT_COUNTED             | Validating an item nobody counted
--------------|------------------------------|-------------------------------------------
Catalog       | PRODUCT_NOT_RESOLVED         | Catalog cannot resolve a product
--------------|------------------------------|-------------------------------------------
Immutability  | IMMUTABILITY_VIOLATION       | Editing a movement, frozen session...
--------------|------------------------------|-------------------------------------------
Infra         | TRANSIENT_INFRASTRUCTURE     | Timeout, dropped connection, expired token
              | RETRY_EXHAUSTED              | Transient failure outlived the retry budget

===============================================================================
HANDLING PATTERNS
===============================================================================

1. INTEGRITY ERRORS ARE NEVER RETRIED:

    except LedgerIntegrityError as e:
        alert(e.lot_id, e.expected_before, e.actual_before)
        halt_processing()  # Manual reconciliation required

2. ONLY InfrastructureError IS RETRYABLE (see services/retry_service.py).

3. LINE-LEVEL ERRORS CARRY THEIR POSITION:

    except MissingLotNumberError as e:
        report(line=e.line_index, product=e.product_id)

===============================================================================
"""


class StockKernelError(Exception):
    """
    Base exception for all stock kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "STOCK_KERNEL_ERROR"

    def to_dict(self) -> dict:
        """Structured payload for APIs and error reports."""
        payload = {"code": self.code, "message": str(self)}
        for key, value in vars(self).items():
            if not key.startswith("_"):
                payload[key] = value if isinstance(value, (int, float, str, type(None))) else str(value)
        return payload


# Quantity-related exceptions


class QuantityError(StockKernelError):
    """Base exception for quantity errors."""

    code: str = "QUANTITY_ERROR"


class NegativeQuantityError(QuantityError):
    """
    Operation would drive a lot's remaining quantity below zero.

    Fatal for the operation; never retried automatically.
    """

    code: str = "NEGATIVE_QUANTITY"

    def __init__(self, lot_id: str, quantity_before: int, delta: int):
        self.lot_id = lot_id
        self.quantity_before = quantity_before
        self.delta = delta
        super().__init__(
            f"Lot {lot_id} would go negative: {quantity_before} - {delta}"
        )


class InvalidQuantityError(QuantityError):
    """A quantity argument is outside its allowed range."""

    code: str = "INVALID_QUANTITY"

    def __init__(self, field: str, value: int, reason: str):
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {field}={value}: {reason}")


# Lot-related exceptions


class LotError(StockKernelError):
    """Base exception for lot errors."""

    code: str = "LOT_ERROR"


class LotNotFoundError(LotError):
    """Lot with given ID was not found."""

    code: str = "LOT_NOT_FOUND"

    def __init__(self, lot_id: str):
        self.lot_id = lot_id
        super().__init__(f"Lot not found: {lot_id}")


class MissingLotNumberError(LotError):
    """
    A lot number is required by policy but absent, and generation is disabled.
    """

    code: str = "MISSING_LOT_NUMBER"

    def __init__(self, product_id: str, line_index: int | None = None):
        self.product_id = product_id
        self.line_index = line_index
        where = f" (line {line_index})" if line_index is not None else ""
        super().__init__(
            f"Lot number required for product {product_id}{where} "
            "and auto-generation is disabled"
        )


class DuplicateLotError(LotError):
    """A lot with the same (product, lot number, origin) already exists."""

    code: str = "DUPLICATE_LOT"

    def __init__(self, product_id: str, lot_number: str):
        self.product_id = product_id
        self.lot_number = lot_number
        super().__init__(f"Lot {lot_number} already exists for product {product_id}")


class ExpirationNotTrackedError(LotError):
    """An expiration-based analysis was asked for a lot without expiry date."""

    code: str = "EXPIRATION_NOT_TRACKED"

    def __init__(self, lot_id: str):
        self.lot_id = lot_id
        super().__init__(f"Lot {lot_id} has no expiration date")


# Ledger-related exceptions


class LedgerError(StockKernelError):
    """Base exception for movement ledger errors."""

    code: str = "LEDGER_ERROR"


class LedgerIntegrityError(LedgerError):
    """
    A movement's quantity_before does not match the lot at commit time.

    Raised when the ledger chain is broken or a concurrent writer changed the
    lot between read and write. Never overwritten silently: this requires
    manual reconciliation.
    """

    code: str = "LEDGER_INTEGRITY"

    def __init__(
        self,
        lot_id: str,
        expected_before: int | None,
        actual_before: int | None,
        reason: str,
    ):
        self.lot_id = lot_id
        self.expected_before = expected_before
        self.actual_before = actual_before
        self.reason = reason
        super().__init__(
            f"Ledger integrity violation on lot {lot_id}: {reason} "
            f"(expected {expected_before}, found {actual_before})"
        )


# Reception-related exceptions


class ReceptionError(StockKernelError):
    """Base exception for reception errors."""

    code: str = "RECEPTION_ERROR"


class ReceptionNotFoundError(ReceptionError):
    """Reception with given ID was not found."""

    code: str = "RECEPTION_NOT_FOUND"

    def __init__(self, reception_id: str):
        self.reception_id = reception_id
        super().__init__(f"Reception not found: {reception_id}")


class ReceptionValidationError(ReceptionError):
    """Structural validation of a reception failed before any write."""

    code: str = "RECEPTION_VALIDATION_FAILED"

    def __init__(self, reception_id: str, errors: list[str]):
        self.reception_id = reception_id
        self.errors = list(errors)
        super().__init__(
            f"Reception {reception_id} failed validation: "
            f"{len(self.errors)} error(s): " + "; ".join(self.errors)
        )


class ReceptionAlreadyValidatedError(ReceptionError):
    """Attempt to re-create or alter a reception that is already validated."""

    code: str = "RECEPTION_ALREADY_VALIDATED"

    def __init__(self, reception_id: str):
        self.reception_id = reception_id
        super().__init__(f"Reception {reception_id} is already validated")


# Inventory-session-related exceptions


class InventorySessionError(StockKernelError):
    """Base exception for inventory session errors."""

    code: str = "INVENTORY_SESSION_ERROR"


class SessionNotFoundError(InventorySessionError):
    """Inventory session with given ID was not found."""

    code: str = "SESSION_NOT_FOUND"

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Inventory session not found: {session_id}")


class SessionClosedError(InventorySessionError):
    """Count or reset attempted on a completed session."""

    code: str = "SESSION_CLOSED"

    def __init__(self, session_id: str, operation: str):
        self.session_id = session_id
        self.operation = operation
        super().__init__(
            f"Inventory session {session_id} is completed; {operation} rejected"
        )


class InventoryItemNotFoundError(InventorySessionError):
    """Item does not exist or does not belong to the session."""

    code: str = "INVENTORY_ITEM_NOT_FOUND"

    def __init__(self, session_id: str, item_id: str):
        self.session_id = session_id
        self.item_id = item_id
        super().__init__(f"Item {item_id} not found in session {session_id}")


class InvalidSessionSourceError(InventorySessionError):
    """Session type requires a source reference that is missing or unknown."""

    code: str = "INVALID_SESSION_SOURCE"

    def __init__(self, session_id: str, session_type: str, reason: str):
        self.session_id = session_id
        self.session_type = session_type
        self.reason = reason
        super().__init__(
            f"Invalid source for {session_type} session {session_id}: {reason}"
        )


class ItemNotCountedError(InventorySessionError):
    """Supervisor validation requested for an item that has not been counted."""

    code: str = "ITEM_NOT_COUNTED"

    def __init__(self, session_id: str, item_id: str):
        self.session_id = session_id
        self.item_id = item_id
        super().__init__(f"Item {item_id} in session {session_id} has not been counted")


# Catalog-related exceptions


class CatalogError(StockKernelError):
    """Base exception for product catalog collaborator errors."""

    code: str = "CATALOG_ERROR"


class ProductNotResolvedError(CatalogError):
    """The catalog collaborator cannot resolve the referenced product."""

    code: str = "PRODUCT_NOT_RESOLVED"

    def __init__(self, product_id: str, line_index: int | None = None):
        self.product_id = product_id
        self.line_index = line_index
        where = f" (line {line_index})" if line_index is not None else ""
        super().__init__(f"Product not resolved: {product_id}{where}")


# Immutability-related exceptions


class ImmutabilityError(StockKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify or delete an immutable record.

    Movements and reception lines are immutable from creation; validated
    receptions and completed sessions are frozen.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Infrastructure exceptions


class InfrastructureError(StockKernelError):
    """Base exception for infrastructure failures."""

    code: str = "INFRASTRUCTURE_ERROR"


class TransientInfrastructureError(InfrastructureError):
    """
    Timeout, dropped connection or expired session token.

    The only category the retry service retries (after re-authentication).
    """

    code: str = "TRANSIENT_INFRASTRUCTURE"

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"Transient failure during {operation}: {reason}")


class RetryExhaustedError(InfrastructureError):
    """A transient failure persisted across every allowed attempt."""

    code: str = "RETRY_EXHAUSTED"

    def __init__(self, operation: str, attempts: int, last_error: str):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{operation} failed after {attempts} attempt(s): {last_error}"
        )

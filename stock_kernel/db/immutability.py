"""
ORM-Level Immutability Enforcement.

===============================================================================
WHY THIS EXISTS
===============================================================================

Stock history must be tamper-proof.  A lot's remaining quantity is only
trustworthy if every change to it is a movement in the ledger, and a movement
is only trustworthy if nobody can edit it afterwards.  Corrections are new
movements, never edits.

SQLAlchemy fires events before UPDATE/DELETE operations reach the database.
We register listeners that intercept these events and check our invariants:

    session.flush()
         |
         v
    [before_update event] --> _check_*_immutability() --> ImmutabilityViolationError
         |                                                        ^
         v                                                        |
    [before_delete event] --> _check_*_delete() -----------------+
         |
         v
    SQL sent to database (only if checks pass)

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity                    | When Immutable                     | Why
--------------------------|------------------------------------|-----------------------------------
StockMovement             | ALWAYS (from creation)             | The ledger is append-only
ReceptionLine             | ALWAYS (from creation)             | Delivery record, source of lots
ReceptionLineApplication  | ALWAYS (from creation)             | Replay marker for retried receptions
Reception                 | All fields but the draft->validated| Created once, then only validated
                          | flip; fully frozen once validated  |
Lot                       | Identity fields, quantity_initial, | Only the ledger's compare-and-swap
                          | quantity_remaining, version        | may change stock
                          | DELETE while stock or movements    |
InventorySession          | After status = completed           | Completed counts are final
InventoryItem             | When its session is completed;     | Items are never deleted singly
                          | DELETE always                      |

===============================================================================
DESIGN DECISIONS
===============================================================================

1. updated_at / updated_by_id may always change; they are audit metadata.

2. The ledger bypasses the Lot listener on purpose: it issues a Core UPDATE
   with a WHERE clause on (id, version, quantity_remaining) and then sets the
   committed value on the ORM instance, so the instance carries no pending
   history for quantity_remaining.

3. Inline model imports avoid circular imports between db/ and models/.

===============================================================================
USAGE
===============================================================================

    from stock_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # Called once at startup

To temporarily disable (TESTS ONLY):

    unregister_immutability_listeners()

===============================================================================
"""

from sqlalchemy import event, inspect, text
from sqlalchemy.orm.attributes import get_history

from stock_kernel.exceptions import ImmutabilityViolationError
from stock_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_AUDIT_FIELDS = frozenset({"updated_at", "updated_by_id"})

_LOT_PROTECTED_FIELDS = (
    "tenant_id",
    "product_id",
    "lot_number",
    "origin_key",
    "quantity_initial",
    "quantity_remaining",
    "version",
    "reception_id",
)


def _blocked(entity_type: str, entity_id, operation: str, reason: str, **fields):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "operation": operation,
            **fields,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(entity_id),
        reason=reason,
    )


def _changed_fields(target, allowed=frozenset()) -> list[str]:
    insp = inspect(target)
    changed = []
    for attr in insp.attrs:
        if attr.key in _AUDIT_FIELDS or attr.key in allowed:
            continue
        if attr.history.has_changes():
            changed.append(attr.key)
    return changed


# ---------------------------------------------------------------------------
# Always-immutable records
# ---------------------------------------------------------------------------


def _check_movement_update(mapper, connection, target):
    """Movements are never modified."""
    if not _changed_fields(target):
        return
    _blocked(
        "StockMovement",
        target.id,
        "UPDATE",
        "Stock movements are immutable; record a correcting movement instead",
    )


def _check_movement_delete(mapper, connection, target):
    _blocked("StockMovement", target.id, "DELETE", "Stock movements cannot be deleted")


def _check_reception_line_update(mapper, connection, target):
    changed = _changed_fields(target, allowed=frozenset({"reception"}))
    if changed:
        _blocked(
            "ReceptionLine",
            target.id,
            "UPDATE",
            f"Reception lines are immutable (field '{changed[0]}')",
            field=changed[0],
        )


def _check_reception_line_delete(mapper, connection, target):
    _blocked("ReceptionLine", target.id, "DELETE", "Reception lines cannot be deleted")


def _check_application_update(mapper, connection, target):
    if not _changed_fields(target):
        return
    _blocked(
        "ReceptionLineApplication",
        target.id,
        "UPDATE",
        "Reception line application markers are immutable",
    )


def _check_application_delete(mapper, connection, target):
    _blocked(
        "ReceptionLineApplication",
        target.id,
        "DELETE",
        "Reception line application markers cannot be deleted",
    )


# ---------------------------------------------------------------------------
# Reception header
# ---------------------------------------------------------------------------


def _check_reception_immutability(mapper, connection, target):
    """
    Allow exactly one transition: draft -> validated (with validated_at).

    A reception that was already validated before this flush is frozen.
    """
    from stock_kernel.models.reception import ReceptionStatus

    status_history = get_history(target, "status")
    validated = ReceptionStatus.VALIDATED.value

    if status_history.deleted:
        old_status = status_history.deleted[0]
        if old_status == validated:
            _blocked(
                "Reception",
                target.id,
                "UPDATE",
                "Validated receptions cannot change status",
                field="status",
            )
        if target.status != validated:
            _blocked(
                "Reception",
                target.id,
                "UPDATE",
                f"Invalid reception status transition {old_status} -> {target.status}",
                field="status",
            )
        allowed = frozenset({"status", "validated_at", "lines"})
    else:
        allowed = frozenset({"lines"})

    changed = _changed_fields(target, allowed=allowed)
    if changed:
        _blocked(
            "Reception",
            target.id,
            "UPDATE",
            f"Cannot modify field '{changed[0]}' on a reception after creation",
            field=changed[0],
        )


def _check_reception_delete(mapper, connection, target):
    _blocked("Reception", target.id, "DELETE", "Receptions cannot be deleted")


# ---------------------------------------------------------------------------
# Lot
# ---------------------------------------------------------------------------


def _check_lot_immutability(mapper, connection, target):
    """Identity and quantity fields are owned by creation and the ledger."""
    for field in _LOT_PROTECTED_FIELDS:
        if get_history(target, field).has_changes():
            _blocked(
                "Lot",
                target.id,
                "UPDATE",
                f"Cannot modify field '{field}' on a lot; quantities change only "
                "through the movement ledger",
                field=field,
            )


def _lot_has_movements(connection, lot_id) -> bool:
    result = connection.execute(
        text("SELECT 1 FROM stock_movements WHERE lot_id = :lot_id LIMIT 1"),
        {"lot_id": str(lot_id)},
    )
    return result.first() is not None


def _check_lot_delete(mapper, connection, target):
    if target.quantity_remaining > 0:
        _blocked(
            "Lot",
            target.id,
            "DELETE",
            f"Lot still holds {target.quantity_remaining} unit(s)",
        )
    if _lot_has_movements(connection, target.id):
        _blocked("Lot", target.id, "DELETE", "Lot is referenced by stock movements")


# ---------------------------------------------------------------------------
# Inventory sessions and items
# ---------------------------------------------------------------------------


def _check_inventory_session_immutability(mapper, connection, target):
    """Block every change once the session was completed before this flush."""
    from stock_kernel.models.inventory import SessionStatus

    completed = SessionStatus.COMPLETED.value
    status_history = get_history(target, "status")

    if status_history.deleted:
        was_completed = status_history.deleted[0] == completed
    elif not status_history.added:
        was_completed = target.status == completed
    else:
        was_completed = False

    if was_completed:
        changed = _changed_fields(target)
        if changed:
            _blocked(
                "InventorySession",
                target.id,
                "UPDATE",
                f"Cannot modify field '{changed[0]}' on a completed inventory session",
                field=changed[0],
            )


def _check_inventory_session_delete(mapper, connection, target):
    _blocked(
        "InventorySession",
        target.id,
        "DELETE",
        "Inventory sessions cannot be deleted",
    )


def _session_is_completed(connection, session_id) -> bool:
    result = connection.execute(
        text("SELECT status FROM inventory_sessions WHERE id = :session_id"),
        {"session_id": str(session_id)},
    )
    row = result.first()
    return row is not None and row[0] == "completed"


def _check_inventory_item_immutability(mapper, connection, target):
    if _session_is_completed(connection, target.session_id):
        _blocked(
            "InventoryItem",
            target.id,
            "UPDATE",
            "Items of a completed inventory session are frozen",
        )


def _check_inventory_item_delete(mapper, connection, target):
    _blocked(
        "InventoryItem",
        target.id,
        "DELETE",
        "Inventory items are never deleted individually",
    )


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def _listeners():
    from stock_kernel.models.inventory import InventoryItem, InventorySession
    from stock_kernel.models.lot import Lot
    from stock_kernel.models.movement import StockMovement
    from stock_kernel.models.reception import (
        Reception,
        ReceptionLine,
        ReceptionLineApplication,
    )

    return [
        (StockMovement, "before_update", _check_movement_update),
        (StockMovement, "before_delete", _check_movement_delete),
        (ReceptionLine, "before_update", _check_reception_line_update),
        (ReceptionLine, "before_delete", _check_reception_line_delete),
        (ReceptionLineApplication, "before_update", _check_application_update),
        (ReceptionLineApplication, "before_delete", _check_application_delete),
        (Reception, "before_update", _check_reception_immutability),
        (Reception, "before_delete", _check_reception_delete),
        (Lot, "before_update", _check_lot_immutability),
        (Lot, "before_delete", _check_lot_delete),
        (InventorySession, "before_update", _check_inventory_session_immutability),
        (InventorySession, "before_delete", _check_inventory_session_delete),
        (InventoryItem, "before_update", _check_inventory_item_immutability),
        (InventoryItem, "before_delete", _check_inventory_item_delete),
    ]


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Idempotent: listeners already registered are left in place.
    """
    for target, event_name, listener_fn in _listeners():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def _safe_remove_listener(target, event_name, listener_fn):
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests where you need to intentionally
    violate immutability rules to verify detection.
    """
    for target, event_name, listener_fn in _listeners():
        _safe_remove_listener(target, event_name, listener_fn)

# production_ledger/exceptions.py - Ledger error types
"""Typed errors raised by the production ledger.

Every error carries a machine-readable ``code``. Validation errors are raised
before anything is written; storage errors are translated from the driver in
``utils.db`` and always propagate to the caller.
"""


class LedgerError(Exception):
    """Base class for all ledger errors"""

    code = "LEDGER_ERROR"

    def __init__(self, message, **details):
        super().__init__(message)
        self.message = message
        self.details = details


class ReferenceNotFound(LedgerError):
    code = "REFERENCE_NOT_FOUND"

    def __init__(self, entity, entity_id):
        super().__init__(f"{entity} {entity_id} not found", entity=entity, entity_id=entity_id)
        self.entity = entity
        self.entity_id = entity_id


class InvalidBOM(LedgerError):
    code = "INVALID_BOM"


class InvalidQuantity(LedgerError):
    code = "INVALID_QUANTITY"


class InvalidTransition(LedgerError):
    code = "INVALID_TRANSITION"

    def __init__(self, order_id, current, target):
        super().__init__(
            f"Order {order_id} cannot move from {current} to {target}",
            order_id=order_id, current=current, target=target,
        )
        self.order_id = order_id
        self.current = current
        self.target = target


class InsufficientStock(LedgerError):
    code = "INSUFFICIENT_STOCK"

    def __init__(self, warehouse_id, shortages):
        super().__init__(
            f"Insufficient stock in warehouse {warehouse_id} for {len(shortages)} material(s)",
            warehouse_id=warehouse_id, shortages=shortages,
        )
        self.warehouse_id = warehouse_id
        self.shortages = shortages


class ConcurrencyConflict(LedgerError):
    code = "CONCURRENCY_CONFLICT"


class PersistenceFailure(LedgerError):
    code = "PERSISTENCE_FAILURE"

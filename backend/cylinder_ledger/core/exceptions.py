"""Domain errors raised by the ledger services.

Every error carries a machine-readable ``code``, an HTTP status, and the
structured fields a client needs to render the failure without parsing the
message. The FastAPI handler in ``main.py`` turns them into JSON responses.
"""

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for all ledger errors."""

    status_code = 400
    code = "ledger_error"

    def __init__(self, message: str, **fields: Any):
        self.message = message
        self.fields = fields
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "code": self.code, **self.fields}


class ValidationError(LedgerError):
    """Missing or out-of-range input."""

    status_code = 422
    code = "validation_error"


class NotFoundError(LedgerError):
    """Unknown order, plan, cylinder type, or location reference."""

    status_code = 404
    code = "not_found"

    def __init__(self, entity: str, entity_id: Any):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found", entity=entity, entity_id=entity_id)


class InsufficientInventory(LedgerError):
    """Raised when a movement exceeds the balance at its source."""

    status_code = 409
    code = "insufficient_inventory"

    def __init__(
        self,
        cylinder_type_id: int,
        needed: int,
        available: int,
        location_type: Optional[str] = None,
        reference_id: Optional[int] = None,
        cylinder_status: Optional[str] = None,
    ):
        self.cylinder_type_id = cylinder_type_id
        self.needed = needed
        self.available = available
        super().__init__(
            f"Insufficient inventory for cylinder type {cylinder_type_id} at "
            f"{location_type}:{reference_id} ({cylinder_status}): need {needed}, have {available}",
            cylinder_type_id=cylinder_type_id,
            needed=needed,
            available=available,
            location_type=location_type,
            reference_id=reference_id,
            cylinder_status=cylinder_status,
        )


class InsufficientCustomerStock(LedgerError):
    """Raised when a customer cannot cover the empties an exchange expects back."""

    status_code = 409
    code = "insufficient_customer_stock"

    def __init__(self, cylinder_type_id: int, needed: int, available: int, customer_id: Optional[int] = None):
        self.cylinder_type_id = cylinder_type_id
        self.needed = needed
        self.available = available
        super().__init__(
            f"Customer {customer_id} holds {available} cylinders of type {cylinder_type_id}, "
            f"{needed} required for the exchange",
            cylinder_type_id=cylinder_type_id,
            needed=needed,
            available=available,
            customer_id=customer_id,
        )


class StateTransitionError(LedgerError):
    """Illegal order transition, or DELIVERED attempted without an exchange record."""

    status_code = 409
    code = "state_transition_error"

    def __init__(self, message: str, current: Optional[str] = None, target: Optional[str] = None, **fields: Any):
        self.current = current
        self.target = target
        super().__init__(message, current=current, target=target, **fields)


class ConcurrencyConflict(LedgerError):
    """An inventory key was modified concurrently; retry the whole operation."""

    status_code = 409
    code = "concurrency_conflict"

    def __init__(self, message: str = "Inventory was modified concurrently, retry the operation"):
        super().__init__(message, retryable=True)

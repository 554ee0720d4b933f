# Services module

from cylinder_ledger.services.inventory_service import (
    InventoryService,
    MovementLeg,
    MOVEMENT_STATUS_RULES,
)
from cylinder_ledger.services.exchange_service import (
    ExchangeService,
    allocate_expected_returns,
)
from cylinder_ledger.services.order_service import (
    OrderService,
    OrderDeliveryStateMachine,
    TransitionResult,
)
from cylinder_ledger.services.reconciliation_service import (
    ReconciliationService,
    ReconciliationConfig,
)

__all__ = [
    "InventoryService",
    "MovementLeg",
    "MOVEMENT_STATUS_RULES",
    "ExchangeService",
    "allocate_expected_returns",
    "OrderService",
    "OrderDeliveryStateMachine",
    "TransitionResult",
    "ReconciliationService",
    "ReconciliationConfig",
]

"""SQLAlchemy models."""

from cylinder_ledger.models.inventory import (
    CylinderType,
    LocationReference,
    InventoryRecord,
    MovementBatch,
    CylinderMovement,
    LocationType,
    CylinderStatus,
    MovementType,
)
from cylinder_ledger.models.delivery import (
    DeliveryPlan,
    DeliveryOrder,
    DeliveryOrderLine,
    OrderStatusHistory,
    OrderStatus,
    PlanStatus,
)
from cylinder_ledger.models.exchange import ExchangeTracking, VarianceType
from cylinder_ledger.models.reconciliation import (
    DailyReconciliation,
    ExchangeVarianceDetail,
    VehicleInventoryCount,
    ReconciliationStatus,
    ResolutionStatus,
    DeltaSeverity,
)

__all__ = [
    "CylinderType",
    "LocationReference",
    "InventoryRecord",
    "MovementBatch",
    "CylinderMovement",
    "LocationType",
    "CylinderStatus",
    "MovementType",
    "DeliveryPlan",
    "DeliveryOrder",
    "DeliveryOrderLine",
    "OrderStatusHistory",
    "OrderStatus",
    "PlanStatus",
    "ExchangeTracking",
    "VarianceType",
    "DailyReconciliation",
    "ExchangeVarianceDetail",
    "VehicleInventoryCount",
    "ReconciliationStatus",
    "ResolutionStatus",
    "DeltaSeverity",
]

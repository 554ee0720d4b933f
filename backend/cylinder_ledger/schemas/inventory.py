"""Inventory schemas. JSON fields are camelCase to match the dispatch UI."""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from cylinder_ledger.models.inventory import CylinderStatus, LocationType, MovementType


class CamelModel(BaseModel):
    """Base schema serialised with camelCase aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# ============== Reference data ==============

class CylinderTypeCreate(CamelModel):
    code: str = Field(..., min_length=1, max_length=50)
    capacity_label: str = Field(..., min_length=1, max_length=50)
    description: Optional[str] = Field(None, max_length=255)


class CylinderTypeResponse(CamelModel):
    id: int
    code: str
    capacity_label: str
    description: Optional[str] = None


class LocationReferenceCreate(CamelModel):
    """Register a vehicle or customer the ledger should accept."""
    location_type: LocationType
    reference_id: int = Field(..., gt=0)
    reference_name: str = Field(..., min_length=1, max_length=200)
    parent_id: Optional[int] = None


class LocationReferenceResponse(CamelModel):
    id: int
    location_type: LocationType
    reference_id: int
    reference_name: str
    parent_id: Optional[int] = None
    display_path: List[str] = []


# ============== Balances ==============

class InventoryRecordResponse(CamelModel):
    id: int
    cylinder_type_id: int
    location_type: LocationType
    reference_id: int
    reference_name: Optional[str] = None
    cylinder_status: CylinderStatus
    quantity: int
    version: int
    updated_at: Optional[datetime] = None


class InventoryListResponse(CamelModel):
    items: List[InventoryRecordResponse]
    total: int


class AvailableQuantityResponse(CamelModel):
    quantity: int


class LocationTotals(CamelModel):
    filled: int = 0
    empty: int = 0
    total: int = 0


class CylinderTypeSummary(CamelModel):
    cylinder_type_id: int
    code: Optional[str] = None
    capacity_label: Optional[str] = None
    locations: Dict[str, LocationTotals]
    total_quantity: int


class DashboardResponse(CamelModel):
    totals: Dict[str, LocationTotals]
    cylinder_types: List[CylinderTypeSummary]
    grand_total: int


# ============== Movements ==============

class MovementCreate(CamelModel):
    """A single movement request.

    ``cylinder_status`` is the status at the source (or destination for
    external injections). ``to_cylinder_status`` is only needed when the
    movement changes status and the type does not imply it.
    """
    cylinder_type_id: int
    from_location_type: Optional[LocationType] = None
    from_location_reference_id: Optional[int] = None
    to_location_type: LocationType
    to_location_reference_id: Optional[int] = None
    quantity: int
    cylinder_status: CylinderStatus
    to_cylinder_status: Optional[CylinderStatus] = None
    movement_type: MovementType
    reference_transaction_id: Optional[int] = None
    notes: Optional[str] = Field(None, max_length=500)
    actor: Optional[str] = Field(None, max_length=100)


class MovementResponse(CamelModel):
    id: int
    ts: Optional[datetime] = None
    cylinder_type_id: int
    from_location_type: Optional[LocationType] = None
    from_reference_id: Optional[int] = None
    from_status: Optional[CylinderStatus] = None
    to_location_type: LocationType
    to_reference_id: int
    to_status: CylinderStatus
    quantity: int
    movement_type: MovementType
    reference_transaction_id: Optional[int] = None
    batch_id: Optional[int] = None
    actor: Optional[str] = None
    notes: Optional[str] = None


class MovementListResponse(CamelModel):
    items: List[MovementResponse]
    total: int
    limit: int
    offset: int


class CompoundMovementCreate(CamelModel):
    """Several legs applied all-or-nothing under one idempotency key."""
    idempotency_key: str = Field(..., min_length=1, max_length=100)
    actor: Optional[str] = Field(None, max_length=100)
    legs: List[MovementCreate] = Field(..., min_length=1)


class CompoundMovementResponse(CamelModel):
    batch_id: int
    idempotency_key: str
    created: bool
    movements: List[MovementResponse]


# ============== Initialization ==============

class InitializeEntry(CamelModel):
    cylinder_type_id: int
    quantity: int
    cylinder_status: CylinderStatus


class InitializeRequest(CamelModel):
    location_type: LocationType
    reference_id: Optional[int] = None
    cylinders: List[InitializeEntry] = Field(..., min_length=1)
    actor: Optional[str] = Field(None, max_length=100)


class InitializedCylinder(CamelModel):
    cylinder_type_id: int
    cylinder_status: CylinderStatus
    quantity: int
    movement_id: int


class InitializeResponse(CamelModel):
    initialized_cylinders: List[InitializedCylinder]
    total_quantity: int
    location_type: LocationType
    reference_id: int

"""Inventory ledger routes."""

from typing import Dict, Optional, Tuple

from fastapi import APIRouter, Query, Request, Response, status

from cylinder_ledger.core.rate_limit import limiter
from cylinder_ledger.core.responses import list_response
from cylinder_ledger.db.session import DbSession
from cylinder_ledger.models.inventory import CylinderStatus, LocationType, MovementType
from cylinder_ledger.schemas.inventory import (
    AvailableQuantityResponse,
    CompoundMovementCreate,
    CompoundMovementResponse,
    CylinderTypeCreate,
    CylinderTypeResponse,
    DashboardResponse,
    InitializeRequest,
    InitializeResponse,
    InventoryListResponse,
    InventoryRecordResponse,
    LocationReferenceCreate,
    LocationReferenceResponse,
    MovementCreate,
    MovementListResponse,
    MovementResponse,
)
from cylinder_ledger.services.inventory_service import (
    MOVEMENT_STATUS_RULES,
    InventoryService,
    MovementLeg,
)

router = APIRouter()


def _leg_from_request(body: MovementCreate) -> MovementLeg:
    """Translate a request into a ledger leg.

    Types that change status (CONVERSION, REFILLING_OUT) take their statuses
    from the type when ``toCylinderStatus`` is omitted.
    """
    from_status = body.cylinder_status
    to_status = body.to_cylinder_status or body.cylinder_status
    rule = MOVEMENT_STATUS_RULES.get(body.movement_type)
    if body.to_cylinder_status is None and rule and rule[0] != rule[1] and body.cylinder_status in rule:
        from_status, to_status = rule
    return MovementLeg(
        cylinder_type_id=body.cylinder_type_id,
        movement_type=body.movement_type,
        quantity=body.quantity,
        from_location_type=body.from_location_type,
        from_reference_id=body.from_location_reference_id,
        from_status=from_status if body.from_location_type is not None else None,
        to_location_type=body.to_location_type,
        to_reference_id=body.to_location_reference_id,
        to_status=to_status,
        reference_transaction_id=body.reference_transaction_id,
        notes=body.notes,
    )


@router.get("", response_model=InventoryListResponse)
@limiter.limit("120/minute")
def list_inventory(
    request: Request,
    db: DbSession,
    location_type: Optional[LocationType] = Query(None, alias="locationType"),
    reference_id: Optional[int] = Query(None, alias="referenceId"),
    cylinder_status: Optional[CylinderStatus] = Query(None, alias="cylinderStatus"),
    cylinder_type_id: Optional[int] = Query(None, alias="cylinderTypeId"),
):
    """List inventory balances, optionally filtered."""
    service = InventoryService(db)
    records = service.query_inventory(
        location_type=location_type,
        reference_id=reference_id,
        cylinder_status=cylinder_status,
        cylinder_type_id=cylinder_type_id,
    )
    names: Dict[Tuple[LocationType, int], Optional[str]] = {}
    items = []
    for record in records:
        key = (record.location_type, record.reference_id)
        if key not in names:
            names[key] = service.reference_name(*key)
        item = InventoryRecordResponse.model_validate(record)
        item.reference_name = names[key]
        items.append(item)
    return list_response(items)


@router.get("/dashboard", response_model=DashboardResponse)
@limiter.limit("120/minute")
def get_dashboard(request: Request, db: DbSession):
    """Aggregate totals by location type and status."""
    return InventoryService(db).dashboard()


@router.get(
    "/available/{cylinder_type_id}/{location_type}/{reference_id}/{cylinder_status}",
    response_model=AvailableQuantityResponse,
)
@limiter.limit("120/minute")
def get_available_quantity(
    request: Request,
    db: DbSession,
    cylinder_type_id: int,
    location_type: LocationType,
    reference_id: int,
    cylinder_status: CylinderStatus,
):
    """Current balance at one key. Use 0 as reference for pooled locations."""
    quantity = InventoryService(db).get_available_quantity(
        cylinder_type_id, location_type, reference_id, cylinder_status
    )
    return {"quantity": quantity}


@router.get("/movements", response_model=MovementListResponse)
@limiter.limit("120/minute")
def list_movements(
    request: Request,
    db: DbSession,
    cylinder_type_id: Optional[int] = Query(None, alias="cylinderTypeId"),
    reference_transaction_id: Optional[int] = Query(None, alias="referenceTransactionId"),
    movement_type: Optional[MovementType] = Query(None, alias="movementType"),
    limit: int = Query(100),
    offset: int = Query(0),
):
    """Movement log, newest first."""
    items, total = InventoryService(db).list_movements(
        cylinder_type_id=cylinder_type_id,
        reference_transaction_id=reference_transaction_id,
        movement_type=movement_type,
        limit=limit,
        offset=offset,
    )
    return {"items": items, "total": total, "limit": limit, "offset": offset}


@router.post("/movements", response_model=MovementResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("60/minute")
def create_movement(request: Request, db: DbSession, body: MovementCreate):
    """Apply a single movement."""
    return InventoryService(db).apply_movement(_leg_from_request(body), actor=body.actor)


@router.post("/movements/compound", response_model=CompoundMovementResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("60/minute")
def create_compound_movement(
    request: Request,
    response: Response,
    db: DbSession,
    body: CompoundMovementCreate,
):
    """Apply several legs all-or-nothing. A repeated idempotency key replays the first result."""
    batch, created = InventoryService(db).apply_compound(
        [_leg_from_request(leg) for leg in body.legs],
        idempotency_key=body.idempotency_key,
        actor=body.actor,
    )
    if not created:
        response.status_code = status.HTTP_200_OK
    return {
        "batch_id": batch.id,
        "idempotency_key": batch.idempotency_key,
        "created": created,
        "movements": batch.movements,
    }


@router.post("/initialize", response_model=InitializeResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
def initialize_inventory(request: Request, db: DbSession, body: InitializeRequest):
    """Seed starting stock at a location."""
    return InventoryService(db).initialize(
        location_type=body.location_type,
        reference_id=body.reference_id,
        entries=[entry.model_dump() for entry in body.cylinders],
        actor=body.actor,
    )


@router.get("/cylinder-types", response_model=list[CylinderTypeResponse])
@limiter.limit("120/minute")
def list_cylinder_types(request: Request, db: DbSession):
    """List cylinder types."""
    return InventoryService(db).list_cylinder_types()


@router.post("/cylinder-types", response_model=CylinderTypeResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
def create_cylinder_type(request: Request, db: DbSession, body: CylinderTypeCreate):
    """Register a cylinder type."""
    return InventoryService(db).create_cylinder_type(body.code, body.capacity_label, body.description)


@router.post(
    "/location-references",
    response_model=LocationReferenceResponse,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit("30/minute")
def register_location_reference(request: Request, db: DbSession, body: LocationReferenceCreate):
    """Register or rename a vehicle/customer reference."""
    service = InventoryService(db)
    ref = service.register_location_reference(
        body.location_type, body.reference_id, body.reference_name, parent_id=body.parent_id
    )
    result = LocationReferenceResponse.model_validate(ref)
    result.display_path = service.reference_display_path(ref.id)
    return result

"""Reconciliation routes: plan variance aggregation and vehicle counts."""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Query, Request, status

from cylinder_ledger.core.rate_limit import limiter
from cylinder_ledger.core.responses import list_response
from cylinder_ledger.db.session import DbSession
from cylinder_ledger.models.reconciliation import ReconciliationStatus
from cylinder_ledger.schemas.reconciliation import (
    CloseReconciliationRequest,
    DailyReconciliationCreate,
    DailyReconciliationListResponse,
    DailyReconciliationResponse,
    InventoryCountRequest,
    VarianceDetailResponse,
    VarianceResolutionUpdate,
    VehicleInventoryListResponse,
)
from cylinder_ledger.services.reconciliation_service import ReconciliationService

router = APIRouter()


@router.post("/daily", response_model=DailyReconciliationResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
def create_daily_reconciliation(request: Request, db: DbSession, body: DailyReconciliationCreate):
    """Aggregate a plan's exchange variances."""
    return ReconciliationService(db).create_daily_reconciliation(
        plan_id=body.plan_id,
        reconciled_by=body.reconciled_by,
        notes=body.reconciliation_notes,
    )


@router.get("/daily", response_model=DailyReconciliationListResponse)
@limiter.limit("60/minute")
def list_daily_reconciliations(
    request: Request,
    db: DbSession,
    status_filter: Optional[ReconciliationStatus] = Query(None, alias="status"),
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
):
    """List reconciliations, newest first."""
    items = ReconciliationService(db).list_reconciliations(
        status=status_filter, date_from=date_from, date_to=date_to
    )
    return list_response(items)


@router.get("/daily/{reconciliation_id}", response_model=DailyReconciliationResponse)
@limiter.limit("60/minute")
def get_daily_reconciliation(request: Request, db: DbSession, reconciliation_id: int):
    """Get a reconciliation with its variance details."""
    return ReconciliationService(db).get_reconciliation(reconciliation_id)


@router.post("/daily/{reconciliation_id}/close", response_model=DailyReconciliationResponse)
@limiter.limit("30/minute")
def close_daily_reconciliation(
    request: Request, db: DbSession, reconciliation_id: int, body: CloseReconciliationRequest
):
    """Close a reconciliation once every variance is resolved or escalated."""
    return ReconciliationService(db).close_reconciliation(reconciliation_id, body.closed_by)


@router.patch("/variance/{detail_id}", response_model=VarianceDetailResponse)
@limiter.limit("60/minute")
def update_variance_resolution(request: Request, db: DbSession, detail_id: int, body: VarianceResolutionUpdate):
    """Update the follow-up state of one exchange variance."""
    return ReconciliationService(db).update_variance_resolution(
        detail_id,
        resolution_status=body.resolution_status,
        resolution_notes=body.resolution_notes,
        resolved_by=body.resolved_by,
    )


@router.post(
    "/count-inventory",
    response_model=VehicleInventoryListResponse,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit("30/minute")
def count_vehicle_inventory(request: Request, db: DbSession, body: InventoryCountRequest):
    """Record the end-of-day physical count for a plan's vehicle."""
    counts = ReconciliationService(db).count_vehicle_inventory(
        plan_id=body.plan_id,
        items=[item.model_dump() for item in body.inventory_items],
        counted_by=body.counted_by,
    )
    return list_response(counts)


@router.get("/vehicle-inventory/{plan_id}", response_model=VehicleInventoryListResponse)
@limiter.limit("60/minute")
def get_vehicle_inventory(request: Request, db: DbSession, plan_id: int):
    """List the recorded vehicle counts for a plan."""
    return list_response(ReconciliationService(db).get_vehicle_inventory(plan_id))

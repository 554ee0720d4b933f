"""Dispatch plan routes."""

from fastapi import APIRouter, Request, status

from cylinder_ledger.core.rate_limit import limiter
from cylinder_ledger.db.session import DbSession
from cylinder_ledger.schemas.order import PlanCreate, PlanResponse
from cylinder_ledger.services.order_service import OrderService

router = APIRouter()


@router.post("", response_model=PlanResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
def create_plan(request: Request, db: DbSession, body: PlanCreate):
    """Assign confirmed orders to a vehicle and driver for a day."""
    return OrderService(db).create_plan(
        plan_date=body.plan_date,
        vehicle_id=body.vehicle_id,
        driver_id=body.driver_id,
        order_ids=body.order_ids,
        vehicle_number=body.vehicle_number,
        notes=body.notes,
        created_by=body.created_by,
    )


@router.get("/{plan_id}", response_model=PlanResponse)
@limiter.limit("120/minute")
def get_plan(request: Request, db: DbSession, plan_id: int):
    """Get a plan with its orders."""
    return OrderService(db).get_plan(plan_id)

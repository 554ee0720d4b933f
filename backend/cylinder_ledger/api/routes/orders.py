"""Delivery order routes."""

from fastapi import APIRouter, Request, status

from cylinder_ledger.core.rate_limit import limiter
from cylinder_ledger.db.session import DbSession
from cylinder_ledger.schemas.order import OrderCreate, OrderResponse, OrderStatusUpdate
from cylinder_ledger.services.order_service import OrderService

router = APIRouter()


@router.post("", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("60/minute")
def create_order(request: Request, db: DbSession, body: OrderCreate):
    """Create a PENDING delivery order."""
    return OrderService(db).create_order(
        order_number=body.order_number,
        customer_id=body.customer_id,
        customer_name=body.customer_name,
        lines=[line.model_dump() for line in body.lines],
        expected_empty_override=body.expected_empty_override,
        notes=body.notes,
        created_by=body.created_by,
    )


@router.get("/{order_id}", response_model=OrderResponse)
@limiter.limit("120/minute")
def get_order(request: Request, db: DbSession, order_id: int):
    """Get an order with its lines."""
    return OrderService(db).get_order(order_id)


@router.post("/{order_id}/status", response_model=OrderResponse)
@limiter.limit("60/minute")
def update_order_status(request: Request, db: DbSession, order_id: int, body: OrderStatusUpdate):
    """Move an order through its lifecycle. DELIVERED requires a recorded exchange."""
    return OrderService(db).transition(order_id, body.status, changed_by=body.changed_by, reason=body.reason)

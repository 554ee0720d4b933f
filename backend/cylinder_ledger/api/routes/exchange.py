"""Exchange verification routes."""

from fastapi import APIRouter, Depends, Request, Response, status

from cylinder_ledger.core.rate_limit import limiter
from cylinder_ledger.core.responses import list_response
from cylinder_ledger.db.session import DbSession
from cylinder_ledger.models.inventory import LocationType
from cylinder_ledger.schemas.exchange import (
    AcknowledgeRequest,
    ExchangeDetailResponse,
    ExchangeFilters,
    ExchangeListResponse,
    ExchangeRecordRequest,
    ExchangeResponse,
    ExchangeSummaryResponse,
)
from cylinder_ledger.services.exchange_service import ExchangeService

router = APIRouter()


@router.post("/record", response_model=ExchangeResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("60/minute")
def record_exchange(request: Request, response: Response, db: DbSession, body: ExchangeRecordRequest):
    """Verify an exchange and apply its delivery, conversion and return movements."""
    exchange, created = ExchangeService(db).record_exchange(
        order_id=body.order_id,
        filled_delivered=body.filled_delivered,
        empty_collected=body.empty_collected,
        expected_empty=body.expected_empty,
        variance_reason=body.variance_reason,
        customer_acknowledged=body.customer_acknowledged,
        notes=body.notes,
        empty_destination=LocationType(body.empty_destination) if body.empty_destination else None,
        recorded_by=body.recorded_by,
    )
    if not created:
        response.status_code = status.HTTP_200_OK
    return exchange


@router.get("/tracking", response_model=ExchangeListResponse)
@limiter.limit("120/minute")
def list_exchanges(request: Request, db: DbSession, filters: ExchangeFilters = Depends()):
    """List exchanges ordered by order id."""
    exchanges = ExchangeService(db).list_exchanges(**filters.model_dump())
    return list_response(exchanges)


@router.get("/tracking/{exchange_id}", response_model=ExchangeDetailResponse)
@limiter.limit("120/minute")
def get_exchange(request: Request, db: DbSession, exchange_id: int):
    """Get one exchange with its order."""
    exchange = ExchangeService(db).get_exchange(exchange_id)
    detail = ExchangeDetailResponse.model_validate(exchange)
    detail.order_number = exchange.order.order_number
    detail.order_status = exchange.order.status
    detail.customer_name = exchange.order.customer_name
    return detail


@router.patch("/tracking/{exchange_id}/acknowledge", response_model=ExchangeResponse)
@limiter.limit("60/minute")
def acknowledge_exchange(request: Request, db: DbSession, exchange_id: int, body: AcknowledgeRequest):
    """Record the customer's acknowledgment."""
    return ExchangeService(db).acknowledge(exchange_id, body.acknowledged_by)


@router.get("/summary/{plan_id}", response_model=ExchangeSummaryResponse)
@limiter.limit("120/minute")
def get_exchange_summary(request: Request, db: DbSession, plan_id: int):
    """Exchange totals for a dispatch plan."""
    return ExchangeService(db).exchange_summary(plan_id)

"""Schemas for exchange verification."""

from datetime import date, datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from cylinder_ledger.models.delivery import OrderStatus
from cylinder_ledger.models.exchange import VarianceType
from cylinder_ledger.models.inventory import LocationType


class ExchangeRecordRequest(BaseModel):
    """Counts captured by the driver at the delivery stop."""
    order_id: int
    filled_delivered: int = Field(..., ge=0)
    empty_collected: int = Field(..., ge=0)
    expected_empty: Optional[int] = Field(None, ge=0)  # Defaults to the order's expectation
    variance_reason: Optional[str] = Field(None, max_length=500)
    customer_acknowledged: bool = False
    notes: Optional[str] = None
    empty_destination: Optional[Literal["YARD", "VEHICLE"]] = None
    recorded_by: Optional[str] = Field(None, max_length=100)


class ExchangeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: int
    plan_id: Optional[int] = None
    customer_id: int
    filled_delivered: int
    empty_collected: int
    expected_empty: int
    variance_qty: int
    variance_type: VarianceType
    variance_reason: Optional[str] = None
    empty_destination: LocationType
    customer_acknowledged: bool
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    recorded_by: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None


class ExchangeDetailResponse(ExchangeResponse):
    """Exchange with the order it belongs to."""
    order_number: Optional[str] = None
    order_status: Optional[OrderStatus] = None
    customer_name: Optional[str] = None


class ExchangeListResponse(BaseModel):
    items: List[ExchangeResponse]
    total: int


class AcknowledgeRequest(BaseModel):
    acknowledged_by: str = Field(..., min_length=1, max_length=100)


class ExchangeFilters(BaseModel):
    plan_id: Optional[int] = None
    order_id: Optional[int] = None
    variance_type: Optional[VarianceType] = None
    customer_id: Optional[int] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None


class ExchangeSummaryResponse(BaseModel):
    plan_id: int
    plan_date: date
    total_orders: int
    total_exchanges: int
    orders_without_exchange: List[int]
    total_filled_delivered: int
    total_empty_collected: int
    total_expected_empty: int
    match_count: int
    shortage_count: int
    excess_count: int
    total_shortage_qty: int
    total_excess_qty: int
    pending_acknowledgments: int

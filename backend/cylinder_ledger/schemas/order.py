"""Delivery order and dispatch plan schemas."""

from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from cylinder_ledger.models.delivery import OrderStatus, PlanStatus


class OrderLineCreate(BaseModel):
    cylinder_type_id: int
    ordered_qty: int = Field(..., gt=0)


class OrderCreate(BaseModel):
    order_number: str = Field(..., min_length=1, max_length=50)
    customer_id: int = Field(..., gt=0)
    customer_name: Optional[str] = Field(None, max_length=200)
    lines: List[OrderLineCreate] = Field(..., min_length=1)
    expected_empty_override: Optional[int] = Field(None, ge=0)
    notes: Optional[str] = None
    created_by: Optional[str] = Field(None, max_length=100)


class OrderLineResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    cylinder_type_id: int
    ordered_qty: int
    loaded_qty: Optional[int] = None
    delivered_qty: Optional[int] = None


class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_number: str
    customer_id: int
    customer_name: Optional[str] = None
    status: OrderStatus
    plan_id: Optional[int] = None
    sequence_number: Optional[int] = None
    vehicle_id: Optional[int] = None
    expected_empty_override: Optional[int] = None
    expected_empty: int
    delivered_at: Optional[datetime] = None
    lines: List[OrderLineResponse] = []


class OrderStatusUpdate(BaseModel):
    status: OrderStatus
    changed_by: Optional[str] = Field(None, max_length=100)
    reason: Optional[str] = Field(None, max_length=500)


class PlanCreate(BaseModel):
    """Group confirmed orders onto a vehicle and driver."""
    plan_date: date
    vehicle_id: int = Field(..., gt=0)
    vehicle_number: Optional[str] = Field(None, max_length=50)
    driver_id: int = Field(..., gt=0)
    order_ids: List[int] = Field(..., min_length=1)
    notes: Optional[str] = None
    created_by: Optional[str] = Field(None, max_length=100)


class PlanResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    plan_date: date
    vehicle_id: int
    vehicle_number: Optional[str] = None
    driver_id: int
    status: PlanStatus
    notes: Optional[str] = None
    orders: List[OrderResponse] = []

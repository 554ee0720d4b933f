"""Schemas for plan reconciliation and vehicle counts."""

from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from cylinder_ledger.models.exchange import VarianceType
from cylinder_ledger.models.reconciliation import DeltaSeverity, ReconciliationStatus, ResolutionStatus


# ============== Daily reconciliation ==============

class DailyReconciliationCreate(BaseModel):
    plan_id: int
    reconciled_by: str = Field(..., min_length=1, max_length=100)
    reconciliation_notes: Optional[str] = None


class VarianceDetailResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    reconciliation_id: int
    exchange_id: int
    order_id: int
    variance_qty: int
    variance_type: VarianceType
    variance_reason: Optional[str] = None
    resolution_status: ResolutionStatus
    resolution_notes: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None


class DailyReconciliationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    plan_id: int
    reconciliation_date: date
    total_orders: int
    total_shortages: int
    total_excess: int
    status: ReconciliationStatus
    reconciled_by: str
    notes: Optional[str] = None
    closed_by: Optional[str] = None
    closed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    variance_details: List[VarianceDetailResponse] = []


class DailyReconciliationListResponse(BaseModel):
    items: List[DailyReconciliationResponse]
    total: int


class VarianceResolutionUpdate(BaseModel):
    resolution_status: ResolutionStatus
    resolution_notes: Optional[str] = None
    resolved_by: Optional[str] = Field(None, max_length=100)


class CloseReconciliationRequest(BaseModel):
    closed_by: str = Field(..., min_length=1, max_length=100)


# ============== Vehicle end-of-day count ==============

class InventoryCountItem(BaseModel):
    cylinder_type_id: int
    actual_remaining: int = Field(..., ge=0)
    variance_reason: Optional[str] = Field(None, max_length=500)


class InventoryCountRequest(BaseModel):
    plan_id: int
    inventory_items: List[InventoryCountItem] = Field(..., min_length=1)
    counted_by: Optional[str] = Field(None, max_length=100)


class VehicleInventoryCountResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    plan_id: int
    cylinder_type_id: int
    expected_remaining: int
    actual_remaining: int
    variance: int
    severity: DeltaSeverity
    severity_reason: Optional[str] = None
    variance_reason: Optional[str] = None
    counted_by: Optional[str] = None
    counted_at: Optional[datetime] = None


class VehicleInventoryListResponse(BaseModel):
    items: List[VehicleInventoryCountResponse]
    total: int

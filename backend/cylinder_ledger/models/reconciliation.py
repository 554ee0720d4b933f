"""Daily reconciliation, variance follow-up and vehicle end-of-day count models."""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cylinder_ledger.db.base import Base
from cylinder_ledger.models.exchange import VarianceType


class ReconciliationStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class ResolutionStatus(str, Enum):
    """Follow-up state of a single exchange variance."""

    PENDING = "PENDING"
    RESOLVED = "RESOLVED"
    ESCALATED = "ESCALATED"


class DeltaSeverity(str, Enum):
    """Severity level of a count discrepancy."""

    OK = "ok"              # Within acceptable tolerance
    WARNING = "warning"    # Minor discrepancy
    CRITICAL = "critical"  # Significant discrepancy requires attention


class DailyReconciliation(Base):
    """Aggregate of exchange variances for one dispatch plan."""

    __tablename__ = "daily_reconciliations"

    id: Mapped[int] = mapped_column(primary_key=True)
    plan_id: Mapped[int] = mapped_column(
        ForeignKey("delivery_plans.id", ondelete="RESTRICT"), unique=True, nullable=False
    )
    reconciliation_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    total_orders: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_shortages: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_excess: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[ReconciliationStatus] = mapped_column(
        SQLEnum(ReconciliationStatus), default=ReconciliationStatus.OPEN, nullable=False
    )
    reconciled_by: Mapped[str] = mapped_column(String(100), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    closed_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    variance_details: Mapped[List["ExchangeVarianceDetail"]] = relationship(
        "ExchangeVarianceDetail",
        back_populates="reconciliation",
        cascade="all, delete-orphan",
        order_by="ExchangeVarianceDetail.id",
    )


class ExchangeVarianceDetail(Base):
    """A non-matching exchange carried into a reconciliation for follow-up."""

    __tablename__ = "exchange_variance_details"

    id: Mapped[int] = mapped_column(primary_key=True)
    reconciliation_id: Mapped[int] = mapped_column(
        ForeignKey("daily_reconciliations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    exchange_id: Mapped[int] = mapped_column(
        ForeignKey("exchange_tracking.id", ondelete="RESTRICT"), nullable=False
    )
    order_id: Mapped[int] = mapped_column(Integer, nullable=False)
    variance_qty: Mapped[int] = mapped_column(Integer, nullable=False)
    variance_type: Mapped[VarianceType] = mapped_column(SQLEnum(VarianceType), nullable=False)
    variance_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    resolution_status: Mapped[ResolutionStatus] = mapped_column(
        SQLEnum(ResolutionStatus), default=ResolutionStatus.PENDING, nullable=False
    )
    resolution_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    reconciliation: Mapped["DailyReconciliation"] = relationship(
        "DailyReconciliation", back_populates="variance_details"
    )


class VehicleInventoryCount(Base):
    """End-of-day physical count of cylinders left on a plan's vehicle."""

    __tablename__ = "vehicle_inventory_counts"
    __table_args__ = (
        UniqueConstraint("plan_id", "cylinder_type_id", name="uq_vehicle_count_plan_type"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    plan_id: Mapped[int] = mapped_column(
        ForeignKey("delivery_plans.id", ondelete="CASCADE"), nullable=False, index=True
    )
    cylinder_type_id: Mapped[int] = mapped_column(
        ForeignKey("cylinder_types.id", ondelete="RESTRICT"), nullable=False
    )
    expected_remaining: Mapped[int] = mapped_column(Integer, nullable=False)
    actual_remaining: Mapped[int] = mapped_column(Integer, nullable=False)
    variance: Mapped[int] = mapped_column(Integer, nullable=False)  # actual - expected
    severity: Mapped[DeltaSeverity] = mapped_column(
        SQLEnum(DeltaSeverity), default=DeltaSeverity.OK, nullable=False
    )
    severity_reason: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    variance_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    counted_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    counted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

"""Exchange tracking: filled delivered vs empty collected per order."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cylinder_ledger.db.base import Base
from cylinder_ledger.models.inventory import LocationType


class VarianceType(str, Enum):
    SHORTAGE = "SHORTAGE"  # Fewer empties than expected
    EXCESS = "EXCESS"      # More empties than expected
    MATCH = "MATCH"

    @classmethod
    def classify(cls, variance_qty: int) -> "VarianceType":
        if variance_qty < 0:
            return cls.SHORTAGE
        if variance_qty > 0:
            return cls.EXCESS
        return cls.MATCH


# Reasons offered to drivers when a variance is recorded
VARIANCE_REASONS = [
    "STOCK_SHORTAGE",
    "CUSTOMER_REJECTED",
    "DAMAGE",
    "WRONG_TYPE",
    "CUSTOMER_NOT_AVAILABLE",
    "PARTIAL_DELIVERY",
    "OTHER",
]


class ExchangeTracking(Base):
    """One verified exchange per delivery order. Gates the DELIVERED transition."""

    __tablename__ = "exchange_tracking"
    __table_args__ = (
        CheckConstraint("filled_delivered >= 0", name="ck_exchange_filled"),
        CheckConstraint("empty_collected >= 0", name="ck_exchange_empty"),
        CheckConstraint("expected_empty >= 0", name="ck_exchange_expected"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(
        ForeignKey("delivery_orders.id", ondelete="RESTRICT"), unique=True, nullable=False
    )
    plan_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("delivery_plans.id", ondelete="SET NULL"), nullable=True, index=True
    )
    customer_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    filled_delivered: Mapped[int] = mapped_column(Integer, nullable=False)
    empty_collected: Mapped[int] = mapped_column(Integer, nullable=False)
    expected_empty: Mapped[int] = mapped_column(Integer, nullable=False)
    variance_qty: Mapped[int] = mapped_column(Integer, nullable=False)  # empty_collected - expected_empty
    variance_type: Mapped[VarianceType] = mapped_column(SQLEnum(VarianceType), nullable=False, index=True)
    variance_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    empty_destination: Mapped[LocationType] = mapped_column(SQLEnum(LocationType), nullable=False)

    customer_acknowledged: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    acknowledged_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    recorded_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )

    order: Mapped["DeliveryOrder"] = relationship("DeliveryOrder")


# Forward references
from cylinder_ledger.models.delivery import DeliveryOrder  # noqa: E402

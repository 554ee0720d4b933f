"""Delivery order and dispatch plan models."""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    CheckConstraint,
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

from cylinder_ledger.db.base import Base, TimestampMixin


class OrderStatus(str, Enum):
    """Delivery order lifecycle."""

    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    ASSIGNED = "ASSIGNED"      # Grouped into a dispatch plan
    LOADED = "LOADED"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"    # Terminal, requires an exchange record
    CANCELLED = "CANCELLED"    # Terminal


class PlanStatus(str, Enum):
    PLANNED = "PLANNED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class DeliveryPlan(Base, TimestampMixin):
    """A dispatch plan groups orders with one vehicle and driver for a day."""

    __tablename__ = "delivery_plans"

    id: Mapped[int] = mapped_column(primary_key=True)
    plan_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    vehicle_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    vehicle_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    driver_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    status: Mapped[PlanStatus] = mapped_column(SQLEnum(PlanStatus), default=PlanStatus.PLANNED, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    orders: Mapped[List["DeliveryOrder"]] = relationship(
        "DeliveryOrder", back_populates="plan", order_by="DeliveryOrder.sequence_number"
    )


class DeliveryOrder(Base, TimestampMixin):
    """A customer order for cylinders."""

    __tablename__ = "delivery_orders"

    id: Mapped[int] = mapped_column(primary_key=True)
    order_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    customer_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    customer_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    status: Mapped[OrderStatus] = mapped_column(
        SQLEnum(OrderStatus), default=OrderStatus.PENDING, nullable=False, index=True
    )
    plan_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("delivery_plans.id", ondelete="SET NULL"), nullable=True, index=True
    )
    sequence_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    vehicle_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    # Empties expected back; null means one empty per filled cylinder delivered
    expected_empty_override: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    lines: Mapped[List["DeliveryOrderLine"]] = relationship(
        "DeliveryOrderLine", back_populates="order", cascade="all, delete-orphan", order_by="DeliveryOrderLine.id"
    )
    plan: Mapped[Optional["DeliveryPlan"]] = relationship("DeliveryPlan", back_populates="orders")
    status_history: Mapped[List["OrderStatusHistory"]] = relationship(
        "OrderStatusHistory", back_populates="order", cascade="all, delete-orphan", order_by="OrderStatusHistory.id"
    )

    @property
    def total_ordered(self) -> int:
        return sum(line.ordered_qty for line in self.lines)

    @property
    def expected_empty(self) -> int:
        """Empties this order expects back when the caller does not say."""
        if self.expected_empty_override is not None:
            return self.expected_empty_override
        return sum(line.delivered_quantity for line in self.lines)


class DeliveryOrderLine(Base):
    """One cylinder type on an order."""

    __tablename__ = "delivery_order_lines"
    __table_args__ = (
        UniqueConstraint("order_id", "cylinder_type_id", name="uq_order_line_type"),
        CheckConstraint("ordered_qty > 0", name="ck_order_line_qty"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(
        ForeignKey("delivery_orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    cylinder_type_id: Mapped[int] = mapped_column(
        ForeignKey("cylinder_types.id", ondelete="RESTRICT"), nullable=False
    )
    ordered_qty: Mapped[int] = mapped_column(Integer, nullable=False)
    loaded_qty: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    delivered_qty: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    order: Mapped["DeliveryOrder"] = relationship("DeliveryOrder", back_populates="lines")

    @property
    def delivered_quantity(self) -> int:
        """Delivered quantity, falling back to what was loaded, then ordered."""
        for qty in (self.delivered_qty, self.loaded_qty):
            if qty is not None:
                return qty
        return self.ordered_qty


class OrderStatusHistory(Base):
    """Audit trail of order status transitions."""

    __tablename__ = "order_status_history"

    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(
        ForeignKey("delivery_orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    from_status: Mapped[Optional[OrderStatus]] = mapped_column(SQLEnum(OrderStatus), nullable=True)
    to_status: Mapped[OrderStatus] = mapped_column(SQLEnum(OrderStatus), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    changed_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    changed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    order: Mapped["DeliveryOrder"] = relationship("DeliveryOrder", back_populates="status_history")

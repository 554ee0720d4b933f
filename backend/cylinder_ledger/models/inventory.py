"""Inventory models: cylinder types, location references, balances and the movement ledger."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cylinder_ledger.db.base import Base, TimestampMixin


class LocationType(str, Enum):
    """Where a cylinder physically is."""

    YARD = "YARD"            # Central storage
    VEHICLE = "VEHICLE"      # In-transit stock
    CUSTOMER = "CUSTOMER"    # Stock currently with a customer
    PLANT = "PLANT"          # Manufacturing
    REFILLING = "REFILLING"  # Refill station


# Locations whose stock is tracked per referenced entity
REFERENCED_LOCATIONS = {LocationType.VEHICLE, LocationType.CUSTOMER}


class CylinderStatus(str, Enum):
    FILLED = "FILLED"
    EMPTY = "EMPTY"


class MovementType(str, Enum):
    """Kinds of ledger movements."""

    DELIVERY_FILLED = "DELIVERY_FILLED"
    DELIVERY_EMPTY = "DELIVERY_EMPTY"
    RETURN_FILLED = "RETURN_FILLED"
    RETURN_EMPTY = "RETURN_EMPTY"
    REFILLING_IN = "REFILLING_IN"
    REFILLING_OUT = "REFILLING_OUT"
    CONVERSION = "CONVERSION"          # FILLED -> EMPTY in place
    TRANSFER = "TRANSFER"
    ADJUSTMENT = "ADJUSTMENT"          # External correction, may have no source
    INITIALIZATION = "INITIALIZATION"  # Seeds starting stock, no source


# Movement types allowed to inject stock from outside the tracked system
EXTERNAL_MOVEMENT_TYPES = {MovementType.INITIALIZATION, MovementType.ADJUSTMENT}


class CylinderType(Base, TimestampMixin):
    """A distinct gas-cylinder capacity/SKU. Reference data."""

    __tablename__ = "cylinder_types"

    id: Mapped[int] = mapped_column(primary_key=True)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    capacity_label: Mapped[str] = mapped_column(String(50), nullable=False)  # e.g. "14.2 kg"
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)


class LocationReference(Base, TimestampMixin):
    """Canonical reference for a VEHICLE or CUSTOMER location.

    Registered at ingestion time so every InventoryRecord is written against a
    validated reference id. ``parent_id`` links a child entity to its parent
    (e.g. a sub-dealer to its dealer) and is resolved iteratively for display.
    """

    __tablename__ = "location_references"
    __table_args__ = (
        UniqueConstraint("location_type", "reference_id", name="uq_location_reference"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    location_type: Mapped[LocationType] = mapped_column(SQLEnum(LocationType), nullable=False)
    reference_id: Mapped[int] = mapped_column(Integer, nullable=False)
    reference_name: Mapped[str] = mapped_column(String(200), nullable=False)
    parent_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("location_references.id", ondelete="SET NULL"), nullable=True
    )


class InventoryRecord(Base):
    """Current quantity per (cylinder type, location, reference, status).

    Created lazily on the first movement into the key and never deleted.
    ``version`` is checked on every UPDATE so concurrent writers to the same
    key cannot both succeed.
    """

    __tablename__ = "inventory_records"
    __table_args__ = (
        UniqueConstraint(
            "cylinder_type_id", "location_type", "reference_id", "cylinder_status",
            name="uq_inventory_key",
        ),
        CheckConstraint("quantity >= 0", name="ck_inventory_non_negative"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    cylinder_type_id: Mapped[int] = mapped_column(
        ForeignKey("cylinder_types.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    location_type: Mapped[LocationType] = mapped_column(SQLEnum(LocationType), nullable=False, index=True)
    reference_id: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # 0 = no reference
    cylinder_status: Mapped[CylinderStatus] = mapped_column(SQLEnum(CylinderStatus), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __mapper_args__ = {"version_id_col": version}

    cylinder_type: Mapped["CylinderType"] = relationship("CylinderType")


class MovementBatch(Base):
    """Groups the legs of one compound operation under an idempotency key."""

    __tablename__ = "movement_batches"

    id: Mapped[int] = mapped_column(primary_key=True)
    idempotency_key: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    actor: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    movements: Mapped[List["CylinderMovement"]] = relationship(
        "CylinderMovement", back_populates="batch", order_by="CylinderMovement.id"
    )


class CylinderMovement(Base):
    """Ledger of all cylinder quantity changes (single source of truth). Append-only."""

    __tablename__ = "cylinder_movements"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_movement_positive"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    ts: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )
    cylinder_type_id: Mapped[int] = mapped_column(
        ForeignKey("cylinder_types.id", ondelete="RESTRICT"), nullable=False, index=True
    )

    # Source is null for external injections (INITIALIZATION / ADJUSTMENT)
    from_location_type: Mapped[Optional[LocationType]] = mapped_column(SQLEnum(LocationType), nullable=True)
    from_reference_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    from_status: Mapped[Optional[CylinderStatus]] = mapped_column(SQLEnum(CylinderStatus), nullable=True)

    to_location_type: Mapped[LocationType] = mapped_column(SQLEnum(LocationType), nullable=False)
    to_reference_id: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    to_status: Mapped[CylinderStatus] = mapped_column(SQLEnum(CylinderStatus), nullable=False)

    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    movement_type: Mapped[MovementType] = mapped_column(SQLEnum(MovementType), nullable=False, index=True)
    reference_transaction_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    batch_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("movement_batches.id", ondelete="RESTRICT"), nullable=True, index=True
    )
    actor: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Relationships
    cylinder_type: Mapped["CylinderType"] = relationship("CylinderType")
    batch: Mapped[Optional["MovementBatch"]] = relationship("MovementBatch", back_populates="movements")

"""Inventory Ledger Service - the only writer of cylinder balances.

Every change to an InventoryRecord goes through a movement recorded in the
append-only ledger. A movement decrements its source key, increments its
destination key and appends a CylinderMovement row, all inside one
transaction.

Guarantees:
- Balances never go negative (checked here and by a CHECK constraint)
- Every movement except INITIALIZATION / ADJUSTMENT conserves the total
  quantity of its cylinder type
- Compound operations (several legs) commit all-or-nothing inside a savepoint
- Concurrent writers to one key serialise through the record's version
  column; the loser gets ConcurrencyConflict and must retry the whole
  operation
- Location references are canonicalised and validated before anything is
  written, so balances are never keyed by an unknown customer or vehicle
"""

import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from cylinder_ledger.core.config import settings
from cylinder_ledger.core.exceptions import (
    ConcurrencyConflict,
    InsufficientInventory,
    NotFoundError,
    ValidationError,
)
from cylinder_ledger.models.inventory import (
    EXTERNAL_MOVEMENT_TYPES,
    REFERENCED_LOCATIONS,
    CylinderMovement,
    CylinderStatus,
    CylinderType,
    InventoryRecord,
    LocationReference,
    LocationType,
    MovementBatch,
    MovementType,
)

logger = logging.getLogger(__name__)


# Required (source status, destination status) per movement type
MOVEMENT_STATUS_RULES: Dict[MovementType, Tuple[CylinderStatus, CylinderStatus]] = {
    MovementType.DELIVERY_FILLED: (CylinderStatus.FILLED, CylinderStatus.FILLED),
    MovementType.RETURN_FILLED: (CylinderStatus.FILLED, CylinderStatus.FILLED),
    MovementType.DELIVERY_EMPTY: (CylinderStatus.EMPTY, CylinderStatus.EMPTY),
    MovementType.RETURN_EMPTY: (CylinderStatus.EMPTY, CylinderStatus.EMPTY),
    MovementType.REFILLING_IN: (CylinderStatus.EMPTY, CylinderStatus.EMPTY),
    MovementType.REFILLING_OUT: (CylinderStatus.EMPTY, CylinderStatus.FILLED),
    MovementType.CONVERSION: (CylinderStatus.FILLED, CylinderStatus.EMPTY),
}


@dataclass(frozen=True)
class MovementLeg:
    """One requested transfer. A null source means stock enters from outside."""

    cylinder_type_id: int
    movement_type: MovementType
    quantity: int
    to_location_type: LocationType
    to_status: CylinderStatus
    to_reference_id: Optional[int] = None
    from_location_type: Optional[LocationType] = None
    from_reference_id: Optional[int] = None
    from_status: Optional[CylinderStatus] = None
    reference_transaction_id: Optional[int] = None
    notes: Optional[str] = None

    @property
    def source_key(self) -> Tuple[Any, ...]:
        return (self.cylinder_type_id, self.from_location_type, self.from_reference_id, self.from_status)

    @property
    def destination_key(self) -> Tuple[Any, ...]:
        return (self.cylinder_type_id, self.to_location_type, self.to_reference_id, self.to_status)


class InventoryService:
    """Service for reading balances and applying ledger movements."""

    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Reference data
    # ------------------------------------------------------------------

    def list_cylinder_types(self) -> List[CylinderType]:
        return self.db.query(CylinderType).order_by(CylinderType.code).all()

    def create_cylinder_type(
        self, code: str, capacity_label: str, description: Optional[str] = None
    ) -> CylinderType:
        if self.db.query(CylinderType).filter(CylinderType.code == code).first():
            raise ValidationError(f"Cylinder type '{code}' already exists", code_value=code)
        cylinder_type = CylinderType(code=code, capacity_label=capacity_label, description=description)
        self.db.add(cylinder_type)
        self.db.commit()
        self.db.refresh(cylinder_type)
        logger.info("Registered cylinder type %s (%s)", code, capacity_label)
        return cylinder_type

    def get_cylinder_type(self, cylinder_type_id: int) -> CylinderType:
        cylinder_type = self.db.get(CylinderType, cylinder_type_id)
        if cylinder_type is None:
            raise NotFoundError("Cylinder type", cylinder_type_id)
        return cylinder_type

    def register_location_reference(
        self,
        location_type: LocationType,
        reference_id: int,
        reference_name: str,
        parent_id: Optional[int] = None,
        commit: bool = True,
    ) -> LocationReference:
        """Register (or rename) a VEHICLE/CUSTOMER reference the ledger will accept.

        Args:
            location_type: VEHICLE or CUSTOMER
            reference_id: Id of the vehicle/customer in the master-data service
            reference_name: Display name, used only for labeling
            parent_id: Optional LocationReference id of a parent entity
            commit: Commit the session; pass False when called inside a larger unit of work

        Raises:
            ValidationError: Location type does not take references, or the parent link forms a cycle
            NotFoundError: Parent reference does not exist
        """
        if location_type not in REFERENCED_LOCATIONS:
            raise ValidationError(
                f"{location_type.value} locations do not take a reference id",
                location_type=location_type.value,
            )
        if not reference_id or reference_id <= 0:
            raise ValidationError("reference_id must be a positive integer", reference_id=reference_id)

        ref = (
            self.db.query(LocationReference)
            .filter(
                LocationReference.location_type == location_type,
                LocationReference.reference_id == reference_id,
            )
            .first()
        )
        if parent_id is not None:
            if self.db.get(LocationReference, parent_id) is None:
                raise NotFoundError("Location reference", parent_id)
            if ref is not None and self._is_ancestor_or_self(ref.id, parent_id):
                raise ValidationError("Parent reference would create a cycle", parent_id=parent_id)

        if ref is None:
            ref = LocationReference(
                location_type=location_type,
                reference_id=reference_id,
                reference_name=reference_name,
                parent_id=parent_id,
            )
            self.db.add(ref)
        else:
            ref.reference_name = reference_name
            if parent_id is not None:
                ref.parent_id = parent_id

        self.db.flush()
        if commit:
            self.db.commit()
            self.db.refresh(ref)
        return ref

    def _is_ancestor_or_self(self, ref_id: int, start_id: int) -> bool:
        """True if ref_id is start_id or one of its parents."""
        seen = set()
        current_id: Optional[int] = start_id
        while current_id is not None and current_id not in seen:
            if current_id == ref_id:
                return True
            seen.add(current_id)
            current = self.db.get(LocationReference, current_id)
            current_id = current.parent_id if current else None
        return False

    def reference_display_path(self, location_reference_id: int) -> List[str]:
        """Names from the top-most parent down to the reference itself."""
        names: List[str] = []
        seen = set()
        current_id: Optional[int] = location_reference_id
        while current_id is not None and current_id not in seen:
            seen.add(current_id)
            ref = self.db.get(LocationReference, current_id)
            if ref is None:
                break
            names.append(ref.reference_name)
            current_id = ref.parent_id
        return list(reversed(names))

    def reference_name(self, location_type: LocationType, reference_id: int) -> Optional[str]:
        if location_type not in REFERENCED_LOCATIONS:
            return None
        ref = (
            self.db.query(LocationReference)
            .filter(
                LocationReference.location_type == location_type,
                LocationReference.reference_id == reference_id,
            )
            .first()
        )
        return ref.reference_name if ref else None

    def canonical_reference(
        self, location_type: LocationType, reference_id: Optional[int], validate: bool = True
    ) -> int:
        """Return the reference id balances are keyed by.

        YARD, PLANT and REFILLING are single pooled locations: any reference
        is ignored and stored as 0. VEHICLE and CUSTOMER require a positive,
        registered reference.
        """
        if location_type not in REFERENCED_LOCATIONS:
            return 0
        if not reference_id or reference_id <= 0:
            raise ValidationError(
                f"{location_type.value} locations require a reference id",
                location_type=location_type.value,
            )
        if validate and self.reference_name(location_type, reference_id) is None:
            raise NotFoundError(f"{location_type.value.title()} reference", reference_id)
        return reference_id

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_available_quantity(
        self,
        cylinder_type_id: int,
        location_type: LocationType,
        reference_id: Optional[int],
        cylinder_status: CylinderStatus,
    ) -> int:
        """Current balance at a key; 0 when the key has never been written.

        Raises NotFoundError for an unknown cylinder type.
        """
        self.get_cylinder_type(cylinder_type_id)
        if location_type in REFERENCED_LOCATIONS and not reference_id:
            return 0
        ref = self.canonical_reference(location_type, reference_id, validate=False)
        record = self._get_record(cylinder_type_id, location_type, ref, cylinder_status)
        return max(record.quantity, 0) if record else 0

    def query_inventory(
        self,
        location_type: Optional[LocationType] = None,
        reference_id: Optional[int] = None,
        cylinder_status: Optional[CylinderStatus] = None,
        cylinder_type_id: Optional[int] = None,
    ) -> List[InventoryRecord]:
        query = self.db.query(InventoryRecord)
        if location_type is not None:
            query = query.filter(InventoryRecord.location_type == location_type)
            if location_type in REFERENCED_LOCATIONS and reference_id:
                query = query.filter(InventoryRecord.reference_id == reference_id)
        elif reference_id:
            query = query.filter(InventoryRecord.reference_id == reference_id)
        if cylinder_status is not None:
            query = query.filter(InventoryRecord.cylinder_status == cylinder_status)
        if cylinder_type_id is not None:
            query = query.filter(InventoryRecord.cylinder_type_id == cylinder_type_id)
        return query.order_by(
            InventoryRecord.cylinder_type_id,
            InventoryRecord.location_type,
            InventoryRecord.reference_id,
            InventoryRecord.cylinder_status,
        ).all()

    def total_quantity(self, cylinder_type_id: int) -> int:
        """Quantity of a cylinder type across every location and status."""
        total = (
            self.db.query(func.coalesce(func.sum(InventoryRecord.quantity), 0))
            .filter(InventoryRecord.cylinder_type_id == cylinder_type_id)
            .scalar()
        )
        return int(total)

    def dashboard(self) -> Dict[str, Any]:
        """Totals by location type and status, plus a per-cylinder-type breakdown."""
        totals = {
            lt.value: {"filled": 0, "empty": 0, "total": 0} for lt in LocationType
        }
        rows = (
            self.db.query(
                InventoryRecord.cylinder_type_id,
                InventoryRecord.location_type,
                InventoryRecord.cylinder_status,
                func.sum(InventoryRecord.quantity),
            )
            .group_by(
                InventoryRecord.cylinder_type_id,
                InventoryRecord.location_type,
                InventoryRecord.cylinder_status,
            )
            .all()
        )

        types = {ct.id: ct for ct in self.list_cylinder_types()}
        by_type: Dict[int, Dict[str, Any]] = {}
        for cylinder_type_id, location_type, cylinder_status, qty in rows:
            qty = int(qty or 0)
            status_key = cylinder_status.value.lower()
            totals[location_type.value][status_key] += qty
            totals[location_type.value]["total"] += qty

            summary = by_type.get(cylinder_type_id)
            if summary is None:
                ct = types.get(cylinder_type_id)
                summary = {
                    "cylinder_type_id": cylinder_type_id,
                    "code": ct.code if ct else None,
                    "capacity_label": ct.capacity_label if ct else None,
                    "locations": {},
                    "total_quantity": 0,
                }
                by_type[cylinder_type_id] = summary
            loc = summary["locations"].setdefault(
                location_type.value, {"filled": 0, "empty": 0, "total": 0}
            )
            loc[status_key] += qty
            loc["total"] += qty
            summary["total_quantity"] += qty

        return {
            "totals": totals,
            "cylinder_types": [by_type[k] for k in sorted(by_type)],
            "grand_total": sum(t["total"] for t in totals.values()),
        }

    def list_movements(
        self,
        cylinder_type_id: Optional[int] = None,
        reference_transaction_id: Optional[int] = None,
        movement_type: Optional[MovementType] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> Tuple[List[CylinderMovement], int]:
        """Movement log, newest first. Returns (page, total)."""
        if limit < 1 or limit > settings.movement_log_max_limit:
            raise ValidationError(
                f"limit must be between 1 and {settings.movement_log_max_limit}", limit=limit
            )
        if offset < 0:
            raise ValidationError("offset must not be negative", offset=offset)

        query = self.db.query(CylinderMovement)
        if cylinder_type_id is not None:
            query = query.filter(CylinderMovement.cylinder_type_id == cylinder_type_id)
        if reference_transaction_id is not None:
            query = query.filter(CylinderMovement.reference_transaction_id == reference_transaction_id)
        if movement_type is not None:
            query = query.filter(CylinderMovement.movement_type == movement_type)

        total = query.count()
        items = (
            query.order_by(CylinderMovement.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return items, total

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def apply_movement(self, leg: MovementLeg, actor: Optional[str] = None) -> CylinderMovement:
        """Apply a single movement and commit.

        Raises:
            ValidationError: Bad quantity, status/type mismatch, same source and destination
            NotFoundError: Unknown cylinder type or location reference
            InsufficientInventory: Source balance is below the quantity
            ConcurrencyConflict: The source or destination key changed concurrently
        """
        try:
            _, movements = self.execute_legs([leg], actor=actor)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return movements[0]

    def apply_compound(
        self,
        legs: Sequence[MovementLeg],
        idempotency_key: str,
        actor: Optional[str] = None,
    ) -> Tuple[MovementBatch, bool]:
        """Apply several legs as one all-or-nothing unit and commit.

        A repeated idempotency key returns the batch recorded the first time
        without applying anything again.

        Returns:
            (batch, created) where created is False for a replayed key
        """
        if not legs:
            raise ValidationError("A compound movement needs at least one leg")
        if not idempotency_key:
            raise ValidationError("idempotency_key is required for compound movements")

        existing = self.get_batch(idempotency_key)
        if existing is not None:
            logger.info("Compound movement %s already applied, returning batch %s", idempotency_key, existing.id)
            return existing, False

        try:
            batch, _ = self.execute_legs(legs, actor=actor, idempotency_key=idempotency_key)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(batch)
        return batch, True

    def get_batch(self, idempotency_key: str) -> Optional[MovementBatch]:
        return (
            self.db.query(MovementBatch)
            .filter(MovementBatch.idempotency_key == idempotency_key)
            .first()
        )

    def initialize(
        self,
        location_type: LocationType,
        reference_id: Optional[int],
        entries: Sequence[Dict[str, Any]],
        actor: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Seed starting stock at one location.

        Each entry is ``{"cylinder_type_id", "quantity", "cylinder_status"}``.
        Seeding is exempt from conservation. With the ``reject`` policy a key
        that already received an INITIALIZATION movement cannot be seeded
        again; with ``additive`` the new quantity is added on top.
        """
        if not entries:
            raise ValidationError("At least one cylinder entry is required")
        ref = self.canonical_reference(location_type, reference_id)

        seen = set()
        legs = []
        for entry in entries:
            cylinder_type_id = entry["cylinder_type_id"]
            status = CylinderStatus(entry["cylinder_status"])
            quantity = entry["quantity"]
            key = (cylinder_type_id, status)
            if key in seen:
                raise ValidationError(
                    "Duplicate cylinder type/status in initialization payload",
                    cylinder_type_id=cylinder_type_id,
                    cylinder_status=status.value,
                )
            seen.add(key)

            if settings.initialization_policy == "reject" and self._already_initialized(
                cylinder_type_id, location_type, ref, status
            ):
                raise ValidationError(
                    f"{location_type.value} stock for cylinder type {cylinder_type_id} ({status.value}) "
                    "is already initialized",
                    cylinder_type_id=cylinder_type_id,
                    cylinder_status=status.value,
                    policy=settings.initialization_policy,
                )

            if quantity > settings.large_initialization_threshold:
                logger.warning(
                    "Large initialization: %s %s cylinders of type %s at %s:%s",
                    quantity, status.value, cylinder_type_id, location_type.value, ref,
                )

            legs.append(MovementLeg(
                cylinder_type_id=cylinder_type_id,
                movement_type=MovementType.INITIALIZATION,
                quantity=quantity,
                to_location_type=location_type,
                to_reference_id=ref,
                to_status=status,
                notes=entry.get("notes") or "Initial stock",
            ))

        try:
            _, movements = self.execute_legs(legs, actor=actor, allow_initialization=True)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "Initialized %s cylinders at %s:%s across %s entries",
            sum(m.quantity for m in movements), location_type.value, ref, len(movements),
        )
        return {
            "initialized_cylinders": [
                {
                    "cylinder_type_id": m.cylinder_type_id,
                    "cylinder_status": m.to_status,
                    "quantity": m.quantity,
                    "movement_id": m.id,
                }
                for m in movements
            ],
            "total_quantity": sum(m.quantity for m in movements),
            "location_type": location_type,
            "reference_id": ref,
        }

    def _already_initialized(
        self,
        cylinder_type_id: int,
        location_type: LocationType,
        reference_id: int,
        status: CylinderStatus,
    ) -> bool:
        return (
            self.db.query(CylinderMovement.id)
            .filter(
                CylinderMovement.movement_type == MovementType.INITIALIZATION,
                CylinderMovement.cylinder_type_id == cylinder_type_id,
                CylinderMovement.to_location_type == location_type,
                CylinderMovement.to_reference_id == reference_id,
                CylinderMovement.to_status == status,
            )
            .first()
            is not None
        )

    def execute_legs(
        self,
        legs: Sequence[MovementLeg],
        actor: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        allow_initialization: bool = False,
    ) -> Tuple[Optional[MovementBatch], List[CylinderMovement]]:
        """Validate then apply legs inside a savepoint, without committing.

        Callers own the outer transaction. Every leg is validated before the
        first balance changes; balance checks happen leg by leg so later legs
        see the effect of earlier ones. Any failure rolls the savepoint back.
        """
        resolved = [self._validate_leg(leg, allow_initialization) for leg in legs]

        savepoint = self.db.begin_nested()
        try:
            batch = None
            if idempotency_key:
                batch = MovementBatch(idempotency_key=idempotency_key, actor=actor)
                self.db.add(batch)
                self.db.flush()
            movements = [self._apply_leg(leg, batch, actor) for leg in resolved]
            savepoint.commit()
        except (StaleDataError, IntegrityError) as e:
            if savepoint.is_active:
                savepoint.rollback()
            logger.warning("Concurrent inventory update detected: %s", e)
            raise ConcurrencyConflict() from e
        except Exception:
            if savepoint.is_active:
                savepoint.rollback()
            raise
        return batch, movements

    def _validate_leg(self, leg: MovementLeg, allow_initialization: bool = False) -> MovementLeg:
        """Check a leg and return it with canonical references filled in."""
        if leg.quantity is None or leg.quantity <= 0:
            raise ValidationError("Quantity must be greater than 0", quantity=leg.quantity)
        self.get_cylinder_type(leg.cylinder_type_id)

        if leg.movement_type == MovementType.INITIALIZATION and not allow_initialization:
            raise ValidationError("INITIALIZATION movements are only created by inventory initialization")

        has_source = leg.from_location_type is not None
        if not has_source:
            if leg.movement_type not in EXTERNAL_MOVEMENT_TYPES:
                raise ValidationError(
                    f"{leg.movement_type.value} movements require a source location",
                    movement_type=leg.movement_type.value,
                )
        elif leg.movement_type == MovementType.INITIALIZATION:
            raise ValidationError("INITIALIZATION movements cannot have a source location")
        elif leg.from_status is None:
            raise ValidationError("Source cylinder status is required")

        rule = MOVEMENT_STATUS_RULES.get(leg.movement_type)
        if rule is not None and (leg.from_status, leg.to_status) != rule:
            raise ValidationError(
                f"{leg.movement_type.value} moves {rule[0].value} to {rule[1].value} cylinders",
                movement_type=leg.movement_type.value,
                from_status=leg.from_status.value if leg.from_status else None,
                to_status=leg.to_status.value,
            )
        if leg.movement_type == MovementType.TRANSFER and leg.from_status != leg.to_status:
            raise ValidationError("TRANSFER cannot change cylinder status")

        to_ref = self.canonical_reference(leg.to_location_type, leg.to_reference_id)
        from_ref = None
        if has_source:
            from_ref = self.canonical_reference(leg.from_location_type, leg.from_reference_id)
        resolved = replace(leg, to_reference_id=to_ref, from_reference_id=from_ref)

        if has_source and resolved.source_key == resolved.destination_key:
            raise ValidationError("Source and destination are the same location and status")
        if leg.movement_type == MovementType.CONVERSION and (
            (resolved.from_location_type, resolved.from_reference_id)
            != (resolved.to_location_type, resolved.to_reference_id)
        ):
            raise ValidationError("CONVERSION must stay at the same location")
        return resolved

    def _get_record(
        self,
        cylinder_type_id: int,
        location_type: LocationType,
        reference_id: int,
        cylinder_status: CylinderStatus,
        for_update: bool = False,
    ) -> Optional[InventoryRecord]:
        query = self.db.query(InventoryRecord).filter(
            InventoryRecord.cylinder_type_id == cylinder_type_id,
            InventoryRecord.location_type == location_type,
            InventoryRecord.reference_id == reference_id,
            InventoryRecord.cylinder_status == cylinder_status,
        )
        if for_update:
            query = query.with_for_update()
        return query.first()

    def _apply_leg(
        self, leg: MovementLeg, batch: Optional[MovementBatch], actor: Optional[str]
    ) -> CylinderMovement:
        if leg.from_location_type is not None:
            source = self._get_record(*leg.source_key, for_update=True)
            available = source.quantity if source else 0
            if source is None or available < leg.quantity:
                raise InsufficientInventory(
                    cylinder_type_id=leg.cylinder_type_id,
                    needed=leg.quantity,
                    available=available,
                    location_type=leg.from_location_type.value,
                    reference_id=leg.from_reference_id,
                    cylinder_status=leg.from_status.value,
                )
            source.quantity = available - leg.quantity

        destination = self._get_record(*leg.destination_key, for_update=True)
        if destination is None:
            destination = InventoryRecord(
                cylinder_type_id=leg.cylinder_type_id,
                location_type=leg.to_location_type,
                reference_id=leg.to_reference_id,
                cylinder_status=leg.to_status,
                quantity=0,
            )
            self.db.add(destination)
        destination.quantity = destination.quantity + leg.quantity

        movement = CylinderMovement(
            cylinder_type_id=leg.cylinder_type_id,
            from_location_type=leg.from_location_type,
            from_reference_id=leg.from_reference_id,
            from_status=leg.from_status,
            to_location_type=leg.to_location_type,
            to_reference_id=leg.to_reference_id,
            to_status=leg.to_status,
            quantity=leg.quantity,
            movement_type=leg.movement_type,
            reference_transaction_id=leg.reference_transaction_id,
            batch_id=batch.id if batch else None,
            actor=actor,
            notes=leg.notes,
        )
        self.db.add(movement)
        self.db.flush()

        logger.info(
            "Movement %s: %s x type %s %s:%s(%s) -> %s:%s(%s)",
            leg.movement_type.value,
            leg.quantity,
            leg.cylinder_type_id,
            leg.from_location_type.value if leg.from_location_type else "EXTERNAL",
            leg.from_reference_id,
            leg.from_status.value if leg.from_status else "-",
            leg.to_location_type.value,
            leg.to_reference_id,
            leg.to_status.value,
        )
        return movement

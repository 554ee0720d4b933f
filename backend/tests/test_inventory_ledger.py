"""Tests for the inventory store and movement ledger."""

import pytest
from sqlalchemy import text
from sqlalchemy.orm import Session

from cylinder_ledger.core.config import settings
from cylinder_ledger.core.exceptions import (
    ConcurrencyConflict,
    InsufficientInventory,
    NotFoundError,
    ValidationError,
)
from cylinder_ledger.models.inventory import (
    CylinderMovement,
    CylinderStatus,
    InventoryRecord,
    LocationType,
    MovementBatch,
    MovementType,
)
from cylinder_ledger.services.inventory_service import InventoryService, MovementLeg

FILLED = CylinderStatus.FILLED
EMPTY = CylinderStatus.EMPTY


def transfer(cylinder_type_id, quantity, source, destination, status=FILLED, movement_type=MovementType.TRANSFER):
    """Build a leg between two (location_type, reference_id) points."""
    return MovementLeg(
        cylinder_type_id=cylinder_type_id,
        movement_type=movement_type,
        quantity=quantity,
        from_location_type=source[0],
        from_reference_id=source[1],
        from_status=status,
        to_location_type=destination[0],
        to_reference_id=destination[1],
        to_status=status,
    )


@pytest.fixture
def stocked_yard(inventory: InventoryService, cylinder_type, vehicle_id, customer_id):
    """100 filled cylinders in the yard, with a vehicle and customer registered."""
    inventory.register_location_reference(LocationType.VEHICLE, vehicle_id, "Truck 7")
    inventory.register_location_reference(LocationType.CUSTOMER, customer_id, "Acme Kitchens")
    inventory.initialize(
        LocationType.YARD, None,
        [{"cylinder_type_id": cylinder_type.id, "quantity": 100, "cylinder_status": FILLED}],
    )
    return cylinder_type


class TestMovements:
    """Single movements: conservation and non-negativity."""

    def test_transfer_conserves_total(self, inventory, stocked_yard, vehicle_id):
        type_id = stocked_yard.id
        movement = inventory.apply_movement(
            transfer(type_id, 30, (LocationType.YARD, None), (LocationType.VEHICLE, vehicle_id)),
            actor="loader",
        )

        assert movement.id is not None
        assert movement.actor == "loader"
        assert inventory.get_available_quantity(type_id, LocationType.YARD, None, FILLED) == 70
        assert inventory.get_available_quantity(type_id, LocationType.VEHICLE, vehicle_id, FILLED) == 30
        assert inventory.total_quantity(type_id) == 100

    def test_insufficient_source_rejected(self, inventory, stocked_yard, vehicle_id, db_session: Session):
        type_id = stocked_yard.id
        with pytest.raises(InsufficientInventory) as exc_info:
            inventory.apply_movement(
                transfer(type_id, 101, (LocationType.YARD, None), (LocationType.VEHICLE, vehicle_id))
            )

        assert exc_info.value.needed == 101
        assert exc_info.value.available == 100
        assert inventory.get_available_quantity(type_id, LocationType.YARD, None, FILLED) == 100
        assert db_session.query(CylinderMovement).count() == 1  # only the initialization

    def test_missing_source_key_has_nothing_available(self, inventory, stocked_yard, vehicle_id, customer_id):
        with pytest.raises(InsufficientInventory) as exc_info:
            inventory.apply_movement(
                transfer(
                    stocked_yard.id, 1,
                    (LocationType.VEHICLE, vehicle_id), (LocationType.CUSTOMER, customer_id),
                    movement_type=MovementType.DELIVERY_FILLED,
                )
            )
        assert exc_info.value.available == 0

    def test_zero_quantity_rejected(self, inventory, stocked_yard, vehicle_id):
        with pytest.raises(ValidationError):
            inventory.apply_movement(
                transfer(stocked_yard.id, 0, (LocationType.YARD, None), (LocationType.VEHICLE, vehicle_id))
            )

    def test_unknown_cylinder_type(self, inventory, stocked_yard, vehicle_id):
        with pytest.raises(NotFoundError):
            inventory.apply_movement(
                transfer(9999, 1, (LocationType.YARD, None), (LocationType.VEHICLE, vehicle_id))
            )

    def test_status_rule_enforced(self, inventory, stocked_yard, vehicle_id, customer_id):
        """DELIVERY_FILLED cannot move empties."""
        with pytest.raises(ValidationError):
            inventory.apply_movement(
                transfer(
                    stocked_yard.id, 1,
                    (LocationType.VEHICLE, vehicle_id), (LocationType.CUSTOMER, customer_id),
                    status=EMPTY, movement_type=MovementType.DELIVERY_FILLED,
                )
            )

    def test_same_point_rejected(self, inventory, stocked_yard):
        with pytest.raises(ValidationError):
            inventory.apply_movement(transfer(stocked_yard.id, 1, (LocationType.YARD, None), (LocationType.YARD, None)))

    def test_conversion_in_place(self, inventory, stocked_yard):
        type_id = stocked_yard.id
        inventory.apply_movement(MovementLeg(
            cylinder_type_id=type_id,
            movement_type=MovementType.CONVERSION,
            quantity=10,
            from_location_type=LocationType.YARD,
            from_status=FILLED,
            to_location_type=LocationType.YARD,
            to_status=EMPTY,
        ))
        assert inventory.get_available_quantity(type_id, LocationType.YARD, None, FILLED) == 90
        assert inventory.get_available_quantity(type_id, LocationType.YARD, None, EMPTY) == 10
        assert inventory.total_quantity(type_id) == 100

    def test_conversion_must_stay_in_place(self, inventory, stocked_yard, vehicle_id):
        with pytest.raises(ValidationError):
            inventory.apply_movement(MovementLeg(
                cylinder_type_id=stocked_yard.id,
                movement_type=MovementType.CONVERSION,
                quantity=1,
                from_location_type=LocationType.YARD,
                from_status=FILLED,
                to_location_type=LocationType.VEHICLE,
                to_reference_id=vehicle_id,
                to_status=EMPTY,
            ))

    def test_sourceless_movement_only_for_adjustment(self, inventory, stocked_yard):
        leg = MovementLeg(
            cylinder_type_id=stocked_yard.id,
            movement_type=MovementType.TRANSFER,
            quantity=5,
            to_location_type=LocationType.YARD,
            to_status=EMPTY,
        )
        with pytest.raises(ValidationError):
            inventory.apply_movement(leg)

        adjustment = MovementLeg(
            cylinder_type_id=stocked_yard.id,
            movement_type=MovementType.ADJUSTMENT,
            quantity=5,
            to_location_type=LocationType.YARD,
            to_status=EMPTY,
            notes="Found in back lot",
        )
        movement = inventory.apply_movement(adjustment)
        assert movement.from_location_type is None
        assert inventory.total_quantity(stocked_yard.id) == 105

    def test_initialization_type_reserved(self, inventory, stocked_yard):
        with pytest.raises(ValidationError):
            inventory.apply_movement(MovementLeg(
                cylinder_type_id=stocked_yard.id,
                movement_type=MovementType.INITIALIZATION,
                quantity=5,
                to_location_type=LocationType.YARD,
                to_status=FILLED,
            ))


class TestLocationReferences:
    """Canonical references for pooled and referenced locations."""

    def test_pooled_location_reference_ignored(self, inventory, stocked_yard, db_session: Session):
        record = db_session.query(InventoryRecord).filter_by(location_type=LocationType.YARD).one()
        assert record.reference_id == 0
        assert inventory.get_available_quantity(stocked_yard.id, LocationType.YARD, 42, FILLED) == 100

    def test_unregistered_vehicle_rejected(self, inventory, stocked_yard):
        with pytest.raises(NotFoundError):
            inventory.apply_movement(
                transfer(stocked_yard.id, 1, (LocationType.YARD, None), (LocationType.VEHICLE, 999))
            )

    def test_vehicle_requires_reference(self, inventory, stocked_yard):
        with pytest.raises(ValidationError):
            inventory.apply_movement(
                transfer(stocked_yard.id, 1, (LocationType.YARD, None), (LocationType.VEHICLE, None))
            )

    def test_pooled_location_cannot_be_registered(self, inventory):
        with pytest.raises(ValidationError):
            inventory.register_location_reference(LocationType.YARD, 1, "Main yard")

    def test_parent_display_path(self, inventory):
        dealer = inventory.register_location_reference(LocationType.CUSTOMER, 1, "North Dealer")
        sub_dealer = inventory.register_location_reference(
            LocationType.CUSTOMER, 2, "Riverside Sub-dealer", parent_id=dealer.id
        )
        assert inventory.reference_display_path(sub_dealer.id) == ["North Dealer", "Riverside Sub-dealer"]

    def test_parent_cycle_rejected(self, inventory):
        dealer = inventory.register_location_reference(LocationType.CUSTOMER, 1, "North Dealer")
        sub_dealer = inventory.register_location_reference(
            LocationType.CUSTOMER, 2, "Riverside Sub-dealer", parent_id=dealer.id
        )
        with pytest.raises(ValidationError):
            inventory.register_location_reference(LocationType.CUSTOMER, 1, "North Dealer", parent_id=sub_dealer.id)

    def test_unknown_parent(self, inventory):
        with pytest.raises(NotFoundError):
            inventory.register_location_reference(LocationType.CUSTOMER, 1, "North Dealer", parent_id=404)


class TestCompoundMovements:
    """All-or-nothing legs under an idempotency key."""

    def test_compound_applies_all_legs(self, inventory, stocked_yard, vehicle_id, customer_id, db_session: Session):
        type_id = stocked_yard.id
        batch, created = inventory.apply_compound(
            [
                transfer(type_id, 20, (LocationType.YARD, None), (LocationType.VEHICLE, vehicle_id)),
                transfer(
                    type_id, 15, (LocationType.VEHICLE, vehicle_id), (LocationType.CUSTOMER, customer_id),
                    movement_type=MovementType.DELIVERY_FILLED,
                ),
            ],
            idempotency_key="load-and-deliver-1",
            actor="driver",
        )

        assert created is True
        assert [m.quantity for m in batch.movements] == [20, 15]
        assert inventory.get_available_quantity(type_id, LocationType.VEHICLE, vehicle_id, FILLED) == 5
        assert inventory.get_available_quantity(type_id, LocationType.CUSTOMER, customer_id, FILLED) == 15
        assert inventory.total_quantity(type_id) == 100

    def test_failing_leg_rolls_back_everything(
        self, inventory, stocked_yard, vehicle_id, customer_id, db_session: Session
    ):
        type_id = stocked_yard.id
        with pytest.raises(InsufficientInventory):
            inventory.apply_compound(
                [
                    transfer(type_id, 5, (LocationType.YARD, None), (LocationType.VEHICLE, vehicle_id)),
                    transfer(
                        type_id, 20, (LocationType.VEHICLE, vehicle_id), (LocationType.CUSTOMER, customer_id),
                        movement_type=MovementType.DELIVERY_FILLED,
                    ),
                ],
                idempotency_key="too-much",
            )

        assert inventory.get_available_quantity(type_id, LocationType.YARD, None, FILLED) == 100
        assert inventory.get_available_quantity(type_id, LocationType.VEHICLE, vehicle_id, FILLED) == 0
        assert db_session.query(MovementBatch).count() == 0
        assert db_session.query(CylinderMovement).count() == 1

    def test_invalid_leg_rejected_before_any_write(self, inventory, stocked_yard, vehicle_id, db_session: Session):
        type_id = stocked_yard.id
        with pytest.raises(NotFoundError):
            inventory.apply_compound(
                [
                    transfer(type_id, 5, (LocationType.YARD, None), (LocationType.VEHICLE, vehicle_id)),
                    transfer(type_id, 5, (LocationType.YARD, None), (LocationType.VEHICLE, 12345)),
                ],
                idempotency_key="bad-reference",
            )
        assert inventory.get_available_quantity(type_id, LocationType.YARD, None, FILLED) == 100

    def test_repeated_key_is_replayed(self, inventory, stocked_yard, vehicle_id):
        type_id = stocked_yard.id
        legs = [transfer(type_id, 10, (LocationType.YARD, None), (LocationType.VEHICLE, vehicle_id))]
        first, created = inventory.apply_compound(legs, idempotency_key="load-7")
        second, replayed = inventory.apply_compound(legs, idempotency_key="load-7")

        assert created is True
        assert replayed is False
        assert second.id == first.id
        assert inventory.get_available_quantity(type_id, LocationType.VEHICLE, vehicle_id, FILLED) == 10

    def test_idempotency_key_required(self, inventory, stocked_yard, vehicle_id):
        legs = [transfer(stocked_yard.id, 1, (LocationType.YARD, None), (LocationType.VEHICLE, vehicle_id))]
        with pytest.raises(ValidationError):
            inventory.apply_compound(legs, idempotency_key="")


class TestConcurrency:
    """Optimistic locking on inventory records."""

    def test_stale_record_raises_conflict(self, inventory, stocked_yard, vehicle_id, db_session: Session):
        type_id = stocked_yard.id
        record = db_session.query(InventoryRecord).filter_by(location_type=LocationType.YARD).one()
        # Another writer bumps the row behind this session's back
        db_session.execute(
            text("UPDATE inventory_records SET version = version + 1 WHERE id = :id"), {"id": record.id}
        )

        with pytest.raises(ConcurrencyConflict) as exc_info:
            inventory.apply_movement(
                transfer(type_id, 10, (LocationType.YARD, None), (LocationType.VEHICLE, vehicle_id))
            )

        assert exc_info.value.to_dict()["retryable"] is True
        assert inventory.get_available_quantity(type_id, LocationType.YARD, None, FILLED) == 100
        assert inventory.get_available_quantity(type_id, LocationType.VEHICLE, vehicle_id, FILLED) == 0


class TestInitialization:
    """Seeding starting stock."""

    def test_initialize_reports_entries(self, inventory, cylinder_type, commercial_type):
        result = inventory.initialize(
            LocationType.YARD, None,
            [
                {"cylinder_type_id": cylinder_type.id, "quantity": 40, "cylinder_status": FILLED},
                {"cylinder_type_id": cylinder_type.id, "quantity": 10, "cylinder_status": EMPTY},
                {"cylinder_type_id": commercial_type.id, "quantity": 5, "cylinder_status": FILLED},
            ],
            actor="ops",
        )
        assert result["total_quantity"] == 55
        assert result["reference_id"] == 0
        assert len(result["initialized_cylinders"]) == 3

    def test_reinitialization_rejected_by_default(self, inventory, cylinder_type):
        entries = [{"cylinder_type_id": cylinder_type.id, "quantity": 40, "cylinder_status": FILLED}]
        inventory.initialize(LocationType.YARD, None, entries)
        with pytest.raises(ValidationError):
            inventory.initialize(LocationType.YARD, None, entries)
        assert inventory.get_available_quantity(cylinder_type.id, LocationType.YARD, None, FILLED) == 40

    def test_additive_policy(self, inventory, cylinder_type, monkeypatch):
        monkeypatch.setattr(settings, "initialization_policy", "additive")
        entries = [{"cylinder_type_id": cylinder_type.id, "quantity": 40, "cylinder_status": FILLED}]
        inventory.initialize(LocationType.YARD, None, entries)
        inventory.initialize(LocationType.YARD, None, entries)
        assert inventory.get_available_quantity(cylinder_type.id, LocationType.YARD, None, FILLED) == 80

    def test_duplicate_entries_rejected(self, inventory, cylinder_type):
        entries = [
            {"cylinder_type_id": cylinder_type.id, "quantity": 1, "cylinder_status": FILLED},
            {"cylinder_type_id": cylinder_type.id, "quantity": 2, "cylinder_status": FILLED},
        ]
        with pytest.raises(ValidationError):
            inventory.initialize(LocationType.YARD, None, entries)

    def test_large_initialization_logged(self, inventory, cylinder_type, caplog):
        entries = [{"cylinder_type_id": cylinder_type.id, "quantity": 500, "cylinder_status": FILLED}]
        with caplog.at_level("WARNING"):
            inventory.initialize(LocationType.YARD, None, entries)
        assert "Large initialization" in caplog.text

    def test_customer_initialization_requires_registration(self, inventory, cylinder_type):
        entries = [{"cylinder_type_id": cylinder_type.id, "quantity": 1, "cylinder_status": EMPTY}]
        with pytest.raises(NotFoundError):
            inventory.initialize(LocationType.CUSTOMER, 77, entries)


class TestReads:
    """Queries, dashboard and movement log."""

    def test_dashboard_totals(self, inventory, stocked_yard, vehicle_id):
        inventory.apply_movement(
            transfer(stocked_yard.id, 25, (LocationType.YARD, None), (LocationType.VEHICLE, vehicle_id))
        )
        dashboard = inventory.dashboard()

        assert dashboard["totals"]["YARD"] == {"filled": 75, "empty": 0, "total": 75}
        assert dashboard["totals"]["VEHICLE"]["filled"] == 25
        assert dashboard["totals"]["PLANT"]["total"] == 0
        assert dashboard["grand_total"] == 100
        summary = dashboard["cylinder_types"][0]
        assert summary["code"] == "DOM-14"
        assert summary["total_quantity"] == 100

    def test_available_quantity_unknown_type(self, inventory, stocked_yard):
        with pytest.raises(NotFoundError):
            inventory.get_available_quantity(9999, LocationType.YARD, None, FILLED)
        assert inventory.get_available_quantity(stocked_yard.id, LocationType.PLANT, None, FILLED) == 0

    def test_query_inventory_filters(self, inventory, stocked_yard, vehicle_id):
        inventory.apply_movement(
            transfer(stocked_yard.id, 25, (LocationType.YARD, None), (LocationType.VEHICLE, vehicle_id))
        )
        records = inventory.query_inventory(location_type=LocationType.VEHICLE, reference_id=vehicle_id)
        assert [(r.reference_id, r.quantity) for r in records] == [(vehicle_id, 25)]
        assert len(inventory.query_inventory(cylinder_status=EMPTY)) == 0

    def test_movement_log_newest_first(self, inventory, stocked_yard, vehicle_id):
        for qty in (1, 2, 3):
            inventory.apply_movement(
                transfer(stocked_yard.id, qty, (LocationType.YARD, None), (LocationType.VEHICLE, vehicle_id))
            )
        items, total = inventory.list_movements(movement_type=MovementType.TRANSFER, limit=2)
        assert total == 3
        assert [m.quantity for m in items] == [3, 2]

    @pytest.mark.parametrize("limit", [0, 1001])
    def test_movement_log_limit_bounds(self, inventory, limit):
        with pytest.raises(ValidationError):
            inventory.list_movements(limit=limit)

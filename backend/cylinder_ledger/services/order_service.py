"""Delivery order lifecycle.

``OrderDeliveryStateMachine`` holds the transition table and its gates and
touches no database, so it can be exercised on its own.
``OrderService`` applies it to persisted orders and dispatch plans.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Dict, FrozenSet, List, Optional, Sequence

from sqlalchemy.orm import Session

from cylinder_ledger.core.exceptions import NotFoundError, StateTransitionError, ValidationError
from cylinder_ledger.models.delivery import (
    DeliveryOrder,
    DeliveryOrderLine,
    DeliveryPlan,
    OrderStatus,
    OrderStatusHistory,
    PlanStatus,
)
from cylinder_ledger.models.exchange import ExchangeTracking
from cylinder_ledger.models.inventory import LocationType
from cylinder_ledger.services.inventory_service import InventoryService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of a state machine check."""

    allowed: bool
    current: OrderStatus
    target: OrderStatus
    reason: str


class OrderDeliveryStateMachine:
    """Order lifecycle: PENDING -> CONFIRMED -> ASSIGNED -> LOADED -> IN_TRANSIT -> DELIVERED.

    CANCELLED is reachable from any non-terminal state. DELIVERED and
    CANCELLED are terminal. DELIVERED additionally requires a recorded
    exchange for the order.
    """

    TERMINAL: FrozenSet[OrderStatus] = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})

    TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
        OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
        OrderStatus.CONFIRMED: frozenset({OrderStatus.ASSIGNED, OrderStatus.CANCELLED}),
        OrderStatus.ASSIGNED: frozenset({OrderStatus.LOADED, OrderStatus.CANCELLED}),
        OrderStatus.LOADED: frozenset({OrderStatus.IN_TRANSIT, OrderStatus.CANCELLED}),
        OrderStatus.IN_TRANSIT: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
        OrderStatus.DELIVERED: frozenset(),
        OrderStatus.CANCELLED: frozenset(),
    }

    def check(self, current: OrderStatus, target: OrderStatus, has_exchange: bool) -> TransitionResult:
        if current in self.TERMINAL:
            return TransitionResult(False, current, target, f"Order is already {current.value}")
        if target not in self.TRANSITIONS[current]:
            return TransitionResult(
                False, current, target, f"Cannot move an order from {current.value} to {target.value}"
            )
        if target == OrderStatus.DELIVERED and not has_exchange:
            return TransitionResult(
                False, current, target,
                "Exchange verification is required before an order can be delivered",
            )
        return TransitionResult(True, current, target, "ok")

    def ensure(self, current: OrderStatus, target: OrderStatus, has_exchange: bool) -> None:
        result = self.check(current, target, has_exchange)
        if not result.allowed:
            extra = {}
            if target == OrderStatus.DELIVERED and not has_exchange and current not in self.TERMINAL:
                extra["missing_precondition"] = "exchange_record"
            raise StateTransitionError(result.reason, current=current.value, target=target.value, **extra)


class OrderService:
    """Service for delivery orders and dispatch plans."""

    def __init__(self, db: Session, inventory: Optional[InventoryService] = None):
        self.db = db
        self.inventory = inventory or InventoryService(db)
        self.state_machine = OrderDeliveryStateMachine()

    def get_order(self, order_id: int) -> DeliveryOrder:
        order = self.db.get(DeliveryOrder, order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    def get_plan(self, plan_id: int) -> DeliveryPlan:
        plan = self.db.get(DeliveryPlan, plan_id)
        if plan is None:
            raise NotFoundError("Plan", plan_id)
        return plan

    def has_exchange(self, order_id: int) -> bool:
        return (
            self.db.query(ExchangeTracking.id)
            .filter(ExchangeTracking.order_id == order_id)
            .first()
            is not None
        )

    def create_order(
        self,
        order_number: str,
        customer_id: int,
        lines: Sequence[Dict[str, int]],
        customer_name: Optional[str] = None,
        expected_empty_override: Optional[int] = None,
        notes: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> DeliveryOrder:
        """Create a PENDING order and register its customer as a ledger location.

        Args:
            lines: ``[{"cylinder_type_id": int, "ordered_qty": int}, ...]``, one per cylinder type
            expected_empty_override: Empties expected back instead of one per delivered cylinder
        """
        if not lines:
            raise ValidationError("An order needs at least one line")
        type_ids = [line["cylinder_type_id"] for line in lines]
        if len(set(type_ids)) != len(type_ids):
            raise ValidationError("Each cylinder type may appear only once per order")
        for line in lines:
            if line["ordered_qty"] <= 0:
                raise ValidationError("ordered_qty must be greater than 0", **line)
            self.inventory.get_cylinder_type(line["cylinder_type_id"])
        if expected_empty_override is not None and expected_empty_override < 0:
            raise ValidationError("expected_empty_override must not be negative")
        if self.db.query(DeliveryOrder).filter(DeliveryOrder.order_number == order_number).first():
            raise ValidationError(f"Order number '{order_number}' already exists", order_number=order_number)

        try:
            self.inventory.register_location_reference(
                LocationType.CUSTOMER, customer_id, customer_name or f"Customer {customer_id}", commit=False
            )
            order = DeliveryOrder(
                order_number=order_number,
                customer_id=customer_id,
                customer_name=customer_name,
                expected_empty_override=expected_empty_override,
                notes=notes,
                lines=[
                    DeliveryOrderLine(cylinder_type_id=line["cylinder_type_id"], ordered_qty=line["ordered_qty"])
                    for line in lines
                ],
            )
            order.status_history.append(
                OrderStatusHistory(from_status=None, to_status=OrderStatus.PENDING, changed_by=created_by)
            )
            self.db.add(order)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(order)
        logger.info("Created order %s for customer %s", order_number, customer_id)
        return order

    def transition(
        self,
        order_id: int,
        target: OrderStatus,
        changed_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> DeliveryOrder:
        """Move an order to a new status.

        ASSIGNED is only entered through ``create_plan``. LOADED fixes the
        loaded quantity of each line. DELIVERED requires a recorded exchange.

        Raises:
            StateTransitionError: Illegal transition or missing exchange record
            NotFoundError: Unknown order
        """
        order = self.get_order(order_id)
        if target == OrderStatus.ASSIGNED:
            raise StateTransitionError(
                "Orders are assigned by creating a dispatch plan",
                current=order.status.value,
                target=target.value,
            )
        self.state_machine.ensure(order.status, target, self.has_exchange(order_id))

        previous = order.status
        try:
            order.status = target
            if target == OrderStatus.LOADED:
                for line in order.lines:
                    if line.loaded_qty is None:
                        line.loaded_qty = line.ordered_qty
            elif target == OrderStatus.DELIVERED:
                order.delivered_at = datetime.now(timezone.utc)
            order.status_history.append(
                OrderStatusHistory(from_status=previous, to_status=target, reason=reason, changed_by=changed_by)
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(order)
        logger.info("Order %s: %s -> %s", order_id, previous.value, target.value)
        return order

    def create_plan(
        self,
        plan_date: date,
        vehicle_id: int,
        driver_id: int,
        order_ids: List[int],
        vehicle_number: Optional[str] = None,
        notes: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> DeliveryPlan:
        """Group CONFIRMED orders onto a vehicle and driver; every order becomes ASSIGNED.

        Raises:
            ValidationError: No orders, or the vehicle/driver already has a plan that day
            StateTransitionError: An order is not CONFIRMED
            NotFoundError: Unknown order
        """
        if not order_ids:
            raise ValidationError("A plan needs at least one order")
        if len(set(order_ids)) != len(order_ids):
            raise ValidationError("Duplicate order in plan")

        busy = (
            self.db.query(DeliveryPlan)
            .filter(
                DeliveryPlan.plan_date == plan_date,
                DeliveryPlan.status != PlanStatus.CANCELLED,
                (DeliveryPlan.vehicle_id == vehicle_id) | (DeliveryPlan.driver_id == driver_id),
            )
            .first()
        )
        if busy is not None:
            raise ValidationError(
                "Vehicle or driver already has a delivery plan for this date",
                plan_id=busy.id,
                plan_date=plan_date.isoformat(),
            )

        orders = [self.get_order(order_id) for order_id in order_ids]
        for order in orders:
            self.state_machine.ensure(order.status, OrderStatus.ASSIGNED, has_exchange=False)

        try:
            self.inventory.register_location_reference(
                LocationType.VEHICLE, vehicle_id, vehicle_number or f"Vehicle {vehicle_id}", commit=False
            )
            plan = DeliveryPlan(
                plan_date=plan_date,
                vehicle_id=vehicle_id,
                vehicle_number=vehicle_number,
                driver_id=driver_id,
                notes=notes,
                created_by=created_by,
            )
            self.db.add(plan)
            self.db.flush()
            for sequence, order in enumerate(orders, start=1):
                order.plan_id = plan.id
                order.sequence_number = sequence
                order.vehicle_id = vehicle_id
                order.status_history.append(
                    OrderStatusHistory(
                        from_status=order.status,
                        to_status=OrderStatus.ASSIGNED,
                        reason=f"Assigned to plan {plan.id}",
                        changed_by=created_by,
                    )
                )
                order.status = OrderStatus.ASSIGNED
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(plan)
        logger.info(
            "Created plan %s for %s: vehicle %s, driver %s, %s orders",
            plan.id, plan_date, vehicle_id, driver_id, len(orders),
        )
        return plan

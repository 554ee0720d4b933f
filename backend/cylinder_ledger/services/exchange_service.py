"""Exchange Verification Service - records filled-for-empty swaps at delivery stops.

Flow for one delivery order:
1. Compute variance (empty_collected - expected_empty); a non-zero variance
   needs a reason
2. Split the collected empties across the order lines
3. Pre-check that the customer holds enough cylinders (empty + filled) for
   every line; nothing is recorded when a line falls short
4. Persist the ExchangeTracking row, which unlocks the DELIVERED transition
5. Apply the delivery movements as one compound ledger operation:
   a. DELIVERY_FILLED vehicle -> customer
   b. CONVERSION at the customer when fewer empties are on record than are
      being handed back
   c. RETURN_EMPTY customer -> yard (or kept on the vehicle)

Steps 4 and 5 share one transaction: if any leg fails, the exchange row is
rolled back with it.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cylinder_ledger.core.config import settings
from cylinder_ledger.core.exceptions import (
    ConcurrencyConflict,
    InsufficientCustomerStock,
    NotFoundError,
    StateTransitionError,
    ValidationError,
)
from cylinder_ledger.models.delivery import DeliveryOrder, DeliveryOrderLine, DeliveryPlan, OrderStatus
from cylinder_ledger.models.exchange import ExchangeTracking, VarianceType
from cylinder_ledger.models.inventory import CylinderStatus, LocationType, MovementType
from cylinder_ledger.services.inventory_service import InventoryService, MovementLeg

logger = logging.getLogger(__name__)

# Orders that are on a vehicle and may record an exchange
EXCHANGE_READY_STATUSES = {OrderStatus.ASSIGNED, OrderStatus.LOADED, OrderStatus.IN_TRANSIT}

EMPTY_DESTINATIONS = {LocationType.YARD, LocationType.VEHICLE}


def allocate_expected_returns(
    ordered_qtys: Sequence[int],
    empty_collected: int,
    expected_empty: int,
) -> List[int]:
    """Split collected empties across order lines.

    A single-line order takes every collected empty. A multi-line order gives
    each line floor(empty_collected * ordered_qty / expected_empty); the
    floor can drop remainder units (33/17 lines with 45 collected of 50 give
    29 + 15 = 44), and that loss is kept rather than redistributed.
    The divisor is never below the total ordered quantity, so a lowered
    expectation cannot allocate more empties than were collected.

    >>> allocate_expected_returns([30, 20], 45, 50)
    [27, 18]
    """
    if not ordered_qtys:
        return []
    if empty_collected < 0:
        raise ValueError("empty_collected must not be negative")
    if len(ordered_qtys) == 1:
        return [empty_collected]

    divisor = max(expected_empty, sum(ordered_qtys))
    if divisor <= 0:
        return [0 for _ in ordered_qtys]
    return [(empty_collected * qty) // divisor for qty in ordered_qtys]


class ExchangeService:
    """Service for recording and querying delivery exchanges."""

    def __init__(self, db: Session, inventory: Optional[InventoryService] = None):
        self.db = db
        self.inventory = inventory or InventoryService(db)

    def _get_order(self, order_id: int) -> DeliveryOrder:
        order = self.db.get(DeliveryOrder, order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    def get_exchange(self, exchange_id: int) -> ExchangeTracking:
        exchange = self.db.get(ExchangeTracking, exchange_id)
        if exchange is None:
            raise NotFoundError("Exchange", exchange_id)
        return exchange

    def get_exchange_for_order(self, order_id: int) -> Optional[ExchangeTracking]:
        return (
            self.db.query(ExchangeTracking)
            .filter(ExchangeTracking.order_id == order_id)
            .first()
        )

    def record_exchange(
        self,
        order_id: int,
        filled_delivered: int,
        empty_collected: int,
        expected_empty: Optional[int] = None,
        variance_reason: Optional[str] = None,
        customer_acknowledged: bool = False,
        notes: Optional[str] = None,
        empty_destination: Optional[LocationType] = None,
        recorded_by: Optional[str] = None,
    ) -> Tuple[ExchangeTracking, bool]:
        """Verify and record the exchange for an order, then apply its movements.

        Args:
            order_id: Delivery order the exchange belongs to
            filled_delivered: Filled cylinders handed to the customer
            empty_collected: Empty cylinders taken back
            expected_empty: Empties the customer owed; defaults to the order's expectation
            variance_reason: Required when empty_collected != expected_empty
            customer_acknowledged: Customer signed off on the counts at the stop
            notes: Free text
            empty_destination: YARD or VEHICLE; defaults to DEFAULT_EMPTY_DESTINATION
            recorded_by: Actor recorded on the exchange and its movements

        Returns:
            (exchange, created); created is False when an identical exchange
            was already recorded for the order

        Raises:
            ValidationError: Bad counts, missing variance reason, conflicting re-submission
            NotFoundError: Unknown order
            StateTransitionError: Order is not on a vehicle
            InsufficientCustomerStock: Customer cannot cover the expected return
            InsufficientInventory: Vehicle does not hold the filled cylinders
            ConcurrencyConflict: Inventory changed concurrently; retry
        """
        if filled_delivered < 0 or empty_collected < 0:
            raise ValidationError(
                "Cylinder counts must not be negative",
                filled_delivered=filled_delivered,
                empty_collected=empty_collected,
            )
        order = self._get_order(order_id)
        if expected_empty is None:
            expected_empty = order.expected_empty
        if expected_empty < 0:
            raise ValidationError("expected_empty must not be negative", expected_empty=expected_empty)

        variance_qty = empty_collected - expected_empty
        variance_type = VarianceType.classify(variance_qty)
        reason = variance_reason.strip() if variance_reason else None
        if variance_qty != 0 and not reason:
            raise ValidationError(
                f"A variance reason is required for a {variance_type.value} of {abs(variance_qty)}",
                variance_qty=variance_qty,
                variance_type=variance_type.value,
            )

        existing = self.get_exchange_for_order(order_id)
        if existing is not None:
            if (
                existing.filled_delivered == filled_delivered
                and existing.empty_collected == empty_collected
                and existing.expected_empty == expected_empty
            ):
                logger.info("Exchange for order %s already recorded (id=%s)", order_id, existing.id)
                return existing, False
            raise ValidationError(
                f"An exchange with different counts is already recorded for order {order_id}",
                order_id=order_id,
                exchange_id=existing.id,
            )

        if order.status not in EXCHANGE_READY_STATUSES:
            raise StateTransitionError(
                f"Cannot record an exchange for an order in status {order.status.value}",
                current=order.status.value,
            )
        if order.vehicle_id is None:
            raise ValidationError("Order is not assigned to a vehicle", order_id=order_id)

        destination = LocationType(empty_destination or settings.default_empty_destination)
        if destination not in EMPTY_DESTINATIONS:
            raise ValidationError(
                "Collected empties go to the YARD or stay on the VEHICLE",
                empty_destination=destination.value,
            )

        lines = list(order.lines)
        if not lines:
            raise ValidationError("Order has no lines", order_id=order_id)
        deliveries = self._line_deliveries(lines, filled_delivered)
        ordered = [line.ordered_qty for line in lines]
        shares = allocate_expected_returns(ordered, empty_collected, expected_empty)
        # The customer must cover the larger of what was owed and what was handed back
        required = allocate_expected_returns(ordered, max(empty_collected, expected_empty), expected_empty)

        customer_stock: Dict[int, Tuple[int, int]] = {}
        for line, needed in zip(lines, required):
            available_empty = self.inventory.get_available_quantity(
                line.cylinder_type_id, LocationType.CUSTOMER, order.customer_id, CylinderStatus.EMPTY
            )
            available_filled = self.inventory.get_available_quantity(
                line.cylinder_type_id, LocationType.CUSTOMER, order.customer_id, CylinderStatus.FILLED
            )
            if available_empty + available_filled < needed:
                logger.warning(
                    "Exchange rejected for order %s: customer %s holds %s of type %s, needs %s",
                    order_id, order.customer_id, available_empty + available_filled,
                    line.cylinder_type_id, needed,
                )
                raise InsufficientCustomerStock(
                    cylinder_type_id=line.cylinder_type_id,
                    needed=needed,
                    available=available_empty + available_filled,
                    customer_id=order.customer_id,
                )
            customer_stock[line.id] = (available_empty, available_filled)

        exchange = ExchangeTracking(
            order_id=order.id,
            plan_id=order.plan_id,
            customer_id=order.customer_id,
            filled_delivered=filled_delivered,
            empty_collected=empty_collected,
            expected_empty=expected_empty,
            variance_qty=variance_qty,
            variance_type=variance_type,
            variance_reason=reason,
            empty_destination=destination,
            customer_acknowledged=customer_acknowledged,
            acknowledged_by=recorded_by if customer_acknowledged else None,
            acknowledged_at=datetime.now(timezone.utc) if customer_acknowledged else None,
            recorded_by=recorded_by,
            notes=notes,
        )
        try:
            self.db.add(exchange)
            self.db.flush()

            legs: List[MovementLeg] = []
            for line, delivered, to_return in zip(lines, deliveries, shares):
                line.delivered_qty = delivered
                legs.extend(
                    self._delivery_legs(order, exchange, line, delivered, to_return, customer_stock[line.id], destination)
                )
            if legs:
                self.inventory.execute_legs(legs, actor=recorded_by, idempotency_key=f"exchange:{exchange.id}")
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise ConcurrencyConflict(f"Exchange for order {order_id} was recorded concurrently") from e
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(exchange)
        logger.info(
            "Recorded exchange %s for order %s: filled=%s empty=%s expected=%s variance=%s (%s)",
            exchange.id, order_id, filled_delivered, empty_collected, expected_empty,
            variance_qty, variance_type.value,
        )
        return exchange, True

    def _line_deliveries(self, lines: List[DeliveryOrderLine], filled_delivered: int) -> List[int]:
        """Filled quantity delivered per line."""
        if len(lines) == 1:
            return [filled_delivered]
        quantities = [line.delivered_quantity for line in lines]
        if sum(quantities) != filled_delivered:
            raise ValidationError(
                "filled_delivered must equal the sum of the order line quantities",
                filled_delivered=filled_delivered,
                line_total=sum(quantities),
            )
        return quantities

    def _delivery_legs(
        self,
        order: DeliveryOrder,
        exchange: ExchangeTracking,
        line: DeliveryOrderLine,
        delivered: int,
        to_return: int,
        customer_stock: Tuple[int, int],
        destination: LocationType,
    ) -> List[MovementLeg]:
        available_empty, available_filled = customer_stock
        common = dict(
            cylinder_type_id=line.cylinder_type_id,
            reference_transaction_id=exchange.id,
        )
        legs = []
        if delivered > 0:
            legs.append(MovementLeg(
                movement_type=MovementType.DELIVERY_FILLED,
                quantity=delivered,
                from_location_type=LocationType.VEHICLE,
                from_reference_id=order.vehicle_id,
                from_status=CylinderStatus.FILLED,
                to_location_type=LocationType.CUSTOMER,
                to_reference_id=order.customer_id,
                to_status=CylinderStatus.FILLED,
                notes=f"Delivered via order {order.order_number}",
                **common,
            ))
        if to_return > 0:
            to_convert = min(to_return - available_empty, available_filled)
            if to_convert > 0:
                legs.append(MovementLeg(
                    movement_type=MovementType.CONVERSION,
                    quantity=to_convert,
                    from_location_type=LocationType.CUSTOMER,
                    from_reference_id=order.customer_id,
                    from_status=CylinderStatus.FILLED,
                    to_location_type=LocationType.CUSTOMER,
                    to_reference_id=order.customer_id,
                    to_status=CylinderStatus.EMPTY,
                    notes=f"Converted {to_convert} filled to empty for return via order {order.order_number}",
                    **common,
                ))
            legs.append(MovementLeg(
                movement_type=MovementType.RETURN_EMPTY,
                quantity=to_return,
                from_location_type=LocationType.CUSTOMER,
                from_reference_id=order.customer_id,
                from_status=CylinderStatus.EMPTY,
                to_location_type=destination,
                to_reference_id=order.vehicle_id if destination == LocationType.VEHICLE else None,
                to_status=CylinderStatus.EMPTY,
                notes=f"Collected via order {order.order_number}, stored in {destination.value}",
                **common,
            ))
        return legs

    def acknowledge(self, exchange_id: int, acknowledged_by: str) -> ExchangeTracking:
        """Record the customer's acknowledgment of an exchange."""
        exchange = self.get_exchange(exchange_id)
        if exchange.customer_acknowledged and exchange.acknowledged_at is not None:
            return exchange
        exchange.customer_acknowledged = True
        exchange.acknowledged_by = acknowledged_by
        exchange.acknowledged_at = datetime.now(timezone.utc)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(exchange)
        logger.info("Exchange %s acknowledged by %s", exchange_id, acknowledged_by)
        return exchange

    def list_exchanges(
        self,
        plan_id: Optional[int] = None,
        order_id: Optional[int] = None,
        variance_type: Optional[VarianceType] = None,
        customer_id: Optional[int] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> List[ExchangeTracking]:
        query = self.db.query(ExchangeTracking)
        if plan_id is not None:
            query = query.filter(ExchangeTracking.plan_id == plan_id)
        if order_id is not None:
            query = query.filter(ExchangeTracking.order_id == order_id)
        if variance_type is not None:
            query = query.filter(ExchangeTracking.variance_type == variance_type)
        if customer_id is not None:
            query = query.filter(ExchangeTracking.customer_id == customer_id)
        if date_from is not None:
            query = query.filter(
                ExchangeTracking.created_at >= datetime.combine(date_from, time.min, tzinfo=timezone.utc)
            )
        if date_to is not None:
            query = query.filter(
                ExchangeTracking.created_at
                < datetime.combine(date_to + timedelta(days=1), time.min, tzinfo=timezone.utc)
            )
        return query.order_by(ExchangeTracking.order_id).all()

    def exchange_summary(self, plan_id: int) -> Dict[str, Any]:
        """Totals and counts for every exchange of a dispatch plan."""
        plan = self.db.get(DeliveryPlan, plan_id)
        if plan is None:
            raise NotFoundError("Plan", plan_id)

        exchanges = self.list_exchanges(plan_id=plan_id)
        exchanged_orders = {e.order_id for e in exchanges}
        active_orders = [o for o in plan.orders if o.status != OrderStatus.CANCELLED]
        return {
            "plan_id": plan_id,
            "plan_date": plan.plan_date,
            "total_orders": len(active_orders),
            "total_exchanges": len(exchanges),
            "orders_without_exchange": [o.id for o in active_orders if o.id not in exchanged_orders],
            "total_filled_delivered": sum(e.filled_delivered for e in exchanges),
            "total_empty_collected": sum(e.empty_collected for e in exchanges),
            "total_expected_empty": sum(e.expected_empty for e in exchanges),
            "match_count": sum(1 for e in exchanges if e.variance_type == VarianceType.MATCH),
            "shortage_count": sum(1 for e in exchanges if e.variance_type == VarianceType.SHORTAGE),
            "excess_count": sum(1 for e in exchanges if e.variance_type == VarianceType.EXCESS),
            "total_shortage_qty": sum(
                abs(e.variance_qty) for e in exchanges if e.variance_type == VarianceType.SHORTAGE
            ),
            "total_excess_qty": sum(
                e.variance_qty for e in exchanges if e.variance_type == VarianceType.EXCESS
            ),
            "pending_acknowledgments": sum(1 for e in exchanges if not e.customer_acknowledged),
        }

"""Reconciliation service: plan-level exchange variances and end-of-day vehicle counts."""

from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from cylinder_ledger.core.config import settings
from cylinder_ledger.core.exceptions import NotFoundError, StateTransitionError, ValidationError
from cylinder_ledger.models.delivery import DeliveryPlan, OrderStatus
from cylinder_ledger.models.exchange import ExchangeTracking, VarianceType
from cylinder_ledger.models.inventory import CylinderMovement, CylinderStatus, LocationType, MovementType
from cylinder_ledger.models.reconciliation import (
    DailyReconciliation,
    DeltaSeverity,
    ExchangeVarianceDetail,
    ReconciliationStatus,
    ResolutionStatus,
    VehicleInventoryCount,
)
from cylinder_ledger.services.inventory_service import InventoryService

logger = logging.getLogger(__name__)


class ReconciliationConfig:
    """Configuration for count discrepancy thresholds."""

    def __init__(
        self,
        critical_threshold_qty: int = settings.count_critical_threshold_qty,
        critical_threshold_percent: float = settings.count_critical_threshold_percent,
        warning_threshold_qty: int = settings.count_warning_threshold_qty,
        warning_threshold_percent: float = settings.count_warning_threshold_percent,
    ):
        self.critical_threshold_qty = critical_threshold_qty
        self.critical_threshold_percent = critical_threshold_percent
        self.warning_threshold_qty = warning_threshold_qty
        self.warning_threshold_percent = warning_threshold_percent


class ReconciliationService:
    """Service for reconciling dispatch plans against exchanges and physical counts."""

    def __init__(self, db: Session, config: Optional[ReconciliationConfig] = None):
        self.db = db
        self.config = config or ReconciliationConfig()
        self.inventory = InventoryService(db)

    def _get_plan(self, plan_id: int) -> DeliveryPlan:
        plan = self.db.get(DeliveryPlan, plan_id)
        if plan is None:
            raise NotFoundError("Plan", plan_id)
        return plan

    def get_reconciliation(self, reconciliation_id: int) -> DailyReconciliation:
        reconciliation = self.db.get(DailyReconciliation, reconciliation_id)
        if reconciliation is None:
            raise NotFoundError("Reconciliation", reconciliation_id)
        return reconciliation

    def get_reconciliation_for_plan(self, plan_id: int) -> Optional[DailyReconciliation]:
        return (
            self.db.query(DailyReconciliation)
            .filter(DailyReconciliation.plan_id == plan_id)
            .first()
        )

    # ------------------------------------------------------------------
    # Exchange variance aggregation
    # ------------------------------------------------------------------

    def create_daily_reconciliation(
        self,
        plan_id: int,
        reconciled_by: str,
        notes: Optional[str] = None,
    ) -> DailyReconciliation:
        """Aggregate every exchange of a plan into an OPEN reconciliation.

        totals: total_orders = number of exchanges, total_shortages = sum of
        |variance| over shortages, total_excess = sum of variance over
        excesses. Each non-matching exchange becomes a PENDING variance
        detail for follow-up.

        Raises:
            NotFoundError: Unknown plan
            ValidationError: The plan already has a reconciliation
        """
        plan = self._get_plan(plan_id)
        existing = self.get_reconciliation_for_plan(plan_id)
        if existing is not None:
            raise ValidationError(
                f"Plan {plan_id} already has a reconciliation",
                plan_id=plan_id,
                reconciliation_id=existing.id,
            )

        exchanges = (
            self.db.query(ExchangeTracking)
            .filter(ExchangeTracking.plan_id == plan_id)
            .order_by(ExchangeTracking.order_id)
            .all()
        )
        shortages = [e for e in exchanges if e.variance_type == VarianceType.SHORTAGE]
        excesses = [e for e in exchanges if e.variance_type == VarianceType.EXCESS]

        reconciliation = DailyReconciliation(
            plan_id=plan_id,
            reconciliation_date=plan.plan_date,
            total_orders=len(exchanges),
            total_shortages=sum(abs(e.variance_qty) for e in shortages),
            total_excess=sum(e.variance_qty for e in excesses),
            status=ReconciliationStatus.OPEN,
            reconciled_by=reconciled_by,
            notes=notes,
            variance_details=[
                ExchangeVarianceDetail(
                    exchange_id=e.id,
                    order_id=e.order_id,
                    variance_qty=e.variance_qty,
                    variance_type=e.variance_type,
                    variance_reason=e.variance_reason,
                )
                for e in exchanges
                if e.variance_type != VarianceType.MATCH
            ],
        )
        try:
            self.db.add(reconciliation)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(reconciliation)

        logger.info(
            "Reconciliation %s for plan %s: %s exchanges, shortages=%s, excess=%s",
            reconciliation.id, plan_id, reconciliation.total_orders,
            reconciliation.total_shortages, reconciliation.total_excess,
        )
        return reconciliation

    def list_reconciliations(
        self,
        status: Optional[ReconciliationStatus] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> List[DailyReconciliation]:
        query = self.db.query(DailyReconciliation)
        if status is not None:
            query = query.filter(DailyReconciliation.status == status)
        if date_from is not None:
            query = query.filter(DailyReconciliation.reconciliation_date >= date_from)
        if date_to is not None:
            query = query.filter(DailyReconciliation.reconciliation_date <= date_to)
        return query.order_by(DailyReconciliation.reconciliation_date.desc(), DailyReconciliation.id.desc()).all()

    def update_variance_resolution(
        self,
        detail_id: int,
        resolution_status: ResolutionStatus,
        resolution_notes: Optional[str] = None,
        resolved_by: Optional[str] = None,
    ) -> ExchangeVarianceDetail:
        detail = self.db.get(ExchangeVarianceDetail, detail_id)
        if detail is None:
            raise NotFoundError("Variance detail", detail_id)
        if detail.reconciliation.status == ReconciliationStatus.CLOSED:
            raise StateTransitionError(
                "Reconciliation is closed",
                current=ReconciliationStatus.CLOSED.value,
            )

        detail.resolution_status = resolution_status
        detail.resolution_notes = resolution_notes
        if resolution_status == ResolutionStatus.PENDING:
            detail.resolved_by = None
            detail.resolved_at = None
        else:
            detail.resolved_by = resolved_by
            detail.resolved_at = datetime.now(timezone.utc)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(detail)
        logger.info("Variance detail %s -> %s", detail_id, resolution_status.value)
        return detail

    def close_reconciliation(self, reconciliation_id: int, closed_by: str) -> DailyReconciliation:
        """Close an OPEN reconciliation once no variance is left PENDING."""
        reconciliation = self.get_reconciliation(reconciliation_id)
        if reconciliation.status == ReconciliationStatus.CLOSED:
            raise StateTransitionError(
                "Reconciliation is already closed",
                current=ReconciliationStatus.CLOSED.value,
                target=ReconciliationStatus.CLOSED.value,
            )
        pending = [
            d.id for d in reconciliation.variance_details
            if d.resolution_status == ResolutionStatus.PENDING
        ]
        if pending:
            raise StateTransitionError(
                f"{len(pending)} variance(s) still pending resolution",
                current=reconciliation.status.value,
                target=ReconciliationStatus.CLOSED.value,
                pending_detail_ids=pending,
            )

        reconciliation.status = ReconciliationStatus.CLOSED
        reconciliation.closed_by = closed_by
        reconciliation.closed_at = datetime.now(timezone.utc)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(reconciliation)
        logger.info("Reconciliation %s closed by %s", reconciliation_id, closed_by)
        return reconciliation

    # ------------------------------------------------------------------
    # Vehicle end-of-day count
    # ------------------------------------------------------------------

    def calculate_severity(self, expected: int, variance: int) -> Tuple[DeltaSeverity, str]:
        """
        Determine severity level based on variance and thresholds.
        Returns (severity, reason).
        """
        abs_delta = abs(variance)
        if abs_delta == 0:
            return DeltaSeverity.OK, "Count matches"

        delta_percent = None
        if expected > 0:
            delta_percent = (abs_delta / expected) * 100

        if abs_delta >= self.config.critical_threshold_qty:
            return DeltaSeverity.CRITICAL, f"Variance exceeds {self.config.critical_threshold_qty} units"
        if delta_percent is not None and delta_percent >= self.config.critical_threshold_percent:
            return DeltaSeverity.CRITICAL, f"Variance exceeds {self.config.critical_threshold_percent}%"

        if abs_delta >= self.config.warning_threshold_qty:
            return DeltaSeverity.WARNING, f"Variance exceeds {self.config.warning_threshold_qty} units"
        if delta_percent is not None and delta_percent >= self.config.warning_threshold_percent:
            return DeltaSeverity.WARNING, f"Variance exceeds {self.config.warning_threshold_percent}%"

        return DeltaSeverity.OK, "Within acceptable tolerance"

    def expected_vehicle_remaining(self, plan: DeliveryPlan) -> Dict[int, Dict[str, int]]:
        """Ledger-derived expectation for the plan's vehicle, per cylinder type.

        expected = planned load - delivered - returned, where planned load is
        the loaded (else ordered) quantity of every plan order, delivered
        counts orders with a recorded exchange, and returned is the empties
        the plan's exchanges put back on the vehicle (RETURN_EMPTY legs with
        the vehicle as destination). ``returned_filled`` reports FILLED stock
        moved off the vehicle by RETURN_FILLED movements on the plan date; it
        is informational and not part of the expectation.
        """
        breakdown: Dict[int, Dict[str, int]] = {}

        def entry(cylinder_type_id: int) -> Dict[str, int]:
            return breakdown.setdefault(
                cylinder_type_id,
                {"planned_load": 0, "delivered": 0, "returned": 0, "returned_filled": 0, "expected": 0},
            )

        exchanges = dict(
            self.db.query(ExchangeTracking.id, ExchangeTracking.order_id)
            .filter(ExchangeTracking.plan_id == plan.id)
            .all()
        )
        exchanged = set(exchanges.values())
        for order in plan.orders:
            for line in order.lines:
                if line.loaded_qty is not None:
                    load = line.loaded_qty
                elif order.status == OrderStatus.CANCELLED:
                    load = 0
                else:
                    load = line.ordered_qty
                e = entry(line.cylinder_type_id)
                e["planned_load"] += load
                if order.id in exchanged:
                    e["delivered"] += line.delivered_qty or 0

        if exchanges:
            returned_rows = (
                self.db.query(CylinderMovement.cylinder_type_id, func.sum(CylinderMovement.quantity))
                .filter(
                    CylinderMovement.movement_type == MovementType.RETURN_EMPTY,
                    CylinderMovement.to_location_type == LocationType.VEHICLE,
                    CylinderMovement.to_reference_id == plan.vehicle_id,
                    CylinderMovement.reference_transaction_id.in_(list(exchanges)),
                )
                .group_by(CylinderMovement.cylinder_type_id)
                .all()
            )
            for cylinder_type_id, qty in returned_rows:
                entry(cylinder_type_id)["returned"] += int(qty or 0)

        day_start = datetime.combine(plan.plan_date, time.min, tzinfo=timezone.utc)
        returned_filled_rows = (
            self.db.query(CylinderMovement.cylinder_type_id, func.sum(CylinderMovement.quantity))
            .filter(
                CylinderMovement.movement_type == MovementType.RETURN_FILLED,
                CylinderMovement.from_location_type == LocationType.VEHICLE,
                CylinderMovement.from_reference_id == plan.vehicle_id,
                CylinderMovement.from_status == CylinderStatus.FILLED,
                CylinderMovement.ts >= day_start,
                CylinderMovement.ts < day_start + timedelta(days=1),
            )
            .group_by(CylinderMovement.cylinder_type_id)
            .all()
        )
        for cylinder_type_id, qty in returned_filled_rows:
            entry(cylinder_type_id)["returned_filled"] += int(qty or 0)

        for e in breakdown.values():
            e["expected"] = e["planned_load"] - e["delivered"] - e["returned"]
        return breakdown

    def count_vehicle_inventory(
        self,
        plan_id: int,
        items: Sequence[Dict[str, Any]],
        counted_by: Optional[str] = None,
    ) -> List[VehicleInventoryCount]:
        """Record an end-of-day physical count of cylinders on the plan's vehicle.

        Each item is ``{"cylinder_type_id", "actual_remaining", "variance_reason"?}``.
        A mismatching line needs a reason; a recount replaces the previous
        count for that cylinder type.

        Raises:
            NotFoundError: Unknown plan or cylinder type
            ValidationError: Bad items, or a mismatch without a reason
            StateTransitionError: The plan's reconciliation is closed
        """
        plan = self._get_plan(plan_id)
        reconciliation = self.get_reconciliation_for_plan(plan_id)
        if reconciliation is not None and reconciliation.status == ReconciliationStatus.CLOSED:
            raise StateTransitionError(
                "Reconciliation for this plan is closed",
                current=ReconciliationStatus.CLOSED.value,
            )
        if not items:
            raise ValidationError("At least one inventory item is required")
        type_ids = [item["cylinder_type_id"] for item in items]
        if len(set(type_ids)) != len(type_ids):
            raise ValidationError("Each cylinder type may be counted once per submission")

        expected = self.expected_vehicle_remaining(plan)
        rows = []
        for item in items:
            cylinder_type_id = item["cylinder_type_id"]
            actual = item["actual_remaining"]
            self.inventory.get_cylinder_type(cylinder_type_id)
            if actual < 0:
                raise ValidationError("actual_remaining must not be negative", cylinder_type_id=cylinder_type_id)
            expected_remaining = expected.get(cylinder_type_id, {}).get("expected", 0)
            variance = actual - expected_remaining
            reason = (item.get("variance_reason") or "").strip() or None
            if variance != 0 and not reason:
                raise ValidationError(
                    f"A variance reason is required for cylinder type {cylinder_type_id}",
                    cylinder_type_id=cylinder_type_id,
                    expected_remaining=expected_remaining,
                    actual_remaining=actual,
                    variance=variance,
                )
            severity, severity_reason = self.calculate_severity(expected_remaining, variance)
            rows.append((cylinder_type_id, expected_remaining, actual, variance, severity, severity_reason, reason))

        counts = []
        try:
            for cylinder_type_id, expected_remaining, actual, variance, severity, severity_reason, reason in rows:
                count = (
                    self.db.query(VehicleInventoryCount)
                    .filter(
                        VehicleInventoryCount.plan_id == plan_id,
                        VehicleInventoryCount.cylinder_type_id == cylinder_type_id,
                    )
                    .first()
                )
                if count is None:
                    count = VehicleInventoryCount(plan_id=plan_id, cylinder_type_id=cylinder_type_id)
                    self.db.add(count)
                count.expected_remaining = expected_remaining
                count.actual_remaining = actual
                count.variance = variance
                count.severity = severity
                count.severity_reason = severity_reason
                count.variance_reason = reason
                count.counted_by = counted_by
                count.counted_at = datetime.now(timezone.utc)
                counts.append(count)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        for count in counts:
            self.db.refresh(count)
            if count.variance != 0:
                logger.warning(
                    "Vehicle count mismatch plan=%s type=%s expected=%s actual=%s (%s): %s",
                    plan_id, count.cylinder_type_id, count.expected_remaining,
                    count.actual_remaining, count.severity.value, count.variance_reason,
                )
        return counts

    def get_vehicle_inventory(self, plan_id: int) -> List[VehicleInventoryCount]:
        self._get_plan(plan_id)
        return (
            self.db.query(VehicleInventoryCount)
            .filter(VehicleInventoryCount.plan_id == plan_id)
            .order_by(VehicleInventoryCount.cylinder_type_id)
            .all()
        )

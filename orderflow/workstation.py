"""Workstation routing at the processing branch.

The workstation stage an order sits at is read off its status
(`Order.assigned_workstation_stage`); moving between stages is a status
transition like any other.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from .errors import InvalidStage, NotFound, ValidationError
from .models import BranchType, Garment, Order, RoutingStatus, StaffHandler
from .repository import Repository, retry_on_conflict
from .state_machine import transition
from .statuses import OrderStatus, WorkstationStage, status_for_stage
from .utils import Clock, as_utc, utcnow

logger = logging.getLogger(__name__)

ASSESSMENTS = ("good", "minor_issues", "major_issues")
ACTIVE_ROUTING = (RoutingStatus.ASSIGNED, RoutingStatus.PROCESSING)
DEFAULT_SORTING_WINDOW_HOURS = 6


def find_garment(order: Order, garment_id: str) -> Garment:
    for garment in order.garments:
        if garment.garment_id == garment_id:
            return garment
    raise NotFound("garments", garment_id)


def is_inspection_complete(order: Order) -> bool:
    return all(g.inspection_completed for g in order.garments)


def queue_depth(orders: Iterable[Order], branch_id: Optional[str] = None) -> Dict[WorkstationStage, int]:
    depth = {stage: 0 for stage in WorkstationStage}
    for order in orders:
        if order.routing_status not in ACTIVE_ROUTING:
            continue
        if branch_id is not None and order.processing_branch_id != branch_id:
            continue
        stage = order.assigned_workstation_stage
        if stage is not None:
            depth[stage] += 1
    return depth


class WorkstationService:
    def __init__(self, repo: Repository, clock: Clock = utcnow):
        self.repo = repo
        self.clock = clock

    def _update(self, order_id: str, change: Callable[[Order, datetime], Order]) -> Order:
        def attempt() -> Order:
            order = self.repo.get_order(order_id)
            now = self.clock()
            updated = change(order, now)
            updated.updated_at = now
            (saved,) = self.repo.commit(updated)
            return saved

        return retry_on_conflict(attempt)

    def route_order(self, order_id: str, actor: str) -> Order:
        """Send a satellite order towards its main store, or start it here."""
        order = self.repo.get_order(order_id)
        branch = self.repo.get_branch(order.branch_id)
        processing_branch_id = order.branch_id
        if branch.branch_type == BranchType.SATELLITE and branch.main_store_id:
            processing_branch_id = branch.main_store_id
        # must exist before anything points at it
        self.repo.get_branch(processing_branch_id)
        needs_transfer = processing_branch_id != order.branch_id

        def change(order: Order, now: datetime) -> Order:
            if needs_transfer:
                updated = order.snapshot()
                updated.routing_status = RoutingStatus.PENDING
            else:
                updated = order
                if order.status == OrderStatus.RECEIVED:
                    updated = transition(order, OrderStatus.INSPECTION, actor, now=now)
                updated.routing_status = RoutingStatus.ASSIGNED
                updated.origin_branch_id = order.branch_id
                updated.destination_branch_id = processing_branch_id
            updated.processing_branch_id = processing_branch_id
            updated.routed_at = now
            return updated

        order = self._update(order_id, change)
        logger.info("order %s routed to %s (%s)", order_id, processing_branch_id, order.routing_status.value)
        return order

    def advance_stage(self, order_id: str, stage: WorkstationStage, actor: str,
                      staff_id: Optional[str] = None) -> Order:
        try:
            target = status_for_stage(stage)
        except ValueError:
            raise InvalidStage(f"unknown workstation stage: {stage}")

        def change(order: Order, now: datetime) -> Order:
            updated = transition(order, target, actor, now=now)
            updated.routing_status = (
                RoutingStatus.ASSIGNED if target == OrderStatus.INSPECTION else RoutingStatus.PROCESSING
            )
            if staff_id:
                updated.assigned_workstation_staff_id = staff_id
            return updated

        order = self._update(order_id, change)
        logger.info("order %s at %s station (%s)", order_id, target.value, staff_id or actor)
        return order

    def complete_garment_inspection(self, order_id: str, garment_id: str, assessment: str, actor: str,
                                    notes: Optional[str] = None) -> Order:
        if assessment not in ASSESSMENTS:
            raise ValidationError(f"assessment must be one of {', '.join(ASSESSMENTS)}")

        def change(order: Order, now: datetime) -> Order:
            if order.status != OrderStatus.INSPECTION:
                raise InvalidStage(f"order {order_id} is {order.status.value}, not in inspection")
            updated = order.snapshot()
            garment = find_garment(updated, garment_id)
            garment.inspection_completed = True
            garment.inspection_completed_by = actor
            garment.inspection_completed_at = now
            garment.condition_assessment = assessment
            garment.inspection_notes = notes
            if assessment == "major_issues":
                updated.major_issues_detected = True
            return updated

        order = self._update(order_id, change)
        if assessment == "major_issues":
            logger.warning("major issues on %s of order %s", garment_id, order_id)
        return order

    def approve_major_issues(self, order_id: str, manager_id: str, extra_hours: int = 0) -> Order:
        def change(order: Order, now: datetime) -> Order:
            if not order.major_issues_detected:
                raise ValidationError(f"order {order_id} has no major issues to approve")
            updated = order.snapshot()
            updated.major_issues_reviewed_by = manager_id
            updated.major_issues_approved_at = now
            if extra_hours > 0:
                updated.estimated_completion = order.estimated_completion + timedelta(hours=extra_hours)
            return updated

        return self._update(order_id, change)

    def complete_stage_for_garment(self, order_id: str, garment_id: str, stage: WorkstationStage,
                                   staff_id: str, staff_name: str,
                                   started_at: Optional[datetime] = None) -> Order:
        stage = WorkstationStage(stage)

        def change(order: Order, now: datetime) -> Order:
            updated = order.snapshot()
            garment = find_garment(updated, garment_id)
            garment.stage_handlers.setdefault(stage.value, []).append(
                StaffHandler(uid=staff_id, name=staff_name, completed_at=now)
            )
            if started_at is not None:
                seconds = int((now - as_utc(started_at)).total_seconds())
                if seconds > 0:
                    # several staff on one stage add up
                    garment.stage_durations[stage.value] = garment.stage_durations.get(stage.value, 0) + seconds
            return updated

        return self._update(order_id, change)

    def mark_processing_complete(self, order_id: str, actor: str) -> Order:
        order = self.repo.get_order(order_id)
        try:
            branch = self.repo.get_branch(order.processing_branch_id or order.branch_id)
            window = branch.sorting_window_hours or DEFAULT_SORTING_WINDOW_HOURS
        except NotFound:
            window = DEFAULT_SORTING_WINDOW_HOURS

        def change(order: Order, now: datetime) -> Order:
            updated = transition(order, OrderStatus.QUEUED_FOR_DELIVERY, actor, now=now)
            updated.routing_status = RoutingStatus.READY_FOR_RETURN
            updated.sorting_completed_at = now
            updated.earliest_delivery_time = now + timedelta(hours=window)
            return updated

        order = self._update(order_id, change)
        logger.info("order %s processed, earliest delivery %s", order_id, order.earliest_delivery_time)
        return order

    # queries

    def pending_inspection(self, branch_id: str) -> List[Order]:
        orders = self.repo.find_orders(processing_branch_id=branch_id, status=OrderStatus.INSPECTION)
        return sorted(orders, key=lambda o: o.created_at)

    def pending_routing(self, branch_id: str) -> List[Order]:
        orders = self.repo.find_orders(branch_id=branch_id, routing_status=RoutingStatus.PENDING)
        return sorted(orders, key=lambda o: o.created_at)

    def assigned_to_staff(self, staff_id: str) -> List[Order]:
        orders = self.repo.find_orders(assigned_workstation_staff_id=staff_id)
        return [o for o in orders if o.routing_status in ACTIVE_ROUTING]

    def queue_depth(self, branch_id: str) -> Dict[WorkstationStage, int]:
        return queue_depth(self.repo.find_orders(processing_branch_id=branch_id), branch_id)

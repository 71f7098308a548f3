"""Order state machine.

`transition` is the single primitive every workflow goes through when it
changes an order's top-level status. It never mutates its input.
"""
from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from .errors import InvalidTransition
from .models import Garment, Order, StatusHistoryEntry
from .repository import Repository, retry_on_conflict
from .statuses import OrderStatus, StatusLike, as_status, can_transition, is_terminal, requires_notification
from .utils import Clock, garment_id, next_sequence, order_id_prefix, utcnow

logger = logging.getLogger(__name__)

Notifier = Callable[[Order, OrderStatus], None]


def transition(
    order: Order,
    target: StatusLike,
    actor: str,
    note: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Order:
    target = as_status(target)
    if order.status == target:
        # duplicate submissions are expected; nothing to record
        return order.snapshot()
    if not can_transition(order.status, target):
        raise InvalidTransition(order.status.value, target.value)

    now = now or utcnow()
    if order.status_history and now < order.status_history[-1].timestamp:
        now = order.status_history[-1].timestamp

    updated = order.snapshot()
    updated.status_history.append(
        StatusHistoryEntry(status=target, timestamp=now, updated_by=actor, note=note)
    )
    updated.status = target
    updated.updated_at = now
    if is_terminal(target):
        updated.actual_completion = now
    return updated


def calculate_estimated_completion(garment_count: int, now: datetime, express: bool = False) -> datetime:
    hours = 48
    if garment_count > 20:
        hours += 48
    elif garment_count > 10:
        hours += 24
    if express:
        hours = math.ceil(hours / 2)
    return now + timedelta(hours=hours)


class OrderLifecycle:
    def __init__(self, repo: Repository, clock: Clock = utcnow, notifier: Optional[Notifier] = None):
        self.repo = repo
        self.clock = clock
        self.notifier = notifier

    def create_order(
        self,
        customer_id: str,
        branch_id: str,
        garments: List[dict],
        actor: str,
        estimated_completion: Optional[datetime] = None,
        express: bool = False,
    ) -> Order:
        now = self.clock()
        prefix = order_id_prefix(branch_id, now.date())

        def attempt() -> Order:
            # two tills on one branch can race for the same sequence number
            order_id = f"{prefix}{next_sequence(self.repo.ids(Order, prefix), prefix):04d}"
            items = [Garment(garment_id=garment_id(order_id, i), **g) for i, g in enumerate(garments)]
            order = Order(
                order_id=order_id,
                customer_id=customer_id,
                branch_id=branch_id,
                origin_branch_id=branch_id,
                status=OrderStatus.RECEIVED,
                status_history=[StatusHistoryEntry(status=OrderStatus.RECEIVED, timestamp=now, updated_by=actor)],
                garments=items,
                total_amount=sum(g.price for g in items),
                created_at=now,
                updated_at=now,
                estimated_completion=estimated_completion
                or calculate_estimated_completion(len(items), now, express),
            )
            (saved,) = self.repo.commit(order)
            return saved

        order = retry_on_conflict(attempt)
        logger.info("order %s created at %s (%d garments)", order.order_id, branch_id, len(order.garments))
        return order

    def get(self, order_id: str) -> Order:
        return self.repo.get_order(order_id)

    def transition(self, order_id: str, target: StatusLike, actor: str, note: Optional[str] = None) -> Order:
        target = as_status(target)

        def attempt() -> Tuple[Order, bool]:
            current = self.repo.get_order(order_id)
            updated = transition(current, target, actor, note, now=self.clock())
            if updated.status_history == current.status_history:
                return current, False
            (saved,) = self.repo.commit(updated)
            return saved, True

        try:
            saved, changed = retry_on_conflict(attempt)
        except InvalidTransition as e:
            logger.info("rejected transition of %s: %s", order_id, e.message)
            raise
        if not changed:
            logger.debug("order %s already %s", order_id, target.value)
            return saved
        logger.info("order %s -> %s by %s", order_id, target.value, actor)
        self._notify(saved, target)
        return saved

    def _notify(self, order: Order, status: OrderStatus) -> None:
        if self.notifier is None or not requires_notification(status):
            return
        try:
            self.notifier(order, status)
        except Exception:
            # notifications never block a status change
            logger.exception("notification for %s (%s) failed", order.order_id, status.value)


class Persist(Protocol):
    def __call__(self, order: Order) -> Order: ...


class OptimisticTransition:
    """Apply a transition to a local view first, then persist.

    On failure the snapshot is restored only if the view still holds the
    value this command wrote, so a newer change (from the change feed or
    another command) is never clobbered.
    """

    def __init__(self, view: Dict[str, Order], order_id: str, target: StatusLike, actor: str,
                 note: Optional[str] = None, clock: Clock = utcnow):
        self.view = view
        self.order_id = order_id
        self.target = as_status(target)
        self.actor = actor
        self.note = note
        self.clock = clock
        self.snapshot: Optional[Order] = None
        self.optimistic: Optional[Order] = None
        self.rolled_back = False

    def apply(self) -> Order:
        current = self.view[self.order_id]
        self.snapshot = current.snapshot()
        self.optimistic = transition(current, self.target, self.actor, self.note, now=self.clock())
        self.view[self.order_id] = self.optimistic
        return self.optimistic

    def run(self, persist: Persist) -> Order:
        if self.optimistic is None:
            self.apply()
        try:
            saved = persist(self.optimistic)
        except Exception:
            self.rollback()
            raise
        if self.view.get(self.order_id) is self.optimistic:
            self.view[self.order_id] = saved
        return saved

    def rollback(self) -> bool:
        if self.view.get(self.order_id) is not self.optimistic:
            logger.info("skipping rollback of %s: view changed since apply", self.order_id)
            return False
        self.view[self.order_id] = self.snapshot
        self.rolled_back = True
        return True

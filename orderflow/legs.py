# orderflow/legs.py
import logging
from datetime import datetime
from enum import Enum
from typing import Optional

from .classification import apply_auto_classification, override_classification
from .errors import AlreadyCompleted, NotAssigned
from .models import DeliveryClassification, Leg, Order
from .repository import Repository, retry_on_conflict
from .utils import Clock, as_utc, utcnow

logger = logging.getLogger(__name__)


class LegKind(str, Enum):
    PICKUP = "pickup"
    DELIVERY = "delivery"


def leg_of(order: Order, kind: LegKind) -> Leg:
    return getattr(order, LegKind(kind).value) or Leg()


class LegService:
    """Driver assignment and completion for the pickup and delivery legs.

    Completing a delivery leg does not move the order to `delivered`; callers
    run the state machine separately once payment allows it.
    """

    def __init__(self, repo: Repository, clock: Clock = utcnow):
        self.repo = repo
        self.clock = clock

    def _update(self, order_id: str, kind: LegKind, change) -> Order:
        kind = LegKind(kind)

        def attempt() -> Order:
            order = self.repo.get_order(order_id)
            leg = leg_of(order, kind).model_copy()
            change(order, leg)
            setattr(order, kind.value, leg)
            order.updated_at = self.clock()
            (saved,) = self.repo.commit(order)
            return saved

        return retry_on_conflict(attempt)

    def assign_driver(self, order_id: str, kind: LegKind, driver_id: str) -> Order:
        self.repo.get_active_driver(driver_id)

        def change(order: Order, leg: Leg) -> None:
            leg.assigned_driver_id = driver_id

        order = self._update(order_id, kind, change)
        logger.info("driver %s assigned to %s of %s", driver_id, LegKind(kind).value, order_id)
        return order

    def schedule(self, order_id: str, kind: LegKind, when: datetime, address: Optional[str] = None) -> Order:
        def change(order: Order, leg: Leg) -> None:
            if leg.completed_time is not None:
                raise AlreadyCompleted(f"{LegKind(kind).value} of {order_id} is already completed")
            leg.scheduled_time = as_utc(when)
            if address is not None:
                leg.address = address

        return self._update(order_id, kind, change)

    def complete_leg(self, order_id: str, kind: LegKind) -> Order:
        kind = LegKind(kind)

        def change(order: Order, leg: Leg) -> None:
            if leg.completed_time is not None:
                raise AlreadyCompleted(f"{kind.value} of {order_id} is already completed")
            if not leg.assigned_driver_id:
                raise NotAssigned(f"{kind.value} of {order_id} has no driver assigned")
            leg.completed_time = self.clock()

        order = self._update(order_id, kind, change)
        logger.info("%s of %s completed", kind.value, order_id)
        return order

    def classify(self, order_id: str) -> Order:
        def attempt() -> Order:
            order = self.repo.get_order(order_id)
            updated = apply_auto_classification(order)
            if updated is order:
                return order
            (saved,) = self.repo.commit(updated)
            return saved

        return retry_on_conflict(attempt)

    def override_classification(self, order_id: str, classification: DeliveryClassification,
                                actor: str, reason: str) -> Order:
        def attempt() -> Order:
            order = self.repo.get_order(order_id)
            (saved,) = self.repo.commit(override_classification(order, classification, reason))
            return saved

        order = retry_on_conflict(attempt)
        logger.info("delivery classification of %s set to %s by %s: %s",
                    order_id, DeliveryClassification(classification).value, actor, reason)
        return order

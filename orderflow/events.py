"""Typed change feed over the order collection."""
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterator, List, Optional

from .models import Order
from .pipeline import PipelineStats, compute_pipeline_stats
from .repository import ORDERS, Repository
from .statuses import is_terminal
from .store import Document, DocumentStore, Subscription
from .utils import Clock, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderChanged:
    order_id: str
    version: int
    order: Order


def to_event(doc: Document) -> OrderChanged:
    body = dict(doc.body)
    body["version"] = doc.version
    order = Order.model_validate(body)
    return OrderChanged(order.order_id, doc.version, order)


class ChangeFeed:
    """Iterator of OrderChanged events; `close()` ends iteration."""

    def __init__(self, store: DocumentStore):
        self._subscription: Subscription = store.subscribe(ORDERS)

    def __iter__(self) -> Iterator[OrderChanged]:
        for doc in self._subscription:
            yield to_event(doc)

    def next(self, timeout: Optional[float] = None) -> Optional[OrderChanged]:
        doc = self._subscription.get(timeout=timeout)
        return to_event(doc) if doc is not None else None

    def close(self) -> None:
        self._subscription.close()

    def __enter__(self) -> "ChangeFeed":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class PipelineView:
    """Latest order per id plus stats recomputed on each change.

    Events carrying an older version than the one held are ignored, so a
    delayed notification never rolls the view back. Orders that reach a
    terminal status leave the view; only their last version is remembered,
    for the most recent `retired_limit` of them.
    """

    def __init__(self, orders: Optional[List[Order]] = None, clock: Clock = utcnow,
                 threshold_minutes: float = 120, retired_limit: int = 1000):
        self.clock = clock
        self.threshold_minutes = threshold_minutes
        self.retired_limit = retired_limit
        self.orders: Dict[str, Order] = {o.order_id: o for o in orders or [] if not is_terminal(o.status)}
        self._retired: "OrderedDict[str, int]" = OrderedDict()
        self._lock = threading.Lock()
        self._listeners: List[Callable[[PipelineStats], None]] = []
        self.stats = self._compute()
        self._thread: Optional[threading.Thread] = None
        self._feed: Optional[ChangeFeed] = None

    @classmethod
    def load(cls, repo: Repository, **kwargs) -> "PipelineView":
        return cls(repo.find_orders(), **kwargs)

    def _compute(self, now: Optional[datetime] = None) -> PipelineStats:
        return compute_pipeline_stats(self.orders.values(), now or self.clock(), self.threshold_minutes)

    def on_stats(self, listener: Callable[[PipelineStats], None]) -> None:
        self._listeners.append(listener)

    def apply(self, event: OrderChanged) -> bool:
        with self._lock:
            held = self.orders.get(event.order_id)
            if held is not None and held.version >= event.version:
                return False
            if self._retired.get(event.order_id, 0) >= event.version:
                return False
            if is_terminal(event.order.status):
                self.orders.pop(event.order_id, None)
                self._retire(event.order_id, event.version)
            else:
                self.orders[event.order_id] = event.order
            self.stats = self._compute()
            stats = self.stats
        for listener in self._listeners:
            try:
                listener(stats)
            except Exception:
                logger.exception("pipeline listener failed")
        return True

    def _retire(self, order_id: str, version: int) -> None:
        self._retired[order_id] = version
        self._retired.move_to_end(order_id)
        while len(self._retired) > self.retired_limit:
            self._retired.popitem(last=False)

    def follow(self, feed: ChangeFeed) -> None:
        """Consume feed in a background thread until it is closed."""
        self._feed = feed

        def run() -> None:
            for event in feed:
                self.apply(event)
            logger.debug("pipeline view stopped following")

        self._thread = threading.Thread(target=run, name="pipeline-view", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        if self._feed is not None:
            self._feed.close()
        if self._thread is not None:
            self._thread.join(timeout)

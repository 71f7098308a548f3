"""Pipeline read model.

Everything here is a pure function of an order set and a point in time.
Nothing is stored; callers recompute whenever the order set changes.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from .models import Order
from .statuses import OrderStatus, is_terminal
from .utils import minutes_between

BOTTLENECK_THRESHOLD_MINUTES = 120


@dataclass(frozen=True)
class StageStats:
    count: int
    avg_dwell_minutes: float


@dataclass(frozen=True)
class PipelineStats:
    per_status: Dict[OrderStatus, StageStats] = field(default_factory=dict)
    bottleneck: Optional[OrderStatus] = None
    bottleneck_minutes: float = 0.0
    bottleneck_flagged: bool = False
    overdue_count: int = 0
    in_flight: int = 0

    def to_dict(self) -> dict:
        return {
            "per_status": {
                s.value: {"count": st.count, "avg_dwell_minutes": st.avg_dwell_minutes}
                for s, st in self.per_status.items()
            },
            "bottleneck": self.bottleneck.value if self.bottleneck else None,
            "bottleneck_minutes": self.bottleneck_minutes,
            "bottleneck_flagged": self.bottleneck_flagged,
            "overdue_count": self.overdue_count,
            "in_flight": self.in_flight,
        }


def group_by_status(orders: Iterable[Order]) -> Dict[OrderStatus, List[Order]]:
    grouped: Dict[OrderStatus, List[Order]] = {s: [] for s in OrderStatus}
    for order in orders:
        grouped[order.status].append(order)
    return grouped


def time_in_current_stage(order: Order, now: datetime) -> int:
    """Minutes since the last status change."""
    if not order.status_history:
        return 0
    return max(0, minutes_between(order.status_history[-1].timestamp, now))


def total_processing_time(order: Order) -> int:
    if order.actual_completion is None:
        return 0
    return minutes_between(order.created_at, order.actual_completion)


def is_overdue(order: Order, now: datetime) -> bool:
    return order.actual_completion is None and now > order.estimated_completion


def compute_pipeline_stats(
    orders: Iterable[Order],
    now: datetime,
    threshold_minutes: float = BOTTLENECK_THRESHOLD_MINUTES,
) -> PipelineStats:
    orders = list(orders)
    dwell: Dict[OrderStatus, List[int]] = {}
    for order in orders:
        if is_terminal(order.status):
            continue
        dwell.setdefault(order.status, []).append(time_in_current_stage(order, now))

    per_status = {
        status: StageStats(count=len(times), avg_dwell_minutes=round(sum(times) / len(times), 1))
        for status, times in ((s, dwell[s]) for s in OrderStatus if s in dwell)
    }

    bottleneck, worst = None, 0.0
    for status, stats in per_status.items():
        # ties go to the earlier stage
        if bottleneck is None or stats.avg_dwell_minutes > worst:
            bottleneck, worst = status, stats.avg_dwell_minutes

    return PipelineStats(
        per_status=per_status,
        bottleneck=bottleneck,
        bottleneck_minutes=worst,
        bottleneck_flagged=bottleneck is not None and worst > threshold_minutes,
        overdue_count=sum(1 for o in orders if is_overdue(o, now)),
        in_flight=sum(st.count for st in per_status.values()),
    )


def average_time_per_stage(orders: Iterable[Order]) -> Dict[OrderStatus, int]:
    """Historical average minutes spent in each status, from consecutive history entries."""
    samples: Dict[OrderStatus, List[int]] = {s: [] for s in OrderStatus}
    for order in orders:
        history = order.status_history
        for current, following in zip(history, history[1:]):
            samples[current.status].append(minutes_between(current.timestamp, following.timestamp))
    return {s: round(sum(t) / len(t)) if t else 0 for s, t in samples.items()}


def identify_bottlenecks(orders: Iterable[Order], top_n: int = 3) -> List[Tuple[OrderStatus, int]]:
    averages = average_time_per_stage(orders)
    ranked = sorted(((s, m) for s, m in averages.items() if m > 0), key=lambda item: item[1], reverse=True)
    return ranked[:top_n]


def urgency_score(order: Order, now: datetime) -> int:
    """0-100: 100 when overdue, 80-99 inside six hours, 50-79 inside a day."""
    hours = (order.estimated_completion - now).total_seconds() / 3600
    if hours <= 0:
        return 100
    if hours <= 6:
        return round(80 + (6 - hours) * 3)
    if hours <= 24:
        return round(50 + (24 - hours) * 1.25)
    return max(0, round(50 - hours))


def sort_by_urgency(orders: Iterable[Order], now: datetime) -> List[Order]:
    return sorted(orders, key=lambda o: urgency_score(o, now), reverse=True)


def format_duration(minutes: int) -> str:
    if minutes < 60:
        return f"{minutes}m"
    hours, mins = divmod(minutes, 60)
    if hours < 24:
        return f"{hours}h {mins}m" if mins else f"{hours}h"
    days, hours = divmod(hours, 24)
    return f"{days}d {hours}h" if hours else f"{days}d"


def format_time_until_due(order: Order, now: datetime) -> str:
    remaining = minutes_between(now, order.estimated_completion)
    if remaining <= 0:
        return "Overdue"
    return f"{format_duration(remaining)} left"

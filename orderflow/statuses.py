"""Order status registry.

Single table of valid transitions and display metadata for the top-level
order status. Workstation stages are derived from the status here and are
never stored on their own.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Union


class OrderStatus(str, Enum):
    RECEIVED = "received"
    INSPECTION = "inspection"
    QUEUED = "queued"
    WASHING = "washing"
    DRYING = "drying"
    IRONING = "ironing"
    QUALITY_CHECK = "quality_check"
    PACKAGING = "packaging"
    READY = "ready"
    QUEUED_FOR_DELIVERY = "queued_for_delivery"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    COLLECTED = "collected"


class WorkstationStage(str, Enum):
    INSPECTION = "inspection"
    WASHING = "washing"
    DRYING = "drying"
    IRONING = "ironing"
    QUALITY_CHECK = "quality_check"
    PACKAGING = "packaging"


S = OrderStatus

VALID_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    S.RECEIVED: frozenset({S.INSPECTION, S.QUEUED}),
    S.INSPECTION: frozenset({S.QUEUED}),
    S.QUEUED: frozenset({S.WASHING}),
    S.WASHING: frozenset({S.DRYING}),
    S.DRYING: frozenset({S.IRONING}),
    S.IRONING: frozenset({S.QUALITY_CHECK}),
    # QA failure sends garments back to washing
    S.QUALITY_CHECK: frozenset({S.PACKAGING, S.WASHING}),
    S.PACKAGING: frozenset({S.READY, S.QUEUED_FOR_DELIVERY}),
    S.READY: frozenset({S.OUT_FOR_DELIVERY, S.QUEUED_FOR_DELIVERY, S.COLLECTED}),
    S.QUEUED_FOR_DELIVERY: frozenset({S.OUT_FOR_DELIVERY}),
    S.OUT_FOR_DELIVERY: frozenset({S.DELIVERED}),
    S.DELIVERED: frozenset(),
    S.COLLECTED: frozenset(),
}

TERMINAL_STATUSES: FrozenSet[OrderStatus] = frozenset({S.DELIVERED, S.COLLECTED})


@dataclass(frozen=True)
class StatusConfig:
    label: str
    color: str
    group: str
    requires_notification: bool = False

    @property
    def bg_color(self) -> str:
        return f"bg-{self.color}-100"

    @property
    def text_color(self) -> str:
        return f"text-{self.color}-800"

    @property
    def border_color(self) -> str:
        return f"border-{self.color}-300"


STATUS_CONFIG: Dict[OrderStatus, StatusConfig] = {
    S.RECEIVED: StatusConfig("Received", "gray", "Pending"),
    S.INSPECTION: StatusConfig("Inspection", "slate", "Pending"),
    S.QUEUED: StatusConfig("Queued", "gray", "Pending"),
    S.WASHING: StatusConfig("Washing", "blue", "Processing"),
    S.DRYING: StatusConfig("Drying", "cyan", "Processing"),
    S.IRONING: StatusConfig("Ironing", "purple", "Processing"),
    S.QUALITY_CHECK: StatusConfig("Quality Check", "indigo", "Processing"),
    S.PACKAGING: StatusConfig("Packaging", "violet", "Processing"),
    S.READY: StatusConfig("Ready", "green", "Ready", requires_notification=True),
    S.QUEUED_FOR_DELIVERY: StatusConfig("Queued for Delivery", "teal", "Ready"),
    S.OUT_FOR_DELIVERY: StatusConfig("Out for Delivery", "amber", "Ready", requires_notification=True),
    S.DELIVERED: StatusConfig("Delivered", "emerald", "Completed", requires_notification=True),
    S.COLLECTED: StatusConfig("Collected", "emerald", "Completed"),
}

StatusLike = Union[OrderStatus, str]


def as_status(value: StatusLike) -> OrderStatus:
    return value if isinstance(value, OrderStatus) else OrderStatus(value)


def can_transition(current: StatusLike, target: StatusLike) -> bool:
    return as_status(target) in VALID_TRANSITIONS[as_status(current)]


def valid_next_statuses(current: StatusLike) -> List[OrderStatus]:
    # declaration order, so callers get a stable list
    allowed = VALID_TRANSITIONS[as_status(current)]
    return [s for s in OrderStatus if s in allowed]


def is_terminal(status: StatusLike) -> bool:
    return as_status(status) in TERMINAL_STATUSES


def status_config(status: StatusLike) -> StatusConfig:
    return STATUS_CONFIG[as_status(status)]


def status_group(status: StatusLike) -> str:
    return status_config(status).group


def requires_notification(status: StatusLike) -> bool:
    return status_config(status).requires_notification


def all_statuses() -> List[OrderStatus]:
    return list(OrderStatus)


def stage_for_status(status: StatusLike) -> Optional[WorkstationStage]:
    try:
        return WorkstationStage(as_status(status).value)
    except ValueError:
        return None


def status_for_stage(stage: Union[WorkstationStage, str]) -> OrderStatus:
    return OrderStatus(WorkstationStage(stage).value)

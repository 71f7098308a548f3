# orderflow/models.py
from datetime import datetime
from enum import Enum
from typing import Annotated, Dict, List, Optional

from pydantic import AfterValidator, BaseModel, Field, computed_field, model_validator

from .statuses import OrderStatus, WorkstationStage, stage_for_status
from .utils import as_utc

Timestamp = Annotated[datetime, AfterValidator(as_utc)]

# Enums

class PaymentStatus(str, Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"


class PaymentMethod(str, Enum):
    CASH = "cash"
    MPESA = "mpesa"
    CARD = "card"
    CREDIT = "credit"
    CUSTOMER_CREDIT = "customer_credit"


SYNCHRONOUS_METHODS = frozenset({PaymentMethod.CASH, PaymentMethod.CREDIT})
DIGITAL_METHODS = frozenset({PaymentMethod.MPESA, PaymentMethod.CARD})


class PaymentType(str, Enum):
    PAYMENT = "payment"
    CREDIT_APPLIED = "credit_applied"
    ADVANCE = "advance"
    REFUND = "refund"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class BatchStatus(str, Enum):
    PENDING = "pending"
    IN_TRANSIT = "in_transit"
    RECEIVED = "received"


class RoutingStatus(str, Enum):
    PENDING = "pending"
    IN_TRANSIT = "in_transit"
    RECEIVED = "received"
    ASSIGNED = "assigned"
    PROCESSING = "processing"
    READY_FOR_RETURN = "ready_for_return"


class LegStatus(str, Enum):
    PENDING = "Pending"
    SCHEDULED = "Scheduled"
    COMPLETED = "Completed"


class DeliveryClassification(str, Enum):
    SMALL = "Small"
    BULK = "Bulk"


class ClassificationBasis(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"


class BranchType(str, Enum):
    MAIN = "main"
    SATELLITE = "satellite"


def derive_payment_status(paid_amount: int, total_amount: int) -> PaymentStatus:
    if paid_amount >= total_amount:
        return PaymentStatus.PAID
    if paid_amount > 0:
        return PaymentStatus.PARTIAL
    return PaymentStatus.PENDING


# Order aggregate

class StatusHistoryEntry(BaseModel):
    status: OrderStatus
    timestamp: Timestamp
    updated_by: str
    note: Optional[str] = None


class StaffHandler(BaseModel):
    uid: str
    name: str
    completed_at: Timestamp


class Garment(BaseModel):
    garment_id: str
    type: str = "Other"
    color: Optional[str] = None
    services: List[str] = Field(default_factory=list)
    price: int = Field(default=0, ge=0)
    status: Optional[OrderStatus] = None
    stage_handlers: Dict[str, List[StaffHandler]] = Field(default_factory=dict)
    stage_durations: Dict[str, int] = Field(default_factory=dict)  # seconds
    inspection_completed: bool = False
    inspection_completed_by: Optional[str] = None
    inspection_completed_at: Optional[Timestamp] = None
    condition_assessment: Optional[str] = None  # good | minor_issues | major_issues
    inspection_notes: Optional[str] = None


class Leg(BaseModel):
    address: Optional[str] = None
    scheduled_time: Optional[Timestamp] = None
    assigned_driver_id: Optional[str] = None
    completed_time: Optional[Timestamp] = None

    @computed_field
    @property
    def status(self) -> LegStatus:
        if self.completed_time is not None:
            return LegStatus.COMPLETED
        if self.scheduled_time is not None:
            return LegStatus.SCHEDULED
        return LegStatus.PENDING


class Order(BaseModel):
    order_id: str
    customer_id: str
    branch_id: str
    status: OrderStatus = OrderStatus.RECEIVED
    status_history: List[StatusHistoryEntry] = Field(default_factory=list)
    garments: List[Garment] = Field(default_factory=list)
    total_amount: int = Field(ge=0)
    paid_amount: int = Field(default=0, ge=0)
    payment_method: Optional[PaymentMethod] = None
    created_at: Timestamp
    updated_at: Optional[Timestamp] = None
    estimated_completion: Timestamp
    actual_completion: Optional[Timestamp] = None

    # routing
    routing_status: Optional[RoutingStatus] = None
    processing_branch_id: Optional[str] = None
    origin_branch_id: Optional[str] = None
    destination_branch_id: Optional[str] = None
    transfer_batch_id: Optional[str] = None
    routed_at: Optional[Timestamp] = None
    received_at_main_store_at: Optional[Timestamp] = None
    assigned_workstation_staff_id: Optional[str] = None
    sorting_completed_at: Optional[Timestamp] = None
    earliest_delivery_time: Optional[Timestamp] = None
    major_issues_detected: bool = False
    major_issues_reviewed_by: Optional[str] = None
    major_issues_approved_at: Optional[Timestamp] = None

    pickup: Optional[Leg] = None
    delivery: Optional[Leg] = None
    delivery_classification: Optional[DeliveryClassification] = None
    classification_basis: Optional[ClassificationBasis] = None

    version: int = 0

    @model_validator(mode="after")
    def _check_invariants(self):
        if self.paid_amount > self.total_amount:
            raise ValueError("paid_amount cannot exceed total_amount")
        if self.status_history and self.status_history[-1].status != self.status:
            raise ValueError("last status history entry must match status")
        return self

    @computed_field
    @property
    def payment_status(self) -> PaymentStatus:
        return derive_payment_status(self.paid_amount, self.total_amount)

    @computed_field
    @property
    def assigned_workstation_stage(self) -> Optional[WorkstationStage]:
        return stage_for_status(self.status)

    @property
    def balance_due(self) -> int:
        return self.total_amount - self.paid_amount

    def snapshot(self) -> "Order":
        return self.model_copy(deep=True)


class TransferBatch(BaseModel):
    batch_id: str
    satellite_branch_id: str
    main_store_branch_id: str
    order_ids: List[str] = Field(min_length=1)
    total_orders: int
    status: BatchStatus = BatchStatus.PENDING
    assigned_driver_id: Optional[str] = None
    created_by: str
    created_at: Timestamp
    dispatched_at: Optional[Timestamp] = None
    received_at: Optional[Timestamp] = None
    version: int = 0


class Transaction(BaseModel):
    transaction_id: str
    order_id: Optional[str] = None
    customer_id: str
    branch_id: Optional[str] = None
    amount: int = Field(gt=0)
    method: PaymentMethod
    payment_type: PaymentType = PaymentType.PAYMENT
    status: TransactionStatus
    timestamp: Timestamp
    processed_by: str
    gateway_ref: Optional[str] = None
    redirect_url: Optional[str] = None
    settled: bool = False  # completed amount already added to the order
    note: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    version: int = 0


class CustomerCredit(BaseModel):
    customer_id: str
    balance: int = Field(default=0, ge=0)
    last_credit_update: Optional[Timestamp] = None
    version: int = 0


class Driver(BaseModel):
    driver_id: str
    name: str
    branch_id: Optional[str] = None
    active: bool = True
    version: int = 0


class Branch(BaseModel):
    branch_id: str
    name: str
    branch_type: BranchType = BranchType.MAIN
    main_store_id: Optional[str] = None
    sorting_window_hours: int = 6
    version: int = 0


# Request bodies

class GarmentIn(BaseModel):
    type: str = "Other"
    color: Optional[str] = None
    services: List[str] = Field(default_factory=list)
    price: int = Field(default=0, ge=0)


class OrderIn(BaseModel):
    customer_id: str
    branch_id: str
    garments: List[GarmentIn] = Field(min_length=1)
    actor: str
    express: bool = False
    estimated_completion: Optional[Timestamp] = None


class TransitionIn(BaseModel):
    target_status: OrderStatus
    actor: str
    note: Optional[str] = None


class StageIn(BaseModel):
    stage: WorkstationStage
    actor: str
    staff_id: Optional[str] = None


class ActorIn(BaseModel):
    actor: str


class InspectionIn(BaseModel):
    assessment: str
    actor: str
    notes: Optional[str] = None


class StageDoneIn(BaseModel):
    stage: WorkstationStage
    staff_id: str
    staff_name: str
    started_at: Optional[Timestamp] = None


class BatchIn(BaseModel):
    satellite_branch_id: str
    main_store_branch_id: str
    order_ids: List[str] = Field(min_length=1)
    created_by: str


class DriverIn(BaseModel):
    driver_id: str


class PaymentIn(BaseModel):
    amount: int
    method: PaymentMethod = PaymentMethod.CASH
    processed_by: str
    amount_tendered: Optional[int] = None


class DigitalPaymentIn(BaseModel):
    amount: int
    method: PaymentMethod = PaymentMethod.MPESA
    processed_by: str
    phone: Optional[str] = None
    email: Optional[str] = None


class CreditApplyIn(BaseModel):
    processed_by: str
    amount: Optional[int] = Field(default=None, gt=0)


class CallbackIn(BaseModel):
    order_tracking_id: str


# Read models

class PaymentReceipt(BaseModel):
    transaction: Transaction
    order: Order
    change_due: int = 0


class PaymentHandle(BaseModel):
    transaction_id: str
    redirect_url: Optional[str] = None
    gateway_ref: Optional[str] = None


class CreditApplication(BaseModel):
    amount_applied: int
    new_balance: int
    remaining_due: int
    transaction: Transaction
    order: Order

# orderflow/errors.py
from typing import Iterable, Optional


class OrderflowError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": type(self).__name__, "detail": self.message}


class NotFound(OrderflowError):
    status_code = 404

    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"{collection} {doc_id} not found")
        self.collection = collection
        self.doc_id = doc_id


# Validation: recoverable locally, never retried

class ValidationError(OrderflowError):
    status_code = 400


class InvalidTransition(ValidationError):
    status_code = 422

    def __init__(self, current: str, target: str):
        super().__init__(f"cannot move order from '{current}' to '{target}'")
        self.current = current
        self.target = target


class InvalidAmount(ValidationError):
    def __init__(self, amount):
        super().__init__(f"invalid payment amount: {amount}")
        self.amount = amount


class AmountExceedsBalance(ValidationError):
    def __init__(self, amount, balance_due):
        super().__init__(f"payment amount ({amount}) exceeds balance due ({balance_due})")
        self.amount = amount
        self.balance_due = balance_due


class NotAssigned(ValidationError):
    pass


class AlreadyCompleted(ValidationError):
    pass


class AlreadyReceived(ValidationError):
    pass


class InvalidBatch(ValidationError):
    pass


class InvalidStage(ValidationError):
    pass


class MissingContact(ValidationError):
    pass


class InsufficientCredit(ValidationError):
    def __init__(self, customer_id: str, balance, requested=None):
        if requested is None:
            msg = f"customer {customer_id} has no credit balance"
        else:
            msg = f"customer {customer_id} credit balance ({balance}) is below {requested}"
        super().__init__(msg)
        self.customer_id = customer_id
        self.balance = balance
        self.requested = requested


# Concurrency

class ConflictError(OrderflowError):
    status_code = 409


class ConcurrentModification(ConflictError):
    def __init__(self, collection: str, doc_id: str, expected_version: int):
        super().__init__(
            f"{collection} {doc_id} changed since version {expected_version}; refresh and retry"
        )
        self.collection = collection
        self.doc_id = doc_id
        self.expected_version = expected_version


# External / gateway

class ExternalError(OrderflowError):
    status_code = 502


class GatewayError(ExternalError):
    pass


class ConfirmationTimeout(ExternalError):
    status_code = 504

    def __init__(self, transaction_id: str, waited_seconds: float):
        super().__init__(
            f"no confirmation for transaction {transaction_id} after {waited_seconds:.0f}s; "
            "reconcile manually"
        )
        self.transaction_id = transaction_id
        self.waited_seconds = waited_seconds


class PollCancelled(OrderflowError):
    status_code = 499


# Multi-entity

class PartialFailure(OrderflowError):
    status_code = 409

    def __init__(self, batch_id: str, failed: dict, succeeded: Optional[Iterable[str]] = None):
        super().__init__(
            f"batch {batch_id}: {len(failed)} order(s) could not be received: "
            + ", ".join(sorted(failed))
        )
        self.batch_id = batch_id
        self.failed = dict(failed)
        self.succeeded = list(succeeded or [])

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["batch_id"] = self.batch_id
        body["failed"] = self.failed
        body["succeeded"] = self.succeeded
        return body

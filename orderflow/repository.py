"""Typed access to the document store."""
from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel

from .errors import ConcurrentModification, NotFound
from .models import Branch, CustomerCredit, Driver, Order, Transaction, TransferBatch
from .store import Document, DocumentStore, Write

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)
T = TypeVar("T")

ORDERS = "orders"
BATCHES = "transfer_batches"
TRANSACTIONS = "transactions"
CREDITS = "customer_credits"
DRIVERS = "drivers"
BRANCHES = "branches"

_COLLECTIONS: Dict[type, tuple] = {
    Order: (ORDERS, "order_id"),
    TransferBatch: (BATCHES, "batch_id"),
    Transaction: (TRANSACTIONS, "transaction_id"),
    CustomerCredit: (CREDITS, "customer_id"),
    Driver: (DRIVERS, "driver_id"),
    Branch: (BRANCHES, "branch_id"),
}


def collection_of(model: BaseModel) -> str:
    return _COLLECTIONS[type(model)][0]


def _load(cls: Type[M], doc: Document) -> M:
    body = dict(doc.body)
    body["version"] = doc.version
    return cls.model_validate(body)


class Repository:
    def __init__(self, store: DocumentStore):
        self.store = store

    # generic

    def _get(self, cls: Type[M], doc_id: str) -> M:
        collection = _COLLECTIONS[cls][0]
        doc = self.store.get(collection, doc_id)
        if doc is None:
            raise NotFound(collection, doc_id)
        return _load(cls, doc)

    def _find(self, cls: Type[M], **match) -> List[M]:
        collection = _COLLECTIONS[cls][0]
        match = {k: (v.value if hasattr(v, "value") else v) for k, v in match.items()}
        return [_load(cls, d) for d in self.store.query(collection, match=match)]

    def ids(self, cls: type, prefix: str = "") -> List[str]:
        return self.store.doc_ids(_COLLECTIONS[cls][0], prefix)

    def commit(self, *models: M) -> List[M]:
        """Write all models atomically against the version each was read at.

        Returns copies carrying their new versions.
        """
        writes = []
        for model in models:
            collection, key = _COLLECTIONS[type(model)]
            body = model.model_dump(mode="json", exclude={"version"})
            writes.append(Write(collection, body[key], body, model.version))
        versions = self.store.commit(writes)
        return [m.model_copy(update={"version": v}) for m, v in zip(models, versions)]

    # orders

    def get_order(self, order_id: str) -> Order:
        return self._get(Order, order_id)

    def find_orders(self, **match) -> List[Order]:
        return self._find(Order, **match)

    # transfer batches

    def get_batch(self, batch_id: str) -> TransferBatch:
        return self._get(TransferBatch, batch_id)

    def find_batches(self, **match) -> List[TransferBatch]:
        return self._find(TransferBatch, **match)

    # transactions

    def get_transaction(self, transaction_id: str) -> Transaction:
        return self._get(Transaction, transaction_id)

    def find_transactions(self, **match) -> List[Transaction]:
        return self._find(Transaction, **match)

    def transaction_by_gateway_ref(self, gateway_ref: str) -> Optional[Transaction]:
        found = self.find_transactions(gateway_ref=gateway_ref)
        return found[0] if found else None

    # customer credit

    def get_credit(self, customer_id: str) -> CustomerCredit:
        try:
            return self._get(CustomerCredit, customer_id)
        except NotFound:
            # never written: zero balance at version 0
            return CustomerCredit(customer_id=customer_id)

    def get_customer_credit_balance(self, customer_id: str) -> int:
        return self.get_credit(customer_id).balance

    # drivers and branches

    def get_driver(self, driver_id: str) -> Driver:
        return self._get(Driver, driver_id)

    def driver_roster(self, branch_id: Optional[str] = None) -> List[Driver]:
        drivers = self._find(Driver, active=True)
        if branch_id is not None:
            drivers = [d for d in drivers if d.branch_id == branch_id]
        return sorted(drivers, key=lambda d: d.driver_id)

    def get_active_driver(self, driver_id: str) -> Driver:
        driver = self.get_driver(driver_id)
        if not driver.active:
            raise NotFound(DRIVERS, driver_id)
        return driver

    def get_branch(self, branch_id: str) -> Branch:
        return self._get(Branch, branch_id)


def retry_on_conflict(operation: Callable[[], T], attempts: int = 2) -> T:
    """Run operation, re-running it from a fresh read after a version conflict.

    operation must re-read whatever it writes. The last conflict propagates.
    """
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except ConcurrentModification as e:
            if attempt == attempts:
                raise
            logger.info("retrying after conflict on %s/%s", e.collection, e.doc_id)
    raise AssertionError("unreachable")

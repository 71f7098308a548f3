"""Transfer batches: satellite store -> main store shipments."""
from __future__ import annotations

import logging
from typing import Dict, List, Optional

from .errors import AlreadyReceived, InvalidBatch, NotAssigned, PartialFailure
from .models import BatchStatus, Order, RoutingStatus, TransferBatch
from .repository import Repository, retry_on_conflict
from .state_machine import transition
from .statuses import OrderStatus
from .utils import Clock, batch_id_prefix, next_sequence, utcnow

logger = logging.getLogger(__name__)


def _origin(order: Order) -> str:
    return order.origin_branch_id or order.branch_id


class TransferService:
    def __init__(self, repo: Repository, clock: Clock = utcnow):
        self.repo = repo
        self.clock = clock

    def generate_batch_id(self, satellite_branch_id: str) -> str:
        prefix = batch_id_prefix(satellite_branch_id, self.clock().date())
        return f"{prefix}{next_sequence(self.repo.ids(TransferBatch, prefix), prefix):04d}"

    def create_batch(
        self,
        satellite_branch_id: str,
        main_store_branch_id: str,
        order_ids: List[str],
        created_by: str,
    ) -> TransferBatch:
        if not order_ids:
            raise InvalidBatch("cannot create an empty transfer batch")
        if len(set(order_ids)) != len(order_ids):
            raise InvalidBatch("transfer batch lists an order more than once")
        if satellite_branch_id == main_store_branch_id:
            raise InvalidBatch("satellite and main store must differ")

        def attempt() -> TransferBatch:
            orders = [self.repo.get_order(oid) for oid in order_ids]
            for order in orders:
                if _origin(order) != satellite_branch_id:
                    raise InvalidBatch(
                        f"order {order.order_id} originates at {_origin(order)}, not {satellite_branch_id}"
                    )
                if order.transfer_batch_id:
                    raise InvalidBatch(
                        f"order {order.order_id} already belongs to batch {order.transfer_batch_id}"
                    )

            now = self.clock()
            batch = TransferBatch(
                batch_id=self.generate_batch_id(satellite_branch_id),
                satellite_branch_id=satellite_branch_id,
                main_store_branch_id=main_store_branch_id,
                order_ids=list(order_ids),
                total_orders=len(order_ids),
                created_by=created_by,
                created_at=now,
            )
            for order in orders:
                order.transfer_batch_id = batch.batch_id
                order.origin_branch_id = satellite_branch_id
                order.destination_branch_id = main_store_branch_id
                order.routing_status = RoutingStatus.PENDING
                order.updated_at = now
            saved = self.repo.commit(batch, *orders)
            return saved[0]

        batch = retry_on_conflict(attempt)
        logger.info("batch %s created with %d orders", batch.batch_id, batch.total_orders)
        return batch

    def get(self, batch_id: str) -> TransferBatch:
        return self.repo.get_batch(batch_id)

    def assign_driver(self, batch_id: str, driver_id: str) -> TransferBatch:
        self.repo.get_active_driver(driver_id)

        def attempt() -> TransferBatch:
            batch = self.repo.get_batch(batch_id)
            if batch.status != BatchStatus.PENDING:
                raise InvalidBatch(f"batch {batch_id} is {batch.status.value}; driver can no longer change")
            batch.assigned_driver_id = driver_id
            (saved,) = self.repo.commit(batch)
            return saved

        return retry_on_conflict(attempt)

    def dispatch(self, batch_id: str) -> TransferBatch:
        def attempt() -> TransferBatch:
            batch = self.repo.get_batch(batch_id)
            if not batch.assigned_driver_id:
                raise NotAssigned(f"batch {batch_id} has no driver assigned")
            if batch.status != BatchStatus.PENDING:
                raise InvalidBatch(f"batch {batch_id} is already {batch.status.value}")
            now = self.clock()
            batch.status = BatchStatus.IN_TRANSIT
            batch.dispatched_at = now
            orders = [self.repo.get_order(oid) for oid in batch.order_ids]
            for order in orders:
                order.routing_status = RoutingStatus.IN_TRANSIT
                order.updated_at = now
            saved = self.repo.commit(batch, *orders)
            return saved[0]

        batch = retry_on_conflict(attempt)
        logger.info("batch %s dispatched with driver %s", batch_id, batch.assigned_driver_id)
        return batch

    def receive(self, batch_id: str, actor: str) -> TransferBatch:
        """Move every order into inspection at the main store, then close the batch.

        Orders are written one at a time. If any of them fails the batch stays
        in transit and PartialFailure lists the failures; the orders that did
        move keep their new stage, and receiving again picks up the rest.
        """
        batch = self.repo.get_batch(batch_id)
        if batch.status != BatchStatus.IN_TRANSIT:
            raise AlreadyReceived(f"batch {batch_id} is {batch.status.value}, not in transit")

        failed: Dict[str, str] = {}
        succeeded: List[str] = []
        for order_id in batch.order_ids:
            try:
                self._receive_order(order_id, batch, actor)
                succeeded.append(order_id)
            except Exception as e:
                reason = getattr(e, "message", None) or str(e) or type(e).__name__
                logger.warning("batch %s: order %s not received: %s", batch_id, order_id, reason)
                failed[order_id] = reason

        if failed:
            raise PartialFailure(batch_id, failed, succeeded)

        def close() -> TransferBatch:
            current = self.repo.get_batch(batch_id)
            if current.status != BatchStatus.IN_TRANSIT:
                raise AlreadyReceived(f"batch {batch_id} is {current.status.value}, not in transit")
            current.status = BatchStatus.RECEIVED
            current.received_at = self.clock()
            (saved,) = self.repo.commit(current)
            return saved

        batch = retry_on_conflict(close)
        logger.info("batch %s received by %s (%d orders)", batch_id, actor, batch.total_orders)
        return batch

    def _receive_order(self, order_id: str, batch: TransferBatch, actor: str) -> Order:
        def attempt() -> Order:
            order = self.repo.get_order(order_id)
            if order.status == OrderStatus.INSPECTION:
                if order.processing_branch_id == batch.main_store_branch_id:
                    return order
                raise AlreadyReceived(
                    f"order {order_id} is already in inspection at {order.processing_branch_id or order.branch_id}"
                )
            now = self.clock()
            updated = transition(
                order, OrderStatus.INSPECTION, actor,
                note=f"Received at {batch.main_store_branch_id} via {batch.batch_id}", now=now,
            )
            updated.processing_branch_id = batch.main_store_branch_id
            updated.routing_status = RoutingStatus.RECEIVED
            updated.received_at_main_store_at = now
            (saved,) = self.repo.commit(updated)
            return saved

        return retry_on_conflict(attempt)

    # queries

    def by_satellite(self, satellite_branch_id: str, limit: int = 50) -> List[TransferBatch]:
        return self._newest(self.repo.find_batches(satellite_branch_id=satellite_branch_id), limit)

    def by_main_store(self, main_store_branch_id: str, limit: int = 50) -> List[TransferBatch]:
        return self._newest(self.repo.find_batches(main_store_branch_id=main_store_branch_id), limit)

    def by_driver(self, driver_id: str, limit: int = 20) -> List[TransferBatch]:
        return self._newest(self.repo.find_batches(assigned_driver_id=driver_id), limit)

    def by_status(self, status: BatchStatus, branch_id: Optional[str] = None, limit: int = 50) -> List[TransferBatch]:
        batches = self.repo.find_batches(status=status)
        if branch_id is not None:
            batches = [b for b in batches if branch_id in (b.satellite_branch_id, b.main_store_branch_id)]
        return self._newest(batches, limit)

    def pending(self, limit: int = 20) -> List[TransferBatch]:
        return self.by_status(BatchStatus.PENDING, limit=limit)

    @staticmethod
    def _newest(batches: List[TransferBatch], limit: int) -> List[TransferBatch]:
        return sorted(batches, key=lambda b: b.created_at, reverse=True)[:limit]

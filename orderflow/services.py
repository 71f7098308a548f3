# orderflow/services.py
import logging
from dataclasses import dataclass
from typing import Optional

from .config import Settings
from .db import PostgresStore
from .gateway import FakeGateway, PaymentGateway
from .legs import LegService
from .payments import PaymentService
from .repository import Repository
from .state_machine import Notifier, OrderLifecycle
from .store import DocumentStore, MemoryStore
from .transfers import TransferService
from .utils import Clock, utcnow
from .workstation import WorkstationService

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    store: DocumentStore
    repo: Repository
    lifecycle: OrderLifecycle
    transfers: TransferService
    legs: LegService
    payments: PaymentService
    workstation: WorkstationService
    clock: Clock = utcnow

    def close(self) -> None:
        close = getattr(self.store, "close", None)
        if close is not None:
            close()


def open_store(settings: Settings) -> DocumentStore:
    if settings.store == "postgres":
        store = PostgresStore(settings)
        store.ensure_schema()
        return store
    if settings.store != "memory":
        raise ValueError(f"unknown store: {settings.store}")
    return MemoryStore()


def build_services(
    settings: Optional[Settings] = None,
    store: Optional[DocumentStore] = None,
    gateway: Optional[PaymentGateway] = None,
    clock: Clock = utcnow,
    notifier: Optional[Notifier] = None,
) -> Services:
    settings = settings or Settings.from_env()
    store = store if store is not None else open_store(settings)
    if gateway is None:
        logger.warning("no payment gateway configured; using the scripted FakeGateway")
        gateway = FakeGateway()
    repo = Repository(store)
    return Services(
        settings=settings,
        store=store,
        repo=repo,
        lifecycle=OrderLifecycle(repo, clock, notifier),
        transfers=TransferService(repo, clock),
        legs=LegService(repo, clock),
        payments=PaymentService(repo, gateway, clock, settings),
        workstation=WorkstationService(repo, clock),
        clock=clock,
    )

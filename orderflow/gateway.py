# orderflow/gateway.py
import itertools
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol

from .errors import GatewayError
from .models import PaymentMethod, TransactionStatus


@dataclass(frozen=True)
class Contact:
    phone: Optional[str] = None
    email: Optional[str] = None


@dataclass(frozen=True)
class GatewayInitiation:
    tracking_id: str
    redirect_url: str


@dataclass(frozen=True)
class GatewayStatus:
    status: TransactionStatus
    description: str = ""
    confirmation_code: Optional[str] = None


class PaymentGateway(Protocol):
    def initiate(self, order_id: str, amount: int, method: PaymentMethod, contact: Contact,
                 description: str) -> GatewayInitiation: ...

    def check_status(self, tracking_id: str) -> GatewayStatus: ...


class FakeGateway:
    """Scripted gateway for development and tests.

    Each tracking id answers `pending` until a status is scripted for it;
    `script` queues the answers returned by successive checks.
    """

    def __init__(self, base_url: str = "https://pay.example.test/checkout"):
        self.base_url = base_url
        self._seq = itertools.count(1)
        self._lock = threading.Lock()
        self._scripts: Dict[str, List[object]] = {}
        self.initiated: List[dict] = []
        self.checks: Dict[str, int] = {}
        self.fail_next_initiate: Optional[str] = None

    def initiate(self, order_id, amount, method, contact, description) -> GatewayInitiation:
        with self._lock:
            if self.fail_next_initiate:
                msg, self.fail_next_initiate = self.fail_next_initiate, None
                raise GatewayError(msg)
            tracking_id = f"PSP-{next(self._seq):06d}"
            self.initiated.append({
                "tracking_id": tracking_id, "order_id": order_id, "amount": amount,
                "method": PaymentMethod(method).value, "phone": contact.phone, "email": contact.email,
                "description": description,
            })
        return GatewayInitiation(tracking_id, f"{self.base_url}/{tracking_id}")

    def script(self, tracking_id: str, *answers) -> None:
        """Queue answers: TransactionStatus values or exceptions to raise."""
        with self._lock:
            self._scripts.setdefault(tracking_id, []).extend(answers)

    def settle(self, tracking_id: str, status: TransactionStatus) -> None:
        with self._lock:
            self._scripts[tracking_id] = [status]

    def check_status(self, tracking_id: str) -> GatewayStatus:
        with self._lock:
            self.checks[tracking_id] = self.checks.get(tracking_id, 0) + 1
            queue = self._scripts.get(tracking_id, [])
            # the last answer sticks
            answer = queue.pop(0) if len(queue) > 1 else (queue[0] if queue else TransactionStatus.PENDING)
        if isinstance(answer, Exception):
            raise answer
        status = TransactionStatus(answer)
        code = f"C{tracking_id[-6:]}" if status == TransactionStatus.COMPLETED else None
        return GatewayStatus(status, description=status.value, confirmation_code=code)

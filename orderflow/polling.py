"""Payment confirmation polling with exponential backoff.

First check after `initial` seconds, each later delay doubled up to `cap`,
and no check after `timeout` seconds of wall-clock time. The wait is a
threading.Event, so `cancel()` stops a poll mid-wait; tests inject their own
clock and wait function instead of sleeping.
"""
import logging
import threading
import time
from typing import Callable, Iterator, Optional

from .errors import ConfirmationTimeout, NotFound, PollCancelled, ValidationError
from .models import TransactionStatus

logger = logging.getLogger(__name__)

SETTLED = frozenset({TransactionStatus.COMPLETED, TransactionStatus.FAILED})


def backoff_delays(initial: float = 5.0, cap: float = 30.0) -> Iterator[float]:
    delay = initial
    while True:
        yield min(delay, cap)
        delay = min(delay * 2, cap)


class PaymentPoller:
    def __init__(
        self,
        check: Callable[[str], TransactionStatus],
        initial: float = 5.0,
        cap: float = 30.0,
        timeout: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        wait: Optional[Callable[[float], bool]] = None,
    ):
        self.check = check
        self.initial = initial
        self.cap = cap
        self.timeout = timeout
        self.clock = clock
        self._cancel = threading.Event()
        # returns True when woken by cancel()
        self._wait = wait or self._cancel.wait
        self._thread: Optional[threading.Thread] = None
        self._result: Optional[TransactionStatus] = None
        self._error: Optional[BaseException] = None
        self.checks = 0

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def poll_until_settled(self, transaction_id: str) -> TransactionStatus:
        started = self.clock()
        for delay in backoff_delays(self.initial, self.cap):
            remaining = self.timeout - (self.clock() - started)
            if remaining <= 0:
                logger.warning("gave up on %s after %d checks", transaction_id, self.checks)
                raise ConfirmationTimeout(transaction_id, self.clock() - started)
            woken = self._wait(min(delay, remaining))
            if woken or self._cancel.is_set():
                logger.info("polling of %s cancelled", transaction_id)
                raise PollCancelled(f"polling of {transaction_id} cancelled")

            self.checks += 1
            try:
                status = TransactionStatus(self.check(transaction_id))
            except (NotFound, ValidationError):
                # asking again will not change the answer
                logger.error("status check for %s cannot succeed", transaction_id)
                raise
            except Exception:
                # a failed check is not a failed payment; keep to the schedule
                logger.exception("status check %d for %s failed", self.checks, transaction_id)
                continue
            if status in SETTLED:
                logger.info("%s settled as %s after %d checks", transaction_id, status.value, self.checks)
                return status
        raise AssertionError("unreachable")

    # background use

    def start(self, transaction_id: str,
              on_done: Optional[Callable[[Optional[TransactionStatus], Optional[BaseException]], None]] = None) -> None:
        def run() -> None:
            try:
                self._result = self.poll_until_settled(transaction_id)
            except Exception as e:
                self._error = e
            if on_done is not None:
                on_done(self._result, self._error)

        self._thread = threading.Thread(target=run, name=f"poll-{transaction_id}", daemon=True)
        self._thread.start()

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def result(self, timeout: Optional[float] = None) -> TransactionStatus:
        if self._thread is None:
            raise RuntimeError("poller was not started")
        self._thread.join(timeout)
        if self._thread.is_alive():
            raise TimeoutError("poller still running")
        if self._error is not None:
            raise self._error
        return self._result

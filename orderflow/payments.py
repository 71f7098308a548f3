"""Payment reconciliation.

Cash and on-account credit settle immediately. M-Pesa and card go through the
gateway: initiation leaves a pending transaction, and the order's paid amount
only moves once the gateway confirms. Every write that touches more than one
document (order, transaction, customer credit) is a single atomic commit.
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional

from .config import Settings
from .errors import (
    AmountExceedsBalance,
    ConfirmationTimeout,
    InsufficientCredit,
    InvalidAmount,
    MissingContact,
    NotFound,
    ValidationError,
)
from .gateway import Contact, GatewayStatus, PaymentGateway
from .models import (
    DIGITAL_METHODS,
    SYNCHRONOUS_METHODS,
    CreditApplication,
    Order,
    PaymentHandle,
    PaymentMethod,
    PaymentReceipt,
    PaymentType,
    Transaction,
    TransactionStatus,
)
from .polling import PaymentPoller
from .repository import TRANSACTIONS, Repository, retry_on_conflict
from .utils import Clock, transaction_id, utcnow

logger = logging.getLogger(__name__)

MPESA_MIN, MPESA_MAX = 10, 500000
CARD_MIN = 10

CREDIT_PAYMENT_TYPES = (PaymentType.ADVANCE, PaymentType.CREDIT_APPLIED, PaymentType.REFUND)


def available_payment_methods(amount: int) -> Dict[str, bool]:
    return {
        "cash": True,
        "mpesa": MPESA_MIN <= amount <= MPESA_MAX,
        "card": amount >= CARD_MIN,
        "credit": True,
    }


def check_amount(order: Order, amount: int) -> None:
    if amount is None or amount <= 0:
        raise InvalidAmount(amount)
    if amount > order.balance_due:
        raise AmountExceedsBalance(amount, order.balance_due)


class PaymentService:
    def __init__(self, repo: Repository, gateway: PaymentGateway, clock: Clock = utcnow,
                 settings: Optional[Settings] = None):
        self.repo = repo
        self.gateway = gateway
        self.clock = clock
        self.settings = settings or Settings()

    def _new_transaction(self, **fields) -> Transaction:
        now = self.clock()
        return Transaction(transaction_id=transaction_id(now), timestamp=now, **fields)

    # synchronous

    def record_payment(self, order_id: str, amount: int, method: PaymentMethod, processed_by: str,
                       amount_tendered: Optional[int] = None) -> PaymentReceipt:
        method = PaymentMethod(method)
        if method not in SYNCHRONOUS_METHODS:
            raise ValidationError(f"{method.value} payments must be initiated through the gateway")
        if amount_tendered is not None and amount_tendered < amount:
            raise InvalidAmount(amount_tendered)

        def attempt() -> PaymentReceipt:
            order = self.repo.get_order(order_id)
            check_amount(order, amount)
            txn = self._new_transaction(
                order_id=order_id, customer_id=order.customer_id, branch_id=order.branch_id,
                amount=amount, method=method, status=TransactionStatus.COMPLETED,
                processed_by=processed_by, settled=True,
            )
            order.paid_amount += amount
            order.payment_method = method
            order.updated_at = txn.timestamp
            writes = [order, txn]
            if method == PaymentMethod.CREDIT:
                credit = self.repo.get_credit(order.customer_id)
                if credit.balance < amount:
                    raise InsufficientCredit(order.customer_id, credit.balance, amount)
                credit.balance -= amount
                credit.last_credit_update = txn.timestamp
                writes.append(credit)
            saved = self.repo.commit(*writes)
            change = amount_tendered - amount if amount_tendered is not None else 0
            return PaymentReceipt(order=saved[0], transaction=saved[1], change_due=change)

        try:
            receipt = retry_on_conflict(attempt)
        except ValidationError as e:
            logger.info("payment on %s rejected: %s", order_id, e.message)
            raise
        logger.info("%s payment of %s recorded on %s (%s)", method.value, amount, order_id,
                    receipt.order.payment_status.value)
        return receipt

    # asynchronous

    def initiate_payment(self, order_id: str, amount: int, method: PaymentMethod, contact: Contact,
                         processed_by: str) -> PaymentHandle:
        method = PaymentMethod(method)
        if method not in DIGITAL_METHODS:
            raise ValidationError(f"{method.value} is not a gateway payment method")
        if method == PaymentMethod.MPESA and not contact.phone:
            raise MissingContact("M-Pesa payments need a phone number")
        if method == PaymentMethod.CARD and not (contact.phone or contact.email):
            raise MissingContact("card payments need a phone number or email")

        order = self.repo.get_order(order_id)
        check_amount(order, amount)
        try:
            started = self.gateway.initiate(order_id, amount, method, contact,
                                            description=f"Order {order_id}")
        except Exception:
            logger.exception("gateway initiation for %s failed", order_id)
            raise

        metadata = {k: v for k, v in (("phone", contact.phone), ("email", contact.email)) if v}
        txn = self._new_transaction(
            order_id=order_id, customer_id=order.customer_id, branch_id=order.branch_id,
            amount=amount, method=method, status=TransactionStatus.PENDING,
            processed_by=processed_by, gateway_ref=started.tracking_id,
            redirect_url=started.redirect_url, metadata=metadata,
        )
        (txn,) = self.repo.commit(txn)
        logger.info("%s payment of %s initiated on %s as %s", method.value, amount, order_id,
                    txn.transaction_id)
        return PaymentHandle(transaction_id=txn.transaction_id, redirect_url=started.redirect_url,
                             gateway_ref=started.tracking_id)

    def confirm_payment(self, transaction_id: str) -> Transaction:
        """Ask the gateway once and settle the transaction if it has an answer."""
        txn = self.repo.get_transaction(transaction_id)
        if txn.status != TransactionStatus.PENDING or not txn.gateway_ref:
            return txn
        answer = self.gateway.check_status(txn.gateway_ref)
        if answer.status == TransactionStatus.PENDING:
            return txn
        return self._settle(transaction_id, answer)

    def check_payment_status(self, transaction_id: str) -> TransactionStatus:
        return self.confirm_payment(transaction_id).status

    def _settle(self, transaction_id: str, answer: GatewayStatus) -> Transaction:
        def attempt() -> Transaction:
            txn = self.repo.get_transaction(transaction_id)
            if txn.status != TransactionStatus.PENDING:
                # another poller or the callback got here first
                return txn
            txn.status = answer.status
            txn.metadata["gateway_response"] = answer.description
            if answer.confirmation_code:
                txn.metadata["confirmation_code"] = answer.confirmation_code
            if answer.status != TransactionStatus.COMPLETED:
                (saved,) = self.repo.commit(txn)
                return saved

            order = self.repo.get_order(txn.order_id)
            now = self.clock()
            applied = min(txn.amount, order.balance_due)
            excess = txn.amount - applied
            txn.settled = True
            if not excess:
                order.paid_amount += applied
                order.payment_method = txn.method
                order.updated_at = now
                saved = self.repo.commit(txn, order)
                return saved[0]

            # landed after the order was settled another way: only `applied`
            # stays on the order, the rest becomes an advance on the account
            credit = self.repo.get_credit(order.customer_id)
            credit.balance += excess
            credit.last_credit_update = now
            txn.metadata["gateway_amount"] = str(txn.amount)
            txn.metadata["excess_to_credit"] = str(excess)
            if not applied:
                txn.order_id = None
                txn.payment_type = PaymentType.ADVANCE
                txn.note = f"Advance payment - order {order.order_id} was already paid"
                saved = self.repo.commit(txn, credit)
                return saved[0]

            advance = self._new_transaction(
                customer_id=order.customer_id, branch_id=order.branch_id, amount=excess,
                method=txn.method, payment_type=PaymentType.ADVANCE,
                status=TransactionStatus.COMPLETED, processed_by=txn.processed_by,
                settled=True,
                note=f"Advance payment - overpayment on order {order.order_id}",
            )
            txn.amount = applied
            txn.metadata["advance_transaction_id"] = advance.transaction_id
            order.paid_amount += applied
            order.payment_method = txn.method
            order.updated_at = now
            saved = self.repo.commit(txn, order, credit, advance)
            return saved[0]

        txn = retry_on_conflict(attempt)
        logger.info("transaction %s settled as %s", transaction_id, txn.status.value)
        return txn

    def handle_gateway_callback(self, gateway_ref: str) -> Transaction:
        txn = self.repo.transaction_by_gateway_ref(gateway_ref)
        if txn is None:
            logger.error("callback for unknown gateway reference %s", gateway_ref)
            raise NotFound(TRANSACTIONS, gateway_ref)
        return self.confirm_payment(txn.transaction_id)

    def make_poller(self, **overrides) -> PaymentPoller:
        options = dict(
            initial=self.settings.poll_initial_seconds,
            cap=self.settings.poll_max_delay_seconds,
            timeout=self.settings.poll_timeout_seconds,
        )
        options.update(overrides)
        return PaymentPoller(self.check_payment_status, **options)

    def poll_until_settled(self, transaction_id: str, poller: Optional[PaymentPoller] = None) -> TransactionStatus:
        poller = poller or self.make_poller()
        try:
            return poller.poll_until_settled(transaction_id)
        except ConfirmationTimeout:
            self._flag_timeout(transaction_id)
            raise

    def _flag_timeout(self, transaction_id: str) -> None:
        def attempt() -> None:
            txn = self.repo.get_transaction(transaction_id)
            if txn.status != TransactionStatus.PENDING:
                return
            txn.metadata["confirmation_timeout_at"] = self.clock().isoformat()
            self.repo.commit(txn)

        retry_on_conflict(attempt)

    def pending_transactions(self) -> List[Transaction]:
        return [t for t in self.repo.find_transactions(status=TransactionStatus.PENDING) if t.gateway_ref]

    def reconcile_pending(self) -> Dict[str, TransactionStatus]:
        """One confirmation pass over every pending gateway transaction."""
        results = {}
        for txn in self.pending_transactions():
            try:
                results[txn.transaction_id] = self.confirm_payment(txn.transaction_id).status
            except Exception:
                logger.exception("reconciliation of %s failed", txn.transaction_id)
                results[txn.transaction_id] = TransactionStatus.PENDING
        return results

    def retry_payment(self, transaction_id: str, contact: Optional[Contact] = None,
                      processed_by: Optional[str] = None) -> PaymentHandle:
        original = self.repo.get_transaction(transaction_id)
        if original.status != TransactionStatus.FAILED:
            raise ValidationError("only failed transactions can be retried")
        if original.method not in DIGITAL_METHODS:
            raise ValidationError(f"retry is not supported for {original.method.value} payments")
        contact = contact or Contact(phone=original.metadata.get("phone"), email=original.metadata.get("email"))
        return self.initiate_payment(original.order_id, original.amount, original.method, contact,
                                     processed_by or original.processed_by)

    def transactions_for_order(self, order_id: str) -> List[Transaction]:
        return sorted(self.repo.find_transactions(order_id=order_id), key=lambda t: t.timestamp)

    # customer credit

    def apply_customer_credit(self, order_id: str, processed_by: str,
                              amount: Optional[int] = None) -> CreditApplication:
        def attempt() -> CreditApplication:
            order = self.repo.get_order(order_id)
            credit = self.repo.get_credit(order.customer_id)
            if credit.balance <= 0:
                raise InsufficientCredit(order.customer_id, credit.balance)
            if amount is not None and amount <= 0:
                raise InvalidAmount(amount)
            if order.balance_due <= 0:
                raise AmountExceedsBalance(amount or 0, order.balance_due)
            requested = order.balance_due if amount is None else amount
            applied = min(requested, order.balance_due, credit.balance)
            txn = self._new_transaction(
                order_id=order_id, customer_id=order.customer_id, branch_id=order.branch_id,
                amount=applied, method=PaymentMethod.CUSTOMER_CREDIT,
                payment_type=PaymentType.CREDIT_APPLIED, status=TransactionStatus.COMPLETED,
                processed_by=processed_by, settled=True, note="Credit applied from customer balance",
            )
            credit.balance -= applied
            credit.last_credit_update = txn.timestamp
            order.paid_amount += applied
            order.payment_method = order.payment_method or PaymentMethod.CUSTOMER_CREDIT
            order.updated_at = txn.timestamp
            saved_order, saved_credit, saved_txn = self.repo.commit(order, credit, txn)
            return CreditApplication(
                amount_applied=applied, new_balance=saved_credit.balance,
                remaining_due=saved_order.balance_due, transaction=saved_txn, order=saved_order,
            )

        result = retry_on_conflict(attempt)
        logger.info("applied %s credit to %s, %s still due", result.amount_applied, order_id,
                    result.remaining_due)
        return result

    def add_customer_credit(self, customer_id: str, amount: int, processed_by: str,
                            method: PaymentMethod = PaymentMethod.MPESA, branch_id: Optional[str] = None,
                            note: Optional[str] = None) -> Transaction:
        return self._credit_in(customer_id, amount, processed_by, method, PaymentType.ADVANCE,
                               branch_id=branch_id, note=note or "Advance payment - credit added to account")

    def refund_to_customer_credit(self, customer_id: str, amount: int, processed_by: str, reason: str,
                                  order_id: Optional[str] = None) -> Transaction:
        return self._credit_in(customer_id, amount, processed_by, PaymentMethod.CUSTOMER_CREDIT,
                               PaymentType.REFUND, order_id=order_id, note=f"Refund: {reason}")

    def _credit_in(self, customer_id, amount, processed_by, method, payment_type, **fields) -> Transaction:
        if amount is None or amount <= 0:
            raise InvalidAmount(amount)

        def attempt() -> Transaction:
            credit = self.repo.get_credit(customer_id)
            txn = self._new_transaction(
                customer_id=customer_id, amount=amount, method=method, payment_type=payment_type,
                status=TransactionStatus.COMPLETED, processed_by=processed_by, **fields,
            )
            credit.balance += amount
            credit.last_credit_update = txn.timestamp
            _, saved = self.repo.commit(credit, txn)
            return saved

        txn = retry_on_conflict(attempt)
        logger.info("%s of %s credited to customer %s", payment_type.value, amount, customer_id)
        return txn

    def credit_balance(self, customer_id: str) -> int:
        return self.repo.get_customer_credit_balance(customer_id)

    def credit_history(self, customer_id: str, limit: int = 100) -> List[Transaction]:
        txns = [t for t in self.repo.find_transactions(customer_id=customer_id)
                if t.payment_type in CREDIT_PAYMENT_TYPES]
        return sorted(txns, key=lambda t: t.timestamp, reverse=True)[:limit]

    def payment_split(self, customer_id: str, amount: int) -> Dict[str, object]:
        balance = self.credit_balance(customer_id)
        credit_amount = min(balance, amount)
        return {
            "credit_amount": credit_amount,
            "remaining_amount": amount - credit_amount,
            "has_credit": balance > 0,
        }

"""Unit tests for payment reconciliation and customer credit."""
import threading

import pytest

from orderflow.errors import (
    AmountExceedsBalance,
    ConcurrentModification,
    ConfirmationTimeout,
    GatewayError,
    InsufficientCredit,
    InvalidAmount,
    MissingContact,
    NotFound,
    ValidationError,
)
from orderflow.gateway import Contact
from orderflow.models import PaymentMethod, PaymentStatus, PaymentType, TransactionStatus
from orderflow.payments import available_payment_methods

PHONE = Contact(phone="+254712345678")


class FakeTimer:
    def __init__(self):
        self.t = 0.0
        self.waits = []

    def now(self):
        return self.t

    def wait(self, seconds):
        self.waits.append(seconds)
        self.t += seconds
        return False


@pytest.fixture
def payments(services):
    return services.payments


class TestRecordPayment:
    def test_partial_then_full(self, payments, make_order):
        order = make_order(total=3000)
        first = payments.record_payment(order.order_id, 1200, PaymentMethod.CASH, "cashier-1")
        assert first.order.paid_amount == 1200
        assert first.order.payment_status == PaymentStatus.PARTIAL
        assert first.order.balance_due == 1800
        assert first.transaction.transaction_id.startswith("TXN-")

        second = payments.record_payment(order.order_id, 1800, "cash", "cashier-1")
        assert second.order.payment_status == PaymentStatus.PAID

        with pytest.raises(AmountExceedsBalance) as e:
            payments.record_payment(order.order_id, 100, "cash", "cashier-1")
        assert e.value.balance_due == 0

    @pytest.mark.parametrize("amount", [0, -50])
    def test_non_positive_amount(self, payments, make_order, amount):
        order = make_order()
        with pytest.raises(InvalidAmount):
            payments.record_payment(order.order_id, amount, "cash", "cashier-1")
        assert payments.transactions_for_order(order.order_id) == []

    def test_change_due(self, payments, make_order):
        order = make_order(total=1500)
        receipt = payments.record_payment(order.order_id, 1500, "cash", "cashier-1", amount_tendered=2000)
        assert receipt.change_due == 500

    def test_digital_method_rejected(self, payments, make_order):
        order = make_order()
        with pytest.raises(ValidationError):
            payments.record_payment(order.order_id, 100, PaymentMethod.MPESA, "cashier-1")

    def test_unknown_order(self, payments):
        with pytest.raises(NotFound):
            payments.record_payment("ORD-NOPE", 100, "cash", "cashier-1")

    def test_on_account_credit(self, payments, make_order):
        order = make_order(total=1000)
        with pytest.raises(InsufficientCredit):
            payments.record_payment(order.order_id, 300, PaymentMethod.CREDIT, "cashier-1")
        payments.add_customer_credit("CUST-1", 500, "cashier-1")
        payments.record_payment(order.order_id, 300, PaymentMethod.CREDIT, "cashier-1")
        assert payments.credit_balance("CUST-1") == 200


class TestGatewayPayments:
    def test_mpesa_needs_phone(self, payments, make_order):
        order = make_order()
        with pytest.raises(MissingContact):
            payments.initiate_payment(order.order_id, 500, PaymentMethod.MPESA, Contact(), "cashier-1")

    def test_card_accepts_email(self, payments, make_order):
        order = make_order()
        handle = payments.initiate_payment(order.order_id, 500, PaymentMethod.CARD,
                                           Contact(email="a@example.com"), "cashier-1")
        assert handle.redirect_url.endswith(handle.gateway_ref)

    def test_initiate_leaves_order_untouched(self, payments, make_order, repo):
        order = make_order(total=3000)
        handle = payments.initiate_payment(order.order_id, 3000, PaymentMethod.MPESA, PHONE, "cashier-1")
        txn = repo.get_transaction(handle.transaction_id)
        assert txn.status == TransactionStatus.PENDING
        assert txn.metadata["phone"] == PHONE.phone
        assert repo.get_order(order.order_id).paid_amount == 0

    def test_confirmation_settles_once(self, payments, make_order, gateway, repo):
        order = make_order(total=3000)
        handle = payments.initiate_payment(order.order_id, 1000, PaymentMethod.MPESA, PHONE, "cashier-1")
        gateway.settle(handle.gateway_ref, TransactionStatus.COMPLETED)

        assert payments.check_payment_status(handle.transaction_id) == TransactionStatus.COMPLETED
        assert payments.check_payment_status(handle.transaction_id) == TransactionStatus.COMPLETED
        assert repo.get_order(order.order_id).paid_amount == 1000
        # settled transactions are not sent back to the gateway
        assert gateway.checks[handle.gateway_ref] == 1

    def test_failed_payment_and_retry(self, payments, make_order, gateway, repo):
        order = make_order(total=3000)
        handle = payments.initiate_payment(order.order_id, 3000, PaymentMethod.MPESA, PHONE, "cashier-1")
        gateway.settle(handle.gateway_ref, TransactionStatus.FAILED)
        assert payments.check_payment_status(handle.transaction_id) == TransactionStatus.FAILED
        assert repo.get_order(order.order_id).paid_amount == 0

        retry = payments.retry_payment(handle.transaction_id)
        assert retry.transaction_id != handle.transaction_id
        assert gateway.initiated[-1]["phone"] == PHONE.phone

    def test_retry_requires_failed(self, payments, make_order):
        order = make_order()
        handle = payments.initiate_payment(order.order_id, 100, PaymentMethod.MPESA, PHONE, "cashier-1")
        with pytest.raises(ValidationError):
            payments.retry_payment(handle.transaction_id)

    def test_gateway_error_stores_nothing(self, payments, make_order, gateway):
        order = make_order()
        gateway.fail_next_initiate = "gateway unreachable"
        with pytest.raises(GatewayError):
            payments.initiate_payment(order.order_id, 100, PaymentMethod.MPESA, PHONE, "cashier-1")
        assert payments.transactions_for_order(order.order_id) == []

    def test_late_confirmation_goes_to_credit(self, payments, make_order, gateway, repo):
        order = make_order(total=3000)
        handle = payments.initiate_payment(order.order_id, 3000, PaymentMethod.MPESA, PHONE, "cashier-1")
        payments.record_payment(order.order_id, 3000, "cash", "cashier-1")
        gateway.settle(handle.gateway_ref, TransactionStatus.COMPLETED)

        txn = payments.confirm_payment(handle.transaction_id)
        assert txn.status == TransactionStatus.COMPLETED
        assert txn.order_id is None
        assert txn.payment_type == PaymentType.ADVANCE
        assert txn.metadata["excess_to_credit"] == "3000"
        assert repo.get_order(order.order_id).paid_amount == 3000
        assert payments.credit_balance("CUST-1") == 3000

        completed = [t for t in payments.transactions_for_order(order.order_id)
                     if t.status == TransactionStatus.COMPLETED]
        assert sum(t.amount for t in completed) <= order.total_amount
        assert [t.method for t in completed] == [PaymentMethod.CASH]

    def test_partial_overpayment_splits_into_advance(self, payments, make_order, gateway, repo):
        order = make_order(total=3000)
        handle = payments.initiate_payment(order.order_id, 2000, PaymentMethod.MPESA, PHONE, "cashier-1")
        payments.record_payment(order.order_id, 2000, "cash", "cashier-1")
        gateway.settle(handle.gateway_ref, TransactionStatus.COMPLETED)

        txn = payments.confirm_payment(handle.transaction_id)
        assert txn.order_id == order.order_id
        assert txn.amount == 1000
        assert txn.metadata["gateway_amount"] == "2000"

        completed = [t for t in payments.transactions_for_order(order.order_id)
                     if t.status == TransactionStatus.COMPLETED]
        assert sum(t.amount for t in completed) == 3000
        assert repo.get_order(order.order_id).payment_status == PaymentStatus.PAID

        advance = repo.get_transaction(txn.metadata["advance_transaction_id"])
        assert advance.order_id is None
        assert advance.payment_type == PaymentType.ADVANCE
        assert advance.amount == 1000
        assert payments.credit_balance("CUST-1") == 1000
        assert advance.transaction_id in [t.transaction_id for t in payments.credit_history("CUST-1")]

    def test_callback(self, payments, make_order, gateway):
        order = make_order()
        handle = payments.initiate_payment(order.order_id, 500, PaymentMethod.MPESA, PHONE, "cashier-1")
        gateway.settle(handle.gateway_ref, TransactionStatus.COMPLETED)
        assert payments.handle_gateway_callback(handle.gateway_ref).status == TransactionStatus.COMPLETED
        with pytest.raises(NotFound):
            payments.handle_gateway_callback("PSP-UNKNOWN")

    def test_reconcile_pending(self, payments, make_order, gateway):
        order = make_order()
        a = payments.initiate_payment(order.order_id, 500, PaymentMethod.MPESA, PHONE, "cashier-1")
        b = payments.initiate_payment(order.order_id, 700, PaymentMethod.MPESA, PHONE, "cashier-1")
        gateway.settle(a.gateway_ref, TransactionStatus.COMPLETED)
        results = payments.reconcile_pending()
        assert results == {a.transaction_id: TransactionStatus.COMPLETED,
                           b.transaction_id: TransactionStatus.PENDING}


class TestPollUntilSettled:
    def test_settles_after_backoff(self, payments, make_order, gateway, repo):
        order = make_order(total=3000)
        handle = payments.initiate_payment(order.order_id, 3000, PaymentMethod.MPESA, PHONE, "cashier-1")
        gateway.script(handle.gateway_ref, TransactionStatus.PENDING, TransactionStatus.PENDING,
                       TransactionStatus.COMPLETED)
        timer = FakeTimer()
        poller = payments.make_poller(clock=timer.now, wait=timer.wait)

        assert payments.poll_until_settled(handle.transaction_id, poller) == TransactionStatus.COMPLETED
        assert timer.waits == [5, 10, 20]
        assert repo.get_order(order.order_id).payment_status == PaymentStatus.PAID

    def test_timeout_is_flagged(self, payments, make_order, repo):
        order = make_order()
        handle = payments.initiate_payment(order.order_id, 500, PaymentMethod.MPESA, PHONE, "cashier-1")
        timer = FakeTimer()
        poller = payments.make_poller(clock=timer.now, wait=timer.wait)

        with pytest.raises(ConfirmationTimeout):
            payments.poll_until_settled(handle.transaction_id, poller)
        txn = repo.get_transaction(handle.transaction_id)
        assert txn.status == TransactionStatus.PENDING
        assert "confirmation_timeout_at" in txn.metadata
        assert sum(timer.waits) == 300

    def test_unknown_transaction_stops_at_once(self, payments):
        timer = FakeTimer()
        poller = payments.make_poller(clock=timer.now, wait=timer.wait)
        with pytest.raises(NotFound):
            payments.poll_until_settled("TXN-UNKNOWN", poller)
        assert poller.checks == 1
        assert timer.waits == [5]


class TestCustomerCredit:
    def test_partial_application(self, payments, make_order):
        payments.add_customer_credit("CUST-1", 500, "cashier-1")
        order = make_order(total=800)
        result = payments.apply_customer_credit(order.order_id, "cashier-1")
        assert (result.amount_applied, result.new_balance, result.remaining_due) == (500, 0, 300)
        assert result.transaction.payment_type == PaymentType.CREDIT_APPLIED
        assert result.order.payment_status == PaymentStatus.PARTIAL

    def test_application_capped_at_balance_due(self, payments, make_order):
        payments.add_customer_credit("CUST-1", 1000, "cashier-1")
        order = make_order(total=800)
        result = payments.apply_customer_credit(order.order_id, "cashier-1")
        assert (result.amount_applied, result.new_balance, result.remaining_due) == (800, 200, 0)

    def test_no_credit(self, payments, make_order):
        order = make_order()
        with pytest.raises(InsufficientCredit):
            payments.apply_customer_credit(order.order_id, "cashier-1")

    def test_two_terminals_cannot_spend_the_same_credit(self, payments, make_order):
        payments.add_customer_credit("CUST-1", 500, "cashier-1")
        orders = [make_order(total=800), make_order(total=800)]
        barrier = threading.Barrier(2)
        applied, errors = [], []

        def apply(order_id):
            barrier.wait()
            try:
                applied.append(payments.apply_customer_credit(order_id, "cashier-1").amount_applied)
            except (InsufficientCredit, ConcurrentModification) as e:
                errors.append(e)

        threads = [threading.Thread(target=apply, args=(o.order_id,)) for o in orders]
        for t in threads:
            t.start()
        for t in threads:
            t.join(5)

        assert sum(applied) == 500
        assert len(errors) == 1
        assert payments.credit_balance("CUST-1") == 0

    def test_history_and_refund(self, payments, make_order, clock):
        payments.add_customer_credit("CUST-1", 500, "cashier-1")
        clock.advance(minutes=1)
        order = make_order(total=300)
        payments.apply_customer_credit(order.order_id, "cashier-1")
        clock.advance(minutes=1)
        payments.refund_to_customer_credit("CUST-1", 150, "manager", "missing button", order.order_id)
        payments.record_payment(make_order(total=50).order_id, 50, "cash", "cashier-1")

        history = payments.credit_history("CUST-1")
        assert [t.payment_type for t in history] == [PaymentType.REFUND, PaymentType.CREDIT_APPLIED,
                                                    PaymentType.ADVANCE]
        assert payments.credit_balance("CUST-1") == 350

    def test_payment_split(self, payments):
        payments.add_customer_credit("CUST-1", 400, "cashier-1")
        assert payments.payment_split("CUST-1", 1000) == {
            "credit_amount": 400, "remaining_amount": 600, "has_credit": True,
        }


class TestAvailableMethods:
    def test_small_amount(self):
        assert available_payment_methods(5) == {"cash": True, "mpesa": False, "card": False, "credit": True}

    def test_mpesa_ceiling(self):
        assert available_payment_methods(500001)["mpesa"] is False
        assert available_payment_methods(500000)["mpesa"] is True

import os
import tempfile
import threading
import time

import pytest


def _set_test_env() -> None:
    defaults = {
        "APP_NAME": "Data Relay Test",
        "ENVIRONMENT": "test",
        "PAYSTACK_SECRET_KEY": "sk_test_xxx",
        "PAYSTACK_WEBHOOK_SECRET": "whsec_test_xxx",
        "PAYSTACK_BASE_URL": "https://api.paystack.test",
        "PAYSTACK_RETRY_COUNT": "0",
        "HUBNET_API_KEY": "hubnet_key",
        "HUBNET_BASE_URL": "https://hubnet.test/api/transaction",
        "HUBNET_RETRY_COUNT": "0",
        "HUBNET_TEST_MODE": "false",
        "HUBNET_BALANCE_CHECK": "false",
        "PUBLIC_BASE_URL": "https://relay.test",
        "FRONTEND_BASE_URL": "https://shop.test",
        "CORS_ORIGINS": "http://localhost:5173,http://localhost:3000",
        "ADMIN_API_KEY": "admin-test-key",
        "RATE_LIMIT_ENABLED": "false",
        "STORE_PATH": os.path.join(tempfile.mkdtemp(prefix="datarelay-test-"), "transactions.json"),
        "STORE_FLUSH_INTERVAL_SECONDS": "0.5",
    }
    for key, value in defaults.items():
        os.environ.setdefault(key, value)


_set_test_env()


from datarelay.core.store import TransactionStore  # noqa: E402
from datarelay.models.outcomes import (  # noqa: E402
    FulfillmentOutcome,
    PaymentInitialization,
    PaymentState,
    PaymentVerification,
)
from datarelay.models.transaction import PurchaseIntent  # noqa: E402
from datarelay.services.reconciliation import ReconciliationService  # noqa: E402


def paid(amount_minor: int = 550, currency: str = "GHS") -> PaymentVerification:
    return PaymentVerification(
        state=PaymentState.SUCCESS,
        amount_minor=amount_minor,
        currency=currency,
        provider_payment_id="4099260516",
        message="Approved",
    )


PENDING = PaymentVerification(state=PaymentState.PENDING, message="Payment not confirmed yet")
DECLINED = PaymentVerification(state=PaymentState.FAILED, message="Declined")


class FakeGateway:
    """Scripted payment gateway; the last queued verification repeats."""

    def __init__(self):
        self.verifications = [PENDING]
        self.verify_calls = 0
        self.initialized = []
        self.initialize_error = None
        self._lock = threading.Lock()

    def script(self, *verifications):
        self.verifications = list(verifications)

    def initialize(self, intent, reference, callback_url):
        self.initialized.append((reference, callback_url))
        if self.initialize_error is not None:
            raise self.initialize_error
        return PaymentInitialization(
            reference=reference,
            authorization_url=f"https://checkout.paystack.test/{reference}",
            access_code="ac_123",
        )

    def verify(self, reference):
        with self._lock:
            self.verify_calls += 1
            if len(self.verifications) > 1:
                return self.verifications.pop(0)
            return self.verifications[0]


class FakeFulfillment:
    """Scripted fulfillment provider that records every dispatch."""

    def __init__(self):
        self.outcomes = []
        self.calls = []
        self.delay = 0.0
        self._lock = threading.Lock()

    def script(self, *outcomes):
        self.outcomes = list(outcomes)

    def fulfill(self, intent, reference, *, webhook_url=None, referrer=None):
        with self._lock:
            self.calls.append((reference, intent.target_contact, intent.volume_mb))
            if len(self.outcomes) > 1:
                outcome = self.outcomes.pop(0)
            elif self.outcomes:
                outcome = self.outcomes[0]
            else:
                outcome = FulfillmentOutcome.success("HUB-1", raw={"status": True, "transaction_id": "HUB-1"})
        if self.delay:
            time.sleep(self.delay)
        return outcome


@pytest.fixture
def intent():
    return PurchaseIntent(
        product_code="mtn-1gb",
        network="mtn",
        target_contact="0551234567",
        volume_mb=1000,
        amount="5.50",
        currency="GHS",
        purchaser_email="a@b.com",
    )


@pytest.fixture
def store(tmp_path):
    store = TransactionStore(tmp_path / "transactions.json", flush_interval=0.05)
    store.load()
    yield store
    store.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def fulfillment():
    return FakeFulfillment()


@pytest.fixture
def service(store, gateway, fulfillment):
    return ReconciliationService(store, gateway, fulfillment)

"""Reference-keyed reconciliation of payment confirmation and bundle fulfillment.

Every entry point that can lead to a fulfillment call goes through the same
sequence: cached-result check, per-reference lock, re-read, gateway verify,
fulfill. Fulfillment is the only call with a real-world side effect, so a
record that reached FULFILLED is never sent upstream again.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from datarelay.core.store import TransactionStore
from datarelay.models.outcomes import FulfillmentOutcome, PaymentInitialization, PaymentState, PaymentVerification
from datarelay.models.transaction import PurchaseIntent, TransactionPhase, TransactionRecord, utcnow
from datarelay.services.catalog import normalize_ghana_phone, reference_prefix
from datarelay.services.remote import RemoteCallError
from datarelay.utils.locks import KeyedLock
from datarelay.utils.reference import generate_reference


logger = logging.getLogger(__name__)

PRE_PAYMENT_PHASES = {TransactionPhase.INITIATED, TransactionPhase.AWAITING_PAYMENT}


class TransactionNotFound(Exception):
    def __init__(self, reference: str):
        super().__init__(f"Transaction {reference} not found")
        self.reference = reference


@dataclass
class InitiationResult:
    reference: str
    authorization_url: str
    record: TransactionRecord


@dataclass
class ReconciliationResult:
    status: str
    payment_status: str
    fulfillment_status: Optional[str]
    message: str
    record: TransactionRecord
    # True when served from the stored outcome without any provider call.
    cached: bool = False
    error_code: Optional[str] = None
    # Seconds until an open breaker admits a trial call.
    retry_after: Optional[float] = None

    @property
    def reference(self) -> str:
        return self.record.reference

    @property
    def phase(self) -> TransactionPhase:
        return self.record.phase

    def to_response(self) -> dict:
        record = self.record
        intent = record.request_payload
        data = {
            "reference": record.reference,
            "transaction_id": record.fulfillment_transaction_id,
            "network": intent.network,
            "product_code": intent.product_code,
            "phone": intent.target_contact,
            "volume": str(intent.volume_mb),
            "amount": str(intent.amount),
            "currency": intent.currency,
            "attemptCount": record.attempt_count,
            "createdAt": record.created_at.isoformat(),
            "updatedAt": record.updated_at.isoformat(),
        }
        if record.fulfillment_response is not None:
            data["fulfillment"] = record.fulfillment_response
        body = {
            "status": self.status,
            "message": self.message,
            "reference": record.reference,
            "phase": record.phase.value,
            "paymentStatus": self.payment_status,
            "fulfillmentStatus": self.fulfillment_status,
            "data": data,
        }
        if self.error_code:
            body["errorCode"] = self.error_code
        if self.retry_after is not None:
            body["retryAfter"] = round(self.retry_after, 1)
        return body


def describe(record: TransactionRecord, *, cached: bool = False, error_code: str | None = None) -> ReconciliationResult:
    """Client-facing view of a record's phase."""
    phase = record.phase
    if phase == TransactionPhase.FULFILLED:
        return ReconciliationResult("success", "success", "success", "Data bundle delivered.", record, cached=cached)
    if phase == TransactionPhase.PAYMENT_FAILED:
        return ReconciliationResult(
            "failed", "failed", None, record.error or "Payment was not completed.", record, cached=cached
        )
    if phase == TransactionPhase.FULFILLMENT_FAILED:
        # Money has moved; never report this as a plain failure.
        return ReconciliationResult(
            "pending",
            "success",
            "failed",
            "Payment succeeded. Bundle delivery is pending and will be retried.",
            record,
            cached=cached,
            error_code=error_code or _error_code(record.error),
        )
    if phase == TransactionPhase.PAYMENT_VERIFIED and record.error:
        return ReconciliationResult(
            "pending",
            "pending",
            None,
            "Payment could not be re-confirmed; it is on hold for review.",
            record,
            cached=cached,
            error_code=error_code or _error_code(record.error),
        )
    if phase in (TransactionPhase.FULFILLING, TransactionPhase.PAYMENT_VERIFIED):
        return ReconciliationResult(
            "pending", "success", "pending", "Payment succeeded. Bundle delivery is in progress.", record, cached=cached
        )
    return ReconciliationResult(
        "pending", "pending", None, "Payment not confirmed yet.", record, cached=cached, error_code=error_code
    )


def _error_code(error: str | None) -> str | None:
    if not error or ":" not in error:
        return None
    return error.split(":", 1)[0].strip() or None


class ReconciliationService:
    def __init__(
        self,
        store: TransactionStore,
        gateway,
        fulfillment,
        *,
        locks: KeyedLock | None = None,
        fulfillment_webhook_url: str | None = None,
        referrer: str | None = None,
    ):
        self.store = store
        self.gateway = gateway
        self.fulfillment = fulfillment
        self.locks = locks or KeyedLock()
        self.fulfillment_webhook_url = fulfillment_webhook_url
        self.referrer = referrer

    def _load(self, reference: str) -> TransactionRecord:
        record = self.store.get(reference)
        if record is None:
            raise TransactionNotFound(reference)
        return record

    def _transition(self, record: TransactionRecord, phase: TransactionPhase, *, operator: bool = False) -> None:
        previous = record.phase
        record.advance(phase, operator=operator)
        if previous != phase:
            logger.info("Transaction %s %s -> %s", record.reference, previous.value, phase.value)

    # -- initiate -------------------------------------------------------------

    def initiate(self, intent: PurchaseIntent, *, callback_url: str) -> InitiationResult:
        """Create the record, then open a hosted checkout. Gateway errors propagate."""
        reference = generate_reference(reference_prefix(intent.network), exists=self.store.has)
        record = TransactionRecord(reference=reference, request_payload=intent)
        with self.locks.hold(reference):
            record = self.store.put(reference, record)
            try:
                checkout: PaymentInitialization = self.gateway.initialize(intent, reference, callback_url)
            except RemoteCallError as exc:
                record.error = f"initialize_failed: {exc.message}"
                self.store.put(reference, record)
                logger.warning("Payment initialization failed for %s: %s", reference, record.error)
                raise
            record.provider_payment_id = checkout.access_code
            record.error = None
            self._transition(record, TransactionPhase.AWAITING_PAYMENT)
            record = self.store.put(reference, record)
        logger.info("Initiated %s %s for %s amount=%s", reference, intent.product_code, intent.target_contact, intent.amount)
        return InitiationResult(reference=reference, authorization_url=checkout.authorization_url, record=record)

    # -- payment verification ------------------------------------------------

    def _payment_mismatch(self, record: TransactionRecord, verification: PaymentVerification) -> str | None:
        intent = record.request_payload
        if verification.amount_minor is not None and verification.amount_minor < intent.amount_minor:
            return f"amount_mismatch: paid {verification.amount_minor} expected {intent.amount_minor}"
        if verification.currency and verification.currency.upper() != intent.currency.upper():
            return f"currency_mismatch: paid in {verification.currency} expected {intent.currency}"
        phone = verification.metadata.get("phone") if verification.metadata else None
        if phone and normalize_ghana_phone(str(phone)) != intent.target_contact:
            # The stored intent wins; the gateway copy is informational.
            logger.warning("Gateway metadata phone for %s differs from stored target", record.reference)
        return None

    def _apply_verification(
        self, record: TransactionRecord, verification: PaymentVerification
    ) -> tuple[TransactionRecord, Optional[ReconciliationResult]]:
        """Move a pre-payment record forward. A result means: stop here and report it."""
        if verification.state == PaymentState.PENDING:
            result = describe(record, error_code=verification.error_code)
            if verification.error_code:
                result.error_code = verification.error_code
                result.message = verification.message or result.message
                result.retry_after = verification.retry_after
            return record, result

        if record.phase == TransactionPhase.INITIATED:
            self._transition(record, TransactionPhase.AWAITING_PAYMENT)
        if verification.provider_payment_id:
            record.provider_payment_id = verification.provider_payment_id

        mismatch = self._payment_mismatch(record, verification) if verification.state == PaymentState.SUCCESS else None
        if record.phase == TransactionPhase.PAYMENT_VERIFIED and (verification.state == PaymentState.FAILED or mismatch):
            # Confirmed earlier, contradicted now (e.g. a reversal). Hold for an operator.
            record.error = mismatch or f"payment_not_confirmed: {verification.message or 'Payment was reversed.'}"
            record = self.store.put(record.reference, record)
            logger.warning("Payment for %s no longer confirmed: %s", record.reference, record.error)
            return record, describe(record, error_code="payment_not_confirmed")
        if verification.state == PaymentState.FAILED or mismatch:
            self._transition(record, TransactionPhase.PAYMENT_FAILED)
            record.error = mismatch or f"payment_failed: {verification.message or 'Payment was not completed.'}"
            record = self.store.put(record.reference, record)
            logger.info("Payment for %s failed: %s", record.reference, record.error)
            return record, describe(record)

        if record.phase == TransactionPhase.AWAITING_PAYMENT:
            self._transition(record, TransactionPhase.PAYMENT_VERIFIED)
        record.error = None
        record = self.store.put(record.reference, record)
        return record, None

    # -- fulfillment -----------------------------------------------------------

    def _fulfill(self, record: TransactionRecord, *, operator: bool = False) -> ReconciliationResult:
        reference = record.reference
        self._transition(record, TransactionPhase.FULFILLING, operator=operator)
        record.attempt_count += 1
        record.last_attempt_at = utcnow()
        record.error = None
        # Written through before dispatch so a restart never re-fulfills blindly.
        record = self.store.put(reference, record, sync=True)

        logger.info("Dispatching fulfillment for %s attempt=%s", reference, record.attempt_count)
        outcome: FulfillmentOutcome = self.fulfillment.fulfill(
            record.request_payload,
            reference,
            webhook_url=self.fulfillment_webhook_url,
            referrer=self.referrer,
        )

        if outcome.succeeded:
            if record.fulfillment_response is None:
                record.fulfillment_response = {
                    "transaction_id": outcome.provider_txn_id,
                    "response": outcome.raw,
                    "fulfilled_at": utcnow().isoformat(),
                }
            self._transition(record, TransactionPhase.FULFILLED)
            record = self.store.put(reference, record, sync=True)
            logger.info("Fulfilled %s provider_txn=%s", reference, outcome.provider_txn_id)
            return describe(record)

        self._transition(record, TransactionPhase.FULFILLMENT_FAILED)
        detail = outcome.reason or "Fulfillment failed"
        if outcome.ambiguous:
            detail = f"{detail} (outcome unknown; provider may have processed it)"
        record.error = f"{outcome.kind.value}: {detail}"
        record = self.store.put(reference, record)
        logger.warning("Fulfillment failed for %s: %s", reference, record.error)
        result = describe(record, error_code=outcome.kind.value)
        result.retry_after = outcome.retry_after
        return result

    # -- public operations ------------------------------------------------------

    def verify_and_fulfill(self, reference: str) -> ReconciliationResult:
        record = self._load(reference)
        if record.phase == TransactionPhase.FULFILLED:
            return describe(record, cached=True)

        with self.locks.hold(reference):
            record = self._load(reference)
            if record.is_terminal or record.phase in (
                TransactionPhase.FULFILLMENT_FAILED,
                TransactionPhase.FULFILLING,
            ):
                # Settled, or waiting on the manual retry path.
                return describe(record, cached=True)

            verification = self.gateway.verify(reference)
            record, stop = self._apply_verification(record, verification)
            if stop is not None:
                return stop
            return self._fulfill(record)

    def retry(self, reference: str) -> ReconciliationResult:
        record = self._load(reference)
        if record.phase == TransactionPhase.FULFILLED:
            return describe(record, cached=True)

        with self.locks.hold(reference):
            record = self._load(reference)
            if record.is_terminal:
                return describe(record, cached=True)

            verification = self.gateway.verify(reference)
            if record.phase in PRE_PAYMENT_PHASES or record.phase == TransactionPhase.PAYMENT_VERIFIED:
                record, stop = self._apply_verification(record, verification)
                if stop is not None:
                    return stop
            else:
                mismatch = None
                if verification.state == PaymentState.SUCCESS:
                    mismatch = self._payment_mismatch(record, verification)
                if verification.state != PaymentState.SUCCESS or mismatch:
                    logger.warning(
                        "Retry of %s refused: payment re-check returned %s %s",
                        reference,
                        verification.state.value,
                        mismatch or verification.message,
                    )
                    result = describe(record)
                    result.message = "Payment could not be re-confirmed; retry later."
                    result.error_code = verification.error_code or "payment_not_confirmed"
                    result.retry_after = verification.retry_after
                    return result

            logger.info("Manual retry for %s from %s", reference, record.phase.value)
            return self._fulfill(record, operator=True)

    def transaction_status(self, reference: str) -> ReconciliationResult:
        """Read-only view; may refresh a pre-payment record from the gateway, never fulfills."""
        record = self._load(reference)
        if record.phase not in PRE_PAYMENT_PHASES:
            return describe(record, cached=True)

        with self.locks.hold(reference, blocking=False) as acquired:
            if not acquired:
                # A verify is in flight for this reference; report what we have.
                return describe(record, cached=True)
            record = self._load(reference)
            if record.phase not in PRE_PAYMENT_PHASES:
                return describe(record, cached=True)
            record, stop = self._apply_verification(record, self.gateway.verify(reference))
            return stop if stop is not None else describe(record)

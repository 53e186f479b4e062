import enum
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransactionPhase(str, enum.Enum):
    INITIATED = "INITIATED"
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    PAYMENT_VERIFIED = "PAYMENT_VERIFIED"
    FULFILLING = "FULFILLING"
    FULFILLED = "FULFILLED"
    FULFILLMENT_FAILED = "FULFILLMENT_FAILED"
    PAYMENT_FAILED = "PAYMENT_FAILED"


ALLOWED_TRANSITIONS: dict[TransactionPhase, set[TransactionPhase]] = {
    TransactionPhase.INITIATED: {TransactionPhase.AWAITING_PAYMENT},
    TransactionPhase.AWAITING_PAYMENT: {TransactionPhase.PAYMENT_VERIFIED, TransactionPhase.PAYMENT_FAILED},
    TransactionPhase.PAYMENT_VERIFIED: {TransactionPhase.FULFILLING},
    TransactionPhase.FULFILLING: {TransactionPhase.FULFILLED, TransactionPhase.FULFILLMENT_FAILED},
    TransactionPhase.FULFILLED: set(),
    TransactionPhase.FULFILLMENT_FAILED: set(),
    TransactionPhase.PAYMENT_FAILED: set(),
}

# Only reachable through the manual retry path.
OPERATOR_TRANSITIONS: dict[TransactionPhase, set[TransactionPhase]] = {
    TransactionPhase.FULFILLMENT_FAILED: {TransactionPhase.FULFILLING},
}

TERMINAL_PHASES = {TransactionPhase.FULFILLED, TransactionPhase.PAYMENT_FAILED}


class InvalidTransition(ValueError):
    pass


def validate_transition(current: TransactionPhase, new: TransactionPhase, *, operator: bool = False) -> None:
    """Raise when a phase change is not allowed by the reconciliation state machine."""
    if new in ALLOWED_TRANSITIONS.get(current, set()):
        return
    if operator and new in OPERATOR_TRANSITIONS.get(current, set()):
        return
    raise InvalidTransition(f"Invalid transition: {current.value} -> {new.value}")


class PurchaseIntent(BaseModel):
    """What the customer paid for. Fulfillment is derived from this, never from a later request."""

    model_config = ConfigDict(frozen=True)

    product_code: str
    network: str
    target_contact: str
    volume_mb: int
    amount: Decimal
    currency: str
    purchaser_email: str

    @property
    def amount_minor(self) -> int:
        return int((self.amount * 100).to_integral_value())


class TransactionRecord(BaseModel):
    reference: str
    phase: TransactionPhase = TransactionPhase.INITIATED
    request_payload: PurchaseIntent
    provider_payment_id: Optional[str] = None
    fulfillment_response: Optional[dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    last_attempt_at: Optional[datetime] = None
    attempt_count: int = 0
    error: Optional[str] = None

    def advance(self, new: TransactionPhase, *, operator: bool = False) -> None:
        if new == self.phase:
            return
        validate_transition(self.phase, new, operator=operator)
        self.phase = new

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @property
    def fulfillment_transaction_id(self) -> Optional[str]:
        if not self.fulfillment_response:
            return None
        value = self.fulfillment_response.get("transaction_id")
        return str(value) if value not in (None, "") else None

from datarelay.models.transaction import (
    ALLOWED_TRANSITIONS,
    InvalidTransition,
    PurchaseIntent,
    TransactionPhase,
    TransactionRecord,
    validate_transition,
)
from datarelay.models.outcomes import (
    FulfillmentKind,
    FulfillmentOutcome,
    PaymentInitialization,
    PaymentState,
    PaymentVerification,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "InvalidTransition",
    "PurchaseIntent",
    "TransactionPhase",
    "TransactionRecord",
    "validate_transition",
    "FulfillmentKind",
    "FulfillmentOutcome",
    "PaymentInitialization",
    "PaymentState",
    "PaymentVerification",
]

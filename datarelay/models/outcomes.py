"""Typed results produced at the provider adapter boundary.

The reconciliation core only branches on these; raw provider JSON never
reaches it.
"""

import enum
from dataclasses import dataclass, field
from typing import Any, Optional


class PaymentState(str, enum.Enum):
    SUCCESS = "success"
    PENDING = "pending"
    FAILED = "failed"


@dataclass(frozen=True)
class PaymentInitialization:
    reference: str
    authorization_url: str
    access_code: Optional[str] = None


@dataclass(frozen=True)
class PaymentVerification:
    state: PaymentState
    amount_minor: Optional[int] = None
    currency: Optional[str] = None
    provider_payment_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    message: str = ""
    # Set when the gateway could not be asked, e.g. "circuit_open".
    error_code: Optional[str] = None
    retry_after: Optional[float] = None


class FulfillmentKind(str, enum.Enum):
    SUCCESS = "success"
    REJECTED = "rejected"
    INSUFFICIENT_BALANCE = "insufficient_upstream_balance"
    UNAVAILABLE = "provider_unavailable"
    # Breaker fast-failed; nothing was sent to the provider.
    CIRCUIT_OPEN = "circuit_open"


@dataclass(frozen=True)
class FulfillmentOutcome:
    kind: FulfillmentKind
    provider_txn_id: Optional[str] = None
    reason: str = ""
    raw: dict[str, Any] = field(default_factory=dict)
    # The request may have reached the provider (timeout); outcome unknown.
    ambiguous: bool = False
    retry_after: Optional[float] = None

    @property
    def succeeded(self) -> bool:
        return self.kind == FulfillmentKind.SUCCESS

    @classmethod
    def success(cls, provider_txn_id: Optional[str], raw: dict[str, Any]) -> "FulfillmentOutcome":
        return cls(kind=FulfillmentKind.SUCCESS, provider_txn_id=provider_txn_id, raw=raw)

    @classmethod
    def rejected(cls, reason: str, raw: Optional[dict[str, Any]] = None) -> "FulfillmentOutcome":
        return cls(kind=FulfillmentKind.REJECTED, reason=reason, raw=raw or {})

    @classmethod
    def insufficient_balance(cls, reason: str, raw: Optional[dict[str, Any]] = None) -> "FulfillmentOutcome":
        return cls(kind=FulfillmentKind.INSUFFICIENT_BALANCE, reason=reason, raw=raw or {})

    @classmethod
    def unavailable(cls, reason: str, *, ambiguous: bool = False) -> "FulfillmentOutcome":
        return cls(kind=FulfillmentKind.UNAVAILABLE, reason=reason, ambiguous=ambiguous)

    @classmethod
    def circuit_open(cls, reason: str, retry_after: Optional[float] = None) -> "FulfillmentOutcome":
        return cls(kind=FulfillmentKind.CIRCUIT_OPEN, reason=reason, retry_after=retry_after)

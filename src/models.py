"""Shared data models for the ADAO subscription service.

All Pydantic models used across the processor, ledger and HTTP layer.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, model_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat_z(value: datetime) -> str:
    """Render a UTC datetime the way browsers do (millisecond precision, Z suffix)."""
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class PlanId(str, Enum):
    BASIC = "basic"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUALLY = "annually"


class PaymentMode(str, Enum):
    """How the token transfer is carried out.

    SIMULATED skips chain submission and synthesizes a transaction hash.
    ONCHAIN submits a real transfer signed by the supplied signer.
    """

    SIMULATED = "simulated"
    ONCHAIN = "onchain"


class ErrorKind(str, Enum):
    INVALID_INPUT = "invalid_input"
    AUTHENTICATION = "authentication"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    TRANSACTION = "transaction"
    DOWNSTREAM = "downstream"
    UNEXPECTED = "unexpected"


class PlanPrice(BaseModel):
    """Price of a plan for one billing cycle."""

    price: float = Field(gt=0, description="Price in ADAO")
    discount: float = Field(default=0, ge=0, le=100, description="Discount in percent")


class SubscriptionPlan(BaseModel):
    """Static plan configuration."""

    model_config = ConfigDict(frozen=True)

    id: PlanId
    name: str
    description: str = ""
    features: list[str] = Field(default_factory=list)
    pricing: dict[BillingCycle, PlanPrice]

    @model_validator(mode="after")
    def _prices_every_cycle(self) -> "SubscriptionPlan":
        missing = [cycle.value for cycle in BillingCycle if cycle not in self.pricing]
        if missing:
            raise ValueError(f"Plan {self.id.value} is missing pricing for: {', '.join(missing)}")
        return self


class PaymentRequest(BaseModel):
    """Canonical payment request.

    Values are kept as received, whatever their JSON type; the payment
    processor owns validation so that the first failing field is reported
    deterministically.
    """

    user_address: Optional[Any] = None
    plan_id: Optional[Any] = None
    billing_cycle: Optional[Any] = None
    amount: Optional[Any] = None
    receiver_address: Optional[Any] = None
    signature: Optional[Any] = None
    message: Optional[Any] = None


class PaymentDetails(BaseModel):
    """Who paid whom, how much, in which token."""

    from_address: str = Field(serialization_alias="from")
    to_address: str = Field(serialization_alias="to")
    amount: float
    token: str
    token_address: str = Field(serialization_alias="tokenAddress")


class PaymentError(BaseModel):
    """Classified failure of a payment attempt."""

    kind: ErrorKind
    message: str
    context: dict[str, Any] = Field(default_factory=dict)


class PaymentResult(BaseModel):
    """Outcome of a payment attempt."""

    success: bool
    subscription_id: Optional[str] = None
    transaction_hash: Optional[str] = None
    gas_used: Optional[str] = None
    block_number: Optional[int] = None
    simulated: bool = False
    payment_details: Optional[PaymentDetails] = None
    failure: Optional[PaymentError] = None

    @property
    def error(self) -> Optional[str]:
        return self.failure.message if self.failure else None

    @classmethod
    def fail(
        cls,
        kind: ErrorKind,
        message: str,
        transaction_hash: Optional[str] = None,
        **context: Any,
    ) -> "PaymentResult":
        if transaction_hash:
            context.setdefault("transaction_hash", transaction_hash)
        return cls(
            success=False,
            transaction_hash=transaction_hash,
            failure=PaymentError(kind=kind, message=message, context=context),
        )


class TransferReceipt(BaseModel):
    """Mined token transfer."""

    transaction_hash: str
    block_number: int
    gas_used: int


class Subscription(BaseModel):
    """Subscription record held by the subscription gateway."""

    id: str
    user_address: str
    plan_id: PlanId
    billing_cycle: BillingCycle
    status: Literal["active", "cancelled"] = "active"
    started_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime
    cancelled_at: Optional[datetime] = None


class SubscriptionStatus(BaseModel):
    """Current subscription state of a user."""

    active: bool
    subscription_id: Optional[str] = None
    plan_id: Optional[PlanId] = None
    billing_cycle: Optional[BillingCycle] = None
    expires_at: Optional[datetime] = None


class ReconciliationRecord(BaseModel):
    """Transfer that moved (or may have moved) funds without a subscription."""

    reconciliation_id: str
    transaction_hash: str
    user_address: str
    receiver_address: str
    plan_id: str
    billing_cycle: str
    amount: float
    token_address: str
    block_number: Optional[int] = None
    error_message: str
    status: Literal["pending", "processing", "resolved", "failed"] = "pending"
    subscription_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    resolved_at: Optional[datetime] = None
    request_id: Optional[str] = None


WEBHOOK_EVENTS = (
    "subscription.created",
    "subscription.renewed",
    "subscription.cancelled",
    "payment.failed",
    "payment.succeeded",
)


def _as_text(value: Any) -> Optional[str]:
    return None if value is None else str(value)


# Senders may use numbers for ids, events or epoch timestamps
WebhookText = Annotated[Optional[str], BeforeValidator(_as_text)]


class SubscriptionWebhook(BaseModel):
    """Notification delivered to the subscription webhook."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    event: WebhookText = None
    subscription_id: WebhookText = Field(default=None, alias="subscriptionId")
    user_address: WebhookText = Field(default=None, alias="userAddress")
    plan_id: WebhookText = Field(default=None, alias="planId")
    billing_cycle: WebhookText = Field(default=None, alias="billingCycle")
    amount: Optional[Any] = None
    timestamp: WebhookText = None

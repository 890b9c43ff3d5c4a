"""Shared data models for PayAgent.

All Pydantic models used across the service for type safety and validation.
Monetary amounts are ``Decimal`` and serialize as strings.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Webhook event names
EVENT_PAYMENT_CREATED = "payment.created"
EVENT_PAYMENT_PAID = "payment.paid"
EVENT_PAYMENT_EXPIRED = "payment.expired"
EVENT_PAYMENT_TEST = "payment.test"

DEFAULT_WEBHOOK_EVENTS = [EVENT_PAYMENT_PAID, EVENT_PAYMENT_CREATED]
SUPPORTED_WEBHOOK_EVENTS = {EVENT_PAYMENT_CREATED, EVENT_PAYMENT_PAID, EVENT_PAYMENT_EXPIRED}


class FeeConfig(BaseModel):
    """Flat-fee configuration (single ``default`` row)."""

    id: str = Field(default="default")
    incentive_token: str = Field(description="Flat-fee token symbol (e.g. LCX)")
    flat_fee_amount: Decimal = Field(description="Flat fee in incentive-token units")
    platform_share: Decimal = Field(description="Platform part of the flat fee")
    creator_reward: Decimal = Field(description="Creator part of the flat fee")
    treasury_wallet: str = Field(description="Wallet receiving the platform share")
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def platform_ratio(self) -> Decimal:
        if self.flat_fee_amount <= 0:
            return Decimal("0.5")
        return self.platform_share / self.flat_fee_amount


class FeeQuote(BaseModel):
    """Settlement fee computed for one payer/network/payment token."""

    network: str
    payment_token: str
    fee_token: str = Field(description="Payment token or the incentive token")
    fee_total: Decimal
    platform_share: Decimal
    creator_reward: Decimal
    source_price: Optional[Decimal] = Field(
        default=None, description="Incentive-token USD price used for conversion"
    )
    payer_incentive_balance: Decimal = Field(default=Decimal("0"))
    deducted_from_payment: bool = Field(
        default=False, description="Fee is charged in the payment token instead of the incentive token"
    )


class VerificationFailure(str, Enum):
    NOT_FOUND = "not_found"
    FAILED = "failed"
    NO_MATCHING_TRANSFER = "no_matching_transfer"
    MISMATCH = "amount_or_receiver_mismatch"
    RPC_ERROR = "rpc_error"


class VerificationResult(BaseModel):
    """Outcome of checking a claimed transaction against expectations."""

    valid: bool
    tx_hash: str
    amount: Optional[str] = Field(default=None, description="Observed amount (decimal string)")
    receiver: Optional[str] = Field(default=None, description="Observed receiver (lowercase)")
    sender: Optional[str] = Field(default=None, description="Observed sender (lowercase)")
    block_number: Optional[int] = None
    token_type: Optional[Literal["native", "contract"]] = None
    error: Optional[VerificationFailure] = None
    message: Optional[str] = None
    details: Optional[dict[str, Any]] = Field(
        default=None, description="Expected vs actual values on mismatch"
    )


class WebhookSubscription(BaseModel):
    """Webhook endpoint registered by a party."""

    id: str
    owner_id: str
    url: str
    events: list[str] = Field(default_factory=lambda: list(DEFAULT_WEBHOOK_EVENTS))
    secret_encrypted: str = Field(description="iv:ciphertext:authTag")
    active: bool = True
    failure_count: int = 0
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    def public_view(self) -> dict[str, Any]:
        """Subscription as shown to its owner (never includes the secret)."""
        return self.model_dump(mode="json", exclude={"secret_encrypted"})


class AuthCredential(BaseModel):
    """API key id plus encrypted signing secret."""

    key_id: str
    party_id: str
    secret_encrypted: str
    expires_at: datetime
    created_at: datetime = Field(default_factory=utcnow)
    grace_until: Optional[datetime] = Field(
        default=None, description="Set when superseded by a rotation"
    )
    revoked_at: Optional[datetime] = None

    def is_usable(self, now: datetime) -> bool:
        if self.revoked_at is not None:
            return False
        if now >= self.expires_at:
            return False
        if self.grace_until is not None and now >= self.grace_until:
            return False
        return True


class IssuedCredential(BaseModel):
    """Returned exactly once, when a credential is issued or rotated."""

    api_key_id: str
    api_secret: str
    expires_at: datetime


class PaymentRequest(BaseModel):
    """A request for payment created by a party."""

    id: str
    creator_party_id: Optional[str] = None
    payer_party_id: Optional[str] = None
    amount: Decimal
    token: str = Field(default="USDC")
    network: str = Field(default="sepolia")
    receiver: str
    description: Optional[str] = None
    status: Literal["PENDING", "PAID", "EXPIRED"] = Field(default="PENDING")
    tx_hash: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    paid_at: Optional[datetime] = None
    expires_at: Optional[datetime] = Field(default=None, description="No expiry when unset")

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class FeeLedgerEntry(BaseModel):
    """Snapshot of the fee quote taken when a payment settles."""

    id: str
    payment_request_id: str
    payer_party_id: Optional[str] = None
    creator_party_id: Optional[str] = None
    fee_token: str
    fee_total: Decimal
    platform_share: Decimal
    creator_reward: Decimal
    source_price: Optional[Decimal] = None
    payer_incentive_balance: Decimal
    deducted_from_payment: bool
    payment_amount: Decimal
    payment_token: str
    treasury_wallet: str
    payment_tx_hash: str
    platform_fee_tx_hash: Optional[str] = None
    creator_reward_tx_hash: Optional[str] = None
    status: Literal["COLLECTED", "PENDING"] = Field(default="COLLECTED")
    created_at: datetime = Field(default_factory=utcnow)


# API request bodies


class CreatePaymentRequestBody(BaseModel):
    amount: Decimal = Field(gt=0)
    receiver: str
    token: str = Field(default="USDC")
    network: str = Field(default="sepolia")
    description: Optional[str] = None
    expires_in_seconds: Optional[int] = Field(default=None, gt=0, description="Overrides the default lifetime")

class VerifyPaymentBody(BaseModel):
    request_id: str
    tx_hash: str
    payer_wallet: Optional[str] = Field(default=None, description="Wallet used for the fee quote")
    fee_tx_hash: Optional[str] = None
    creator_reward_tx_hash: Optional[str] = None


class WebhookCreateBody(BaseModel):
    url: str
    events: list[str] = Field(default_factory=lambda: list(DEFAULT_WEBHOOK_EVENTS))


class WebhookUpdateBody(BaseModel):
    url: Optional[str] = None
    events: Optional[list[str]] = None
    active: Optional[bool] = None


class SettlementOutcome(BaseModel):
    """Result of ``verify_and_settle``."""

    request: PaymentRequest
    verification: VerificationResult
    fee: Optional[FeeQuote] = None


class PaymentTransfer(BaseModel):
    """One on-chain transfer the payer has to make."""

    description: str
    token: str
    token_address: Optional[str] = Field(default=None, description="None for the native asset")
    amount: Decimal
    to: str


class PaymentInstructions(BaseModel):
    """Everything a payer needs to settle a request."""

    request: PaymentRequest
    fee: FeeQuote
    transfers: list[PaymentTransfer]
    total_payer_owes: Optional[Decimal] = Field(
        default=None, description="Payment plus fee, when both are in the payment token"
    )

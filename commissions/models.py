import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

CODE_PATTERN = re.compile(r"^[A-Z0-9]{3,20}$")


def normalize_code(code: str) -> str:
    return code.strip().upper()


class PartnerStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    REJECTED = "rejected"


class LedgerEntryStatus(str, Enum):
    PENDING = "pending"
    ACCRUED = "accrued"
    PAID = "paid"
    REVERSED = "reversed"


class RejectionReason(str, Enum):
    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    EXPIRED = "expired"
    USAGE_LIMIT_REACHED = "usage_limit_reached"
    PARTNER_NOT_ACTIVE = "partner_not_active"


class PurchaseType(str, Enum):
    SUBSCRIPTION = "subscription"
    ONE_TIME = "one_time"


class HandlerOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"
    IGNORED = "ignored"


class ReferralCode(BaseModel):
    code: str
    partner_id: str
    active: bool = True
    created_at: datetime
    expires_at: Optional[datetime] = None
    max_uses: Optional[int] = Field(default=None, ge=0)
    uses: int = Field(default=0, ge=0)
    custom_commission_rate: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    description: Optional[str] = None
    last_used_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @field_validator("code")
    @classmethod
    def validate_code(cls, value: str) -> str:
        value = normalize_code(value)
        if not CODE_PATTERN.match(value):
            raise ValueError("referral codes are 3-20 alphanumeric characters")
        return value

    @field_validator("created_at", "expires_at", "last_used_at")
    @classmethod
    def assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        # Naive timestamps are taken to be UTC
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def rejection_reason(self, now: datetime) -> Optional[RejectionReason]:
        if not self.active:
            return RejectionReason.INACTIVE
        if self.expires_at is not None and self.expires_at <= now:
            return RejectionReason.EXPIRED
        if self.max_uses is not None and self.uses >= self.max_uses:
            return RejectionReason.USAGE_LIMIT_REACHED
        return None


class PartnerStats(BaseModel):
    total_referrals: int = 0
    total_conversions: int = 0
    total_commission_earned: int = 0
    total_commission_paid: int = 0
    last_calculated: Optional[datetime] = None


class Partner(BaseModel):
    id: str
    display_name: Optional[str] = None
    commission_rate: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    status: PartnerStatus = PartnerStatus.PENDING
    stats: PartnerStats = Field(default_factory=PartnerStats)
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def is_active(self) -> bool:
        return self.status == PartnerStatus.ACTIVE


class ReferralAttribution(BaseModel):
    id: str
    partner_id: str
    referral_code: str
    customer_id: str
    subscription_id: Optional[str] = None
    plan_id: Optional[str] = None
    currency: str = "usd"
    source: str = "referral_link"
    purchase_type: Optional[PurchaseType] = None
    amount: Optional[int] = None
    checkout_session_id: Optional[str] = None
    subscription_status: Optional[str] = None
    subscription_start_date: Optional[datetime] = None
    subscription_current_period_end: Optional[datetime] = None
    subscription_trial_end: Optional[datetime] = None
    subscription_correlated_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    processed_event_ids: list[str] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class PendingSubscription(BaseModel):
    subscription_id: str
    event_id: str
    fields: dict[str, Any] = Field(default_factory=dict)


class CustomerRecord(BaseModel):
    """Per-customer document written by every attribution create and read by
    every subscription correlation, so the two always conflict when they race.
    """

    customer_id: str
    attribution_ids: list[str] = Field(default_factory=list)
    pending_subscription: Optional[PendingSubscription] = None
    processed_event_ids: list[str] = Field(default_factory=list)
    updated_at: Optional[datetime] = None


class CommissionLedgerEntry(BaseModel):
    id: str
    partner_id: str
    referral_id: str
    source_invoice_id: str
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    amount_gross: int
    commission_rate: float
    commission_amount: int
    currency: str
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    status: LedgerEntryStatus
    created_at: datetime
    paid_at: Optional[datetime] = None
    reversed_at: Optional[datetime] = None
    reversal_of: Optional[str] = None
    reversal_reason: Optional[str] = None
    processed_event_ids: list[str] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_reversal(self) -> bool:
        return self.reversal_of is not None

    def can_reverse(self) -> bool:
        return self.status == LedgerEntryStatus.ACCRUED and not self.is_reversal

    def can_mark_paid(self) -> bool:
        return self.status == LedgerEntryStatus.ACCRUED and not self.is_reversal


class PartnerInfo(BaseModel):
    partner_id: str
    partner_code: str
    partner_name: Optional[str] = None
    commission_rate: float
    active: bool = True


class UsableCode(BaseModel):
    code: ReferralCode
    partner: Partner

    @property
    def effective_commission_rate(self) -> Optional[float]:
        if self.code.custom_commission_rate is not None:
            return self.code.custom_commission_rate
        return self.partner.commission_rate


class RejectedCode(BaseModel):
    code: str
    reason: RejectionReason


CodeResolution = Union[UsableCode, RejectedCode]


def _coerce_id(value: Any) -> Any:
    # Stripe sends either the bare id or the expanded object
    if isinstance(value, dict):
        return value.get("id")
    return value


class WebhookEventData(BaseModel):
    object: dict[str, Any]
    previous_attributes: Optional[dict[str, Any]] = None


class WebhookEvent(BaseModel):
    id: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    created: Optional[int] = None
    livemode: bool = False
    data: WebhookEventData

    model_config = ConfigDict(extra="ignore")


class CheckoutSession(BaseModel):
    id: str
    customer: Optional[str] = None
    subscription: Optional[str] = None
    mode: Optional[str] = None
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    payment_status: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(extra="ignore")

    @field_validator("customer", "subscription", mode="before")
    @classmethod
    def expand_ids(cls, value: Any) -> Any:
        return _coerce_id(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def stringify_metadata(cls, value: Any) -> Any:
        if value is None:
            return {}
        return {k: str(v) for k, v in value.items() if v is not None}


class StripeSubscription(BaseModel):
    id: str
    customer: Optional[str] = None
    status: Optional[str] = None
    start_date: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    canceled_at: Optional[datetime] = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("customer", mode="before")
    @classmethod
    def expand_ids(cls, value: Any) -> Any:
        return _coerce_id(value)


class StripeInvoice(BaseModel):
    id: str
    customer: Optional[str] = None
    subscription: Optional[str] = None
    amount_paid: int = 0
    currency: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    status: Optional[str] = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("customer", "subscription", mode="before")
    @classmethod
    def expand_ids(cls, value: Any) -> Any:
        return _coerce_id(value)

    @model_validator(mode="before")
    @classmethod
    def subscription_from_parent(cls, data: Any) -> Any:
        # Newer API versions moved the subscription under parent.subscription_details
        if isinstance(data, dict) and not data.get("subscription"):
            parent = data.get("parent") or {}
            details = parent.get("subscription_details") or {}
            if details.get("subscription"):
                data = {**data, "subscription": details["subscription"]}
        return data


class HandlerResult(BaseModel):
    outcome: HandlerOutcome
    reason: Optional[str] = None
    document_ids: list[str] = Field(default_factory=list)


class WebhookAck(BaseModel):
    received: bool = True
    event_id: str
    event_type: str
    outcome: HandlerOutcome
    detail: Optional[str] = None


class PartnerCommissionSummary(BaseModel):
    partner_id: str
    total_entries: int
    total_earned: int
    total_paid: int
    pending_amount: int
    recent_entries: list[CommissionLedgerEntry]


class PartnerLedgerResponse(BaseModel):
    partner_id: str
    entries: list[CommissionLedgerEntry]
    total_count: int
    limit: int
    offset: int

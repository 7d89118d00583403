"""
Referral Commission Pipeline

This package provides:
- Referral code resolution (active, unexpired, under its usage limit, active partner)
- Referral attribution keyed by (code, customer), correlated with subscriptions
- Commission ledger with accrual and reversal entries
- Idempotent handling of at-least-once, out-of-order Stripe webhooks
"""

from .correlation import CorrelationEngine
from .directory import ReferralCodeDirectory
from .ledger import CommissionLedger
from .models import (
    CommissionLedgerEntry,
    HandlerOutcome,
    LedgerEntryStatus,
    Partner,
    PartnerStatus,
    ReferralAttribution,
    ReferralCode,
    RejectionReason,
)
from .service import CommissionService
from .storage import InMemoryStorage
from .webhooks import WebhookDispatcher

__all__ = [
    "CommissionLedger",
    "CommissionLedgerEntry",
    "CommissionService",
    "CorrelationEngine",
    "HandlerOutcome",
    "InMemoryStorage",
    "LedgerEntryStatus",
    "Partner",
    "PartnerStatus",
    "ReferralAttribution",
    "ReferralCode",
    "ReferralCodeDirectory",
    "RejectionReason",
    "WebhookDispatcher",
]

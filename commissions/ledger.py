from datetime import datetime, timezone
from typing import Optional, Union

from .exceptions import InvalidStateTransitionError, LedgerEntryNotFoundError, PartnerNotFoundError
from .idempotency import is_processed
from .logging_config import get_logger
from .models import (
    CommissionLedgerEntry,
    HandlerOutcome,
    HandlerResult,
    LedgerEntryStatus,
    Partner,
    PartnerCommissionSummary,
    PartnerLedgerResponse,
    PartnerStats,
    ReferralAttribution,
    ReferralCode,
    StripeInvoice,
    WebhookEvent,
)
from .money import calculate_commission
from .directory import ReferralCodeDirectory
from .settings import Settings, settings as default_settings
from .storage import (
    COMMISSION_LEDGER,
    CUSTOMERS,
    PARTNERS,
    REFERRAL_CODES,
    REFERRALS,
    InMemoryStorage,
    Transaction,
)

logger = get_logger(__name__)

REVERSAL_SUFFIX = "reversal"
RECENT_ENTRIES_LIMIT = 10

Reader = Union[InMemoryStorage, Transaction]


def ledger_entry_id(invoice_id: str, partner_id: str, reversal: bool = False) -> str:
    entry_id = f"{invoice_id}_{partner_id}"
    if reversal:
        entry_id = f"{entry_id}_{REVERSAL_SUFFIX}"
    return entry_id


def increment_partner_stats(
    txn: Transaction,
    partner_id: str,
    now: datetime,
    referrals: int = 0,
    conversions: int = 0,
    earned: int = 0,
    paid: int = 0,
) -> bool:
    partner_data = txn.get(PARTNERS, partner_id)
    if partner_data is None:
        return False

    stats = PartnerStats(**(partner_data.get("stats") or {}))
    stats.total_referrals += referrals
    stats.total_conversions += conversions
    stats.total_commission_earned += earned
    stats.total_commission_paid += paid
    stats.last_calculated = now

    txn.update(PARTNERS, partner_id, {"stats": stats.model_dump(), "updated_at": now})
    return True


class CommissionLedger:
    def __init__(
        self,
        storage: InMemoryStorage,
        directory: ReferralCodeDirectory,
        settings: Optional[Settings] = None,
    ):
        self.storage = storage
        self.directory = directory
        self.settings = settings or default_settings

    def on_invoice_paid(self, event: WebhookEvent, invoice: StripeInvoice) -> HandlerResult:
        if not invoice.customer:
            logger.warning("invoice_missing_customer", event_id=event.id, invoice_id=invoice.id)
            return HandlerResult(outcome=HandlerOutcome.SKIPPED, reason="missing_customer_id")
        if invoice.amount_paid <= 0:
            logger.warning(
                "invoice_non_positive_amount",
                event_id=event.id,
                invoice_id=invoice.id,
                amount_paid=invoice.amount_paid,
            )
            return HandlerResult(outcome=HandlerOutcome.SKIPPED, reason="non_positive_amount")

        now = datetime.now(timezone.utc)

        def apply(txn: Transaction) -> HandlerResult:
            attribution = self.find_attribution(txn, invoice.subscription, invoice.customer)
            if attribution is None:
                return HandlerResult(outcome=HandlerOutcome.SKIPPED, reason="unattributed")

            partner_data = txn.get(PARTNERS, attribution.partner_id)
            if partner_data is None:
                return HandlerResult(outcome=HandlerOutcome.SKIPPED, reason="partner_not_found")
            partner = Partner(**partner_data)

            entry_id = ledger_entry_id(invoice.id, partner.id)
            existing = txn.get(COMMISSION_LEDGER, entry_id)
            if is_processed(existing, event.id):
                return HandlerResult(outcome=HandlerOutcome.DUPLICATE, document_ids=[entry_id])
            if existing is not None:
                return HandlerResult(
                    outcome=HandlerOutcome.SKIPPED,
                    reason=f"invalid_transition:{LedgerEntryStatus(existing['status']).value}->accrued",
                    document_ids=[entry_id],
                )

            code_data = txn.get(REFERRAL_CODES, attribution.referral_code)
            code = ReferralCode(**code_data) if code_data else None
            rate = self.directory.effective_rate(code, partner)

            entry = CommissionLedgerEntry(
                id=entry_id,
                partner_id=partner.id,
                referral_id=attribution.id,
                source_invoice_id=invoice.id,
                subscription_id=invoice.subscription,
                customer_id=invoice.customer,
                amount_gross=invoice.amount_paid,
                commission_rate=rate,
                commission_amount=calculate_commission(invoice.amount_paid, rate),
                currency=(invoice.currency or attribution.currency).lower(),
                period_start=invoice.period_start,
                period_end=invoice.period_end,
                status=LedgerEntryStatus.ACCRUED,
                created_at=now,
                processed_event_ids=[event.id],
            )
            txn.create(COMMISSION_LEDGER, entry_id, entry.model_dump())
            increment_partner_stats(txn, partner.id, now, conversions=1, earned=entry.commission_amount)
            return HandlerResult(outcome=HandlerOutcome.APPLIED, document_ids=[entry_id])

        result = self.storage.run_transaction(apply)
        self._log_result("commission_accrual", event, invoice, result)
        return result

    def on_invoice_voided(self, event: WebhookEvent, invoice: StripeInvoice) -> HandlerResult:
        now = datetime.now(timezone.utc)

        def apply(txn: Transaction) -> HandlerResult:
            attribution = self.find_attribution(txn, invoice.subscription, invoice.customer)
            if attribution is not None:
                # A concurrent accrual for this invoice creates exactly this document
                txn.get(COMMISSION_LEDGER, ledger_entry_id(invoice.id, attribution.partner_id))

            entries = [
                CommissionLedgerEntry(**data)
                for data in txn.query(COMMISSION_LEDGER, "source_invoice_id", invoice.id)
            ]
            originals = [entry for entry in entries if not entry.is_reversal]
            if not originals:
                return HandlerResult(outcome=HandlerOutcome.SKIPPED, reason="no_ledger_entries")

            created, replayed, invalid = [], [], []
            for entry in originals:
                reversal_id = ledger_entry_id(invoice.id, entry.partner_id, reversal=True)
                existing = txn.get(COMMISSION_LEDGER, reversal_id)
                if existing is not None:
                    replayed.append(reversal_id)
                    continue
                if not entry.can_reverse():
                    invalid.append(f"{entry.id}:{entry.status.value}->reversed")
                    continue

                reversal = entry.model_copy(update={
                    "id": reversal_id,
                    "commission_amount": -abs(entry.commission_amount),
                    "status": LedgerEntryStatus.REVERSED,
                    "created_at": now,
                    "paid_at": None,
                    "reversed_at": now,
                    "reversal_of": entry.id,
                    "reversal_reason": "invoice_voided",
                    "processed_event_ids": [event.id],
                })
                txn.create(COMMISSION_LEDGER, reversal_id, reversal.model_dump())
                increment_partner_stats(txn, entry.partner_id, now, earned=reversal.commission_amount)
                created.append(reversal_id)

            if created:
                return HandlerResult(outcome=HandlerOutcome.APPLIED, document_ids=created)
            if invalid:
                return HandlerResult(
                    outcome=HandlerOutcome.SKIPPED,
                    reason="invalid_transition:" + ",".join(invalid),
                )
            return HandlerResult(outcome=HandlerOutcome.DUPLICATE, document_ids=replayed)

        result = self.storage.run_transaction(apply)
        self._log_result("commission_reversal", event, invoice, result)
        return result

    def on_invoice_payment_action_required(self, event: WebhookEvent, invoice: StripeInvoice) -> HandlerResult:
        # Informational only; the ledger changes when the invoice is paid or voided.
        logger.info(
            "invoice_payment_action_required",
            event_id=event.id,
            invoice_id=invoice.id,
            customer_id=invoice.customer,
            subscription_id=invoice.subscription,
            status=invoice.status,
        )
        return HandlerResult(outcome=HandlerOutcome.IGNORED, reason="informational")

    def find_attribution(
        self,
        reader: Reader,
        subscription_id: Optional[str],
        customer_id: Optional[str],
    ) -> Optional[ReferralAttribution]:
        if customer_id:
            # Pins the customer's attribution set, which every new attribution rewrites
            reader.get(CUSTOMERS, customer_id)

        candidates: list[dict] = []
        if subscription_id:
            candidates = reader.query(REFERRALS, "subscription_id", subscription_id)
        if not candidates and customer_id:
            candidates = reader.query(
                REFERRALS,
                "customer_id",
                customer_id,
                limit=self.settings.attribution_lookup_limit,
            )
        if not candidates:
            return None
        # First-touch attribution wins when several codes match
        data = min(candidates, key=lambda d: (d["created_at"], d["id"]))
        return ReferralAttribution(**data)

    def mark_paid(self, entry_id: str) -> CommissionLedgerEntry:
        now = datetime.now(timezone.utc)

        def apply(txn: Transaction) -> CommissionLedgerEntry:
            data = txn.get(COMMISSION_LEDGER, entry_id)
            if data is None:
                raise LedgerEntryNotFoundError(f"Ledger entry {entry_id} not found")

            entry = CommissionLedgerEntry(**data)
            if not entry.can_mark_paid():
                raise InvalidStateTransitionError(f"Cannot mark ledger entry in {entry.status.value} state as paid")
            reversal_id = ledger_entry_id(entry.source_invoice_id, entry.partner_id, reversal=True)
            if txn.get(COMMISSION_LEDGER, reversal_id) is not None:
                raise InvalidStateTransitionError(f"Ledger entry {entry_id} has been reversed")

            txn.update(COMMISSION_LEDGER, entry_id, {"status": LedgerEntryStatus.PAID, "paid_at": now})
            increment_partner_stats(txn, entry.partner_id, now, paid=entry.commission_amount)
            return entry.model_copy(update={"status": LedgerEntryStatus.PAID, "paid_at": now})

        entry = self.storage.run_transaction(apply)
        logger.info(
            "commission_marked_paid",
            entry_id=entry.id,
            partner_id=entry.partner_id,
            commission_amount=entry.commission_amount,
        )
        return entry

    def recompute_partner_stats(self, partner_id: str) -> PartnerStats:
        """Rebuild a partner's stats from the ledger and attributions."""
        now = datetime.now(timezone.utc)

        def apply(txn: Transaction) -> PartnerStats:
            if txn.get(PARTNERS, partner_id) is None:
                raise PartnerNotFoundError(f"Partner {partner_id} not found")

            entries = [CommissionLedgerEntry(**d) for d in txn.query(COMMISSION_LEDGER, "partner_id", partner_id)]
            stats = PartnerStats(
                total_referrals=len(txn.query(REFERRALS, "partner_id", partner_id)),
                total_conversions=sum(1 for e in entries if not e.is_reversal),
                total_commission_earned=sum(e.commission_amount for e in entries),
                total_commission_paid=sum(e.commission_amount for e in entries if e.status == LedgerEntryStatus.PAID),
                last_calculated=now,
            )
            txn.update(PARTNERS, partner_id, {"stats": stats.model_dump(), "updated_at": now})
            return stats

        stats = self.storage.run_transaction(apply)
        logger.info(
            "partner_stats_recomputed",
            partner_id=partner_id,
            total_commission_earned=stats.total_commission_earned,
            total_conversions=stats.total_conversions,
        )
        return stats

    def get_entry(self, entry_id: str) -> CommissionLedgerEntry:
        data = self.storage.get(COMMISSION_LEDGER, entry_id)
        if not data:
            raise LedgerEntryNotFoundError(f"Ledger entry {entry_id} not found")
        return CommissionLedgerEntry(**data)

    def get_partner(self, partner_id: str) -> Partner:
        data = self.storage.get(PARTNERS, partner_id)
        if not data:
            raise PartnerNotFoundError(f"Partner {partner_id} not found")
        return Partner(**data)

    def get_partner_summary(self, partner_id: str) -> PartnerCommissionSummary:
        self.get_partner(partner_id)
        entries = self._partner_entries(partner_id)

        total_earned = sum(e.commission_amount for e in entries)
        total_paid = sum(e.commission_amount for e in entries if e.status == LedgerEntryStatus.PAID)

        return PartnerCommissionSummary(
            partner_id=partner_id,
            total_entries=len(entries),
            total_earned=total_earned,
            total_paid=total_paid,
            pending_amount=total_earned - total_paid,
            recent_entries=entries[:RECENT_ENTRIES_LIMIT],
        )

    def get_partner_ledger(self, partner_id: str, limit: int = 50, offset: int = 0) -> PartnerLedgerResponse:
        entries = self._partner_entries(partner_id)
        return PartnerLedgerResponse(
            partner_id=partner_id,
            entries=entries[offset:offset + limit],
            total_count=len(entries),
            limit=limit,
            offset=offset,
        )

    def _partner_entries(self, partner_id: str) -> list[CommissionLedgerEntry]:
        entries = [CommissionLedgerEntry(**d) for d in self.storage.query(COMMISSION_LEDGER, "partner_id", partner_id)]
        entries.sort(key=lambda e: e.created_at, reverse=True)
        return entries

    def _log_result(self, action: str, event: WebhookEvent, invoice: StripeInvoice, result: HandlerResult) -> None:
        log = logger.warning if result.reason and result.reason.startswith("invalid_transition") else logger.info
        log(
            action,
            event_id=event.id,
            invoice_id=invoice.id,
            customer_id=invoice.customer,
            subscription_id=invoice.subscription,
            outcome=result.outcome.value,
            reason=result.reason,
            entries=result.document_ids,
        )

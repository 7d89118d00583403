"""
Unit Tests for the Commission Ledger

Tests cover:
1. Accrual on invoice.paid
2. Idempotency (duplicate prevention)
3. Reversal on invoice.voided
4. Commission rate precedence and rounding
5. State transitions (accrued -> paid, accrued -> reversed)
6. Partner stats, summaries and pagination
"""

import pytest

from commissions.exceptions import InvalidStateTransitionError, LedgerEntryNotFoundError, PartnerNotFoundError
from commissions.models import HandlerOutcome, LedgerEntryStatus, WebhookEvent
from commissions.service import CommissionService
from commissions.settings import Settings
from commissions.storage import COMMISSION_LEDGER, PARTNERS, REFERRALS, Transaction


# Test constants
PARTNER_ID = "P1"
CODE = "SAVE20"
CUSTOMER_ID = "C1"
SUBSCRIPTION_ID = "S1"
INVOICE_ID = "I1"
ENTRY_ID = "I1_P1"
REVERSAL_ID = "I1_P1_reversal"


def make_event(event_id, event_type, obj):
    return WebhookEvent.model_validate({
        "id": event_id,
        "type": event_type,
        "created": 1700000000,
        "data": {"object": obj},
    })


def checkout_event(event_id="evt_checkout", code=CODE, partner_id=PARTNER_ID, customer=CUSTOMER_ID):
    return make_event(event_id, "checkout.session.completed", {
        "id": f"cs_{event_id}",
        "customer": customer,
        "mode": "subscription",
        "amount_total": 800,
        "currency": "usd",
        "metadata": {"referralCode": code, "partnerId": partner_id},
    })


def subscription_event(event_id="evt_sub", subscription_id=SUBSCRIPTION_ID, customer=CUSTOMER_ID):
    return make_event(event_id, "customer.subscription.created", {
        "id": subscription_id,
        "customer": customer,
        "status": "active",
    })


def invoice_event(
    event_id="evt_invoice_paid",
    event_type="invoice.paid",
    invoice_id=INVOICE_ID,
    subscription=SUBSCRIPTION_ID,
    customer=CUSTOMER_ID,
    amount=800,
    **fields,
):
    obj = {
        "id": invoice_id,
        "object": "invoice",
        "customer": customer,
        "subscription": subscription,
        "amount_paid": amount,
        "currency": "usd",
        "status": "paid",
        "period_start": 1700000000,
        "period_end": 1702592000,
    }
    obj.update(fields)
    return make_event(event_id, event_type, obj)


def void_event(event_id="evt_invoice_voided", invoice_id=INVOICE_ID):
    return invoice_event(event_id=event_id, event_type="invoice.voided", invoice_id=invoice_id, status="void")


def build_service(partner_rate=0.70, custom_rate=None, attributed=True):
    """Partner P1 with code SAVE20; optionally customer C1 attributed on subscription S1."""
    service = CommissionService(settings=Settings(default_commission_rate=0.6))
    service.storage.add_partner(PARTNER_ID, commission_rate=partner_rate)
    service.storage.add_referral_code(CODE, PARTNER_ID, custom_commission_rate=custom_rate)
    if attributed:
        service.handle_event(checkout_event())
        service.handle_event(subscription_event())
    return service


def ledger_docs(service, field="partner_id", value=PARTNER_ID):
    return service.storage.query(COMMISSION_LEDGER, field, value)


def stats(service, partner_id=PARTNER_ID):
    return service.storage.get(PARTNERS, partner_id)["stats"]


class TestAccrualFlow:
    """Tests for commission accrual on invoice.paid."""

    def test_invoice_paid_accrues_commission(self):
        """Test that an attributed invoice accrues amount * rate for the partner."""
        service = build_service()

        result = service.handle_event(invoice_event())

        assert result.outcome == HandlerOutcome.APPLIED
        assert result.document_ids == [ENTRY_ID]

        entry = service.ledger.get_entry(ENTRY_ID)
        assert entry.partner_id == PARTNER_ID
        assert entry.referral_id == "SAVE20_C1"
        assert entry.source_invoice_id == INVOICE_ID
        assert entry.subscription_id == SUBSCRIPTION_ID
        assert entry.amount_gross == 800
        assert entry.commission_rate == 0.70
        assert entry.commission_amount == 560
        assert entry.currency == "usd"
        assert entry.status == LedgerEntryStatus.ACCRUED
        assert entry.period_start is not None
        assert entry.processed_event_ids == ["evt_invoice_paid"]

    def test_duplicate_event_returns_existing(self):
        """Test that redelivering invoice.paid creates no second entry."""
        service = build_service()

        service.handle_event(invoice_event())
        result = service.handle_event(invoice_event())

        assert result.outcome == HandlerOutcome.DUPLICATE
        assert len(ledger_docs(service)) == 1
        assert stats(service)["total_commission_earned"] == 560
        assert stats(service)["total_conversions"] == 1

    def test_second_paid_event_for_same_invoice_rejected(self):
        """Test that a different event for an already accrued invoice is an invalid transition."""
        service = build_service()
        service.handle_event(invoice_event())

        result = service.handle_event(invoice_event(event_id="evt_invoice_paid_again"))

        assert result.outcome == HandlerOutcome.SKIPPED
        assert result.reason == "invalid_transition:accrued->accrued"
        assert len(ledger_docs(service)) == 1

    def test_unattributed_invoice_skipped(self):
        service = build_service(attributed=False)

        result = service.handle_event(invoice_event())

        assert result.outcome == HandlerOutcome.SKIPPED
        assert result.reason == "unattributed"
        assert ledger_docs(service) == []

    @pytest.mark.parametrize("amount", [0, -100])
    def test_non_positive_amount_skipped(self, amount):
        service = build_service()

        result = service.handle_event(invoice_event(amount=amount))

        assert result.outcome == HandlerOutcome.SKIPPED
        assert result.reason == "non_positive_amount"
        assert ledger_docs(service) == []

    def test_missing_customer_skipped(self):
        service = build_service()

        result = service.handle_event(invoice_event(customer=None))

        assert result.outcome == HandlerOutcome.SKIPPED
        assert result.reason == "missing_customer_id"

    def test_falls_back_to_customer_lookup(self):
        """Test that an invoice without a subscription is matched by customer."""
        service = build_service(attributed=False)
        service.handle_event(checkout_event())

        result = service.handle_event(invoice_event(subscription=None))

        assert result.outcome == HandlerOutcome.APPLIED
        assert service.ledger.get_entry(ENTRY_ID).commission_amount == 560

    def test_subscription_from_invoice_parent(self):
        """Test that the subscription is read from parent.subscription_details when absent."""
        service = build_service()

        result = service.handle_event(invoice_event(
            subscription=None,
            customer="C_other",
            parent={"type": "subscription_details", "subscription_details": {"subscription": SUBSCRIPTION_ID}},
        ))

        assert result.outcome == HandlerOutcome.APPLIED
        assert service.ledger.get_entry(ENTRY_ID).subscription_id == SUBSCRIPTION_ID

    def test_first_touch_attribution_wins(self):
        """Test that the earliest attribution of a customer receives the commission."""
        service = CommissionService(settings=Settings())
        service.storage.add_partner("P1", commission_rate=0.5)
        service.storage.add_partner("P2", commission_rate=0.5)
        service.storage.add_referral_code("ALPHA1", "P1")
        service.storage.add_referral_code("ZULU99", "P2")
        service.handle_event(checkout_event(event_id="evt_first", code="ALPHA1", partner_id="P1"))
        service.handle_event(checkout_event(event_id="evt_second", code="ZULU99", partner_id="P2"))

        result = service.handle_event(invoice_event(subscription=None))

        assert result.document_ids == ["I1_P1"]
        assert ledger_docs(service, "partner_id", "P2") == []

    def test_payment_action_required_is_informational(self):
        service = build_service()

        result = service.handle_event(invoice_event(
            event_id="evt_action", event_type="invoice.payment_action_required", status="open",
        ))

        assert result.outcome == HandlerOutcome.IGNORED
        assert ledger_docs(service) == []


class TestCommissionRate:
    """Tests for rate precedence and rounding."""

    def test_custom_code_rate_takes_precedence(self):
        service = build_service(custom_rate=0.5)

        service.handle_event(invoice_event())

        entry = service.ledger.get_entry(ENTRY_ID)
        assert entry.commission_rate == 0.5
        assert entry.commission_amount == 400

    def test_default_rate_when_partner_has_none(self):
        service = build_service(partner_rate=None)

        service.handle_event(invoice_event())

        entry = service.ledger.get_entry(ENTRY_ID)
        assert entry.commission_rate == 0.6
        assert entry.commission_amount == 480

    def test_commission_rounds_half_up(self):
        """Test that 999 * 0.705 = 704.295 accrues 704 and 5 * 0.705 = 3.525 accrues 4."""
        service = build_service(partner_rate=0.705)

        service.handle_event(invoice_event(amount=999))
        service.handle_event(invoice_event(event_id="evt_small", invoice_id="I2", amount=5))

        assert service.ledger.get_entry(ENTRY_ID).commission_amount == 704
        assert service.ledger.get_entry("I2_P1").commission_amount == 4

    def test_half_unit_rounds_up(self):
        service = build_service(partner_rate=0.5)

        service.handle_event(invoice_event(amount=5))

        assert service.ledger.get_entry(ENTRY_ID).commission_amount == 3


class TestReversalFlow:
    """Tests for reversal on invoice.voided."""

    def test_void_creates_reversal_entry(self):
        """Test that voiding an accrued invoice nets the partner's commission to zero."""
        service = build_service()
        service.handle_event(invoice_event())

        result = service.handle_event(void_event())

        assert result.outcome == HandlerOutcome.APPLIED
        assert result.document_ids == [REVERSAL_ID]

        reversal = service.ledger.get_entry(REVERSAL_ID)
        assert reversal.status == LedgerEntryStatus.REVERSED
        assert reversal.commission_amount == -560
        assert reversal.reversal_of == ENTRY_ID
        assert reversal.reversal_reason == "invoice_voided"
        assert reversal.reversed_at is not None
        assert reversal.is_reversal

        entries = ledger_docs(service, "source_invoice_id", INVOICE_ID)
        assert sum(e["commission_amount"] for e in entries) == 0

    def test_void_replay_is_duplicate(self):
        service = build_service()
        service.handle_event(invoice_event())
        service.handle_event(void_event())

        replay = service.handle_event(void_event())
        redelivered = service.handle_event(void_event(event_id="evt_invoice_voided_again"))

        assert replay.outcome == HandlerOutcome.DUPLICATE
        assert redelivered.outcome == HandlerOutcome.DUPLICATE
        assert len(ledger_docs(service, "source_invoice_id", INVOICE_ID)) == 2
        assert stats(service)["total_commission_earned"] == 0

    def test_void_without_entries_skipped(self):
        service = build_service()

        result = service.handle_event(void_event())

        assert result.outcome == HandlerOutcome.SKIPPED
        assert result.reason == "no_ledger_entries"
        assert ledger_docs(service) == []

    def test_void_after_payout_rejected(self):
        """Test that a paid entry cannot be reversed."""
        service = build_service()
        service.handle_event(invoice_event())
        service.ledger.mark_paid(ENTRY_ID)

        result = service.handle_event(void_event())

        assert result.outcome == HandlerOutcome.SKIPPED
        assert result.reason.startswith("invalid_transition:")
        assert service.storage.get(COMMISSION_LEDGER, REVERSAL_ID) is None

    def test_paid_after_void_is_rejected(self):
        """Test that a late invoice.paid redelivery after a void changes nothing."""
        service = build_service()
        service.handle_event(invoice_event())
        service.handle_event(void_event())

        result = service.handle_event(invoice_event())

        assert result.outcome == HandlerOutcome.DUPLICATE
        assert len(ledger_docs(service, "source_invoice_id", INVOICE_ID)) == 2


class TestStateTransitions:
    """Tests for marking entries paid."""

    def test_mark_paid(self):
        service = build_service()
        service.handle_event(invoice_event())

        entry = service.ledger.mark_paid(ENTRY_ID)

        assert entry.status == LedgerEntryStatus.PAID
        assert entry.paid_at is not None
        assert service.ledger.get_entry(ENTRY_ID).status == LedgerEntryStatus.PAID
        assert stats(service)["total_commission_paid"] == 560

    def test_cannot_mark_paid_twice(self):
        service = build_service()
        service.handle_event(invoice_event())
        service.ledger.mark_paid(ENTRY_ID)

        with pytest.raises(InvalidStateTransitionError):
            service.ledger.mark_paid(ENTRY_ID)

    def test_cannot_mark_reversed_entry_paid(self):
        """Test that neither a reversal nor its reversed original can be paid out."""
        service = build_service()
        service.handle_event(invoice_event())
        service.handle_event(void_event())

        with pytest.raises(InvalidStateTransitionError):
            service.ledger.mark_paid(REVERSAL_ID)
        with pytest.raises(InvalidStateTransitionError):
            service.ledger.mark_paid(ENTRY_ID)

    def test_mark_paid_unknown_entry(self):
        service = build_service()

        with pytest.raises(LedgerEntryNotFoundError):
            service.ledger.mark_paid("missing")


class TestPartnerStats:
    """Tests for partner stats and reporting."""

    def test_stats_follow_ledger(self):
        service = build_service()

        service.handle_event(invoice_event())
        after_accrual = dict(stats(service))
        service.handle_event(void_event())
        after_void = dict(stats(service))

        assert after_accrual["total_referrals"] == 1
        assert after_accrual["total_conversions"] == 1
        assert after_accrual["total_commission_earned"] == 560
        assert after_void["total_commission_earned"] == 0
        assert after_void["total_conversions"] == 1

    def test_recompute_matches_incremental_stats(self):
        """Test that rebuilding stats from the ledger agrees with the running counters."""
        service = build_service()
        service.handle_event(invoice_event())
        service.handle_event(invoice_event(event_id="evt_paid_2", invoice_id="I2", amount=1000))
        service.handle_event(void_event())
        service.ledger.mark_paid("I2_P1")
        incremental = stats(service)

        recomputed = service.ledger.recompute_partner_stats(PARTNER_ID)

        assert recomputed.total_referrals == incremental["total_referrals"] == 1
        assert recomputed.total_conversions == incremental["total_conversions"] == 2
        assert recomputed.total_commission_earned == incremental["total_commission_earned"] == 700
        assert recomputed.total_commission_paid == incremental["total_commission_paid"] == 700

    def test_recompute_unknown_partner(self):
        service = build_service(attributed=False)

        with pytest.raises(PartnerNotFoundError):
            service.ledger.recompute_partner_stats("missing")

    def test_partner_summary(self):
        service = build_service()
        service.handle_event(invoice_event())
        service.handle_event(invoice_event(event_id="evt_paid_2", invoice_id="I2", amount=1000))
        service.ledger.mark_paid(ENTRY_ID)

        summary = service.ledger.get_partner_summary(PARTNER_ID)

        assert summary.total_entries == 2
        assert summary.total_earned == 1260
        assert summary.total_paid == 560
        assert summary.pending_amount == 700
        assert len(summary.recent_entries) == 2

    def test_partner_ledger_pagination(self):
        service = build_service()
        for i in range(3):
            service.handle_event(invoice_event(event_id=f"evt_paid_{i}", invoice_id=f"I{i}"))

        page = service.ledger.get_partner_ledger(PARTNER_ID, limit=2, offset=2)

        assert page.total_count == 3
        assert len(page.entries) == 1
        assert page.limit == 2
        assert page.offset == 2

    def test_summary_unknown_partner(self):
        service = build_service(attributed=False)

        with pytest.raises(PartnerNotFoundError):
            service.ledger.get_partner_summary("missing")


class TestInterleavedEvents:
    """Tests where a different event commits in the middle of another event's transaction."""

    def test_accrual_commits_during_void(self, monkeypatch):
        """Test that a void racing the accrual of its invoice retries and reverses it."""
        service = build_service()
        original_query = Transaction.query
        fired = []

        def query_then_accrue(txn, collection, field, value, limit=None):
            results = original_query(txn, collection, field, value, limit)
            if collection == COMMISSION_LEDGER and not fired:
                fired.append(True)
                service.handle_event(invoice_event())
            return results

        monkeypatch.setattr(Transaction, "query", query_then_accrue)

        result = service.handle_event(void_event())

        assert fired
        assert result.outcome == HandlerOutcome.APPLIED
        assert result.document_ids == [REVERSAL_ID]
        entries = ledger_docs(service, "source_invoice_id", INVOICE_ID)
        assert len(entries) == 2
        assert sum(e["commission_amount"] for e in entries) == 0
        assert stats(service)["total_commission_earned"] == 0

    def test_checkout_commits_during_invoice_paid(self, monkeypatch):
        """Test that an invoice racing the customer's first attribution retries and accrues."""
        service = build_service(attributed=False)
        original_query = Transaction.query
        fired = []

        def query_then_checkout(txn, collection, field, value, limit=None):
            results = original_query(txn, collection, field, value, limit)
            if collection == REFERRALS and not fired:
                fired.append(True)
                service.handle_event(checkout_event())
            return results

        monkeypatch.setattr(Transaction, "query", query_then_checkout)

        result = service.handle_event(invoice_event(subscription=None))

        assert fired
        assert result.outcome == HandlerOutcome.APPLIED
        assert service.ledger.get_entry(ENTRY_ID).commission_amount == 560
        assert stats(service)["total_conversions"] == 1

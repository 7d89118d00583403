"""
Correlation of checkout and subscription events with referral attributions.

An attribution is a single document keyed by (referral code, customer).
Writers only ever fill fields in: a value that is already known is never
replaced by an absent one, and the subscription id is written once.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from .idempotency import is_processed, record_event
from .ledger import increment_partner_stats
from .logging_config import get_logger
from .models import (
    CheckoutSession,
    CustomerRecord,
    HandlerOutcome,
    HandlerResult,
    PendingSubscription,
    PurchaseType,
    RejectedCode,
    ReferralAttribution,
    StripeSubscription,
    WebhookEvent,
    normalize_code,
)
from .directory import ReferralCodeDirectory
from .settings import Settings, settings as default_settings
from .storage import CUSTOMERS, REFERRALS, InMemoryStorage, Transaction

logger = get_logger(__name__)

# Fields a later checkout event may fill in on an existing attribution
MERGEABLE_FIELDS = (
    "plan_id",
    "currency",
    "source",
    "purchase_type",
    "amount",
    "checkout_session_id",
)


def attribution_key(code: str, customer_id: str) -> str:
    return f"{normalize_code(code)}_{customer_id}"


class CorrelationEngine:
    def __init__(
        self,
        storage: InMemoryStorage,
        directory: ReferralCodeDirectory,
        settings: Optional[Settings] = None,
    ):
        self.storage = storage
        self.directory = directory
        self.settings = settings or default_settings

    def on_checkout_completed(self, event: WebhookEvent, session: CheckoutSession) -> HandlerResult:
        metadata = session.metadata
        code = metadata.get("referralCode")
        partner_id = metadata.get("partnerId")

        if not code or not partner_id:
            logger.info("checkout_without_referral", event_id=event.id, session_id=session.id)
            return HandlerResult(outcome=HandlerOutcome.SKIPPED, reason="no_referral_metadata")
        if not session.customer:
            logger.warning("checkout_missing_customer", event_id=event.id, session_id=session.id)
            return HandlerResult(outcome=HandlerOutcome.SKIPPED, reason="missing_customer_id")

        key = attribution_key(code, session.customer)
        now = datetime.now(timezone.utc)

        def apply(txn: Transaction) -> HandlerResult:
            existing = txn.get(REFERRALS, key)
            if is_processed(existing, event.id):
                return HandlerResult(outcome=HandlerOutcome.DUPLICATE, document_ids=[key])

            fields = self._checkout_fields(session)
            if existing is not None:
                return self._merge_checkout(txn, event, existing, fields, partner_id, now)
            return self._create_attribution(txn, event, key, code, partner_id, session, fields, now)

        result = self.storage.run_transaction(apply)
        logger.info(
            "checkout_correlated",
            event_id=event.id,
            attribution_id=key,
            outcome=result.outcome.value,
            reason=result.reason,
        )
        return result

    def on_subscription_created(self, event: WebhookEvent, subscription: StripeSubscription) -> HandlerResult:
        customer_id = subscription.customer
        if not customer_id:
            logger.warning("subscription_missing_customer", event_id=event.id, subscription_id=subscription.id)
            return HandlerResult(outcome=HandlerOutcome.SKIPPED, reason="missing_customer_id")

        now = datetime.now(timezone.utc)

        def apply(txn: Transaction) -> HandlerResult:
            customer = txn.get(CUSTOMERS, customer_id)
            attributions = txn.query(
                REFERRALS,
                "customer_id",
                customer_id,
                limit=self.settings.attribution_lookup_limit,
            )
            if not attributions:
                return self._hold_subscription(txn, event, subscription, customer, now)

            updated = []
            for data in attributions:
                if is_processed(data, event.id):
                    continue
                fields = {
                    "processed_event_ids": self._record(data, event.id),
                    "updated_at": now,
                }
                if data.get("subscription_id") in (None, subscription.id):
                    fields.update(self._subscription_fields(subscription, now))
                txn.update(REFERRALS, data["id"], fields)
                updated.append(data["id"])

            if not updated:
                return HandlerResult(
                    outcome=HandlerOutcome.DUPLICATE,
                    document_ids=[d["id"] for d in attributions],
                )
            return HandlerResult(outcome=HandlerOutcome.APPLIED, document_ids=updated)

        result = self.storage.run_transaction(apply)
        logger.info(
            "subscription_correlated",
            event_id=event.id,
            subscription_id=subscription.id,
            customer_id=customer_id,
            outcome=result.outcome.value,
            documents_updated=len(result.document_ids) if result.outcome == HandlerOutcome.APPLIED else 0,
        )
        return result

    def on_subscription_updated(self, event: WebhookEvent, subscription: StripeSubscription) -> HandlerResult:
        """Refresh lifecycle metadata on attributions already bound to the subscription."""
        now = datetime.now(timezone.utc)

        def apply(txn: Transaction) -> HandlerResult:
            attributions = txn.query(
                REFERRALS,
                "subscription_id",
                subscription.id,
                limit=self.settings.attribution_lookup_limit,
            )
            if not attributions:
                return HandlerResult(outcome=HandlerOutcome.SKIPPED, reason="no_attribution")

            updated = []
            for data in attributions:
                if is_processed(data, event.id):
                    continue
                txn.update(REFERRALS, data["id"], {
                    "subscription_status": subscription.status or data.get("subscription_status"),
                    "subscription_current_period_end": subscription.current_period_end
                    or data.get("subscription_current_period_end"),
                    "subscription_trial_end": subscription.trial_end or data.get("subscription_trial_end"),
                    "processed_event_ids": self._record(data, event.id),
                    "updated_at": now,
                })
                updated.append(data["id"])

            if not updated:
                return HandlerResult(outcome=HandlerOutcome.DUPLICATE)
            return HandlerResult(outcome=HandlerOutcome.APPLIED, document_ids=updated)

        result = self.storage.run_transaction(apply)
        logger.info(
            "subscription_status_refreshed",
            event_id=event.id,
            event_type=event.type,
            subscription_id=subscription.id,
            status=subscription.status,
            outcome=result.outcome.value,
        )
        return result

    def _create_attribution(
        self,
        txn: Transaction,
        event: WebhookEvent,
        key: str,
        code: str,
        partner_id: str,
        session: CheckoutSession,
        fields: dict[str, Any],
        now: datetime,
    ) -> HandlerResult:
        resolution = self.directory.resolve(code, txn=txn, now=now)
        if isinstance(resolution, RejectedCode):
            return HandlerResult(outcome=HandlerOutcome.SKIPPED, reason=f"code_{resolution.reason.value}")
        if resolution.partner.id != partner_id:
            return HandlerResult(outcome=HandlerOutcome.SKIPPED, reason="partner_mismatch")

        data = {
            "id": key,
            "partner_id": partner_id,
            "referral_code": resolution.code.code,
            "customer_id": session.customer,
            "created_at": now,
            "updated_at": now,
            "processed_event_ids": [event.id],
            **fields,
        }

        customer = self._customer_record(txn.get(CUSTOMERS, session.customer), session.customer)

        # A subscription event for this customer may have been delivered first
        pending = customer.pending_subscription
        if pending is not None and self._claims_subscription(session, pending):
            data.update(pending.fields)
            data["processed_event_ids"] = self._record(data, pending.event_id)
            customer.pending_subscription = None

        if key not in customer.attribution_ids:
            customer.attribution_ids.append(key)
        customer.updated_at = now
        txn.set(CUSTOMERS, customer.customer_id, customer.model_dump())

        attribution = ReferralAttribution(**data)
        txn.create(REFERRALS, key, attribution.model_dump())
        self.directory.record_use(txn, resolution.code, now)
        increment_partner_stats(txn, partner_id, now, referrals=1)
        return HandlerResult(outcome=HandlerOutcome.APPLIED, reason="created", document_ids=[key])

    def _merge_checkout(
        self,
        txn: Transaction,
        event: WebhookEvent,
        existing: dict,
        fields: dict[str, Any],
        partner_id: str,
        now: datetime,
    ) -> HandlerResult:
        if existing["partner_id"] != partner_id:
            return HandlerResult(outcome=HandlerOutcome.SKIPPED, reason="partner_mismatch")

        updates = {name: fields[name] for name in MERGEABLE_FIELDS if fields.get(name) is not None}
        if existing.get("subscription_id") is None and fields.get("subscription_id"):
            updates["subscription_id"] = fields["subscription_id"]
        updates["processed_event_ids"] = self._record(existing, event.id)
        updates["updated_at"] = now

        txn.update(REFERRALS, existing["id"], updates)
        return HandlerResult(outcome=HandlerOutcome.APPLIED, reason="merged", document_ids=[existing["id"]])

    def _hold_subscription(
        self,
        txn: Transaction,
        event: WebhookEvent,
        subscription: StripeSubscription,
        customer_data: Optional[dict],
        now: datetime,
    ) -> HandlerResult:
        """Keep a subscription that arrived before any attribution of its customer.

        The next subscription-mode checkout that creates an attribution for the
        customer claims it.
        """
        if is_processed(customer_data, event.id):
            return HandlerResult(outcome=HandlerOutcome.DUPLICATE, document_ids=[subscription.customer])

        customer = self._customer_record(customer_data, subscription.customer)
        customer.pending_subscription = PendingSubscription(
            subscription_id=subscription.id,
            event_id=event.id,
            fields=self._subscription_fields(subscription, now),
        )
        customer.processed_event_ids = self._record(customer_data, event.id)
        customer.updated_at = now
        txn.set(CUSTOMERS, customer.customer_id, customer.model_dump())
        return HandlerResult(outcome=HandlerOutcome.SKIPPED, reason="no_attribution")

    def _claims_subscription(self, session: CheckoutSession, pending: PendingSubscription) -> bool:
        if session.mode != "subscription":
            return False
        return session.subscription in (None, pending.subscription_id)

    def _customer_record(self, data: Optional[dict], customer_id: str) -> CustomerRecord:
        if data is None:
            return CustomerRecord(customer_id=customer_id)
        return CustomerRecord(**data)

    def _checkout_fields(self, session: CheckoutSession) -> dict[str, Any]:
        metadata = session.metadata
        fields: dict[str, Any] = {
            "plan_id": metadata.get("planId")
            or ("subscription_plan" if session.mode == "subscription" else "one_time_purchase"),
            "currency": session.currency.lower() if session.currency else None,
            "source": metadata.get("source"),
            "amount": session.amount_total,
            "checkout_session_id": session.id,
            "subscription_id": session.subscription,
        }
        if session.mode:
            fields["purchase_type"] = (
                PurchaseType.SUBSCRIPTION if session.mode == "subscription" else PurchaseType.ONE_TIME
            )
        return {name: value for name, value in fields.items() if value is not None}

    def _subscription_fields(self, subscription: StripeSubscription, now: datetime) -> dict[str, Any]:
        fields = {
            "subscription_id": subscription.id,
            "subscription_status": subscription.status,
            "subscription_start_date": subscription.start_date,
            "subscription_current_period_end": subscription.current_period_end,
            "subscription_trial_end": subscription.trial_end,
            "subscription_correlated_at": now,
        }
        return {name: value for name, value in fields.items() if value is not None}

    def _record(self, document: Optional[dict], event_id: str) -> list[str]:
        return record_event(document, event_id, limit=self.settings.max_processed_event_ids)

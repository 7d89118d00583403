"""Stripe webhook verification and event routing."""

from typing import Callable, Optional

import stripe
import structlog
from pydantic import BaseModel, ValidationError

from .correlation import CorrelationEngine
from .exceptions import MalformedEventError, SignatureVerificationFailed, WebhookNotConfiguredError
from .ledger import CommissionLedger
from .logging_config import get_logger
from .models import (
    CheckoutSession,
    HandlerOutcome,
    HandlerResult,
    StripeInvoice,
    StripeSubscription,
    WebhookEvent,
)

logger = get_logger(__name__)

SIGNATURE_HEADER = "stripe-signature"

Handler = Callable[[WebhookEvent, BaseModel], HandlerResult]


def verify_webhook_signature(
    payload: bytes,
    sig_header: Optional[str],
    secret: Optional[str],
    tolerance: int = 300,
) -> WebhookEvent:
    """Verify and parse a Stripe webhook event.

    Args:
        payload: Raw request body
        sig_header: Stripe-Signature header value
        secret: Endpoint signing secret
        tolerance: Maximum age of the signed timestamp in seconds

    Returns:
        Verified event envelope

    Raises:
        WebhookNotConfiguredError: If no signing secret is configured
        SignatureVerificationFailed: If the signature is missing or invalid
        MalformedEventError: If the verified payload is not a valid event
    """
    if not secret:
        raise WebhookNotConfiguredError("Stripe webhook secret is not configured")
    if not sig_header:
        raise SignatureVerificationFailed("No signature provided")

    try:
        payload_text = payload.decode("utf-8")
    except UnicodeDecodeError:
        raise SignatureVerificationFailed("Payload is not valid UTF-8")

    try:
        stripe.WebhookSignature.verify_header(payload_text, sig_header, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        raise SignatureVerificationFailed(f"Invalid webhook signature: {e}") from e

    return parse_event(payload_text)


def parse_event(payload: str) -> WebhookEvent:
    try:
        return WebhookEvent.model_validate_json(payload)
    except ValidationError as e:
        raise MalformedEventError(f"Malformed event payload: {e.error_count()} validation error(s)") from e


class WebhookDispatcher:
    def __init__(self, correlation: CorrelationEngine, ledger: CommissionLedger):
        self._routes: dict[str, tuple[type[BaseModel], Handler]] = {
            "checkout.session.completed": (CheckoutSession, correlation.on_checkout_completed),
            "customer.subscription.created": (StripeSubscription, correlation.on_subscription_created),
            "customer.subscription.updated": (StripeSubscription, correlation.on_subscription_updated),
            "customer.subscription.deleted": (StripeSubscription, correlation.on_subscription_updated),
            "invoice.paid": (StripeInvoice, ledger.on_invoice_paid),
            "invoice.voided": (StripeInvoice, ledger.on_invoice_voided),
            "invoice.payment_action_required": (StripeInvoice, ledger.on_invoice_payment_action_required),
        }

    @property
    def handled_event_types(self) -> list[str]:
        return sorted(self._routes)

    def dispatch(self, event: WebhookEvent) -> HandlerResult:
        route = self._routes.get(event.type)
        if route is None:
            logger.info("stripe_webhook_unhandled", event_id=event.id, event_type=event.type)
            return HandlerResult(outcome=HandlerOutcome.IGNORED, reason="unhandled_event_type")

        model, handler = route
        try:
            payload = model.model_validate(event.data.object)
        except ValidationError as e:
            raise MalformedEventError(
                f"Malformed {event.type} object: {e.error_count()} validation error(s)"
            ) from e

        with structlog.contextvars.bound_contextvars(event_id=event.id, event_type=event.type):
            return handler(event, payload)

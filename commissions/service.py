from typing import Optional

from .correlation import CorrelationEngine
from .directory import ReferralCodeDirectory
from .ledger import CommissionLedger
from .models import HandlerResult, WebhookEvent
from .settings import Settings, settings as default_settings
from .storage import InMemoryStorage
from .webhooks import WebhookDispatcher, verify_webhook_signature


class CommissionService:
    def __init__(self, storage: Optional[InMemoryStorage] = None, settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self.storage = storage or InMemoryStorage(max_attempts=self.settings.transaction_max_attempts)
        self.directory = ReferralCodeDirectory(self.storage, self.settings)
        self.correlation = CorrelationEngine(self.storage, self.directory, self.settings)
        self.ledger = CommissionLedger(self.storage, self.directory, self.settings)
        self.dispatcher = WebhookDispatcher(self.correlation, self.ledger)

    def verify_event(self, payload: bytes, sig_header: Optional[str]) -> WebhookEvent:
        return verify_webhook_signature(
            payload,
            sig_header,
            self.settings.stripe_webhook_secret,
            self.settings.stripe_signature_tolerance_seconds,
        )

    def handle_event(self, event: WebhookEvent) -> HandlerResult:
        return self.dispatcher.dispatch(event)

import asyncio
import functools
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware

from .exceptions import (
    InvalidStateTransitionError,
    LedgerEntryNotFoundError,
    MalformedEventError,
    PartnerNotFoundError,
    SignatureVerificationFailed,
    TransientStoreError,
    WebhookNotConfiguredError,
)
from .logging_config import get_logger, setup_logging
from .models import (
    CommissionLedgerEntry,
    PartnerCommissionSummary,
    PartnerInfo,
    PartnerLedgerResponse,
    PartnerStats,
    WebhookAck,
)
from .service import CommissionService
from .settings import Settings, settings as default_settings
from .webhooks import SIGNATURE_HEADER

logger = get_logger(__name__)


def create_app(
    service: Optional[CommissionService] = None,
    settings: Optional[Settings] = None,
    root_path: str = "",
) -> FastAPI:
    settings = settings or (service.settings if service else default_settings)
    setup_logging(settings)
    commission_service = service or CommissionService(settings=settings)

    app = FastAPI(
        title="Referral Commissions API",
        description="Stripe webhook ingestion, referral attribution and partner commission ledger",
        version="1.0.0",
        root_path=root_path,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.commission_service = commission_service

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": settings.app_name}

    @app.post("/webhooks/stripe", response_model=WebhookAck, tags=["Webhooks"])
    async def stripe_webhook(request: Request) -> WebhookAck:
        payload = await request.body()

        try:
            event = commission_service.verify_event(payload, request.headers.get(SIGNATURE_HEADER))
        except WebhookNotConfiguredError as e:
            logger.error("stripe_webhook_not_configured")
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
        except SignatureVerificationFailed as e:
            logger.warning("stripe_webhook_invalid_signature", error=str(e))
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        except MalformedEventError as e:
            logger.warning("stripe_webhook_malformed", error=str(e))
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

        loop = asyncio.get_running_loop()
        try:
            result = await asyncio.wait_for(
                loop.run_in_executor(None, functools.partial(commission_service.handle_event, event)),
                timeout=settings.webhook_timeout_seconds,
            )
        except MalformedEventError as e:
            logger.warning("stripe_webhook_malformed", event_id=event.id, error=str(e))
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        except asyncio.TimeoutError:
            logger.error("stripe_webhook_timeout", event_id=event.id, event_type=event.type)
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Event processing timed out",
            )
        except TransientStoreError as e:
            logger.error("stripe_webhook_store_unavailable", event_id=event.id, error=str(e))
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
        except Exception as e:
            logger.error("stripe_webhook_error", event_id=event.id, event_type=event.type, error=str(e))
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Error processing event",
            )

        return WebhookAck(
            event_id=event.id,
            event_type=event.type,
            outcome=result.outcome,
            detail=result.reason,
        )

    @app.get("/referral-codes/{code}/validate", response_model=PartnerInfo, tags=["Referral Codes"])
    def validate_referral_code(code: str) -> PartnerInfo:
        info = commission_service.directory.validate_referral_code(code)
        if info is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Referral code {code} is not usable")
        return info

    @app.get("/partners/{partner_id}/summary", response_model=PartnerCommissionSummary, tags=["Partners"])
    def get_partner_summary(partner_id: str) -> PartnerCommissionSummary:
        try:
            return commission_service.ledger.get_partner_summary(partner_id)
        except PartnerNotFoundError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Partner {partner_id} not found")

    @app.get("/partners/{partner_id}/ledger", response_model=PartnerLedgerResponse, tags=["Partners"])
    def get_partner_ledger(partner_id: str, limit: int = 50, offset: int = 0) -> PartnerLedgerResponse:
        return commission_service.ledger.get_partner_ledger(partner_id, limit, offset)

    @app.post("/partners/{partner_id}/stats/recompute", response_model=PartnerStats, tags=["Partners"])
    def recompute_partner_stats(partner_id: str) -> PartnerStats:
        try:
            return commission_service.ledger.recompute_partner_stats(partner_id)
        except PartnerNotFoundError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Partner {partner_id} not found")

    @app.get("/ledger/{entry_id}", response_model=CommissionLedgerEntry, tags=["Ledger"])
    def get_ledger_entry(entry_id: str) -> CommissionLedgerEntry:
        try:
            return commission_service.ledger.get_entry(entry_id)
        except LedgerEntryNotFoundError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Ledger entry {entry_id} not found")

    @app.post("/ledger/{entry_id}/mark-paid", response_model=CommissionLedgerEntry, tags=["Ledger"])
    def mark_ledger_entry_paid(entry_id: str) -> CommissionLedgerEntry:
        try:
            return commission_service.ledger.mark_paid(entry_id)
        except LedgerEntryNotFoundError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Ledger entry {entry_id} not found")
        except InvalidStateTransitionError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)

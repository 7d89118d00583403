from datetime import datetime, timezone
from typing import Optional, Union

from .logging_config import get_logger
from .models import (
    CODE_PATTERN,
    CodeResolution,
    Partner,
    PartnerInfo,
    RejectedCode,
    RejectionReason,
    ReferralCode,
    UsableCode,
    normalize_code,
)
from .settings import Settings, settings as default_settings
from .storage import PARTNERS, REFERRAL_CODES, InMemoryStorage, Transaction

logger = get_logger(__name__)

Reader = Union[InMemoryStorage, Transaction]


class ReferralCodeDirectory:
    def __init__(self, storage: InMemoryStorage, settings: Optional[Settings] = None):
        self.storage = storage
        self.settings = settings or default_settings

    def resolve(
        self,
        code: Optional[str],
        txn: Optional[Transaction] = None,
        now: Optional[datetime] = None,
    ) -> CodeResolution:
        """Check whether a code can be used right now.

        Read-only: uses are only counted once an attribution is recorded.
        Rejections are checked in order: not found, inactive, expired,
        usage limit reached, owning partner not active.
        """
        reader: Reader = txn or self.storage
        now = now or datetime.now(timezone.utc)
        normalized = normalize_code(code or "")

        if not CODE_PATTERN.match(normalized):
            return self._reject(normalized, RejectionReason.NOT_FOUND)

        code_data = reader.get(REFERRAL_CODES, normalized)
        if code_data is None:
            return self._reject(normalized, RejectionReason.NOT_FOUND)

        referral_code = ReferralCode(**code_data)
        reason = referral_code.rejection_reason(now)
        if reason is not None:
            return self._reject(normalized, reason)

        partner_data = reader.get(PARTNERS, referral_code.partner_id)
        if partner_data is None:
            return self._reject(normalized, RejectionReason.PARTNER_NOT_ACTIVE)
        partner = Partner(**partner_data)
        if not partner.is_active():
            return self._reject(normalized, RejectionReason.PARTNER_NOT_ACTIVE)

        return UsableCode(code=referral_code, partner=partner)

    def validate_referral_code(self, code: Optional[str]) -> Optional[PartnerInfo]:
        resolution = self.resolve(code)
        if isinstance(resolution, RejectedCode):
            return None

        partner = resolution.partner
        logger.info(
            "referral_code_validated",
            code=resolution.code.code,
            partner_id=partner.id,
        )
        return PartnerInfo(
            partner_id=partner.id,
            partner_code=resolution.code.code,
            partner_name=partner.display_name,
            commission_rate=self.effective_rate(resolution.code, partner),
            active=True,
        )

    def effective_rate(self, code: Optional[ReferralCode], partner: Partner) -> float:
        if code is not None and code.custom_commission_rate is not None:
            return code.custom_commission_rate
        if partner.commission_rate is not None:
            return partner.commission_rate
        return self.settings.default_commission_rate

    def record_use(self, txn: Transaction, referral_code: ReferralCode, now: datetime) -> None:
        current = txn.get(REFERRAL_CODES, referral_code.code)
        txn.update(REFERRAL_CODES, referral_code.code, {
            "uses": current["uses"] + 1,
            "last_used_at": now,
        })

    def _reject(self, code: str, reason: RejectionReason) -> RejectedCode:
        logger.info("referral_code_rejected", code=code, reason=reason.value)
        return RejectedCode(code=code, reason=reason)

import copy
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Optional, TypeVar

from .exceptions import TransactionAbortedError, TransactionConflictError
from .logging_config import get_logger
from .models import Partner, PartnerStatus, ReferralCode, normalize_code
from .settings import settings

REFERRAL_CODES = "referral_codes"
PARTNERS = "partners"
REFERRALS = "referrals"
COMMISSION_LEDGER = "commission_ledger"
CUSTOMERS = "customers"

COLLECTIONS = (REFERRAL_CODES, PARTNERS, REFERRALS, COMMISSION_LEDGER, CUSTOMERS)

T = TypeVar("T")

logger = get_logger(__name__)


class Transaction:
    """Optimistic read-modify-write scope over an InMemoryStorage.

    Every document read is pinned at the version it was first seen with;
    writes are buffered and only applied by commit() if none of the pinned
    versions moved in the meantime.
    """

    def __init__(self, storage: "InMemoryStorage"):
        self._storage = storage
        self._reads: dict[tuple[str, str], int] = {}
        self._writes: dict[tuple[str, str], dict] = {}
        self._committed = False

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        key = (collection, doc_id)
        if key in self._writes:
            return copy.deepcopy(self._writes[key])
        data, version = self._storage._read(collection, doc_id)
        self._reads.setdefault(key, version)
        return data

    def query(
        self,
        collection: str,
        field: str,
        value: Any,
        limit: Optional[int] = None,
    ) -> list[dict]:
        results = []
        for doc_id, data, version in self._storage._scan(collection, field, value, limit):
            key = (collection, doc_id)
            self._reads.setdefault(key, version)
            if key in self._writes:
                data = copy.deepcopy(self._writes[key])
            results.append(data)
        return results

    def set(self, collection: str, doc_id: str, data: dict) -> None:
        self._writes[(collection, doc_id)] = copy.deepcopy(data)

    def create(self, collection: str, doc_id: str, data: dict) -> None:
        if self.get(collection, doc_id) is not None:
            raise ValueError(f"{collection}/{doc_id} already exists")
        self.set(collection, doc_id, data)

    def update(self, collection: str, doc_id: str, fields: dict) -> None:
        current = self.get(collection, doc_id)
        if current is None:
            raise ValueError(f"{collection}/{doc_id} does not exist")
        current.update(copy.deepcopy(fields))
        self._writes[(collection, doc_id)] = current

    def commit(self) -> None:
        if self._committed:
            raise RuntimeError("transaction already committed")
        self._storage._commit(self._reads, self._writes)
        self._committed = True


class InMemoryStorage:
    def __init__(self, max_attempts: Optional[int] = None):
        self.collections: dict[str, dict[str, dict]] = {name: {} for name in COLLECTIONS}
        self._versions: dict[tuple[str, str], int] = {}
        self._lock = threading.RLock()
        self.max_attempts = max_attempts or settings.transaction_max_attempts

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        data, _ = self._read(collection, doc_id)
        return data

    def query(
        self,
        collection: str,
        field: str,
        value: Any,
        limit: Optional[int] = None,
    ) -> list[dict]:
        return [data for _, data, _ in self._scan(collection, field, value, limit)]

    def transaction(self) -> Transaction:
        return Transaction(self)

    def run_transaction(self, fn: Callable[[Transaction], T], max_attempts: Optional[int] = None) -> T:
        attempts = max_attempts or self.max_attempts
        for attempt in range(1, attempts + 1):
            txn = self.transaction()
            result = fn(txn)
            try:
                txn.commit()
            except TransactionConflictError as e:
                logger.warning(
                    "transaction_conflict",
                    attempt=attempt,
                    max_attempts=attempts,
                    error=str(e),
                )
                continue
            return result
        raise TransactionAbortedError(f"Transaction aborted after {attempts} conflicting attempts")

    def add_partner(
        self,
        partner_id: str,
        commission_rate: Optional[float] = None,
        status: PartnerStatus = PartnerStatus.ACTIVE,
        display_name: Optional[str] = None,
    ) -> Partner:
        now = datetime.now(timezone.utc)
        partner = Partner(
            id=partner_id,
            display_name=display_name,
            commission_rate=commission_rate,
            status=status,
            created_at=now,
            updated_at=now,
        )
        self.run_transaction(lambda txn: txn.set(PARTNERS, partner.id, partner.model_dump()))
        return partner

    def add_referral_code(
        self,
        code: str,
        partner_id: str,
        active: bool = True,
        expires_at: Optional[datetime] = None,
        max_uses: Optional[int] = None,
        uses: int = 0,
        custom_commission_rate: Optional[float] = None,
    ) -> ReferralCode:
        referral_code = ReferralCode(
            code=normalize_code(code),
            partner_id=partner_id,
            active=active,
            created_at=datetime.now(timezone.utc),
            expires_at=expires_at,
            max_uses=max_uses,
            uses=uses,
            custom_commission_rate=custom_commission_rate,
        )
        self.run_transaction(
            lambda txn: txn.set(REFERRAL_CODES, referral_code.code, referral_code.model_dump())
        )
        return referral_code

    def seed_demo_data(self) -> None:
        self.add_partner("P1", commission_rate=0.70, display_name="Demo Partner")
        self.add_referral_code("SAVE20", "P1")

    def _read(self, collection: str, doc_id: str) -> tuple[Optional[dict], int]:
        with self._lock:
            data = self.collections[collection].get(doc_id)
            version = self._versions.get((collection, doc_id), 0)
            return copy.deepcopy(data), version

    def _scan(
        self,
        collection: str,
        field: str,
        value: Any,
        limit: Optional[int],
    ) -> list[tuple[str, dict, int]]:
        with self._lock:
            matches = []
            for doc_id, data in self.collections[collection].items():
                if data.get(field) != value:
                    continue
                matches.append((doc_id, copy.deepcopy(data), self._versions.get((collection, doc_id), 0)))
                if limit is not None and len(matches) >= limit:
                    break
            return matches

    def _commit(self, reads: dict[tuple[str, str], int], writes: dict[tuple[str, str], dict]) -> None:
        with self._lock:
            for (collection, doc_id), version in reads.items():
                if self._versions.get((collection, doc_id), 0) != version:
                    raise TransactionConflictError(f"{collection}/{doc_id} changed during transaction")
            for (collection, doc_id), data in writes.items():
                self.collections[collection][doc_id] = data
                self._versions[(collection, doc_id)] = self._versions.get((collection, doc_id), 0) + 1

"""
In-memory request store
Used for local development, tests and single-process deployments
"""

import asyncio
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pinpay.database.store import RequestStore
from pinpay.models import (
    ACTIVE_STATUSES,
    PaymentAuthorizationRequest,
    RequestStatus,
    UpdateResult,
)
from pinpay.payments.issuer import PinIssuer


class InMemoryRequestStore(RequestStore):
    """
    Dict-backed store with one lock per request id.

    Inserts share a single lock so the live-PIN check and the insert are
    atomic. Records handed out are copies.
    """

    def __init__(
        self,
        issuer: PinIssuer,
        pin_max_attempts: int = 10,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(issuer, pin_max_attempts=pin_max_attempts, clock=clock)
        self._records: Dict[str, PaymentAuthorizationRequest] = {}
        # PIN -> request ids in creation order
        self._pin_index: Dict[str, List[str]] = {}
        self._row_locks: Dict[str, asyncio.Lock] = {}
        self._insert_lock = asyncio.Lock()

    async def _insert_if_pin_free(self, request: PaymentAuthorizationRequest) -> bool:
        async with self._insert_lock:
            for request_id in self._pin_index.get(request.pin, []):
                if self._records[request_id].status in ACTIVE_STATUSES:
                    return False

            self._records[request.id] = request.model_copy(deep=True)
            self._pin_index.setdefault(request.pin, []).append(request.id)
            self._row_locks[request.id] = asyncio.Lock()
            return True

    async def get(self, request_id: str) -> Optional[PaymentAuthorizationRequest]:
        record = self._records.get(request_id)
        return record.model_copy(deep=True) if record else None

    async def get_by_pin(
        self,
        pin: str,
        nonce: Optional[str] = None,
    ) -> Optional[PaymentAuthorizationRequest]:
        candidates = [self._records[i] for i in self._pin_index.get(pin, [])]
        if nonce is not None:
            candidates = [c for c in candidates if c.nonce == nonce.lower()]
        if not candidates:
            return None

        active = [c for c in candidates if c.status in ACTIVE_STATUSES]
        chosen = active[-1] if active else candidates[-1]
        return chosen.model_copy(deep=True)

    async def compare_and_update(
        self,
        request_id: str,
        expected_status: RequestStatus,
        mutation: Dict[str, Any],
        *,
        unless_set: Optional[str] = None,
        not_expired_at: Optional[int] = None,
    ) -> UpdateResult:
        self.check_mutation(mutation)

        lock = self._row_locks.get(request_id)
        if lock is None:
            return UpdateResult.NOT_FOUND

        async with lock:
            current = self._records[request_id]
            if current.status != expected_status:
                return UpdateResult.CONFLICT
            if unless_set is not None and getattr(current, unless_set) is not None:
                return UpdateResult.CONFLICT
            if not_expired_at is not None and current.valid_before < not_expired_at:
                return UpdateResult.CONFLICT

            self._records[request_id] = current.model_copy(update=mutation)
            return UpdateResult.OK

    async def list_expirable(self, now: int, limit: int = 100) -> List[PaymentAuthorizationRequest]:
        stale = [
            r for r in self._records.values()
            if r.status in ACTIVE_STATUSES and r.valid_before < now and r.submitted_at is None
        ]
        stale.sort(key=lambda r: r.valid_before)
        return [r.model_copy(deep=True) for r in stale[:limit]]

    async def list_stale_claims(
        self,
        claimed_before: datetime,
        limit: int = 100,
    ) -> List[PaymentAuthorizationRequest]:
        claimed = [
            r for r in self._records.values()
            if r.status == RequestStatus.SIGNED
            and r.submitted_at is not None
            and r.submitted_at < claimed_before
        ]
        claimed.sort(key=lambda r: r.submitted_at)
        return [r.model_copy(deep=True) for r in claimed[:limit]]

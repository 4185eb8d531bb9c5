"""
Expiry and idempotency guard
Marks requests that outlive their validity window as expired
"""

import time
from typing import Callable, Optional

import structlog

from pinpay.database.store import RequestStore
from pinpay.lifecycle import RequestLifecycle
from pinpay.models import PaymentAuthorizationRequest, RequestStatus, UpdateResult, utc_datetime

logger = structlog.get_logger()


class ExpiryGuard:
    """
    Cooperative expiry for pending and signed requests.

    Expiry is best effort and always goes through the lifecycle's
    conditional update, so it never overwrites a transition that won the
    race. A signed request whose relay attempt has been claimed is never
    expired; release_stale_claims fails it once the claim times out.
    """

    def __init__(
        self,
        store: RequestStore,
        lifecycle: RequestLifecycle,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.lifecycle = lifecycle
        self.clock = clock

    def now(self) -> int:
        return int(self.clock())

    def is_past_deadline(self, request: PaymentAuthorizationRequest, now: Optional[int] = None) -> bool:
        return (self.now() if now is None else now) > request.valid_before

    def is_not_yet_valid(self, request: PaymentAuthorizationRequest, now: Optional[int] = None) -> bool:
        return (self.now() if now is None else now) < request.valid_after

    async def expire(self, request: PaymentAuthorizationRequest) -> bool:
        """
        Try to flip a stale request to EXPIRED

        Returns:
            True if this call performed the transition
        """
        if request.status == RequestStatus.PENDING:
            result = await self.lifecycle.transition(
                request.id, RequestStatus.PENDING, RequestStatus.EXPIRED
            )
        elif request.status == RequestStatus.SIGNED:
            result = await self.lifecycle.transition(
                request.id,
                RequestStatus.SIGNED,
                RequestStatus.EXPIRED,
                unless_set="submitted_at",
            )
        else:
            return False

        if result == UpdateResult.OK:
            logger.info(
                "payment_request_expired",
                request_id=request.id,
                previous_status=request.status.value,
                valid_before=request.valid_before,
            )
            return True
        return False

    async def sweep(self, limit: int = 100) -> int:
        """
        Expire stale requests in one batch

        Returns:
            Number of requests expired by this sweep
        """
        expired = 0
        for request in await self.store.list_expirable(self.now(), limit=limit):
            if await self.expire(request):
                expired += 1

        if expired:
            logger.info("expiry_sweep_completed", expired=expired)
        return expired

    async def release_stale_claims(self, claim_timeout: float, limit: int = 100) -> int:
        """
        Fail signed requests whose relay attempt was claimed but never resolved

        A claim outlives its submitter when the process dies mid-relay or the
        outcome could not be recorded. The transfer may still have landed,
        so the recorded reason names the nonce to check on-chain.

        Returns:
            Number of requests marked failed
        """
        now = self.clock()
        released = 0
        for request in await self.store.list_stale_claims(utc_datetime(now - claim_timeout), limit=limit):
            result = await self.lifecycle.transition(
                request.id,
                RequestStatus.SIGNED,
                RequestStatus.FAILED,
                {
                    "result_reference": (
                        f"Relay attempt abandoned after {claim_timeout:g}s; "
                        f"check nonce {request.nonce} on-chain"
                    ),
                    "completed_at": utc_datetime(now),
                },
            )
            if result == UpdateResult.OK:
                logger.warning(
                    "stale_relay_claim_released",
                    request_id=request.id,
                    submitted_at=request.submitted_at.isoformat(),
                )
                released += 1
        return released

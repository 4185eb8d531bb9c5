"""
Authorization capture
Attaches a payer's signature to the request a PIN points at
"""

import structlog

from pinpay.database.store import RequestStore
from pinpay.lifecycle import RequestLifecycle
from pinpay.log import mask_pin
from pinpay.models import (
    CaptureOutcome,
    CaptureResult,
    RequestStatus,
    Signature,
    UpdateResult,
    checksum_address,
    utc_datetime,
)
from pinpay.payments.expiry import ExpiryGuard

logger = structlog.get_logger()


class AuthorizationCapture:
    """
    Records signatures without verifying them.

    The token contract recovers the signer inside transferWithAuthorization
    and is the only check that protects funds, so capture is pure
    bookkeeping: one signature per request, never after the deadline.
    """

    def __init__(self, store: RequestStore, lifecycle: RequestLifecycle, guard: ExpiryGuard):
        self.store = store
        self.lifecycle = lifecycle
        self.guard = guard

    async def attach_signature(
        self,
        pin: str,
        payer_address: str,
        signature: Signature,
    ) -> CaptureOutcome:
        """
        Attach a signature to the pending request for a PIN

        Returns:
            The outcome (OK, EXPIRED, ALREADY_RESOLVED or NOT_FOUND) with
            the id of the request the PIN resolved to
        """
        payer = checksum_address(payer_address)
        request = await self.store.get_by_pin(pin)

        if request is None:
            logger.info("signature_capture_not_found", pin=mask_pin(pin))
            return CaptureOutcome(status=CaptureResult.NOT_FOUND)

        if request.status == RequestStatus.EXPIRED:
            return CaptureOutcome(status=CaptureResult.EXPIRED, request_id=request.id)
        if request.is_terminal:
            return CaptureOutcome(status=CaptureResult.ALREADY_RESOLVED, request_id=request.id)

        now = self.guard.now()
        if self.guard.is_past_deadline(request, now):
            await self.guard.expire(request)
            logger.info("signature_capture_expired", request_id=request.id)
            return CaptureOutcome(status=CaptureResult.EXPIRED, request_id=request.id)

        result = await self.lifecycle.transition(
            request.id,
            RequestStatus.PENDING,
            RequestStatus.SIGNED,
            {
                "payer_address": payer,
                "signature": signature,
                "signed_at": utc_datetime(self.guard.clock()),
            },
            not_expired_at=now,
        )

        if result == UpdateResult.OK:
            logger.info("signature_captured", request_id=request.id, payer_address=payer)
            return CaptureOutcome(status=CaptureResult.OK, request_id=request.id)
        if result == UpdateResult.NOT_FOUND:
            return CaptureOutcome(status=CaptureResult.NOT_FOUND, request_id=request.id)

        current = await self.store.get(request.id)
        if current is not None and (
            current.status == RequestStatus.EXPIRED
            or (current.status == RequestStatus.PENDING and self.guard.is_past_deadline(current))
        ):
            await self.guard.expire(current)
            return CaptureOutcome(status=CaptureResult.EXPIRED, request_id=request.id)

        logger.info(
            "signature_capture_already_resolved",
            request_id=request.id,
            status=current.status.value if current else None,
        )
        return CaptureOutcome(status=CaptureResult.ALREADY_RESOLVED, request_id=request.id)

"""
Relay submission
Sends signed, still-valid requests to the relay and records the outcome
"""

import asyncio
import time
from typing import Awaitable, Callable, Optional, Union

import structlog

from pinpay.database.store import RequestStore
from pinpay.errors import RelayUnavailableError, TerminalRelayError, TransientRelayError
from pinpay.lifecycle import RequestLifecycle
from pinpay.models import (
    PaymentAuthorizationRequest,
    RequestStatus,
    UpdateResult,
    utc_datetime,
)
from pinpay.payments.expiry import ExpiryGuard
from pinpay.payments.models import AuthorizationPayload, SubmitResult, SubmitStatus
from pinpay.payments.relay import RelayClient, is_transient_relay_error
from pinpay.payments.retry import RetryPolicy, retry_with_backoff

logger = structlog.get_logger()


class RelaySubmitter:
    """
    Submits captured authorizations through a gas-sponsoring relay.

    The stored record is always re-read before acting, and the relay
    attempt is claimed with a conditional update on submitted_at, so two
    submitters racing on one request make at most one relay call.
    """

    def __init__(
        self,
        store: RequestStore,
        lifecycle: RequestLifecycle,
        guard: ExpiryGuard,
        relay: RelayClient,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.lifecycle = lifecycle
        self.guard = guard
        self.relay = relay
        self.retry_policy = retry_policy or RetryPolicy()
        self.sleep = sleep
        self.clock = clock

    async def submit(self, request: Union[PaymentAuthorizationRequest, str]) -> SubmitResult:
        """
        Relay a signed request and record COMPLETED or FAILED

        Accepts a request or its id; the caller's copy is never trusted.

        Raises:
            RelayUnavailableError: transient relay errors outlasted the retry bound
        """
        request_id = request if isinstance(request, str) else request.id
        current = await self.store.get(request_id)

        if current is None:
            return SubmitResult(request_id=request_id, status=SubmitStatus.NOT_FOUND)
        if current.status != RequestStatus.SIGNED:
            return self._not_submittable(current)

        now = self.guard.now()
        if self.guard.is_past_deadline(current, now):
            await self.guard.expire(current)
            return SubmitResult(request_id=request_id, status=SubmitStatus.EXPIRED)
        if self.guard.is_not_yet_valid(current, now):
            return SubmitResult(
                request_id=request_id,
                status=SubmitStatus.NOT_YET_VALID,
                error=f"Authorization valid after {current.valid_after}",
            )

        claim = await self.store.compare_and_update(
            request_id,
            RequestStatus.SIGNED,
            {"submitted_at": utc_datetime(self.clock())},
            unless_set="submitted_at",
            not_expired_at=now,
        )
        if claim != UpdateResult.OK:
            logger.info("relay_submission_already_claimed", request_id=request_id, result=claim.value)
            latest = await self.store.get(request_id)
            if latest is not None and latest.status == RequestStatus.SIGNED and latest.submitted_at is None:
                await self.guard.expire(latest)
                return SubmitResult(request_id=request_id, status=SubmitStatus.EXPIRED)
            return SubmitResult(request_id=request_id, status=SubmitStatus.ALREADY_RESOLVED)

        payload = AuthorizationPayload.from_request(current)
        logger.info(
            "relay_submission_started",
            request_id=request_id,
            relay=self.relay.name,
            amount=current.amount,
        )

        try:
            receipt = await retry_with_backoff(
                lambda: self.relay.execute(payload, current.signature),
                max_attempts=self.retry_policy.max_attempts,
                base_delay=self.retry_policy.base_delay,
                is_transient=is_transient_relay_error,
                sleep=self.sleep,
                operation="relay_execute",
            )
        except TerminalRelayError as e:
            reason = str(e)
            await self._record_failure(request_id, reason)
            return SubmitResult(request_id=request_id, status=SubmitStatus.FAILED, error=reason)
        except TransientRelayError as e:
            attempts = self.retry_policy.max_attempts
            await self._record_failure(request_id, f"Relay unavailable after {attempts} attempts: {e}")
            raise RelayUnavailableError(attempts, str(e)) from e
        except Exception as e:
            await self._record_failure(request_id, f"Unexpected relay error: {e}")
            raise

        result = await self.lifecycle.transition(
            request_id,
            RequestStatus.SIGNED,
            RequestStatus.COMPLETED,
            {
                "result_reference": receipt.reference,
                "completed_at": utc_datetime(self.clock()),
            },
        )
        if result != UpdateResult.OK:
            # The chain rejects a second use of the nonce, so this is bookkeeping only
            logger.warning(
                "relay_completion_conflict",
                request_id=request_id,
                reference=receipt.reference,
                result=result.value,
            )
            return SubmitResult(
                request_id=request_id,
                status=SubmitStatus.ALREADY_RESOLVED,
                reference=receipt.reference,
            )

        logger.info(
            "relay_submission_completed",
            request_id=request_id,
            reference=receipt.reference,
            task_id=receipt.task_id,
        )
        return SubmitResult(
            request_id=request_id,
            status=SubmitStatus.COMPLETED,
            reference=receipt.reference,
        )

    async def _record_failure(self, request_id: str, reason: str) -> None:
        logger.error("relay_submission_failed", request_id=request_id, reason=reason)
        result = await self.lifecycle.transition(
            request_id,
            RequestStatus.SIGNED,
            RequestStatus.FAILED,
            {
                "result_reference": reason,
                "completed_at": utc_datetime(self.clock()),
            },
        )
        if result != UpdateResult.OK:
            logger.warning("relay_failure_conflict", request_id=request_id, result=result.value)

    @staticmethod
    def _not_submittable(request: PaymentAuthorizationRequest) -> SubmitResult:
        if request.status == RequestStatus.EXPIRED:
            return SubmitResult(request_id=request.id, status=SubmitStatus.EXPIRED)
        if request.status == RequestStatus.PENDING:
            return SubmitResult(
                request_id=request.id,
                status=SubmitStatus.NOT_SIGNED,
                error="Request has not been signed",
            )
        return SubmitResult(
            request_id=request.id,
            status=SubmitStatus.ALREADY_RESOLVED,
            reference=request.result_reference,
        )

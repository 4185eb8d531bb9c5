"""
Request lifecycle state machine
Transitions: PENDING -> SIGNED -> COMPLETED/FAILED, PENDING/SIGNED -> EXPIRED
"""

import time
from typing import Any, Callable, Dict, Optional

import structlog

from pinpay.database.store import RequestStore
from pinpay.errors import InvalidTransitionError
from pinpay.models import RequestStatus, StatusChange, UpdateResult, utc_datetime
from pinpay.notifications.notifier import StatusNotifier

logger = structlog.get_logger()

ALLOWED_TRANSITIONS = {
    RequestStatus.PENDING: frozenset({RequestStatus.SIGNED, RequestStatus.EXPIRED}),
    RequestStatus.SIGNED: frozenset({
        RequestStatus.COMPLETED,
        RequestStatus.FAILED,
        RequestStatus.EXPIRED,
    }),
}


class RequestLifecycle:
    """
    Owns status transitions and their notifications.

    Every change is a compare_and_update against the status the caller
    observed, so a transition from a stale view fails with CONFLICT.
    """

    def __init__(
        self,
        store: RequestStore,
        notifier: StatusNotifier,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.notifier = notifier
        self.clock = clock

    async def transition(
        self,
        request_id: str,
        from_status: RequestStatus,
        to_status: RequestStatus,
        fields: Optional[Dict[str, Any]] = None,
        *,
        unless_set: Optional[str] = None,
        not_expired_at: Optional[int] = None,
    ) -> UpdateResult:
        """
        Move a request from one status to the next

        Raises:
            InvalidTransitionError: to_status is not reachable from from_status
        """
        if to_status not in ALLOWED_TRANSITIONS.get(from_status, frozenset()):
            raise InvalidTransitionError(from_status.value, to_status.value)

        mutation = dict(fields or {})
        mutation["status"] = to_status

        result = await self.store.compare_and_update(
            request_id,
            from_status,
            mutation,
            unless_set=unless_set,
            not_expired_at=not_expired_at,
        )

        if result == UpdateResult.OK:
            logger.info(
                "payment_request_transitioned",
                request_id=request_id,
                from_status=from_status.value,
                to_status=to_status.value,
            )
            self.notifier.publish(StatusChange(
                request_id=request_id,
                status=to_status,
                timestamp=utc_datetime(self.clock()),
            ))
        else:
            logger.debug(
                "payment_request_transition_rejected",
                request_id=request_id,
                from_status=from_status.value,
                to_status=to_status.value,
                result=result.value,
            )
        return result

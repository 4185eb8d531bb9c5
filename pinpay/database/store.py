"""
Request store interface
All status changes in PinPay go through compare_and_update
"""

import time
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import structlog

from pinpay.errors import ResourceExhaustedError
from pinpay.log import mask_pin
from pinpay.models import (
    MUTABLE_FIELDS,
    PaymentAuthorizationRequest,
    RequestStatus,
    UpdateResult,
    utc_datetime,
)
from pinpay.payments.issuer import PinIssuer

logger = structlog.get_logger()


class RequestStore(ABC):
    """
    Durable keyed storage for payment authorization requests.

    Subclasses provide the primitives; create() with PIN collision retry
    is shared. compare_and_update must be linearizable per request id and
    must not block updates to other ids.
    """

    def __init__(
        self,
        issuer: PinIssuer,
        pin_max_attempts: int = 10,
        clock: Callable[[], float] = time.time,
    ):
        self.issuer = issuer
        self.pin_max_attempts = pin_max_attempts
        self.clock = clock

    async def create(
        self,
        payee_address: str,
        amount: int,
        valid_after: int,
        valid_before: int,
    ) -> PaymentAuthorizationRequest:
        """
        Create a pending request with a PIN no live request holds

        Raises:
            ResourceExhaustedError: every attempted PIN was taken
        """
        for attempt in range(1, self.pin_max_attempts + 1):
            credentials = self.issuer.issue()
            request = PaymentAuthorizationRequest(
                id=str(uuid.uuid4()),
                pin=credentials.pin,
                nonce=credentials.nonce,
                payee_address=payee_address,
                amount=amount,
                valid_after=valid_after,
                valid_before=valid_before,
                status=RequestStatus.PENDING,
                created_at=utc_datetime(self.clock()),
            )

            if await self._insert_if_pin_free(request):
                logger.info(
                    "payment_request_created",
                    request_id=request.id,
                    pin=mask_pin(request.pin),
                    amount=request.amount,
                    valid_before=request.valid_before,
                    attempts=attempt,
                )
                return request

            logger.debug("pin_collision", pin=mask_pin(credentials.pin), attempt=attempt)

        logger.error("pin_space_exhausted", attempts=self.pin_max_attempts)
        raise ResourceExhaustedError(self.pin_max_attempts)

    @staticmethod
    def check_mutation(mutation: Dict[str, Any]) -> None:
        """Reject mutations that touch fields fixed at creation"""
        illegal = set(mutation) - MUTABLE_FIELDS
        if illegal:
            raise ValueError(f"Immutable fields in mutation: {sorted(illegal)}")

    @abstractmethod
    async def _insert_if_pin_free(self, request: PaymentAuthorizationRequest) -> bool:
        """Insert unless a pending/signed request holds the same PIN"""

    @abstractmethod
    async def get(self, request_id: str) -> Optional[PaymentAuthorizationRequest]:
        """Get request by ID"""

    @abstractmethod
    async def get_by_pin(
        self,
        pin: str,
        nonce: Optional[str] = None,
    ) -> Optional[PaymentAuthorizationRequest]:
        """
        Get the request a PIN refers to

        Prefers the most recent pending/signed request, falling back to the
        most recent request of any status. Passing nonce narrows the match
        to that single request.
        """

    @abstractmethod
    async def compare_and_update(
        self,
        request_id: str,
        expected_status: RequestStatus,
        mutation: Dict[str, Any],
        *,
        unless_set: Optional[str] = None,
        not_expired_at: Optional[int] = None,
    ) -> UpdateResult:
        """
        Apply mutation only if the stored status equals expected_status

        Args:
            request_id: Request to update
            expected_status: Status the caller observed
            mutation: Field values to write (mutable fields only)
            unless_set: Also require this field to still be null
            not_expired_at: Also require valid_before >= this timestamp

        Returns:
            OK, CONFLICT when a precondition failed, NOT_FOUND for unknown ids
        """

    @abstractmethod
    async def list_expirable(self, now: int, limit: int = 100) -> List[PaymentAuthorizationRequest]:
        """Pending/signed requests whose valid_before has passed and no relay attempt holds"""

    @abstractmethod
    async def list_stale_claims(
        self,
        claimed_before: datetime,
        limit: int = 100,
    ) -> List[PaymentAuthorizationRequest]:
        """Signed requests whose relay attempt was claimed before claimed_before"""

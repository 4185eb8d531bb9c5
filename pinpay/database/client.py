"""
Supabase request store for PinPay
Conditional updates map onto single-row UPDATE ... WHERE id = ? AND status = ?
"""

import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from postgrest.exceptions import APIError
from supabase import create_client, Client
import structlog

from pinpay.database.store import RequestStore
from pinpay.log import mask_pin
from pinpay.models import (
    ACTIVE_STATUSES,
    PaymentAuthorizationRequest,
    RequestStatus,
    UpdateResult,
    mutation_to_row,
)
from pinpay.payments.issuer import PinIssuer

logger = structlog.get_logger()

# Postgres unique_violation, raised by the partial unique index on live PINs
UNIQUE_VIOLATION = "23505"

ACTIVE_STATUS_VALUES = sorted(s.value for s in ACTIVE_STATUSES)


class SupabaseRequestStore(RequestStore):
    """
    Supabase-backed store for gasless payment requests
    """

    def __init__(
        self,
        client: Client,
        issuer: PinIssuer,
        table: str = "gasless_payment_requests",
        pin_max_attempts: int = 10,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(issuer, pin_max_attempts=pin_max_attempts, clock=clock)
        self.client = client
        self.table = table

    @classmethod
    def from_credentials(cls, supabase_url: str, supabase_key: str, **kwargs) -> "SupabaseRequestStore":
        """Create a store with its own Supabase client"""
        return cls(create_client(supabase_url, supabase_key), **kwargs)

    def _table(self):
        return self.client.table(self.table)

    async def _insert_if_pin_free(self, request: PaymentAuthorizationRequest) -> bool:
        live = (
            self._table()
            .select("id")
            .eq("pin", request.pin)
            .in_("status", ACTIVE_STATUS_VALUES)
            .limit(1)
            .execute()
        )
        if live.data:
            return False

        try:
            self._table().insert(request.to_row()).execute()
        except APIError as e:
            # Lost a race for the same PIN against another creator
            if e.code == UNIQUE_VIOLATION:
                logger.info("pin_insert_race_lost", pin=mask_pin(request.pin))
                return False
            raise
        return True

    async def get(self, request_id: str) -> Optional[PaymentAuthorizationRequest]:
        result = self._table().select("*").eq("id", request_id).execute()
        return PaymentAuthorizationRequest.from_row(result.data[0]) if result.data else None

    async def get_by_pin(
        self,
        pin: str,
        nonce: Optional[str] = None,
    ) -> Optional[PaymentAuthorizationRequest]:
        query = self._table().select("*").eq("pin", pin)
        if nonce is not None:
            query = query.eq("nonce", nonce.lower())

        result = query.order("created_at", desc=True).limit(20).execute()
        if not result.data:
            return None

        for row in result.data:
            if row["status"] in ACTIVE_STATUS_VALUES:
                return PaymentAuthorizationRequest.from_row(row)
        return PaymentAuthorizationRequest.from_row(result.data[0])

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

        query = (
            self._table()
            .update(mutation_to_row(mutation))
            .eq("id", request_id)
            .eq("status", expected_status.value)
        )
        if unless_set is not None:
            query = query.is_(unless_set, "null")
        if not_expired_at is not None:
            query = query.gte("valid_before", not_expired_at)

        result = query.execute()
        if result.data:
            return UpdateResult.OK

        exists = self._table().select("id").eq("id", request_id).execute()
        return UpdateResult.CONFLICT if exists.data else UpdateResult.NOT_FOUND

    async def list_expirable(self, now: int, limit: int = 100) -> List[PaymentAuthorizationRequest]:
        result = (
            self._table()
            .select("*")
            .in_("status", ACTIVE_STATUS_VALUES)
            .lt("valid_before", now)
            .is_("submitted_at", "null")
            .order("valid_before")
            .limit(limit)
            .execute()
        )
        return [PaymentAuthorizationRequest.from_row(row) for row in result.data]

    async def list_stale_claims(
        self,
        claimed_before: datetime,
        limit: int = 100,
    ) -> List[PaymentAuthorizationRequest]:
        result = (
            self._table()
            .select("*")
            .eq("status", RequestStatus.SIGNED.value)
            .lt("submitted_at", claimed_before.isoformat())
            .order("submitted_at")
            .limit(limit)
            .execute()
        )
        return [PaymentAuthorizationRequest.from_row(row) for row in result.data]

"""
Polling status watcher
Republishes status changes made by other processes to the local notifier
"""

import asyncio
import time
from typing import Awaitable, Callable, Optional

import structlog

from pinpay.database.store import RequestStore
from pinpay.models import RequestStatus, StatusChange, utc_datetime
from pinpay.notifications.notifier import StatusNotifier

logger = structlog.get_logger()


class StatusWatcher:
    """Short-interval polling for stores without a change feed"""

    def __init__(
        self,
        store: RequestStore,
        notifier: StatusNotifier,
        interval: float = 2.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.notifier = notifier
        self.interval = interval
        self.clock = clock
        self.sleep = sleep

    async def watch(self, request_id: str, timeout: float = 300.0) -> Optional[RequestStatus]:
        """
        Poll until the request reaches a terminal status or timeout passes

        Returns:
            Last observed status, or None if the request does not exist
        """
        deadline = self.clock() + timeout
        last: Optional[RequestStatus] = None

        while True:
            request = await self.store.get(request_id)
            if request is None:
                return last

            if request.status != last:
                if request.status != RequestStatus.PENDING:
                    self.notifier.publish(StatusChange(
                        request_id=request_id,
                        status=request.status,
                        timestamp=utc_datetime(self.clock()),
                    ))
                last = request.status

            if request.is_terminal:
                return last

            if self.clock() >= deadline:
                logger.info("status_watch_timeout", request_id=request_id, status=last.value)
                return last

            await self.sleep(self.interval)

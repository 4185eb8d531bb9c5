"""
In-process status change fan-out
Subscribers watch a single request id and receive StatusChange events
"""

import asyncio
import inspect
from collections import OrderedDict
from typing import Awaitable, Callable, Dict, List, Optional, Union

import structlog

from pinpay.models import RequestStatus, StatusChange

logger = structlog.get_logger()

StatusCallback = Callable[[StatusChange], Union[None, Awaitable[None]]]

# Position along the lifecycle; events that do not move forward are dropped
STATUS_RANK = {
    RequestStatus.PENDING: 0,
    RequestStatus.SIGNED: 1,
    RequestStatus.COMPLETED: 2,
    RequestStatus.FAILED: 2,
    RequestStatus.EXPIRED: 2,
}


class Subscription:
    """
    A live subscription to one request id.

    Events are queued and delivered by a dedicated task, so a slow
    callback never blocks the publisher and events arrive in order.
    """

    def __init__(self, notifier: "StatusNotifier", request_id: str, callback: StatusCallback):
        self.notifier = notifier
        self.request_id = request_id
        self.callback = callback
        self.queue: asyncio.Queue = asyncio.Queue()
        self.active = True
        self._task = asyncio.create_task(self._deliver())

    async def _deliver(self) -> None:
        while True:
            event = await self.queue.get()
            try:
                result = self.callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    "status_callback_failed",
                    request_id=self.request_id,
                    status=event.status.value,
                    error=str(e),
                )
            finally:
                self.queue.task_done()

    def offer(self, event: StatusChange) -> None:
        if self.active:
            self.queue.put_nowait(event)

    async def drain(self) -> None:
        """Wait until every queued event has been delivered"""
        await self.queue.join()

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self.notifier._remove(self)
        self._task.cancel()


class StatusNotifier:
    """
    Publishes each committed transition once to every live subscriber

    Delivery is at most once. A missed event is recovered by re-reading the
    store; events carry no authority on their own.
    """

    def __init__(self, max_tracked: int = 10000):
        self.max_tracked = max_tracked
        self._subscribers: Dict[str, List[Subscription]] = {}
        # request id -> rank of last published status
        self._last_rank: "OrderedDict[str, int]" = OrderedDict()

    def subscribe(self, request_id: str, callback: StatusCallback) -> Subscription:
        """Register callback for changes on request_id (requires a running loop)"""
        subscription = Subscription(self, request_id, callback)
        self._subscribers.setdefault(request_id, []).append(subscription)
        logger.debug(
            "status_subscribed",
            request_id=request_id,
            total_subscribers=len(self._subscribers[request_id]),
        )
        return subscription

    def publish(self, event: StatusChange) -> int:
        """
        Fan an event out to subscribers of its request

        Returns:
            Number of subscribers the event was queued for
        """
        rank = STATUS_RANK[event.status]
        last = self._last_rank.get(event.request_id, 0)
        if rank <= last:
            logger.debug(
                "status_event_dropped",
                request_id=event.request_id,
                status=event.status.value,
            )
            return 0

        self._last_rank[event.request_id] = rank
        self._last_rank.move_to_end(event.request_id)
        while len(self._last_rank) > self.max_tracked:
            self._last_rank.popitem(last=False)

        subscribers = list(self._subscribers.get(event.request_id, []))
        for subscription in subscribers:
            subscription.offer(event)
        return len(subscribers)

    def subscriber_count(self, request_id: Optional[str] = None) -> int:
        if request_id is not None:
            return len(self._subscribers.get(request_id, []))
        return sum(len(s) for s in self._subscribers.values())

    def _remove(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.request_id)
        if not subscribers:
            return
        if subscription in subscribers:
            subscribers.remove(subscription)
        if not subscribers:
            del self._subscribers[subscription.request_id]

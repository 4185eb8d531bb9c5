"""
WebSocket bridge for status notifications
Lets a terminal or wallet watch a request in real time
"""

from typing import Dict, Set

from fastapi import WebSocket
import structlog

from pinpay.models import PaymentAuthorizationRequest, StatusChange
from pinpay.notifications.notifier import StatusNotifier, Subscription

logger = structlog.get_logger()


class WebSocketManager:
    """
    Manages WebSocket connections subscribed to request status

    Features:
    - Current status snapshot on connect
    - One notifier subscription per connection
    - Cleanup of connections that fail to receive
    """

    def __init__(self, notifier: StatusNotifier):
        self.notifier = notifier
        self._subscriptions: Dict[WebSocket, Subscription] = {}
        self.active_connections: Set[WebSocket] = set()

    async def connect(self, websocket: WebSocket, request: PaymentAuthorizationRequest) -> None:
        """
        Accept a connection and start forwarding status changes

        Args:
            websocket: WebSocket connection
            request: Current view of the request being watched
        """
        await websocket.accept()
        self.active_connections.add(websocket)

        await websocket.send_json({
            "type": "snapshot",
            "data": {
                "request_id": request.id,
                "status": request.status.value,
                "result_reference": request.result_reference,
            },
        })

        async def forward(event: StatusChange) -> None:
            try:
                await websocket.send_json({"type": "status", "data": event.model_dump(mode="json")})
            except Exception as e:
                logger.info("websocket_send_failed", request_id=event.request_id, error=str(e))
                self.disconnect(websocket)

        self._subscriptions[websocket] = self.notifier.subscribe(request.id, forward)
        logger.info(
            "websocket_connected",
            request_id=request.id,
            total_subscribers=self.notifier.subscriber_count(request.id),
        )

    def disconnect(self, websocket: WebSocket) -> None:
        """Handle WebSocket disconnection"""
        self.active_connections.discard(websocket)
        subscription = self._subscriptions.pop(websocket, None)
        if subscription is not None:
            subscription.unsubscribe()
            logger.info(
                "websocket_disconnected",
                request_id=subscription.request_id,
                remaining_subscribers=self.notifier.subscriber_count(subscription.request_id),
            )

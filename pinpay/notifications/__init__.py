"""
Status change notifications for PinPay
"""

from pinpay.notifications.notifier import StatusNotifier, Subscription
from pinpay.notifications.watcher import StatusWatcher
from pinpay.notifications.websocket import WebSocketManager

__all__ = ["StatusNotifier", "Subscription", "StatusWatcher", "WebSocketManager"]

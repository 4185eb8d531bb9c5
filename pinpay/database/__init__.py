"""
Request storage layer for PinPay
"""

from pinpay.database.store import RequestStore
from pinpay.database.memory import InMemoryRequestStore
from pinpay.database.client import SupabaseRequestStore

__all__ = ["RequestStore", "InMemoryRequestStore", "SupabaseRequestStore"]

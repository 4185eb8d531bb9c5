"""
PinPay gateway service: component wiring and HTTP/WebSocket surface
"""

from pinpay.gateway.service import PaymentGateway, build_gateway

__all__ = ["PaymentGateway", "build_gateway"]

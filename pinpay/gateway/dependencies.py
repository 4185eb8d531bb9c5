from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address
import structlog

from pinpay.gateway.service import PaymentGateway

logger = structlog.get_logger()

# PINs are short; lookups and signature attempts are rate limited per client
limiter = Limiter(key_func=get_remote_address)


def get_gateway(request: Request) -> PaymentGateway:
    """Gateway built in the app lifespan"""
    return request.app.state.gateway

from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from pinpay import __version__
from pinpay.gateway.dependencies import get_gateway
from pinpay.gateway.service import PaymentGateway

router = APIRouter(tags=["General"])


@router.get("/")
async def root(gateway: PaymentGateway = Depends(get_gateway)):
    """Root endpoint with basic info"""
    return {
        "name": "PinPay Gateway",
        "version": __version__,
        "status": "operational",
        "chain_id": gateway.domain.chain_id,
        "token": gateway.domain.verifying_contract,
        "token_name": gateway.domain.name,
        "token_decimals": gateway.config.token_decimals,
    }


@router.get("/health")
async def health_check(gateway: PaymentGateway = Depends(get_gateway)):
    """Health check endpoint"""
    return {
        "status": "healthy",
        "relay": gateway.relay.name,
        "store": type(gateway.store).__name__,
        "subscribers": gateway.notifier.subscriber_count(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

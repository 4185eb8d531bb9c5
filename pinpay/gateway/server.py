"""
PinPay Gateway Server
FastAPI surface for merchant terminals and payer wallets
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
import structlog

from pinpay import __version__
from pinpay.config import GatewayConfig, get_gateway_config
from pinpay.errors import RelayUnavailableError, ResourceExhaustedError
from pinpay.gateway.dependencies import limiter
from pinpay.gateway.routers import general, requests
from pinpay.gateway.service import PaymentGateway, build_gateway
from pinpay.gateway.tasks import run_expiry_sweeper
from pinpay.log import configure_logging
from pinpay.notifications import WebSocketManager

logger = structlog.get_logger()


def create_app(
    config: Optional[GatewayConfig] = None,
    gateway: Optional[PaymentGateway] = None,
) -> FastAPI:
    """
    Create the gateway app

    A prebuilt gateway may be passed in; otherwise one is built from config
    when the app starts.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifecycle manager for the FastAPI app"""
        cfg = gateway.config if gateway is not None else (config or get_gateway_config())
        configure_logging(cfg.log_level, cfg.log_format)

        app.state.gateway = gateway or build_gateway(cfg)
        app.state.websocket_manager = WebSocketManager(app.state.gateway.notifier)

        sweeper = None
        if cfg.expiry_sweep_enabled:
            sweeper = asyncio.create_task(
                run_expiry_sweeper(app.state.gateway, interval=cfg.expiry_sweep_interval)
            )

        logger.info(
            "gateway_starting",
            host=cfg.gateway_host,
            port=cfg.gateway_port,
            chain_id=cfg.chain_id,
            relay_mode=cfg.relay_mode,
        )
        yield

        if sweeper is not None:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass
        await app.state.gateway.aclose()
        logger.info("gateway_shutting_down")

    settings = gateway.config if gateway is not None else (config or get_gateway_config())

    app = FastAPI(
        title="PinPay Gateway",
        description="PIN rendezvous and gasless relay for EIP-3009 payment authorizations",
        version=__version__,
        lifespan=lifespan,
    )

    limiter.enabled = settings.rate_limit_enabled
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ResourceExhaustedError)
    async def resource_exhausted_handler(request: Request, exc: ResourceExhaustedError):
        logger.error("request_creation_exhausted", attempts=exc.attempts)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "No free PIN available, try again"},
        )

    @app.exception_handler(RelayUnavailableError)
    async def relay_unavailable_handler(request: Request, exc: RelayUnavailableError):
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={"detail": str(exc)},
        )

    app.include_router(general.router)
    app.include_router(requests.router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    config = get_gateway_config()

    uvicorn.run(
        "pinpay.gateway.server:app",
        host=config.gateway_host,
        port=config.gateway_port,
        log_level=config.log_level.lower()
    )

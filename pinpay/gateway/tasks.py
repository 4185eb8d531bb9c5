import asyncio
import structlog

from pinpay.gateway.service import PaymentGateway

logger = structlog.get_logger()


async def run_expiry_sweeper(gateway: PaymentGateway, interval: float = 60.0):
    """Background task to expire stale requests and release abandoned relay claims"""
    while True:
        try:
            await asyncio.sleep(interval)

            expired = await gateway.sweep_expired()
            if expired > 0:
                logger.info("stale_requests_expired", count=expired)

            # Claims left behind by a submitter that never recorded an outcome
            try:
                released = await gateway.release_stale_claims()
                if released > 0:
                    logger.warning("stale_relay_claims_released", count=released)
            except Exception as e:
                logger.error("stale_claims_release_error", error=str(e))

        except asyncio.CancelledError:
            logger.info("expiry_sweeper_stopped")
            raise
        except Exception as e:
            logger.error("expiry_sweeper_error", error=str(e))
            # Back off so a store outage does not flood the logs
            await asyncio.sleep(interval)

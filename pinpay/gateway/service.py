"""
PinPay gateway service
Wires the store, lifecycle, capture and relay components together once per process
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Union

import structlog

from pinpay.config import GatewayConfig
from pinpay.database import InMemoryRequestStore, RequestStore, SupabaseRequestStore
from pinpay.lifecycle import RequestLifecycle
from pinpay.models import CaptureOutcome, PaymentAuthorizationRequest, Signature
from pinpay.notifications import StatusNotifier, StatusWatcher, Subscription
from pinpay.notifications.notifier import StatusCallback
from pinpay.payments.capture import AuthorizationCapture
from pinpay.payments.expiry import ExpiryGuard
from pinpay.payments.issuer import PinIssuer
from pinpay.payments.models import AuthorizationPayload, SubmitResult
from pinpay.payments.relay import (
    DirectRelayClient,
    GelatoRelayClient,
    RelayClient,
    SimulatedRelayClient,
)
from pinpay.payments.retry import RetryPolicy
from pinpay.payments.submitter import RelaySubmitter
from pinpay.payments.typed_data import TokenDomain, build_typed_data

logger = structlog.get_logger()


@dataclass
class PaymentGateway:
    """Facade over the PinPay components for merchant and payer applications"""
    config: GatewayConfig
    domain: TokenDomain
    store: RequestStore
    notifier: StatusNotifier
    lifecycle: RequestLifecycle
    guard: ExpiryGuard
    capture: AuthorizationCapture
    relay: RelayClient
    submitter: RelaySubmitter
    watcher: StatusWatcher
    clock: Callable[[], float] = time.time

    async def create_request(
        self,
        payee_address: str,
        amount: int,
        valid_after: Optional[int] = None,
        valid_before: Optional[int] = None,
        ttl_seconds: Optional[int] = None,
    ) -> PaymentAuthorizationRequest:
        """
        Create a pending request

        The window defaults to [0, now + ttl]; ttl falls back to the
        configured default when neither valid_before nor ttl_seconds is given.
        """
        if valid_before is None:
            ttl = ttl_seconds if ttl_seconds is not None else self.config.default_ttl_seconds
            valid_before = int(self.clock()) + ttl
        return await self.store.create(
            payee_address=payee_address,
            amount=amount,
            valid_after=valid_after if valid_after is not None else 0,
            valid_before=valid_before,
        )

    async def get_request(self, request_id: str) -> Optional[PaymentAuthorizationRequest]:
        return await self.store.get(request_id)

    async def lookup(self, pin: str, nonce: Optional[str] = None) -> Optional[PaymentAuthorizationRequest]:
        """Find the request for a PIN, flipping it to expired if it is stale"""
        request = await self.store.get_by_pin(pin, nonce=nonce)
        if request is not None and not request.is_terminal and self.guard.is_past_deadline(request):
            if await self.guard.expire(request):
                request = await self.store.get(request.id)
        return request

    def typed_data_for(self, request: PaymentAuthorizationRequest, payer_address: str) -> dict:
        """EIP-712 message the payer signs for this request"""
        payload = AuthorizationPayload.from_request(request, payer_address=payer_address)
        return build_typed_data(self.domain, payload)

    async def attach_signature(self, pin: str, payer_address: str, signature: Signature) -> CaptureOutcome:
        return await self.capture.attach_signature(pin, payer_address, signature)

    async def submit(self, request: Union[PaymentAuthorizationRequest, str]) -> SubmitResult:
        return await self.submitter.submit(request)

    def subscribe(self, request_id: str, callback: StatusCallback) -> Subscription:
        return self.notifier.subscribe(request_id, callback)

    async def watch(self, request_id: str, timeout: float = 300.0):
        """Poll the store for changes made by other processes until the request settles"""
        return await self.watcher.watch(request_id, timeout=timeout)

    async def sweep_expired(self) -> int:
        return await self.guard.sweep(limit=self.config.expiry_sweep_batch)

    async def release_stale_claims(self) -> int:
        return await self.guard.release_stale_claims(
            self.config.relay_claim_timeout,
            limit=self.config.expiry_sweep_batch,
        )

    async def aclose(self) -> None:
        await self.relay.aclose()


def build_relay(config: GatewayConfig, domain: TokenDomain) -> RelayClient:
    """Create the relay client selected by relay_mode"""
    if config.relay_mode == "gelato":
        return GelatoRelayClient(
            api_key=config.gelato_api_key,
            token_address=config.token_address,
            chain_id=config.chain_id,
            base_url=config.gelato_api_url,
            poll_interval=config.relay_poll_interval,
            poll_timeout=config.relay_poll_timeout,
            http_timeout=config.relay_http_timeout,
        )
    if config.relay_mode == "direct":
        return DirectRelayClient(
            private_key=config.relayer_private_key,
            domain=domain,
            rpc_url=config.rpc_url,
            gas_limit=config.gas_limit,
            tx_timeout_seconds=config.tx_timeout_seconds,
        )
    return SimulatedRelayClient()


def build_store(config: GatewayConfig, issuer: PinIssuer, clock: Callable[[], float]) -> RequestStore:
    """Supabase when configured, in-memory otherwise"""
    if config.supabase_enabled:
        return SupabaseRequestStore.from_credentials(
            config.supabase_url,
            config.supabase_key,
            issuer=issuer,
            table=config.requests_table,
            pin_max_attempts=config.pin_max_attempts,
            clock=clock,
        )
    logger.warning("using_in_memory_store", message="Requests will not survive a restart")
    return InMemoryRequestStore(issuer, pin_max_attempts=config.pin_max_attempts, clock=clock)


def build_gateway(
    config: GatewayConfig,
    *,
    store: Optional[RequestStore] = None,
    relay: Optional[RelayClient] = None,
    clock: Callable[[], float] = time.time,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> PaymentGateway:
    """
    Construct every component once and wire them by reference

    store and relay may be injected; otherwise they are built from config.
    """
    domain = TokenDomain.from_config(config)
    issuer = PinIssuer(pin_length=config.pin_length)
    store = store or build_store(config, issuer, clock)
    relay = relay or build_relay(config, domain)

    notifier = StatusNotifier()
    lifecycle = RequestLifecycle(store, notifier, clock=clock)
    guard = ExpiryGuard(store, lifecycle, clock=clock)
    capture = AuthorizationCapture(store, lifecycle, guard)
    submitter = RelaySubmitter(
        store,
        lifecycle,
        guard,
        relay,
        retry_policy=RetryPolicy(
            max_attempts=config.relay_max_attempts,
            base_delay=config.relay_base_delay,
        ),
        sleep=sleep,
        clock=clock,
    )
    watcher = StatusWatcher(store, notifier, interval=config.relay_poll_interval, clock=clock, sleep=sleep)

    logger.info(
        "gateway_built",
        store=type(store).__name__,
        relay=relay.name,
        chain_id=config.chain_id,
        token=domain.verifying_contract,
    )
    return PaymentGateway(
        config=config,
        domain=domain,
        store=store,
        notifier=notifier,
        lifecycle=lifecycle,
        guard=guard,
        capture=capture,
        relay=relay,
        submitter=submitter,
        watcher=watcher,
        clock=clock,
    )

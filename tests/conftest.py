"""
Pytest configuration and shared fixtures
"""

import pytest
from eth_account import Account

from pinpay.config import GatewayConfig
from pinpay.database import InMemoryRequestStore
from pinpay.lifecycle import RequestLifecycle
from pinpay.notifications import StatusNotifier
from pinpay.payments.capture import AuthorizationCapture
from pinpay.payments.expiry import ExpiryGuard
from pinpay.payments.issuer import PinIssuer
from pinpay.payments.typed_data import TokenDomain
from tests.factories import FakeClock, PAYEE_KEY, PAYER_KEY


@pytest.fixture
def clock() -> FakeClock:
    """Controllable clock shared by every component under test"""
    return FakeClock()


@pytest.fixture
def issuer() -> PinIssuer:
    return PinIssuer()


@pytest.fixture
def store(issuer, clock) -> InMemoryRequestStore:
    """Fresh in-memory request store"""
    return InMemoryRequestStore(issuer, clock=clock)


@pytest.fixture
def notifier() -> StatusNotifier:
    return StatusNotifier()


@pytest.fixture
def lifecycle(store, notifier, clock) -> RequestLifecycle:
    return RequestLifecycle(store, notifier, clock=clock)


@pytest.fixture
def guard(store, lifecycle, clock) -> ExpiryGuard:
    return ExpiryGuard(store, lifecycle, clock=clock)


@pytest.fixture
def capture(store, lifecycle, guard) -> AuthorizationCapture:
    return AuthorizationCapture(store, lifecycle, guard)


@pytest.fixture
def payee_account():
    """Merchant account"""
    return Account.from_key(PAYEE_KEY)


@pytest.fixture
def payer_account():
    """Payer wallet account"""
    return Account.from_key(PAYER_KEY)


@pytest.fixture
def domain() -> TokenDomain:
    """JPYC on Polygon"""
    return TokenDomain.from_config(GatewayConfig())


@pytest.fixture
def test_config() -> GatewayConfig:
    """Config with background work and rate limits off"""
    return GatewayConfig(
        rate_limit_enabled=False,
        expiry_sweep_enabled=False,
        relay_base_delay=0.0,
        relay_max_attempts=2,
    )

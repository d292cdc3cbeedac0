from unittest.mock import Mock

import pytest

from app.services.idempotency_service import MemoryIdempotencyLedger
from app.services.ingress_service import MessagePipeline, TenantContext
from app.services.rate_limiter import MemoryRateLimiter
from app.services.settings_service import MerchantConfig
from tests.fakes import MERCHANT_ID, FakeGenerator, FakeKnowledge, FakeMessenger, FakeSettingsProvider, FakeStore


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def messenger():
    return FakeMessenger()


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def knowledge():
    return FakeKnowledge()


@pytest.fixture
def merchant_config():
    return MerchantConfig(merchant_id=MERCHANT_ID)


@pytest.fixture
def tenant():
    return TenantContext(merchant_id=MERCHANT_ID, channel_access_token="test-token")


@pytest.fixture
def pipeline(store, messenger, generator, knowledge, merchant_config):
    return MessagePipeline(
        ledger=MemoryIdempotencyLedger(ttl_seconds=86400, lease_seconds=120),
        rate_limiter=MemoryRateLimiter(max_requests=20, window_seconds=60),
        settings_provider=FakeSettingsProvider(merchant_config),
        knowledge=knowledge,
        store=store,
        generator=generator,
        messenger_factory=lambda token: messenger,
        session_factory=Mock(),
    )

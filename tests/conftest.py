"""Pytest bootstrap configuration.

Ensure mandatory environment variables are set before test collection
and module imports that depend on application settings.
"""
import os

# Mandatory secret key for settings validation
os.environ.setdefault("SECRET_KEY", "test-secret-key")
# Keep the module-level engine off PostgreSQL during tests
os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("DEBUG", "false")

import pytest

from core.settings import LendingSettings, ReturnRetrySettings
from domain.lending.entity import UserRole
from infrastructure.cache.transaction_lock import InProcessTransactionLocker

from fakes import FakeGateway, InMemoryStore, MemoryFailureSink, uow_factory_for


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def uow_factory(store):
    return uow_factory_for(store)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def locker():
    return InProcessTransactionLocker()


@pytest.fixture
def failure_sink():
    return MemoryFailureSink()


@pytest.fixture
def lending_config():
    return LendingSettings(
        public_base_url="https://gemach.test",
        return_retry=ReturnRetrySettings(max_retries=3, initial_delay_ms=1, max_delay_ms=5),
    )


@pytest.fixture
def location(store):
    return store.add_location(deposit_amount=2000, fee_bps=300)


@pytest.fixture
def other_location(store):
    return store.add_location(deposit_amount=2000, fee_bps=300, name="Oak Ave Gemach")


@pytest.fixture
def admin(store):
    return store.add_user(UserRole.ADMIN, is_admin=True)


@pytest.fixture
def operator(store, location):
    return store.add_user(UserRole.OPERATOR, location_id=location.id)


@pytest.fixture
def other_operator(store, other_location):
    return store.add_user(UserRole.OPERATOR, location_id=other_location.id)

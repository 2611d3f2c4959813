"""Pytest configuration and fixtures for ledger core tests.

Provides reusable fixtures for the store adapters, caller identities,
a controllable clock, Redis, etc.
"""

from datetime import datetime, timedelta, timezone

import pytest
import redis

from pharmaledger.auth.identity import StaticIdentity
from pharmaledger.config import settings
from pharmaledger.database import init_ledger_schema, make_engine, make_session_factory
from pharmaledger.services.ledger import PharmaLedgerService
from pharmaledger.store.memory import InMemoryBatchRepository
from pharmaledger.store.sql import SqlBatchRepository
from pharmaledger.utils import cache as cache_module


MANUFACTURE_DATE = "2026-03-01T08:00:00Z"
EXPIRY_DATE = "2028-03-01T08:00:00Z"


class SteppingClock:
    """Deterministic clock: returns ``now`` then advances it by ``step``."""

    def __init__(self, start: datetime, step: timedelta = timedelta(seconds=1)):
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current


# ── Clock / store / service ──────────────────────────────────────

@pytest.fixture
def clock() -> SteppingClock:
    return SteppingClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def repository(clock) -> InMemoryBatchRepository:
    return InMemoryBatchRepository(clock=clock)


@pytest.fixture
def service(repository, clock) -> PharmaLedgerService:
    return PharmaLedgerService(repository, clock=clock)


@pytest.fixture
def sql_engine(tmp_path):
    """File-backed SQLite so separate sessions really are separate transactions."""
    engine = make_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    init_ledger_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def sql_repository(sql_engine, clock) -> SqlBatchRepository:
    return SqlBatchRepository(make_session_factory(sql_engine), clock=clock)


@pytest.fixture
def sql_service(sql_repository, clock) -> PharmaLedgerService:
    return PharmaLedgerService(sql_repository, clock=clock)


# ── Caller identities ────────────────────────────────────────────

@pytest.fixture
def manufacturer() -> StaticIdentity:
    return StaticIdentity(role="Manufacturer", id="manufacturer-1")


@pytest.fixture
def distributor() -> StaticIdentity:
    return StaticIdentity(role="Distributor", id="distributor-1")


@pytest.fixture
def pharmacy() -> StaticIdentity:
    return StaticIdentity(role="Pharmacy", id="pharmacy-1")


@pytest.fixture
def regulator() -> StaticIdentity:
    return StaticIdentity(role="Regulator", id="regulator-1")


@pytest.fixture
def outsider() -> StaticIdentity:
    return StaticIdentity(role="Wholesaler", id="wholesaler-1")


# ── Test data fixtures ───────────────────────────────────────────

@pytest.fixture
def make_batch(service, manufacturer):
    """Factory: create a batch as the manufacturer, optionally moving it along."""

    def _make(batch_id: str = "B1", **overrides):
        params = {
            "name": "Paracetamol 500mg",
            "batch_number": "PCM-0001",
            "manufacture_date": MANUFACTURE_DATE,
            "expiry_date": EXPIRY_DATE,
        }
        params.update(overrides)
        return service.create_batch(manufacturer, batch_id, **params)

    return _make


@pytest.fixture
def ship_batch(service, manufacturer):
    """Factory: Manufacturer hands a batch to ``owner`` as InTransit."""

    def _ship(batch_id: str, owner: str = "distributor-1", temperature: float = 5.0,
              location: str = "Depot A"):
        return service.transfer_batch(
            manufacturer, batch_id, owner, "InTransit", location, temperature
        )

    return _ship


# ── Redis fixtures ───────────────────────────────────────────────

@pytest.fixture
def redis_client(monkeypatch):
    """Live Redis client with caching switched on in a throwaway namespace."""
    client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
    try:
        client.ping()
    except redis.RedisError:
        client.close()
        pytest.skip("Redis not reachable")

    monkeypatch.setattr(settings, "cache_enabled", True)
    monkeypatch.setattr(settings, "cache_namespace", "pharma-test")

    yield client

    # Cleanup: drop test keys and the shared client
    keys = list(client.scan_iter(match="pharma-test:*"))
    if keys:
        client.delete(*keys)
    client.close()
    cache_module.close_redis()


# ── Test markers ─────────────────────────────────────────────────

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "cache: Tests needing a live Redis")

"""
Pytest configuration and shared fixtures.

Fakes stand in for the outside world: a controllable clock, the Supabase
tables the core reads, the push sender, a tiny Redis and the Twilio
provider. Nothing here touches the network.
"""
from __future__ import annotations

from collections import defaultdict
from typing import Any, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from callbridge.api.deps import Services, build_services, get_services
from callbridge.config import Settings
from callbridge.errors import StoreUnavailableError
from callbridge.schemas.call import CallRecord
from callbridge.schemas.notification import DeviceToken, Platform

CALLER_ID = "+15550000"
BACKEND_URL = "https://callbridge.example.com"


class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDB:
    """In-memory stand-in for ``DatabaseClient``."""

    def __init__(self) -> None:
        self.available = True
        self.number_mappings: dict[str, dict[str, Any]] = {}
        self.users: list[dict[str, Any]] = []
        self.tokens: list[DeviceToken] = []
        self.call_logs: dict[str, CallRecord] = {}
        self.calls: list[str] = []

    def _check(self, operation: str) -> None:
        self.calls.append(operation)
        if not self.available:
            raise StoreUnavailableError("connection refused")

    async def get_number_mapping(self, number: str) -> Optional[dict[str, Any]]:
        self._check("get_number_mapping")
        return self.number_mappings.get(number)

    async def get_user_by_email(self, email: str) -> Optional[dict[str, Any]]:
        self._check("get_user_by_email")
        return next((u for u in self.users if u.get("email") == email), None)

    async def get_user_by_id(self, user_id: str) -> Optional[dict[str, Any]]:
        self._check("get_user_by_id")
        return next((u for u in self.users if str(u.get("id")) == user_id), None)

    async def get_device_tokens(self, identity: str) -> list[DeviceToken]:
        self._check("get_device_tokens")
        return [t for t in self.tokens if t.owner_identity == identity]

    async def upsert_device_token(self, identity: str, platform: Platform, token: str) -> None:
        self._check("upsert_device_token")
        self.tokens = [t for t in self.tokens if t.token != token]
        self.tokens.append(DeviceToken(owner_identity=identity, platform=platform, token=token))

    async def delete_device_token(self, token: str) -> None:
        self._check("delete_device_token")
        self.tokens = [t for t in self.tokens if t.token != token]

    async def log_call(self, record: CallRecord) -> None:
        self._check("log_call")
        self.call_logs[record.call_id] = record


class FakeSender:
    """Push sender that records deliveries and fails configured tokens."""

    def __init__(self) -> None:
        self.sent: list[tuple[DeviceToken, Any]] = []
        self.failures: dict[str, Exception] = {}
        self.closed = False

    async def send(self, device: DeviceToken, payload: Any) -> None:
        if device.token in self.failures:
            raise self.failures[device.token]
        self.sent.append((device, payload))

    async def close(self) -> None:
        self.closed = True


class FakeRedis:
    """The handful of async Redis commands the stores use, with expiry."""

    def __init__(self, clock: FakeClock) -> None:
        self._clock = clock
        self._values: dict[str, str] = {}
        self._expiry: dict[str, float] = {}
        self._sets: dict[str, set[str]] = defaultdict(set)
        self.closed = False

    def _alive(self, key: str) -> bool:
        expires = self._expiry.get(key)
        if expires is not None and self._clock() >= expires:
            self._values.pop(key, None)
            self._expiry.pop(key, None)
        return key in self._values

    def ttl(self, key: str) -> Optional[float]:
        if not self._alive(key) or key not in self._expiry:
            return None
        return self._expiry[key] - self._clock()

    async def set(self, key, value, nx=False, ex=None, px=None):
        if nx and self._alive(key):
            return None
        self._values[key] = value
        self._expiry.pop(key, None)
        if ex is not None:
            self._expiry[key] = self._clock() + ex
        if px is not None:
            self._expiry[key] = self._clock() + px / 1000
        return True

    async def get(self, key):
        return self._values[key] if self._alive(key) else None

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self._alive(key):
                removed += 1
            self._values.pop(key, None)
            self._expiry.pop(key, None)
        return removed

    async def sadd(self, key, *members):
        before = len(self._sets[key])
        self._sets[key].update(members)
        return len(self._sets[key]) - before

    async def srem(self, key, *members):
        before = len(self._sets[key])
        self._sets[key].difference_update(members)
        return before - len(self._sets[key])

    async def smembers(self, key):
        return set(self._sets.get(key, set()))

    async def aclose(self):
        self.closed = True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_db() -> FakeDB:
    return FakeDB()


@pytest.fixture
def fake_sender() -> FakeSender:
    return FakeSender()


@pytest.fixture
def fake_redis(clock: FakeClock) -> FakeRedis:
    return FakeRedis(clock)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        twilio_account_sid="AC_TEST_ACCOUNT_SID",
        twilio_auth_token="test_auth_token_12345",
        twilio_api_key="SK_TEST_KEY",
        twilio_api_secret="test_api_secret",
        twilio_app_sid="AP_TEST_APP",
        twilio_caller_id=CALLER_ID,
        backend_url=BACKEND_URL,
    )


@pytest.fixture
def provider() -> MagicMock:
    mock = MagicMock()
    mock.create_call = AsyncMock(return_value="CA_TEST_CALL_SID_123")
    mock.end_call = AsyncMock(return_value=None)
    mock.fetch_call = AsyncMock(
        return_value={"sid": "CA_TEST_CALL_SID_123", "status": "in-progress"}
    )
    mock.generate_access_token = MagicMock(return_value="header.payload.signature")
    mock.validate_signature = MagicMock(return_value=True)
    return mock


@pytest.fixture
def services(settings: Settings, fake_db: FakeDB, provider: MagicMock, fake_sender: FakeSender) -> Services:
    return build_services(settings, db=fake_db, provider=provider, sender=fake_sender)


@pytest.fixture
def client(services: Services):
    from callbridge.api_server import app

    app.dependency_overrides[get_services] = lambda: services
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()

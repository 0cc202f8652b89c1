"""
Shared fixtures: an in-memory SQLite store, a controllable clock, a Fernet
codec and a scripted provider, wired into a RotationJob.
"""
from datetime import datetime, timedelta, timezone

import pytest
import sqlalchemy as sa
from sqlalchemy.pool import StaticPool

from pos_rotation.breaker import BreakerPolicy
from pos_rotation.codecs.fernet_codec import FernetCodec
from pos_rotation.config import RotationSettings
from pos_rotation.models import ProviderCredentials, TokenGrant
from pos_rotation.providers import PosProvider
from pos_rotation.rotate import RotationJob
from pos_rotation.store.sql_store import SqlRotationStore


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeProvider(PosProvider):
    """Issues predictable tokens; errors are scripted per api_key ("*" matches all)."""

    name = "fudo"

    def __init__(self) -> None:
        self.renew_calls: list[str] = []
        self.validate_calls: list[str] = []
        self.renew_errors: dict[str, Exception] = {}
        self.validate_error: Exception | None = None
        self.expires_in: int | None = 3600
        self.issued: list[str] = []

    def renew(self, credentials: ProviderCredentials) -> TokenGrant:
        self.renew_calls.append(credentials.api_key)
        error = self.renew_errors.get(credentials.api_key) or self.renew_errors.get("*")
        if error:
            raise error
        token = f"access-{credentials.api_key}-{len(self.renew_calls)}"
        self.issued.append(token)
        return TokenGrant(access_token=token, expires_in=self.expires_in)

    def validate(self, access_token: str, env: str) -> None:
        self.validate_calls.append(access_token)
        if self.validate_error:
            raise self.validate_error


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings() -> RotationSettings:
    return RotationSettings(
        database_url="sqlite://",
        cb_threshold=3,
        swap_backoff_seconds=0,
        encryption_key=FernetCodec.generate_key(),
        token_fingerprint_key="test-fingerprint-key",
    )


@pytest.fixture
def engine():
    engine = sa.create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine, settings, clock) -> SqlRotationStore:
    store = SqlRotationStore(
        engine,
        policy=BreakerPolicy.from_settings(settings),
        expiry_buffer=timedelta(hours=settings.token_expiry_buffer_hours),
        clock=clock,
    )
    store.create_schema()
    return store


@pytest.fixture
def codec(settings) -> FernetCodec:
    return FernetCodec(settings.encryption_key)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def provision(store, codec):
    """Store a connected credential whose api_key is ``key-<location>``."""

    def _provision(location_id: str, provider: str = "fudo", env: str = "staging", **kwargs) -> str:
        ref = codec.encrypt_credentials(ProviderCredentials(
            api_key=f"key-{location_id}",
            api_secret=f"secret-{location_id}",
            env=env,
        ))
        store.upsert_credential(location_id, provider, ref, **kwargs)
        return ref

    return _provision


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def job(store, provider, codec, settings, clock, sleeps) -> RotationJob:
    return RotationJob(store, provider, codec, settings, clock=clock, sleep=sleeps.append)

import os
import sys
from collections.abc import AsyncGenerator

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from wacore.adapters.blob_store import LocalBlobStore
from wacore.adapters.metrics import Metrics
from wacore.db.models import Base, Client
from wacore.services.core import MessagingCore, build_core
from wacore.utils.config import Settings

from tests.fakes import FakeConnection, FakeProvider, RecordingFanout


@pytest.fixture(autouse=True)
def _reset_metrics():
    Metrics.reset()
    yield


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        storage_root=str(tmp_path / "storage"),
        qr_wait_attempts=30,
        qr_poll_interval_s=0.01,
        send_backoff_s=0,
        bulk_send_delay_s=0,
        restore_sync_delay_s=0,
        auto_reply_text="Thanks, we got it.",
    )


@pytest_asyncio.fixture
async def session_maker(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """File-backed SQLite so concurrent sessions get real, separate connections."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def make_client(session_maker):
    async def _make(client_id: str = "c1", credits: int = 0, name: str = "Acme") -> str:
        async with session_maker() as session:
            session.add(Client(id=client_id, name=name, email=f"{client_id}@example.com", credits=credits))
            await session.commit()
        return client_id

    return _make


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest_asyncio.fixture
async def core(session_maker, provider, test_settings, tmp_path) -> AsyncGenerator[MessagingCore, None]:
    built = build_core(
        settings=test_settings,
        session_maker=session_maker,
        connection_factory=provider,
        fanout=RecordingFanout(),
        blob_store=LocalBlobStore(tmp_path / "blobs", "/files"),
    )
    yield built
    await built.registry.drain()
    await built.registry.shutdown()


@pytest.fixture
def connect_client(core):
    """Bring a tenant's fake handle up to authenticated and wait for the ready-resync."""

    async def _connect(client_id: str = "c1") -> FakeConnection:
        result = await core.registry.health_check(client_id)
        assert result.success
        await core.registry.drain()
        return core.registry.get(client_id)  # type: ignore[return-value]

    return _connect

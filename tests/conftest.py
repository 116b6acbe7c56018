import pytest
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Dict, List, Optional
from unittest.mock import Mock

import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from push_audience.db.db import create_tables
from push_audience.db.models import App, AppUser, GeoRegion, PushHistory
from push_audience.schemas.push_schemas import (
    AppInfo,
    DeliveryRecord,
    Message,
    PlainTrigger,
)
from push_audience.services.push.store import MessageRepository
from push_audience.utils.datetime_utils import to_ms
from push_audience.utils.ids import time_ordered_id


# Test database setup
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

APP_ID = "app1"

START = datetime(2024, 1, 10, 12, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def test_engine():
    """Create a fresh in-memory database for each test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )

    await create_tables(engine)

    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async_session_maker = async_sessionmaker(
        bind=test_engine, class_=AsyncSession, expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def mock_celery_task():
    """Mock Celery task for testing retry behavior."""
    mock_task = Mock()
    mock_task.request.retries = 0
    mock_task.max_retries = 3
    mock_task.retry = Mock(side_effect=Exception("Retry called"))
    return mock_task


# Test data factories
def make_message(
    message_id: str = "m1",
    platforms: Optional[List[str]] = None,
    filter: Optional[Dict[str, Any]] = None,
    triggers: Optional[List[Dict[str, Any]]] = None,
    **kwargs,
) -> Message:
    """Message targeting Android by default with a plain trigger."""
    if triggers is None:
        triggers = [PlainTrigger(start=START)]
    return Message(
        id=message_id,
        app=APP_ID,
        platforms=platforms or ["a"],
        filter=filter or {},
        triggers=triggers,
        **kwargs,
    )


def user_doc(uid: str, tokens: Optional[Dict[str, str]] = None, **fields) -> Dict[str, Any]:
    tk = {"ap": f"token-{uid}"} if tokens is None else tokens
    return {"uid": uid, "tk": tk, **fields}


def queued(message_id: str, platform: str, uid: str, field: str = "p") -> DeliveryRecord:
    """Delivery record due at START, for seeding the queue directly."""
    return DeliveryRecord(
        id=time_ordered_id(to_ms(START)),
        message_id=message_id,
        platform=platform,
        field=field,
        user_id=uid,
        token=f"token-{uid}",
    )


@pytest.fixture
def app_info() -> AppInfo:
    return AppInfo(id=APP_ID, name="Test App", timezone="UTC")


@pytest_asyncio.fixture
async def sample_app(db_session: AsyncSession) -> App:
    """Create a sample app for testing."""
    app = App(id=APP_ID, name="Test App", timezone="UTC")
    db_session.add(app)
    await db_session.commit()
    return app


@pytest_asyncio.fixture
async def add_users(db_session: AsyncSession, sample_app: App):
    """Factory storing user documents of the sample app."""

    async def _add(*docs: Dict[str, Any]) -> None:
        for doc in docs:
            db_session.add(AppUser(app_id=sample_app.id, uid=doc["uid"], doc=doc))
        await db_session.commit()

    return _add


@pytest_asyncio.fixture
async def add_history(db_session: AsyncSession, sample_app: App):
    """Factory storing push history entries as (uid, message_id) pairs."""

    async def _add(*entries) -> None:
        for uid, message_id in entries:
            db_session.add(
                PushHistory(app_id=sample_app.id, uid=uid, message_id=message_id)
            )
        await db_session.commit()

    return _add


@pytest_asyncio.fixture
async def sample_geo(db_session: AsyncSession, sample_app: App) -> GeoRegion:
    geo = GeoRegion(
        id="g1", app_id=sample_app.id, title="Berlin", geo={"country": "DE"}
    )
    db_session.add(geo)
    await db_session.commit()
    return geo


@pytest_asyncio.fixture
async def save_message(db_session: AsyncSession, sample_app: App):
    """Factory persisting a message so counters can be updated."""

    async def _save(message: Message) -> Message:
        await MessageRepository(db_session).add(message)
        return message

    return _save


class FakeGeoProvider:
    """Geo capability restricting users by `country`."""

    def __init__(self, regions: Optional[List[Dict[str, Any]]] = None):
        self.regions = regions if regions is not None else []
        self.queries: List[Dict[str, Any]] = []

    def conds(self, region: Dict[str, Any]) -> Dict[str, Any]:
        return {"country": region["country"]}

    async def query(self, app_id: str, geo: Dict[str, Any]) -> List[Dict[str, Any]]:
        self.queries.append(geo)
        return self.regions


class FakeDrillProvider:
    """Drill capability answering every query with fixed uids or error."""

    def __init__(self, uids: Optional[List[str]] = None, error: Any = None):
        self.uids = uids or []
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    def preprocess_query(self, query: Dict[str, Any]) -> Dict[str, Any]:
        return query

    def fetch_users(self, params: Dict[str, Any], callback) -> None:
        self.calls.append(params)
        if self.error is not None:
            callback(self.error, None)
        else:
            callback(None, list(self.uids))


@pytest.fixture
def drill_provider() -> FakeDrillProvider:
    return FakeDrillProvider(uids=["u1", "u2"])

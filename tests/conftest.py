import pytest
from datetime import datetime, timedelta
from typing import Generator
from unittest.mock import Mock

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from notification_engine.config.settings import Settings
from notification_engine.db.models import Base
from notification_engine.schemas.notification_schemas import (
    Candidate,
    RecipientPreferences,
)
from notification_engine.services.notifications.kinds import (
    EVENT_REMINDER,
    NotificationKind,
    NotificationKindRegistry,
    build_default_kinds,
)
from notification_engine.services.notifications.scheduled_notification_service import (
    ScheduledNotificationService,
)
from notification_engine.utils.offsets import parse_offsets

from fakes import InMemoryEntityStore, RecordingTransport


# Test database setup
TEST_DATABASE_URL = "sqlite://"

# Well before the wall clock, so rows created with real timestamps never look stale
FIXED_NOW = datetime(2025, 3, 2, 12, 0, 0)


@pytest.fixture
def test_engine():
    """Create a fresh in-memory database per test."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    Base.metadata.create_all(engine)

    yield engine
    engine.dispose()


@pytest.fixture
def db_session(test_engine) -> Generator[Session, None, None]:
    """Create a database session for each test."""
    session_maker = sessionmaker(
        bind=test_engine, autoflush=False, expire_on_commit=False
    )
    with session_maker() as session:
        yield session
        session.rollback()


@pytest.fixture
def now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        MAX_RETRIES=3,
        RETRY_BACKOFF_BASE_MINUTES=5,
        STALE_PENDING_MINUTES=15,
        SMS_ENABLED=True,
        PUSH_ENABLED=True,
        OUTBOUND_SUB_BATCH_SIZE=2,
        OUTBOUND_BATCH_DELAY_MS=0,
        OUTBOUND_MAX_RETRIES=2,
        OUTBOUND_BACKOFF_BASE_MINUTES=1,
    )


@pytest.fixture
def entity_store() -> InMemoryEntityStore:
    return InMemoryEntityStore()


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def registry(test_settings) -> NotificationKindRegistry:
    """Default kinds, with event reminders at 7d, 1d, 2h and 30m (± 10 minutes)."""
    registry = NotificationKindRegistry(build_default_kinds(test_settings))
    registry.register(
        NotificationKind(
            code=EVENT_REMINDER,
            offsets=tuple(parse_offsets("7d,1d,2h,30m")),
            tolerance=timedelta(minutes=10),
            filters={"event_status": "published", "registration_status": "approved"},
        )
    )
    return registry


@pytest.fixture
def service(
    db_session, entity_store, transport, registry, test_settings
) -> ScheduledNotificationService:
    return ScheduledNotificationService(
        db_session,
        entity_store,
        transport,
        registry=registry,
        app_settings=test_settings,
    )


@pytest.fixture
def mock_celery_task():
    """Mock Celery task for testing retry behavior."""
    mock_task = Mock()
    mock_task.request.retries = 0
    mock_task.max_retries = 3
    mock_task.retry = Mock(side_effect=Exception("Retry called"))
    return mock_task


# Test data factories
@pytest.fixture
def event_start(now) -> datetime:
    """An event that starts two hours and five minutes from ``now``."""
    return now + timedelta(hours=2, minutes=5)


@pytest.fixture
def sample_preferences() -> RecipientPreferences:
    return RecipientPreferences(
        user_id="user-1",
        email="user1@example.com",
        phone="+15550001",
        push_tokens=[],
        sms_enabled=False,
    )


@pytest.fixture
def sample_candidate(event_start) -> Candidate:
    return Candidate(
        kind=EVENT_REMINDER,
        recipient_id="user-1",
        related_entity_id="event-1",
        target_time=event_start,
        data={
            "event_id": "event-1",
            "event_title": "Spring Hackathon",
            "start_time": event_start,
            "location": "Hall A",
        },
    )


@pytest.fixture
def seeded_store(entity_store, sample_candidate, sample_preferences):
    """Store holding one approved registration for an event starting in ~2h."""
    entity_store.add_candidate(EVENT_REMINDER, sample_candidate)
    entity_store.set_preferences(sample_preferences)
    return entity_store

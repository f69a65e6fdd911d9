import pytest
from datetime import datetime, timedelta

from sqlalchemy import func, select

from notification_engine.db.models import (
    ChannelType,
    NotificationDelivery,
    NotificationRecord,
    NotificationRecordStatus,
    OutboundMessage,
    OutboundMessageStatus,
    Priority,
)
from notification_engine.schemas.notification_schemas import (
    Candidate,
    RecipientPreferences,
    RenderedContent,
)
from notification_engine.services.notifications.daily_digest import (
    DailyDigestProducer,
    format_event_lines,
)
from notification_engine.services.notifications.dedup_guard import DedupGuard
from notification_engine.services.notifications.kinds import DAILY_DIGEST
from notification_engine.services.notifications.outbound_queue import OutboundQueue
from notification_engine.services.notifications.retention import RetentionService


@pytest.fixture
def queue(db_session, transport, test_settings):
    return OutboundQueue(db_session, transport, app_settings=test_settings)


@pytest.fixture
def producer(entity_store, queue, registry, test_settings):
    return DailyDigestProducer(entity_store, queue, registry, test_settings)


def _digest_candidate(user_id, events):
    return Candidate(kind=DAILY_DIGEST, recipient_id=user_id, data={"events": events})


EVENTS = [
    {"event_title": "Spring Hackathon", "start_time": datetime(2025, 3, 3, 9, 0)},
    {"event_title": "Gala", "start_time": datetime(2025, 3, 5, 19, 30)},
]


class TestDailyDigest:
    """Test digest production into the outbound queue."""

    def test_format_event_lines(self):
        assert format_event_lines(EVENTS) == (
            "- Spring Hackathon (2025-03-03 09:00 UTC)\n- Gala (2025-03-05 19:30 UTC)"
        )

    def test_queues_one_message_per_recipient(self, producer, entity_store, db_session, now):
        entity_store.add_candidate(DAILY_DIGEST, _digest_candidate("user-1", EVENTS))
        entity_store.set_preferences(
            RecipientPreferences(user_id="user-1", email="user1@example.com")
        )

        summary = producer.produce(now)

        assert summary == {"candidates": 1, "queued": 1, "skipped": 0, "errors": 0}
        (message,) = db_session.scalars(select(OutboundMessage)).all()
        assert message.recipient_address == "user1@example.com"
        assert message.template_id == DAILY_DIGEST
        assert message.priority == Priority.LOW.rank
        assert message.scheduled_for == now

    def test_lookahead_window_and_filters(self, producer, entity_store, now):
        producer.produce(now)

        ((kind, window, filters),) = entity_store.queries
        assert kind == DAILY_DIGEST
        assert window.start == now
        assert window.end == now + timedelta(days=7)
        assert filters == {"digest_opt_in": True}

    def test_skips_recipients_without_events_or_email(self, producer, entity_store, now):
        entity_store.add_candidate(DAILY_DIGEST, _digest_candidate("user-1", []))
        entity_store.add_candidate(DAILY_DIGEST, _digest_candidate("user-2", EVENTS))

        summary = producer.produce(now)

        assert summary["queued"] == 0
        assert summary["skipped"] == 2

    def test_preference_error_counted(self, producer, entity_store, now):
        entity_store.add_candidate(DAILY_DIGEST, _digest_candidate("user-1", EVENTS))
        entity_store.fail_preferences_for.add("user-1")

        assert producer.produce(now)["errors"] == 1


class TestRetention:
    """Test purging of old terminal rows."""

    def _record(self, db_session, occurrence_key, status, updated_at):
        candidate = Candidate(
            kind="event_reminder",
            recipient_id="user-1",
            related_entity_id="event-1",
            occurrence_key=occurrence_key,
        )
        record = DedupGuard(db_session).create_record(
            candidate, RenderedContent(title="t", message="m"), Priority.MEDIUM
        )
        record.status = status
        record.deliveries.append(NotificationDelivery(channel=ChannelType.IN_APP, delivered=True))
        db_session.flush()
        record.updated_at = updated_at
        db_session.commit()
        return record

    def test_purges_old_terminal_records(self, db_session, test_settings, now):
        old = now - timedelta(days=91)
        self._record(db_session, "7d", NotificationRecordStatus.SENT, old)
        self._record(db_session, "1d", NotificationRecordStatus.CANCELLED, old)
        kept_recent = self._record(db_session, "2h", NotificationRecordStatus.SENT, now)
        kept_open = self._record(db_session, "30m", NotificationRecordStatus.RETRY_SCHEDULED, old)

        summary = RetentionService(db_session, test_settings).purge_expired(now)

        assert summary["records_deleted"] == 2
        remaining = set(db_session.scalars(select(NotificationRecord.id)).all())
        assert remaining == {kept_recent.id, kept_open.id}
        assert db_session.scalar(select(func.count(NotificationDelivery.id))) == 2

    def test_purges_old_outbound_messages(self, db_session, test_settings, now):
        for status in (
            OutboundMessageStatus.SENT,
            OutboundMessageStatus.FAILED_PERMANENT,
            OutboundMessageStatus.PENDING,
        ):
            db_session.add(
                OutboundMessage(
                    recipient_address="a@example.com",
                    body="Body",
                    status=status,
                    created_at=now - timedelta(days=40),
                    updated_at=now - timedelta(days=40),
                )
            )
        db_session.commit()

        summary = RetentionService(db_session, test_settings).purge_expired(now)

        assert summary["outbound_deleted"] == 2
        (left,) = db_session.scalars(select(OutboundMessage)).all()
        assert left.status == OutboundMessageStatus.PENDING

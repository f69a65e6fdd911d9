import pytest
from contextlib import ExitStack
from datetime import timedelta
from unittest.mock import patch

from loguru import logger

from notification_engine.db.models import ChannelType, OutboundMessage
from notification_engine.providers.channel_transport import (
    ChannelTransport,
    LoggingChannelTransport,
)
from notification_engine.providers.entity_store import EntityStore
from notification_engine.providers.loader import load_class
from notification_engine.schemas.notification_schemas import (
    OutboundMessageCreate,
    WaitlistEntry,
)
from notification_engine.services.notifications.outbound_queue import OutboundQueue
from notification_engine.tasks.background.notification_cancellation import (
    _async_cancel_notifications,
)
from notification_engine.tasks.background.waitlist_promotion import (
    _async_promote_waitlist,
    promote_waitlist_task,
)
from notification_engine.tasks.cron.notification_kind_evaluator import (
    _async_evaluate_notification_kind,
)
from notification_engine.tasks.cron.notification_retry_sweeper import (
    _async_notification_retry_sweeper,
)
from notification_engine.tasks.cron.outbound_queue_processor import (
    _async_outbound_queue_processor,
)
from notification_engine.tasks.task_guard import (
    TaskRunGuard,
    run_exclusive,
    skip_if_running,
    task_guard,
)
from notification_engine.utils.errors import ConfigurationError, EntityStoreError
from notification_engine.utils.logging import get_logger


EVALUATOR_MODULE = "notification_engine.tasks.cron.notification_kind_evaluator"
SWEEPER_MODULE = "notification_engine.tasks.cron.notification_retry_sweeper"
PROCESSOR_MODULE = "notification_engine.tasks.cron.outbound_queue_processor"
PROMOTION_MODULE = "notification_engine.tasks.background.waitlist_promotion"
CANCELLATION_MODULE = "notification_engine.tasks.background.notification_cancellation"


@pytest.fixture
def patch_collaborators(db_session, entity_store, transport):
    """Point a task module at the test session and in-memory collaborators."""
    with ExitStack() as stack:

        def start(module: str, with_store: bool = True):
            stack.enter_context(
                patch(f"{module}.get_sync_session", lambda: iter([db_session]))
            )
            stack.enter_context(
                patch(f"{module}.get_channel_transport", lambda: transport)
            )
            if with_store:
                stack.enter_context(
                    patch(f"{module}.get_entity_store", lambda: entity_store)
                )

        yield start


class TestTaskRunGuard:
    """Test the per-task overlap guard."""

    def test_second_acquire_is_refused(self):
        guard = TaskRunGuard()

        with guard.acquire("sweeper") as first:
            with guard.acquire("sweeper") as second:
                assert first
                assert not second
                assert guard.is_running("sweeper")

        assert not guard.is_running("sweeper")

    def test_different_tasks_run_independently(self):
        guard = TaskRunGuard()

        with guard.acquire("sweeper") as first:
            with guard.acquire("processor") as second:
                assert first and second

    @pytest.mark.asyncio
    async def test_decorator_skips_overlapping_run(self):
        calls = []

        @skip_if_running("guarded_test_task")
        async def body(request_id):
            calls.append(request_id)
            return {"success": True, "request_id": request_id}

        with task_guard.acquire("guarded_test_task"):
            skipped = await body("req-1")
        ran = await body("req-2")

        assert skipped["skipped"] is True
        assert skipped["reason"] == "already_running"
        assert ran == {"success": True, "request_id": "req-2"}
        assert calls == ["req-2"]

    @pytest.mark.asyncio
    async def test_run_exclusive_uses_dynamic_name(self):
        async def body(request_id, kind):
            return {"success": True, "kind": kind, "request_id": request_id}

        with task_guard.acquire("evaluator:event_reminder"):
            skipped = await run_exclusive(
                "evaluator:event_reminder", "req-1", body, "event_reminder"
            )
            ran = await run_exclusive("evaluator:daily_digest", "req-2", body, "daily_digest")

        assert skipped["skipped"] is True
        assert skipped["task"] == "evaluator:event_reminder"
        assert ran == {"success": True, "kind": "daily_digest", "request_id": "req-2"}

    @pytest.mark.asyncio
    async def test_guarded_run_tags_log_records(self):
        tags = []
        sink_id = logger.add(lambda message: tags.append(message.record["extra"].get("task")))

        async def body(request_id):
            get_logger().info("Working")
            return {"success": True, "request_id": request_id}

        try:
            await run_exclusive("retention_cleanup", "req-1", body)
            get_logger().info("Outside")
        finally:
            logger.remove(sink_id)

        assert tags == ["retention_cleanup", None]


@pytest.mark.integration
@pytest.mark.asyncio
class TestCronTasks:
    """Test the Celery task bodies against the test database."""

    async def test_kind_evaluator_reports_run(self, patch_collaborators):
        patch_collaborators(EVALUATOR_MODULE)

        result = await _async_evaluate_notification_kind("req-1", "event_reminder")

        assert result["success"] is True
        assert result["kind"] == "event_reminder"
        assert result["candidates"] == 0
        assert result["request_id"] == "req-1"

    async def test_kind_evaluator_reports_store_failure(self, patch_collaborators, entity_store):
        patch_collaborators(EVALUATOR_MODULE)
        entity_store.fail_queries = True

        result = await _async_evaluate_notification_kind("req-1", "event_reminder")

        assert result["success"] is False
        assert result["aborted"] is True

    async def test_kind_evaluator_unknown_kind(self, patch_collaborators):
        patch_collaborators(EVALUATOR_MODULE)

        result = await _async_evaluate_notification_kind("req-1", "birthday_greeting")

        assert result["success"] is False
        assert "birthday_greeting" in result["error"]

    async def test_kind_evaluator_skips_overlap_per_kind(self, patch_collaborators):
        patch_collaborators(EVALUATOR_MODULE)

        with task_guard.acquire("notification_kind_evaluator:event_reminder"):
            skipped = await _async_evaluate_notification_kind("req-1", "event_reminder")
            other = await _async_evaluate_notification_kind("req-2", "checkin_reminder")

        assert skipped["skipped"] is True
        assert skipped["task"] == "notification_kind_evaluator:event_reminder"
        assert other["success"] is True

    async def test_retry_sweeper(self, patch_collaborators):
        patch_collaborators(SWEEPER_MODULE)

        result = await _async_notification_retry_sweeper("req-1")

        assert result == {"success": True, "processed": 0, "request_id": "req-1"}

    async def test_outbound_processor_drains_queue(
        self, patch_collaborators, db_session, transport, now
    ):
        patch_collaborators(PROCESSOR_MODULE, with_store=False)
        OutboundQueue(db_session, transport).enqueue(
            OutboundMessageCreate(
                recipient_address="a@example.com",
                subject="Hello",
                body="Body",
                scheduled_for=now - timedelta(minutes=1),
            )
        )

        result = await _async_outbound_queue_processor("req-1")

        assert result["success"] is True
        assert result["sent"] == 1
        assert len(transport.sent_on(ChannelType.EMAIL)) == 1
        assert db_session.query(OutboundMessage).count() == 1


@pytest.mark.integration
@pytest.mark.asyncio
class TestBackgroundTasks:
    async def test_waitlist_promotion(self, patch_collaborators, entity_store, now):
        patch_collaborators(PROMOTION_MODULE)
        entity_store.set_capacity("event-1", capacity=10, committed=9)
        entity_store.waitlists["event-1"] = [
            WaitlistEntry(
                registration_id="W1",
                recipient_id="user-1",
                parent_entity_id="event-1",
                position=1,
                joined_at=now,
            )
        ]

        result = await _async_promote_waitlist("req-1", "event-1")

        assert result["success"] is True
        assert result["promoted_registration_ids"] == ["W1"]

    async def test_cancellation(self, patch_collaborators):
        patch_collaborators(CANCELLATION_MODULE)

        result = await _async_cancel_notifications(
            "req-1", "event deleted", "event-1", None, None
        )

        assert result == {"success": True, "cancelled_count": 0, "request_id": "req-1"}

    async def test_cancellation_without_filter_fails(self, patch_collaborators):
        patch_collaborators(CANCELLATION_MODULE)

        result = await _async_cancel_notifications("req-1", "cleanup", None, None, None)

        assert result["success"] is False


class TestWaitlistPromotionRetry:
    def test_store_failure_retried_by_celery(
        self, patch_collaborators, entity_store, mock_celery_task
    ):
        patch_collaborators(PROMOTION_MODULE)
        entity_store.fail_queries = True
        task_body = promote_waitlist_task.run.__func__

        with pytest.raises(Exception, match="Retry called"):
            task_body(mock_celery_task, "req-1", "event-1")

        mock_celery_task.retry.assert_called_once()
        assert isinstance(
            mock_celery_task.retry.call_args.kwargs["exc"], EntityStoreError
        )


class TestLoader:
    """Test collaborator resolution from settings."""

    def test_resolves_class(self):
        cls = load_class(
            "notification_engine.providers.channel_transport:LoggingChannelTransport",
            ChannelTransport,
            "CHANNEL_TRANSPORT_CLASS",
        )
        assert cls is LoggingChannelTransport

    def test_empty_path(self):
        with pytest.raises(ConfigurationError, match="not configured"):
            load_class("", EntityStore, "ENTITY_STORE_CLASS")

    def test_missing_module(self):
        with pytest.raises(ConfigurationError, match="cannot import"):
            load_class("no_such_module.stores:Store", EntityStore, "ENTITY_STORE_CLASS")

    def test_missing_attribute(self):
        with pytest.raises(ConfigurationError, match="no attribute"):
            load_class(
                "notification_engine.providers.channel_transport:SmtpTransport",
                ChannelTransport,
                "CHANNEL_TRANSPORT_CLASS",
            )

    def test_wrong_interface(self):
        with pytest.raises(ConfigurationError, match="is not a EntityStore"):
            load_class(
                "notification_engine.providers.channel_transport:LoggingChannelTransport",
                EntityStore,
                "ENTITY_STORE_CLASS",
            )

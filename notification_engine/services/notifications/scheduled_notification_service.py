import asyncio
import enum
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from notification_engine.config.settings import Settings, settings
from notification_engine.db.models import (
    NotificationRecord,
    NotificationRecordStatus,
    Priority,
)
from notification_engine.providers.channel_transport import ChannelTransport
from notification_engine.providers.entity_store import EntityStore
from notification_engine.schemas.notification_schemas import (
    Candidate,
    KindRunReport,
    PriorityAssignment,
)
from notification_engine.services.notifications.channel_dispatcher import (
    ChannelDispatcher,
)
from notification_engine.services.notifications.content_builder import build_content
from notification_engine.services.notifications.dedup_guard import DedupGuard
from notification_engine.services.notifications.kinds import NotificationKindRegistry
from notification_engine.services.notifications.record_repository import (
    NotificationRecordRepository,
)
from notification_engine.services.notifications.retry_coordinator import (
    RetryCoordinator,
)
from notification_engine.services.notifications.window_evaluator import (
    WindowEvaluator,
)
from notification_engine.utils.datetime_utils import naive_utc_now
from notification_engine.utils.errors import EntityStoreError
from notification_engine.utils.logging import get_logger

logger = get_logger()


class CandidateOutcome(enum.Enum):
    SENT = "sent"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED_PERMANENT = "failed_permanent"
    DEDUPLICATED = "deduplicated"
    ERROR = "error"


_OUTCOME_BY_STATUS = {
    NotificationRecordStatus.SENT: CandidateOutcome.SENT,
    NotificationRecordStatus.RETRY_SCHEDULED: CandidateOutcome.RETRY_SCHEDULED,
    NotificationRecordStatus.FAILED_PERMANENT: CandidateOutcome.FAILED_PERMANENT,
}


class ScheduledNotificationService:
    """
    Drives the evaluate -> dedup -> render -> dispatch -> retry pipeline.

    Database work happens only between awaits and is committed before the next
    await, so concurrently dispatched candidates can share one session.
    """

    def __init__(
        self,
        db_session: Session,
        entity_store: EntityStore,
        transport: ChannelTransport,
        registry: Optional[NotificationKindRegistry] = None,
        app_settings: Settings = settings,
        dispatcher: Optional[ChannelDispatcher] = None,
        coordinator: Optional[RetryCoordinator] = None,
    ):
        self.db = db_session
        self.store = entity_store
        self.registry = registry or NotificationKindRegistry.from_settings(app_settings)
        self.evaluator = WindowEvaluator(entity_store, self.registry)
        self.guard = DedupGuard(db_session)
        self.records = NotificationRecordRepository(db_session)
        self.dispatcher = dispatcher or ChannelDispatcher(
            transport,
            sms_enabled=app_settings.SMS_ENABLED,
            push_enabled=app_settings.PUSH_ENABLED,
            in_app_expiry_days=app_settings.IN_APP_EXPIRY_DAYS,
        )
        self.coordinator = coordinator or RetryCoordinator(
            max_retries=app_settings.MAX_RETRIES,
            backoff_base=timedelta(minutes=app_settings.RETRY_BACKOFF_BASE_MINUTES),
        )
        self.batch_size = app_settings.NOTIFICATION_BATCH_SIZE
        self.concurrency = app_settings.dispatch_concurrency
        self.stale_pending_after = timedelta(minutes=app_settings.STALE_PENDING_MINUTES)

    async def run_kind(
        self, kind_code: str, now: Optional[datetime] = None
    ) -> KindRunReport:
        """Evaluate one kind and dispatch every new candidate"""
        now = now or naive_utc_now()
        report = KindRunReport(kind=kind_code)

        try:
            assignments = self.evaluator.evaluate(kind_code, now)
        except EntityStoreError as e:
            logger.error(
                "Candidate evaluation aborted", kind=kind_code, error=e.message
            )
            report.aborted = True
            report.error = e.message
            return report

        report.candidates = len(assignments)
        if not assignments:
            return report

        semaphore = asyncio.Semaphore(self.concurrency)
        outcomes = await asyncio.gather(
            *(
                self._notify_bounded(semaphore, assignment, now)
                for assignment in assignments
            )
        )

        tally = Counter(outcomes)
        report.sent = tally[CandidateOutcome.SENT]
        report.retry_scheduled = tally[CandidateOutcome.RETRY_SCHEDULED]
        report.failed_permanent = tally[CandidateOutcome.FAILED_PERMANENT]
        report.deduplicated = tally[CandidateOutcome.DEDUPLICATED]
        report.errors = tally[CandidateOutcome.ERROR]

        logger.info("Notification kind run completed", **report.as_dict())
        return report

    async def notify(
        self, candidate: Candidate, priority: Priority, now: Optional[datetime] = None
    ) -> CandidateOutcome:
        """
        Create the record for one candidate and dispatch it.

        Raises:
            EntityStoreError: If recipient preferences cannot be read
        """
        now = now or naive_utc_now()
        if self.guard.already_handled(
            candidate.recipient_id,
            candidate.related_entity_id,
            candidate.kind,
            candidate.occurrence_key,
        ):
            return CandidateOutcome.DEDUPLICATED

        preferences = self.store.get_recipient_preferences(candidate.recipient_id)
        content = build_content(
            candidate.kind,
            {
                **candidate.data,
                "occurrence_key": candidate.occurrence_key,
                "related_entity_id": candidate.related_entity_id,
            },
            priority,
        )

        record = self.guard.create_record(candidate, content, priority)
        if record is None:
            return CandidateOutcome.DEDUPLICATED

        result = await self.dispatcher.deliver_to_record(record, preferences)
        status = self.coordinator.apply_outcome(record, result, now)
        self.db.commit()

        return _OUTCOME_BY_STATUS.get(status, CandidateOutcome.ERROR)

    async def _notify_bounded(
        self, semaphore: asyncio.Semaphore, assignment: PriorityAssignment, now: datetime
    ) -> CandidateOutcome:
        candidate = assignment.candidate
        async with semaphore:
            try:
                return await self.notify(candidate, assignment.priority, now)
            except Exception as e:
                self.db.rollback()
                logger.error(
                    "Failed to process notification candidate",
                    kind=candidate.kind,
                    recipient_id=candidate.recipient_id,
                    related_entity_id=candidate.related_entity_id,
                    occurrence_key=candidate.occurrence_key,
                    error=str(e),
                )
                return CandidateOutcome.ERROR

    async def retry_due(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Redispatch records whose retry is due, and stale pending records"""
        now = now or naive_utc_now()
        records = self.records.find_due_for_retry(
            now, stale_before=now - self.stale_pending_after, limit=self.batch_size
        )
        if not records:
            return {"processed": 0}

        semaphore = asyncio.Semaphore(self.concurrency)
        outcomes = await asyncio.gather(
            *(self._redispatch_bounded(semaphore, record, now) for record in records)
        )

        tally = Counter(outcome.value for outcome in outcomes)
        summary = {"processed": len(records), **tally}
        logger.info("Notification retry sweep completed", **summary)
        return summary

    async def _redispatch_bounded(
        self, semaphore: asyncio.Semaphore, record: NotificationRecord, now: datetime
    ) -> CandidateOutcome:
        async with semaphore:
            record_id = record.id
            try:
                preferences = self.store.get_recipient_preferences(record.recipient_id)
                result = await self.dispatcher.deliver_to_record(record, preferences)
                status = self.coordinator.apply_outcome(record, result, now)
                self.db.commit()
                return _OUTCOME_BY_STATUS.get(status, CandidateOutcome.ERROR)
            except Exception as e:
                self.db.rollback()
                logger.error(
                    "Failed to redispatch notification",
                    notification_id=record_id,
                    error=str(e),
                )
                return CandidateOutcome.ERROR

    def cancel_notifications(
        self,
        reason: str,
        related_entity_id: Optional[str] = None,
        recipient_id: Optional[str] = None,
        kind: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """Cancel every non-terminal record matching the filters; returns the count"""
        if related_entity_id is None and recipient_id is None and kind is None:
            raise ValueError("At least one cancellation filter is required")

        now = now or naive_utc_now()
        cancelled = 0
        for record in self.records.find_cancellable(related_entity_id, recipient_id, kind):
            if self.coordinator.cancel(record, reason, now):
                cancelled += 1
        self.db.commit()

        logger.info(
            "Notifications cancelled",
            cancelled_count=cancelled,
            related_entity_id=related_entity_id,
            recipient_id=recipient_id,
            kind=kind,
            reason=reason,
        )
        return cancelled

    def notification_stats(self, since: Optional[datetime] = None) -> Dict[str, Any]:
        counts = self.records.count_by_status(since)
        return {"total": sum(counts.values()), "by_status": counts}

    def list_failed_permanent(self, limit: int = 50) -> List[NotificationRecord]:
        return self.records.list_failed_permanent(limit)

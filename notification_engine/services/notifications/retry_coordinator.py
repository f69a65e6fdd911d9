from datetime import datetime, timedelta
from typing import Optional

from notification_engine.config.settings import settings
from notification_engine.db.models import (
    NotificationRecord,
    NotificationRecordStatus,
)
from notification_engine.schemas.notification_schemas import DeliveryResult
from notification_engine.utils.errors import InvalidTransitionError
from notification_engine.utils.logging import get_logger

logger = get_logger()

_ALLOWED_TRANSITIONS = {
    NotificationRecordStatus.PENDING: {
        NotificationRecordStatus.SENT,
        NotificationRecordStatus.RETRY_SCHEDULED,
        NotificationRecordStatus.FAILED_PERMANENT,
        NotificationRecordStatus.CANCELLED,
    },
    NotificationRecordStatus.RETRY_SCHEDULED: {
        NotificationRecordStatus.SENT,
        NotificationRecordStatus.RETRY_SCHEDULED,
        NotificationRecordStatus.FAILED_PERMANENT,
        NotificationRecordStatus.CANCELLED,
    },
}


def compute_backoff(base: timedelta, retry_count: int) -> timedelta:
    """base * 2^retry_count"""
    return base * (2**retry_count)


class RetryCoordinator:
    """
    Backoff state machine for notification records.

    pending/retry_scheduled -> sent when any channel delivered; otherwise
    retry_scheduled with exponential backoff until max_retries is used up,
    then failed_permanent. cancelled is reachable from any non-terminal state.
    sent, failed_permanent and cancelled are terminal.
    """

    def __init__(
        self,
        max_retries: int = settings.MAX_RETRIES,
        backoff_base: timedelta = timedelta(minutes=settings.RETRY_BACKOFF_BASE_MINUTES),
    ):
        self.max_retries = max_retries
        self.backoff_base = backoff_base

    def compute_next_retry(self, retry_count: int, now: datetime) -> datetime:
        return now + compute_backoff(self.backoff_base, retry_count)

    def transition(
        self, record: NotificationRecord, target: NotificationRecordStatus
    ) -> None:
        """
        Move ``record`` to ``target``.

        Raises:
            InvalidTransitionError: If the record is terminal or the move is not allowed
        """
        allowed = _ALLOWED_TRANSITIONS.get(record.status, set())
        if target not in allowed:
            raise InvalidTransitionError(
                f"Cannot move notification {record.id} from "
                f"{record.status.value} to {target.value}"
            )
        record.status = target

    def apply_outcome(
        self, record: NotificationRecord, result: DeliveryResult, now: datetime
    ) -> Optional[NotificationRecordStatus]:
        """
        Apply a dispatch result to the record.

        Returns the new status, or None when the record was already terminal
        and nothing changed.
        """
        if record.is_terminal:
            logger.warning(
                "Ignoring dispatch outcome for terminal notification",
                notification_id=record.id,
                status=record.status.value,
            )
            return None

        if result.partial_success:
            self.transition(record, NotificationRecordStatus.SENT)
            record.sent_at = now
            record.next_retry_at = None
            record.last_error = result.error_summary()
            return record.status

        if not result.attempts:
            return self._give_up(record, "no deliverable channels")

        record.last_error = result.error_summary()

        if result.only_permanent_failures:
            return self._give_up(record, record.last_error)

        if record.retry_count < self.max_retries:
            self.transition(record, NotificationRecordStatus.RETRY_SCHEDULED)
            record.next_retry_at = self.compute_next_retry(record.retry_count, now)
            record.retry_count += 1
            logger.info(
                "Notification retry scheduled",
                notification_id=record.id,
                retry_count=record.retry_count,
                next_retry_at=record.next_retry_at.isoformat(),
            )
            return record.status

        return self._give_up(record, record.last_error)

    def cancel(
        self, record: NotificationRecord, reason: str, now: datetime
    ) -> bool:
        try:
            self.transition(record, NotificationRecordStatus.CANCELLED)
        except InvalidTransitionError as e:
            logger.warning(
                "Notification not cancelled", notification_id=record.id, error=e.message
            )
            return False

        record.cancelled_reason = reason[:255] if reason else None
        record.next_retry_at = None
        record.updated_at = now
        return True

    def _give_up(
        self, record: NotificationRecord, error: Optional[str]
    ) -> NotificationRecordStatus:
        self.transition(record, NotificationRecordStatus.FAILED_PERMANENT)
        record.next_retry_at = None
        record.last_error = error
        logger.warning(
            "Notification failed permanently",
            notification_id=record.id,
            kind=record.kind,
            recipient_id=record.recipient_id,
            retry_count=record.retry_count,
            error=error,
        )
        return record.status

from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy import delete
from sqlalchemy.orm import Session

from notification_engine.config.settings import Settings, settings
from notification_engine.db.models import OutboundMessage, OutboundMessageStatus
from notification_engine.services.notifications.record_repository import (
    NotificationRecordRepository,
)
from notification_engine.utils.datetime_utils import naive_utc_now
from notification_engine.utils.logging import get_logger

logger = get_logger()

PURGEABLE_OUTBOUND_STATUSES = (
    OutboundMessageStatus.SENT,
    OutboundMessageStatus.FAILED_PERMANENT,
)


class RetentionService:
    """Deletes terminal notification records and outbound messages past retention"""

    def __init__(self, db_session: Session, app_settings: Settings = settings):
        self.db = db_session
        self.records = NotificationRecordRepository(db_session)
        self.record_retention = timedelta(days=app_settings.RECORD_RETENTION_DAYS)
        self.outbound_retention = timedelta(days=app_settings.OUTBOUND_RETENTION_DAYS)

    def purge_expired(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or naive_utc_now()

        records_deleted = self.records.delete_terminal_before(now - self.record_retention)
        result = self.db.execute(
            delete(OutboundMessage)
            .where(
                OutboundMessage.status.in_(PURGEABLE_OUTBOUND_STATUSES),
                OutboundMessage.updated_at < now - self.outbound_retention,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

        summary = {
            "records_deleted": records_deleted,
            "outbound_deleted": result.rowcount or 0,
        }
        logger.info("Notification retention sweep completed", **summary)
        return summary

from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.orm import Session, selectinload

from notification_engine.db.models import (
    NotificationDelivery,
    NotificationRecord,
    NotificationRecordStatus,
    TERMINAL_RECORD_STATUSES,
)


class NotificationRecordRepository:
    """Queries over notification records used by sweeps, cancellation and stats"""

    def __init__(self, db_session: Session):
        self.db = db_session

    def find_due_for_retry(
        self, now: datetime, stale_before: datetime, limit: int
    ) -> List[NotificationRecord]:
        """
        Records whose retry time has come, plus records stuck in pending since
        before ``stale_before`` (created but never dispatched).
        """
        stmt = (
            select(NotificationRecord)
            .options(selectinload(NotificationRecord.deliveries))
            .where(
                or_(
                    and_(
                        NotificationRecord.status
                        == NotificationRecordStatus.RETRY_SCHEDULED,
                        NotificationRecord.next_retry_at <= now,
                    ),
                    and_(
                        NotificationRecord.status == NotificationRecordStatus.PENDING,
                        NotificationRecord.created_at < stale_before,
                    ),
                )
            )
            .order_by(NotificationRecord.next_retry_at, NotificationRecord.created_at)
            .limit(limit)
        )
        return list(self.db.scalars(stmt).all())

    def find_cancellable(
        self,
        related_entity_id: Optional[str] = None,
        recipient_id: Optional[str] = None,
        kind: Optional[str] = None,
    ) -> List[NotificationRecord]:
        conditions = [NotificationRecord.status.not_in(tuple(TERMINAL_RECORD_STATUSES))]
        if related_entity_id is not None:
            conditions.append(NotificationRecord.related_entity_id == related_entity_id)
        if recipient_id is not None:
            conditions.append(NotificationRecord.recipient_id == recipient_id)
        if kind is not None:
            conditions.append(NotificationRecord.kind == kind)

        return list(self.db.scalars(select(NotificationRecord).where(*conditions)).all())

    def count_by_status(self, since: Optional[datetime] = None) -> Dict[str, int]:
        stmt = select(NotificationRecord.status, func.count(NotificationRecord.id))
        if since is not None:
            stmt = stmt.where(NotificationRecord.created_at >= since)
        stmt = stmt.group_by(NotificationRecord.status)

        counts = {status.value: 0 for status in NotificationRecordStatus}
        for status, count in self.db.execute(stmt).all():
            counts[status.value] = count
        return counts

    def list_failed_permanent(self, limit: int = 50) -> List[NotificationRecord]:
        stmt = (
            select(NotificationRecord)
            .options(selectinload(NotificationRecord.deliveries))
            .where(
                NotificationRecord.status == NotificationRecordStatus.FAILED_PERMANENT
            )
            .order_by(NotificationRecord.updated_at.desc())
            .limit(limit)
        )
        return list(self.db.scalars(stmt).all())

    def delete_terminal_before(self, cutoff: datetime) -> int:
        """Delete terminal records last touched before ``cutoff``, deliveries first"""
        expired_ids = select(NotificationRecord.id).where(
            NotificationRecord.status.in_(tuple(TERMINAL_RECORD_STATUSES)),
            NotificationRecord.updated_at < cutoff,
        )
        self.db.execute(
            delete(NotificationDelivery)
            .where(NotificationDelivery.record_id.in_(expired_ids))
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(
            delete(NotificationRecord)
            .where(
                NotificationRecord.status.in_(tuple(TERMINAL_RECORD_STATUSES)),
                NotificationRecord.updated_at < cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

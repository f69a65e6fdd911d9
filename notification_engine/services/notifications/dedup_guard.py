import hashlib
import json
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from notification_engine.db.models import (
    NotificationRecord,
    NotificationRecordStatus,
    Priority,
)
from notification_engine.schemas.notification_schemas import Candidate, RenderedContent
from notification_engine.utils.logging import get_logger

logger = get_logger()

HANDLED_STATUSES = (
    NotificationRecordStatus.SENT,
    NotificationRecordStatus.RETRY_SCHEDULED,
)


def compute_dedup_key(
    recipient_id: str,
    related_entity_id: Optional[str],
    kind: str,
    occurrence_key: str,
) -> str:
    """Stable hash of the four-tuple; a missing related entity hashes as ""."""
    raw = "|".join([recipient_id, related_entity_id or "", kind, occurrence_key])
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class DedupGuard:
    """Prevents a logical notification occurrence from being sent twice"""

    def __init__(self, db_session: Session):
        self.db = db_session

    def find_record(
        self,
        recipient_id: str,
        related_entity_id: Optional[str],
        kind: str,
        occurrence_key: str,
    ) -> Optional[NotificationRecord]:
        dedup_key = compute_dedup_key(
            recipient_id, related_entity_id, kind, occurrence_key
        )
        return self.db.scalar(
            select(NotificationRecord).where(NotificationRecord.dedup_key == dedup_key)
        )

    def already_handled(
        self,
        recipient_id: str,
        related_entity_id: Optional[str],
        kind: str,
        occurrence_key: str,
    ) -> bool:
        """Whether the occurrence was already sent or is waiting for a retry"""
        dedup_key = compute_dedup_key(
            recipient_id, related_entity_id, kind, occurrence_key
        )
        record_id = self.db.scalar(
            select(NotificationRecord.id)
            .where(
                NotificationRecord.dedup_key == dedup_key,
                NotificationRecord.status.in_(HANDLED_STATUSES),
            )
            .limit(1)
        )
        return record_id is not None

    def create_record(
        self, candidate: Candidate, content: RenderedContent, priority: Priority
    ) -> Optional[NotificationRecord]:
        """
        Check-then-act creation of a pending record.

        Returns None when the occurrence is already handled, or when the unique
        dedup key rejects the insert (a concurrent or earlier record owns it).
        """
        if self.already_handled(
            candidate.recipient_id,
            candidate.related_entity_id,
            candidate.kind,
            candidate.occurrence_key,
        ):
            return None

        record = NotificationRecord(
            recipient_id=candidate.recipient_id,
            related_entity_id=candidate.related_entity_id,
            kind=candidate.kind,
            occurrence_key=candidate.occurrence_key,
            dedup_key=compute_dedup_key(
                candidate.recipient_id,
                candidate.related_entity_id,
                candidate.kind,
                candidate.occurrence_key,
            ),
            title=content.title,
            message=content.message,
            payload=json.dumps(content.payload, default=str),
            priority=priority,
            status=NotificationRecordStatus.PENDING,
        )
        self.db.add(record)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.debug(
                "Notification occurrence already recorded",
                recipient_id=candidate.recipient_id,
                related_entity_id=candidate.related_entity_id,
                kind=candidate.kind,
                occurrence_key=candidate.occurrence_key,
            )
            return None

        return record

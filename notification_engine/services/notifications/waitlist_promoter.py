from datetime import datetime
from typing import List, Optional

from notification_engine.db.models import Priority
from notification_engine.providers.entity_store import EntityStore
from notification_engine.schemas.notification_schemas import Candidate, WaitlistEntry
from notification_engine.services.notifications.kinds import WAITLIST_PROMOTED
from notification_engine.services.notifications.scheduled_notification_service import (
    ScheduledNotificationService,
)
from notification_engine.utils.datetime_utils import naive_utc_now
from notification_engine.utils.logging import get_logger

logger = get_logger()


def fifo_order(entries: List[WaitlistEntry]) -> List[WaitlistEntry]:
    return sorted(entries, key=lambda entry: (entry.joined_at, entry.position))


def select_for_promotion(
    entries: List[WaitlistEntry], available_slots: int, now: datetime
) -> List[WaitlistEntry]:
    """The ``available_slots`` earliest-joined eligible entries"""
    if available_slots <= 0:
        return []
    eligible = [entry for entry in entries if entry.is_eligible(now)]
    return fifo_order(eligible)[:available_slots]


class WaitlistPromoter:
    """Promotes waitlisted registrations in arrival order when capacity frees up"""

    def __init__(
        self,
        entity_store: EntityStore,
        notifier: ScheduledNotificationService,
    ):
        self.store = entity_store
        self.notifier = notifier

    async def promote(
        self, parent_entity_id: str, now: Optional[datetime] = None
    ) -> List[WaitlistEntry]:
        """
        Fill free slots of ``parent_entity_id`` from its waitlist.

        Each entry is promoted through its own store mutation; a conflict or an
        error on one entry does not stop the others. After a conflict the
        capacity is re-read so the remaining entries carry the current
        committed count. Promoted recipients are notified afterwards.

        Raises:
            EntityStoreError: If capacity or the waitlist cannot be read
        """
        now = now or naive_utc_now()
        snapshot = self.store.get_capacity(parent_entity_id)
        available = snapshot.available_slots
        if available == 0:
            logger.debug("No free slots to promote into", parent_entity_id=parent_entity_id)
            return []

        selected = select_for_promotion(
            self.store.get_waitlist(parent_entity_id), available, now
        )
        committed = snapshot.committed
        remaining = available
        promoted: List[WaitlistEntry] = []

        for entry in selected:
            if remaining <= 0:
                break
            try:
                result = self.store.mutate_registration(
                    entry.registration_id,
                    {
                        "status": "confirmed",
                        "promoted_at": now,
                        "expected_committed": committed,
                    },
                )
            except Exception as e:
                logger.error(
                    "Waitlist promotion failed",
                    parent_entity_id=parent_entity_id,
                    registration_id=entry.registration_id,
                    error=str(e),
                )
                continue

            if result.conflict:
                # Someone else moved the count; later entries need the fresh value.
                try:
                    current = self.store.get_capacity(parent_entity_id)
                except Exception as e:
                    logger.error(
                        "Capacity re-read after promotion conflict failed",
                        parent_entity_id=parent_entity_id,
                        error=str(e),
                    )
                    break
                committed = current.committed
                remaining = current.available_slots
                logger.info(
                    "Waitlist promotion conflict, skipping entry",
                    parent_entity_id=parent_entity_id,
                    registration_id=entry.registration_id,
                    committed=committed,
                    remaining_slots=remaining,
                )
                continue
            if not result.ok:
                logger.warning(
                    "Waitlist promotion rejected",
                    parent_entity_id=parent_entity_id,
                    registration_id=entry.registration_id,
                    error=result.error,
                )
                continue

            committed += 1
            remaining -= 1
            promoted.append(entry)

        for entry in promoted:
            await self._notify_promoted(entry, now)

        logger.info(
            "Waitlist promotion completed",
            parent_entity_id=parent_entity_id,
            available_slots=available,
            selected_count=len(selected),
            promoted_count=len(promoted),
        )
        return promoted

    def waitlist_position(
        self, parent_entity_id: str, registration_id: str
    ) -> Optional[int]:
        """1-based FIFO rank of a registration on the waitlist, None if absent"""
        ordered = fifo_order(self.store.get_waitlist(parent_entity_id))
        for rank, entry in enumerate(ordered, start=1):
            if entry.registration_id == registration_id:
                return rank
        return None

    async def _notify_promoted(self, entry: WaitlistEntry, now: datetime) -> None:
        candidate = Candidate(
            kind=WAITLIST_PROMOTED,
            recipient_id=entry.recipient_id,
            related_entity_id=entry.parent_entity_id,
            occurrence_key=entry.registration_id,
            data={**entry.data, "registration_id": entry.registration_id},
        )
        try:
            await self.notifier.notify(candidate, Priority.HIGH, now)
        except Exception as e:
            self.notifier.db.rollback()
            logger.error(
                "Failed to notify promoted registrant",
                registration_id=entry.registration_id,
                recipient_id=entry.recipient_id,
                error=str(e),
            )

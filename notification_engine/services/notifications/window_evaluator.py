from datetime import datetime
from typing import Dict, List, Optional, Tuple

from notification_engine.providers.entity_store import EntityStore
from notification_engine.schemas.notification_schemas import (
    PriorityAssignment,
    TimeWindow,
)
from notification_engine.services.notifications.kinds import (
    NotificationKind,
    NotificationKindRegistry,
)
from notification_engine.utils.datetime_utils import naive_utc_now
from notification_engine.utils.errors import BusinessLogicError, EntityStoreError
from notification_engine.utils.logging import get_logger

logger = get_logger()


class WindowEvaluator:
    """Finds the candidates a notification kind must fire for at a given tick"""

    def __init__(self, entity_store: EntityStore, registry: NotificationKindRegistry):
        self.store = entity_store
        self.registry = registry

    @staticmethod
    def windows_for(kind: NotificationKind, now: datetime) -> List[TimeWindow]:
        """
        Target-time windows for every offset of ``kind``.

        An entity with target time T matches offset O at tick ``now`` when
        T - O - tolerance <= now <= T - O + tolerance.
        """
        if kind.offsets:
            return [
                TimeWindow(
                    start=now + offset.delta - kind.tolerance,
                    end=now + offset.delta + kind.tolerance,
                    offset_label=offset.label,
                )
                for offset in kind.offsets
            ]
        if kind.is_recurring:
            return [
                TimeWindow(
                    start=now - kind.period,
                    end=now,
                    offset_label=kind.period_key(now),
                )
            ]
        return []

    def evaluate(
        self, kind_code: str, now: Optional[datetime] = None
    ) -> List[PriorityAssignment]:
        """
        Candidates for ``kind_code`` at ``now``, each with its occurrence key and priority.

        Raises:
            EntityStoreError: If any store query fails; the whole kind is skipped
            BusinessLogicError: If the kind is not evaluated on a schedule
        """
        now = now or naive_utc_now()
        kind = self.registry.get(kind_code)
        if not kind.is_scheduled:
            raise BusinessLogicError(
                f"Notification kind {kind_code} is produced on demand, not evaluated",
                error_code="KIND_NOT_SCHEDULED",
            )

        priorities = {offset.label: offset.priority for offset in kind.offsets}
        assignments: Dict[Tuple[str, Optional[str], str], PriorityAssignment] = {}

        for window in self.windows_for(kind, now):
            occurrence_key = window.offset_label or ""
            try:
                found = self.store.find_candidates(kind.code, window, dict(kind.filters))
            except EntityStoreError:
                raise
            except Exception as e:
                raise EntityStoreError(
                    f"Candidate query failed for {kind.code}/{occurrence_key}: {e}"
                ) from e

            for candidate in found:
                if candidate.target_time is not None and not window.contains(
                    candidate.target_time
                ):
                    logger.debug(
                        "Dropping candidate outside its window",
                        kind=kind.code,
                        recipient_id=candidate.recipient_id,
                        related_entity_id=candidate.related_entity_id,
                    )
                    continue

                key = (candidate.recipient_id, candidate.related_entity_id, occurrence_key)
                if key in assignments:
                    continue

                assignments[key] = PriorityAssignment(
                    candidate=candidate.model_copy(
                        update={"kind": kind.code, "occurrence_key": occurrence_key}
                    ),
                    priority=priorities.get(occurrence_key, kind.default_priority),
                )

        logger.info(
            "Notification kind evaluated",
            kind=kind.code,
            candidate_count=len(assignments),
            window_count=len(kind.offsets) or 1,
        )
        return list(assignments.values())

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from notification_engine.config.settings import Settings, settings
from notification_engine.providers.entity_store import EntityStore
from notification_engine.schemas.notification_schemas import (
    OutboundMessageCreate,
    TimeWindow,
)
from notification_engine.services.notifications.content_builder import display_value
from notification_engine.services.notifications.kinds import (
    DAILY_DIGEST,
    NotificationKindRegistry,
)
from notification_engine.services.notifications.outbound_queue import OutboundQueue
from notification_engine.utils.datetime_utils import naive_utc_now
from notification_engine.utils.logging import get_logger

logger = get_logger()


def format_event_lines(events: List[Dict[str, Any]]) -> str:
    lines = []
    for event in events:
        start = display_value(event.get("start_time", ""))
        lines.append(f"- {event.get('event_title', 'Untitled event')} ({start})")
    return "\n".join(lines)


class DailyDigestProducer:
    """Queues one digest email per opted-in recipient with upcoming events"""

    def __init__(
        self,
        entity_store: EntityStore,
        queue: OutboundQueue,
        registry: Optional[NotificationKindRegistry] = None,
        app_settings: Settings = settings,
    ):
        self.store = entity_store
        self.queue = queue
        self.registry = registry or NotificationKindRegistry.from_settings(app_settings)
        self.lookahead = timedelta(days=app_settings.DIGEST_LOOKAHEAD_DAYS)

    def produce(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or naive_utc_now()
        kind = self.registry.get(DAILY_DIGEST)
        window = TimeWindow(start=now, end=now + self.lookahead)

        candidates = self.store.find_candidates(kind.code, window, dict(kind.filters))
        summary = {"candidates": len(candidates), "queued": 0, "skipped": 0, "errors": 0}

        for candidate in candidates:
            events = candidate.data.get("events") or []
            if not events:
                summary["skipped"] += 1
                continue

            try:
                preferences = self.store.get_recipient_preferences(candidate.recipient_id)
                if not (preferences.email_enabled and preferences.email):
                    summary["skipped"] += 1
                    continue

                self.queue.enqueue(
                    OutboundMessageCreate(
                        recipient_address=preferences.email,
                        recipient_id=candidate.recipient_id,
                        template_id=DAILY_DIGEST,
                        template_data={
                            "upcoming_count": len(events),
                            "lookahead_days": self.lookahead.days,
                            "event_lines": format_event_lines(events),
                        },
                        priority=kind.default_priority.rank,
                        scheduled_for=now,
                    )
                )
                summary["queued"] += 1
            except Exception as e:
                self.queue.db.rollback()
                summary["errors"] += 1
                logger.error(
                    "Failed to queue daily digest",
                    recipient_id=candidate.recipient_id,
                    error=str(e),
                )

        logger.info("Daily digest produced", **summary)
        return summary

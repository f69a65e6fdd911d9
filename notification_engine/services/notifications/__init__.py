from .kinds import NotificationKind, NotificationKindRegistry
from .content_builder import build_content
from .dedup_guard import DedupGuard
from .channel_dispatcher import ChannelDispatcher
from .retry_coordinator import RetryCoordinator
from .window_evaluator import WindowEvaluator
from .scheduled_notification_service import (
    CandidateOutcome,
    ScheduledNotificationService,
)
from .outbound_queue import OutboundQueue
from .daily_digest import DailyDigestProducer
from .waitlist_promoter import WaitlistPromoter
from .retention import RetentionService

__all__ = [
    "NotificationKind",
    "NotificationKindRegistry",
    "build_content",
    "DedupGuard",
    "ChannelDispatcher",
    "RetryCoordinator",
    "WindowEvaluator",
    "CandidateOutcome",
    "ScheduledNotificationService",
    "OutboundQueue",
    "DailyDigestProducer",
    "WaitlistPromoter",
    "RetentionService",
]

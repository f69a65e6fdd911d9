from .background import *
from .cron import *

__all__ = [
    # Background Tasks
    "promote_waitlist_task",
    "cancel_notifications_task",
    # Scheduled/Cron Tasks
    "evaluate_notification_kind_task",
    "notification_retry_sweeper_task",
    "outbound_queue_processor_task",
    "daily_digest_producer_task",
    "notification_retention_cleanup_task",
]

from .notification_kind_evaluator import evaluate_notification_kind_task
from .notification_retry_sweeper import notification_retry_sweeper_task
from .outbound_queue_processor import outbound_queue_processor_task
from .daily_digest_producer import daily_digest_producer_task
from .notification_retention_cleanup import notification_retention_cleanup_task

__all__ = [
    "evaluate_notification_kind_task",
    "notification_retry_sweeper_task",
    "outbound_queue_processor_task",
    "daily_digest_producer_task",
    "notification_retention_cleanup_task",
]

from .waitlist_promotion import promote_waitlist_task
from .notification_cancellation import cancel_notifications_task

__all__ = [
    "promote_waitlist_task",
    "cancel_notifications_task",
]

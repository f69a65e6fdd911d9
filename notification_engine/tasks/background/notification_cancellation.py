import asyncio
from typing import Optional

from notification_engine.celery import celery
from notification_engine.db.session import get_sync_session
from notification_engine.providers.loader import (
    get_channel_transport,
    get_entity_store,
)
from notification_engine.services.notifications.scheduled_notification_service import (
    ScheduledNotificationService,
)
from notification_engine.utils.context import set_request_id
from notification_engine.utils.errors import DatabaseError
from notification_engine.utils.logging import get_logger


@celery.task(bind=True, max_retries=3, default_retry_delay=60)
def cancel_notifications_task(
    self,
    request_id: str,
    reason: str,
    related_entity_id: Optional[str] = None,
    recipient_id: Optional[str] = None,
    kind: Optional[str] = None,
):
    """
    Cancel pending and retry-scheduled notifications, e.g. after an event
    was deleted or a registration withdrawn.
    """
    return asyncio.run(
        _async_cancel_notifications(
            request_id, reason, related_entity_id, recipient_id, kind
        )
    )


async def _async_cancel_notifications(
    request_id: str,
    reason: str,
    related_entity_id: Optional[str],
    recipient_id: Optional[str],
    kind: Optional[str],
):
    set_request_id(request_id)
    logger = get_logger().bind(request_id=request_id)

    for db_session in get_sync_session():
        try:
            service = ScheduledNotificationService(
                db_session, get_entity_store(), get_channel_transport()
            )
            cancelled = service.cancel_notifications(
                reason,
                related_entity_id=related_entity_id,
                recipient_id=recipient_id,
                kind=kind,
            )

            return {
                "success": True,
                "cancelled_count": cancelled,
                "request_id": request_id,
            }

        except Exception as e:
            logger.error(
                "Notification cancellation task exception",
                related_entity_id=related_entity_id,
                recipient_id=recipient_id,
                error=str(e),
                exc_info=True,
            )

            return {
                "success": False,
                "error": str(e),
                "request_id": request_id,
            }

    raise DatabaseError("Failed to get database session")

import asyncio

from notification_engine.celery import celery
from notification_engine.db.session import get_sync_session
from notification_engine.providers.loader import (
    get_channel_transport,
    get_entity_store,
)
from notification_engine.services.notifications.scheduled_notification_service import (
    ScheduledNotificationService,
)
from notification_engine.services.notifications.waitlist_promoter import (
    WaitlistPromoter,
)
from notification_engine.utils.context import set_request_id
from notification_engine.utils.errors import DatabaseError, EntityStoreError
from notification_engine.utils.logging import get_logger


@celery.task(bind=True, max_retries=3, default_retry_delay=60)
def promote_waitlist_task(self, request_id: str, parent_entity_id: str):
    """
    Promote waitlisted registrations of an entity after a cancellation,
    rejection or capacity increase freed slots.

    Store read failures are retried by Celery; per-entry failures are not.
    """
    try:
        return asyncio.run(_async_promote_waitlist(request_id, parent_entity_id))
    except EntityStoreError as exc:
        get_logger().bind(request_id=request_id).warning(
            "Waitlist promotion will be retried",
            parent_entity_id=parent_entity_id,
            retry=self.request.retries,
            error=exc.message,
        )
        raise self.retry(exc=exc)


async def _async_promote_waitlist(request_id: str, parent_entity_id: str):
    set_request_id(request_id)
    logger = get_logger().bind(request_id=request_id)

    for db_session in get_sync_session():
        entity_store = get_entity_store()
        notifier = ScheduledNotificationService(
            db_session, entity_store, get_channel_transport()
        )
        promoted = await WaitlistPromoter(entity_store, notifier).promote(
            parent_entity_id
        )

        logger.info(
            "Waitlist promotion task completed",
            parent_entity_id=parent_entity_id,
            promoted_count=len(promoted),
        )

        return {
            "success": True,
            "parent_entity_id": parent_entity_id,
            "promoted_registration_ids": [e.registration_id for e in promoted],
            "request_id": request_id,
        }

    raise DatabaseError("Failed to get database session")

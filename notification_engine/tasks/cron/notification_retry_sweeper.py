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
from notification_engine.tasks.task_guard import skip_if_running
from notification_engine.utils.errors import DatabaseError
from notification_engine.utils.logging import get_logger


@celery.task(bind=True, max_retries=3, default_retry_delay=60)
def notification_retry_sweeper_task(self, request_id: str):
    """
    Redispatches notification records whose backoff has elapsed, and records
    left pending by an interrupted run. Runs every minute.

    Args:
        request_id: The request ID for tracking purposes (provided by Celery Beat configuration)
    """
    return asyncio.run(_async_notification_retry_sweeper(request_id))


@skip_if_running("notification_retry_sweeper")
async def _async_notification_retry_sweeper(request_id: str):
    logger = get_logger().bind(request_id=request_id)

    for db_session in get_sync_session():
        try:
            service = ScheduledNotificationService(
                db_session, get_entity_store(), get_channel_transport()
            )
            summary = await service.retry_due()

            return {"success": True, **summary, "request_id": request_id}

        except Exception as e:
            logger.error(
                "Notification retry sweeper task exception",
                error=str(e),
                exc_info=True,
            )

            return {
                "success": False,
                "error": str(e),
                "request_id": request_id,
            }

    raise DatabaseError("Failed to get database session")

import asyncio

from notification_engine.celery import celery
from notification_engine.db.session import get_sync_session
from notification_engine.services.notifications.retention import RetentionService
from notification_engine.tasks.task_guard import skip_if_running
from notification_engine.utils.errors import DatabaseError
from notification_engine.utils.logging import get_logger


@celery.task(bind=True, max_retries=3, default_retry_delay=60)
def notification_retention_cleanup_task(self, request_id: str):
    """
    Daily task that deletes terminal notification records and outbound
    messages older than their retention windows.

    Args:
        request_id: The request ID for tracking purposes (provided by Celery Beat configuration)
    """
    return asyncio.run(_async_notification_retention_cleanup(request_id))


@skip_if_running("notification_retention_cleanup")
async def _async_notification_retention_cleanup(request_id: str):
    logger = get_logger().bind(request_id=request_id)

    for db_session in get_sync_session():
        try:
            summary = RetentionService(db_session).purge_expired()

            return {"success": True, **summary, "request_id": request_id}

        except Exception as e:
            db_session.rollback()
            logger.error(
                "Notification retention cleanup task exception",
                error=str(e),
                exc_info=True,
            )

            return {
                "success": False,
                "error": str(e),
                "request_id": request_id,
            }

    raise DatabaseError("Failed to get database session")

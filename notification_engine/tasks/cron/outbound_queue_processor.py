import asyncio

from notification_engine.celery import celery
from notification_engine.db.session import get_sync_session
from notification_engine.providers.loader import get_channel_transport
from notification_engine.services.notifications.outbound_queue import OutboundQueue
from notification_engine.tasks.task_guard import skip_if_running
from notification_engine.utils.errors import DatabaseError
from notification_engine.utils.logging import get_logger


@celery.task(bind=True, max_retries=3, default_retry_delay=60)
def outbound_queue_processor_task(self, request_id: str):
    """
    Drains due outbound messages in priority order, in rate-limited
    sub-batches. Runs every minute.

    Args:
        request_id: The request ID for tracking purposes (provided by Celery Beat configuration)
    """
    return asyncio.run(_async_outbound_queue_processor(request_id))


@skip_if_running("outbound_queue_processor")
async def _async_outbound_queue_processor(request_id: str):
    logger = get_logger().bind(request_id=request_id)

    for db_session in get_sync_session():
        try:
            queue = OutboundQueue(db_session, get_channel_transport())
            summary = await queue.drain()

            return {"success": True, **summary, "request_id": request_id}

        except Exception as e:
            logger.error(
                "Outbound queue processor task exception",
                error=str(e),
                exc_info=True,
            )

            return {
                "success": False,
                "error": str(e),
                "request_id": request_id,
            }

    raise DatabaseError("Failed to get database session")

import asyncio

from notification_engine.celery import celery
from notification_engine.db.session import get_sync_session
from notification_engine.providers.loader import (
    get_channel_transport,
    get_entity_store,
)
from notification_engine.services.notifications.daily_digest import DailyDigestProducer
from notification_engine.services.notifications.outbound_queue import OutboundQueue
from notification_engine.tasks.task_guard import skip_if_running
from notification_engine.utils.errors import DatabaseError
from notification_engine.utils.logging import get_logger


@celery.task(bind=True, max_retries=3, default_retry_delay=60)
def daily_digest_producer_task(self, request_id: str):
    """
    Daily task that queues a digest email of upcoming events for every
    opted-in recipient. The outbound queue processor sends them.

    Args:
        request_id: The request ID for tracking purposes (provided by Celery Beat configuration)
    """
    return asyncio.run(_async_daily_digest_producer(request_id))


@skip_if_running("daily_digest_producer")
async def _async_daily_digest_producer(request_id: str):
    logger = get_logger().bind(request_id=request_id)

    for db_session in get_sync_session():
        try:
            queue = OutboundQueue(db_session, get_channel_transport())
            producer = DailyDigestProducer(get_entity_store(), queue)
            summary = producer.produce()

            return {"success": True, **summary, "request_id": request_id}

        except Exception as e:
            logger.error(
                "Daily digest producer task exception",
                error=str(e),
                exc_info=True,
            )

            return {
                "success": False,
                "error": str(e),
                "request_id": request_id,
            }

    raise DatabaseError("Failed to get database session")

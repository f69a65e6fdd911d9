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
from notification_engine.tasks.task_guard import run_exclusive
from notification_engine.utils.errors import DatabaseError
from notification_engine.utils.logging import get_logger


@celery.task(bind=True, max_retries=3, default_retry_delay=60)
def evaluate_notification_kind_task(self, request_id: str, kind: str):
    """
    Periodic task that evaluates one notification kind and dispatches
    every candidate whose window is open.

    Args:
        request_id: The request ID for tracking purposes (provided by Celery Beat configuration)
        kind: Notification kind code, e.g. "event_reminder"
    """
    return asyncio.run(_async_evaluate_notification_kind(request_id, kind))


async def _async_evaluate_notification_kind(request_id: str, kind: str):
    # One guard per kind.
    return await run_exclusive(
        f"notification_kind_evaluator:{kind}", request_id, _evaluate_kind, kind
    )


async def _evaluate_kind(request_id: str, kind: str):
    logger = get_logger().bind(request_id=request_id)

    for db_session in get_sync_session():
        try:
            service = ScheduledNotificationService(
                db_session, get_entity_store(), get_channel_transport()
            )
            report = await service.run_kind(kind)

            return {
                "success": not report.aborted,
                **report.as_dict(),
                "request_id": request_id,
            }

        except Exception as e:
            logger.error(
                "Notification kind evaluator task exception",
                kind=kind,
                error=str(e),
                exc_info=True,
            )

            return {
                "success": False,
                "kind": kind,
                "error": str(e),
                "request_id": request_id,
            }

    raise DatabaseError("Failed to get database session")

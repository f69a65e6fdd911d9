import asyncio
import json
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from notification_engine.config.settings import Settings, settings
from notification_engine.db.models import (
    ChannelType,
    OutboundMessage,
    OutboundMessageStatus,
    Priority,
)
from notification_engine.providers.channel_transport import ChannelTransport
from notification_engine.schemas.notification_schemas import (
    OutboundMessageCreate,
    TransportResult,
)
from notification_engine.services.notifications.content_builder import (
    build_content,
    has_template,
)
from notification_engine.services.notifications.retry_coordinator import (
    compute_backoff,
)
from notification_engine.utils.datetime_utils import naive_utc_now, to_naive_utc
from notification_engine.utils.errors import BusinessLogicError, TransportError
from notification_engine.utils.logging import get_logger

logger = get_logger()

DRAINABLE_STATUSES = (OutboundMessageStatus.PENDING, OutboundMessageStatus.FAILED)


def priority_from_rank(rank: int) -> Priority:
    for priority in (Priority.URGENT, Priority.HIGH, Priority.MEDIUM):
        if rank >= priority.rank:
            return priority
    return Priority.LOW


class OutboundQueue:
    """Persisted priority queue for bulk and deferred sends"""

    def __init__(
        self,
        db_session: Session,
        transport: ChannelTransport,
        app_settings: Settings = settings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.db = db_session
        self.transport = transport
        self.batch_size = app_settings.OUTBOUND_BATCH_SIZE
        self.sub_batch_size = app_settings.OUTBOUND_SUB_BATCH_SIZE
        self.batch_delay = app_settings.OUTBOUND_BATCH_DELAY_MS / 1000
        self.max_retries = app_settings.OUTBOUND_MAX_RETRIES
        self.backoff_base = timedelta(minutes=app_settings.OUTBOUND_BACKOFF_BASE_MINUTES)
        self.max_in_flight = app_settings.OUTBOUND_SUB_BATCH_SIZE
        self._sleep = sleep

    def enqueue(self, message: OutboundMessageCreate) -> str:
        """Persist a message for later draining and return its id"""
        if message.template_id is None and not message.body:
            raise BusinessLogicError(
                "Outbound message needs a body or a template_id",
                error_code="OUTBOUND_NO_CONTENT",
            )
        if message.template_id is not None and not has_template(message.template_id):
            raise BusinessLogicError(
                f"Unknown outbound template: {message.template_id}",
                error_code="OUTBOUND_UNKNOWN_TEMPLATE",
            )

        outbound = OutboundMessage(
            channel=message.channel,
            recipient_address=message.recipient_address,
            recipient_id=message.recipient_id,
            subject=message.subject,
            body=message.body,
            template_id=message.template_id,
            template_data=(
                json.dumps(message.template_data, default=str)
                if message.template_id
                else None
            ),
            priority=message.priority,
            scheduled_for=(
                to_naive_utc(message.scheduled_for)
                if message.scheduled_for
                else naive_utc_now()
            ),
            status=OutboundMessageStatus.PENDING,
        )
        self.db.add(outbound)
        self.db.commit()

        logger.debug(
            "Outbound message queued",
            message_id=outbound.id,
            channel=outbound.channel.value,
            priority=outbound.priority,
        )
        return outbound.id

    def select_due(self, now: datetime, limit: int) -> List[OutboundMessage]:
        stmt = (
            select(OutboundMessage)
            .where(
                OutboundMessage.status.in_(DRAINABLE_STATUSES),
                OutboundMessage.scheduled_for <= now,
            )
            .order_by(OutboundMessage.priority.desc(), OutboundMessage.created_at.asc())
            .limit(limit)
        )
        return list(self.db.scalars(stmt).all())

    def compute_next_attempt(self, failures: int, now: datetime) -> datetime:
        """Schedule after the n-th failure: now + base * 2^(n-1)"""
        return now + compute_backoff(self.backoff_base, max(0, failures - 1))

    async def drain(
        self,
        batch_size: Optional[int] = None,
        max_in_flight: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, int]:
        """Send due messages in rate-limited sub-batches"""
        now = now or naive_utc_now()
        messages = self.select_due(now, batch_size or self.batch_size)
        summary = {"selected": len(messages), "sent": 0, "retrying": 0, "failed_permanent": 0}
        if not messages:
            return summary

        semaphore = asyncio.Semaphore(max_in_flight or self.max_in_flight)

        for offset in range(0, len(messages), self.sub_batch_size):
            if offset and self.batch_delay:
                await self._sleep(self.batch_delay)

            sub_batch = messages[offset : offset + self.sub_batch_size]
            results = await asyncio.gather(
                *(self._send_bounded(semaphore, message) for message in sub_batch)
            )

            for message, (result, permanent_error) in zip(sub_batch, results):
                status = self._apply_result(message, result, permanent_error, now)
                if status == OutboundMessageStatus.SENT:
                    summary["sent"] += 1
                elif status == OutboundMessageStatus.FAILED:
                    summary["retrying"] += 1
                else:
                    summary["failed_permanent"] += 1
            self.db.commit()

        logger.info("Outbound queue drained", **summary)
        return summary

    async def _send_bounded(self, semaphore: asyncio.Semaphore, message: OutboundMessage):
        async with semaphore:
            try:
                return await self._send(message), False
            except TransportError as e:
                return TransportResult(success=False, error=e.message), e.permanent
            except Exception as e:
                return TransportResult(success=False, error=str(e)), False

    async def _send(self, message: OutboundMessage) -> TransportResult:
        subject, body = message.subject or "", message.body or ""
        if message.template_id:
            content = build_content(
                message.template_id,
                json.loads(message.template_data) if message.template_data else {},
                priority_from_rank(message.priority),
            )
            subject, body = message.subject or content.title, content.message

        if message.channel == ChannelType.EMAIL:
            return await self.transport.send_email(message.recipient_address, subject, body)
        if message.channel == ChannelType.SMS:
            return await self.transport.send_sms(message.recipient_address, body)

        user_id = message.recipient_id or message.recipient_address
        payload = {"title": subject, "body": body, "message_id": message.id}
        if message.channel == ChannelType.PUSH:
            return await self.transport.send_push(user_id, payload)

        notification_id = await self.transport.create_in_app(user_id, payload)
        return TransportResult(success=bool(notification_id), message_id=notification_id)

    def _apply_result(
        self,
        message: OutboundMessage,
        result: TransportResult,
        permanent_error: bool,
        now: datetime,
    ) -> OutboundMessageStatus:
        if result.success:
            message.status = OutboundMessageStatus.SENT
            message.sent_at = now
            message.provider_message_id = result.message_id
            message.last_error = None
            return message.status

        message.retry_count += 1
        message.last_error = result.error or "delivery rejected"

        if permanent_error or result.permanent or message.retry_count > self.max_retries:
            message.status = OutboundMessageStatus.FAILED_PERMANENT
            logger.warning(
                "Outbound message failed permanently",
                message_id=message.id,
                retry_count=message.retry_count,
                error=message.last_error,
            )
        else:
            message.status = OutboundMessageStatus.FAILED
            message.scheduled_for = self.compute_next_attempt(message.retry_count, now)
        return message.status

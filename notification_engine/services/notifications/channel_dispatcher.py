import json
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from notification_engine.config.settings import settings
from notification_engine.db.models import (
    ChannelType,
    NotificationDelivery,
    NotificationRecord,
    Priority,
)
from notification_engine.providers.channel_transport import ChannelTransport
from notification_engine.schemas.notification_schemas import (
    ChannelAttempt,
    DeliveryResult,
    RecipientPreferences,
    RenderedContent,
    TransportResult,
)
from notification_engine.utils.datetime_utils import naive_utc_now
from notification_engine.utils.errors import TransportError
from notification_engine.utils.logging import get_logger

logger = get_logger()

CHANNEL_PRECEDENCE = (
    ChannelType.IN_APP,
    ChannelType.EMAIL,
    ChannelType.PUSH,
    ChannelType.SMS,
)
SMS_PRIORITIES = frozenset({Priority.HIGH, Priority.URGENT})


class ChannelDispatcher:
    """Delivers one rendered notification to one recipient across channels"""

    def __init__(
        self,
        transport: ChannelTransport,
        sms_enabled: bool = settings.SMS_ENABLED,
        push_enabled: bool = settings.PUSH_ENABLED,
        in_app_expiry_days: int = settings.IN_APP_EXPIRY_DAYS,
        clock: Callable[[], datetime] = naive_utc_now,
    ):
        self.transport = transport
        self.sms_enabled = sms_enabled
        self.push_enabled = push_enabled
        self.in_app_expiry = timedelta(days=in_app_expiry_days)
        self.clock = clock

    def plan_channels(
        self,
        preferences: RecipientPreferences,
        priority: Priority,
        kind: Optional[str] = None,
        skip_channels: Iterable[ChannelType] = (),
    ) -> List[ChannelType]:
        """Channels to attempt, in precedence order"""
        skipped = set(skip_channels)
        channels = [ChannelType.IN_APP]

        if kind is None or kind not in preferences.muted_kinds:
            if preferences.email_enabled and preferences.email:
                channels.append(ChannelType.EMAIL)
            if (
                self.push_enabled
                and preferences.push_enabled
                and preferences.push_tokens
            ):
                channels.append(ChannelType.PUSH)
            if (
                self.sms_enabled
                and preferences.sms_enabled
                and priority in SMS_PRIORITIES
                and preferences.phone
            ):
                channels.append(ChannelType.SMS)

        return [channel for channel in channels if channel not in skipped]

    async def deliver(
        self,
        preferences: RecipientPreferences,
        content: RenderedContent,
        priority: Priority,
        kind: Optional[str] = None,
        skip_channels: Iterable[ChannelType] = (),
    ) -> DeliveryResult:
        """
        Attempt every planned channel independently.

        Transport errors are classified into the returned attempts and never
        raised. A channel failing does not stop the channels after it.
        """
        attempts: List[ChannelAttempt] = []
        for channel in self.plan_channels(preferences, priority, kind, skip_channels):
            attempts.append(
                await self._attempt(channel, preferences, content, priority, kind)
            )

        result = DeliveryResult(attempts=attempts)
        logger.debug(
            "Notification dispatched",
            user_id=preferences.user_id,
            kind=kind,
            succeeded=sorted(c.value for c in result.channels_succeeded),
            failed=sorted(c.value for c in result.channels_failed),
        )
        return result

    async def deliver_to_record(
        self,
        record: NotificationRecord,
        preferences: RecipientPreferences,
    ) -> DeliveryResult:
        """
        Deliver a stored record and append every attempt to its delivery list.

        Channels that already failed permanently for this record are skipped.
        The delivery rows are added after the last await, so the caller can
        commit them together with the state transition.
        """
        content = RenderedContent(
            title=record.title,
            message=record.message,
            payload=json.loads(record.payload) if record.payload else {},
        )
        result = await self.deliver(
            preferences,
            content,
            record.priority,
            kind=record.kind,
            skip_channels=self.permanently_failed_channels(record),
        )

        for attempt in result.attempts:
            record.deliveries.append(
                NotificationDelivery(
                    channel=attempt.channel,
                    attempted=attempt.attempted,
                    delivered=attempt.delivered,
                    permanent=attempt.permanent,
                    error=attempt.error,
                    attempted_at=attempt.timestamp,
                )
            )
        return result

    @staticmethod
    def permanently_failed_channels(record: NotificationRecord) -> Set[ChannelType]:
        return {
            delivery.channel
            for delivery in record.deliveries
            if delivery.permanent and not delivery.delivered
        }

    async def _attempt(
        self,
        channel: ChannelType,
        preferences: RecipientPreferences,
        content: RenderedContent,
        priority: Priority,
        kind: Optional[str],
    ) -> ChannelAttempt:
        try:
            result = await self._send(channel, preferences, content, priority, kind)
        except TransportError as e:
            logger.warning(
                "Channel delivery failed",
                channel=channel.value,
                user_id=preferences.user_id,
                permanent=e.permanent,
                error=e.message,
            )
            return ChannelAttempt(
                channel=channel,
                delivered=False,
                error=e.message,
                permanent=e.permanent,
                timestamp=self.clock(),
            )
        except Exception as e:
            logger.warning(
                "Channel delivery raised unexpectedly",
                channel=channel.value,
                user_id=preferences.user_id,
                error=str(e),
            )
            return ChannelAttempt(
                channel=channel,
                delivered=False,
                error=str(e) or e.__class__.__name__,
                timestamp=self.clock(),
            )

        if not result.success:
            logger.warning(
                "Channel delivery rejected",
                channel=channel.value,
                user_id=preferences.user_id,
                permanent=result.permanent,
                error=result.error,
            )
        return ChannelAttempt(
            channel=channel,
            delivered=result.success,
            error=None if result.success else (result.error or "delivery rejected"),
            permanent=(not result.success) and result.permanent,
            timestamp=self.clock(),
        )

    async def _send(
        self,
        channel: ChannelType,
        preferences: RecipientPreferences,
        content: RenderedContent,
        priority: Priority,
        kind: Optional[str],
    ) -> TransportResult:
        if channel == ChannelType.IN_APP:
            notification_id = await self.transport.create_in_app(
                preferences.user_id, self._in_app_payload(content, priority, kind)
            )
            if not notification_id:
                return TransportResult(success=False, error="in-app store returned no id")
            return TransportResult(success=True, message_id=str(notification_id))

        if channel == ChannelType.EMAIL:
            return await self.transport.send_email(
                preferences.email, content.title, content.message
            )

        if channel == ChannelType.PUSH:
            return await self.transport.send_push(
                preferences.user_id,
                {
                    "title": content.title,
                    "body": content.message,
                    "data": content.payload,
                    "priority": priority.value,
                },
            )

        return await self.transport.send_sms(
            preferences.phone, f"{content.title}: {content.message}"
        )

    def _in_app_payload(
        self, content: RenderedContent, priority: Priority, kind: Optional[str]
    ) -> Dict[str, Any]:
        return {
            "kind": kind,
            "title": content.title,
            "message": content.message,
            "data": content.payload,
            "priority": priority.value,
            "expires_at": (self.clock() + self.in_app_expiry).isoformat(),
        }

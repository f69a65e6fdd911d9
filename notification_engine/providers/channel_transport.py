import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict

from notification_engine.schemas.notification_schemas import TransportResult
from notification_engine.utils.logging import get_logger

logger = get_logger()


class ChannelTransport(ABC):
    """
    Send API of the concrete delivery providers.

    Methods may either return a failed ``TransportResult`` or raise
    ``TransientTransportError`` / ``PermanentTransportError``. Any other
    exception is treated as transient.
    """

    @abstractmethod
    async def send_email(self, to: str, subject: str, body: str) -> TransportResult:
        pass

    @abstractmethod
    async def send_push(self, user_id: str, payload: Dict[str, Any]) -> TransportResult:
        pass

    @abstractmethod
    async def send_sms(self, phone: str, message: str) -> TransportResult:
        pass

    @abstractmethod
    async def create_in_app(self, user_id: str, payload: Dict[str, Any]) -> str:
        """Persist an in-app notification and return its id."""
        pass


class LoggingChannelTransport(ChannelTransport):
    """Dry-run transport: logs every send and reports success."""

    async def send_email(self, to: str, subject: str, body: str) -> TransportResult:
        message_id = str(uuid.uuid4())
        logger.info(
            "Dry-run email", to=to, subject=subject, message_id=message_id
        )
        return TransportResult(success=True, message_id=message_id)

    async def send_push(self, user_id: str, payload: Dict[str, Any]) -> TransportResult:
        message_id = str(uuid.uuid4())
        logger.info(
            "Dry-run push",
            user_id=user_id,
            title=payload.get("title"),
            message_id=message_id,
        )
        return TransportResult(success=True, message_id=message_id)

    async def send_sms(self, phone: str, message: str) -> TransportResult:
        message_id = str(uuid.uuid4())
        logger.info("Dry-run SMS", phone=phone, length=len(message), message_id=message_id)
        return TransportResult(success=True, message_id=message_id)

    async def create_in_app(self, user_id: str, payload: Dict[str, Any]) -> str:
        notification_id = str(uuid.uuid4())
        logger.info(
            "Dry-run in-app notification",
            user_id=user_id,
            kind=payload.get("kind"),
            notification_id=notification_id,
        )
        return notification_id

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from notification_engine.config.settings import Settings, settings
from notification_engine.db.models import Priority
from notification_engine.utils.errors import NotFoundError
from notification_engine.utils.logging import get_logger
from notification_engine.utils.offsets import NotificationOffset, parse_offsets

logger = get_logger()

EVENT_REMINDER = "event_reminder"
REGISTRATION_DEADLINE = "registration_deadline"
PAYMENT_REMINDER = "payment_reminder"
CHECKIN_REMINDER = "checkin_reminder"
PROFILE_COMPLETION = "profile_completion"
WAITLIST_PROMOTED = "waitlist_promoted"
DAILY_DIGEST = "daily_digest"

_PERIOD_EPOCH = datetime(1970, 1, 1)


@dataclass(frozen=True)
class NotificationKind:
    """
    Trigger definition for one notification kind.

    Offset kinds fire when a target timestamp is ``offset`` away (± tolerance).
    Recurring kinds have no target timestamp; they fire at most once per
    ``period`` for each candidate the store returns.
    """

    code: str
    offsets: Tuple[NotificationOffset, ...] = ()
    tolerance: timedelta = timedelta(minutes=10)
    filters: Dict[str, Any] = field(default_factory=dict)
    period: Optional[timedelta] = None
    default_priority: Priority = Priority.MEDIUM

    @property
    def is_recurring(self) -> bool:
        return self.period is not None

    @property
    def is_scheduled(self) -> bool:
        """Whether the evaluator drives this kind (as opposed to a producer)."""
        return bool(self.offsets) or self.is_recurring

    def period_key(self, now: datetime) -> str:
        if self.period is None:
            raise ValueError(f"{self.code} is not a recurring kind")
        period_days = max(1, self.period.days)
        return f"p{(now - _PERIOD_EPOCH).days // period_days}"


def _tolerance(minutes: Optional[int], app_settings: Settings) -> timedelta:
    return timedelta(minutes=minutes or app_settings.DEFAULT_TOLERANCE_MINUTES)


def build_default_kinds(app_settings: Settings = settings) -> List[NotificationKind]:
    """The built-in kinds, with offsets and tolerances taken from settings."""
    return [
        NotificationKind(
            code=EVENT_REMINDER,
            offsets=tuple(parse_offsets(app_settings.EVENT_REMINDER_OFFSETS)),
            tolerance=_tolerance(
                app_settings.EVENT_REMINDER_TOLERANCE_MINUTES, app_settings
            ),
            filters={"event_status": "published", "registration_status": "approved"},
        ),
        NotificationKind(
            code=REGISTRATION_DEADLINE,
            offsets=tuple(parse_offsets(app_settings.REGISTRATION_DEADLINE_OFFSETS)),
            tolerance=_tolerance(
                app_settings.REGISTRATION_DEADLINE_TOLERANCE_MINUTES, app_settings
            ),
            filters={
                "event_status": "published",
                "registration_open": True,
                "audience": "interested_unregistered",
            },
        ),
        NotificationKind(
            code=PAYMENT_REMINDER,
            offsets=tuple(parse_offsets(app_settings.PAYMENT_REMINDER_OFFSETS)),
            tolerance=_tolerance(
                app_settings.PAYMENT_REMINDER_TOLERANCE_MINUTES, app_settings
            ),
            filters={"registration_status": "approved", "payment_status": "pending"},
        ),
        NotificationKind(
            code=CHECKIN_REMINDER,
            offsets=tuple(parse_offsets(app_settings.CHECKIN_REMINDER_OFFSETS)),
            tolerance=_tolerance(
                app_settings.CHECKIN_REMINDER_TOLERANCE_MINUTES, app_settings
            ),
            filters={
                "event_status": "published",
                "registration_status": "approved",
                "checked_in": False,
            },
        ),
        NotificationKind(
            code=PROFILE_COMPLETION,
            period=timedelta(days=app_settings.PROFILE_COMPLETION_PERIOD_DAYS),
            default_priority=Priority.LOW,
            filters={
                "min_account_age_days": app_settings.PROFILE_COMPLETION_MIN_ACCOUNT_AGE_DAYS,
                "max_profile_completion": app_settings.PROFILE_COMPLETION_THRESHOLD,
            },
        ),
        NotificationKind(code=WAITLIST_PROMOTED, default_priority=Priority.HIGH),
        NotificationKind(
            code=DAILY_DIGEST,
            default_priority=Priority.LOW,
            filters={"digest_opt_in": True},
        ),
    ]


class NotificationKindRegistry:
    """Registry of notification kinds by code"""

    def __init__(self, kinds: Iterable[NotificationKind] = ()):
        self._kinds: Dict[str, NotificationKind] = {}
        for kind in kinds:
            self.register(kind)

    @classmethod
    def from_settings(cls, app_settings: Settings = settings) -> "NotificationKindRegistry":
        return cls(build_default_kinds(app_settings))

    def register(self, kind: NotificationKind) -> None:
        """Register or replace a kind definition"""
        self._kinds[kind.code] = kind
        logger.debug(f"Registered notification kind: {kind.code}")

    def get(self, code: str) -> NotificationKind:
        kind = self._kinds.get(code)
        if kind is None:
            raise NotFoundError(
                f"Unknown notification kind: {code}", error_code="UNKNOWN_KIND"
            )
        return kind

    def scheduled_kinds(self) -> List[NotificationKind]:
        return [kind for kind in self._kinds.values() if kind.is_scheduled]

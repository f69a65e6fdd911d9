"""
Rendering of notification titles, messages and structured payloads.

Everything here is pure: the same kind, data and priority always produce the
same content, and nothing touches the database or a transport.
"""

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from notification_engine.db.models import Priority
from notification_engine.schemas.notification_schemas import RenderedContent
from notification_engine.services.notifications import kinds
from notification_engine.utils.datetime_utils import parse_duration

URGENT_PRIORITIES = frozenset({Priority.HIGH, Priority.URGENT})

_UNIT_NAMES = {"m": "minute", "h": "hour", "d": "day", "w": "week"}


@dataclass(frozen=True)
class ContentTemplate:
    title: str
    message: str
    urgent_title: Optional[str] = None
    urgent_message: Optional[str] = None
    payload_fields: Tuple[str, ...] = ()


_EVENT_FIELDS = ("event_id", "event_title", "start_time", "location", "registration_id")

TEMPLATES: Dict[str, ContentTemplate] = {
    kinds.EVENT_REMINDER: ContentTemplate(
        title="Reminder: {event_title}",
        message="{event_title} starts {time_phrase} at {location}.",
        urgent_title="Starting soon: {event_title}",
        urgent_message="{event_title} starts {time_phrase}! Head to {location} now.",
        payload_fields=_EVENT_FIELDS,
    ),
    kinds.REGISTRATION_DEADLINE: ContentTemplate(
        title="Registration closing: {event_title}",
        message=(
            "Registration for {event_title} closes {time_phrase}. "
            "Register now to secure your spot."
        ),
        urgent_title="Last chance to register: {event_title}",
        urgent_message="Registration for {event_title} closes {time_phrase}!",
        payload_fields=("event_id", "event_title", "registration_deadline"),
    ),
    kinds.PAYMENT_REMINDER: ContentTemplate(
        title="Payment reminder: {event_title}",
        message=(
            "Your payment of {amount} {currency} for {event_title} "
            "is due {time_phrase}."
        ),
        urgent_title="Payment due {time_phrase}: {event_title}",
        urgent_message=(
            "Your payment of {amount} {currency} for {event_title} is due "
            "{time_phrase}. Pay now to keep your registration."
        ),
        payload_fields=(
            "event_id",
            "event_title",
            "registration_id",
            "amount",
            "currency",
            "due_date",
        ),
    ),
    kinds.CHECKIN_REMINDER: ContentTemplate(
        title="Check-in opens soon: {event_title}",
        message="Check in for {event_title} {time_phrase}. Have your ticket ready.",
        urgent_title="Check in now: {event_title}",
        urgent_message=(
            "{event_title} starts {time_phrase}. Show your ticket at {location} "
            "to check in."
        ),
        payload_fields=_EVENT_FIELDS,
    ),
    kinds.PROFILE_COMPLETION: ContentTemplate(
        title="Complete your profile",
        message=(
            "Your profile is {profile_completion}% complete. Finish it to get "
            "better event recommendations."
        ),
        payload_fields=("profile_completion",),
    ),
    kinds.WAITLIST_PROMOTED: ContentTemplate(
        title="You're in: {event_title}",
        message=(
            "A spot opened up and your registration for {event_title} "
            "is now confirmed."
        ),
        payload_fields=("event_id", "event_title", "registration_id", "start_time"),
    ),
    kinds.DAILY_DIGEST: ContentTemplate(
        title="Your daily digest",
        message=(
            "You have {upcoming_count} upcoming events in the next "
            "{lookahead_days} days.\n{event_lines}"
        ),
        payload_fields=("upcoming_count", "lookahead_days"),
    ),
}


class _BlankDefaultDict(dict):
    def __missing__(self, key):
        return ""


def has_template(kind: str) -> bool:
    return kind in TEMPLATES


def describe_offset(label: str) -> str:
    """Human phrase for an offset label: "2h" becomes "in 2 hours"."""
    try:
        parse_duration(label)
    except ValueError:
        return "soon"
    amount = int(label[:-1])
    unit = _UNIT_NAMES[label[-1].lower()]
    return f"in {amount} {unit}{'' if amount == 1 else 's'}"


def display_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M UTC")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def _payload_value(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple, set)):
        return [_payload_value(item) for item in value]
    if isinstance(value, dict):
        return {key: _payload_value(val) for key, val in value.items()}
    return value


def build_content(
    kind: str, data: Dict[str, Any], priority: Priority = Priority.MEDIUM
) -> RenderedContent:
    """
    Render title, message and payload for a notification.

    ``data`` may carry ``occurrence_key`` (an offset label such as "2h") which
    becomes the ``{time_phrase}`` placeholder. Placeholders without data render
    as empty strings. Unknown kinds fall back to a generic template.
    """
    template = TEMPLATES.get(kind) or ContentTemplate(
        title=kind.replace("_", " ").capitalize(), message="{message}"
    )

    occurrence_key = data.get("occurrence_key") or ""
    context = _BlankDefaultDict(
        {key: display_value(value) for key, value in data.items()}
    )
    context.setdefault("time_phrase", describe_offset(occurrence_key))

    urgent = priority in URGENT_PRIORITIES
    title_template = (urgent and template.urgent_title) or template.title
    message_template = (urgent and template.urgent_message) or template.message

    payload: Dict[str, Any] = {
        "kind": kind,
        "priority": priority.value,
        "occurrence_key": occurrence_key,
        "related_entity_id": data.get("related_entity_id"),
    }
    for field_name in template.payload_fields:
        if field_name in data:
            payload[field_name] = _payload_value(data[field_name])

    return RenderedContent(
        title=title_template.format_map(context).strip(),
        message=message_template.format_map(context).strip(),
        payload=payload,
    )

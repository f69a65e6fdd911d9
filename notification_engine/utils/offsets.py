from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

from notification_engine.db.models import Priority
from notification_engine.utils.datetime_utils import parse_duration


@dataclass(frozen=True)
class NotificationOffset:
    """One "fire this long before the target time" rule of a notification kind."""

    label: str
    delta: timedelta
    priority: Priority


def priority_for_delta(delta: timedelta) -> Priority:
    """Closer offsets get more urgent priorities."""
    if delta <= timedelta(hours=1):
        return Priority.URGENT
    if delta <= timedelta(hours=6):
        return Priority.HIGH
    if delta <= timedelta(days=3):
        return Priority.MEDIUM
    return Priority.LOW


def parse_offsets(value: str) -> List[NotificationOffset]:
    """
    Parse an offset list such as "7d:low,1d,2h:high,30m".

    Each entry is ``label[:priority]``. Without an explicit priority one is
    derived from the duration. Labels double as occurrence keys, so they must
    be unique within a list.

    Raises:
        ValueError: On empty lists, bad labels, unknown priorities or duplicates
    """
    offsets: List[NotificationOffset] = []
    seen = set()

    for raw in value.split(","):
        entry = raw.strip()
        if not entry:
            continue

        label, _, priority_name = entry.partition(":")
        label = label.strip().lower()
        delta = parse_duration(label)

        priority: Optional[Priority] = None
        if priority_name:
            try:
                priority = Priority(priority_name.strip().lower())
            except ValueError:
                raise ValueError(
                    f"Unknown priority {priority_name!r} for offset {label!r}"
                ) from None

        if label in seen:
            raise ValueError(f"Duplicate offset label: {label!r}")
        seen.add(label)

        offsets.append(
            NotificationOffset(
                label=label,
                delta=delta,
                priority=priority or priority_for_delta(delta),
            )
        )

    if not offsets:
        raise ValueError("Offset list must contain at least one entry")

    # Farthest first, so logs read in calendar order
    return sorted(offsets, key=lambda o: o.delta, reverse=True)

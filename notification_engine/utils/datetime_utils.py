from datetime import datetime, timedelta, timezone


def naive_utc_now() -> datetime:
    """
    Get current UTC datetime as a naive datetime (no timezone info).
    All engine tables store naive UTC timestamps.

    Returns:
        datetime: Current UTC datetime without timezone info
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(dt: datetime) -> datetime:
    """
    Convert a datetime object to naive UTC (no timezone info).

    Args:
        dt: Datetime object to convert

    Returns:
        datetime: Naive UTC datetime
    """
    if dt.tzinfo is None:
        # Already naive, assume it's UTC
        return dt
    else:
        utc_dt = dt.astimezone(timezone.utc)
        return utc_dt.replace(tzinfo=None)


_DURATION_UNITS = {
    "m": "minutes",
    "h": "hours",
    "d": "days",
    "w": "weeks",
}


def parse_duration(label: str) -> timedelta:
    """
    Parse a compact duration label such as "30m", "2h", "1d" or "1w".

    Raises:
        ValueError: If the label is not <positive int><m|h|d|w>
    """
    value = label.strip().lower()
    if len(value) < 2 or value[-1] not in _DURATION_UNITS:
        raise ValueError(f"Invalid duration label: {label!r}")

    amount = value[:-1]
    if not amount.isdigit() or int(amount) <= 0:
        raise ValueError(f"Invalid duration label: {label!r}")

    return timedelta(**{_DURATION_UNITS[value[-1]]: int(amount)})

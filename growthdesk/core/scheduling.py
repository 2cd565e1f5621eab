"""Send-time arithmetic for sequence steps."""
import re
from datetime import datetime, time, timedelta
from typing import Optional

from growthdesk.core.enum_utils import get_enum_value

_TIME_OF_DAY = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")

_DELAY_UNITS = {
    "HOURS": lambda n: timedelta(hours=n),
    "DAYS": lambda n: timedelta(days=n),
    "WEEKS": lambda n: timedelta(weeks=n),
}


def parse_time_of_day(value: str) -> time:
    """
    Parse an ``HH:MM`` string.

    Raises:
        ValueError: If the value is not a valid 24h time of day
    """
    match = _TIME_OF_DAY.match(value.strip())
    if not match:
        raise ValueError(f"Invalid time of day '{value}', expected HH:MM")
    return time(int(match.group(1)), int(match.group(2)))


def calculate_next_step_time(
    from_time: datetime,
    delay_type,
    delay_value: int = 0,
    preferred_time: Optional[str] = None,
) -> datetime:
    """
    Compute when a sequence step becomes due.

    Args:
        from_time: Moment the delay starts counting from
        delay_type: IMMEDIATE, HOURS, DAYS or WEEKS (enum or string, any case)
        delay_value: Number of units to wait
        preferred_time: Optional HH:MM; overwrites the time of day of the
            computed moment (seconds zeroed). Not applied to IMMEDIATE steps.

    Returns:
        The due timestamp, in the timezone of ``from_time``

    Raises:
        ValueError: On an unknown delay type, negative delay or malformed time
    """
    kind = (get_enum_value(delay_type) or "IMMEDIATE").upper()
    if kind == "IMMEDIATE":
        return from_time

    if kind not in _DELAY_UNITS:
        raise ValueError(f"Unknown delay type: {delay_type}")
    if delay_value is None or delay_value < 0:
        raise ValueError(f"Delay value must be non-negative, got {delay_value}")

    next_time = from_time + _DELAY_UNITS[kind](delay_value)

    if preferred_time:
        at = parse_time_of_day(preferred_time)
        next_time = next_time.replace(hour=at.hour, minute=at.minute, second=0, microsecond=0)

    return next_time

"""Trial countdown derived from the canonical expiry."""

from dataclasses import dataclass
from datetime import datetime, timedelta

from core.clock import ensure_utc

EXPIRED_LABEL = "Trial expired"
EXPIRING_SOON_THRESHOLD = timedelta(hours=24)


@dataclass(frozen=True)
class Countdown:
    """Display-ready countdown state."""

    remaining_label: str
    expiring_soon: bool
    expired: bool
    remaining_seconds: int


def _plural(value: int, unit: str) -> str:
    return f"{value} {unit}{'' if value == 1 else 's'}"


def derive(
    now: datetime,
    subscription_end: datetime,
    expiring_soon_threshold: timedelta = EXPIRING_SOON_THRESHOLD,
) -> Countdown:
    """
    Turn a canonical expiry into a label and an "expiring soon" flag.

    A past expiry is reported as expired instead of a negative duration.
    """
    remaining = ensure_utc(subscription_end) - ensure_utc(now)

    if remaining <= timedelta(0):
        return Countdown(
            remaining_label=EXPIRED_LABEL,
            expiring_soon=True,
            expired=True,
            remaining_seconds=0,
        )

    total_minutes = int(remaining.total_seconds()) // 60
    days, rest = divmod(total_minutes, 24 * 60)
    hours, minutes = divmod(rest, 60)

    if days > 0:
        label = f"{_plural(days, 'day')} {_plural(hours, 'hour')}"
    elif hours > 0:
        label = f"{_plural(hours, 'hour')} {_plural(minutes, 'minute')}"
    else:
        label = _plural(minutes, "minute")

    return Countdown(
        remaining_label=label,
        expiring_soon=remaining < expiring_soon_threshold,
        expired=False,
        remaining_seconds=int(remaining.total_seconds()),
    )

"""Time source for business rules that depend on "now".

Rate-limit windows, consultation timestamps and message ordering all read the
clock through `get_clock` so tests can swap in a controllable one.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how datetimes are stored"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SystemClock:
    def now(self) -> datetime:
        return utcnow()


_system_clock = SystemClock()


def get_clock() -> SystemClock:
    return _system_clock

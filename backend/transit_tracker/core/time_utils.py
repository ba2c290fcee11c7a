"""Wall-clock helpers for feeds that count seconds since local midnight."""

import datetime
from functools import lru_cache
from zoneinfo import ZoneInfo

SECONDS_PER_DAY = 86_400


@lru_cache(maxsize=8)
def _zone(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def seconds_of_day(moment: datetime.datetime, tz_name: str) -> int:
    """Seconds since local midnight of ``moment`` in ``tz_name`` (naive means UTC)."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=datetime.timezone.utc)
    local = moment.astimezone(_zone(tz_name))
    return local.hour * 3600 + local.minute * 60 + local.second


def seconds_until(now_seconds: int, target_seconds: float) -> float:
    """Seconds from ``now_seconds`` to ``target_seconds``, wrapping past midnight."""
    delta = target_seconds - now_seconds
    if delta < 0:
        delta += SECONDS_PER_DAY
    return delta


def parse_timestamp(raw: str | datetime.datetime | None) -> datetime.datetime | None:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime.datetime):
        value = raw
    else:
        try:
            value = datetime.datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=datetime.timezone.utc)
    return value

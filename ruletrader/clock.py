from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def _get_zone(timezone_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(timezone_name)
    except ZoneInfoNotFoundError as exc:
        raise RuntimeError(
            f"Timezone '{timezone_name}' is not available. "
            "Install tzdata in your environment: pip install tzdata"
        ) from exc


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_timezone(dt: datetime, timezone_name: str) -> datetime:
    return dt.astimezone(_get_zone(timezone_name))


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    raw = str(value).strip().replace("Z", "+00:00")
    # Broker timestamps carry nanoseconds; fromisoformat accepts at most microseconds.
    if "." in raw:
        head, tail = raw.split(".", 1)
        digits = ""
        for char in tail:
            if not char.isdigit():
                break
            digits += char
        raw = f"{head}.{digits[:6].ljust(6, '0')}{tail[len(digits):]}"
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_local(dt: datetime, timezone_name: str) -> str:
    return to_timezone(dt, timezone_name).strftime("%m/%d/%y %I:%M:%S%p").lower()


def should_ping(now: datetime, *, market_closed: bool, closed_interval_minutes: int) -> bool:
    if not market_closed:
        return True
    return now.minute % max(1, closed_interval_minutes) == 0

"""Pick the daily record and the sleep session that belong to one calendar day."""

from datetime import date, datetime, time, timedelta
from typing import Optional, Tuple

from .metrics import parse_timestamp

# Sessions crossing midnight, or filed against the neighbouring provider day,
# still count if they start or end within this much of the day's edges.
MATCH_WINDOW_PADDING = timedelta(hours=6)


def _as_date(day) -> date:
    if isinstance(day, datetime):
        return day.date()
    if isinstance(day, date):
        return day
    return date.fromisoformat(str(day))


def _in_window(ts: Optional[datetime], day: date) -> bool:
    if ts is None:
        return False
    # the window is laid out in the timestamp's own offset
    start_of_day = datetime.combine(day, time.min, tzinfo=ts.tzinfo)
    end_of_day = datetime.combine(day, time.max, tzinfo=ts.tzinfo)
    return start_of_day - MATCH_WINDOW_PADDING <= ts <= end_of_day + MATCH_WINDOW_PADDING


def _duration(session) -> float:
    v = session.get("total_sleep_duration")
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return 0.0
    return float(v)


def pick_session_for_day(sessions, day) -> Optional[dict]:
    """
    Return the longest session whose bedtime_start or bedtime_end falls inside
    the padded window around ``day``, or None when nothing matches.
    """
    target = _as_date(day)
    matches = [
        s for s in (sessions or [])
        if isinstance(s, dict) and (
            _in_window(parse_timestamp(s.get("bedtime_start")), target)
            or _in_window(parse_timestamp(s.get("bedtime_end")), target)
        )
    ]
    if not matches:
        return None
    # sorted() is stable, so equal durations keep the provider's order
    return sorted(matches, key=_duration, reverse=True)[0]


def _collection(response, name):
    container = response.get(name) if isinstance(response, dict) else None
    data = container.get("data") if isinstance(container, dict) else None
    return data if isinstance(data, list) else []


def pick_for_day(response, day) -> Tuple[Optional[dict], Optional[dict]]:
    """Split a proxy response into ``(daily, sleep)`` for ``day`` (YYYY-MM-DD)."""
    day_str = _as_date(day).isoformat()
    daily = next(
        (d for d in _collection(response, "daily") if isinstance(d, dict) and d.get("day") == day_str),
        None,
    )
    sleep = pick_session_for_day(_collection(response, "sleep"), day_str)
    return daily, sleep

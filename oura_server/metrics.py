"""
Sleep metrics derivation.

Oura reports the same quantities in different units depending on the
collection: ``daily_sleep`` uses minutes, ``sleep`` sessions use seconds,
efficiency is sometimes a fraction and sometimes a percentage, and latency can
arrive as seconds or minutes. ``derive_metrics`` folds one daily record and at
most one session record into a single view model with hours for durations,
percent for efficiency and whole minutes for latency.
"""

import math
from collections import namedtuple
from datetime import datetime
from typing import Any, Dict, Optional

# ---- Unit heuristics (no unit tag exists upstream) ----
EFFICIENCY_FRACTION_MAX = 1        # raw efficiency <= this is a 0-1 fraction
LATENCY_SECONDS_THRESHOLD = 120    # raw latency above this is in seconds
LIGHT_SLEEP_NOISE_FLOOR_H = 0.01   # inferred light sleep below this is dropped

SECONDS = 3600.0
MINUTES = 60.0

# record: "daily" or "sleep"; keys: candidates tried in order; per_hour: raw units per hour
Accessor = namedtuple("Accessor", ["record", "keys", "per_hour"])

TOTAL_SLEEP = (
    Accessor("sleep", ("total_sleep_duration",), SECONDS),
    Accessor("daily", ("total_sleep",), MINUTES),
)
REM_SLEEP = (
    Accessor("sleep", ("rem_sleep_duration",), SECONDS),
    Accessor("daily", ("rem_sleep",), MINUTES),
)
DEEP_SLEEP = (
    Accessor("sleep", ("deep_sleep_duration",), SECONDS),
    Accessor("daily", ("deep_sleep",), MINUTES),
)
LIGHT_SLEEP = (
    Accessor("sleep", ("light_sleep_duration",), SECONDS),
    Accessor("daily", ("light_sleep",), MINUTES),
)
TIME_IN_BED = (
    Accessor("daily", ("time_in_bed",), MINUTES),
    Accessor("daily", ("time_in_bed_duration",), SECONDS),
    Accessor("sleep", ("time_in_bed", "time_in_bed_duration"), SECONDS),
)
AWAKE = (
    Accessor("sleep", ("awake_duration", "awake_time"), SECONDS),
    Accessor("daily", ("awake_time",), MINUTES),
)
LATENCY = (
    Accessor("daily", ("latency", "sleep_latency"), None),
    Accessor("sleep", ("latency",), None),
)

# ---- Numeric helpers ----

def _pick(record, keys) -> Optional[float]:
    """First finite number among ``keys`` in ``record``; bools don't count."""
    if not isinstance(record, dict):
        return None
    for k in keys:
        v = record.get(k)
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            continue
        if math.isfinite(v):
            return float(v)
    return None


def _hours(accessor: Accessor, daily, sleep) -> float:
    record = daily if accessor.record == "daily" else sleep
    raw = _pick(record, accessor.keys)
    return 0.0 if raw is None else raw / accessor.per_hour


def _first_hours(accessors, daily, sleep) -> float:
    """Walk the chain and return the first non-zero value in hours."""
    for accessor in accessors:
        h = _hours(accessor, daily, sleep)
        if h:
            return h
    return 0.0


def _first_raw(accessors, daily, sleep) -> Optional[float]:
    for accessor in accessors:
        record = daily if accessor.record == "daily" else sleep
        raw = _pick(record, accessor.keys)
        if raw is not None:
            return raw
    return None


def _clamp(v, lo=0.0, hi=math.inf):
    return max(lo, min(hi, v))


def _round_half_up(v: float, digits: int = 0) -> float:
    scale = 10 ** digits
    scaled = v * scale
    if not math.isfinite(scaled):
        return v
    return math.floor(scaled + 0.5) / scale


def _finite_or_0(v) -> float:
    try:
        f = float(v)
    except (TypeError, ValueError):
        return 0.0
    return f if math.isfinite(f) else 0.0


def parse_timestamp(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def _bedtime_hours(sleep) -> float:
    """Whole minutes between bedtime_start and bedtime_end, in hours, never negative."""
    if not isinstance(sleep, dict):
        return 0.0
    start = parse_timestamp(sleep.get("bedtime_start"))
    end = parse_timestamp(sleep.get("bedtime_end"))
    if start is None or end is None:
        return 0.0
    try:
        delta = end - start
    except TypeError:
        # naive vs aware
        return 0.0
    minutes = int(delta.total_seconds() / 60)
    return _clamp(minutes / 60.0)


def _stage_sum(record_name: str, daily, sleep) -> float:
    total = 0.0
    for chain in (REM_SLEEP, DEEP_SLEEP, LIGHT_SLEEP):
        for accessor in chain:
            if accessor.record == record_name:
                total += _hours(accessor, daily, sleep)
    return total


def _score(daily):
    if not isinstance(daily, dict):
        return None
    v = daily.get("score")
    if isinstance(v, bool) or not isinstance(v, (int, float)) or not math.isfinite(v):
        return None
    return v


def stage_percentages(awake: float, rem: float, light: float, deep: float) -> Dict[str, float]:
    total = awake + rem + light + deep
    if not total > 0:
        return {"awakePct": 0.0, "remPct": 0.0, "lightPct": 0.0, "deepPct": 0.0}
    return {
        "awakePct": awake / total * 100,
        "remPct": rem / total * 100,
        "lightPct": light / total * 100,
        "deepPct": deep / total * 100,
    }


def normalize_efficiency(raw: Optional[float]) -> Optional[float]:
    if raw is None:
        return None
    return raw * 100 if raw <= EFFICIENCY_FRACTION_MAX else raw


def normalize_latency(raw: Optional[float]) -> Optional[int]:
    if raw is None:
        return None
    minutes = raw / 60 if raw > LATENCY_SECONDS_THRESHOLD else raw
    return max(0, int(_round_half_up(minutes)))


def derive_metrics(daily: Optional[dict], sleep: Optional[dict]) -> Dict[str, Any]:
    """
    Build the dashboard view model for one day.

    ``daily`` is a ``daily_sleep`` record and ``sleep`` the matching session
    record; either may be None. Hour values are rounded to one decimal,
    percentages are left unrounded so the distribution still sums to 100.
    """
    total = (
        _first_hours(TOTAL_SLEEP, daily, sleep)
        or _stage_sum("sleep", daily, sleep)
        or _stage_sum("daily", daily, sleep)
        or 0.0
    )
    rem = _first_hours(REM_SLEEP, daily, sleep)
    deep = _first_hours(DEEP_SLEEP, daily, sleep)
    light = _first_hours(LIGHT_SLEEP, daily, sleep)

    tib = _first_hours(TIME_IN_BED, daily, sleep) or _bedtime_hours(sleep)

    awake = _first_hours(AWAKE, daily, sleep)
    awake_estimated = False
    if not awake and tib > 0 and total > 0:
        awake = _clamp(tib - total)
        awake_estimated = True

    # some responses omit light sleep entirely
    if not light and total > 0:
        inferred = total - rem - deep
        light = inferred if inferred > LIGHT_SLEEP_NOISE_FLOOR_H else 0.0

    efficiency = normalize_efficiency(_pick(daily, ("efficiency",)))
    if not efficiency and tib > 0 and total > 0:
        efficiency = _clamp(total / tib * 100, 0.0, 100.0)
    efficiency = _clamp(_round_half_up(_finite_or_0(efficiency), 1), 0.0, 100.0)

    latency_min = normalize_latency(_first_raw(LATENCY, daily, sleep))
    session = sleep if isinstance(sleep, dict) else {}

    total, rem, light, deep, awake = (
        _finite_or_0(v) for v in (total, rem, light, deep, awake)
    )

    result = {
        "score": _score(daily),
        "efficiency": efficiency,
        "latencyMin": latency_min,
        "bedtime": session.get("bedtime_start") or None,
        "waketime": session.get("bedtime_end") or None,
        "total": _round_half_up(total, 1),
        "rem": _round_half_up(rem, 1),
        "light": _round_half_up(light, 1),
        "deep": _round_half_up(deep, 1),
        "awake": _round_half_up(awake, 1),
        "awakeEstimated": awake_estimated,
    }
    result.update(stage_percentages(awake, rem, light, deep))
    return result

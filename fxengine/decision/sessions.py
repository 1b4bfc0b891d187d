from __future__ import annotations

import re
from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping

from fxengine.clock import ensure_utc

PREFERRED_MULTIPLIER = Decimal("1.2")
AVOIDED_MULTIPLIER = Decimal("0.7")
NEUTRAL_MULTIPLIER = Decimal("1")

_HHMM = re.compile(r"^(\d{1,2}):(\d{2})$")


def parse_hhmm(value: Any) -> int | None:
    match = _HHMM.match(str(value or "").strip())
    if match is None:
        return None
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        return None
    return hour * 60 + minute


def in_window(minute_of_day: int, window: Mapping[str, Any]) -> bool:
    """Inclusive ``start``-``end`` check; ``start > end`` wraps past midnight."""
    if not isinstance(window, Mapping):
        return False
    start = parse_hhmm(window.get("start"))
    end = parse_hhmm(window.get("end"))
    if start is None or end is None:
        return False
    if start > end:
        return minute_of_day >= start or minute_of_day <= end
    return start <= minute_of_day <= end


def session_multiplier(now: datetime, session_filter: Mapping[str, Any] | None) -> Decimal:
    if not session_filter:
        return NEUTRAL_MULTIPLIER
    current = ensure_utc(now)
    minute_of_day = current.hour * 60 + current.minute
    for window in session_filter.get("preferred_sessions") or []:
        if in_window(minute_of_day, window):
            return PREFERRED_MULTIPLIER
    for window in session_filter.get("avoid_sessions") or []:
        if in_window(minute_of_day, window):
            return AVOIDED_MULTIPLIER
    return NEUTRAL_MULTIPLIER

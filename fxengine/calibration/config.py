from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Mapping

from fxengine.clock import ensure_utc, parse_timestamp, utc_now

_ISO_WEEK_TAG = re.compile(r"^(\d{4})-W(\d{2})$")


def next_iso_week_tag(now: datetime | None = None) -> str:
    current = ensure_utc(now or utc_now()).date()
    monday = current - timedelta(days=current.weekday())
    year, week, _ = (monday + timedelta(weeks=1)).isocalendar()
    return f"{year}-W{week:02d}"


def _day_bounds(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    end = datetime.combine(day, time.max, tzinfo=timezone.utc)
    return start, end


def period_for_tag(tag: str) -> tuple[datetime, datetime]:
    match = _ISO_WEEK_TAG.match(tag)
    if match is None:
        raise ValueError(f"Invalid ISO week tag: {tag}")
    monday = date.fromisocalendar(int(match.group(1)), int(match.group(2)), 1)
    start, _ = _day_bounds(monday)
    _, end = _day_bounds(monday + timedelta(days=6))
    return start, end


def _parse_markets(raw: Any) -> tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        parts = raw.split(",")
    else:
        parts = [str(item) for item in raw]
    out: list[str] = []
    seen: set[str] = set()
    for part in parts:
        market = part.strip().upper()
        if not market or market in seen:
            continue
        seen.add(market)
        out.append(market)
    return tuple(out)


@dataclass(slots=True, frozen=True)
class CalibrationConfig:
    tag: str
    period_start: datetime
    period_end: datetime
    dry_run: bool = False
    activate: bool = False
    shadow_mode: bool = False
    markets: tuple[str, ...] = field(default_factory=tuple)
    baseline_tag: str | None = None
    window_days: int = 20

    @property
    def baseline_record_tag(self) -> str:
        return f"{self.tag}-baseline"

    @classmethod
    def from_options(
        cls,
        options: Mapping[str, Any],
        *,
        now: datetime | None = None,
        window_days: int = 20,
    ) -> "CalibrationConfig":
        raw_tag = options.get("tag")
        tag = str(raw_tag).strip() if isinstance(raw_tag, str) and raw_tag.strip() else next_iso_week_tag(now)

        start_raw = parse_timestamp(options.get("period_start"))
        end_raw = parse_timestamp(options.get("period_end"))
        if start_raw is not None and end_raw is not None:
            start, _ = _day_bounds(start_raw.date())
            _, end = _day_bounds(end_raw.date())
        elif _ISO_WEEK_TAG.match(tag):
            start, end = period_for_tag(tag)
        else:
            today = ensure_utc(now or utc_now()).date()
            monday = today - timedelta(days=today.weekday())
            start, _ = _day_bounds(monday)
            _, end = _day_bounds(monday + timedelta(days=6))

        dry_run = bool(options.get("dry_run", False))
        baseline_raw = options.get("baseline_tag")
        baseline_tag = str(baseline_raw).strip() if isinstance(baseline_raw, str) and baseline_raw.strip() else None
        return cls(
            tag=tag,
            period_start=start,
            period_end=end,
            dry_run=dry_run,
            activate=bool(options.get("activate", False)) and not dry_run,
            shadow_mode=bool(options.get("shadow", False)),
            markets=_parse_markets(options.get("markets")),
            baseline_tag=baseline_tag,
            window_days=int(options.get("window_days", window_days)),
        )

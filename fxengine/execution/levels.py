from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from fxengine.fx.pipmath import tick_size, to_decimal


@dataclass(slots=True, frozen=True)
class NormalizedLevels:
    entry: float
    sl: float
    tp: float
    adjusted: bool


def _min_distance_points(rules: Mapping[str, Any]) -> float | None:
    for key in ("min_normal_stop_or_limit_distance", "minNormalStopOrLimitDistance"):
        raw = rules.get(key)
        if raw is None:
            continue
        if isinstance(raw, Mapping):
            raw = raw.get("value")
        try:
            value = float(raw)
        except (TypeError, ValueError):
            return None
        return value if value > 0 else None
    return None


class LevelNormalizer:
    """Push stop and limit outward to the broker's minimum distance.

    ``min_normal_stop_or_limit_distance`` is expressed in points; one point is
    one tick of the instrument.
    """

    @staticmethod
    def apply(
        pair: str,
        entry: float,
        sl: float,
        tp: float,
        broker_rules: Mapping[str, Any] | None,
    ) -> NormalizedLevels:
        if not broker_rules:
            return NormalizedLevels(entry=entry, sl=sl, tp=tp, adjusted=False)
        points = _min_distance_points(broker_rules)
        if points is None:
            return NormalizedLevels(entry=entry, sl=sl, tp=tp, adjusted=False)

        min_dist = to_decimal(points) * to_decimal(tick_size(pair))
        entry_d = to_decimal(entry)
        sl_d = to_decimal(sl)
        tp_d = to_decimal(tp)
        if sl_d < entry_d < tp_d:
            if entry_d - sl_d < min_dist:
                sl_d = entry_d - min_dist
            if tp_d - entry_d < min_dist:
                tp_d = entry_d + min_dist
        elif sl_d > entry_d > tp_d:
            if sl_d - entry_d < min_dist:
                sl_d = entry_d + min_dist
            if entry_d - tp_d < min_dist:
                tp_d = entry_d - min_dist

        new_sl = float(sl_d)
        new_tp = float(tp_d)
        adjusted = new_sl != sl or new_tp != tp
        return NormalizedLevels(entry=entry, sl=new_sl, tp=new_tp, adjusted=adjusted)

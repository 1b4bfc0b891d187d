from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP
from typing import Any, Sequence

from fxengine.decision.result import Reason
from fxengine.decision.snapshot import SentimentSnapshot
from fxengine.fx.pipmath import to_decimal

LOGGER = logging.getLogger(__name__)


def _normalize_percent(value: float) -> int:
    clamped = min(max(to_decimal(value), to_decimal(0)), to_decimal(100))
    return int(clamped.quantize(to_decimal(1), rounding=ROUND_HALF_UP))


@dataclass(slots=True, frozen=True)
class SentimentGateConfig:
    mode: str = "contrarian"
    contrarian_threshold_pct: float = 65.0
    neutral_band_low: float = 45.0
    neutral_band_high: float = 55.0

    @classmethod
    def from_values(
        cls,
        *,
        mode: Any = "contrarian",
        threshold: Any = 65.0,
        neutral_band: Sequence[Any] | None = None,
    ) -> "SentimentGateConfig":
        low, high = 45.0, 55.0
        if isinstance(neutral_band, (list, tuple)) and len(neutral_band) == 2:
            low, high = float(neutral_band[0]), float(neutral_band[1])
        return cls(
            mode=str(mode or "contrarian").strip().lower(),
            contrarian_threshold_pct=float(threshold),
            neutral_band_low=low,
            neutral_band_high=high,
        )


class SentimentGate:
    """Block trades that join a lopsided retail crowd.

    Only ``contrarian`` mode blocks; ``confirming`` and ``neutral`` pass through.
    A market where both sides sit inside the neutral band never blocks.
    """

    def __init__(self, cfg: SentimentGateConfig):
        self._cfg = cfg

    def evaluate(self, sentiment: SentimentSnapshot | None, proposed_action: str) -> Reason | None:
        if sentiment is None or not sentiment.complete:
            return None
        if proposed_action not in ("buy", "sell"):
            return None
        long_pct = _normalize_percent(float(sentiment.long_pct or 0.0))
        short_pct = _normalize_percent(float(sentiment.short_pct or 0.0))

        low = self._cfg.neutral_band_low
        high = self._cfg.neutral_band_high
        if low <= long_pct <= high and low <= short_pct <= high:
            return None

        if long_pct >= short_pct:
            dominant, dominant_pct = "buy", long_pct
        else:
            dominant, dominant_pct = "sell", short_pct

        if self._cfg.mode != "contrarian":
            return None
        if dominant == proposed_action and dominant_pct >= self._cfg.contrarian_threshold_pct:
            reason = Reason.CONTRARIAN_CROWD_LONG if dominant == "buy" else Reason.CONTRARIAN_CROWD_SHORT
            LOGGER.debug(
                "Sentiment gate blocked | reason=%s dominant_pct=%s proposed=%s",
                reason.value,
                dominant_pct,
                proposed_action,
            )
            return reason
        return None

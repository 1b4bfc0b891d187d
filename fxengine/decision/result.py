from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class Action(str, Enum):
    HOLD = "hold"
    BUY = "buy"
    SELL = "sell"


class Reason(str, Enum):
    STATUS_CLOSED = "status_closed"
    NO_BAR_DATA = "no_bar_data"
    BAR_DATA_STALE = "bar_data_stale"
    BLACKOUT = "blackout"
    NO_SPREAD = "no_spread"
    LOW_ADX = "low_adx"
    STRETCHED_Z = "stretched_z"
    RSI_OVERBOUGHT = "rsi_overbought"
    RSI_OVERSOLD = "rsi_oversold"
    STOCH_EXTREME = "stoch_extreme"
    WILLIAMS_R_OVERBOUGHT = "williams_r_overbought"
    WILLIAMS_R_OVERSOLD = "williams_r_oversold"
    CCI_OVERBOUGHT = "cci_overbought"
    CCI_OVERSOLD = "cci_oversold"
    SAR_TREND_CONFLICT = "sar_trend_conflict"
    INSUFFICIENT_TR_BREAKOUT = "insufficient_tr_breakout"
    DAILY_LOSS_STOP = "daily_loss_stop"
    COOLDOWN_ACTIVE = "cooldown_active"
    MAX_CONCURRENT = "max_concurrent"
    PAIR_EXPOSURE_CAP = "pair_exposure_cap"
    NEWS_NEUTRAL = "news_neutral"
    NEWS_WEAK = "news_weak"
    NEEDS_TREND_ALIGN = "needs_trend_align"
    CONTRARIAN_CROWD_LONG = "contrarian_crowd_long"
    CONTRARIAN_CROWD_SHORT = "contrarian_crowd_short"
    SPREAD_TOO_WIDE = "spread_too_wide"
    ATR_INVALID = "atr_invalid"
    ATR_TOO_LOW = "atr_too_low"
    NO_PRICE = "no_price"
    TOO_CLOSE_TO_RESISTANCE = "too_close_to_resistance"
    TOO_CLOSE_TO_SUPPORT = "too_close_to_support"
    POOR_RISK_REWARD = "poor_risk_reward"
    OK = "ok"
    LEVELS_ADJUSTED = "levels_adjusted_for_ig_rules"
    SESSION_BOOST = "session_timing_boost"
    SESSION_PENALTY = "session_timing_penalty"


@dataclass(slots=True, frozen=True)
class DecisionResult:
    action: str
    confidence: float
    reasons: tuple[str, ...]
    blocked: bool
    size: float | None = None
    news_label: str | None = None
    risk_pct: float | None = None
    entry: float | None = None
    sl: float | None = None
    tp: float | None = None

    @classmethod
    def hold(cls, reasons: list[str], *, blocked: bool = True, confidence: float = 0.0) -> "DecisionResult":
        return cls(action=Action.HOLD.value, confidence=confidence, reasons=tuple(reasons), blocked=blocked)

    @property
    def is_trade(self) -> bool:
        return self.action in (Action.BUY.value, Action.SELL.value)

    @property
    def blocking_reason(self) -> str | None:
        if not self.blocked:
            return None
        return self.reasons[-1] if self.reasons else None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "action": self.action,
            "confidence": self.confidence,
            "reasons": list(self.reasons),
            "blocked": self.blocked,
        }
        if self.is_trade:
            payload.update(
                {
                    "size": self.size,
                    "news_label": self.news_label,
                    "risk_pct": self.risk_pct,
                    "entry": self.entry,
                    "sl": self.sl,
                    "tp": self.tp,
                }
            )
        return payload

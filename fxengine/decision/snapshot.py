from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from fxengine.clock import parse_timestamp, utc_now
from fxengine.fx.pipmath import compact_pair, normalize_pair
from fxengine.rules.ruleset import RuleSet


def _opt_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        converted = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(converted) or math.isinf(converted):
        return None
    return converted


def _opt_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _levels(value: Any) -> tuple[float, ...]:
    if not isinstance(value, (list, tuple)):
        return ()
    out: list[float] = []
    for item in value:
        level = _opt_float(item)
        if level is not None:
            out.append(level)
    return tuple(out)


def _section(payload: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = payload.get(name)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValueError(f"context section '{name}' must be a mapping")
    return value


@dataclass(slots=True, frozen=True)
class FeatureSet:
    ema20: float | None = None
    ema20_z: float | None = None
    atr5m: float | None = None
    adx5m: float | None = None
    rsi: float | None = None
    stoch_k: float | None = None
    williams_r: float | None = None
    cci: float | None = None
    parabolic_sar: float | None = None
    parabolic_sar_trend: str | None = None
    tr_upper: float | None = None
    tr_lower: float | None = None
    bb_upper: float | None = None
    bb_lower: float | None = None
    support_levels: tuple[float, ...] = ()
    resistance_levels: tuple[float, ...] = ()
    trend30m: str = "flat"

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "FeatureSet":
        return cls(
            ema20=_opt_float(raw.get("ema20")),
            ema20_z=_opt_float(raw.get("ema20_z")),
            atr5m=_opt_float(raw.get("atr5m")),
            adx5m=_opt_float(raw.get("adx5m")),
            rsi=_opt_float(raw.get("rsi14", raw.get("rsi"))),
            stoch_k=_opt_float(raw.get("stoch_k")),
            williams_r=_opt_float(raw.get("williams_r")),
            cci=_opt_float(raw.get("cci")),
            parabolic_sar=_opt_float(raw.get("parabolic_sar")),
            parabolic_sar_trend=_opt_str(raw.get("parabolic_sar_trend")),
            tr_upper=_opt_float(raw.get("tr_upper_band", raw.get("tr_upper"))),
            tr_lower=_opt_float(raw.get("tr_lower_band", raw.get("tr_lower"))),
            bb_upper=_opt_float(raw.get("bb_upper")),
            bb_lower=_opt_float(raw.get("bb_lower")),
            support_levels=_levels(raw.get("support_levels")),
            resistance_levels=_levels(raw.get("resistance_levels")),
            trend30m=(_opt_str(raw.get("trend30m")) or "flat").lower(),
        )


@dataclass(slots=True, frozen=True)
class SentimentSnapshot:
    long_pct: float | None = None
    short_pct: float | None = None

    @property
    def complete(self) -> bool:
        return self.long_pct is not None and self.short_pct is not None


@dataclass(slots=True, frozen=True)
class BrokerRules:
    """Dealing rules published by the broker for one instrument."""

    pip_value: float | None = None
    size_step: float | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "BrokerRules":
        return cls(
            pip_value=_opt_float(raw.get("pip_value")),
            size_step=_opt_float(raw.get("size_step")),
            raw=dict(raw),
        )


@dataclass(slots=True, frozen=True)
class MarketSnapshot:
    status: str | None = None
    last_price: float | None = None
    spread_estimate_pips: float | None = None
    atr5m_pips: float | None = None
    sentiment: SentimentSnapshot | None = None
    broker_rules: BrokerRules | None = None
    gate_overrides: dict[str, float] = field(default_factory=dict)

    def gate_override(self, key: str) -> float | None:
        return self.gate_overrides.get(key)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "MarketSnapshot":
        sentiment_raw = raw.get("sentiment")
        sentiment = None
        if isinstance(sentiment_raw, Mapping):
            sentiment = SentimentSnapshot(
                long_pct=_opt_float(sentiment_raw.get("long_pct")),
                short_pct=_opt_float(sentiment_raw.get("short_pct")),
            )
        broker_raw = raw.get("ig_rules", raw.get("broker_rules"))
        broker = BrokerRules.from_dict(broker_raw) if isinstance(broker_raw, Mapping) and broker_raw else None
        overrides_raw = raw.get("gate_overrides") or {}
        overrides: dict[str, float] = {}
        if isinstance(overrides_raw, Mapping):
            for key, value in overrides_raw.items():
                converted = _opt_float(value)
                if converted is not None:
                    overrides[str(key)] = converted
        status = _opt_str(raw.get("status"))
        return cls(
            status=status.upper() if status else None,
            last_price=_opt_float(raw.get("last_price")),
            spread_estimate_pips=_opt_float(raw.get("spread_estimate_pips")),
            atr5m_pips=_opt_float(raw.get("atr5m_pips")),
            sentiment=sentiment,
            broker_rules=broker,
            gate_overrides=overrides,
        )


@dataclass(slots=True, frozen=True)
class MetaSnapshot:
    pair_norm: str
    data_age_sec: float | None = None
    sleeve_balance: float = 10000.0


@dataclass(slots=True, frozen=True)
class CalendarSnapshot:
    within_blackout: bool = False


@dataclass(slots=True, frozen=True)
class NewsSnapshot:
    direction: str = "neutral"
    strength: float = 0.0


@dataclass(slots=True, frozen=True)
class DecisionContext:
    """Immutable view over everything one decision may read."""

    pair: str
    timestamp: datetime
    features: FeatureSet = field(default_factory=FeatureSet)
    market: MarketSnapshot = field(default_factory=MarketSnapshot)
    meta: MetaSnapshot | None = None
    calendar: CalendarSnapshot = field(default_factory=CalendarSnapshot)
    news: NewsSnapshot = field(default_factory=NewsSnapshot)
    rules: RuleSet | None = None

    @property
    def pair_norm(self) -> str:
        if self.meta is not None and self.meta.pair_norm:
            return self.meta.pair_norm
        return compact_pair(self.pair)

    @property
    def data_age_sec(self) -> float | None:
        return self.meta.data_age_sec if self.meta is not None else None

    @property
    def sleeve_balance(self) -> float:
        return self.meta.sleeve_balance if self.meta is not None else 10000.0

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], *, rules: RuleSet | None = None) -> "DecisionContext":
        if not isinstance(payload, Mapping):
            raise ValueError("decision context must be a mapping")
        meta_raw = _section(payload, "meta")
        market_raw = _section(payload, "market")
        features_raw = _section(payload, "features")
        calendar_raw = _section(payload, "calendar")
        news_raw = _section(payload, "news")

        pair = _opt_str(payload.get("pair")) or _opt_str(meta_raw.get("pair_norm")) or ""
        timestamp = (
            parse_timestamp(payload.get("timestamp"))
            or parse_timestamp(meta_raw.get("timestamp"))
            or utc_now()
        )
        balance = _opt_float(meta_raw.get("sleeve_balance"))
        meta = MetaSnapshot(
            pair_norm=compact_pair(_opt_str(meta_raw.get("pair_norm")) or pair),
            data_age_sec=_opt_float(meta_raw.get("data_age_sec")),
            sleeve_balance=balance if balance is not None and balance > 0 else 10000.0,
        )
        direction = (_opt_str(news_raw.get("direction")) or "neutral").lower()
        news = NewsSnapshot(
            direction=direction if direction in {"buy", "sell", "neutral"} else "neutral",
            strength=_opt_float(news_raw.get("strength")) or 0.0,
        )
        return cls(
            pair=normalize_pair(pair),
            timestamp=timestamp,
            features=FeatureSet.from_dict(features_raw),
            market=MarketSnapshot.from_dict(market_raw),
            meta=meta,
            calendar=CalendarSnapshot(within_blackout=bool(calendar_raw.get("within_blackout", False))),
            news=news,
            rules=rules,
        )

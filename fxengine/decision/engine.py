from __future__ import annotations

import logging
import math
from decimal import Decimal
from typing import Any, Callable, Mapping, TypeVar

from fxengine.clock import Clock, SystemClock, minutes_since
from fxengine.decision.result import Action, DecisionResult, Reason
from fxengine.decision.sentiment import SentimentGate, SentimentGateConfig
from fxengine.decision.sessions import session_multiplier
from fxengine.decision.snapshot import DecisionContext
from fxengine.execution.ledger import LastTrade, NullPositionLedger, PositionLedger
from fxengine.execution.levels import LevelNormalizer
from fxengine.execution.sizing import compute_stake
from fxengine.fx.pipmath import normalize_pair, pip_size, quantize, round_to_tick, tick_size, to_decimal
from fxengine.rules.ruleset import RuleSet

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_PIP_VALUE = 10.0
DEFAULT_SIZE_STEP = 0.01
SR_PROXIMITY_PIPS = Decimal("5")
_EPSILON = Decimal("0.000001")
_RATIO_SCALE = 12


def _num(value: Any, default: float | None) -> float | None:
    if value is None:
        return default
    try:
        converted = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(converted) or math.isinf(converted):
        return default
    return converted


def _status_set(value: Any) -> set[str]:
    if isinstance(value, (list, tuple, set)):
        return {str(item).strip().upper() for item in value}
    return {str(value).strip().upper()}


def news_label(strength: float, moderate: float, strong: float) -> str:
    if strength >= strong:
        return "strong"
    if strength >= moderate:
        return "moderate"
    return "weak"


def trend_aligned(direction: str, trend30m: str) -> bool:
    return (direction == "buy" and trend30m == "up") or (direction == "sell" and trend30m == "down")


class DecisionEngine:
    """Fail-closed gate pipeline that turns a snapshot into a trade decision.

    Gates run in a fixed order and the first failing gate ends the pipeline
    with a ``hold`` carrying its reason. Collaborator faults (ledger, clock)
    are absorbed as the most conservative value. Everything from stop
    placement onward is computed with :class:`decimal.Decimal`.
    """

    def __init__(
        self,
        rules: RuleSet | None = None,
        *,
        clock: Clock | None = None,
        ledger: PositionLedger | None = None,
    ):
        self._rules = rules
        self._clock: Clock = clock or SystemClock()
        self._ledger: PositionLedger = ledger or NullPositionLedger()

    # ------------------------------------------------------------------
    # collaborator access
    # ------------------------------------------------------------------
    def _safe(self, label: str, call: Callable[[], T], fallback: T) -> T:
        try:
            return call()
        except Exception as exc:  # noqa: BLE001
            LOGGER.debug("Collaborator call failed | call=%s error=%s", label, exc)
            return fallback

    def _resolve_rules(self, context: DecisionContext, rules: RuleSet | None) -> RuleSet:
        for candidate in (rules, context.rules, self._rules):
            if candidate is not None:
                return candidate
        return RuleSet()

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------
    def decide(self, context: DecisionContext, rules: RuleSet | None = None) -> DecisionResult:
        ruleset = self._resolve_rules(context, rules)
        market_key = context.pair_norm

        def rule(key: str, default: Any = None) -> Any:
            return ruleset.get(key, default, market=market_key)

        reasons: list[str] = []

        def block(reason: Reason) -> DecisionResult:
            reasons.append(reason.value)
            return DecisionResult.hold(reasons)

        market = context.market
        features = context.features

        # --- market status / data freshness / calendar -----------------------
        required = _status_set(rule("gates.market_required_status", ["TRADEABLE"]))
        if market.status is None or market.status not in required:
            return block(Reason.STATUS_CLOSED)

        data_age = context.data_age_sec
        max_age = _num(rule("gates.max_data_age_sec", 600), 600.0)
        if data_age is None:
            return block(Reason.NO_BAR_DATA)
        if data_age > max_age:
            return block(Reason.BAR_DATA_STALE)

        if context.calendar.within_blackout:
            return block(Reason.BLACKOUT)

        spread = market.spread_estimate_pips
        if bool(rule("gates.spread_required", False)) and spread is None:
            return block(Reason.NO_SPREAD)

        # --- trend strength and oscillators ----------------------------------
        adx_min = market.gate_override("adx_min")
        if adx_min is None:
            adx_min = _num(rule("gates.adx_min"), None)
        if adx_min is not None and (features.adx5m is None or features.adx5m < adx_min):
            return block(Reason.LOW_ADX)

        z_max = market.gate_override("z_abs_max")
        if z_max is None:
            z_max = _num(rule("gates.z_abs_max"), None)
        if z_max is not None and features.ema20_z is not None and abs(features.ema20_z) > z_max:
            return block(Reason.STRETCHED_Z)

        if features.rsi is not None:
            if features.rsi > _num(rule("gates.rsi_overbought", 75), 75.0):
                return block(Reason.RSI_OVERBOUGHT)
            if features.rsi < _num(rule("gates.rsi_oversold", 25), 25.0):
                return block(Reason.RSI_OVERSOLD)

        stoch_extreme = _num(rule("gates.stoch_extreme", 95), 95.0)
        if features.stoch_k is not None and (
            features.stoch_k > stoch_extreme or features.stoch_k < 100.0 - stoch_extreme
        ):
            return block(Reason.STOCH_EXTREME)

        if features.williams_r is not None:
            if features.williams_r > _num(rule("gates.williams_r_overbought", -20), -20.0):
                return block(Reason.WILLIAMS_R_OVERBOUGHT)
            if features.williams_r < _num(rule("gates.williams_r_oversold", -80), -80.0):
                return block(Reason.WILLIAMS_R_OVERSOLD)

        if features.cci is not None:
            if features.cci > _num(rule("gates.cci_overbought", 100), 100.0):
                return block(Reason.CCI_OVERBOUGHT)
            if features.cci < _num(rule("gates.cci_oversold", -100), -100.0):
                return block(Reason.CCI_OVERSOLD)

        direction = context.news.direction
        last_price = market.last_price
        if (
            bool(rule("gates.require_sar_trend_alignment", False))
            and features.parabolic_sar_trend is not None
            and features.parabolic_sar is not None
            and last_price is not None
        ):
            sar_trend = features.parabolic_sar_trend.lower()
            if (direction == "buy" and sar_trend == "down") or (direction == "sell" and sar_trend == "up"):
                return block(Reason.SAR_TREND_CONFLICT)

        if (
            bool(rule("gates.require_tr_breakout", False))
            and features.tr_upper is not None
            and features.tr_lower is not None
            and last_price is not None
        ):
            if (direction == "buy" and last_price <= features.tr_upper) or (
                direction == "sell" and last_price >= features.tr_lower
            ):
                return block(Reason.INSUFFICIENT_TR_BREAKOUT)

        # --- account state ---------------------------------------------------
        todays_pnl = _num(self._safe("todays_pnl_pct", self._ledger.todays_pnl_pct, 0.0), 0.0)
        daily_stop = _num(rule("gates.daily_loss_stop_pct", 3.0), 3.0)
        if todays_pnl <= -daily_stop:
            return block(Reason.DAILY_LOSS_STOP)

        last_trade = self._safe("last_trade", self._ledger.last_trade, None)
        if isinstance(last_trade, LastTrade):
            now = self._safe("clock.now", self._clock.now, None)
            elapsed = None
            if now is not None:
                elapsed = self._safe("last_trade.elapsed", lambda: minutes_since(last_trade.timestamp, now), None)
            if elapsed is not None:
                loss_cooldown = _num(ruleset.get_cooldown("after_loss_minutes", 20, market=market_key), 20.0)
                win_cooldown = _num(ruleset.get_cooldown("after_win_minutes", 5, market=market_key), 5.0)
                outcome = str(last_trade.outcome).lower()
                if (outcome == "loss" and elapsed <= loss_cooldown) or (outcome == "win" and elapsed <= win_cooldown):
                    return block(Reason.COOLDOWN_ACTIVE)

        max_open = _num(rule("gates.max_concurrent_positions", 3), 3.0)
        open_positions = _num(self._safe("open_positions_count", self._ledger.open_positions_count, 0), 0.0)
        if open_positions >= max_open:
            return block(Reason.MAX_CONCURRENT)

        exposure_cap = _num(rule("risk.pair_exposure_pct", 15), 15.0)
        exposure = _num(
            self._safe("pair_exposure_pct", lambda: self._ledger.pair_exposure_pct(market_key), 0.0),
            0.0,
        )
        if exposure >= exposure_cap:
            return block(Reason.PAIR_EXPOSURE_CAP)

        # --- news tiering ----------------------------------------------------
        if direction not in ("buy", "sell"):
            reasons.append(Reason.NEWS_NEUTRAL.value)
            return DecisionResult.hold(reasons, blocked=False)

        strength = context.news.strength
        label = news_label(
            strength,
            _num(rule("gates.news_threshold.moderate", 0.30), 0.30),
            _num(rule("gates.news_threshold.strong", 0.45), 0.45),
        )
        aligned = trend_aligned(direction, features.trend30m)
        if label == "weak":
            return block(Reason.NEWS_WEAK)
        if label == "moderate" and bool(rule("confluence.require_trend_alignment_for_moderate", True)) and not aligned:
            return block(Reason.NEEDS_TREND_ALIGN)
        if label == "strong" and not bool(rule("confluence.allow_strong_against_trend", True)) and not aligned:
            return block(Reason.NEEDS_TREND_ALIGN)
        proposed = direction

        # --- crowd positioning -----------------------------------------------
        neutral_band = rule("gates.sentiment.neutral_band_pct")
        if not isinstance(neutral_band, (list, tuple)):
            neutral_band = [
                rule("gates.sentiment.neutral_band_low_pct", 45.0),
                rule("gates.sentiment.neutral_band_high_pct", 55.0),
            ]
        sentiment_gate = SentimentGate(
            SentimentGateConfig.from_values(
                mode=rule("gates.sentiment.mode", "contrarian"),
                threshold=_num(rule("gates.sentiment.contrarian_threshold_pct", 65.0), 65.0),
                neutral_band=neutral_band,
            )
        )
        sentiment_reason = sentiment_gate.evaluate(market.sentiment, proposed)
        if sentiment_reason is not None:
            return block(sentiment_reason)

        # --- cost and volatility ---------------------------------------------
        spread_cap = _num(rule("execution.spread_ceiling_pips", 2.0), 2.0)
        if spread is not None and spread > spread_cap:
            return block(Reason.SPREAD_TOO_WIDE)

        atr_pips = market.atr5m_pips
        if atr_pips is None or atr_pips <= 0.0:
            return block(Reason.ATR_INVALID)

        atr_min = market.gate_override("atr_min_pips")
        if atr_min is None:
            atr_min = _num(rule("gates.atr_min_pips"), None)
        if atr_min is not None and atr_pips < atr_min:
            return block(Reason.ATR_TOO_LOW)

        if last_price is None or last_price <= 0.0:
            return block(Reason.NO_PRICE)

        # --- risk, stop and target -------------------------------------------
        risk_map = rule("risk.per_trade_pct", {})
        if not isinstance(risk_map, Mapping):
            risk_map = {"default": risk_map}
        risk_raw = _num(risk_map.get(label, risk_map.get("default", 1.0)), 1.0)
        risk_cap = _num(rule("risk.per_trade_cap_pct", 2.0), 2.0)
        risk_pct = to_decimal(min(risk_raw, risk_cap))

        atr_dec = to_decimal(atr_pips)
        sl_pips = max(to_decimal(_num(rule("execution.sl_atr_mult", 2.0), 2.0)) * atr_dec, _EPSILON)
        tp_pips = max(to_decimal(_num(rule("execution.tp_atr_mult", 4.0), 4.0)) * atr_dec, _EPSILON)
        sl_min = to_decimal(_num(rule("execution.sl_min_pips", 15.0), 15.0))
        if sl_pips < sl_min:
            ratio = quantize(sl_min / sl_pips, _RATIO_SCALE)
            sl_pips = sl_min
            tp_pips = tp_pips * ratio

        pair = normalize_pair(context.pair or market_key)
        pip = to_decimal(pip_size(pair))
        tick = tick_size(pair)
        entry_dec = to_decimal(last_price)
        if proposed == Action.BUY.value:
            sl_dec = entry_dec - sl_pips * pip
            tp_dec = entry_dec + tp_pips * pip
        else:
            sl_dec = entry_dec + sl_pips * pip
            tp_dec = entry_dec - tp_pips * pip

        entry = round_to_tick(float(entry_dec), tick)
        sl = round_to_tick(float(sl_dec), tick)
        tp = round_to_tick(float(tp_dec), tick)

        broker = market.broker_rules
        levels_adjusted = False
        if broker is not None:
            normalized = LevelNormalizer.apply(pair, entry, sl, tp, broker.raw)
            levels_adjusted = normalized.adjusted
            entry = round_to_tick(normalized.entry, tick)
            sl = round_to_tick(normalized.sl, tick)
            tp = round_to_tick(normalized.tp, tick)

        # --- support / resistance proximity ----------------------------------
        entry_d = to_decimal(entry)
        if proposed == Action.BUY.value:
            for level in features.resistance_levels:
                distance = (to_decimal(level) - entry_d) / pip
                if Decimal(0) < distance < SR_PROXIMITY_PIPS:
                    return block(Reason.TOO_CLOSE_TO_RESISTANCE)
        else:
            for level in features.support_levels:
                distance = (entry_d - to_decimal(level)) / pip
                if Decimal(0) < distance < SR_PROXIMITY_PIPS:
                    return block(Reason.TOO_CLOSE_TO_SUPPORT)

        # --- sizing ----------------------------------------------------------
        risk_pips = abs(entry_d - to_decimal(sl)) / pip
        reward_pips = abs(to_decimal(tp) - entry_d) / pip
        pip_value = broker.pip_value if broker is not None and broker.pip_value else DEFAULT_PIP_VALUE
        size_step = broker.size_step if broker is not None and broker.size_step else DEFAULT_SIZE_STEP
        size = compute_stake(context.sleeve_balance, float(risk_pct), float(risk_pips), pip_value, size_step)

        multiplier = session_multiplier(context.timestamp, ruleset.get_session_filter("default", market=market_key))

        # --- reward to risk --------------------------------------------------
        if risk_pips > 0:
            target_rr = _num(rule("execution.rr", 1.8), 1.8)
            min_rr = to_decimal(_num(rule("execution.min_rr", target_rr), target_rr))
            if reward_pips / risk_pips < min_rr:
                return block(Reason.POOR_RISK_REWARD)

        reasons.append(Reason.OK.value)
        if levels_adjusted:
            reasons.append(Reason.LEVELS_ADJUSTED.value)
        if multiplier > 1:
            reasons.append(Reason.SESSION_BOOST.value)
        elif multiplier < 1:
            reasons.append(Reason.SESSION_PENALTY.value)

        strength_dec = min(max(to_decimal(strength), Decimal(0)), Decimal(1))
        confidence = min(quantize(strength_dec * multiplier, 3), Decimal(1))

        return DecisionResult(
            action=proposed,
            confidence=float(confidence),
            reasons=tuple(reasons),
            blocked=False,
            size=size,
            news_label=label,
            risk_pct=float(quantize(risk_pct, 3)),
            entry=float(quantize(entry, 6)),
            sl=float(quantize(sl, 6)),
            tp=float(quantize(tp, 6)),
        )

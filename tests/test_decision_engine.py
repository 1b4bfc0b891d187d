from __future__ import annotations

import copy
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from fxengine.clock import FixedClock
from fxengine.decision.engine import DecisionEngine
from fxengine.decision.result import DecisionResult
from fxengine.decision.snapshot import DecisionContext
from fxengine.execution.ledger import InMemoryPositionLedger, LastTrade
from fxengine.rules.ruleset import RuleSet, deep_merge

NOW = datetime(2026, 10, 14, 18, 0, tzinfo=timezone.utc)

BASE_RULES: dict[str, Any] = {
    "gates": {
        "adx_min": 20,
        "z_abs_max": 1.0,
        "max_data_age_sec": 600,
        "daily_loss_stop_pct": 3.0,
        "max_concurrent_positions": 3,
        "news_threshold": {"moderate": 0.3, "strong": 0.45},
        "sentiment": {"mode": "contrarian", "contrarian_threshold_pct": 65, "neutral_band_pct": [45, 55]},
    },
    "risk": {"per_trade_pct": {"default": 1.0}, "per_trade_cap_pct": 2.0, "pair_exposure_pct": 15},
    "execution": {"rr": 2.0, "sl_atr_mult": 2.0, "tp_atr_mult": 4.0, "sl_min_pips": 15, "spread_ceiling_pips": 2.0},
    "cooldowns": {"after_loss_minutes": 20, "after_win_minutes": 5},
}


def _rules(**overrides: Any) -> RuleSet:
    return RuleSet.from_mapping(deep_merge(BASE_RULES, overrides))


def _payload(**sections: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "pair": "EURUSD",
        "timestamp": NOW.isoformat(),
        "meta": {"pair_norm": "EURUSD", "data_age_sec": 60, "sleeve_balance": 10000},
        "features": {"adx5m": 30, "ema20_z": 0.2, "rsi14": 55, "trend30m": "up"},
        "market": {
            "status": "TRADEABLE",
            "last_price": 1.1,
            "spread_estimate_pips": 0.8,
            "atr5m_pips": 10,
            "sentiment": {"long_pct": 50, "short_pct": 50},
        },
        "calendar": {"within_blackout": False},
        "news": {"direction": "buy", "strength": 0.6},
    }
    for name, values in sections.items():
        if values is None:
            payload.pop(name, None)
        elif isinstance(values, dict) and isinstance(payload.get(name), dict):
            payload[name] = deep_merge(payload[name], values)
        else:
            payload[name] = values
    return payload


def _decide(
    payload: dict[str, Any] | None = None,
    rules: RuleSet | None = None,
    *,
    clock: Any = None,
    ledger: Any = None,
) -> DecisionResult:
    engine = DecisionEngine(rules or _rules(), clock=clock or FixedClock(NOW), ledger=ledger)
    return engine.decide(DecisionContext.from_dict(payload or _payload()))


def test_strong_buy_produces_sized_order() -> None:
    result = _decide()

    assert result.action == "buy"
    assert result.blocked is False
    assert result.reasons == ("ok",)
    assert result.news_label == "strong"
    assert result.confidence == pytest.approx(0.6)
    assert result.risk_pct == pytest.approx(1.0)
    assert result.entry == pytest.approx(1.1)
    assert result.sl == pytest.approx(1.098)
    assert result.tp == pytest.approx(1.104)
    assert result.size == pytest.approx(0.5)


def test_sell_mirrors_levels() -> None:
    result = _decide(_payload(news={"direction": "sell"}, features={"trend30m": "down"}))

    assert result.action == "sell"
    assert result.sl == pytest.approx(1.102)
    assert result.tp == pytest.approx(1.096)


def test_small_atr_floors_stop_and_keeps_ratio() -> None:
    result = _decide(_payload(market={"atr5m_pips": 5}))

    assert result.action == "buy"
    assert result.sl == pytest.approx(1.0985)
    assert result.tp == pytest.approx(1.103)
    assert result.size == pytest.approx(0.66)


def test_jpy_pair_uses_two_decimal_pips() -> None:
    payload = _payload(market={"last_price": 150.0})
    payload["pair"] = "USDJPY"
    payload["meta"]["pair_norm"] = "USDJPY"
    result = _decide(payload)

    assert result.action == "buy"
    assert result.sl == pytest.approx(149.8)
    assert result.tp == pytest.approx(150.4)


@pytest.mark.parametrize(
    ("changes", "reason"),
    [
        ({"market": {"status": "CLOSED"}}, "status_closed"),
        ({"market": None}, "status_closed"),
        ({"meta": {"data_age_sec": None}}, "no_bar_data"),
        ({"meta": {"data_age_sec": 900}}, "bar_data_stale"),
        ({"calendar": {"within_blackout": True}}, "blackout"),
        ({"features": {"adx5m": 15}}, "low_adx"),
        ({"features": {"adx5m": None}}, "low_adx"),
        ({"features": {"ema20_z": -1.5}}, "stretched_z"),
        ({"features": {"rsi14": 80}}, "rsi_overbought"),
        ({"features": {"rsi14": 20}}, "rsi_oversold"),
        ({"features": {"stoch_k": 97}}, "stoch_extreme"),
        ({"features": {"williams_r": -10}}, "williams_r_overbought"),
        ({"features": {"cci": -150}}, "cci_oversold"),
        ({"news": {"strength": 0.1}}, "news_weak"),
        ({"news": {"strength": 0.35}, "features": {"trend30m": "down"}}, "needs_trend_align"),
        ({"market": {"sentiment": {"long_pct": 70, "short_pct": 30}}}, "contrarian_crowd_long"),
        ({"market": {"spread_estimate_pips": 2.5}}, "spread_too_wide"),
        ({"market": {"atr5m_pips": None}}, "atr_invalid"),
        ({"market": {"atr5m_pips": 0}}, "atr_invalid"),
        ({"market": {"last_price": None}}, "no_price"),
        ({"features": {"resistance_levels": [1.1003]}}, "too_close_to_resistance"),
    ],
)
def test_blocking_gates(changes: dict[str, Any], reason: str) -> None:
    result = _decide(_payload(**copy.deepcopy(changes)))

    assert result.action == "hold"
    assert result.blocked is True
    assert result.confidence == 0.0
    assert result.reasons[-1] == reason
    assert result.blocking_reason == reason
    assert result.size is None


def test_contrarian_blocks_crowded_short_for_sell() -> None:
    payload = _payload(
        news={"direction": "sell"},
        features={"trend30m": "down"},
        market={"sentiment": {"long_pct": 30, "short_pct": 70}},
    )
    assert _decide(payload).reasons == ("contrarian_crowd_short",)


def test_confirming_mode_never_blocks_on_sentiment() -> None:
    rules = _rules(gates={"sentiment": {"mode": "confirming"}})
    result = _decide(_payload(market={"sentiment": {"long_pct": 80, "short_pct": 20}}), rules)
    assert result.action == "buy"


def test_spread_required_without_estimate() -> None:
    rules = _rules(gates={"spread_required": True})
    result = _decide(_payload(market={"spread_estimate_pips": None}), rules)
    assert result.reasons == ("no_spread",)


def test_neutral_news_holds_without_blocking() -> None:
    result = _decide(_payload(news={"direction": "neutral"}))

    assert result.action == "hold"
    assert result.blocked is False
    assert result.reasons == ("news_neutral",)
    assert result.blocking_reason is None


def test_poor_risk_reward() -> None:
    rules = _rules(execution={"tp_atr_mult": 3.0})
    assert _decide(rules=rules).reasons == ("poor_risk_reward",)


def test_market_override_changes_gate() -> None:
    rules = RuleSet.from_mapping(BASE_RULES, market_overrides={"EURUSD": {"gates": {"adx_min": 35}}})
    assert _decide(rules=rules).reasons == ("low_adx",)


def test_snapshot_gate_override_beats_rules() -> None:
    result = _decide(_payload(market={"gate_overrides": {"adx_min": 40}}))
    assert result.reasons == ("low_adx",)


def test_daily_loss_stop() -> None:
    ledger = InMemoryPositionLedger(pnl_pct=-3.0)
    assert _decide(ledger=ledger).reasons == ("daily_loss_stop",)


def test_loss_cooldown_boundary() -> None:
    ledger = InMemoryPositionLedger()
    ledger.record_trade("loss", NOW - timedelta(minutes=20))
    assert _decide(ledger=ledger).reasons == ("cooldown_active",)

    ledger.record_trade("loss", NOW - timedelta(minutes=20, seconds=1))
    assert _decide(ledger=ledger).action == "buy"


def test_win_cooldown_is_shorter() -> None:
    ledger = InMemoryPositionLedger(trade=LastTrade(outcome="win", timestamp=NOW - timedelta(minutes=4)))
    assert _decide(ledger=ledger).reasons == ("cooldown_active",)

    clock = FixedClock(NOW)
    clock.advance(minutes=2)
    assert _decide(ledger=ledger, clock=clock).action == "buy"


def test_max_concurrent_and_pair_exposure() -> None:
    assert _decide(ledger=InMemoryPositionLedger(open_positions=3)).reasons == ("max_concurrent",)

    ledger = InMemoryPositionLedger()
    ledger.set_exposure("EUR/USD", 15.0)
    assert _decide(ledger=ledger).reasons == ("pair_exposure_cap",)


class _BrokenLedger:
    def todays_pnl_pct(self) -> float:
        raise RuntimeError("ledger offline")

    def last_trade(self) -> LastTrade | None:
        raise RuntimeError("ledger offline")

    def open_positions_count(self) -> int:
        raise RuntimeError("ledger offline")

    def pair_exposure_pct(self, pair: str) -> float:
        raise RuntimeError("ledger offline")


class _BrokenClock:
    def now(self) -> datetime:
        raise RuntimeError("clock offline")


def test_collaborator_faults_do_not_crash() -> None:
    result = _decide(ledger=_BrokenLedger(), clock=_BrokenClock())
    assert result.action == "buy"


def test_session_boost_and_penalty() -> None:
    rules = _rules(
        session_filters={
            "default": {
                "preferred_sessions": [{"start": "07:00", "end": "11:00"}],
                "avoid_sessions": [{"start": "21:00", "end": "02:00"}],
            }
        }
    )
    boosted = _decide(_payload(timestamp="2026-10-14T08:00:00Z"), rules)
    assert boosted.confidence == pytest.approx(0.72)
    assert boosted.reasons == ("ok", "session_timing_boost")

    penalised = _decide(_payload(timestamp="2026-10-14T01:00:00Z"), rules)
    assert penalised.confidence == pytest.approx(0.42)
    assert penalised.reasons == ("ok", "session_timing_penalty")


def test_confidence_is_capped_at_one() -> None:
    rules = _rules(session_filters={"default": {"preferred_sessions": [{"start": "00:00", "end": "23:59"}]}})
    result = _decide(_payload(news={"strength": 0.95}), rules)
    assert result.confidence == 1.0


def test_broker_minimum_distance_widens_levels() -> None:
    rules = _rules(execution={"min_rr": 1.0})
    payload = _payload(market={"ig_rules": {"min_normal_stop_or_limit_distance": {"value": 30}, "pip_value": 10}})
    result = _decide(payload, rules)

    assert result.action == "buy"
    assert result.reasons == ("ok", "levels_adjusted_for_ig_rules")
    assert result.sl == pytest.approx(1.097)
    assert result.tp == pytest.approx(1.104)
    assert result.size == pytest.approx(0.33)


def test_risk_tier_is_capped() -> None:
    rules = _rules(risk={"per_trade_pct": {"strong": 3.0}, "per_trade_cap_pct": 1.5})
    result = _decide(rules=rules)
    assert result.risk_pct == pytest.approx(1.5)
    assert result.size == pytest.approx(0.75)


def test_to_dict_shapes() -> None:
    trade = _decide().to_dict()
    assert trade["action"] == "buy"
    assert trade["size"] == pytest.approx(0.5)

    hold = _decide(_payload(features={"adx5m": 10})).to_dict()
    assert hold == {"action": "hold", "confidence": 0.0, "reasons": ["low_adx"], "blocked": True}


def test_context_rules_used_when_engine_has_none() -> None:
    rules = _rules(gates={"adx_min": 40})
    context = DecisionContext.from_dict(_payload(), rules=rules)
    assert DecisionEngine(clock=FixedClock(NOW)).decide(context).reasons == ("low_adx",)


def test_malformed_section_is_rejected() -> None:
    with pytest.raises(ValueError):
        DecisionContext.from_dict({"pair": "EURUSD", "market": ["TRADEABLE"]})


SELL = {"news": {"direction": "sell"}, "features": {"trend30m": "down"}}


@pytest.mark.parametrize(
    ("rule_changes", "changes", "expected"),
    [
        ({}, {"features": {"williams_r": -90}}, "williams_r_oversold"),
        ({}, {"features": {"williams_r": -50}}, "buy"),
        ({}, {"features": {"cci": 150}}, "cci_overbought"),
        ({}, {"features": {"cci": 50}}, "buy"),
        (
            {"gates": {"require_sar_trend_alignment": True}},
            {"features": {"parabolic_sar": 1.101, "parabolic_sar_trend": "down"}},
            "sar_trend_conflict",
        ),
        (
            {"gates": {"require_sar_trend_alignment": True}},
            {"features": {"parabolic_sar": 1.099, "parabolic_sar_trend": "up"}},
            "buy",
        ),
        (
            {"gates": {"require_tr_breakout": True}},
            {"features": {"tr_upper_band": 1.1005, "tr_lower_band": 1.095}},
            "insufficient_tr_breakout",
        ),
        (
            {"gates": {"require_tr_breakout": True}},
            {"features": {"tr_upper_band": 1.0995, "tr_lower_band": 1.095}},
            "buy",
        ),
        ({"gates": {"atr_min_pips": 12}}, {}, "atr_too_low"),
        ({"gates": {"atr_min_pips": 8}}, {}, "buy"),
        ({}, {"market": {"gate_overrides": {"atr_min_pips": 12}}}, "atr_too_low"),
        ({"gates": {"atr_min_pips": 12}}, {"market": {"gate_overrides": {"atr_min_pips": 8}}}, "buy"),
        ({}, {**SELL, "features": {"trend30m": "down", "support_levels": [1.0997]}}, "too_close_to_support"),
        ({}, {**SELL, "features": {"trend30m": "down", "support_levels": [1.099]}}, "sell"),
        ({}, {"features": {"resistance_levels": [1.101]}}, "buy"),
        ({"confluence": {"allow_strong_against_trend": False}}, {"features": {"trend30m": "down"}}, "needs_trend_align"),
        ({"confluence": {"allow_strong_against_trend": False}}, {}, "buy"),
        ({}, {"features": {"trend30m": "down"}}, "buy"),
    ],
)
def test_optional_gates(rule_changes: dict[str, Any], changes: dict[str, Any], expected: str) -> None:
    result = _decide(_payload(**copy.deepcopy(changes)), _rules(**copy.deepcopy(rule_changes)))

    if expected in ("buy", "sell"):
        assert result.action == expected
        assert result.blocked is False
        assert result.reasons[0] == "ok"
    else:
        assert result.action == "hold"
        assert result.blocked is True
        assert result.reasons[-1] == expected


def test_unreadable_last_trade_time_is_ignored() -> None:
    ledger = InMemoryPositionLedger(trade=LastTrade(outcome="loss", timestamp="yesterday"))  # type: ignore[arg-type]
    result = _decide(ledger=ledger)
    assert result.action == "buy"

from __future__ import annotations

import pytest

from fxengine.calibration.config import CalibrationConfig
from fxengine.calibration.generator import (
    ADX_AXIS,
    RISK_AXIS,
    RR_AXIS,
    SL_AXIS,
    CandidateGenerator,
    generate_range,
    is_feasible,
)
from fxengine.calibration.models import CandidateScore
from fxengine.config import BudgetsConfig
from fxengine.rules.ruleset import RuleSet

BASELINE = RuleSet.from_mapping(
    {
        "gates": {"adx_min": 24, "sentiment": {"mode": "contrarian"}},
        "execution": {"rr": 2.0, "sl_atr_mult": 2.0, "tp_atr_mult": 4.0},
        "risk": {"per_trade_pct": {"default": 1.0}},
    },
    market_overrides={"EURUSD": {"gates": {"adx_min": 26}}},
    tag="2026-W42",
)


def _config() -> CalibrationConfig:
    return CalibrationConfig.from_options({"tag": "2026-W43"})


def test_generate_range_orders_base_below_above() -> None:
    assert generate_range(24, ADX_AXIS) == [24, 21, 18, 27, 30, 33]
    assert generate_range(2.0, RR_AXIS) == [2.0, 1.75, 1.5, 2.25, 2.5, 2.75, 3.0]
    assert generate_range(40, ADX_AXIS) == [34, 31, 28, 25, 22, 19]
    assert generate_range(0.5, RISK_AXIS) == [0.5, 0.75, 1.0, 1.25, 1.5, 1.75, 2.0]


def test_is_feasible() -> None:
    assert is_feasible(2.0, 2.0, 4.0, 1.0) is True
    assert is_feasible(2.0, 2.0, 4.6, 1.0) is False
    assert is_feasible(1.0, 2.0, 2.0, 1.0) is False
    assert is_feasible(2.0, 1.25, 2.5, 1.0) is False
    assert is_feasible(2.0, 2.0, 4.0, 2.5) is False


def test_stage1_candidates_are_unique_and_feasible() -> None:
    generator = CandidateGenerator(BudgetsConfig(stage1_count=40))
    candidates = generator.generate(_config(), BASELINE)

    assert candidates[0].id == "2026-W43-baseline"
    assert candidates[0].stage == "baseline"
    assert candidates[0].base_rules == BASELINE.base
    assert 1 < len(candidates) <= 40

    ids = [candidate.id for candidate in candidates]
    assert len(ids) == len(set(ids))
    for candidate in candidates[1:]:
        assert candidate.id.startswith("2026-W43-grid-")
        assert candidate.tp_atr_mult >= candidate.sl_atr_mult
        assert abs(candidate.tp_atr_mult - candidate.sl_atr_mult * candidate.rr) <= 0.1 + 1e-9
        assert is_feasible(candidate.rr, candidate.sl_atr_mult, candidate.tp_atr_mult, candidate.risk_pct)
        assert candidate.market_overrides == {"EURUSD": {"gates": {"adx_min": 26}}}
        assert candidate.sentiment_mode in {"contrarian", "confirming", "neutral"}


def test_stage1_is_deterministic() -> None:
    generator = CandidateGenerator(BudgetsConfig(stage1_count=60))
    first = generator.generate(_config(), BASELINE)
    second = generator.generate(_config(), BASELINE)
    assert [c.id for c in first] == [c.id for c in second]
    assert [c.base_rules for c in first] == [c.base_rules for c in second]


def test_parameter_combinations_are_unique_and_feasible() -> None:
    narrow = RuleSet.from_mapping(
        {
            "gates": {"adx_min": 35},
            "execution": {"rr": 3.0, "sl_atr_mult": 3.0, "tp_atr_mult": 5.0},
            "risk": {"per_trade_pct": {"default": 2.0}},
        }
    )
    generator = CandidateGenerator(BudgetsConfig(stage1_count=5000))
    grids = generator.parameter_grids(narrow)
    combos = generator.parameter_combinations(grids, 5000)
    assert all(is_feasible(c.rr, c.sl_atr_mult, c.tp_atr_mult, c.risk_pct) for c in combos)
    assert 0 < len(combos) <= 5000
    assert len(set(combos)) == len(combos)


def test_refinement_stays_in_bounds_and_tracks_parent() -> None:
    generator = CandidateGenerator(BudgetsConfig(stage1_count=40, top_n_refine=3))
    candidates = generator.generate(_config(), BASELINE)
    scored = [CandidateScore(candidate=c, metrics={"expectancy": 0.1}) for c in candidates[:5]]

    refined = generator.refine_top_candidates(scored, _config(), BASELINE)

    assert refined
    parents = {c.id for c in candidates[:3]}
    ids = [c.id for c in refined]
    assert len(ids) == len(set(ids))
    for candidate in refined:
        assert "-refine-" in candidate.id
        assert candidate.stage == "refined"
        assert candidate.metadata["parent_id"] in parents
        assert ADX_AXIS.low <= candidate.adx_min <= ADX_AXIS.high
        assert RR_AXIS.low <= candidate.rr <= RR_AXIS.high
        assert SL_AXIS.low <= candidate.sl_atr_mult <= SL_AXIS.high
        assert RISK_AXIS.low <= candidate.risk_pct <= RISK_AXIS.high
        assert is_feasible(candidate.rr, candidate.sl_atr_mult, candidate.tp_atr_mult, candidate.risk_pct)


def test_refinement_respects_stage2_budget() -> None:
    generator = CandidateGenerator(BudgetsConfig(stage1_count=40, stage2_count=5))
    candidates = generator.generate(_config(), BASELINE)
    refined = generator.refine_top_candidates(candidates[:10], _config())
    assert len(refined) == 5


def test_baseline_refinement_variations() -> None:
    generator = CandidateGenerator(BudgetsConfig(top_n_refine=1))
    baseline = generator.generate(_config(), BASELINE)[0]
    refined = generator.refine_top_candidates([baseline], _config())

    by_variation = {tuple(c.metadata["variation"].items())[0]: c for c in refined}
    assert by_variation[("adx_min", 25)].adx_min == 25
    rr_up = by_variation[("rr", 2.25)]
    assert rr_up.rr == pytest.approx(2.25)
    assert rr_up.tp_atr_mult == pytest.approx(4.5)
    assert by_variation[("risk_pct", 0.75)].risk_pct == pytest.approx(0.75)

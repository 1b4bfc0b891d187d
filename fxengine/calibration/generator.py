from __future__ import annotations

import copy
import itertools
import logging
import math
from dataclasses import dataclass
from typing import Any, Iterable, Sequence

from fxengine.calibration.config import CalibrationConfig
from fxengine.calibration.models import CalibrationCandidate, CalibrationDataset, CandidateScore
from fxengine.config import BudgetsConfig
from fxengine.rules.ruleset import RuleSet, set_path

LOGGER = logging.getLogger(__name__)

SENTIMENT_MODES: tuple[str, ...] = ("contrarian", "confirming", "neutral")
TP_CORRECTION_TOLERANCE = 0.1


@dataclass(slots=True, frozen=True)
class AxisBounds:
    low: float
    high: float
    step: float


ADX_AXIS = AxisBounds(18, 35, 3)
RR_AXIS = AxisBounds(1.5, 3.0, 0.25)
SL_AXIS = AxisBounds(1.5, 3.0, 0.25)
TP_AXIS = AxisBounds(2.0, 5.0, 0.5)
RISK_AXIS = AxisBounds(0.5, 2.0, 0.25)


@dataclass(slots=True, frozen=True)
class ParameterCombo:
    adx_min: float
    sentiment_mode: str
    rr: float
    sl_atr_mult: float
    tp_atr_mult: float
    risk_pct: float


def is_feasible(rr: float, sl_mult: float, tp_mult: float, risk_pct: float) -> bool:
    """Execution parameters a broker and the risk budget can live with."""
    if abs(tp_mult - sl_mult * rr) > 0.5:
        return False
    if risk_pct < 0.5 or risk_pct > 2.0:
        return False
    if rr < 1.25:
        return False
    if sl_mult < 1.5:
        return False
    return True


def generate_range(base: float, bounds: AxisBounds) -> list[float]:
    """Values around ``base`` in ``bounds.step`` increments, base first, then below, then above."""
    values: list[float] = []
    if bounds.low <= base <= bounds.high:
        values.append(base)
    k = 1
    while base - k * bounds.step >= bounds.low - 1e-9:
        values.append(round(base - k * bounds.step, 2))
        k += 1
    k = 1
    while base + k * bounds.step <= bounds.high + 1e-9:
        values.append(round(base + k * bounds.step, 2))
        k += 1
    unique: list[float] = []
    for value in values:
        if not (bounds.low - 1e-9 <= value <= bounds.high + 1e-9):
            continue
        if value not in unique:
            unique.append(value)
    return unique


def _clamp(value: float, low: float, high: float) -> float:
    return round(max(low, min(high, value)), 2)


def _as_number(value: float) -> int | float:
    return int(value) if float(value).is_integer() else value


class CandidateGenerator:
    """Builds the coarse grid and the local refinements around the best grid points."""

    def __init__(self, budgets: BudgetsConfig | None = None):
        self.budgets = budgets or BudgetsConfig()

    # ------------------------------------------------------------------
    # stage 1
    # ------------------------------------------------------------------
    def generate(
        self,
        config: CalibrationConfig,
        baseline: RuleSet,
        dataset: CalibrationDataset | None = None,
    ) -> list[CalibrationCandidate]:
        LOGGER.info(
            "Candidate generation started | tag=%s baseline_checksum=%s",
            config.tag,
            baseline.checksum(),
        )
        base = copy.deepcopy(baseline.base)
        overrides = copy.deepcopy(baseline.market_overrides)
        candidates: list[CalibrationCandidate] = [
            CalibrationCandidate(
                id=f"{config.tag}-baseline",
                base_rules=base,
                market_overrides=overrides,
                metadata={"note": "baseline ruleset", "stage": "baseline"},
            )
        ]

        grids = self.parameter_grids(baseline)
        max_combinations = max(1, int(self.budgets.stage1_count) - 1)
        combos = self.parameter_combinations(grids, max_combinations)

        for combo in combos:
            mutated = copy.deepcopy(base)
            tp_mult = combo.tp_atr_mult
            expected_tp = round(combo.sl_atr_mult * combo.rr, 4)
            if abs(tp_mult - expected_tp) > TP_CORRECTION_TOLERANCE:
                tp_mult = expected_tp
            set_path(mutated, "gates.adx_min", _as_number(combo.adx_min))
            set_path(mutated, "gates.sentiment.mode", combo.sentiment_mode)
            set_path(mutated, "execution.rr", combo.rr)
            set_path(mutated, "execution.sl_atr_mult", combo.sl_atr_mult)
            set_path(mutated, "execution.tp_atr_mult", tp_mult)
            set_path(mutated, "risk.per_trade_pct.default", combo.risk_pct)
            if not is_feasible(combo.rr, combo.sl_atr_mult, tp_mult, combo.risk_pct):
                continue
            candidates.append(
                CalibrationCandidate(
                    id=f"{config.tag}-grid-{len(candidates)}",
                    base_rules=mutated,
                    market_overrides=copy.deepcopy(overrides),
                    metadata={
                        "note": "coarse grid candidate",
                        "stage": "grid",
                        "adx_min": _as_number(combo.adx_min),
                        "sentiment": combo.sentiment_mode,
                        "rr": combo.rr,
                        "sl_atr_mult": combo.sl_atr_mult,
                        "tp_atr_mult": tp_mult,
                        "risk_pct": combo.risk_pct,
                    },
                )
            )

        LOGGER.info(
            "Candidate generation stage1 completed | combinations=%s candidates=%s target=%s",
            len(combos),
            len(candidates),
            self.budgets.stage1_count,
        )
        return candidates

    def parameter_grids(self, baseline: RuleSet) -> dict[str, list[Any]]:
        return {
            "adx_min": generate_range(float(baseline.get_gate("adx_min", 24)), ADX_AXIS),
            "rr": generate_range(float(baseline.get_execution("rr", 2.0)), RR_AXIS),
            "sl_atr_mult": generate_range(float(baseline.get_execution("sl_atr_mult", 2.0)), SL_AXIS),
            "tp_atr_mult": generate_range(float(baseline.get_execution("tp_atr_mult", 4.0)), TP_AXIS),
            "risk_pct": generate_range(float(baseline.get_risk("per_trade_pct.default", 1.0)), RISK_AXIS),
            "sentiment_mode": list(SENTIMENT_MODES),
        }

    def parameter_combinations(self, grids: dict[str, list[Any]], max_combinations: int) -> list[ParameterCombo]:
        total = math.prod(len(values) for values in grids.values())
        if total <= max_combinations:
            return self._all_combinations(grids)
        return self._stratified_sample(grids, max_combinations)

    def _all_combinations(self, grids: dict[str, list[Any]]) -> list[ParameterCombo]:
        combos: list[ParameterCombo] = []
        for adx, sentiment, rr, sl, tp, risk in itertools.product(
            grids["adx_min"],
            grids["sentiment_mode"],
            grids["rr"],
            grids["sl_atr_mult"],
            grids["tp_atr_mult"],
            grids["risk_pct"],
        ):
            if not is_feasible(rr, sl, tp, risk):
                continue
            combos.append(ParameterCombo(adx, sentiment, rr, sl, tp, risk))
        return combos

    def _stratified_sample(self, grids: dict[str, list[Any]], max_combinations: int) -> list[ParameterCombo]:
        # Outer axes (ADX x sentiment x RR) get about a tenth of the budget,
        # each kept outer point gets an evenly strided slice of SL x TP x risk.
        target_outer = min(30.0, max_combinations / 10)
        outer = list(itertools.product(grids["adx_min"], grids["sentiment_mode"], grids["rr"]))
        inner = list(itertools.product(grids["sl_atr_mult"], grids["tp_atr_mult"], grids["risk_pct"]))
        outer_step = max(1, math.floor(len(outer) / target_outer))
        inner_budget = max(1, math.floor(max_combinations / target_outer))
        inner_step = max(1, math.floor(len(inner) / inner_budget))

        combos: list[ParameterCombo] = []
        used_outer = 0
        for outer_index, (adx, sentiment, rr) in enumerate(outer):
            if outer_index % outer_step != 0:
                continue
            for inner_index, (sl, tp, risk) in enumerate(inner):
                if inner_index % inner_step != 0:
                    continue
                if len(combos) >= max_combinations:
                    return combos
                if not is_feasible(rr, sl, tp, risk):
                    continue
                combos.append(ParameterCombo(adx, sentiment, rr, sl, tp, risk))
            used_outer += 1
            if used_outer >= target_outer:
                break
        return combos

    # ------------------------------------------------------------------
    # stage 2
    # ------------------------------------------------------------------
    def refine_top_candidates(
        self,
        top_scored: Sequence[CandidateScore | CalibrationCandidate],
        config: CalibrationConfig,
        baseline: RuleSet | None = None,
    ) -> list[CalibrationCandidate]:
        refined: list[CalibrationCandidate] = []
        seen: set[str] = set()
        parents = list(top_scored)[: max(0, int(self.budgets.top_n_refine))]
        cap = max(0, int(self.budgets.stage2_count))
        for item in parents:
            parent = item.candidate if isinstance(item, CandidateScore) else item
            for candidate in self._refinements(parent, config):
                if candidate.id in seen or len(refined) >= cap:
                    continue
                seen.add(candidate.id)
                refined.append(candidate)
        LOGGER.info(
            "Candidate generation stage2 completed | parents=%s refined=%s",
            len(parents),
            len(refined),
        )
        return refined

    def _refinements(self, parent: CalibrationCandidate, config: CalibrationConfig) -> Iterable[CalibrationCandidate]:
        adx = int(parent.adx_min)
        rr = parent.rr
        sl_mult = parent.sl_atr_mult
        risk = parent.risk_pct
        variations: list[tuple[str, float]] = [
            ("adx_min", adx - 1),
            ("adx_min", adx + 1),
            ("rr", round(rr - 0.25, 2)),
            ("rr", round(rr + 0.25, 2)),
            ("sl_atr_mult", round(sl_mult - 0.25, 2)),
            ("sl_atr_mult", round(sl_mult + 0.25, 2)),
            ("risk_pct", round(risk - 0.25, 2)),
            ("risk_pct", round(risk + 0.25, 2)),
        ]
        for idx, (axis, value) in enumerate(variations):
            mutated = copy.deepcopy(parent.base_rules)
            set_path(mutated, "execution.rr", rr)
            set_path(mutated, "execution.sl_atr_mult", sl_mult)
            set_path(mutated, "execution.tp_atr_mult", parent.tp_atr_mult)
            set_path(mutated, "risk.per_trade_pct.default", risk)

            if axis == "adx_min":
                set_path(mutated, "gates.adx_min", int(_clamp(value, ADX_AXIS.low, ADX_AXIS.high)))
            elif axis == "rr":
                new_rr = _clamp(value, RR_AXIS.low, RR_AXIS.high)
                set_path(mutated, "execution.rr", new_rr)
                set_path(mutated, "execution.tp_atr_mult", round(sl_mult * new_rr, 4))
            elif axis == "sl_atr_mult":
                new_sl = _clamp(value, SL_AXIS.low, SL_AXIS.high)
                set_path(mutated, "execution.sl_atr_mult", new_sl)
                set_path(mutated, "execution.tp_atr_mult", round(new_sl * rr, 4))
            else:
                set_path(mutated, "risk.per_trade_pct.default", _clamp(value, RISK_AXIS.low, RISK_AXIS.high))

            execution = mutated["execution"]
            if not is_feasible(
                float(execution["rr"]),
                float(execution["sl_atr_mult"]),
                float(execution["tp_atr_mult"]),
                float(mutated["risk"]["per_trade_pct"]["default"]),
            ):
                continue
            yield CalibrationCandidate(
                id=f"{config.tag}-refine-{parent.id[-8:]}-{idx}",
                base_rules=mutated,
                market_overrides=copy.deepcopy(parent.market_overrides),
                metadata={
                    "note": "refined candidate",
                    "stage": "refined",
                    "parent_id": parent.id,
                    "variation": {axis: value},
                },
            )

from __future__ import annotations

import pytest

from fxengine.calibration.classifier import DROPPED_SCORE, ModelScore
from fxengine.calibration.models import CalibrationCandidate, CalibrationDataset
from fxengine.calibration.scorer import CandidateScorer
from fxengine.config import ScoringConfig


def _candidate(idx: int, *, adx: float = 24, rr: float = 2.0, mode: str = "contrarian") -> CalibrationCandidate:
    return CalibrationCandidate(
        id=f"2026-W43-grid-{idx}",
        base_rules={
            "gates": {"adx_min": adx, "sentiment": {"mode": mode}},
            "execution": {"rr": rr, "sl_atr_mult": 2.0, "tp_atr_mult": 2.0 * rr},
            "risk": {"per_trade_pct": {"default": 1.0}},
        },
    )


DATASET = CalibrationDataset(tag="2026-W43", markets=("EURUSD",), snapshots={}, cost_estimates={"EURUSD": 0.06})


class StubModel:
    def __init__(
        self,
        scores: dict[str, float],
        *,
        frequencies: dict[str, float] | None = None,
        fail_prepare: bool = False,
        fail_ids: tuple[str, ...] = (),
    ):
        self.scores = scores
        self.frequencies = frequencies or {}
        self.fail_prepare = fail_prepare
        self.fail_ids = fail_ids
        self.prepare_calls = 0

    def prepare(self, dataset: CalibrationDataset) -> None:
        self.prepare_calls += 1
        if self.fail_prepare:
            raise RuntimeError("no training data")

    def score(self, candidate: CalibrationCandidate, dataset: CalibrationDataset) -> ModelScore:
        if candidate.id in self.fail_ids:
            raise ValueError("feature extraction failed")
        return ModelScore(self.scores.get(candidate.id, 0.2), trades_per_day=self.frequencies.get(candidate.id))


def test_heuristic_scoring_is_deterministic() -> None:
    candidates = [_candidate(i) for i in range(5)]
    first = CandidateScorer().score(candidates, DATASET)
    second = CandidateScorer().score(list(reversed(candidates)), DATASET)

    by_id = {score.candidate.id: score.metrics for score in first}
    assert by_id == {score.candidate.id: score.metrics for score in second}
    for metrics in by_id.values():
        assert metrics["scoring_method"] == "heuristic"
        assert 0.4 <= metrics["hit_rate"] <= 0.75
        assert metrics["trades_per_day"] >= 0.3
        assert metrics["composite"] >= 0.0


def test_heuristic_formula_with_fixed_seed() -> None:
    scorer = CandidateScorer(seed_fn=lambda *parts: 42)
    metrics = scorer.heuristic_metrics(_candidate(1), DATASET, 0.06)

    hit_rate = metrics["hit_rate"]
    assert 0.56 <= hit_rate <= 0.66
    assert metrics["expectancy"] == pytest.approx(round(hit_rate * 2.0 * 0.9 - (1 - hit_rate) - 0.06, 3))
    assert metrics["sharpe_proxy"] == pytest.approx(round(max(0.1, metrics["expectancy"] / 0.2), 3))


def test_heuristic_differs_by_dataset_tag() -> None:
    other = CalibrationDataset(tag="2026-W44", markets=("EURUSD",), snapshots={})
    scorer = CandidateScorer()
    runs = [
        scorer.heuristic_metrics(_candidate(i), DATASET, 0.04) != scorer.heuristic_metrics(_candidate(i), other, 0.04)
        for i in range(10)
    ]
    assert any(runs)


def test_results_ranked_by_composite() -> None:
    scores = CandidateScorer().score([_candidate(i) for i in range(12)], DATASET)
    composites = [score.composite for score in scores]
    assert composites == sorted(composites, reverse=True)


def test_model_metrics_shape() -> None:
    model = StubModel({"2026-W43-grid-1": 0.5})
    scorer = CandidateScorer(model)
    [score] = scorer.score([_candidate(1, adx=27, mode="neutral")], DATASET)

    metrics = score.metrics
    assert model.prepare_calls == 1
    assert metrics["scoring_method"] == "ml"
    assert metrics["ml_score"] == pytest.approx(0.5)
    assert metrics["hit_rate"] == pytest.approx(0.5)
    assert metrics["trades_per_day"] == pytest.approx(1.04)
    assert metrics["expectancy"] == pytest.approx(0.44)
    assert metrics["sharpe_proxy"] == pytest.approx(round(0.44 / 0.2, 3))
    assert metrics["composite"] == pytest.approx(0.3 * 0.5 + 0.5 * 0.44 + 0.2 * 2.2)


def test_model_metrics_use_executed_trade_frequency() -> None:
    model = StubModel({"2026-W43-grid-1": 0.5}, frequencies={"2026-W43-grid-1": 0.45})
    [score] = CandidateScorer(model).score([_candidate(1, adx=27, mode="neutral")], DATASET)

    assert score.metrics["trades_per_day"] == pytest.approx(0.45)
    assert score.trades_per_day == pytest.approx(0.45)


def test_model_hit_rate_is_clamped() -> None:
    scorer = CandidateScorer(StubModel({"2026-W43-grid-1": 2.0, "2026-W43-grid-2": -1.0}))
    scores = {s.candidate.id: s.metrics for s in scorer.score([_candidate(1), _candidate(2)], DATASET)}
    assert scores["2026-W43-grid-1"]["hit_rate"] == 0.75
    assert scores["2026-W43-grid-2"]["hit_rate"] == 0.35
    assert scores["2026-W43-grid-2"]["sharpe_proxy"] == 0.1
    assert scores["2026-W43-grid-2"]["composite"] == 0.0


def test_dropped_candidates_are_removed() -> None:
    scorer = CandidateScorer(StubModel({"2026-W43-grid-2": DROPPED_SCORE}))
    scores = scorer.score([_candidate(1), _candidate(2), _candidate(3)], DATASET)
    assert sorted(score.candidate.id for score in scores) == ["2026-W43-grid-1", "2026-W43-grid-3"]


def test_prepare_failure_falls_back_for_whole_run() -> None:
    model = StubModel({}, fail_prepare=True)
    scores = CandidateScorer(model).score([_candidate(1), _candidate(2)], DATASET)
    assert {score.metrics["scoring_method"] for score in scores} == {"heuristic"}


def test_per_candidate_failure_falls_back_for_that_candidate() -> None:
    model = StubModel({}, fail_ids=("2026-W43-grid-2",))
    scores = {s.candidate.id: s.metrics for s in CandidateScorer(model).score([_candidate(1), _candidate(2)], DATASET)}
    assert scores["2026-W43-grid-1"]["scoring_method"] == "ml"
    assert scores["2026-W43-grid-2"]["scoring_method"] == "heuristic"


def test_parallel_scoring_matches_sequential() -> None:
    candidates = [_candidate(i, rr=1.5 + 0.25 * (i % 4)) for i in range(16)]
    sequential = CandidateScorer(settings=ScoringConfig(workers=1)).score(candidates, DATASET)
    parallel = CandidateScorer(settings=ScoringConfig(workers=4)).score(candidates, DATASET)
    assert [s.candidate.id for s in sequential] == [s.candidate.id for s in parallel]
    assert [s.metrics for s in sequential] == [s.metrics for s in parallel]


def test_empty_input() -> None:
    model = StubModel({})
    assert CandidateScorer(model).score([], DATASET) == []
    assert model.prepare_calls == 0

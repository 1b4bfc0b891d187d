from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from typing import Any, Sequence

from fxengine.calibration.classifier import ModelScore, ProfitabilityModel
from fxengine.calibration.models import CalibrationCandidate, CalibrationDataset, CandidateScore, rank_scores
from fxengine.calibration.seeding import SeedFn, crc32_seed, rand_int, rng_for
from fxengine.config import ScoringConfig

LOGGER = logging.getLogger(__name__)

DROP_THRESHOLD = -900.0


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class CandidateScorer:
    """Scores calibration candidates with a profitability model, or heuristically.

    The model is prepared once per :meth:`score` call. When preparation fails
    every candidate in the run is scored heuristically; when a single
    candidate fails to score only that candidate falls back.
    """

    def __init__(
        self,
        model: ProfitabilityModel | None = None,
        *,
        settings: ScoringConfig | None = None,
        seed_fn: SeedFn = crc32_seed,
    ):
        self.model = model
        self.settings = settings or ScoringConfig()
        self.seed_fn = seed_fn

    def score(self, candidates: Sequence[CalibrationCandidate], dataset: CalibrationDataset) -> list[CandidateScore]:
        if not candidates:
            return []
        use_model = self._prepare(dataset)
        cost_base = dataset.cost_base(self.settings.default_cost)

        results: list[CandidateScore | None] = [None] * len(candidates)
        workers = max(1, int(self.settings.workers))
        if workers == 1 or len(candidates) == 1:
            for index, candidate in enumerate(candidates):
                results[index] = self._score_one(candidate, dataset, cost_base, use_model)
        else:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                future_map: dict[Future[CandidateScore | None], int] = {
                    pool.submit(self._score_one, candidate, dataset, cost_base, use_model): index
                    for index, candidate in enumerate(candidates)
                }
                for future in as_completed(future_map):
                    results[future_map[future]] = future.result()

        scored = [item for item in results if item is not None]
        dropped = len(candidates) - len(scored)
        LOGGER.info(
            "Candidates scored | total=%s kept=%s dropped=%s method=%s",
            len(candidates),
            len(scored),
            dropped,
            "ml" if use_model else "heuristic",
        )
        return rank_scores(scored, "composite")

    def _prepare(self, dataset: CalibrationDataset) -> bool:
        if self.model is None:
            return False
        try:
            self.model.prepare(dataset)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Profitability model preparation failed; using heuristic scoring | error=%s", exc)
            return False
        return True

    def _score_one(
        self,
        candidate: CalibrationCandidate,
        dataset: CalibrationDataset,
        cost_base: float,
        use_model: bool,
    ) -> CandidateScore | None:
        if not use_model or self.model is None:
            return CandidateScore(candidate=candidate, metrics=self.heuristic_metrics(candidate, dataset, cost_base))
        try:
            result = self.model.score(candidate, dataset)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Model scoring failed; heuristic fallback | candidate=%s error=%s", candidate.id, exc)
            return CandidateScore(candidate=candidate, metrics=self.heuristic_metrics(candidate, dataset, cost_base))
        if result.value < DROP_THRESHOLD:
            LOGGER.debug("Candidate dropped | candidate=%s ml_score=%s", candidate.id, result.value)
            return None
        return CandidateScore(candidate=candidate, metrics=self.model_metrics(candidate, result, cost_base))

    @staticmethod
    def model_metrics(candidate: CalibrationCandidate, result: ModelScore, cost_base: float) -> dict[str, Any]:
        ml_score = float(result.value)
        hit_rate = round(_clamp((ml_score + 1.0) / 3.0, 0.35, 0.75), 3)

        if result.trades_per_day is not None:
            trades_per_day = round(float(result.trades_per_day), 2)
        else:
            # Parameter-based estimate when the model reports no trade frequency.
            trades_per_day = 1.0
            trades_per_day *= 0.8 if candidate.adx_min > 25 else 1.2
            if candidate.sentiment_mode == "neutral":
                trades_per_day *= 1.3
            trades_per_day = round(_clamp(trades_per_day, 0.3, 2.0), 2)

        expectancy = max(-2.0, ml_score - cost_base)
        if expectancy > 0:
            sharpe_proxy = round(expectancy / max(0.2, cost_base + 0.1), 3)
        else:
            sharpe_proxy = 0.1
        composite = max(0.0, 0.3 * hit_rate + 0.5 * expectancy + 0.2 * sharpe_proxy)

        return {
            "hit_rate": hit_rate,
            "trades_per_day": trades_per_day,
            "expectancy": round(expectancy, 3),
            "sharpe_proxy": sharpe_proxy,
            "composite": round(composite, 4),
            "ml_score": round(ml_score, 4),
            "scoring_method": "ml",
        }

    def heuristic_metrics(
        self,
        candidate: CalibrationCandidate,
        dataset: CalibrationDataset,
        cost_base: float,
    ) -> dict[str, Any]:
        rng = rng_for(self.seed_fn, candidate.id, dataset.tag)
        rr = candidate.rr

        base = 60
        base += 3 if candidate.adx_min > 25 else -2
        base += -2 if rr > 2.0 else 1
        base += 2 if candidate.sentiment_mode == "contrarian" else -1

        hit_pct = _clamp(rand_int(rng, base - 5, base + 5), 40, 75)
        hit_rate = round(hit_pct / 100.0, 3)
        trades_per_day = round(max(0.3, rand_int(rng, 30, 120) / 100.0), 2)
        expectancy = round(hit_rate * rr * 0.9 - (1 - hit_rate) - cost_base, 3)
        sharpe_proxy = round(max(0.1, expectancy / max(0.2, cost_base + 0.1)), 3)
        composite = round(max(0.0, 0.4 * hit_rate + 0.4 * expectancy + 0.2 * sharpe_proxy), 4)

        return {
            "hit_rate": hit_rate,
            "trades_per_day": trades_per_day,
            "expectancy": expectancy,
            "sharpe_proxy": sharpe_proxy,
            "composite": composite,
            "scoring_method": "heuristic",
        }

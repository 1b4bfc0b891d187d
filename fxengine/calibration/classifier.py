from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol, Sequence

import joblib
import numpy as np
import pandas as pd
from sklearn.ensemble import RandomForestClassifier
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import StandardScaler

from fxengine.calibration.errors import ModelNotPreparedError
from fxengine.calibration.models import CalibrationCandidate, CalibrationDataset
from fxengine.decision.engine import DecisionEngine
from fxengine.decision.result import DecisionResult
from fxengine.decision.snapshot import DecisionContext
from fxengine.rules.ruleset import RuleSet

LOGGER = logging.getLogger(__name__)

FEATURE_NAMES: Sequence[str] = (
    "atr_pips",
    "spread_pips",
    "spread_to_atr",
    "adx",
    "ema_z",
    "trend",
    "rr",
    "risk_pct",
    "sl_atr_mult",
    "adx_min",
    "sentiment_code",
    "hour",
)

DROPPED_SCORE = -999.0
AVG_WIN_R = 2.0
AVG_LOSS_R = -1.0

# Parameter defaults used when labelling contexts for training.
_TRAINING_PARAMS = {"rr": 2.0, "risk_pct": 1.0, "sl_atr_mult": 2.0, "adx_min": 24.0, "sentiment_code": 1.0}

_DUMMY_ROWS = [
    [10, 1.0, 0.1, 25, 0.5, 0, 2.0, 1.0, 2.0, 24, 1, 12],
    [5, 3.0, 0.6, 15, 2.0, 0, 1.5, 2.0, 1.5, 20, -1, 8],
    [8, 1.5, 0.2, 30, -0.5, 1, 2.5, 0.8, 2.5, 28, 1, 16],
]
_DUMMY_LABELS = [1, 0, 1]

EngineFactory = Callable[[RuleSet], DecisionEngine]


@dataclass(slots=True, frozen=True)
class ModelScore:
    """Model output for one candidate; ``trades_per_day`` counts executed simulated decisions."""

    value: float
    trades_per_day: float | None = None

class ProfitabilityModel(Protocol):
    def prepare(self, dataset: CalibrationDataset) -> None: ...

    def score(self, candidate: CalibrationCandidate, dataset: CalibrationDataset) -> ModelScore: ...


def trend_code(trend: Any) -> int:
    label = str(trend or "").lower()
    if label == "up":
        return 1
    if label == "down":
        return -1
    return 0


def sentiment_code(mode: Any) -> int:
    label = str(mode or "").lower()
    if label == "contrarian":
        return 1
    if label == "confirming":
        return -1
    return 0


def _num(raw: Mapping[str, Any], key: str, default: float = 0.0) -> float:
    try:
        return float(raw.get(key, default) or default)
    except (TypeError, ValueError):
        return default


def market_features(context: DecisionContext) -> dict[str, float] | None:
    atr = context.market.atr5m_pips or 0.0
    if atr <= 0:
        return None
    spread = context.market.spread_estimate_pips or 0.0
    return {
        "atr_pips": atr,
        "spread_pips": spread,
        "spread_to_atr": spread / max(atr, 0.1),
        "adx": context.features.adx5m or 0.0,
        "ema_z": context.features.ema20_z or 0.0,
        "trend": float(trend_code(context.features.trend30m)),
        "hour": float(context.timestamp.hour),
    }


def simulated_outcome(context: DecisionContext) -> int:
    """Synthetic profitability label until realised trade outcomes are recorded."""
    score = 0
    score += 1 if (context.features.adx5m or 0.0) > 25 else -1
    score += 1 if (context.market.spread_estimate_pips or 0.0) < 1.5 else -1
    atr = context.market.atr5m_pips or 0.0
    score += 1 if 5 < atr < 20 else -1
    score += 1 if abs(context.features.ema20_z or 0.0) < 1.0 else -1
    return 1 if score > 0 else 0


def expectancy_from_hit_rate(hit_rate: float) -> float:
    return hit_rate * AVG_WIN_R + (1 - hit_rate) * AVG_LOSS_R


class RandomForestProfitabilityModel:
    """Random-forest classifier predicting whether an executed decision pays.

    :meth:`prepare` loads a persisted pipeline from ``model_path`` when one
    exists, otherwise trains on the dataset's contexts and persists the
    result. Preparation is cached per dataset tag.
    """

    def __init__(
        self,
        *,
        model_path: str | Path | None = None,
        trading_days: int = 20,
        min_trade_frequency: float = 0.3,
        n_estimators: int = 50,
        random_state: int = 7,
        engine_factory: EngineFactory | None = None,
    ):
        self.model_path = Path(model_path) if model_path else None
        self.trading_days = max(1, int(trading_days))
        self.min_trade_frequency = float(min_trade_frequency)
        self.n_estimators = int(n_estimators)
        self.random_state = int(random_state)
        self.engine_factory: EngineFactory = engine_factory or (lambda rules: DecisionEngine(rules))
        self._model: Pipeline | None = None
        self._prepared_tag: str | None = None

    @property
    def is_prepared(self) -> bool:
        return self._model is not None

    def _new_pipeline(self) -> Pipeline:
        return Pipeline(
            [
                ("scaler", StandardScaler()),
                (
                    "clf",
                    RandomForestClassifier(n_estimators=self.n_estimators, random_state=self.random_state),
                ),
            ]
        )

    def prepare(self, dataset: CalibrationDataset) -> None:
        if self._model is not None and self._prepared_tag == dataset.tag:
            return
        if self.model_path is not None and self.model_path.exists():
            self._model = joblib.load(self.model_path)
            LOGGER.info("Profitability model loaded | path=%s", self.model_path)
        else:
            self._model = self._train(dataset)
            self._save()
        self._prepared_tag = dataset.tag

    def _train(self, dataset: CalibrationDataset) -> Pipeline:
        rows: list[dict[str, float]] = []
        labels: list[int] = []
        for _, raw in dataset.iter_contexts():
            context = DecisionContext.from_dict(raw)
            features = market_features(context)
            if features is None:
                continue
            rows.append({**features, **_TRAINING_PARAMS})
            labels.append(simulated_outcome(context))

        pipeline = self._new_pipeline()
        if not rows:
            LOGGER.warning("No training data for profitability model; fitting placeholder model")
            frame = pd.DataFrame(_DUMMY_ROWS, columns=list(FEATURE_NAMES))
            pipeline.fit(frame, np.asarray(_DUMMY_LABELS))
            return pipeline

        frame = pd.DataFrame(rows, columns=list(FEATURE_NAMES)).astype(float)
        LOGGER.info("Profitability model training | samples=%s features=%s", len(frame), frame.shape[1])
        pipeline.fit(frame, np.asarray(labels))
        return pipeline

    def _save(self) -> None:
        if self.model_path is None or self._model is None:
            return
        self.model_path.parent.mkdir(parents=True, exist_ok=True)
        joblib.dump(self._model, self.model_path)
        LOGGER.info("Profitability model saved | path=%s", self.model_path)

    def candidate_features(self, candidate: CalibrationCandidate, dataset: CalibrationDataset) -> pd.DataFrame:
        engine = self.engine_factory(candidate.to_ruleset())
        rows: list[dict[str, float]] = []
        for market, raw in dataset.iter_contexts():
            try:
                context = DecisionContext.from_dict(raw)
            except ValueError as exc:
                LOGGER.debug("Skipping malformed context | market=%s error=%s", market, exc)
                continue
            result = engine.decide(context)
            if not result.is_trade or result.blocked:
                continue
            row = self._decision_row(context, result, candidate)
            if row is not None:
                rows.append(row)
        return pd.DataFrame(rows, columns=list(FEATURE_NAMES)).astype(float)

    @staticmethod
    def _decision_row(
        context: DecisionContext,
        result: DecisionResult,
        candidate: CalibrationCandidate,
    ) -> dict[str, float] | None:
        features = market_features(context)
        if features is None or not context.market.last_price:
            return None
        entry = result.entry or 0.0
        risk = abs(entry - (result.sl or 0.0))
        reward = abs((result.tp or 0.0) - entry)
        return {
            **features,
            "rr": reward / max(risk, 0.0001),
            "risk_pct": result.risk_pct if result.risk_pct is not None else 1.0,
            "sl_atr_mult": candidate.sl_atr_mult,
            "adx_min": candidate.adx_min,
            "sentiment_code": float(sentiment_code(candidate.sentiment_mode)),
        }

    def score(self, candidate: CalibrationCandidate, dataset: CalibrationDataset) -> ModelScore:
        if self._model is None:
            raise ModelNotPreparedError("Model not prepared. Call prepare() first.")
        frame = self.candidate_features(candidate, dataset)
        frequency = len(frame) / self.trading_days
        if frame.empty or frequency < self.min_trade_frequency:
            LOGGER.debug(
                "Candidate dropped for low trade frequency | candidate=%s frequency=%.3f",
                candidate.id,
                frequency,
            )
            return ModelScore(DROPPED_SCORE, trades_per_day=round(frequency, 3))
        predictions = self._model.predict(frame)
        hit_rate = float(np.mean(predictions == 1))
        expectancy = expectancy_from_hit_rate(hit_rate)
        score = expectancy * min(1.0, frequency)
        LOGGER.debug(
            "Candidate scored by model | candidate=%s hit_rate=%.3f expectancy=%.3f frequency=%.3f score=%.3f",
            candidate.id,
            hit_rate,
            expectancy,
            frequency,
            score,
        )
        return ModelScore(score, trades_per_day=round(frequency, 3))

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Iterable

from fxengine.rules.ruleset import RuleSet, lookup

if TYPE_CHECKING:
    from fxengine.calibration.config import CalibrationConfig
    from fxengine.storage.models import RuleSetRecord


def _param(rules: dict[str, Any], path: str, default: Any) -> Any:
    value = lookup(rules, path, None)
    return default if value is None else value


@dataclass(slots=True, frozen=True)
class CalibrationCandidate:
    id: str
    base_rules: dict[str, Any]
    market_overrides: dict[str, dict[str, Any]] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def stage(self) -> str:
        return str(self.metadata.get("stage", "grid"))

    @property
    def adx_min(self) -> float:
        return float(_param(self.base_rules, "gates.adx_min", 24))

    @property
    def rr(self) -> float:
        return float(_param(self.base_rules, "execution.rr", 2.0))

    @property
    def sl_atr_mult(self) -> float:
        return float(_param(self.base_rules, "execution.sl_atr_mult", 2.0))

    @property
    def tp_atr_mult(self) -> float:
        return float(_param(self.base_rules, "execution.tp_atr_mult", 4.0))

    @property
    def risk_pct(self) -> float:
        return float(_param(self.base_rules, "risk.per_trade_pct.default", 1.0))

    @property
    def sentiment_mode(self) -> str:
        return str(_param(self.base_rules, "gates.sentiment.mode", "contrarian"))

    def to_ruleset(self, *, emergency_overrides: dict[str, Any] | None = None, tag: str | None = None) -> RuleSet:
        return RuleSet.from_mapping(
            self.base_rules,
            market_overrides=self.market_overrides,
            emergency_overrides=emergency_overrides,
            metadata=self.metadata,
            tag=tag or self.id,
        )


@dataclass(slots=True, frozen=True)
class CandidateScore:
    candidate: CalibrationCandidate
    metrics: dict[str, Any]
    risk_metrics: dict[str, Any] | None = None

    @property
    def composite(self) -> float:
        return float(self.metrics.get("composite", 0.0) or 0.0)

    @property
    def expectancy(self) -> float:
        return float(self.metrics.get("expectancy", 0.0) or 0.0)

    @property
    def trades_per_day(self) -> float:
        return float(self.metrics.get("trades_per_day", 0.0) or 0.0)

    def with_risk(self, metrics: dict[str, Any], risk_metrics: dict[str, Any]) -> "CandidateScore":
        return replace(self, metrics=metrics, risk_metrics=risk_metrics)


def rank_scores(scores: Iterable[CandidateScore], metric: str = "composite") -> list[CandidateScore]:
    """Descending by ``metric``; ties keep their incoming (generation) order."""
    return sorted(scores, key=lambda score: float(score.metrics.get(metric, 0.0) or 0.0), reverse=True)


@dataclass(slots=True, frozen=True)
class FeatureSnapshot:
    market: str
    storage_path: str
    feature_hash: str
    metadata: dict[str, Any] = field(default_factory=dict)
    contexts: tuple[dict[str, Any], ...] = ()


@dataclass(slots=True, frozen=True)
class CalibrationDataset:
    tag: str
    markets: tuple[str, ...]
    snapshots: dict[str, FeatureSnapshot]
    regime_summary: dict[str, Any] = field(default_factory=dict)
    cost_estimates: dict[str, float] = field(default_factory=dict)

    @property
    def has_snapshots(self) -> bool:
        return bool(self.snapshots)

    def cost_base(self, default: float = 0.04) -> float:
        if not self.cost_estimates:
            return default
        return sum(self.cost_estimates.values()) / len(self.cost_estimates)

    def feature_hashes(self) -> list[str]:
        return [snapshot.feature_hash for snapshot in self.snapshots.values()]

    def iter_contexts(self) -> Iterable[tuple[str, dict[str, Any]]]:
        for market, snapshot in self.snapshots.items():
            for context in snapshot.contexts:
                yield market, context


@dataclass(slots=True, frozen=True)
class CalibrationResult:
    rule_set: "RuleSetRecord | None"
    resolved_rules: RuleSet
    config: "CalibrationConfig"
    summary: dict[str, int] = field(default_factory=dict)
    winner: CandidateScore | None = None

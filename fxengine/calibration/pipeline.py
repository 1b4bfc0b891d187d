from __future__ import annotations

import logging
import tempfile
from pathlib import Path
from typing import Any, Sequence

from fxengine.calibration.config import CalibrationConfig
from fxengine.calibration.errors import BaselineNotFoundError, DuplicateRuleSetError, NoViableCandidateError
from fxengine.calibration.generator import CandidateGenerator
from fxengine.calibration.models import CalibrationDataset, CalibrationResult, CandidateScore, rank_scores
from fxengine.calibration.montecarlo import MonteCarloEvaluator
from fxengine.calibration.scorer import CandidateScorer
from fxengine.calibration.seeding import SeedFn, crc32_seed
from fxengine.calibration.snapshots import FeatureSnapshotService
from fxengine.clock import utc_now
from fxengine.config import CalibrationSettings
from fxengine.rules.ruleset import RuleSet
from fxengine.storage.models import FeatureSnapshotRecord, RuleSetRecord
from fxengine.storage.repository import RuleSetRepository

LOGGER = logging.getLogger(__name__)

PLACEHOLDER_BASE: dict[str, Any] = {
    "gates": {"adx_min": 24, "sentiment": {"mode": "contrarian"}},
    "execution": {"rr": 2.0, "sl_atr_mult": 2.0, "tp_atr_mult": 4.0},
    "risk": {"per_trade_pct": {"default": 1.0}},
}

RUNNER_UP_COUNT = 3


class CalibrationPipeline:
    """Grid search, local refinement and Monte Carlo filtering of rule set candidates.

    Stages run in order without backtracking. Nothing is written until the
    winner is known, and then everything is written in one transaction.
    Activation is a separate step (:meth:`activate`).
    """

    def __init__(
        self,
        *,
        repository: RuleSetRepository,
        snapshots: FeatureSnapshotService,
        generator: CandidateGenerator,
        scorer: CandidateScorer,
        evaluator: MonteCarloEvaluator,
        settings: CalibrationSettings | None = None,
        seed_fn: SeedFn = crc32_seed,
    ):
        self.repository = repository
        self.snapshots = snapshots
        self.generator = generator
        self.scorer = scorer
        self.evaluator = evaluator
        self.settings = settings or CalibrationSettings()
        self.seed_fn = seed_fn

    def resolve_baseline(self, config: CalibrationConfig) -> tuple[RuleSet | None, RuleSetRecord | None]:
        record: RuleSetRecord | None = None
        if config.baseline_tag:
            record = self.repository.find_by_tag(config.baseline_tag)
            if record is None:
                LOGGER.warning("Baseline tag not found; falling back | tag=%s", config.baseline_tag)
        if record is None:
            record = self.repository.active() or self.repository.latest()
        if record is not None:
            return RuleSetRepository.to_ruleset(record), record
        return self._fallback_rules(), None

    def _fallback_rules(self) -> RuleSet | None:
        path = self.settings.rules_yaml_path
        if not path or not Path(path).exists():
            return None
        LOGGER.info("Using YAML fallback rules | path=%s", path)
        return RuleSet.from_yaml(path)

    def _build_dataset(self, config: CalibrationConfig) -> CalibrationDataset:
        if not config.dry_run:
            return self.snapshots.build(config)
        # Dry runs must not touch the payloads a stored rule set hashes.
        with tempfile.TemporaryDirectory(prefix="fxengine-dry-run-") as scratch:
            return self.snapshots.build(config, features_dir=scratch)

    def run(self, config: CalibrationConfig) -> CalibrationResult:
        current, current_record = self.resolve_baseline(config)

        if current is None:
            if not config.dry_run:
                raise BaselineNotFoundError("No active ruleset available to seed calibration.")
            self._build_dataset(config)
            LOGGER.info("Dry run without baseline; returning placeholder rules | tag=%s", config.tag)
            return CalibrationResult(
                rule_set=None,
                resolved_rules=RuleSet.from_mapping(PLACEHOLDER_BASE),
                config=config,
                summary={"stage1": 0, "stage2": 0, "monte_carlo": 0},
            )

        if not config.dry_run and self.repository.exists(config.tag):
            raise DuplicateRuleSetError(f"Rule set tag already exists: {config.tag}")

        dataset = self._build_dataset(config)
        budgets = self.settings.budgets

        LOGGER.info("Calibration stage1 starting | tag=%s", config.tag)
        stage1_candidates = self.generator.generate(config, current, dataset)
        stage1_scored = self.scorer.score(stage1_candidates, dataset)
        top_performers = rank_scores(stage1_scored, "expectancy")[: budgets.top_n_refine]

        LOGGER.info("Calibration stage2 starting | candidates=%s", len(stage1_candidates))
        stage2_candidates = self.generator.refine_top_candidates(top_performers, config, current)
        stage2_scored = self.scorer.score(stage2_candidates, dataset)

        all_scored = rank_scores([*stage1_scored, *stage2_scored], "expectancy")
        finalists = all_scored[: budgets.top_n_mc]
        LOGGER.info(
            "Calibration stage3 starting | candidates=%s top_n=%s mc_runs=%s",
            len(all_scored),
            budgets.top_n_mc,
            budgets.mc_runs,
        )
        evaluated = self.evaluator.evaluate(finalists, dataset, budgets.top_n_mc, budgets.mc_runs)

        winner = evaluated[0] if evaluated else (all_scored[0] if all_scored else None)
        if winner is None:
            raise NoViableCandidateError("Calibration produced no viable candidates.")
        LOGGER.info(
            "Calibration winner selected | tag=%s winner=%s expectancy=%.4f evaluated=%s",
            config.tag,
            winner.candidate.id,
            winner.expectancy,
            len(all_scored),
        )

        summary = {
            "stage1": len(stage1_candidates),
            "stage2": len(stage2_candidates),
            "monte_carlo": len(evaluated),
        }
        resolved = winner.candidate.to_ruleset(emergency_overrides=current.emergency_overrides, tag=config.tag)

        if config.dry_run:
            LOGGER.info(
                "Dry run complete | tag=%s stage1=%s stage2=%s monte_carlo=%s",
                config.tag,
                summary["stage1"],
                summary["stage2"],
                summary["monte_carlo"],
            )
            return CalibrationResult(
                rule_set=None,
                resolved_rules=resolved,
                config=config,
                summary=summary,
                winner=winner,
            )

        ranked = evaluated if evaluated else all_scored
        record = self.persist(
            config,
            current,
            current_record,
            winner,
            ranked,
            dataset,
            candidate_count=len(all_scored),
        )
        if config.activate:
            if config.shadow_mode:
                LOGGER.info("Shadow mode; rule set stored but not activated | tag=%s", config.tag)
            else:
                record = self.repository.activate(config.tag)
        return CalibrationResult(
            rule_set=record,
            resolved_rules=resolved,
            config=config,
            summary=summary,
            winner=winner,
        )

    def persist(
        self,
        config: CalibrationConfig,
        current: RuleSet,
        current_record: RuleSetRecord | None,
        winner: CandidateScore,
        ranked: Sequence[CandidateScore],
        dataset: CalibrationDataset,
        *,
        candidate_count: int | None = None,
    ) -> RuleSetRecord:
        generated_at = utc_now().isoformat()
        baseline = RuleSetRecord(
            tag=config.baseline_record_tag,
            period_start=config.period_start,
            period_end=config.period_end,
            base_rules=current.base,
            market_overrides=current.market_overrides,
            emergency_overrides=current.emergency_overrides,
            metrics=dict(current.metadata.get("metrics") or {}),
            provenance={"source_tag": current.tag, "generated_at": generated_at},
            feature_hash=current_record.feature_hash if current_record is not None else current.checksum(),
            is_active=False,
        )

        runner_ups = [score for score in ranked if score.candidate.id != winner.candidate.id][:RUNNER_UP_COUNT]
        candidate = winner.candidate
        rule_set = RuleSetRecord(
            tag=config.tag,
            period_start=config.period_start,
            period_end=config.period_end,
            base_rules=candidate.base_rules,
            market_overrides=candidate.market_overrides,
            emergency_overrides=current.emergency_overrides,
            metrics={
                "status": "calibrated",
                "scoring": {
                    "top_candidate": self._candidate_summary(winner),
                    "runner_ups": [self._candidate_summary(score) for score in runner_ups],
                },
                "dataset": {
                    "markets": len(dataset.markets),
                    "snapshots": list(dataset.snapshots.keys()),
                },
            },
            risk_bands=dict(winner.risk_metrics or {}),
            regime_snapshot=dataset.regime_summary,
            provenance={
                "data_window_days": config.window_days,
                "generated_at": generated_at,
                "source_tag": current.tag,
                "markets": list(dataset.markets),
                "shadow_mode": config.shadow_mode,
            },
            model_artifacts={
                "candidate_count": candidate_count if candidate_count is not None else len(ranked),
                "feature_hashes": dataset.feature_hashes(),
            },
            feature_hash=current.metadata.get("feature_hash") or current.checksum(),
            mc_seed=self.seed_fn(candidate.id, dataset.tag),
            is_active=False,
        )
        snapshots = [
            FeatureSnapshotRecord(
                market=snapshot.market,
                feature_hash=snapshot.feature_hash,
                storage_path=snapshot.storage_path,
                metadata=snapshot.metadata,
            )
            for snapshot in dataset.snapshots.values()
        ]
        return self.repository.persist_calibration(rule_set, snapshots, baseline=baseline)

    @staticmethod
    def _candidate_summary(score: CandidateScore) -> dict[str, Any]:
        return {
            "candidate_id": score.candidate.id,
            "metrics": score.metrics,
            "risk": score.risk_metrics or {},
        }

    def activate(self, tag: str) -> RuleSetRecord:
        return self.repository.activate(tag)

from __future__ import annotations

import argparse
import json
import logging
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from fxengine.calibration.classifier import RandomForestProfitabilityModel
from fxengine.calibration.config import CalibrationConfig
from fxengine.calibration.errors import CalibrationError
from fxengine.calibration.generator import CandidateGenerator
from fxengine.calibration.montecarlo import MonteCarloEvaluator
from fxengine.calibration.pipeline import CalibrationPipeline
from fxengine.calibration.scorer import CandidateScorer
from fxengine.calibration.snapshots import FeatureSnapshotService
from fxengine.config import CalibrationSettings, apply_env_overrides, load_settings
from fxengine.decision.engine import DecisionEngine
from fxengine.decision.snapshot import DecisionContext
from fxengine.rules.ruleset import RuleSet
from fxengine.storage.db import get_connection, init_db
from fxengine.storage.repository import RuleSetRepository

LOGGER = logging.getLogger("fxengine")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="FX decision engine and rule calibration")
    parser.add_argument("--config", default="config.yaml", help="Path to YAML config")
    parser.add_argument("--db", default=None, help="SQLite path (overrides config and RULES_DB_PATH)")
    sub = parser.add_subparsers(dest="command", required=True)

    calibrate = sub.add_parser("calibrate", help="Propose a new calibrated rule set")
    calibrate.add_argument("tag", nargs="?", default=None, help="Rule set tag, defaults to next ISO week (YYYY-Www)")
    calibrate.add_argument("--period-start", default=None)
    calibrate.add_argument("--period-end", default=None)
    calibrate.add_argument("--markets", default=None, help="Comma separated markets, e.g. EURUSD,GBPUSD")
    calibrate.add_argument("--baseline", default=None, help="Baseline rule set tag")
    calibrate.add_argument("--dry-run", action="store_true", help="Generate and score only; write nothing")
    calibrate.add_argument("--shadow", action="store_true", help="Store the result without activating it")
    calibrate.add_argument("--activate", action="store_true", help="Activate the calibrated rule set")

    activate = sub.add_parser("activate", help="Make a stored rule set the active one")
    activate.add_argument("tag")

    decide = sub.add_parser("decide", help="Evaluate one decision context JSON file")
    decide.add_argument("context", help="Path to a decision context JSON file")
    decide.add_argument("--rules", default=None, help="Rule YAML; defaults to the active rule set")
    return parser.parse_args(argv)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def resolve_db_path(root: Path, settings: CalibrationSettings, override: str | None) -> Path:
    raw = override or os.getenv("RULES_DB_PATH") or settings.storage.db_path
    path = Path(raw)
    if not path.is_absolute():
        path = root / path
    return path


def build_pipeline(settings: CalibrationSettings, repository: RuleSetRepository, root: Path) -> CalibrationPipeline:
    features_dir = Path(settings.snapshots.features_dir)
    if not features_dir.is_absolute():
        features_dir = root / features_dir
    scoring = settings.scoring
    model: RandomForestProfitabilityModel | None = None
    if scoring.use_model:
        model_path = scoring.model_path
        if model_path and not Path(model_path).is_absolute():
            model_path = str(root / model_path)
        model = RandomForestProfitabilityModel(
            model_path=model_path,
            trading_days=scoring.trading_days,
            min_trade_frequency=scoring.min_trade_frequency,
            n_estimators=scoring.n_estimators,
            random_state=scoring.random_state,
        )
    return CalibrationPipeline(
        repository=repository,
        snapshots=FeatureSnapshotService(
            features_dir,
            window_days=settings.window_days,
            contexts_per_market=settings.snapshots.contexts_per_market,
        ),
        generator=CandidateGenerator(settings.budgets),
        scorer=CandidateScorer(model, settings=scoring),
        evaluator=MonteCarloEvaluator(
            settings.monte_carlo,
            min_trades_per_day=settings.budgets.min_trades_per_day,
        ),
        settings=settings,
    )


def run_calibrate(
    args: argparse.Namespace,
    settings: CalibrationSettings,
    repository: RuleSetRepository,
    root: Path,
) -> dict[str, Any]:
    config = CalibrationConfig.from_options(
        {
            "tag": args.tag,
            "period_start": args.period_start,
            "period_end": args.period_end,
            "markets": args.markets,
            "baseline_tag": args.baseline,
            "dry_run": args.dry_run,
            "shadow": args.shadow,
            "activate": args.activate,
        },
        window_days=settings.window_days,
    )
    LOGGER.info(
        "Calibration requested | tag=%s period=%s..%s dry_run=%s markets=%s",
        config.tag,
        config.period_start.date().isoformat(),
        config.period_end.date().isoformat(),
        config.dry_run,
        ",".join(config.markets) or "-",
    )
    result = build_pipeline(settings, repository, root).run(config)
    return {
        "tag": config.tag,
        "dry_run": config.dry_run,
        "summary": result.summary,
        "winner": result.winner.candidate.id if result.winner is not None else None,
        "winner_metrics": result.winner.metrics if result.winner is not None else None,
        "stored": result.rule_set is not None,
        "active": bool(result.rule_set.is_active) if result.rule_set is not None else False,
    }


def run_decide(args: argparse.Namespace, repository: RuleSetRepository) -> dict[str, Any]:
    if args.rules:
        rules = RuleSet.from_yaml(args.rules)
    else:
        active = repository.active()
        rules = RuleSetRepository.to_ruleset(active) if active is not None else RuleSet()
    payload = json.loads(Path(args.context).read_text(encoding="utf-8"))
    context = DecisionContext.from_dict(payload, rules=rules)
    return DecisionEngine(rules).decide(context).to_dict()


def run(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    load_dotenv()
    setup_logging(os.getenv("LOG_LEVEL", "INFO"))

    root = Path(__file__).resolve().parent
    config_path = Path(args.config)
    if not config_path.is_absolute():
        config_path = root / config_path
    settings = apply_env_overrides(load_settings(config_path), os.environ)
    if settings.rules_yaml_path and not Path(settings.rules_yaml_path).is_absolute():
        settings = settings.model_copy(update={"rules_yaml_path": str(root / settings.rules_yaml_path)})

    db_path = resolve_db_path(root, settings, args.db)
    conn = get_connection(db_path)
    init_db(conn)
    repository = RuleSetRepository(conn)
    LOGGER.info("SQLite rules path: %s", db_path)

    try:
        if args.command == "calibrate":
            output = run_calibrate(args, settings, repository, root)
        elif args.command == "activate":
            record = repository.activate(args.tag)
            output = {"tag": record.tag, "active": record.is_active}
        else:
            output = run_decide(args, repository)
    except CalibrationError as exc:
        LOGGER.error("%s failed: %s", args.command, exc)
        return 1
    finally:
        conn.close()

    print(json.dumps(output, indent=2, default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(run())

from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, Field, model_validator


class BudgetsConfig(BaseModel):
    stage1_count: int = 300
    stage2_count: int = 160
    top_n_refine: int = 20
    top_n_mc: int = 10
    mc_runs: int = 200
    min_trades_per_day: float = 0.3

    @model_validator(mode="after")
    def validate_budgets(self) -> "BudgetsConfig":
        if self.stage1_count < 1:
            raise ValueError("stage1_count must be >= 1")
        if self.stage2_count < 0:
            raise ValueError("stage2_count must be >= 0")
        if self.top_n_refine < 0:
            raise ValueError("top_n_refine must be >= 0")
        if self.top_n_mc < 1:
            raise ValueError("top_n_mc must be >= 1")
        if self.mc_runs < 1:
            raise ValueError("mc_runs must be >= 1")
        if self.min_trades_per_day < 0:
            raise ValueError("min_trades_per_day must be >= 0")
        return self


class MonteCarloConfig(BaseModel):
    skip: bool = False
    max_drawdown: float = 0.15
    max_monthly_loss_probability: float = 0.25
    trading_days_per_month: int = 20
    var_confidence: float = 0.95

    @model_validator(mode="after")
    def validate_thresholds(self) -> "MonteCarloConfig":
        for name in ("max_drawdown", "max_monthly_loss_probability", "var_confidence"):
            value = float(getattr(self, name))
            if not (0.0 < value <= 1.0):
                raise ValueError(f"{name} must be in (0,1]")
        if self.trading_days_per_month < 1:
            raise ValueError("trading_days_per_month must be >= 1")
        return self


class ScoringConfig(BaseModel):
    use_model: bool = True
    workers: int = 1
    model_path: str | None = None
    trading_days: int = 20
    min_trade_frequency: float = 0.3
    default_cost: float = 0.04
    n_estimators: int = 50
    random_state: int = 7

    @model_validator(mode="after")
    def validate_scoring(self) -> "ScoringConfig":
        self.workers = max(1, int(self.workers))
        if self.trading_days < 1:
            raise ValueError("trading_days must be >= 1")
        if self.n_estimators < 1:
            raise ValueError("n_estimators must be >= 1")
        model_path = str(self.model_path or "").strip()
        self.model_path = model_path or None
        return self


class SnapshotConfig(BaseModel):
    features_dir: str = "storage/rules/features"
    contexts_per_market: int = 240

    @model_validator(mode="after")
    def validate_snapshots(self) -> "SnapshotConfig":
        if self.contexts_per_market < 0:
            raise ValueError("contexts_per_market must be >= 0")
        return self


class StorageConfig(BaseModel):
    db_path: str = "storage/rules.sqlite3"


class CalibrationSettings(BaseModel):
    window_days: int = 20
    rules_yaml_path: str | None = None
    budgets: BudgetsConfig = Field(default_factory=BudgetsConfig)
    monte_carlo: MonteCarloConfig = Field(default_factory=MonteCarloConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    snapshots: SnapshotConfig = Field(default_factory=SnapshotConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    @model_validator(mode="after")
    def validate_settings(self) -> "CalibrationSettings":
        if self.window_days < 1:
            raise ValueError("window_days must be >= 1")
        path = str(self.rules_yaml_path or "").strip()
        self.rules_yaml_path = path or None
        return self


def _truthy(raw: str) -> bool:
    return raw.strip().lower() in {"1", "true", "yes", "on"}


_ENV_OVERRIDES: dict[str, tuple[str, str, Any]] = {
    "CAL_STAGE1": ("budgets", "stage1_count", int),
    "CAL_STAGE2": ("budgets", "stage2_count", int),
    "CAL_MC_TOP": ("budgets", "top_n_mc", int),
    "CAL_MC_RUNS": ("budgets", "mc_runs", int),
    "CAL_MIN_TPD": ("budgets", "min_trades_per_day", float),
    "CAL_SKIP_MC": ("monte_carlo", "skip", _truthy),
    "CAL_WORKERS": ("scoring", "workers", int),
    "CAL_MODEL_PATH": ("scoring", "model_path", str),
    "CAL_USE_MODEL": ("scoring", "use_model", _truthy),
}


def apply_env_overrides(settings: CalibrationSettings, environ: Mapping[str, str]) -> CalibrationSettings:
    raw = settings.model_dump()
    for env_name, (section, key, cast) in _ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is None or not str(value).strip():
            continue
        raw[section][key] = cast(value)
    rules_path = environ.get("RULES_YAML_PATH")
    if rules_path and rules_path.strip():
        raw["rules_yaml_path"] = rules_path.strip()
    return CalibrationSettings.model_validate(raw)


def load_settings(path: str | Path | None) -> CalibrationSettings:
    if path is None:
        return CalibrationSettings()
    config_path = Path(path)
    if not config_path.exists():
        return CalibrationSettings()
    with config_path.open("r", encoding="utf-8") as file:
        raw: dict[str, Any] = yaml.safe_load(file) or {}
    return CalibrationSettings.model_validate(raw.get("calibration", raw))

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest
from pydantic import ValidationError

from fxengine.calibration.config import CalibrationConfig, next_iso_week_tag, period_for_tag
from fxengine.config import BudgetsConfig, CalibrationSettings, MonteCarloConfig, apply_env_overrides, load_settings


def test_defaults() -> None:
    settings = CalibrationSettings()
    assert settings.budgets.stage1_count == 300
    assert settings.budgets.top_n_mc == 10
    assert settings.budgets.mc_runs == 200
    assert settings.monte_carlo.skip is False
    assert settings.scoring.workers == 1
    assert settings.window_days == 20


def test_load_settings_missing_file_yields_defaults(tmp_path: Path) -> None:
    assert load_settings(tmp_path / "absent.yaml") == CalibrationSettings()
    assert load_settings(None) == CalibrationSettings()


def test_load_settings_reads_calibration_section(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(
        "calibration:\n"
        "  window_days: 10\n"
        "  budgets:\n"
        "    stage1_count: 50\n"
        "  monte_carlo:\n"
        "    skip: true\n",
        encoding="utf-8",
    )
    settings = load_settings(path)
    assert settings.window_days == 10
    assert settings.budgets.stage1_count == 50
    assert settings.budgets.top_n_mc == 10
    assert settings.monte_carlo.skip is True


def test_validation_rejects_bad_values() -> None:
    with pytest.raises(ValidationError):
        BudgetsConfig(top_n_mc=0)
    with pytest.raises(ValidationError):
        BudgetsConfig(stage2_count=-1)
    with pytest.raises(ValidationError):
        MonteCarloConfig(max_drawdown=1.5)


def test_env_overrides() -> None:
    settings = apply_env_overrides(
        CalibrationSettings(),
        {
            "CAL_STAGE1": "40",
            "CAL_MC_TOP": "3",
            "CAL_MIN_TPD": "0.5",
            "CAL_SKIP_MC": "yes",
            "CAL_WORKERS": "4",
            "CAL_MODEL_PATH": "",
            "CAL_USE_MODEL": "0",
            "RULES_YAML_PATH": " rules/base.yaml ",
        },
    )
    assert settings.budgets.stage1_count == 40
    assert settings.budgets.top_n_mc == 3
    assert settings.budgets.min_trades_per_day == 0.5
    assert settings.scoring.use_model is False
    assert settings.monte_carlo.skip is True
    assert settings.scoring.workers == 4
    assert settings.scoring.model_path is None
    assert settings.rules_yaml_path == "rules/base.yaml"


def test_next_iso_week_tag_and_period() -> None:
    now = datetime(2026, 10, 14, 9, 0, tzinfo=timezone.utc)
    assert next_iso_week_tag(now) == "2026-W43"
    start, end = period_for_tag("2026-W43")
    assert start == datetime(2026, 10, 19, tzinfo=timezone.utc)
    assert end.date().isoformat() == "2026-10-25"
    assert (end.hour, end.minute, end.second) == (23, 59, 59)


def test_next_iso_week_tag_rolls_over_year() -> None:
    assert next_iso_week_tag(datetime(2026, 12, 30, tzinfo=timezone.utc)) == "2027-W01"


def test_calibration_config_from_options() -> None:
    config = CalibrationConfig.from_options(
        {"tag": "2026-W43", "markets": "eurusd, GBPUSD,eurusd", "dry_run": True, "activate": True},
        window_days=15,
    )
    assert config.markets == ("EURUSD", "GBPUSD")
    assert config.dry_run is True
    assert config.activate is False
    assert config.window_days == 15
    assert config.baseline_record_tag == "2026-W43-baseline"
    assert config.period_start == datetime(2026, 10, 19, tzinfo=timezone.utc)


def test_calibration_config_explicit_period_and_default_tag() -> None:
    now = datetime(2026, 10, 14, tzinfo=timezone.utc)
    config = CalibrationConfig.from_options(
        {"period_start": "2026-10-01", "period_end": "2026-10-07", "baseline_tag": "2026-W40"},
        now=now,
    )
    assert config.tag == "2026-W43"
    assert config.period_start == datetime(2026, 10, 1, tzinfo=timezone.utc)
    assert config.period_end.date().isoformat() == "2026-10-07"
    assert config.baseline_tag == "2026-W40"

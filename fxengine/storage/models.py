from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class RuleSetRecord:
    tag: str
    period_start: datetime
    period_end: datetime
    base_rules: dict[str, Any]
    market_overrides: dict[str, Any] = field(default_factory=dict)
    emergency_overrides: dict[str, Any] = field(default_factory=dict)
    metrics: dict[str, Any] = field(default_factory=dict)
    risk_bands: dict[str, Any] = field(default_factory=dict)
    regime_snapshot: dict[str, Any] = field(default_factory=dict)
    provenance: dict[str, Any] = field(default_factory=dict)
    model_artifacts: dict[str, Any] = field(default_factory=dict)
    feature_hash: str | None = None
    mc_seed: int | None = None
    is_active: bool = False
    id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class FeatureSnapshotRecord:
    market: str
    feature_hash: str
    storage_path: str
    metadata: dict[str, Any] = field(default_factory=dict)
    rule_set_id: int | None = None
    id: int | None = None
    created_at: datetime | None = None

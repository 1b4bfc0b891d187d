from __future__ import annotations

import copy
import hashlib
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from fxengine.fx.pipmath import compact_pair

_MISSING = object()


def lookup(data: Any, path: str, default: Any = _MISSING) -> Any:
    """Resolve ``a.b.0.c`` against nested mappings and lists."""
    current = data
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return default
            current = current[part]
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return default
        else:
            return default
    return current


def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    merged: dict[str, Any] = copy.deepcopy(dict(base))
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def set_path(data: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = data
    for part in parts[:-1]:
        nxt = current.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            current[part] = nxt
        current = nxt
    current[parts[-1]] = value


@dataclass(slots=True, frozen=True)
class RuleSet:
    """Resolved, read-only rule snapshot.

    Lookups go ``emergency override -> market override -> base -> default``.
    Changing rules means building a new instance (see :meth:`with_base`).
    """

    base: dict[str, Any] = field(default_factory=dict)
    market_overrides: dict[str, dict[str, Any]] = field(default_factory=dict)
    emergency_overrides: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    tag: str | None = None

    @classmethod
    def from_mapping(
        cls,
        base: Mapping[str, Any],
        *,
        market_overrides: Mapping[str, Mapping[str, Any]] | None = None,
        emergency_overrides: Mapping[str, Any] | None = None,
        metadata: Mapping[str, Any] | None = None,
        tag: str | None = None,
    ) -> "RuleSet":
        overrides = {
            compact_pair(str(market)): copy.deepcopy(dict(values))
            for market, values in (market_overrides or {}).items()
        }
        return cls(
            base=copy.deepcopy(dict(base)),
            market_overrides=overrides,
            emergency_overrides=copy.deepcopy(dict(emergency_overrides or {})),
            metadata=copy.deepcopy(dict(metadata or {})),
            tag=tag,
        )

    @classmethod
    def from_yaml(cls, path: str | Path, *, tag: str = "yaml-fallback") -> "RuleSet":
        rules_path = Path(path)
        with rules_path.open("r", encoding="utf-8") as file:
            raw = yaml.safe_load(file) or {}
        if not isinstance(raw, Mapping):
            raise ValueError(f"Rule file {rules_path} must contain a mapping")
        return cls.from_mapping(raw, metadata={"tag": tag, "source": str(rules_path)}, tag=tag)

    def with_base(self, base: Mapping[str, Any], *, tag: str | None = None) -> "RuleSet":
        return RuleSet.from_mapping(
            base,
            market_overrides=self.market_overrides,
            emergency_overrides=self.emergency_overrides,
            metadata=self.metadata,
            tag=tag if tag is not None else self.tag,
        )

    def _layers(self, market: str | None) -> list[Mapping[str, Any]]:
        layers: list[Mapping[str, Any]] = []
        if self.emergency_overrides:
            layers.append(self.emergency_overrides)
        if market:
            override = self.market_overrides.get(compact_pair(market))
            if override:
                layers.append(override)
        layers.append(self.base)
        return layers

    def get(self, key: str, default: Any = None, *, market: str | None = None) -> Any:
        for layer in self._layers(market):
            value = lookup(layer, key)
            if value is not _MISSING and value is not None:
                return copy.deepcopy(value)
        return default

    def get_gate(self, key: str, default: Any = None, *, market: str | None = None) -> Any:
        return self.get(f"gates.{key}", default, market=market)

    def get_risk(self, key: str, default: Any = None, *, market: str | None = None) -> Any:
        return self.get(f"risk.{key}", default, market=market)

    def get_execution(self, key: str, default: Any = None, *, market: str | None = None) -> Any:
        return self.get(f"execution.{key}", default, market=market)

    def get_cooldown(self, key: str, default: Any = None, *, market: str | None = None) -> Any:
        return self.get(f"cooldowns.{key}", default, market=market)

    def get_confluence(self, key: str, default: Any = None, *, market: str | None = None) -> Any:
        return self.get(f"confluence.{key}", default, market=market)

    def get_sentiment_gate(self, key: str, default: Any = None, *, market: str | None = None) -> Any:
        return self.get(f"gates.sentiment.{key}", default, market=market)

    def get_session_filter(self, name: str = "default", *, market: str | None = None) -> dict[str, Any]:
        value = self.get(f"session_filters.{name}", {}, market=market)
        return value if isinstance(value, dict) else {}

    def layered(self, market: str | None = None) -> dict[str, Any]:
        merged = copy.deepcopy(self.base)
        for layer in reversed(self._layers(market)[:-1]):
            merged = deep_merge(merged, layer)
        return merged

    def checksum(self) -> str:
        raw = json.dumps(self.base, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.md5(raw.encode("utf-8")).hexdigest()

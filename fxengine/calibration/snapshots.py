from __future__ import annotations

import hashlib
import json
import logging
import re
import shutil
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Sequence

import numpy as np

from fxengine.calibration.config import CalibrationConfig
from fxengine.calibration.models import CalibrationDataset, FeatureSnapshot
from fxengine.calibration.seeding import SeedFn, crc32_seed, rand_int
from fxengine.clock import utc_now
from fxengine.fx.pipmath import quote_currency

LOGGER = logging.getLogger(__name__)

MarketSource = Callable[[], Sequence[str]]


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.strip().lower()).strip("-")
    return slug or "market"


def _reference_price(market: str) -> float:
    return 150.0 if quote_currency(market) == "JPY" else 1.1


class FeatureSnapshotService:
    """Writes one JSON feature payload per market and returns the dataset built from them.

    Summary metrics are seeded from ``crc32(market + tag)`` so a given
    calibration tag always produces the same dataset. Each payload also
    carries a series of bar-level decision contexts used to replay the
    decision engine during scoring.
    """

    def __init__(
        self,
        features_dir: str | Path,
        *,
        window_days: int = 20,
        contexts_per_market: int = 240,
        market_source: MarketSource | None = None,
        seed_fn: SeedFn = crc32_seed,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.features_dir = Path(features_dir)
        self.window_days = max(1, int(window_days))
        self.contexts_per_market = max(0, int(contexts_per_market))
        self.market_source = market_source
        self.seed_fn = seed_fn
        self.clock = clock

    def _markets(self, config: CalibrationConfig) -> list[str]:
        if config.markets:
            return list(config.markets)
        if self.market_source is not None:
            markets = [str(market).strip().upper() for market in self.market_source() if str(market).strip()]
            if markets:
                return markets
        return ["GLOBAL"]

    def build(self, config: CalibrationConfig, *, features_dir: str | Path | None = None) -> CalibrationDataset:
        """Write the payloads under ``features_dir`` (the service directory by default) and load them."""
        markets = self._markets(config)
        base_dir = Path(features_dir or self.features_dir) / config.tag
        if base_dir.exists():
            shutil.rmtree(base_dir)
        base_dir.mkdir(parents=True, exist_ok=True)

        snapshots: dict[str, FeatureSnapshot] = {}
        costs: dict[str, float] = {}
        regime_summary: dict[str, Any] = {
            "generated_at": self.clock().isoformat(),
            "window_days": self.window_days,
            "markets": len(markets),
        }

        for market in markets:
            payload = self.build_payload(config, market)
            path = base_dir / f"{slugify(market)}.json"
            raw = json.dumps(payload, indent=2, ensure_ascii=True).encode("utf-8")
            path.write_bytes(raw)
            metrics = payload["metrics"]
            snapshots[market] = FeatureSnapshot(
                market=market,
                storage_path=str(path),
                feature_hash=hashlib.sha256(path.read_bytes()).hexdigest(),
                metadata={
                    "byte_length": len(raw),
                    "bars_5m": metrics["bars_5m"],
                    "bars_30m": metrics["bars_30m"],
                    "volatility_score": metrics["volatility_score"],
                },
                contexts=tuple(payload["contexts"]),
            )
            costs[market] = float(metrics["cost_estimate"])

        LOGGER.info(
            "Feature snapshots built | tag=%s markets=%s dir=%s",
            config.tag,
            ",".join(markets),
            base_dir,
        )
        return CalibrationDataset(
            tag=config.tag,
            markets=tuple(markets),
            snapshots=snapshots,
            regime_summary=regime_summary,
            cost_estimates=costs,
        )

    def build_payload(self, config: CalibrationConfig, market: str) -> dict[str, Any]:
        rng = np.random.default_rng(self.seed_fn(market, config.tag))
        bars_5m = self.window_days * 12 * 5
        bars_30m = max(1, bars_5m // 6)
        volatility_score = round(rand_int(rng, 10, 40) / 10, 2)
        adx_regime = rand_int(rng, 12, 35)
        spread_median = round(rand_int(rng, 8, 18) / 10, 2)
        metrics = {
            "bars_5m": bars_5m,
            "bars_30m": bars_30m,
            "volatility_score": volatility_score,
            "adx_regime": adx_regime,
            "spread_median": spread_median,
            "cost_estimate": max(0.01, min(0.15, spread_median / 20)),
        }
        return {
            "tag": config.tag,
            "market": market,
            "generated_at": self.clock().isoformat(),
            "window_days": self.window_days,
            "metrics": metrics,
            "contexts": self._contexts(config, market, metrics),
        }

    def _contexts(self, config: CalibrationConfig, market: str, metrics: dict[str, Any]) -> list[dict[str, Any]]:
        count = self.contexts_per_market
        if count == 0:
            return []
        rng = np.random.default_rng(self.seed_fn(market, config.tag, "contexts"))
        window_end = config.period_start
        window_start = window_end - timedelta(days=self.window_days)
        spacing = (window_end - window_start) / count
        price = _reference_price(market)
        pip = 0.01 if quote_currency(market) == "JPY" else 0.0001
        digits = 2 if pip == 0.01 else 4

        contexts: list[dict[str, Any]] = []
        for index in range(count):
            ts = window_start + spacing * index
            atr_pips = round(max(1.0, float(metrics["volatility_score"]) * 4.0 * float(rng.uniform(0.6, 1.4))), 2)
            price = round(price + float(rng.normal(0.0, atr_pips * pip)), digits)
            long_pct = round(float(rng.uniform(30.0, 75.0)), 1)
            contexts.append(
                {
                    "pair": market,
                    "timestamp": ts.isoformat(),
                    "meta": {"pair_norm": market, "data_age_sec": 60},
                    "features": {
                        "adx5m": round(float(np.clip(rng.normal(metrics["adx_regime"], 6.0), 5.0, 60.0)), 2),
                        "ema20_z": round(float(rng.normal(0.0, 0.9)), 3),
                        "rsi14": round(float(rng.uniform(30.0, 70.0)), 2),
                        "stoch_k": round(float(rng.uniform(10.0, 90.0)), 2),
                        "williams_r": round(float(rng.uniform(-75.0, -25.0)), 2),
                        "cci": round(float(rng.uniform(-90.0, 90.0)), 2),
                        "trend30m": str(rng.choice(["up", "down", "flat"])),
                    },
                    "market": {
                        "status": "TRADEABLE",
                        "last_price": price,
                        "spread_estimate_pips": round(float(metrics["spread_median"]) * float(rng.uniform(0.7, 1.3)), 2),
                        "atr5m_pips": atr_pips,
                        "sentiment": {"long_pct": long_pct, "short_pct": round(100.0 - long_pct, 1)},
                    },
                    "calendar": {"within_blackout": False},
                    "news": {
                        "direction": str(rng.choice(["buy", "sell", "neutral"], p=[0.4, 0.4, 0.2])),
                        "strength": round(float(rng.uniform(0.1, 0.8)), 3),
                    },
                }
            )
        return contexts

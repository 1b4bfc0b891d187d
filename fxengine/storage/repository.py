from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Any, Sequence

from fxengine.calibration.errors import DuplicateRuleSetError, RuleSetNotFoundError
from fxengine.clock import utc_now
from fxengine.rules.ruleset import RuleSet
from fxengine.storage.models import FeatureSnapshotRecord, RuleSetRecord

LOGGER = logging.getLogger(__name__)

_JSON_COLUMNS = (
    "base_rules",
    "market_overrides",
    "emergency_overrides",
    "metrics",
    "risk_bands",
    "regime_snapshot",
    "provenance",
    "model_artifacts",
)


def _to_iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _from_iso(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _loads(value: str | None) -> dict[str, Any]:
    if not value:
        return {}
    data = json.loads(value)
    return data if isinstance(data, dict) else {}


class RuleSetRepository:
    """sqlite-backed store of rule set versions and their feature snapshots.

    At most one row carries ``is_active = 1``; a partial unique index enforces
    it and :meth:`activate` flips the flag inside a single transaction.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.lock = threading.Lock()

    def find_by_tag(self, tag: str) -> RuleSetRecord | None:
        row = self.conn.execute("SELECT * FROM rule_sets WHERE tag = ?", (tag,)).fetchone()
        return self._row_to_record(row) if row is not None else None

    def exists(self, tag: str) -> bool:
        row = self.conn.execute("SELECT 1 FROM rule_sets WHERE tag = ?", (tag,)).fetchone()
        return row is not None

    def active(self) -> RuleSetRecord | None:
        row = self.conn.execute("SELECT * FROM rule_sets WHERE is_active = 1 LIMIT 1").fetchone()
        return self._row_to_record(row) if row is not None else None

    def latest(self) -> RuleSetRecord | None:
        row = self.conn.execute(
            "SELECT * FROM rule_sets ORDER BY period_end DESC, id DESC LIMIT 1"
        ).fetchone()
        return self._row_to_record(row) if row is not None else None

    def feature_snapshots(self, tag: str) -> list[FeatureSnapshotRecord]:
        rows = self.conn.execute(
            """
            SELECT s.* FROM rule_set_feature_snapshots s
            JOIN rule_sets r ON r.id = s.rule_set_id
            WHERE r.tag = ?
            ORDER BY s.id ASC
            """,
            (tag,),
        ).fetchall()
        return [self._row_to_snapshot(row) for row in rows]

    @staticmethod
    def to_ruleset(record: RuleSetRecord) -> RuleSet:
        return RuleSet.from_mapping(
            record.base_rules,
            market_overrides=record.market_overrides,
            emergency_overrides=record.emergency_overrides,
            metadata={
                "tag": record.tag,
                "metrics": record.metrics,
                "feature_hash": record.feature_hash,
                "provenance": record.provenance,
            },
            tag=record.tag,
        )

    def persist_calibration(
        self,
        winner: RuleSetRecord,
        snapshots: Sequence[FeatureSnapshotRecord],
        *,
        baseline: RuleSetRecord | None = None,
    ) -> RuleSetRecord:
        """Write baseline (when missing), winner and snapshot rows in one transaction."""
        with self.lock:
            if self.exists(winner.tag):
                raise DuplicateRuleSetError(f"Rule set tag already exists: {winner.tag}")
            now = utc_now()
            try:
                if baseline is not None and not self.exists(baseline.tag):
                    self._insert(baseline, now)
                    LOGGER.info("Baseline rule set stored | tag=%s", baseline.tag)
                winner_id = self._insert(winner, now)
                for snapshot in snapshots:
                    self.conn.execute(
                        """
                        INSERT INTO rule_set_feature_snapshots (
                            rule_set_id, market, feature_hash, storage_path, metadata, created_at
                        ) VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (
                            winner_id,
                            snapshot.market,
                            snapshot.feature_hash,
                            snapshot.storage_path,
                            json.dumps(snapshot.metadata),
                            _to_iso(now),
                        ),
                    )
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise
        stored = self.find_by_tag(winner.tag)
        if stored is None:
            raise RuleSetNotFoundError(f"Rule set missing after persist: {winner.tag}")
        LOGGER.info("Calibrated rule set stored | tag=%s snapshots=%s", stored.tag, len(snapshots))
        return stored

    def activate(self, tag: str) -> RuleSetRecord:
        with self.lock:
            if not self.exists(tag):
                raise RuleSetNotFoundError(f"Unknown rule set tag: {tag}")
            now = _to_iso(utc_now())
            try:
                self.conn.execute(
                    "UPDATE rule_sets SET is_active = 0, updated_at = ? WHERE is_active = 1 AND tag != ?",
                    (now, tag),
                )
                self.conn.execute(
                    "UPDATE rule_sets SET is_active = 1, updated_at = ? WHERE tag = ?",
                    (now, tag),
                )
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise
        record = self.find_by_tag(tag)
        if record is None:
            raise RuleSetNotFoundError(f"Rule set missing after activation: {tag}")
        LOGGER.info("Rule set activated | tag=%s", tag)
        return record

    def deactivate_all(self) -> None:
        with self.lock:
            self.conn.execute(
                "UPDATE rule_sets SET is_active = 0, updated_at = ? WHERE is_active = 1",
                (_to_iso(utc_now()),),
            )
            self.conn.commit()

    def _insert(self, record: RuleSetRecord, now: datetime) -> int:
        cursor = self.conn.execute(
            """
            INSERT INTO rule_sets (
                tag, period_start, period_end, base_rules, market_overrides, emergency_overrides,
                metrics, risk_bands, regime_snapshot, provenance, model_artifacts,
                feature_hash, mc_seed, is_active, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.tag,
                _to_iso(record.period_start),
                _to_iso(record.period_end),
                json.dumps(record.base_rules),
                json.dumps(record.market_overrides),
                json.dumps(record.emergency_overrides),
                json.dumps(record.metrics),
                json.dumps(record.risk_bands),
                json.dumps(record.regime_snapshot),
                json.dumps(record.provenance),
                json.dumps(record.model_artifacts),
                record.feature_hash,
                record.mc_seed,
                int(record.is_active),
                _to_iso(now),
                _to_iso(now),
            ),
        )
        return int(cursor.lastrowid)

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> RuleSetRecord:
        decoded = {column: _loads(row[column]) for column in _JSON_COLUMNS}
        return RuleSetRecord(
            tag=row["tag"],
            period_start=_from_iso(row["period_start"]),
            period_end=_from_iso(row["period_end"]),
            feature_hash=row["feature_hash"],
            mc_seed=row["mc_seed"],
            is_active=bool(row["is_active"]),
            id=int(row["id"]),
            created_at=_from_iso(row["created_at"]),
            updated_at=_from_iso(row["updated_at"]),
            **decoded,
        )

    @staticmethod
    def _row_to_snapshot(row: sqlite3.Row) -> FeatureSnapshotRecord:
        return FeatureSnapshotRecord(
            market=row["market"],
            feature_hash=row["feature_hash"],
            storage_path=row["storage_path"],
            metadata=_loads(row["metadata"]),
            rule_set_id=int(row["rule_set_id"]),
            id=int(row["id"]),
            created_at=_from_iso(row["created_at"]),
        )

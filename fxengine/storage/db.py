from __future__ import annotations

import sqlite3
from pathlib import Path


def get_connection(db_path: str | Path) -> sqlite3.Connection:
    path = Path(db_path)
    if str(path) != ":memory:":
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, check_same_thread=False, timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA busy_timeout=30000;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


def init_db(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS rule_sets (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            tag TEXT NOT NULL UNIQUE,
            period_start TEXT NOT NULL,
            period_end TEXT NOT NULL,
            base_rules TEXT NOT NULL,
            market_overrides TEXT NOT NULL DEFAULT '{}',
            emergency_overrides TEXT NOT NULL DEFAULT '{}',
            metrics TEXT NOT NULL DEFAULT '{}',
            risk_bands TEXT NOT NULL DEFAULT '{}',
            regime_snapshot TEXT NOT NULL DEFAULT '{}',
            provenance TEXT NOT NULL DEFAULT '{}',
            model_artifacts TEXT NOT NULL DEFAULT '{}',
            feature_hash TEXT,
            mc_seed INTEGER,
            is_active INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS rule_set_feature_snapshots (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            rule_set_id INTEGER NOT NULL REFERENCES rule_sets(id) ON DELETE CASCADE,
            market TEXT NOT NULL,
            feature_hash TEXT NOT NULL,
            storage_path TEXT NOT NULL,
            metadata TEXT NOT NULL DEFAULT '{}',
            created_at TEXT NOT NULL
        );

        CREATE UNIQUE INDEX IF NOT EXISTS idx_rule_sets_single_active
            ON rule_sets(is_active) WHERE is_active = 1;
        CREATE INDEX IF NOT EXISTS idx_rule_sets_period_end ON rule_sets(period_end);
        CREATE INDEX IF NOT EXISTS idx_feature_snapshots_rule_set
            ON rule_set_feature_snapshots(rule_set_id);
        """
    )
    conn.commit()

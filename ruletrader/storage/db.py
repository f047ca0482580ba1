from __future__ import annotations

import sqlite3
from pathlib import Path


def get_connection(db_path: str | Path) -> sqlite3.Connection:
    path = Path(db_path)
    conn = sqlite3.connect(path, check_same_thread=False, timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA busy_timeout=30000;")
    return conn


def _table_columns(conn: sqlite3.Connection, table_name: str) -> set[str]:
    rows = conn.execute(f"PRAGMA table_info({table_name})").fetchall()
    return {str(row[1]) for row in rows}


def _ensure_column(
    conn: sqlite3.Connection,
    table_name: str,
    column_name: str,
    column_sql: str,
) -> None:
    if column_name in _table_columns(conn, table_name):
        return
    conn.execute(f"ALTER TABLE {table_name} ADD COLUMN {column_name} {column_sql}")


def init_db(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS rules (
            rule_id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            symbol TEXT NOT NULL,
            exchange TEXT NOT NULL DEFAULT '',
            frequency TEXT NOT NULL,
            enabled INTEGER NOT NULL DEFAULT 1,
            number_of_shares REAL NOT NULL,
            strategy_entry TEXT,
            strategy_exit TEXT,
            risk_percentage REAL NOT NULL,
            profit_percentage REAL,
            trailing_enabled INTEGER NOT NULL DEFAULT 0,
            trailing_target_percentage REAL NOT NULL DEFAULT 0,
            trailing_risk_after_target REAL NOT NULL DEFAULT 0,
            hold_overnight INTEGER NOT NULL DEFAULT 0,
            disable_after_sold INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS trades (
            trade_id TEXT PRIMARY KEY,
            rule_id TEXT NOT NULL,
            buy_order_id TEXT,
            sell_order_id TEXT,
            buy_price REAL,
            buy_date TEXT,
            sell_price REAL,
            sell_date TEXT,
            bought_shares REAL NOT NULL DEFAULT 0,
            sold_shares REAL NOT NULL DEFAULT 0,
            risk_value REAL NOT NULL DEFAULT 0,
            profit_value REAL,
            target_reached INTEGER NOT NULL DEFAULT 0,
            completed INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_rules_frequency_enabled ON rules(frequency, enabled);
        CREATE INDEX IF NOT EXISTS idx_trades_completed ON trades(completed);
        """
    )
    # Runtime migration support for existing databases.
    _ensure_column(conn, "rules", "disable_after_sold", "INTEGER NOT NULL DEFAULT 0")
    _ensure_column(conn, "trades", "target_reached", "INTEGER NOT NULL DEFAULT 0")
    # One live trade per rule.
    conn.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_trades_open_rule ON trades(rule_id) WHERE completed = 0"
    )
    conn.commit()

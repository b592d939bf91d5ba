from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
import sqlite3
from typing import Any

from bond_keeper.models import ActionOutcome, ActionResult, BalanceCheck, Pool


class Storage:
    def __init__(self, database_path: str) -> None:
        self.path = Path(database_path)
        if str(database_path) != ":memory:":
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(database_path))
        self.conn.row_factory = sqlite3.Row
        self._create_schema()

    def _create_schema(self) -> None:
        cursor = self.conn.cursor()
        cursor.executescript(
            """
            CREATE TABLE IF NOT EXISTS actions (
              ts TEXT NOT NULL,
              pool_id TEXT NOT NULL,
              pool_name TEXT NOT NULL,
              action_target TEXT NOT NULL,
              epoch_key TEXT NOT NULL,
              outcome TEXT NOT NULL,
              reason TEXT NOT NULL,
              record_id INTEGER,
              total_supply TEXT,
              treasury_balance TEXT,
              tx_hash TEXT NOT NULL,
              block_number INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_actions_pool_ts ON actions (pool_id, ts);

            CREATE TABLE IF NOT EXISTS balance_checks (
              ts TEXT NOT NULL,
              wallet TEXT NOT NULL,
              balance_wei TEXT NOT NULL,
              threshold_wei TEXT NOT NULL
            );
            """
        )
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    def record_action(self, pool: Pool, epoch_key: str, result: ActionResult) -> None:
        # uint256 values overflow sqlite INTEGER, so amounts are stored as text.
        self.conn.execute(
            """
            INSERT INTO actions (
              ts, pool_id, pool_name, action_target, epoch_key, outcome, reason,
              record_id, total_supply, treasury_balance, tx_hash, block_number
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                datetime.now(tz=timezone.utc).isoformat(),
                pool.pool_id,
                pool.label,
                pool.action_target,
                epoch_key,
                result.outcome.value,
                result.reason,
                result.record_id,
                None if result.new_total_supply is None else str(result.new_total_supply),
                None if result.treasury_balance is None else str(result.treasury_balance),
                result.transaction_hash,
                int(result.block_number),
            ),
        )
        self.conn.commit()

    def record_balance_check(self, wallet: str, check: BalanceCheck) -> None:
        self.conn.execute(
            "INSERT INTO balance_checks (ts, wallet, balance_wei, threshold_wei) VALUES (?, ?, ?, ?)",
            (
                datetime.now(tz=timezone.utc).isoformat(),
                wallet,
                str(check.balance_wei),
                str(check.threshold_wei),
            ),
        )
        self.conn.commit()

    def latest_completed_epochs(self) -> dict[str, str]:
        rows = self.conn.execute(
            """
            SELECT pool_id, epoch_key, MAX(ts) AS ts
            FROM actions
            WHERE outcome = ?
            GROUP BY pool_id
            """,
            (ActionOutcome.SUCCEEDED.value,),
        ).fetchall()
        return {str(row["pool_id"]): str(row["epoch_key"]) for row in rows}

    def report(self, window_hours: int) -> dict[str, Any]:
        cutoff = datetime.now(tz=timezone.utc) - timedelta(hours=window_hours)
        rows = self.conn.execute(
            """
            SELECT ts, pool_id, pool_name, outcome, reason, tx_hash
            FROM actions
            WHERE ts >= ?
            ORDER BY ts ASC
            """,
            (cutoff.isoformat(),),
        ).fetchall()

        per_pool: dict[str, dict[str, Any]] = {}
        for row in rows:
            pool_id = str(row["pool_id"])
            metric = per_pool.setdefault(
                pool_id,
                {
                    "pool_name": str(row["pool_name"]),
                    "attempts": 0,
                    "outcomes": {},
                    "last_success_ts": None,
                    "last_success_tx": None,
                    "last_error": None,
                },
            )
            outcome = str(row["outcome"])
            metric["attempts"] += 1
            metric["outcomes"][outcome] = metric["outcomes"].get(outcome, 0) + 1
            if outcome == ActionOutcome.SUCCEEDED.value:
                metric["last_success_ts"] = str(row["ts"])
                metric["last_success_tx"] = str(row["tx_hash"])
            elif outcome in (ActionOutcome.FATAL_ERROR.value, ActionOutcome.TRANSIENT_ERROR.value):
                metric["last_error"] = str(row["reason"])

        low_balance = self.conn.execute(
            "SELECT COUNT(*) AS n FROM balance_checks WHERE ts >= ?",
            (cutoff.isoformat(),),
        ).fetchone()

        return {
            "window_hours": window_hours,
            "attempts": len(rows),
            "pools": per_pool,
            "low_balance_alerts": int(low_balance["n"] or 0),
        }

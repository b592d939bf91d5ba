from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
import sys
from typing import Any

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from bond_keeper.clients_ledger import LedgerClient  # noqa: E402
from bond_keeper.config import load_config  # noqa: E402
from bond_keeper.errors import LedgerError  # noqa: E402
from bond_keeper.models import (  # noqa: E402
    ActionResult,
    Pool,
    ReadinessState,
    SnapshotRecord,
    TxConfirmation,
)
from bond_keeper.notify import Notifier  # noqa: E402

WALLET = "0x" + "ab" * 20
SERIES_A = "0x" + "11" * 20
SERIES_B = "0x" + "22" * 20
SERIES_C = "0x" + "33" * 20
TOKEN = "0x" + "44" * 20
TEST_KEY = "0x" + "4c" * 32


def test_config(**kwargs):
    cfg = load_config()
    defaults = {
        "keeper_private_key": TEST_KEY,
        "bond_series_address": SERIES_A,
        "bond_factory_address": "",
        "pool_ids": (),
        "discord_webhook_url": "",
        "inter_pool_delay_seconds": 0.0,
        "registry_refresh_seconds": 600.0,
        "min_balance_native": 1.0,
        "restore_state": False,
    }
    defaults.update(kwargs)
    return replace(cfg, **defaults)


test_config.__test__ = False  # helper, not a test


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def build_pool(
    pool_id: str = "1",
    target: str = SERIES_A,
    maturity: datetime | None = None,
    is_active: bool = True,
    name: str | None = None,
) -> Pool:
    return Pool(
        pool_id=pool_id,
        name=name if name is not None else f"Pool {pool_id}",
        symbol=f"arcUSDC-{pool_id}",
        action_target=target,
        maturity_timestamp=maturity,
        is_active=is_active,
    )


def ready_state(now: datetime, counter: int = 3, age_seconds: float = 0.0) -> ReadinessState:
    return ReadinessState(
        is_ready=True,
        seconds_until_ready=0,
        action_counter=counter,
        is_expired=False,
        next_ready_at=now - timedelta(seconds=age_seconds),
    )


def not_ready_state(now: datetime, seconds: int = 3600, counter: int = 3) -> ReadinessState:
    return ReadinessState(
        is_ready=False,
        seconds_until_ready=seconds,
        action_counter=counter,
        is_expired=False,
        next_ready_at=now + timedelta(seconds=seconds),
    )


def expired_state(counter: int = 10) -> ReadinessState:
    return ReadinessState(is_ready=True, seconds_until_ready=0, action_counter=counter, is_expired=True)


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeMonotonic:
    def __init__(self, start: float = 1000.0) -> None:
        self.value = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.value

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.value += seconds


class FakeLedger(LedgerClient):
    """Scripted ledger: every read and write is answered from plain dicts."""

    def __init__(self, balance_wei: int = 5 * 10**18) -> None:
        self.balance_wei = balance_wei
        self.balance_error: LedgerError | None = None
        self.readiness: dict[str, ReadinessState] = {}
        self.readiness_errors: dict[str, Exception] = {}
        self.submit_errors: dict[str, LedgerError] = {}
        self.confirm_errors: dict[str, LedgerError] = {}
        self.reverted: set[str] = set()
        self.record_errors: dict[str, LedgerError] = {}
        self.records: dict[str, SnapshotRecord] = {}

        self.pool_count_value = 0
        self.pool_count_error: LedgerError | None = None
        self.pool_records: dict[int, Any] = {}
        self.pool_errors: dict[int, LedgerError] = {}
        self.active_ids: list[int] = []
        self.active_error: LedgerError | None = None

        self.submitted: list[str] = []
        self.readiness_calls: list[str] = []
        self.balance_calls = 0
        self.get_pool_calls: list[int] = []

    @property
    def wallet_address(self) -> str:
        return WALLET

    def read_readiness(self, pool: Pool, now: datetime) -> ReadinessState:
        self.readiness_calls.append(pool.pool_id)
        error = self.readiness_errors.get(pool.pool_id)
        if error is not None:
            raise error
        state = self.readiness.get(pool.pool_id)
        if state is None:
            return ready_state(now)
        return state

    def submit_action(self, pool: Pool) -> str:
        error = self.submit_errors.get(pool.pool_id)
        if error is not None:
            raise error
        self.submitted.append(pool.pool_id)
        return f"0x{len(self.submitted):064x}"

    def await_confirmation(self, tx_hash: str) -> TxConfirmation:
        pool_id = self.submitted[-1]
        error = self.confirm_errors.get(pool_id)
        if error is not None:
            raise error
        return TxConfirmation(confirmed=pool_id not in self.reverted, tx_hash=tx_hash, block_number=100)

    def read_latest_record(self, pool: Pool) -> SnapshotRecord:
        error = self.record_errors.get(pool.pool_id)
        if error is not None:
            raise error
        return self.records.get(
            pool.pool_id,
            SnapshotRecord(record_id=4, timestamp=None, total_supply=1_000 * 10**18, treasury_balance=250 * 10**6),
        )

    def read_balance(self, address: str) -> int:
        self.balance_calls += 1
        if self.balance_error is not None:
            raise self.balance_error
        return self.balance_wei

    def pool_count(self) -> int:
        if self.pool_count_error is not None:
            raise self.pool_count_error
        return self.pool_count_value

    def get_pool(self, pool_id: int) -> Any:
        self.get_pool_calls.append(pool_id)
        error = self.pool_errors.get(pool_id)
        if error is not None:
            raise error
        return self.pool_records[pool_id]

    def get_active_pool_ids(self) -> list[int]:
        if self.active_error is not None:
            raise self.active_error
        return list(self.active_ids)


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.events: list[tuple[Any, ...]] = []

    def kinds(self) -> list[str]:
        return [event[0] for event in self.events]

    def action_succeeded(self, pool: Pool, result: ActionResult) -> None:
        self.events.append(("succeeded", pool.pool_id, result.transaction_hash))

    def action_failed(self, pool: Pool, reason: str) -> None:
        self.events.append(("failed", pool.pool_id, reason))

    def low_balance(self, balance_wei: int) -> None:
        self.events.append(("low_balance", balance_wei))

    def too_soon(self, hours_remaining: float, pool: Pool | None = None) -> None:
        self.events.append(("too_soon", pool.pool_id if pool else None, round(hours_remaining, 2)))


def factory_record(
    pool_id: int,
    series: str,
    maturity: datetime,
    is_active: bool = True,
    name: str = "",
    symbol: str = "",
) -> tuple[Any, ...]:
    return (pool_id, TOKEN, series, int(maturity.timestamp()), 1_700_000_000, is_active, name, symbol)

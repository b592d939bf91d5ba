from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any


ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def from_unix(value: Any) -> datetime | None:
    seconds = parse_int(value, 0)
    if seconds <= 0:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def parse_int(raw: Any, default: int = 0) -> int:
    if raw is None:
        return default
    if isinstance(raw, bool):
        return int(raw)
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str) and raw.strip() == "":
        return default
    text = str(raw).strip()
    try:
        if text.lower().startswith("0x"):
            return int(text, 16)
        return int(text)
    except (TypeError, ValueError):
        return default


def to_base_units(amount: Any, decimals: int) -> int:
    return int(Decimal(str(amount)) * (Decimal(10) ** int(decimals)))


def format_units(value: int | None, decimals: int, places: int = 4) -> str:
    if value is None:
        return "n/a"
    scaled = Decimal(int(value)) / (Decimal(10) ** int(decimals))
    return f"{scaled:,.{places}f}"


def parse_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "y", "t", "on"}
    return default


def is_zero_address(value: Any) -> bool:
    if not isinstance(value, str):
        return True
    text = value.strip().lower()
    if not text.startswith("0x") or len(text) != 42:
        return True
    return text == ZERO_ADDRESS


@dataclass(frozen=True)
class Pool:
    pool_id: str
    name: str
    symbol: str
    action_target: str
    maturity_timestamp: datetime | None = None
    is_active: bool = True
    bond_token: str = ""

    @property
    def label(self) -> str:
        return self.name or f"Pool {self.pool_id}"

    def is_matured(self, now: datetime) -> bool:
        if self.maturity_timestamp is None:
            return False
        return now >= self.maturity_timestamp


@dataclass(frozen=True)
class ReadinessState:
    is_ready: bool
    seconds_until_ready: int
    action_counter: int
    is_expired: bool
    next_ready_at: datetime | None = None

    def ready_age_seconds(self, now: datetime) -> float:
        if not self.is_ready or self.next_ready_at is None:
            return 0.0
        return max(0.0, (now - self.next_ready_at).total_seconds())


@dataclass(frozen=True)
class EligibilityDecision:
    eligible: bool
    epoch_key: str
    reason: str
    next_window: datetime | None = None


@dataclass(frozen=True)
class SnapshotRecord:
    record_id: int
    timestamp: datetime | None
    total_supply: int
    treasury_balance: int


@dataclass(frozen=True)
class TxConfirmation:
    confirmed: bool
    tx_hash: str
    block_number: int = 0
    gas_used: int = 0


class ActionOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    NOT_YET_ELIGIBLE = "not_yet_eligible"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    POOL_EXPIRED = "pool_expired"
    TRANSIENT_ERROR = "transient_error"
    FATAL_ERROR = "fatal_error"


@dataclass
class ActionResult:
    outcome: ActionOutcome
    pool_id: str
    reason: str = ""
    record_id: int | None = None
    new_total_supply: int | None = None
    treasury_balance: int | None = None
    transaction_hash: str = ""
    block_number: int = 0
    seconds_until_ready: int = 0

    @property
    def succeeded(self) -> bool:
        return self.outcome == ActionOutcome.SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "pool_id": self.pool_id,
            "reason": self.reason,
            "record_id": self.record_id,
            "new_total_supply": self.new_total_supply,
            "treasury_balance": self.treasury_balance,
            "transaction_hash": self.transaction_hash,
            "block_number": self.block_number,
            "seconds_until_ready": self.seconds_until_ready,
        }


@dataclass(frozen=True)
class BalanceCheck:
    balance_wei: int
    threshold_wei: int

    @property
    def is_below_threshold(self) -> bool:
        return self.balance_wei < self.threshold_wei

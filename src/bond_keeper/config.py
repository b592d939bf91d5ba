from __future__ import annotations

from dataclasses import dataclass
import os


POLICY_FIXED_GRID = "fixed-grid"
POLICY_UTC_WINDOW = "utc-window"
POLICIES = (POLICY_FIXED_GRID, POLICY_UTC_WINDOW)

DEFAULT_TARGET_MINUTES = tuple(range(0, 60, 5))


@dataclass(frozen=True)
class KeeperConfig:
    rpc_url: str
    chain_id: int
    keeper_private_key: str
    bond_series_address: str
    bond_factory_address: str
    pool_ids: tuple[str, ...]
    static_pool_name: str
    static_pool_symbol: str

    policy: str
    target_minutes: tuple[int, ...]
    window_slop_seconds: int
    utc_window_minutes: int
    grace_hours: float

    tick_seconds: float
    registry_refresh_seconds: float
    inter_pool_delay_seconds: float
    api_timeout_seconds: float
    confirm_timeout_seconds: float

    min_balance_native: float
    native_decimals: int
    supply_decimals: int
    treasury_decimals: int

    discord_webhook_url: str
    explorer_tx_url: str
    database_path: str
    restore_state: bool

    log_level: str

    @property
    def use_factory(self) -> bool:
        return bool(self.bond_factory_address)


def parse_pool_ids(raw: str) -> tuple[str, ...]:
    out: list[str] = []
    for part in raw.split(","):
        text = part.strip()
        if text and text not in out:
            out.append(text)
    return tuple(out)


def _parse_minutes(raw: str) -> tuple[int, ...]:
    text = raw.strip()
    if not text:
        return DEFAULT_TARGET_MINUTES
    minutes: set[int] = set()
    for part in text.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            minutes.add(int(part))
        except ValueError:
            # Left empty so validate_config rejects it.
            return ()
    return tuple(sorted(minutes))


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def default_tick_seconds(policy: str) -> float:
    # Grid marks need second resolution; the midnight window only minute resolution.
    return 1.0 if policy == POLICY_FIXED_GRID else 60.0


def load_config() -> KeeperConfig:
    policy = os.getenv("KEEPER_POLICY", POLICY_UTC_WINDOW).strip().lower() or POLICY_UTC_WINDOW
    raw_restore = os.getenv("KEEPER_RESTORE_STATE", "").strip().lower()
    return KeeperConfig(
        rpc_url=os.getenv("ARC_RPC_URL", "https://rpc.testnet.arc.network"),
        chain_id=_env_int("CHAIN_ID", 5042002),
        keeper_private_key=os.getenv("KEEPER_PRIVATE_KEY", "").strip(),
        bond_series_address=os.getenv("BOND_SERIES_ADDRESS", "").strip(),
        bond_factory_address=os.getenv("BOND_FACTORY_ADDRESS", "").strip(),
        pool_ids=parse_pool_ids(os.getenv("POOL_IDS", "")),
        static_pool_name="ArcBond USDC",
        static_pool_symbol="arcUSDC",
        policy=policy,
        target_minutes=_parse_minutes(os.getenv("KEEPER_TARGET_MINUTES", "")),
        window_slop_seconds=_env_int("KEEPER_WINDOW_SLOP_SECONDS", 5),
        utc_window_minutes=_env_int("KEEPER_UTC_WINDOW_MINUTES", 30),
        grace_hours=_env_float("KEEPER_GRACE_HOURS", 2.0),
        tick_seconds=_env_float("KEEPER_TICK_SECONDS", default_tick_seconds(policy)),
        registry_refresh_seconds=_env_float("KEEPER_REGISTRY_REFRESH_SECONDS", 600.0),
        inter_pool_delay_seconds=_env_float("KEEPER_INTER_POOL_DELAY_SECONDS", 1.0),
        api_timeout_seconds=10.0,
        confirm_timeout_seconds=_env_float("KEEPER_CONFIRM_TIMEOUT_SECONDS", 120.0),
        min_balance_native=_env_float("KEEPER_MIN_BALANCE", 1.0),
        native_decimals=18,
        supply_decimals=18,
        treasury_decimals=6,
        discord_webhook_url=os.getenv("DISCORD_WEBHOOK_URL", "").strip(),
        explorer_tx_url=os.getenv("EXPLORER_TX_URL", "https://testnet.arcscan.app/tx/"),
        database_path=os.getenv("KEEPER_DB_PATH", "data/keeper.db"),
        restore_state=raw_restore in {"1", "true", "yes", "y", "on"},
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )


def validate_config(config: KeeperConfig) -> None:
    if not config.keeper_private_key:
        raise ValueError("KEEPER_PRIVATE_KEY is required")
    if not config.use_factory and not config.bond_series_address:
        raise ValueError("Either BOND_FACTORY_ADDRESS or BOND_SERIES_ADDRESS is required")
    if config.policy not in POLICIES:
        raise ValueError(f"unsupported KEEPER_POLICY={config.policy!r}")
    if not config.target_minutes:
        raise ValueError("KEEPER_TARGET_MINUTES must name at least one minute")
    if any(minute < 0 or minute > 59 for minute in config.target_minutes):
        raise ValueError("KEEPER_TARGET_MINUTES must be within 0..59")
    if config.tick_seconds <= 0:
        raise ValueError("KEEPER_TICK_SECONDS must be > 0")

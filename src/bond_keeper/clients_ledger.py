from __future__ import annotations

from datetime import datetime
import logging
from typing import Any, Callable

from eth_account import Account
from web3 import Web3
from web3.middleware import ExtraDataToPOAMiddleware

from bond_keeper.config import KeeperConfig
from bond_keeper.errors import ConfigError, LedgerError, classify_ledger_error
from bond_keeper.models import (
    Pool,
    ReadinessState,
    SnapshotRecord,
    TxConfirmation,
    from_unix,
    parse_int,
)

LOGGER = logging.getLogger("bond_keeper")


def _view(name: str, outputs: list[tuple[str, str]], inputs: list[tuple[str, str]] | None = None) -> dict[str, Any]:
    return {
        "inputs": [{"internalType": kind, "name": arg, "type": kind} for arg, kind in (inputs or [])],
        "name": name,
        "outputs": [{"internalType": kind, "name": out, "type": kind} for out, kind in outputs],
        "stateMutability": "view",
        "type": "function",
    }


_POOL_OUTPUTS = [
    ("poolId", "uint256"),
    ("bondToken", "address"),
    ("bondSeries", "address"),
    ("maturityDate", "uint256"),
    ("createdAt", "uint256"),
    ("isActive", "bool"),
    ("name", "string"),
    ("symbol", "string"),
]

BOND_SERIES_ABI: list[dict[str, Any]] = [
    {
        "inputs": [],
        "name": "recordSnapshot",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    _view("nextRecordTime", [("", "uint256")]),
    _view("recordCount", [("", "uint256")]),
    _view(
        "snapshots",
        [
            ("recordId", "uint256"),
            ("timestamp", "uint256"),
            ("totalSupply", "uint256"),
            ("treasuryBalance", "uint256"),
        ],
        inputs=[("", "uint256")],
    ),
    _view(
        "getSeriesInfo",
        [
            ("maturityDate", "uint256"),
            ("totalDeposited", "uint256"),
            ("totalSupply", "uint256"),
            ("recordCount", "uint256"),
            ("cumulativeCouponIndex", "uint256"),
            ("emergencyMode", "bool"),
        ],
    ),
]

BOND_FACTORY_ABI: list[dict[str, Any]] = [
    _view("poolCount", [("", "uint256")]),
    _view("pools", _POOL_OUTPUTS, inputs=[("", "uint256")]),
    _view("getPool", _POOL_OUTPUTS, inputs=[("poolId", "uint256")]),
    _view("getActivePools", [("", "uint256[]")]),
]


class LedgerClient:
    """Read/write surface of the chain consumed by the keeper.

    Implementations raise :class:`bond_keeper.errors.LedgerError` subclasses
    only; raw provider exceptions never cross this boundary.
    """

    @property
    def wallet_address(self) -> str:
        raise NotImplementedError

    def read_readiness(self, pool: Pool, now: datetime) -> ReadinessState:
        raise NotImplementedError

    def submit_action(self, pool: Pool) -> str:
        raise NotImplementedError

    def await_confirmation(self, tx_hash: str) -> TxConfirmation:
        raise NotImplementedError

    def read_latest_record(self, pool: Pool) -> SnapshotRecord:
        raise NotImplementedError

    def read_balance(self, address: str) -> int:
        raise NotImplementedError

    def pool_count(self) -> int:
        raise NotImplementedError

    def get_pool(self, pool_id: int) -> Any:
        raise NotImplementedError

    def get_active_pool_ids(self) -> list[int]:
        raise NotImplementedError


def readiness_from_chain(
    *,
    next_record_time: int,
    record_count: int,
    maturity_date: int,
    now: datetime,
) -> ReadinessState:
    now_ts = int(now.timestamp())
    seconds_left = int(next_record_time) - now_ts
    maturity_ts = int(maturity_date)
    return ReadinessState(
        is_ready=seconds_left <= 0,
        seconds_until_ready=max(0, seconds_left),
        action_counter=int(record_count),
        is_expired=maturity_ts > 0 and now_ts >= maturity_ts,
        next_ready_at=from_unix(next_record_time),
    )


class Web3LedgerClient(LedgerClient):
    def __init__(self, config: KeeperConfig) -> None:
        self.config = config
        self._w3: Web3 | None = None
        self._account = None

    @staticmethod
    def _as_hex(value: Any) -> str:
        if isinstance(value, (bytes, bytearray)):
            return "0x" + bytes(value).hex()
        text = str(value.hex()) if hasattr(value, "hex") else str(value)
        return text if text.startswith("0x") else "0x" + text

    @staticmethod
    def _receipt_status(receipt: Any) -> int:
        if receipt is None:
            return 0
        raw = receipt.get("status") if isinstance(receipt, dict) else getattr(receipt, "status", None)
        if raw is None:
            return 0
        if isinstance(raw, str):
            return int(raw, 16) if raw.startswith("0x") else int(raw)
        return int(raw)

    @staticmethod
    def _receipt_field(receipt: Any, key: str) -> int:
        value = receipt.get(key) if isinstance(receipt, dict) else getattr(receipt, key, None)
        return parse_int(value, 0)

    def _web3(self) -> Web3:
        if self._w3 is not None:
            return self._w3
        provider = Web3.HTTPProvider(
            self.config.rpc_url,
            request_kwargs={"timeout": max(5.0, self.config.api_timeout_seconds)},
        )
        w3 = Web3(provider)
        w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        self._w3 = w3
        return w3

    def _signer(self):
        if self._account is not None:
            return self._account
        if not self.config.keeper_private_key:
            raise ConfigError("KEEPER_PRIVATE_KEY missing")
        self._account = Account.from_key(self.config.keeper_private_key)
        return self._account

    def _series(self, address: str):
        return self._web3().eth.contract(address=Web3.to_checksum_address(address), abi=BOND_SERIES_ABI)

    def _factory(self):
        address = self.config.bond_factory_address
        if not address:
            raise ConfigError("BOND_FACTORY_ADDRESS is not configured")
        return self._web3().eth.contract(address=Web3.to_checksum_address(address), abi=BOND_FACTORY_ABI)

    @staticmethod
    def _guarded(fn: Callable[[], Any]) -> Any:
        try:
            return fn()
        except (LedgerError, ConfigError):
            raise
        except Exception as exc:
            raise classify_ledger_error(exc) from exc

    @property
    def wallet_address(self) -> str:
        return str(self._signer().address)

    def read_readiness(self, pool: Pool, now: datetime) -> ReadinessState:
        contract = self._series(pool.action_target)

        def _read() -> tuple[int, int, int]:
            next_record_time = contract.functions.nextRecordTime().call()
            record_count = contract.functions.recordCount().call()
            series_info = contract.functions.getSeriesInfo().call()
            return int(next_record_time), int(record_count), int(series_info[0])

        next_record_time, record_count, maturity_date = self._guarded(_read)
        return readiness_from_chain(
            next_record_time=next_record_time,
            record_count=record_count,
            maturity_date=maturity_date,
            now=now,
        )

    def submit_action(self, pool: Pool) -> str:
        signer = self._signer()
        w3 = self._web3()
        fn = self._series(pool.action_target).functions.recordSnapshot()

        def _send() -> str:
            nonce = int(w3.eth.get_transaction_count(signer.address, "pending"))
            gas_price = max(1, int(w3.eth.gas_price))
            # build_transaction estimates gas, so contract reverts surface here
            # before anything is broadcast.
            tx = fn.build_transaction(
                {
                    "from": signer.address,
                    "nonce": nonce,
                    "chainId": int(self.config.chain_id),
                    "gasPrice": gas_price,
                }
            )
            gas_limit = int(tx.get("gas", 0) or 0)
            if gas_limit <= 0:
                gas_limit = int(w3.eth.estimate_gas(tx))
            tx["gas"] = max(21_000, int(gas_limit * 1.20))

            signed = Account.sign_transaction(tx, self.config.keeper_private_key)
            raw_tx = getattr(signed, "raw_transaction", None) or getattr(signed, "rawTransaction", None)
            if raw_tx is None:
                raise RuntimeError("unable to access signed raw transaction")
            return self._as_hex(w3.eth.send_raw_transaction(raw_tx))

        tx_hash = self._guarded(_send)
        LOGGER.info("tx_sent pool=%s target=%s tx=%s", pool.pool_id, pool.action_target, tx_hash)
        return tx_hash

    def await_confirmation(self, tx_hash: str) -> TxConfirmation:
        w3 = self._web3()
        receipt = self._guarded(
            lambda: w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.config.confirm_timeout_seconds
            )
        )
        return TxConfirmation(
            confirmed=self._receipt_status(receipt) == 1,
            tx_hash=tx_hash,
            block_number=self._receipt_field(receipt, "blockNumber"),
            gas_used=self._receipt_field(receipt, "gasUsed"),
        )

    def read_latest_record(self, pool: Pool) -> SnapshotRecord:
        contract = self._series(pool.action_target)

        def _read() -> Any:
            count = int(contract.functions.recordCount().call())
            return contract.functions.snapshots(count).call()

        raw = self._guarded(_read)
        return SnapshotRecord(
            record_id=parse_int(raw[0]),
            timestamp=from_unix(raw[1]),
            total_supply=parse_int(raw[2]),
            treasury_balance=parse_int(raw[3]),
        )

    def read_balance(self, address: str) -> int:
        w3 = self._web3()
        return int(self._guarded(lambda: w3.eth.get_balance(Web3.to_checksum_address(address))))

    def pool_count(self) -> int:
        factory = self._factory()
        return int(self._guarded(lambda: factory.functions.poolCount().call()))

    def get_pool(self, pool_id: int) -> Any:
        factory = self._factory()
        try:
            return self._guarded(lambda: factory.functions.pools(int(pool_id)).call())
        except LedgerError as exc:
            LOGGER.debug("factory_pools_failed pool=%s error=%s; trying getPool", pool_id, exc)
        return self._guarded(lambda: factory.functions.getPool(int(pool_id)).call())

    def get_active_pool_ids(self) -> list[int]:
        factory = self._factory()
        raw = self._guarded(lambda: factory.functions.getActivePools().call())
        return [parse_int(item) for item in raw]

from __future__ import annotations

from datetime import datetime
import logging
from typing import Any, Iterable, Mapping, Sequence

from web3 import Web3

from bond_keeper.clients_ledger import LedgerClient
from bond_keeper.config import KeeperConfig
from bond_keeper.errors import LedgerError, RegistryUnavailable
from bond_keeper.models import Pool, from_unix, is_zero_address, parse_bool, parse_int

LOGGER = logging.getLogger("bond_keeper")

_POOL_FIELDS = ("poolId", "bondToken", "bondSeries", "maturityDate", "createdAt", "isActive", "name", "symbol")


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def decode_pool_record(raw: Any, fallback_id: int | str) -> Pool:
    """Decode a factory pool record (tuple-shaped or mapping-shaped) into a Pool.

    Raises ValueError for records that cannot be scheduled, most importantly
    ones whose action target is missing or the zero address.
    """
    if isinstance(raw, Mapping):
        fields = {name: raw.get(name) for name in _POOL_FIELDS}
    elif isinstance(raw, Sequence) and not isinstance(raw, (str, bytes)) and len(raw) >= len(_POOL_FIELDS):
        fields = dict(zip(_POOL_FIELDS, raw))
    else:
        raise ValueError(f"pool {fallback_id}: unrecognised record shape {type(raw).__name__}")

    target = fields.get("bondSeries")
    if is_zero_address(target):
        raise ValueError(f"pool {fallback_id}: invalid action target {target!r}")

    pool_id = parse_int(fields.get("poolId"), 0) or parse_int(fallback_id, 0)
    pool_key = str(pool_id) if pool_id > 0 else _text(fallback_id)
    bond_token = fields.get("bondToken")
    return Pool(
        pool_id=pool_key,
        name=_text(fields.get("name")) or f"Pool {pool_key}",
        symbol=_text(fields.get("symbol")) or f"arcUSDC-{pool_key}",
        action_target=Web3.to_checksum_address(str(target)),
        maturity_timestamp=from_unix(fields.get("maturityDate")),
        is_active=parse_bool(fields.get("isActive"), default=True),
        bond_token="" if is_zero_address(bond_token) else str(bond_token),
    )


def merge_pools(*groups: Iterable[Pool]) -> list[Pool]:
    merged: list[Pool] = []
    seen: set[str] = set()
    for group in groups:
        for pool in group:
            if pool.pool_id in seen:
                continue
            seen.add(pool.pool_id)
            merged.append(pool)
    return merged


class PoolSource:
    def discover(self, now: datetime) -> list[Pool]:
        raise NotImplementedError


class StaticPoolSource(PoolSource):
    def __init__(self, pool: Pool) -> None:
        self.pool = pool

    @classmethod
    def from_config(cls, config: KeeperConfig) -> "StaticPoolSource":
        address = config.bond_series_address
        if is_zero_address(address):
            raise RegistryUnavailable(f"BOND_SERIES_ADDRESS is not a usable address: {address!r}")
        return cls(
            Pool(
                pool_id="0",
                name=config.static_pool_name,
                symbol=config.static_pool_symbol,
                action_target=Web3.to_checksum_address(address),
            )
        )

    def discover(self, now: datetime) -> list[Pool]:
        return [self.pool]


class FactoryPoolSource(PoolSource):
    def __init__(self, ledger: LedgerClient, allow_list: Sequence[str] = ()) -> None:
        self.ledger = ledger
        self.allow_list = tuple(allow_list)

    def _allowed_ids(self, pool_count: int) -> list[int]:
        ids: list[int] = []
        for raw in self.allow_list:
            pool_id = parse_int(raw, 0)
            if pool_id < 1 or pool_id > pool_count:
                LOGGER.warning("registry_skip pool=%s reason=out_of_range pool_count=%s", raw, pool_count)
                continue
            if pool_id not in ids:
                ids.append(pool_id)
        return ids

    def _fetch(self, pool_id: int) -> Pool | None:
        try:
            raw = self.ledger.get_pool(pool_id)
        except LedgerError as exc:
            LOGGER.warning("registry_skip pool=%s reason=%s error=%s", pool_id, exc.kind, exc)
            return None
        try:
            return decode_pool_record(raw, pool_id)
        except ValueError as exc:
            LOGGER.warning("registry_skip pool=%s reason=malformed error=%s", pool_id, exc)
            return None

    def _active_pools(self, pool_count: int) -> list[Pool] | None:
        try:
            active_ids = self.ledger.get_active_pool_ids()
        except LedgerError as exc:
            LOGGER.info("registry getActivePools unavailable (%s); scanning 1..%s", exc, pool_count)
            return None
        if not active_ids and pool_count > 0:
            LOGGER.info("registry getActivePools returned nothing; scanning 1..%s", pool_count)
            return None
        if any(pool_id < 1 or pool_id > pool_count for pool_id in active_ids):
            LOGGER.warning(
                "registry getActivePools returned out-of-range ids=%s pool_count=%s; scanning",
                active_ids,
                pool_count,
            )
            return None
        pools: list[Pool] = []
        for pool_id in active_ids:
            pool = self._fetch(pool_id)
            if pool is None:
                LOGGER.warning("registry getActivePools entry %s failed validation; scanning", pool_id)
                return None
            pools.append(pool)
        return pools

    def discover(self, now: datetime) -> list[Pool]:
        try:
            pool_count = self.ledger.pool_count()
        except LedgerError as exc:
            raise RegistryUnavailable(f"factory poolCount() failed: {exc}", cause=exc) from exc
        LOGGER.debug("registry pool_count=%s", pool_count)

        if self.allow_list:
            pools = [p for p in (self._fetch(i) for i in self._allowed_ids(pool_count)) if p is not None]
            # Operators may deliberately keep watching a winding-down pool.
            return merge_pools(pools)

        candidates = self._active_pools(pool_count)
        if candidates is None:
            candidates = [p for p in (self._fetch(i) for i in range(1, pool_count + 1)) if p is not None]

        pools: list[Pool] = []
        for pool in candidates:
            if not pool.is_active:
                LOGGER.info("registry_skip pool=%s name=%s reason=inactive", pool.pool_id, pool.name)
                continue
            if pool.maturity_timestamp is None or pool.is_matured(now):
                LOGGER.info("registry_skip pool=%s name=%s reason=matured", pool.pool_id, pool.name)
                continue
            pools.append(pool)
        return merge_pools(pools)


class PoolRegistry:
    def __init__(self, sources: Sequence[PoolSource]) -> None:
        if not sources:
            raise ValueError("PoolRegistry needs at least one source")
        self.sources = tuple(sources)

    def refresh(self, now: datetime) -> list[Pool]:
        groups = [source.discover(now) for source in self.sources]
        return merge_pools(*groups)


def build_registry(config: KeeperConfig, ledger: LedgerClient) -> PoolRegistry:
    if config.use_factory:
        return PoolRegistry([FactoryPoolSource(ledger, config.pool_ids)])
    return PoolRegistry([StaticPoolSource.from_config(config)])

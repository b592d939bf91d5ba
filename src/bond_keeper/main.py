from __future__ import annotations

import argparse
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
import json
import logging
import os
import signal
import time
from typing import Any, Callable, Iterable

from bond_keeper.balance import BalanceMonitor
from bond_keeper.clients_ledger import LedgerClient, Web3LedgerClient
from bond_keeper.config import (
    POLICIES,
    KeeperConfig,
    default_tick_seconds,
    load_config,
    parse_pool_ids,
    validate_config,
)
from bond_keeper.errors import KeeperError, LedgerError, RegistryUnavailable
from bond_keeper.executor import ActionExecutor
from bond_keeper.models import (
    ActionOutcome,
    ActionResult,
    BalanceCheck,
    Pool,
    format_units,
    to_base_units,
    utc_now,
)
from bond_keeper.notify import Notifier, build_notifier
from bond_keeper.registry import PoolRegistry, build_registry
from bond_keeper.runtime_state import IdempotencyTracker
from bond_keeper.schedule import SchedulePolicy, build_policy
from bond_keeper.storage import Storage

LOGGER = logging.getLogger("bond_keeper")


class LoopState(str, Enum):
    IDLE = "idle"
    TICK = "tick"
    SHUTTING_DOWN = "shutting_down"


@dataclass
class PoolPass:
    pool_id: str
    status: str
    touched_ledger: bool = False
    result: ActionResult | None = None
    seconds_until_ready: int = 0

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"pool_id": self.pool_id, "status": self.status}
        if self.result is not None:
            payload["result"] = self.result.to_dict()
        if self.seconds_until_ready:
            payload["seconds_until_ready"] = self.seconds_until_ready
        return payload


class KeeperRuntime:
    def __init__(
        self,
        config: KeeperConfig,
        ledger: LedgerClient,
        registry: PoolRegistry,
        policy: SchedulePolicy,
        notifier: Notifier,
        storage: Storage | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep_fn: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.ledger = ledger
        self.registry = registry
        self.policy = policy
        self.notifier = notifier
        self.storage = storage
        self.clock = clock
        self.sleep_fn = sleep_fn
        self.monotonic = monotonic

        self.tracker = IdempotencyTracker()
        self.executor = ActionExecutor(ledger)
        self.balance = BalanceMonitor(
            ledger,
            notifier,
            to_base_units(config.min_balance_native, config.native_decimals),
            storage=storage,
            decimals=config.native_decimals,
        )
        self.pools: list[Pool] = []
        self.state = LoopState.IDLE
        self._keep_running = True
        self._tick_counter = 0
        self._last_refresh: float | None = None

    def start(self) -> None:
        """Load the initial pool set; raises RegistryUnavailable when there is nothing to watch."""
        self.pools = self.registry.refresh(self.clock())
        self._last_refresh = self.monotonic()
        if not self.pools:
            raise RegistryUnavailable("no pools to monitor")
        for pool in self.pools:
            LOGGER.info(
                "pool_loaded pool=%s name=%s target=%s maturity=%s",
                pool.pool_id,
                pool.label,
                pool.action_target,
                pool.maturity_timestamp.isoformat() if pool.maturity_timestamp else "-",
            )
        if self.config.restore_state and self.storage is not None:
            completed = self.storage.latest_completed_epochs()
            self.tracker.seed(completed)
            LOGGER.info("tracker_restored pools=%s", len(completed))

    def stop(self) -> None:
        self._keep_running = False
        if self.state == LoopState.IDLE:
            self.state = LoopState.SHUTTING_DOWN

    def run(self) -> None:
        interval = float(self.config.tick_seconds)
        next_fire = self.monotonic()
        while self._keep_running:
            self.tick()
            if not self._keep_running:
                break
            next_fire += interval
            now_mono = self.monotonic()
            if now_mono > next_fire:
                missed = int((now_mono - next_fire) // interval) + 1
                LOGGER.warning("ticks_dropped count=%s reason=overrun", missed)
                next_fire += missed * interval
            self.sleep_fn(max(0.0, next_fire - self.monotonic()))
        self.state = LoopState.SHUTTING_DOWN
        LOGGER.info("loop_stopped ticks=%s", self._tick_counter)

    def close(self) -> None:
        if self.storage is not None:
            self.storage.close()

    def tick(self, now: datetime | None = None) -> bool:
        if self.state == LoopState.TICK:
            LOGGER.warning("tick_dropped reason=in_flight")
            return False
        if self.state == LoopState.SHUTTING_DOWN:
            return False
        self.state = LoopState.TICK
        try:
            self._tick_counter += 1
            self._maybe_refresh()
            self._pass(now)
        finally:
            self.state = LoopState.IDLE if self._keep_running else LoopState.SHUTTING_DOWN
        return True

    def run_once(self, now: datetime | None = None) -> list[PoolPass]:
        return self._pass(now, one_shot=True)

    def _pass(self, now: datetime | None, one_shot: bool = False) -> list[PoolPass]:
        passes: list[PoolPass] = []
        now = now if now is not None else self.clock()
        if not self.policy.in_window(now):
            return [PoolPass(pool.pool_id, "outside_window") for pool in self.pools]
        previous_touched = False
        for pool in list(self.pools):
            if previous_touched and self.config.inter_pool_delay_seconds > 0:
                self.sleep_fn(self.config.inter_pool_delay_seconds)
            try:
                outcome = self._process_pool(pool, now, one_shot=one_shot)
            except Exception as exc:
                LOGGER.exception("pool_failed tick=%s pool=%s error=%s", self._tick_counter, pool.pool_id, exc)
                outcome = PoolPass(pool.pool_id, "error", touched_ledger=True)
            passes.append(outcome)
            previous_touched = outcome.touched_ledger
        return passes

    def _maybe_refresh(self) -> None:
        mono = self.monotonic()
        if self._last_refresh is not None and mono - self._last_refresh < self.config.registry_refresh_seconds:
            return
        self._last_refresh = mono
        try:
            fresh = self.registry.refresh(self.clock())
        except RegistryUnavailable as exc:
            LOGGER.warning("registry_refresh_failed keeping=%s error=%s", len(self.pools), exc)
            return
        old_ids = {pool.pool_id for pool in self.pools}
        new_ids = {pool.pool_id for pool in fresh}
        for pool in fresh:
            if pool.pool_id not in old_ids:
                LOGGER.info("pool_added pool=%s name=%s", pool.pool_id, pool.label)
        for pool_id in sorted(old_ids - new_ids):
            LOGGER.info("pool_removed pool=%s", pool_id)
        self.pools = fresh

    def _drop(self, pool: Pool, reason: str) -> None:
        LOGGER.info("pool_dropped pool=%s name=%s reason=%s", pool.pool_id, pool.label, reason)
        self.pools = [p for p in self.pools if p.pool_id != pool.pool_id]

    def _process_pool(self, pool: Pool, now: datetime, one_shot: bool = False) -> PoolPass:
        if pool.is_matured(now):
            self._drop(pool, "matured")
            return PoolPass(pool.pool_id, "matured")

        balance: BalanceCheck | None = None
        try:
            balance = self.balance.check(self.ledger.wallet_address)
        except LedgerError as exc:
            LOGGER.warning("balance_check_failed pool=%s error=%s", pool.pool_id, exc)

        epoch_key = self.policy.epoch_key(now)
        if self.tracker.has_completed(pool.pool_id, epoch_key):
            LOGGER.debug("pool_skip pool=%s epoch=%s reason=completed", pool.pool_id, epoch_key)
            return PoolPass(pool.pool_id, "completed", touched_ledger=True)

        try:
            readiness = self.ledger.read_readiness(pool, now)
        except LedgerError as exc:
            LOGGER.warning("readiness_failed tick=%s pool=%s error=%s", self._tick_counter, pool.pool_id, exc)
            return PoolPass(pool.pool_id, exc.kind, touched_ledger=True)
        if readiness.is_expired:
            self._drop(pool, "expired")
            return PoolPass(pool.pool_id, ActionOutcome.POOL_EXPIRED.value, touched_ledger=True)

        decision = self.policy.evaluate(readiness, now)
        if not decision.eligible:
            LOGGER.debug(
                "pool_wait pool=%s epoch=%s reason=%s next=%s",
                pool.pool_id,
                epoch_key,
                decision.reason,
                decision.next_window.isoformat() if decision.next_window else "-",
            )
            if one_shot and decision.reason == "contract_not_ready":
                self.notifier.too_soon(readiness.seconds_until_ready / 3600.0, pool)
            return PoolPass(
                pool.pool_id,
                decision.reason,
                touched_ledger=True,
                seconds_until_ready=readiness.seconds_until_ready,
            )

        LOGGER.info("pool_eligible pool=%s epoch=%s reason=%s", pool.pool_id, epoch_key, decision.reason)
        result = self.executor.execute(pool, self.clock())
        self._handle_result(pool, epoch_key, result, balance, one_shot=one_shot)
        return PoolPass(
            pool.pool_id,
            result.outcome.value,
            touched_ledger=True,
            result=result,
            seconds_until_ready=result.seconds_until_ready,
        )

    def _handle_result(
        self,
        pool: Pool,
        epoch_key: str,
        result: ActionResult,
        balance: BalanceCheck | None,
        one_shot: bool = False,
    ) -> None:
        LOGGER.info(
            "tick=%s pool=%s epoch=%s outcome=%s reason=%s tx=%s",
            self._tick_counter,
            pool.pool_id,
            epoch_key,
            result.outcome.value,
            result.reason or "-",
            result.transaction_hash or "-",
        )
        if self.storage is not None:
            self.storage.record_action(pool, epoch_key, result)

        if result.outcome == ActionOutcome.SUCCEEDED:
            self.tracker.mark_completed(pool.pool_id, epoch_key)
            LOGGER.info(
                "snapshot_recorded pool=%s record=%s supply=%s treasury=%s explorer=%s%s",
                pool.pool_id,
                result.record_id,
                format_units(result.new_total_supply, self.config.supply_decimals),
                format_units(result.treasury_balance, self.config.treasury_decimals),
                self.config.explorer_tx_url,
                result.transaction_hash,
            )
            self.notifier.action_succeeded(pool, result)
        elif result.outcome == ActionOutcome.NOT_YET_ELIGIBLE:
            if one_shot:
                self.notifier.too_soon(result.seconds_until_ready / 3600.0, pool)
        elif result.outcome == ActionOutcome.INSUFFICIENT_FUNDS:
            if balance is None or not balance.is_below_threshold:
                self.notifier.low_balance(balance.balance_wei if balance is not None else 0)
        elif result.outcome == ActionOutcome.POOL_EXPIRED:
            self._drop(pool, "expired")
        elif result.outcome == ActionOutcome.FATAL_ERROR:
            failures = self.tracker.record_failure(pool.pool_id)
            LOGGER.error("action_failed pool=%s failures=%s reason=%s", pool.pool_id, failures, result.reason)
            self.notifier.action_failed(pool, result.reason)

    def status(self, pool_id: str | None = None, now: datetime | None = None) -> dict[str, Any]:
        now = now or self.clock()
        pools = self.registry.refresh(now)
        if pool_id is not None:
            pools = [pool for pool in pools if pool.pool_id == str(pool_id)]
        wallet = self.ledger.wallet_address
        balance_wei = self.ledger.read_balance(wallet)
        rows: list[dict[str, Any]] = []
        for pool in pools:
            row: dict[str, Any] = {
                "pool_id": pool.pool_id,
                "name": pool.label,
                "target": pool.action_target,
                "maturity": pool.maturity_timestamp.isoformat() if pool.maturity_timestamp else None,
                "epoch_key": self.policy.epoch_key(now),
            }
            try:
                readiness = self.ledger.read_readiness(pool, now)
            except LedgerError as exc:
                row["error"] = f"{exc.kind}: {exc}"
                rows.append(row)
                continue
            decision = self.policy.evaluate(readiness, now)
            row.update(
                {
                    "ready": readiness.is_ready,
                    "seconds_until_ready": readiness.seconds_until_ready,
                    "record_count": readiness.action_counter,
                    "expired": readiness.is_expired,
                    "eligible": decision.eligible,
                    "reason": decision.reason,
                    "next_window": decision.next_window.isoformat() if decision.next_window else None,
                }
            )
            rows.append(row)
        next_target = getattr(self.policy, "next_target_minute", None)
        return {
            "now": now.isoformat(),
            "policy": self.policy.name,
            "next_target_minute": next_target(now)[0] if next_target is not None else None,
            "wallet": wallet,
            "balance": format_units(balance_wei, self.config.native_decimals),
            "below_minimum": balance_wei < self.balance.min_balance_wei,
            "pools": rows,
        }


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    for noisy in ("urllib3", "web3", "requests"):
        logging.getLogger(noisy).setLevel(logging.ERROR)


def _apply_overrides(config: KeeperConfig, args: argparse.Namespace) -> KeeperConfig:
    policy = getattr(args, "policy", None)
    if policy:
        config = replace(config, policy=policy)
        if not os.getenv("KEEPER_TICK_SECONDS", "").strip():
            config = replace(config, tick_seconds=default_tick_seconds(policy))
    pool_ids = getattr(args, "pool_ids", None)
    if pool_ids:
        config = replace(config, pool_ids=parse_pool_ids(pool_ids))
    return config


def _load_checked_config(args: argparse.Namespace) -> KeeperConfig | None:
    config = _apply_overrides(load_config(), args)
    _setup_logging(config.log_level)
    try:
        validate_config(config)
    except ValueError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return None
    return config


def build_runtime(config: KeeperConfig, storage: Storage | None = None) -> KeeperRuntime:
    ledger = Web3LedgerClient(config)
    return KeeperRuntime(
        config,
        ledger,
        build_registry(config, ledger),
        build_policy(config),
        build_notifier(config),
        storage=storage,
    )


def _run_command(args: argparse.Namespace) -> int:
    config = _load_checked_config(args)
    if config is None:
        return 2

    storage = Storage(config.database_path)
    try:
        runtime = build_runtime(config, storage)
        runtime.start()
    except (KeeperError, ValueError) as exc:
        LOGGER.error("Startup failed: %s", exc)
        storage.close()
        return 2
    LOGGER.info(
        "Starting keeper policy=%s pools=%s wallet=%s tick=%ss",
        config.policy,
        ",".join(pool.pool_id for pool in runtime.pools),
        runtime.ledger.wallet_address,
        config.tick_seconds,
    )
    signal_count = {"count": 0}

    def _handle_signal(signum: int, _frame: object) -> None:
        signal_count["count"] += 1
        if signal_count["count"] >= 2:
            LOGGER.error("Received signal %s again, forcing exit now", signum)
            raise SystemExit(130)
        LOGGER.warning(
            "Received signal %s, stopping after the current tick (press Ctrl+C again to force-exit)",
            signum,
        )
        runtime.stop()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)
    try:
        runtime.run()
        return 0
    except Exception as exc:
        LOGGER.error("Fatal runtime error: %s", exc)
        return 2
    finally:
        runtime.close()


def _once_command(args: argparse.Namespace) -> int:
    config = _load_checked_config(args)
    if config is None:
        return 2

    storage = Storage(config.database_path)
    try:
        runtime = build_runtime(config, storage)
        runtime.start()
        passes = runtime.run_once()
    except (KeeperError, ValueError) as exc:
        LOGGER.error("once failed: %s", exc)
        storage.close()
        return 2
    try:
        succeeded = sum(1 for p in passes if p.status == ActionOutcome.SUCCEEDED.value)
        summary = {
            "policy": config.policy,
            "pools": len(passes),
            "succeeded": succeeded,
            "results": [p.to_dict() for p in passes],
        }
        print(json.dumps(summary, indent=2, default=str))
        return 0 if succeeded else 1
    finally:
        runtime.close()


def _status_command(args: argparse.Namespace) -> int:
    config = _load_checked_config(args)
    if config is None:
        return 2
    try:
        runtime = build_runtime(config)
        report = runtime.status(pool_id=args.pool_id)
    except (KeeperError, ValueError) as exc:
        LOGGER.error("status failed: %s", exc)
        return 2
    print(json.dumps(report, indent=2, default=str))
    return 0


def _report_command(args: argparse.Namespace) -> int:
    config = load_config()
    _setup_logging(config.log_level)
    storage = Storage(config.database_path)
    try:
        report = storage.report(args.window)
        print(json.dumps(report, indent=2, default=str))
    finally:
        storage.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bond_keeper", description="Snapshot keeper for bond series pools"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run the keeper loop")
    run.add_argument("--policy", choices=POLICIES, default=None)
    run.add_argument(
        "--pool-ids",
        default=None,
        help="Comma-separated factory pool ids to watch (e.g. --pool-ids 1,2)",
    )
    run.set_defaults(func=_run_command)

    once = sub.add_parser("once", help="Run a single pass over every pool and exit")
    once.add_argument("--policy", choices=POLICIES, default=None)
    once.add_argument("--pool-ids", default=None)
    once.set_defaults(func=_once_command)

    status = sub.add_parser("status", help="Print readiness and schedule decisions without sending anything")
    status.add_argument("--pool-id", default=None)
    status.add_argument("--policy", choices=POLICIES, default=None)
    status.set_defaults(func=_status_command)

    report = sub.add_parser("report", help="Print a summary of recorded attempts from SQLite")
    report.add_argument("--window", type=int, default=24, help="Window in hours")
    report.set_defaults(func=_report_command)
    return parser


def cli(argv: Iterable[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    return int(args.func(args))


def main() -> None:
    raise SystemExit(cli())


if __name__ == "__main__":
    main()

from __future__ import annotations

import unittest

from bond_keeper.errors import InsufficientFunds, NetworkError, RegistryUnavailable, Unclassified
from bond_keeper.main import KeeperRuntime, LoopState
from bond_keeper.models import ActionOutcome, ActionResult, Pool
from bond_keeper.registry import PoolRegistry, PoolSource
from bond_keeper.schedule import FixedGridPolicy, UtcWindowPolicy
from bond_keeper.storage import Storage
from tests.helpers import (
    SERIES_B,
    SERIES_C,
    FakeLedger,
    FakeMonotonic,
    FixedClock,
    RecordingNotifier,
    build_pool,
    expired_state,
    not_ready_state,
    ready_state,
    test_config,
    utc,
)

NOW = utc(2025, 3, 14, 12, 5, 2)


class ScriptedSource(PoolSource):
    def __init__(self, pools: list[Pool]) -> None:
        self.pools = list(pools)
        self.error: Exception | None = None
        self.calls = 0

    def discover(self, now):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.pools)


class SlowConfirmLedger(FakeLedger):
    def __init__(self, confirm_seconds: float) -> None:
        super().__init__()
        self.clock: FixedClock | None = None
        self.confirm_seconds = confirm_seconds

    def await_confirmation(self, tx_hash: str):
        if self.clock is not None:
            self.clock.advance(self.confirm_seconds)
        return super().await_confirmation(tx_hash)


class KeeperRuntimeTestCase(unittest.TestCase):
    def make_runtime(self, pools, policy=None, ledger=None, storage=None, **config_overrides) -> KeeperRuntime:
        self.ledger = ledger or FakeLedger()
        self.notifier = RecordingNotifier()
        self.source = ScriptedSource(pools)
        self.clock = FixedClock(NOW)
        self.mono = FakeMonotonic()
        config_overrides.setdefault("tick_seconds", 1.0)
        runtime = KeeperRuntime(
            test_config(**config_overrides),
            self.ledger,
            PoolRegistry([self.source]),
            policy or FixedGridPolicy(range(0, 60, 5)),
            self.notifier,
            storage=storage,
            clock=self.clock,
            sleep_fn=self.mono.sleep,
            monotonic=self.mono,
        )
        runtime.start()
        return runtime


class FixedGridLoopTests(KeeperRuntimeTestCase):
    def test_target_minute_executes_once_per_epoch(self) -> None:
        runtime = self.make_runtime([build_pool("1")])
        self.assertTrue(runtime.tick(NOW))
        self.assertEqual(self.ledger.submitted, ["1"])
        epoch = runtime.tracker.state("1").last_completed_epoch_key
        self.assertEqual(epoch.rpartition("T")[2], "12:05")
        self.assertTrue(runtime.tracker.has_completed("1", "2025-03-14T12:05"))

        reads_after_first = len(self.ledger.readiness_calls)
        self.assertTrue(runtime.tick(utc(2025, 3, 14, 12, 5, 4)))
        self.assertEqual(self.ledger.submitted, ["1"])
        self.assertEqual(len(self.ledger.readiness_calls), reads_after_first)
        self.assertEqual(self.notifier.kinds(), ["succeeded"])

    def test_pools_share_tick_time_while_clock_advances(self) -> None:
        pools = [build_pool("1"), build_pool("2", target=SERIES_B), build_pool("3", target=SERIES_C)]
        ledger = SlowConfirmLedger(confirm_seconds=2.0)
        runtime = self.make_runtime(pools, ledger=ledger, inter_pool_delay_seconds=1.0)
        ledger.clock = self.clock
        self.clock.now = utc(2025, 3, 14, 12, 5, 0)

        def _sleep(seconds: float) -> None:
            self.mono.sleep(seconds)
            self.clock.advance(seconds)

        runtime.sleep_fn = _sleep
        runtime.tick()
        self.assertEqual(ledger.submitted, ["1", "2", "3"])
        self.assertGreater(self.clock.now, utc(2025, 3, 14, 12, 5, 5))
        for pool_id in ("1", "2", "3"):
            self.assertTrue(runtime.tracker.has_completed(pool_id, "2025-03-14T12:05"))

    def test_next_target_minute_executes_again(self) -> None:
        runtime = self.make_runtime([build_pool("1")])
        runtime.tick(NOW)
        runtime.tick(utc(2025, 3, 14, 12, 10, 1))
        self.assertEqual(self.ledger.submitted, ["1", "1"])

    def test_outside_window_skips_without_rpc(self) -> None:
        runtime = self.make_runtime([build_pool("1"), build_pool("2", target=SERIES_B)], inter_pool_delay_seconds=1.0)
        runtime.tick(utc(2025, 3, 14, 12, 7, 30))
        self.assertEqual(self.mono.sleeps, [])
        self.assertEqual(self.ledger.readiness_calls, [])
        self.assertEqual(self.ledger.balance_calls, 0)

    def test_balance_checked_once_per_pool(self) -> None:
        runtime = self.make_runtime([build_pool("1"), build_pool("2", target=SERIES_B)])
        runtime.tick(NOW)
        self.assertEqual(self.ledger.balance_calls, 2)
        self.assertEqual(self.ledger.submitted, ["1", "2"])

    def test_inter_pool_delay_between_pools(self) -> None:
        runtime = self.make_runtime(
            [build_pool("1"), build_pool("2", target=SERIES_B)],
            inter_pool_delay_seconds=2.0,
        )
        runtime.tick(NOW)
        self.assertEqual(self.mono.sleeps, [2.0])

    def test_insufficient_funds_alerts_and_retries_next_tick(self) -> None:
        runtime = self.make_runtime([build_pool("1")])
        self.ledger.submit_errors["1"] = InsufficientFunds("insufficient funds for gas * price + value")
        runtime.tick(NOW)
        self.assertEqual(self.notifier.kinds(), ["low_balance"])
        self.assertFalse(runtime.tracker.has_completed("1", "2025-03-14T12:05"))

        del self.ledger.submit_errors["1"]
        runtime.tick(utc(2025, 3, 14, 12, 5, 3))
        self.assertEqual(self.ledger.submitted, ["1"])
        self.assertTrue(runtime.tracker.has_completed("1", "2025-03-14T12:05"))

    def test_insufficient_funds_does_not_double_alert(self) -> None:
        runtime = self.make_runtime([build_pool("1")], ledger=FakeLedger(balance_wei=10))
        self.ledger.submit_errors["1"] = InsufficientFunds("insufficient funds")
        runtime.tick(NOW)
        self.assertEqual(self.notifier.events, [("low_balance", 10)])

    def test_one_pool_failure_does_not_abort_tick(self) -> None:
        runtime = self.make_runtime([build_pool("1"), build_pool("2", target=SERIES_B)])
        self.ledger.readiness_errors["1"] = RuntimeError("unexpected decode failure")
        with self.assertLogs("bond_keeper", level="ERROR") as logs:
            runtime.tick(NOW)
        self.assertEqual(self.ledger.submitted, ["2"])
        self.assertTrue(any("pool_failed" in line for line in logs.output))

    def test_network_error_on_one_pool_leaves_next_pool_running(self) -> None:
        runtime = self.make_runtime([build_pool("1"), build_pool("2", target=SERIES_B)])
        self.ledger.readiness_errors["1"] = NetworkError("connection reset")
        with self.assertLogs("bond_keeper", level="WARNING") as logs:
            self.assertTrue(runtime.tick(NOW))
        self.assertEqual(self.ledger.submitted, ["2"])
        state = runtime.tracker.state("1")
        self.assertIsNone(state.last_completed_epoch_key)
        self.assertEqual(state.consecutive_failure_count, 0)
        self.assertEqual(self.notifier.kinds(), ["succeeded"])
        self.assertTrue(any("readiness_failed" in line and "pool=1" in line for line in logs.output))

    def test_fatal_error_notifies_and_counts(self) -> None:
        runtime = self.make_runtime([build_pool("1"), build_pool("2", target=SERIES_B)])
        self.ledger.submit_errors["1"] = Unclassified("nonce too low")
        runtime.tick(NOW)
        self.assertEqual(runtime.tracker.state("1").consecutive_failure_count, 1)
        self.assertIsNone(runtime.tracker.state("1").last_completed_epoch_key)
        self.assertEqual(self.notifier.kinds(), ["failed", "succeeded"])

    def test_transient_error_mutates_nothing(self) -> None:
        runtime = self.make_runtime([build_pool("1")])
        self.ledger.confirm_errors["1"] = NetworkError("receipt timeout")
        runtime.tick(NOW)
        state = runtime.tracker.state("1")
        self.assertIsNone(state.last_completed_epoch_key)
        self.assertEqual(state.consecutive_failure_count, 0)
        self.assertEqual(self.notifier.events, [])

    def test_expired_readiness_drops_pool_until_refresh(self) -> None:
        runtime = self.make_runtime([build_pool("1"), build_pool("2", target=SERIES_B)])
        self.ledger.readiness["1"] = expired_state()
        runtime.tick(NOW)
        self.assertEqual([p.pool_id for p in runtime.pools], ["2"])

        del self.ledger.readiness["1"]
        self.mono.value += 601
        runtime.tick(utc(2025, 3, 14, 12, 10, 0))
        self.assertEqual([p.pool_id for p in runtime.pools], ["1", "2"])

    def test_matured_pool_dropped_without_rpc(self) -> None:
        runtime = self.make_runtime([build_pool("1", maturity=utc(2025, 3, 1))])
        runtime.tick(NOW)
        self.assertEqual(runtime.pools, [])
        self.assertEqual(self.ledger.readiness_calls, [])

    def test_attempts_are_recorded(self) -> None:
        storage = Storage(":memory:")
        self.addCleanup(storage.close)
        runtime = self.make_runtime([build_pool("1")], storage=storage)
        runtime.tick(NOW)
        report = storage.report(24)
        self.assertEqual(report["pools"]["1"]["outcomes"], {"succeeded": 1})
        self.assertEqual(storage.latest_completed_epochs(), {"1": "2025-03-14T12:05"})


class LoopControlTests(KeeperRuntimeTestCase):
    def test_reentrant_tick_is_dropped(self) -> None:
        runtime = self.make_runtime([build_pool("1")])
        nested: list[bool] = []

        class _Reentrant(RecordingNotifier):
            def action_succeeded(self, pool: Pool, result: ActionResult) -> None:
                nested.append(runtime.tick(NOW))

        runtime.notifier = _Reentrant()
        with self.assertLogs("bond_keeper", level="WARNING") as logs:
            self.assertTrue(runtime.tick(NOW))
        self.assertEqual(nested, [False])
        self.assertTrue(any("tick_dropped" in line for line in logs.output))
        self.assertEqual(runtime.state, LoopState.IDLE)

    def test_refresh_failure_keeps_cached_pools(self) -> None:
        runtime = self.make_runtime([build_pool("1")])
        self.source.error = RegistryUnavailable("rpc down")
        self.mono.value += 601
        with self.assertLogs("bond_keeper", level="WARNING"):
            runtime.tick(NOW)
        self.assertEqual([p.pool_id for p in runtime.pools], ["1"])
        self.assertEqual(self.ledger.submitted, ["1"])

    def test_refresh_runs_on_its_own_cadence(self) -> None:
        runtime = self.make_runtime([build_pool("1")])
        runtime.tick(utc(2025, 3, 14, 12, 7))
        self.assertEqual(self.source.calls, 1)
        self.mono.value += 600
        runtime.tick(utc(2025, 3, 14, 12, 8))
        self.assertEqual(self.source.calls, 2)

    def test_start_without_pools_fails(self) -> None:
        with self.assertRaises(RegistryUnavailable):
            self.make_runtime([])

    def test_start_propagates_registry_failure(self) -> None:
        source = ScriptedSource([])
        source.error = RegistryUnavailable("factory unreachable")
        runtime = KeeperRuntime(
            test_config(),
            FakeLedger(),
            PoolRegistry([source]),
            UtcWindowPolicy(),
            RecordingNotifier(),
        )
        with self.assertRaises(RegistryUnavailable):
            runtime.start()

    def test_run_drops_missed_ticks_and_stops(self) -> None:
        runtime = self.make_runtime([build_pool("1")])
        calls: list[int] = []

        def _slow_tick(now=None) -> bool:
            calls.append(1)
            self.mono.value += 2.5
            if len(calls) == 2:
                runtime.stop()
            return True

        runtime.tick = _slow_tick
        with self.assertLogs("bond_keeper", level="WARNING") as logs:
            runtime.run()
        self.assertEqual(len(calls), 2)
        self.assertEqual(self.mono.sleeps, [0.5])
        self.assertTrue(any("ticks_dropped count=2" in line for line in logs.output))
        self.assertEqual(runtime.state, LoopState.SHUTTING_DOWN)

    def test_stop_when_idle_refuses_new_ticks(self) -> None:
        runtime = self.make_runtime([build_pool("1")])
        runtime.stop()
        self.assertFalse(runtime.tick(NOW))
        self.assertEqual(self.ledger.readiness_calls, [])

    def test_restore_seeds_tracker_from_storage(self) -> None:
        storage = Storage(":memory:")
        self.addCleanup(storage.close)
        pool = build_pool("1")
        storage.record_action(
            pool,
            "2025-03-14T12:05",
            ActionResult(ActionOutcome.SUCCEEDED, "1", transaction_hash="0xabc"),
        )
        runtime = self.make_runtime([pool], storage=storage, restore_state=True)
        runtime.tick(NOW)
        self.assertEqual(self.ledger.submitted, [])


class StatusTests(KeeperRuntimeTestCase):
    def test_status_is_read_only(self) -> None:
        runtime = self.make_runtime([build_pool("1"), build_pool("2", target=SERIES_B)])
        self.ledger.readiness["2"] = not_ready_state(NOW, seconds=120)
        report = runtime.status(now=NOW)
        self.assertEqual(report["next_target_minute"], 10)
        self.assertEqual(report["balance"], "5.0000")
        self.assertFalse(report["below_minimum"])
        rows = {row["pool_id"]: row for row in report["pools"]}
        self.assertTrue(rows["1"]["eligible"])
        self.assertEqual(rows["1"]["epoch_key"], "2025-03-14T12:05")
        self.assertEqual(rows["2"]["reason"], "contract_not_ready")
        self.assertEqual(self.ledger.submitted, [])

    def test_status_filters_by_pool_id(self) -> None:
        runtime = self.make_runtime([build_pool("1"), build_pool("2", target=SERIES_B)])
        report = runtime.status(pool_id="2", now=NOW)
        self.assertEqual([row["pool_id"] for row in report["pools"]], ["2"])


class UtcWindowLoopTests(KeeperRuntimeTestCase):
    def test_bootstrap_pool_executes_outside_midnight(self) -> None:
        runtime = self.make_runtime([build_pool("1")], policy=UtcWindowPolicy())
        later = utc(2025, 3, 14, 14, 37)
        self.ledger.readiness["1"] = ready_state(later, counter=0, age_seconds=12 * 3600)
        runtime.tick(later)
        self.assertEqual(self.ledger.submitted, ["1"])
        self.assertTrue(runtime.tracker.has_completed("1", "2025-03-14"))

    def test_balance_checked_after_epoch_completed(self) -> None:
        runtime = self.make_runtime([build_pool("1")], policy=UtcWindowPolicy(), ledger=FakeLedger(balance_wei=10))
        first = utc(2025, 3, 14, 0, 5)
        runtime.tick(first)
        self.assertEqual(self.ledger.balance_calls, 1)
        self.assertEqual(self.notifier.kinds(), ["low_balance", "succeeded"])

        runtime.tick(utc(2025, 3, 14, 0, 6))
        self.assertEqual(self.ledger.submitted, ["1"])
        self.assertEqual(self.ledger.balance_calls, 2)
        self.assertEqual(self.notifier.kinds(), ["low_balance", "succeeded", "low_balance"])

    def test_once_sends_too_soon_notice(self) -> None:
        runtime = self.make_runtime([build_pool("1")], policy=UtcWindowPolicy())
        self.ledger.readiness["1"] = not_ready_state(NOW, seconds=7200)
        passes = runtime.run_once(NOW)
        self.assertEqual([p.status for p in passes], ["contract_not_ready"])
        self.assertEqual(self.notifier.events, [("too_soon", "1", 2.0)])

    def test_tick_does_not_send_too_soon_notice(self) -> None:
        runtime = self.make_runtime([build_pool("1")], policy=UtcWindowPolicy())
        self.ledger.readiness["1"] = not_ready_state(NOW, seconds=7200)
        runtime.tick(NOW)
        self.assertEqual(self.notifier.events, [])


if __name__ == "__main__":
    unittest.main()

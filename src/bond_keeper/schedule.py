"""Timing policies that decide whether "now" is an eligible moment to act.

Both policies are pure functions of an already-fetched readiness reading and
an injected ``now``; nothing here reads the system clock or the chain.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Iterable

from bond_keeper.config import POLICY_FIXED_GRID, POLICY_UTC_WINDOW, KeeperConfig
from bond_keeper.models import EligibilityDecision, ReadinessState


def _as_utc(now: datetime) -> datetime:
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def next_utc_midnight(now: datetime) -> datetime:
    current = _as_utc(now)
    midnight = current.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight + timedelta(days=1)


class SchedulePolicy:
    name = ""

    def epoch_key(self, now: datetime) -> str:
        raise NotImplementedError

    def in_window(self, now: datetime) -> bool:
        return True

    def next_window(self, now: datetime) -> datetime:
        raise NotImplementedError

    def evaluate(self, readiness: ReadinessState, now: datetime) -> EligibilityDecision:
        raise NotImplementedError


class FixedGridPolicy(SchedulePolicy):
    name = POLICY_FIXED_GRID

    def __init__(self, target_minutes: Iterable[int], slop_seconds: int = 5) -> None:
        minutes = sorted({int(m) for m in target_minutes})
        if not minutes:
            raise ValueError("target_minutes must not be empty")
        if minutes[0] < 0 or minutes[-1] > 59:
            raise ValueError("target_minutes must be within 0..59")
        self.target_minutes = tuple(minutes)
        self.slop_seconds = max(1, int(slop_seconds))

    def _bucket_start(self, now: datetime) -> datetime:
        current = _as_utc(now).replace(second=0, microsecond=0)
        earlier = [m for m in self.target_minutes if m <= current.minute]
        if earlier:
            return current.replace(minute=earlier[-1])
        previous_hour = current - timedelta(hours=1)
        return previous_hour.replace(minute=self.target_minutes[-1])

    def epoch_key(self, now: datetime) -> str:
        return self._bucket_start(now).strftime("%Y-%m-%dT%H:%M")

    def in_window(self, now: datetime) -> bool:
        current = _as_utc(now)
        return current.minute in self.target_minutes and current.second < self.slop_seconds

    def next_target_minute(self, now: datetime) -> tuple[int, int]:
        minute = _as_utc(now).minute
        later = [m for m in self.target_minutes if m > minute]
        if later:
            return later[0], later[0] - minute
        first = self.target_minutes[0]
        return first, (60 - minute) + first

    def next_window(self, now: datetime) -> datetime:
        current = _as_utc(now).replace(second=0, microsecond=0)
        _, minutes_until = self.next_target_minute(now)
        return current + timedelta(minutes=minutes_until)

    def evaluate(self, readiness: ReadinessState, now: datetime) -> EligibilityDecision:
        key = self.epoch_key(now)
        if not self.in_window(now):
            return EligibilityDecision(False, key, "outside_target_minute", self.next_window(now))
        if not readiness.is_ready:
            return EligibilityDecision(False, key, "contract_not_ready", self.next_window(now))
        return EligibilityDecision(True, key, "target_minute")


class UtcWindowPolicy(SchedulePolicy):
    name = POLICY_UTC_WINDOW

    def __init__(self, window_minutes: int = 30, grace_hours: float = 2.0) -> None:
        self.window = timedelta(minutes=max(1, int(window_minutes)))
        self.grace = timedelta(hours=max(0.0, float(grace_hours)))

    def epoch_key(self, now: datetime) -> str:
        return _as_utc(now).date().isoformat()

    def in_midnight_window(self, now: datetime) -> bool:
        current = _as_utc(now)
        midnight = current.replace(hour=0, minute=0, second=0, microsecond=0)
        return current - midnight < self.window

    def next_window(self, now: datetime) -> datetime:
        return next_utc_midnight(now)

    def evaluate(self, readiness: ReadinessState, now: datetime) -> EligibilityDecision:
        key = self.epoch_key(now)
        if not readiness.is_ready:
            return EligibilityDecision(False, key, "contract_not_ready", readiness.next_ready_at)
        # A pool with no records yet is bootstrapped immediately; later records
        # then settle onto the midnight cadence.
        if readiness.action_counter == 0:
            return EligibilityDecision(True, key, "bootstrap")
        if self.in_midnight_window(now):
            return EligibilityDecision(True, key, "midnight_window")
        if readiness.ready_age_seconds(now) <= self.grace.total_seconds():
            return EligibilityDecision(True, key, "grace_period")
        return EligibilityDecision(False, key, "waiting_for_midnight_utc", self.next_window(now))


def build_policy(config: KeeperConfig) -> SchedulePolicy:
    if config.policy == POLICY_FIXED_GRID:
        return FixedGridPolicy(config.target_minutes, config.window_slop_seconds)
    if config.policy == POLICY_UTC_WINDOW:
        return UtcWindowPolicy(config.utc_window_minutes, config.grace_hours)
    raise ValueError(f"unsupported policy={config.policy!r}")

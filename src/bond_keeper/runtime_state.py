from __future__ import annotations

from dataclasses import dataclass


@dataclass
class ScheduleState:
    last_completed_epoch_key: str | None = None
    consecutive_failure_count: int = 0


class IdempotencyTracker:
    """Per-pool record of the most recent epoch whose action was confirmed.

    Only the latest completed key is kept per pool, so a pool that completed
    epoch ``E`` is skipped for the rest of ``E`` and becomes eligible again as
    soon as the policy computes a different key.
    """

    def __init__(self) -> None:
        self._states: dict[str, ScheduleState] = {}

    def state(self, pool_id: str) -> ScheduleState:
        key = str(pool_id)
        state = self._states.get(key)
        if state is None:
            state = ScheduleState()
            self._states[key] = state
        return state

    def has_completed(self, pool_id: str, epoch_key: str) -> bool:
        state = self._states.get(str(pool_id))
        if state is None:
            return False
        return state.last_completed_epoch_key == epoch_key

    def mark_completed(self, pool_id: str, epoch_key: str) -> None:
        # Callers must only invoke this after the ledger confirmed the action.
        state = self.state(pool_id)
        state.last_completed_epoch_key = epoch_key
        state.consecutive_failure_count = 0

    def record_failure(self, pool_id: str) -> int:
        state = self.state(pool_id)
        state.consecutive_failure_count += 1
        return state.consecutive_failure_count

    def seed(self, completed: dict[str, str]) -> None:
        for pool_id, epoch_key in completed.items():
            if epoch_key:
                self.state(pool_id).last_completed_epoch_key = epoch_key

from __future__ import annotations

from datetime import datetime
import logging

from bond_keeper.clients_ledger import LedgerClient
from bond_keeper.errors import (
    InsufficientFunds,
    LedgerError,
    NetworkError,
    PoolExpired,
    TooSoon,
)
from bond_keeper.models import ActionOutcome, ActionResult, Pool

LOGGER = logging.getLogger("bond_keeper")

_OUTCOME_BY_ERROR: tuple[tuple[type[LedgerError], ActionOutcome], ...] = (
    (TooSoon, ActionOutcome.NOT_YET_ELIGIBLE),
    (InsufficientFunds, ActionOutcome.INSUFFICIENT_FUNDS),
    (PoolExpired, ActionOutcome.POOL_EXPIRED),
    (NetworkError, ActionOutcome.TRANSIENT_ERROR),
)


def outcome_for_error(exc: LedgerError) -> ActionOutcome:
    for error_cls, outcome in _OUTCOME_BY_ERROR:
        if isinstance(exc, error_cls):
            return outcome
    return ActionOutcome.FATAL_ERROR


class ActionExecutor:
    """Submits one recording transaction for a pool and classifies the result.

    At most one transaction is sent per call; every early return happens
    before submission.
    """

    def __init__(self, ledger: LedgerClient) -> None:
        self.ledger = ledger

    def execute(self, pool: Pool, now: datetime) -> ActionResult:
        try:
            readiness = self.ledger.read_readiness(pool, now)
        except LedgerError as exc:
            return self._failed(pool, exc)

        if readiness.is_expired:
            return ActionResult(ActionOutcome.POOL_EXPIRED, pool.pool_id, reason="pool matured")
        if not readiness.is_ready:
            return ActionResult(
                ActionOutcome.NOT_YET_ELIGIBLE,
                pool.pool_id,
                reason="too soon",
                seconds_until_ready=readiness.seconds_until_ready,
            )

        try:
            tx_hash = self.ledger.submit_action(pool)
        except LedgerError as exc:
            return self._failed(pool, exc)

        try:
            confirmation = self.ledger.await_confirmation(tx_hash)
        except LedgerError as exc:
            result = self._failed(pool, exc)
            result.transaction_hash = tx_hash
            return result

        if not confirmation.confirmed:
            LOGGER.warning("tx_reverted pool=%s tx=%s", pool.pool_id, tx_hash)
            return ActionResult(
                ActionOutcome.FATAL_ERROR,
                pool.pool_id,
                reason="transaction reverted",
                transaction_hash=tx_hash,
                block_number=confirmation.block_number,
            )

        result = ActionResult(
            ActionOutcome.SUCCEEDED,
            pool.pool_id,
            transaction_hash=tx_hash,
            block_number=confirmation.block_number,
        )
        try:
            record = self.ledger.read_latest_record(pool)
        except LedgerError as exc:
            # The transaction is confirmed; only the read-back is missing.
            LOGGER.warning("record_readback_failed pool=%s tx=%s error=%s", pool.pool_id, tx_hash, exc)
            return result

        result.record_id = record.record_id
        result.new_total_supply = record.total_supply
        result.treasury_balance = record.treasury_balance
        return result

    @staticmethod
    def _failed(pool: Pool, exc: LedgerError) -> ActionResult:
        outcome = outcome_for_error(exc)
        reason = str(exc) or exc.kind
        if isinstance(exc, TooSoon):
            reason = "too soon"
        return ActionResult(outcome, pool.pool_id, reason=reason)

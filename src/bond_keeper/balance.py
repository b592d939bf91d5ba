from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from bond_keeper.clients_ledger import LedgerClient
from bond_keeper.models import BalanceCheck, format_units
from bond_keeper.notify import Notifier

if TYPE_CHECKING:
    from bond_keeper.storage import Storage

LOGGER = logging.getLogger("bond_keeper")


class BalanceMonitor:
    def __init__(
        self,
        ledger: LedgerClient,
        notifier: Notifier,
        min_balance_wei: int,
        storage: "Storage | None" = None,
        decimals: int = 18,
    ) -> None:
        self.ledger = ledger
        self.notifier = notifier
        self.min_balance_wei = int(min_balance_wei)
        self.storage = storage
        self.decimals = decimals

    def check(self, wallet: str) -> BalanceCheck:
        """Read the wallet balance and alert once if it sits below the minimum.

        Read failures propagate; the caller decides whether to carry on.
        """
        result = BalanceCheck(self.ledger.read_balance(wallet), self.min_balance_wei)
        if result.is_below_threshold:
            LOGGER.warning(
                "balance_low wallet=%s balance=%s minimum=%s",
                wallet,
                format_units(result.balance_wei, self.decimals),
                format_units(result.threshold_wei, self.decimals),
            )
            self.notifier.low_balance(result.balance_wei)
            if self.storage is not None:
                self.storage.record_balance_check(wallet, result)
        return result

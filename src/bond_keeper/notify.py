from __future__ import annotations

import logging
from typing import Any

from bond_keeper.config import KeeperConfig
from bond_keeper.http_utils import post_json
from bond_keeper.models import ActionResult, Pool, format_units

LOGGER = logging.getLogger("bond_keeper")

COLOR_SUCCESS = 0x2ECC71
COLOR_ERROR = 0xE74C3C
COLOR_WARNING = 0xF1C40F
COLOR_INFO = 0x3498DB


class Notifier:
    """Operator alert sink. The base class drops every event."""

    def action_succeeded(self, pool: Pool, result: ActionResult) -> None:
        return None

    def action_failed(self, pool: Pool, reason: str) -> None:
        return None

    def low_balance(self, balance_wei: int) -> None:
        return None

    def too_soon(self, hours_remaining: float, pool: Pool | None = None) -> None:
        return None


class DiscordNotifier(Notifier):
    def __init__(self, webhook_url: str, config: KeeperConfig) -> None:
        self.webhook_url = webhook_url
        self.config = config

    def _send(self, title: str, description: str, color: int, fields: list[dict[str, Any]] | None = None) -> None:
        embed: dict[str, Any] = {"title": title, "description": description, "color": color}
        if fields:
            embed["fields"] = fields
        try:
            status = post_json(self.webhook_url, {"embeds": [embed]}, timeout=self.config.api_timeout_seconds)
        except Exception as exc:
            LOGGER.warning("notify_failed title=%r error=%s", title, exc)
            return
        if status >= 300:
            LOGGER.warning("notify_failed title=%r status=%s", title, status)

    def action_succeeded(self, pool: Pool, result: ActionResult) -> None:
        fields = [
            {"name": "Record", "value": str(result.record_id if result.record_id is not None else "n/a"), "inline": True},
            {
                "name": "Total supply",
                "value": f"{format_units(result.new_total_supply, self.config.supply_decimals)} {pool.symbol}",
                "inline": True,
            },
            {
                "name": "Treasury",
                "value": f"{format_units(result.treasury_balance, self.config.treasury_decimals)} USDC",
                "inline": True,
            },
        ]
        description = f"[{result.transaction_hash}]({self.config.explorer_tx_url}{result.transaction_hash})"
        self._send(f"Snapshot recorded: {pool.label} (#{pool.pool_id})", description, COLOR_SUCCESS, fields)

    def action_failed(self, pool: Pool, reason: str) -> None:
        self._send(f"Snapshot failed: {pool.label} (#{pool.pool_id})", reason[:1500], COLOR_ERROR)

    def low_balance(self, balance_wei: int) -> None:
        balance = format_units(balance_wei, self.config.native_decimals)
        minimum = f"{self.config.min_balance_native:g}"
        self._send(
            "Keeper balance low",
            f"Keeper wallet holds {balance} USDC (minimum {minimum}). Top up to keep snapshots running.",
            COLOR_WARNING,
        )

    def too_soon(self, hours_remaining: float, pool: Pool | None = None) -> None:
        target = f" for {pool.label}" if pool is not None else ""
        self._send(
            "Snapshot not due yet",
            f"Next snapshot{target} can be recorded in {hours_remaining:.2f}h.",
            COLOR_INFO,
        )


def build_notifier(config: KeeperConfig) -> Notifier:
    if not config.discord_webhook_url:
        LOGGER.info("DISCORD_WEBHOOK_URL not set; notifications disabled")
        return Notifier()
    return DiscordNotifier(config.discord_webhook_url, config)

"""Keeper error types and ledger failure classification.

Every failure surfaced by the chain client is mapped once, at the client
boundary, onto the small taxonomy below. Callers branch on the exception type,
never on message text.
"""

from __future__ import annotations

from typing import Any, Mapping

import requests
from web3 import Web3
from web3.exceptions import (
    ContractCustomError,
    ContractLogicError,
    ProviderConnectionError,
    TimeExhausted,
    Web3RPCError,
)


class KeeperError(Exception):
    """Base class for keeper errors."""


class ConfigError(KeeperError):
    pass


class RegistryUnavailable(KeeperError):
    def __init__(self, message: str, cause: Exception | None = None) -> None:
        self.cause = cause
        super().__init__(message)


class LedgerError(KeeperError):
    kind = "ledger_error"

    def __init__(self, message: str = "", details: Any | None = None) -> None:
        self.details = details
        super().__init__(message or self.kind)


class TooSoon(LedgerError):
    kind = "too_soon"


class InsufficientFunds(LedgerError):
    kind = "insufficient_funds"


class PoolExpired(LedgerError):
    kind = "pool_expired"


class PoolNotFound(LedgerError):
    kind = "pool_not_found"


class NetworkError(LedgerError):
    kind = "network_error"


class Unclassified(LedgerError):
    kind = "unclassified"


def error_selector(signature: str) -> str:
    return "0x" + bytes(Web3.keccak(text=signature))[:4].hex()


# PoolNotFound() is pinned to the selector the factory is known to emit.
REVERT_SELECTORS: dict[str, type[LedgerError]] = {
    error_selector("TooSoon()"): TooSoon,
    error_selector("PoolExpired()"): PoolExpired,
    "0x76ecffc0": PoolNotFound,
}

REVERT_REASONS: dict[str, type[LedgerError]] = {
    "TooSoon": TooSoon,
    "PoolExpired": PoolExpired,
    "PoolNotFound": PoolNotFound,
}

_INSUFFICIENT_FUNDS_PREFIX = "insufficient funds"
_REVERTED_PREFIX = "execution reverted:"


def _revert_data(exc: Exception) -> str:
    data = getattr(exc, "data", None)
    if isinstance(data, Mapping):
        data = data.get("data")
    if isinstance(data, (bytes, bytearray)):
        return "0x" + bytes(data).hex()
    if isinstance(data, str):
        return data.strip().lower()
    return ""


def _revert_reason(exc: ContractLogicError) -> str:
    message = str(getattr(exc, "message", None) or exc).strip()
    if message.lower().startswith(_REVERTED_PREFIX):
        message = message[len(_REVERTED_PREFIX):].strip()
    if message.endswith("()"):
        message = message[:-2]
    return message


def _rpc_error_payload(exc: Exception) -> Mapping[str, Any] | None:
    if isinstance(exc, Web3RPCError):
        response = getattr(exc, "rpc_response", None)
        if isinstance(response, Mapping):
            error = response.get("error")
            if isinstance(error, Mapping):
                return error
    if isinstance(exc, ValueError) and exc.args and isinstance(exc.args[0], Mapping):
        return exc.args[0]
    return None


def classify_ledger_error(exc: BaseException) -> LedgerError:
    """Map a raw chain-client failure onto the keeper error taxonomy."""
    if isinstance(exc, LedgerError):
        return exc

    if isinstance(exc, ContractLogicError):
        data = _revert_data(exc)
        selector = data[:10]
        if isinstance(exc, ContractCustomError) or selector:
            error_cls = REVERT_SELECTORS.get(selector)
            if error_cls is not None:
                return error_cls(str(exc), details={"revert_data": data})
        reason = _revert_reason(exc)
        error_cls = REVERT_REASONS.get(reason)
        if error_cls is not None:
            return error_cls(str(exc), details={"revert_reason": reason})
        return Unclassified(str(exc), details={"revert_data": data, "revert_reason": reason})

    payload = _rpc_error_payload(exc)  # type: ignore[arg-type]
    if payload is not None:
        message = str(payload.get("message") or "")
        if message.strip().lower().startswith(_INSUFFICIENT_FUNDS_PREFIX):
            return InsufficientFunds(message, details=dict(payload))
        return Unclassified(message or str(exc), details=dict(payload))

    if isinstance(
        exc,
        (
            requests.exceptions.ConnectionError,
            requests.exceptions.Timeout,
            ProviderConnectionError,
            TimeExhausted,
            TimeoutError,
            ConnectionError,
        ),
    ):
        return NetworkError(str(exc) or exc.__class__.__name__)

    return Unclassified(str(exc) or exc.__class__.__name__, details={"type": exc.__class__.__name__})

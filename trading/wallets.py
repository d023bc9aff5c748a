"""Signing wallets handed to the swap executor."""

from __future__ import annotations

import logging

from eth_account import Account
from eth_account.signers.local import LocalAccount

import config
from trading.errors import ConfigurationError

logger = logging.getLogger(__name__)


class StaticWalletProvider:
    """Maps user ids to ready-to-sign accounts loaded once at startup."""

    def __init__(self, accounts: dict[int, LocalAccount] | None = None) -> None:
        self._accounts: dict[int, LocalAccount] = dict(accounts or {})

    @classmethod
    def from_config(cls, user_id: int) -> "StaticWalletProvider":
        key = str(config.LIVE_PRIVATE_KEY or "").strip()
        if not key:
            raise ConfigurationError("LIVE_PRIVATE_KEY is empty")
        try:
            account = Account.from_key(key)
        except (ValueError, TypeError) as exc:
            raise ConfigurationError(f"LIVE_PRIVATE_KEY parse failed: {exc}") from exc
        logger.info("WALLET loaded user_id=%s address=%s", user_id, account.address)
        return cls({int(user_id): account})

    def get_wallet(self, user_id: int) -> LocalAccount | None:
        return self._accounts.get(int(user_id))

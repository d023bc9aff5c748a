"""Settlement checks run after every broadcast trade."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

import config
from trading.chain import TransactionRecord
from trading.errors import BalanceMismatch, ChainError

logger = logging.getLogger(__name__)

SIDE_BUY = "buy"
SIDE_SELL = "sell"


def _failed(exc: ChainError, side: str) -> ChainError:
    logger.warning("VERIFY_FAIL side=%s tx=%s error_type=%s error=%s", side, exc.tx_hash, type(exc).__name__, exc)
    return exc


class TradeVerifier:
    """Confirms a submitted swap settled and moved the wallet's token balance.

    A buy must increase the wallet's balance of the bought token; a sell must
    decrease the balance of the sold token. Broadcast success alone is never
    enough.
    """

    def __init__(
        self,
        chain: Any,
        settlement_delay: float | None = None,
        call_timeout: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.chain = chain
        self.settlement_delay = float(
            config.SETTLEMENT_DELAY_SECONDS if settlement_delay is None else settlement_delay
        )
        # The chain adapter polls until mined, so the outer bound covers its receipt wait.
        self.call_timeout = float(
            call_timeout or (config.EXTERNAL_CALL_TIMEOUT_SECONDS + config.CHAIN_RECEIPT_TIMEOUT_SECONDS)
        )
        self._sleep = sleep

    async def verify(self, confirmation_handle: str, token_address: str, wallet_address: str, side: str) -> TransactionRecord:
        if self.settlement_delay > 0:
            await self._sleep(self.settlement_delay)

        try:
            record = await asyncio.wait_for(
                self.chain.get_finalized_transaction(confirmation_handle),
                timeout=self.call_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ChainError("finalized transaction lookup timed out", tx_hash=confirmation_handle) from exc
        except ChainError:
            raise
        except Exception as exc:
            raise ChainError(f"finalized transaction lookup failed: {exc}", tx_hash=confirmation_handle) from exc

        if record is None:
            raise _failed(ChainError("transaction not found on chain", tx_hash=confirmation_handle), side)
        if not record.succeeded:
            error = f"transaction failed on chain: {record.error or 'unknown'}"
            raise _failed(ChainError(error, tx_hash=confirmation_handle), side)

        delta = record.token_delta(token_address, wallet_address)
        if side == SIDE_BUY and delta <= 0:
            raise _failed(BalanceMismatch("no tokens were received in the transaction", tx_hash=confirmation_handle), side)
        if side == SIDE_SELL and delta >= 0:
            raise _failed(BalanceMismatch("token balance did not decrease after sell", tx_hash=confirmation_handle), side)

        logger.info(
            "VERIFY_OK side=%s token=%s tx=%s delta=%s block=%s",
            side,
            token_address,
            confirmation_handle,
            delta,
            record.block_number,
        )
        return record

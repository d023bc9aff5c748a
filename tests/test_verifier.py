from __future__ import annotations

import asyncio
import unittest

from web3.exceptions import TransactionNotFound

from trading.chain import TRANSFER_TOPIC, TokenTransfer, TransactionRecord, Web3Chain, parse_transfers
from trading.errors import BalanceMismatch, ChainError
from trading.verifier import SIDE_BUY, SIDE_SELL, TradeVerifier

TOKEN = "0x" + "11" * 20
WALLET = "0x" + "22" * 20
POOL = "0x" + "33" * 20


class FakeChain:
    def __init__(self, record=None, error: Exception | None = None, delay: float = 0.0) -> None:
        self.record = record
        self.error = error
        self.delay = delay
        self.handles: list[str] = []

    async def get_finalized_transaction(self, handle: str):
        self.handles.append(handle)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.record


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _record(*transfers: TokenTransfer, succeeded: bool = True) -> TransactionRecord:
    return TransactionRecord(tx_hash="0xabc", succeeded=succeeded, block_number=10, transfers=list(transfers))


class TradeVerifierTests(unittest.IsolatedAsyncioTestCase):
    def _verifier(self, chain: FakeChain, **kwargs) -> tuple[TradeVerifier, RecordingSleep]:
        sleep = RecordingSleep()
        return TradeVerifier(chain, settlement_delay=2, sleep=sleep, **kwargs), sleep

    async def test_buy_that_delivered_tokens_verifies(self) -> None:
        chain = FakeChain(_record(TokenTransfer(TOKEN, POOL, WALLET, 5_000)))
        verifier, sleep = self._verifier(chain)
        record = await verifier.verify("0xabc", TOKEN, WALLET, SIDE_BUY)
        self.assertEqual(record.token_delta(TOKEN, WALLET), 5_000)
        self.assertEqual(sleep.calls, [2.0])
        self.assertEqual(chain.handles, ["0xabc"])

    async def test_missing_transaction_is_chain_error(self) -> None:
        verifier, _ = self._verifier(FakeChain(None))
        with self.assertRaises(ChainError) as ctx:
            await verifier.verify("0xabc", TOKEN, WALLET, SIDE_BUY)
        self.assertNotIsInstance(ctx.exception, BalanceMismatch)
        self.assertEqual(ctx.exception.tx_hash, "0xabc")

    async def test_reverted_transaction_is_chain_error(self) -> None:
        verifier, _ = self._verifier(FakeChain(_record(succeeded=False)))
        with self.assertRaises(ChainError):
            await verifier.verify("0xabc", TOKEN, WALLET, SIDE_BUY)

    async def test_buy_without_received_tokens_is_balance_mismatch(self) -> None:
        other = "0x" + "44" * 20
        verifier, _ = self._verifier(FakeChain(_record(TokenTransfer(TOKEN, POOL, other, 5_000))))
        with self.assertRaises(BalanceMismatch):
            await verifier.verify("0xabc", TOKEN, WALLET, SIDE_BUY)

    async def test_sell_requires_balance_decrease(self) -> None:
        sold = _record(TokenTransfer(TOKEN, WALLET, POOL, 5_000))
        verifier, _ = self._verifier(FakeChain(sold))
        record = await verifier.verify("0xabc", TOKEN, WALLET, SIDE_SELL)
        self.assertEqual(record.token_delta(TOKEN, WALLET), -5_000)

        verifier, _ = self._verifier(FakeChain(_record()))
        with self.assertRaises(BalanceMismatch):
            await verifier.verify("0xabc", TOKEN, WALLET, SIDE_SELL)

    async def test_lookup_failures_become_chain_errors(self) -> None:
        verifier, _ = self._verifier(FakeChain(error=ConnectionError("rpc down")))
        with self.assertRaises(ChainError):
            await verifier.verify("0xabc", TOKEN, WALLET, SIDE_BUY)

        verifier, _ = self._verifier(FakeChain(_record(), delay=0.5), call_timeout=0.05)
        with self.assertRaises(ChainError):
            await verifier.verify("0xabc", TOKEN, WALLET, SIDE_BUY)


class ParseTransfersTests(unittest.TestCase):
    def test_parses_erc20_transfer_logs(self) -> None:
        logs = [
            {
                "address": TOKEN.upper().replace("0X", "0x"),
                "topics": [
                    "0x" + TRANSFER_TOPIC,
                    "0x" + "0" * 24 + POOL[2:],
                    "0x" + "0" * 24 + WALLET[2:],
                ],
                "data": hex(1234),
            },
            {"address": TOKEN, "topics": ["0x" + "ff" * 32, "0x00", "0x00"], "data": "0x01"},
            {"address": TOKEN, "topics": ["0x" + TRANSFER_TOPIC], "data": "0x01"},
        ]
        transfers = parse_transfers(logs)
        self.assertEqual(transfers, [TokenTransfer(TOKEN, POOL, WALLET, 1234)])

    def test_token_delta_nets_in_and_out(self) -> None:
        record = _record(
            TokenTransfer(TOKEN, POOL, WALLET, 1000),
            TokenTransfer(TOKEN, WALLET, POOL, 300),
            TokenTransfer("0x" + "55" * 20, POOL, WALLET, 999),
        )
        self.assertEqual(record.token_delta(TOKEN.upper().replace("0X", "0x"), WALLET), 700)


class FakeEth:
    """Receipt source that reports the transaction as unmined for the first ``pending`` lookups."""

    def __init__(self, pending: int, block_number: int = 100, mined_at: int = 100) -> None:
        self.pending = pending
        self.block_number = block_number
        self.mined_at = mined_at
        self.lookups = 0

    def get_transaction_receipt(self, tx_hash):
        self.lookups += 1
        if self.lookups <= self.pending:
            raise TransactionNotFound(f"Transaction with hash: {tx_hash!r} not found.")
        return {
            "blockNumber": self.mined_at,
            "status": 1,
            "logs": [
                {
                    "address": TOKEN,
                    "topics": [
                        "0x" + TRANSFER_TOPIC,
                        "0x" + "0" * 24 + POOL[2:],
                        "0x" + "0" * 24 + WALLET[2:],
                    ],
                    "data": hex(777),
                }
            ],
        }


def _chain(eth: FakeEth, sleep: RecordingSleep | None = None, **kwargs) -> Web3Chain:
    return Web3Chain(
        w3=type("FakeWeb3", (), {"eth": eth})(),
        poll_seconds=0.5,
        sleep=(lambda seconds: sleep.calls.append(seconds)) if sleep is not None else (lambda seconds: None),
        **kwargs,
    )


class Web3ChainTests(unittest.IsolatedAsyncioTestCase):
    async def test_pending_transaction_is_polled_until_mined(self) -> None:
        eth = FakeEth(pending=2)
        sleep = RecordingSleep()
        record = await _chain(eth, sleep, receipt_timeout=30).get_finalized_transaction("0xabc")
        self.assertTrue(record.succeeded)
        self.assertEqual(record.token_delta(TOKEN, WALLET), 777)
        self.assertEqual(eth.lookups, 3)
        self.assertEqual(sleep.calls, [0.5, 0.5])

    async def test_late_buy_still_verifies(self) -> None:
        eth = FakeEth(pending=1)
        verifier = TradeVerifier(_chain(eth, receipt_timeout=30), settlement_delay=0)
        record = await verifier.verify("0xabc", TOKEN, WALLET, SIDE_BUY)
        self.assertEqual(record.token_delta(TOKEN, WALLET), 777)
        self.assertEqual(eth.lookups, 2)

    async def test_shallow_receipt_waits_for_confirmation_depth(self) -> None:
        eth = FakeEth(pending=0, block_number=100, mined_at=100)
        chain = _chain(eth, receipt_timeout=30, min_confirmations=2)

        def advance(seconds: float) -> None:
            eth.block_number += 1

        chain._sleep = advance
        record = await chain.get_finalized_transaction("0xabc")
        self.assertEqual(record.block_number, 100)
        self.assertEqual(eth.lookups, 2)

    async def test_never_mined_returns_none_after_deadline(self) -> None:
        eth = FakeEth(pending=10**6)
        self.assertIsNone(await _chain(eth, receipt_timeout=0).get_finalized_transaction("0xabc"))
        self.assertEqual(eth.lookups, 1)


if __name__ == "__main__":
    unittest.main()

from __future__ import annotations

import unittest
from decimal import Decimal
from types import SimpleNamespace

from web3.exceptions import Web3Exception

from trading.errors import DataUnavailable
from trading.live_executor import LiveSwapExecutor

WALLET = "0x" + "ab" * 20


class FakeWeb3:
    def __init__(self, balance_wei: int | None = None, error: Exception | None = None) -> None:
        self.eth = SimpleNamespace(get_balance=self._get_balance)
        self.balance_wei = balance_wei
        self.error = error

    def _get_balance(self, address):
        if self.error is not None:
            raise self.error
        return self.balance_wei

    @staticmethod
    def to_checksum_address(address):
        return address

    @staticmethod
    def from_wei(value, unit):
        return Decimal(value) / Decimal(10**18)


class NativeBalanceTests(unittest.IsolatedAsyncioTestCase):
    @staticmethod
    def _blank_executor(w3: FakeWeb3) -> LiveSwapExecutor:
        executor = LiveSwapExecutor.__new__(LiveSwapExecutor)
        executor.w3 = w3
        return executor

    async def test_balance_in_ether(self) -> None:
        executor = self._blank_executor(FakeWeb3(balance_wei=25 * 10**16))
        self.assertAlmostEqual(await executor.native_balance(WALLET), 0.25)

    async def test_rpc_errors_become_data_unavailable(self) -> None:
        for error in (Web3Exception("header not found"), RuntimeError("boom")):
            executor = self._blank_executor(FakeWeb3(error=error))
            with self.assertRaises(DataUnavailable):
                await executor.native_balance(WALLET)


if __name__ == "__main__":
    unittest.main()

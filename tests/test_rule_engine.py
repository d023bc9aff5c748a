from __future__ import annotations

import asyncio
import os
import tempfile
import unittest

from database.db import Storage
from monitor.dexscreener import TokenMetrics
from trading.errors import DataUnavailable
from trading.rule_engine import RuleEngine

TOKEN = "0x" + "cd" * 20


class FakeMarketData:
    def __init__(self, metrics: TokenMetrics | None = None, delay: float = 0.0, error: Exception | None = None) -> None:
        self.metrics = metrics
        self.delay = delay
        self.error = error
        self.calls: list[str] = []

    async def get_token_metrics(self, token_address: str) -> TokenMetrics:
        self.calls.append(token_address)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.metrics


class RuleEngineTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmpdir = tempfile.TemporaryDirectory()
        self.storage = Storage(f"sqlite:///{os.path.join(self._tmpdir.name, 'rules.db')}")
        self.storage.init_db()
        self.user = self.storage.get_or_create_user(2002)
        self.token = TokenMetrics(
            address=TOKEN,
            symbol="CD",
            price=0.002,
            market_cap=5_000_000,
            liquidity=80_000,
            volume=120_000,
            price_change=12.5,
            volume_change=40.0,
            category="meme",
            num_buys=300,
            num_sells=150,
        )

    def tearDown(self) -> None:
        self.storage.close()
        self._tmpdir.cleanup()

    def _rule(self, criteria=None, metrics=None):
        return self.storage.create_rule(
            self.user.id,
            "scenario",
            conditions={"take_profit": 20, "stop_loss": 10, "market_cap": {"min": 1e6, "max": 1e7}},
            criteria=criteria,
            metrics=metrics,
        )

    async def test_rule_without_criteria_or_metrics_matches(self) -> None:
        rule = self._rule()
        engine = RuleEngine(self.storage, FakeMarketData(self.token))
        result = await engine.evaluate_rule(rule.id, TOKEN)
        self.assertTrue(result.match)
        self.assertIs(result.token_data, self.token)
        self.assertEqual(result.rule.id, rule.id)
        triggers = self.storage.list_rule_triggers(rule.id)
        self.assertEqual(len(triggers), 1)
        self.assertEqual(triggers[0].token_symbol, "CD")
        self.assertEqual(triggers[0].trigger_market_cap, 5_000_000)

    async def test_all_criteria_and_metrics_must_hold(self) -> None:
        rule = self._rule(
            criteria=[
                {"criteria_type": "market_cap", "operator": "between", "value": 1e6, "secondary_value": 1e7},
                {"criteria_type": "category", "operator": "=", "value": "MEME"},
                {"criteria_type": "num_buys", "operator": ">=", "value": {"min": 100}},
            ],
            metrics=[{"metric_type": "volume_change", "direction": "increase", "threshold": 20}],
        )
        engine = RuleEngine(self.storage, FakeMarketData(self.token))
        self.assertTrue((await engine.evaluate_rule(rule.id, TOKEN)).match)

        failing = self._rule(
            criteria=[{"criteria_type": "liquidity", "operator": ">", "value": 1_000_000}],
            metrics=[{"metric_type": "volume_change", "direction": "increase", "threshold": 20}],
        )
        result = await engine.evaluate_rule(failing.id, TOKEN)
        self.assertFalse(result.match)
        self.assertEqual(self.storage.list_rule_triggers(failing.id), [])

    async def test_metric_direction_mismatch_blocks_match(self) -> None:
        rule = self._rule(metrics=[{"metric_type": "price_change", "direction": "decrease", "threshold": 5}])
        engine = RuleEngine(self.storage, FakeMarketData(self.token))
        self.assertFalse((await engine.evaluate_rule(rule.id, TOKEN)).match)

    async def test_market_data_errors_propagate(self) -> None:
        rule = self._rule()
        engine = RuleEngine(self.storage, FakeMarketData(error=DataUnavailable("down")))
        with self.assertRaises(DataUnavailable):
            await engine.evaluate_rule(rule.id, TOKEN)

    async def test_slow_market_data_times_out_as_unavailable(self) -> None:
        rule = self._rule()
        engine = RuleEngine(self.storage, FakeMarketData(self.token, delay=0.5), call_timeout=0.05)
        with self.assertRaises(DataUnavailable):
            await engine.evaluate_rule(rule.id, TOKEN)

    async def test_update_rule_stats(self) -> None:
        rule = self._rule()
        engine = RuleEngine(self.storage, FakeMarketData(self.token))
        engine.update_rule_stats(rule.id, False)
        self.assertEqual(self.storage.get_rule(rule.id).failure_count, 1)


if __name__ == "__main__":
    unittest.main()

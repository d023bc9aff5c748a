from __future__ import annotations

import unittest

import config
from monitor.dexscreener import DexScreenerMarketData, best_pair, metrics_from_pair
from trading.errors import DataUnavailable
from utils.http_client import HttpResult

TOKEN_A = "0x" + "a0" * 20
TOKEN_B = "0x" + "b0" * 20
TOKEN_C = "0x" + "c0" * 20


class ConfigPatchMixin:
    def setUp(self) -> None:
        super().setUp()
        self._cfg_old: dict[str, object] = {}

    def patch_cfg(self, **kwargs: object) -> None:
        for key, value in kwargs.items():
            if key not in self._cfg_old:
                self._cfg_old[key] = getattr(config, key, None)
            setattr(config, key, value)

    def tearDown(self) -> None:
        for key, value in self._cfg_old.items():
            setattr(config, key, value)
        super().tearDown()


def _pair(address, liquidity, market_cap, chain="base", quote="WETH", **extra):
    pair = {
        "chainId": chain,
        "dexId": "uniswap",
        "pairAddress": "0x" + "99" * 20,
        "baseToken": {"address": address.upper().replace("0X", "0x"), "symbol": "TKN", "name": "Token"},
        "quoteToken": {"symbol": quote},
        "priceUsd": "0.003",
        "priceNative": "0.000001",
        "liquidity": {"usd": liquidity},
        "marketCap": market_cap,
        "volume": {"h24": 24_000, "h1": 1_500},
        "priceChange": {"h24": -4.5},
        "txns": {"h24": {"buys": 120, "sells": 80}},
    }
    pair.update(extra)
    return pair


class FakeHttp:
    def __init__(self, routes: dict[str, HttpResult]) -> None:
        self.routes = routes
        self.urls: list[str] = []

    async def get_json(self, url, *, source, params=None, max_attempts=None):
        self.urls.append(url)
        for fragment, result in self.routes.items():
            if fragment in url:
                return result
        return HttpResult(ok=False, status=404, data=None, error="not found")

    async def close(self) -> None:
        pass


class PairParsingTests(unittest.TestCase):
    def test_metrics_from_pair(self) -> None:
        metrics = metrics_from_pair(_pair(TOKEN_A, 50_000, None, fdv=2_000_000, labels=["Meme"]))
        self.assertEqual(metrics.address, TOKEN_A)
        self.assertAlmostEqual(metrics.price, 0.003)
        self.assertEqual(metrics.market_cap, 2_000_000)
        self.assertEqual(metrics.liquidity, 50_000)
        self.assertEqual(metrics.category, "meme")
        # 1500 per hour over a day is 36000 against 24000 traded: +50%.
        self.assertAlmostEqual(metrics.volume_change, 50.0)
        self.assertEqual((metrics.num_buys, metrics.num_sells), (120, 80))
        self.assertAlmostEqual(metrics.native_price_usd, 3000.0)

    def test_non_native_quote_has_no_native_price(self) -> None:
        metrics = metrics_from_pair(_pair(TOKEN_A, 50_000, 1e6, quote="USDC", volume={}))
        self.assertEqual(metrics.native_price_usd, 0.0)
        self.assertEqual(metrics.volume_change, 0.0)
        self.assertEqual(metrics.category, "uniswap")

    def test_best_pair_picks_deepest_on_chain(self) -> None:
        pairs = [
            _pair(TOKEN_A, 10_000, 1e6),
            _pair(TOKEN_A, 90_000, 1e6),
            _pair(TOKEN_A, 500_000, 1e6, chain="ethereum"),
            "garbage",
        ]
        self.assertEqual(best_pair(pairs, "base")["liquidity"]["usd"], 90_000)
        self.assertIsNone(best_pair(pairs, "solana"))


class MarketDataTests(ConfigPatchMixin, unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.patch_cfg(
            CHAIN_ID="base",
            DEX_SEARCH_QUERIES=["base"],
            DEX_PROFILES_SOURCE_ENABLED=False,
            DEXSCREENER_API="https://dex.test",
        )

    async def test_get_token_metrics(self) -> None:
        http = FakeHttp({"/tokens/": HttpResult(True, 200, {"pairs": [_pair(TOKEN_A, 50_000, 5e6)]})})
        market = DexScreenerMarketData(http=http)
        metrics = await market.get_token_metrics(TOKEN_A.upper().replace("0X", "0x"))
        self.assertEqual(metrics.market_cap, 5e6)
        self.assertEqual(http.urls, [f"https://dex.test/tokens/{TOKEN_A}"])

    async def test_get_token_metrics_unavailable(self) -> None:
        market = DexScreenerMarketData(http=FakeHttp({"/tokens/": HttpResult(True, 200, {"pairs": []})}))
        with self.assertRaises(DataUnavailable):
            await market.get_token_metrics(TOKEN_A)
        market = DexScreenerMarketData(http=FakeHttp({}))
        with self.assertRaises(DataUnavailable):
            await market.get_token_metrics(TOKEN_A)
        with self.assertRaises(DataUnavailable):
            await market.get_token_metrics("")

    async def test_list_candidates_filters_dedupes_and_sorts(self) -> None:
        pairs = [
            _pair(TOKEN_A, 20_000, 5e6),
            _pair(TOKEN_A, 60_000, 5e6),
            _pair(TOKEN_B, 90_000, 2e6),
            _pair(TOKEN_C, 500_000, 5e8),
            _pair("0x" + "0" * 40, 1_000_000, 5e6),
        ]
        market = DexScreenerMarketData(http=FakeHttp({"/search": HttpResult(True, 200, {"pairs": pairs})}))
        rows = await market.list_candidates([("market_cap", {"min": 1e6, "max": 1e7}), ("take_profit", 20)], limit=10)
        self.assertEqual([r.address for r in rows], [TOKEN_B, TOKEN_A])
        self.assertEqual(rows[1].liquidity, 60_000)

        rows = await market.list_candidates([], limit=1)
        self.assertEqual([r.address for r in rows], [TOKEN_C])

    async def test_list_candidates_raises_when_every_source_fails(self) -> None:
        market = DexScreenerMarketData(http=FakeHttp({"/search": HttpResult(False, 503, None, "http_503")}))
        with self.assertRaises(DataUnavailable):
            await market.list_candidates([], limit=5)


if __name__ == "__main__":
    unittest.main()

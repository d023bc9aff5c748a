"""DexScreener market data: token snapshots and discovery candidates."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Iterable

import config
from trading.conditions import condition_passes
from trading.errors import DataUnavailable
from utils.addressing import is_tradable_address, normalize_address
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)

NATIVE_QUOTE_SYMBOLS = ("WETH", "ETH")


@dataclass
class TokenMetrics:
    address: str
    symbol: str = "N/A"
    name: str = "Unknown"
    price: float = 0.0
    market_cap: float = 0.0
    liquidity: float = 0.0
    volume: float = 0.0
    price_change: float = 0.0
    volume_change: float = 0.0
    category: str = ""
    num_buys: int = 0
    num_sells: int = 0
    pair_address: str = ""
    native_price_usd: float = 0.0


def _float(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def _pair_liquidity(pair: dict[str, Any]) -> float:
    return _float((pair.get("liquidity") or {}).get("usd"))


def metrics_from_pair(pair: dict[str, Any]) -> TokenMetrics:
    base = pair.get("baseToken") or {}
    volume = pair.get("volume") or {}
    txns = (pair.get("txns") or {}).get("h24") or {}
    labels = pair.get("labels") or []

    volume_h24 = _float(volume.get("h24"))
    volume_h1 = _float(volume.get("h1"))
    # Last hour's volume annualised to a day, relative to the 24h total.
    volume_change = ((volume_h1 * 24.0 - volume_h24) / volume_h24 * 100.0) if volume_h24 > 0 else 0.0

    category = str(labels[0]) if isinstance(labels, list) and labels else str(pair.get("dexId") or "")
    quote = pair.get("quoteToken") or {}
    native_price_usd = 0.0
    price_native = _float(pair.get("priceNative"))
    if str(quote.get("symbol") or "").upper() in NATIVE_QUOTE_SYMBOLS and price_native > 0:
        native_price_usd = _float(pair.get("priceUsd")) / price_native
    return TokenMetrics(
        address=normalize_address(base.get("address")),
        symbol=str(base.get("symbol") or "N/A"),
        name=str(base.get("name") or "Unknown"),
        price=_float(pair.get("priceUsd")),
        market_cap=_float(pair.get("marketCap") or pair.get("fdv")),
        liquidity=_pair_liquidity(pair),
        volume=volume_h24,
        price_change=_float((pair.get("priceChange") or {}).get("h24")),
        volume_change=round(volume_change, 4),
        category=category.lower(),
        num_buys=int(_float(txns.get("buys"))),
        num_sells=int(_float(txns.get("sells"))),
        pair_address=str(pair.get("pairAddress") or ""),
        native_price_usd=native_price_usd,
    )


def best_pair(pairs: Iterable[dict[str, Any]], chain_id: str) -> dict[str, Any] | None:
    """Deepest-liquidity pair on ``chain_id``."""
    best = None
    best_liq = -1.0
    for pair in pairs or []:
        if not isinstance(pair, dict):
            continue
        if str(pair.get("chainId", "")).lower() != chain_id.lower():
            continue
        liq = _pair_liquidity(pair)
        if liq > best_liq:
            best_liq = liq
            best = pair
    return best


def _condition_pairs(conditions: Iterable[Any]) -> list[tuple[str, Any]]:
    out: list[tuple[str, Any]] = []
    for cond in conditions or []:
        if isinstance(cond, dict):
            out.append((str(cond.get("condition_type") or ""), cond.get("value")))
        elif isinstance(cond, tuple):
            out.append((str(cond[0]), cond[1]))
        else:
            out.append((str(getattr(cond, "condition_type", "") or ""), getattr(cond, "value", None)))
    return out


class DexScreenerMarketData:
    def __init__(self, http: ResilientHttpClient | None = None) -> None:
        self._http = http or ResilientHttpClient(
            timeout_seconds=float(config.DEX_TIMEOUT),
            headers={"Accept": "application/json, text/plain, */*"},
            source_limits={"dexscreener": 8, "dex_profiles": 4},
        )

    async def close(self) -> None:
        await self._http.close()

    async def _fetch_json(self, url: str, source: str) -> Any | None:
        result = await self._http.get_json(url, source=source, max_attempts=int(config.DEX_RETRIES))
        if result.ok:
            return result.data
        if result.status == 429:
            logger.warning("RATE_LIMIT source=%s status=429 url=%s", source, url)
        return None

    async def get_token_metrics(self, token_address: str) -> TokenMetrics:
        address = normalize_address(token_address)
        if not address:
            raise DataUnavailable(f"invalid token address: {token_address!r}")
        data = await self._fetch_json(f"{config.DEXSCREENER_API}/tokens/{address}", source="dexscreener")
        if not isinstance(data, dict):
            raise DataUnavailable(f"dexscreener unavailable for {address}")
        pair = best_pair(data.get("pairs") or [], config.CHAIN_ID)
        if pair is None:
            raise DataUnavailable(f"no {config.CHAIN_ID} pair for {address}")
        return metrics_from_pair(pair)

    async def list_candidates(self, conditions: Iterable[Any], limit: int | None = None) -> list[TokenMetrics]:
        """Coarse discovery: tokens from search and profiles that pass the rule's range filters."""
        limit = max(1, int(limit or config.DISCOVERY_CANDIDATE_LIMIT))
        filters = _condition_pairs(conditions)

        tasks = [self._search(query) for query in (config.DEX_SEARCH_QUERIES or [config.DEX_SEARCH_QUERY])]
        if config.DEX_PROFILES_SOURCE_ENABLED:
            tasks.append(self._profiles())
        results = await asyncio.gather(*tasks, return_exceptions=True)

        pools: list[list[TokenMetrics]] = []
        for rows in results:
            if isinstance(rows, BaseException):
                logger.warning("DISCOVERY source failed: %s", rows)
                continue
            if rows is not None:
                pools.append(rows)
        if not pools:
            raise DataUnavailable("all discovery sources failed")

        by_address: dict[str, TokenMetrics] = {}
        for rows in pools:
            for token in rows:
                if not is_tradable_address(token.address):
                    continue
                existing = by_address.get(token.address)
                if existing is None or token.liquidity > existing.liquidity:
                    by_address[token.address] = token

        out = [t for t in by_address.values() if all(condition_passes(ct, v, t) for ct, v in filters)]
        out.sort(key=lambda t: t.liquidity, reverse=True)
        logger.debug("DISCOVERY raw=%s passed=%s limit=%s", len(by_address), len(out), limit)
        return out[:limit]

    async def _search(self, query: str) -> list[TokenMetrics] | None:
        data = await self._fetch_json(f"{config.DEXSCREENER_API}/search?q={query}", source="dexscreener")
        if not isinstance(data, dict):
            return None
        out = []
        for pair in data.get("pairs") or []:
            if isinstance(pair, dict) and str(pair.get("chainId", "")).lower() == config.CHAIN_ID.lower():
                out.append(metrics_from_pair(pair))
        return out

    async def _profiles(self) -> list[TokenMetrics] | None:
        data = await self._fetch_json(config.DEXSCREENER_PROFILES_URL, source="dex_profiles")
        if not isinstance(data, list):
            return None
        addresses = []
        for row in data:
            if not isinstance(row, dict):
                continue
            if str(row.get("chainId", "")).lower() != config.CHAIN_ID.lower():
                continue
            address = normalize_address(row.get("tokenAddress"))
            if address and address not in addresses:
                addresses.append(address)
        rows = await asyncio.gather(*(self.get_token_metrics(a) for a in addresses), return_exceptions=True)
        return [row for row in rows if isinstance(row, TokenMetrics)]

"""Rule evaluation: criteria/metrics against live token metrics."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterable

import config
from database.models import RULE_KIND_AUTONOMOUS
from trading.conditions import evaluate, evaluate_category, evaluate_change
from trading.errors import ConfigurationError, DataUnavailable

if TYPE_CHECKING:
    from database.db import Storage
    from database.models import Rule
    from monitor.dexscreener import TokenMetrics

logger = logging.getLogger(__name__)

REQUIRED_EXIT_CONDITIONS = ("take_profit", "stop_loss")

_CRITERIA_FIELDS = {
    "market_cap": "market_cap",
    "price": "price",
    "liquidity": "liquidity",
    "volume": "volume",
    "num_buys": "num_buys",
    "num_sells": "num_sells",
}
_METRIC_FIELDS = {
    "volume_change": "volume_change",
    "price_change": "price_change",
}


def validate_rule_conditions(kind: str, condition_types: Iterable[str]) -> None:
    """Reject autonomous rules that lack a take-profit or stop-loss condition."""
    if kind != RULE_KIND_AUTONOMOUS:
        return
    present = {str(c).strip().lower() for c in condition_types}
    missing = [name for name in REQUIRED_EXIT_CONDITIONS if name not in present]
    if missing:
        raise ConfigurationError(f"autonomous rule requires exit conditions: missing {', '.join(missing)}")


def rule_is_runnable(rule: Any) -> bool:
    try:
        validate_rule_conditions(rule.kind, [c.condition_type for c in (rule.conditions or [])])
    except ConfigurationError:
        return False
    return True


@dataclass
class RuleEvaluation:
    match: bool
    token_data: TokenMetrics | None = None
    rule: Rule | None = None


class RuleEngine:
    def __init__(self, storage: Storage, market_data: Any, call_timeout: float | None = None) -> None:
        self.storage = storage
        self.market_data = market_data
        self.call_timeout = float(call_timeout or config.EXTERNAL_CALL_TIMEOUT_SECONDS)

    async def fetch_token_metrics(self, token_address: str) -> TokenMetrics:
        try:
            return await asyncio.wait_for(self.market_data.get_token_metrics(token_address), timeout=self.call_timeout)
        except asyncio.TimeoutError as exc:
            raise DataUnavailable(f"token metrics timed out for {token_address}") from exc

    async def evaluate_rule(self, rule_id: int, token_address: str) -> RuleEvaluation:
        rule = self.storage.get_rule(rule_id)
        criteria = self.storage.get_rule_criteria(rule_id)
        metrics = self.storage.get_rule_metrics(rule_id)

        token_data = await self.fetch_token_metrics(token_address)

        if not self.criteria_match(criteria, token_data):
            return RuleEvaluation(match=False, token_data=token_data, rule=rule)
        if not self.metrics_match(metrics, token_data):
            return RuleEvaluation(match=False, token_data=token_data, rule=rule)

        self.storage.record_rule_trigger(rule_id, token_address, token_data)
        logger.info(
            "RULE_MATCH rule_id=%s token=%s symbol=%s price=%s mcap=%s liq=%s",
            rule_id,
            token_address,
            token_data.symbol,
            token_data.price,
            token_data.market_cap,
            token_data.liquidity,
        )
        return RuleEvaluation(match=True, token_data=token_data, rule=rule)

    @staticmethod
    def criteria_match(criteria: Iterable[Any], token_data: Any) -> bool:
        for criterion in criteria:
            ctype = str(criterion.criteria_type or "").strip().lower()
            if ctype == "category":
                if not evaluate_category(criterion.value, getattr(token_data, "category", None)):
                    return False
                continue
            field = _CRITERIA_FIELDS.get(ctype)
            if field is None:
                logger.debug("RULE_CRITERION skipped unknown type=%s", ctype)
                continue
            expected = criterion.value
            if isinstance(expected, dict):
                # {"min": n} style payloads used by the buys/sells counters.
                expected = expected.get("min")
            if not evaluate(criterion.operator or ">=", getattr(token_data, field, None), expected, criterion.secondary_value):
                return False
        return True

    @staticmethod
    def metrics_match(metrics: Iterable[Any], token_data: Any) -> bool:
        for metric in metrics:
            field = _METRIC_FIELDS.get(str(metric.metric_type or "").strip().lower())
            if field is None:
                logger.debug("RULE_METRIC skipped unknown type=%s", metric.metric_type)
                continue
            if not evaluate_change(metric.direction, getattr(token_data, field, None), metric.threshold):
                return False
        return True

    def update_rule_stats(self, rule_id: int, success: bool) -> None:
        self.storage.update_rule_stats(rule_id, success)

"""Pure match/no-match checks for single rule criteria."""

from __future__ import annotations

import logging
import math
from typing import Any

logger = logging.getLogger(__name__)

NUMERIC_OPERATORS = (">", "<", "=", ">=", "<=", "between")
CHANGE_DIRECTIONS = ("increase", "decrease")

# Condition types that filter discovery candidates. Exit and sizing
# conditions (take_profit, stop_loss, trailing_stop, buy_amount) are not filters.
DISCOVERY_CONDITION_FIELDS = {
    "market_cap": "market_cap",
    "price": "price",
    "liquidity": "liquidity",
    "category": "category",
    "volume_change": "volume_change",
}


def _as_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number):
        return None
    return number


def evaluate(operator: str, actual: Any, expected: Any, secondary: Any = None) -> bool:
    """Compare ``actual`` against ``expected`` with ``operator``.

    ``between`` is inclusive on both ends and uses ``secondary`` as the upper
    bound. Unknown operators and non-numeric inputs evaluate to False.
    """
    op = str(operator or "").strip().lower()
    a = _as_number(actual)
    e = _as_number(expected)
    if a is None or e is None:
        return False
    if op == ">":
        return a > e
    if op == "<":
        return a < e
    if op == "=":
        return a == e
    if op == ">=":
        return a >= e
    if op == "<=":
        return a <= e
    if op == "between":
        upper = _as_number(secondary)
        if upper is None:
            return False
        return e <= a <= upper
    logger.debug("CONDITION unknown operator=%r", operator)
    return False


def evaluate_change(direction: str, actual: Any, threshold: Any) -> bool:
    """True when the signed change moves in ``direction`` by at least ``|threshold|``."""
    a = _as_number(actual)
    t = _as_number(threshold)
    if a is None or t is None:
        return False
    d = str(direction or "").strip().lower()
    if d == "increase":
        return a > 0 and abs(a) >= abs(t)
    if d == "decrease":
        return a < 0 and abs(a) >= abs(t)
    return False


def evaluate_category(expected: Any, actual: Any) -> bool:
    if not isinstance(expected, str) or not isinstance(actual, str):
        return False
    return expected.strip().lower() == actual.strip().lower()


def evaluate_range(actual: Any, bounds: Any) -> bool:
    """Inclusive ``{"min": x, "max": y}`` check; either bound may be omitted."""
    a = _as_number(actual)
    if a is None:
        return False
    if not isinstance(bounds, dict):
        # A bare number is treated as an upper bound.
        upper = _as_number(bounds)
        return upper is not None and a <= upper
    lo = _as_number(bounds.get("min"))
    hi = _as_number(bounds.get("max"))
    if lo is not None and a < lo:
        return False
    if hi is not None and a > hi:
        return False
    return True


def condition_passes(condition_type: str, value: Any, metrics: Any) -> bool:
    """Apply one stored discovery condition to a token snapshot.

    ``metrics`` is anything exposing the TokenMetrics attribute names.
    """
    ctype = str(condition_type or "").strip().lower()
    field = DISCOVERY_CONDITION_FIELDS.get(ctype)
    if field is None:
        return True
    actual = getattr(metrics, field, None)
    if ctype == "category":
        return evaluate_category(value, actual)
    if ctype == "volume_change":
        if not isinstance(value, dict):
            return False
        return evaluate_change(value.get("direction", "increase"), actual, value.get("threshold"))
    return evaluate_range(actual, value)

"""Exit checks for open autonomous positions."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from html import escape
from typing import Any, Awaitable

import config
from bot import messages
from trading.errors import AutonomousError, ChainError, DataUnavailable, StorageError, SubmissionError
from trading.verifier import SIDE_SELL

logger = logging.getLogger(__name__)

REASON_STOP_LOSS = "stop_loss"
REASON_TAKE_PROFIT = "take_profit"
REASON_TRAILING_STOP = "trailing_stop"


@dataclass
class ExitThresholds:
    """Fractions of the entry price (0.1 == 10%)."""

    stop_loss: float
    take_profit: float
    trailing_stop: float | None = None


@dataclass
class ExitDecision:
    reason: str
    pnl: float
    price: float


@dataclass
class CloseResult:
    position_id: int
    token_address: str
    reason: str
    closed: bool
    tx_hash: str = ""
    error: str = ""


def percent_to_fraction(value: Any) -> float | None:
    """Rule conditions store percents (``20`` or ``{"percentage": 20}``)."""
    if isinstance(value, dict):
        value = value.get("percentage", value.get("value"))
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number <= 0:
        return None
    return number / 100.0


def thresholds_for(rule: Any, params: dict[str, Any]) -> ExitThresholds:
    """Exit thresholds from the originating rule, falling back to strategy settings."""
    stop_loss = float(params.get("stop_loss", config.STRATEGY_DEFAULT_STOP_LOSS))
    take_profit = float(params.get("take_profit", config.STRATEGY_DEFAULT_TAKE_PROFIT))
    trailing = None
    if rule is not None:
        stop_loss = percent_to_fraction(rule.condition_value("stop_loss")) or stop_loss
        take_profit = percent_to_fraction(rule.condition_value("take_profit")) or take_profit
        trailing = percent_to_fraction(rule.condition_value("trailing_stop"))
    return ExitThresholds(stop_loss=stop_loss, take_profit=take_profit, trailing_stop=trailing)


def check_exit(entry_price: float, peak_price: float, price: float, thresholds: ExitThresholds) -> ExitDecision | None:
    """At most one reason: stop-loss first, then take-profit, then trailing stop."""
    if entry_price <= 0 or price <= 0:
        return None
    pnl = (price - entry_price) / entry_price
    if pnl <= -thresholds.stop_loss:
        return ExitDecision(REASON_STOP_LOSS, pnl, price)
    if pnl >= thresholds.take_profit:
        return ExitDecision(REASON_TAKE_PROFIT, pnl, price)
    if thresholds.trailing_stop and pnl > 0:
        peak = max(float(peak_price or 0), price)
        if price <= peak * (1.0 - thresholds.trailing_stop):
            return ExitDecision(REASON_TRAILING_STOP, pnl, price)
    return None


async def submit_swap(call: Awaitable[Any], timeout: float | None = None) -> Any:
    """Await a swap submission, turning a timeout into ``SubmissionError``."""
    try:
        return await asyncio.wait_for(call, timeout=float(timeout or config.SWAP_SUBMIT_TIMEOUT_SECONDS))
    except asyncio.TimeoutError as exc:
        raise SubmissionError("swap submission timed out") from exc


class PositionMonitor:
    def __init__(
        self,
        storage: Any,
        market_data: Any,
        swap_provider: Any,
        verifier: Any,
        notifier: Any,
        call_timeout: float | None = None,
    ) -> None:
        self.storage = storage
        self.market_data = market_data
        self.swap_provider = swap_provider
        self.verifier = verifier
        self.notifier = notifier
        self.call_timeout = float(call_timeout or config.EXTERNAL_CALL_TIMEOUT_SECONDS)

    async def run(self, user_id: int, wallet: Any, params: dict[str, Any]) -> list[CloseResult]:
        results: list[CloseResult] = []
        for position in self.storage.list_open_positions(user_id):
            try:
                result = await self.check_position(user_id, wallet, position, params)
            except StorageError:
                raise
            except DataUnavailable as exc:
                logger.info("AUTO_MONITOR price unavailable token=%s: %s", position.token_address, exc)
                continue
            except AutonomousError as exc:
                logger.warning("AUTO_MONITOR failed token=%s: %s", position.token_address, exc)
                continue
            if result is not None:
                results.append(result)
        return results

    async def current_price(self, token_address: str) -> float:
        try:
            metrics = await asyncio.wait_for(self.market_data.get_token_metrics(token_address), timeout=self.call_timeout)
        except asyncio.TimeoutError as exc:
            raise DataUnavailable(f"price lookup timed out for {token_address}") from exc
        price = float(getattr(metrics, "price", 0) or 0)
        if price <= 0:
            raise DataUnavailable(f"no price for {token_address}")
        return price

    async def check_position(self, user_id: int, wallet: Any, position: Any, params: dict[str, Any]) -> CloseResult | None:
        price = await self.current_price(position.token_address)
        peak = float(position.peak_price or position.entry_price or 0)
        if price > peak:
            self.storage.update_position_peak(position.id, price)
            peak = price

        rule = self.storage.get_rule(position.rule_id) if position.rule_id else None
        decision = check_exit(float(position.entry_price), peak, price, thresholds_for(rule, params))
        if decision is None:
            logger.debug(
                "AUTO_MONITOR hold token=%s entry=%s price=%s peak=%s",
                position.token_address,
                position.entry_price,
                price,
                peak,
            )
            return None

        logger.info(
            "AUTO_EXIT_SIGNAL user_id=%s token=%s reason=%s pnl=%.4f",
            user_id,
            position.token_address,
            decision.reason,
            decision.pnl,
        )
        max_slippage = float(params.get("max_slippage", config.STRATEGY_DEFAULT_MAX_SLIPPAGE))
        return await self.close_position(user_id, wallet, position, decision, max_slippage)

    async def close_position(
        self,
        user_id: int,
        wallet: Any,
        position: Any,
        decision: ExitDecision,
        max_slippage: float,
    ) -> CloseResult:
        symbol = escape(position.symbol or position.token_address[:10])
        address = escape(position.token_address)
        tx_hash = ""
        try:
            submission = await submit_swap(
                self.swap_provider.sell(wallet, position.token_address, int(position.token_amount), max_slippage)
            )
            tx_hash = submission.confirmation_handle
            await self.verifier.verify(tx_hash, position.token_address, wallet.address, SIDE_SELL)
        except (SubmissionError, ChainError) as exc:
            logger.warning(
                "AUTO_SELL failed user_id=%s token=%s reason=%s tx=%s error=%s",
                user_id,
                position.token_address,
                decision.reason,
                tx_hash or "-",
                exc,
            )
            try:
                self.storage.record_trade(
                    user_id,
                    position.token_address,
                    SIDE_SELL,
                    float(position.size),
                    status="failed",
                    price=decision.price,
                    tx_hash=tx_hash or None,
                    reason=f"{decision.reason}: {exc}",
                    rule_id=position.rule_id,
                )
            finally:
                await self._notify(
                    user_id,
                    messages.AUTO_SELL_FAILED.format(
                        reason=decision.reason,
                        symbol=symbol,
                        address=address,
                        error=escape(str(exc)),
                    ),
                )
            return CloseResult(position.id, position.token_address, decision.reason, False, tx_hash, str(exc))

        realized = decision.pnl * float(position.size)
        try:
            self.storage.delete_position(position.id)
            self.storage.record_trade(
                user_id,
                position.token_address,
                SIDE_SELL,
                float(position.size),
                status="verified",
                price=decision.price,
                tx_hash=tx_hash,
                reason=decision.reason,
                rule_id=position.rule_id,
                realized_pnl=realized,
            )
        except StorageError as exc:
            logger.error(
                "AUTO_SELL unrecorded user_id=%s token=%s tx=%s storage_error=%s",
                user_id,
                position.token_address,
                tx_hash,
                exc,
            )
            await self._notify(
                user_id,
                messages.AUTO_SELL_UNRECORDED.format(
                    reason=decision.reason,
                    symbol=symbol,
                    address=address,
                    tx_hash=escape(tx_hash),
                    error=escape(str(exc)),
                ),
            )
            raise
        logger.info(
            "AUTO_SELL Live SELL user_id=%s token=%s reason=%s pnl=%.4f realized_eth=%.8f tx=%s",
            user_id,
            position.token_address,
            decision.reason,
            decision.pnl,
            realized,
            tx_hash,
        )
        await self._notify(
            user_id,
            messages.AUTO_SELL_OK.format(
                reason=decision.reason,
                symbol=symbol,
                address=address,
                entry_price=float(position.entry_price),
                exit_price=decision.price,
                pnl_percent=decision.pnl * 100.0,
                pnl_eth=realized,
                tx_hash=escape(tx_hash),
            ),
        )
        return CloseResult(position.id, position.token_address, decision.reason, True, tx_hash)

    async def _notify(self, user_id: int, text: str) -> None:
        try:
            await self.notifier.send(user_id, text)
        except Exception:
            logger.exception("NOTIFY_FAIL user_id=%s", user_id)

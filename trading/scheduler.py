"""Per-user autonomous trading loop: safety, risk gate, exits, discovery, buys."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from html import escape
from typing import Any, Awaitable, Callable

import config
from bot import messages
from database.db import default_strategy_params
from database.models import RULE_KIND_AUTONOMOUS
from trading.errors import AutonomousError, ChainError, DataUnavailable, StorageError, SubmissionError
from trading.position_monitor import CloseResult, PositionMonitor, submit_swap
from trading.rate_limiter import BuyRateLimiter, Clock, utc_now
from trading.rule_engine import RuleEngine, RuleEvaluation, rule_is_runnable
from trading.verifier import SIDE_BUY
from utils.addressing import normalize_address

logger = logging.getLogger(__name__)

SAFETY_REASON_NO_RULES = "no active autonomous rules with take-profit and stop-loss"


class RunState(str, Enum):
    DISABLED = "disabled"
    RUNNING = "running"


@dataclass
class UserRun:
    state: RunState = RunState.DISABLED
    task: asyncio.Task | None = None
    in_tick: bool = False
    ticks: int = 0
    last_tick_at: datetime | None = None


class AutonomousRegistry:
    """In-memory run state keyed by user id. Rebuilt from storage by ``reconcile``."""

    def __init__(self) -> None:
        self._runs: dict[int, UserRun] = {}

    def get(self, user_id: int) -> UserRun:
        run = self._runs.get(user_id)
        if run is None:
            run = UserRun()
            self._runs[user_id] = run
        return run

    def peek(self, user_id: int) -> UserRun | None:
        return self._runs.get(user_id)

    def is_running(self, user_id: int) -> bool:
        run = self._runs.get(user_id)
        return run is not None and run.state is RunState.RUNNING

    def running_users(self) -> list[int]:
        return [uid for uid, run in self._runs.items() if run.state is RunState.RUNNING]

    def runs(self) -> list[UserRun]:
        return list(self._runs.values())

    def tasks(self) -> list[asyncio.Task]:
        return [run.task for run in self._runs.values() if run.task is not None and not run.task.done()]


@dataclass
class TickReport:
    user_id: int
    disabled: bool = False
    discovery_skipped: str = ""
    rate_limited: bool = False
    evaluated: int = 0
    closed: list[CloseResult] = field(default_factory=list)
    bought: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


def buy_amount_for(rule: Any, params: dict[str, Any], portfolio_value: float) -> float:
    """Fixed ``buy_amount`` condition, else a share of the portfolio, else the configured minimum."""
    fixed = rule.condition_value("buy_amount") if rule is not None else None
    if isinstance(fixed, dict):
        fixed = fixed.get("amount", fixed.get("value"))
    try:
        if fixed is not None and float(fixed) > 0:
            return float(fixed)
    except (TypeError, ValueError):
        logger.debug("AUTO_BUY ignoring invalid buy_amount=%r", fixed)
    sized = float(portfolio_value) * float(params.get("max_position_size", 0) or 0)
    if sized > 0:
        return sized
    return float(config.DEFAULT_BUY_AMOUNT_ETH)


class AutonomousScheduler:
    def __init__(
        self,
        storage: Any,
        market_data: Any,
        swap_provider: Any,
        verifier: Any,
        notifier: Any,
        wallets: Any,
        rate_limiter: BuyRateLimiter | None = None,
        rule_engine: RuleEngine | None = None,
        position_monitor: PositionMonitor | None = None,
        clock: Clock | None = None,
        tick_interval: float | None = None,
        call_timeout: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.storage = storage
        self.market_data = market_data
        self.swap_provider = swap_provider
        self.verifier = verifier
        self.notifier = notifier
        self.wallets = wallets
        self.clock = clock or utc_now
        self.rate_limiter = rate_limiter or BuyRateLimiter(clock=self.clock)
        self.call_timeout = float(call_timeout or config.EXTERNAL_CALL_TIMEOUT_SECONDS)
        self.rule_engine = rule_engine or RuleEngine(storage, market_data, call_timeout=self.call_timeout)
        self.position_monitor = position_monitor or PositionMonitor(
            storage,
            market_data,
            swap_provider,
            verifier,
            notifier,
            call_timeout=self.call_timeout,
        )
        self.tick_interval = float(tick_interval or config.AUTONOMOUS_TICK_SECONDS)
        self.registry = AutonomousRegistry()
        self._sleep = sleep
        self._native_price_usd = 0.0

    # Public surface

    async def start(self, user_id: int, announce: bool = True) -> bool:
        """Enable autonomous trading. Returns False when the user has nothing runnable."""
        run = self.registry.get(user_id)
        if run.state is RunState.RUNNING and run.task is not None and not run.task.done():
            return True

        rules = self._runnable_rules(user_id)
        if not rules:
            if self.storage.is_autonomous_enabled(user_id):
                await self._safety_disable(user_id, SAFETY_REASON_NO_RULES)
            else:
                logger.info("AUTO_START refused user_id=%s reason=no_runnable_rules", user_id)
            return False

        self.storage.set_autonomous_enabled(user_id, True)
        self.storage.ensure_strategy_settings(user_id, RULE_KIND_AUTONOMOUS)
        run.state = RunState.RUNNING
        if run.task is not None and not run.task.done():
            # Previous loop is still finishing a tick after stop(); it will keep going.
            logger.info("AUTO_START resumed in-flight loop user_id=%s", user_id)
            return True

        run.task = asyncio.create_task(self._run_loop(user_id), name=f"autonomous_user_{user_id}")
        logger.info("AUTO_START user_id=%s rules=%s interval=%ss", user_id, len(rules), int(self.tick_interval))
        if announce:
            await self._notify(
                user_id,
                messages.AUTO_STARTED.format(
                    rule_count=len(rules),
                    remaining=self.rate_limiter.remaining(user_id),
                    limit=self.rate_limiter.limit,
                    interval_minutes=max(1, int(self.tick_interval // 60)),
                ),
            )
        return True

    async def stop(self, user_id: int, persist: bool = True, announce: bool = True) -> None:
        """Disable autonomous trading. An in-flight tick finishes but is not rescheduled."""
        if persist:
            self.storage.set_autonomous_enabled(user_id, False)
        run = self.registry.peek(user_id)
        if run is None:
            return
        was_running = run.state is RunState.RUNNING
        run.state = RunState.DISABLED
        task = run.task
        if task is not None and not task.done() and not run.in_tick:
            run.task = None
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.info("AUTO_STOP user_id=%s in_tick=%s", user_id, run.in_tick)
        if was_running and announce:
            await self._notify(user_id, messages.AUTO_STOPPED)

    async def reconcile(self) -> None:
        """Bring in-memory run state in line with the persisted enabled flags."""
        for user in self.storage.list_users():
            try:
                enabled = bool(user.autonomous_enabled)
                running = self.registry.is_running(user.id)
                if enabled and not running:
                    await self.start(user.id, announce=False)
                elif not enabled and running:
                    await self.stop(user.id, persist=False, announce=False)
            except AutonomousError as exc:
                logger.warning("AUTO_RECONCILE failed user_id=%s: %s", user.id, exc)

    async def evaluate_rule(self, rule_id: int, token_address: str) -> RuleEvaluation:
        return await self.rule_engine.evaluate_rule(rule_id, token_address)

    def get_remaining_buys(self, user_id: int) -> int:
        return self.rate_limiter.remaining(user_id)

    def get_next_eligible_at(self, user_id: int) -> datetime | None:
        return self.rate_limiter.next_eligible_at(user_id)

    async def shutdown(self, timeout: float = 30.0) -> None:
        """Stop every loop without touching persisted flags."""
        tasks = self.registry.tasks()
        for run in self.registry.runs():
            run.state = RunState.DISABLED
            if run.task is not None and not run.task.done() and not run.in_tick:
                run.task.cancel()
        if not tasks:
            return
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("AUTO_SHUTDOWN tasks=%s finished=%s cancelled=%s", len(tasks), len(done), len(pending))

    # Loop

    async def _run_loop(self, user_id: int) -> None:
        run = self.registry.get(user_id)
        try:
            while run.state is RunState.RUNNING:
                run.in_tick = True
                try:
                    await self.run_tick(user_id)
                except StorageError as exc:
                    logger.error("AUTO_TICK aborted user_id=%s storage_error=%s", user_id, exc)
                except AutonomousError as exc:
                    logger.warning("AUTO_TICK failed user_id=%s: %s", user_id, exc)
                except Exception:
                    logger.exception("AUTO_TICK crashed user_id=%s", user_id)
                finally:
                    run.in_tick = False
                if run.state is not RunState.RUNNING:
                    break
                await self._sleep(self.tick_interval)
        except asyncio.CancelledError:
            logger.debug("AUTO_LOOP cancelled user_id=%s", user_id)
            raise
        finally:
            if run.task is asyncio.current_task():
                run.task = None
        logger.info("AUTO_LOOP exit user_id=%s ticks=%s", user_id, run.ticks)

    def _runnable_rules(self, user_id: int) -> list[Any]:
        rules = self.storage.list_active_rules(user_id, RULE_KIND_AUTONOMOUS)
        runnable = []
        for rule in rules:
            if rule_is_runnable(rule):
                runnable.append(rule)
            else:
                logger.warning("AUTO_RULE_SKIP rule_id=%s reason=missing_exit_conditions", rule.id)
        return runnable

    async def _safety_disable(self, user_id: int, reason: str) -> None:
        self.storage.set_autonomous_enabled(user_id, False)
        self.registry.get(user_id).state = RunState.DISABLED
        logger.warning("AUTO_SAFETY_DISABLE user_id=%s reason=%s", user_id, reason)
        await self._notify(user_id, messages.AUTO_SAFETY_DISABLED.format(reason=reason))

    async def _notify(self, user_id: int, text: str) -> None:
        try:
            await self.notifier.send(user_id, text)
        except Exception:
            logger.exception("NOTIFY_FAIL user_id=%s", user_id)

    # Tick

    async def run_tick(self, user_id: int) -> TickReport:
        report = TickReport(user_id=user_id)
        run = self.registry.get(user_id)
        run.ticks += 1
        run.last_tick_at = self.clock()

        rules = self._runnable_rules(user_id)
        if not rules:
            await self._safety_disable(user_id, SAFETY_REASON_NO_RULES)
            report.disabled = True
            return report

        wallet = self.wallets.get_wallet(user_id)
        if wallet is None:
            logger.warning("AUTO_TICK skipped user_id=%s reason=no_wallet", user_id)
            report.discovery_skipped = "no_wallet"
            return report

        positions = self.storage.list_open_positions(user_id)
        try:
            balance = await asyncio.wait_for(self.swap_provider.native_balance(wallet.address), timeout=self.call_timeout)
        except asyncio.TimeoutError:
            logger.warning("AUTO_TICK balance unavailable user_id=%s: timeout", user_id)
            balance = None
        except Exception as exc:
            # Exits still run on a bad RPC; only discovery needs the portfolio value.
            logger.warning("AUTO_TICK balance unavailable user_id=%s error_type=%s: %s", user_id, type(exc).__name__, exc)
            balance = None
        portfolio_value = float(balance or 0.0) + sum(float(p.size or 0) for p in positions)

        settings = self.storage.get_strategy_settings(user_id, RULE_KIND_AUTONOMOUS)
        if settings is None:
            settings = self.storage.ensure_strategy_settings(user_id, RULE_KIND_AUTONOMOUS)
        params = {**default_strategy_params(), **(settings.params or {})}

        if balance is None:
            report.discovery_skipped = "portfolio_unavailable"
        elif not settings.is_active:
            report.discovery_skipped = "strategy_inactive"
        else:
            report.discovery_skipped = self.risk_breach(user_id, portfolio_value, len(positions), params)

        logger.info(
            "AUTO_TICK user_id=%s tick=%s rules=%s positions=%s portfolio_eth=%.6f gate=%s",
            user_id,
            run.ticks,
            len(rules),
            len(positions),
            portfolio_value,
            report.discovery_skipped or "open",
        )

        report.closed = await self.position_monitor.run(user_id, wallet, params)

        if report.discovery_skipped:
            return report
        await self._discover(user_id, wallet, rules, params, portfolio_value, report)
        return report

    def risk_breach(self, user_id: int, portfolio_value: float, open_positions: int, params: dict[str, Any]) -> str:
        max_open = int(params.get("max_open_positions", config.STRATEGY_DEFAULT_MAX_OPEN_POSITIONS))
        if open_positions >= max_open:
            logger.info("AUTO_RISK_GATE user_id=%s reason=max_open_positions open=%s max=%s", user_id, open_positions, max_open)
            return "max_open_positions"
        now = self.clock()
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        realized = self.storage.realized_pnl_since(user_id, day_start)
        max_daily_loss = float(params.get("max_daily_loss", config.STRATEGY_DEFAULT_MAX_DAILY_LOSS))
        if realized < 0 and portfolio_value > 0 and (-realized / portfolio_value) > max_daily_loss:
            logger.info(
                "AUTO_RISK_GATE user_id=%s reason=daily_loss realized_eth=%.8f portfolio_eth=%.6f max=%.4f",
                user_id,
                realized,
                portfolio_value,
                max_daily_loss,
            )
            return "daily_loss"
        return ""

    async def _discover(
        self,
        user_id: int,
        wallet: Any,
        rules: list[Any],
        params: dict[str, Any],
        portfolio_value: float,
        report: TickReport,
    ) -> None:
        held = {normalize_address(p.token_address) for p in self.storage.list_open_positions(user_id)}
        # Tokens sold this tick are not bought straight back.
        skip = held | {normalize_address(c.token_address) for c in report.closed}
        max_open = int(params.get("max_open_positions", config.STRATEGY_DEFAULT_MAX_OPEN_POSITIONS))
        limit = int(config.DISCOVERY_CANDIDATE_LIMIT)

        for rule in rules:
            try:
                candidates = await asyncio.wait_for(
                    self.market_data.list_candidates(rule.conditions, limit),
                    timeout=self.call_timeout,
                )
            except (DataUnavailable, asyncio.TimeoutError) as exc:
                logger.info("AUTO_DISCOVERY skipped rule_id=%s: %s", rule.id, exc or "timeout")
                continue
            self.storage.touch_rule(rule.id)
            logger.info("AUTO_DISCOVERY rule_id=%s candidates=%s", rule.id, len(candidates))

            for candidate in candidates:
                if len(held) >= max_open:
                    logger.info("AUTO_DISCOVERY stop user_id=%s reason=max_open_positions", user_id)
                    return
                address = normalize_address(getattr(candidate, "address", ""))
                if not address or address in skip:
                    continue
                try:
                    evaluation = await self.rule_engine.evaluate_rule(rule.id, address)
                except StorageError:
                    raise
                except AutonomousError as exc:
                    logger.info("AUTO_EVAL skipped rule_id=%s token=%s: %s", rule.id, address, exc)
                    continue
                report.evaluated += 1
                if not evaluation.match:
                    continue

                outcome = await self._execute_opportunity(user_id, wallet, rule, evaluation, params, portfolio_value, held)
                if outcome == "bought":
                    held.add(address)
                    report.bought.append(address)
                elif outcome == "failed":
                    report.failed.append(address)
                elif outcome == "rate_limited":
                    report.rate_limited = True
                    return

    def validate_opportunity(self, token: Any, amount: float, params: dict[str, Any], held: set[str]) -> str:
        """Empty string when the opportunity may be traded, else the rejection reason."""
        address = normalize_address(token.address)
        liquidity = float(getattr(token, "liquidity", 0) or 0)
        if liquidity < float(params.get("min_liquidity", config.STRATEGY_DEFAULT_MIN_LIQUIDITY)):
            return "insufficient_liquidity"
        if address in held:
            return "duplicate_position"
        native_usd = float(getattr(token, "native_price_usd", 0) or 0)
        if native_usd > 0:
            self._native_price_usd = native_usd
        native_usd = native_usd or self._native_price_usd
        if native_usd <= 0:
            return "unknown_native_price"
        if amount * native_usd > liquidity * float(config.MAX_LIQUIDITY_SHARE):
            return "size_exceeds_liquidity_share"
        return ""

    async def _execute_opportunity(
        self,
        user_id: int,
        wallet: Any,
        rule: Any,
        evaluation: RuleEvaluation,
        params: dict[str, Any],
        portfolio_value: float,
        held: set[str],
    ) -> str:
        token = evaluation.token_data
        address = normalize_address(token.address)
        symbol = token.symbol or address[:10]
        amount = buy_amount_for(rule, params, portfolio_value)

        rejection = self.validate_opportunity(token, amount, params, held)
        if not rejection and self.storage.get_open_position(user_id, address) is not None:
            rejection = "duplicate_position"
        if rejection:
            logger.info("AUTO_BUY skip user_id=%s token=%s reason=%s", user_id, address, rejection)
            return "rejected"

        if not self.rate_limiter.can_attempt(user_id):
            next_at = self.rate_limiter.next_eligible_at(user_id)
            logger.info(
                "RATE_LIMIT user_id=%s token=%s remaining=0 next_eligible_at=%s",
                user_id,
                address,
                next_at.isoformat() if next_at else "-",
            )
            await self._notify(
                user_id,
                messages.AUTO_RATE_LIMITED.format(
                    remaining=self.rate_limiter.remaining(user_id),
                    limit=self.rate_limiter.limit,
                    next_at=next_at.strftime("%H:%M UTC") if next_at else "-",
                    symbol=escape(symbol),
                    rule_name=escape(rule.name or ""),
                ),
            )
            return "rate_limited"

        max_slippage = float(params.get("max_slippage", config.STRATEGY_DEFAULT_MAX_SLIPPAGE))
        tx_hash = ""
        try:
            submission = await submit_swap(self.swap_provider.buy(wallet, address, amount, max_slippage))
            tx_hash = submission.confirmation_handle
            # Broadcast happened: the slot is spent whatever settlement says.
            self.rate_limiter.record_attempt(user_id)
            record = await self.verifier.verify(tx_hash, address, wallet.address, SIDE_BUY)
        except (SubmissionError, ChainError) as exc:
            logger.warning(
                "AUTO_BUY failed user_id=%s rule_id=%s token=%s tx=%s error_type=%s error=%s",
                user_id,
                rule.id,
                address,
                tx_hash or "-",
                type(exc).__name__,
                exc,
            )
            try:
                self.storage.record_trade(
                    user_id,
                    address,
                    SIDE_BUY,
                    amount,
                    status="failed",
                    price=token.price,
                    tx_hash=tx_hash or None,
                    reason=str(exc),
                    rule_id=rule.id,
                )
                self.rule_engine.update_rule_stats(rule.id, False)
            finally:
                await self._notify(
                    user_id,
                    messages.AUTO_BUY_FAILED.format(
                        symbol=escape(symbol),
                        address=escape(address),
                        rule_name=escape(rule.name or ""),
                        reason=escape(str(exc)),
                    ),
                )
            return "failed"

        token_amount = record.token_delta(address, wallet.address)
        try:
            self.storage.open_position(
                user_id,
                address,
                entry_price=float(token.price),
                size=amount,
                token_amount=token_amount,
                rule_id=rule.id,
                symbol=token.symbol,
                buy_tx_hash=tx_hash,
            )
            self.storage.record_trade(
                user_id,
                address,
                SIDE_BUY,
                amount,
                status="verified",
                price=token.price,
                tx_hash=tx_hash,
                reason=f"rule:{rule.id}",
                rule_id=rule.id,
            )
            self.rule_engine.update_rule_stats(rule.id, True)
        except StorageError as exc:
            logger.error(
                "AUTO_BUY unrecorded user_id=%s rule_id=%s token=%s tokens=%s tx=%s storage_error=%s",
                user_id,
                rule.id,
                address,
                token_amount,
                tx_hash,
                exc,
            )
            await self._notify(
                user_id,
                messages.AUTO_BUY_UNRECORDED.format(
                    symbol=escape(symbol),
                    address=escape(address),
                    rule_name=escape(rule.name or ""),
                    tx_hash=escape(tx_hash),
                    error=escape(str(exc)),
                ),
            )
            raise
        remaining = self.rate_limiter.remaining(user_id)
        logger.info(
            "AUTO_BUY Live BUY user_id=%s rule_id=%s token=%s symbol=%s amount_eth=%.8f price=%s tokens=%s tx=%s remaining=%s",
            user_id,
            rule.id,
            address,
            symbol,
            amount,
            token.price,
            token_amount,
            tx_hash,
            remaining,
        )
        await self._notify(
            user_id,
            messages.AUTO_BUY_OK.format(
                symbol=escape(symbol),
                address=escape(address),
                rule_name=escape(rule.name or ""),
                amount=amount,
                price=float(token.price),
                tx_hash=escape(tx_hash),
                remaining=remaining,
                limit=self.rate_limiter.limit,
            ),
        )
        return "bought"

"""Database helpers and CRUD operations."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterable, Iterator, Optional

from sqlalchemy import create_engine, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

import config
from database.models import (
    RULE_KIND_AUTONOMOUS,
    RULE_KINDS,
    Base,
    Position,
    Rule,
    RuleCondition,
    RuleCriterion,
    RuleMetric,
    RuleTrigger,
    StrategySettings,
    Trade,
    User,
)
from trading.errors import ConfigurationError, StorageError
from trading.rule_engine import validate_rule_conditions
from utils.addressing import normalize_address


def default_strategy_params() -> dict[str, float]:
    return {
        "max_position_size": float(config.STRATEGY_DEFAULT_MAX_POSITION_SIZE),
        "max_daily_loss": float(config.STRATEGY_DEFAULT_MAX_DAILY_LOSS),
        "max_open_positions": int(config.STRATEGY_DEFAULT_MAX_OPEN_POSITIONS),
        "stop_loss": float(config.STRATEGY_DEFAULT_STOP_LOSS),
        "take_profit": float(config.STRATEGY_DEFAULT_TAKE_PROFIT),
        "max_slippage": float(config.STRATEGY_DEFAULT_MAX_SLIPPAGE),
        "min_liquidity": float(config.STRATEGY_DEFAULT_MIN_LIQUIDITY),
    }


def _condition_items(conditions: dict[str, Any] | Iterable[tuple[str, Any]] | None) -> list[tuple[str, Any]]:
    if not conditions:
        return []
    if isinstance(conditions, dict):
        return list(conditions.items())
    return [(str(ctype), value) for ctype, value in conditions]


class Storage:
    """Row-level CRUD over the autonomous trading tables.

    Every call opens its own session; nothing is cached between calls, and
    writes are atomic per call only.
    """

    def __init__(self, database_url: str | None = None) -> None:
        url = database_url or config.DATABASE_URL
        self.engine = create_engine(url, future=True)
        self._session_factory = sessionmaker(
            bind=self.engine,
            autoflush=False,
            autocommit=False,
            expire_on_commit=False,
            future=True,
        )

    def init_db(self) -> None:
        try:
            Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as exc:
            raise StorageError(f"init_db failed: {exc}") from exc

    def close(self) -> None:
        self.engine.dispose()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
        except SQLAlchemyError as exc:
            db.rollback()
            raise StorageError(str(exc)) from exc
        finally:
            db.close()

    # Users

    def get_or_create_user(self, telegram_id: int, username: Optional[str] = None) -> User:
        with self._session() as db:
            user = db.query(User).filter(User.telegram_id == telegram_id).first()
            if user:
                if username and user.username != username:
                    user.username = username
                    db.commit()
                return user

            user = User(telegram_id=telegram_id, username=username)
            db.add(user)
            db.commit()
            return user

    def get_user(self, user_id: int) -> Optional[User]:
        with self._session() as db:
            return db.get(User, user_id)

    def list_users(self) -> list[User]:
        with self._session() as db:
            return db.query(User).order_by(User.id.asc()).all()

    def is_autonomous_enabled(self, user_id: int) -> bool:
        with self._session() as db:
            user = db.get(User, user_id)
            return bool(user and user.autonomous_enabled)

    def set_autonomous_enabled(self, user_id: int, enabled: bool) -> bool:
        with self._session() as db:
            user = db.get(User, user_id)
            if not user:
                return False
            user.autonomous_enabled = bool(enabled)
            db.commit()
            return True

    def update_user_settings(self, user_id: int, settings: dict) -> Optional[User]:
        with self._session() as db:
            user = db.get(User, user_id)
            if not user:
                return None
            current = dict(user.settings or {})
            current.update(settings)
            user.settings = current
            db.commit()
            return user

    def get_notification_chat_id(self, user_id: int) -> Optional[int]:
        with self._session() as db:
            user = db.get(User, user_id)
            if not user:
                return None
            if not (user.settings or {}).get("notify_enabled", True):
                return None
            return int(user.telegram_id)

    # Rules

    def create_rule(
        self,
        user_id: int,
        name: str,
        kind: str = RULE_KIND_AUTONOMOUS,
        conditions: dict[str, Any] | Iterable[tuple[str, Any]] | None = None,
        criteria: Iterable[dict[str, Any]] | None = None,
        metrics: Iterable[dict[str, Any]] | None = None,
        description: str | None = None,
        is_active: bool = True,
    ) -> Rule:
        if kind not in RULE_KINDS:
            raise ConfigurationError(f"unknown rule kind: {kind}")
        items = _condition_items(conditions)
        validate_rule_conditions(kind, [ctype for ctype, _ in items])

        with self._session() as db:
            rule = Rule(
                user_id=user_id,
                name=name,
                kind=kind,
                description=description,
                is_active=bool(is_active),
            )
            for ctype, value in items:
                rule.conditions.append(RuleCondition(condition_type=ctype, value=value))
            for row in criteria or []:
                rule.criteria.append(
                    RuleCriterion(
                        criteria_type=str(row["criteria_type"]),
                        operator=str(row.get("operator") or ">="),
                        value=row.get("value"),
                        secondary_value=row.get("secondary_value"),
                    )
                )
            for row in metrics or []:
                rule.metrics.append(
                    RuleMetric(
                        metric_type=str(row["metric_type"]),
                        direction=str(row["direction"]),
                        threshold=float(row["threshold"]),
                        timeframe=str(row.get("timeframe") or "24h"),
                    )
                )
            db.add(rule)
            db.commit()
            return rule

    def get_rule(self, rule_id: int) -> Optional[Rule]:
        with self._session() as db:
            return db.get(Rule, rule_id)

    def list_rules(self, user_id: int) -> list[Rule]:
        with self._session() as db:
            return db.query(Rule).filter(Rule.user_id == user_id).order_by(Rule.id.asc()).all()

    def list_active_rules(self, user_id: int, kind: str = RULE_KIND_AUTONOMOUS) -> list[Rule]:
        with self._session() as db:
            return (
                db.query(Rule)
                .filter(Rule.user_id == user_id, Rule.kind == kind, Rule.is_active.is_(True))
                .order_by(Rule.id.asc())
                .all()
            )

    def set_rule_active(self, rule_id: int, active: bool) -> Optional[Rule]:
        with self._session() as db:
            rule = db.get(Rule, rule_id)
            if not rule:
                return None
            rule.is_active = bool(active)
            db.commit()
            return rule

    def delete_rule(self, rule_id: int) -> bool:
        with self._session() as db:
            rule = db.get(Rule, rule_id)
            if not rule:
                return False
            db.delete(rule)
            db.commit()
            return True

    def add_condition(self, rule_id: int, condition_type: str, value: Any) -> Optional[RuleCondition]:
        with self._session() as db:
            rule = db.get(Rule, rule_id)
            if not rule:
                return None
            cond = RuleCondition(rule_id=rule_id, condition_type=condition_type, value=value)
            db.add(cond)
            db.commit()
            return cond

    def delete_condition(self, condition_id: int) -> bool:
        with self._session() as db:
            cond = db.get(RuleCondition, condition_id)
            if not cond:
                return False
            rule = db.get(Rule, cond.rule_id)
            if rule is not None:
                remaining = [c.condition_type for c in rule.conditions if c.id != cond.id]
                validate_rule_conditions(rule.kind, remaining)
            db.delete(cond)
            db.commit()
            return True

    def get_rule_criteria(self, rule_id: int) -> list[RuleCriterion]:
        with self._session() as db:
            return db.query(RuleCriterion).filter(RuleCriterion.rule_id == rule_id).all()

    def get_rule_metrics(self, rule_id: int) -> list[RuleMetric]:
        with self._session() as db:
            return db.query(RuleMetric).filter(RuleMetric.rule_id == rule_id).all()

    def record_rule_trigger(self, rule_id: int, token_address: str, token_data: Any) -> None:
        with self._session() as db:
            db.add(
                RuleTrigger(
                    rule_id=rule_id,
                    token_address=normalize_address(token_address),
                    token_symbol=getattr(token_data, "symbol", None),
                    trigger_price=getattr(token_data, "price", None),
                    trigger_volume=getattr(token_data, "volume", None),
                    trigger_market_cap=getattr(token_data, "market_cap", None),
                    trigger_liquidity=getattr(token_data, "liquidity", None),
                    status="triggered",
                )
            )
            db.commit()

    def list_rule_triggers(self, rule_id: int) -> list[RuleTrigger]:
        with self._session() as db:
            return db.query(RuleTrigger).filter(RuleTrigger.rule_id == rule_id).order_by(RuleTrigger.id.asc()).all()

    def update_rule_stats(self, rule_id: int, success: bool) -> None:
        with self._session() as db:
            rule = db.get(Rule, rule_id)
            if not rule:
                return
            if success:
                rule.success_count = int(rule.success_count or 0) + 1
            else:
                rule.failure_count = int(rule.failure_count or 0) + 1
            rule.last_check_at = datetime.utcnow()
            db.commit()

    def touch_rule(self, rule_id: int) -> None:
        with self._session() as db:
            rule = db.get(Rule, rule_id)
            if not rule:
                return
            rule.last_check_at = datetime.utcnow()
            db.commit()

    # Strategy settings

    def get_strategy_settings(self, user_id: int, kind: str = RULE_KIND_AUTONOMOUS) -> Optional[StrategySettings]:
        with self._session() as db:
            return (
                db.query(StrategySettings)
                .filter(StrategySettings.user_id == user_id, StrategySettings.kind == kind)
                .first()
            )

    def ensure_strategy_settings(self, user_id: int, kind: str = RULE_KIND_AUTONOMOUS) -> StrategySettings:
        """Create default settings, or re-activate existing ones."""
        with self._session() as db:
            row = (
                db.query(StrategySettings)
                .filter(StrategySettings.user_id == user_id, StrategySettings.kind == kind)
                .first()
            )
            if row is None:
                row = StrategySettings(user_id=user_id, kind=kind, params=default_strategy_params(), is_active=True)
                db.add(row)
                db.commit()
                return row
            if not row.is_active:
                row.is_active = True
                db.commit()
            return row

    def update_strategy_settings(self, user_id: int, kind: str, params: dict[str, Any]) -> Optional[StrategySettings]:
        with self._session() as db:
            row = (
                db.query(StrategySettings)
                .filter(StrategySettings.user_id == user_id, StrategySettings.kind == kind)
                .first()
            )
            if row is None:
                return None
            current = dict(row.params or {})
            current.update(params)
            row.params = current
            db.commit()
            return row

    # Positions

    def list_open_positions(self, user_id: int) -> list[Position]:
        with self._session() as db:
            return db.query(Position).filter(Position.user_id == user_id).order_by(Position.id.asc()).all()

    def get_open_position(self, user_id: int, token_address: str) -> Optional[Position]:
        with self._session() as db:
            return (
                db.query(Position)
                .filter(Position.user_id == user_id, Position.token_address == normalize_address(token_address))
                .first()
            )

    def open_position(
        self,
        user_id: int,
        token_address: str,
        entry_price: float,
        size: float,
        token_amount: int,
        rule_id: int | None = None,
        symbol: str | None = None,
        buy_tx_hash: str | None = None,
    ) -> Position:
        with self._session() as db:
            position = Position(
                user_id=user_id,
                token_address=normalize_address(token_address),
                symbol=symbol,
                entry_price=float(entry_price),
                size=float(size),
                token_amount=str(int(token_amount)),
                peak_price=float(entry_price),
                rule_id=rule_id,
                buy_tx_hash=buy_tx_hash,
            )
            db.add(position)
            db.commit()
            return position

    def update_position_peak(self, position_id: int, peak_price: float) -> None:
        with self._session() as db:
            position = db.get(Position, position_id)
            if not position:
                return
            position.peak_price = float(peak_price)
            db.commit()

    def delete_position(self, position_id: int) -> bool:
        with self._session() as db:
            position = db.get(Position, position_id)
            if not position:
                return False
            db.delete(position)
            db.commit()
            return True

    # Trade history

    def record_trade(
        self,
        user_id: int,
        token_address: str,
        side: str,
        amount: float,
        status: str,
        price: float | None = None,
        tx_hash: str | None = None,
        reason: str | None = None,
        rule_id: int | None = None,
        realized_pnl: float | None = None,
    ) -> Trade:
        with self._session() as db:
            trade = Trade(
                user_id=user_id,
                token_address=normalize_address(token_address),
                side=side,
                amount=float(amount),
                price=price,
                tx_hash=tx_hash,
                status=status,
                reason=reason,
                rule_id=rule_id,
                realized_pnl=realized_pnl,
            )
            db.add(trade)
            db.commit()
            return trade

    def list_trades(self, user_id: int) -> list[Trade]:
        with self._session() as db:
            return db.query(Trade).filter(Trade.user_id == user_id).order_by(Trade.id.asc()).all()

    def realized_pnl_since(self, user_id: int, since: datetime) -> float:
        if since.tzinfo is not None:
            since = since.astimezone(timezone.utc).replace(tzinfo=None)
        with self._session() as db:
            total = (
                db.query(func.coalesce(func.sum(Trade.realized_pnl), 0.0))
                .filter(
                    Trade.user_id == user_id,
                    Trade.status == "verified",
                    Trade.realized_pnl.is_not(None),
                    Trade.created_at >= since,
                )
                .scalar()
            )
            return float(total or 0.0)

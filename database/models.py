"""SQLAlchemy models."""

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, JSON, String, UniqueConstraint
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

RULE_KIND_AUTONOMOUS = "autonomous_strategy"
RULE_KIND_EXIT_ONLY = "exit_only"
RULE_KINDS = (RULE_KIND_AUTONOMOUS, RULE_KIND_EXIT_ONLY)

CONDITION_TYPES = (
    "market_cap",
    "price",
    "liquidity",
    "category",
    "volume_change",
    "take_profit",
    "stop_loss",
    "trailing_stop",
    "buy_amount",
)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    telegram_id = Column(Integer, unique=True, nullable=False, index=True)
    username = Column(String, nullable=True)
    autonomous_enabled = Column(Boolean, default=False, nullable=False)
    settings = Column(JSON, default=lambda: {"notify_enabled": True}, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Rule(Base):
    __tablename__ = "rules"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(String, nullable=True)
    kind = Column(String, nullable=False, default=RULE_KIND_AUTONOMOUS)
    is_active = Column(Boolean, default=True, nullable=False)
    success_count = Column(Integer, default=0, nullable=False)
    failure_count = Column(Integer, default=0, nullable=False)
    last_check_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    conditions = relationship("RuleCondition", cascade="all, delete-orphan", lazy="selectin")
    criteria = relationship("RuleCriterion", cascade="all, delete-orphan")
    metrics = relationship("RuleMetric", cascade="all, delete-orphan")
    history = relationship("RuleTrigger", cascade="all, delete-orphan")

    def condition_value(self, condition_type: str):
        for cond in self.conditions or []:
            if cond.condition_type == condition_type:
                return cond.value
        return None


class RuleCondition(Base):
    __tablename__ = "rule_conditions"

    id = Column(Integer, primary_key=True)
    rule_id = Column(Integer, ForeignKey("rules.id", ondelete="CASCADE"), nullable=False, index=True)
    condition_type = Column(String, nullable=False)
    value = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class RuleCriterion(Base):
    __tablename__ = "rule_criteria"

    id = Column(Integer, primary_key=True)
    rule_id = Column(Integer, ForeignKey("rules.id", ondelete="CASCADE"), nullable=False, index=True)
    criteria_type = Column(String, nullable=False)  # category/market_cap/price/liquidity/volume/num_buys/num_sells
    operator = Column(String, nullable=False, default=">=")
    value = Column(JSON, nullable=True)
    secondary_value = Column(JSON, nullable=True)  # upper bound for 'between'
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class RuleMetric(Base):
    __tablename__ = "rule_metrics"

    id = Column(Integer, primary_key=True)
    rule_id = Column(Integer, ForeignKey("rules.id", ondelete="CASCADE"), nullable=False, index=True)
    metric_type = Column(String, nullable=False)  # volume_change/price_change
    threshold = Column(Float, nullable=False)
    timeframe = Column(String, nullable=False, default="24h")
    direction = Column(String, nullable=False)  # increase/decrease
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class RuleTrigger(Base):
    __tablename__ = "rule_history"

    id = Column(Integer, primary_key=True)
    rule_id = Column(Integer, ForeignKey("rules.id", ondelete="CASCADE"), nullable=False, index=True)
    token_address = Column(String, nullable=False)
    token_symbol = Column(String, nullable=True)
    trigger_price = Column(Float, nullable=True)
    trigger_volume = Column(Float, nullable=True)
    trigger_market_cap = Column(Float, nullable=True)
    trigger_liquidity = Column(Float, nullable=True)
    status = Column(String, default="triggered", nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class StrategySettings(Base):
    __tablename__ = "strategy_settings"
    __table_args__ = (UniqueConstraint("user_id", "kind", name="uq_strategy_user_kind"),)

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    kind = Column(String, nullable=False)
    params = Column(JSON, default=dict, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class Position(Base):
    __tablename__ = "positions"
    __table_args__ = (UniqueConstraint("user_id", "token_address", name="uq_position_user_token"),)

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    token_address = Column(String, nullable=False)
    symbol = Column(String, nullable=True)
    entry_price = Column(Float, nullable=False)
    size = Column(Float, nullable=False)  # base units spent
    token_amount = Column(String, nullable=False, default="0")  # raw units, kept as text for uint256
    peak_price = Column(Float, nullable=True)
    rule_id = Column(Integer, nullable=True)
    buy_tx_hash = Column(String, nullable=True)
    opened_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Trade(Base):
    __tablename__ = "trades"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    token_address = Column(String, nullable=False)
    side = Column(String, nullable=False)  # buy/sell
    amount = Column(Float, nullable=False)
    price = Column(Float, nullable=True)
    tx_hash = Column(String, nullable=True)
    status = Column(String, nullable=False)  # verified/failed
    reason = Column(String, nullable=True)
    rule_id = Column(Integer, nullable=True)
    realized_pnl = Column(Float, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

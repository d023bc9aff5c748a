"""Application configuration."""

import os
from pathlib import Path

from dotenv import load_dotenv


def _load_dotenv_safe(dotenv_path: str | None = None, *, override: bool = False) -> None:
    """Load dotenv using UTF-8-SIG so BOM-prefixed files don't break first key parsing."""
    try:
        load_dotenv(dotenv_path=dotenv_path, override=override, encoding="utf-8-sig")
    except TypeError:
        # Older python-dotenv versions may not expose the `encoding` argument.
        load_dotenv(dotenv_path=dotenv_path, override=override)


# Load base environment first, then optional per-instance override env file.
_load_dotenv_safe()
_BOT_ENV_FILE = os.getenv("BOT_ENV_FILE", "").strip()
if _BOT_ENV_FILE:
    _bot_env_path = Path(_BOT_ENV_FILE).expanduser()
    if not _bot_env_path.is_absolute():
        _bot_env_path = (Path.cwd() / _bot_env_path).resolve()
    if not _bot_env_path.exists():
        raise FileNotFoundError(f"BOT_ENV_FILE does not exist: {_bot_env_path}")
    if not _bot_env_path.is_file():
        raise IsADirectoryError(f"BOT_ENV_FILE is not a file: {_bot_env_path}")
    try:
        _load_dotenv_safe(str(_bot_env_path), override=True)
    except (OSError, UnicodeError, ValueError) as exc:
        raise RuntimeError(f"Failed to load BOT_ENV_FILE '{_bot_env_path}': {exc}") from exc


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///bot.db")

PERSONAL_TELEGRAM_ID = int(os.getenv("PERSONAL_TELEGRAM_ID", "0"))

# Autonomous scheduler.
AUTONOMOUS_TICK_SECONDS = max(5, int(os.getenv("AUTONOMOUS_TICK_SECONDS", "300")))
AUTONOMOUS_RECONCILE_SECONDS = max(5, int(os.getenv("AUTONOMOUS_RECONCILE_SECONDS", "60")))
AUTONOMOUS_HOURLY_BUY_LIMIT = max(1, int(os.getenv("AUTONOMOUS_HOURLY_BUY_LIMIT", "5")))
AUTONOMOUS_RATE_WINDOW_SECONDS = max(60, int(os.getenv("AUTONOMOUS_RATE_WINDOW_SECONDS", "3600")))
EXTERNAL_CALL_TIMEOUT_SECONDS = max(1.0, float(os.getenv("EXTERNAL_CALL_TIMEOUT_SECONDS", "10")))
SETTLEMENT_DELAY_SECONDS = max(0.0, float(os.getenv("SETTLEMENT_DELAY_SECONDS", "2")))
# Swap submission may wait on a token approval before broadcasting.
SWAP_SUBMIT_TIMEOUT_SECONDS = max(5.0, float(os.getenv("SWAP_SUBMIT_TIMEOUT_SECONDS", "90")))
DISCOVERY_CANDIDATE_LIMIT = max(1, int(os.getenv("DISCOVERY_CANDIDATE_LIMIT", "50")))
MAX_LIQUIDITY_SHARE = max(0.001, min(1.0, float(os.getenv("MAX_LIQUIDITY_SHARE", "0.10"))))
DEFAULT_BUY_AMOUNT_ETH = max(0.0, float(os.getenv("DEFAULT_BUY_AMOUNT_ETH", "0.0001")))

# Defaults for a freshly created autonomous strategy. Fractions, except slippage (percent).
STRATEGY_DEFAULT_MAX_POSITION_SIZE = float(os.getenv("STRATEGY_DEFAULT_MAX_POSITION_SIZE", "0.1"))
STRATEGY_DEFAULT_MAX_DAILY_LOSS = float(os.getenv("STRATEGY_DEFAULT_MAX_DAILY_LOSS", "0.05"))
STRATEGY_DEFAULT_MAX_OPEN_POSITIONS = max(1, int(os.getenv("STRATEGY_DEFAULT_MAX_OPEN_POSITIONS", "5")))
STRATEGY_DEFAULT_STOP_LOSS = float(os.getenv("STRATEGY_DEFAULT_STOP_LOSS", "0.1"))
STRATEGY_DEFAULT_TAKE_PROFIT = float(os.getenv("STRATEGY_DEFAULT_TAKE_PROFIT", "0.2"))
STRATEGY_DEFAULT_MAX_SLIPPAGE = float(os.getenv("STRATEGY_DEFAULT_MAX_SLIPPAGE", "1"))
STRATEGY_DEFAULT_MIN_LIQUIDITY = float(os.getenv("STRATEGY_DEFAULT_MIN_LIQUIDITY", "10000"))

# Market data.
CHAIN_NAME = os.getenv("CHAIN_NAME", "base")
CHAIN_ID = os.getenv("CHAIN_ID", "base")
EVM_CHAIN_ID = os.getenv("EVM_CHAIN_ID", "8453")
DEXSCREENER_API = os.getenv("DEXSCREENER_API", "https://api.dexscreener.com/latest/dex")
DEXSCREENER_PROFILES_URL = os.getenv(
    "DEXSCREENER_PROFILES_URL",
    "https://api.dexscreener.com/token-profiles/latest/v1",
)
DEX_SEARCH_QUERY = os.getenv("DEX_SEARCH_QUERY", CHAIN_NAME)
DEX_SEARCH_QUERIES = [
    q.strip()
    for q in os.getenv("DEX_SEARCH_QUERIES", DEX_SEARCH_QUERY).split(",")
    if q.strip()
]
if not DEX_SEARCH_QUERIES:
    DEX_SEARCH_QUERIES = [DEX_SEARCH_QUERY]
DEX_PROFILES_SOURCE_ENABLED = _env_bool("DEX_PROFILES_SOURCE_ENABLED", "true")
DEX_TIMEOUT = int(os.getenv("DEX_TIMEOUT", "10"))
DEX_RETRIES = int(os.getenv("DEX_RETRIES", "2"))

HTTP_CONNECTOR_LIMIT = max(1, int(os.getenv("HTTP_CONNECTOR_LIMIT", "30")))
HTTP_DEFAULT_CONCURRENCY = max(1, int(os.getenv("HTTP_DEFAULT_CONCURRENCY", "8")))
HTTP_RETRY_ATTEMPTS = max(1, int(os.getenv("HTTP_RETRY_ATTEMPTS", "3")))
HTTP_BACKOFF_BASE_SECONDS = max(0.05, float(os.getenv("HTTP_BACKOFF_BASE_SECONDS", "0.50")))
HTTP_BACKOFF_MAX_SECONDS = max(0.10, float(os.getenv("HTTP_BACKOFF_MAX_SECONDS", "8.00")))
HTTP_JITTER_SECONDS = max(0.0, float(os.getenv("HTTP_JITTER_SECONDS", "0.25")))
HTTP_429_COOLDOWN_SECONDS = max(1.0, float(os.getenv("HTTP_429_COOLDOWN_SECONDS", "60")))
HTTP_SOURCE_RATE_LIMITS = {
    "dexscreener": (max(1, int(os.getenv("DEXSCREENER_CALLS_PER_MINUTE", "240"))), 60.0),
    "dex_profiles": (max(1, int(os.getenv("DEX_PROFILES_CALLS_PER_MINUTE", "50"))), 60.0),
}

# On-chain execution.
RPC_PRIMARY = os.getenv("RPC_PRIMARY", "").strip()
RPC_SECONDARY = os.getenv("RPC_SECONDARY", "").strip()
RPC_TIMEOUT_SECONDS = max(3, int(os.getenv("RPC_TIMEOUT_SECONDS", "10")))
CHAIN_MIN_CONFIRMATIONS = max(1, int(os.getenv("CHAIN_MIN_CONFIRMATIONS", "1")))
# How long settlement checks wait for a receipt to be mined and reach the confirmation depth.
CHAIN_RECEIPT_TIMEOUT_SECONDS = max(5.0, float(os.getenv("CHAIN_RECEIPT_TIMEOUT_SECONDS", "60")))
CHAIN_POLL_SECONDS = max(0.1, float(os.getenv("CHAIN_POLL_SECONDS", "1")))
WETH_ADDRESS = os.getenv("WETH_ADDRESS", "").strip().lower()
LIVE_PRIVATE_KEY = os.getenv("LIVE_PRIVATE_KEY", "").strip()
LIVE_CHAIN_ID = int(os.getenv("LIVE_CHAIN_ID", EVM_CHAIN_ID))
LIVE_ROUTER_ADDRESS = os.getenv("LIVE_ROUTER_ADDRESS", "").strip()
LIVE_SWAP_DEADLINE_SECONDS = max(30, int(os.getenv("LIVE_SWAP_DEADLINE_SECONDS", "45")))
LIVE_APPROVE_TIMEOUT_SECONDS = max(10, int(os.getenv("LIVE_APPROVE_TIMEOUT_SECONDS", "60")))
LIVE_MAX_GAS_GWEI = float(os.getenv("LIVE_MAX_GAS_GWEI", "2.0"))
LIVE_PRIORITY_FEE_GWEI = float(os.getenv("LIVE_PRIORITY_FEE_GWEI", "0.02"))
LIVE_MAX_SWAP_GAS = max(50_000, int(os.getenv("LIVE_MAX_SWAP_GAS", "450000")))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("LOG_DIR", "logs")
APP_LOG_FILE = os.path.join(LOG_DIR, "app.log")

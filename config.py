"""Application configuration."""

import os
from pathlib import Path
from typing import Dict, Tuple

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


def _parse_source_rate_limits(raw: str) -> Dict[str, Tuple[int, float]]:
    out: Dict[str, Tuple[int, float]] = {}
    for chunk in str(raw or "").split(","):
        item = chunk.strip()
        if not item or ":" not in item:
            continue
        source_part, rate_part = item.split(":", 1)
        source = source_part.strip().lower()
        if not source or "/" not in rate_part:
            continue
        count_part, window_part = rate_part.split("/", 1)
        try:
            count = max(1, int(float(count_part.strip())))
            window_seconds = max(0.001, float(window_part.strip()))
        except ValueError:
            continue
        out[source] = (count, window_seconds)
    return out


def _parse_source_float_map(raw: str) -> Dict[str, float]:
    out: Dict[str, float] = {}
    for chunk in str(raw or "").split(","):
        item = chunk.strip()
        if not item or ":" not in item:
            continue
        source_part, value_part = item.split(":", 1)
        source = source_part.strip().lower()
        if not source:
            continue
        try:
            out[source] = max(0.0, float(value_part.strip()))
        except ValueError:
            continue
    return out


BOT_INSTANCE_ID = os.getenv("BOT_INSTANCE_ID", "").strip()
PAPER_MODE = os.getenv("PAPER_MODE", "true").strip().lower() == "true"

# Cycle orchestration
CYCLE_INTERVAL_SECONDS = max(1.0, float(os.getenv("CYCLE_INTERVAL_SECONDS", "60")))
BATCH_SIZE = max(1, int(os.getenv("BATCH_SIZE", "5")))
BATCH_PACING_SECONDS = max(0.0, float(os.getenv("BATCH_PACING_SECONDS", "1.0")))
MAX_TOKENS_TO_ANALYZE = max(1, int(os.getenv("MAX_TOKENS_TO_ANALYZE", "50")))
MIN_LIQUIDITY_USD = max(0.0, float(os.getenv("MIN_LIQUIDITY_USD", "100000")))
MIN_VOLUME_24H_USD = max(0.0, float(os.getenv("MIN_VOLUME_24H_USD", "50000")))
MIN_CONFIDENCE_THRESHOLD = min(1.0, max(0.0, float(os.getenv("MIN_CONFIDENCE_THRESHOLD", "0.6"))))
MIN_HISTORY_POINTS = max(1, int(os.getenv("MIN_HISTORY_POINTS", "20")))
HISTORY_LOOKBACK_DAYS = max(1, int(os.getenv("HISTORY_LOOKBACK_DAYS", "7")))
HISTORY_INTERVAL = os.getenv("HISTORY_INTERVAL", "1h").strip() or "1h"
CYCLE_HISTORY_SIZE = max(1, int(os.getenv("CYCLE_HISTORY_SIZE", "50")))

# Circuit breaker
BREAKER_MAX_CONSECUTIVE_ERRORS = max(1, int(os.getenv("BREAKER_MAX_CONSECUTIVE_ERRORS", "3")))
BREAKER_COOLDOWN_SECONDS = max(0.0, float(os.getenv("BREAKER_COOLDOWN_SECONDS", "300")))

# Cache
CACHE_MAX_SIZE = max(2, int(os.getenv("CACHE_MAX_SIZE", "1000")))
HISTORY_CACHE_MAX_SIZE = max(1, int(os.getenv("HISTORY_CACHE_MAX_SIZE", str(CACHE_MAX_SIZE // 2))))
PRICE_CACHE_TTL_SECONDS = max(0.0, float(os.getenv("PRICE_CACHE_TTL_SECONDS", "60")))
VOLUME_CACHE_TTL_SECONDS = max(0.0, float(os.getenv("VOLUME_CACHE_TTL_SECONDS", "60")))
TOKEN_DATA_CACHE_TTL_SECONDS = max(0.0, float(os.getenv("TOKEN_DATA_CACHE_TTL_SECONDS", "300")))
HISTORY_CACHE_TTL_SECONDS = max(0.0, float(os.getenv("HISTORY_CACHE_TTL_SECONDS", "600")))
MARKET_TRENDS_TTL_SECONDS = max(0.0, float(os.getenv("MARKET_TRENDS_TTL_SECONDS", "60")))
MARKET_TRENDS_TOP_N = max(1, int(os.getenv("MARKET_TRENDS_TOP_N", "20")))

# Request dispatch
REQUEST_TIMEOUT_SECONDS = max(0.1, float(os.getenv("REQUEST_TIMEOUT_SECONDS", "10")))
RETRY_MAX_ATTEMPTS = max(1, int(os.getenv("RETRY_MAX_ATTEMPTS", "3")))
RETRY_BACKOFF_BASE_SECONDS = max(0.0, float(os.getenv("RETRY_BACKOFF_BASE_SECONDS", "1.0")))
RETRY_BACKOFF_MAX_SECONDS = max(0.0, float(os.getenv("RETRY_BACKOFF_MAX_SECONDS", "8.0")))
RETRY_JITTER_SECONDS = max(0.0, float(os.getenv("RETRY_JITTER_SECONDS", "0.25")))
RATE_LIMIT_BACKOFF_SECONDS = max(0.0, float(os.getenv("RATE_LIMIT_BACKOFF_SECONDS", "60")))
PROVIDER_RATE_LIMITS = _parse_source_rate_limits(
    os.getenv(
        "PROVIDER_RATE_LIMITS",
        "dexscreener:60/60,geckoterminal:30/60",
    )
)
PROVIDER_429_BACKOFFS = _parse_source_float_map(
    os.getenv(
        "PROVIDER_429_BACKOFFS",
        "dexscreener:60,geckoterminal:60",
    )
)

# HTTP
HTTP_CONNECTOR_LIMIT = max(1, int(os.getenv("HTTP_CONNECTOR_LIMIT", "30")))
HTTP_DEFAULT_CONCURRENCY = max(1, int(os.getenv("HTTP_DEFAULT_CONCURRENCY", "8")))
HTTP_USER_AGENT = os.getenv("HTTP_USER_AGENT", "market-cycle-bot/0.1")

# Market data provider
CHAIN_ID = os.getenv("CHAIN_ID", "solana").strip().lower()
GECKO_NETWORK = os.getenv("GECKO_NETWORK", CHAIN_ID).strip().lower()
DEXSCREENER_API = os.getenv("DEXSCREENER_API", "https://api.dexscreener.com/latest/dex").rstrip("/")
GECKOTERMINAL_API = os.getenv("GECKOTERMINAL_API", "https://api.geckoterminal.com/api/v2").rstrip("/")
DEX_SEARCH_QUERIES = [
    q.strip()
    for q in os.getenv("DEX_SEARCH_QUERIES", CHAIN_ID).split(",")
    if q.strip()
]
if not DEX_SEARCH_QUERIES:
    DEX_SEARCH_QUERIES = [CHAIN_ID]
DEX_BATCH_MAX_ADDRESSES = max(1, min(30, int(os.getenv("DEX_BATCH_MAX_ADDRESSES", "30"))))

# Paper trading
PAPER_BALANCE_USD = max(0.0, float(os.getenv("PAPER_BALANCE_USD", "1000")))
TRADE_SIZE_PERCENT = min(100.0, max(0.0, float(os.getenv("TRADE_SIZE_PERCENT", "2"))))
STOP_LOSS_PERCENT = max(0.0, float(os.getenv("STOP_LOSS_PERCENT", "5")))
TAKE_PROFIT_PERCENT = max(0.0, float(os.getenv("TAKE_PROFIT_PERCENT", "15")))
MAX_OPEN_POSITIONS = max(0, int(os.getenv("MAX_OPEN_POSITIONS", "3")))

# Momentum strategy
MOMENTUM_SHORT_WINDOW = max(2, int(os.getenv("MOMENTUM_SHORT_WINDOW", "6")))
MOMENTUM_LONG_WINDOW = max(3, int(os.getenv("MOMENTUM_LONG_WINDOW", "24")))
MOMENTUM_VOLUME_SURGE_MULT = max(1.0, float(os.getenv("MOMENTUM_VOLUME_SURGE_MULT", "1.5")))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("LOG_DIR", "logs")
APP_LOG_FILE = os.path.join(LOG_DIR, "app.log")

"""
Configuration loaded from environment variables. Fail-fast on invalid values.
"""

from __future__ import annotations

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings

_DEFAULT_EXCLUDED_CATEGORIES = "Sports,sports,SPORTS"
_DEFAULT_EXCLUDED_KEYWORDS = (
    "NFL,NBA,MLB,NHL,MLS,NCAA,UFC,FIFA,PGA,ATP,WTA,"
    "GAME,MATCH,SPREAD,TOTAL,POINTS,GOAL,GOALS,QUARTER,HALF,INNING,SET,MAP,"
    "BITCOIN,BTC,ETHEREUM,ETH,CRYPTO"
)


def _csv(raw: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in raw.split(",") if item.strip())


class Config(BaseSettings):
    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "frozen": True, "extra": "ignore"}

    # Kalshi credentials (required for trading jobs, optional for screening)
    kalshi_api_key_id: str = ""
    kalshi_private_key_path: str = ""
    # Inline PEM; literal "\n" sequences are unescaped at load time
    kalshi_private_key: str = ""
    kalshi_host: str = "https://api.elections.kalshi.com/trade-api/v2"
    kalshi_demo: bool = False
    http_timeout_sec: float = Field(default=10.0, gt=0)

    # Retry policy for every exchange call
    retry_max_attempts: int = Field(default=4, ge=1, le=10)
    retry_backoff_sec: float = Field(default=5.0, ge=0)
    retry_max_backoff_sec: float = Field(default=60.0, ge=0)

    # Job HTTP surface
    cron_secret: str = ""
    server_host: str = "127.0.0.1"
    server_port: int = Field(default=8000, ge=1, le=65535)

    # Trading constants
    daily_budget: float = Field(default=100.0, gt=0)
    min_odds: float = Field(default=0.85, gt=0, le=1.0)
    max_odds: float = Field(default=0.98, gt=0, le=1.0)
    max_days_to_resolution: float = Field(default=2.0, ge=0)
    min_liquidity: float = Field(default=2000.0, ge=0)
    min_position_size: float = Field(default=20.0, gt=0)
    max_position_size: float = Field(default=50.0, gt=0)
    max_selections: int = Field(default=3, ge=0, le=10)
    # Side chosen when both legs are priced equally
    tie_side: str = Field(default="YES", pattern="^(YES|NO)$")
    dry_run: bool = True

    # Screener criteria
    screen_min_volume_24h: float = Field(default=2000.0, ge=0)
    screen_min_open_interest: float = Field(default=2000.0, ge=0)
    # Spread cap in cents; 0 disables the spread filter and spread points
    screen_max_spread_cents: float = Field(default=0.0, ge=0)
    screen_max_days: float = Field(default=3.0, ge=0)
    screen_top_n: int = Field(default=40, ge=1)
    screen_order_size: float = Field(default=100.0, gt=0)
    screen_max_pages: int = Field(default=200, ge=1)
    screen_page_delay_sec: float = Field(default=0.5, ge=0)
    screen_depth_delay_sec: float = Field(default=0.05, ge=0)
    screen_rate_limit_wait_sec: float = Field(default=5.0, ge=0)
    screen_depth_rate_limit_wait_sec: float = Field(default=2.0, ge=0)
    # Max acceptable estimated slippage from the depth check
    screen_max_execution_slippage: float = Field(default=0.10, gt=0, le=1.0)

    # Market cache
    cache_ttl_hours: float = Field(default=2.0, gt=0)
    cache_refresh_pages: int = Field(default=5, ge=1)

    # Stop-loss defaults (seed the persisted config row on first use)
    stop_loss_enabled: bool = True
    stop_loss_threshold: float = Field(default=0.80, gt=0, lt=1.0)
    stop_loss_min_hold_hours: float = Field(default=1.0, ge=0)
    stop_loss_max_slippage: float = Field(default=0.05, ge=0, le=1.0)
    max_stop_losses_24h: int = Field(default=3, ge=1)

    # Executor
    fill_timeout_sec: float = Field(default=30.0, ge=0)
    fill_poll_interval_sec: float = Field(default=2.0, gt=0)

    # Resolver / order reconciliation
    reinvest_threshold: float = Field(default=20.0, ge=0)
    # Run a trading cycle with freed cash after resolutions
    reinvest_enabled: bool = False
    stale_order_hours: float = Field(default=6.0, gt=0)
    order_match_window_sec: float = Field(default=60.0, gt=0)

    # Minimum trading cadence: force a trade when none exists today
    forced_trade_enabled: bool = True
    forced_trade_candidates: int = Field(default=3, ge=1)
    forced_trade_confidence: float = Field(default=0.75, ge=0, le=1.0)

    # Exclusions (comma-separated)
    excluded_categories: str = _DEFAULT_EXCLUDED_CATEGORIES
    excluded_keywords: str = _DEFAULT_EXCLUDED_KEYWORDS

    # Decision oracle
    oracle_url: str = ""
    oracle_api_key: str = ""
    oracle_timeout_sec: float = Field(default=60.0, gt=0)
    history_window: int = Field(default=50, ge=0)

    # Alerts (empty webhook URL = log-only)
    alert_webhook_url: str = ""
    alert_timeout_sec: float = Field(default=5.0, gt=0)

    # Persistence
    db_path: str = "trader.db"
    initial_bankroll: float = Field(default=1000.0, ge=0)
    job_lease_ttl_sec: float = Field(default=900.0, gt=0)

    # Logging
    log_level: str = "INFO"
    json_log_file: str = ""

    @model_validator(mode="after")
    def _check_bands(self) -> Config:
        if self.min_position_size > self.max_position_size:
            raise ValueError(
                f"min_position_size {self.min_position_size} > max_position_size {self.max_position_size}"
            )
        if self.min_odds > self.max_odds:
            raise ValueError(f"min_odds {self.min_odds} > max_odds {self.max_odds}")
        return self

    @property
    def excluded_category_list(self) -> tuple[str, ...]:
        return _csv(self.excluded_categories)

    @property
    def excluded_keyword_list(self) -> tuple[str, ...]:
        return _csv(self.excluded_keywords)

    @property
    def has_kalshi_credentials(self) -> bool:
        return bool(self.kalshi_api_key_id and (self.kalshi_private_key or self.kalshi_private_key_path))


def load_config() -> Config:
    """Load and validate config from environment. Raises ValidationError on invalid values."""
    return Config()

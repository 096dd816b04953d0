"""
Configuration schema and loader.

This module defines dataclasses that mirror the expected structure of
the YAML configuration file (`config.yaml`).  A helper function
`load_config()` reads a YAML file from disk, merges it over the
defaults and finally applies environment overrides for credentials
and deployment switches.  `validate_config()` is called once at
startup; any problem it reports is fatal.

Secrets never live in the YAML file.  They are read from the
environment (optionally via a `.env` file next to the working
directory) so the same configuration can be shared between practice
and live accounts.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, asdict
from typing import List, Dict, Any, Optional

import yaml
from dotenv import load_dotenv


class ConfigError(Exception):
    """Raised when the configuration is incomplete or inconsistent."""

    def __init__(self, errors: List[str]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


@dataclass
class OandaConfig:
    """Connection parameters for the OANDA v20 REST API.

    Attributes
    ----------
    api_key : str
        Personal access token.  Read from ``OANDA_API_KEY``.
    account_id : str
        v20 account identifier.  Read from ``OANDA_ACCOUNT_ID``.
    mode : str
        ``practice`` or ``live``; selects the API host.
    request_timeout : float
        Per-request timeout in seconds.
    retry_attempts : int
        Attempts made for transient failures (timeouts, HTTP 5xx)
        before giving up.
    retry_delay : float
        Base backoff in seconds; attempt ``n`` waits ``retry_delay * n``.
    requests_per_second : int
        Client-side throttle.
    """

    api_key: str = ""
    account_id: str = ""
    mode: str = "practice"
    request_timeout: float = 10.0
    retry_attempts: int = 3
    retry_delay: float = 1.0
    requests_per_second: int = 100

    @property
    def hostname(self) -> str:
        if self.mode == "live":
            return "https://api-fxtrade.oanda.com"
        return "https://api-fxpractice.oanda.com"


@dataclass
class InstrumentConfig:
    """The single traded instrument and how its prices are quoted.

    Attributes
    ----------
    symbol : str
        OANDA instrument name, e.g. ``XAU_USD``.
    timeframe : str
        Candle granularity used for analysis (``H4`` by default).
    pip_size : float
        Price value of one pip.  For gold 1 pip is ``0.01``.
    price_precision : int
        Decimals used when sending prices to the broker.
    candle_count : int
        Number of candles requested per scan.
    min_bars : int
        Minimum number of completed bars required before analysing.
    """

    symbol: str = "XAU_USD"
    timeframe: str = "H4"
    pip_size: float = 0.01
    price_precision: int = 2
    candle_count: int = 200
    min_bars: int = 100

    def pips_to_price(self, pips: float) -> float:
        return pips * self.pip_size

    def price_to_pips(self, price: float) -> float:
        return price / self.pip_size


@dataclass
class RiskConfig:
    """Account-level risk budget.

    Attributes
    ----------
    max_risk_per_trade : float
        Fraction of balance risked per trade (0.015 = 1.5 %).
    max_portfolio_risk : float
        Ceiling on portfolio heat (fraction of balance at risk across
        all open trades, including the proposed one).
    initial_balance : float
        Balance used before the first broker sync and as the baseline
        for total return.
    max_daily_loss : float
        Absolute daily loss (account currency) that blocks new trades.
    target_daily_profit : float
        Daily profit target, reported in ``/status``.
    stop_at_daily_target : bool
        When set, new trades are blocked once the daily target is met.
    min_position_size, max_position_size : int
        Clamp applied to computed unit sizes.
    """

    max_risk_per_trade: float = 0.015
    max_portfolio_risk: float = 0.05
    initial_balance: float = 10000.0
    max_daily_loss: float = 150.0
    target_daily_profit: float = 100.0
    stop_at_daily_target: bool = False
    min_position_size: int = 1
    max_position_size: int = 50000


@dataclass
class ExitConfig:
    """Exit management for open positions.

    Attributes
    ----------
    take_profit1_rr, take_profit2_rr : float
        Reward multiples of the initial risk distance for TP1 and TP2.
    partial_close_fraction : float
        Fraction of the position closed when TP1 is reached.
    move_stop_to_breakeven : bool
        Move the stop to the entry price after the TP1 partial close.
    trailing_enabled : bool
        Enable the trailing stop.
    trailing_distance_pips : float
        Distance kept between the best price seen and the stop.
    """

    take_profit1_rr: float = 1.5
    take_profit2_rr: float = 2.5
    partial_close_fraction: float = 0.6
    move_stop_to_breakeven: bool = True
    trailing_enabled: bool = True
    trailing_distance_pips: float = 200.0


@dataclass
class StrategyConfig:
    """Strategy selection and parameters.

    ``live`` names the strategy that submits orders; every name in
    ``shadow`` is evaluated on the same snapshot and tracked
    hypothetically for comparison.
    """

    live: str = "triple_confirmation"
    shadow: List[str] = field(default_factory=lambda: ["ma_crossover"])
    ema_fast: int = 20
    ema_slow: int = 50
    rsi_period: int = 14
    rsi_bullish_min: float = 40.0
    rsi_bullish_max: float = 70.0
    rsi_bearish_min: float = 30.0
    rsi_bearish_max: float = 60.0
    stop_loss_pips: float = 300.0
    min_ema_separation_pips: float = 1000.0
    min_confidence: float = 70.0
    sma_fast: int = 5
    sma_slow: int = 20


@dataclass
class ScheduleConfig:
    """Tick cadences.  All values must be positive."""

    scan_interval_minutes: int = 15
    monitor_interval_seconds: int = 60
    daily_reset_check_seconds: int = 300
    command_poll_seconds: int = 5


@dataclass
class TelegramConfig:
    """Telegram notifier and remote-control settings."""

    enabled: bool = False
    bot_token: str = ""
    chat_ids: List[int] = field(default_factory=list)
    error_alert_interval_seconds: int = 3600
    request_timeout: float = 10.0


@dataclass
class StorageConfig:
    """Where durable state is written."""

    data_dir: str = "data"


@dataclass
class LoggingConfig:
    """Logging destinations."""

    level: str = "INFO"
    to_file: bool = True
    file_path: str = "logs/gold_bot.log"


@dataclass
class Config:
    """Root configuration for the trading bot."""

    oanda: OandaConfig = field(default_factory=OandaConfig)
    instrument: InstrumentConfig = field(default_factory=InstrumentConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    exits: ExitConfig = field(default_factory=ExitConfig)
    strategy: StrategyConfig = field(default_factory=StrategyConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _merge_dict(defaults: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge two dictionaries.

    The values in `override` take precedence over those in `defaults`.
    This helper is used when loading YAML into nested dataclasses.
    """
    result: Dict[str, Any] = defaults.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _merge_dict(result[key], value)
        else:
            result[key] = value
    return result


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "y", "on")


def _parse_chat_ids(raw: str) -> List[int]:
    ids: List[int] = []
    for part in raw.split(","):
        part = part.strip()
        if part:
            ids.append(int(part))
    return ids


def apply_env_overrides(cfg: Config, env: Optional[Dict[str, str]] = None) -> Config:
    """Overlay credentials and deployment switches from the environment."""
    env = dict(os.environ) if env is None else env

    if env.get("OANDA_API_KEY"):
        cfg.oanda.api_key = env["OANDA_API_KEY"]
    if env.get("OANDA_ACCOUNT_ID"):
        cfg.oanda.account_id = env["OANDA_ACCOUNT_ID"]
    if env.get("TRADING_MODE"):
        cfg.oanda.mode = env["TRADING_MODE"].strip().lower()
    if env.get("TRADING_SYMBOL"):
        cfg.instrument.symbol = env["TRADING_SYMBOL"].strip()
    if env.get("ENABLE_TELEGRAM"):
        cfg.telegram.enabled = _parse_bool(env["ENABLE_TELEGRAM"])
    if env.get("TELEGRAM_BOT_TOKEN"):
        cfg.telegram.bot_token = env["TELEGRAM_BOT_TOKEN"]
    if env.get("TELEGRAM_CHAT_ID"):
        cfg.telegram.chat_ids = _parse_chat_ids(env["TELEGRAM_CHAT_ID"])
    if env.get("LOG_LEVEL"):
        cfg.logging.level = env["LOG_LEVEL"].upper()
    return cfg


def config_from_dict(raw: Dict[str, Any]) -> Config:
    """Build a `Config` from a (possibly partial) nested dictionary."""
    merged = _merge_dict(asdict(Config()), raw or {})
    return Config(
        oanda=OandaConfig(**merged['oanda']),
        instrument=InstrumentConfig(**merged['instrument']),
        risk=RiskConfig(**merged['risk']),
        exits=ExitConfig(**merged['exits']),
        strategy=StrategyConfig(**merged['strategy']),
        schedule=ScheduleConfig(**merged['schedule']),
        telegram=TelegramConfig(**merged['telegram']),
        storage=StorageConfig(**merged['storage']),
        logging=LoggingConfig(**merged['logging']),
    )


def load_config(path: Optional[str], env_file: Optional[str] = ".env") -> Config:
    """Load a configuration file from the given YAML path.

    Parameters
    ----------
    path : str or None
        Path to the YAML file.  ``None`` or a missing file yields the
        defaults.
    env_file : str or None
        Optional dotenv file loaded before environment overrides are
        applied.

    Returns
    -------
    Config
        A populated configuration object.  Missing fields are filled with
        the defaults defined in the dataclasses.
    """
    raw: Dict[str, Any] = {}
    if path and os.path.exists(path):
        with open(path, "r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh) or {}

    if env_file:
        load_dotenv(env_file)

    return apply_env_overrides(config_from_dict(raw))


def validate_config(cfg: Config) -> None:
    """Check credentials and numeric ranges.

    Raises
    ------
    ConfigError
        Listing every problem found.
    """
    errors: List[str] = []

    if not cfg.oanda.api_key:
        errors.append("OANDA_API_KEY is required")
    if not cfg.oanda.account_id:
        errors.append("OANDA_ACCOUNT_ID is required")
    if cfg.oanda.mode not in ("practice", "live"):
        errors.append(f"TRADING_MODE must be 'practice' or 'live', got {cfg.oanda.mode!r}")
    if cfg.oanda.retry_attempts < 1:
        errors.append("oanda.retry_attempts must be at least 1")

    risk = cfg.risk
    if not 0 < risk.max_risk_per_trade <= 0.05:
        errors.append("risk.max_risk_per_trade must be in (0, 0.05]")
    if not 0 < risk.max_portfolio_risk <= 0.25:
        errors.append("risk.max_portfolio_risk must be in (0, 0.25]")
    if risk.max_daily_loss <= 0:
        errors.append("risk.max_daily_loss must be positive")
    if risk.min_position_size < 1:
        errors.append("risk.min_position_size must be at least 1 unit")
    if risk.max_position_size < risk.min_position_size:
        errors.append("risk.max_position_size must not be below risk.min_position_size")

    exits = cfg.exits
    if not 0 < exits.partial_close_fraction < 1:
        errors.append("exits.partial_close_fraction must be in (0, 1)")
    if exits.take_profit1_rr <= 0 or exits.take_profit2_rr <= exits.take_profit1_rr:
        errors.append("exits.take_profit2_rr must exceed exits.take_profit1_rr > 0")
    if exits.trailing_enabled and exits.trailing_distance_pips <= 0:
        errors.append("exits.trailing_distance_pips must be positive")

    strat = cfg.strategy
    if strat.ema_fast >= strat.ema_slow:
        errors.append("strategy.ema_fast must be less than strategy.ema_slow")
    if strat.sma_fast >= strat.sma_slow:
        errors.append("strategy.sma_fast must be less than strategy.sma_slow")
    if strat.rsi_bullish_min >= strat.rsi_bullish_max:
        errors.append("strategy.rsi_bullish_min must be less than strategy.rsi_bullish_max")
    if strat.rsi_bearish_min >= strat.rsi_bearish_max:
        errors.append("strategy.rsi_bearish_min must be less than strategy.rsi_bearish_max")
    if strat.stop_loss_pips <= 0:
        errors.append("strategy.stop_loss_pips must be positive")

    sched = cfg.schedule
    for name in ("scan_interval_minutes", "monitor_interval_seconds",
                 "daily_reset_check_seconds", "command_poll_seconds"):
        if getattr(sched, name) <= 0:
            errors.append(f"schedule.{name} must be positive")

    if cfg.instrument.min_bars > cfg.instrument.candle_count:
        errors.append("instrument.min_bars cannot exceed instrument.candle_count")

    if cfg.telegram.enabled:
        if not cfg.telegram.bot_token:
            errors.append("TELEGRAM_BOT_TOKEN is required when Telegram is enabled")
        if not cfg.telegram.chat_ids:
            errors.append("TELEGRAM_CHAT_ID is required when Telegram is enabled")

    if errors:
        raise ConfigError(errors)

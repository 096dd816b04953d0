"""
Application entry point.

This module defines a simple command-line interface for the bot:

- ``run``    - start the scheduler and trade until interrupted
- ``check``  - verify the OANDA credentials and print account details
- ``report`` - write a performance report from the trade journal
"""

from __future__ import annotations

import argparse
import logging
import logging.handlers
import os
import signal
import sys
from typing import List, Optional

from .broker.oanda_client import BrokerError, OandaClient
from .config.schema import Config, ConfigError, load_config, validate_config
from .engine.trading_engine import TradingEngine
from .notify.commands import TelegramCommandHandler
from .notify.telegram import NullNotifier, TelegramNotifier
from .reporting.report import generate_performance_report
from .risk.controller import RiskController
from .tracking.strategy_tracker import StrategyTracker
from .utils.persistence import StateFileError
from .utils.scheduler import Scheduler


logger = logging.getLogger("goldbot")

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'


def _setup_logging(verbose: bool, config: Optional[Config] = None) -> None:
    """Configure logging for the application."""
    level_name = config.logging.level if config is not None else "INFO"
    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if config is not None and config.logging.to_file:
        log_path = config.logging.file_path
        os.makedirs(os.path.dirname(log_path) or ".", exist_ok=True)
        handlers.append(logging.handlers.RotatingFileHandler(
            log_path, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8"))
        root, ext = os.path.splitext(log_path)
        error_handler = logging.handlers.RotatingFileHandler(
            f"{root}.error{ext or '.log'}", maxBytes=10 * 1024 * 1024, backupCount=3, encoding="utf-8")
        error_handler.setLevel(logging.ERROR)
        handlers.append(error_handler)
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt='%Y-%m-%d %H:%M:%S',
        handlers=handlers,
        force=True,
    )


def _load_validated(path: str) -> Config:
    config = load_config(path)
    try:
        validate_config(config)
    except ConfigError as exc:
        for problem in exc.errors:
            logger.error("Configuration error: %s", problem)
        sys.exit(1)
    return config


def _build_client(config: Config) -> OandaClient:
    return OandaClient(config.oanda, price_precision=config.instrument.price_precision)


def run(config: Config) -> None:
    client = _build_client(config)
    notifier = TelegramNotifier(config.telegram) if config.telegram.enabled else NullNotifier()
    engine = TradingEngine(config, client, notifier)
    try:
        engine.startup()
    except (BrokerError, StateFileError) as exc:
        logger.error("Startup failed: %s", exc)
        sys.exit(1)

    commands = TelegramCommandHandler(notifier, engine) if config.telegram.enabled else None
    scheduler = Scheduler()
    engine.register_tasks(scheduler, commands)

    def _terminate(signum, frame):
        logger.info("Received signal %s, stopping", signum)
        scheduler.stop()

    signal.signal(signal.SIGTERM, _terminate)
    logger.info("Bot running - scanning every %d min, monitoring every %d s. Press Ctrl+C to stop.",
                config.schedule.scan_interval_minutes, config.schedule.monitor_interval_seconds)
    try:
        scheduler.run_forever()
    except KeyboardInterrupt:
        logger.info("Interrupted, stopping")
    finally:
        engine.shutdown()


def check(config: Config) -> int:
    """Print account, price and open-trade details.  Returns an exit status."""
    client = _build_client(config)
    symbol = config.instrument.symbol
    if not client.test_connection(symbol):
        return 1
    try:
        bars = client.get_candles(symbol, config.instrument.timeframe, 5)
        trades = client.get_open_trades()
    except BrokerError as exc:
        logger.error("Check failed: %s", exc)
        return 1
    logger.info("Last %d %s candles:\n%s", len(bars), config.instrument.timeframe, bars.to_string())
    logger.info("%d open trade(s)", len(trades))
    for trade in trades:
        logger.info("  #%s %s %d @ %.2f (P&L %.2f)", trade.trade_id, trade.instrument,
                    trade.units, trade.price, trade.unrealized_pl)
    return 0


def report(config: Config, out_dir: str, include_shadow: bool = False) -> dict:
    data_dir = config.storage.data_dir
    tracker = StrategyTracker(os.path.join(data_dir, "tracker.json"))
    tracker.restore()
    risk = RiskController(None, config.risk, os.path.join(data_dir, "risk_state.json"))
    risk.restore()
    trades = [t for t in tracker.trades() if include_shadow or t.live]
    metrics = generate_performance_report(trades, risk.state.initial_balance, out_dir=out_dir)
    logger.info("Report for %d trade(s) written to %s", metrics['num_trades'], out_dir)
    print(tracker.format_comparison())
    return metrics


def main(argv: Optional[List[str]] = None) -> None:
    """Parse command-line arguments and dispatch to the requested command."""
    parser = argparse.ArgumentParser(description="Gold trend trading bot for OANDA")
    parser.add_argument('command', choices=['run', 'check', 'report'], help="What to do")
    parser.add_argument('--config', default='config.yaml', help="Path to configuration YAML file")
    parser.add_argument('--out', default='results', help="Output directory for the report command")
    parser.add_argument('--include-shadow', action='store_true',
                        help="Include hypothetical shadow-strategy trades in the report")
    parser.add_argument('-v', '--verbose', action='store_true', help="Enable debug logging")
    args = parser.parse_args(argv)

    if args.command == 'report':
        config = load_config(args.config)
        _setup_logging(args.verbose)
        report(config, args.out, args.include_shadow)
        return

    _setup_logging(args.verbose)
    config = _load_validated(args.config)
    if args.command == 'check':
        sys.exit(check(config))

    _setup_logging(args.verbose, config)
    run(config)


if __name__ == '__main__':
    main()

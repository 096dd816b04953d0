"""
Telegram remote control.

`poll()` runs as a scheduled task: it fetches pending updates with a
short ``getUpdates`` call and answers commands from authorized chats.
Because it runs on the scheduler thread, a command such as ``/stop`` or
``/emergency confirm`` never interleaves with a scan or monitor tick.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

import requests

from ..broker.oanda_client import BrokerError
from ..utils.timeutils import format_duration


logger = logging.getLogger(__name__)

HELP_TEXT = (
    "GOLD TRADING BOT COMMANDS\n\n"
    "Monitoring:\n"
    "/status - Bot status and summary\n"
    "/positions - View open positions\n"
    "/pnl - Profit & loss (daily and all-time)\n"
    "/balance - Account balance\n"
    "/compare - Compare live and shadow strategies\n\n"
    "Control:\n"
    "/stop - Stop opening trades (positions stay managed)\n"
    "/resume - Resume trading\n"
    "/emergency - Close all positions and stop trading\n\n"
    "/help - Show this message"
)


class TelegramCommandHandler:
    def __init__(self, notifier, engine, poll_timeout: int = 0) -> None:
        self.notifier = notifier
        self.engine = engine
        self.config = notifier.config
        self.poll_timeout = poll_timeout
        self.offset: Optional[int] = None
        self.commands_executed = 0
        self._handlers: Dict[str, Callable[[str], str]] = {
            "/start": self.handle_start,
            "/help": self.handle_help,
            "/status": self.handle_status,
            "/positions": self.handle_positions,
            "/pnl": self.handle_pnl,
            "/profit": self.handle_pnl,
            "/balance": self.handle_balance,
            "/compare": self.handle_compare,
            "/stop": self.handle_stop,
            "/resume": self.handle_resume,
            "/emergency": self.handle_emergency,
        }

    def is_authorized(self, chat_id: Optional[int], user_id: Optional[int] = None) -> bool:
        allowed = set(self.config.chat_ids)
        return chat_id in allowed or (user_id is not None and user_id in allowed)

    def poll(self) -> int:
        """Fetch and answer pending commands; returns how many were handled."""
        payload: Dict[str, Any] = {"timeout": self.poll_timeout, "allowed_updates": ["message"]}
        if self.offset is not None:
            payload["offset"] = self.offset
        try:
            data = self.notifier.call("getUpdates", payload,
                                      timeout=self.poll_timeout + self.config.request_timeout)
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Telegram getUpdates failed: %s", exc)
            return 0

        handled = 0
        for update in data.get("result", []):
            self.offset = max(self.offset or 0, int(update.get("update_id", 0)) + 1)
            message = update.get("message") or update.get("edited_message") or {}
            text = (message.get("text") or "").strip()
            if not text.startswith("/"):
                continue
            chat_id = (message.get("chat") or {}).get("id")
            user_id = (message.get("from") or {}).get("id")
            if not self.is_authorized(chat_id, user_id):
                logger.warning("Unauthorized command %r from user %s (chat %s)", text, user_id, chat_id)
                self.notifier.send_message("Unauthorized access. Your user ID has been logged.", chat_id)
                continue
            reply = self.dispatch(text)
            self.notifier.send_message(reply, chat_id)
            handled += 1
        return handled

    def dispatch(self, text: str) -> str:
        command, _, args = text.partition(" ")
        # Commands addressed to a named bot arrive as "/status@MyBot".
        command = command.split("@", 1)[0].lower()
        handler = self._handlers.get(command)
        if handler is None:
            return "Unknown command. /help"
        logger.info("Telegram command %s", command)
        try:
            reply = handler(args.strip())
        except BrokerError as exc:
            logger.error("Error in %s command: %s", command, exc)
            return f"Error: {exc}"
        self.commands_executed += 1
        return reply

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------
    def handle_start(self, args: str) -> str:
        return "Gold Trading Bot Control Panel\n\n" + HELP_TEXT

    def handle_help(self, args: str) -> str:
        return HELP_TEXT

    def handle_status(self, args: str) -> str:
        engine = self.engine
        summary = engine.risk.get_portfolio_summary()
        risk_cfg = engine.config.risk
        started = engine.started_at
        runtime = (engine.clock() - started).total_seconds() if started is not None else 0
        loss_used = abs(summary.daily_pnl) / risk_cfg.max_daily_loss * 100 if summary.daily_pnl < 0 else 0.0
        return (
            f"BOT STATUS: {'PAUSED' if engine.paused else 'RUNNING'} ({engine.config.oanda.mode.upper()})\n\n"
            f"Balance: ${summary.balance:,.2f}\n"
            f"Total P&L: ${summary.total_pnl:,.2f} ({summary.total_pnl_pct:+.2f}%)\n"
            f"Daily P&L: ${summary.daily_pnl:,.2f}\n\n"
            f"Portfolio heat: {summary.portfolio_heat * 100:.1f}%\n"
            f"Open positions: {summary.open_positions}\n"
            f"Runtime: {format_duration(runtime)}\n\n"
            f"Wins: {summary.winning_trades} | Losses: {summary.losing_trades} | "
            f"Win rate: {summary.win_rate:.1f}% | Trades: {summary.total_trades}\n"
            f"Daily target: ${summary.daily_pnl:.2f} / ${risk_cfg.target_daily_profit:.2f}\n"
            f"Loss limit used: {loss_used:.0f}%"
        )

    def handle_positions(self, args: str) -> str:
        trades = self.engine.client.get_open_trades()
        if not trades:
            return "No open positions"
        lines = ["OPEN POSITIONS", ""]
        for i, trade in enumerate(trades, 1):
            tracked = self.engine.ledger.get(trade.trade_id)
            notional = abs(trade.units) * trade.price
            pnl_pct = trade.unrealized_pl / notional * 100 if notional else 0.0
            lines.append(f"{i}. {trade.instrument} {'LONG' if trade.is_long else 'SHORT'} (#{trade.trade_id})")
            lines.append(f"Entry: {trade.price:.2f} | Size: {abs(trade.units)} units")
            lines.append(f"P&L: ${trade.unrealized_pl:.2f} ({pnl_pct:+.2f}%)")
            if trade.stop_loss is not None:
                lines.append(f"Stop: {trade.stop_loss:.2f}")
            if trade.take_profit is not None:
                lines.append(f"Target: {trade.take_profit:.2f}")
            if tracked is not None:
                lines.append(f"Phase: {tracked.phase.value}{' (trailing)' if tracked.trailing_active else ''}")
            lines.append("")
        lines.append(f"Total unrealized P&L: ${sum(t.unrealized_pl for t in trades):.2f}")
        return "\n".join(lines)

    def handle_pnl(self, args: str) -> str:
        state = self.engine.risk.state
        total = state.total_trade_count
        daily_rate = state.daily_win_count / state.daily_trade_count * 100 if state.daily_trade_count else 0.0
        return (
            "PROFIT & LOSS\n\n"
            f"Today ({state.last_reset_date}): ${state.daily_pnl:+,.2f} over {state.daily_trade_count} trade(s), "
            f"win rate {daily_rate:.1f}%\n"
            f"All time: ${state.total_pnl:+,.2f} over {total} trade(s), "
            f"win rate {self.engine.risk.win_rate:.1f}%"
        )

    def handle_balance(self, args: str) -> str:
        balance = self.engine.client.get_balance()
        return (
            "ACCOUNT BALANCE\n\n"
            f"Balance: {balance.balance:,.2f} {balance.currency}\n"
            f"NAV: {balance.nav:,.2f}\n"
            f"Unrealized P&L: {balance.unrealized_pl:+,.2f}\n"
            f"Margin used: {balance.margin_used:,.2f}\n"
            f"Margin available: {balance.margin_available:,.2f}"
        )

    def handle_compare(self, args: str) -> str:
        period = args.lower() or "all"
        if len(self.engine.tracker.strategies) < 2:
            return "Not enough strategies tracked for a comparison"
        return self.engine.tracker.format_comparison(period)

    def handle_stop(self, args: str) -> str:
        if not self.engine.pause():
            return "Trading is already paused"
        return ("Trading paused.\n"
                "No new positions will be opened; open positions are still monitored.\n"
                "Send /resume to continue.")

    def handle_resume(self, args: str) -> str:
        if not self.engine.resume():
            return "Bot is already running"
        return "Bot resumed. Trading will continue."

    def handle_emergency(self, args: str) -> str:
        if args.lower() != "confirm":
            return ("EMERGENCY STOP\n\n"
                    "This closes ALL open positions at market and stops trading.\n"
                    "Send '/emergency confirm' to proceed.")
        closed, failed = self.engine.emergency_close_all()
        return f"Emergency stop executed: {closed} closed, {failed} failed. Trading paused."

"""
Telegram notifications.

`notify()` is fire-and-forget: formatting or delivery problems are
logged and swallowed so that a notification can never abort the trade
operation that triggered it.  Transient-error warnings are rate limited
because an extended broker outage would otherwise produce one alert per
monitor tick.
"""

from __future__ import annotations

import enum
import logging
import time
from typing import Any, Callable, Dict, Optional

import requests

from ..config.schema import TelegramConfig


logger = logging.getLogger(__name__)

API_URL = "https://api.telegram.org/bot{token}/{method}"


class NotificationEvent(str, enum.Enum):
    BOT_STARTED = "BOT_STARTED"
    BOT_STOPPED = "BOT_STOPPED"
    TRADE_OPENED = "TRADE_OPENED"
    TP1_PARTIAL_CLOSED = "TP1_PARTIAL_CLOSED"
    TRAILING_STOP_UPDATED = "TRAILING_STOP_UPDATED"
    TRADE_CLOSED = "TRADE_CLOSED"
    RISK_BLOCK = "RISK_BLOCK"
    TRANSIENT_ERROR = "TRANSIENT_ERROR"
    EMERGENCY_CLOSE = "EMERGENCY_CLOSE"


def _price(value: Optional[float]) -> str:
    return "n/a" if value is None else f"{value:.2f}"


def _money(value: Optional[float]) -> str:
    return "n/a" if value is None else f"${value:+,.2f}"


def _trade_opened(p: Dict[str, Any]) -> str:
    return (
        f"LIVE TRADE OPENED - {p.get('strategy', '')}\n\n"
        f"{p['side']} {p['units']} {p['instrument']} @ {_price(p.get('entry_price'))}\n"
        f"Stop loss: {_price(p.get('stop_loss'))}\n"
        f"TP1: {_price(p.get('take_profit1'))} | TP2: {_price(p.get('take_profit2'))}\n"
        f"Confidence: {p.get('confidence', 0):.0f}%\n"
        f"Reason: {p.get('reason', '')}\n"
        f"Trade ID: {p['trade_id']}"
    )


def _tp1_closed(p: Dict[str, Any]) -> str:
    return (
        f"TP1 HIT - partial close\n\n"
        f"{p['instrument']} trade {p['trade_id']}: closed {p['units_closed']} units @ {_price(p.get('price'))}\n"
        f"Realized: {_money(p.get('realized_pl'))}\n"
        f"Remaining: {p['remaining_units']} units, stop to breakeven, target {_price(p.get('take_profit2'))}"
    )


def _trailing_updated(p: Dict[str, Any]) -> str:
    return (
        f"Trailing stop moved\n\n"
        f"{p['instrument']} trade {p['trade_id']}: {_price(p.get('old_stop'))} -> {_price(p.get('new_stop'))}\n"
        f"Best price: {_price(p.get('best_price'))}"
    )


def _trade_closed(p: Dict[str, Any]) -> str:
    pnl = p.get("realized_pl")
    header = "LIVE TRADE CLOSED" if pnl is None else (
        "LIVE TRADE CLOSED - WIN" if pnl >= 0 else "LIVE TRADE CLOSED - LOSS")
    return (
        f"{header}\n\n"
        f"{p.get('side', '')} {p['instrument']} trade {p['trade_id']}\n"
        f"Entry: {_price(p.get('entry_price'))} | Exit: {_price(p.get('exit_price'))}\n"
        f"P&L: {_money(pnl)}\n"
        f"Reason: {p.get('close_reason', 'UNKNOWN')}"
    )


def _risk_block(p: Dict[str, Any]) -> str:
    details = p.get("details") or {}
    extra = ", ".join(f"{k}={v}" for k, v in details.items())
    return f"Trade blocked by risk management: {p.get('reason')}\n{extra}".rstrip()


def _transient_error(p: Dict[str, Any]) -> str:
    return f"Bot warning during {p.get('context', 'tick')}: {p.get('error')}"


def _bot_started(p: Dict[str, Any]) -> str:
    return (
        f"Gold bot started ({p.get('mode', 'practice')})\n"
        f"Instrument: {p.get('instrument')} {p.get('timeframe')}\n"
        f"Strategy: {p.get('strategy')}\n"
        f"Balance: ${p.get('balance', 0):,.2f} | Restored positions: {p.get('positions', 0)}"
    )


def _bot_stopped(p: Dict[str, Any]) -> str:
    return f"Gold bot stopped. Uptime {p.get('uptime', 'n/a')}, total P&L {_money(p.get('total_pnl'))}"


def _emergency_close(p: Dict[str, Any]) -> str:
    return (
        f"EMERGENCY CLOSE executed\n"
        f"Closed {p.get('closed', 0)} trade(s), failed {p.get('failed', 0)}. Trading paused."
    )


_FORMATTERS: Dict[NotificationEvent, Callable[[Dict[str, Any]], str]] = {
    NotificationEvent.TRADE_OPENED: _trade_opened,
    NotificationEvent.TP1_PARTIAL_CLOSED: _tp1_closed,
    NotificationEvent.TRAILING_STOP_UPDATED: _trailing_updated,
    NotificationEvent.TRADE_CLOSED: _trade_closed,
    NotificationEvent.RISK_BLOCK: _risk_block,
    NotificationEvent.TRANSIENT_ERROR: _transient_error,
    NotificationEvent.BOT_STARTED: _bot_started,
    NotificationEvent.BOT_STOPPED: _bot_stopped,
    NotificationEvent.EMERGENCY_CLOSE: _emergency_close,
}


def format_event(event: NotificationEvent, payload: Dict[str, Any]) -> str:
    return _FORMATTERS[event](payload)


class TelegramNotifier:
    """Pushes events to every authorized chat through the Bot API."""

    def __init__(
        self,
        config: TelegramConfig,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.session = session or requests.Session()
        self.clock = clock
        self._last_error_alert: Optional[float] = None

    def _url(self, method: str) -> str:
        return API_URL.format(token=self.config.bot_token, method=method)

    def call(self, method: str, payload: Optional[Dict[str, Any]] = None,
             timeout: Optional[float] = None) -> Dict[str, Any]:
        """Invoke a Bot API method.  Raises `requests.RequestException` on failure."""
        response = self.session.post(self._url(method), json=payload or {},
                                     timeout=timeout or self.config.request_timeout)
        response.raise_for_status()
        data = response.json()
        if not data.get("ok", False):
            raise requests.RequestException(f"Telegram {method} failed: {data.get('description')}")
        return data

    def send_message(self, text: str, chat_id: Optional[int] = None) -> bool:
        """Send `text` to one chat, or to all configured chats.  Never raises."""
        targets = [chat_id] if chat_id is not None else list(self.config.chat_ids)
        delivered = True
        for target in targets:
            try:
                self.call("sendMessage", {"chat_id": target, "text": text})
            except (requests.RequestException, ValueError) as exc:
                delivered = False
                logger.warning("Telegram delivery to %s failed: %s", target, exc)
        return delivered

    def _error_alert_allowed(self) -> bool:
        now = self.clock()
        if self._last_error_alert is not None and \
                now - self._last_error_alert < self.config.error_alert_interval_seconds:
            return False
        self._last_error_alert = now
        return True

    def notify(self, event: NotificationEvent, payload: Optional[Dict[str, Any]] = None) -> bool:
        """Format and deliver `event`.  Returns False when nothing was sent."""
        payload = payload or {}
        if event is NotificationEvent.TRANSIENT_ERROR and not self._error_alert_allowed():
            logger.debug("Suppressing transient error alert (rate limited)")
            return False
        try:
            text = format_event(event, payload)
        except (KeyError, TypeError, ValueError) as exc:
            logger.error("Could not format %s notification: %s", event.value, exc)
            return False
        return self.send_message(text)


class NullNotifier:
    """Used when Telegram is disabled; keeps the log line only."""

    def notify(self, event: NotificationEvent, payload: Optional[Dict[str, Any]] = None) -> bool:
        logger.debug("Notification %s (telegram disabled): %s", event.value, payload)
        return False

    def send_message(self, text: str, chat_id: Optional[int] = None) -> bool:
        return False

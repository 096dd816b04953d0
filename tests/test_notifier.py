import os
import sys

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

import tempfile
import unittest

import requests

from goldbot.broker.oanda_client import RetriesExhaustedError
from goldbot.config.schema import TelegramConfig
from goldbot.engine.trading_engine import TradingEngine
from goldbot.notify.commands import TelegramCommandHandler
from goldbot.notify.telegram import NotificationEvent, TelegramNotifier, format_event
from tests.fakes import FakeGateway, StubStrategy, make_candles, make_config


class FakeBotResponse:
    def __init__(self, body, status_code: int = 200) -> None:
        self.body = body
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self.body


class FakeBotSession:
    """Records Bot API calls; getUpdates replays the queued update batches."""

    def __init__(self) -> None:
        self.posts = []
        self.updates = []
        self.fail_sends = 0

    def post(self, url, json=None, timeout=None):
        method = url.rsplit("/", 1)[-1]
        self.posts.append((method, json))
        if method == "getUpdates":
            batch = self.updates.pop(0) if self.updates else []
            return FakeBotResponse({"ok": True, "result": batch})
        if self.fail_sends:
            self.fail_sends -= 1
            raise requests.ConnectionError("network unreachable")
        return FakeBotResponse({"ok": True, "result": {}})

    def sent(self):
        return [payload for method, payload in self.posts if method == "sendMessage"]


class Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def telegram_config() -> TelegramConfig:
    return TelegramConfig(enabled=True, bot_token="123:abc", chat_ids=[111, 222],
                          error_alert_interval_seconds=3600)


class TestTelegramNotifier(unittest.TestCase):
    def setUp(self) -> None:
        self.session = FakeBotSession()
        self.clock = Clock()
        self.notifier = TelegramNotifier(telegram_config(), session=self.session, clock=self.clock)

    def test_event_goes_to_every_chat(self) -> None:
        self.assertTrue(self.notifier.notify(NotificationEvent.EMERGENCY_CLOSE, {"closed": 2, "failed": 0}))
        self.assertEqual([p["chat_id"] for p in self.session.sent()], [111, 222])
        self.assertIn("Closed 2 trade(s)", self.session.sent()[0]["text"])

    def test_transient_errors_are_rate_limited(self) -> None:
        payload = {"context": "market scan", "error": "timeout"}
        self.assertTrue(self.notifier.notify(NotificationEvent.TRANSIENT_ERROR, payload))
        self.clock.now = 1800.0
        self.assertFalse(self.notifier.notify(NotificationEvent.TRANSIENT_ERROR, payload))
        self.clock.now = 3600.0
        self.assertTrue(self.notifier.notify(NotificationEvent.TRANSIENT_ERROR, payload))
        self.assertEqual(len(self.session.sent()), 4)

    def test_trade_events_are_not_rate_limited(self) -> None:
        for _ in range(3):
            self.notifier.notify(NotificationEvent.RISK_BLOCK, {"reason": "DAILY_LOSS_LIMIT"})
        self.assertEqual(len(self.session.sent()), 6)

    def test_delivery_failure_never_raises(self) -> None:
        self.session.fail_sends = 1
        with self.assertLogs("goldbot.notify.telegram", level="WARNING"):
            delivered = self.notifier.notify(NotificationEvent.BOT_STOPPED, {"uptime": "1h", "total_pnl": 5.0})
        self.assertFalse(delivered)
        self.assertEqual(len(self.session.sent()), 2)

    def test_bad_payload_is_logged_not_raised(self) -> None:
        with self.assertLogs("goldbot.notify.telegram", level="ERROR"):
            self.assertFalse(self.notifier.notify(NotificationEvent.TRADE_OPENED, {}))
        self.assertEqual(self.session.sent(), [])

    def test_trade_closed_text(self) -> None:
        text = format_event(NotificationEvent.TRADE_CLOSED, {
            "trade_id": "6357", "instrument": "XAU_USD", "side": "LONG", "entry_price": 2050.0,
            "exit_price": 2030.0, "realized_pl": -140.0, "close_reason": "STOP_LOSS",
        })
        self.assertTrue(text.startswith("LIVE TRADE CLOSED - LOSS"))
        self.assertIn("P&L: $-140.00", text)


class TestCommandHandler(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.cfg = make_config(self.tmp.name, trailing=False)
        self.gateway = FakeGateway()
        self.gateway.candles = make_candles()
        self.session = FakeBotSession()
        self.notifier = TelegramNotifier(telegram_config(), session=self.session)
        self.engine = TradingEngine(self.cfg, self.gateway, self.notifier,
                                    strategy=StubStrategy(self.cfg), shadow_strategies=[])
        self.handler = TelegramCommandHandler(self.notifier, self.engine)

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def message(self, update_id: int, text: str, chat_id: int = 111, user_id: int = 111) -> dict:
        return {"update_id": update_id,
                "message": {"text": text, "chat": {"id": chat_id}, "from": {"id": user_id}}}

    def test_poll_answers_and_advances_offset(self) -> None:
        self.session.updates.append([self.message(10, "/help"), self.message(11, "hello")])
        self.assertEqual(self.handler.poll(), 1)
        self.assertEqual(self.handler.offset, 12)
        reply = self.session.sent()[0]
        self.assertEqual(reply["chat_id"], 111)
        self.assertIn("/emergency", reply["text"])

        self.handler.poll()
        get_updates = [p for m, p in self.session.posts if m == "getUpdates"]
        self.assertEqual(get_updates[1]["offset"], 12)

    def test_unauthorized_chat_is_refused(self) -> None:
        self.session.updates.append([self.message(1, "/stop", chat_id=999, user_id=999)])
        with self.assertLogs("goldbot.notify.commands", level="WARNING"):
            self.assertEqual(self.handler.poll(), 0)
        self.assertFalse(self.engine.paused)
        self.assertTrue(self.session.sent()[0]["text"].startswith("Unauthorized"))

    def test_authorized_user_in_group_chat(self) -> None:
        self.session.updates.append([self.message(1, "/stop", chat_id=-500, user_id=222)])
        self.assertEqual(self.handler.poll(), 1)
        self.assertTrue(self.engine.paused)

    def test_stop_and_resume(self) -> None:
        self.assertTrue(self.handler.dispatch("/stop").startswith("Trading paused"))
        self.assertEqual(self.handler.dispatch("/stop"), "Trading is already paused")
        self.assertTrue(self.handler.dispatch("/resume").startswith("Bot resumed"))
        self.assertEqual(self.handler.dispatch("/resume"), "Bot is already running")

    def test_emergency_requires_confirmation(self) -> None:
        self.engine.scan_market()
        self.assertIn("/emergency confirm", self.handler.dispatch("/emergency"))
        self.assertEqual(len(self.gateway.trades), 1)
        reply = self.handler.dispatch("/emergency confirm")
        self.assertEqual(reply, "Emergency stop executed: 1 closed, 0 failed. Trading paused.")
        self.assertEqual(self.gateway.trades, {})
        self.assertTrue(self.engine.paused)

    def test_bot_suffix_and_unknown_command(self) -> None:
        self.assertEqual(self.handler.dispatch("/help@GoldBot"), self.handler.dispatch("/help"))
        self.assertEqual(self.handler.dispatch("/moon"), "Unknown command. /help")

    def test_status_and_positions(self) -> None:
        self.engine.scan_market()
        status = self.handler.dispatch("/status")
        self.assertIn("BOT STATUS: RUNNING (PRACTICE)", status)
        self.assertIn("Open positions: 1", status)
        positions = self.handler.dispatch("/positions")
        self.assertIn("XAU_USD LONG", positions)
        self.assertIn("Phase: OPEN_FULL", positions)

    def test_broker_failure_becomes_reply(self) -> None:
        self.gateway.fail_next("get_balance", RetriesExhaustedError("timeout", 3))
        self.assertEqual(self.handler.dispatch("/balance"), "Error: timeout")

    def test_compare_needs_two_strategies(self) -> None:
        self.assertEqual(self.handler.dispatch("/compare"), "Not enough strategies tracked for a comparison")
        self.engine.tracker.register("Stub Strategy", live=True)
        self.engine.tracker.register("Shadow", live=False)
        self.assertTrue(self.handler.dispatch("/compare weekly").startswith("STRATEGY COMPARISON (WEEKLY)"))


if __name__ == '__main__':
    unittest.main()

import os
import sys

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

import json
import unittest

import pandas as pd
import requests

from goldbot.broker.oanda_client import BrokerRequestError, OandaClient, RetriesExhaustedError
from goldbot.config.schema import OandaConfig


class FakeResponse:
    def __init__(self, status_code: int, body=None) -> None:
        self.status_code = status_code
        self._body = body
        self.content = json.dumps(body).encode() if body is not None else b""
        self.text = self.content.decode()

    def json(self):
        if self._body is None:
            raise ValueError("no JSON body")
        return self._body


class FakeSession:
    """Replays queued responses; an exception instance in the queue is raised."""

    def __init__(self, *responses) -> None:
        self.headers = {}
        self.responses = list(responses)
        self.requests = []

    def request(self, method, url, params=None, json=None, timeout=None):
        self.requests.append({"method": method, "url": url, "params": params, "json": json})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class ClientTestCase(unittest.TestCase):
    def make_client(self, *responses) -> OandaClient:
        self.sleeps = []
        self.session = FakeSession(*responses)
        config = OandaConfig(api_key="secret", account_id="101-001-1-001", retry_attempts=3, retry_delay=1.0)
        return OandaClient(config, session=self.session, sleep=self.sleeps.append)


class TestRetryPolicy(ClientTestCase):
    def test_auth_header_and_practice_host(self) -> None:
        client = self.make_client(FakeResponse(200, {"account": {"id": "x"}}))
        client.get_account_summary()
        self.assertEqual(self.session.headers["Authorization"], "Bearer secret")
        self.assertEqual(self.session.requests[0]["url"],
                         "https://api-fxpractice.oanda.com/v3/accounts/101-001-1-001/summary")

    def test_server_error_is_retried_with_linear_backoff(self) -> None:
        client = self.make_client(
            FakeResponse(503, {"errorMessage": "busy"}),
            FakeResponse(502, {"errorMessage": "busy"}),
            FakeResponse(200, {"account": {"NAV": "10150.5", "balance": "10100"}}),
        )
        balance = client.get_balance()
        self.assertEqual(balance.nav, 10150.5)
        self.assertEqual(self.sleeps, [1.0, 2.0])

    def test_timeout_is_retried(self) -> None:
        client = self.make_client(requests.Timeout("read timed out"), FakeResponse(200, {"trades": []}))
        self.assertEqual(client.get_open_trades(), [])
        self.assertEqual(len(self.session.requests), 2)

    def test_client_error_is_not_retried(self) -> None:
        client = self.make_client(FakeResponse(400, {"errorMessage": "Invalid value specified for 'units'"}))
        with self.assertRaises(BrokerRequestError) as ctx:
            client.place_market_order("XAU_USD", 0, 2030.0)
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertIn("Invalid value", str(ctx.exception))
        self.assertEqual(len(self.session.requests), 1)
        self.assertEqual(self.sleeps, [])

    def test_retries_exhausted(self) -> None:
        client = self.make_client(
            requests.ConnectionError("refused"),
            FakeResponse(500, None),
            requests.Timeout("slow"),
        )
        with self.assertRaises(RetriesExhaustedError) as ctx:
            client.get_open_trades()
        self.assertEqual(ctx.exception.attempts, 3)
        self.assertEqual(self.sleeps, [1.0, 2.0])

    def test_empty_body_returns_empty_dict(self) -> None:
        client = self.make_client(FakeResponse(204))
        self.assertEqual(client.request("GET", "/v3/anything"), {})


class TestOrders(ClientTestCase):
    def test_filled_market_order(self) -> None:
        client = self.make_client(FakeResponse(201, {
            "orderCreateTransaction": {"id": "6356"},
            "orderFillTransaction": {
                "id": "6357", "units": "7", "price": "2050.31", "reason": "MARKET_ORDER",
                "tradeOpened": {"tradeID": "6357", "units": "7"},
            },
        }))
        result = client.place_market_order("XAU_USD", 7, 2030.0)
        self.assertTrue(result.success)
        self.assertEqual(result.trade_id, "6357")
        self.assertEqual(result.units, 7)
        self.assertEqual(result.price, 2050.31)

        order = self.session.requests[0]["json"]["order"]
        self.assertEqual(order["units"], "7")
        self.assertEqual(order["timeInForce"], "FOK")
        self.assertEqual(order["stopLossOnFill"], {"price": "2030.00", "timeInForce": "GTC"})

    def test_cancelled_order_is_a_result_not_an_exception(self) -> None:
        client = self.make_client(FakeResponse(201, {
            "orderCreateTransaction": {"id": "1"},
            "orderCancelTransaction": {"id": "2", "reason": "MARKET_HALTED"},
        }))
        result = client.place_market_order("XAU_USD", -5, 2070.0)
        self.assertFalse(result.success)
        self.assertEqual(result.reason, "MARKET_HALTED")
        self.assertIsNone(result.trade_id)

    def test_partial_close_sends_unsigned_units(self) -> None:
        client = self.make_client(FakeResponse(200, {
            "orderFillTransaction": {"units": "4", "price": "2080.00", "pl": "120.00"},
        }))
        result = client.partial_close("6357", -4)
        self.assertEqual(self.session.requests[0]["json"], {"units": "4"})
        self.assertTrue(result.success)
        self.assertEqual(result.units_closed, 4)
        self.assertEqual(result.realized_pl, 120.0)

    def test_modify_trade_reports_rejection(self) -> None:
        client = self.make_client(FakeResponse(200, {
            "stopLossOrderRejectTransaction": {"rejectReason": "STOP_LOSS_ON_FILL_PRICE_INVALID"},
        }))
        result = client.modify_trade("6357", stop_loss=2050.0, take_profit=2100.0)
        self.assertFalse(result.success)
        self.assertEqual(result.reason, "STOP_LOSS_ON_FILL_PRICE_INVALID")
        payload = self.session.requests[0]["json"]
        self.assertEqual(payload["stopLoss"]["price"], "2050.00")
        self.assertEqual(payload["takeProfit"]["price"], "2100.00")

    def test_modify_without_changes_makes_no_request(self) -> None:
        client = self.make_client()
        self.assertTrue(client.modify_trade("6357").success)
        self.assertEqual(self.session.requests, [])


class TestParsing(ClientTestCase):
    def test_open_trades(self) -> None:
        client = self.make_client(FakeResponse(200, {"trades": [{
            "id": "6357", "instrument": "XAU_USD", "currentUnits": "-3", "price": "2050.00",
            "unrealizedPL": "-4.50", "openTime": "2024-03-01T10:00:00.000000000Z",
            "stopLossOrder": {"price": "2070.00"},
        }]}))
        trade = client.get_open_trades()[0]
        self.assertEqual(trade.trade_id, "6357")
        self.assertEqual(trade.units, -3)
        self.assertFalse(trade.is_long)
        self.assertEqual(trade.stop_loss, 2070.0)
        self.assertIsNone(trade.take_profit)
        self.assertEqual(trade.unrealized_pl, -4.5)

    def test_candles_keep_complete_flag(self) -> None:
        client = self.make_client(FakeResponse(200, {"candles": [
            {"time": "2024-03-01T04:00:00Z", "volume": 10, "complete": True,
             "mid": {"o": "2040", "h": "2051", "l": "2039", "c": "2050"}},
            {"time": "2024-03-01T08:00:00Z", "volume": 3, "complete": False,
             "mid": {"o": "2050", "h": "2052", "l": "2049", "c": "2051"}},
        ]}))
        df = client.get_candles("XAU_USD", "H4", 2)
        self.assertEqual(list(df["complete"]), [True, False])
        self.assertEqual(df.index[0], pd.Timestamp("2024-03-01 04:00", tz="UTC"))
        self.assertEqual(self.session.requests[0]["params"], {"count": 2, "granularity": "H4", "price": "M"})

    def test_price_mid(self) -> None:
        client = self.make_client(FakeResponse(200, {"prices": [{
            "instrument": "XAU_USD", "bids": [{"price": "2049.80"}], "asks": [{"price": "2050.20"}],
        }]}))
        self.assertAlmostEqual(client.get_price("XAU_USD").mid, 2050.0)

    def test_closed_trade_detail(self) -> None:
        client = self.make_client(FakeResponse(200, {"trade": {
            "id": "6357", "state": "CLOSED", "price": "2050.00", "averageClosePrice": "2030.00",
            "realizedPL": "-140.00", "initialUnits": "7", "closeTime": "2024-03-01T12:00:00Z",
            "stopLossOrder": {"state": "FILLED", "price": "2030.00"},
        }}))
        detail = client.get_closed_trade_detail("6357")
        self.assertTrue(detail.is_closed)
        self.assertEqual(detail.close_reason, "STOP_LOSS")
        self.assertEqual(detail.realized_pl, -140.0)
        self.assertEqual(detail.exit_price, 2030.0)

    def test_connection_test_returns_false_on_failure(self) -> None:
        client = self.make_client(FakeResponse(401, {"errorMessage": "Insufficient authorization"}))
        self.assertFalse(client.test_connection("XAU_USD"))


if __name__ == '__main__':
    unittest.main()

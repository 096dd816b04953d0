"""
OANDA v20 REST client.

This is the order gateway used by the trading engine.  It has no
business logic: it builds requests, retries transient failures with a
linear backoff, and converts responses into the dataclasses in
`goldbot.broker.models`.

Failure policy
--------------
* Timeouts, connection errors and HTTP 5xx responses are retried up to
  ``retry_attempts`` times; after that `RetriesExhaustedError` is raised.
* HTTP 4xx responses are not retried and raise `BrokerRequestError`.
* An order that the broker cancels or rejects is not an exception: the
  caller gets an `OrderResult` with ``success=False`` and the reason.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional

import pandas as pd
import requests

from ..config.schema import OandaConfig
from .models import (
    AccountBalance,
    BrokerTrade,
    ClosedTradeDetail,
    CloseResult,
    ModifyResult,
    OrderResult,
    Quote,
)


logger = logging.getLogger(__name__)


class BrokerError(Exception):
    """Base class for gateway failures."""


class BrokerRequestError(BrokerError):
    """The broker refused the request (HTTP 4xx) or returned an unusable payload."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RetriesExhaustedError(BrokerError):
    """A transient failure persisted through every retry attempt."""

    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


def _to_float(value: Any, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    return float(value)


def _optional_price(order: Optional[Dict[str, Any]]) -> Optional[float]:
    if not order or order.get("price") is None:
        return None
    return float(order["price"])


class OandaClient:
    """Thin wrapper around the OANDA v20 REST API."""

    def __init__(
        self,
        config: OandaConfig,
        price_precision: int = 2,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.account_id = config.account_id
        self.hostname = config.hostname
        self.price_precision = price_precision
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {config.api_key}",
            "Content-Type": "application/json",
            "Accept-Datetime-Format": "RFC3339",
        })
        self._sleep = sleep
        self._window_start = 0.0
        self._requests_in_window = 0
        logger.info("OANDA client initialised: %s", self.hostname)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    def _throttle(self) -> None:
        now = time.monotonic()
        if now - self._window_start >= 1.0:
            self._window_start = now
            self._requests_in_window = 0
        self._requests_in_window += 1
        if self._requests_in_window > self.config.requests_per_second:
            self._sleep(max(0.0, 1.0 - (now - self._window_start)))
            self._window_start = time.monotonic()
            self._requests_in_window = 1

    def _fmt_price(self, price: float) -> str:
        return f"{price:.{self.price_precision}f}"

    def request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Perform an authenticated request with bounded retries."""
        url = f"{self.hostname}{endpoint}"
        attempts = self.config.retry_attempts
        last_error = "no attempt made"

        for attempt in range(1, attempts + 1):
            self._throttle()
            try:
                response = self.session.request(
                    method, url, params=params, json=payload, timeout=self.config.request_timeout
                )
            except (requests.Timeout, requests.ConnectionError) as exc:
                last_error = str(exc)
            else:
                if response.status_code < 400:
                    if not response.content:
                        return {}
                    try:
                        return response.json()
                    except ValueError as exc:
                        raise BrokerRequestError(f"{method} {endpoint} returned invalid JSON: {exc}")
                message = self._error_message(response)
                if response.status_code < 500:
                    raise BrokerRequestError(
                        f"{method} {endpoint} rejected ({response.status_code}): {message}",
                        status_code=response.status_code,
                    )
                last_error = f"HTTP {response.status_code}: {message}"

            logger.warning("Request %s %s failed (attempt %d/%d): %s",
                           method, endpoint, attempt, attempts, last_error)
            if attempt < attempts:
                self._sleep(self.config.retry_delay * attempt)

        raise RetriesExhaustedError(
            f"{method} {endpoint} failed after {attempts} attempts: {last_error}", attempts
        )

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200]
        return body.get("errorMessage") or body.get("message") or str(body)[:200]

    def _account_path(self, suffix: str = "") -> str:
        return f"/v3/accounts/{self.account_id}{suffix}"

    # ------------------------------------------------------------------
    # Account & market data
    # ------------------------------------------------------------------
    def get_account_summary(self) -> Dict[str, Any]:
        return self.request("GET", self._account_path("/summary"))["account"]

    def get_balance(self) -> AccountBalance:
        account = self.get_account_summary()
        return AccountBalance(
            balance=_to_float(account.get("balance")),
            nav=_to_float(account.get("NAV")),
            unrealized_pl=_to_float(account.get("unrealizedPL")),
            margin_used=_to_float(account.get("marginUsed")),
            margin_available=_to_float(account.get("marginAvailable")),
            currency=account.get("currency", "USD"),
        )

    def get_price(self, instrument: str) -> Quote:
        data = self.request("GET", self._account_path("/pricing"), params={"instruments": instrument})
        prices = data.get("prices") or []
        if not prices:
            raise BrokerRequestError(f"No price returned for {instrument}")
        pricing = prices[0]
        return Quote(
            instrument=pricing.get("instrument", instrument),
            bid=float(pricing["bids"][0]["price"]),
            ask=float(pricing["asks"][0]["price"]),
            time=pricing.get("time"),
        )

    def get_candles(self, instrument: str, granularity: str, count: int = 200) -> pd.DataFrame:
        """Fetch mid-price candles.

        Returns
        -------
        pandas.DataFrame
            Columns ``open``, ``high``, ``low``, ``close``, ``volume`` and
            ``complete``, indexed by UTC candle time.
        """
        data = self.request(
            "GET",
            f"/v3/instruments/{instrument}/candles",
            params={"count": count, "granularity": granularity, "price": "M"},
        )
        rows = [
            {
                "time": candle["time"],
                "open": float(candle["mid"]["o"]),
                "high": float(candle["mid"]["h"]),
                "low": float(candle["mid"]["l"]),
                "close": float(candle["mid"]["c"]),
                "volume": int(candle.get("volume", 0)),
                "complete": bool(candle.get("complete", False)),
            }
            for candle in data.get("candles", [])
        ]
        if not rows:
            return pd.DataFrame(columns=["open", "high", "low", "close", "volume", "complete"])
        df = pd.DataFrame(rows)
        df["time"] = pd.to_datetime(df["time"], utc=True)
        return df.set_index("time").sort_index()

    # ------------------------------------------------------------------
    # Trades
    # ------------------------------------------------------------------
    def get_open_trades(self) -> List[BrokerTrade]:
        data = self.request("GET", self._account_path("/openTrades"))
        return [
            BrokerTrade(
                trade_id=str(trade["id"]),
                instrument=trade["instrument"],
                units=int(float(trade["currentUnits"])),
                price=float(trade["price"]),
                unrealized_pl=_to_float(trade.get("unrealizedPL")),
                stop_loss=_optional_price(trade.get("stopLossOrder")),
                take_profit=_optional_price(trade.get("takeProfitOrder")),
                open_time=pd.Timestamp(trade["openTime"]) if trade.get("openTime") else None,
            )
            for trade in data.get("trades", [])
        ]

    def place_market_order(self, instrument: str, units: int, stop_loss: Optional[float]) -> OrderResult:
        """Submit a fill-or-kill market order with the stop attached on fill."""
        order: Dict[str, Any] = {
            "type": "MARKET",
            "instrument": instrument,
            "units": str(int(units)),
            "timeInForce": "FOK",
            "positionFill": "DEFAULT",
        }
        if stop_loss is not None:
            order["stopLossOnFill"] = {"price": self._fmt_price(stop_loss), "timeInForce": "GTC"}

        data = self.request("POST", self._account_path("/orders"), payload={"order": order})

        fill = data.get("orderFillTransaction")
        if fill:
            opened = fill.get("tradeOpened") or fill.get("tradeReduced") or {}
            return OrderResult(
                success=True,
                trade_id=str(opened["tradeID"]) if opened.get("tradeID") else None,
                order_id=str(fill.get("id")),
                units=int(float(fill.get("units", units))),
                price=_to_float(fill.get("price")),
                reason=fill.get("reason"),
            )
        cancel = data.get("orderCancelTransaction")
        if cancel:
            reject = data.get("orderRejectTransaction") or {}
            return OrderResult(success=False, reason=cancel.get("reason"),
                               reject_reason=reject.get("rejectReason"))
        raise BrokerRequestError("Unexpected order response: no fill or cancel transaction")

    def partial_close(self, trade_id: str, units: int) -> CloseResult:
        """Close `units` (unsigned) of an open trade."""
        return self._close(trade_id, str(abs(int(units))))

    def close_trade(self, trade_id: str) -> CloseResult:
        return self._close(trade_id, "ALL")

    def _close(self, trade_id: str, units: str) -> CloseResult:
        data = self.request("PUT", self._account_path(f"/trades/{trade_id}/close"), payload={"units": units})
        fill = data.get("orderFillTransaction")
        if fill:
            return CloseResult(
                success=True,
                units_closed=abs(int(float(fill.get("units", 0)))),
                price=_to_float(fill.get("price")),
                realized_pl=_to_float(fill.get("pl")),
            )
        cancel = data.get("orderCancelTransaction") or {}
        return CloseResult(success=False, reason=cancel.get("reason", "No fill transaction"))

    def modify_trade(
        self,
        trade_id: str,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None,
    ) -> ModifyResult:
        """Replace the stop-loss and/or take-profit orders of a trade."""
        updates: Dict[str, Any] = {}
        if stop_loss is not None:
            updates["stopLoss"] = {"price": self._fmt_price(stop_loss), "timeInForce": "GTC"}
        if take_profit is not None:
            updates["takeProfit"] = {"price": self._fmt_price(take_profit), "timeInForce": "GTC"}
        if not updates:
            return ModifyResult(success=True)

        data = self.request("PUT", self._account_path(f"/trades/{trade_id}/orders"), payload=updates)
        rejected = [key for key in ("stopLossOrderRejectTransaction", "takeProfitOrderRejectTransaction")
                    if key in data]
        if rejected:
            reason = data[rejected[0]].get("rejectReason", "REJECTED")
            return ModifyResult(success=False, reason=reason)
        return ModifyResult(
            success=True,
            stop_loss=_optional_price(data.get("stopLossOrderTransaction")),
            take_profit=_optional_price(data.get("takeProfitOrderTransaction")),
        )

    def get_closed_trade_detail(self, trade_id: str) -> ClosedTradeDetail:
        trade = self.request("GET", self._account_path(f"/trades/{trade_id}"))["trade"]
        entry = float(trade["price"])
        exit_price = trade.get("averageClosePrice")
        return ClosedTradeDetail(
            trade_id=str(trade["id"]),
            state=trade.get("state", "UNKNOWN"),
            entry_price=entry,
            exit_price=float(exit_price) if exit_price is not None else None,
            realized_pl=_to_float(trade.get("realizedPL")),
            initial_units=int(float(trade.get("initialUnits", 0))),
            close_reason=self._close_reason(trade),
            close_time=pd.Timestamp(trade["closeTime"]) if trade.get("closeTime") else None,
        )

    @staticmethod
    def _close_reason(trade: Dict[str, Any]) -> str:
        for key, reason in (("stopLossOrder", "STOP_LOSS"),
                            ("takeProfitOrder", "TAKE_PROFIT"),
                            ("trailingStopLossOrder", "TRAILING_STOP")):
            order = trade.get(key) or {}
            if order.get("state") == "FILLED":
                return reason
        return trade.get("closeReason", "MARKET_ORDER" if trade.get("state") == "CLOSED" else "UNKNOWN")

    def test_connection(self, instrument: str) -> bool:
        """Log account and price details; False when the API is unreachable."""
        try:
            account = self.get_account_summary()
            balance = self.get_balance()
            quote = self.get_price(instrument)
        except BrokerError as exc:
            logger.error("Connection test failed: %s", exc)
            return False
        logger.info("Connected to account %s (%s)", account.get("id"), account.get("currency"))
        logger.info("Balance %.2f / NAV %.2f", balance.balance, balance.nav)
        logger.info("%s price %.2f / %.2f", instrument, quote.bid, quote.ask)
        return True

"""
Pytest configuration and fixtures.

Adds the repo root to sys.path so tests can import gridengine without an
editable install, and provides an in-memory exchange double shared by the
runner and supervisor tests.
"""

import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from gridengine.core.models import (  # noqa: E402
    AccountCredential,
    AccountSnapshot,
    ExchangeOrder,
    GridStrategy,
    OrderSide,
    PositionSide,
)
from gridengine.exchange.errors import ExchangeError, classify_response  # noqa: E402


BTC_INFO = {
    "symbols": [
        {
            "symbol": "BTCUSDT",
            "status": "TRADING",
            "contractType": "PERPETUAL",
            "filters": [
                {"filterType": "PRICE_FILTER", "tickSize": "0.10"},
                {"filterType": "LOT_SIZE", "stepSize": "0.001", "minQty": "0.001", "maxQty": "1000"},
                {"filterType": "MIN_NOTIONAL", "notional": "5"},
            ],
        },
        {
            "symbol": "ETHUSDT",
            "status": "TRADING",
            "contractType": "PERPETUAL",
            "filters": [
                {"filterType": "PRICE_FILTER", "tickSize": "0.01"},
                {"filterType": "LOT_SIZE", "stepSize": "0.001", "minQty": "0.001", "maxQty": "10000"},
                {"filterType": "MIN_NOTIONAL", "notional": "5"},
            ],
        },
    ]
}


class FakeExchange:
    """
    In-memory stand-in for BinanceFuturesClient.

    Resting orders live in `book`. `fail[method] = exc` makes that method
    raise until the entry is removed.
    """

    def __init__(
        self,
        price: float = 95000.0,
        position: float = 0.0,
        entry_price: float = 0.0,
        balance: float = 1000.0,
    ) -> None:
        self.price = price
        self.position = position
        self.entry_price = entry_price
        self.balance = balance
        self.book: Dict[int, ExchangeOrder] = {}
        self.placed: List[Dict[str, Any]] = []
        self.cancelled: List[int] = []
        self.leverage_calls: List[int] = []
        self.order_status: Dict[int, Dict[str, Any]] = {}
        self.trades: Dict[int, List[Dict[str, Any]]] = {}
        self.funding_rows: List[Dict[str, Any]] = []
        self.info = BTC_INFO
        self.fail: Dict[str, Exception] = {}
        self.closed = False
        self._next_id = 1000

    def _check(self, name: str) -> None:
        exc = self.fail.get(name)
        if exc is not None:
            raise exc

    def rest(self, side: OrderSide, price: float, qty: float = 0.001, executed: float = 0.0,
             client_order_id: str = "", position_side: str = "LONG") -> ExchangeOrder:
        """Put an order on the book directly, as if placed elsewhere."""
        self._next_id += 1
        order = ExchangeOrder(
            order_id=self._next_id,
            side=side,
            price=price,
            orig_qty=qty,
            executed_qty=executed,
            status="PARTIALLY_FILLED" if executed else "NEW",
            client_order_id=client_order_id,
            position_side=position_side,
            update_time=self._next_id,
        )
        self.book[order.order_id] = order
        return order

    def fill(self, order_id: int, fee: float = 0.01, price: Optional[float] = None) -> None:
        order = self.book.pop(order_id)
        self.order_status[order_id] = {
            "status": "FILLED",
            "executedQty": str(order.orig_qty),
            "avgPrice": str(price or order.price),
            "updateTime": 1_700_000_000_000 + order_id,
        }
        self.trades[order_id] = [{"commission": str(fee)}]

    def orders_at(self, price: float) -> List[ExchangeOrder]:
        return [o for o in self.book.values() if abs(o.price - price) < 1e-6]

    # ----- client surface -----

    async def exchange_info(self) -> Dict[str, Any]:
        self._check("exchange_info")
        return self.info

    async def set_leverage(self, symbol: str, leverage: int) -> Dict[str, Any]:
        self._check("set_leverage")
        self.leverage_calls.append(leverage)
        return {"symbol": symbol, "leverage": leverage}

    async def mark_price(self, symbol: str) -> float:
        self._check("mark_price")
        return self.price

    async def account_snapshot(self, symbol: str, position_side: PositionSide) -> AccountSnapshot:
        self._check("account_snapshot")
        return AccountSnapshot(
            available_balance=self.balance,
            wallet_balance=self.balance,
            position_amount=self.position,
            entry_price=self.entry_price,
        )

    async def open_orders(self, symbol: str, position_side: Optional[PositionSide] = None) -> List[ExchangeOrder]:
        self._check("open_orders")
        return list(self.book.values())

    async def place_limit_order(self, symbol, side, position_side, quantity, price, client_order_id=None):
        self._check("place_limit_order")
        self._next_id += 1
        oid = self._next_id
        self.book[oid] = ExchangeOrder(
            order_id=oid,
            side=side,
            price=price,
            orig_qty=quantity,
            client_order_id=client_order_id or "",
            position_side=position_side.value,
            update_time=oid,
        )
        self.placed.append({"order_id": oid, "side": side, "price": price, "quantity": quantity})
        return {"orderId": oid, "status": "NEW"}

    async def cancel_order(self, symbol: str, order_id: int) -> Dict[str, Any]:
        self._check("cancel_order")
        self.book.pop(order_id, None)
        self.cancelled.append(order_id)
        return {"orderId": order_id, "status": "CANCELED"}

    async def query_order(self, symbol: str, order_id: int) -> Dict[str, Any]:
        self._check("query_order")
        return self.order_status.get(order_id, {"status": "CANCELED", "executedQty": "0"})

    async def user_trades(self, symbol: str, order_id: int) -> List[Dict[str, Any]]:
        return self.trades.get(order_id, [])

    async def funding_income(self, symbol: str, start_time: Optional[int] = None) -> List[Dict[str, Any]]:
        self._check("funding_income")
        return self.funding_rows

    async def close(self) -> None:
        self.closed = True


class FakePool:
    """BinanceClientPool double: one FakeExchange per api key."""

    def __init__(self) -> None:
        self.clients: Dict[str, FakeExchange] = {}

    def client_for(self, credential: AccountCredential) -> FakeExchange:
        return self.clients.setdefault(credential.api_key, FakeExchange())

    async def close(self) -> None:
        for c in self.clients.values():
            await c.close()


def make_strategy(**overrides: Any) -> GridStrategy:
    fields: Dict[str, Any] = dict(
        symbol="BTCUSDT",
        position_side=PositionSide.LONG,
        price_min=90000.0,
        price_max=100000.0,
        grid_step=1000.0,
        order_size=0.001,
        api_key="key-alpha-0001",
        api_secret="secret-alpha",
        leverage=10,
    )
    fields.update(overrides)
    return GridStrategy(**fields)


def auth_error() -> ExchangeError:
    return classify_response(401, {"code": -2015, "msg": "Invalid API-key, IP, or permissions for action."})


@pytest.fixture
def fake_exchange():
    return FakeExchange()


@pytest.fixture
def state_dir(tmp_path):
    return str(tmp_path / "state")

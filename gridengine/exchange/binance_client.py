"""
Async REST adapter for Binance USDT-M futures (hedge mode).

Every call goes through the credential's shared token bucket and comes back
either as parsed JSON or as a classified ExchangeError.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from gridengine.core.json_utils import dumps
from gridengine.core.models import (
    AccountCredential,
    AccountSnapshot,
    ExchangeOrder,
    OrderSide,
    PositionSide,
)
from gridengine.core.utils import to_float
from gridengine.exchange.errors import ExchangeError, ExchangeErrorKind, classify_response
from gridengine.exchange.rate_limit import AsyncTokenBucket, CredentialRateLimiter

log = logging.getLogger("gridengine")

DEFAULT_BASE_URL = "https://fapi.binance.com"

# Request weights from the Binance futures docs; unlisted endpoints weigh 1.
ENDPOINT_WEIGHTS: Dict[str, int] = {
    "/fapi/v1/exchangeInfo": 1,
    "/fapi/v2/account": 5,
    "/fapi/v2/positionRisk": 5,
    "/fapi/v1/openOrders": 1,
    "/fapi/v1/userTrades": 5,
    "/fapi/v1/income": 30,
}


class BinanceFuturesClient:
    """
    Signed REST client for one credential.

    Usage:
        client = BinanceFuturesClient(credential, bucket=limiter.bucket_for(credential.api_key))
        orders = await client.open_orders("BTCUSDT")
        await client.close()
    """

    def __init__(
        self,
        credential: AccountCredential,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 10.0,
        bucket: Optional[AsyncTokenBucket] = None,
        recv_window: int = 5000,
        client: Optional[httpx.AsyncClient] = None,
        public_bucket: Optional[AsyncTokenBucket] = None,
    ) -> None:
        self.credential = credential
        self.base_url = base_url.rstrip("/")
        self.recv_window = recv_window
        self._bucket = bucket or AsyncTokenBucket(rate_per_sec=10.0, burst=20.0)
        self._public_bucket = public_bucket or self._bucket
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
            self._owns_client = True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    def _sign(self, query: str) -> str:
        return hmac.new(
            self.credential.api_secret.encode("utf-8"),
            query.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        bucket = self._bucket if signed else self._public_bucket
        await bucket.acquire(ENDPOINT_WEIGHTS.get(path, 1))

        query_params = {k: v for k, v in (params or {}).items() if v is not None}
        if signed:
            query_params["timestamp"] = int(time.time() * 1000)
            query_params["recvWindow"] = self.recv_window
        query = urlencode(query_params)
        if signed:
            query = f"{query}&signature={self._sign(query)}"
        url = f"{path}?{query}" if query else path

        try:
            resp = await self.client.request(
                method, url, headers={"X-MBX-APIKEY": self.credential.api_key}
            )
        except httpx.TransportError as exc:
            raise ExchangeError(ExchangeErrorKind.NETWORK, f"{type(exc).__name__}: {exc}") from exc

        if resp.status_code >= 400:
            try:
                body = resp.json()
            except ValueError:
                body = None
            err = classify_response(resp.status_code, body)
            log.warning(dumps({
                "event": "exchange_error",
                "path": path,
                "status": resp.status_code,
                "kind": err.kind.value,
                "code": err.code,
                "msg": err.message,
            }))
            raise err
        return resp.json()

    # ----- public market data -----

    async def exchange_info(self) -> Dict[str, Any]:
        return await self._request("GET", "/fapi/v1/exchangeInfo")

    async def mark_price(self, symbol: str) -> float:
        data = await self._request("GET", "/fapi/v1/premiumIndex", {"symbol": symbol})
        return to_float(data.get("markPrice"))

    # ----- account -----

    async def account(self) -> Dict[str, Any]:
        return await self._request("GET", "/fapi/v2/account", signed=True)

    async def position_risk(self, symbol: str) -> List[Dict[str, Any]]:
        return await self._request("GET", "/fapi/v2/positionRisk", {"symbol": symbol}, signed=True)

    async def account_snapshot(self, symbol: str, position_side: PositionSide) -> AccountSnapshot:
        """Balance plus the position row for one symbol/side in hedge mode."""
        acct = await self.account()
        positions = await self.position_risk(symbol)
        row: Dict[str, Any] = {}
        for p in positions:
            if p.get("positionSide") == position_side.value:
                row = p
                break
        return AccountSnapshot(
            available_balance=to_float(acct.get("availableBalance")),
            wallet_balance=to_float(acct.get("totalWalletBalance")),
            position_amount=abs(to_float(row.get("positionAmt"))),
            entry_price=to_float(row.get("entryPrice")),
            break_even_price=to_float(row.get("breakEvenPrice")),
            unrealized_profit=to_float(row.get("unRealizedProfit")),
            liquidation_price=to_float(row.get("liquidationPrice")),
        )

    async def set_leverage(self, symbol: str, leverage: int) -> Dict[str, Any]:
        return await self._request(
            "POST", "/fapi/v1/leverage", {"symbol": symbol, "leverage": leverage}, signed=True
        )

    async def funding_income(self, symbol: str, start_time: Optional[int] = None) -> List[Dict[str, Any]]:
        return await self._request(
            "GET",
            "/fapi/v1/income",
            {"symbol": symbol, "incomeType": "FUNDING_FEE", "startTime": start_time, "limit": 1000},
            signed=True,
        )

    # ----- orders -----

    async def open_orders(self, symbol: str, position_side: Optional[PositionSide] = None) -> List[ExchangeOrder]:
        raw = await self._request("GET", "/fapi/v1/openOrders", {"symbol": symbol}, signed=True)
        orders = [ExchangeOrder.from_api(o) for o in raw]
        if position_side is not None:
            orders = [o for o in orders if o.position_side == position_side.value]
        return orders

    async def place_limit_order(
        self,
        symbol: str,
        side: OrderSide,
        position_side: PositionSide,
        quantity: float,
        price: float,
        client_order_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        params = {
            "symbol": symbol,
            "side": side.value,
            "positionSide": position_side.value,
            "type": "LIMIT",
            "timeInForce": "GTC",
            "quantity": f"{quantity:.8f}".rstrip("0").rstrip("."),
            "price": f"{price:.8f}".rstrip("0").rstrip("."),
            "newClientOrderId": client_order_id,
        }
        return await self._request("POST", "/fapi/v1/order", params, signed=True)

    async def cancel_order(self, symbol: str, order_id: int) -> Dict[str, Any]:
        return await self._request("DELETE", "/fapi/v1/order", {"symbol": symbol, "orderId": order_id}, signed=True)

    async def query_order(self, symbol: str, order_id: int) -> Dict[str, Any]:
        return await self._request("GET", "/fapi/v1/order", {"symbol": symbol, "orderId": order_id}, signed=True)

    async def user_trades(self, symbol: str, order_id: int) -> List[Dict[str, Any]]:
        """Fills for one order; used for commission accounting."""
        return await self._request(
            "GET", "/fapi/v1/userTrades", {"symbol": symbol, "orderId": order_id}, signed=True
        )


class BinanceClientPool:
    """
    One client per credential, all sharing that credential's rate budget.

    Runners never build clients themselves; the supervisor hands them the
    pooled instance so the per-key throttle actually spans Runners.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 10.0,
        limiter: Optional[CredentialRateLimiter] = None,
    ) -> None:
        self.base_url = base_url
        self.timeout = timeout
        self.limiter = limiter or CredentialRateLimiter()
        self._clients: Dict[str, BinanceFuturesClient] = {}
        self._retired: List[BinanceFuturesClient] = []

    def client_for(self, credential: AccountCredential) -> BinanceFuturesClient:
        client = self._clients.get(credential.api_key)
        if client is not None and client.credential.api_secret != credential.api_secret:
            self._retired.append(client)
            client = None
        if client is None:
            client = BinanceFuturesClient(
                credential,
                base_url=self.base_url,
                timeout=self.timeout,
                bucket=self.limiter.bucket_for(credential.api_key),
                public_bucket=self.limiter.public_bucket,
            )
            self._clients[credential.api_key] = client
        return client

    async def close(self) -> None:
        for client in [*self._clients.values(), *self._retired]:
            await client.close()
        self._clients.clear()
        self._retired.clear()

"""
Failure taxonomy for Binance futures calls.

Every failure the client can surface is folded into one of four kinds so the
execution status machine never sees a raw transport or HTTP error:

- AUTH: key invalid, revoked, IP not whitelisted, bad signature
- NETWORK: connect/read timeouts, 5xx, clock skew
- RATE_LIMIT: 429 / 418 and request-weight codes
- EXCHANGE_REJECT: the exchange understood and refused (margin, filters, symbol)
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

import httpx


class ExchangeErrorKind(str, Enum):
    AUTH = "AUTH"
    NETWORK = "NETWORK"
    RATE_LIMIT = "RATE_LIMIT"
    EXCHANGE_REJECT = "EXCHANGE_REJECT"


class RejectReason(str, Enum):
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    REDUCE_ONLY_REJECTED = "REDUCE_ONLY_REJECTED"
    INVALID_SYMBOL = "INVALID_SYMBOL"
    INVALID_LEVERAGE = "INVALID_LEVERAGE"
    INVALID_QUANTITY = "INVALID_QUANTITY"
    UNKNOWN_ORDER = "UNKNOWN_ORDER"
    OTHER = "OTHER"


AUTH_CODES = frozenset({-2014, -2015, -1022, -2008, -1002})
RATE_LIMIT_CODES = frozenset({-1003, -1015})
NETWORK_CODES = frozenset({-1000, -1001, -1006, -1007, -1021})

REJECT_REASONS = {
    -2019: RejectReason.INSUFFICIENT_BALANCE,
    -2018: RejectReason.INSUFFICIENT_BALANCE,
    -2022: RejectReason.REDUCE_ONLY_REJECTED,
    -1121: RejectReason.INVALID_SYMBOL,
    -4028: RejectReason.INVALID_LEVERAGE,
    -4161: RejectReason.INVALID_LEVERAGE,
    -1111: RejectReason.INVALID_QUANTITY,
    -1013: RejectReason.INVALID_QUANTITY,
    -4003: RejectReason.INVALID_QUANTITY,
    -4164: RejectReason.INVALID_QUANTITY,
    -2011: RejectReason.UNKNOWN_ORDER,
    -2013: RejectReason.UNKNOWN_ORDER,
}


class ExchangeError(Exception):
    """A classified exchange failure."""

    def __init__(
        self,
        kind: ExchangeErrorKind,
        message: str,
        code: Optional[int] = None,
        status_code: Optional[int] = None,
        reason: Optional[RejectReason] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.code = code
        self.status_code = status_code
        self.reason = reason

    @property
    def retryable(self) -> bool:
        return self.kind in (ExchangeErrorKind.NETWORK, ExchangeErrorKind.RATE_LIMIT)

    @property
    def insufficient_balance(self) -> bool:
        return self.reason == RejectReason.INSUFFICIENT_BALANCE

    def __repr__(self) -> str:
        return f"ExchangeError(kind={self.kind.value}, code={self.code}, message={self.message!r})"


def classify_response(status_code: int, body: Any) -> ExchangeError:
    """Turn a non-2xx Binance response into an ExchangeError."""
    code: Optional[int] = None
    msg = ""
    if isinstance(body, dict):
        raw_code = body.get("code")
        if raw_code is not None:
            try:
                code = int(raw_code)
            except (TypeError, ValueError):
                code = None
        msg = str(body.get("msg", ""))
    if not msg:
        msg = f"HTTP {status_code}"

    if code in AUTH_CODES or status_code in (401, 403):
        return ExchangeError(ExchangeErrorKind.AUTH, msg, code, status_code)
    if code in RATE_LIMIT_CODES or status_code in (418, 429):
        return ExchangeError(ExchangeErrorKind.RATE_LIMIT, msg, code, status_code)
    if code in NETWORK_CODES or status_code >= 500:
        return ExchangeError(ExchangeErrorKind.NETWORK, msg, code, status_code)
    reason = REJECT_REASONS.get(code, RejectReason.OTHER) if code is not None else RejectReason.OTHER
    return ExchangeError(ExchangeErrorKind.EXCHANGE_REJECT, msg, code, status_code, reason)


def classify_error(exc: BaseException) -> Optional[ExchangeError]:
    """
    Map an exception raised around an exchange call to an ExchangeError.

    Already-classified errors pass through. httpx transport failures and
    timeouts become NETWORK. Returns None for anything unrecognized; callers
    treat that as an unclassified fault.
    """
    if isinstance(exc, ExchangeError):
        return exc
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return ExchangeError(ExchangeErrorKind.NETWORK, f"{type(exc).__name__}: {exc}")
    if isinstance(exc, httpx.HTTPStatusError):
        try:
            body = exc.response.json()
        except ValueError:
            body = None
        return classify_response(exc.response.status_code, body)
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return ExchangeError(ExchangeErrorKind.NETWORK, f"{type(exc).__name__}: {exc}")
    return None

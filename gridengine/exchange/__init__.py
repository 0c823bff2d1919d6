"""
Exchange package - Binance USDT-M futures access.

Signed REST client, per-credential rate limiting, symbol filters and the
error taxonomy the execution status machine consumes.
"""

from gridengine.exchange.binance_client import BinanceClientPool, BinanceFuturesClient
from gridengine.exchange.errors import (
    ExchangeError,
    ExchangeErrorKind,
    RejectReason,
    classify_error,
    classify_response,
)
from gridengine.exchange.rate_limit import AsyncTokenBucket, BackoffConfig, CredentialRateLimiter
from gridengine.exchange.symbol_info import SymbolInfoCache, SymbolSpec

__all__ = [
    "BinanceClientPool",
    "BinanceFuturesClient",
    "ExchangeError",
    "ExchangeErrorKind",
    "RejectReason",
    "classify_error",
    "classify_response",
    "AsyncTokenBucket",
    "BackoffConfig",
    "CredentialRateLimiter",
    "SymbolInfoCache",
    "SymbolSpec",
]

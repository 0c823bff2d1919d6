"""
SymbolInfoCache: Binance exchange filters used for rounding and level matching.

Binance filters parsed:
- PRICE_FILTER  -> tickSize (price precision, reconcile tolerance)
- LOT_SIZE      -> stepSize, minQty, maxQty
- MIN_NOTIONAL  -> notional
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Optional

from gridengine.core.utils import floor_to_step, round_to_tick

logger = logging.getLogger("gridengine")


def _step_to_precision(step: float) -> int:
    """Convert step size (e.g. 0.001) to number of decimal places (3)."""
    if step <= 0 or step >= 1:
        return 0
    return max(0, int(round(-math.log10(step))))


@dataclass
class SymbolSpec:
    """Parsed filter data for a single symbol."""
    symbol: str
    tick_size: float = 0.01
    step_size: float = 0.001
    min_qty: float = 0.001
    max_qty: float = 9999999.0
    min_notional: float = 5.0
    price_precision: int = 2
    qty_precision: int = 3
    status: str = "TRADING"

    def round_price(self, price: float) -> float:
        return round(round_to_tick(price, self.tick_size), self.price_precision)

    def round_quantity(self, qty: float) -> float:
        qty = floor_to_step(qty, self.step_size)
        return round(min(qty, self.max_qty), self.qty_precision)

    def quantity_valid(self, qty: float, price: float) -> bool:
        return qty >= self.min_qty and qty * price >= self.min_notional

    @classmethod
    def from_exchange_info(cls, raw: Dict[str, Any]) -> "SymbolSpec":
        spec = cls(symbol=raw["symbol"], status=raw.get("status", "TRADING"))
        for f in raw.get("filters", []):
            ft = f.get("filterType", "")
            if ft == "PRICE_FILTER":
                spec.tick_size = float(f.get("tickSize", 0.01))
                spec.price_precision = _step_to_precision(spec.tick_size)
            elif ft == "LOT_SIZE":
                spec.step_size = float(f.get("stepSize", 0.001))
                spec.min_qty = float(f.get("minQty", 0.001))
                spec.max_qty = float(f.get("maxQty", 9999999))
                spec.qty_precision = _step_to_precision(spec.step_size)
            elif ft == "MIN_NOTIONAL":
                spec.min_notional = float(f.get("notional", 5.0))
        return spec


class SymbolInfoCache:
    """
    Caches USDT-M perpetual specs from /fapi/v1/exchangeInfo.

    Loaded lazily: the first Runner for a symbol triggers a fetch, later
    Runners reuse the parsed spec.
    """

    def __init__(self) -> None:
        self._specs: Dict[str, SymbolSpec] = {}

    def ingest(self, info: Dict[str, Any]) -> int:
        """Parse an exchangeInfo payload. Returns the number of symbols loaded."""
        count = 0
        for s in info.get("symbols", []):
            sym = s.get("symbol", "")
            if not sym or s.get("contractType", "PERPETUAL") != "PERPETUAL":
                continue
            self._specs[sym] = SymbolSpec.from_exchange_info(s)
            count += 1
        logger.info("Loaded %d symbol specs from exchange info", count)
        return count

    async def load(self, client: Any) -> int:
        return self.ingest(await client.exchange_info())

    async def ensure(self, client: Any, symbol: str) -> Optional[SymbolSpec]:
        """Return the spec for symbol, fetching exchange info on a miss."""
        spec = self._specs.get(symbol.upper())
        if spec is None:
            await self.load(client)
            spec = self._specs.get(symbol.upper())
        return spec

    def get(self, symbol: str) -> Optional[SymbolSpec]:
        return self._specs.get(symbol.upper())

    def tick_size(self, symbol: str) -> float:
        spec = self.get(symbol)
        return spec.tick_size if spec else 0.0

    def __len__(self) -> int:
        return len(self._specs)

    def __contains__(self, symbol: str) -> bool:
        return symbol.upper() in self._specs

"""
Domain records shared by the planner, reconciler, runner and store.

GridStrategy and Order are the persisted records. GridLevel, ExchangeOrder,
AccountSnapshot and ProfitSnapshot are derived per cycle and never stored as
a source of truth.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, Optional


def _now_ms() -> int:
    return int(time.time() * 1000)


class ExecutionStatus(str, Enum):
    """Operational health reported per strategy. Transitions live in execution.execution_status."""
    INITIALIZING = "INITIALIZING"
    TRADING = "TRADING"
    PAUSED_MANUAL = "PAUSED_MANUAL"
    PRICE_ABOVE_MAX = "PRICE_ABOVE_MAX"
    PRICE_BELOW_MIN = "PRICE_BELOW_MIN"
    PRICE_ABOVE_OPEN = "PRICE_ABOVE_OPEN"
    PRICE_BELOW_OPEN = "PRICE_BELOW_OPEN"
    API_KEY_INVALID = "API_KEY_INVALID"
    NETWORK_ERROR = "NETWORK_ERROR"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    OTHER_ERROR = "OTHER_ERROR"
    INIT_FAILED = "INIT_FAILED"


class PositionSide(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class LevelIntent(str, Enum):
    OPEN = "open"
    CLOSE = "close"


class OrderStatus(str, Enum):
    OPEN = "open"
    FILLED = "filled"
    CANCELLED = "cancelled"


def entry_side(position_side: PositionSide) -> OrderSide:
    """Side that grows the position: BUY for LONG, SELL for SHORT."""
    return OrderSide.BUY if position_side == PositionSide.LONG else OrderSide.SELL


def exit_side(position_side: PositionSide) -> OrderSide:
    return OrderSide.SELL if position_side == PositionSide.LONG else OrderSide.BUY


@dataclass(frozen=True)
class AccountCredential:
    """API key pair; the tenancy boundary for strategies and rate budgets."""
    api_key: str
    api_secret: str = field(repr=False)

    def __repr__(self) -> str:
        return f"AccountCredential(api_key={self.masked_key})"

    @property
    def masked_key(self) -> str:
        if len(self.api_key) <= 8:
            return "****"
        return f"{self.api_key[:4]}****{self.api_key[-4:]}"


@dataclass
class GridStrategy:
    """
    Persisted grid strategy configuration plus its live status fields.

    Exactly one of grid_count / grid_step is set; validation happens in
    gridengine.config.validator before a record is ever stored.
    """
    symbol: str
    position_side: PositionSide
    price_min: float
    price_max: float
    order_size: float
    api_key: str
    api_secret: str = field(repr=False)
    leverage: int = 20
    grid_count: Optional[int] = None
    grid_step: Optional[float] = None
    id: Optional[int] = None
    remark: str = ""
    paused: bool = False
    execution_status: ExecutionStatus = ExecutionStatus.INITIALIZING
    max_position_quantity: Optional[float] = None
    min_position_quantity: Optional[float] = None
    # Per-direction sizes; order_size when unset.
    open_quantity: Optional[float] = None
    close_quantity: Optional[float] = None
    is_above_open_price: bool = False
    is_below_open_price: bool = False
    priority_close_on_trend: bool = False
    polling_interval_sec: Optional[float] = None
    funding_fee: float = 0.0
    deleted: bool = False
    created_at: int = field(default_factory=_now_ms)
    start_time: Optional[int] = None
    updated_at: int = field(default_factory=_now_ms)

    @property
    def credential(self) -> AccountCredential:
        return AccountCredential(self.api_key, self.api_secret)

    @property
    def spacing(self) -> float:
        """Uniform distance between adjacent levels."""
        if self.grid_step is not None:
            return float(self.grid_step)
        if self.grid_count:
            return (self.price_max - self.price_min) / self.grid_count
        return 0.0

    @property
    def open_qty(self) -> float:
        return float(self.open_quantity) if self.open_quantity else self.order_size

    @property
    def close_qty(self) -> float:
        return float(self.close_quantity) if self.close_quantity else self.order_size

    def touch(self) -> None:
        self.updated_at = _now_ms()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["position_side"] = self.position_side.value
        data["execution_status"] = self.execution_status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GridStrategy":
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs["position_side"] = PositionSide(str(kwargs["position_side"]).upper())
        if "execution_status" in kwargs:
            kwargs["execution_status"] = ExecutionStatus(kwargs["execution_status"])
        return cls(**kwargs)


@dataclass(frozen=True)
class GridLevel:
    """One rung of the ladder with the order it wants resting there."""
    price: float
    side: OrderSide
    intent: LevelIntent
    quantity: float


@dataclass
class Order:
    """Local order record owned by a strategy."""
    strategy_id: int
    side: OrderSide
    price: float
    quantity: float
    intent: LevelIntent
    status: OrderStatus = OrderStatus.OPEN
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    exchange_order_id: Optional[int] = None
    client_order_id: Optional[str] = None
    executed_qty: float = 0.0
    avg_price: float = 0.0
    fee: float = 0.0
    is_collapsed: bool = False
    created_at: int = field(default_factory=_now_ms)
    updated_at: int = field(default_factory=_now_ms)

    @property
    def fill_price(self) -> float:
        return self.avg_price or self.price

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["side"] = self.side.value
        data["intent"] = self.intent.value
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Order":
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs["side"] = OrderSide(kwargs["side"])
        kwargs["intent"] = LevelIntent(kwargs["intent"])
        kwargs["status"] = OrderStatus(kwargs.get("status", "open"))
        return cls(**kwargs)


@dataclass(frozen=True)
class ExchangeOrder:
    """Row from the exchange's open-orders snapshot."""
    order_id: int
    side: OrderSide
    price: float
    orig_qty: float
    executed_qty: float = 0.0
    status: str = "NEW"
    client_order_id: str = ""
    position_side: str = "BOTH"
    update_time: int = 0

    @property
    def fill_in_progress(self) -> bool:
        return self.executed_qty > 0 or self.status == "PARTIALLY_FILLED"

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "ExchangeOrder":
        return cls(
            order_id=int(raw["orderId"]),
            side=OrderSide(raw["side"]),
            price=float(raw.get("price", 0) or 0),
            orig_qty=float(raw.get("origQty", 0) or 0),
            executed_qty=float(raw.get("executedQty", 0) or 0),
            status=raw.get("status", "NEW"),
            client_order_id=raw.get("clientOrderId", ""),
            position_side=raw.get("positionSide", "BOTH"),
            update_time=int(raw.get("updateTime") or raw.get("time") or 0),
        )


@dataclass(frozen=True)
class AccountSnapshot:
    """Balance and position state for one strategy's symbol and side."""
    available_balance: float
    wallet_balance: float = 0.0
    position_amount: float = 0.0
    entry_price: float = 0.0
    break_even_price: float = 0.0
    unrealized_profit: float = 0.0
    liquidation_price: float = 0.0


@dataclass(frozen=True)
class ProfitSnapshot:
    total_profit_loss: float = 0.0
    total_fee: float = 0.0
    funding_fee: float = 0.0
    total_trades: int = 0
    total_pairing_times: int = 0
    total_open_position_value: float = 0.0
    open_position_quantity: float = 0.0
    unrealized_profit_loss: float = 0.0

    @property
    def net_profit_loss(self) -> float:
        """Headline figure plus funding, for consumers that want one number."""
        return self.total_profit_loss + self.funding_fee

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["net_profit_loss"] = self.net_profit_loss
        return data

"""
host.py -- Boundary types for the platform that hosts the engine.

The host owns indicators, the clock, order matching and the portfolio.
The engine only reads snapshots and issues order commands through a
HostAdapter; concrete adapters (backtest harness, paper, live broker)
subclass it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

FILLED = "filled"
PARTIALLY_FILLED = "partially_filled"
CANCELED = "canceled"
INVALID = "invalid"
SUBMITTED = "submitted"

_STATUS_ALIASES = {
    "fill": FILLED,
    "filled": FILLED,
    "partial": PARTIALLY_FILLED,
    "partiallyfilled": PARTIALLY_FILLED,
    "partially_filled": PARTIALLY_FILLED,
    "cancelled": CANCELED,
    "canceled": CANCELED,
    "invalid": INVALID,
    "rejected": INVALID,
    "new": SUBMITTED,
    "submitted": SUBMITTED,
}


def normalize_status(raw: Any) -> str:
    text = str(raw or "").strip().lower().replace("-", "_").replace(" ", "_")
    return _STATUS_ALIASES.get(text, _STATUS_ALIASES.get(text.replace("_", ""), text))


@dataclass(frozen=True)
class IndicatorReading:
    ready: bool = False
    value: float = 0.0

    def get(self) -> float | None:
        return float(self.value) if self.ready else None


@dataclass(frozen=True)
class InstrumentSnapshot:
    """Everything the engine reads for one instrument at one tick."""
    symbol: str
    price: float
    ema_short: IndicatorReading
    ema_long: IndicatorReading
    std_short: IndicatorReading
    std_long: IndicatorReading
    atr: IndicatorReading
    position: float = 0.0
    timestamp: float = 0.0

    @property
    def indicators_ready(self) -> bool:
        return (
            self.ema_short.ready
            and self.ema_long.ready
            and self.std_short.ready
            and self.std_long.ready
        )


@dataclass(frozen=True)
class OrderEvent:
    handle: Any
    symbol: str
    fill_price: float = 0.0
    filled_quantity: float = 0.0
    status: str = FILLED
    timestamp: float = 0.0

    @property
    def normalized_status(self) -> str:
        return normalize_status(self.status)


class HostAdapter:
    """
    Narrow host interface.  Order placement returns an opaque handle that
    later shows up on OrderEvent.handle.
    """

    def symbols(self) -> list[str]:
        raise NotImplementedError

    def is_warming_up(self) -> bool:
        return False

    def snapshot(self, symbol: str) -> InstrumentSnapshot:
        raise NotImplementedError

    def position(self, symbol: str) -> float:
        raise NotImplementedError

    def equity(self) -> float:
        raise NotImplementedError

    def place_market_order(self, symbol: str, quantity: float) -> Any:
        raise NotImplementedError

    def place_limit_order(self, symbol: str, quantity: float, price: float) -> Any:
        raise NotImplementedError

    def place_stop_market_order(self, symbol: str, quantity: float, stop_price: float) -> Any:
        raise NotImplementedError

    def cancel_order(self, handle: Any) -> None:
        raise NotImplementedError

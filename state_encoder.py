"""
state_encoder.py -- Discrete regime state for one instrument at one tick.

A state is three parts:
    - trend:   sign of (fast MA - slow MA) and how long it has held (ST/LT)
    - zone LT: how many sigmas price sits from the long-horizon mean
    - zone ST: same for the short horizon

Canonical text form (positional, part of the persisted matrix format):

    "{direction}_{duration}_Z{lt_index}{lt_dir}_Z{st_index}{st_dir}"
    e.g. "Up_LT_Z2U_Z0D", "Flat_ST_Z1D_Z1D"

Nothing in here raises on bad market data: degenerate inputs map to a
defined neutral classification.
"""

from __future__ import annotations

import re
from collections import deque
from dataclasses import dataclass
from typing import Literal, Sequence

import numpy as np


Direction = Literal["Up", "Down", "Flat"]
Duration = Literal["ST", "LT"]
ZoneDir = Literal["U", "D"]

_LEGACY_DIRECTIONS = {"TrendUp": "Up", "TrendDown": "Down"}
_ZONE_TOKEN = re.compile(r"^Z(\d+)([UD])$")


class StateDecodeError(ValueError):
    """Label text does not follow the canonical positional form."""


# ---------------------------------------------------------------------------
# Label types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Trend:
    direction: Direction
    duration: Duration = "ST"

    def encode(self) -> str:
        return f"{self.direction}_{self.duration}"


@dataclass(frozen=True)
class Zone:
    index: int
    direction: ZoneDir = "U"

    def encode(self) -> str:
        return f"Z{self.index}{self.direction}"


NEUTRAL_ZONE = Zone(index=0, direction="U")


@dataclass(frozen=True)
class StateLabel:
    trend: Trend
    zone_lt: Zone
    zone_st: Zone

    def encode(self) -> str:
        return f"{self.trend.encode()}_{self.zone_lt.encode()}_{self.zone_st.encode()}"

    def __str__(self) -> str:
        return self.encode()


def decode_zone(token: str) -> Zone:
    match = _ZONE_TOKEN.match(str(token or "").strip())
    if not match:
        raise StateDecodeError(f"bad zone token: {token!r}")
    return Zone(index=int(match.group(1)), direction=match.group(2))


def decode_state(text: str) -> StateLabel:
    """Parse canonical label text back into a StateLabel."""
    parts = str(text or "").strip().split("_")
    if len(parts) != 4:
        raise StateDecodeError(f"expected 4 tokens in state label, got {len(parts)}: {text!r}")
    direction = _LEGACY_DIRECTIONS.get(parts[0], parts[0])
    if direction not in ("Up", "Down", "Flat"):
        raise StateDecodeError(f"bad trend direction: {parts[0]!r}")
    if parts[1] not in ("ST", "LT"):
        raise StateDecodeError(f"bad trend duration: {parts[1]!r}")
    return StateLabel(
        trend=Trend(direction=direction, duration=parts[1]),
        zone_lt=decode_zone(parts[2]),
        zone_st=decode_zone(parts[3]),
    )


# ---------------------------------------------------------------------------
# Trend component
# ---------------------------------------------------------------------------

class TrendTracker:
    """
    Signed run-length counter over sign(fast - slow).

    A sign flip resets the run to 1, an unchanged non-zero sign extends it,
    and a difference inside the dead band is sign 0 with run length 0.
    """

    def __init__(self, lt_after_ticks: int = 20, epsilon: float = 0.0):
        self.lt_after_ticks = int(lt_after_ticks)
        self.epsilon = float(epsilon)
        self.sign = 0
        self.run_length = 0

    def update(self, fast: float, slow: float) -> int:
        diff = float(fast) - float(slow)
        if abs(diff) <= self.epsilon:
            new_sign = 0
        else:
            new_sign = 1 if diff > 0 else -1

        if new_sign == 0:
            self.sign = 0
            self.run_length = 0
        elif new_sign == self.sign:
            self.run_length += 1
        else:
            self.sign = new_sign
            self.run_length = 1
        return self.sign * self.run_length

    @property
    def value(self) -> int:
        return self.sign * self.run_length

    def label(self) -> Trend:
        if self.sign == 0:
            return Trend(direction="Flat", duration="ST")
        duration = "ST" if self.run_length <= self.lt_after_ticks else "LT"
        return Trend(direction="Up" if self.sign > 0 else "Down", duration=duration)

    def to_dict(self) -> dict:
        return {"sign": self.sign, "run_length": self.run_length}


# ---------------------------------------------------------------------------
# Zone component
# ---------------------------------------------------------------------------

def classify_zone(price: float, mean: float, stddev: float, thresholds: Sequence[float]) -> Zone:
    """
    Bucket the signed deviation (price - mean) / stddev.

    The index is the position of the first threshold strictly greater than
    |z|, or len(thresholds) when |z| reaches the last one.
    """
    if not stddev or stddev <= 0 or not np.isfinite(stddev):
        return NEUTRAL_ZONE
    z = (float(price) - float(mean)) / float(stddev)
    if not np.isfinite(z):
        return NEUTRAL_ZONE
    index = int(np.searchsorted(np.asarray(thresholds, dtype=float), abs(z), side="right"))
    return Zone(index=index, direction="U" if z >= 0 else "D")


def encode_state(
    trend: Trend,
    price: float,
    mean_lt: float,
    std_lt: float,
    mean_st: float,
    std_st: float,
    thresholds: Sequence[float],
) -> StateLabel:
    return StateLabel(
        trend=trend,
        zone_lt=classify_zone(price, mean_lt, std_lt, thresholds),
        zone_st=classify_zone(price, mean_st, std_st, thresholds),
    )


# ---------------------------------------------------------------------------
# Volatility label (telemetry only)
# ---------------------------------------------------------------------------

class VolatilityTracker:
    """Rolling z-score of ATR / price, bucketed into VolLow/VolMed/VolHigh."""

    def __init__(self, lookback: int = 30, high_z: float = 1.8, low_z: float = -1.0):
        self.lookback = max(2, int(lookback))
        self.high_z = float(high_z)
        self.low_z = float(low_z)
        self._history: deque[float] = deque(maxlen=self.lookback)
        self._last_pct: float | None = None

    @property
    def ready(self) -> bool:
        return len(self._history) >= self.lookback

    def update(self, atr: float, price: float) -> None:
        if price is None or price <= 0 or atr is None or not np.isfinite(atr):
            self._last_pct = None
            return
        self._last_pct = float(atr) / float(price)
        self._history.append(self._last_pct)

    def label(self) -> str:
        if not self.ready or self._last_pct is None:
            return "VolNA"
        window = np.asarray(self._history, dtype=float)
        std = float(window.std(ddof=1))
        if std <= 0 or not np.isfinite(std):
            return "VolNA"
        z = (self._last_pct - float(window.mean())) / std
        if z >= self.high_z:
            return "VolHigh"
        if z <= self.low_z:
            return "VolLow"
        return "VolMed"

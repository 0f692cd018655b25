"""
config.py -- All tunable parameters for the Markov regime bracket engine.

Every value here is loaded from environment variables so a host process
(backtest harness, paper runner, live runner) can configure the engine
without touching code.

HOW TO READ THIS FILE:
  Each config value has a comment explaining:
    1. What it controls
    2. What happens if you raise/lower it
    3. The default and why it was chosen

The module-level constants are collected into one frozen EngineConfig by
engine_config_from_env().  Components only ever see that object.
"""

import os
import logging
from dataclasses import dataclass

# ---------------------------------------------------------------------------
# Helper: read an env var with a typed default
# ---------------------------------------------------------------------------

def _env(name, default, cast=str):
    """
    Read an environment variable and cast it to the right type.
    If the var is missing or empty, return *default* (already the right type).
    """
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        # Special handling for booleans -- "true"/"1"/"yes" are all truthy
        if cast is bool:
            return raw.strip().lower() in ("true", "1", "yes")
        return cast(raw)
    except (ValueError, TypeError):
        return default


def parse_sigmas(raw) -> tuple:
    """
    Parse a zone threshold list ("0.5,1.5,2.0" or an iterable of numbers).

    Thresholds must be positive and strictly ascending; anything else is a
    configuration error and raises ValueError.
    """
    if isinstance(raw, str):
        parts = [p.strip() for p in raw.split(",") if p.strip()]
        values = tuple(float(p) for p in parts)
    else:
        values = tuple(float(v) for v in raw)
    if not values:
        raise ValueError("zone thresholds must not be empty")
    if values[0] <= 0:
        raise ValueError(f"zone thresholds must be positive, got {values}")
    for lo, hi in zip(values, values[1:]):
        if hi <= lo:
            raise ValueError(f"zone thresholds must be strictly ascending, got {values}")
    return values


# ---------------------------------------------------------------------------
# Mode
# ---------------------------------------------------------------------------

# When True the engine only records state transitions and writes the
# compiled matrix at end of run.  When False (the default) it loads the
# matrix and trades from it.
TRAINING_MODE: bool = _env("TRAINING_MODE", False, bool)

# Folder for the persisted transition matrix.
RESULTS_DIR: str = _env("RESULTS_DIR", "results")

# Transition matrix file.  Written in training mode, read in trading mode.
# A missing file just disables trading; it is not an error.
TRANSITION_FILE: str = _env("TRANSITION_FILE", os.path.join(RESULTS_DIR, "transitions.csv"))

# ---------------------------------------------------------------------------
# State encoding
# ---------------------------------------------------------------------------

# Zone boundaries in standard deviations from the moving average, shared
# by the short and long horizons.  With 0.5,1.5,2.0 there are four zones
# per side: <0.5, 0.5-1.5, 1.5-2.0 and the catch-all >=2.0.
# More thresholds: finer state space, but each state gets fewer samples.
ZONE_SIGMAS_RAW: str = _env("ZONE_SIGMAS", "0.5,1.5,2.0")

# Trend run length (ticks since the fast/slow cross) above which a trend
# is labelled LT instead of ST.  20 daily bars is roughly one month.
TREND_LT_AFTER_TICKS: int = _env("TREND_LT_AFTER_TICKS", 20, int)

# Dead band on fast - slow.  Differences inside it count as Flat.
# 0.0 means only an exact tie is Flat.
TREND_EPSILON: float = _env("TREND_EPSILON", 0.0, float)

# Volatility label lookback (ticks of ATR / price history).
VOL_LOOKBACK: int = _env("VOL_LOOKBACK", 30, int)

# Volatility z-score cutoffs for VolHigh / VolLow.
VOL_HIGH_Z: float = _env("VOL_HIGH_Z", 1.8, float)
VOL_LOW_Z: float = _env("VOL_LOW_Z", -1.0, float)

# ---------------------------------------------------------------------------
# Transition model
# ---------------------------------------------------------------------------

# Rows with this many observations or fewer are treated as under-sampled.
# Raising it: more rows get the flat sparse probability (fewer trades).
SMALL_SAMPLE_CUTOFF: int = _env("SMALL_SAMPLE_CUTOFF", 3, int)

# Probability assigned to EVERY outgoing transition of an under-sampled
# row.  Those rows deliberately do not sum to 1.  Keep it below
# MIN_TRANSITION_PROB so sparse rows can never trigger a trade.
SPARSE_TRANSITION_PROB: float = _env("SPARSE_TRANSITION_PROB", 0.05, float)

# Only transitions above this probability are considered as targets.
MIN_TRANSITION_PROB: float = _env("MIN_TRANSITION_PROB", 0.3, float)

# ---------------------------------------------------------------------------
# Risk
# ---------------------------------------------------------------------------

# Stop distance in ATRs.  Also the denominator of reward-to-risk.
# Raising it: wider stops, smaller size, fewer trades pass the ratio.
RISK_ATR_MULT: float = _env("RISK_ATR_MULT", 2.0, float)

# Max equity at risk per trade (percent).  1% is the classic default.
MAX_RISK_PCT: float = _env("MAX_RISK_PCT", 1.0, float)

# Max notional per trade (percent of equity).
MAX_NOTIONAL_PCT: float = _env("MAX_NOTIONAL_PCT", 10.0, float)

# Minimum (target - price) / risk_per_unit.  Just under 2 so that a
# clean 2R setup survives float rounding.
MIN_REWARD_RISK: float = _env("MIN_REWARD_RISK", 1.99, float)

# How far (percent) above the notional cap a one-lot trade may still go.
NOTIONAL_TOLERANCE_PCT: float = _env("NOTIONAL_TOLERANCE_PCT", 5.0, float)

# Fixed sizing base in account currency.  0 = use live host equity.
# Useful for backtests where compounding would distort per-trade risk.
NOTIONAL_ACCOUNT_SIZE: float = _env("NOTIONAL_ACCOUNT_SIZE", 0.0, float)

# "limit" = marketable limit at the current price, "market" = market order.
ENTRY_ORDER_TYPE: str = _env("ENTRY_ORDER_TYPE", "limit")

# ---------------------------------------------------------------------------
# Universe
# ---------------------------------------------------------------------------

# Ticker list (first comma column per line).  Empty = host supplies symbols.
UNIVERSE_FILE: str = _env("UNIVERSE_FILE", "")

# Comma-separated list of files whose tickers are removed from the universe
# (banned names, leveraged ETFs, ...).
EXCLUDE_FILES: list = [p for p in _env("EXCLUDE_FILES", "", str).split(",") if p.strip()]

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

# DEBUG shows every rejected candidate, INFO shows trades and fills.
LOG_LEVEL: str = _env("LOG_LEVEL", "INFO")


# ---------------------------------------------------------------------------
# Engine config object
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EngineConfig:
    zone_sigmas: tuple = (0.5, 1.5, 2.0)
    trend_lt_after_ticks: int = 20
    trend_epsilon: float = 0.0
    vol_lookback: int = 30
    vol_high_z: float = 1.8
    vol_low_z: float = -1.0
    small_sample_cutoff: int = 3
    sparse_transition_prob: float = 0.05
    min_transition_prob: float = 0.3
    risk_atr_mult: float = 2.0
    max_risk_pct: float = 1.0
    max_notional_pct: float = 10.0
    min_reward_risk: float = 1.99
    notional_tolerance_pct: float = 5.0
    notional_account_size: float = 0.0
    entry_order_type: str = "limit"
    training_mode: bool = False
    transition_file: str = os.path.join("results", "transitions.csv")

    def __post_init__(self):
        object.__setattr__(self, "zone_sigmas", parse_sigmas(self.zone_sigmas))
        if self.trend_lt_after_ticks < 1:
            raise ValueError(f"trend_lt_after_ticks must be >= 1, got {self.trend_lt_after_ticks}")
        if self.risk_atr_mult <= 0:
            raise ValueError(f"risk_atr_mult must be positive, got {self.risk_atr_mult}")
        if self.entry_order_type not in ("limit", "market"):
            raise ValueError(f"entry_order_type must be 'limit' or 'market', got {self.entry_order_type!r}")


def engine_config_from_env() -> EngineConfig:
    """Build the engine config from the module-level env values."""
    cfg = EngineConfig(
        zone_sigmas=ZONE_SIGMAS_RAW,
        trend_lt_after_ticks=TREND_LT_AFTER_TICKS,
        trend_epsilon=TREND_EPSILON,
        vol_lookback=VOL_LOOKBACK,
        vol_high_z=VOL_HIGH_Z,
        vol_low_z=VOL_LOW_Z,
        small_sample_cutoff=SMALL_SAMPLE_CUTOFF,
        sparse_transition_prob=SPARSE_TRANSITION_PROB,
        min_transition_prob=MIN_TRANSITION_PROB,
        risk_atr_mult=RISK_ATR_MULT,
        max_risk_pct=MAX_RISK_PCT,
        max_notional_pct=MAX_NOTIONAL_PCT,
        min_reward_risk=MIN_REWARD_RISK,
        notional_tolerance_pct=NOTIONAL_TOLERANCE_PCT,
        notional_account_size=NOTIONAL_ACCOUNT_SIZE,
        entry_order_type=ENTRY_ORDER_TYPE.strip().lower(),
        training_mode=TRAINING_MODE,
        transition_file=TRANSITION_FILE,
    )
    if cfg.sparse_transition_prob >= cfg.min_transition_prob:
        logging.getLogger("config").warning(
            "SPARSE_TRANSITION_PROB=%.3f >= MIN_TRANSITION_PROB=%.3f: under-sampled rows can trigger trades",
            cfg.sparse_transition_prob, cfg.min_transition_prob,
        )
    return cfg

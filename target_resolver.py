"""
target_resolver.py -- Turn a destination state back into a price.

A zone index only says "between threshold[i-1] and threshold[i] sigmas",
so the resolver picks a representative sigma for the zone:

    index 0             -> threshold[0] / 2
    0 < index < len     -> midpoint of threshold[index-1], threshold[index]
    index >= len        -> threshold[-1]  (catch-all outer zone)

and projects it off each horizon's mean:

    price_h = mean_h +/- sigma_h * std_h      (+ for U, - for D)
    target  = (price_LT + price_ST) / 2
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from state_encoder import StateDecodeError, StateLabel, Zone, decode_state

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class HorizonStats:
    mean: float
    stddev: float


def effective_sigma(zone_index: int, thresholds: Sequence[float]) -> float:
    n = len(thresholds)
    if zone_index <= 0:
        return float(thresholds[0]) / 2.0
    if zone_index >= n:
        return float(thresholds[-1])
    return (float(thresholds[zone_index - 1]) + float(thresholds[zone_index])) / 2.0


def horizon_price(zone: Zone, stats: HorizonStats, thresholds: Sequence[float]) -> float:
    offset = effective_sigma(zone.index, thresholds) * float(stats.stddev)
    return float(stats.mean) + offset if zone.direction == "U" else float(stats.mean) - offset


def resolve_target_price(
    target: str | StateLabel,
    long_horizon: HorizonStats,
    short_horizon: HorizonStats,
    thresholds: Sequence[float],
) -> float | None:
    """
    Price implied by a destination state, or None if the label is malformed.
    """
    if isinstance(target, StateLabel):
        label = target
    else:
        try:
            label = decode_state(target)
        except StateDecodeError as e:
            log.warning("unresolvable target state %r: %s", target, e)
            return None

    px_lt = horizon_price(label.zone_lt, long_horizon, thresholds)
    px_st = horizon_price(label.zone_st, short_horizon, thresholds)
    return (px_lt + px_st) / 2.0


def select_target(
    candidates: Sequence[tuple[str, float]],
    long_horizon: HorizonStats,
    short_horizon: HorizonStats,
    thresholds: Sequence[float],
    accept=None,
):
    """
    Walk ranked candidates until one resolves (and passes `accept`).

    `accept(target_state, probability, target_price)` returns a truthy
    decision object to stop on, or a falsy value to move to the next
    candidate.  Returns (target_state, probability, target_price, decision)
    or None when nothing qualifies.
    """
    for target_state, prob in candidates:
        price = resolve_target_price(target_state, long_horizon, short_horizon, thresholds)
        if price is None:
            continue
        if accept is None:
            return target_state, prob, price, None
        decision = accept(target_state, prob, price)
        if decision:
            return target_state, prob, price, decision
    return None

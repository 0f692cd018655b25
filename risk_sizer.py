"""
risk_sizer.py -- ATR risk-budget position sizer with reward-to-risk gate.

Pure computation, no side effects.  Every outcome is a SizingDecision;
rejections are ordinary results with a reason string, never exceptions.

    risk_per_unit = k * ATR
    reward        = target - price            (must be > 0)
    reward/risk   >= min_reward_risk
    size          = max(1, floor(max_risk_pct% * equity / risk_per_unit))
    notional cap  : shrink size to fit max_notional_pct% of equity; if a
                    single lot still exceeds the cap by more than the
                    tolerance, reject
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class SizingDecision:
    approved: bool
    reason: str
    size: int = 0
    target_price: float = 0.0
    price: float = 0.0
    risk_per_unit: float = 0.0
    reward_to_risk: float = 0.0
    notional: float = 0.0
    dollar_risk: float = 0.0

    def __bool__(self) -> bool:
        return self.approved

    def to_dict(self) -> dict:
        return {
            "approved": self.approved,
            "reason": self.reason,
            "size": self.size,
            "target_price": round(self.target_price, 6),
            "price": round(self.price, 6),
            "risk_per_unit": round(self.risk_per_unit, 6),
            "reward_to_risk": round(self.reward_to_risk, 4),
            "notional": round(self.notional, 2),
            "dollar_risk": round(self.dollar_risk, 2),
        }


def _reject(reason: str, **kw) -> SizingDecision:
    return SizingDecision(approved=False, reason=reason, **kw)


def size_trade(
    price: float,
    target_price: float,
    atr: float | None,
    equity: float | None,
    risk_atr_mult: float = 2.0,
    max_risk_pct: float = 1.0,
    max_notional_pct: float = 10.0,
    min_reward_risk: float = 1.99,
    notional_tolerance_pct: float = 5.0,
) -> SizingDecision:
    if atr is None or not math.isfinite(atr) or atr <= 0:
        return _reject("atr_unavailable", price=price, target_price=target_price)
    if price is None or not math.isfinite(price) or price <= 0:
        return _reject("price_unavailable", target_price=target_price)
    if equity is None or not math.isfinite(equity) or equity <= 0:
        return _reject("equity_unavailable", price=price, target_price=target_price)

    risk_per_unit = risk_atr_mult * atr
    reward = target_price - price
    if reward <= 0:
        return _reject("reward_non_positive", price=price, target_price=target_price, risk_per_unit=risk_per_unit)

    reward_to_risk = reward / risk_per_unit
    if reward_to_risk < min_reward_risk:
        return _reject(
            "reward_risk_below_min",
            price=price,
            target_price=target_price,
            risk_per_unit=risk_per_unit,
            reward_to_risk=reward_to_risk,
        )

    max_dollar_risk = max_risk_pct / 100.0 * equity
    size = max(1, math.floor(max_dollar_risk / risk_per_unit))
    notional = size * price

    max_notional = max_notional_pct / 100.0 * equity
    if notional > max_notional:
        size = max(1, math.floor(size * max_notional / notional))
        notional = size * price
        if notional > max_notional * (1.0 + notional_tolerance_pct / 100.0):
            return _reject(
                "notional_cap",
                size=size,
                price=price,
                target_price=target_price,
                risk_per_unit=risk_per_unit,
                reward_to_risk=reward_to_risk,
                notional=notional,
            )

    return SizingDecision(
        approved=True,
        reason="ok",
        size=size,
        target_price=target_price,
        price=price,
        risk_per_unit=risk_per_unit,
        reward_to_risk=reward_to_risk,
        notional=notional,
        dollar_risk=size * risk_per_unit,
    )


def size_trade_for(cfg, price: float, target_price: float, atr: float | None, equity: float | None) -> SizingDecision:
    """size_trade with the risk knobs taken from an EngineConfig."""
    if cfg.notional_account_size > 0:
        equity = cfg.notional_account_size
    decision = size_trade(
        price,
        target_price,
        atr,
        equity,
        risk_atr_mult=cfg.risk_atr_mult,
        max_risk_pct=cfg.max_risk_pct,
        max_notional_pct=cfg.max_notional_pct,
        min_reward_risk=cfg.min_reward_risk,
        notional_tolerance_pct=cfg.notional_tolerance_pct,
    )
    if not decision.approved:
        log.debug("sizing rejected (%s): %s", decision.reason, decision.to_dict())
    return decision

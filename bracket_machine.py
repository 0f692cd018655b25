"""
bracket_machine.py

Per-instrument bracket order state machine.

Design goals:
- Pure reducer transitions: (state, event) -> (next_state, actions)
- Strict flat / pending_entry / open phase semantics, one bracket at a time
- Fill correlation by order handle only (never by position in a list)
- Idempotent: duplicate, late and unrelated events leave state unchanged
- Local order ids so the runtime can bind host handles after placement
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Literal


Side = Literal["buy", "sell"]
Role = Literal["entry", "stop", "take_profit"]
OrderKind = Literal["limit", "market", "stop_market"]
Phase = Literal["flat", "pending_entry", "open"]
FillKind = Literal["entry_filled", "stop_filled", "take_profit_filled", "unrelated"]


@dataclass(frozen=True)
class OrderLeg:
    local_id: int
    role: Role
    kind: OrderKind
    side: Side
    quantity: float
    price: float
    handle: Any = None


@dataclass(frozen=True)
class BracketState:
    phase: Phase = "flat"
    entry: OrderLeg | None = None
    stop: OrderLeg | None = None
    take_profit: OrderLeg | None = None
    target_price: float = 0.0
    entry_fill_price: float | None = None
    entry_filled_qty: float = 0.0
    decision_atr: float = 0.0
    next_order_id: int = 1
    opened_at: float | None = None
    round_trips: int = 0


# --------------------------- Events ---------------------------


@dataclass(frozen=True)
class EntrySignal:
    price: float
    quantity: int
    target_price: float
    atr: float
    timestamp: float = 0.0
    order_kind: OrderKind = "limit"
    reason: str = ""


@dataclass(frozen=True)
class FillEvent:
    handle: Any
    fill_price: float
    filled_quantity: float
    position_quantity: float
    atr: float | None = None
    timestamp: float = 0.0
    complete: bool = True


@dataclass(frozen=True)
class OrderCancelledEvent:
    handle: Any
    timestamp: float = 0.0
    position_quantity: float = 0.0
    atr: float | None = None


@dataclass(frozen=True)
class PositionUpdate:
    quantity: float
    timestamp: float = 0.0


Event = EntrySignal | FillEvent | OrderCancelledEvent | PositionUpdate


# --------------------------- Actions ---------------------------


@dataclass(frozen=True)
class PlaceOrderAction:
    local_id: int
    role: Role
    kind: OrderKind
    side: Side
    quantity: float
    price: float
    reason: str = ""


@dataclass(frozen=True)
class CancelOrderAction:
    local_id: int
    handle: Any
    role: Role
    reason: str = ""


@dataclass(frozen=True)
class BracketClosedAction:
    reason: str
    entry_fill_price: float | None
    exit_price: float | None
    quantity: float


Action = PlaceOrderAction | CancelOrderAction | BracketClosedAction


# --------------------------- Helpers ---------------------------


def _place(leg: OrderLeg, reason: str) -> PlaceOrderAction:
    return PlaceOrderAction(
        local_id=leg.local_id,
        role=leg.role,
        kind=leg.kind,
        side=leg.side,
        quantity=leg.quantity,
        price=leg.price,
        reason=reason,
    )


def _legs(state: BracketState) -> tuple[OrderLeg, ...]:
    return tuple(leg for leg in (state.entry, state.stop, state.take_profit) if leg is not None)


def classify_fill(state: BracketState, handle: Any) -> FillKind:
    """Match an order handle against the live legs of the current bracket."""
    if handle is None:
        return "unrelated"
    if state.phase == "pending_entry" and state.entry is not None and state.entry.handle == handle:
        return "entry_filled"
    if state.phase == "open":
        if state.stop is not None and state.stop.handle == handle:
            return "stop_filled"
        if state.take_profit is not None and state.take_profit.handle == handle:
            return "take_profit_filled"
    return "unrelated"


def can_enter(state: BracketState) -> bool:
    return state.phase == "flat"


def _to_flat(state: BracketState) -> BracketState:
    return replace(
        state,
        phase="flat",
        entry=None,
        stop=None,
        take_profit=None,
        target_price=0.0,
        entry_fill_price=None,
        entry_filled_qty=0.0,
        decision_atr=0.0,
        opened_at=None,
    )


def _cancel_exit_legs(state: BracketState, reason: str) -> list[Action]:
    actions: list[Action] = []
    for leg in (state.stop, state.take_profit):
        if leg is not None:
            actions.append(CancelOrderAction(local_id=leg.local_id, handle=leg.handle, role=leg.role, reason=reason))
    return actions


def _accumulate_entry_fill(state: BracketState, fill_price: float, filled_quantity: float) -> BracketState:
    """Fold one entry fill increment into the running quantity and average price."""
    prev_qty = state.entry_filled_qty
    new_qty = prev_qty + filled_quantity
    if state.entry_fill_price is None or prev_qty <= 0:
        avg = fill_price
    else:
        avg = (state.entry_fill_price * prev_qty + fill_price * filled_quantity) / new_qty
    return replace(state, entry_filled_qty=new_qty, entry_fill_price=avg)


def _open_bracket(
    state: BracketState,
    position_quantity: float,
    atr: float | None,
    risk_atr_mult: float,
    reason: str,
) -> tuple[BracketState, list[Action]]:
    """
    Place stop + take-profit around the held entry quantity.

    Exits cover the host position when it is known, else everything the
    entry reported filled.
    """
    quantity = position_quantity if position_quantity > 0 else state.entry_filled_qty
    atr = atr if atr is not None and atr > 0 else state.decision_atr
    stop_id = state.next_order_id
    tp_id = stop_id + 1
    stop = OrderLeg(
        local_id=stop_id,
        role="stop",
        kind="stop_market",
        side="sell",
        quantity=quantity,
        price=state.entry_fill_price - risk_atr_mult * atr,
    )
    take_profit = OrderLeg(
        local_id=tp_id,
        role="take_profit",
        kind="limit",
        side="sell",
        quantity=quantity,
        price=state.target_price,
    )
    st = replace(
        state,
        phase="open",
        entry=replace(state.entry, quantity=quantity),
        stop=stop,
        take_profit=take_profit,
        entry_filled_qty=quantity,
        next_order_id=tp_id + 1,
    )
    return st, [_place(stop, f"{reason}_stop"), _place(take_profit, f"{reason}_take_profit")]


def check_invariants(state: BracketState) -> list[str]:
    violations: list[str] = []
    legs = _legs(state)
    ids = [leg.local_id for leg in legs]
    if len(ids) != len(set(ids)):
        violations.append("duplicate order local_id")
    handles = [leg.handle for leg in legs if leg.handle is not None]
    if len(handles) != len(set(handles)):
        violations.append("duplicate order handle")

    if state.phase == "flat":
        if legs:
            violations.append("flat must hold no order legs")
    elif state.phase == "pending_entry":
        if state.entry is None or state.stop is not None or state.take_profit is not None:
            violations.append("pending_entry must hold exactly one entry leg")
    elif state.phase == "open":
        if state.stop is None or state.take_profit is None:
            violations.append("open must hold both stop and take_profit legs")
        if state.entry_fill_price is None:
            violations.append("open must carry entry_fill_price")

    for leg in legs:
        if leg.quantity <= 0:
            violations.append(f"{leg.role} quantity must be > 0")
    return violations


# --------------------------- Transition ---------------------------


def transition(state: BracketState, event: Event, risk_atr_mult: float = 2.0) -> tuple[BracketState, list[Action]]:
    """
    Pure reducer for one event.
    """
    actions: list[Action] = []
    st = state

    if isinstance(event, EntrySignal):
        if not can_enter(st) or event.quantity < 1 or event.price <= 0:
            return st, actions
        local_id = st.next_order_id
        entry = OrderLeg(
            local_id=local_id,
            role="entry",
            kind=event.order_kind,
            side="buy",
            quantity=event.quantity,
            price=event.price,
        )
        st = replace(
            st,
            phase="pending_entry",
            entry=entry,
            target_price=event.target_price,
            decision_atr=event.atr,
            next_order_id=local_id + 1,
            opened_at=event.timestamp,
        )
        actions.append(_place(entry, event.reason or "entry_signal"))
        return st, actions

    if isinstance(event, FillEvent):
        kind = classify_fill(st, event.handle)

        if kind == "entry_filled":
            if event.filled_quantity <= 0:
                return st, actions
            st = _accumulate_entry_fill(st, event.fill_price, event.filled_quantity)
            if not event.complete:
                return st, actions
            return _open_bracket(st, event.position_quantity, event.atr, risk_atr_mult, "entry_fill")

        if kind in ("stop_filled", "take_profit_filled"):
            if event.position_quantity != 0:
                # Partial exit; the other leg stays working.
                return st, actions
            if kind == "stop_filled":
                other = st.take_profit
                st = replace(st, stop=None)
                reason = "stop"
            else:
                other = st.stop
                st = replace(st, take_profit=None)
                reason = "take_profit"
            if other is not None:
                actions.append(
                    CancelOrderAction(local_id=other.local_id, handle=other.handle, role=other.role, reason=f"{reason}_filled")
                )
            actions.append(
                BracketClosedAction(
                    reason=reason,
                    entry_fill_price=st.entry_fill_price,
                    exit_price=event.fill_price,
                    quantity=event.filled_quantity,
                )
            )
            st = replace(_to_flat(st), round_trips=st.round_trips + 1)
            return st, actions

        return st, actions

    if isinstance(event, OrderCancelledEvent):
        if st.phase == "pending_entry" and st.entry is not None and event.handle is not None and st.entry.handle == event.handle:
            if event.position_quantity > 0:
                # Cancelled after a partial fill: protect what is held.
                if st.entry_fill_price is None:
                    st = replace(st, entry_fill_price=st.entry.price)
                return _open_bracket(st, event.position_quantity, event.atr, risk_atr_mult, "entry_cancel")
            actions.append(BracketClosedAction(reason="entry_cancelled", entry_fill_price=None, exit_price=None, quantity=0.0))
            return _to_flat(st), actions
        return st, actions

    if isinstance(event, PositionUpdate):
        if st.phase == "open" and event.quantity == 0:
            actions.extend(_cancel_exit_legs(st, "position_flat"))
            actions.append(
                BracketClosedAction(
                    reason="external_flat",
                    entry_fill_price=st.entry_fill_price,
                    exit_price=None,
                    quantity=st.entry.quantity if st.entry is not None else 0.0,
                )
            )
            st = replace(_to_flat(st), round_trips=st.round_trips + 1)
        return st, actions

    return st, actions


# --------------------------- Runtime patch helpers ---------------------------


def apply_order_handle(state: BracketState, local_id: int, handle: Any) -> BracketState:
    """Bind the host's order handle to the leg planned under local_id."""
    if state.entry is not None and state.entry.local_id == local_id:
        return replace(state, entry=replace(state.entry, handle=handle))
    if state.stop is not None and state.stop.local_id == local_id:
        return replace(state, stop=replace(state.stop, handle=handle))
    if state.take_profit is not None and state.take_profit.local_id == local_id:
        return replace(state, take_profit=replace(state.take_profit, handle=handle))
    return state


def find_leg(state: BracketState, local_id: int) -> OrderLeg | None:
    for leg in _legs(state):
        if leg.local_id == local_id:
            return leg
    return None


def to_dict(state: BracketState) -> dict:
    return {
        "phase": state.phase,
        "entry": state.entry.__dict__ if state.entry else None,
        "stop": state.stop.__dict__ if state.stop else None,
        "take_profit": state.take_profit.__dict__ if state.take_profit else None,
        "target_price": state.target_price,
        "entry_fill_price": state.entry_fill_price,
        "entry_filled_qty": state.entry_filled_qty,
        "decision_atr": state.decision_atr,
        "next_order_id": state.next_order_id,
        "opened_at": state.opened_at,
        "round_trips": state.round_trips,
    }


def remove_leg(state: BracketState, local_id: int) -> BracketState:
    """Drop a leg whose placement failed.  A dropped entry returns to flat."""
    if state.entry is not None and state.entry.local_id == local_id and state.phase == "pending_entry":
        return _to_flat(state)
    if state.stop is not None and state.stop.local_id == local_id:
        return replace(state, stop=None)
    if state.take_profit is not None and state.take_profit.local_id == local_id:
        return replace(state, take_profit=None)
    return state

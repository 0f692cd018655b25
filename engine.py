"""
Markov regime bracket engine runtime.

Glue between the host platform and the pure components:
- per-tick: encode state -> record (training) or pick a target (trading)
- target -> price (target_resolver) -> size (risk_sizer) -> entry signal
- bracket_machine reducer drives entry / stop / take-profit orders
- end of run: compile and persist the transition matrix (training)

Single threaded: the host calls on_tick() once per time step and
on_order_event() for order updates; nothing here blocks or sleeps.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterator

import numpy as np

import bracket_machine as bm
import config
from host import CANCELED, FILLED, INVALID, PARTIALLY_FILLED, HostAdapter, InstrumentSnapshot, OrderEvent
from risk_sizer import SizingDecision, size_trade_for
from state_encoder import StateLabel, TrendTracker, VolatilityTracker, encode_state
from target_resolver import HorizonStats, select_target
from universe import load_universe
from transition_model import (
    Matrix,
    MatrixLoadError,
    TransitionCounter,
    compile_matrix,
    load_matrix,
    merge_counts,
    ranked_candidates,
    save_matrix,
    to_dense,
)


logger = logging.getLogger(__name__)


def setup_logging() -> None:
    level = getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )


# ---------------------------------------------------------------------------
# Per-instrument context and registry
# ---------------------------------------------------------------------------

@dataclass
class InstrumentContext:
    symbol: str
    trend: TrendTracker
    volatility: VolatilityTracker
    bracket: bm.BracketState = field(default_factory=bm.BracketState)
    counter: TransitionCounter | None = None
    state: StateLabel | None = None
    vol_label: str = "VolNA"
    last_snapshot: InstrumentSnapshot | None = None
    last_atr: float | None = None


class InstrumentRegistry:
    """Owns one InstrumentContext per symbol.  Contexts are never shared."""

    def __init__(self, cfg: config.EngineConfig):
        self.cfg = cfg
        self._contexts: dict[str, InstrumentContext] = {}

    def add(self, symbol: str) -> InstrumentContext:
        ctx = self._contexts.get(symbol)
        if ctx is not None:
            return ctx
        ctx = InstrumentContext(
            symbol=symbol,
            trend=TrendTracker(self.cfg.trend_lt_after_ticks, self.cfg.trend_epsilon),
            volatility=VolatilityTracker(self.cfg.vol_lookback, self.cfg.vol_high_z, self.cfg.vol_low_z),
            counter=TransitionCounter() if self.cfg.training_mode else None,
        )
        self._contexts[symbol] = ctx
        return ctx

    def get(self, symbol: str) -> InstrumentContext | None:
        return self._contexts.get(symbol)

    def __contains__(self, symbol: str) -> bool:
        return symbol in self._contexts

    def __iter__(self) -> Iterator[InstrumentContext]:
        return iter(self._contexts.values())

    def __len__(self) -> int:
        return len(self._contexts)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class MarkovBracketEngine:
    def __init__(self, host: HostAdapter, cfg: config.EngineConfig | None = None, symbols: list[str] | None = None):
        self.host = host
        self.cfg = cfg or config.engine_config_from_env()
        self.registry = InstrumentRegistry(self.cfg)
        self.matrix: Matrix | None = None
        self.compiled: Matrix | None = None
        self._executing = False
        self._deferred_events: list[OrderEvent] = []

        for symbol in symbols if symbols is not None else host.symbols():
            self.registry.add(symbol)

        if not self.cfg.training_mode:
            self.matrix = self._load_model()

        logger.info(
            "engine ready: mode=%s instruments=%d zones=%s model=%s",
            "training" if self.cfg.training_mode else "trading",
            len(self.registry),
            list(self.cfg.zone_sigmas),
            "loaded" if self.matrix is not None else "none",
        )

    @classmethod
    def from_universe(
        cls,
        host: HostAdapter,
        cfg: config.EngineConfig | None = None,
        universe_file: str | None = None,
        exclude_files: list[str] | None = None,
    ) -> "MarkovBracketEngine":
        """Build an engine over the tickers listed in a universe file."""
        path = universe_file or config.UNIVERSE_FILE
        if not path:
            raise ValueError("no universe file configured (UNIVERSE_FILE)")
        excludes = config.EXCLUDE_FILES if exclude_files is None else exclude_files
        return cls(host, cfg, symbols=load_universe(path, excludes))

    @property
    def inference_enabled(self) -> bool:
        return not self.cfg.training_mode and self.matrix is not None

    def _load_model(self) -> Matrix | None:
        try:
            return load_matrix(self.cfg.transition_file)
        except MatrixLoadError as e:
            logger.error("transition matrix rejected, trading disabled: %s", e)
            return None

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def on_tick(self) -> None:
        if self.host.is_warming_up():
            return
        for ctx in self.registry:
            self._process_instrument(ctx)

    def _process_instrument(self, ctx: InstrumentContext) -> None:
        snap = self.host.snapshot(ctx.symbol)
        ctx.last_snapshot = snap

        atr = snap.atr.get()
        if atr is not None and atr > 0:
            ctx.last_atr = atr
        ctx.volatility.update(atr, snap.price)
        ctx.vol_label = ctx.volatility.label()

        if ctx.bracket.phase == "open":
            self._apply_event(ctx, bm.PositionUpdate(quantity=snap.position, timestamp=snap.timestamp), "position")

        if not snap.indicators_ready:
            logger.debug("%s: indicators warming up", ctx.symbol)
            return

        ctx.trend.update(snap.ema_short.value, snap.ema_long.value)
        state = encode_state(
            ctx.trend.label(),
            snap.price,
            snap.ema_long.value,
            snap.std_long.value,
            snap.ema_short.value,
            snap.std_short.value,
            self.cfg.zone_sigmas,
        )
        ctx.state = state

        if self.cfg.training_mode:
            if ctx.counter is not None:
                ctx.counter.observe(state)
            return

        if self.inference_enabled:
            self._maybe_enter(ctx, snap, state)

    def _maybe_enter(self, ctx: InstrumentContext, snap: InstrumentSnapshot, state: StateLabel) -> None:
        if not bm.can_enter(ctx.bracket) or snap.position != 0:
            return
        candidates = ranked_candidates(self.matrix, state, self.cfg.min_transition_prob)
        if not candidates:
            return

        atr = snap.atr.get()
        if atr is None or atr <= 0:
            logger.debug("%s: ATR unavailable, sizing skipped", ctx.symbol)
            return
        equity = self.host.equity()

        def _accept(target_state: str, prob: float, target_price: float) -> SizingDecision:
            decision = size_trade_for(self.cfg, snap.price, target_price, atr, equity)
            if not decision.approved:
                logger.debug(
                    "%s: %s -> %s (p=%.3f) target=%.4f rejected: %s",
                    ctx.symbol, state, target_state, prob, target_price, decision.reason,
                )
            return decision

        picked = select_target(
            candidates,
            HorizonStats(mean=snap.ema_long.value, stddev=snap.std_long.value),
            HorizonStats(mean=snap.ema_short.value, stddev=snap.std_short.value),
            self.cfg.zone_sigmas,
            accept=_accept,
        )
        if picked is None:
            return

        target_state, prob, target_price, decision = picked
        logger.info(
            "%s: from %s px=%.3f -> %s (p=%.3f) target=%.3f qty=%d value=%.1f R:R=%.2f vol=%s",
            ctx.symbol, state, snap.price, target_state, prob, target_price,
            decision.size, decision.notional, decision.reward_to_risk, ctx.vol_label,
        )
        self._apply_event(
            ctx,
            bm.EntrySignal(
                price=snap.price,
                quantity=decision.size,
                target_price=target_price,
                atr=atr,
                timestamp=snap.timestamp,
                order_kind=self.cfg.entry_order_type,
                reason=f"{state}->{target_state}",
            ),
            "entry_signal",
        )

    # ------------------------------------------------------------------
    # Order events
    # ------------------------------------------------------------------

    def on_order_event(self, event: OrderEvent) -> None:
        if self._executing:
            # Host reported on an order we have not bound a handle to yet.
            self._deferred_events.append(event)
            return

        ctx = self.registry.get(event.symbol)
        if ctx is None:
            return

        status = event.normalized_status
        if status in (FILLED, PARTIALLY_FILLED):
            fill = bm.FillEvent(
                handle=event.handle,
                fill_price=event.fill_price,
                filled_quantity=abs(event.filled_quantity),
                position_quantity=self.host.position(event.symbol),
                atr=self._current_atr(ctx),
                timestamp=event.timestamp,
                complete=status == FILLED,
            )
            self._apply_event(ctx, fill, status)
        elif status in (CANCELED, INVALID):
            cancelled = bm.OrderCancelledEvent(
                handle=event.handle,
                timestamp=event.timestamp,
                position_quantity=self.host.position(event.symbol),
                atr=self._current_atr(ctx),
            )
            self._apply_event(ctx, cancelled, status)

    def _current_atr(self, ctx: InstrumentContext) -> float | None:
        if ctx.last_snapshot is not None:
            current = ctx.last_snapshot.atr.get()
            if current is not None and current > 0:
                return current
        return ctx.last_atr

    # ------------------------------------------------------------------
    # Reducer plumbing
    # ------------------------------------------------------------------

    def _apply_event(self, ctx: InstrumentContext, event: bm.Event, event_type: str) -> None:
        old_phase = ctx.bracket.phase
        new_state, actions = bm.transition(ctx.bracket, event, risk_atr_mult=self.cfg.risk_atr_mult)
        ctx.bracket = new_state
        if new_state.phase != old_phase:
            logger.info("%s: bracket %s -> %s (%s)", ctx.symbol, old_phase, new_state.phase, event_type)

        self._execute_actions(ctx, actions)

        violations = bm.check_invariants(ctx.bracket)
        if violations:
            logger.warning("%s: bracket invariant violations: %s", ctx.symbol, "; ".join(violations))

    def _execute_actions(self, ctx: InstrumentContext, actions: list[bm.Action]) -> None:
        if not actions:
            return

        nested = self._executing
        self._executing = True
        try:
            for action in actions:
                if isinstance(action, bm.PlaceOrderAction):
                    try:
                        handle = self._place_order(ctx.symbol, action)
                    except Exception as e:
                        logger.warning("%s: place %s failed: %s", ctx.symbol, action.role, e)
                        handle = None
                    if handle is None:
                        ctx.bracket = bm.remove_leg(ctx.bracket, action.local_id)
                        continue
                    ctx.bracket = bm.apply_order_handle(ctx.bracket, action.local_id, handle)

                elif isinstance(action, bm.CancelOrderAction):
                    if action.handle is None:
                        continue
                    try:
                        self.host.cancel_order(action.handle)
                    except Exception as e:
                        logger.warning("%s: cancel %s failed: %s", ctx.symbol, action.role, e)

                elif isinstance(action, bm.BracketClosedAction):
                    logger.info(
                        "%s: bracket closed by %s entry=%s exit=%s qty=%s",
                        ctx.symbol, action.reason, action.entry_fill_price, action.exit_price, action.quantity,
                    )
        finally:
            self._executing = nested

        if not nested:
            self._drain_deferred()

    def _drain_deferred(self) -> None:
        while self._deferred_events and not self._executing:
            event = self._deferred_events.pop(0)
            self.on_order_event(event)

    def _place_order(self, symbol: str, action: bm.PlaceOrderAction) -> Any:
        qty = action.quantity if action.side == "buy" else -action.quantity
        if action.kind == "market":
            return self.host.place_market_order(symbol, qty)
        if action.kind == "stop_market":
            return self.host.place_stop_market_order(symbol, qty, action.price)
        return self.host.place_limit_order(symbol, qty, action.price)

    # ------------------------------------------------------------------
    # End of run
    # ------------------------------------------------------------------

    def finalize(self) -> Matrix | None:
        """Training: compile all instruments' counts into one matrix and save it."""
        if not self.cfg.training_mode:
            return None

        counts = merge_counts(ctx.counter for ctx in self.registry if ctx.counter is not None)
        matrix = compile_matrix(counts, self.cfg.small_sample_cutoff, self.cfg.sparse_transition_prob)
        self.compiled = matrix
        save_matrix(self.cfg.transition_file, matrix)

        states, dense = to_dense(matrix)
        logger.info(
            "compiled %d transitions over %d states (%d observations). Transition matrix:\n%s",
            len(counts), len(states), sum(counts.values()),
            np.array2string(dense, precision=3, threshold=400),
        )
        return matrix

    def status_payload(self) -> dict:
        return {
            "mode": "training" if self.cfg.training_mode else "trading",
            "inference_enabled": self.inference_enabled,
            "instruments": {
                ctx.symbol: {
                    "state": str(ctx.state) if ctx.state else None,
                    "trend": ctx.trend.to_dict(),
                    "vol": ctx.vol_label,
                    "bracket": bm.to_dict(ctx.bracket),
                }
                for ctx in self.registry
            },
        }

import os
import tempfile
import unittest

import engine
import transition_model as tm
from config import EngineConfig
from host import HostAdapter, IndicatorReading, InstrumentSnapshot, OrderEvent


class FakeHost(HostAdapter):
    """Scripted host: constant indicators, order log, manual fills."""

    def __init__(self, symbols, price=100.0, ema_short=100.2, ema_long=100.0, std=4.0, atr=1.0, equity=100_000.0):
        self._symbols = list(symbols)
        self.price = price
        self.ema_short = ema_short
        self.ema_long = ema_long
        self.std = std
        self.atr = atr
        self._equity = equity
        self.positions = {s: 0.0 for s in self._symbols}
        self.orders = []
        self.cancelled = []
        self.warming = False
        self.indicators_ready = True
        self.fail_limit = False
        self.fill_entries_on_place = False
        self.engine = None
        self.snapshot_calls = 0
        self._next = 0

    def symbols(self):
        return list(self._symbols)

    def is_warming_up(self):
        return self.warming

    def snapshot(self, symbol):
        self.snapshot_calls += 1
        ready = self.indicators_ready
        return InstrumentSnapshot(
            symbol=symbol,
            price=self.price,
            ema_short=IndicatorReading(ready, self.ema_short),
            ema_long=IndicatorReading(ready, self.ema_long),
            std_short=IndicatorReading(ready, self.std),
            std_long=IndicatorReading(ready, self.std),
            atr=IndicatorReading(True, self.atr),
            position=self.positions[symbol],
        )

    def position(self, symbol):
        return self.positions[symbol]

    def equity(self):
        return self._equity

    def _handle(self):
        self._next += 1
        return f"O{self._next}"

    def place_market_order(self, symbol, quantity):
        h = self._handle()
        self.orders.append(("market", symbol, quantity, None, h))
        return h

    def place_limit_order(self, symbol, quantity, price):
        if self.fail_limit:
            raise RuntimeError("order rejected")
        h = self._handle()
        self.orders.append(("limit", symbol, quantity, price, h))
        if self.fill_entries_on_place and quantity > 0:
            self.positions[symbol] += quantity
            self.engine.on_order_event(
                OrderEvent(handle=h, symbol=symbol, fill_price=price, filled_quantity=quantity)
            )
        return h

    def place_stop_market_order(self, symbol, quantity, stop_price):
        h = self._handle()
        self.orders.append(("stop_market", symbol, quantity, stop_price, h))
        return h

    def cancel_order(self, handle):
        self.cancelled.append(handle)


# Current state for FakeHost defaults is Up_ST_Z0U_Z0D.  Z3U/Z3U resolves
# to ((100 + 2*4) + (100.2 + 2*4)) / 2 = 108.1, reward/risk = 8.1 / 2.
START = "Up_ST_Z0U_Z0D"
TARGET = "Up_ST_Z3U_Z3U"


class EngineTrainingTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self._tmp.name, "results", "transitions.csv")

    def tearDown(self):
        self._tmp.cleanup()

    def test_training_counts_all_instruments_and_saves(self):
        cfg = EngineConfig(training_mode=True, transition_file=self.path, trend_lt_after_ticks=2)
        host = FakeHost(["AAA", "BBB"], ema_short=101.0, std=1.0)
        eng = engine.MarkovBracketEngine(host, cfg)
        for _ in range(5):
            eng.on_tick()

        self.assertEqual(host.orders, [])
        self.assertEqual(eng.registry.get("AAA").counter.total, 4)

        matrix = eng.finalize()
        self.assertTrue(os.path.exists(self.path))
        # Per instrument: ST->ST 1, ST->LT 1, LT->LT 2
        self.assertAlmostEqual(matrix["Up_ST_Z0U_Z1D"]["Up_ST_Z0U_Z1D"], 0.5)
        self.assertAlmostEqual(matrix["Up_ST_Z0U_Z1D"]["Up_LT_Z0U_Z1D"], 0.5)
        self.assertAlmostEqual(matrix["Up_LT_Z0U_Z1D"]["Up_LT_Z0U_Z1D"], 1.0)

        loaded = tm.load_matrix(self.path)
        self.assertEqual(set(loaded), set(matrix))

    def test_warmup_skips_processing(self):
        cfg = EngineConfig(training_mode=True, transition_file=self.path)
        host = FakeHost(["AAA"])
        host.warming = True
        eng = engine.MarkovBracketEngine(host, cfg)
        eng.on_tick()
        self.assertEqual(host.snapshot_calls, 0)

    def test_indicators_not_ready_records_nothing(self):
        cfg = EngineConfig(training_mode=True, transition_file=self.path)
        host = FakeHost(["AAA"])
        host.indicators_ready = False
        eng = engine.MarkovBracketEngine(host, cfg)
        eng.on_tick()
        eng.on_tick()
        self.assertEqual(eng.registry.get("AAA").counter.total, 0)
        self.assertIsNone(eng.registry.get("AAA").state)


class EngineTradingTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self._tmp.name, "transitions.csv")
        tm.save_matrix(self.path, {START: {TARGET: 0.8, START: 0.2}})
        self.cfg = EngineConfig(transition_file=self.path)

    def tearDown(self):
        self._tmp.cleanup()

    def _engine(self, host):
        eng = engine.MarkovBracketEngine(host, self.cfg)
        host.engine = eng
        return eng

    def test_full_bracket_lifecycle(self):
        host = FakeHost(["AAA"])
        eng = self._engine(host)
        eng.on_tick()

        ctx = eng.registry.get("AAA")
        self.assertEqual(str(ctx.state), START)
        self.assertEqual(ctx.bracket.phase, "pending_entry")
        kind, symbol, qty, price, entry_handle = host.orders[0]
        self.assertEqual((kind, symbol, price), ("limit", "AAA", 100.0))
        # 1% of 100k / 2 = 500 units, capped to 10% notional = 100 units
        self.assertEqual(qty, 100)
        self.assertAlmostEqual(ctx.bracket.target_price, 108.1)

        # Second tick while pending must not add another entry.
        eng.on_tick()
        self.assertEqual(len(host.orders), 1)

        host.positions["AAA"] = 100
        eng.on_order_event(OrderEvent(handle=entry_handle, symbol="AAA", fill_price=100.0, filled_quantity=100))
        self.assertEqual(ctx.bracket.phase, "open")
        stop = next(o for o in host.orders if o[0] == "stop_market")
        tp = [o for o in host.orders if o[0] == "limit"][1]
        self.assertEqual(stop[2], -100)
        self.assertAlmostEqual(stop[3], 98.0)
        self.assertEqual(tp[2], -100)
        self.assertAlmostEqual(tp[3], 108.1)

        host.positions["AAA"] = 0
        eng.on_order_event(OrderEvent(handle=tp[4], symbol="AAA", fill_price=108.1, filled_quantity=-100))
        self.assertEqual(ctx.bracket.phase, "flat")
        self.assertEqual(ctx.bracket.round_trips, 1)
        self.assertEqual(host.cancelled, [stop[4]])

    def test_partial_entry_fills_protect_whole_position(self):
        host = FakeHost(["AAA"])
        eng = self._engine(host)
        eng.on_tick()
        ctx = eng.registry.get("AAA")
        entry_handle = host.orders[0][4]

        host.positions["AAA"] = 60
        eng.on_order_event(
            OrderEvent(handle=entry_handle, symbol="AAA", fill_price=100.0, filled_quantity=60, status="PartiallyFilled")
        )
        self.assertEqual(ctx.bracket.phase, "pending_entry")
        self.assertEqual(len(host.orders), 1)

        host.positions["AAA"] = 100
        eng.on_order_event(OrderEvent(handle=entry_handle, symbol="AAA", fill_price=100.5, filled_quantity=40))
        self.assertEqual(ctx.bracket.phase, "open")
        stop = next(o for o in host.orders if o[0] == "stop_market")
        tp = [o for o in host.orders if o[0] == "limit"][1]
        self.assertEqual(stop[2], -100)
        self.assertEqual(tp[2], -100)
        # average entry (60 @ 100.0, 40 @ 100.5) = 100.2, stop 2 ATR below
        self.assertAlmostEqual(stop[3], 98.2)

        host.positions["AAA"] = 0
        eng.on_order_event(OrderEvent(handle=tp[4], symbol="AAA", fill_price=108.1, filled_quantity=-100))
        self.assertEqual(ctx.bracket.phase, "flat")
        self.assertEqual(host.cancelled, [stop[4]])

    def test_entry_cancelled_after_partial_fill_opens_bracket(self):
        host = FakeHost(["AAA"])
        eng = self._engine(host)
        eng.on_tick()
        ctx = eng.registry.get("AAA")
        entry_handle = host.orders[0][4]

        host.positions["AAA"] = 60
        eng.on_order_event(
            OrderEvent(handle=entry_handle, symbol="AAA", fill_price=100.0, filled_quantity=60, status="partially_filled")
        )
        eng.on_order_event(OrderEvent(handle=entry_handle, symbol="AAA", status="canceled"))

        self.assertEqual(ctx.bracket.phase, "open")
        exits = host.orders[1:]
        self.assertEqual(sorted(o[0] for o in exits), ["limit", "stop_market"])
        self.assertEqual({o[2] for o in exits}, {-60})
        self.assertEqual(engine.bm.check_invariants(ctx.bracket), [])

        eng.on_tick()
        self.assertEqual(len(host.orders), 3)

    def test_events_for_unknown_symbol_ignored(self):
        host = FakeHost(["AAA"])
        eng = self._engine(host)
        eng.on_order_event(OrderEvent(handle="O99", symbol="ZZZ", fill_price=1.0, filled_quantity=1))
        self.assertEqual(host.orders, [])

    def test_entry_cancel_returns_flat(self):
        host = FakeHost(["AAA"])
        eng = self._engine(host)
        eng.on_tick()
        handle = host.orders[0][4]
        eng.on_order_event(OrderEvent(handle=handle, symbol="AAA", status="Canceled"))
        self.assertEqual(eng.registry.get("AAA").bracket.phase, "flat")

    def test_external_flat_cancels_exits(self):
        host = FakeHost(["AAA"])
        host.fill_entries_on_place = True
        eng = self._engine(host)
        eng.on_tick()
        ctx = eng.registry.get("AAA")
        self.assertEqual(ctx.bracket.phase, "open")
        exit_handles = sorted(o[4] for o in host.orders[1:])

        host.positions["AAA"] = 0
        host.atr = 10.0  # no re-entry on this tick: reward/risk too low
        eng.on_tick()
        self.assertEqual(sorted(host.cancelled), exit_handles)
        self.assertEqual(ctx.bracket.phase, "flat")
        self.assertEqual(ctx.bracket.round_trips, 1)

    def test_fill_reported_during_placement_is_deferred(self):
        host = FakeHost(["AAA"])
        host.fill_entries_on_place = True
        eng = self._engine(host)
        eng.on_tick()
        ctx = eng.registry.get("AAA")
        self.assertEqual(ctx.bracket.phase, "open")
        self.assertEqual(ctx.bracket.entry.handle, "O1")
        self.assertEqual({ctx.bracket.stop.handle, ctx.bracket.take_profit.handle}, {"O2", "O3"})
        self.assertEqual(engine.bm.check_invariants(ctx.bracket), [])

    def test_failed_entry_placement_returns_flat(self):
        host = FakeHost(["AAA"])
        host.fail_limit = True
        eng = self._engine(host)
        with self.assertLogs("engine", level="WARNING"):
            eng.on_tick()
        self.assertEqual(eng.registry.get("AAA").bracket.phase, "flat")

    def test_rejected_sizing_places_nothing(self):
        host = FakeHost(["AAA"], atr=10.0)
        eng = self._engine(host)
        eng.on_tick()
        self.assertEqual(host.orders, [])

    def test_existing_position_blocks_entry(self):
        host = FakeHost(["AAA"])
        host.positions["AAA"] = 5
        eng = self._engine(host)
        eng.on_tick()
        self.assertEqual(host.orders, [])

    def test_market_entry_type(self):
        self.cfg = EngineConfig(transition_file=self.path, entry_order_type="market")
        host = FakeHost(["AAA"])
        eng = self._engine(host)
        eng.on_tick()
        self.assertEqual(host.orders[0][0], "market")
        self.assertEqual(host.orders[0][2], 100)

    def test_missing_model_disables_trading(self):
        host = FakeHost(["AAA"])
        eng = engine.MarkovBracketEngine(host, EngineConfig(transition_file=self.path + ".missing"))
        self.assertFalse(eng.inference_enabled)
        eng.on_tick()
        self.assertEqual(host.orders, [])

    def test_malformed_model_disables_trading(self):
        with open(self.path, "w", encoding="utf-8") as f:
            f.write("From,To,Probability\nA,B,oops\n")
        host = FakeHost(["AAA"])
        with self.assertLogs("engine", level="ERROR"):
            eng = engine.MarkovBracketEngine(host, self.cfg)
        self.assertIsNone(eng.matrix)
        eng.on_tick()
        self.assertEqual(host.orders, [])

    def test_from_universe(self):
        universe = os.path.join(self._tmp.name, "universe.csv")
        banned = os.path.join(self._tmp.name, "banned.txt")
        with open(universe, "w", encoding="utf-8") as f:
            f.write("AAA,first\nBBB,second\nCCC,third\n")
        with open(banned, "w", encoding="utf-8") as f:
            f.write("BBB\n")
        host = FakeHost(["AAA", "BBB", "CCC"])
        eng = engine.MarkovBracketEngine.from_universe(host, self.cfg, universe, [banned])
        self.assertEqual([ctx.symbol for ctx in eng.registry], ["AAA", "CCC"])
        self.assertNotIn("BBB", eng.registry)

    def test_status_payload(self):
        host = FakeHost(["AAA"])
        eng = self._engine(host)
        eng.on_tick()
        payload = eng.status_payload()
        self.assertEqual(payload["mode"], "trading")
        self.assertEqual(payload["instruments"]["AAA"]["state"], START)
        self.assertEqual(payload["instruments"]["AAA"]["bracket"]["phase"], "pending_entry")


if __name__ == "__main__":
    unittest.main()

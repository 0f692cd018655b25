import unittest

from config import EngineConfig
from risk_sizer import size_trade, size_trade_for


class RiskSizerTests(unittest.TestCase):
    def test_within_caps_uses_risk_budget(self):
        d = size_trade(price=10.0, target_price=15.0, atr=1.0, equity=100_000.0)
        self.assertTrue(d.approved)
        self.assertEqual(d.reason, "ok")
        # 1% of 100k = 1000 risk; 2*ATR = 2 per unit
        self.assertEqual(d.size, 500)
        self.assertAlmostEqual(d.reward_to_risk, 2.5)
        self.assertAlmostEqual(d.notional, 5000.0)
        self.assertAlmostEqual(d.dollar_risk, 1000.0)

    def test_notional_cap_scales_size_down(self):
        d = size_trade(price=100.0, target_price=110.0, atr=1.0, equity=100_000.0)
        self.assertTrue(d)
        self.assertEqual(d.size, 100)
        self.assertAlmostEqual(d.notional, 10_000.0)

    def test_single_lot_over_cap_rejects(self):
        d = size_trade(price=2000.0, target_price=2010.0, atr=1.0, equity=10_000.0)
        self.assertFalse(d)
        self.assertEqual(d.reason, "notional_cap")
        self.assertEqual(d.size, 1)

    def test_missing_inputs_reject(self):
        self.assertEqual(size_trade(10.0, 15.0, None, 1e5).reason, "atr_unavailable")
        self.assertEqual(size_trade(10.0, 15.0, 0.0, 1e5).reason, "atr_unavailable")
        self.assertEqual(size_trade(0.0, 15.0, 1.0, 1e5).reason, "price_unavailable")
        self.assertEqual(size_trade(10.0, 15.0, 1.0, 0.0).reason, "equity_unavailable")

    def test_target_not_above_price_rejects(self):
        self.assertEqual(size_trade(100.0, 99.0, 1.0, 1e5).reason, "reward_non_positive")
        self.assertEqual(size_trade(100.0, 100.0, 1.0, 1e5).reason, "reward_non_positive")

    def test_reward_to_risk_gate(self):
        low = size_trade(100.0, 103.0, 1.0, 1e5)
        self.assertFalse(low)
        self.assertEqual(low.reason, "reward_risk_below_min")
        self.assertAlmostEqual(low.reward_to_risk, 1.5)

        self.assertTrue(size_trade(100.0, 104.0, 1.0, 1e5))
        self.assertFalse(size_trade(100.0, 104.0, 1.0, 1e5, min_reward_risk=2.5))

    def test_minimum_one_unit(self):
        d = size_trade(price=5.0, target_price=100.0, atr=10.0, equity=1000.0)
        self.assertTrue(d)
        self.assertEqual(d.size, 1)

    def test_config_account_size_overrides_equity(self):
        cfg = EngineConfig(notional_account_size=50_000.0)
        d = size_trade_for(cfg, 10.0, 15.0, 1.0, equity=1.0)
        self.assertTrue(d)
        self.assertEqual(d.size, 250)

    def test_to_dict(self):
        out = size_trade(10.0, 15.0, 1.0, 1e5).to_dict()
        self.assertEqual(out["size"], 500)
        self.assertTrue(out["approved"])


if __name__ == "__main__":
    unittest.main()

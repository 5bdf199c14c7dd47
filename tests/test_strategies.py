"""
Tests for the strategy archetypes and the bot roster
"""

import pytest

from strategies import (
    BOT_CATALOG, BOT_REGISTRY, RULE_HANDLERS, BotContext, EmaMomentum, MeanReversion,
    RiskGuard, TrendBreakout, VolatilityImpulse, catalog_summary, evaluate_rule, get_bot
)


def _ctx(closes, position=0.0, cash=10000.0, meta=None):
    return BotContext(closes=list(closes), price=closes[-1], cash=cash, position=position,
                      meta=meta if meta is not None else {"entry_price": 0.0})


class TestTrendBreakout:

    RULE = TrendBreakout(entry=5, exit=3, portion=0.5, cool_bars=3, label="Test")

    def test_waits_for_indicators(self):
        assert evaluate_rule(self.RULE, _ctx([100.0] * 10)) is None

    def test_breakout_buys(self):
        closes = [100.0 + i for i in range(20)] + [130.0]
        action = evaluate_rule(self.RULE, _ctx(closes))

        assert action.side == "buy"
        assert action.portion == 0.5
        assert action.reason == "Test breakout entry"

    def test_cooldown_blocks_reentry(self):
        """After an entry signal the next cool_bars - 1 flat ticks stay quiet"""
        closes = [100.0 + i for i in range(20)] + [130.0]
        meta = {"entry_price": 0.0}

        assert evaluate_rule(self.RULE, _ctx(closes, meta=meta)).side == "buy"
        assert meta["cooldown_bars"] == 3
        assert evaluate_rule(self.RULE, _ctx(closes, meta=meta)) is None
        assert evaluate_rule(self.RULE, _ctx(closes, meta=meta)) is None
        assert evaluate_rule(self.RULE, _ctx(closes, meta=meta)).side == "buy"

    def test_exit_below_channel(self):
        closes = [100.0 + i for i in range(20)] + [90.0]
        action = evaluate_rule(self.RULE, _ctx(closes, position=1.0))

        assert action.side == "sell"
        assert action.portion == 1.0

    def test_max_hold_forces_exit(self):
        closes = [100.0 + i for i in range(20)] + [118.5]
        meta = {"entry_price": 100.0, "hold_bars": 180}
        action = evaluate_rule(self.RULE, _ctx(closes, position=1.0, meta=meta))
        assert action.side == "sell"


class TestEmaMomentum:

    RULE = EmaMomentum(fast=3, slow=8, portion=0.4, in_rsi=52, out_rsi=45, cool_bars=2, label="Mo")

    def test_needs_bollinger_window(self):
        assert evaluate_rule(self.RULE, _ctx([100.0 + i for i in range(19)])) is None

    def test_exit_when_fast_below_slow(self):
        closes = [100.0 + i for i in range(25)] + [100.0 - i for i in range(10)]
        action = evaluate_rule(self.RULE, _ctx(closes, position=2.0))
        assert action.side == "sell"
        assert action.reason == "Mo momentum faded"

    def test_no_buy_when_flat_market(self):
        assert evaluate_rule(self.RULE, _ctx([100.0] * 40)) is None


class TestMeanReversion:

    RULE = MeanReversion(in_rsi=31, out_rsi=60, portion=0.6, z_in=-1.2, cool_bars=8, label="MR")

    def test_buys_oversold(self):
        closes = [200.0 - i for i in range(30)]
        action = evaluate_rule(self.RULE, _ctx(closes))
        assert action.side == "buy"
        assert action.reason == "MR oversold bounce"

    def test_sells_above_midline(self):
        closes = [100.0] * 25 + [101.0]
        action = evaluate_rule(self.RULE, _ctx(closes, position=1.0))
        assert action.side == "sell"


class TestVolatilityImpulse:

    RULE = VolatilityImpulse(lookback=10, roc_in=0.5, portion=0.5, cool_bars=4, label="VI")

    def test_needs_lookback_plus_ten(self):
        assert evaluate_rule(self.RULE, _ctx([100.0 + i for i in range(19)])) is None

    def test_expansion_entry(self):
        closes = [100.0 + i * 0.5 for i in range(30)] + [125.0]
        action = evaluate_rule(self.RULE, _ctx(closes))
        assert action.side == "buy"
        assert action.reason == "VI volatility expansion"

    def test_failed_breakout_exit(self):
        closes = [100.0 + i * 0.5 for i in range(30)] + [90.0]
        action = evaluate_rule(self.RULE, _ctx(closes, position=1.0))
        assert action.side == "sell"


class TestRiskGuard:

    RULE = RiskGuard(portion=0.4, stop_loss=0.02, take_profit=0.06, label="Guard")

    def test_stop_loss(self):
        closes = [100.0 + (i % 2) for i in range(60)] + [97.0]
        meta = {"entry_price": 100.0}
        action = evaluate_rule(self.RULE, _ctx(closes, position=1.0, meta=meta))
        assert action.side == "sell"
        assert action.reason == "Guard risk exit"

    def test_hold_counter_runs_before_warmup(self):
        meta = {"entry_price": 100.0}
        assert evaluate_rule(self.RULE, _ctx([100.0] * 10, position=1.0, meta=meta)) is None
        assert meta["hold_bars"] == 1


class TestCatalog:

    def test_twenty_unique_bots(self):
        assert len(BOT_CATALOG) == 20
        assert len(BOT_REGISTRY) == 20

    def test_every_rule_has_a_handler(self):
        for bot in BOT_CATALOG:
            assert bot.rule.kind in RULE_HANDLERS

    def test_archetype_mix(self):
        kinds = [bot.rule.kind for bot in BOT_CATALOG]
        assert kinds.count("trend_breakout") == 4
        assert kinds.count("ema_momentum") == 4
        assert kinds.count("mean_reversion") == 4
        assert kinds.count("volatility_impulse") == 5
        assert kinds.count("risk_guard") == 3

    def test_registry_is_read_only(self):
        with pytest.raises(TypeError):
            BOT_REGISTRY["new"] = BOT_CATALOG[0]

    def test_lookup_and_summary(self):
        assert get_bot("livermore").name == "Livermore Breaker"
        assert get_bot("missing") is None
        summary = catalog_summary()
        assert summary[0] == {
            "id": "livermore",
            "name": "Livermore Breaker",
            "desc": BOT_CATALOG[0].description,
            "inspiration": "Jesse Livermore",
        }

    def test_rules_are_plain_data(self):
        """Rules compare by value, so the roster is data-describable"""
        assert TrendBreakout(20, 10, 0.58, 14, "Livermore") == get_bot("livermore").rule

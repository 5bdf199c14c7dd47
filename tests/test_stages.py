"""
Tests for stage selection and stage series building
"""

import pytest

from backend.historical_data import DAY_SECONDS, PricePoint, date_to_ts, find_nearest_price
from backend.stages import (
    HISTORY_TEMPLATES, REGIME_SCORERS, Stage, build_stage_series, pick_stages, window_features
)
import numpy as np

SPAN = 14 * DAY_SECONDS
GAP = 21 * DAY_SECONDS


def _daily(start: str, days: int, price=lambda i: 100.0 + i):
    base = date_to_ts(start)
    return [PricePoint(base + i * DAY_SECONDS, price(i)) for i in range(days)]


class TestTemplateMode:

    def test_all_templates_in_order(self, synthetic_history):
        stages = pick_stages(synthetic_history, mode="template")
        assert [s.id for s in stages] == [t.id for t in HISTORY_TEMPLATES]
        assert len(stages) == 10

    def test_windows_centered_and_bounded(self, synthetic_history):
        first, last = synthetic_history[0].ts, synthetic_history[-1].ts
        for stage in pick_stages(synthetic_history, mode="template"):
            assert stage.end - stage.start == SPAN
            assert first <= stage.start < stage.end <= last

        covid = next(s for s in pick_stages(synthetic_history, mode="template") if s.id == "hist_2020_covid")
        assert covid.start == date_to_ts("2020-03-06")
        assert covid.period == "2020-03-06 ~ 2020-03-20"

    def test_clipping_preserves_span(self):
        """Events outside the history are pulled inside, keeping 14 days"""
        history = _daily("2021-01-01", 150)
        first, last = history[0].ts, history[-1].ts
        stages = pick_stages(history, mode="template")

        assert len(stages) == 10
        for stage in stages:
            assert first <= stage.start and stage.end <= last
            assert stage.end - stage.start == SPAN

        by_id = {s.id: s for s in stages}
        assert by_id["hist_2013_bubble"].start == first
        assert by_id["hist_2024_etf"].end == last

    def test_default_mode_is_template(self, synthetic_history):
        assert pick_stages(synthetic_history)[0].regime == "historical_event"


class TestDegenerateHistory:

    def test_short_history_gives_no_stages(self, short_history):
        assert pick_stages(short_history) == []
        assert pick_stages(short_history, mode="scored") == []

    def test_empty_history(self):
        assert pick_stages([]) == []

    def test_zero_span_history(self):
        history = [PricePoint(1_600_000_000, 100.0)] * 40
        assert pick_stages(history) == []


class TestScoredMode:

    def test_returns_target_count_with_gap(self, synthetic_history):
        stages = pick_stages(synthetic_history, mode="scored")

        assert len(stages) == 5
        for stage in stages:
            assert 0 < stage.end - stage.start <= SPAN
        for a, b in zip(stages, stages[1:]):
            assert b.start - a.end >= GAP, "Scored windows must respect the separation gap"

    def test_each_regime_represented(self, synthetic_history):
        regimes = {s.regime for s in pick_stages(synthetic_history, mode="scored")}
        assert regimes == set(REGIME_SCORERS)

    def test_deterministic(self, synthetic_history):
        assert pick_stages(synthetic_history, mode="scored") == pick_stages(synthetic_history, mode="scored")

    def test_short_history_returns_what_fits(self):
        """60 days only fit two separated windows"""
        history = _daily("2021-01-01", 60)
        stages = pick_stages(history, mode="scored")

        assert 1 <= len(stages) <= 2
        for a, b in zip(stages, stages[1:]):
            assert b.start - a.end >= GAP

    def test_window_features(self):
        prices = np.array([100.0, 120.0, 60.0, 90.0])
        features = window_features(prices, overall_vol=1.0)

        assert features["net_return"] == pytest.approx(-0.1)
        assert features["max_drawdown"] == pytest.approx(0.5)
        assert features["rebound"] == pytest.approx(0.5)

    def test_uptrend_scores_rising_window_higher(self):
        rising = window_features(np.linspace(100, 150, 15), overall_vol=0.02)
        falling = window_features(np.linspace(150, 100, 15), overall_vol=0.02)
        assert REGIME_SCORERS["uptrend"](rising) > REGIME_SCORERS["uptrend"](falling)
        assert REGIME_SCORERS["downtrend"](falling) > REGIME_SCORERS["downtrend"](rising)


class TestStageSeries:

    @pytest.fixture
    def stage(self, synthetic_history):
        return pick_stages(synthetic_history, mode="template")[2]

    def test_fifteen_minute_grid(self, stage, synthetic_history):
        series = build_stage_series(stage, synthetic_history, seed=1, step_seconds=900)

        assert len(series) == 14 * 96 + 1
        assert series[0].ts == stage.start
        assert series[-1].ts == stage.end
        assert all(b.ts - a.ts == 900 for a, b in zip(series, series[1:]))

    def test_default_step_from_config(self, stage, synthetic_history):
        """Test config uses 6-hour steps"""
        series = build_stage_series(stage, synthetic_history)
        assert len(series) == 14 * 4 + 1

    def test_deterministic(self, stage, synthetic_history):
        a = build_stage_series(stage, synthetic_history, seed=1, step_seconds=900)
        b = build_stage_series(stage, synthetic_history, seed=1, step_seconds=900)
        c = build_stage_series(stage, synthetic_history, seed=2, step_seconds=900)
        assert a == b
        assert a != c

    def test_follows_daily_anchors(self, stage, synthetic_history):
        series = build_stage_series(stage, synthetic_history, seed=1, step_seconds=900)
        for point in series[::24]:
            anchor = find_nearest_price(synthetic_history, point.ts, point.price)
            assert abs(point.price / anchor - 1) < 0.15

    def test_min_price_floor(self):
        history = _daily("2021-01-01", 40, price=lambda i: 0.05)
        stage = Stage(id="tiny", regime="test", title="", period="", turning_point="",
                      description="", start=history[5].ts, end=history[10].ts, summary="")
        series = build_stage_series(stage, history, step_seconds=3600)
        assert all(p.price == 1.0 for p in series)

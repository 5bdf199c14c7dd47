"""
Tests for history retrieval, normalization and synthesis
"""

import pytest
import requests
from unittest.mock import MagicMock, patch

from backend.historical_data import (
    DAY_SECONDS, HistoryProvider, PricePoint, SeededRandom, compute_noise,
    create_synthetic_history, date_to_ts, find_nearest_price, normalize_price_points
)


def _response(status_code=200, prices=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = {"prices": prices or []}
    return resp


def _daily_ms(count=200, price=20000.0, start="2020-01-01"):
    base = date_to_ts(start) * 1000
    return [[base + i * DAY_SECONDS * 1000, price + i] for i in range(count)]


class TestSeededRandom:

    def test_same_seed_same_stream(self):
        a = SeededRandom(7)
        b = SeededRandom(7)
        assert [a.random() for _ in range(50)] == [b.random() for _ in range(50)]

    def test_values_in_unit_interval(self):
        rand = SeededRandom(123)
        values = [rand.random() for _ in range(1000)]
        assert all(0.0 <= v < 1.0 for v in values)

    def test_different_seeds_diverge(self):
        a = SeededRandom(1)
        b = SeededRandom(2)
        assert [a.random() for _ in range(10)] != [b.random() for _ in range(10)]


class TestSyntheticHistory:

    def test_deterministic_for_seed(self):
        assert create_synthetic_history(42) == create_synthetic_history(42)

    def test_seed_changes_path(self):
        assert create_synthetic_history(42) != create_synthetic_history(43)

    def test_daily_sorted_and_positive(self):
        history = create_synthetic_history(42)
        assert len(history) > 4000
        steps = {b.ts - a.ts for a, b in zip(history, history[1:])}
        assert steps == {DAY_SECONDS}
        assert all(p.price > 0 for p in history)

    def test_tracks_anchor_levels(self):
        """Synthetic prices stay within a band around the anchor they pass"""
        history = create_synthetic_history(42)
        by_ts = {p.ts: p.price for p in history}
        price = by_ts[date_to_ts("2021-11-10")]
        assert 68800.0 * 0.75 < price < 68800.0 * 1.25


class TestNormalize:

    def test_converts_ms_and_sorts(self):
        raw = [[1_600_086_400_000, 2.0], [1_600_000_000_000, 1.0]]
        points = normalize_price_points(raw)
        assert points == [PricePoint(1_600_000_000, 1.0), PricePoint(1_600_086_400, 2.0)]

    def test_drops_malformed_and_non_finite(self):
        raw = [[1_600_000_000, "abc"], [None, 5.0], [1_600_000_100, float("nan")],
               "garbage", [1_600_000_200], [1_600_000_300, 3.0]]
        assert normalize_price_points(raw) == [PricePoint(1_600_000_300, 3.0)]

    def test_duplicate_timestamp_keeps_last(self):
        raw = [[1_600_000_000, 1.0], [1_600_000_000, 9.0]]
        assert normalize_price_points(raw) == [PricePoint(1_600_000_000, 9.0)]

    def test_non_list_payload(self):
        assert normalize_price_points(None) == []
        assert normalize_price_points({"prices": []}) == []


class TestNoiseHelpers:

    def test_find_nearest_price(self):
        daily = [PricePoint(0, 1.0), PricePoint(100, 2.0), PricePoint(200, 3.0)]
        assert find_nearest_price(daily, 160, 9.0) == 3.0
        assert find_nearest_price([], 160, 9.0) == 9.0

    def test_compute_noise_clamped(self):
        assert compute_noise(100.0, 100.0, 14) == 0.002
        assert compute_noise(100.0, 1000.0, 1) == 0.02
        assert compute_noise(100.0, 107.0, 14) == pytest.approx(0.005 * 2.2)


class TestHistoryProvider:
    """Remote retrieval with fallbacks"""

    def test_range_source_used_when_plausible(self):
        session = MagicMock()
        session.get.return_value = _response(prices=_daily_ms())
        provider = HistoryProvider(session=session)

        history = provider.fetch_daily_history()

        assert provider.last_source == "range"
        assert len(history) == 200
        assert history[0].ts == date_to_ts("2020-01-01")
        assert session.get.call_count == 1
        assert session.get.call_args.kwargs["timeout"] == provider.timeout

    def test_falls_back_to_max_source(self):
        session = MagicMock()
        session.get.side_effect = [_response(status_code=429), _response(prices=_daily_ms())]
        provider = HistoryProvider(session=session)

        provider.fetch_daily_history()

        assert provider.last_source == "max"
        assert session.get.call_count == 2

    def test_implausible_prices_rejected(self):
        session = MagicMock()
        session.get.return_value = _response(prices=_daily_ms(price=5_000_000.0))
        provider = HistoryProvider(session=session, seed=42)

        history = provider.fetch_daily_history()

        assert provider.last_source == "synthetic"
        assert history == create_synthetic_history(42)

    def test_too_few_points_rejected(self):
        session = MagicMock()
        session.get.return_value = _response(prices=_daily_ms(count=50))
        provider = HistoryProvider(session=session)

        provider.fetch_daily_history()

        assert provider.last_source == "synthetic"

    @patch("backend.historical_data.requests.get")
    def test_network_errors_fall_back_to_synthetic(self, mock_get):
        """Timeouts never surface to the caller"""
        mock_get.side_effect = requests.Timeout("slow")
        provider = HistoryProvider()

        history = provider.fetch_daily_history()

        assert provider.last_source == "synthetic"
        assert len(history) > 0
        assert mock_get.call_count == 2

    @patch("backend.historical_data.requests.get")
    def test_offline_skips_network(self, mock_get):
        provider = HistoryProvider(offline=True)
        provider.fetch_daily_history()
        mock_get.assert_not_called()
        assert provider.last_source == "synthetic"

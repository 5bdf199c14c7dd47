"""
Historical Data Provider for Strategy Arena

Provides the long-horizon daily price history that stages are cut from.
Key principle: a run always gets a usable history. Remote retrieval is tried
first (range query, then a broader query), each with a bounded timeout; when
both fail or look implausible we synthesize a deterministic history anchored
to known historical price levels.
"""

import logging
import math
import os
import sys
import time
import requests
import numpy as np
import pandas as pd
from datetime import datetime, timezone
from typing import List, NamedTuple, Optional, Sequence, Tuple

# Add parent directory for config_loader import
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from config_loader import config
from indicators import clamp

logger = logging.getLogger(__name__)

DAY_SECONDS = 24 * 60 * 60
MASK_32 = 0xFFFFFFFF

HTTP_HEADERS = {"User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"}


class PricePoint(NamedTuple):
    ts: int  # epoch seconds, UTC
    price: float


# Known (date, USD price) control points the synthetic history is pinned to
PRICE_ANCHORS: Tuple[Tuple[str, float], ...] = (
    ("2013-01-01", 13.3),
    ("2013-04-10", 230.0),
    ("2013-07-05", 68.0),
    ("2013-11-30", 1130.0),
    ("2014-04-10", 360.0),
    ("2015-01-14", 175.0),
    ("2015-11-04", 400.0),
    ("2016-07-09", 650.0),
    ("2017-01-01", 1000.0),
    ("2017-06-12", 2900.0),
    ("2017-09-15", 3000.0),
    ("2017-12-17", 19500.0),
    ("2018-02-06", 6900.0),
    ("2018-12-15", 3200.0),
    ("2019-06-26", 13000.0),
    ("2019-12-17", 6600.0),
    ("2020-02-13", 10300.0),
    ("2020-03-13", 4900.0),
    ("2020-05-11", 8600.0),
    ("2020-10-01", 10600.0),
    ("2020-12-31", 29000.0),
    ("2021-04-14", 63500.0),
    ("2021-05-19", 37000.0),
    ("2021-07-20", 29800.0),
    ("2021-11-10", 68800.0),
    ("2022-01-24", 36000.0),
    ("2022-06-18", 19000.0),
    ("2022-09-06", 18800.0),
    ("2022-11-10", 16000.0),
    ("2023-03-10", 20000.0),
    ("2023-06-15", 25000.0),
    ("2023-10-01", 27000.0),
    ("2024-01-10", 46000.0),
    ("2024-03-14", 73000.0),
    ("2024-08-05", 54000.0),
    ("2024-12-17", 106000.0),
    ("2025-04-08", 77000.0),
    ("2025-07-14", 122000.0),
    ("2025-10-06", 124000.0),
)


def date_to_ts(value: str) -> int:
    """ISO date (YYYY-MM-DD) to epoch seconds at UTC midnight."""
    parsed = datetime.strptime(value, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    return int(parsed.timestamp())


class SeededRandom:
    """
    Small deterministic 32-bit integer-hash stream.

    Same seed always yields the same sequence; `random()` returns floats in
    [0, 1). Independent of Python's global `random` state.
    """

    def __init__(self, seed: int):
        self._state = int(seed) & MASK_32

    @staticmethod
    def _imul(a: int, b: int) -> int:
        return (a * b) & MASK_32

    def random(self) -> float:
        self._state = (self._state + 0x6D2B79F5) & MASK_32
        t = self._state
        r = self._imul(t ^ (t >> 15), 1 | t)
        r ^= (r + self._imul(r ^ (r >> 7), 61 | r)) & MASK_32
        return ((r ^ (r >> 14)) & MASK_32) / 4294967296


def create_synthetic_history(seed: int = 42,
                             anchors: Sequence[Tuple[str, float]] = PRICE_ANCHORS) -> List[PricePoint]:
    """
    Build a daily history pinned to the anchor prices.

    Between anchors the price follows the straight line joining them, then a
    mean-reverting seeded noise term and a slow cycle are applied
    multiplicatively. Output is sorted and has one point per UTC day.
    """
    rand = SeededRandom(seed)
    anchor_points = sorted((date_to_ts(d), p) for d, p in anchors)
    start_ts = anchor_points[0][0]
    end_ts = anchor_points[-1][0]

    points: List[PricePoint] = []
    deviation = 0.0
    segment = 0

    for ts in range(start_ts, end_ts + 1, DAY_SECONDS):
        while segment < len(anchor_points) - 2 and anchor_points[segment + 1][0] < ts:
            segment += 1
        left_ts, left_price = anchor_points[segment]
        right_ts, right_price = anchor_points[segment + 1]
        ratio = clamp((ts - left_ts) / max(1, right_ts - left_ts), 0.0, 1.0)
        base = left_price + (right_price - left_price) * ratio

        day = (ts - start_ts) / DAY_SECONDS
        cycle = math.sin(day / 46) * 0.012 + math.sin(day / 130) * 0.018
        shock = (rand.random() - 0.5) * 0.035
        deviation = deviation * 0.85 + shock
        price = max(0.01, base * math.exp(deviation + cycle))
        points.append(PricePoint(ts, price))

    return points


def normalize_price_points(raw) -> List[PricePoint]:
    """
    Clean a raw `[[timestamp, price], ...]` payload.

    Drops malformed or non-finite rows, converts millisecond timestamps to
    seconds, sorts ascending and keeps the last price per timestamp.
    """
    if not isinstance(raw, (list, tuple)):
        return []
    rows = [p[:2] for p in raw if isinstance(p, (list, tuple)) and len(p) >= 2]
    if not rows:
        return []

    df = pd.DataFrame(rows, columns=["ts", "price"])
    df = df.apply(pd.to_numeric, errors="coerce").astype(float)
    df = df[np.isfinite(df["ts"]) & np.isfinite(df["price"])]
    if df.empty:
        return []

    df["ts"] = np.where(df["ts"] >= 1e12, df["ts"] / 1000, df["ts"]).astype("int64")
    df = df.sort_values("ts", kind="stable").drop_duplicates(subset="ts", keep="last")

    return [PricePoint(int(ts), float(price)) for ts, price in zip(df["ts"], df["price"])]


def find_nearest_price(daily: Sequence[PricePoint], ts: int, fallback: float) -> float:
    """Price of the point closest in time to `ts` (fallback if empty or zero)."""
    if not daily:
        return fallback
    best = min(daily, key=lambda p: abs(p[0] - ts))
    return best[1] or fallback


def compute_noise(base_start: float, base_end: float, day_count: int) -> float:
    """Per-step noise amplitude derived from the average daily move of a window."""
    daily_ret = abs((base_end - base_start) / max(1, base_start)) / max(1, day_count)
    return clamp(daily_ret * 2.2, 0.002, 0.02)


class HistoryProvider:
    """
    Fetches a multi-year daily history, falling back to synthesis.

    All settings come from the `history` config section; constructor arguments
    override them (mainly for tests).
    """

    def __init__(self, timeout: float = None, min_points: int = None,
                 offline: bool = False, seed: int = None, session=None):
        history_cfg = config.history
        self.timeout = timeout if timeout is not None else history_cfg.get("timeout_seconds", 12)
        self.min_points = min_points if min_points is not None else history_cfg.get("min_points", 120)
        self.plausible_min = history_cfg.get("plausible_min", 1.0)
        self.plausible_max = history_cfg.get("plausible_max", 1_000_000.0)
        self.seed = seed if seed is not None else history_cfg.get("synthetic_seed", 42)
        self.symbol = history_cfg.get("symbol", "bitcoin")
        self.vs_currency = history_cfg.get("vs_currency", "usd")
        self.start_date = history_cfg.get("start_date", "2013-01-01")
        self.range_url = history_cfg.get(
            "range_url", "https://api.coingecko.com/api/v3/coins/{symbol}/market_chart/range")
        self.max_url = history_cfg.get(
            "max_url", "https://api.coingecko.com/api/v3/coins/{symbol}/market_chart")
        self.offline = offline
        self.session = session or requests

        # Which source produced the last history: "range", "max" or "synthetic"
        self.last_source: Optional[str] = None

    def _fetch_json(self, url: str, params: dict):
        resp = self.session.get(url, params=params, headers=HTTP_HEADERS, timeout=self.timeout)
        if resp.status_code != 200:
            raise ValueError(f"HTTP {resp.status_code}")
        return resp.json()

    def _is_plausible(self, points: Sequence[PricePoint]) -> bool:
        if len(points) < self.min_points:
            return False
        return all(self.plausible_min <= p.price <= self.plausible_max for p in points)

    def _sources(self, start_ts: int, end_ts: int) -> List[Tuple[str, str, dict]]:
        return [
            ("range", self.range_url.format(symbol=self.symbol),
             {"vs_currency": self.vs_currency, "from": start_ts, "to": end_ts}),
            ("max", self.max_url.format(symbol=self.symbol),
             {"vs_currency": self.vs_currency, "days": "max", "interval": "daily"}),
        ]

    def fetch_daily_history(self) -> List[PricePoint]:
        """
        Get the daily history used for stage selection.

        Returns:
            Sorted, deduplicated daily points. Never raises; the synthetic
            generator is the last resort.
        """
        if self.offline:
            logger.info("History provider offline, using synthetic history")
            self.last_source = "synthetic"
            return create_synthetic_history(self.seed)

        end_ts = int(time.time())
        start_ts = date_to_ts(self.start_date)

        for name, url, params in self._sources(start_ts, end_ts):
            try:
                payload = self._fetch_json(url, params)
                prices = payload.get("prices") if isinstance(payload, dict) else None
                points = [p for p in normalize_price_points(prices) if start_ts <= p.ts <= end_ts]
                if self._is_plausible(points):
                    logger.info(f"Loaded {len(points)} daily points from {name} source")
                    self.last_source = name
                    return points
                logger.warning(f"History from {name} source rejected ({len(points)} points)")
            except (requests.RequestException, ValueError) as e:
                logger.warning(f"History fetch from {name} source failed: {e}")

        logger.info("Falling back to synthetic history")
        self.last_source = "synthetic"
        return create_synthetic_history(self.seed)

"""
Stage Selection and Series Building

A stage is a bounded window (at most `stages.span_days`) of the long daily
history. Two selection modes are supported:

- template: a fixed catalog of well-known market events, each centred on its
  anchor date and clipped to the available history. Same ids every time.
- scored:   a fixed-width window is slid across the history and every
  candidate is scored for five regime shapes (uptrend, downtrend,
  crash-rebound, box-breakout, high-chaos). The best window per regime is
  picked greedily subject to a minimum separation gap, then evenly spaced
  windows backfill up to the target count.

The chosen stage is expanded into a sub-daily path by interpolating between
daily anchors and layering deterministic micro-waves plus seeded jitter.
"""

import bisect
import logging
import math
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from config_loader import config
from indicators import clamp
from backend.historical_data import (
    DAY_SECONDS, PricePoint, SeededRandom, compute_noise, date_to_ts, find_nearest_price
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Stage:
    id: str
    regime: str
    title: str
    period: str
    turning_point: str
    description: str
    start: int
    end: int
    summary: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "regime": self.regime,
            "title": self.title,
            "period": self.period,
            "turning_point": self.turning_point,
            "description": self.description,
            "start": self.start,
            "end": self.end,
            "summary": self.summary,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Stage":
        return cls(**{k: data[k] for k in cls.__dataclass_fields__})


def _fmt_date(ts: int) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d")


def _period(start: int, end: int) -> str:
    return f"{_fmt_date(start)} ~ {_fmt_date(end)}"


def _span_seconds() -> int:
    return int(config.get("stages.span_days", 14)) * DAY_SECONDS


# ============== Template Mode ==============

@dataclass(frozen=True)
class StageTemplate:
    id: str
    title: str
    center_date: str
    turning_point: str
    description: str


HISTORY_TEMPLATES: Tuple[StageTemplate, ...] = (
    StageTemplate("hist_2013_bubble", "First global bubble", "2013-11-30",
                  "Retail attention surges, then the first boom-bust cycle begins",
                  "Bitcoin spikes and crashes in its first mainstream run, marking it as a high-volatility asset"),
    StageTemplate("hist_2017_ath", "2017 bull market peak", "2017-12-17",
                  "All-time high of the cycle and the turn into a bear market",
                  "Retail money piles in, overheats, and hands over to a structural correction"),
    StageTemplate("hist_2020_covid", "COVID panic crash", "2020-03-13",
                  "Global risk-off crash followed by a sharp rebound",
                  "Liquidity shock and recovery that became the launch pad for the next long uptrend"),
    StageTemplate("hist_2020_halving", "Third halving", "2020-05-11",
                  "Supply cut priced in, medium-term trend turns",
                  "Momentum builds around halving expectations and the event itself"),
    StageTemplate("hist_2021_apr_ath", "Institutional run, first top", "2021-04-14",
                  "Peak of institutional demand expectations, volatility expands",
                  "Overheating signals strengthen inside the uptrend and volatility takes over"),
    StageTemplate("hist_2021_china_ban", "China mining crackdown", "2021-05-19",
                  "Large crash and a reshuffle of market structure",
                  "Regulatory headlines trigger a crash and liquidity rearranges itself"),
    StageTemplate("hist_2021_nov_ath", "Final 2021 ATH", "2021-11-10",
                  "Top prints, long-term bearish turn signals",
                  "The last high of the bull market, where direction flips"),
    StageTemplate("hist_2022_luna", "LUNA / 3AC collapse", "2022-06-18",
                  "Deleveraging cascade and credit contraction",
                  "Chain liquidations make risk management the only thing that matters"),
    StageTemplate("hist_2022_ftx", "FTX collapse", "2022-11-10",
                  "Exchange trust breaks, extreme volatility",
                  "Market confidence collapses and price goes looking for a bottom"),
    StageTemplate("hist_2024_etf", "Spot ETF approval", "2024-01-10",
                  "Institutional inflow expectations become real",
                  "Start of a new cycle with the market re-rated around regulated products"),
)


def build_stage_from_template(template: StageTemplate, first_ts: int, last_ts: int) -> Stage:
    """Centre the template on its anchor date, keeping the full span when clipped."""
    span = _span_seconds()
    center = date_to_ts(template.center_date)
    start = center - span // 2
    end = center + span // 2

    if start < first_ts:
        start = first_ts
        end = min(first_ts + span, last_ts)

    if end > last_ts:
        end = last_ts
        start = max(first_ts, last_ts - span)

    period = _period(start, end)
    return Stage(
        id=template.id,
        regime="historical_event",
        title=template.title,
        period=period,
        turning_point=template.turning_point,
        description=template.description,
        start=start,
        end=end,
        summary=period,
    )


def pick_template_stages(history: Sequence[PricePoint]) -> List[Stage]:
    first_ts = history[0][0]
    last_ts = history[-1][0]
    return [build_stage_from_template(t, first_ts, last_ts) for t in HISTORY_TEMPLATES]


# ============== Scored Mode ==============

REGIME_TEXT: Dict[str, Tuple[str, str, str]] = {
    "uptrend": ("Steady uptrend", "Buyers in control for the whole window",
                "Persistent climb with shallow pullbacks"),
    "downtrend": ("Grinding downtrend", "Sellers in control for the whole window",
                  "Persistent decline where dip buying is punished"),
    "crash_rebound": ("Crash and rebound", "Deep drawdown followed by recovery",
                      "Sharp sell-off that reverses into a strong bounce"),
    "box_breakout": ("Box breakout", "Tight range resolves into a directional move",
                     "Quiet consolidation in the first half, expansion in the second"),
    "high_chaos": ("High chaos", "Large swings without a clear direction",
                   "Whipsaw conditions with outsized volatility"),
    "backfill": ("Market sample", "Evenly spaced sample of the history",
                 "Window chosen to cover the history evenly"),
}


def window_features(prices: np.ndarray, overall_vol: float) -> dict:
    """
    Regime features of one window of daily closes.

    - net_return:      last / first - 1
    - volatility:      daily-return stdev relative to the whole history
    - max_drawdown:    worst peak-to-trough decline (fraction)
    - rebound:         last / window low - 1
    - breakout_ratio:  second-half move over first-half range
    """
    rets = np.diff(prices) / prices[:-1]
    running_max = np.maximum.accumulate(prices)
    drawdowns = (running_max - prices) / running_max
    half = len(prices) // 2
    first = prices[:half + 1]
    second = prices[half:]
    first_range = (first.max() - first.min()) / first.mean()
    second_move = abs(second[-1] - second[0]) / second[0]

    return {
        "net_return": float(prices[-1] / prices[0] - 1),
        "volatility": float(rets.std() / max(overall_vol, 1e-9)) if len(rets) else 0.0,
        "max_drawdown": float(drawdowns.max()),
        "rebound": float(prices[-1] / prices.min() - 1),
        "breakout_ratio": float(second_move / max(first_range, 1e-6)),
    }


REGIME_SCORERS: Dict[str, Callable[[dict], float]] = {
    "uptrend": lambda f: f["net_return"] - 0.5 * f["max_drawdown"],
    "downtrend": lambda f: -f["net_return"] - 0.25 * f["rebound"],
    "crash_rebound": lambda f: min(f["max_drawdown"], f["rebound"]),
    "box_breakout": lambda f: f["breakout_ratio"],
    "high_chaos": lambda f: f["volatility"] / (1 + 5 * abs(f["net_return"])),
}


def _separated(start: int, end: int, picked: Sequence[Tuple[int, int]], gap: int) -> bool:
    return all(start - p_end >= gap or p_start - end >= gap for p_start, p_end in picked)


def _scored_stage(regime: str, start: int, end: int) -> Stage:
    title, turning_point, description = REGIME_TEXT[regime]
    period = _period(start, end)
    return Stage(
        id=f"scored_{regime}_{_fmt_date(start)}",
        regime=regime,
        title=title,
        period=period,
        turning_point=turning_point,
        description=description,
        start=start,
        end=end,
        summary=period,
    )


def _candidate_windows(history: Sequence[PricePoint], span: int, step: int) -> List[Tuple[int, int, np.ndarray]]:
    ts = np.array([p[0] for p in history], dtype=np.int64)
    prices = np.array([p[1] for p in history], dtype=float)
    windows = []
    start = int(ts[0])
    while start + span <= ts[-1]:
        lo = np.searchsorted(ts, start, side="left")
        hi = np.searchsorted(ts, start + span, side="right")
        if hi - lo >= 5:
            windows.append((start, start + span, prices[lo:hi]))
        start += step
    return windows


def _backfill_starts(first_ts: int, last_start: int, step: int, target: int):
    """Candidate starts, evenly spaced first, then on progressively finer grids."""
    if last_start <= first_ts:
        yield first_ts
        return
    width = last_start - first_ts
    slots = max(1, width // step)
    count = max(2, target)
    seen = set()
    while True:
        for i in range(count):
            start = first_ts + int(round(width * i / (count - 1)))
            if start not in seen:
                seen.add(start)
                yield start
        if count - 1 >= slots:
            return
        # Halve the grid spacing; earlier points stay on the grid
        count = (count - 1) * 2 + 1


def pick_scored_stages(history: Sequence[PricePoint]) -> List[Stage]:
    stage_cfg = config.stages
    span = _span_seconds()
    step = int(stage_cfg.get("scan_step_days", 3)) * DAY_SECONDS
    gap = int(stage_cfg.get("min_gap_days", 21)) * DAY_SECONDS
    target = int(stage_cfg.get("target_count", 5))

    first_ts = history[0][0]
    last_ts = history[-1][0]

    prices = np.array([p[1] for p in history], dtype=float)
    daily_rets = np.diff(prices) / prices[:-1]
    overall_vol = float(daily_rets.std()) if len(daily_rets) else 0.0

    candidates = []
    for start, end, window in _candidate_windows(history, span, step):
        candidates.append((start, end, window_features(window, overall_vol)))

    picked: List[Tuple[int, int]] = []
    stages: List[Stage] = []

    for regime, scorer in REGIME_SCORERS.items():
        if len(stages) >= target:
            break
        ranked = sorted(candidates, key=lambda c: scorer(c[2]), reverse=True)
        for start, end, _ in ranked:
            if _separated(start, end, picked, gap):
                picked.append((start, end))
                stages.append(_scored_stage(regime, start, end))
                break

    if len(stages) < target:
        last_start = max(first_ts, last_ts - span)
        for start in _backfill_starts(first_ts, last_start, step, target):
            end = min(start + span, last_ts)
            if _separated(start, end, picked, gap):
                picked.append((start, end))
                stages.append(_scored_stage("backfill", start, end))
                if len(stages) >= target:
                    break

    if len(stages) < target:
        logger.info(f"Scored selection found {len(stages)}/{target} stages (history too short for more)")

    return sorted(stages, key=lambda s: s.start)


def pick_stages(history: Sequence[PricePoint], mode: Optional[str] = None) -> List[Stage]:
    """
    Build the stage catalog for a history.

    Returns an empty list when the history is too short or its time span is
    empty; otherwise a non-empty, bounded list.
    """
    min_points = int(config.get("stages.min_history_points", 30))
    if not history or len(history) < min_points:
        return []
    first_ts = history[0][0]
    last_ts = history[-1][0]
    if not (math.isfinite(first_ts) and math.isfinite(last_ts)) or first_ts >= last_ts:
        return []

    mode = mode or config.get("stages.mode", "template")
    if mode == "scored":
        return pick_scored_stages(history)
    return pick_template_stages(history)


# ============== Series Building ==============

def build_stage_series(stage: Stage, daily: Sequence[PricePoint], seed: int = 1,
                       step_seconds: Optional[int] = None,
                       min_price: Optional[float] = None) -> List[PricePoint]:
    """
    Expand a stage into a fine-grained price path.

    For every step the price is interpolated between the two bracketing daily
    anchors, then shaped by two sinusoidal micro-waves and seeded jitter whose
    amplitude follows the local leg move and the whole-window move.
    Identical (stage, daily, seed) always gives an identical series.
    """
    if step_seconds is None:
        step_seconds = int(config.get("series.step_minutes", 15)) * 60
    if min_price is None:
        min_price = float(config.get("series.min_price", 1.0))

    start, end = stage.start, stage.end
    anchors = sorted(p for p in daily if start - DAY_SECONDS <= p[0] <= end + DAY_SECONDS)
    anchor_ts = [p[0] for p in anchors]

    fallback_start = find_nearest_price(daily, start, daily[-1][1] if daily else 30000.0)
    fallback_end = find_nearest_price(daily, end, fallback_start)
    day_count = max(1, round((end - start) / DAY_SECONDS))
    fallback_noise = compute_noise(fallback_start, fallback_end, day_count)

    rand = SeededRandom(start + end + seed)

    def interpolate(ts: int) -> Tuple[float, float]:
        if len(anchors) < 2:
            return fallback_start, fallback_noise

        i = max(0, bisect.bisect_left(anchor_ts, ts) - 1)
        left = anchors[i]
        right = anchors[min(len(anchors) - 1, i + 1)]
        if left[0] == right[0]:
            return left[1], fallback_noise

        ratio = clamp((ts - left[0]) / (right[0] - left[0]), 0.0, 1.0)
        base = left[1] + (right[1] - left[1]) * ratio
        leg_ret = abs((right[1] - left[1]) / max(1, left[1]))
        local_noise = clamp(leg_ret * 0.8 + fallback_noise * 0.7, 0.0015, 0.025)
        return base, local_noise

    series: List[PricePoint] = []
    for ts in range(start, end + 1, step_seconds):
        progress = (ts - start) / max(1, end - start)
        anchor, noise = interpolate(ts)
        wave = (1 + math.sin(progress * math.pi * 10) * noise
                + math.sin(progress * math.pi * 34) * noise * 0.6)
        jitter = 1 + (rand.random() - 0.5) * noise * 1.5
        series.append(PricePoint(ts, max(min_price, anchor * wave * jitter)))

    return series

"""
Technical Indicators for Strategy Arena

Stateless numeric helpers over a close-price sequence. Every indicator returns
None when the sequence is shorter than its window, so callers can tell
"not enough data yet" apart from a real zero reading.
"""

import math
from typing import List, NamedTuple, Optional, Sequence


class BollingerBands(NamedTuple):
    mid: float
    upper: float
    lower: float


class DonchianChannel(NamedTuple):
    high: float
    low: float


def clamp(value: float, lo: float, hi: float) -> float:
    return min(hi, max(lo, value))


def mean(values: Sequence[float]) -> float:
    return sum(values) / len(values)


def stdev(values: Sequence[float]) -> float:
    """Population standard deviation"""
    m = mean(values)
    return math.sqrt(sum((x - m) ** 2 for x in values) / len(values))


def ema(values: Sequence[float], period: int) -> Optional[float]:
    """
    Exponential moving average seeded with the simple average of the first
    `period` values.
    """
    if len(values) < period:
        return None
    k = 2 / (period + 1)
    value = mean(values[:period])
    for i in range(period, len(values)):
        value = values[i] * k + value * (1 - k)
    return value


def rsi(values: Sequence[float], period: int) -> Optional[float]:
    """
    Relative strength over the trailing `period` deltas.

    Returns 100 when the window has no losses at all.
    """
    if len(values) <= period:
        return None
    gain = 0.0
    loss = 0.0
    for i in range(len(values) - period, len(values)):
        delta = values[i] - values[i - 1]
        if delta >= 0:
            gain += delta
        else:
            loss -= delta
    if loss == 0:
        return 100.0
    rs = gain / loss
    return 100 - 100 / (1 + rs)


def bollinger(values: Sequence[float], period: int, mult: float) -> Optional[BollingerBands]:
    if len(values) < period:
        return None
    window = values[-period:]
    m = mean(window)
    sd = stdev(window)
    return BollingerBands(mid=m, upper=m + sd * mult, lower=m - sd * mult)


def donchian(values: Sequence[float], period: int) -> Optional[DonchianChannel]:
    """High/low of the `period` values before the latest one (latest excluded)."""
    if len(values) < period + 1:
        return None
    window = values[-period - 1:-1]
    return DonchianChannel(high=max(window), low=min(window))


def roc(values: Sequence[float], period: int) -> Optional[float]:
    """Rate of change in percent against the value `period` bars ago."""
    if len(values) <= period:
        return None
    prev = values[-1 - period]
    now = values[-1]
    return (now - prev) / prev * 100


def z_score(values: Sequence[float], period: int) -> Optional[float]:
    if len(values) < period:
        return None
    window = values[-period:]
    m = mean(window)
    sd = stdev(window)
    if sd == 0:
        return 0.0
    return (values[-1] - m) / sd


def adx_like(values: Sequence[float], period: int = 14) -> Optional[float]:
    """
    Trend-strength proxy in [0, 100].

    Close-only stand-in for ADX: compares up-move and down-move totals over the
    trailing window. 0 means balanced (or flat), 100 means every move went the
    same way.
    """
    if len(values) < period + 3:
        return None
    plus = 0.0
    minus = 0.0
    true_range = 0.0
    for i in range(len(values) - period, len(values)):
        delta = values[i] - values[i - 1]
        plus += max(0.0, delta)
        minus += max(0.0, -delta)
        true_range += abs(delta)
    if true_range == 0:
        return 0.0
    di_plus = plus / true_range * 100
    di_minus = minus / true_range * 100
    return abs(di_plus - di_minus) / max(1e-9, di_plus + di_minus) * 100


def closes_of(points) -> List[float]:
    """Extract close prices from a list of (ts, price) points."""
    return [p[1] for p in points]

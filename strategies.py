"""
Strategy Engine for Strategy Arena

Rule-based trading archetypes and the fixed bot roster.

Each archetype is a frozen dataclass carrying only numeric parameters plus a
short label used in reason strings. `evaluate_rule()` dispatches on the rule's
`kind` to one handler per archetype, so rules stay plain data: they can be
listed, compared and tested without any closures.

Archetypes:
- trend_breakout:      Donchian breakout entry, channel / RSI / max-hold exit
- ema_momentum:        fast-over-slow EMA with an RSI band, below upper Bollinger
- mean_reversion:      oversold RSI + z-score or lower band, exit at midline
- volatility_impulse:  lookback-high breakout with ROC and trend-strength filter
- risk_guard:          conservative EMA/RSI entry, stop-loss / take-profit exit
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, ClassVar, Dict, List, Optional, Tuple

from indicators import adx_like, bollinger, donchian, ema, roc, rsi, z_score


@dataclass(frozen=True)
class Action:
    """A bot decision: buy `portion` of cash or sell `portion` of the position."""
    side: str  # "buy" or "sell"
    portion: float
    reason: str


@dataclass
class BotContext:
    """Read-only market view plus the bot's own scratch record for one tick."""
    closes: List[float]
    price: float
    cash: float
    position: float
    meta: Dict[str, float]


# ============== Rule Variants ==============

@dataclass(frozen=True)
class TrendBreakout:
    kind: ClassVar[str] = "trend_breakout"
    entry: int
    exit: int
    portion: float
    cool_bars: int
    label: str


@dataclass(frozen=True)
class EmaMomentum:
    kind: ClassVar[str] = "ema_momentum"
    fast: int
    slow: int
    portion: float
    in_rsi: float
    out_rsi: float
    cool_bars: int
    label: str


@dataclass(frozen=True)
class MeanReversion:
    kind: ClassVar[str] = "mean_reversion"
    in_rsi: float
    out_rsi: float
    portion: float
    z_in: float
    cool_bars: int
    label: str


@dataclass(frozen=True)
class VolatilityImpulse:
    kind: ClassVar[str] = "volatility_impulse"
    lookback: int
    roc_in: float
    portion: float
    cool_bars: int
    label: str


@dataclass(frozen=True)
class RiskGuard:
    kind: ClassVar[str] = "risk_guard"
    portion: float
    stop_loss: float
    take_profit: float
    label: str


# ---- Scratch counters ----

def _in_cooldown(meta: Dict[str, float], bars: int) -> bool:
    """
    Tick the entry cooldown down by one bar.

    Returns True while the cooldown is still running. When it has expired and
    `bars` > 0, a fresh cooldown of `bars` is armed (used right at entry).
    """
    left = max(0, int(meta.get("cooldown_bars", 0)) - 1)
    meta["cooldown_bars"] = left
    if left > 0:
        return True
    if bars > 0:
        meta["cooldown_bars"] = bars
    return False


def _update_hold(meta: Dict[str, float], has_position: bool) -> int:
    """Count consecutive ticks with an open position (0 when flat)."""
    meta["hold_bars"] = int(meta.get("hold_bars", 0)) + 1 if has_position else 0
    return int(meta["hold_bars"])


# ---- Handlers ----

def _trend_breakout(rule: TrendBreakout, ctx: BotContext) -> Optional[Action]:
    entry_band = donchian(ctx.closes, rule.entry)
    exit_band = donchian(ctx.closes, rule.exit)
    momentum = rsi(ctx.closes, 14)
    if entry_band is None or exit_band is None or momentum is None:
        return None
    hold = _update_hold(ctx.meta, ctx.position > 0)

    if ctx.position == 0:
        if _in_cooldown(ctx.meta, 0):
            return None
        if ctx.price > entry_band.high * 1.001 and momentum > 48:
            _in_cooldown(ctx.meta, rule.cool_bars)
            return Action("buy", rule.portion, f"{rule.label} breakout entry")

    if ctx.position > 0 and (ctx.price < exit_band.low or momentum < 42 or hold > 180):
        return Action("sell", 1.0, f"{rule.label} trend exit")

    return None


def _ema_momentum(rule: EmaMomentum, ctx: BotContext) -> Optional[Action]:
    fast = ema(ctx.closes, rule.fast)
    slow = ema(ctx.closes, rule.slow)
    momentum = rsi(ctx.closes, 14)
    bands = bollinger(ctx.closes, 20, 2)
    if fast is None or slow is None or momentum is None or bands is None:
        return None
    hold = _update_hold(ctx.meta, ctx.position > 0)

    if ctx.position == 0:
        if _in_cooldown(ctx.meta, 0):
            return None
        if fast > slow and momentum > rule.in_rsi and ctx.price < bands.upper * 0.997:
            _in_cooldown(ctx.meta, rule.cool_bars)
            return Action("buy", rule.portion, f"{rule.label} momentum entry")

    if ctx.position > 0 and (fast < slow or momentum < rule.out_rsi or hold > 150):
        return Action("sell", 1.0, f"{rule.label} momentum faded")

    return None


def _mean_reversion(rule: MeanReversion, ctx: BotContext) -> Optional[Action]:
    momentum = rsi(ctx.closes, 14)
    bands = bollinger(ctx.closes, 20, 2)
    z = z_score(ctx.closes, 20)
    if momentum is None or bands is None or z is None:
        return None
    hold = _update_hold(ctx.meta, ctx.position > 0)

    if ctx.position == 0:
        if _in_cooldown(ctx.meta, 0):
            return None
        if (momentum < rule.in_rsi and z < rule.z_in) or ctx.price < bands.lower:
            _in_cooldown(ctx.meta, rule.cool_bars)
            return Action("buy", rule.portion, f"{rule.label} oversold bounce")

    if ctx.position > 0 and (momentum > rule.out_rsi or ctx.price > bands.mid or hold > 90):
        return Action("sell", 1.0, f"{rule.label} reverted to mean")

    return None


def _volatility_impulse(rule: VolatilityImpulse, ctx: BotContext) -> Optional[Action]:
    if len(ctx.closes) < rule.lookback + 10:
        return None
    window = ctx.closes[-rule.lookback:-1]
    high = max(window)
    low = min(window)
    trend = ema(ctx.closes, 21)
    change = roc(ctx.closes, 5)
    strength = adx_like(ctx.closes, 14)
    if trend is None or change is None or strength is None:
        return None
    hold = _update_hold(ctx.meta, ctx.position > 0)

    if ctx.position == 0:
        if _in_cooldown(ctx.meta, 0):
            return None
        if ctx.price > high * 1.002 and ctx.price > trend and change > rule.roc_in and strength > 20:
            _in_cooldown(ctx.meta, rule.cool_bars)
            return Action("buy", rule.portion, f"{rule.label} volatility expansion")

    if ctx.position > 0 and (ctx.price < low * 0.998 or ctx.price < trend or hold > 120):
        return Action("sell", 1.0, f"{rule.label} breakout failed")

    return None


def _risk_guard(rule: RiskGuard, ctx: BotContext) -> Optional[Action]:
    fast = ema(ctx.closes, 10)
    slow = ema(ctx.closes, 50)
    momentum = rsi(ctx.closes, 14)
    # Hold counter runs even before the indicators warm up
    hold = _update_hold(ctx.meta, ctx.position > 0)
    if fast is None or slow is None or momentum is None:
        return None

    if ctx.position == 0:
        if ctx.price > slow and ctx.price > fast and 50 < momentum < 68:
            return Action("buy", rule.portion, f"{rule.label} guarded entry")

    if ctx.position > 0:
        entry = ctx.meta.get("entry_price") or ctx.price
        pnl = (ctx.price - entry) / max(1, entry)
        if pnl <= -rule.stop_loss or pnl >= rule.take_profit or momentum < 44 or hold > 130:
            return Action("sell", 1.0, f"{rule.label} risk exit")

    return None


RULE_HANDLERS: Dict[str, Callable] = {
    TrendBreakout.kind: _trend_breakout,
    EmaMomentum.kind: _ema_momentum,
    MeanReversion.kind: _mean_reversion,
    VolatilityImpulse.kind: _volatility_impulse,
    RiskGuard.kind: _risk_guard,
}


def evaluate_rule(rule, ctx: BotContext) -> Optional[Action]:
    """Run the handler registered for the rule's archetype."""
    handler = RULE_HANDLERS[rule.kind]
    return handler(rule, ctx)


# ============== Bot Catalog ==============

@dataclass(frozen=True)
class Bot:
    id: str
    name: str
    description: str
    inspiration: str
    rule: object


BOT_CATALOG: Tuple[Bot, ...] = (
    # Trend followers
    Bot("livermore", "Livermore Breaker", "Catches strong high breakouts, rides only the early leg of a trend and leaves fast",
        "Jesse Livermore", TrendBreakout(20, 10, 0.58, 14, "Livermore")),
    Bot("dennis", "Dennis Turtle", "Long-channel breakouts held through big trends, trades rarely to skip noise",
        "Richard Dennis", TrendBreakout(55, 20, 0.7, 20, "Turtle")),
    Bot("seykota", "Seykota System", "Mechanical mid-term trend following with a holding-time cap",
        "Ed Seykota", TrendBreakout(34, 14, 0.62, 16, "Seykota")),
    Bot("henry", "Henry CTA", "CTA-style slow trend capture that steps aside when volatility overheats",
        "John W. Henry", TrendBreakout(40, 15, 0.6, 18, "Henry")),

    # EMA momentum
    Bot("schwartz", "Schwartz Swing", "Short EMA alignment plus RSI confirmation for quick swing trades",
        "Marty Schwartz", EmaMomentum(8, 21, 0.55, 52, 45, 10, "Schwartz")),
    Bot("oneil", "O'Neil Momentum", "Enters only on strong relative strength and avoids chasing extended highs",
        "William O'Neil", EmaMomentum(12, 26, 0.63, 55, 47, 12, "O'Neil")),
    Bot("kovner", "Kovner Balance", "Balances momentum and defence to follow medium-strength trends",
        "Bruce Kovner", EmaMomentum(9, 30, 0.5, 51, 44, 9, "Kovner")),
    Bot("elder", "Elder Triple", "Trend check plus oscillator filter to avoid overbought entries",
        "Alexander Elder", EmaMomentum(13, 34, 0.52, 53, 46, 11, "Elder")),

    # Mean reversion
    Bot("williams_l", "Larry Williams", "Buys the snap-back after sharp drops and exits quickly on target",
        "Larry Williams", MeanReversion(31, 60, 0.6, -1.2, 8, "Williams")),
    Bot("icahn", "Icahn Reversal", "Conservative fade of market overreactions",
        "Carl Icahn", MeanReversion(29, 57, 0.48, -1.05, 12, "Icahn")),
    Bot("unger", "Unger System", "Rule-based counter-trend entries with strict holding limits",
        "Andrea Unger", MeanReversion(30, 58, 0.53, -1.1, 10, "Unger")),
    Bot("tepper", "Tepper Dip Buyer", "Aggressively buys panic drops and harvests the rebound",
        "David Tepper", MeanReversion(34, 62, 0.66, -1.4, 14, "Tepper")),

    # Volatility impulse
    Bot("soros", "Soros Reflexive", "Joins only when volatility expands and direction accelerates together",
        "George Soros", VolatilityImpulse(26, 0.75, 0.58, 12, "Soros")),
    Bot("drucken", "Druckenmiller", "Concentrates on high-conviction setups and cuts failures fast",
        "Stanley Druckenmiller", VolatilityImpulse(30, 0.9, 0.64, 16, "Druckenmiller")),
    Bot("marcus", "Marcus Momentum", "Takes the first breakout signal to widen the profitable leg",
        "Michael Marcus", VolatilityImpulse(18, 0.5, 0.57, 8, "Marcus")),
    Bot("darvas", "Darvas Box", "Follows box-top breaks and exits at once on box-bottom failure",
        "Nicolas Darvas", VolatilityImpulse(22, 0.55, 0.54, 10, "Darvas")),

    # Risk guards
    Bot("ptj", "Tudor Risk Guard", "Loss control first, small entries for survival",
        "Paul Tudor Jones", RiskGuard(0.42, 0.02, 0.06, "Tudor")),
    Bot("basso", "Basso Risk Engine", "Low-volatility sizing with strict loss management",
        "Tom Basso", RiskGuard(0.35, 0.015, 0.045, "Basso")),
    Bot("ackman", "Ackman Conviction", "Enters only when conviction criteria line up, otherwise waits",
        "Bill Ackman", RiskGuard(0.5, 0.022, 0.08, "Ackman")),
    Bot("raschke", "Raschke ADX", "Confirms trend strength first, then trades the pullback breakout",
        "Linda B. Raschke", VolatilityImpulse(20, 0.6, 0.52, 9, "Raschke")),
)

BOT_REGISTRY = MappingProxyType({bot.id: bot for bot in BOT_CATALOG})


def get_bot(bot_id: str) -> Optional[Bot]:
    return BOT_REGISTRY.get(bot_id)


def catalog_summary() -> List[dict]:
    """Public description of the roster (no rule internals)."""
    return [
        {"id": b.id, "name": b.name, "desc": b.description, "inspiration": b.inspiration}
        for b in BOT_CATALOG
    ]

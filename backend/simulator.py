"""
Tick Simulator for Strategy Arena

Advances every competitor by one step of the stage series: each bot's rule is
evaluated against the closes seen so far, resulting buy/sell decisions are
executed against an in-memory ledger (proportional fee, minimum notional,
dust cleanup), then peaks are marked to market and a fresh leaderboard is
computed.

Everything here is synchronous and deterministic; the scheduler owns timing.
"""

import os
import sys
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from config_loader import config
from strategies import Bot, BotContext, evaluate_rule
from backend.historical_data import PricePoint

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TradingRules:
    """Ledger constants, normally taken from the `simulator` config section."""
    initial_capital: float = 10000.0
    fee_rate: float = 0.001
    min_order_notional: float = 10.0
    dust_qty: float = 1e-8
    entry_price_mode: str = "weighted"  # "weighted" or "midpoint"

    @classmethod
    def from_config(cls) -> "TradingRules":
        sim = config.simulator
        return cls(
            initial_capital=float(sim.get("initial_capital", 10000.0)),
            fee_rate=float(sim.get("fee_rate", 0.001)),
            min_order_notional=float(sim.get("min_order_notional", 10.0)),
            dust_qty=float(sim.get("dust_qty", 1e-8)),
            entry_price_mode=sim.get("entry_price_mode", "weighted"),
        )


@dataclass(frozen=True)
class Order:
    side: str  # BUY or SELL
    price: float
    qty: float
    ts: int
    reason: str


@dataclass(frozen=True)
class TickOrder:
    """An executed order tagged with the bot that placed it (trade-log feed)."""
    bot_id: str
    bot_name: str
    side: str
    ts: int
    price: float
    qty: float
    reason: str


@dataclass
class Competitor:
    """Live mutable trading state of one bot during a run."""
    id: str
    name: str
    description: str
    inspiration: str
    rule: object
    cash: float
    position: float = 0.0
    trades: List[Order] = field(default_factory=list)
    peak: float = 0.0
    meta: Dict[str, float] = field(default_factory=lambda: {"entry_price": 0.0})
    last_action: str = "HOLD"
    last_action_reason: str = "Waiting"
    last_action_tick: int = -999

    @classmethod
    def from_bot(cls, bot: Bot, initial_capital: float) -> "Competitor":
        return cls(
            id=bot.id,
            name=bot.name,
            description=bot.description,
            inspiration=bot.inspiration,
            rule=bot.rule,
            cash=initial_capital,
            peak=initial_capital,
        )

    def to_dict(self) -> dict:
        """Serializable state. The rule is never persisted, only re-linked by id."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "inspiration": self.inspiration,
            "cash": self.cash,
            "position": self.position,
            "trades": [asdict(t) for t in self.trades],
            "peak": self.peak,
            "meta": dict(self.meta),
            "last_action": self.last_action,
            "last_action_reason": self.last_action_reason,
            "last_action_tick": self.last_action_tick,
        }

    @classmethod
    def from_dict(cls, data: dict, bot: Bot) -> "Competitor":
        return cls(
            id=bot.id,
            name=data.get("name", bot.name),
            description=data.get("description", bot.description),
            inspiration=data.get("inspiration", bot.inspiration),
            rule=bot.rule,
            cash=float(data["cash"]),
            position=float(data.get("position", 0.0)),
            trades=[Order(**t) for t in data.get("trades", [])],
            peak=float(data.get("peak", data["cash"])),
            meta=dict(data.get("meta") or {"entry_price": 0.0}),
            last_action=data.get("last_action", "HOLD"),
            last_action_reason=data.get("last_action_reason", "Waiting"),
            last_action_tick=int(data.get("last_action_tick", -999)),
        )


@dataclass(frozen=True)
class LeaderboardRow:
    id: str
    name: str
    inspiration: str
    equity: float
    ret: float
    trades: int
    mdd: float

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class TickResult:
    orders: List[TickOrder]
    leaderboard: List[LeaderboardRow]


@dataclass(frozen=True)
class RunResult:
    """Immutable end-of-run summary."""
    run_id: str
    stage_id: str
    speed: float
    completed_at: str
    bots: List[dict]

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "stage_id": self.stage_id,
            "speed": self.speed,
            "completed_at": self.completed_at,
            "bots": [dict(b) for b in self.bots],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RunResult":
        return cls(
            run_id=data["run_id"],
            stage_id=data["stage_id"],
            speed=data["speed"],
            completed_at=data["completed_at"],
            bots=list(data.get("bots", [])),
        )


def init_competitors(bots: Sequence[Bot], initial_capital: float = None) -> List[Competitor]:
    if initial_capital is None:
        initial_capital = TradingRules.from_config().initial_capital
    return [Competitor.from_bot(bot, initial_capital) for bot in bots]


def equity_of(competitor: Competitor, price: float) -> float:
    return competitor.cash + competitor.position * price


def _blend_entry_price(competitor: Competitor, price: float, qty: float, mode: str) -> float:
    old_entry = competitor.meta.get("entry_price", 0.0) or 0.0
    if old_entry <= 0:
        return price
    if mode == "midpoint":
        return (old_entry + price) / 2
    # competitor.position already includes qty
    old_qty = competitor.position - qty
    return (old_entry * old_qty + price * qty) / competitor.position


def process_tick(competitors: Sequence[Competitor], series: Sequence[PricePoint], index: int,
                 rules: Optional[TradingRules] = None) -> TickResult:
    """
    Run one simulation step at `series[index]`.

    Orders whose notional is below `min_order_notional` are skipped silently.
    Peaks are updated only after every bot has acted.
    """
    rules = rules or TradingRules.from_config()
    closes = [p[1] for p in series[:index + 1]]
    price = closes[-1]
    ts = series[index][0]
    orders: List[TickOrder] = []

    for bot in competitors:
        ctx = BotContext(closes=closes, price=price, cash=bot.cash, position=bot.position, meta=bot.meta)
        action = evaluate_rule(bot.rule, ctx)
        if action is None:
            continue

        if action.side == "buy":
            usd = bot.cash * action.portion
            if usd < rules.min_order_notional:
                continue
            fee = usd * rules.fee_rate
            qty = (usd - fee) / price
            bot.cash -= usd
            bot.position += qty
            bot.meta["entry_price"] = _blend_entry_price(bot, price, qty, rules.entry_price_mode)
            side = "BUY"

        elif action.side == "sell":
            qty = bot.position * action.portion
            gross = qty * price
            if gross < rules.min_order_notional:
                continue
            fee = gross * rules.fee_rate
            bot.cash += gross - fee
            bot.position -= qty
            if bot.position < rules.dust_qty:
                bot.position = 0.0
                bot.meta["entry_price"] = 0.0
            side = "SELL"

        else:
            logger.warning(f"Ignoring unknown action side {action.side!r} from {bot.id}")
            continue

        bot.trades.append(Order(side=side, price=price, qty=qty, ts=ts, reason=action.reason))
        bot.last_action = side
        bot.last_action_reason = action.reason
        bot.last_action_tick = index
        orders.append(TickOrder(bot_id=bot.id, bot_name=bot.name, side=side, ts=ts,
                                price=price, qty=qty, reason=action.reason))

    for bot in competitors:
        bot.peak = max(bot.peak, equity_of(bot, price))

    return TickResult(orders=orders, leaderboard=get_leaderboard(competitors, price, rules.initial_capital))


def get_leaderboard(competitors: Sequence[Competitor], price: float,
                    initial_capital: float = None) -> List[LeaderboardRow]:
    """Rank competitors by percent return at `price` (best first)."""
    if initial_capital is None:
        initial_capital = TradingRules.from_config().initial_capital

    rows = []
    for bot in competitors:
        equity = equity_of(bot, price)
        rows.append(LeaderboardRow(
            id=bot.id,
            name=bot.name,
            inspiration=bot.inspiration,
            equity=equity,
            ret=(equity - initial_capital) / initial_capital * 100,
            trades=len(bot.trades),
            mdd=(bot.peak - equity) / max(1, bot.peak) * 100,
        ))
    return sorted(rows, key=lambda r: r.ret, reverse=True)


def build_run_result(run_id: str, stage_id: str, speed: float,
                     leaderboard: Sequence[LeaderboardRow]) -> RunResult:
    return RunResult(
        run_id=run_id,
        stage_id=stage_id,
        speed=speed,
        completed_at=datetime.now(timezone.utc).isoformat(),
        bots=[
            {
                "id": row.id,
                "name": row.name,
                "return_pct": round(row.ret, 4),
                "equity": round(row.equity, 2),
                "trades": row.trades,
                "mdd": round(row.mdd, 4),
            }
            for row in leaderboard
        ],
    )

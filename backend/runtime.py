"""
Session Runtime for Strategy Arena

Owns the single arena session and drives it on wall-clock time.

States:
- idle:      nothing running (initial, after stop or reset)
- running:   the driver advances the cursor toward the wall-clock target
- paused:    cursor frozen, pause time excluded from active time
- finished:  last index processed, run result frozen

Timing: the nominal game duration (`session.game_duration_seconds`) is
compressed by the speed multiplier and spread over the series, so each tick
is worth (duration / speed) / (len(series) - 1) seconds of active time. On
every driver invocation the cursor is walked forward one index at a time until
it reaches the target; ticks are never skipped.

Persistence: every command saves the session; ticking saves at most once per
`session.persist_interval_seconds`. On startup a saved session is reloaded,
bots are re-linked to their rules by id, and a session that was running is
forced to paused.
"""

import logging
import math
import os
import sys
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from config_loader import config
from indicators import clamp
from strategies import BOT_CATALOG, Bot, catalog_summary
from backend.historical_data import HistoryProvider, PricePoint
from backend.session_store import SessionStore
from backend.simulator import (
    Competitor, LeaderboardRow, RunResult, TickOrder, TradingRules,
    build_run_result, get_leaderboard, init_competitors, process_tick
)
from backend.stages import Stage, build_stage_series, pick_stages

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    FINISHED = "finished"


@dataclass
class Session:
    initialized: bool = False
    status: SessionStatus = SessionStatus.IDLE
    message: str = "Initializing"
    speed: float = 2
    selected_stage_id: str = ""
    running_stage_id: str = ""
    daily: List[PricePoint] = field(default_factory=list)
    stages: List[Stage] = field(default_factory=list)
    series: List[PricePoint] = field(default_factory=list)
    competitors: List[Competitor] = field(default_factory=list)
    processed_index: int = 0
    started_at: float = 0.0
    paused_at: float = 0.0
    paused_accum: float = 0.0
    trade_logs: List[str] = field(default_factory=list)
    run_result: Optional[RunResult] = None

    def to_dict(self) -> dict:
        return {
            "initialized": self.initialized,
            "status": self.status.value,
            "message": self.message,
            "speed": self.speed,
            "selected_stage_id": self.selected_stage_id,
            "running_stage_id": self.running_stage_id,
            "daily": [[p.ts, p.price] for p in self.daily],
            "stages": [s.to_dict() for s in self.stages],
            "series": [[p.ts, p.price] for p in self.series],
            "competitors": [c.to_dict() for c in self.competitors],
            "processed_index": self.processed_index,
            "started_at": self.started_at,
            "paused_at": self.paused_at,
            "paused_accum": self.paused_accum,
            "trade_logs": list(self.trade_logs),
            "run_result": self.run_result.to_dict() if self.run_result else None,
        }

    @classmethod
    def from_dict(cls, data: dict, registry: Dict[str, Bot]) -> "Session":
        """Rebuild a session, re-linking competitors to bots by id (orphans dropped)."""
        competitors = []
        for raw in data.get("competitors", []):
            if not isinstance(raw, dict):
                logger.warning(f"Skipping malformed persisted competitor: {raw!r}")
                continue
            bot = registry.get(raw.get("id"))
            if bot is None:
                logger.info(f"Dropping persisted competitor {raw.get('id')!r}: no longer in catalog")
                continue
            competitors.append(Competitor.from_dict(raw, bot))

        run_result = data.get("run_result")
        return cls(
            initialized=bool(data.get("initialized", False)),
            status=SessionStatus(data.get("status", "idle")),
            message=data.get("message", ""),
            speed=data.get("speed", 2),
            selected_stage_id=data.get("selected_stage_id", ""),
            running_stage_id=data.get("running_stage_id", ""),
            daily=[PricePoint(int(ts), float(price)) for ts, price in data.get("daily", [])],
            stages=[Stage.from_dict(s) for s in data.get("stages", [])],
            series=[PricePoint(int(ts), float(price)) for ts, price in data.get("series", [])],
            competitors=competitors,
            processed_index=int(data.get("processed_index", 0)),
            started_at=float(data.get("started_at", 0.0)),
            paused_at=float(data.get("paused_at", 0.0)),
            paused_accum=float(data.get("paused_accum", 0.0)),
            trade_logs=list(data.get("trade_logs", [])),
            run_result=RunResult.from_dict(run_result) if run_result else None,
        )


# ============== Drivers ==============

class SchedulerDriver:
    """Fires the tick callback on an APScheduler interval job."""

    JOB_ID = "session_tick"

    def __init__(self, interval_seconds: float = None):
        if interval_seconds is None:
            interval_seconds = float(config.get("session.tick_interval_seconds", 0.25))
        self.interval_seconds = interval_seconds
        self.scheduler = BackgroundScheduler()

    @property
    def armed(self) -> bool:
        return self.scheduler.get_job(self.JOB_ID) is not None

    def arm(self, callback: Callable[[], None]):
        self.scheduler.add_job(
            callback,
            IntervalTrigger(seconds=self.interval_seconds),
            id=self.JOB_ID,
            name="Arena session tick",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        if not self.scheduler.running:
            self.scheduler.start()

    def disarm(self):
        if self.scheduler.get_job(self.JOB_ID):
            self.scheduler.remove_job(self.JOB_ID)

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)


class ManualDriver:
    """Never fires on its own; whoever holds the runtime calls tick()."""

    def __init__(self):
        self.armed = False
        self.callback = None

    def arm(self, callback: Callable[[], None]):
        self.armed = True
        self.callback = callback

    def disarm(self):
        self.armed = False

    def shutdown(self):
        self.armed = False
        self.callback = None


# ============== Runtime ==============

def format_order_log(order: TickOrder) -> str:
    at = datetime.fromtimestamp(order.ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")
    return f"[{at}] {order.bot_name} {order.side} {order.qty:.5f} @ ${order.price:,.2f} | {order.reason}"


class SessionRuntime:
    """
    The one arena session plus everything that moves it.

    Commands and driver ticks mutate the session under one re-entrant lock;
    snapshot() composes its view under the same lock so it never sees a
    half-advanced tick.
    """

    def __init__(self, store: SessionStore = None, driver=None,
                 history_provider: HistoryProvider = None,
                 clock: Callable[[], float] = time.time,
                 bots: Sequence[Bot] = BOT_CATALOG,
                 rules: TradingRules = None,
                 step_seconds: int = None):
        session_cfg = config.session
        self.game_duration = float(session_cfg.get("game_duration_seconds", 600))
        self.min_speed = float(session_cfg.get("min_speed", 0.25))
        self.max_speed = float(session_cfg.get("max_speed", 64))
        self.persist_interval = float(session_cfg.get("persist_interval_seconds", 2))
        self.trade_log_limit = int(session_cfg.get("trade_log_limit", 200))
        self.series_seed = int(config.get("series.seed", 1))

        self.store = store
        self.driver = driver if driver is not None else ManualDriver()
        self.history_provider = history_provider or HistoryProvider()
        self.clock = clock
        self.bots = tuple(bots)
        self.registry = {b.id: b for b in self.bots}
        self.rules = rules or TradingRules.from_config()
        self.step_seconds = step_seconds

        self.session = Session(speed=session_cfg.get("default_speed", 2))
        self._lock = threading.RLock()
        self._last_persist = None

    # ---- Helpers ----

    def _clamp_speed(self, speed) -> float:
        return clamp(float(speed), self.min_speed, self.max_speed)

    def _selected_stage(self) -> Optional[Stage]:
        for stage in self.session.stages:
            if stage.id == self.session.selected_stage_id:
                return stage
        return None

    def _current_leaderboard(self) -> List[LeaderboardRow]:
        s = self.session
        if not s.series or not s.competitors:
            return []
        idx = max(0, min(s.processed_index, len(s.series) - 1))
        return get_leaderboard(s.competitors, s.series[idx].price, self.rules.initial_capital)

    def _arm(self):
        self.driver.arm(self.tick)

    def _disarm(self):
        self.driver.disarm()

    def _persist(self, force: bool = True):
        if self.store is None:
            return
        now = self.clock()
        if not force and self._last_persist is not None and now - self._last_persist < self.persist_interval:
            return
        self.store.save(self.session.to_dict(), saved_at=now)
        self._last_persist = now

    # ---- Lifecycle ----

    def _load_persisted(self):
        if self.store is None:
            return
        wrapper = self.store.load()
        if wrapper is None:
            return
        try:
            restored = Session.from_dict(wrapper["data"], self.registry)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring persisted session: {e}")
            return

        if restored.status == SessionStatus.RUNNING:
            restored.status = SessionStatus.PAUSED
            # Offline gap counts as paused time
            restored.paused_at = float(wrapper.get("saved_at") or self.clock())
            restored.message = "Paused by server restart. Resume to continue."
            logger.info("Restored running session as paused")

        self.session = restored
        logger.info(f"Loaded persisted session ({restored.status.value}, "
                    f"{len(restored.competitors)} competitors, index {restored.processed_index})")

    def _ensure_data(self):
        s = self.session
        if s.initialized and s.stages:
            return
        s.daily = self.history_provider.fetch_daily_history()
        s.stages = pick_stages(s.daily)
        s.selected_stage_id = s.stages[0].id if s.stages else ""
        s.initialized = True
        s.message = f"Ready. {len(s.stages)} stages / {len(self.bots)} bots"
        logger.info(s.message)

    def initialize(self):
        """Load any persisted session, then make sure history and stages exist."""
        with self._lock:
            if self.session.initialized:
                return
            self._load_persisted()
            self._ensure_data()
            self._persist()

    def shutdown(self):
        with self._lock:
            self._disarm()
            self._persist()
        self.driver.shutdown()
        logger.info("Session runtime shut down")

    # ---- Commands ----

    def start(self, stage_id: str = None, speed: float = None):
        with self._lock:
            self.initialize()
            s = self.session
            if s.status == SessionStatus.RUNNING:
                return

            if stage_id:
                s.selected_stage_id = stage_id
            if speed:
                s.speed = self._clamp_speed(speed)

            stage = self._selected_stage()
            if stage is None:
                s.message = "No stage selected."
                self._persist()
                return

            s.series = build_stage_series(stage, s.daily, seed=self.series_seed, step_seconds=self.step_seconds)
            s.competitors = init_competitors(self.bots, self.rules.initial_capital)
            s.running_stage_id = stage.id
            s.processed_index = 0
            s.started_at = self.clock()
            s.paused_at = 0.0
            s.paused_accum = 0.0
            s.trade_logs = []
            s.run_result = None
            s.status = SessionStatus.RUNNING
            s.message = f"Running: {stage.title} / {s.speed}x"
            logger.info(f"Run started on {stage.id} ({len(s.series)} ticks, {s.speed}x)")
            self._arm()
            self._persist()

    def pause(self):
        with self._lock:
            self.initialize()
            s = self.session
            if s.status != SessionStatus.RUNNING:
                return
            self._disarm()
            s.status = SessionStatus.PAUSED
            s.paused_at = self.clock()
            s.message = "Paused"
            logger.info(f"Run paused at index {s.processed_index}")
            self._persist()

    def resume(self):
        with self._lock:
            self.initialize()
            s = self.session
            if s.status != SessionStatus.PAUSED:
                return
            s.paused_accum += self.clock() - s.paused_at
            s.paused_at = 0.0
            s.status = SessionStatus.RUNNING
            s.message = f"Running / {s.speed}x"
            logger.info(f"Run resumed at index {s.processed_index}")
            self._arm()
            self._persist()

    def stop(self):
        """Soft stop: back to idle, series and competitors kept for inspection."""
        with self._lock:
            self.initialize()
            self._disarm()
            self.session.status = SessionStatus.IDLE
            self.session.message = "Stopped"
            logger.info("Run stopped")
            self._persist()

    def reset(self):
        with self._lock:
            self.initialize()
            self._disarm()
            s = self.session
            s.status = SessionStatus.IDLE
            s.series = []
            s.competitors = []
            s.running_stage_id = ""
            s.processed_index = 0
            s.paused_at = 0.0
            s.paused_accum = 0.0
            s.trade_logs = []
            s.run_result = None
            s.message = "Reset complete"
            logger.info("Session reset")
            self._persist()

    def update_options(self, stage_id: str = None, speed: float = None):
        with self._lock:
            self.initialize()
            s = self.session
            if s.status == SessionStatus.RUNNING:
                return
            if stage_id:
                s.selected_stage_id = stage_id
            if speed:
                s.speed = self._clamp_speed(speed)
            s.message = "Options updated"
            self._persist()

    def regenerate_stages(self):
        with self._lock:
            self.initialize()
            s = self.session
            s.stages = pick_stages(s.daily)
            s.selected_stage_id = s.stages[0].id if s.stages else ""
            s.message = f"Stages regenerated. {len(s.stages)} available"
            logger.info(s.message)
            self._persist()

    # ---- Driver ----

    def tick(self):
        """Catch the cursor up with wall-clock time, finalizing at the last index."""
        with self._lock:
            s = self.session
            if s.status != SessionStatus.RUNNING or not s.series:
                return

            last_index = len(s.series) - 1
            elapsed = self.clock() - s.started_at - s.paused_accum
            run_seconds = self.game_duration / s.speed
            if elapsed >= run_seconds:
                target = last_index
            else:
                # Epsilon absorbs float error at exact step boundaries
                target = min(last_index, math.floor(elapsed * last_index / run_seconds + 1e-9))

            while s.processed_index < target:
                s.processed_index += 1
                result = process_tick(s.competitors, s.series, s.processed_index, self.rules)
                if result.orders:
                    logs = [format_order_log(o) for o in reversed(result.orders)]
                    s.trade_logs = (logs + s.trade_logs)[:self.trade_log_limit]
                    logger.debug(f"Tick {s.processed_index}: {len(result.orders)} orders")

            if s.processed_index >= last_index:
                self._finalize()
                return

            self._persist(force=False)

    def _finalize(self):
        s = self.session
        leaderboard = self._current_leaderboard()
        s.status = SessionStatus.FINISHED
        stage_id = s.running_stage_id or s.selected_stage_id
        s.run_result = build_run_result(f"run_{int(self.clock() * 1000)}", stage_id, s.speed, leaderboard)
        if leaderboard:
            s.message = f"Finished. Winner: {leaderboard[0].name} ({leaderboard[0].ret:.2f}%)"
        else:
            s.message = "Finished"
        logger.info(s.message)
        self._disarm()
        self._persist()

    # ---- Views ----

    def snapshot(self) -> dict:
        """Point-in-time read-only projection of the session."""
        with self._lock:
            s = self.session
            leaderboard = self._current_leaderboard()
            rows = {row.id: row for row in leaderboard}

            bot_states = []
            for c in s.competitors:
                row = rows.get(c.id)
                bot_states.append({
                    "id": c.id,
                    "name": c.name,
                    "cash": c.cash,
                    "position": c.position,
                    "last_action": c.last_action,
                    "last_action_reason": c.last_action_reason,
                    "last_action_tick": c.last_action_tick,
                    "ret": row.ret if row else 0.0,
                    "equity": row.equity if row else self.rules.initial_capital,
                    "trades": row.trades if row else 0,
                })

            progress = (s.processed_index + 1) / len(s.series) * 100 if s.series else 0.0

            return {
                "status": s.status.value,
                "message": s.message,
                "speed": s.speed,
                "stages": [stage.to_dict() for stage in s.stages],
                "selected_stage_id": s.selected_stage_id,
                "bots_catalog": catalog_summary(),
                "progress": progress,
                "processed_index": s.processed_index,
                "initial_capital": self.rules.initial_capital,
                "leaderboard": [row.to_dict() for row in leaderboard],
                "bot_states": bot_states,
                "trade_logs": list(s.trade_logs),
                "chart_series": [{"ts": p.ts, "price": p.price} for p in s.series[:s.processed_index + 1]],
                "run_result": s.run_result.to_dict() if s.run_result else None,
            }


# ============== Module Handle ==============

_runtime: Optional[SessionRuntime] = None
_runtime_lock = threading.Lock()


def build_default_runtime() -> SessionRuntime:
    from backend.config import settings

    driver = ManualDriver() if settings.DISABLE_DRIVER else SchedulerDriver()
    return SessionRuntime(
        store=SessionStore(settings.STORE_PATH),
        driver=driver,
        history_provider=HistoryProvider(offline=settings.HISTORY_OFFLINE),
    )


def init_runtime(runtime: SessionRuntime = None) -> SessionRuntime:
    """Create (or adopt) the process-wide runtime and initialize it."""
    global _runtime
    with _runtime_lock:
        if _runtime is None:
            _runtime = runtime or build_default_runtime()
        _runtime.initialize()
        return _runtime


def get_runtime() -> SessionRuntime:
    if _runtime is None:
        return init_runtime()
    return _runtime


def shutdown_runtime():
    global _runtime
    with _runtime_lock:
        if _runtime is not None:
            _runtime.shutdown()
            _runtime = None

"""
Session loop scheduler: one message loop per tmux session.

    stopped -> running -> {paused, running} -> stopped

Each loop owns exactly one one-shot timer that is re-armed after every
fire. Re-arming always cancels the previous timer first, and every armed
timer carries the loop's generation number; a callback whose generation is
stale does nothing. This is what makes pause/resume, delay changes and stop
safe against double fires and lost ticks.

Tick (in order):
    1. paused                       -> nothing (resume re-arms)
    2. schedule says inactive       -> skip, next fire = now + delay
    3. pane busy                    -> skip, next fire = now + 30s
    4. select message (conditional rules, then custom message)
    5. deliver; failures are logged and the loop carries on
    6. last fire = now, next fire = now + delay

Any other error in a tick is logged and the loop is re-armed at now + delay.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from .activity import ActivityTracker, ContextTracker
from .analyzer import AnalysisHints, ContentAnalyzer
from .config import ConfigStore
from .events import log_event
from .schedule import is_schedule_active
from .selector import Selection, Signals, select_message
from .state import PauseState, SavedLoop, StateStore
from .timers import TimerHandle, Timers
from .tmux import TmuxClient

logger = logging.getLogger(__name__)

FIRST_MESSAGE_DELAY = 30.0  # Seconds before the "immediate" first message
BUSY_RETRY_DELAY = 30.0  # Seconds to wait when the agent is busy


@dataclass
class LoopState:
    """A running loop."""
    session: str
    delay_minutes: float
    start_time: float
    next_fire_time: Optional[float] = None
    last_fire_time: Optional[float] = None
    paused: bool = False
    time_remaining: Optional[float] = None  # Seconds to next fire, snapshotted on pause
    first_message_pending: bool = False  # Waiting for the 30s first message
    ticking: bool = False
    generation: int = 0  # Bumped on every re-arm/cancel
    timer: Optional[TimerHandle] = field(default=None, repr=False)

    @property
    def delay_seconds(self) -> float:
        return self.delay_minutes * 60


class LoopScheduler:
    def __init__(
        self,
        timers: Timers,
        configs: ConfigStore,
        tmux: TmuxClient,
        analyzer: ContentAnalyzer,
        activity: ActivityTracker,
        context: ContextTracker,
        store: StateStore,
        clock: Callable[[], float] = time.time,
        capture_lines: int = 500,
        on_stop: Optional[Callable[[str], None]] = None,
    ):
        self.timers = timers
        self.configs = configs
        self.tmux = tmux
        self.analyzer = analyzer
        self.activity = activity
        self.context = context
        self.store = store
        self.clock = clock
        self.capture_lines = capture_lines
        self.on_stop = on_stop  # Cancels the session's pending auto-accept
        self.loops: dict[str, LoopState] = {}
        self.global_paused = False

    # --- Timer plumbing ---

    def _cancel_timer(self, loop: LoopState):
        if loop.timer is not None:
            loop.timer.cancel()
            loop.timer = None
        loop.generation += 1

    def _arm(self, loop: LoopState, fire_at: float):
        """Replace the loop's timer with one firing at fire_at."""
        self._cancel_timer(loop)
        generation = loop.generation
        loop.next_fire_time = fire_at
        loop.timer = self.timers.call_later(
            fire_at - self.clock(), lambda: self._on_timer(loop.session, generation)
        )

    def _on_timer(self, name: str, generation: int):
        loop = self.loops.get(name)
        if loop is None or loop.generation != generation:
            return
        loop.timer = None
        if loop.ticking:
            # Previous tick still delivering; ticks for one session never overlap
            self._arm(loop, self.clock() + BUSY_RETRY_DELAY)
            return
        self.timers.spawn(self.tick(name))

    def _persist(self):
        self.store.save_loops({
            name: SavedLoop(
                start_time=loop.start_time,
                active=True,
                paused=loop.paused,
                next_fire_time=loop.next_fire_time,
                delay_minutes=loop.delay_minutes,
            )
            for name, loop in self.loops.items()
        })

    # --- Lifecycle ---

    def start_loop(self, name: str, delay_minutes: Optional[float] = None, persist: bool = True) -> LoopState:
        """Start a loop. No-op (returns the existing loop) if already running."""
        existing = self.loops.get(name)
        if existing is not None:
            logger.debug("[Loop] %s: already running", name)
            return existing

        cfg = self.configs.get(name)
        now = self.clock()
        loop = LoopState(
            session=name,
            delay_minutes=delay_minutes or cfg.delay_minutes,
            start_time=now,
        )
        if cfg.start_with_delay:
            first_delay = loop.delay_seconds
        else:
            first_delay = FIRST_MESSAGE_DELAY
            loop.first_message_pending = True
        self.loops[name] = loop

        if self.global_paused:
            loop.paused = True
            loop.time_remaining = first_delay
        else:
            self._arm(loop, now + first_delay)

        logger.info("[Loop] %s: started (every %s min, first in %ds)", name, loop.delay_minutes, first_delay)
        log_event(name, "loop_start", extra={"delay_minutes": loop.delay_minutes})
        if persist:
            self._persist()
        return loop

    def stop_loop(self, name: Optional[str] = None):
        """Stop one loop, or all when name is None. Idempotent."""
        names = [name] if name is not None else list(self.loops)
        for session in names:
            loop = self.loops.pop(session, None)
            if loop is None:
                continue
            self._cancel_timer(loop)
            if self.on_stop is not None:
                self.on_stop(session)
            logger.info("[Loop] %s: stopped", session)
            log_event(session, "loop_stop")
        self._persist()

    def is_active(self, name: str) -> bool:
        """Running and not paused."""
        loop = self.loops.get(name)
        return loop is not None and not loop.paused and not self.global_paused

    # --- Pause / resume ---

    def _pause_loop(self, loop: LoopState, time_remaining: Optional[float] = None):
        if loop.paused:
            return
        if time_remaining is None:
            if loop.ticking or loop.next_fire_time is None:
                time_remaining = loop.delay_seconds
            else:
                time_remaining = max(0.0, loop.next_fire_time - self.clock())
        self._cancel_timer(loop)
        loop.paused = True
        loop.time_remaining = time_remaining
        loop.next_fire_time = None

    def _resume_loop(self, loop: LoopState):
        if not loop.paused:
            return
        remaining = loop.time_remaining if loop.time_remaining is not None else loop.delay_seconds
        loop.paused = False
        loop.time_remaining = None
        self._arm(loop, self.clock() + remaining)

    def pause(self, name: Optional[str] = None):
        """Pause one loop, or every loop (persisted to pause.json) when name is None."""
        if name is not None:
            loop = self.loops.get(name)
            if loop is None:
                return
            self._pause_loop(loop)
            logger.info("[Loop] %s: paused (%.0fs remaining)", name, loop.time_remaining or 0)
            log_event(name, "loop_pause", extra={"time_remaining": loop.time_remaining})
        else:
            self.global_paused = True
            for loop in self.loops.values():
                self._pause_loop(loop)
            self.store.save_pause(PauseState(
                paused_at=self.clock(),
                loops={n: {"time_remaining": loop.time_remaining} for n, loop in self.loops.items()},
            ))
            logger.info("[Loop] all loops paused")
            log_event(None, "loop_pause", extra={"sessions": list(self.loops)})
        self._persist()

    def resume(self, name: Optional[str] = None):
        """Resume one loop, or every loop when name is None.

        The next fire is now + the remaining time snapshotted at pause.
        A single loop stays paused while every loop is paused.
        """
        if name is not None:
            loop = self.loops.get(name)
            if loop is None:
                return
            if self.global_paused:
                logger.info("[Loop] %s: all loops are paused, resume them instead", name)
                return
            self._resume_loop(loop)
            logger.info("[Loop] %s: resumed", name)
            log_event(name, "loop_resume")
        else:
            self.global_paused = False
            self.store.clear_pause()
            for loop in self.loops.values():
                self._resume_loop(loop)
            logger.info("[Loop] all loops resumed")
            log_event(None, "loop_resume", extra={"sessions": list(self.loops)})
        self._persist()

    # --- Live reconfiguration ---

    def set_delay(self, name: str, delay_minutes: float, start_with_full_delay: Optional[bool] = None):
        """Change a running loop's delay without losing or duplicating a tick."""
        loop = self.loops.get(name)
        if loop is None:
            return
        if start_with_full_delay is None:
            start_with_full_delay = self.configs.get(name).start_with_delay

        old_delay = loop.delay_seconds
        loop.delay_minutes = delay_minutes
        new_delay = loop.delay_seconds
        now = self.clock()

        if loop.paused:
            if start_with_full_delay:
                loop.time_remaining = new_delay
            else:
                elapsed = old_delay - (loop.time_remaining or 0.0)
                loop.time_remaining = max(0.0, new_delay - elapsed)
        elif loop.first_message_pending and not start_with_full_delay:
            pass  # The pending first message keeps its slot
        elif not loop.ticking:
            if start_with_full_delay:
                wait = new_delay
            else:
                elapsed = now - (loop.last_fire_time or loop.start_time)
                wait = max(0.0, new_delay - elapsed)
            self._arm(loop, now + wait)

        logger.info("[Loop] %s: delay changed to %s min", name, delay_minutes)
        log_event(name, "delay_change", extra={"delay_minutes": delay_minutes})
        self._persist()

    # --- Tick ---

    async def tick(self, name: str) -> str:
        """Run one loop iteration. Returns what happened (for logs and tests)."""
        loop = self.loops.get(name)
        if loop is None:
            return "stopped"
        if loop.ticking:
            return "overlap"
        loop.ticking = True
        generation = loop.generation
        try:
            return await self._tick(loop)
        except Exception as e:
            logger.error("[Loop] %s: tick failed: %s", name, e)
            log_event(name, "tick", result="fail", error=str(e))
            if self.loops.get(name) is loop and loop.generation == generation and not loop.paused:
                self._arm(loop, self.clock() + loop.delay_seconds)
                self._persist()
            return "failed"
        finally:
            loop.ticking = False

    async def _tick(self, loop: LoopState) -> str:
        name = loop.session
        if loop.paused:
            return "paused"

        cfg = self.configs.get(name)
        generation = loop.generation
        now = self.clock()

        if not is_schedule_active(cfg.schedule, datetime.fromtimestamp(now)):
            logger.debug("[Loop] %s: outside schedule, skipping", name)
            log_event(name, "send_skipped", extra={"reason": "schedule"})
            self._arm(loop, now + loop.delay_seconds)
            self._persist()
            return "inactive"

        snapshot = await self.tmux.capture(cfg.target, self.capture_lines)
        hints = AnalysisHints(check_busy=True, check_context=cfg.context_aware)
        analysis = self.analyzer.analyze(snapshot, name, hints) if snapshot is not None else None

        if loop.generation != generation or self.loops.get(name) is not loop:
            return "superseded"

        if analysis is not None:
            self.activity.record(name, bool(analysis.is_busy))
            self.context.record_percent(name, analysis.context_percent)
            if analysis.is_busy:
                logger.info("[Loop] %s: agent busy, retrying in %ds", name, BUSY_RETRY_DELAY)
                log_event(name, "send_skipped", extra={"reason": "busy"})
                self._arm(loop, self.clock() + BUSY_RETRY_DELAY)
                self._persist()
                return "busy"

        selection = self.select(name, now)
        outcome = "nothing"
        if selection is None:
            logger.info("[Loop] %s: no message to send", name)
            log_event(name, "send_skipped", extra={"reason": "no_message"})
        else:
            try:
                await self.tmux.deliver(cfg.target, selection.message)
                self.context.on_message_sent(name, selection.message)
                logger.info("[Loop] %s: sent %s message", name, selection.kind)
                log_event(name, "send", extra={"kind": selection.kind, "chars": len(selection.message)})
                outcome = "sent"
            except Exception as e:
                logger.error("[Loop] %s: delivery failed: %s", name, e)
                log_event(name, "send", result="fail", error=str(e))
                outcome = "failed"

        loop.last_fire_time = self.clock()
        loop.first_message_pending = False
        # A stop, pause or delay change during delivery already re-armed (or removed) the loop
        if self.loops.get(name) is loop and loop.generation == generation and not loop.paused:
            self._arm(loop, loop.last_fire_time + loop.delay_seconds)
        self._persist()
        return outcome

    def select(self, name: str, now: Optional[float] = None) -> Optional[Selection]:
        """The message the loop would send right now."""
        cfg = self.configs.get(name)
        now = self.clock() if now is None else now
        loop = self.loops.get(name)
        signals = Signals(
            now=datetime.fromtimestamp(now),
            context_percent=self.context.current_percent(name),
            is_busy=self.activity.is_busy(name),
            idle_seconds=self.activity.idle_seconds(name),
            messages_since_compact=self.context.messages_since_compact(name),
            session_elapsed_hours=(now - loop.start_time) / 3600 if loop else None,
        )
        rules = cfg.conditional_messages if cfg.context_aware else None
        return select_message(rules, signals, cfg.custom_message)

    # --- Status / persistence ---

    def get_loop_status(self) -> dict[str, dict]:
        now = self.clock()
        status = {}
        for name, loop in self.loops.items():
            if loop.paused:
                remaining = loop.time_remaining
            elif loop.next_fire_time is not None:
                remaining = max(0.0, loop.next_fire_time - now)
            else:
                remaining = None
            status[name] = {
                "running": True,
                "paused": loop.paused,
                "next_fire_time": loop.next_fire_time,
                "last_fire_time": loop.last_fire_time,
                "delay_minutes": loop.delay_minutes,
                "start_time": loop.start_time,
                "time_remaining": remaining,
            }
        return status

    def restore(self) -> list[str]:
        """Restart loops saved as active, reapplying paused flags and a global pause."""
        pause_state = self.store.load_pause()
        restored = []
        for name, saved in self.store.load_loops().items():
            if not saved.active:
                continue
            loop = self.start_loop(name, saved.delay_minutes, persist=False)
            if pause_state is not None and name in pause_state.loops:
                self._pause_loop(loop, pause_state.loops[name].get("time_remaining"))
            elif saved.paused:
                self._pause_loop(loop)
            restored.append(name)
        if pause_state is not None:
            self.global_paused = True
        if restored:
            logger.info("[Loop] restored %d loop(s): %s", len(restored), ", ".join(restored))
        self._persist()
        return restored

    async def shutdown(self):
        """Cancel every loop timer and wait for in-flight ticks. Saved state is kept."""
        for loop in self.loops.values():
            self._cancel_timer(loop)
        await self.timers.drain()

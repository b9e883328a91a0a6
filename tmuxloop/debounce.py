"""
Debounced automated actions: auto-accept a prompt, auto-compact on low context.

Each (session, action kind) runs a small state machine:

    IDLE -> SCHEDULED -> IN_PROGRESS -> (grace) -> IDLE
                                      \\-> COOLING_DOWN while within the cooldown

Guards, in order:
- SCHEDULED:    a timer is already pending, decline ("pending")
- IN_PROGRESS:  never start a second concurrent action ("in_progress")
- cooldown:     minutes since the last successful action < cooldown ("cooldown")

The in-progress flag is always cleared, on failure immediately.
"""

import inspect
import logging
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from .activity import ContextTracker
from .analyzer import InteractivePrompt
from .config import ConfigStore
from .events import log_event
from .timers import TimerHandle, Timers
from .tmux import TmuxClient

logger = logging.getLogger(__name__)

COMPACT_COOLDOWN_MINUTES = 5.0  # Fixed, regardless of trigger
COMPACT_CLEAR_GRACE = 5.0  # Seconds the compact flag stays set after success
RESCAN_DELAY = 300.0  # Seconds after a compact before rescanning conversations
COMPACT_COMMAND = "/compact"


class ActionKind(Enum):
    AUTO_ACCEPT = "auto_accept"
    AUTO_COMPACT = "auto_compact"


class DebounceStage(Enum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COOLING_DOWN = "cooling_down"  # Reported only, derived from last_action_time


@dataclass
class DebounceState:
    stage: DebounceStage = DebounceStage.IDLE
    last_action_time: Optional[float] = None  # Last successful action
    pending: Optional[TimerHandle] = None  # Delay timer or clear-grace timer


@dataclass
class Decision:
    """Outcome of an action request, for logging and UI display."""
    accepted: bool
    reason: str  # scheduled, started, pending, in_progress, cooldown, disabled, loop_inactive
    remaining_minutes: float = 0.0
    remaining_display: int = 0  # Whole minutes, rounded up
    total_minutes: float = 0.0


class ActionDebouncer:
    """Generic debounce for one action kind across sessions."""

    def __init__(
        self,
        kind: ActionKind,
        timers: Timers,
        clock: Callable[[], float] = time.time,
        clear_grace: float = 0.0,
    ):
        self.kind = kind
        self.timers = timers
        self.clock = clock
        self.clear_grace = clear_grace
        self._states: dict[str, DebounceState] = {}

    def state(self, session: str) -> DebounceState:
        state = self._states.get(session)
        if state is None:
            state = DebounceState()
            self._states[session] = state
        return state

    def remaining_minutes(self, session: str, cooldown_minutes: float) -> float:
        """Exact cooldown left in minutes (0 when none)."""
        state = self._states.get(session)
        if state is None or state.last_action_time is None or cooldown_minutes <= 0:
            return 0.0
        elapsed = (self.clock() - state.last_action_time) / 60
        return max(0.0, cooldown_minutes - elapsed)

    def status(self, session: str, cooldown_minutes: float) -> dict:
        state = self.state(session)
        remaining = self.remaining_minutes(session, cooldown_minutes)
        stage = state.stage
        if stage == DebounceStage.IDLE and remaining > 0:
            stage = DebounceStage.COOLING_DOWN
        return {
            "state": stage.value,
            "remaining_minutes": remaining,
            "total_minutes": cooldown_minutes,
        }

    def request(
        self,
        session: str,
        action: Callable[[], Awaitable],
        cooldown_minutes: float,
        delay_seconds: float = 0.0,
        on_success: Optional[Callable[[], object]] = None,
    ) -> Decision:
        """Schedule `action` unless a guard declines it."""
        state = self.state(session)
        if state.stage == DebounceStage.SCHEDULED:
            return Decision(False, "pending")
        if state.stage == DebounceStage.IN_PROGRESS:
            logger.debug("[%s] %s: already in progress, skipping", self.kind.value, session)
            return Decision(False, "in_progress")

        remaining = self.remaining_minutes(session, cooldown_minutes)
        if remaining > 0:
            logger.debug(
                "[%s] %s: debouncing, %d min remaining", self.kind.value, session, math.ceil(remaining)
            )
            return Decision(
                False, "cooldown",
                remaining_minutes=remaining,
                remaining_display=math.ceil(remaining),
                total_minutes=cooldown_minutes,
            )

        state.stage = DebounceStage.SCHEDULED
        if delay_seconds > 0:
            state.pending = self.timers.call_later(
                delay_seconds, lambda: self._start(session, action, on_success)
            )
            return Decision(True, "scheduled", total_minutes=cooldown_minutes)
        self._start(session, action, on_success)
        return Decision(True, "started", total_minutes=cooldown_minutes)

    def _start(self, session: str, action: Callable[[], Awaitable], on_success):
        state = self.state(session)
        state.pending = None
        if state.stage != DebounceStage.SCHEDULED:
            return  # Cancelled meanwhile
        state.stage = DebounceStage.IN_PROGRESS
        self.timers.spawn(self._run(session, action, on_success))

    async def _run(self, session: str, action: Callable[[], Awaitable], on_success):
        state = self.state(session)
        succeeded = False
        try:
            await action()
            succeeded = True
        except Exception as e:
            logger.error("[%s] %s: action failed: %s", self.kind.value, session, e)
            log_event(session, self.kind.value, result="fail", error=str(e))
        finally:
            if not succeeded:
                state.stage = DebounceStage.IDLE
        if not succeeded:
            return

        state.last_action_time = self.clock()
        log_event(session, self.kind.value)

        if on_success is not None:
            try:
                result = on_success()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("[%s] %s: post-action hook failed: %s", self.kind.value, session, e)

        if self.clear_grace > 0:
            state.pending = self.timers.call_later(self.clear_grace, lambda: self._clear(session))
        else:
            state.stage = DebounceStage.IDLE

    def _clear(self, session: str):
        state = self.state(session)
        state.pending = None
        if state.stage == DebounceStage.IN_PROGRESS:
            state.stage = DebounceStage.IDLE

    def reset_cooldown(self, session: str):
        """Forget the last action time so the next request may act immediately."""
        self.state(session).last_action_time = None

    def cancel(self, session: str):
        """Cancel a pending (not yet started) action and any grace timer."""
        state = self._states.get(session)
        if state is None:
            return
        if state.pending is None and state.stage != DebounceStage.SCHEDULED:
            return  # Idle, or an action is running and will clear its own flag
        if state.pending is not None:
            state.pending.cancel()
            state.pending = None
        state.stage = DebounceStage.IDLE

    def cancel_all(self):
        for session in list(self._states):
            self.cancel(session)


class ActionController:
    """Auto-accept and auto-compact for every session."""

    def __init__(
        self,
        timers: Timers,
        configs: ConfigStore,
        tmux: TmuxClient,
        context: ContextTracker,
        loop_active: Callable[[str], bool],
        rescanner=None,
        clock: Callable[[], float] = time.time,
    ):
        self.timers = timers
        self.configs = configs
        self.tmux = tmux
        self.context = context
        self.loop_active = loop_active
        self.rescanner = rescanner
        self.clock = clock
        self.accept = ActionDebouncer(ActionKind.AUTO_ACCEPT, timers, clock)
        self.compact = ActionDebouncer(ActionKind.AUTO_COMPACT, timers, clock, clear_grace=COMPACT_CLEAR_GRACE)
        self._rescans: dict[str, TimerHandle] = {}

    # --- Auto-accept ---

    def maybe_auto_accept(self, session: str, prompt: InteractivePrompt) -> Decision:
        """Press Enter on a detected prompt after the configured delay."""
        cfg = self.configs.get(session)
        if not cfg.auto_accept_prompts:
            return Decision(False, "disabled")
        if not (self.loop_active(session) or cfg.auto_accept_without_loop):
            logger.info("[Auto-Accept] %s: loop not running, skipping", session)
            return Decision(False, "loop_inactive")

        async def press_enter():
            # Harmless if the prompt was answered meanwhile
            logger.info("[Auto-Accept] Sending Enter to %s", session)
            await self.tmux.send_key(cfg.target, "Enter")

        decision = self.accept.request(
            session, press_enter,
            cooldown_minutes=cfg.auto_accept_cooldown,
            delay_seconds=cfg.auto_accept_delay,
        )
        if decision.accepted:
            logger.info(
                "[Auto-Accept] %s: %s prompt, accepting in %ss", session, prompt.type, cfg.auto_accept_delay
            )
        return decision

    def auto_accept_status(self, session: str) -> dict:
        return self.accept.status(session, self.configs.get(session).auto_accept_cooldown)

    def reset_cooldown(self, session: str):
        logger.info("[Auto-Accept] %s: cooldown reset", session)
        self.accept.reset_cooldown(session)

    # --- Auto-compact ---

    def maybe_auto_compact(self, session: str, reason: str) -> Decision:
        """Send /compact if enabled and the loop is running (fail closed)."""
        cfg = self.configs.get(session)
        if not cfg.enable_auto_compact:
            return Decision(False, "disabled")
        if not self.loop_active(session):
            return Decision(False, "loop_inactive")

        async def send_compact():
            logger.info("[Compact] Sending /compact to %s (reason: %s)", session, reason)
            await self.tmux.deliver(cfg.target, COMPACT_COMMAND, retry_enter=False)

        return self.compact.request(
            session, send_compact,
            cooldown_minutes=COMPACT_COOLDOWN_MINUTES,
            on_success=lambda: self.context.on_compact(session),
        )

    # --- Rescan ---

    def schedule_rescan(self, session: str):
        """One deferred conversation rescan per session after a compact."""
        if self.rescanner is None:
            return
        if session in self._rescans:
            logger.info("[Compact] Rescan already scheduled for %s, skipping duplicate", session)
            return
        self._rescans[session] = self.timers.call_later(
            RESCAN_DELAY, lambda: self.timers.spawn(self._rescan(session))
        )

    async def _rescan(self, session: str):
        self._rescans.pop(session, None)
        await self.rescanner.rescan(session)

    # --- Cancellation ---

    def cancel_session(self, session: str):
        """Drop a pending auto-accept (loop stopped)."""
        self.accept.cancel(session)

    def cancel_all(self):
        self.accept.cancel_all()
        self.compact.cancel_all()
        for handle in self._rescans.values():
            handle.cancel()
        self._rescans.clear()

"""
Per-session activity and context tracking.

ActivityTracker is the single busy/idle source: the pane monitor and the
loop scheduler both feed it whenever they freshly compute the busy signal,
the scheduler defers while it reports busy, and the on-idle message rule
reads idle_seconds from it.

ContextTracker counts messages sent since the last compact and remembers
the last seen context percentage.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)

COMPACT_COMMAND = "/compact"
COMPACT_PHRASE = "let's compact!"


@dataclass
class ActivityState:
    """Busy/idle state of one session."""
    is_busy: bool = False
    last_busy_time: Optional[float] = None  # Last time the busy indicator was seen
    last_check_time: Optional[float] = None


class ActivityTracker:
    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._states: dict[str, ActivityState] = {}

    def state(self, session: str) -> ActivityState:
        state = self._states.get(session)
        if state is None:
            state = ActivityState()
            self._states[session] = state
        return state

    def record(self, session: str, is_busy: bool):
        """Record a freshly computed busy signal."""
        now = self._clock()
        state = self.state(session)
        if is_busy != state.is_busy:
            logger.debug("[Activity] %s: %s", session, "busy" if is_busy else "idle")
        state.is_busy = is_busy
        state.last_check_time = now
        if is_busy:
            state.last_busy_time = now

    def is_busy(self, session: str) -> bool:
        state = self._states.get(session)
        return bool(state and state.is_busy)

    def idle_seconds(self, session: str) -> Optional[float]:
        """Seconds since the session was last seen busy.

        None while busy, or if it was never seen busy (not idle, unknown).
        """
        state = self._states.get(session)
        if state is None or state.is_busy or state.last_busy_time is None:
            return None
        return max(0.0, self._clock() - state.last_busy_time)


def is_compact_message(text: str) -> bool:
    """True if a sent message is itself a compact request."""
    normalized = (text or "").strip().lower()
    return normalized.startswith(COMPACT_COMMAND) or normalized == COMPACT_PHRASE


@dataclass
class ContextState:
    messages_since_compact: Optional[int] = None  # None until a compact has been seen
    last_compact_time: Optional[float] = None
    current_percent: Optional[int] = None


class ContextTracker:
    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        on_compact: Optional[Callable[[str], None]] = None,
    ):
        self._clock = clock
        self.on_compact_hook = on_compact  # Called after every recorded compact
        self._states: dict[str, ContextState] = {}

    def state(self, session: str) -> ContextState:
        state = self._states.get(session)
        if state is None:
            state = ContextState()
            self._states[session] = state
        return state

    def record_percent(self, session: str, percent: Optional[int]):
        """Remember the latest context percentage (None = unknown, keeps the old value)."""
        if percent is not None:
            self.state(session).current_percent = percent

    def current_percent(self, session: str) -> Optional[int]:
        state = self._states.get(session)
        return state.current_percent if state else None

    def on_compact(self, session: str):
        state = self.state(session)
        state.messages_since_compact = 0
        state.last_compact_time = self._clock()
        # Percentage is stale after a reset
        state.current_percent = None
        logger.info("[Compact] %s: compact recorded, message counter reset", session)
        if self.on_compact_hook is not None:
            self.on_compact_hook(session)

    def on_message_sent(self, session: str, text: str):
        """Classify a delivered message: compact request or regular message."""
        if is_compact_message(text):
            self.on_compact(session)
            return
        state = self.state(session)
        if state.messages_since_compact is not None:
            state.messages_since_compact += 1

    def messages_since_compact(self, session: str) -> Optional[int]:
        state = self._states.get(session)
        return state.messages_since_compact if state else None

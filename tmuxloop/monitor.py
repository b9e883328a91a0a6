"""
Pane monitor: periodic snapshot -> analysis -> automated actions.

Every poll_interval seconds each monitored session is captured and run
through the keyword pre-filter and the analyzer. Results feed:
- the activity tracker (busy/idle for the scheduler and the on-idle rule)
- auto-accept of detected prompts
- auto-compact when context drops below the session's threshold
- auto-compact when the agent says a compact/finished phrase
"""

import asyncio
import logging
import time
from typing import Callable, Optional

from .activity import ActivityTracker, ContextTracker
from .analyzer import AnalysisResult, ContentAnalyzer, build_hints
from .config import ConfigStore
from .debounce import ActionController
from .timers import TimerHandle, Timers
from .tmux import TmuxClient

logger = logging.getLogger(__name__)


class PaneMonitor:
    def __init__(
        self,
        timers: Timers,
        configs: ConfigStore,
        tmux: TmuxClient,
        analyzer: ContentAnalyzer,
        activity: ActivityTracker,
        context: ContextTracker,
        controller: ActionController,
        sessions: Callable[[], list[str]],
        poll_interval: float = 2.0,
        capture_lines: int = 500,
        clock: Callable[[], float] = time.time,
    ):
        self.timers = timers
        self.configs = configs
        self.tmux = tmux
        self.analyzer = analyzer
        self.activity = activity
        self.context = context
        self.controller = controller
        self.sessions = sessions
        self.poll_interval = poll_interval
        self.capture_lines = capture_lines
        self.clock = clock
        self._timer: Optional[TimerHandle] = None
        self._running = False
        self._last_phrase: dict[str, str] = {}  # session -> last acted-on phrase line

    def start(self):
        if self._running:
            return
        self._running = True
        self._arm()

    def stop(self):
        self._running = False
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _arm(self):
        self._timer = self.timers.call_later(self.poll_interval, self._on_timer)

    def _on_timer(self):
        self._timer = None
        if self._running:
            self.timers.spawn(self._poll_and_rearm())

    async def _poll_and_rearm(self):
        try:
            await self.poll_all()
        finally:
            if self._running:
                self._arm()

    async def poll_all(self):
        """Poll every monitored session concurrently; one slow pane never holds up the rest."""
        names = self.sessions()
        results = await asyncio.gather(*(self.poll_session(name) for name in names), return_exceptions=True)
        for name, result in zip(names, results):
            if isinstance(result, Exception):
                logger.error("[Monitor] %s: poll failed: %s", name, result)

    async def poll_session(self, name: str) -> Optional[AnalysisResult]:
        """Capture and analyze one session, then trigger any automated action."""
        cfg = self.configs.get(name)
        snapshot = await self.tmux.capture(cfg.target, self.capture_lines)
        if snapshot is None:
            return None

        hints = build_hints(snapshot)
        result = self.analyzer.analyze(snapshot, name, hints)
        self.activity.record(name, bool(result.is_busy))
        self.context.record_percent(name, result.context_percent)

        if result.interactive_prompt is not None:
            self.controller.maybe_auto_accept(name, result.interactive_prompt)

        percent = result.context_percent
        if percent is not None and percent < cfg.auto_compact_threshold:
            self.controller.maybe_auto_compact(name, f"context at {percent}%")

        self._check_compact_phrase(name, result.compact_phrase)
        return result

    def _check_compact_phrase(self, name: str, phrase: Optional[str]):
        if phrase is None:
            self._last_phrase.pop(name, None)
            return
        if self._last_phrase.get(name) == phrase:
            return
        rules = self.configs.get(name).conditional_messages
        if rules is None or not rules.low_context.auto_compact:
            return
        decision = self.controller.maybe_auto_compact(name, f"phrase: {phrase[:40]}")
        if decision.accepted:
            self._last_phrase[name] = phrase

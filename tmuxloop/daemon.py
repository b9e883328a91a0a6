"""
The tmuxloop daemon: wires scheduler, monitor, debounce controller and
control socket onto one asyncio event loop.

Startup: control socket -> restore saved loops -> start pane monitor.
Shutdown (SIGINT/SIGTERM or request_stop): stop monitor, cancel pending
automated actions and rescans, cancel loop timers, wait for in-flight work,
close the socket. Saved loop state is kept so the next start restores it.
"""

import asyncio
import logging
import signal
import time
from datetime import datetime
from typing import Callable, Optional

from .activity import ActivityTracker, ContextTracker
from .analyzer import AnalysisHints, ContentAnalyzer
from .config import DaemonConfig, ConfigStore, SessionConfig
from .control import Command, ControlServer
from .debounce import ActionController
from .events import log_event
from .exceptions import CaptureError, ControlError
from .monitor import PaneMonitor
from .rescan import ConversationRescanner
from .schedule import is_schedule_active
from .scheduler import LoopScheduler
from .state import StateStore
from .timers import Timers
from .tmux import TmuxClient

logger = logging.getLogger(__name__)


class Daemon:
    def __init__(
        self,
        config: DaemonConfig,
        tmux: Optional[TmuxClient] = None,
        timers: Optional[Timers] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.clock = clock
        self.timers = timers or Timers()
        self.tmux = tmux or TmuxClient(
            send_delay=config.message_send_delay,
            retry_enter=config.retry_enter,
            dry_run=config.dry_run,
        )
        self.store = StateStore(config.state_dir)
        self.configs = ConfigStore(config)
        self.analyzer = ContentAnalyzer(clock)
        self.activity = ActivityTracker(clock)
        self.context = ContextTracker(clock)
        self.rescanner = ConversationRescanner(config.rescan_url) if config.rescan_url else None

        self.scheduler = LoopScheduler(
            self.timers, self.configs, self.tmux, self.analyzer, self.activity, self.context,
            self.store, clock=clock, capture_lines=config.capture_lines,
            on_stop=self._on_loop_stop,
        )
        self.controller = ActionController(
            self.timers, self.configs, self.tmux, self.context,
            loop_active=self.scheduler.is_active, rescanner=self.rescanner, clock=clock,
        )
        self.monitor = PaneMonitor(
            self.timers, self.configs, self.tmux, self.analyzer, self.activity, self.context,
            self.controller, sessions=self.monitored_sessions,
            poll_interval=config.poll_interval, capture_lines=config.capture_lines, clock=clock,
        )
        self.server = ControlServer(config.socket_path, self.handle_command)

        # Every compact (sent by us or typed by the loop) schedules one rescan
        self.context.on_compact_hook = self._on_compact
        # Re-enabling auto-accept in a saved config allows an immediate accept
        self.configs.on_save = self._on_config_saved

        self._stop_event: Optional[asyncio.Event] = None

    # --- Hooks ---

    def _on_loop_stop(self, name: str):
        self.controller.cancel_session(name)

    def _on_compact(self, name: str):
        # The cached pre-compact reading would otherwise come back on the next poll
        self.analyzer.invalidate(name, "context")
        self.controller.schedule_rescan(name)

    def _on_config_saved(self, session: SessionConfig):
        self.controller.reset_cooldown(session.name)

    def monitored_sessions(self) -> list[str]:
        """Sessions with a loop, plus ones allowed to auto-accept without a loop."""
        names = set(self.scheduler.loops)
        for name in self.configs.names():
            cfg = self.configs.get(name)
            if cfg.auto_accept_prompts and cfg.auto_accept_without_loop:
                names.add(name)
        return sorted(names)

    # --- Queries ---

    def is_schedule_active(self, name: str) -> bool:
        return is_schedule_active(self.configs.get(name).schedule, datetime.fromtimestamp(self.clock()))

    def get_conditional_message(self, name: str) -> Optional[str]:
        selection = self.scheduler.select(name)
        return selection.message if selection else None

    def session_status(self, name: str) -> dict:
        return {
            "busy": self.activity.is_busy(name),
            "idle_seconds": self.activity.idle_seconds(name),
            "context_percent": self.context.current_percent(name),
            "messages_since_compact": self.context.messages_since_compact(name),
            "schedule_active": self.is_schedule_active(name),
            "auto_accept": self.controller.auto_accept_status(name),
        }

    # --- Control commands ---

    def _require_session(self, command: Command) -> str:
        if not command.session:
            raise ControlError(f"'{command.action}' needs a session name")
        return command.session

    async def handle_command(self, command: Command) -> dict:
        """Execute a control command. TmuxLoopError subclasses become error responses."""
        action = command.action

        if action == "status":
            names = sorted(set(self.scheduler.loops) | set(self.monitored_sessions()))
            return {
                "global_paused": self.scheduler.global_paused,
                "loops": self.scheduler.get_loop_status(),
                "sessions": {name: self.session_status(name) for name in names},
            }

        if action == "stop-all":
            self.scheduler.stop_loop()
            return {}

        if action == "pause":
            self.scheduler.pause(command.session)
            return {"loops": self.scheduler.get_loop_status()}

        if action == "resume":
            self.scheduler.resume(command.session)
            return {"loops": self.scheduler.get_loop_status()}

        name = self._require_session(command)

        if action == "start":
            delay = float(command.arg) if command.arg else None
            self.scheduler.start_loop(name, delay)
            return {"loop": self.scheduler.get_loop_status()[name]}

        if action == "stop":
            self.scheduler.stop_loop(name)
            return {}

        if action == "delay":
            minutes = float(command.arg)
            self.configs.update(name, delay_minutes=minutes)
            self.scheduler.set_delay(name, minutes)
            return {"loop": self.scheduler.get_loop_status().get(name)}

        if action == "send":
            cfg = self.configs.get(name)
            text = command.arg or ""
            await self.tmux.deliver(cfg.target, text)
            self.context.on_message_sent(name, text)
            log_event(name, "send", extra={"kind": "manual", "chars": len(text)})
            return {}

        if action == "reset-cooldown":
            self.controller.reset_cooldown(name)
            return {"auto_accept": self.controller.auto_accept_status(name)}

        if action == "analyze":
            cfg = self.configs.get(name)
            snapshot = await self.tmux.capture(cfg.target, self.config.capture_lines)
            if snapshot is None:
                raise CaptureError(f"Could not capture pane {cfg.target}")
            result = self.analyzer.analyze(snapshot, name, AnalysisHints.all())
            return {
                "analysis": result.to_dict(),
                "conditional_message": self.get_conditional_message(name),
            }

        if action == "schedule":
            return {
                "schedule": self.configs.get(name).schedule.to_dict(),
                "active_now": self.is_schedule_active(name),
            }

        raise ControlError(f"unsupported command: {action}")

    # --- Run / shutdown ---

    def request_stop(self):
        if self._stop_event is not None:
            self._stop_event.set()

    async def run(self):
        """Run until SIGINT/SIGTERM or request_stop()."""
        self._stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.request_stop)

        await self.server.start()
        restored = self.scheduler.restore()
        self.monitor.start()
        logger.info("tmuxloop started (%d loop(s) restored)", len(restored))
        log_event(None, "startup", extra={"restored": restored})

        try:
            await self._stop_event.wait()
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
            await self.shutdown()

    async def shutdown(self):
        self.monitor.stop()
        self.controller.cancel_all()
        await self.scheduler.shutdown()
        await self.server.stop()
        logger.info("tmuxloop stopped")
        log_event(None, "shutdown")

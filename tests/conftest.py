"""Shared fixtures for tmuxloop tests."""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import pytest

from tmuxloop.config import DaemonConfig, SessionConfig
from tmuxloop.daemon import Daemon
from tmuxloop.exceptions import DeliveryError
from tmuxloop.timers import Timers

# Monday 10:00 local time
START = datetime(2025, 1, 6, 10, 0, 0).timestamp()


class FakeClock:
    """Callable clock whose time only moves when told to."""

    def __init__(self, start: float = START):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@dataclass
class FakeHandle:
    when: float
    callback: Callable[[], None]
    cancelled: bool = False

    def cancel(self):
        self.cancelled = True


class FakeTimers(Timers):
    """Timers driven by a FakeClock. advance() fires due callbacks in time order."""

    def __init__(self, clock: FakeClock):
        super().__init__()
        self.clock = clock
        self.handles: list[FakeHandle] = []

    def call_later(self, delay, callback):
        handle = FakeHandle(self.clock() + max(0.0, delay), callback)
        self.handles.append(handle)
        return handle

    def pending(self) -> list[FakeHandle]:
        return sorted((h for h in self.handles if not h.cancelled), key=lambda h: h.when)

    async def advance(self, seconds: float):
        target = self.clock.now + seconds
        while True:
            due = [h for h in self.handles if not h.cancelled and h.when <= target]
            if not due:
                break
            handle = min(due, key=lambda h: h.when)
            self.handles.remove(handle)
            self.clock.now = max(self.clock.now, handle.when)
            handle.callback()
            await self.drain()
        self.clock.now = target
        await self.drain()


class FakeTmux:
    """In-memory stand-in for TmuxClient."""

    def __init__(self):
        self.snapshots: dict[str, Optional[str]] = {}  # target -> pane text (None = capture fails)
        self.sent: list[tuple[str, str]] = []
        self.retry_flags: list[Optional[bool]] = []
        self.keys: list[tuple[str, str]] = []
        self.fail_deliveries = 0  # Number of upcoming deliveries that raise
        self.fail_keys = 0
        self.fail_captures = 0  # Number of upcoming captures that raise

    async def capture(self, target, lines=500, escapes=True):
        if self.fail_captures:
            self.fail_captures -= 1
            raise UnicodeDecodeError("utf-8", b"\xff\xfe", 0, 1, "invalid start byte")
        return self.snapshots.get(target, "")

    async def has_session(self, target):
        return True

    async def deliver(self, target, text, retry_enter=None):
        if self.fail_deliveries:
            self.fail_deliveries -= 1
            raise DeliveryError(f"tmux session '{target}' not found")
        self.sent.append((target, text))
        self.retry_flags.append(retry_enter)

    async def send_key(self, target, key):
        if self.fail_keys:
            self.fail_keys -= 1
            raise DeliveryError("send-keys failed")
        self.keys.append((target, key))


@pytest.fixture(autouse=True)
def isolated_event_log(tmp_path, monkeypatch):
    """Keep the JSONL event log out of the home directory."""
    log_dir = tmp_path / "logs"
    monkeypatch.setattr("tmuxloop.events.LOG_DIR", log_dir)
    return log_dir


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timers(clock):
    return FakeTimers(clock)


@pytest.fixture
def fake_tmux():
    return FakeTmux()


@pytest.fixture
def sample_session():
    """A plain loop session: custom message only, no automation."""
    return SessionConfig(name="claude", delay_minutes=10, custom_message="continue")


@pytest.fixture
def daemon_config(tmp_path, sample_session):
    return DaemonConfig(
        sessions={"claude": sample_session},
        state_dir=tmp_path / "state",
        socket_path=tmp_path / "ctl.sock",
    )


@pytest.fixture
def make_daemon(clock, timers, fake_tmux):
    """Build a Daemon on fake time and fake tmux."""
    def _make(config: DaemonConfig) -> Daemon:
        return Daemon(config, tmux=fake_tmux, timers=timers, clock=clock)
    return _make


@pytest.fixture
def daemon(make_daemon, daemon_config):
    return make_daemon(daemon_config)

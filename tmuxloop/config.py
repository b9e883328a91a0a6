"""
Configuration: daemon settings and per-session loop settings.

Main config (YAML, default ~/.tmuxloop/config.yaml):

    poll_interval: 2.0
    socket_path: ~/.tmuxloop/tmuxloop.sock
    message_send_delay: 5
    rescan_url: http://localhost:3335/api/conversations/auto-associate
    defaults:                 # merged into every session
      delay_minutes: 10
    sessions:
      claude:
        target: "claude:0.0"
        custom_message: "continue"
        schedule:
          enabled: true
          active: ["09:00-12:30", "14:00-18:00"]
        conditional_messages:
          low_context: {enabled: true, threshold: 20, auto_compact: true}

Per-session overrides written at runtime live in <state_dir>/sessions/<name>.yaml
and merge over the main config.
"""

import logging
import os
import threading
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Callable, Optional

import yaml

from .exceptions import ConfigurationError
from .schedule import MINUTES_PER_DAY, ScheduleConfig
from .selector import ConditionalMessageConfig

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = Path.home() / ".tmuxloop"
DEFAULT_CONFIG_PATH = DEFAULT_STATE_DIR / "config.yaml"


@dataclass
class SessionConfig:
    """Loop and automation settings for one tmux session."""
    name: str
    target: str = ""  # tmux target, defaults to "<name>:0.0"
    delay_minutes: float = 10
    custom_message: str = ""
    context_aware: bool = True  # Use conditional messages and defer while busy
    start_with_delay: bool = True  # First message after a full delay instead of 30s
    # Auto-accept
    auto_accept_prompts: bool = False
    auto_accept_without_loop: bool = False
    auto_accept_cooldown: float = 5  # Minutes, 0 disables the cooldown
    auto_accept_delay: float = 10  # Seconds before pressing Enter
    # Auto-compact
    enable_auto_compact: bool = False
    auto_compact_threshold: int = 5  # Percent
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    conditional_messages: Optional[ConditionalMessageConfig] = None

    def __post_init__(self):
        if not self.target:
            self.target = f"{self.name}:0.0"

    @classmethod
    def from_dict(cls, name: str, raw: Optional[dict]) -> "SessionConfig":
        raw = dict(raw or {})
        known = {f.name for f in fields(cls)} - {"name", "schedule", "conditional_messages"}
        kwargs = {k: v for k, v in raw.items() if k in known}
        try:
            schedule = ScheduleConfig.from_dict(raw.get("schedule"))
        except ConfigurationError as e:
            raise ConfigurationError(f"Session {name}: {e}")
        conditional = None
        if raw.get("conditional_messages") is not None:
            conditional = ConditionalMessageConfig.from_dict(raw["conditional_messages"])
        return cls(name=name, schedule=schedule, conditional_messages=conditional, **kwargs)

    def to_dict(self) -> dict:
        data = {f.name: getattr(self, f.name) for f in fields(self) if f.name != "name"}
        data["schedule"] = self.schedule.to_dict()
        data["conditional_messages"] = (
            self.conditional_messages.to_dict() if self.conditional_messages else None
        )
        return data


@dataclass
class DaemonConfig:
    """Daemon configuration."""
    sessions: dict[str, SessionConfig] = field(default_factory=dict)
    poll_interval: float = 2.0  # Seconds between pane monitor polls
    socket_path: Path = DEFAULT_STATE_DIR / "tmuxloop.sock"
    state_dir: Path = DEFAULT_STATE_DIR
    capture_lines: int = 500
    message_send_delay: float = 5
    retry_enter: bool = True
    rescan_url: Optional[str] = None  # POSTed 5 min after a compact
    session_defaults: dict = field(default_factory=dict)
    # Runtime options
    dry_run: bool = False


# --- Validation ---

def _validate_session(session: SessionConfig, errors: list[str], warnings: list[str]):
    prefix = f"Session {session.name}"
    if session.delay_minutes <= 0:
        errors.append(f"{prefix}: delay_minutes must be > 0 (got {session.delay_minutes})")
    if session.auto_accept_cooldown < 0:
        errors.append(f"{prefix}: auto_accept_cooldown must be >= 0")
    if session.auto_accept_delay < 0:
        errors.append(f"{prefix}: auto_accept_delay must be >= 0")
    if not 0 <= session.auto_compact_threshold <= 100:
        errors.append(f"{prefix}: auto_compact_threshold must be between 0 and 100")
    if len(session.schedule.minutes) != MINUTES_PER_DAY:
        errors.append(f"{prefix}: schedule must have {MINUTES_PER_DAY} minutes")
    elif session.schedule.enabled and session.schedule.active_minutes() == 0:
        warnings.append(f"{prefix}: schedule enabled but no minute is active - loop will never send")

    if session.auto_accept_prompts and session.auto_accept_cooldown == 0:
        warnings.append(f"{prefix}: auto_accept_cooldown is 0 - cooldown disabled")
    if not session.custom_message and session.conditional_messages is None:
        warnings.append(f"{prefix}: no custom_message and no conditional_messages - loop will send nothing")

    rules = session.conditional_messages
    if rules is None:
        return
    if not 0 <= rules.low_context.threshold <= 100:
        errors.append(f"{prefix}: low_context.threshold must be between 0 and 100")
    if rules.on_idle.idle_threshold_seconds < 0:
        errors.append(f"{prefix}: on_idle.idle_threshold_seconds must be >= 0")
    if rules.after_compact.messages_after_compact < 0:
        errors.append(f"{prefix}: after_compact.messages_after_compact must be >= 0")
    if rules.long_session.hours_threshold < 0:
        errors.append(f"{prefix}: long_session.hours_threshold must be >= 0")
    for kind in ("morning", "afternoon", "evening"):
        window = getattr(rules, kind)
        for hour_name in ("start_hour", "end_hour"):
            if not 0 <= getattr(window, hour_name) <= 24:
                errors.append(f"{prefix}: {kind}.{hour_name} must be between 0 and 24")


def validate_config(config: DaemonConfig) -> list[str]:
    """
    Validate configuration. Returns list of warnings.
    Raises ConfigurationError listing every fatal issue.
    """
    errors = []
    warnings = []

    if config.poll_interval <= 0:
        errors.append(f"poll_interval must be > 0 (got {config.poll_interval})")
    if config.capture_lines <= 0:
        errors.append("capture_lines must be > 0")
    if config.message_send_delay < 0:
        errors.append("message_send_delay must be >= 0")

    for session in config.sessions.values():
        _validate_session(session, errors, warnings)

    if errors:
        raise ConfigurationError("\n".join(errors))

    return warnings


# --- Loading ---

def _path(value, default: Path) -> Path:
    if not value:
        return default
    return Path(os.path.expanduser(str(value)))


def load_config(path: Optional[Path] = None) -> DaemonConfig:
    """Load configuration from YAML. A missing default config yields an empty one.

    Raises:
        ConfigurationError: unreadable file, invalid YAML or invalid session
    """
    explicit = path is not None
    path = Path(path) if explicit else Path(os.environ.get("TMUXLOOP_CONFIG", DEFAULT_CONFIG_PATH))

    raw: dict = {}
    if path.exists():
        try:
            with open(path) as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}")
        except OSError as e:
            raise ConfigurationError(f"Could not read config {path}: {e}")
    elif explicit:
        raise ConfigurationError(f"Config file not found: {path}")

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Config {path} must be a mapping")

    state_dir = _path(raw.get("state_dir"), DEFAULT_STATE_DIR)
    defaults = raw.get("defaults") or {}
    sessions = {}
    for name, session_raw in (raw.get("sessions") or {}).items():
        merged = dict(defaults)
        merged.update(session_raw or {})
        sessions[str(name)] = SessionConfig.from_dict(str(name), merged)

    return DaemonConfig(
        sessions=sessions,
        poll_interval=raw.get("poll_interval", 2.0),
        socket_path=_path(raw.get("socket_path"), state_dir / "tmuxloop.sock"),
        state_dir=state_dir,
        capture_lines=raw.get("capture_lines", 500),
        message_send_delay=raw.get("message_send_delay", 5),
        retry_enter=raw.get("retry_enter", True),
        rescan_url=os.environ.get("TMUXLOOP_RESCAN_URL") or raw.get("rescan_url"),
        session_defaults=defaults,
        dry_run=raw.get("dry_run", False),
    )


class ConfigStore:
    """Per-session config with runtime overrides in <state_dir>/sessions/<name>.yaml.

    Sessions not in the main config are created from the defaults on first use.
    """

    def __init__(self, config: DaemonConfig, on_save: Optional[Callable[[SessionConfig], None]] = None):
        self.config = config
        self.sessions_dir = config.state_dir / "sessions"
        self.on_save = on_save
        self._cache: dict[str, SessionConfig] = {}
        self._lock = threading.Lock()

    def _override_file(self, name: str) -> Path:
        return self.sessions_dir / f"{name}.yaml"

    def _base(self, name: str) -> dict:
        if name in self.config.sessions:
            return self.config.sessions[name].to_dict()
        return dict(self.config.session_defaults)

    def get(self, name: str) -> SessionConfig:
        """Effective config for a session (main config + override file)."""
        cached = self._cache.get(name)
        if cached is not None:
            return cached
        merged = self._base(name)
        override = self._override_file(name)
        if override.exists():
            try:
                merged.update(yaml.safe_load(override.read_text()) or {})
            except (yaml.YAMLError, OSError) as e:
                logger.warning("[Config] Ignoring unreadable override %s: %s", override, e)
        session = SessionConfig.from_dict(name, merged)
        self._cache[name] = session
        return session

    def save(self, session: SessionConfig) -> SessionConfig:
        """Validate and persist a session config (atomic write)."""
        errors: list[str] = []
        _validate_session(session, errors, [])
        if errors:
            raise ConfigurationError("\n".join(errors))

        with self._lock:
            self.sessions_dir.mkdir(parents=True, exist_ok=True)
            target = self._override_file(session.name)
            tmp_file = target.with_suffix(".tmp")
            tmp_file.write_text(yaml.safe_dump(session.to_dict(), sort_keys=False))
            tmp_file.rename(target)
            self._cache[session.name] = session

        if session.auto_accept_prompts and self.on_save is not None:
            self.on_save(session)
        return session

    def update(self, name: str, **changes) -> SessionConfig:
        """Save a copy of a session config with some fields changed."""
        current = self.get(name).to_dict()
        current.update(changes)
        return self.save(SessionConfig.from_dict(name, current))

    def names(self) -> list[str]:
        names = set(self.config.sessions) | set(self._cache)
        if self.sessions_dir.exists():
            names |= {p.stem for p in self.sessions_dir.glob("*.yaml")}
        return sorted(names)

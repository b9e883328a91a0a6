"""
tmuxloop - Keep AI coding agents running in tmux panes moving.

This package provides:
- Per-session message loops with time-of-day schedules
- Terminal analysis (busy, context left, interactive prompts)
- Conditional messages (idle, after compact, low context, time of day)
- Debounced auto-accept and auto-compact
- A Unix-socket control surface and a click CLI

Quick start:
    tmuxloop run                      # start the daemon
    tmuxloop start claude --delay 10  # message the "claude" session every 10 min
    tmuxloop status
"""

__version__ = "0.1.0"

from .analyzer import AnalysisHints, AnalysisResult, ContentAnalyzer, InteractivePrompt
from .config import ConfigStore, DaemonConfig, SessionConfig, load_config, validate_config
from .exceptions import (
    TmuxLoopError,
    ConfigurationError,
    DeliveryError,
    CaptureError,
    ControlError,
)
from .schedule import ScheduleConfig, is_schedule_active
from .selector import ConditionalMessageConfig, Signals, select_message

__all__ = [
    "AnalysisHints",
    "AnalysisResult",
    "ContentAnalyzer",
    "InteractivePrompt",
    "ConfigStore",
    "DaemonConfig",
    "SessionConfig",
    "load_config",
    "validate_config",
    "TmuxLoopError",
    "ConfigurationError",
    "DeliveryError",
    "CaptureError",
    "ControlError",
    "ScheduleConfig",
    "is_schedule_active",
    "ConditionalMessageConfig",
    "Signals",
    "select_message",
]

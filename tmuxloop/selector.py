"""
Conditional message selection.

Rules are checked in a fixed priority order, first match wins:

    1. on-idle          idle long enough and not busy
    2. after-compact    few messages sent since the last compact
    3. low-context      context percentage at or below threshold (+ suffixes)
    4. long-session     loop running longer than N hours
    5. time of day      morning, then afternoon, then evening
    6. standard         always-available fallback rule
    7. custom message   the session's free-text message (or nothing)

A disabled rule is skipped; it never blocks a lower-priority rule.
Unknown signals (None) never satisfy a rule.
"""

import logging
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Optional

logger = logging.getLogger(__name__)

COMPACT_SUFFIX = (
    '\n\nIMPORTANT: If you think it would be helpful, please say "Let\'s compact!" '
    "to trigger a context reset."
)
FINISH_SUFFIX = (
    "\n\nIMPORTANT: If you've completed all tasks, please type: "
    "F-i-n-i-s-h-e-d everything for n-o-w! (without the hyphens)"
)


# --- Rules ---

@dataclass
class IdleRule:
    enabled: bool = False
    idle_threshold_seconds: float = 30
    message: str = "You seem to be idle. Please continue with the next task."


@dataclass
class AfterCompactRule:
    enabled: bool = False
    messages_after_compact: int = 50  # Fires while messages since compact <= this
    message: str = "Fresh context! Please read the summary above and continue with the next tasks."


@dataclass
class LowContextRule:
    enabled: bool = False
    threshold: int = 30  # Percent remaining
    auto_compact: bool = False  # Ask the agent to say "Let's compact!"
    auto_finish: bool = False  # Ask the agent to emit the finished sentinel
    message: str = "Please prepare to wrap up current work and create a summary. Context is getting low."


@dataclass
class LongSessionRule:
    enabled: bool = False
    hours_threshold: float = 4
    message: str = "Long session detected. Consider taking a break or switching to lighter tasks."


@dataclass
class TimeWindowRule:
    enabled: bool = False
    start_hour: int = 0
    end_hour: int = 24
    message: str = ""

    def contains(self, hour: int) -> bool:
        """[start_hour, end_hour), wrapping past midnight when start > end."""
        if self.start_hour <= self.end_hour:
            return self.start_hour <= hour < self.end_hour
        return hour >= self.start_hour or hour < self.end_hour


@dataclass
class StandardRule:
    enabled: bool = False
    message: str = "Please continue with the current task."


def _morning() -> TimeWindowRule:
    return TimeWindowRule(
        start_hour=6, end_hour=12,
        message="Good morning! Please continue with the project. Focus on high-priority tasks first.",
    )


def _afternoon() -> TimeWindowRule:
    return TimeWindowRule(
        start_hour=12, end_hour=18,
        message="Good afternoon! Please continue. Consider reviewing and testing recent changes.",
    )


def _evening() -> TimeWindowRule:
    return TimeWindowRule(
        start_hour=18, end_hour=23,
        message="Good evening! Please continue. Focus on documentation and cleanup tasks.",
    )


RULE_KEYS = {
    # YAML key -> (attribute, rule class)
    "on_idle": ("on_idle", IdleRule),
    "after_compact": ("after_compact", AfterCompactRule),
    "low_context": ("low_context", LowContextRule),
    "long_session": ("long_session", LongSessionRule),
    "morning": ("morning", TimeWindowRule),
    "afternoon": ("afternoon", TimeWindowRule),
    "evening": ("evening", TimeWindowRule),
    "standard": ("standard", StandardRule),
}


@dataclass
class ConditionalMessageConfig:
    """Per-session rule set. Every rule starts disabled."""
    on_idle: IdleRule = field(default_factory=IdleRule)
    after_compact: AfterCompactRule = field(default_factory=AfterCompactRule)
    low_context: LowContextRule = field(default_factory=LowContextRule)
    long_session: LongSessionRule = field(default_factory=LongSessionRule)
    morning: TimeWindowRule = field(default_factory=_morning)
    afternoon: TimeWindowRule = field(default_factory=_afternoon)
    evening: TimeWindowRule = field(default_factory=_evening)
    standard: StandardRule = field(default_factory=StandardRule)

    @classmethod
    def from_dict(cls, raw: Optional[dict]) -> "ConditionalMessageConfig":
        """Build from YAML. Each rule merges over its defaults; unknown keys are ignored."""
        config = cls()
        for key, (attr, rule_cls) in RULE_KEYS.items():
            rule_raw = (raw or {}).get(key)
            if not rule_raw:
                continue
            known = {f.name for f in fields(rule_cls)}
            current = asdict(getattr(config, attr))
            current.update({k: v for k, v in rule_raw.items() if k in known})
            setattr(config, attr, rule_cls(**current))
        return config

    def to_dict(self) -> dict:
        return {key: asdict(getattr(self, attr)) for key, (attr, _) in RULE_KEYS.items()}


# --- Selection ---

@dataclass
class Signals:
    """Inputs to one selection. None = unknown."""
    now: datetime
    context_percent: Optional[int] = None
    is_busy: bool = False
    idle_seconds: Optional[float] = None
    messages_since_compact: Optional[int] = None
    session_elapsed_hours: Optional[float] = None


@dataclass
class Selection:
    kind: str  # on_idle, after_compact, low_context, long_session, morning, afternoon, evening, standard, custom
    message: str
    priority: int


def select_rule(rules: ConditionalMessageConfig, signals: Signals) -> Optional[Selection]:
    """The highest-priority matching conditional rule, ignoring the custom message."""
    idle = rules.on_idle
    if (
        idle.enabled
        and not signals.is_busy
        and signals.idle_seconds is not None
        and signals.idle_seconds >= idle.idle_threshold_seconds
    ):
        return Selection("on_idle", idle.message, 1)

    after = rules.after_compact
    if (
        after.enabled
        and signals.messages_since_compact is not None
        and signals.messages_since_compact <= after.messages_after_compact
    ):
        return Selection("after_compact", after.message, 2)

    low = rules.low_context
    if low.enabled and signals.context_percent is not None and signals.context_percent <= low.threshold:
        message = low.message
        if low.auto_compact:
            message += COMPACT_SUFFIX
        if low.auto_finish:
            message += FINISH_SUFFIX
        return Selection("low_context", message, 3)

    long_session = rules.long_session
    if (
        long_session.enabled
        and signals.session_elapsed_hours is not None
        and signals.session_elapsed_hours >= long_session.hours_threshold
    ):
        return Selection("long_session", long_session.message, 4)

    hour = signals.now.hour
    for kind in ("morning", "afternoon", "evening"):
        window: TimeWindowRule = getattr(rules, kind)
        if window.enabled and window.contains(hour):
            return Selection(kind, window.message, 5)

    if rules.standard.enabled:
        return Selection("standard", rules.standard.message, 6)

    return None


def select_message(
    rules: Optional[ConditionalMessageConfig],
    signals: Signals,
    custom_message: Optional[str] = None,
) -> Optional[Selection]:
    """Pick the message for this tick. None means send nothing."""
    if rules is not None:
        selection = select_rule(rules, signals)
        if selection is not None:
            logger.debug("[Conditional] using %s message", selection.kind)
            return selection
    if custom_message:
        return Selection("custom", custom_message, 7)
    return None

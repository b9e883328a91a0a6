"""
Terminal content analysis for agent panes.

Turns a rendered pane snapshot into independent signals:
- interactive prompt (confirmation / choice dialog waiting for input)
- busy (agent is generating, "esc to interrupt" visible)
- context percent (remaining context before auto-compact, from the status area)
- compact phrase (agent asked for a context reset)

Each signal is computed only when requested through AnalysisHints, and the
prompt/busy/context results are cached per session with their own TTL.
Nothing here raises on odd input: no match means None / False.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

logger = logging.getLogger(__name__)

# Cache TTLs in seconds. Prompts need responsiveness, busy flips quickly,
# context percentage moves slowly.
CACHE_TTL = {
    "prompt": 5.0,
    "busy": 2.0,
    "context": 20.0,
}

BUSY_TAIL_LINES = 20  # The interrupt indicator sits just above the input box
COMPACT_TAIL_LINES = 40

ANSI_PATTERN = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]|\x1b\][^\x07]*\x07")

BUSY_PATTERN = re.compile(r"esc\s+to\s+interrupt", re.IGNORECASE)

SELECTION_MARKER = "❯"
BOX_TOP_PATTERN = re.compile(r"╭─{3,}╮")
BOX_BOTTOM_PATTERN = re.compile(r"╰─{3,}╯")
ANY_BOX_TOP_PATTERN = re.compile(r"(╭─{3,}╮|─{10,})")
ANY_BOX_BOTTOM_PATTERN = re.compile(r"(╰─{3,}╯|─{10,})")
STRAIGHT_RULE_PATTERN = re.compile(r"─{10,}")
BOX_LINE_PATTERN = re.compile(r"│\s*(.*?)\s*│")
NUMBERED_CHOICE_PATTERN = re.compile(r"^[❯\s]*\d+\.")
NUMBERED_ANYWHERE_PATTERN = re.compile(r"\d+\.")

# (pattern, priority) - evaluated in priority order, first match wins.
# Most specific phrasing first; add new status-bar formats here.
CONTEXT_PATTERNS: list[tuple[re.Pattern, int]] = [
    (re.compile(r"Context\s+left\s+until[\s\S]*?auto-compact:\s*(\d+)%", re.IGNORECASE), 1),
    (re.compile(r"auto-compact:\s*(\d+)%", re.IGNORECASE), 2),
    (re.compile(r"context\s+low\s*\((\d+)%\s*remaining\)", re.IGNORECASE), 3),
    (re.compile(r"context[\s\S]{0,20}?(\d+)%", re.IGNORECASE), 4),
    (re.compile(r"(\d+)%[\s\S]{0,20}?context", re.IGNORECASE), 5),
    (re.compile(r"context[^(]*\((\d+)%", re.IGNORECASE), 6),
]

PROMPT_PHRASES = (
    "do you want",
    "would you like",
    "should i",
    "confirm",
    "proceed",
    "continue",
    "make this edit",
    "make these edits",
)

COMPACT_PHRASES = [
    re.compile(r"Let's compact!", re.IGNORECASE),
    re.compile(r"Finished everything for now!", re.IGNORECASE),
    re.compile(r"Done for now", re.IGNORECASE),
    re.compile(r"Everything is complete", re.IGNORECASE),
]


# --- Results ---

@dataclass
class InteractivePrompt:
    """A detected confirmation/choice dialog."""
    type: str  # "selection" (fast path), "edit-confirmation", "choice", "confirmation", "question"
    content: str
    has_default_yes: bool = False
    fast_path: bool = False
    indicators: dict[str, bool] = field(default_factory=dict)
    detected: bool = True

    def to_dict(self) -> dict:
        return {
            "detected": self.detected,
            "type": self.type,
            "content": self.content,
            "has_default_yes": self.has_default_yes,
            "fast_path": self.fast_path,
            "indicators": dict(self.indicators),
        }


@dataclass
class AnalysisHints:
    """Which signals to compute. Cheap keyword checks decide these up front."""
    check_prompt: bool = False
    check_busy: bool = False
    check_context: bool = False
    check_compact_phrase: bool = False

    @classmethod
    def all(cls) -> "AnalysisHints":
        return cls(True, True, True, True)

    def any(self) -> bool:
        return self.check_prompt or self.check_busy or self.check_context or self.check_compact_phrase


@dataclass
class AnalysisResult:
    """Signals for one snapshot. None means "not requested" (or no match for prompt/context)."""
    session: str
    timestamp: float
    interactive_prompt: Optional[InteractivePrompt] = None
    is_busy: Optional[bool] = None
    context_percent: Optional[int] = None
    compact_phrase: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "session": self.session,
            "timestamp": self.timestamp,
            "interactive_prompt": self.interactive_prompt.to_dict() if self.interactive_prompt else None,
            "is_busy": self.is_busy,
            "context_percent": self.context_percent,
            "compact_phrase": self.compact_phrase,
        }


@dataclass
class CacheEntry:
    result: object = None
    expires_at: float = 0.0

    def valid(self, now: float) -> bool:
        return now < self.expires_at


@dataclass
class AnalysisCache:
    """Per-session cached signals."""
    prompt: CacheEntry = field(default_factory=CacheEntry)
    busy: CacheEntry = field(default_factory=CacheEntry)
    context: CacheEntry = field(default_factory=CacheEntry)


# --- Text helpers ---

def strip_ansi(text: str) -> str:
    """Remove color/style escape sequences."""
    return ANSI_PATTERN.sub("", text or "")


def tail_lines(text: str, count: int) -> str:
    return "\n".join((text or "").splitlines()[-count:])


def split_input_box(text: str) -> tuple[str, str]:
    """Split a snapshot into (conversation body, status area) around the input box.

    The body is everything above the last top border (whole text if none);
    the status area is everything after the last bottom border. Without a
    bottom border the whole snapshot is treated as status area.
    """
    tops = list(BOX_TOP_PATTERN.finditer(text))
    bottoms = list(BOX_BOTTOM_PATTERN.finditer(text))
    body = text[:tops[-1].start()] if tops else text
    status_area = text[bottoms[-1].end():] if bottoms else text
    return body, status_area


def build_hints(snapshot: str) -> AnalysisHints:
    """Cheap keyword pre-filter on the snapshot tail."""
    clean = strip_ansi(snapshot)
    last2000 = clean[-2000:].lower()
    last500 = clean[-500:].lower()
    return AnalysisHints(
        check_prompt=(
            "do you want to proceed?" in last2000
            or SELECTION_MARKER in last2000
            or "make this edit?" in last2000
            or "make these edits?" in last2000
        ),
        check_busy="(esc)" in last500 or "esc to interrupt" in last500,
        check_context="%" in last2000 and "context" in last2000,
        check_compact_phrase="compact" in last2000 or "finished" in last2000,
    )


# --- Detectors ---

def detect_busy(snapshot: str, tail: int = BUSY_TAIL_LINES) -> bool:
    """True if the interrupt indicator appears in the last `tail` lines."""
    return bool(BUSY_PATTERN.search(strip_ansi(tail_lines(snapshot, tail))))


def detect_context_percent(snapshot: str) -> Optional[int]:
    """Remaining-context percentage from the status area, or None if not shown."""
    _, status_area = split_input_box(strip_ansi(snapshot))
    for pattern, _priority in CONTEXT_PATTERNS:
        match = pattern.search(status_area)
        if match:
            return max(0, min(100, int(match.group(1))))
    return None


def _has_default_yes(lines: list[str]) -> bool:
    return any(SELECTION_MARKER in line and "yes" in line.lower() for line in lines)


def _box_lines(box_content: str) -> list[str]:
    """Interior lines of a box. Straight-rule boxes have no side borders."""
    raw = box_content.split("\n")
    if any("│" in line for line in raw):
        lines = []
        for line in raw:
            if "│" not in line:
                continue
            match = BOX_LINE_PATTERN.search(line)
            lines.append(match.group(1).strip() if match else "")
    else:
        lines = [line.strip() for line in raw]
    return [line for line in lines if line]


def detect_interactive_prompt(snapshot: str) -> Optional[InteractivePrompt]:
    """Detect a confirmation/choice dialog.

    Fast path: a selection marker plus any box on screen.
    Slow path: parse the outermost box and combine indicators.
    """
    text = strip_ansi(snapshot)

    has_box = ("╭" in text and "╰" in text) or bool(STRAIGHT_RULE_PATTERN.search(text))
    if SELECTION_MARKER in text and has_box:
        return InteractivePrompt(
            type="selection",
            content="Selection prompt detected (fast-path)",
            has_default_yes=_has_default_yes(text.split("\n")),
            fast_path=True,
        )

    tops = list(ANY_BOX_TOP_PATTERN.finditer(text))
    bottoms = list(ANY_BOX_BOTTOM_PATTERN.finditer(text))
    if not tops or not bottoms:
        return None

    # Outermost box: first top to last bottom (handles nested edit previews)
    start = tops[0].end()
    end = bottoms[-1].start()
    if start >= end:
        return None

    lines = _box_lines(text[start:end])
    if not lines:
        return None

    lowered = [line.lower() for line in lines]
    indicators = {
        "has_question": any(line.endswith("?") for line in lines),
        "has_numbered_choices": any(NUMBERED_CHOICE_PATTERN.match(line) for line in lines),
        "has_selection_marker": any(SELECTION_MARKER in line for line in lines),
        "has_prompt_phrase": any(p in low for low in lowered for p in PROMPT_PHRASES),
        "has_escape_option": any("(esc)" in low or "escape" in low for low in lowered),
        "has_yes_no_options": any(
            ("yes" in low or "no" in low) and NUMBERED_ANYWHERE_PATTERN.search(low)
            for low in lowered
        ),
        "has_allow_all_option": any("allow all" in low or "during this session" in low for low in lowered),
        "is_edit_confirmation": any(
            "edit file" in low or "make this edit" in low or "make these edits" in low
            for low in lowered
        ),
    }

    is_interactive = (
        indicators["has_question"]
        or (indicators["has_numbered_choices"] and indicators["has_selection_marker"])
        or (indicators["has_prompt_phrase"] and indicators["has_yes_no_options"])
    )
    if not is_interactive:
        return None

    prompt_type = "question"
    if indicators["is_edit_confirmation"]:
        prompt_type = "edit-confirmation"
    elif indicators["has_numbered_choices"] and indicators["has_selection_marker"]:
        prompt_type = "choice"
    elif indicators["has_yes_no_options"]:
        prompt_type = "confirmation"

    return InteractivePrompt(
        type=prompt_type,
        content="\n".join(lines),
        has_default_yes=_has_default_yes(lines),
        indicators=indicators,
    )


def detect_compact_phrase(snapshot: str, tail: int = COMPACT_TAIL_LINES) -> Optional[str]:
    """The agent's own compact/finished phrase in the conversation body, or None.

    Lines echoing user input (starting with > or ❯) and the instruction text we
    inject ourselves ("IMPORTANT: ...") are ignored.
    """
    body, _ = split_input_box(strip_ansi(tail_lines(snapshot, tail)))
    for line in reversed(body.split("\n")):
        stripped = line.strip().strip("│").strip()
        if not stripped or stripped.startswith((">", SELECTION_MARKER)) or "IMPORTANT:" in stripped:
            continue
        for pattern in COMPACT_PHRASES:
            if pattern.search(stripped):
                return stripped
    return None


# --- Cached analyzer ---

class ContentAnalyzer:
    """Per-session cached analysis.

    A cached signal is reused until it expires, regardless of the hints on
    later calls. Caches are filled lazily, never pre-warmed.
    """

    def __init__(self, clock: Callable[[], float] = time.time, ttl: Optional[dict[str, float]] = None):
        self._clock = clock
        self._ttl = dict(CACHE_TTL, **(ttl or {}))
        self._caches: dict[str, AnalysisCache] = {}

    def cache_for(self, session: str) -> AnalysisCache:
        cache = self._caches.get(session)
        if cache is None:
            cache = AnalysisCache()
            self._caches[session] = cache
        return cache

    def _cached(self, entry: CacheEntry, kind: str, now: float, compute: Callable[[], object]):
        if entry.valid(now):
            return entry.result
        entry.result = compute()
        entry.expires_at = now + self._ttl[kind]
        return entry.result

    def analyze(self, snapshot: str, session: str, hints: Optional[AnalysisHints] = None) -> AnalysisResult:
        """Compute the requested signals for a session snapshot."""
        hints = hints if hints is not None else AnalysisHints.all()
        snapshot = snapshot or ""
        now = self._clock()
        cache = self.cache_for(session)
        result = AnalysisResult(session=session, timestamp=now)

        if hints.check_prompt:
            result.interactive_prompt = self._cached(
                cache.prompt, "prompt", now, lambda: detect_interactive_prompt(snapshot)
            )
        if hints.check_busy:
            result.is_busy = self._cached(cache.busy, "busy", now, lambda: detect_busy(snapshot))
        if hints.check_context:
            result.context_percent = self._cached(
                cache.context, "context", now, lambda: detect_context_percent(snapshot)
            )
        if hints.check_compact_phrase:
            result.compact_phrase = detect_compact_phrase(snapshot)

        if result.interactive_prompt is not None:
            logger.debug("[Analyzer] %s: %s prompt detected", session, result.interactive_prompt.type)
        return result

    def invalidate(self, session: str, kind: Optional[str] = None):
        """Expire one cached signal (or all) for a session."""
        cache = self._caches.get(session)
        if cache is None:
            return
        for name in ([kind] if kind else ["prompt", "busy", "context"]):
            getattr(cache, name).expires_at = 0.0

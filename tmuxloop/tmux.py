"""
tmux access: snapshot capture and message delivery.

Every tmux call is a short subprocess.run executed in a worker thread
(asyncio.to_thread) so a slow tmux server never blocks other sessions'
timers.

Delivery pastes the text through a named tmux buffer instead of send-keys
so long, multi-line messages arrive intact, then presses Enter after a
settle delay (and optionally once more).
"""

import asyncio
import logging
import subprocess
from typing import Optional

from .exceptions import DeliveryError

logger = logging.getLogger(__name__)

TMUX_TIMEOUT = 5  # Seconds per tmux command
DEFAULT_SEND_DELAY = 5.0  # Seconds between paste and Enter
RETRY_ENTER_DELAY = 2.0  # Seconds before the second Enter


def session_name(target: str) -> str:
    """Session part of a tmux target ("work:0.1" -> "work")."""
    return target.split(":", 1)[0]


def _run_tmux(args: list[str], input: Optional[str] = None) -> subprocess.CompletedProcess:
    return subprocess.run(
        ["tmux", *args],
        input=input,
        capture_output=True, text=True, errors="replace", timeout=TMUX_TIMEOUT,
    )


def tmux_capture(target: str, lines: int = 500, escapes: bool = True) -> Optional[str]:
    """Capture the last `lines` lines of a pane. None on any failure."""
    args = ["capture-pane", "-p", "-t", target, "-S", f"-{lines}"]
    if escapes:
        args.insert(1, "-e")
    try:
        result = _run_tmux(args)
        if result.returncode != 0:
            return None
        return result.stdout
    except (subprocess.TimeoutExpired, FileNotFoundError, OSError):
        return None


def tmux_has_session(target: str) -> bool:
    """Check if the tmux session owning a target exists."""
    try:
        result = _run_tmux(["has-session", "-t", session_name(target)])
        return result.returncode == 0
    except (subprocess.TimeoutExpired, FileNotFoundError, OSError):
        return False


def _checked(args: list[str], input: Optional[str] = None, what: str = "tmux"):
    try:
        result = _run_tmux(args, input=input)
    except subprocess.TimeoutExpired:
        raise DeliveryError(f"{what} timed out")
    except (FileNotFoundError, OSError) as e:
        raise DeliveryError(f"{what} failed: {e}")
    if result.returncode != 0:
        raise DeliveryError(f"{what} failed: {(result.stderr or '').strip() or result.returncode}")


class TmuxClient:
    """Async facade over the tmux CLI used by the scheduler, monitor and debouncer."""

    def __init__(
        self,
        send_delay: float = DEFAULT_SEND_DELAY,
        retry_enter: bool = True,
        dry_run: bool = False,
    ):
        self.send_delay = send_delay
        self.retry_enter = retry_enter
        self.dry_run = dry_run

    async def capture(self, target: str, lines: int = 500, escapes: bool = True) -> Optional[str]:
        return await asyncio.to_thread(tmux_capture, target, lines, escapes)

    async def has_session(self, target: str) -> bool:
        return await asyncio.to_thread(tmux_has_session, target)

    async def deliver(self, target: str, text: str, retry_enter: Optional[bool] = None):
        """Paste text into a pane and press Enter.

        Raises:
            DeliveryError: session missing or a tmux command failed
        """
        if self.dry_run:
            logger.info("[DRY-RUN] Would send to %s: %s", target, text[:80])
            return
        if not await self.has_session(target):
            raise DeliveryError(f"tmux session '{session_name(target)}' not found")

        buffer = f"tmuxloop-{session_name(target)}"
        await asyncio.to_thread(_checked, ["load-buffer", "-b", buffer, "-"], text, "load-buffer")
        await asyncio.to_thread(_checked, ["paste-buffer", "-d", "-b", buffer, "-t", target], None, "paste-buffer")

        # Let the pane finish rendering the paste before submitting
        await asyncio.sleep(self.send_delay)
        await self.send_key(target, "Enter")

        if self.retry_enter if retry_enter is None else retry_enter:
            await asyncio.sleep(RETRY_ENTER_DELAY)
            await self.send_key(target, "Enter")

    async def send_key(self, target: str, key: str):
        """Send a single named key (Enter, Escape, ...)."""
        if self.dry_run:
            logger.info("[DRY-RUN] Would press %s in %s", key, target)
            return
        await asyncio.to_thread(_checked, ["send-keys", "-t", target, key], None, f"send-keys {key}")

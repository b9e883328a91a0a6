"""Structured JSONL event log (one file per day)."""

import json
import logging
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

LOG_DIR = Path.home() / ".tmuxloop" / "logs"

# Run ID for this daemon process
_run_id: str = str(uuid.uuid4())[:8]
_log_lock = threading.Lock()


def get_log_file() -> Path:
    """Get today's log file path."""
    return LOG_DIR / f"{datetime.now().strftime('%Y-%m-%d')}.jsonl"


def log_event(
    session: Optional[str],
    event: str,
    result: str = "ok",
    error: Optional[str] = None,
    extra: Optional[dict] = None,
) -> None:
    """Append an event to the JSONL log file. Never raises."""
    entry = {
        "ts": datetime.now().isoformat(),
        "run_id": _run_id,
        "session": session,
        "event": event,
        "result": result,
        "error": error,
    }
    if extra:
        entry.update(extra)

    with _log_lock:
        try:
            LOG_DIR.mkdir(parents=True, exist_ok=True)
            with open(get_log_file(), "a") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        except Exception as e:
            logger.warning("[LOG ERROR] %s", e)

"""
Loop state persistence.

Two JSON files in the state directory:

    active-loops.json   {name: {start_time, active, paused, next_fire_time, delay_minutes}}
    pause.json          {paused_at, loops: {name: {time_remaining}}}   (only while globally paused)

Writes go to a .tmp file that is renamed into place. Read/write failures are
logged and never stop the scheduler.
"""

import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

LOOPS_FILE_NAME = "active-loops.json"
PAUSE_FILE_NAME = "pause.json"


@dataclass
class SavedLoop:
    start_time: float
    active: bool = True
    paused: bool = False
    next_fire_time: Optional[float] = None
    delay_minutes: float = 10


@dataclass
class PauseState:
    paused_at: float
    loops: dict[str, dict] = field(default_factory=dict)  # name -> {"time_remaining": seconds}


class StateStore:
    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)
        self.loops_file = self.state_dir / LOOPS_FILE_NAME
        self.pause_file = self.state_dir / PAUSE_FILE_NAME
        self._lock = threading.Lock()

    def _write(self, path: Path, data: dict):
        with self._lock:
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                tmp_file = path.with_suffix(".tmp")
                tmp_file.write_text(json.dumps(data, indent=2))
                tmp_file.rename(path)
            except Exception as e:
                logger.warning("[State] Could not save %s: %s", path.name, e)

    def _read(self, path: Path) -> Optional[dict]:
        with self._lock:
            if not path.exists():
                return None
            try:
                data = json.loads(path.read_text())
                return data if isinstance(data, dict) else None
            except Exception as e:
                logger.warning("[State] Could not load %s: %s", path.name, e)
                return None

    # --- Active loops ---

    def save_loops(self, loops: dict[str, SavedLoop]):
        self._write(self.loops_file, {
            name: {
                "start_time": loop.start_time,
                "active": loop.active,
                "paused": loop.paused,
                "next_fire_time": loop.next_fire_time,
                "delay_minutes": loop.delay_minutes,
            }
            for name, loop in loops.items()
        })

    def load_loops(self) -> dict[str, SavedLoop]:
        raw = self._read(self.loops_file) or {}
        loops = {}
        for name, entry in raw.items():
            if not isinstance(entry, dict):
                continue
            loops[name] = SavedLoop(
                start_time=entry.get("start_time", 0),
                active=entry.get("active", False),
                paused=entry.get("paused", False),
                next_fire_time=entry.get("next_fire_time"),
                delay_minutes=entry.get("delay_minutes", 10),
            )
        return loops

    # --- Global pause ---

    def save_pause(self, pause: PauseState):
        self._write(self.pause_file, {"paused_at": pause.paused_at, "loops": pause.loops})

    def load_pause(self) -> Optional[PauseState]:
        raw = self._read(self.pause_file)
        if raw is None:
            return None
        return PauseState(paused_at=raw.get("paused_at", 0), loops=raw.get("loops") or {})

    def clear_pause(self):
        with self._lock:
            try:
                self.pause_file.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("[State] Could not remove %s: %s", self.pause_file.name, e)

"""
Unix domain socket control surface.

One command per line, one JSON response line per command:

    status                    loop status, analyzer signals, auto-accept cooldowns
    start <session> [min]     start a loop (optionally with a delay override)
    stop <session>            stop a loop
    stop-all                  stop every loop
    pause [<session>]         pause one loop, or all (persisted)
    resume [<session>]        resume one loop, or all
    delay <session> <min>     change a running loop's delay
    send <session> <text>     deliver a message right now
    reset-cooldown <session>  allow an immediate auto-accept
    analyze <session>         capture + analyze the pane now
    schedule <session>        show the session's schedule

Usage:
    server = ControlServer(socket_path, handler)
    await server.start()
    ...
    await server.stop()

    send_command(socket_path, "status")  # from another process
"""

import asyncio
import json
import logging
import re
import socket
import unicodedata
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional

from .exceptions import ControlError, TmuxLoopError

logger = logging.getLogger(__name__)

SESSION = r"([\w.\-]+)"
NUMBER = r"(\d+(?:\.\d+)?)"


@dataclass
class Command:
    action: str
    session: Optional[str] = None
    arg: Optional[str] = None


def clean_text(s: str) -> str:
    """Remove zero-width characters that break parsing."""
    return ''.join(c for c in s if unicodedata.category(c) != 'Cf')


# (pattern, action) - first match wins
COMMAND_PATTERNS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"^(?:status|s)$", re.IGNORECASE), "status"),
    (re.compile(r"^stop-all$", re.IGNORECASE), "stop-all"),
    (re.compile(rf"^start\s+{SESSION}(?:\s+{NUMBER})?$", re.IGNORECASE), "start"),
    (re.compile(rf"^stop\s+{SESSION}$", re.IGNORECASE), "stop"),
    (re.compile(rf"^pause(?:\s+{SESSION})?$", re.IGNORECASE), "pause"),
    (re.compile(rf"^resume(?:\s+{SESSION})?$", re.IGNORECASE), "resume"),
    (re.compile(rf"^delay\s+{SESSION}\s+{NUMBER}$", re.IGNORECASE), "delay"),
    (re.compile(rf"^send\s+{SESSION}\s+(.+)$", re.IGNORECASE | re.DOTALL), "send"),
    (re.compile(rf"^reset-cooldown\s+{SESSION}$", re.IGNORECASE), "reset-cooldown"),
    (re.compile(rf"^analyze\s+{SESSION}$", re.IGNORECASE), "analyze"),
    (re.compile(rf"^schedule\s+{SESSION}$", re.IGNORECASE), "schedule"),
]


def parse_command(line: str) -> Optional[Command]:
    """Parse a control line like 'delay claude 15'. None if not a command."""
    line = clean_text(line).strip()
    if not line:
        return None
    for pattern, action in COMMAND_PATTERNS:
        match = pattern.match(line)
        if match:
            groups = match.groups()
            session = groups[0] if groups else None
            arg = groups[1] if len(groups) > 1 else None
            return Command(action=action, session=session, arg=arg)
    return None


def encode_text(text: str) -> str:
    """Escape newlines so a multi-line message fits on one control line."""
    return text.replace("\\", "\\\\").replace("\n", "\\n")


def decode_text(text: str) -> str:
    out = []
    i = 0
    while i < len(text):
        if text[i] == "\\" and i + 1 < len(text):
            nxt = text[i + 1]
            out.append("\n" if nxt == "n" else nxt)
            i += 2
        else:
            out.append(text[i])
            i += 1
    return "".join(out)


Handler = Callable[[Command], Awaitable[dict]]


class ControlServer:
    """asyncio Unix socket server dispatching parsed commands to a handler."""

    def __init__(self, socket_path: Path, handler: Handler):
        self.socket_path = Path(socket_path)
        self.handler = handler
        self._server: Optional[asyncio.AbstractServer] = None

    def _remove_stale_socket(self):
        """Remove a leftover socket file. Raises ControlError if a server answers on it."""
        if not self.socket_path.exists():
            return
        probe = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            probe.connect(str(self.socket_path))
        except (ConnectionRefusedError, FileNotFoundError):
            logger.info("[Control] Removing stale socket %s", self.socket_path)
            self.socket_path.unlink(missing_ok=True)
            return
        finally:
            probe.close()
        raise ControlError(f"Another daemon is already running at {self.socket_path}")

    async def start(self):
        self._remove_stale_socket()
        self.socket_path.parent.mkdir(parents=True, exist_ok=True)
        self._server = await asyncio.start_unix_server(self._handle_client, path=str(self.socket_path))
        logger.info("[Control] Listening on %s", self.socket_path)

    async def stop(self):
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        self.socket_path.unlink(missing_ok=True)

    async def dispatch(self, line: str) -> dict:
        """Handle one command line and build its response."""
        command = parse_command(line)
        if command is None:
            return {"ok": False, "error": f"unknown command: {line.strip()[:80]}"}
        if command.action == "send" and command.arg:
            command.arg = decode_text(command.arg)
        try:
            result = await self.handler(command)
        except TmuxLoopError as e:
            return {"ok": False, "error": str(e)}
        except Exception as e:
            logger.error("[Control] '%s' failed: %s", command.action, e)
            return {"ok": False, "error": f"internal error: {e}"}
        return {"ok": True, **(result or {})}

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        try:
            while True:
                raw = await reader.readline()
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace")
                if not line.strip():
                    continue
                response = await self.dispatch(line)
                writer.write((json.dumps(response, default=str) + "\n").encode())
                await writer.drain()
        except (ConnectionResetError, BrokenPipeError):
            logger.debug("[Control] Client disconnected")
        finally:
            writer.close()


def send_command(socket_path: Path, line: str, timeout: float = 30.0) -> dict:
    """Send one command to a running daemon and return its JSON response.

    Raises:
        ControlError: daemon not running, timed out, or bad response
    """
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.settimeout(timeout)
    try:
        try:
            sock.connect(str(socket_path))
        except (ConnectionRefusedError, FileNotFoundError):
            raise ControlError(f"tmuxloop daemon is not running (no socket at {socket_path})")
        sock.sendall((line.strip() + "\n").encode())
        buffer = b""
        while b"\n" not in buffer:
            chunk = sock.recv(65536)
            if not chunk:
                break
            buffer += chunk
    except socket.timeout:
        raise ControlError(f"No response from daemon within {timeout}s")
    except OSError as e:
        raise ControlError(f"Control socket error: {e}")
    finally:
        sock.close()

    try:
        return json.loads(buffer.split(b"\n", 1)[0].decode())
    except (ValueError, UnicodeDecodeError):
        raise ControlError("Malformed response from daemon")

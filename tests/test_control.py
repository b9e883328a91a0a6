"""Tests for control command parsing and the Unix socket server."""

import asyncio
import socket

import pytest

from tmuxloop.control import (
    Command,
    ControlServer,
    decode_text,
    encode_text,
    parse_command,
    send_command,
)
from tmuxloop.exceptions import ControlError


class TestParseCommand:

    @pytest.mark.parametrize("line, expected", [
        ("status", Command("status")),
        ("S", Command("status")),
        ("stop-all", Command("stop-all")),
        ("start claude", Command("start", "claude")),
        ("start claude 15", Command("start", "claude", "15")),
        ("start my-proj.2 0.5", Command("start", "my-proj.2", "0.5")),
        ("stop claude", Command("stop", "claude")),
        ("pause", Command("pause")),
        ("pause claude", Command("pause", "claude")),
        ("resume", Command("resume")),
        ("resume claude", Command("resume", "claude")),
        ("delay claude 15", Command("delay", "claude", "15")),
        ("send claude keep going, please", Command("send", "claude", "keep going, please")),
        ("reset-cooldown claude", Command("reset-cooldown", "claude")),
        ("analyze claude", Command("analyze", "claude")),
        ("schedule claude", Command("schedule", "claude")),
        ("  Status  ", Command("status")),
    ])
    def test_commands(self, line, expected):
        assert parse_command(line) == expected

    @pytest.mark.parametrize("line", ["", "   ", "hello", "delay claude", "delay claude soon", "stop", "start"])
    def test_not_commands(self, line):
        assert parse_command(line) is None

    def test_zero_width_characters_removed(self):
        assert parse_command("st\u200batus") == Command("status")


class TestTextEscaping:

    def test_multiline_message_fits_one_line(self):
        text = "first line\nsecond \\ line"
        encoded = encode_text(text)
        assert "\n" not in encoded
        assert decode_text(encoded) == text


class TestDispatch:

    def test_success_merges_result(self):
        async def handler(command):
            return {"session": command.session}

        server = ControlServer("/unused.sock", handler)
        assert asyncio.run(server.dispatch("stop claude\n")) == {"ok": True, "session": "claude"}

    def test_unknown_command(self):
        server = ControlServer("/unused.sock", None)
        response = asyncio.run(server.dispatch("frobnicate"))
        assert response["ok"] is False
        assert "unknown command" in response["error"]

    def test_domain_error_becomes_response(self):
        async def handler(command):
            raise ControlError("no loop for claude")

        response = asyncio.run(ControlServer("/unused.sock", handler).dispatch("stop claude"))
        assert response == {"ok": False, "error": "no loop for claude"}

    def test_unexpected_error_becomes_response(self):
        async def handler(command):
            raise KeyError("claude")

        response = asyncio.run(ControlServer("/unused.sock", handler).dispatch("stop claude"))
        assert response["ok"] is False
        assert response["error"].startswith("internal error")

    def test_send_text_is_decoded(self):
        received = []

        async def handler(command):
            received.append(command.arg)
            return {}

        asyncio.run(ControlServer("/unused.sock", handler).dispatch("send claude " + encode_text("a\nb")))
        assert received == ["a\nb"]


class TestControlServer:

    def test_roundtrip(self, tmp_path):
        path = tmp_path / "ctl.sock"

        async def handler(command):
            return {"action": command.action}

        async def scenario():
            server = ControlServer(path, handler)
            await server.start()
            try:
                first = await asyncio.to_thread(send_command, path, "status")
                second = await asyncio.to_thread(send_command, path, "nope")
            finally:
                await server.stop()
            return first, second

        first, second = asyncio.run(scenario())
        assert first == {"ok": True, "action": "status"}
        assert second["ok"] is False
        assert not path.exists()

    def test_stale_socket_removed(self, tmp_path):
        path = tmp_path / "ctl.sock"
        leftover = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        leftover.bind(str(path))
        leftover.close()
        assert path.exists()

        async def scenario():
            server = ControlServer(path, None)
            await server.start()
            await server.stop()

        asyncio.run(scenario())

    def test_refuses_to_start_twice(self, tmp_path):
        path = tmp_path / "ctl.sock"

        async def scenario():
            first = ControlServer(path, None)
            await first.start()
            try:
                with pytest.raises(ControlError, match="already running"):
                    await ControlServer(path, None).start()
            finally:
                await first.stop()

        asyncio.run(scenario())

    def test_daemon_not_running(self, tmp_path):
        with pytest.raises(ControlError, match="not running"):
            send_command(tmp_path / "missing.sock", "status")

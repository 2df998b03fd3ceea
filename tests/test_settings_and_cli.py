from __future__ import annotations

import asyncio
import io
import time

import pytest
from pydantic import ValidationError

from config.settings import Settings, get_settings
from main import format_snapshot, load_settings, start_stdin_reader
from session.state import Role, SessionSnapshot, SessionState


def snapshot(**overrides) -> SessionSnapshot:
    values = dict(
        state=SessionState.CONNECTED,
        queue_position=0,
        call_id=None,
        partner_id=None,
        role=None,
        failure=None,
        last_error=None,
        reconnecting=False,
        reconnect_attempts=0,
        audio_enabled=False,
        video_enabled=False,
        connection_state=None,
        call_started_at=None,
    )
    values.update(overrides)
    return SessionSnapshot(**values)


def test_defaults(settings) -> None:
    defaults = Settings()
    assert defaults.signaling_url == "ws://localhost:8000/ws/"
    assert defaults.credential_strategy == "remote"
    assert defaults.offer_delay_seconds == 1.0
    assert defaults.in_call_delay_seconds == 2.0
    assert defaults.reconnect_delay_seconds == 3.0
    assert defaults.ice_servers == ["stun:stun.l.google.com:19302", "stun:stun1.l.google.com:19302"]


def test_env_overrides(settings, monkeypatch) -> None:
    monkeypatch.setenv("SIGNALING_URL", "wss://calls.example.org/ws/")
    monkeypatch.setenv("RECONNECT_DELAY_SECONDS", "0.5")

    loaded = Settings()
    assert loaded.signaling_url == "wss://calls.example.org/ws/"
    assert loaded.reconnect_delay_seconds == 0.5


@pytest.mark.parametrize(
    "field",
    [
        {"signaling_url": "http://localhost:8000/ws/"},
        {"signaling_url": "ws://localhost:70000/ws/"},
        {"signaling_url": "ws:///ws/"},
        {"offer_delay_seconds": -1},
    ],
)
def test_invalid_settings_rejected(settings, field) -> None:
    with pytest.raises(ValidationError):
        Settings(**field)


def test_snapshot_status_precedence() -> None:
    assert snapshot().status == "connected"
    assert snapshot(failure="media").status == "failed"
    assert snapshot(state=SessionState.DISCONNECTED, reconnecting=True, failure="media").status == "reconnecting"


def test_format_snapshot_for_call() -> None:
    line = format_snapshot(
        snapshot(
            state=SessionState.IN_CALL,
            call_id="0123456789abcdef",
            partner_id="p-2",
            role=Role.CALLER,
            audio_enabled=False,
            video_enabled=True,
            connection_state="connected",
            call_started_at=time.monotonic() - 65,
        )
    )
    assert line.startswith("[in_call]")
    assert "call=01234567 partner=p-2 role=caller" in line
    assert "01:05" in line
    assert "mic=off cam=on" in line


def test_format_snapshot_for_queue_and_failure() -> None:
    assert format_snapshot(snapshot(state=SessionState.QUEUED, queue_position=4)) == "[queued] position=4"
    assert "type 'join' to retry" in format_snapshot(snapshot(failure="media"))


def test_format_snapshot_shows_reconnect_attempts() -> None:
    line = format_snapshot(snapshot(state=SessionState.DISCONNECTED, reconnecting=True, reconnect_attempts=2))
    assert line == "[reconnecting] attempts=2"


def test_url_override_is_validated(settings) -> None:
    get_settings.cache_clear()
    try:
        assert load_settings().signaling_url == "ws://localhost:8000/ws/"
        assert load_settings("wss://calls.example.org/ws/").signaling_url == "wss://calls.example.org/ws/"
        with pytest.raises(ValidationError):
            load_settings("ws://localhost:70000/")
    finally:
        get_settings.cache_clear()


@pytest.mark.asyncio
async def test_stdin_reader_delivers_lines_then_eof() -> None:
    lines = start_stdin_reader(asyncio.get_running_loop(), io.StringIO("join\nstatus\n"))

    assert await asyncio.wait_for(lines.get(), 1.0) == "join\n"
    assert await asyncio.wait_for(lines.get(), 1.0) == "status\n"
    assert await asyncio.wait_for(lines.get(), 1.0) is None

"""Console client for the anonymous one-to-one video call service."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import threading
from typing import TextIO

from pydantic import ValidationError

from auth.credentials import build_credentials
from config.settings import Settings, get_settings
from rtc.media import DeviceMediaAcquirer
from session.machine import SessionStateMachine
from session.state import SessionSnapshot
from signaling.channel import SignalingChannel

LOGGER = logging.getLogger(__name__)

COMMANDS = {
    "join": "join_queue",
    "leave": "leave_queue",
    "end": "end_call",
    "mute": "toggle_mute",
    "video": "toggle_video",
    "logout": "logout",
    "login": "login",
}

HELP = "commands: " + ", ".join([*COMMANDS, "status", "quit"])


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Anonymous video call client")
    parser.add_argument("--url", default=None, help="Signaling websocket URL (overrides SIGNALING_URL)")
    parser.add_argument("--log-level", default=None, help="Overrides LOG_LEVEL")
    parser.add_argument("--no-video", action="store_true", help="Join calls with audio only")
    parser.add_argument("--no-audio", action="store_true", help="Join calls with video only")
    return parser.parse_args()


def format_snapshot(snapshot: SessionSnapshot) -> str:
    parts = [f"[{snapshot.status}]"]
    if snapshot.reconnecting and snapshot.reconnect_attempts:
        parts.append(f"attempts={snapshot.reconnect_attempts}")
    if snapshot.state.value == "queued":
        parts.append(f"position={snapshot.queue_position}")
    if snapshot.call_id:
        parts.append(f"call={snapshot.call_id[:8]} partner={snapshot.partner_id} role={snapshot.role.value if snapshot.role else '-'}")
    if snapshot.connection_state:
        parts.append(f"peer={snapshot.connection_state}")
    if snapshot.call_duration is not None:
        minutes, seconds = divmod(int(snapshot.call_duration), 60)
        parts.append(f"{minutes:02d}:{seconds:02d}")
    if snapshot.call_id:
        parts.append(f"mic={'on' if snapshot.audio_enabled else 'off'} cam={'on' if snapshot.video_enabled else 'off'}")
    if snapshot.failure:
        parts.append(f"failure={snapshot.failure} (type 'join' to retry)")
    if snapshot.last_error:
        parts.append(f"server_error={snapshot.last_error!r}")
    return " ".join(parts)


def start_stdin_reader(loop: asyncio.AbstractEventLoop, stream: TextIO = sys.stdin) -> asyncio.Queue[str | None]:
    """Feed lines from ``stream`` into a queue from a daemon thread; ``None`` marks EOF.

    A daemon thread never holds up interpreter exit while blocked in ``readline``.
    """

    lines: asyncio.Queue[str | None] = asyncio.Queue()

    def deliver(line: str | None) -> None:
        try:
            loop.call_soon_threadsafe(lines.put_nowait, line)
        except RuntimeError:
            # Event loop already closed.
            pass

    def pump() -> None:
        for line in stream:
            deliver(line)
        deliver(None)

    threading.Thread(target=pump, name="stdin-reader", daemon=True).start()
    return lines


async def _read_commands(machine: SessionStateMachine) -> None:
    lines = start_stdin_reader(asyncio.get_running_loop())
    print(HELP)
    while True:
        line = await lines.get()
        if line is None:
            return
        command = line.strip().lower()
        if not command:
            continue
        if command in {"quit", "exit"}:
            return
        if command == "status":
            print(format_snapshot(machine.snapshot()))
            continue
        action = COMMANDS.get(command)
        if action is None:
            print(HELP)
            continue
        getattr(machine, action)()


def load_settings(url: str | None = None) -> Settings:
    """Cached settings, with ``--url`` validated like SIGNALING_URL."""

    settings = get_settings()
    if url is None:
        return settings
    return Settings.model_validate({**settings.model_dump(), "signaling_url": url})


async def _amain(args: argparse.Namespace, settings: Settings) -> None:
    channel = SignalingChannel(
        settings.signaling_url,
        ping_interval=settings.signaling_ping_interval,
        ping_timeout=settings.signaling_ping_timeout,
    )
    media = DeviceMediaAcquirer(
        settings,
        audio=settings.media_audio and not args.no_audio,
        video=settings.media_video and not args.no_video,
    )
    machine = SessionStateMachine(channel, build_credentials(settings), media, settings=settings)
    machine.subscribe(lambda snapshot: print(format_snapshot(snapshot)))

    await machine.start()
    try:
        await _read_commands(machine)
    finally:
        await machine.stop()


def main() -> None:
    args = _parse_args()
    try:
        settings = load_settings(args.url)
    except ValidationError as exc:
        raise SystemExit(f"Invalid configuration: {exc}") from exc

    logging.basicConfig(
        level=args.log_level or settings.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    for noisy in ("aioice", "aiortc", "websockets"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    try:
        asyncio.run(_amain(args, settings))
    except KeyboardInterrupt:
        LOGGER.info("Interrupted")


if __name__ == "__main__":
    main()

"""
Camera/microphone detection via macOS `log stream`.

Camera activity comes from ControlCenter's frame publisher messages,
microphone activity from audiomxd's start/stop recording messages.
"""
from __future__ import annotations

import asyncio
import logging
import re
import sys
from contextlib import aclosing
from enum import Enum
from typing import AsyncIterator, Callable

from onair.state_machine import DetectionEvent, Source

CAMERA_PREDICATE = (
    'subsystem == "com.apple.controlcenter" and '
    'eventMessage contains "Frame publisher cameras"'
)
MIC_PREDICATE = (
    'process == "audiomxd" and '
    '(eventMessage contains "starting recording" or eventMessage contains "stopping recording")'
)

BOILERPLATE_PREFIXES = ("Filtering", "Timestamp", "---")
CAMERA_PHRASE = "Frame publisher cameras changed to"
_CAMERA_SET = re.compile(re.escape(CAMERA_PHRASE) + r"\s*\[(?P<cameras>[^\]]*)")
# Siri and friends also start/stop recording; those are not calls.
_SYSTEM_AUDIO = re.compile(r"corespeechd|Siri|SpeechRecognition|systemsound")
_KNOWN_APPS = re.compile(r"Chrome|Slack|Zoom|Teams|Meet|FaceTime|Discord|WebEx")

MIC_STOP_DEBOUNCE = 0.3

logger = logging.getLogger(__name__)

Emit = Callable[[DetectionEvent], None]
LineSource = Callable[[str], AsyncIterator[str]]


class Event(Enum):
    STARTED = "started"
    STOPPED = "stopped"
    IGNORE = "ignore"


class StreamError(Exception):
    """The log stream could not be started or ended unexpectedly."""


def is_boilerplate(line: str) -> bool:
    return not line.strip() or line.startswith(BOILERPLATE_PREFIXES)


def classify_camera_line(line: str) -> Event:
    if is_boilerplate(line) or CAMERA_PHRASE not in line:
        return Event.IGNORE
    m = _CAMERA_SET.search(line)
    if m is None:
        return Event.STARTED
    cameras = m.group("cameras").strip()
    # An empty publisher set is logged as "[]" or "[:]"
    if not cameras or cameras.startswith(":"):
        return Event.STOPPED
    return Event.STARTED


def classify_mic_line(line: str) -> Event:
    if is_boilerplate(line) or _SYSTEM_AUDIO.search(line):
        return Event.IGNORE
    if "starting recording" in line:
        return Event.STARTED
    if "stopping recording" in line:
        return Event.STOPPED
    return Event.IGNORE


def detect_app(line: str) -> str:
    m = _KNOWN_APPS.search(line)
    return m.group(0) if m else "app"


async def stream_log_lines(predicate: str) -> AsyncIterator[str]:
    """
    Run `log stream` with the given predicate and yield each output line.
    Raises StreamError if the process cannot be started or exits.
    """
    cmd = ["/usr/bin/log", "stream", "--predicate", predicate]
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as e:
        raise StreamError(f"could not start log stream: {e}") from e
    try:
        assert proc.stdout is not None
        while True:
            line = await proc.stdout.readline()
            if not line:
                code = await proc.wait()
                raise StreamError(f"log stream exited with code {code}")
            yield line.decode("utf-8", errors="replace").rstrip("\n")
    finally:
        if proc.returncode is None:
            try:
                proc.terminate()
                await asyncio.wait_for(proc.wait(), timeout=2.0)
            except ProcessLookupError:
                pass
            except asyncio.TimeoutError:
                proc.kill()


class StreamParser:
    """
    Reads one log stream and emits DetectionEvents for its source. run()
    only returns by raising: StreamError when the stream ends, or
    CancelledError on shutdown.
    """

    source: Source
    predicate: str
    name: str

    def __init__(self, lines: LineSource = stream_log_lines) -> None:
        self._lines = lines
        self.received = 0
        self.events = 0

    def classify(self, line: str) -> Event:
        raise NotImplementedError

    def handle(self, event: Event, line: str, emit: Emit) -> None:
        raise NotImplementedError

    def close(self) -> None:
        """Drop anything pending; called on shutdown."""

    async def run(self, emit: Emit) -> None:
        self.received = 0
        self.events = 0
        logger.debug("%s monitor started", self.name)
        try:
            async with aclosing(self._lines(self.predicate)) as lines:
                async for line in lines:
                    self.received += 1
                    event = self.classify(line)
                    if event is Event.IGNORE:
                        continue
                    self.events += 1
                    logger.debug("%s event: %s", self.name, line)
                    self.handle(event, line, emit)
        except asyncio.CancelledError:
            self.close()
            raise
        raise StreamError(f"{self.name} log stream ended")


class CameraParser(StreamParser):
    source = Source.CAMERA
    predicate = CAMERA_PREDICATE
    name = "Camera"

    def classify(self, line: str) -> Event:
        return classify_camera_line(line)

    def handle(self, event: Event, line: str, emit: Emit) -> None:
        active = event is Event.STARTED
        logger.info("Camera %s", "ON" if active else "OFF")
        emit(DetectionEvent(self.source, active))


class MicrophoneParser(StreamParser):
    """
    Microphone stops are held for `debounce` seconds. Some apps briefly stop
    and restart recording when switching audio devices mid-call; a start
    inside the window cancels the pending stop so the light never flickers.
    """

    source = Source.MICROPHONE
    predicate = MIC_PREDICATE
    name = "Microphone"

    def __init__(self, lines: LineSource = stream_log_lines, debounce: float = MIC_STOP_DEBOUNCE) -> None:
        super().__init__(lines)
        self.debounce = debounce
        self._pending_stop: asyncio.Task[None] | None = None

    def classify(self, line: str) -> Event:
        if _SYSTEM_AUDIO.search(line):
            logger.debug("Ignoring system audio: %s", line)
        return classify_mic_line(line)

    def handle(self, event: Event, line: str, emit: Emit) -> None:
        if event is Event.STARTED:
            if self._cancel_pending_stop():
                logger.debug("Microphone restarted within %.1fs; ignoring stop", self.debounce)
            logger.info("Microphone ON (%s)", detect_app(line))
            emit(DetectionEvent(self.source, True))
        elif self._pending_stop is None or self._pending_stop.done():
            self._pending_stop = asyncio.create_task(self._deliver_stop(emit))

    async def _deliver_stop(self, emit: Emit) -> None:
        await asyncio.sleep(self.debounce)
        self._pending_stop = None
        logger.info("Microphone OFF")
        emit(DetectionEvent(self.source, False))

    def _cancel_pending_stop(self) -> bool:
        task, self._pending_stop = self._pending_stop, None
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def close(self) -> None:
        self._cancel_pending_stop()


def default_parsers() -> list[StreamParser]:
    return [CameraParser(), MicrophoneParser()]


if __name__ == "__main__":
    # Quick check: print classified events from both streams
    async def _run() -> None:
        def show(event: DetectionEvent) -> None:
            print(f"  {event.source.value}={'on' if event.active else 'off'}")

        await asyncio.gather(*(p.run(show) for p in default_parsers()))

    logging.basicConfig(level=logging.DEBUG)
    print("Streaming (Ctrl+C to stop)...")
    try:
        asyncio.run(_run())
    except (KeyboardInterrupt, StreamError):
        sys.exit(0)

"""Tests for the monitor: parser restarts, single reconciler, restart safety, shutdown."""
from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import patch

import pytest

from onair.av_monitor import CameraParser, MicrophoneParser, StreamError
from onair.config import Config, DetectionPolicy
from onair.monitor import Monitor, supervise
from onair.shortcuts import InvocationError
from onair.state_machine import DetectionEvent, LightState, Source
from onair.status import PersistedStatus, load_status, save_status

TS = "2024-05-01 10:00:00.000000-0700  0x1a2b     Default     0x0    "
CAM_ON = TS + "Frame publisher cameras changed to [0x600:FaceTime HD Camera]"
CAM_OFF = TS + "Frame publisher cameras changed to [:]"
MIC_START = TS + "audiomxd: starting recording for us.zoom.xos (Zoom)"
MIC_STOP = TS + "audiomxd: stopping recording for us.zoom.xos (Zoom)"


class RecordingInvoker:
    def __init__(self, fail: int = 0, delay: float = 0.0) -> None:
        self.calls: list[str] = []
        self.fail = fail
        self.delay = delay

    async def invoke(self, name: str) -> None:
        self.calls.append(name)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            self.fail -= 1
            raise InvocationError("shortcut failed")


def scripted(*items):
    """Line source: fixed lines with optional pauses, then blocks until cancelled."""
    async def source(predicate):
        for item in items:
            if isinstance(item, (int, float)):
                await asyncio.sleep(item)
            else:
                yield item
        await asyncio.sleep(3600)
        yield ""
    return source


def make_config(tmp_path: Path, mode: str = "both") -> Config:
    return Config.from_dict({"DETECTION_MODE": mode, "STATE_DIR": str(tmp_path)})


async def run_monitor(monitor: Monitor, seconds: float) -> None:
    task = asyncio.create_task(monitor.run(handle_signals=False))
    await asyncio.sleep(seconds)
    monitor.request_stop()
    await asyncio.wait_for(task, timeout=2.0)


@pytest.mark.asyncio
async def test_supervise_restarts_with_backoff() -> None:
    attempts = []

    async def dead_stream(predicate):
        attempts.append(predicate)
        raise StreamError("log stream exited with code 1")
        yield  # pragma: no cover

    sleeps: list[float] = []
    real_sleep = asyncio.sleep

    async def fake_sleep(seconds):
        sleeps.append(seconds)
        if len(sleeps) >= 5:
            raise asyncio.CancelledError
        await real_sleep(0)

    parser = CameraParser(lines=dead_stream)
    with patch("onair.monitor.asyncio.sleep", side_effect=fake_sleep):
        with pytest.raises(asyncio.CancelledError):
            await supervise(parser, lambda e: None, initial_backoff=1.0, max_backoff=4.0)
    assert sleeps == [1.0, 2.0, 4.0, 4.0, 4.0]
    assert len(attempts) == 5


@pytest.mark.asyncio
async def test_supervise_resets_backoff_after_events() -> None:
    runs = [0]

    async def flaky(predicate):
        runs[0] += 1
        if runs[0] == 3:
            yield CAM_ON
        raise StreamError("gone")

    sleeps: list[float] = []
    real_sleep = asyncio.sleep

    async def fake_sleep(seconds):
        sleeps.append(seconds)
        if len(sleeps) >= 4:
            raise asyncio.CancelledError
        await real_sleep(0)

    events: list[DetectionEvent] = []
    with patch("onair.monitor.asyncio.sleep", side_effect=fake_sleep):
        with pytest.raises(asyncio.CancelledError):
            await supervise(CameraParser(lines=flaky), events.append, initial_backoff=1.0, max_backoff=60.0)
    assert sleeps == [1.0, 2.0, 1.0, 2.0]
    assert events == [DetectionEvent(Source.CAMERA, True)]


@pytest.mark.asyncio
async def test_supervise_survives_unexpected_errors() -> None:
    calls = [0]

    def broken_emit(event):
        calls[0] += 1
        raise RuntimeError("bug")

    sleeps: list[float] = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)
        raise asyncio.CancelledError

    with patch("onair.monitor.asyncio.sleep", side_effect=fake_sleep):
        with pytest.raises(asyncio.CancelledError):
            await supervise(CameraParser(lines=scripted(CAM_ON)), broken_emit)
    assert calls[0] == 1
    assert sleeps == [1.0]


@pytest.mark.asyncio
async def test_camera_on_then_off_drives_light(tmp_path: Path) -> None:
    invoker = RecordingInvoker()
    monitor = Monitor(
        make_config(tmp_path),
        invoker=invoker,
        parsers=[CameraParser(lines=scripted(CAM_ON, 0.05, CAM_OFF)), MicrophoneParser(lines=scripted())],
    )
    await run_monitor(monitor, 0.2)
    assert invoker.calls == ["On Air", "Off Air"]
    assert load_status(tmp_path / "state") == PersistedStatus(False, False, LightState.OFF)


@pytest.mark.asyncio
async def test_state_file_written_after_transition(tmp_path: Path) -> None:
    invoker = RecordingInvoker()
    monitor = Monitor(
        make_config(tmp_path),
        invoker=invoker,
        parsers=[CameraParser(lines=scripted()), MicrophoneParser(lines=scripted(MIC_START))],
    )
    await run_monitor(monitor, 0.1)
    assert invoker.calls == ["On Air"]
    assert (tmp_path / "state").read_text() == "CAMERA_ON=false\nMIC_ON=true\nLIGHT_STATE=on\n"


@pytest.mark.asyncio
async def test_mic_flap_does_not_flicker(tmp_path: Path) -> None:
    invoker = RecordingInvoker()
    monitor = Monitor(
        make_config(tmp_path),
        invoker=invoker,
        parsers=[
            CameraParser(lines=scripted()),
            MicrophoneParser(lines=scripted(MIC_START, 0.05, MIC_STOP, 0.1, MIC_START)),
        ],
    )
    await run_monitor(monitor, 0.6)
    assert invoker.calls == ["On Air"]
    assert monitor.controller is not None
    assert monitor.controller.light is LightState.ON


@pytest.mark.asyncio
async def test_restart_with_persisted_on_does_not_reinvoke(tmp_path: Path) -> None:
    save_status(tmp_path / "state", PersistedStatus(camera_on=True, mic_on=False, light_state=LightState.ON))
    invoker = RecordingInvoker()
    monitor = Monitor(
        make_config(tmp_path),
        invoker=invoker,
        parsers=[CameraParser(lines=scripted()), MicrophoneParser(lines=scripted())],
    )
    await run_monitor(monitor, 0.05)
    assert invoker.calls == []
    assert monitor.controller.light is LightState.ON


@pytest.mark.asyncio
async def test_startup_reconciles_stale_persisted_state(tmp_path: Path) -> None:
    # Saved while the light was on, but camera-only mode now wants it off.
    save_status(tmp_path / "state", PersistedStatus(camera_on=False, mic_on=True, light_state=LightState.ON))
    invoker = RecordingInvoker()
    monitor = Monitor(
        make_config(tmp_path, mode="camera"),
        invoker=invoker,
        parsers=[CameraParser(lines=scripted()), MicrophoneParser(lines=scripted())],
    )
    await run_monitor(monitor, 0.05)
    assert invoker.calls == ["Off Air"]


@pytest.mark.asyncio
async def test_failed_invocation_retried_on_next_event(tmp_path: Path) -> None:
    invoker = RecordingInvoker(fail=1)
    monitor = Monitor(
        make_config(tmp_path),
        invoker=invoker,
        parsers=[
            CameraParser(lines=scripted(CAM_ON)),
            MicrophoneParser(lines=scripted(0.05, MIC_START)),
        ],
    )
    await run_monitor(monitor, 0.15)
    assert invoker.calls == ["On Air", "On Air"]
    assert monitor.controller.light is LightState.ON


@pytest.mark.asyncio
async def test_stop_waits_for_inflight_invocation(tmp_path: Path) -> None:
    invoker = RecordingInvoker(delay=0.2)
    monitor = Monitor(
        make_config(tmp_path),
        invoker=invoker,
        parsers=[CameraParser(lines=scripted(CAM_ON)), MicrophoneParser(lines=scripted())],
    )
    await run_monitor(monitor, 0.05)
    assert invoker.calls == ["On Air"]
    assert monitor.controller.light is LightState.ON
    assert load_status(tmp_path / "state").light_state is LightState.ON


@pytest.mark.asyncio
async def test_stop_cancels_parsers(tmp_path: Path) -> None:
    closed = []

    async def source(predicate):
        try:
            await asyncio.sleep(3600)
            yield ""
        finally:
            closed.append(predicate)

    monitor = Monitor(
        make_config(tmp_path),
        invoker=RecordingInvoker(),
        parsers=[CameraParser(lines=source), MicrophoneParser(lines=source)],
    )
    await run_monitor(monitor, 0.05)
    assert len(closed) == 2


@pytest.mark.asyncio
async def test_default_invoker_and_parsers(tmp_path: Path) -> None:
    monitor = Monitor(make_config(tmp_path))
    assert [type(p) for p in monitor.parsers] == [CameraParser, MicrophoneParser]
    assert monitor.status_path == tmp_path / "state"
    assert monitor.config.detection_mode is DetectionPolicy.EITHER
    assert hasattr(monitor.invoker, "invoke")


@pytest.mark.asyncio
async def test_supervise_header_lines_do_not_reset_backoff() -> None:
    # `log stream` always prints its Filtering header before dying.
    async def header_then_exit(predicate):
        yield 'Filtering the log data using "subsystem == \\"com.apple.controlcenter\\""'
        raise StreamError("log stream exited with code 1")

    sleeps: list[float] = []
    real_sleep = asyncio.sleep

    async def fake_sleep(seconds):
        sleeps.append(seconds)
        if len(sleeps) >= 5:
            raise asyncio.CancelledError
        await real_sleep(0)

    parser = CameraParser(lines=header_then_exit)
    with patch("onair.monitor.asyncio.sleep", side_effect=fake_sleep):
        with pytest.raises(asyncio.CancelledError):
            await supervise(parser, lambda e: None, initial_backoff=1.0, max_backoff=60.0)
    assert sleeps == [1.0, 2.0, 4.0, 8.0, 16.0]
    assert parser.received == 1
    assert parser.events == 0


@pytest.mark.asyncio
async def test_cancel_during_backoff_drops_pending_mic_stop() -> None:
    async def stop_then_exit(predicate):
        yield MIC_STOP
        raise StreamError("gone")

    events: list[DetectionEvent] = []
    parser = MicrophoneParser(lines=stop_then_exit, debounce=0.1)
    task = asyncio.create_task(supervise(parser, events.append, initial_backoff=10.0))
    await asyncio.sleep(0.02)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    await asyncio.sleep(0.2)
    assert events == []


class CrashingInvoker(RecordingInvoker):
    """Raises a non-shortcut error on the first call."""

    async def invoke(self, name: str) -> None:
        self.calls.append(name)
        if len(self.calls) == 1:
            raise ValueError("embedded null byte")


@pytest.mark.asyncio
async def test_reconciler_survives_unexpected_invoker_error(tmp_path: Path) -> None:
    invoker = CrashingInvoker()
    monitor = Monitor(
        make_config(tmp_path),
        invoker=invoker,
        parsers=[
            CameraParser(lines=scripted(CAM_ON, 0.03, CAM_OFF, 0.03, CAM_ON)),
            MicrophoneParser(lines=scripted()),
        ],
    )
    await run_monitor(monitor, 0.15)
    assert invoker.calls == ["On Air", "On Air"]
    assert monitor.controller.light is LightState.ON
    assert monitor._queue.empty()


@pytest.mark.asyncio
async def test_stop_drops_queued_events_after_inflight(tmp_path: Path) -> None:
    invoker = RecordingInvoker(delay=0.2)
    monitor = Monitor(
        make_config(tmp_path),
        invoker=invoker,
        parsers=[
            CameraParser(lines=scripted(CAM_ON, 0.01, CAM_OFF, 0.01, CAM_ON)),
            MicrophoneParser(lines=scripted()),
        ],
    )
    await run_monitor(monitor, 0.05)
    assert invoker.calls == ["On Air"]
    assert load_status(tmp_path / "state").light_state is LightState.ON


@pytest.mark.asyncio
async def test_signal_handlers_installed_before_startup_reconcile(tmp_path: Path) -> None:
    save_status(tmp_path / "state", PersistedStatus(camera_on=True, mic_on=False, light_state=LightState.OFF))
    order: list[str] = []
    started: list[str] = []

    async def source(predicate):
        started.append(predicate)
        await asyncio.sleep(3600)
        yield ""

    monitor: Monitor

    class StopDuringInvoke:
        async def invoke(self, name: str) -> None:
            order.append("invoke")
            # SIGTERM arriving while the startup shortcut runs
            monitor.request_stop()

    monitor = Monitor(
        make_config(tmp_path),
        invoker=StopDuringInvoke(),
        parsers=[CameraParser(lines=source), MicrophoneParser(lines=source)],
    )
    with patch.object(Monitor, "_install_signal_handlers", side_effect=lambda: order.append("signals") or []):
        await asyncio.wait_for(monitor.run(), timeout=1.0)
    assert order == ["signals", "invoke"]
    assert started == []
    assert load_status(tmp_path / "state").light_state is LightState.ON

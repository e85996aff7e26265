"""
Persisted status: the last confirmed camera/mic/light snapshot, stored as
KEY=value lines so a restarted monitor does not re-trigger the light.
"""
from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

from onair.state_machine import DetectionState, LightState

logger = logging.getLogger(__name__)


@dataclass
class PersistedStatus:
    camera_on: bool = False
    mic_on: bool = False
    light_state: LightState = LightState.OFF

    @classmethod
    def snapshot(cls, state: DetectionState, light: LightState) -> PersistedStatus:
        return cls(camera_on=state.camera_on, mic_on=state.mic_on, light_state=light)

    def detection_state(self) -> DetectionState:
        return DetectionState(camera_on=self.camera_on, mic_on=self.mic_on)


def format_status(status: PersistedStatus) -> str:
    return (
        f"CAMERA_ON={str(status.camera_on).lower()}\n"
        f"MIC_ON={str(status.mic_on).lower()}\n"
        f"LIGHT_STATE={status.light_state.value}\n"
    )


def parse_status(text: str) -> PersistedStatus:
    status = PersistedStatus()
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        key = key.strip()
        value = value.strip().strip("'\"").lower()
        if key in ("CAMERA_ON", "MIC_ON"):
            if value not in ("true", "false"):
                logger.warning("Ignoring bad %s value in state file: %r", key, value)
                continue
            setattr(status, key.lower(), value == "true")
        elif key == "LIGHT_STATE":
            try:
                status.light_state = LightState(value)
            except ValueError:
                logger.warning("Ignoring bad LIGHT_STATE value in state file: %r", value)
    return status


def load_status(path: str | Path) -> PersistedStatus:
    """Read the state file; a missing file means everything off."""
    try:
        text = Path(path).read_text()
    except FileNotFoundError:
        return PersistedStatus()
    return parse_status(text)


def save_status(path: str | Path, status: PersistedStatus) -> None:
    """Write the state file atomically (temp file in the same dir, then rename)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=".state-", dir=path.parent)
    try:
        with os.fdopen(fd, "w") as f:
            f.write(format_status(status))
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def clear_status(path: str | Path) -> None:
    Path(path).unlink(missing_ok=True)

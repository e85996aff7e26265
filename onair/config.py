"""
Load and validate config.yaml with defaults.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

DEFAULT_SHORTCUT_ON = "On Air"
DEFAULT_SHORTCUT_OFF = "Off Air"
DEFAULT_DETECTION_MODE = "both"
DEFAULT_STATE_DIR = Path.home() / ".onair"

CONFIG_FILENAME = "config.yaml"

DEFAULT_CONFIG_TEMPLATE = """\
# On Air configuration
# Edit these values and reinstall: onair install

# Names must match the shortcuts in the Shortcuts app exactly.
SHORTCUT_ON: "On Air"
SHORTCUT_OFF: "Off Air"

# camera - only camera usage turns the light on
# mic    - only microphone usage turns the light on
# both   - camera OR microphone (recommended)
DETECTION_MODE: both

# Verbose logging for troubleshooting.
ENABLE_DEBUG_LOGS: false
"""


class ConfigError(ValueError):
    """Configuration is missing or malformed."""


class DetectionPolicy(Enum):
    CAMERA_ONLY = "camera"
    MIC_ONLY = "mic"
    EITHER = "both"


@dataclass
class Config:
    shortcut_on: str = DEFAULT_SHORTCUT_ON
    shortcut_off: str = DEFAULT_SHORTCUT_OFF
    detection_mode: DetectionPolicy = DetectionPolicy.EITHER
    debug: bool = False
    state_dir: Path = field(default_factory=lambda: DEFAULT_STATE_DIR)
    path: Path | None = None  # file this config was read from, if any

    @property
    def log_file(self) -> Path:
        return self.state_dir / "on-air.log"

    @property
    def status_file(self) -> Path:
        return self.state_dir / "state"

    @property
    def stdout_log(self) -> Path:
        return self.state_dir / "stdout.log"

    @property
    def stderr_log(self) -> Path:
        return self.state_dir / "stderr.log"

    @classmethod
    def load(cls, path: str | Path | None = None) -> Config:
        if path is None:
            path = find_config_path()
            if path is None:
                return cls()
        path = Path(path).expanduser()
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f)
        except FileNotFoundError:
            raise ConfigError(f"Config file not found: {path}") from None
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a mapping, got {type(data).__name__}")
        config = cls.from_dict(data)
        config.path = path
        return config

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Config:
        def shortcut_name(key: str, default: str) -> str:
            raw = data.get(key)
            if raw is None:
                return default
            if not isinstance(raw, str) or not raw.strip():
                raise ConfigError(f"{key} must be a non-empty string, got {raw!r}")
            return raw.strip()

        mode = data.get("DETECTION_MODE", DEFAULT_DETECTION_MODE)
        try:
            policy = DetectionPolicy(str(mode).strip().lower())
        except ValueError:
            choices = ", ".join(p.value for p in DetectionPolicy)
            raise ConfigError(f"DETECTION_MODE must be one of {choices}, got {mode!r}") from None

        state_dir = data.get("STATE_DIR")
        if state_dir is not None and (not isinstance(state_dir, str) or not state_dir):
            raise ConfigError(f"STATE_DIR must be a path string, got {state_dir!r}")

        return cls(
            shortcut_on=shortcut_name("SHORTCUT_ON", DEFAULT_SHORTCUT_ON),
            shortcut_off=shortcut_name("SHORTCUT_OFF", DEFAULT_SHORTCUT_OFF),
            detection_mode=policy,
            debug=_parse_bool("ENABLE_DEBUG_LOGS", data.get("ENABLE_DEBUG_LOGS")),
            state_dir=Path(state_dir).expanduser() if state_dir else DEFAULT_STATE_DIR,
        )


def _parse_bool(key: str, raw: Any) -> bool:
    # YAML gives real booleans for true/false, but quoted strings are common too.
    if raw is None:
        return False
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, str) and raw.strip().lower() in ("true", "false"):
        return raw.strip().lower() == "true"
    raise ConfigError(f"{key} must be true or false, got {raw!r}")


def find_config_path() -> Path | None:
    for candidate in (DEFAULT_STATE_DIR, Path.cwd()):
        p = candidate / CONFIG_FILENAME
        if p.is_file():
            return p
    return None


def write_default_config(path: str | Path) -> Path:
    path = Path(path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(DEFAULT_CONFIG_TEMPLATE)
    return path

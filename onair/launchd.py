"""
launchd user agent: generate the plist that keeps `onair monitor` running,
and load/unload it with launchctl.
"""
from __future__ import annotations

import logging
import platform
import plistlib
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Any

from onair.config import Config
from onair.shortcuts import SHORTCUTS_CLI

LABEL = "com.onair"
LAUNCH_AGENTS_DIR = Path.home() / "Library" / "LaunchAgents"
MIN_MACOS_MAJOR = 12

logger = logging.getLogger(__name__)


def plist_path() -> Path:
    return LAUNCH_AGENTS_DIR / f"{LABEL}.plist"


def program_arguments(config: Config) -> list[str]:
    args = [sys.executable, "-m", "onair"]
    if config.path is not None:
        args += ["--config", str(config.path.resolve())]
    args.append("monitor")
    return args


def build_plist(config: Config) -> dict[str, Any]:
    return {
        "Label": LABEL,
        "ServiceDescription": "On Air - Busy light for video meetings",
        "ProgramArguments": program_arguments(config),
        "RunAtLoad": True,
        "KeepAlive": True,
        "StandardOutPath": str(config.stdout_log),
        "StandardErrorPath": str(config.stderr_log),
        "ThrottleInterval": 5,
    }


def write_plist(config: Config, path: Path | None = None) -> Path:
    path = path or plist_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    config.state_dir.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        plistlib.dump(build_plist(config), f)
    return path


def _launchctl(*args: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        ["launchctl", *args],
        capture_output=True,
        text=True,
        timeout=15,
    )


def is_running() -> bool:
    try:
        out = _launchctl("list")
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return False
    return out.returncode == 0 and any(
        line.split("\t")[-1] == LABEL for line in out.stdout.splitlines()
    )


def unload_agent(path: Path | None = None) -> bool:
    """Unload the agent if its plist exists. Returns True if there was one."""
    path = path or plist_path()
    if not path.is_file():
        return False
    try:
        _launchctl("unload", str(path))
    except (FileNotFoundError, subprocess.TimeoutExpired) as e:
        logger.warning("launchctl unload failed: %s", e)
    return True


def install_agent(config: Config, path: Path | None = None) -> bool:
    """Replace any existing agent with a fresh plist and load it. Returns True on success."""
    path = path or plist_path()
    if unload_agent(path):
        logger.info("Removed existing installation")
    write_plist(config, path)
    try:
        out = _launchctl("load", "-w", str(path))
    except (FileNotFoundError, subprocess.TimeoutExpired) as e:
        logger.error("launchctl load failed: %s", e)
        return False
    if out.returncode != 0:
        logger.error("launchctl load failed: %s", out.stderr.strip())
        return False
    return True


def uninstall_agent(path: Path | None = None) -> bool:
    """Unload and delete the agent plist. Returns True if one was installed."""
    path = path or plist_path()
    if not unload_agent(path):
        return False
    path.unlink(missing_ok=True)
    return True


def check_requirements() -> list[str]:
    """Problems that prevent installation; empty when all is well."""
    problems: list[str] = []
    version = platform.mac_ver()[0]
    if not version:
        problems.append("On Air only runs on macOS.")
    else:
        major = int(version.split(".")[0])
        if major < MIN_MACOS_MAJOR:
            problems.append(
                f"On Air requires macOS {MIN_MACOS_MAJOR} (Monterey) or later; you have {version}."
            )
    if shutil.which(SHORTCUTS_CLI) is None:
        problems.append(f"'{SHORTCUTS_CLI}' command not found (available on macOS 12+).")
    return problems

"""
Run Shortcuts app automations (the actual light switch) through osascript.
"""
from __future__ import annotations

import asyncio
import logging
import subprocess
from typing import Protocol

OSASCRIPT = "/usr/bin/osascript"
SHORTCUTS_CLI = "shortcuts"
DEFAULT_TIMEOUT = 10.0

logger = logging.getLogger(__name__)


class InvocationError(Exception):
    """A shortcut failed, timed out, or could not be started."""


class Invoker(Protocol):
    async def invoke(self, name: str) -> None:
        ...


def applescript_for(name: str) -> str:
    escaped = name.replace("\\", "\\\\").replace('"', '\\"')
    # Shortcuts Events runs HomeKit shortcuts more reliably than `shortcuts run`.
    return f'tell application "Shortcuts Events" to run shortcut "{escaped}"'


class ShortcutInvoker:
    """Runs a named shortcut and waits up to `timeout` seconds for it to finish."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT) -> None:
        self.timeout = timeout

    async def invoke(self, name: str) -> None:
        cmd = [OSASCRIPT, "-e", applescript_for(name)]
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as e:
            raise InvocationError(f"could not start osascript: {e}") from e

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            raise InvocationError(f"shortcut {name!r} timed out after {self.timeout:g}s") from None

        if proc.returncode != 0:
            detail = (stderr or b"").decode("utf-8", errors="replace").strip()
            raise InvocationError(
                f"shortcut {name!r} exited with code {proc.returncode}"
                + (f": {detail}" if detail else "")
            )
        logger.debug("Ran shortcut %r", name)


def list_shortcuts() -> list[str]:
    """Names from `shortcuts list`; empty when the command is unavailable or fails."""
    try:
        out = subprocess.run(
            [SHORTCUTS_CLI, "list"],
            capture_output=True,
            text=True,
            timeout=15,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return []
    if out.returncode != 0 or not out.stdout:
        return []
    return [ln.strip() for ln in out.stdout.splitlines() if ln.strip()]

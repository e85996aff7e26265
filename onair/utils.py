from __future__ import annotations

import logging
import sys
import time
from collections import deque
from pathlib import Path
from typing import Iterator

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def setup_logging(log_file: Path | None = None, debug: bool = False) -> None:
    """
    Configure root logging: stdout plus, when given, an append-only activity
    log file. Replaces any handlers installed earlier.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        handlers=handlers,
        force=True,
    )


def tail_lines(path: Path, count: int = 8) -> list[str]:
    """Last `count` lines of a text file; empty if it does not exist."""
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            return [ln.rstrip("\n") for ln in deque(f, maxlen=count)]
    except FileNotFoundError:
        return []


def follow(path: Path, poll_interval: float = 0.5, from_end: bool = True) -> Iterator[str]:
    """Yield lines appended to `path`, like `tail -f`. Runs until interrupted."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.touch(exist_ok=True)
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        if from_end:
            f.seek(0, 2)
        while True:
            line = f.readline()
            if line:
                yield line.rstrip("\n")
            else:
                time.sleep(poll_interval)

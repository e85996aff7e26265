"""On Air: turn a smart light on while the Mac's camera or microphone is in use."""

__version__ = "1.0.0"

"""
On Air — entry point. Run with: python -m onair <command>
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import time
from pathlib import Path

from onair import __version__, launchd
from onair.config import DEFAULT_STATE_DIR, CONFIG_FILENAME, Config, ConfigError, write_default_config
from onair.monitor import Monitor
from onair.shortcuts import InvocationError, ShortcutInvoker, list_shortcuts
from onair.status import clear_status, format_status, load_status
from onair.utils import LOG_DATEFMT, LOG_FORMAT, follow, setup_logging, tail_lines

logging.basicConfig(level=logging.INFO, format=LOG_FORMAT, datefmt=LOG_DATEFMT)
logger = logging.getLogger("onair")

COMMANDS = {
    "install": "Install and start On Air",
    "uninstall": "Stop and remove On Air",
    "monitor": "Watch camera/microphone and drive the light (used by launchd)",
    "test": "Test that shortcuts work correctly",
    "status": "Show current status and recent logs",
    "on": "Manually turn light on",
    "off": "Manually turn light off",
    "logs": "Show live log stream",
    "help": "Show this help message",
    "version": "Show version",
}


async def run(config_path: Path | None = None) -> None:
    config = Config.load(config_path)
    setup_logging(config.log_file, config.debug)
    await Monitor(config).run()


def run_shortcut(name: str) -> bool:
    try:
        asyncio.run(ShortcutInvoker().invoke(name))
    except InvocationError as e:
        logger.debug("Shortcut %r failed: %s", name, e)
        return False
    return True


def cmd_install(config: Config) -> int:
    print("\nOn Air v%s Installer\n==========================\n" % __version__)
    problems = launchd.check_requirements()
    if problems:
        for p in problems:
            print(f"ERROR: {p}")
        return 1

    if config.path is None:
        path = write_default_config(DEFAULT_STATE_DIR / CONFIG_FILENAME)
        print(f"Created configuration file: {path}")
        config = Config.load(path)

    print("Checking shortcuts...")
    available = set(list_shortcuts())
    missing = [n for n in (config.shortcut_on, config.shortcut_off) if n not in available]
    if missing:
        for name in missing:
            print(f"\nERROR: Shortcut '{name}' not found!")
        print(
            "\nPlease create the missing shortcuts in the Shortcuts app:\n\n"
            "  1. Open Shortcuts app\n"
            "  2. Click '+' to create new shortcut\n"
            f"  3. Name it exactly: {config.shortcut_on} (or {config.shortcut_off})\n"
            "  4. Add action: 'Control Home'\n"
            "  5. Select your switch and set to Turn On (or Turn Off)\n"
            "  6. Save and run this installer again\n"
        )
        return 1
    print("Shortcuts found!")

    print("Testing shortcuts...")
    if not run_shortcut(config.shortcut_on):
        print(f"WARNING: Could not run '{config.shortcut_on}'. You may need to grant permissions.")
    time.sleep(1)
    run_shortcut(config.shortcut_off)

    print("Installing LaunchAgent...")
    if not launchd.install_agent(config):
        print("ERROR: Failed to load LaunchAgent")
        return 1
    time.sleep(2)
    if not launchd.is_running():
        print(f"\nWARNING: Service may not have started correctly.\nCheck: {config.stderr_log}")
        return 1

    when = {
        "camera": "Camera is activated",
        "mic": "Microphone is activated",
        "both": "Camera OR microphone is activated",
    }[config.detection_mode.value]
    print(
        "\n============================================\n"
        " Installation complete!\n"
        "============================================\n\n"
        f" Your light will turn ON when: {when}\n\n"
        " Commands:\n"
        "    onair status     Check status\n"
        "    onair test       Test shortcuts\n"
        "    onair uninstall  Remove\n\n"
        f" Logs:\n    onair logs  ({config.log_file})\n"
    )
    return 0


def cmd_uninstall(config: Config) -> int:
    print("\nUninstalling On Air...")
    if launchd.uninstall_agent():
        print("LaunchAgent removed.")
    clear_status(config.status_file)
    print(
        "\nOn Air has been uninstalled.\n\n"
        f"Note: configuration and logs preserved at:\n  {config.state_dir}\n"
    )
    return 0


def cmd_test(config: Config) -> int:
    print("\nTesting shortcuts...\n")
    ok_on = run_shortcut(config.shortcut_on)
    print(f"1. '{config.shortcut_on}': " + ("✓ Success - light should be ON" if ok_on else "✗ Failed"))
    time.sleep(2)
    ok_off = run_shortcut(config.shortcut_off)
    print(f"2. '{config.shortcut_off}': " + ("✓ Success - light should be OFF" if ok_off else "✗ Failed"))
    print("\nTest complete.\n")
    return 0 if ok_on and ok_off else 1


def cmd_status(config: Config) -> int:
    print(f"\nOn Air Status\n=============\n\nVersion: {__version__}\n")
    print("Service: " + ("RUNNING" if launchd.is_running() else "STOPPED"))
    print(f"Detection: {config.detection_mode.value}\n")
    if config.status_file.is_file():
        print("Current State:")
        for line in format_status(load_status(config.status_file)).splitlines():
            print(f"  {line}")
        print()
    print("Recent Activity:")
    lines = tail_lines(config.log_file, 8)
    for line in lines or ["(no logs yet)"]:
        print(f"  {line}")
    print()
    return 0


def cmd_switch(config: Config, on: bool) -> int:
    name = config.shortcut_on if on else config.shortcut_off
    if not run_shortcut(name):
        print(f"ERROR: Failed to run shortcut '{name}'")
        return 1
    print("🔴 ON AIR" if on else "⚪ Off Air")
    return 0


def cmd_logs(config: Config) -> int:
    for line in tail_lines(config.log_file, 10):
        print(line)
    for line in follow(config.log_file):
        print(line, flush=True)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="onair",
        description=f"On Air v{__version__} - Automatic busy light for video meetings",
        epilog="Commands:\n" + "\n".join(f"  {k:<10}  {v}" for k, v in COMMANDS.items()),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help=f"Path to config.yaml (default: {DEFAULT_STATE_DIR / CONFIG_FILENAME} or ./{CONFIG_FILENAME})",
    )
    parser.add_argument("-v", "--version", action="version", version=f"On Air v{__version__}")
    parser.add_argument("command", nargs="?", choices=list(COMMANDS), metavar="command")
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command in (None, "help"):
        parser.print_help()
        return
    if args.command == "version":
        print(f"On Air v{__version__}")
        return

    try:
        if args.command == "monitor":
            asyncio.run(run(config_path=args.config))
            return
        config = Config.load(args.config)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted.")
        sys.exit(0)

    handlers = {
        "install": cmd_install,
        "uninstall": cmd_uninstall,
        "test": cmd_test,
        "status": cmd_status,
        "on": lambda c: cmd_switch(c, True),
        "off": lambda c: cmd_switch(c, False),
        "logs": cmd_logs,
    }
    try:
        code = handlers[args.command](config)
    except KeyboardInterrupt:
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    main()

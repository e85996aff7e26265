"""
Monitor: run both log-stream parsers, feed their events through one
reconciler task, and shut down cleanly on SIGTERM/SIGINT.
"""
from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path
from typing import Sequence

from onair import __version__
from onair.av_monitor import Emit, StreamError, StreamParser, default_parsers
from onair.config import Config
from onair.shortcuts import Invoker, ShortcutInvoker
from onair.state_machine import DetectionEvent, DetectionState, LightController, LightState
from onair.status import PersistedStatus, load_status, save_status

RESTART_BACKOFF_INITIAL = 1.0
RESTART_BACKOFF_MAX = 60.0

logger = logging.getLogger(__name__)


async def supervise(
    parser: StreamParser,
    emit: Emit,
    initial_backoff: float = RESTART_BACKOFF_INITIAL,
    max_backoff: float = RESTART_BACKOFF_MAX,
) -> None:
    """
    Keep one parser running, restarting it with capped exponential backoff.
    The backoff resets only after a run that produced detection events;
    header and noise lines do not count.
    """
    backoff = initial_backoff
    try:
        while True:
            try:
                await parser.run(emit)
            except StreamError as e:
                logger.warning("%s stream failed: %s", parser.name, e)
            except Exception as e:
                logger.exception("%s monitor crashed: %s", parser.name, e)
            if parser.events:
                backoff = initial_backoff
            logger.info("Restarting %s monitor in %.0fs", parser.name.lower(), backoff)
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, max_backoff)
    except asyncio.CancelledError:
        parser.close()
        raise


class Monitor:
    """
    Owns the detection/light state for one `onair monitor` process. Parsers
    only enqueue events; a single reconciler task applies them and drives
    the light, so shortcut invocations never overlap.
    """

    def __init__(
        self,
        config: Config,
        invoker: Invoker | None = None,
        parsers: Sequence[StreamParser] | None = None,
        status_path: Path | None = None,
    ) -> None:
        self.config = config
        self.invoker = invoker or ShortcutInvoker()
        self.parsers = list(parsers) if parsers is not None else default_parsers()
        self.status_path = status_path or config.status_file
        self.controller: LightController | None = None
        self._queue: asyncio.Queue[DetectionEvent | None] = asyncio.Queue()
        self._stop = asyncio.Event()

    def request_stop(self) -> None:
        self._stop.set()

    def _persist(self, state: DetectionState, light: LightState) -> None:
        save_status(self.status_path, PersistedStatus.snapshot(state, light))

    def _build_controller(self) -> LightController:
        status = load_status(self.status_path)
        logger.debug(
            "Loaded state: camera=%s mic=%s light=%s",
            status.camera_on, status.mic_on, status.light_state.value,
        )
        return LightController(
            self.invoker,
            self.config.shortcut_on,
            self.config.shortcut_off,
            self.config.detection_mode,
            state=status.detection_state(),
            light=status.light_state,
            on_transition=self._persist,
        )

    async def _reconcile(self, controller: LightController) -> None:
        try:
            await controller.reconcile()
        except Exception as e:
            # Light state is untouched, so the next event tries again.
            logger.exception("Reconcile failed: %s", e)

    async def _reconcile_loop(self, controller: LightController) -> None:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            controller.state.apply(event)
            await self._reconcile(controller)

    def _drop_pending_events(self) -> int:
        dropped = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            dropped += 1
        return dropped

    def _install_signal_handlers(self) -> list[signal.Signals]:
        loop = asyncio.get_running_loop()
        installed = []
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                continue
            installed.append(sig)
        return installed

    async def run(self, handle_signals: bool = True) -> None:
        logger.info("On Air v%s started", __version__)
        logger.info("Detection mode: %s", self.config.detection_mode.value)
        logger.info("Shortcuts: ON=%r, OFF=%r", self.config.shortcut_on, self.config.shortcut_off)
        logger.info("Monitoring for camera/mic events...")

        signals = self._install_signal_handlers() if handle_signals else []
        reconciler: asyncio.Task[None] | None = None
        parser_tasks: list[asyncio.Task[None]] = []
        try:
            self.controller = controller = self._build_controller()
            # Persisted state may already match; then this is a no-op.
            await self._reconcile(controller)
            if self._stop.is_set():
                return

            reconciler = asyncio.create_task(self._reconcile_loop(controller))
            parser_tasks = [
                asyncio.create_task(supervise(p, self._queue.put_nowait)) for p in self.parsers
            ]
            await self._stop.wait()
        finally:
            for task in parser_tasks:
                task.cancel()
            await asyncio.gather(*parser_tasks, return_exceptions=True)
            if reconciler is not None:
                dropped = self._drop_pending_events()
                if dropped:
                    logger.debug("Dropped %d pending events on shutdown", dropped)
                # The reconciler finishes an in-flight shortcut, then exits.
                self._queue.put_nowait(None)
                try:
                    await reconciler
                except asyncio.CancelledError:
                    pass
            loop = asyncio.get_running_loop()
            for sig in signals:
                loop.remove_signal_handler(sig)
            logger.info("On Air stopped")

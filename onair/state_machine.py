"""
Detection state and light controller. The desired light state is a pure
function of camera/mic activity and the detection policy; reconcile() runs
the matching shortcut only when the light is not already there.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable

from onair.config import DetectionPolicy
from onair.shortcuts import InvocationError

if TYPE_CHECKING:
    from onair.shortcuts import Invoker

logger = logging.getLogger(__name__)


class LightState(Enum):
    ON = "on"
    OFF = "off"


class Source(Enum):
    CAMERA = "camera"
    MICROPHONE = "mic"


@dataclass(frozen=True)
class DetectionEvent:
    source: Source
    active: bool


@dataclass
class DetectionState:
    """Camera/mic activity. Each field is written only by events from its own source."""
    camera_on: bool = False
    mic_on: bool = False

    def apply(self, event: DetectionEvent) -> None:
        if event.source is Source.CAMERA:
            self.camera_on = event.active
        else:
            self.mic_on = event.active


def evaluate(state: DetectionState, policy: DetectionPolicy) -> bool:
    """Return True when the light should be on."""
    if policy is DetectionPolicy.CAMERA_ONLY:
        return state.camera_on
    if policy is DetectionPolicy.MIC_ONLY:
        return state.mic_on
    return state.camera_on or state.mic_on


TransitionCallback = Callable[[DetectionState, LightState], None]


class LightController:
    """
    Owns the light state. Call reconcile() after every detection change; it
    invokes at most one shortcut and only when the light differs from the
    desired state.

    A failed invocation leaves the light state untouched, so the next event
    that still wants the same state retries it. There is no retry timer.
    Must only be driven from a single task.
    """

    def __init__(
        self,
        invoker: Invoker,
        shortcut_on: str,
        shortcut_off: str,
        policy: DetectionPolicy,
        state: DetectionState | None = None,
        light: LightState = LightState.OFF,
        on_transition: TransitionCallback | None = None,
    ) -> None:
        self._invoker = invoker
        self._shortcuts = {LightState.ON: shortcut_on, LightState.OFF: shortcut_off}
        self.policy = policy
        self.state = state if state is not None else DetectionState()
        self._light = light
        self._on_transition = on_transition

    @property
    def light(self) -> LightState:
        return self._light

    def desired(self) -> LightState:
        return LightState.ON if evaluate(self.state, self.policy) else LightState.OFF

    async def reconcile(self) -> LightState | None:
        """
        Bring the light in line with the detection state. Returns the new
        light state after a successful transition, or None when nothing was
        invoked or the invocation failed.
        """
        target = self.desired()
        if target is self._light:
            return None

        label = "ON AIR" if target is LightState.ON else "OFF AIR"
        logger.info("%s (camera=%s, mic=%s)", label, self.state.camera_on, self.state.mic_on)
        name = self._shortcuts[target]
        try:
            await self._invoker.invoke(name)
        except InvocationError as e:
            logger.error("Failed to run shortcut %r (target=%s): %s", name, target.value, e)
            return None

        self._light = target
        if self._on_transition is not None:
            try:
                self._on_transition(self.state, target)
            except OSError as e:
                logger.warning("Could not save state: %s", e)
        return target

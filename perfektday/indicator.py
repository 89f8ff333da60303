#!/usr/bin/env python3
"""Status LED patterns and button actions.

The LED has two steady states (on, off) and three blink patterns. A pattern
always ends by returning the LED to the steady state it interrupted, whether
it timed out, was asked to stop, or was cancelled.

Buttons:
- Pairing: opens the gateway for new devices and blinks slowly while the
  pairing window is open.
- Cycle review: sweeps the fixture through the whole day schedule in a few
  seconds, blinking fast until the sweep finishes.
"""

import asyncio
import logging
from typing import List, Optional, Tuple

from .errors import GatewayError
from .params import LedState, ScheduleParameters
from .schedule import schedule_for, time_to_minutes

logger = logging.getLogger(__name__)

# (led_on, seconds) steps repeated while a pattern runs
BLINK_PATTERNS = {
    LedState.BLINK_SLOW: [(True, 0.5), (False, 0.5)],
    LedState.BLINK_FAST: [(True, 0.1), (False, 0.1)],
    LedState.DOUBLE_BLINK: [(True, 0.1), (False, 0.1), (True, 0.1), (False, 0.7)],
}

# Minutes swept before sun up and after sun down during a cycle review
REVIEW_MARGIN = 120


class Indicator:
    """Drives the status LED through steady states and blink patterns."""

    def __init__(self, params: ScheduleParameters, led, patterns=None):
        """Initialize the indicator.

        Args:
            params: Shared parameter record (holds led_state)
            led: Anything with on() and off(), e.g. gpiozero.LED
            patterns: Optional override of BLINK_PATTERNS
        """
        self.params = params
        self.led = led
        self.patterns = patterns or BLINK_PATTERNS
        self._steady = LedState.ON
        self._blink_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._apply_steady(LedState.ON)

    @property
    def state(self) -> LedState:
        return self.params.runtime.led_state

    @property
    def blinking(self) -> bool:
        return self._blink_task is not None and not self._blink_task.done()

    def _apply_steady(self, state: LedState) -> None:
        if state is LedState.ON:
            self.led.on()
        else:
            self.led.off()
        self.params.set_led_state(state)

    def set_steady(self, state: LedState) -> None:
        """Switch to On or Off, ending any running pattern."""
        if not state.is_steady:
            raise ValueError(f"{state} is not a steady state")
        self._steady = state
        self._cancel_blink()
        self._apply_steady(state)

    def owns(self, pattern: asyncio.Task) -> bool:
        """Whether ``pattern`` is the pattern currently driving the LED."""
        return self.blinking and self._blink_task is pattern

    def settle(self, state: LedState, pattern: Optional[asyncio.Task] = None) -> None:
        """Set the steady state, ending ``pattern`` only if it still owns the LED.

        When another pattern has replaced ``pattern`` it keeps running and
        restores ``state`` once it ends.
        """
        if not state.is_steady:
            raise ValueError(f"{state} is not a steady state")
        if pattern is not None and self.blinking and not self.owns(pattern):
            self._steady = state
            return
        self.set_steady(state)

    def _cancel_blink(self) -> None:
        if self.blinking:
            self._blink_task.cancel()
        self._blink_task = None

    def blink_for(self, fast: bool, timeout: float) -> asyncio.Task:
        """Blink until stopped (timeout 0) or for ``timeout`` seconds."""
        return self.start_pattern(LedState.BLINK_FAST if fast else LedState.BLINK_SLOW, timeout)

    def double_blink(self, timeout: float) -> asyncio.Task:
        return self.start_pattern(LedState.DOUBLE_BLINK, timeout)

    def start_pattern(self, state: LedState, timeout: float) -> asyncio.Task:
        """Start a blink pattern, replacing any pattern already running."""
        self._cancel_blink()
        self.params.runtime.stop_blinking_requested = False
        self._stop_event = asyncio.Event()
        self.params.set_led_state(state)
        self._blink_task = asyncio.get_running_loop().create_task(
            self._run_pattern(self.patterns[state], timeout, self._stop_event)
        )
        return self._blink_task

    def stop_blinking(self) -> None:
        """Ask the running pattern to end and restore the steady state."""
        self.params.runtime.stop_blinking_requested = True
        if self._stop_event is not None:
            self._stop_event.set()

    async def _run_pattern(self, steps: List[Tuple[bool, float]], timeout: float, stop: asyncio.Event) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout else None
        try:
            while not stop.is_set():
                for led_on, duration in steps:
                    if led_on:
                        self.led.on()
                    else:
                        self.led.off()
                    if deadline is not None:
                        duration = min(duration, max(0.0, deadline - loop.time()))
                    try:
                        await asyncio.wait_for(stop.wait(), timeout=duration)
                    except asyncio.TimeoutError:
                        pass
                    if stop.is_set() or (deadline is not None and loop.time() >= deadline):
                        return
        finally:
            # A replacement pattern owns the LED from here on
            if self._blink_task in (None, asyncio.current_task()):
                self.params.runtime.stop_blinking_requested = False
                self._apply_steady(self._steady)

    async def wait(self) -> None:
        """Wait for the running pattern to end."""
        if self.blinking:
            try:
                await self._blink_task
            except asyncio.CancelledError:
                pass

    async def shutdown(self) -> None:
        """End any pattern and turn the LED off."""
        task = self._blink_task
        self._steady = LedState.OFF
        self._cancel_blink()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._apply_steady(LedState.OFF)


class ButtonHandler:
    """Reacts to the pairing and cycle-review buttons."""

    def __init__(
        self,
        params: ScheduleParameters,
        indicator: Indicator,
        gateway,
        guard,
        pairing_window: int = 60,
        review_interval: float = 0.2,
        review_step: int = 10,
    ):
        self.params = params
        self.indicator = indicator
        self.gateway = gateway
        self.guard = guard
        self.pairing_window = pairing_window
        self.review_interval = review_interval
        self.review_step = review_step
        self._review_task: Optional[asyncio.Task] = None

    @property
    def reviewing(self) -> bool:
        return self._review_task is not None and not self._review_task.done()

    async def on_pairing_pressed(self) -> asyncio.Task:
        """Open the network for pairing and blink slowly for the window."""
        logger.info("Pairing button pressed")
        try:
            await self.gateway.enable_pairing(self.pairing_window)
        except GatewayError as e:
            logger.error(f"Failed to enable pairing: {e}")
        return self.indicator.blink_for(fast=False, timeout=self.pairing_window)

    def on_cycle_review_pressed(self) -> Optional[asyncio.Task]:
        """Start a cycle review unless one is already running."""
        if self.reviewing:
            logger.info("Cycle review already running")
            return None
        logger.info("Cycle review button pressed")
        self._review_task = asyncio.get_running_loop().create_task(self.run_cycle_review())
        return self._review_task

    def review_points(self) -> List[int]:
        """Minutes visited by the review sweep, both ends included."""
        settings = self.params.settings
        start = time_to_minutes(settings.sun_up) - REVIEW_MARGIN
        end = time_to_minutes(settings.sun_down) + REVIEW_MARGIN
        points = list(range(start, end, self.review_step))
        if not points or points[-1] != end:
            points.append(end)
        return points

    async def run_cycle_review(self) -> None:
        """Sweep the fixture through the day, then hand back to the scheduler."""
        review_blink = self.indicator.blink_for(fast=True, timeout=0)
        self.params.set_perfekt_day(False)
        try:
            for minutes in self.review_points():
                cct, dim = schedule_for(minutes, self.params.settings)
                self.params.set_targets(cct, dim)
                logger.debug(f"Cycle review at minute {minutes}: cct={cct} dim={dim}")
                await self.guard.request_push(cct, dim)
                await asyncio.sleep(self.review_interval)
        except asyncio.CancelledError:
            logger.info("Cycle review cancelled")
            if self.indicator.owns(review_blink):
                self.indicator.stop_blinking()
            raise

        logger.info("Cycle review finished")
        self.params.set_perfekt_day(True)
        self.indicator.settle(LedState.ON, review_blink)

    def cancel_cycle_review(self) -> None:
        if self.reviewing:
            self._review_task.cancel()

    async def shutdown(self) -> None:
        task = self._review_task
        self.cancel_cycle_review()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

"""GPIO wiring for the status LED and the two buttons (gpiozero)."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Set, Union

from gpiozero import Button, LED
from gpiozero.exc import GPIOZeroError

logger = logging.getLogger(__name__)

ButtonCallback = Callable[[], Union[None, Awaitable[None]]]


@dataclass
class GpioDevices:
    led: LED
    pairing_button: Button
    review_button: Button

    def close(self) -> None:
        for device in (self.pairing_button, self.review_button, self.led):
            try:
                device.close()
            except GPIOZeroError as e:
                logger.warning(f"Failed to release {device}: {e}")


def open_devices(led_pin: int, pairing_pin: int, review_pin: int, bounce_time: Optional[float] = 0.05) -> GpioDevices:
    """Claim the LED and button pins.

    Raises:
        GPIOZeroError: if the pins cannot be claimed; startup should abort
    """
    led = LED(led_pin)
    pairing = Button(pairing_pin, pull_up=True, bounce_time=bounce_time)
    review = Button(review_pin, pull_up=True, bounce_time=bounce_time)
    logger.info(f"GPIO ready: led={led_pin}, pairing button={pairing_pin}, review button={review_pin}")
    return GpioDevices(led=led, pairing_button=pairing, review_button=review)


def bind_button(button: Button, loop: asyncio.AbstractEventLoop, callback: ButtonCallback) -> None:
    """Run ``callback`` on the event loop whenever the button is pressed.

    gpiozero fires its callbacks on its own thread, so the press is handed
    over with call_soon_threadsafe. Coroutine callbacks become tasks, held
    until they finish so their failures are logged.
    """
    pending: Set[asyncio.Task] = set()

    def _finished(task: asyncio.Task) -> None:
        pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Button handler failed: {task.exception()}")

    def _dispatch() -> None:
        try:
            result = callback()
            if asyncio.iscoroutine(result):
                task = loop.create_task(result)
                pending.add(task)
                task.add_done_callback(_finished)
        except Exception as e:
            logger.error(f"Button handler failed: {e}")

    def _pressed() -> None:
        loop.call_soon_threadsafe(_dispatch)

    button.when_pressed = _pressed

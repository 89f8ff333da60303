#!/usr/bin/env python3
"""PERFEKTday controller entry point."""

import asyncio
import logging
import signal
import sys

from gpiozero.exc import GPIOZeroError

from .config import load_options
from .controller import PerfektDayController
from .gpio import bind_button, open_devices

logger = logging.getLogger(__name__)


async def run(options) -> None:
    """Run the controller until SIGINT or SIGTERM."""
    try:
        devices = open_devices(options.led_pin, options.pairing_button_pin, options.review_button_pin)
    except GPIOZeroError as e:
        logger.error(f"GPIO initialization failed: {e}")
        sys.exit(1)

    loop = asyncio.get_running_loop()
    controller = await PerfektDayController.create(options, devices.led)
    bind_button(devices.pairing_button, loop, controller.buttons.on_pairing_pressed)
    bind_button(devices.review_button, loop, controller.buttons.on_cycle_review_pressed)

    stop_event = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Not available on this platform; KeyboardInterrupt still ends the run
            pass

    try:
        await controller.start()
        await stop_event.wait()
        logger.info("Shutting down...")
    finally:
        await controller.stop()
        devices.close()


def main() -> None:
    """Main entry point."""
    options = load_options()

    logging.basicConfig(
        level=getattr(logging, options.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        asyncio.run(run(options))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")


if __name__ == "__main__":
    main()

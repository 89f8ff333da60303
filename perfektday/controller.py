#!/usr/bin/env python3
"""PERFEKTday controller - owns the components and the scheduler loop."""

import asyncio
import logging
from typing import Optional

from .clock import SystemClock
from .config import Options
from .errors import GatewayError
from .gateway import DeconzGateway
from .guard import UpdateGuard
from .indicator import ButtonHandler, Indicator
from .params import ScheduleParameters, Settings
from .protocol import CommandParser
from .schedule import sun_anchors
from .store import ParameterStore
from .transport import WebSocketTransport

logger = logging.getLogger(__name__)

# Seconds the LED double-blinks when a client connects
CONNECT_BLINK_SECONDS = 1.0


def location_defaults(options: Options) -> Settings:
    """Default settings, with anchors taken from the sun when a location is set."""
    settings = Settings()
    if not options.has_location:
        return settings
    try:
        anchors = sun_anchors(options.latitude, options.longitude, options.timezone)
    except ValueError as e:
        # astral raises when the sun does not rise or set on this day
        logger.warning(f"Could not compute sun times for location, using fixed anchors: {e}")
        return settings
    logger.info(f"Default anchors from location: {anchors}")
    settings.sun_up = anchors["sun_up"]
    settings.solar_noon = anchors["solar_noon"]
    settings.sun_down = anchors["sun_down"]
    return settings


class PerfektDayController:
    """Runs the schedule against the light group and serves clients."""

    def __init__(
        self,
        options: Options,
        params: ScheduleParameters,
        store: ParameterStore,
        gateway,
        led,
        clock=None,
    ):
        """Initialize the controller.

        Args:
            options: Process options
            params: Loaded parameter record
            store: Store the parameters came from
            gateway: deCONZ gateway client
            led: Status LED (anything with on()/off())
            clock: Clock used by time-sync commands (SystemClock by default)
        """
        self.options = options
        self.params = params
        self.store = store
        self.gateway = gateway
        self.clock = clock or SystemClock(timeout=options.clock_timeout)

        self.guard = UpdateGuard(params, gateway)
        self.indicator = Indicator(params, led)
        self.buttons = ButtonHandler(
            params,
            self.indicator,
            gateway,
            self.guard,
            pairing_window=options.pairing_window,
            review_interval=options.review_interval,
            review_step=options.review_step,
        )
        self.parser = CommandParser(
            params,
            store,
            self.guard,
            self.clock,
            on_override=self.buttons.cancel_cycle_review,
            clock_timeout=options.clock_timeout,
        )
        self.transport = WebSocketTransport(
            self.parser,
            params,
            host=options.listen_host,
            port=options.listen_port,
            inactivity_timeout=options.inactivity_timeout,
            on_connect=self._client_connected,
        )
        self.scheduler_task: Optional[asyncio.Task] = None

    @classmethod
    async def create(cls, options: Options, led, gateway=None, clock=None) -> "PerfektDayController":
        """Load parameters and build a controller from options."""
        store = ParameterStore(options.parameters_path, defaults=lambda: location_defaults(options))
        params = await store.load()
        if gateway is None:
            gateway = DeconzGateway(
                host=options.gateway_host,
                port=options.gateway_port,
                api_key=options.gateway_api_key,
                group_id=options.group_id,
                timeout=options.gateway_timeout,
            )
        return cls(options, params, store, gateway, led, clock=clock)

    def _client_connected(self) -> None:
        if not self.indicator.blinking:
            self.indicator.double_blink(CONNECT_BLINK_SECONDS)

    async def tick(self) -> bool:
        """Run one scheduler step; suppressed while PERFEKTday is off."""
        if not self.params.runtime.perfekt_day:
            logger.debug("PERFEKTday disabled, skipping update")
            return False
        return await self.guard.tick()

    async def scheduler_loop(self) -> None:
        """Tick every update_interval seconds until cancelled."""
        interval = self.options.update_interval
        logger.info(f"Started scheduler (runs every {interval} seconds)")
        while True:
            try:
                await self.tick()
            except asyncio.CancelledError:
                logger.info("Scheduler cancelled")
                raise
            except Exception as e:
                logger.error(f"Error in scheduler tick: {e}")
            await asyncio.sleep(interval)

    async def start(self) -> None:
        logger.info("Starting PERFEKTday Controller")
        if self.options.flash_on_boot:
            try:
                await self.gateway.flash_fixture()
            except GatewayError as e:
                logger.warning(f"Failed to flash fixture at boot: {e}")
        self.scheduler_task = asyncio.get_running_loop().create_task(self.scheduler_loop())
        await self.transport.start()

    async def stop(self) -> None:
        """Stop serving, cancel timers, turn the LED off, flush writes."""
        logger.info("Stopping PERFEKTday Controller")
        await self.transport.stop()
        if self.scheduler_task is not None and not self.scheduler_task.done():
            self.scheduler_task.cancel()
            try:
                await self.scheduler_task
            except asyncio.CancelledError:
                pass
        await self.buttons.shutdown()
        await self.indicator.shutdown()
        await self.parser.wait_idle()
        await self.store.flush()
        close = getattr(self.gateway, "close", None)
        if close is not None:
            await close()

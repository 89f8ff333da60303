#!/usr/bin/env python3
"""Update guard: at most one gateway push in flight.

The scheduler tick, the command parser and the cycle review all push through
here. A push requested while another is outstanding is dropped rather than
queued; the next tick recomputes the value anyway, and an overlapping write
could reach the fixture out of order.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional, Tuple

from .errors import GatewayError
from .params import ScheduleParameters
from .schedule import code_to_mired, minutes_now, mired_to_code, round_half_away, schedule_for

logger = logging.getLogger(__name__)


class UpdateGuard:
    """Serializes schedule values into guarded pushes to the gateway."""

    def __init__(self, params: ScheduleParameters, gateway, reconcile_timeout: float = 1.5):
        """Initialize the guard.

        Args:
            params: Shared parameter record
            gateway: Object exposing set_attribute/set_raw/get_attribute coroutines
            reconcile_timeout: Seconds allowed for reading back group state
        """
        self.params = params
        self.gateway = gateway
        self.reconcile_timeout = reconcile_timeout
        self._lock = asyncio.Lock()

    @property
    def in_flight(self) -> bool:
        return self.params.runtime.push_in_flight

    async def request_push(self, cct: Optional[int] = None, dim: Optional[int] = None) -> bool:
        """Push a colour code and/or brightness to the group.

        Both values go out in one raw action body; a single value goes out as
        a plain attribute write. The last-pushed values are recorded whether
        or not the gateway accepted the write.

        Returns:
            True if a push was issued, False if it was dropped because
            another push is in flight (or there was nothing to push)
        """
        if cct is None and dim is None:
            return False

        # Check-and-set without an await in between
        if self._lock.locked():
            logger.debug(f"Push in flight, dropping update cct={cct} dim={dim}")
            return False

        mired = self._mired(cct)
        async with self._lock:
            self.params.runtime.push_in_flight = True
            try:
                await self._send(cct, dim, mired)
            except GatewayError as e:
                logger.error(f"Failed to push cct={cct} dim={dim} to gateway: {e}")
            finally:
                self.params.mark_pushed(cct, dim, mired)
                self.params.runtime.push_in_flight = False
        return True

    def _mired(self, cct: Optional[int]) -> Optional[int]:
        if cct is None:
            return None
        settings = self.params.settings
        return code_to_mired(cct, settings.cct_low, settings.cct_high)

    async def _send(self, cct: Optional[int], dim: Optional[int], mired: Optional[int]) -> None:
        if cct is not None and dim is not None:
            logger.info(f"Updating light group with ct={mired} (code {cct}), bri={dim}")
            await self.gateway.set_raw({"ct": mired, "bri": dim})
        elif cct is not None:
            logger.info(f"Updating light group with ct={mired} (code {cct})")
            await self.gateway.set_attribute("ct", mired)
        else:
            logger.info(f"Updating light group with bri={dim}")
            await self.gateway.set_attribute("bri", dim)

    async def reconcile(self) -> None:
        """Refresh the last-pushed values from the group's reported state.

        Picks up changes made by other controllers. Best effort: on failure
        the previous values are kept.
        """
        settings = self.params.settings
        try:
            ct, bri = await asyncio.wait_for(
                asyncio.gather(
                    self.gateway.get_attribute("ct"),
                    self.gateway.get_attribute("bri"),
                ),
                timeout=self.reconcile_timeout,
            )
        except (GatewayError, asyncio.TimeoutError) as e:
            logger.debug(f"Could not read group state, keeping last pushed values: {e}")
            return

        try:
            remote_mired = round_half_away(float(ct))
            remote_cct = mired_to_code(remote_mired, settings.cct_low, settings.cct_high)
            remote_dim = int(bri)
        except (TypeError, ValueError, OverflowError, ZeroDivisionError) as e:
            logger.debug(f"Unusable group state ct={ct!r} bri={bri!r}: {e}")
            return

        self.params.mark_pushed(remote_cct, remote_dim, remote_mired)

    def compute(self, now: Optional[datetime] = None) -> Tuple[int, int]:
        """Compute and record the schedule targets for ``now``."""
        cct, dim = schedule_for(minutes_now(now), self.params.settings)
        self.params.set_targets(cct, dim)
        return cct, dim

    async def tick(self, now: Optional[datetime] = None) -> bool:
        """One scheduler step: compute, reconcile, push if anything changed."""
        cct, dim = self.compute(now)
        await self.reconcile()

        # Compared in mired: mired -> code does not round-trip for every code
        runtime = self.params.runtime
        if self._mired(cct) == runtime.last_pushed_mired and dim == runtime.last_pushed_dim:
            logger.debug(f"Group already at cct={cct} dim={dim}")
            return False
        return await self.request_push(cct, dim)

    async def refresh(self, now: Optional[datetime] = None) -> bool:
        """Compute and push immediately, regardless of the last pushed values."""
        cct, dim = self.compute(now)
        return await self.request_push(cct, dim)

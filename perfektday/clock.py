"""Host wall clock access for the time-sync commands."""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from .errors import ClockSyncError

logger = logging.getLogger(__name__)

# Format understood by `date --set`
CLOCK_FORMAT = "%Y%m%d %H:%M:%S"


def format_clock(moment: datetime) -> str:
    return moment.strftime(CLOCK_FORMAT)


class SystemClock:
    """Reads the local time and sets it through `date --set`."""

    def __init__(self, command: str = "date", timeout: float = 2.0):
        self.command = command
        self.timeout = timeout

    def now(self) -> datetime:
        return datetime.now()

    async def set(self, moment: datetime) -> None:
        """Set the host clock.

        Raises:
            ClockSyncError: if the command cannot run, fails, or exceeds the
                timeout
        """
        value = format_clock(moment)
        logger.info(f"Setting system clock to {value}")
        try:
            proc = await asyncio.create_subprocess_exec(
                self.command,
                f"--set={value}",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ClockSyncError(f"Could not run {self.command}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise ClockSyncError(f"{self.command} --set timed out after {self.timeout}s") from e

        if proc.returncode != 0:
            raise ClockSyncError(
                f"{self.command} --set exited with {proc.returncode}: {stderr.decode(errors='replace').strip()}"
            )
        logger.debug(f"stdout: {stdout.decode(errors='replace').strip()}")


def combine(
    current: datetime,
    *,
    year: Optional[int] = None,
    month: Optional[int] = None,
    day: Optional[int] = None,
    hour: Optional[int] = None,
    minute: Optional[int] = None,
) -> datetime:
    """Replace the supplied components of ``current``, keeping the rest.

    Raises:
        ClockSyncError: if the result is not a valid date (e.g. 02/30)
    """
    changes = {
        "year": year,
        "month": month,
        "day": day,
        "hour": hour,
        "minute": minute,
    }
    try:
        return current.replace(microsecond=0, **{k: v for k, v in changes.items() if v is not None})
    except ValueError as e:
        raise ClockSyncError(f"Invalid clock value: {e}") from e

#!/usr/bin/env python3
"""Command protocol for PERFEKTday clients.

Frames are ASCII lines: a command code, optionally a space and an argument,
terminated by a line feed. Codes ending in "?" are queries, codes ending in
"S" set a value. Every reply has the form "XX;value"; anything that cannot
be handled gets "ERR". The transport appends the "\\r\\r" terminator.

    PD?        -> PD;1
    CTS 200    -> CT;200
    RTS 07:30  -> RT;07:30
"""

import asyncio
import inspect
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set, Tuple, Union

from .clock import combine
from .errors import ClockSyncError, ParseError
from .params import ScheduleParameters
from .schedule import CODE_MAX, format_time

logger = logging.getLogger(__name__)

VERSION_SUB = 83
ERROR_RESPONSE = "ERR"

# Characters that survive sanitization
_ALLOWED = re.compile(r"[^A-Za-z0-9?; :/]")

_ARGUMENT_SHAPES = {
    "flag": re.compile(r"^[01]$"),
    "number": re.compile(r"^\d{1,5}$"),
    "time": re.compile(r"^(\d{1,2}):(\d{2})$"),
    "date": re.compile(r"^(\d{1,2})/(\d{1,2})$"),
    "year": re.compile(r"^\d{1,4}$"),
}


class ArgType(Enum):
    """Argument shape a command expects."""
    NONE = "none"
    FLAG = "flag"
    NUMBER = "number"
    TIME = "time"
    DATE = "date"
    YEAR = "year"


class CommandKind(Enum):
    QUERY = "query"
    SET = "set"
    TIME_SYNC = "time_sync"


@dataclass(frozen=True)
class Command:
    """One dispatch table entry."""
    code: str
    reply: str
    kind: CommandKind
    handler: Callable[..., Any]
    arg: ArgType = ArgType.NONE


def sanitize(frame: str) -> str:
    """Drop every character outside [A-Za-z0-9?; :/]."""
    return _ALLOWED.sub("", frame)


def split_frame(cleaned: str) -> Tuple[str, Optional[str]]:
    """Split a sanitized frame into (code, argument)."""
    parts = cleaned.split(" ")
    code = parts[0]
    argument = parts[1] if len(parts) > 1 and parts[1] != "" else None
    return code, argument


def parse_argument(arg_type: ArgType, argument: Optional[str]) -> Any:
    """Decode an argument by shape only; ranges are checked by the handler.

    Raises:
        ParseError: if the argument is missing or malformed
    """
    if arg_type is ArgType.NONE:
        return None
    if argument is None:
        raise ParseError("Missing argument")

    match = _ARGUMENT_SHAPES[arg_type.value].match(argument)
    if not match:
        raise ParseError(f"Malformed {arg_type.value} argument '{argument}'")

    if arg_type is ArgType.FLAG:
        return argument == "1"
    if arg_type in (ArgType.NUMBER, ArgType.YEAR):
        return int(argument)
    return int(match.group(1)), int(match.group(2))


def _flag(value: bool) -> str:
    return "1" if value else "0"


class CommandParser:
    """Decodes frames, applies them to the parameters and encodes replies."""

    def __init__(
        self,
        params: ScheduleParameters,
        store,
        guard,
        clock,
        on_override: Optional[Callable[[], None]] = None,
        clock_timeout: float = 2.0,
    ):
        """Initialize the parser.

        Args:
            params: Shared parameter record
            store: ParameterStore used to persist setting changes
            guard: UpdateGuard used for immediate pushes
            clock: Clock exposing now() and an async set(datetime)
            on_override: Called when a command takes manual control
                (used to cancel a running cycle review)
            clock_timeout: Seconds to wait for the clock setter before
                reading the clock back anyway
        """
        self.params = params
        self.store = store
        self.guard = guard
        self.clock = clock
        self.on_override = on_override
        self.clock_timeout = clock_timeout
        self._tasks: Set[asyncio.Task] = set()
        self.commands: Dict[str, Command] = {c.code: c for c in self._build_table()}

    def _build_table(self):
        s = self.params.settings
        rt = self.params.runtime
        Q, S, T = CommandKind.QUERY, CommandKind.SET, CommandKind.TIME_SYNC
        return [
            # Queries
            Command("CK?", "CK", Q, lambda: f"Version 0.{VERSION_SUB}"),
            Command("PD?", "PD", Q, lambda: _flag(rt.perfekt_day)),
            Command("PL?", "PL", Q, lambda: _flag(rt.perfekt_light)),
            Command("SU?", "SU", Q, lambda: s.sun_up),
            Command("SN?", "SN", Q, lambda: s.solar_noon),
            Command("SD?", "SD", Q, lambda: s.sun_down),
            Command("DU?", "DU", Q, lambda: s.sun_up_dim),
            Command("DN?", "DN", Q, lambda: s.solar_noon_dim),
            Command("DD?", "DD", Q, lambda: s.sun_down_dim),
            Command("LT?", "LT", Q, lambda: s.cct_high),
            Command("LB?", "LB", Q, lambda: s.cct_low),
            Command("NC?", "NC", Q, lambda: s.night_cct),
            Command("CT?", "CT", Q, lambda: rt.cct_now),
            Command("DL?", "DL", Q, lambda: rt.dim_now),
            Command("RD?", "RD", Q, lambda: self._date(self.clock.now())),
            Command("RY?", "RY", Q, lambda: self._year(self.clock.now())),
            Command("RT?", "RT", Q, lambda: self._time(self.clock.now())),
            # Settings
            Command("PDS", "PD", S, self._set_perfekt_day, ArgType.FLAG),
            Command("PLS", "PL", S, self._set_perfekt_light, ArgType.FLAG),
            Command("SUS", "SU", S, lambda v: self._set_anchor("sun_up", v), ArgType.TIME),
            Command("SNS", "SN", S, lambda v: self._set_anchor("solar_noon", v), ArgType.TIME),
            Command("SDS", "SD", S, lambda v: self._set_anchor("sun_down", v), ArgType.TIME),
            Command("DUS", "DU", S, lambda v: self._set_level("sun_up_dim", v), ArgType.NUMBER),
            Command("DNS", "DN", S, lambda v: self._set_level("solar_noon_dim", v), ArgType.NUMBER),
            Command("DDS", "DD", S, lambda v: self._set_level("sun_down_dim", v), ArgType.NUMBER),
            Command("NCS", "NC", S, lambda v: self._set_level("night_cct", v), ArgType.NUMBER),
            Command("LTS", "LT", S, lambda v: self._set_cct_limit("cct_high", v), ArgType.NUMBER),
            Command("LBS", "LB", S, lambda v: self._set_cct_limit("cct_low", v), ArgType.NUMBER),
            Command("CTS", "CT", S, self._set_cct, ArgType.NUMBER),
            Command("DLS", "DL", S, self._set_dim, ArgType.NUMBER),
            # Clock
            Command("RTS", "RT", T, self._sync_time, ArgType.TIME),
            Command("RDS", "RD", T, self._sync_date, ArgType.DATE),
            Command("RYS", "RD", T, self._sync_year, ArgType.YEAR),
        ]

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    async def handle(self, frame: Union[str, bytes]) -> str:
        """Handle one frame and return the reply. Never raises."""
        if isinstance(frame, bytes):
            frame = frame.decode("ascii", errors="ignore")

        logger.debug(f"Received frame {frame!r}")
        if not frame.endswith("\n"):
            logger.debug("Frame is not line-feed terminated")
            return ERROR_RESPONSE

        cleaned = sanitize(frame)
        code, argument = split_frame(cleaned)
        command = self.commands.get(code)
        if command is None:
            logger.info(f"Unsupported command {cleaned!r}")
            return ERROR_RESPONSE

        try:
            value = parse_argument(command.arg, argument)
            result = command.handler(value) if command.arg is not ArgType.NONE else command.handler()
            if inspect.isawaitable(result):
                result = await result
        except ParseError as e:
            logger.info(f"Rejected {cleaned!r}: {e}")
            return ERROR_RESPONSE
        except Exception as e:
            logger.error(f"Error handling {cleaned!r}: {e}")
            return ERROR_RESPONSE

        response = f"{command.reply};{result}"
        logger.debug(f"Responding {response!r}")
        return response

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------
    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait for pushes started by commands to complete."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _take_manual_control(self) -> None:
        self.params.set_perfekt_day(False)
        if self.on_override:
            self.on_override()

    # ------------------------------------------------------------------
    # Setting handlers
    # ------------------------------------------------------------------
    def _set_perfekt_day(self, enabled: bool) -> str:
        if enabled:
            self.params.set_perfekt_day(True)
            self._spawn(self.guard.refresh())
        else:
            self._take_manual_control()
        return _flag(self.params.runtime.perfekt_day)

    def _set_perfekt_light(self, enabled: bool) -> str:
        self.params.runtime.perfekt_light = enabled
        return _flag(enabled)

    def _set_anchor(self, name: str, value: Tuple[int, int]) -> str:
        result = self.params.set_anchor(name, format_time(*value))
        self.store.schedule_save(self.params)
        return result

    def _set_level(self, name: str, value: int) -> int:
        result = self.params.set_level(name, value)
        self.store.schedule_save(self.params)
        return result

    def _set_cct_limit(self, name: str, value: int) -> int:
        result = self.params.set_cct_limit(name, value)
        self.store.schedule_save(self.params)
        return result

    def _set_cct(self, value: int) -> int:
        if value > CODE_MAX:
            raise ParseError(f"CCT code {value} out of range")
        self._take_manual_control()
        self.params.set_targets(cct=value)
        self._spawn(self.guard.request_push(cct=value))
        return value

    def _set_dim(self, value: int) -> int:
        if value > CODE_MAX:
            raise ParseError(f"Dim level {value} out of range")
        self._take_manual_control()
        self.params.set_targets(dim=value)
        self._spawn(self.guard.request_push(dim=value))
        return value

    # ------------------------------------------------------------------
    # Clock handlers
    # ------------------------------------------------------------------
    @staticmethod
    def _date(moment: datetime) -> str:
        return f"{moment.month:02d}/{moment.day:02d}"

    @staticmethod
    def _year(moment: datetime) -> str:
        return f"{moment.year % 100:02d}"

    @staticmethod
    def _time(moment: datetime) -> str:
        return format_time(moment.hour, moment.minute)

    async def _set_clock(self, target: datetime) -> None:
        """Run the clock setter, bounded by clock_timeout. Failures are logged."""
        try:
            await asyncio.wait_for(self.clock.set(target), timeout=self.clock_timeout)
        except ClockSyncError as e:
            logger.error(f"Clock sync failed: {e}")
        except asyncio.TimeoutError:
            logger.warning(f"Clock setter did not finish within {self.clock_timeout}s, reading back anyway")

    async def _sync(self, build: Callable[[datetime], datetime], read_back: Callable[[datetime], str]) -> str:
        current = self.clock.now()
        try:
            target = build(current)
        except ClockSyncError as e:
            logger.warning(f"Rejected clock value: {e}")
            return read_back(current)

        await self._set_clock(target)
        return read_back(self.clock.now())

    async def _sync_time(self, value: Tuple[int, int]) -> str:
        hours, minutes = value
        response = await self._sync(
            lambda now: combine(now, hour=hours, minute=minutes),
            self._time,
        )
        if self.params.runtime.perfekt_day:
            self._spawn(self.guard.refresh())
        return response

    async def _sync_date(self, value: Tuple[int, int]) -> str:
        month, day = value
        return await self._sync(lambda now: combine(now, month=month, day=day), self._date)

    async def _sync_year(self, value: int) -> str:
        def build(now: datetime) -> datetime:
            if not 0 <= value <= 99:
                raise ClockSyncError(f"Year {value} outside 00-99")
            return combine(now, year=2000 + value)

        return await self._sync(build, self._date)

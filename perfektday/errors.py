"""Exception types raised inside the PERFEKTday engine.

None of these escape the boundary components: the store, the gateway and the
clock absorb them and fall back to the last known good value, and the command
parser turns them into a response string.
"""


class PerfektDayError(Exception):
    """Base class for controller errors."""


class ParseError(PerfektDayError):
    """A frame or command argument could not be decoded."""


class PersistenceError(PerfektDayError):
    """The parameter document could not be read or written."""


class GatewayError(PerfektDayError):
    """The lighting gateway request failed or returned an error status."""


class ClockSyncError(PerfektDayError):
    """A time-sync argument was invalid or the clock setter failed."""

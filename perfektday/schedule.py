#!/usr/bin/env python3
"""Solar schedule math for PERFEKTday.

Maps "minutes since local midnight" onto a colour-temperature code and a
brightness value using three anchors (sun up, solar noon, sun down):

* Before sun up and after sun down the night values hold.
* Between sun up and solar noon both values ease in along a quarter sine.
* Between solar noon and sun down they ease back out the same way.

Colour temperature travels in three units. The wire protocol and the
schedule use an 8-bit code (0-255) spanning the fixture's Kelvin range, and
the gateway expects mired. All conversions round half away from zero so
code -> Kelvin -> code is the identity for any range of 255 K or more.

Everything except minutes_now() and sun_anchors() is pure.
"""

from __future__ import annotations

import logging
import math
from datetime import date, datetime
from typing import Dict, Optional, Tuple

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from astral import LocationInfo
from astral.sun import sun

from .errors import ParseError

logger = logging.getLogger(__name__)

# Width of the 8-bit code domain
CODE_MAX = 255

# Brightness domain of the gateway's "bri" attribute
DIM_MAX = 255

MINUTES_PER_DAY = 24 * 60


def round_half_away(value: float) -> int:
    """Round to the nearest integer, halves away from zero.

    Python's round() uses banker's rounding, which would break the
    code -> Kelvin -> code identity on exact halves.
    """
    return int(math.copysign(math.floor(abs(value) + 0.5), value))


def clamp(value, low, high):
    return max(low, min(high, value))


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------

def parse_time(text: str) -> Tuple[int, int]:
    """Parse an "HH:MM" 24h string into (hours, minutes).

    Raises:
        ParseError: if the string is not a valid time of day
    """
    if not isinstance(text, str) or text.count(":") != 1:
        raise ParseError(f"Invalid time '{text}'")
    hours_str, minutes_str = text.split(":")
    if not (hours_str.isdigit() and minutes_str.isdigit()) or len(minutes_str) != 2:
        raise ParseError(f"Invalid time '{text}'")
    hours, minutes = int(hours_str), int(minutes_str)
    if not (0 <= hours <= 23 and 0 <= minutes <= 59):
        raise ParseError(f"Time out of range '{text}'")
    return hours, minutes


def format_time(hours: int, minutes: int) -> str:
    return f"{hours:02d}:{minutes:02d}"


def normalize_time(text: str) -> str:
    """Return the canonical zero-padded form of an "HH:MM" string."""
    return format_time(*parse_time(text))


def time_to_minutes(text: str) -> int:
    """Convert "HH:MM" to minutes since midnight."""
    hours, minutes = parse_time(text)
    return hours * 60 + minutes


def minutes_to_time(minutes: int) -> str:
    """Convert minutes since midnight back to "HH:MM" (wrapping at 24h)."""
    minutes = int(minutes) % MINUTES_PER_DAY
    return format_time(minutes // 60, minutes % 60)


def minutes_now(now: Optional[datetime] = None) -> int:
    """Whole minutes elapsed since local midnight."""
    now = now or datetime.now()
    return now.hour * 60 + now.minute


# ---------------------------------------------------------------------------
# Colour temperature conversions
# ---------------------------------------------------------------------------

def code_to_kelvin(code: float, cct_low: int, cct_high: int) -> int:
    """Convert an 8-bit colour code to Kelvin within the fixture's range."""
    proportion = code / CODE_MAX
    kelvin = round_half_away(proportion * (cct_high - cct_low) + cct_low)
    return clamp(kelvin, cct_low, cct_high)


def kelvin_to_code(kelvin: float, cct_low: int, cct_high: int) -> int:
    """Convert Kelvin to the 8-bit colour code within the fixture's range."""
    span = cct_high - cct_low
    if span <= 0:
        return 0
    code = round_half_away((kelvin - cct_low) / span * CODE_MAX)
    return clamp(code, 0, CODE_MAX)


def kelvin_to_mired(kelvin: float) -> int:
    return round_half_away(1_000_000 / float(kelvin))


def mired_to_kelvin(mired: float) -> int:
    return round_half_away(1_000_000 / float(mired))


def code_to_mired(code: float, cct_low: int, cct_high: int) -> int:
    """Convert an 8-bit colour code straight to the gateway's mired value."""
    return kelvin_to_mired(code_to_kelvin(code, cct_low, cct_high))


def mired_to_code(mired: float, cct_low: int, cct_high: int) -> int:
    return kelvin_to_code(mired_to_kelvin(mired), cct_low, cct_high)


# ---------------------------------------------------------------------------
# Schedule
# ---------------------------------------------------------------------------

def _blend(proportion: float, noon_dim: int, edge_dim: int) -> int:
    dim = round_half_away(proportion * noon_dim + (1 - proportion) * edge_dim)
    return clamp(dim, 0, noon_dim)


def day_proportion(minutes: float, sun_up: int, solar_noon: int, sun_down: int) -> Optional[float]:
    """Position on the day curve in [0, 1], or None outside daylight.

    A zero-length half interval (solar noon on top of sun down) resolves to
    the solar noon value instead of dividing by zero.
    """
    if minutes < sun_up or minutes > sun_down:
        return None

    if minutes < solar_noon:
        ratio = (minutes - sun_up) / (solar_noon - sun_up)
    else:
        span = sun_down - solar_noon
        ratio = 1.0 if span <= 0 else (sun_down - minutes) / span

    return clamp(math.sin(clamp(ratio, 0.0, 1.0) * (math.pi / 2)), 0.0, 1.0)


def schedule_for(minutes: float, settings) -> Tuple[int, int]:
    """Compute (cct_code, dim) for a moment of the day.

    Args:
        minutes: Minutes since local midnight
        settings: Anything carrying the anchor fields of Settings

    Returns:
        Tuple of (8-bit colour code, 0-255 brightness)
    """
    sun_up = time_to_minutes(settings.sun_up)
    solar_noon = time_to_minutes(settings.solar_noon)
    sun_down = time_to_minutes(settings.sun_down)

    proportion = day_proportion(minutes, sun_up, solar_noon, sun_down)
    if proportion is None:
        return settings.night_cct, settings.sun_down_dim

    cct = round_half_away(proportion * CODE_MAX)
    edge_dim = settings.sun_up_dim if minutes < solar_noon else settings.sun_down_dim
    return cct, _blend(proportion, settings.solar_noon_dim, edge_dim)


# ---------------------------------------------------------------------------
# Location-derived anchors
# ---------------------------------------------------------------------------

def sun_anchors(
    latitude: float,
    longitude: float,
    timezone: Optional[str] = None,
    day: Optional[date] = None,
) -> Dict[str, str]:
    """Sunrise, solar noon and sunset for a location as "HH:MM" strings.

    Used to seed the anchors of a fresh parameter document. Falls back to
    UTC when the timezone is unknown.
    """
    try:
        tzinfo = ZoneInfo(timezone) if timezone else ZoneInfo("UTC")
    except ZoneInfoNotFoundError:
        logger.warning(f"Unknown timezone '{timezone}', falling back to UTC")
        tzinfo = ZoneInfo("UTC")

    day = day or datetime.now(tzinfo).date()
    loc = LocationInfo(latitude=latitude, longitude=longitude, timezone=str(tzinfo))
    solar_events = sun(loc.observer, date=day, tzinfo=tzinfo)

    return {
        "sun_up": format_time(solar_events["sunrise"].hour, solar_events["sunrise"].minute),
        "solar_noon": format_time(solar_events["noon"].hour, solar_events["noon"].minute),
        "sun_down": format_time(solar_events["sunset"].hour, solar_events["sunset"].minute),
    }

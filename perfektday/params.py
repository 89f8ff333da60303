#!/usr/bin/env python3
"""Shared parameter record for the PERFEKTday controller.

The record is split in two:

- Settings: anchors, dim levels and CCT limits configured by the client.
  This is the only part that is persisted.
- RuntimeState: session values (current targets, push bookkeeping, LED
  state). Rebuilt from scratch on every start.

ScheduleParameters owns one of each and is handed to every component.
Mutation goes through its methods so the store, the guard and the parser
all see the same rules.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, Optional

from .errors import ParseError
from .schedule import CODE_MAX, DIM_MAX, normalize_time, time_to_minutes

logger = logging.getLogger(__name__)

# Accepted Kelvin range for the fixture limits
KELVIN_MIN = 1000
KELVIN_MAX = 10000


class LedState(Enum):
    """Status LED patterns."""
    OFF = "off"
    ON = "on"
    BLINK_SLOW = "blink_slow"
    BLINK_FAST = "blink_fast"
    DOUBLE_BLINK = "double_blink"

    @property
    def is_steady(self) -> bool:
        return self in (LedState.OFF, LedState.ON)


@dataclass
class Settings:
    """User-configured schedule anchors and limits (persisted)."""
    sun_up: str = "06:00"
    solar_noon: str = "12:00"
    sun_down: str = "18:00"
    sun_up_dim: int = 255
    solar_noon_dim: int = 255
    sun_down_dim: int = 255
    cct_low: int = 2700
    cct_high: int = 6500
    night_cct: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], defaults: Optional["Settings"] = None) -> "Settings":
        """Build Settings from a persisted document.

        Missing keys take the value from ``defaults``; unknown keys are
        ignored.

        Raises:
            ParseError: if the document is not an object or a value has the
                wrong type or range
        """
        if not isinstance(data, dict):
            raise ParseError("Settings document is not an object")

        base = (defaults or cls()).to_dict()
        for f in fields(cls):
            if f.name in data:
                base[f.name] = data[f.name]

        settings = cls(**base)
        settings.validate()
        return settings

    def validate(self) -> None:
        """Check types and ranges, normalizing time strings in place."""
        for name in ("sun_up", "solar_noon", "sun_down"):
            setattr(self, name, normalize_time(getattr(self, name)))

        for name in ("sun_up_dim", "solar_noon_dim", "sun_down_dim", "night_cct"):
            value = getattr(self, name)
            if not _is_int(value) or not 0 <= value <= CODE_MAX:
                raise ParseError(f"{name} must be an integer 0-{CODE_MAX}, got {value!r}")

        for name in ("cct_low", "cct_high"):
            value = getattr(self, name)
            if not _is_int(value) or not KELVIN_MIN <= value <= KELVIN_MAX:
                raise ParseError(f"{name} must be an integer {KELVIN_MIN}-{KELVIN_MAX}, got {value!r}")

        if self.cct_low >= self.cct_high:
            raise ParseError(f"cct_low ({self.cct_low}) must be below cct_high ({self.cct_high})")


@dataclass
class RuntimeState:
    """Session state, never persisted."""
    perfekt_day: bool = True
    perfekt_light: bool = True
    cct_now: int = 0
    dim_now: int = DIM_MAX
    last_pushed_cct: Optional[int] = None
    last_pushed_dim: Optional[int] = None
    last_pushed_mired: Optional[int] = None
    push_in_flight: bool = False
    client_connected: bool = False
    led_state: LedState = LedState.ON
    stop_blinking_requested: bool = False


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass
class ScheduleParameters:
    """Owner of the settings and runtime records."""
    settings: Settings = field(default_factory=Settings)
    runtime: RuntimeState = field(default_factory=RuntimeState)

    # -- anchors ----------------------------------------------------------
    def set_anchor(self, name: str, value: str) -> str:
        """Set one of sun_up / solar_noon / sun_down from "HH:MM"."""
        if name not in ("sun_up", "solar_noon", "sun_down"):
            raise KeyError(name)
        normalized = normalize_time(value)
        setattr(self.settings, name, normalized)
        if not (time_to_minutes(self.settings.sun_up)
                < time_to_minutes(self.settings.solar_noon)
                < time_to_minutes(self.settings.sun_down)):
            logger.warning(
                f"Anchors out of order: sun_up={self.settings.sun_up}, "
                f"solar_noon={self.settings.solar_noon}, sun_down={self.settings.sun_down}"
            )
        return normalized

    def set_level(self, name: str, value: int) -> int:
        """Set a 0-255 persisted level (dim anchors, night CCT)."""
        if name not in ("sun_up_dim", "solar_noon_dim", "sun_down_dim", "night_cct"):
            raise KeyError(name)
        _check_range(name, value, 0, CODE_MAX)
        setattr(self.settings, name, value)
        return value

    def set_cct_limit(self, name: str, kelvin: int) -> int:
        """Set cct_low or cct_high, keeping cct_low below cct_high."""
        if name not in ("cct_low", "cct_high"):
            raise KeyError(name)
        _check_range(name, kelvin, KELVIN_MIN, KELVIN_MAX)
        low = kelvin if name == "cct_low" else self.settings.cct_low
        high = kelvin if name == "cct_high" else self.settings.cct_high
        if low >= high:
            raise ParseError(f"cct_low ({low}) must be below cct_high ({high})")
        setattr(self.settings, name, kelvin)
        return kelvin

    # -- runtime ----------------------------------------------------------
    def set_perfekt_day(self, enabled: bool) -> None:
        if enabled != self.runtime.perfekt_day:
            logger.info(f"PERFEKTday {'enabled' if enabled else 'disabled'}")
        self.runtime.perfekt_day = enabled

    def set_targets(self, cct: Optional[int] = None, dim: Optional[int] = None) -> None:
        """Record the most recently computed or requested targets."""
        if cct is not None:
            _check_range("cct_now", cct, 0, CODE_MAX)
            self.runtime.cct_now = cct
        if dim is not None:
            _check_range("dim_now", dim, 0, DIM_MAX)
            self.runtime.dim_now = dim

    def mark_pushed(self, cct: Optional[int] = None, dim: Optional[int] = None, mired: Optional[int] = None) -> None:
        """Record what the group was last sent (or last reported)."""
        if cct is not None:
            self.runtime.last_pushed_cct = cct
        if mired is not None:
            self.runtime.last_pushed_mired = mired
        if dim is not None:
            self.runtime.last_pushed_dim = dim

    def set_client_connected(self, connected: bool) -> None:
        self.runtime.client_connected = connected

    def set_led_state(self, led_state: LedState) -> None:
        self.runtime.led_state = led_state


def _check_range(name: str, value: Any, low: int, high: int) -> None:
    if not _is_int(value) or not low <= value <= high:
        raise ParseError(f"{name} must be an integer {low}-{high}, got {value!r}")

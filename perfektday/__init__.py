from .params import LedState, RuntimeState, ScheduleParameters, Settings
from .schedule import (
    code_to_kelvin,
    kelvin_to_code,
    kelvin_to_mired,
    mired_to_kelvin,
    schedule_for,
)

__all__ = [
    "LedState",
    "RuntimeState",
    "ScheduleParameters",
    "Settings",
    "code_to_kelvin",
    "kelvin_to_code",
    "kelvin_to_mired",
    "mired_to_kelvin",
    "schedule_for",
]

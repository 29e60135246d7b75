"""Outbound command vocabulary for the sorting controller."""

from __future__ import annotations

import math
from enum import Enum

from .errors import (
    InvalidCommandError,
    InvalidServoError,
    InvalidSliderValueError,
    InvalidSpeedError,
    UnknownFunctionError,
)


class LinkToken(str, Enum):
    CONNECT_REQUEST = "CONNECT_REQUEST"
    PROBE = "_refresh"
    STATUS_QUERY = "Q"
    COUNTS_QUERY = "C"


SERVO_IDS = (0, 1, 2, 3)
SLIDER_MIN = 0
SLIDER_MAX = 100
PWM_MIN_US = 500
PWM_MAX_US = 2500

SPEED_LABELS = ("stopped", "slow", "medium", "fast")

FUNCTION_TOKENS: dict[str, str] = {
    "robot_up": "H",
    "robot_down": "G",
    "start_work": "M",
    "emergency_stop": "E",
    "connect_comm": "P",
}


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def slider_to_pwm(slider_percent: float) -> int:
    """Display-only pulse width in microseconds; rounds half up."""
    return int(math.floor(PWM_MIN_US + (slider_percent / 100) * (PWM_MAX_US - PWM_MIN_US) + 0.5))


def pwm_to_slider(pwm_us: float) -> int:
    return int(math.floor(((pwm_us - PWM_MIN_US) / (PWM_MAX_US - PWM_MIN_US)) * 100 + 0.5))


def servo_move(servo_id: int, slider_percent: int) -> str:
    if not _is_int(servo_id) or servo_id not in SERVO_IDS:
        raise InvalidServoError(f"Invalid servo id: {servo_id!r}")
    if not _is_int(slider_percent) or not SLIDER_MIN <= slider_percent <= SLIDER_MAX:
        raise InvalidSliderValueError(f"Slider value must be {SLIDER_MIN}..{SLIDER_MAX}, got {slider_percent!r}")
    return f"_change_position{servo_id}_{slider_percent}_"


def speed(level: int) -> str:
    if not _is_int(level) or not 0 <= level < len(SPEED_LABELS):
        raise InvalidSpeedError(f"Invalid speed level: {level!r}")
    return f"_change_speed{level}"


def speed_label(level: int) -> str:
    if _is_int(level) and 0 <= level < len(SPEED_LABELS):
        return SPEED_LABELS[level]
    return "unknown"


def light(device_id: int, on: bool) -> str:
    if not _is_int(device_id) or device_id < 0:
        raise InvalidCommandError(f"Invalid actuator id: {device_id!r}")
    return f"_light_on{device_id}" if on else f"_light_off{device_id}"


def function(name: str) -> str:
    token = FUNCTION_TOKENS.get(name)
    if token is None:
        raise UnknownFunctionError(f"Unknown function: {name!r}")
    return token


def status_query() -> str:
    return LinkToken.STATUS_QUERY.value


def counts_query() -> str:
    return LinkToken.COUNTS_QUERY.value


def raw(command: str) -> str:
    return command


def to_wire(command: str) -> bytes:
    try:
        return command.encode("latin-1")
    except UnicodeEncodeError as exc:
        raise InvalidCommandError(f"Command is not single-byte text: {command!r}") from exc

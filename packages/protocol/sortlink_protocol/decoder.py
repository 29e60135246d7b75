"""Inbound datagram classifier.

Controller datagrams are free-form ASCII with overlapping shapes, so
classification walks an ordered rule table and the first rule that returns an
event wins. The order of ``RULES`` is part of the wire contract: for example a
``"123_refresh"`` datagram must be read as a counts refresh before the
bare-digits rule can see it.

Every rule is a pure function of the text. Integer fields that fail to parse
fall back to 0 (counts) or to ``None`` (PWM, meaning "keep the prior value"),
and anything no rule claims becomes ``Unrecognized``; ``decode`` never raises.
"""

from __future__ import annotations

import re
from typing import Callable

from .models import (
    ACTUATOR_COUNT,
    DecodedEvent,
    ErrorNotice,
    ExplicitCounts,
    HandshakeAck,
    HeartbeatAck,
    PwmUpdate,
    RefreshCounts,
    SortScan,
    SpeedStatus,
    SuccessNotice,
    Unrecognized,
)


ERROR_PREFIX = "ERROR:"
SUCCESS_PREFIX = "SUCCESS:"
SORT_INFO_PREFIX = "sort_info:id="
STATUS_PREFIX = "STATUS:"
SORT_PREFIX = "SORT:"
PWM_PREFIX = "PWM:"
REFRESH_MARKER = "_refresh"
COUNT_LINE_MARKERS = ("C00", "C01", "C02")
IDLE_SENTINEL = "000"

HANDSHAKE_TOKENS = frozenset({"CONNECT_OK", "COMM_CONNECTED", "CONNECT_SUCCESS"})
HEARTBEAT_TOKEN = "HEARTBEAT_OK"
DEVICE_ACKS = frozenset({"device_light_on", "device_light_off"})
DIRECTION_ACKS = frozenset({"L", "R"})

MAX_SPEED_LEVEL = 3

_DIGITS = re.compile(r"^\d+$", re.ASCII)
_NON_DIGIT = re.compile(r"\D", re.ASCII)
_NON_UPPER = re.compile(r"[^A-Z]")
_LEADING_INT = re.compile(r"^\s*([+-]?\d+)", re.ASCII)

Rule = Callable[[str], "DecodedEvent | None"]


def parse_int(text: str, default: int | None = 0) -> int | None:
    """Parse the leading integer of ``text`` the way the controller firmware pads it."""
    match = _LEADING_INT.match(text)
    if match is None:
        return default
    return int(match.group(1))


def _count(text: str) -> int:
    return max(0, parse_int(text, 0) or 0)


def _error_notice(text: str) -> DecodedEvent | None:
    if text.startswith(ERROR_PREFIX):
        return ErrorNotice(text=text[len(ERROR_PREFIX) :].strip())
    return None


def _success_notice(text: str) -> DecodedEvent | None:
    if text.startswith(SUCCESS_PREFIX):
        return SuccessNotice(text=text[len(SUCCESS_PREFIX) :].strip())
    return None


def _sort_info(text: str) -> DecodedEvent | None:
    if not text.startswith(SORT_INFO_PREFIX):
        return None
    parts = text[len(SORT_INFO_PREFIX) :].split(",")
    item_id = _NON_DIGIT.sub("", parts[0])
    direction = ""
    if len(parts) > 1:
        direction = _NON_UPPER.sub("", parts[1].replace("dir=", ""))
    return SortScan(item_id=item_id, direction=direction or None)


def _refresh_counts(text: str) -> DecodedEvent | None:
    if REFRESH_MARKER not in text or len(text) <= len(REFRESH_MARKER):
        return None
    payload = text.replace(REFRESH_MARKER, "", 1).strip()
    # "000" is the controller's idle reply, not a counter snapshot.
    if len(payload) == 3 and _DIGITS.match(payload) and payload != IDLE_SENTINEL:
        return RefreshCounts(values=(int(payload[0]), int(payload[1]), int(payload[2])))
    return RefreshCounts(values=None)


def _count_lines(text: str) -> DecodedEvent | None:
    if not all(marker in text for marker in COUNT_LINE_MARKERS):
        return None
    values = [0, 0, 0]
    for line in text.split("\n"):
        line = line.strip()
        for idx, marker in enumerate(COUNT_LINE_MARKERS):
            if line.startswith(marker):
                values[idx] = _count(line[len(marker) :])
                break
    return ExplicitCounts(values=(values[0], values[1], values[2]))


def _device_ack(text: str) -> DecodedEvent | None:
    if text in DEVICE_ACKS or text.strip() in DIRECTION_ACKS:
        return Unrecognized(raw=text, reason="device_ack")
    return None


def _numeric_id(text: str) -> DecodedEvent | None:
    stripped = text.strip()
    if not _DIGITS.match(stripped):
        return None
    if stripped == IDLE_SENTINEL:
        return Unrecognized(raw=text, reason="idle_sentinel")
    return SortScan(item_id=stripped, source="numeric")


def _status(text: str) -> DecodedEvent | None:
    if not text.startswith(STATUS_PREFIX):
        return None
    parts = text[len(STATUS_PREFIX) :].split(",")
    running = parts[0] == "1"
    speed = parse_int(parts[1], 0) if len(parts) > 1 else 0
    if speed is None or not 0 <= speed <= MAX_SPEED_LEVEL:
        speed = 0
    return SpeedStatus(running=running, speed=speed)


def _sort_snapshot(text: str) -> DecodedEvent | None:
    if not text.startswith(SORT_PREFIX):
        return None
    parts = text[len(SORT_PREFIX) :].split(",")
    v0, v1, v2 = (_count(parts[i]) if i < len(parts) else 0 for i in range(3))
    return ExplicitCounts(values=(v0, v1, v2))


def _pwm(text: str) -> DecodedEvent | None:
    if not text.startswith(PWM_PREFIX):
        return None
    parts = text[len(PWM_PREFIX) :].split(",")
    values = tuple(parse_int(parts[i], None) if i < len(parts) else None for i in range(ACTUATOR_COUNT))
    return PwmUpdate(values=values)


def _handshake(text: str) -> DecodedEvent | None:
    if text in HANDSHAKE_TOKENS:
        return HandshakeAck(token=text)
    return None


def _heartbeat(text: str) -> DecodedEvent | None:
    if text == HEARTBEAT_TOKEN:
        return HeartbeatAck(token=text)
    return None


RULES: tuple[tuple[str, Rule], ...] = (
    ("error_notice", _error_notice),
    ("success_notice", _success_notice),
    ("sort_info", _sort_info),
    ("refresh_counts", _refresh_counts),
    ("count_lines", _count_lines),
    ("device_ack", _device_ack),
    ("numeric_id", _numeric_id),
    ("status", _status),
    ("sort_snapshot", _sort_snapshot),
    ("pwm", _pwm),
    ("handshake", _handshake),
    ("heartbeat", _heartbeat),
)


def datagram_text(raw: bytes | bytearray | memoryview | str) -> str:
    if isinstance(raw, str):
        return raw
    # One byte per character, so arbitrary bytes always decode.
    return bytes(raw).decode("latin-1")


def classify(raw: bytes | bytearray | memoryview | str) -> tuple[str, DecodedEvent]:
    """Return the name of the matching rule together with the decoded event."""
    text = datagram_text(raw)
    for name, rule in RULES:
        event = rule(text)
        if event is not None:
            return name, event
    return "unrecognized", Unrecognized(raw=text)


def decode(raw: bytes | bytearray | memoryview | str) -> DecodedEvent:
    return classify(raw)[1]

"""Typed models for the controller link: connection state, endpoints, counters, and decoded events."""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import Any, Iterable, Sequence, Union


POSITIONS = ("position0", "position1", "position2")
ACTUATOR_COUNT = 3
DEFAULT_PWM_US = 1500


class ConnectionState(str, Enum):
    IDLE = "Idle"
    CONNECTING = "Connecting"
    AWAITING_HANDSHAKE = "AwaitingHandshake"
    CONNECTED = "Connected"
    DISCONNECTING = "Disconnecting"


@dataclass(frozen=True)
class Endpoint:
    address: str
    port: int

    def __str__(self) -> str:
        return f"{self.address}:{self.port}"


@dataclass(frozen=True)
class SortingCounts:
    position0: int = 0
    position1: int = 0
    position2: int = 0

    @classmethod
    def from_values(cls, values: Iterable[int]) -> "SortingCounts":
        v0, v1, v2 = (max(0, int(v)) for v in values)
        return cls(position0=v0, position1=v1, position2=v2)

    def as_tuple(self) -> tuple[int, int, int]:
        return (self.position0, self.position1, self.position2)

    def as_dict(self) -> dict[str, int]:
        return asdict(self)

    def incremented(self, position: str) -> "SortingCounts":
        if position not in POSITIONS:
            raise ValueError(f"Unknown position: {position}")
        return replace(self, **{position: getattr(self, position) + 1})


@dataclass(frozen=True)
class ErrorNotice:
    text: str


@dataclass(frozen=True)
class SuccessNotice:
    text: str


@dataclass(frozen=True)
class SortScan:
    item_id: str
    direction: str | None = None
    # "sort_info" for structured scanner reports, "numeric" for bare digit ids.
    source: str = "sort_info"


@dataclass(frozen=True)
class RefreshCounts:
    values: tuple[int, int, int] | None = None


@dataclass(frozen=True)
class ExplicitCounts:
    values: tuple[int, int, int]


@dataclass(frozen=True)
class SpeedStatus:
    running: bool
    speed: int


@dataclass(frozen=True)
class PwmUpdate:
    # None marks a missing or unparsable field; the receiver keeps its prior value.
    values: tuple[int | None, ...]

    def merged(self, prior: Sequence[int]) -> tuple[int, ...]:
        out = list(prior)
        for idx, value in enumerate(self.values[: len(out)]):
            if value is not None:
                out[idx] = value
        return tuple(out)


@dataclass(frozen=True)
class HandshakeAck:
    token: str


@dataclass(frozen=True)
class HeartbeatAck:
    token: str


@dataclass(frozen=True)
class Unrecognized:
    raw: str
    reason: str = "unknown"


DecodedEvent = Union[
    ErrorNotice,
    SuccessNotice,
    SortScan,
    RefreshCounts,
    ExplicitCounts,
    SpeedStatus,
    PwmUpdate,
    HandshakeAck,
    HeartbeatAck,
    Unrecognized,
]

COUNT_EVENTS = (SortScan, RefreshCounts, ExplicitCounts)


def event_kind(event: DecodedEvent) -> str:
    return type(event).__name__


def event_payload(event: DecodedEvent) -> dict[str, Any]:
    payload: dict[str, Any] = {"kind": event_kind(event)}
    payload.update(asdict(event))
    return payload

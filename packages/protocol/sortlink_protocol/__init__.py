"""Wire protocol package for the sorting controller UDP link."""

from .decoder import RULES, classify, decode
from .errors import (
    ConnectFailedError,
    HandshakeTimeoutError,
    InvalidCommandError,
    InvalidServoError,
    InvalidSliderValueError,
    InvalidSpeedError,
    LinkError,
    NotConnectedError,
    ProbeFailureError,
    SessionBusyError,
    TransportSendError,
    TransportUnavailableError,
    UnknownFunctionError,
)
from .models import (
    ConnectionState,
    DecodedEvent,
    Endpoint,
    ErrorNotice,
    ExplicitCounts,
    HandshakeAck,
    HeartbeatAck,
    PwmUpdate,
    RefreshCounts,
    SortingCounts,
    SortScan,
    SpeedStatus,
    SuccessNotice,
    Unrecognized,
)
from .transport import DatagramTransport, UdpConfig

__all__ = [
    "RULES",
    "ConnectFailedError",
    "ConnectionState",
    "DatagramTransport",
    "DecodedEvent",
    "Endpoint",
    "ErrorNotice",
    "ExplicitCounts",
    "HandshakeAck",
    "HandshakeTimeoutError",
    "HeartbeatAck",
    "InvalidCommandError",
    "InvalidServoError",
    "InvalidSliderValueError",
    "InvalidSpeedError",
    "LinkError",
    "NotConnectedError",
    "ProbeFailureError",
    "PwmUpdate",
    "RefreshCounts",
    "SessionBusyError",
    "SortScan",
    "SortingCounts",
    "SpeedStatus",
    "SuccessNotice",
    "TransportSendError",
    "TransportUnavailableError",
    "UdpConfig",
    "UnknownFunctionError",
    "Unrecognized",
    "classify",
    "decode",
]

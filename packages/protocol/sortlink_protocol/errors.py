"""Error taxonomy shared by the encoder, transport, and session."""

from __future__ import annotations


class LinkError(RuntimeError):
    """Base class for controller link failures."""


class TransportUnavailableError(LinkError):
    """The datagram socket could not be created or is closed."""


class TransportSendError(LinkError):
    """The transport rejected an outbound datagram."""


class NotConnectedError(LinkError):
    """A send was attempted without an endpoint or transport."""


class SessionBusyError(LinkError):
    """A connect request overlapped an attempt already in flight."""


class HandshakeTimeoutError(LinkError):
    """No handshake acknowledgement arrived within the timeout."""


class ProbeFailureError(LinkError):
    """Liveness probes failed past the heartbeat threshold."""


class ConnectFailedError(LinkError):
    """Terminal connect failure after the retry budget was spent."""

    def __init__(self, message: str, attempts: int = 0, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.cause = cause


class InvalidCommandError(ValueError):
    """Encoder input validation failure; nothing is sent."""


class InvalidServoError(InvalidCommandError):
    pass


class InvalidSliderValueError(InvalidCommandError):
    pass


class InvalidSpeedError(InvalidCommandError):
    pass


class UnknownFunctionError(InvalidCommandError):
    pass

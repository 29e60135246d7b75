"""UDP datagram transport for the controller link."""

from __future__ import annotations

import logging
import socket
import threading
from dataclasses import dataclass
from typing import Callable

from .errors import TransportSendError, TransportUnavailableError


_log = logging.getLogger("sortlink.transport")

MessageHandler = Callable[[bytes, "tuple[str, int]"], None]
ErrorHandler = Callable[[Exception], None]


@dataclass
class UdpConfig:
    bind_address: str = "0.0.0.0"
    bind_port: int = 0
    recv_buffer: int = 2048
    poll_timeout_ms: int = 200


class DatagramTransport:
    """Thin wrapper over a UDP socket with a background receive thread."""

    def __init__(self, config: UdpConfig | None = None) -> None:
        self.config = config or UdpConfig()
        self._sock: socket.socket | None = None
        self._thread: threading.Thread | None = None
        self._stop: threading.Event | None = None
        self.local_port: int | None = None

    @property
    def is_open(self) -> bool:
        return self._sock is not None

    def open(self, on_message: MessageHandler, on_error: ErrorHandler | None = None) -> int:
        if self._sock is not None:
            return int(self.local_port or 0)
        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        except OSError as exc:
            raise TransportUnavailableError(f"cannot create UDP socket: {exc}") from exc
        try:
            sock.settimeout(max(self.config.poll_timeout_ms, 1) / 1000)
            sock.bind((self.config.bind_address, self.config.bind_port))
        except OSError as exc:
            sock.close()
            raise TransportUnavailableError(f"cannot bind UDP socket: {exc}") from exc

        self._sock = sock
        self.local_port = int(sock.getsockname()[1])
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._receive_loop,
            args=(sock, self._stop, on_message, on_error),
            name="sortlink-udp-rx",
            daemon=True,
        )
        self._thread.start()
        _log.info("udp socket bound", extra={"event": "udp_bound", "local_port": self.local_port})
        return self.local_port

    def close(self, wait: bool = True) -> None:
        sock, thread, stop = self._sock, self._thread, self._stop
        self._sock = None
        self._thread = None
        self._stop = None
        self.local_port = None
        if stop is not None:
            stop.set()
        if sock is not None:
            sock.close()
        # The receive thread may be the caller when a handler closes the link.
        if wait and thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)

    def send_to(self, address: str, port: int, payload: bytes) -> int:
        sock = self._sock
        if sock is None:
            raise TransportUnavailableError("UDP socket is not open")
        try:
            return int(sock.sendto(payload, (address, int(port))))
        except OSError as exc:
            raise TransportSendError(f"send to {address}:{port} failed: {exc}") from exc

    def _receive_loop(
        self,
        sock: socket.socket,
        stop: threading.Event,
        on_message: MessageHandler,
        on_error: ErrorHandler | None,
    ) -> None:
        while not stop.is_set():
            try:
                data, remote = sock.recvfrom(self.config.recv_buffer)
            except TimeoutError:
                continue
            except ConnectionResetError:
                # ICMP port-unreachable from an earlier send; the socket is still usable.
                continue
            except OSError as exc:
                if stop.is_set():
                    break
                _log.error("udp receive failed", extra={"event": "udp_receive_error", "error": str(exc)})
                if on_error is not None:
                    on_error(exc)
                break

            if stop.is_set():
                break
            try:
                on_message(data, remote)
            except Exception:
                _log.exception("datagram handler failed", extra={"event": "udp_handler_error"})

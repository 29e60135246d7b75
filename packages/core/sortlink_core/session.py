"""Controller link session: connect, handshake, heartbeat, bounded reconnect, and inbound dispatch."""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

from sortlink_protocol.commands import LinkToken, pwm_to_slider, speed_label, to_wire
from sortlink_protocol.decoder import decode
from sortlink_protocol.errors import (
    ConnectFailedError,
    HandshakeTimeoutError,
    LinkError,
    NotConnectedError,
    ProbeFailureError,
    SessionBusyError,
    TransportUnavailableError,
)
from sortlink_protocol.models import (
    ACTUATOR_COUNT,
    COUNT_EVENTS,
    DEFAULT_PWM_US,
    ConnectionState,
    DecodedEvent,
    Endpoint,
    ErrorNotice,
    HandshakeAck,
    HeartbeatAck,
    PwmUpdate,
    SortingCounts,
    SortScan,
    SpeedStatus,
    SuccessNotice,
    Unrecognized,
)
from sortlink_protocol.transport import DatagramTransport, ErrorHandler, MessageHandler

from .config import LinkConfig
from .counts import FilterOutcome, SortingFilter
from .logging_setup import get_logger


TOPIC_CONNECTIVITY = "connectivity"
TOPIC_CONNECT_FAILED = "connect_failed"
TOPIC_COUNTS = "counts_changed"
TOPIC_SPEED = "speed_status"
TOPIC_PWM = "pwm_changed"
TOPIC_DIAGNOSTIC = "diagnostic"

Listener = Callable[[str, "dict[str, Any]"], None]


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay_s: float, callback: Callable[[], None]) -> TimerHandle: ...


class Transport(Protocol):
    @property
    def is_open(self) -> bool: ...

    def open(self, on_message: MessageHandler, on_error: ErrorHandler | None = None) -> int: ...

    def close(self, wait: bool = True) -> None: ...

    def send_to(self, address: str, port: int, payload: bytes) -> int: ...


class ThreadTimerScheduler:
    """One-shot daemon timers backed by ``threading.Timer``."""

    def call_later(self, delay_s: float, callback: Callable[[], None]) -> TimerHandle:
        timer = threading.Timer(max(delay_s, 0.0), callback)
        timer.daemon = True
        timer.name = "sortlink-timer"
        timer.start()
        return timer


def monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


@dataclass(frozen=True)
class SessionTimings:
    handshake_timeout_ms: int = 10000
    heartbeat_interval_ms: int = 15000
    retry_delay_ms: int = 1000
    max_attempts: int = 3
    heartbeat_threshold: int = 3

    @classmethod
    def from_link_config(cls, link: LinkConfig) -> "SessionTimings":
        return cls(
            handshake_timeout_ms=link.handshake_timeout_ms,
            heartbeat_interval_ms=link.heartbeat_interval_ms,
            retry_delay_ms=link.retry_delay_ms,
            max_attempts=link.max_attempts,
            heartbeat_threshold=link.heartbeat_threshold,
        )

    def connect_budget_s(self) -> float:
        """Upper bound for one ``connect`` call to settle."""
        total_ms = self.max_attempts * self.handshake_timeout_ms + (self.max_attempts - 1) * self.retry_delay_ms
        return total_ms / 1000


@dataclass
class RetryBudget:
    attempts: int = 0
    max: int = 3


@dataclass
class HeartbeatHealth:
    consecutive_failures: int = 0
    threshold: int = 3


@dataclass
class SessionStatus:
    state: ConnectionState = ConnectionState.IDLE
    attempt: int = 0
    endpoint: Endpoint | None = None
    connected: bool = False
    last_error: str | None = None
    running: bool = False
    speed: int = 0
    pwm: tuple[int, ...] = field(default_factory=lambda: (DEFAULT_PWM_US,) * ACTUATOR_COUNT)


class LinkSession:
    """Owns the link to one controller.

    Every state transition, timer callback and inbound datagram is applied
    while holding one re-entrant lock. Timer callbacks carry the generation
    they were scheduled in and become no-ops once ``_cancel_timers`` has
    advanced it, so nothing scheduled before ``disconnect`` can act after it
    returns. Listeners are invoked on the thread that caused the change while
    the lock is held; they must not block.
    """

    def __init__(
        self,
        transport: Transport | None = None,
        counts_filter: SortingFilter | None = None,
        timings: SessionTimings | None = None,
        scheduler: Scheduler | None = None,
        clock_ms: Callable[[], int] | None = None,
        on_endpoint_confirmed: Callable[[Endpoint], None] | None = None,
    ) -> None:
        self.timings = timings or SessionTimings()
        self._transport: Transport = transport or DatagramTransport()
        self._filter = counts_filter or SortingFilter()
        self._scheduler: Scheduler = scheduler or ThreadTimerScheduler()
        self._clock_ms = clock_ms or monotonic_ms
        self._on_endpoint_confirmed = on_endpoint_confirmed

        self._lock = threading.RLock()
        self._status = SessionStatus()
        self._retry = RetryBudget(max=self.timings.max_attempts)
        self._health = HeartbeatHealth(threshold=self.timings.heartbeat_threshold)
        self._generation = 0
        self._transport_epoch = 0
        self._deadline: TimerHandle | None = None
        self._probe_timer: TimerHandle | None = None
        self._activity_seen = False
        self._future: Future[bool] | None = None
        self._listeners: list[Listener] = []
        self._events: list[dict[str, Any]] = []
        self._log = get_logger("session")

    @property
    def status(self) -> SessionStatus:
        with self._lock:
            return replace(self._status)

    @property
    def state(self) -> ConnectionState:
        return self._status.state

    @property
    def endpoint(self) -> Endpoint | None:
        return self._status.endpoint

    @property
    def counts(self) -> SortingCounts:
        return self._filter.counts

    @property
    def retry_budget(self) -> RetryBudget:
        with self._lock:
            return replace(self._retry)

    @property
    def heartbeat(self) -> HeartbeatHealth:
        with self._lock:
            return replace(self._health)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def recent_events(self, limit: int = 200) -> list[dict[str, Any]]:
        with self._lock:
            return self._events[-limit:]

    # public operations

    def connect(self, endpoint: Endpoint) -> Future[bool]:
        """Start a connection attempt; the future resolves on handshake or terminal failure.

        Raises ``SessionBusyError`` without side effects unless the session is idle.
        """
        with self._lock:
            if self._status.state is not ConnectionState.IDLE:
                raise SessionBusyError(f"connect rejected while {self._status.state.value}")

            future: Future[bool] = Future()
            self._status.endpoint = endpoint
            self._status.last_error = None
            self._retry = RetryBudget(max=self.timings.max_attempts)
            self._log_event("connect_start", endpoint=str(endpoint))

            try:
                self._recreate_transport()
            except TransportUnavailableError as exc:
                self._status.last_error = str(exc)
                self._log_event("connect_transport_error", error=str(exc))
                self._log.error(
                    "transport unavailable for %s: %s",
                    endpoint,
                    exc,
                    extra={"event": "connect_transport_error", "endpoint": str(endpoint)},
                )
                self._notify(TOPIC_CONNECT_FAILED, {"endpoint": str(endpoint), "attempts": 0, "error": str(exc)})
                future.set_exception(exc)
                return future

            self._future = future
            self._begin_attempt(0)
            return future

    def disconnect(self) -> Endpoint | None:
        """Tear down from any state; returns the endpoint that was in use, if any."""
        with self._lock:
            previous = self._status.endpoint
            self._set_state(ConnectionState.DISCONNECTING)
            self._cancel_timers()
            self._transport_epoch += 1
            self._transport.close(wait=False)

            self._status.endpoint = None
            self._status.running = False
            self._retry = RetryBudget(max=self.timings.max_attempts)
            self._health = HeartbeatHealth(threshold=self.timings.heartbeat_threshold)
            self._set_state(ConnectionState.IDLE)
            self._resolve_pending(ConnectFailedError("connect cancelled by disconnect", attempts=0))

            self._log_event("disconnect", endpoint=str(previous) if previous else None)
            self._notify(TOPIC_CONNECTIVITY, {"connected": False, "reason": "disconnect"})
            return previous

    def send(self, command: str) -> int:
        """Send one command string; allowed in any state once an endpoint is set."""
        with self._lock:
            return self._send_locked(command)

    def reset_counts(self) -> SortingCounts:
        with self._lock:
            change = self._filter.reset_counts()
            self._notify(TOPIC_COUNTS, change.counts.as_dict())
            return change.counts

    # connection state machine

    def _begin_attempt(self, attempt: int) -> None:
        self._cancel_timers()
        self._set_state(ConnectionState.CONNECTING, attempt)
        self._retry.attempts = attempt
        self._log_event("handshake_request", attempt=attempt)
        try:
            self._send_locked(LinkToken.CONNECT_REQUEST.value)
        except LinkError as exc:
            self._log.warning(
                "handshake request failed (attempt %d): %s",
                attempt + 1,
                exc,
                extra={"event": "handshake_send_error", "attempt": attempt},
            )
            self._retry_or_fail(exc)
            return

        # A reply delivered during the send may already have moved us on.
        if self._status.state is not ConnectionState.CONNECTING:
            return
        self._set_state(ConnectionState.AWAITING_HANDSHAKE, attempt)
        self._deadline = self._schedule(self.timings.handshake_timeout_ms, self._on_handshake_timeout)

    def _on_handshake_timeout(self) -> None:
        self._deadline = None
        exc = HandshakeTimeoutError(f"no handshake ack within {self.timings.handshake_timeout_ms} ms")
        self._log_event("handshake_timeout", attempt=self._status.attempt)
        self._log.warning(
            "handshake timeout (attempt %d/%d)",
            self._status.attempt + 1,
            self.timings.max_attempts,
            extra={"event": "handshake_timeout", "attempt": self._status.attempt},
        )
        self._retry_or_fail(exc)

    def _retry_or_fail(self, exc: LinkError) -> None:
        self._status.last_error = str(exc)
        next_attempt = self._status.attempt + 1
        if next_attempt >= self.timings.max_attempts:
            self._fail_terminal(exc)
            return
        self._cancel_timers()
        self._set_state(ConnectionState.CONNECTING, next_attempt)
        self._retry.attempts = next_attempt
        self._deadline = self._schedule(self.timings.retry_delay_ms, lambda: self._begin_attempt(next_attempt))

    def _fail_terminal(self, exc: LinkError) -> None:
        attempts = self._status.attempt + 1
        endpoint = self._status.endpoint
        self._cancel_timers()
        self._set_state(ConnectionState.IDLE)
        self._status.last_error = str(exc)
        self._log_event("connect_failed", attempts=attempts, error=str(exc))
        self._log.error(
            "connect to %s failed after %d attempts: %s",
            endpoint,
            attempts,
            exc,
            extra={"event": "connect_failed", "attempt": attempts, "endpoint": str(endpoint)},
        )
        self._notify(
            TOPIC_CONNECT_FAILED,
            {"endpoint": str(endpoint) if endpoint else None, "attempts": attempts, "error": str(exc)},
        )
        self._resolve_pending(
            ConnectFailedError(f"connect to {endpoint} failed after {attempts} attempts: {exc}", attempts, exc)
        )

    def _on_handshake_ack(self, event: HandshakeAck) -> None:
        state = self._status.state
        if state is ConnectionState.CONNECTED:
            return
        if state not in (ConnectionState.CONNECTING, ConnectionState.AWAITING_HANDSHAKE):
            self._log.info("handshake ack %s ignored in %s", event.token, state.value, extra={"event": "stray_ack"})
            return

        endpoint = self._status.endpoint
        self._cancel_timers()
        self._retry = RetryBudget(max=self.timings.max_attempts)
        self._health = HeartbeatHealth(threshold=self.timings.heartbeat_threshold)
        self._set_state(ConnectionState.CONNECTED)
        self._status.last_error = None
        self._activity_seen = True
        self._log_event("connect_ok", endpoint=str(endpoint), token=event.token)
        self._log.info("connected to %s", endpoint, extra={"event": "connect_ok", "endpoint": str(endpoint)})

        self._notify(TOPIC_CONNECTIVITY, {"connected": True, "endpoint": str(endpoint)})
        if endpoint is not None:
            self._persist_endpoint(endpoint)
        future, self._future = self._future, None
        if future is not None and not future.done():
            future.set_result(True)
        self._start_heartbeat()

    def _start_heartbeat(self) -> None:
        for command in (LinkToken.PROBE.value, LinkToken.STATUS_QUERY.value):
            if self._status.state is not ConnectionState.CONNECTED:
                return
            try:
                self._send_locked(command)
            except LinkError as exc:
                self._log.warning("initial %r failed: %s", command, exc, extra={"event": "initial_probe_error"})
        if self._status.state is ConnectionState.CONNECTED:
            self._probe_timer = self._schedule(self.timings.heartbeat_interval_ms, self._on_probe_tick)

    def _on_probe_tick(self) -> None:
        self._probe_timer = None
        failure: str | None = None
        if not self._activity_seen:
            failure = f"no inbound datagram for {self.timings.heartbeat_interval_ms} ms"
        self._activity_seen = False
        try:
            self._send_locked(LinkToken.PROBE.value)
        except LinkError as exc:
            failure = f"probe send failed: {exc}"

        if self._status.state is not ConnectionState.CONNECTED:
            return

        if failure is not None:
            self._health.consecutive_failures += 1
            failures = self._health.consecutive_failures
            self._log_event("probe_failure", failures=failures, error=failure)
            self._log.warning(
                "heartbeat failure %d/%d: %s",
                failures,
                self._health.threshold,
                failure,
                extra={"event": "probe_failure", "error": failure},
            )
            if failures >= self._health.threshold:
                self._connectivity_lost(ProbeFailureError(f"{failures} consecutive heartbeat failures: {failure}"))
                return

        self._probe_timer = self._schedule(self.timings.heartbeat_interval_ms, self._on_probe_tick)

    def _connectivity_lost(self, exc: LinkError) -> None:
        self._cancel_timers()
        self._status.last_error = str(exc)
        self._set_state(ConnectionState.CONNECTING, 0)
        self._log_event("connectivity_lost", error=str(exc))
        self._log.warning("connectivity lost: %s", exc, extra={"event": "connectivity_lost", "error": str(exc)})
        self._notify(TOPIC_CONNECTIVITY, {"connected": False, "reason": str(exc)})

        self._retry = RetryBudget(max=self.timings.max_attempts)
        try:
            self._recreate_transport()
        except TransportUnavailableError as err:
            self._fail_terminal(err)
            return
        self._begin_attempt(0)

    # transport plumbing

    def _recreate_transport(self) -> None:
        self._transport_epoch += 1
        epoch = self._transport_epoch
        self._transport.close(wait=False)
        self._transport.open(
            lambda data, remote: self._on_datagram(epoch, data, remote),
            lambda exc: self._on_transport_error(epoch, exc),
        )

    def _send_locked(self, command: str) -> int:
        endpoint = self._status.endpoint
        if endpoint is None:
            raise NotConnectedError("no controller endpoint set")
        if not self._transport.is_open:
            raise NotConnectedError("transport is not open")
        sent = self._transport.send_to(endpoint.address, endpoint.port, to_wire(command))
        self._log.debug("sent %r to %s", command, endpoint, extra={"event": "send"})
        return sent

    def _on_transport_error(self, epoch: int, exc: Exception) -> None:
        with self._lock:
            if epoch != self._transport_epoch:
                return
            self._log_event("transport_error", error=str(exc))
            state = self._status.state
            if state is ConnectionState.CONNECTED:
                self._connectivity_lost(TransportUnavailableError(f"receive failed: {exc}"))
            elif state in (ConnectionState.CONNECTING, ConnectionState.AWAITING_HANDSHAKE):
                try:
                    self._recreate_transport()
                except TransportUnavailableError as err:
                    self._fail_terminal(err)

    def _on_datagram(self, epoch: int, data: bytes, remote: tuple[str, int]) -> None:
        event = decode(data)
        now_ms = self._clock_ms()
        with self._lock:
            if epoch != self._transport_epoch:
                return
            try:
                self._dispatch(event, now_ms)
            except Exception:
                self._log.exception("dispatch failed for %r", data, extra={"event": "dispatch_error"})

    def _dispatch(self, event: DecodedEvent, now_ms: int) -> None:
        if self._status.state is ConnectionState.CONNECTED:
            self._activity_seen = True
            self._health.consecutive_failures = 0

        if isinstance(event, HandshakeAck):
            self._on_handshake_ack(event)
        elif isinstance(event, HeartbeatAck):
            return
        elif isinstance(event, COUNT_EVENTS):
            self._apply_counts(event, now_ms)
        elif isinstance(event, SpeedStatus):
            self._status.running = event.running
            self._status.speed = event.speed
            self._notify_speed()
        elif isinstance(event, PwmUpdate):
            self._status.pwm = event.merged(self._status.pwm)
            self._notify(
                TOPIC_PWM,
                {"values": list(self._status.pwm), "sliders": [pwm_to_slider(v) for v in self._status.pwm]},
            )
        elif isinstance(event, ErrorNotice):
            self._log.error("controller error: %s", event.text, extra={"event": "controller_error"})
            self._notify(TOPIC_DIAGNOSTIC, {"level": "error", "kind": "ErrorNotice", "text": event.text})
        elif isinstance(event, SuccessNotice):
            self._log.info("controller success: %s", event.text, extra={"event": "controller_success"})
        elif isinstance(event, Unrecognized):
            if event.reason == "unknown":
                self._log.info("unrecognized datagram %r", event.raw, extra={"event": "unrecognized"})
                self._notify(TOPIC_DIAGNOSTIC, {"level": "info", "kind": "Unrecognized", "text": event.raw})
            else:
                self._log.debug("device ack %r (%s)", event.raw, event.reason, extra={"event": "device_ack"})

    def _apply_counts(self, event: DecodedEvent, now_ms: int) -> None:
        decision = self._filter.evaluate(event, now_ms)
        if decision.change is not None:
            self._notify(TOPIC_COUNTS, decision.change.counts.as_dict())
        if not isinstance(event, SortScan) or event.source != "sort_info":
            return
        # A scanner report that got past dedup and cooldown means the conveyor moves.
        if decision.outcome in (FilterOutcome.APPLIED, FilterOutcome.UNMAPPED) and not self._status.running:
            self._status.running = True
            self._notify_speed()

    def _notify_speed(self) -> None:
        speed = self._status.speed
        self._notify(TOPIC_SPEED, {"running": self._status.running, "speed": speed, "label": speed_label(speed)})

    # helpers

    def _schedule(self, delay_ms: int, callback: Callable[[], None]) -> TimerHandle:
        generation = self._generation

        def _fire() -> None:
            with self._lock:
                if generation != self._generation:
                    return
                callback()

        return self._scheduler.call_later(delay_ms / 1000, _fire)

    def _cancel_timers(self) -> None:
        self._generation += 1
        for timer in (self._deadline, self._probe_timer):
            if timer is not None:
                timer.cancel()
        self._deadline = None
        self._probe_timer = None

    def _set_state(self, state: ConnectionState, attempt: int = 0) -> None:
        self._status.state = state
        self._status.attempt = attempt
        self._status.connected = state is ConnectionState.CONNECTED

    def _resolve_pending(self, exc: BaseException) -> None:
        future, self._future = self._future, None
        if future is not None and not future.done():
            future.set_exception(exc)

    def _persist_endpoint(self, endpoint: Endpoint) -> None:
        if self._on_endpoint_confirmed is None:
            return
        try:
            self._on_endpoint_confirmed(endpoint)
        except Exception:
            self._log.exception("persisting endpoint %s failed", endpoint, extra={"event": "persist_error"})

    def _notify(self, topic: str, payload: dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                listener(topic, payload)
            except Exception:
                self._log.exception("listener failed for %s", topic, extra={"event": "listener_error"})

    def _log_event(self, event: str, **fields: Any) -> None:
        row = {
            "ts_utc": datetime.now(timezone.utc).isoformat(),
            "event": event,
            "state": self._status.state.value,
        }
        row.update(fields)
        self._events.append(row)
        if len(self._events) > 1000:
            self._events = self._events[-1000:]

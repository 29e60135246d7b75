import sys
import unittest
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT / "packages" / "core"))
sys.path.insert(0, str(ROOT / "packages" / "protocol"))

from sortlink_core.counts import SortingFilter
from sortlink_core.session import LinkSession, SessionTimings
from sortlink_protocol.errors import (
    ConnectFailedError,
    NotConnectedError,
    SessionBusyError,
    TransportSendError,
    TransportUnavailableError,
)
from sortlink_protocol.models import ConnectionState, Endpoint, SortingCounts


ENDPOINT = Endpoint(address="192.168.137.1", port=5566)


class _Handle:
    def __init__(self, due: float, callback) -> None:
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    def __init__(self) -> None:
        self.now = 0.0
        self.pending: list[_Handle] = []

    def call_later(self, delay_s: float, callback) -> _Handle:
        handle = _Handle(self.now + delay_s, callback)
        self.pending.append(handle)
        return handle

    def active(self) -> list[_Handle]:
        return [h for h in self.pending if not h.cancelled]

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = [h for h in self.active() if h.due <= target]
            if not due:
                break
            handle = min(due, key=lambda h: h.due)
            self.pending.remove(handle)
            self.now = handle.due
            handle.callback()
        self.now = target


class FakeTransport:
    def __init__(self, fail_open: bool = False) -> None:
        self.fail_open = fail_open
        self.fail_sends = 0
        self.is_open = False
        self.sent: list[str] = []
        self.replies: dict[str, str] = {}
        self.handlers: list = []
        self.open_count = 0
        self.close_calls = 0

    def open(self, on_message, on_error=None) -> int:
        if self.fail_open:
            raise TransportUnavailableError("cannot create UDP socket")
        self.handlers.append(on_message)
        self.is_open = True
        self.open_count += 1
        return 40000

    def close(self, wait: bool = True) -> None:
        self.is_open = False
        self.close_calls += 1

    def send_to(self, address: str, port: int, payload: bytes) -> int:
        if self.fail_sends > 0:
            self.fail_sends -= 1
            raise TransportSendError(f"send to {address}:{port} failed")
        text = payload.decode("latin-1")
        self.sent.append(text)
        reply = self.replies.get(text)
        if reply is not None:
            self.deliver(reply)
        return len(payload)

    def deliver(self, text: str, handler=None) -> None:
        (handler or self.handlers[-1])(text.encode("latin-1"), (ENDPOINT.address, ENDPOINT.port))


class SessionTestCase(unittest.TestCase):
    def setUp(self):
        self.scheduler = ManualScheduler()
        self.transport = FakeTransport()
        self.notes: list[tuple[str, dict]] = []
        self.confirmed: list[Endpoint] = []
        self.session = self._session(self.transport)

    def _session(self, transport) -> LinkSession:
        session = LinkSession(
            transport=transport,
            counts_filter=SortingFilter(),
            timings=SessionTimings(),
            scheduler=self.scheduler,
            clock_ms=lambda: int(self.scheduler.now * 1000),
            on_endpoint_confirmed=self.confirmed.append,
        )
        session.subscribe(lambda topic, payload: self.notes.append((topic, dict(payload))))
        return session

    def topics(self, name: str) -> list[dict]:
        return [payload for topic, payload in self.notes if topic == name]

    def connect_ok(self):
        future = self.session.connect(ENDPOINT)
        self.transport.deliver("CONNECT_OK")
        return future


class ConnectTests(SessionTestCase):
    def test_handshake_success(self):
        future = self.session.connect(ENDPOINT)
        self.assertEqual(self.transport.sent, ["CONNECT_REQUEST"])
        self.assertIs(self.session.state, ConnectionState.AWAITING_HANDSHAKE)
        self.assertFalse(future.done())

        self.transport.deliver("CONNECT_OK")
        self.assertIs(self.session.state, ConnectionState.CONNECTED)
        self.assertTrue(future.result(timeout=0))
        self.assertEqual(self.transport.sent, ["CONNECT_REQUEST", "_refresh", "Q"])
        self.assertEqual(self.topics("connectivity"), [{"connected": True, "endpoint": "192.168.137.1:5566"}])
        self.assertEqual(self.confirmed, [ENDPOINT])
        self.assertEqual(self.session.retry_budget.attempts, 0)

    def test_connect_rejected_while_busy(self):
        self.session.connect(ENDPOINT)
        with self.assertRaises(SessionBusyError):
            self.session.connect(Endpoint(address="10.0.0.9", port=5566))
        self.assertEqual(self.transport.sent, ["CONNECT_REQUEST"])
        self.assertEqual(self.session.endpoint, ENDPOINT)

    def test_timeouts_exhaust_budget(self):
        future = self.session.connect(ENDPOINT)
        self.scheduler.advance(10.0)
        self.assertIs(self.session.state, ConnectionState.CONNECTING)
        self.assertEqual(self.session.status.attempt, 1)

        self.scheduler.advance(1.0)
        self.assertEqual(self.transport.sent.count("CONNECT_REQUEST"), 2)
        self.assertIs(self.session.state, ConnectionState.AWAITING_HANDSHAKE)

        self.scheduler.advance(30.0)
        self.assertEqual(self.transport.sent.count("CONNECT_REQUEST"), 3)
        self.assertIs(self.session.state, ConnectionState.IDLE)
        self.assertTrue(future.done())
        exc = future.exception(timeout=0)
        self.assertIsInstance(exc, ConnectFailedError)
        self.assertEqual(exc.attempts, 3)
        self.assertEqual(len(self.topics("connect_failed")), 1)
        self.assertEqual(self.scheduler.active(), [])

    def test_send_failure_retries_after_delay(self):
        self.transport.fail_sends = 1
        future = self.session.connect(ENDPOINT)
        self.assertEqual(self.transport.sent, [])
        self.assertIs(self.session.state, ConnectionState.CONNECTING)

        self.scheduler.advance(1.0)
        self.assertEqual(self.transport.sent, ["CONNECT_REQUEST"])
        self.transport.deliver("COMM_CONNECTED")
        self.assertTrue(future.result(timeout=0))

    def test_send_failures_exhaust_budget(self):
        self.transport.fail_sends = 10
        future = self.session.connect(ENDPOINT)
        self.scheduler.advance(5.0)
        self.assertIs(self.session.state, ConnectionState.IDLE)
        self.assertIsInstance(future.exception(timeout=0), ConnectFailedError)
        self.assertEqual(self.topics("connect_failed")[0]["attempts"], 3)

    def test_transport_unavailable_fails_immediately(self):
        session = self._session(FakeTransport(fail_open=True))
        future = session.connect(ENDPOINT)
        self.assertIsInstance(future.exception(timeout=0), TransportUnavailableError)
        self.assertIs(session.state, ConnectionState.IDLE)
        self.assertEqual(self.topics("connect_failed")[0]["attempts"], 0)
        self.assertEqual(self.scheduler.active(), [])

    def test_ack_delivered_during_request_send(self):
        self.transport.replies["CONNECT_REQUEST"] = "CONNECT_SUCCESS"
        future = self.session.connect(ENDPOINT)
        self.assertTrue(future.result(timeout=0))
        self.assertIs(self.session.state, ConnectionState.CONNECTED)
        self.scheduler.advance(12.0)
        self.assertEqual(self.transport.sent.count("CONNECT_REQUEST"), 1)

    def test_ack_while_waiting_for_retry(self):
        future = self.session.connect(ENDPOINT)
        self.scheduler.advance(10.0)
        self.transport.deliver("CONNECT_OK")
        self.assertTrue(future.result(timeout=0))
        self.scheduler.advance(1.0)
        self.assertEqual(self.transport.sent.count("CONNECT_REQUEST"), 1)

    def test_stray_ack_when_idle_is_ignored(self):
        self.session.connect(ENDPOINT)
        handler = self.transport.handlers[-1]
        self.session.disconnect()
        self.transport.deliver("CONNECT_OK", handler=handler)
        self.assertIs(self.session.state, ConnectionState.IDLE)
    def test_connect_rejected_during_retry_wait(self):
        self.session.connect(ENDPOINT)
        self.scheduler.advance(10.0)
        self.assertIs(self.session.state, ConnectionState.CONNECTING)
        timers = len(self.scheduler.active())

        with self.assertRaises(SessionBusyError):
            self.session.connect(Endpoint(address="10.0.0.9", port=5566))
        self.assertEqual(len(self.scheduler.active()), timers)
        self.assertEqual(self.session.endpoint, ENDPOINT)
        self.assertEqual(self.session.status.attempt, 1)


class HeartbeatTests(SessionTestCase):
    def test_activity_keeps_link_alive(self):
        self.connect_ok()
        for _ in range(6):
            self.transport.deliver("HEARTBEAT_OK")
            self.scheduler.advance(15.0)
        self.assertIs(self.session.state, ConnectionState.CONNECTED)
        self.assertEqual(self.session.heartbeat.consecutive_failures, 0)
        self.assertEqual(self.transport.sent.count("_refresh"), 7)

    def test_inbound_datagram_resets_failures(self):
        self.connect_ok()
        self.scheduler.advance(45.0)
        self.assertEqual(self.session.heartbeat.consecutive_failures, 2)
        self.transport.deliver("STATUS:1,1")
        self.assertEqual(self.session.heartbeat.consecutive_failures, 0)

    def test_three_failures_trigger_reconnect(self):
        self.connect_ok()
        sent_at_loss: list[int] = []
        self.session.subscribe(
            lambda topic, payload: sent_at_loss.append(self.transport.sent.count("CONNECT_REQUEST"))
            if topic == "connectivity" and not payload["connected"]
            else None
        )

        self.scheduler.advance(60.0)
        lost = [p for p in self.topics("connectivity") if not p["connected"]]
        self.assertEqual(len(lost), 1)
        self.assertEqual(sent_at_loss, [1])
        self.assertEqual(self.transport.sent.count("CONNECT_REQUEST"), 2)
        self.assertEqual(self.transport.open_count, 2)
        self.assertIs(self.session.state, ConnectionState.AWAITING_HANDSHAKE)
        self.assertEqual(self.session.endpoint, ENDPOINT)

        self.transport.deliver("CONNECT_OK")
        self.assertIs(self.session.state, ConnectionState.CONNECTED)
        self.assertEqual(self.session.heartbeat.consecutive_failures, 0)

    def test_heartbeat_send_failure_counts(self):
        self.connect_ok()
        self.transport.fail_sends = 1
        self.scheduler.advance(15.0)
        self.assertEqual(self.session.heartbeat.consecutive_failures, 1)

    def test_old_socket_datagrams_are_ignored(self):
        self.connect_ok()
        old_handler = self.transport.handlers[-1]
        self.scheduler.advance(60.0)
        self.transport.deliver("CONNECT_OK", handler=old_handler)
        self.assertIs(self.session.state, ConnectionState.AWAITING_HANDSHAKE)
    def test_reconnect_cycle_exhausts_budget(self):
        self.connect_ok()
        self.scheduler.advance(60.0)
        self.assertIs(self.session.state, ConnectionState.AWAITING_HANDSHAKE)

        self.scheduler.advance(32.0)
        self.assertIs(self.session.state, ConnectionState.IDLE)
        self.assertEqual(self.transport.sent.count("CONNECT_REQUEST"), 4)
        self.assertEqual(len(self.topics("connect_failed")), 1)
        lost = [p for p in self.topics("connectivity") if not p["connected"]]
        self.assertEqual(len(lost), 1)
        self.assertEqual(self.scheduler.active(), [])


class DisconnectTests(SessionTestCase):
    def test_disconnect_returns_endpoint_and_stops_timers(self):
        self.connect_ok()
        self.assertEqual(self.session.disconnect(), ENDPOINT)
        self.assertIs(self.session.state, ConnectionState.IDLE)
        self.assertIsNone(self.session.endpoint)
        self.assertFalse(self.transport.is_open)
        self.assertEqual(self.scheduler.active(), [])

        sent = list(self.transport.sent)
        self.scheduler.advance(120.0)
        self.assertEqual(self.transport.sent, sent)
        self.assertEqual(self.topics("connectivity")[-1]["connected"], False)

    def test_disconnect_is_idempotent(self):
        self.assertIsNone(self.session.disconnect())
        self.assertIsNone(self.session.disconnect())
        self.assertIs(self.session.state, ConnectionState.IDLE)

    def test_disconnect_cancels_pending_connect(self):
        future = self.session.connect(ENDPOINT)
        self.session.disconnect()
        self.assertIsInstance(future.exception(timeout=0), ConnectFailedError)
        self.scheduler.advance(60.0)
        self.assertEqual(self.transport.sent, ["CONNECT_REQUEST"])
        self.assertEqual(self.topics("connect_failed"), [])

    def test_stale_timer_callback_is_a_no_op(self):
        self.session.connect(ENDPOINT)
        stale = self.scheduler.active()
        self.session.disconnect()
        for handle in stale:
            handle.callback()
        self.assertIs(self.session.state, ConnectionState.IDLE)
        self.assertEqual(self.transport.sent, ["CONNECT_REQUEST"])

    def test_connect_again_after_disconnect(self):
        self.connect_ok()
        self.session.disconnect()
        future = self.connect_ok()
        self.assertTrue(future.result(timeout=0))
    def test_disconnect_during_retry_wait(self):
        future = self.session.connect(ENDPOINT)
        self.scheduler.advance(10.0)
        self.assertIs(self.session.state, ConnectionState.CONNECTING)

        self.assertEqual(self.session.disconnect(), ENDPOINT)
        self.assertIs(self.session.state, ConnectionState.IDLE)
        self.assertIsInstance(future.exception(timeout=0), ConnectFailedError)
        self.assertEqual(self.scheduler.active(), [])
        self.scheduler.advance(60.0)
        self.assertEqual(self.transport.sent, ["CONNECT_REQUEST"])
        self.assertEqual(self.topics("connect_failed"), [])

    def test_disconnect_during_reconnect_cycle(self):
        self.connect_ok()
        self.scheduler.advance(70.0)
        self.assertIs(self.session.state, ConnectionState.CONNECTING)
        sent = list(self.transport.sent)

        self.assertEqual(self.session.disconnect(), ENDPOINT)
        self.assertIs(self.session.state, ConnectionState.IDLE)
        self.assertEqual(self.scheduler.active(), [])
        self.scheduler.advance(60.0)
        self.assertEqual(self.transport.sent, sent)
        self.assertEqual(self.topics("connect_failed"), [])


class SendAndDispatchTests(SessionTestCase):
    def test_send_requires_endpoint(self):
        with self.assertRaises(NotConnectedError):
            self.session.send("Q")

    def test_send_allowed_while_awaiting_handshake(self):
        self.session.connect(ENDPOINT)
        self.assertEqual(self.session.send("_change_speed1"), len("_change_speed1"))
        self.assertEqual(self.transport.sent[-1], "_change_speed1")

    def test_send_failure_propagates(self):
        self.connect_ok()
        self.transport.fail_sends = 1
        with self.assertRaises(TransportSendError):
            self.session.send("E")

    def test_scan_updates_counts_and_running(self):
        self.connect_ok()
        self.transport.deliver("sort_info:id=00,dir=L")
        self.assertEqual(self.session.counts, SortingCounts(1, 0, 0))
        self.assertEqual(self.topics("counts_changed")[-1], {"position0": 1, "position1": 0, "position2": 0})
        self.assertTrue(self.session.status.running)
        self.assertEqual(self.topics("speed_status")[-1], {"running": True, "speed": 0, "label": "stopped"})

    def test_duplicate_scan_does_not_notify(self):
        self.connect_ok()
        self.transport.deliver("sort_info:id=00,dir=L")
        self.scheduler.advance(0.2)
        self.transport.deliver("sort_info:id=00,dir=L")
        self.assertEqual(len(self.topics("counts_changed")), 1)

    def test_status_and_pwm(self):
        self.connect_ok()
        self.transport.deliver("STATUS:0,2")
        self.transport.deliver("PWM:1600,x")
        status = self.session.status
        self.assertFalse(status.running)
        self.assertEqual(status.speed, 2)
        self.assertEqual(status.pwm, (1600, 1500, 1500))
        self.assertEqual(self.topics("pwm_changed")[-1], {"values": [1600, 1500, 1500], "sliders": [55, 50, 50]})
        self.assertEqual(self.topics("speed_status")[-1], {"running": False, "speed": 2, "label": "medium"})

    def test_error_and_unknown_become_diagnostics(self):
        self.connect_ok()
        self.transport.deliver("ERROR: jam")
        self.transport.deliver("garbage")
        self.transport.deliver("device_light_on")
        kinds = [p["kind"] for p in self.topics("diagnostic")]
        self.assertEqual(kinds, ["ErrorNotice", "Unrecognized"])

    def test_listener_failure_is_isolated(self):
        def _boom(topic, payload):
            raise RuntimeError("listener bug")

        self.session.subscribe(_boom)
        future = self.connect_ok()
        self.assertTrue(future.result(timeout=0))
        self.assertEqual(len(self.topics("connectivity")), 1)

    def test_unsubscribe(self):
        seen: list[str] = []
        unsubscribe = self.session.subscribe(lambda topic, payload: seen.append(topic))
        unsubscribe()
        self.connect_ok()
        self.assertEqual(seen, [])

    def test_reset_counts_notifies(self):
        self.connect_ok()
        self.transport.deliver("SORT:2,3,1")
        self.assertEqual(self.session.reset_counts(), SortingCounts())
        self.assertEqual(self.topics("counts_changed")[-1], {"position0": 0, "position1": 0, "position2": 0})

    def test_recent_events_ring(self):
        self.connect_ok()
        names = [row["event"] for row in self.session.recent_events()]
        self.assertIn("connect_start", names)
        self.assertIn("connect_ok", names)
    def test_only_passing_scanner_reports_mark_running(self):
        self.connect_ok()
        self.transport.deliver("01")
        self.assertFalse(self.session.status.running)
        self.assertEqual(self.session.counts, SortingCounts(0, 1, 0))

        self.transport.deliver("sort_info:id=01,dir=R")
        self.assertFalse(self.session.status.running)
        self.assertEqual(self.topics("speed_status"), [])

        self.transport.deliver("sort_info:id=9,dir=L")
        self.assertTrue(self.session.status.running)
        self.assertEqual(len(self.topics("speed_status")), 1)

    def test_cooldown_drop_does_not_mark_running(self):
        self.connect_ok()
        self.transport.deliver("STATUS:0,1")
        self.transport.deliver("sort_info:id=2,dir=L")
        self.transport.deliver("STATUS:0,1")
        self.scheduler.advance(1.5)
        self.transport.deliver("sort_info:id=02,dir=L")
        self.assertFalse(self.session.status.running)
        self.assertEqual(self.session.counts, SortingCounts(0, 0, 1))


if __name__ == "__main__":
    unittest.main()

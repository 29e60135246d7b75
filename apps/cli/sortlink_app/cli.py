"""CLI entrypoints for the SortLink controller link, diagnostics, and transcript replay."""

from __future__ import annotations

import argparse
import codecs
import json
import time
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import asdict, replace
from importlib import metadata
from pathlib import Path
from typing import Any

from sortlink_core import (
    AppConfig,
    DiagnosticsExporter,
    LinkSession,
    ReplayRunner,
    SessionTimings,
    SortingFilter,
    build_doctor_payload,
    default_endpoint,
    load_config,
    remember_endpoint,
    restorable_endpoint,
    save_config,
)
from sortlink_core.logging_setup import configure_logging, install_crash_hooks
from sortlink_protocol import Endpoint, LinkError, classify, commands
from sortlink_protocol.errors import InvalidCommandError
from sortlink_protocol.models import event_payload


def _print_json(data: object) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, default=str))


def _print_line(data: object) -> None:
    print(json.dumps(data, sort_keys=True, default=str), flush=True)


def _installed_version() -> str:
    try:
        return metadata.version("sortlink")
    except Exception:
        return "0.1.0"


def _resolve_endpoint(args: argparse.Namespace, cfg: AppConfig) -> Endpoint:
    if args.address:
        return Endpoint(address=args.address, port=args.port or cfg.link.default_port)
    endpoint = restorable_endpoint(cfg) or default_endpoint(cfg)
    if args.port:
        return replace(endpoint, port=args.port)
    return endpoint


def _export_bundle(cfg: AppConfig, out_dir: str | None, session_events: list[dict[str, Any]]) -> Path:
    exporter = DiagnosticsExporter()
    output_dir = Path(out_dir).expanduser().resolve() if out_dir else None
    return exporter.bundle(
        cfg=cfg,
        doctor_payload=build_doctor_payload(cfg),
        recent_session_events=session_events,
        output_dir=output_dir,
    )


def _build_session(cfg: AppConfig) -> LinkSession:
    def _remember(endpoint: Endpoint) -> None:
        remember_endpoint(cfg, endpoint)
        save_config(cfg)

    return LinkSession(
        counts_filter=SortingFilter(
            duplicate_window_ms=cfg.counting.duplicate_window_ms,
            cooldown_ms=cfg.counting.cooldown_ms,
        ),
        timings=SessionTimings.from_link_config(cfg.link),
        on_endpoint_confirmed=_remember,
    )


def _open(session: LinkSession, endpoint: Endpoint) -> str | None:
    """Connect and wait for the handshake; returns an error string on failure."""
    try:
        future = session.connect(endpoint)
        future.result(timeout=session.timings.connect_budget_s() + 1.0)
    except (LinkError, FutureTimeoutError) as exc:
        session.disconnect()
        return str(exc) or type(exc).__name__
    return None


def _close(session: LinkSession, cfg: AppConfig) -> None:
    last = session.disconnect()
    if last is not None:
        remember_endpoint(cfg, last)
        save_config(cfg)


def _command_from_args(args: argparse.Namespace) -> str:
    if args.raw is not None:
        return commands.raw(args.raw)
    if args.servo is not None:
        return commands.servo_move(args.servo, args.percent)
    if args.speed is not None:
        return commands.speed(args.speed)
    if args.function is not None:
        return commands.function(args.function)
    if args.light is not None:
        return commands.light(args.light, args.state == "on")
    if args.query == "status":
        return commands.status_query()
    return commands.counts_query()


def cmd_monitor(args: argparse.Namespace) -> int:
    install_crash_hooks()
    cfg = load_config()
    endpoint = _resolve_endpoint(args, cfg)
    session = _build_session(cfg)
    session.subscribe(lambda topic, payload: _print_line({"topic": topic, **payload}))

    error = _open(session, endpoint)
    if error is not None:
        _print_json({"success": False, "endpoint": str(endpoint), "error": error})
        return 2

    deadline = time.monotonic() + args.seconds if args.seconds > 0 else None
    try:
        while deadline is None or time.monotonic() < deadline:
            time.sleep(0.2)
    except KeyboardInterrupt:
        pass
    finally:
        counts = session.counts
        _close(session, cfg)

    bundle = _export_bundle(cfg, args.out_dir, session.recent_events()) if args.export_diagnostics else None

    payload: dict[str, Any] = {"success": True, "endpoint": str(endpoint), "counts": counts.as_dict()}
    if bundle is not None:
        payload["diagnostics_bundle"] = str(bundle)
    _print_json(payload)
    return 0


def cmd_send(args: argparse.Namespace) -> int:
    try:
        command = _command_from_args(args)
    except InvalidCommandError as exc:
        _print_json({"success": False, "error": str(exc)})
        return 2

    cfg = load_config()
    endpoint = _resolve_endpoint(args, cfg)
    session = _build_session(cfg)
    replies: list[dict[str, Any]] = []
    session.subscribe(lambda topic, payload: replies.append({"topic": topic, **payload}))

    error = _open(session, endpoint)
    if error is not None:
        _print_json({"success": False, "endpoint": str(endpoint), "error": error})
        return 2

    try:
        sent = session.send(command)
        time.sleep(max(args.wait, 0.0))
    except LinkError as exc:
        _print_json({"success": False, "endpoint": str(endpoint), "command": command, "error": str(exc)})
        return 2
    finally:
        _close(session, cfg)

    payload: dict[str, Any] = {
        "success": True,
        "endpoint": str(endpoint),
        "command": command,
        "bytes_sent": sent,
        "notifications": replies,
    }
    if args.servo is not None:
        payload["pwm_us"] = commands.slider_to_pwm(args.percent)
    _print_json(payload)
    return 0


def cmd_decode(args: argparse.Namespace) -> int:
    text = codecs.decode(args.text, "unicode_escape") if args.escaped else args.text
    rule, event = classify(text)
    _print_json({"rule": rule, **event_payload(event)})
    return 0


def cmd_doctor(args: argparse.Namespace) -> int:
    cfg = load_config()
    payload = build_doctor_payload(cfg)

    if args.export:
        payload["diagnostics_bundle"] = str(_export_bundle(cfg, args.out_dir, []))

    _print_json(payload)
    return 0


def cmd_replay(args: argparse.Namespace) -> int:
    cfg = load_config()
    runner = ReplayRunner(
        duplicate_window_ms=cfg.counting.duplicate_window_ms,
        cooldown_ms=cfg.counting.cooldown_ms,
    )
    report = runner.run(Path(args.transcript), strict=not args.no_strict)
    payload = asdict(report)
    payload["success"] = len(report.errors) == 0
    _print_json(payload)
    return 0 if not report.errors else 2


def _add_endpoint_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--address", default=None, help="Controller address (default: last or configured)")
    parser.add_argument("--port", type=int, default=None, help="Controller UDP port")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sortlink", description="Sorting controller link and tools")
    parser.add_argument("--version", action="version", version=f"%(prog)s {_installed_version()}")
    sub = parser.add_subparsers(dest="command", required=True)

    monitor_cmd = sub.add_parser("monitor", help="Connect and print link notifications")
    _add_endpoint_args(monitor_cmd)
    monitor_cmd.add_argument("--seconds", type=float, default=30, help="Monitor duration; 0 runs until interrupted")
    monitor_cmd.add_argument("--export-diagnostics", action="store_true", help="Bundle session events before exit")
    monitor_cmd.add_argument("--out-dir", default=None, help="Optional output directory for diagnostics bundle")
    monitor_cmd.set_defaults(func=cmd_monitor)

    send_cmd = sub.add_parser("send", help="Connect and send one command")
    _add_endpoint_args(send_cmd)
    what = send_cmd.add_mutually_exclusive_group(required=True)
    what.add_argument("--raw", default=None, help="Send a string unmodified")
    what.add_argument("--servo", type=int, default=None, choices=list(commands.SERVO_IDS))
    what.add_argument("--speed", type=int, default=None, help="Speed level 0-3")
    what.add_argument("--function", default=None, choices=sorted(commands.FUNCTION_TOKENS))
    what.add_argument("--light", type=int, default=None, help="Actuator id to toggle")
    what.add_argument("--query", default=None, choices=["status", "counts"])
    send_cmd.add_argument("--percent", type=int, default=50, help="Servo slider position 0-100")
    send_cmd.add_argument("--state", default="on", choices=["on", "off"], help="Actuator state for --light")
    send_cmd.add_argument("--wait", type=float, default=1.0, help="Seconds to collect replies")
    send_cmd.set_defaults(func=cmd_send)

    decode_cmd = sub.add_parser("decode", help="Classify one datagram offline")
    decode_cmd.add_argument("text", help="Datagram text")
    decode_cmd.add_argument("--escaped", action="store_true", help="Interpret backslash escapes such as \\n")
    decode_cmd.set_defaults(func=cmd_decode)

    doctor_cmd = sub.add_parser("doctor", help="Print diagnostics and local interfaces")
    doctor_cmd.add_argument("--export", action="store_true", help="Export offline diagnostics bundle")
    doctor_cmd.add_argument("--out-dir", default=None, help="Optional output directory for diagnostics bundle")
    doctor_cmd.set_defaults(func=cmd_doctor)

    replay_cmd = sub.add_parser("replay", help="Analyze captured datagram transcript")
    replay_cmd.add_argument("--transcript", required=True, help="Path to JSONL transcript")
    replay_cmd.add_argument("--no-strict", action="store_true", help="Skip mandatory handshake checks")
    replay_cmd.set_defaults(func=cmd_replay)

    return parser


def main(argv: list[str] | None = None) -> int:
    cfg = load_config()
    configure_logging(keep_files=cfg.diagnostics.keep_log_files, console=False)
    parser = build_parser()
    args = parser.parse_args(argv)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())

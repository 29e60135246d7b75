"""Replay/analysis utilities for captured datagram transcripts."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path

from sortlink_protocol.decoder import classify, datagram_text
from sortlink_protocol.models import COUNT_EVENTS, HandshakeAck, event_kind

from .counts import COOLDOWN_MS, DUPLICATE_WINDOW_MS, FilterOutcome, SortingFilter


_HEX_CLEAN = re.compile(r"[^0-9a-fA-F]")


@dataclass(frozen=True)
class ReplayEvent:
    line: int
    direction: str
    t_ms: int
    payload: bytes


@dataclass
class ReplayReport:
    total_events: int = 0
    host_to_device_events: int = 0
    device_to_host_events: int = 0
    handshake_requests: int = 0
    handshake_acks: int = 0
    scans_applied: int = 0
    scans_duplicate: int = 0
    scans_cooldown: int = 0
    scans_unmapped: int = 0
    snapshots: int = 0
    kind_counts: dict[str, int] = field(default_factory=dict)
    rule_counts: dict[str, int] = field(default_factory=dict)
    final_counts: dict[str, int] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)


class ReplayRunner:
    def __init__(self, duplicate_window_ms: int = DUPLICATE_WINDOW_MS, cooldown_ms: int = COOLDOWN_MS) -> None:
        self.duplicate_window_ms = duplicate_window_ms
        self.cooldown_ms = cooldown_ms

    @staticmethod
    def _decode_hex(value: str) -> bytes:
        cleaned = _HEX_CLEAN.sub("", value)
        if len(cleaned) % 2 == 1:
            cleaned = cleaned[:-1]
        if not cleaned:
            return b""
        return bytes.fromhex(cleaned)

    def _parse_line(self, line_no: int, line: str) -> ReplayEvent | None:
        stripped = line.strip()
        if not stripped:
            return None
        obj = json.loads(stripped)
        direction = obj.get("dir") or obj.get("direction") or "unknown"
        if "text" in obj:
            payload = str(obj["text"]).encode("latin-1", errors="replace")
        else:
            payload = self._decode_hex(str(obj.get("payload_hex") or obj.get("hex") or ""))
        return ReplayEvent(line=line_no, direction=direction, t_ms=int(obj.get("t_ms", 0)), payload=payload)

    def parse(self, transcript_path: Path) -> list[ReplayEvent]:
        events: list[ReplayEvent] = []
        for idx, line in enumerate(transcript_path.read_text(encoding="utf-8").splitlines(), start=1):
            event = self._parse_line(idx, line)
            if event is not None:
                events.append(event)
        return events

    def run(self, transcript_path: Path, strict: bool = True) -> ReplayReport:
        events = self.parse(transcript_path)
        report = ReplayReport(total_events=len(events))
        counts_filter = SortingFilter(duplicate_window_ms=self.duplicate_window_ms, cooldown_ms=self.cooldown_ms)

        for event in events:
            if event.direction == "host_to_device":
                report.host_to_device_events += 1
                if datagram_text(event.payload) == "CONNECT_REQUEST":
                    report.handshake_requests += 1
                continue
            if event.direction != "device_to_host":
                continue

            report.device_to_host_events += 1
            rule, decoded = classify(event.payload)
            kind = event_kind(decoded)
            report.rule_counts[rule] = report.rule_counts.get(rule, 0) + 1
            report.kind_counts[kind] = report.kind_counts.get(kind, 0) + 1

            if isinstance(decoded, HandshakeAck):
                report.handshake_acks += 1
                continue
            if not isinstance(decoded, COUNT_EVENTS):
                continue

            outcome = counts_filter.evaluate(decoded, event.t_ms).outcome
            if outcome is FilterOutcome.APPLIED:
                report.scans_applied += 1
            elif outcome is FilterOutcome.DUPLICATE:
                report.scans_duplicate += 1
            elif outcome is FilterOutcome.COOLDOWN:
                report.scans_cooldown += 1
            elif outcome is FilterOutcome.UNMAPPED:
                report.scans_unmapped += 1
            elif outcome is FilterOutcome.SNAPSHOT:
                report.snapshots += 1

        report.final_counts = counts_filter.counts.as_dict()

        if strict:
            if report.handshake_requests < 1:
                report.errors.append("missing_handshake_request")
            if report.handshake_acks < 1:
                report.errors.append("missing_handshake_ack")

        return report

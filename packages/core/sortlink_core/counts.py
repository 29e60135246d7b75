"""Duplicate suppression and per-position cooldown for sorting counters."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from sortlink_protocol.models import DecodedEvent, ExplicitCounts, RefreshCounts, SortingCounts, SortScan

from .logging_setup import get_logger


DUPLICATE_WINDOW_MS = 1000
COOLDOWN_MS = 3000

# Scanner ids as the controller reports them, padded or not.
SCAN_POSITIONS: dict[str, str] = {
    "00": "position0",
    "0": "position0",
    "01": "position1",
    "1": "position1",
    "02": "position2",
    "2": "position2",
}


class FilterOutcome(str, Enum):
    APPLIED = "applied"
    SNAPSHOT = "snapshot"
    DUPLICATE = "duplicate"
    COOLDOWN = "cooldown"
    UNMAPPED = "unmapped"
    NO_OP = "no_op"


@dataclass
class ScanDedupState:
    last_id: str | None = None
    last_timestamp_ms: int | None = None


@dataclass(frozen=True)
class CountsChanged:
    counts: SortingCounts
    cause: str
    position: str | None = None


@dataclass(frozen=True)
class FilterDecision:
    outcome: FilterOutcome
    change: CountsChanged | None = None
    position: str | None = None


class SortingFilter:
    """Turns scan and snapshot events into monotonic position counters.

    A scan is dropped when it repeats the previous scan id inside the duplicate
    window. A scan that passes is recorded in the dedup slot before the
    per-position cooldown is consulted, so a scan whose increment is
    rate-limited still counts as seen. Snapshots replace all three counters and
    leave the dedup slot and cooldowns untouched.
    """

    def __init__(
        self,
        duplicate_window_ms: int = DUPLICATE_WINDOW_MS,
        cooldown_ms: int = COOLDOWN_MS,
        counts: SortingCounts | None = None,
    ) -> None:
        self.duplicate_window_ms = duplicate_window_ms
        self.cooldown_ms = cooldown_ms
        self._counts = counts or SortingCounts()
        self._dedup = ScanDedupState()
        self._cooldown: dict[str, int] = {}
        self._log = get_logger("counts")

    @property
    def counts(self) -> SortingCounts:
        return self._counts

    @property
    def dedup_state(self) -> ScanDedupState:
        return ScanDedupState(self._dedup.last_id, self._dedup.last_timestamp_ms)

    def cooldowns(self) -> dict[str, int]:
        return dict(self._cooldown)

    def apply(self, event: DecodedEvent, now_ms: int) -> CountsChanged | None:
        return self.evaluate(event, now_ms).change

    def evaluate(self, event: DecodedEvent, now_ms: int) -> FilterDecision:
        if isinstance(event, SortScan):
            return self._apply_scan(event, now_ms)
        if isinstance(event, ExplicitCounts):
            return self._replace(event.values)
        if isinstance(event, RefreshCounts):
            if event.values is None:
                return FilterDecision(FilterOutcome.NO_OP)
            return self._replace(event.values)
        return FilterDecision(FilterOutcome.NO_OP)

    def reset_counts(self) -> CountsChanged:
        self._counts = SortingCounts()
        return CountsChanged(counts=self._counts, cause="reset")

    def _is_duplicate(self, item_id: str, now_ms: int) -> bool:
        last = self._dedup
        return (
            last.last_id == item_id
            and last.last_timestamp_ms is not None
            and now_ms - last.last_timestamp_ms < self.duplicate_window_ms
        )

    def _in_cooldown(self, position: str, now_ms: int) -> bool:
        last = self._cooldown.get(position)
        return last is not None and now_ms - last < self.cooldown_ms

    def _apply_scan(self, event: SortScan, now_ms: int) -> FilterDecision:
        if self._is_duplicate(event.item_id, now_ms):
            self._log.debug("duplicate scan id=%s", event.item_id, extra={"event": "scan_duplicate"})
            return FilterDecision(FilterOutcome.DUPLICATE)
        self._dedup = ScanDedupState(last_id=event.item_id, last_timestamp_ms=now_ms)

        position = SCAN_POSITIONS.get(event.item_id)
        if position is None:
            self._log.warning("unmapped scan id=%r", event.item_id, extra={"event": "scan_unmapped"})
            return FilterDecision(FilterOutcome.UNMAPPED)

        if self._in_cooldown(position, now_ms):
            self._log.debug("%s in cooldown, increment dropped", position, extra={"event": "scan_cooldown"})
            return FilterDecision(FilterOutcome.COOLDOWN, position=position)

        self._counts = self._counts.incremented(position)
        self._cooldown[position] = now_ms
        change = CountsChanged(counts=self._counts, cause="scan", position=position)
        return FilterDecision(FilterOutcome.APPLIED, change=change, position=position)

    def _replace(self, values: tuple[int, int, int]) -> FilterDecision:
        self._counts = SortingCounts.from_values(values)
        return FilterDecision(FilterOutcome.SNAPSHOT, change=CountsChanged(counts=self._counts, cause="snapshot"))

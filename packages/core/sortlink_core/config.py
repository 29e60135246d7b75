"""Persistent link settings schema and load/save helpers."""

from __future__ import annotations

import json
import os
import platform
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from sortlink_protocol.models import Endpoint


CONFIG_VERSION = 2
RESTORE_WINDOW_MS = 24 * 60 * 60 * 1000


@dataclass
class LinkConfig:
    default_address: str = "192.168.137.1"
    default_port: int = 5566
    handshake_timeout_ms: int = 10000
    heartbeat_interval_ms: int = 15000
    retry_delay_ms: int = 1000
    max_attempts: int = 3
    heartbeat_threshold: int = 3


@dataclass
class CountingConfig:
    duplicate_window_ms: int = 1000
    cooldown_ms: int = 3000


@dataclass
class LastConnectionConfig:
    address: str | None = None
    port: int | None = None
    timestamp_ms: int | None = None


@dataclass
class DiagnosticsConfig:
    keep_log_files: int = 7
    max_bundle_mb: int = 20


@dataclass
class AppConfig:
    config_version: int = CONFIG_VERSION
    link: LinkConfig = field(default_factory=LinkConfig)
    counting: CountingConfig = field(default_factory=CountingConfig)
    last_connection: LastConnectionConfig = field(default_factory=LastConnectionConfig)
    diagnostics: DiagnosticsConfig = field(default_factory=DiagnosticsConfig)


DEFAULT_CONFIG = AppConfig()


def config_root() -> Path:
    system = platform.system()
    if system == "Windows":
        base = Path(os.environ.get("APPDATA", Path.home() / "AppData" / "Roaming"))
        return base / "SortLink"
    if system == "Darwin":
        return Path.home() / "Library" / "Application Support" / "SortLink"
    return Path.home() / ".config" / "sortlink"


def config_path() -> Path:
    return config_root() / "config.json"


def _merge(dataclass_type, raw: dict[str, Any]):
    defaults = dataclass_type()  # type: ignore[misc]
    for k, v in (raw or {}).items():
        if hasattr(defaults, k):
            setattr(defaults, k, v)
    return defaults


def _clamp(value: Any, low: int, high: int, fallback: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return fallback
    return max(low, min(high, number))


def _normalize_link(cfg: AppConfig) -> None:
    link = cfg.link
    defaults = LinkConfig()
    link.default_port = _clamp(link.default_port, 1, 65535, defaults.default_port)
    link.handshake_timeout_ms = _clamp(link.handshake_timeout_ms, 100, 120000, defaults.handshake_timeout_ms)
    link.heartbeat_interval_ms = _clamp(link.heartbeat_interval_ms, 500, 600000, defaults.heartbeat_interval_ms)
    link.retry_delay_ms = _clamp(link.retry_delay_ms, 0, 60000, defaults.retry_delay_ms)
    link.max_attempts = _clamp(link.max_attempts, 1, 10, defaults.max_attempts)
    link.heartbeat_threshold = _clamp(link.heartbeat_threshold, 1, 10, defaults.heartbeat_threshold)
    if not isinstance(link.default_address, str) or not link.default_address.strip():
        link.default_address = defaults.default_address


def _normalize_counting(cfg: AppConfig) -> None:
    defaults = CountingConfig()
    cfg.counting.duplicate_window_ms = _clamp(cfg.counting.duplicate_window_ms, 0, 60000, defaults.duplicate_window_ms)
    cfg.counting.cooldown_ms = _clamp(cfg.counting.cooldown_ms, 0, 60000, defaults.cooldown_ms)


def _migrate(raw: dict[str, Any]) -> dict[str, Any]:
    version = int(raw.get("config_version", 1))
    data = dict(raw)

    if version < 2:
        # v1 kept the last endpoint as a flat {"ip", "port", "timestamp"} record.
        legacy = dict(data.pop("last_connection", {}) or {})
        data["last_connection"] = {
            "address": legacy.get("address", legacy.get("ip")),
            "port": legacy.get("port"),
            "timestamp_ms": legacy.get("timestamp_ms", legacy.get("timestamp")),
        }
        data.setdefault("counting", {})
        data.setdefault("diagnostics", {})
        data["config_version"] = 2

    return data


def load_config(path: Path | None = None) -> AppConfig:
    path = path or config_path()
    if not path.exists():
        return AppConfig()

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return AppConfig()
    if not isinstance(raw, dict):
        return AppConfig()

    data = _migrate(raw)
    cfg = AppConfig(
        config_version=int(data.get("config_version", CONFIG_VERSION)),
        link=_merge(LinkConfig, data.get("link", {})),
        counting=_merge(CountingConfig, data.get("counting", {})),
        last_connection=_merge(LastConnectionConfig, data.get("last_connection", {})),
        diagnostics=_merge(DiagnosticsConfig, data.get("diagnostics", {})),
    )

    _normalize_link(cfg)
    _normalize_counting(cfg)
    return cfg


def save_config(cfg: AppConfig, path: Path | None = None) -> Path:
    cfg.config_version = CONFIG_VERSION
    path = path or config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(asdict(cfg), indent=2, sort_keys=True), encoding="utf-8")
    return path


def remember_endpoint(cfg: AppConfig, endpoint: Endpoint, now_ms: int | None = None) -> None:
    cfg.last_connection.address = endpoint.address
    cfg.last_connection.port = endpoint.port
    cfg.last_connection.timestamp_ms = int(time.time() * 1000) if now_ms is None else now_ms


def restorable_endpoint(cfg: AppConfig, now_ms: int | None = None) -> Endpoint | None:
    """Last known endpoint, offered only when it was recorded within a day."""
    last = cfg.last_connection
    if not last.address or not last.port:
        return None
    now_ms = int(time.time() * 1000) if now_ms is None else now_ms
    if now_ms - int(last.timestamp_ms or 0) >= RESTORE_WINDOW_MS:
        return None
    return Endpoint(address=str(last.address), port=int(last.port))


def default_endpoint(cfg: AppConfig) -> Endpoint:
    return Endpoint(address=cfg.link.default_address, port=cfg.link.default_port)

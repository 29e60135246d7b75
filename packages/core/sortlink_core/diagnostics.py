"""Diagnostics export helpers for local support bundles."""

from __future__ import annotations

import ipaddress
import json
import platform
import re
import socket
import tempfile
import zipfile
from dataclasses import asdict, is_dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import psutil

from .config import AppConfig, config_path, default_endpoint, restorable_endpoint
from .logging_setup import log_dir


_SECRET_RE = re.compile(r"(token|secret|password|apikey|api_key|auth)", re.IGNORECASE)


def _jsonable(value: Any) -> Any:
    if is_dataclass(value):
        return asdict(value)
    if isinstance(value, Path):
        return str(value)
    return value


def redact(value: Any) -> Any:
    if isinstance(value, dict):
        out: dict[str, Any] = {}
        for k, v in value.items():
            if _SECRET_RE.search(k):
                out[k] = "***REDACTED***"
            else:
                out[k] = redact(v)
        return out
    if isinstance(value, list):
        return [redact(v) for v in value]
    return value


def local_interfaces(target_address: str | None = None) -> list[dict[str, Any]]:
    """IPv4 interfaces that are up, flagged when they share a subnet with ``target_address``."""
    try:
        target = ipaddress.IPv4Address(target_address) if target_address else None
    except ValueError:
        target = None

    stats = psutil.net_if_stats()
    rows: list[dict[str, Any]] = []
    for name, addrs in sorted(psutil.net_if_addrs().items()):
        if name in stats and not stats[name].isup:
            continue
        for addr in addrs:
            if addr.family != socket.AF_INET or not addr.netmask:
                continue
            network = ipaddress.IPv4Network(f"{addr.address}/{addr.netmask}", strict=False)
            rows.append(
                {
                    "interface": name,
                    "address": addr.address,
                    "netmask": addr.netmask,
                    "reaches_controller": bool(target is not None and target in network),
                }
            )
    return rows


def build_doctor_payload(cfg: AppConfig) -> dict[str, Any]:
    restorable = restorable_endpoint(cfg)
    target = restorable or default_endpoint(cfg)
    return {
        "ts_utc": datetime.now(timezone.utc).isoformat(),
        "platform": platform.platform(),
        "python": platform.python_version(),
        "config": redact(asdict(cfg)),
        "restorable_endpoint": str(restorable) if restorable else None,
        "target_endpoint": str(target),
        "interfaces": local_interfaces(target.address),
    }


class DiagnosticsExporter:
    def __init__(self, app_name: str = "SortLink") -> None:
        self.app_name = app_name

    def bundle(
        self,
        cfg: AppConfig,
        doctor_payload: dict[str, Any],
        recent_session_events: list[dict[str, Any]] | None = None,
        output_dir: Path | None = None,
    ) -> Path:
        output_base = output_dir or Path(tempfile.gettempdir())
        output_base.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        zip_path = output_base / f"sortlink-diagnostics-{stamp}.zip"

        config_file = config_path()
        logs = sorted(log_dir().glob("*.log*"))

        with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            manifest = {
                "app": self.app_name,
                "created_utc": datetime.now(timezone.utc).isoformat(),
                "host": platform.platform(),
                "python": platform.python_version(),
                "config_path": str(config_file),
                "log_dir": str(log_dir()),
            }
            zf.writestr("manifest.json", json.dumps(manifest, indent=2, sort_keys=True))
            zf.writestr("doctor.json", json.dumps(redact(doctor_payload), indent=2, sort_keys=True, default=_jsonable))
            zf.writestr("config.redacted.json", json.dumps(redact(asdict(cfg)), indent=2, sort_keys=True))
            zf.writestr(
                "session_events.json",
                json.dumps(redact(recent_session_events or []), indent=2, sort_keys=True, default=_jsonable),
            )

            budget = max(1, cfg.diagnostics.max_bundle_mb) * 1024 * 1024
            used = 0
            for item in logs:
                size = item.stat().st_size
                if used + size > budget:
                    break
                used += size
                zf.write(item, arcname=f"logs/{item.name}")

        return zip_path

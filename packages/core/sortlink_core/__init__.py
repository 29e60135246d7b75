"""Core link services: settings, counting filter, session, diagnostics, and replay."""

from .config import AppConfig, default_endpoint, load_config, remember_endpoint, restorable_endpoint, save_config
from .counts import CountsChanged, FilterOutcome, SortingFilter
from .diagnostics import DiagnosticsExporter, build_doctor_payload
from .replay import ReplayReport, ReplayRunner
from .session import LinkSession, SessionStatus, SessionTimings

__all__ = [
    "AppConfig",
    "CountsChanged",
    "DiagnosticsExporter",
    "FilterOutcome",
    "LinkSession",
    "ReplayReport",
    "ReplayRunner",
    "SessionStatus",
    "SessionTimings",
    "SortingFilter",
    "build_doctor_payload",
    "default_endpoint",
    "load_config",
    "remember_endpoint",
    "restorable_endpoint",
    "save_config",
]

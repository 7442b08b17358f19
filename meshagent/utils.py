"""Helpers for the management interface: timestamps, metrics text, ports."""

from __future__ import annotations

import re
import socket
from datetime import datetime, timezone

from .types import Metrics

_EPOCH_FALLBACK = "1970-01-01T00:00:00Z"
_U64_MAX = 2**64 - 1
_U64_PATTERN = re.compile(r"\+?[0-9]+")


def format_timestamp(timestamp: int) -> str:
    """Format Unix seconds as ISO 8601 in UTC with nanosecond precision."""
    try:
        moment = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return _EPOCH_FALLBACK
    return (
        f"{moment.year:04d}-{moment.month:02d}-{moment.day:02d}"
        f"T{moment.hour:02d}:{moment.minute:02d}:{moment.second:02d}"
        ".000000000Z"
    )


def _parse_u64(text: str) -> int | None:
    if not _U64_PATTERN.fullmatch(text):
        return None
    value = int(text)
    return value if value <= _U64_MAX else None


def parse_prometheus_metrics(text: str, metrics: Metrics) -> None:
    """Copy known values from Prometheus exposition text into ``metrics``."""
    for line in text.splitlines():
        if line.startswith("#") or not line.strip():
            continue
        name, sep, raw_value = line.partition(" ")
        if not sep:
            continue
        value = _parse_u64(raw_value)
        if value is None:
            continue
        match name:
            case "components_running":
                metrics.components_running = value
            case "components_desired":
                metrics.set_components_desired(value)
            case "agent_restarts_total":
                metrics.restarts_total = value
            case "agent_mem_current_bytes":
                metrics.set_mem_current_bytes(value)
            case "agent_fuel_used_total":
                metrics.fuel_used_total = value


def find_available_port(
    host: str = "127.0.0.1", start: int = 49152, end: int = 65535
) -> int:
    """Return the first port in ``[start, end]`` that can be bound on ``host``."""
    for port in range(start, end + 1):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
            try:
                probe.bind((host, port))
            except OSError:
                continue
            return port
    raise OSError("No available ports found")
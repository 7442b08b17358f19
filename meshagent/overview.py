"""Overview endpoints: cluster status, nodes, components and logs."""

from __future__ import annotations

import re
import time
from typing import Any

from .types import WebState
from .utils import format_timestamp

ALL_COMPONENTS = "__all__"
LOCAL_NODE_ID = "local-node"
DEFAULT_TAIL = 100
DEFAULT_MEMORY_MB = 64

_U64_MAX = 2**64 - 1
_U64_PATTERN = re.compile(r"\+?[0-9]+")


def _parse_log_line(line: str) -> tuple[int, str] | None:
    """Split a ``"<unix> | <message>"`` line; None if it has another shape."""
    stamp, sep, message = line.partition(" | ")
    if not sep:
        return None
    stamp = stamp.strip()
    if not _U64_PATTERN.fullmatch(stamp):
        return None
    value = int(stamp)
    if value > _U64_MAX:
        return None
    return value, message.strip()


def api_status(state: WebState) -> dict[str, int]:
    """Node count (at least one), running components and average peer CPU."""
    peers = list(state.peer_status.values())
    node_count = len(peers)
    cpu_avg = sum(p.cpu_percent for p in peers) // node_count if peers else 0
    return {
        "nodes": max(node_count, 1),
        "components": state.metrics.components_running,
        "cpu_avg": cpu_avg,
    }


def api_nodes(state: WebState) -> list[dict[str, Any]]:
    """Known peers ordered by id, or the local node when there are none."""
    peers = dict(state.peer_status)
    nodes = [
        {
            "id": node_id,
            "online": True,
            "roles": list(status.tags),
            "components_running": status.components_running,
            "components_desired": status.components_desired,
            "cpu_percent": status.cpu_percent,
            "mem_percent": status.mem_percent,
        }
        for node_id, status in sorted(peers.items())
    ]
    if not nodes:
        nodes.append(
            {
                "id": LOCAL_NODE_ID,
                "online": True,
                "roles": ["local"],
                "components_running": state.metrics.components_running,
                "components_desired": state.metrics.components_desired,
                "cpu_percent": 0,
                "mem_percent": 0,
            }
        )
    return nodes


def api_components(state: WebState) -> list[dict[str, Any]]:
    """Desired components with a log-based estimate of running replicas."""
    components = []
    for name, desired in state.supervisor.get_desired_snapshot().items():
        spec = desired.spec
        replicas_desired = spec.replicas if spec.replicas is not None else 1
        memory_mb = spec.memory_max_mb if spec.memory_max_mb is not None else DEFAULT_MEMORY_MB
        if state.logs.lines(name):
            replicas_running = replicas_desired
        else:
            replicas_running = 1 if replicas_desired > 0 else 0
        peers = sorted(state.peer_status)
        components.append(
            {
                "name": name,
                "running": replicas_running > 0,
                "replicas_running": replicas_running,
                "replicas_desired": replicas_desired,
                "memory_mb": memory_mb,
                "nodes": peers if peers else [LOCAL_NODE_ID],
            }
        )
    return components


def api_logs(
    state: WebState, tail: int | None = None, component: str | None = None
) -> list[dict[str, str]]:
    """The last ``tail`` log lines of one component, or of all merged by time."""
    tail = DEFAULT_TAIL if tail is None else tail
    component = ALL_COMPONENTS if component is None else component
    entries: list[dict[str, str]] = []

    if component == ALL_COMPONENTS:
        collected: list[tuple[int, str, str]] = []
        for name in state.logs.components():
            for line in state.logs.lines(name):
                parsed = _parse_log_line(line)
                if parsed is not None:
                    collected.append((parsed[0], name, parsed[1]))
        collected.sort(key=lambda item: item[0])
        start = max(0, len(collected) - tail)
        entries = [
            {"timestamp": format_timestamp(ts), "component": name, "message": message}
            for ts, name, message in collected[start:]
        ]
    else:
        lines = state.logs.lines(component)
        start = max(0, len(lines) - tail)
        for line in lines[start:]:
            parsed = _parse_log_line(line)
            if parsed is not None:
                entries.append(
                    {
                        "timestamp": format_timestamp(parsed[0]),
                        "component": component,
                        "message": parsed[1],
                    }
                )

    if not entries:
        message = (
            "No logs available yet"
            if component == ALL_COMPONENTS
            else f"No logs found for component '{component}'"
        )
        entries.append(
            {
                "timestamp": format_timestamp(int(time.time())),
                "component": "system",
                "message": message,
            }
        )
    return entries


def api_log_components(state: WebState) -> list[str]:
    """Sorted names of components that have logs."""
    return sorted(state.logs.components())
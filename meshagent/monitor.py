"""Health reporting for the fleet, its nodes and its components."""

from __future__ import annotations

import platform
import sys
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .storage import ContentStore
from .types import WebState

_MIB = 1024 * 1024
STORAGE_WARNING_MB = 10_000
CPU_CRITICAL_PERCENT = 90
MEMORY_WARNING_PERCENT = 85
DEFAULT_MEMORY_MB = 64
LOCAL_NODE_ID = "local-node"
LOCAL_AGENT_VERSION = 1


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    UNKNOWN = "unknown"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class HealthCheckResult:
    """Outcome of one health check."""

    component: str
    status: HealthStatus
    message: str
    last_check: int
    response_time_ms: int


@dataclass
class AlertInfo:
    """An alert raised for a node."""

    id: str
    severity: AlertSeverity
    title: str
    message: str
    timestamp: int
    acknowledged: bool = False


@dataclass
class FleetHealth:
    """Summary of the health of the whole fleet."""

    overall_status: HealthStatus
    total_nodes: int
    healthy_nodes: int
    warning_nodes: int
    critical_nodes: int
    total_components: int
    healthy_components: int
    failed_components: int
    average_response_time: float
    disk_usage_percent: float
    memory_usage_percent: float
    uptime_seconds: int
    last_incident: str | None = None
    checks: list[HealthCheckResult] = field(default_factory=list)


@dataclass
class NodeHealth:
    """Health of one node."""

    node_id: str
    status: HealthStatus
    components_running: int
    components_desired: int
    cpu_percent: int
    memory_percent: int
    disk_usage_percent: float
    uptime_seconds: int
    last_seen: int
    agent_version: int
    platform: str
    tags: list[str] = field(default_factory=list)
    alerts: list[AlertInfo] = field(default_factory=list)


@dataclass
class ComponentHealth:
    """Health of one desired component."""

    name: str
    status: HealthStatus
    replicas_running: int
    replicas_desired: int
    last_restart: int | None
    restart_count: int
    error_rate: float
    response_time_p95: float
    memory_usage_mb: int
    cpu_usage_percent: float


def _now_unix() -> int:
    return int(time.time())


def _replica_status(running: int, desired: int) -> HealthStatus:
    if running >= desired:
        return HealthStatus.HEALTHY
    if running > 0:
        return HealthStatus.WARNING
    return HealthStatus.CRITICAL


def get_running_replicas(state: WebState, component_name: str) -> int:
    """Estimate of running replicas: one if the component has logged anything."""
    return 1 if state.logs.lines(component_name) else 0


def get_component_metrics(state: WebState, component_name: str) -> tuple[int, float]:
    """Restart count and error rate (percent of log lines) from a component's logs."""
    lines = state.logs.lines(component_name)
    if not lines:
        return 0, 0.0
    restarts = sum(
        1 for line in lines if "launching replica" in line or "replica crashed" in line
    )
    errors = sum(
        1
        for line in lines
        if "error" in line or "Error" in line or "failed" in line
    )
    return restarts, errors / len(lines) * 100.0


def check_storage_health(store: ContentStore) -> HealthCheckResult:
    """Warn when the content store holds more than about 10 GB."""
    entries = store.list()
    total_mb = sum(entry.size_bytes for _, entry in entries) // _MIB
    if total_mb > STORAGE_WARNING_MB:
        status = HealthStatus.WARNING
        message = f"Storage usage high: {total_mb} MB"
    else:
        status = HealthStatus.HEALTHY
        message = f"Storage usage: {total_mb} MB, {len(entries)} blobs"
    return HealthCheckResult(
        component="storage",
        status=status,
        message=message,
        last_check=_now_unix(),
        response_time_ms=0,
    )


def calculate_average_response_time(checks: list[HealthCheckResult]) -> float:
    """Mean response time of the checks in milliseconds; 0.0 for none."""
    if not checks:
        return 0.0
    return sum(check.response_time_ms for check in checks) / len(checks)


def _memory_usage_percent() -> float:
    if sys.platform.startswith("linux"):
        try:
            text = Path("/proc/meminfo").read_text()
        except OSError:
            return 0.0
        total = available = 0
        for line in text.splitlines():
            parts = line.split()
            if len(parts) < 2 or not parts[1].isdigit():
                continue
            if line.startswith("MemTotal:"):
                total = int(parts[1])
            elif line.startswith("MemAvailable:"):
                available = int(parts[1])
        if total > 0:
            return (total - available) / total * 100.0
        return 0.0
    if sys.platform == "darwin":
        # No inexpensive source on this platform; a fixed estimate is reported.
        return 45.0
    return 0.0


def _uptime_seconds() -> int:
    if sys.platform.startswith("linux"):
        try:
            first = Path("/proc/uptime").read_text().split()[0]
            return int(float(first))
        except (OSError, IndexError, ValueError):
            pass
    # Not real uptime, but what is reported where none is available.
    return _now_unix()


def _system_metrics() -> tuple[float, float, int]:
    return 0.0, _memory_usage_percent(), _uptime_seconds()


def _platform_name() -> str:
    system = {"darwin": "macos"}.get(platform.system().lower(), platform.system().lower())
    machine = platform.machine().lower()
    arch = {"amd64": "x86_64", "arm64": "aarch64"}.get(machine, machine)
    return f"{system}/{arch}"


def api_fleet_health(state: WebState, store: ContentStore) -> FleetHealth:
    """Overall health built from connectivity, component, storage and peer checks."""
    started = time.monotonic()
    checks = [
        HealthCheckResult(
            component="connectivity",
            status=HealthStatus.HEALTHY,
            message="Agent responding",
            last_check=_now_unix(),
            response_time_ms=int((time.monotonic() - started) * 1000),
        )
    ]

    desired_components = state.supervisor.get_desired_snapshot()
    total_components = len(desired_components)
    healthy_components = 0
    failed_components = 0
    for name, desired in desired_components.items():
        replicas = desired.spec.replicas
        wanted = replicas if replicas is not None else 1
        running = get_running_replicas(state, name)
        status = _replica_status(running, wanted)
        if status is HealthStatus.HEALTHY:
            healthy_components += 1
            message = f"{running}/{wanted} replicas running"
        elif status is HealthStatus.WARNING:
            message = f"{running}/{wanted} replicas running"
        else:
            failed_components += 1
            message = f"Component not running ({running}/{wanted} replicas)"
        checks.append(
            HealthCheckResult(
                component=f"component:{name}",
                status=status,
                message=message,
                last_check=_now_unix(),
                response_time_ms=0,
            )
        )

    checks.append(check_storage_health(store))

    peers = list(dict(state.peer_status).values())
    total_nodes = max(len(peers), 1)
    healthy_nodes = sum(
        1 for p in peers if p.components_running > 0 or p.components_desired > 0
    )
    warning_nodes = 0
    critical_nodes = max(0, total_nodes - (healthy_nodes + warning_nodes))

    if failed_components > 0 or critical_nodes > 0:
        overall = HealthStatus.CRITICAL
    elif total_components > healthy_components or warning_nodes > 0:
        overall = HealthStatus.WARNING
    else:
        overall = HealthStatus.HEALTHY

    disk, memory, uptime = _system_metrics()
    return FleetHealth(
        overall_status=overall,
        total_nodes=total_nodes,
        healthy_nodes=healthy_nodes,
        warning_nodes=warning_nodes,
        critical_nodes=critical_nodes,
        total_components=total_components,
        healthy_components=healthy_components,
        failed_components=failed_components,
        average_response_time=calculate_average_response_time(checks),
        disk_usage_percent=disk,
        memory_usage_percent=memory,
        uptime_seconds=uptime,
        last_incident=None,
        checks=checks,
    )


def api_node_health(state: WebState) -> list[NodeHealth]:
    """Health of every known peer, ordered by id, or of the local node if none."""
    nodes: list[NodeHealth] = []
    for node_id, status in sorted(dict(state.peer_status).items()):
        alerts: list[AlertInfo] = []
        if status.cpu_percent > CPU_CRITICAL_PERCENT:
            alerts.append(
                AlertInfo(
                    id=f"cpu-{node_id}",
                    severity=AlertSeverity.CRITICAL,
                    title="High CPU Usage",
                    message=f"CPU usage at {status.cpu_percent}%",
                    timestamp=_now_unix(),
                )
            )
        if status.mem_percent > MEMORY_WARNING_PERCENT:
            alerts.append(
                AlertInfo(
                    id=f"memory-{node_id}",
                    severity=AlertSeverity.WARNING,
                    title="High Memory Usage",
                    message=f"Memory usage at {status.mem_percent}%",
                    timestamp=_now_unix(),
                )
            )
        if status.components_running < status.components_desired:
            alerts.append(
                AlertInfo(
                    id=f"components-{node_id}",
                    severity=AlertSeverity.WARNING,
                    title="Component Drift",
                    message=(
                        f"Running {status.components_running}/"
                        f"{status.components_desired} desired components"
                    ),
                    timestamp=_now_unix(),
                )
            )
        if any(a.severity is AlertSeverity.CRITICAL for a in alerts):
            node_status = HealthStatus.CRITICAL
        elif alerts:
            node_status = HealthStatus.WARNING
        else:
            node_status = HealthStatus.HEALTHY
        nodes.append(
            NodeHealth(
                node_id=node_id,
                status=node_status,
                components_running=status.components_running,
                components_desired=status.components_desired,
                cpu_percent=status.cpu_percent,
                memory_percent=status.mem_percent,
                disk_usage_percent=0.0,
                uptime_seconds=0,
                last_seen=_now_unix(),
                agent_version=status.agent_version,
                platform="unknown",
                tags=list(status.tags),
                alerts=alerts,
            )
        )

    if not nodes:
        disk, memory, uptime = _system_metrics()
        alerts = []
        if memory > MEMORY_WARNING_PERCENT:
            alerts.append(
                AlertInfo(
                    id="local-memory",
                    severity=AlertSeverity.WARNING,
                    title="High Memory Usage",
                    message=f"Memory usage at {memory:.1f}%",
                    timestamp=_now_unix(),
                )
            )
        nodes.append(
            NodeHealth(
                node_id=LOCAL_NODE_ID,
                status=HealthStatus.WARNING if alerts else HealthStatus.HEALTHY,
                components_running=state.metrics.components_running,
                components_desired=state.metrics.components_desired,
                cpu_percent=0,
                memory_percent=int(memory),
                disk_usage_percent=disk,
                uptime_seconds=uptime,
                last_seen=_now_unix(),
                agent_version=LOCAL_AGENT_VERSION,
                platform=_platform_name(),
                tags=["local"],
                alerts=alerts,
            )
        )
    return nodes


def api_component_health(state: WebState) -> list[ComponentHealth]:
    """Health of every desired component, ordered by name."""
    components = []
    for name, desired in state.supervisor.get_desired_snapshot().items():
        spec = desired.spec
        wanted = spec.replicas if spec.replicas is not None else 1
        running = get_running_replicas(state, name)
        restarts, error_rate = get_component_metrics(state, name)
        components.append(
            ComponentHealth(
                name=name,
                status=_replica_status(running, wanted),
                replicas_running=running,
                replicas_desired=wanted,
                last_restart=None,
                restart_count=restarts,
                error_rate=error_rate,
                response_time_p95=0.0,
                memory_usage_mb=(
                    spec.memory_max_mb if spec.memory_max_mb is not None else DEFAULT_MEMORY_MB
                ),
                cpu_usage_percent=0.0,
            )
        )
    return components
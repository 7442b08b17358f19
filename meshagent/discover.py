"""Discovery of agents by probing metrics endpoints on the local network."""

from __future__ import annotations

import logging
import re
import socket
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any

from .types import PeerStatus, WebState

log = logging.getLogger(__name__)

LOCAL_PORTS = (9090, 3030, 8080, 7070)
SUBNET_PORTS = (9090, 3030)
DEFAULT_TIMEOUT = 0.5
FALLBACK_NETWORK_BASE = "192.168.1"

_U64_MAX = 2**64 - 1
_U64_PATTERN = re.compile(r"\+?[0-9]+")


@dataclass
class PeerInfo:
    """An address that answered with agent metrics, and the metrics text."""

    address: str
    metrics: str


def _parse_u64(text: str) -> int | None:
    if not _U64_PATTERN.fullmatch(text):
        return None
    value = int(text)
    return value if value <= _U64_MAX else None


def parse_peer_info(peer_info: PeerInfo) -> PeerStatus:
    """Build a peer status from the metrics an agent exposed."""
    values = {"agent_version": 0, "components_running": 0, "components_desired": 0}
    for line in peer_info.metrics.splitlines():
        name, sep, raw_value = line.partition(" ")
        if not sep or name not in values:
            continue
        value = _parse_u64(raw_value)
        if value is not None:
            values[name] = value
    return PeerStatus(
        node_id=peer_info.address,
        msg="discovered",
        agent_version=values["agent_version"],
        components_desired=values["components_desired"],
        components_running=values["components_running"],
        cpu_percent=0,
        mem_percent=0,
        tags=["discovered"],
        drift=values["components_desired"] - values["components_running"],
        trusted_owner_pub_bs58=None,
        links=0,
    )


def check_agent_endpoint(address: str, timeout: float = DEFAULT_TIMEOUT) -> PeerInfo:
    """Probe ``http://<address>/metrics``; raise ConnectionError if no agent answers."""
    url = f"http://{address}/metrics"
    body = ""
    try:
        with urllib.request.urlopen(url, timeout=timeout) as response:
            if 200 <= response.status < 300:
                body = response.read().decode("utf-8", errors="replace")
    except (urllib.error.URLError, OSError, ValueError):
        body = ""
    if "agent_version" in body or "components_running" in body:
        return PeerInfo(address=address, metrics=body)
    raise ConnectionError(f"No agent found at {address}")


def _local_network_base() -> str:
    """First three octets of the address used for outbound traffic."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            try:
                sock.bind(("0.0.0.0", 0))
            except OSError as exc:
                raise ConnectionError(f"Failed to create socket: {exc}") from exc
            try:
                sock.connect(("8.8.8.8", 80))
            except OSError as exc:
                raise ConnectionError(f"Failed to connect: {exc}") from exc
            try:
                ip = str(sock.getsockname()[0])
            except OSError as exc:
                raise ConnectionError(f"Failed to get local addr: {exc}") from exc
    except ConnectionError:
        raise
    except OSError as exc:
        raise ConnectionError(f"Failed to create socket: {exc}") from exc
    parts = ip.split(".")
    if len(parts) >= 3:
        return ".".join(parts[:3])
    return FALLBACK_NETWORK_BASE


def _probe(address: str) -> PeerInfo | None:
    try:
        return check_agent_endpoint(address)
    except ConnectionError:
        return None


def perform_network_discovery() -> list[PeerInfo]:
    """Probe localhost and the local /24 subnet for agents."""
    found = [
        peer
        for port in LOCAL_PORTS
        if (peer := _probe(f"127.0.0.1:{port}")) is not None
    ]
    base = _local_network_base()
    for host in range(1, 255):
        for port in SUBNET_PORTS:
            peer = _probe(f"{base}.{host}:{port}")
            if peer is not None:
                found.append(peer)
    return found


def api_discover(state: WebState) -> dict[str, Any]:
    """Run discovery, record found peers and report every known node."""
    try:
        peers = perform_network_discovery()
    except OSError as exc:
        discovery_status = f"Discovery completed with errors: {exc}"
        log.warning("network discovery failed: %s", exc)
    else:
        for peer in peers:
            state.update_peer_status(parse_peer_info(peer))
        discovery_status = f"Successfully discovered {len(peers)} peers"

    nodes = [
        {
            "node_id": node_id,
            "agent_version": status.agent_version,
            "components_running": status.components_running,
            "components_desired": status.components_desired,
            "cpu_percent": status.cpu_percent,
            "mem_percent": status.mem_percent,
            "tags": list(status.tags),
            "links": status.links,
        }
        for node_id, status in sorted(dict(state.peer_status).items())
    ]
    state.logs.push("system", f"Network discovery triggered: {discovery_status}")
    return {
        "discovered_nodes": nodes,
        "discovery_time": int(time.time()),
        "discovery_status": discovery_status,
    }
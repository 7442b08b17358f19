"""Shared state for the management interface: metrics, logs, peers and sessions."""

from __future__ import annotations

import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any

SESSION_TIMEOUT_SECONDS = 30 * 60


@dataclass
class Metrics:
    """Agent-wide counters and gauges."""

    components_running: int = 0
    components_desired: int = 0
    restarts_total: int = 0
    mem_current_bytes: int = 0
    mem_peak_bytes: int = 0
    fuel_used_total: int = 0
    agent_version: int = 0
    manifest_version: int = 0
    _lock: threading.Lock = field(
        default_factory=threading.Lock, repr=False, compare=False
    )

    def inc_components_running(self) -> None:
        with self._lock:
            self.components_running += 1

    def dec_components_running(self) -> None:
        with self._lock:
            self.components_running = max(0, self.components_running - 1)

    def set_components_desired(self, value: int) -> None:
        with self._lock:
            self.components_desired = value

    def inc_restarts_total(self) -> None:
        with self._lock:
            self.restarts_total += 1

    def set_mem_current_bytes(self, value: int) -> None:
        with self._lock:
            self.mem_current_bytes = value
            self.mem_peak_bytes = max(self.mem_peak_bytes, value)


class LogBook:
    """Per-component ring buffers of lines shaped ``"<unix> | <message>"``."""

    def __init__(self, capacity: int = 1000) -> None:
        self.capacity = capacity
        self._buffers: dict[str, deque[str]] = {}
        self._lock = threading.Lock()

    def push(self, component: str, message: str) -> None:
        line = f"{int(time.time())} | {message}"
        with self._lock:
            buffer = self._buffers.setdefault(component, deque(maxlen=self.capacity))
            buffer.append(line)

    def components(self) -> list[str]:
        """Names of components that have a log buffer, sorted."""
        with self._lock:
            return sorted(self._buffers)

    def lines(self, component: str) -> list[str]:
        """A copy of the buffered lines of one component, oldest first."""
        with self._lock:
            return list(self._buffers.get(component, ()))


@dataclass
class PeerStatus:
    """Status report of one node in the mesh."""

    node_id: str
    msg: str = ""
    agent_version: int = 0
    components_desired: int = 0
    components_running: int = 0
    cpu_percent: int = 0
    mem_percent: int = 0
    tags: list[str] = field(default_factory=list)
    drift: int = 0
    trusted_owner_pub_bs58: str | None = None
    links: int = 0


@dataclass
class Session:
    """A management session that expires after thirty idle minutes."""

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    last_active: float = field(default_factory=time.time)
    authenticated: bool = False

    def is_expired(self) -> bool:
        idle = time.time() - self.last_active
        return idle < 0 or idle > SESSION_TIMEOUT_SECONDS

    def touch(self) -> None:
        self.last_active = time.time()


class WebState:
    """State shared by the management interface handlers."""

    def __init__(self, metrics: Metrics, logs: LogBook, supervisor: Any) -> None:
        self.metrics = metrics
        self.logs = logs
        self.supervisor = supervisor
        self.sessions: dict[str, Session] = {}
        self.peer_status: dict[str, PeerStatus] = {}
        self.p2p_events: list[Any] = []
        self._lock = threading.Lock()

    def update_peer_status(self, status: PeerStatus) -> None:
        with self._lock:
            self.peer_status[status.node_id] = status

    def create_session(self) -> str:
        """Open a new session, drop expired ones and return the new id."""
        session = Session()
        with self._lock:
            self.sessions[session.id] = session
            self.sessions = {
                sid: s for sid, s in self.sessions.items() if not s.is_expired()
            }
        return session.id

    def authenticate_session(self, session_id: str) -> bool:
        with self._lock:
            session = self.sessions.get(session_id)
            if session is None or session.is_expired():
                return False
            session.touch()
            session.authenticated = True
            return True
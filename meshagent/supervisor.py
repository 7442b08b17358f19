"""Keeps each desired component at its wanted number of running replicas."""

from __future__ import annotations

import dataclasses
import logging
import shutil
import threading
import time
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from .storage import sha256_hex
from .types import LogBook, Metrics

log = logging.getLogger(__name__)

DEFAULT_MEMORY_MAX_MB = 64
DEFAULT_FUEL = 5_000_000
DEFAULT_EPOCH_MS = 100
HTTP_HANDLER_EXPORT = b"wasi:http/incoming-handler"


@dataclass
class MountSpec:
    """A host directory made visible to a component under a guest path."""

    host: str
    guest: str
    ro: bool = False

    @classmethod
    def from_dict(cls, raw: dict) -> "MountSpec":
        return cls(host=str(raw["host"]), guest=str(raw["guest"]), ro=bool(raw.get("ro", False)))


@dataclass
class ComponentSpec:
    """Deployment settings of one component as found in a manifest."""

    source: str
    sha256_hex: str
    replicas: int | None = None
    memory_max_mb: int | None = None
    fuel: int | None = None
    epoch_ms: int | None = None
    mounts: list[MountSpec] | None = None
    ports: Any = None
    visibility: Any = None

    @classmethod
    def from_dict(cls, raw: dict) -> "ComponentSpec":
        mounts = raw.get("mounts")
        return cls(
            source=str(raw["source"]),
            sha256_hex=str(raw["sha256_hex"]),
            replicas=raw.get("replicas"),
            memory_max_mb=raw.get("memory_max_mb"),
            fuel=raw.get("fuel"),
            epoch_ms=raw.get("epoch_ms"),
            mounts=None if mounts is None else [MountSpec.from_dict(m) for m in mounts],
            ports=raw.get("ports"),
            visibility=raw.get("visibility"),
        )


@dataclass
class DesiredComponent:
    """A component the supervisor should keep running from a local artifact."""

    name: str
    path: Path
    spec: ComponentSpec


def is_http_component(data: bytes) -> bool:
    """Whether a component binary exports the HTTP incoming handler."""
    return HTTP_HANDLER_EXPORT in data


@dataclass
class _Task:
    thread: threading.Thread
    stop: threading.Event = field(default_factory=threading.Event)


Runner = Callable[..., Any]


class Supervisor:
    """Minimal reconciler: ensures each component has N replicas; restarts on exit.

    ``runner`` is called in a worker thread with the keyword arguments ``path``,
    ``name``, ``logs``, ``memory_max_mb``, ``fuel``, ``epoch_ms``, ``metrics``,
    ``mounts`` and ``stop`` (a :class:`threading.Event` set when the replica is
    asked to stop). The replica counts as running until the call returns.
    """

    def __init__(self, logs: LogBook, metrics: Metrics, data_dir, runner: Runner) -> None:
        self.logs = logs
        self.metrics = metrics
        self.data_dir = Path(data_dir)
        self.runner = runner
        self._desired: dict[str, DesiredComponent] = {}
        self._counts: dict[str, int] = {}
        self._tasks: dict[str, list[_Task]] = {}
        self._lock = threading.RLock()

    # ----- desired state -------------------------------------------------

    def restore_from_manifest(self, manifest_text: str | None) -> dict[str, DesiredComponent]:
        """Restore desired state from a persisted manifest; return what was restored."""
        if manifest_text is None:
            log.info("No persistent manifest found, starting with empty state")
            return {}
        log.info("Restoring component state from persistent manifest")
        try:
            raw = tomllib.loads(manifest_text)
            specs = {
                name: ComponentSpec.from_dict(spec)
                for name, spec in raw.get("components", {}).items()
            }
        except (tomllib.TOMLDecodeError, KeyError, TypeError, AttributeError, ValueError) as exc:
            log.warning("Failed to parse persistent manifest, starting with empty state: %s", exc)
            return {}

        stage_dir = self.data_dir / "artifacts"
        desired: dict[str, DesiredComponent] = {}
        for name, spec in specs.items():
            artifact = stage_dir / f"{name}-{spec.sha256_hex[:16]}.wasm"
            if not artifact.exists():
                log.warning(
                    "Cached artifact %s for %s not found, component will be unavailable "
                    "until re-deployed", artifact, name,
                )
                continue
            try:
                cached = artifact.read_bytes()
            except OSError:
                log.warning("Failed to read cached artifact %s for %s", artifact, name)
                continue
            digest = sha256_hex(cached)
            if digest != spec.sha256_hex:
                log.warning(
                    "Cached artifact hash mismatch for %s (expected %s, actual %s), skipping",
                    name, spec.sha256_hex, digest,
                )
                continue
            desired[name] = DesiredComponent(name=name, path=artifact, spec=spec)
            log.info("Restored component %s from %s", name, artifact)

        if not desired:
            log.info("No components could be restored from cache")
            return {}
        self.set_desired(desired)
        log.info("Successfully restored %d components from disk", len(desired))
        for name in sorted(desired):
            self.logs.push(name, "restored from persistent state")
        return dict(sorted(desired.items()))

    def set_desired(self, desired: dict[str, DesiredComponent]) -> None:
        """Replace the whole desired state."""
        with self._lock:
            self._desired = dict(desired)
            self.metrics.set_components_desired(len(self._desired))
            for name in self._desired:
                self._counts.setdefault(name, 0)

    def upsert_component(self, desired: DesiredComponent) -> None:
        """Insert or replace one desired component; it is launched on the next reconcile."""
        with self._lock:
            self._desired[desired.name] = desired
            self.metrics.set_components_desired(len(self._desired))
            self._counts.setdefault(desired.name, 0)

    def get_desired_snapshot(self) -> dict[str, DesiredComponent]:
        """A copy of the desired components, ordered by name."""
        with self._lock:
            return dict(sorted(self._desired.items()))

    def get_component(self, name: str) -> DesiredComponent | None:
        with self._lock:
            return self._desired.get(name)

    # ----- reconciliation ------------------------------------------------

    def reconcile_once(self) -> None:
        """Launch replicas for every component running fewer than it wants."""
        for name, desired in self.get_desired_snapshot().items():
            want = max(desired.spec.replicas if desired.spec.replicas is not None else 1, 1)
            with self._lock:
                running = self._counts.setdefault(name, 0)
            for _ in range(max(0, want - running)):
                self._launch_replica(desired)
        # Scaling down is not performed.

    def cleanup_component(self, component_name: str) -> None:
        """Stop the replicas of one component and clear its work directory."""
        with self._lock:
            tasks = self._tasks.pop(component_name, None)
        if tasks is not None:
            for task in tasks:
                task.stop.set()
            log.info("Component %s tasks cleaned up", component_name)
        work_root = self._work_root(component_name)
        if work_root.exists():
            shutil.rmtree(work_root, ignore_errors=True)

    def cleanup_all(self) -> None:
        """Stop the replicas of every component."""
        with self._lock:
            drained = self._tasks
            self._tasks = {}
        for component, tasks in drained.items():
            for task in tasks:
                task.stop.set()
            log.info("All %s tasks cleaned up", component)

    # ----- internals -----------------------------------------------------

    def _work_root(self, name: str) -> Path:
        return self.data_dir / "work" / "components" / name

    def _adjust_count(self, name: str, delta: int) -> None:
        with self._lock:
            self._counts[name] = max(0, self._counts.get(name, 0) + delta)

    def _launch_replica(self, desired: DesiredComponent) -> None:
        name = desired.name
        path = str(desired.path)
        spec = desired.spec
        memory = spec.memory_max_mb if spec.memory_max_mb is not None else DEFAULT_MEMORY_MAX_MB
        fuel = spec.fuel if spec.fuel is not None else DEFAULT_FUEL
        epoch = spec.epoch_ms if spec.epoch_ms is not None else DEFAULT_EPOCH_MS

        try:
            binary = Path(path).read_bytes()
        except OSError:
            binary = None
        if binary is not None and is_http_component(binary):
            log.info("HTTP component %s detected - will be invoked on-demand via gateway", name)
            self.metrics.inc_components_running()
            self._adjust_count(name, 1)
            self.logs.push(name, f"HTTP component staged from {path}, ready for gateway invocation")
            return

        base_work_dir = self._work_root(name)
        mounts = None if spec.mounts is None else [dataclasses.replace(m) for m in spec.mounts]
        replica_dir: Path | None = None
        if mounts and any(Path(m.host).is_relative_to(base_work_dir) for m in mounts):
            replica_dir = base_work_dir / str(time.time_ns() // 1000)
            try:
                replica_dir.mkdir(parents=True, exist_ok=True)
            except OSError:
                pass
            for mount in mounts:
                if Path(mount.host).is_relative_to(base_work_dir):
                    mount.host = str(replica_dir)
            self.logs.push(name, f"allocated work dir {replica_dir}")

        self.logs.push(name, f"launching replica from {path}")
        self.metrics.inc_components_running()
        self._adjust_count(name, 1)

        stop = threading.Event()

        def run() -> None:
            try:
                self.runner(
                    path=path,
                    name=name,
                    logs=self.logs,
                    memory_max_mb=memory,
                    fuel=fuel,
                    epoch_ms=epoch,
                    metrics=self.metrics,
                    mounts=mounts,
                    stop=stop,
                )
            except Exception as exc:  # a crashed replica is restarted, not propagated
                log.warning("replica of %s crashed: %s", name, exc)
            finally:
                if replica_dir is not None:
                    shutil.rmtree(replica_dir, ignore_errors=True)
                self.metrics.dec_components_running()
                self.metrics.inc_restarts_total()
                self._adjust_count(name, -1)

        thread = threading.Thread(target=run, name=f"replica-{name}", daemon=True)
        with self._lock:
            self._tasks.setdefault(name, []).append(_Task(thread=thread, stop=stop))
        thread.start()
        log.info("Component %s replica started", name)
import threading
import time
from pathlib import Path

import pytest

from meshagent.storage import sha256_hex
from meshagent.supervisor import (
    ComponentSpec,
    DesiredComponent,
    MountSpec,
    Supervisor,
    is_http_component,
)
from meshagent.types import LogBook, Metrics


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class BlockingRunner:
    def __init__(self):
        self.calls = []
        self._lock = threading.Lock()

    def __call__(self, **kwargs):
        with self._lock:
            self.calls.append(kwargs)
        kwargs["stop"].wait(5)


def make_supervisor(tmp_path, runner):
    logs = LogBook()
    metrics = Metrics()
    return Supervisor(logs, metrics, tmp_path, runner), logs, metrics


def write_artifact(tmp_path, name, data):
    digest = sha256_hex(data)
    path = tmp_path / "artifacts" / f"{name}-{digest[:16]}.wasm"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return digest, path


def desired(name, path, **spec_fields):
    spec = ComponentSpec(source="cached:x", sha256_hex="x", **spec_fields)
    return DesiredComponent(name=name, path=Path(path), spec=spec)


def test_is_http_component():
    assert is_http_component(b"\x00asm...wasi:http/incoming-handler@0.2.0")
    assert not is_http_component(b"\x00asm wasi:cli/run")


def test_component_spec_from_dict_with_mounts():
    spec = ComponentSpec.from_dict(
        {
            "source": "file:///a.wasm",
            "sha256_hex": "ab",
            "replicas": 3,
            "mounts": [{"host": "/h", "guest": "/g", "ro": True}, {"host": "/w", "guest": "/x"}],
        }
    )
    assert spec.replicas == 3
    assert spec.fuel is None
    assert spec.mounts == [MountSpec("/h", "/g", True), MountSpec("/w", "/x", False)]


def test_restore_from_manifest_restores_matching_artifacts(tmp_path):
    sup, logs, metrics = make_supervisor(tmp_path, BlockingRunner())
    digest, path = write_artifact(tmp_path, "hello", b"module bytes")
    text = f'[components.hello]\nsource = "cached:{digest}"\nsha256_hex = "{digest}"\nreplicas = 2\n'
    restored = sup.restore_from_manifest(text)
    assert list(restored) == ["hello"]
    assert restored["hello"].path == path
    assert sup.get_component("hello").spec.replicas == 2
    assert metrics.components_desired == 1
    assert any(line.endswith("restored from persistent state") for line in logs.lines("hello"))


def test_restore_skips_mismatched_and_missing(tmp_path):
    sup, _, metrics = make_supervisor(tmp_path, BlockingRunner())
    digest, path = write_artifact(tmp_path, "bad", b"original")
    path.write_bytes(b"tampered")
    text = (
        f'[components.bad]\nsource = "s"\nsha256_hex = "{digest}"\n'
        f'[components.gone]\nsource = "s"\nsha256_hex = "{sha256_hex(b"nothing")}"\n'
    )
    assert sup.restore_from_manifest(text) == {}
    assert sup.get_desired_snapshot() == {}
    assert metrics.components_desired == 0


@pytest.mark.parametrize("text", [None, "not = [valid", "[components.x]\nreplicas = 1\n"])
def test_restore_handles_missing_or_invalid_manifest(tmp_path, text):
    sup, _, _ = make_supervisor(tmp_path, BlockingRunner())
    assert sup.restore_from_manifest(text) == {}
    assert sup.get_desired_snapshot() == {}


def test_set_and_upsert_update_desired_metrics(tmp_path):
    sup, _, metrics = make_supervisor(tmp_path, BlockingRunner())
    sup.set_desired({"a": desired("a", tmp_path / "a"), "b": desired("b", tmp_path / "b")})
    assert metrics.components_desired == 2
    sup.upsert_component(desired("c", tmp_path / "c"))
    sup.upsert_component(desired("a", tmp_path / "a2"))
    assert metrics.components_desired == 3
    assert list(sup.get_desired_snapshot()) == ["a", "b", "c"]
    assert sup.get_component("a").path == tmp_path / "a2"
    assert sup.get_component("missing") is None


def test_snapshot_is_a_copy(tmp_path):
    sup, _, _ = make_supervisor(tmp_path, BlockingRunner())
    sup.upsert_component(desired("a", tmp_path / "a"))
    snap = sup.get_desired_snapshot()
    snap.pop("a")
    assert "a" in sup.get_desired_snapshot()


def test_http_component_is_staged_not_run(tmp_path):
    runner = BlockingRunner()
    sup, logs, metrics = make_supervisor(tmp_path, runner)
    wasm = tmp_path / "http.wasm"
    wasm.write_bytes(b"prefix wasi:http/incoming-handler suffix")
    sup.upsert_component(desired("web", wasm))
    sup.reconcile_once()
    sup.reconcile_once()
    assert runner.calls == []
    assert metrics.components_running == 1
    staged = [line for line in logs.lines("web") if "ready for gateway invocation" in line]
    assert len(staged) == 1


def test_reconcile_launches_replicas_with_defaults_and_stops(tmp_path):
    runner = BlockingRunner()
    sup, logs, metrics = make_supervisor(tmp_path, runner)
    wasm = tmp_path / "app.wasm"
    wasm.write_bytes(b"plain module")
    sup.upsert_component(desired("app", wasm, replicas=2))
    sup.reconcile_once()
    assert wait_until(lambda: len(runner.calls) == 2)
    assert metrics.components_running == 2
    call = runner.calls[0]
    assert call["name"] == "app"
    assert call["path"] == str(wasm)
    assert call["memory_max_mb"] == 64
    assert call["fuel"] == 5_000_000
    assert call["epoch_ms"] == 100
    sup.reconcile_once()
    time.sleep(0.05)
    assert len(runner.calls) == 2
    assert sum("launching replica from" in line for line in logs.lines("app")) == 2

    sup.cleanup_component("app")
    assert wait_until(lambda: metrics.components_running == 0)
    assert wait_until(lambda: metrics.restarts_total == 2)


def test_crashed_replica_is_relaunched(tmp_path):
    attempts = []

    def crashing(**kwargs):
        attempts.append(kwargs["name"])
        raise RuntimeError("boom")

    sup, logs, metrics = make_supervisor(tmp_path, crashing)
    wasm = tmp_path / "c.wasm"
    wasm.write_bytes(b"module")
    sup.upsert_component(desired("c", wasm))
    sup.reconcile_once()
    wait_until(lambda: metrics.restarts_total == 1 and metrics.components_running == 0)
    assert metrics.restarts_total == 1
    assert metrics.components_running == 0
    sup.reconcile_once()
    wait_until(lambda: metrics.restarts_total == 2 and metrics.components_running == 0)
    assert metrics.restarts_total == 2
    assert metrics.components_running == 0
    assert sum("launching replica from" in line for line in logs.lines("c")) == 2
    assert attempts == ["c", "c"]


def test_work_mount_gets_per_replica_dir(tmp_path):
    seen = {}

    def recording(**kwargs):
        mount = kwargs["mounts"][0]
        seen["host"] = Path(mount.host)
        seen["existed"] = Path(mount.host).is_dir()
        seen["other"] = kwargs["mounts"][1].host

    sup, logs, metrics = make_supervisor(tmp_path, recording)
    wasm = tmp_path / "w.wasm"
    wasm.write_bytes(b"module")
    base = tmp_path / "work" / "components" / "w"
    mounts = [MountSpec(str(base), "/work"), MountSpec("/srv/static", "/static", True)]
    comp = desired("w", wasm, mounts=mounts)
    sup.upsert_component(comp)
    sup.reconcile_once()
    assert wait_until(lambda: metrics.restarts_total == 1)
    assert seen["host"].parent == base
    assert seen["existed"] is True
    assert seen["other"] == "/srv/static"
    assert not seen["host"].exists()
    assert comp.spec.mounts[0].host == str(base)
    assert any("allocated work dir" in line for line in logs.lines("w"))


def test_cleanup_component_removes_work_root(tmp_path):
    sup, _, _ = make_supervisor(tmp_path, BlockingRunner())
    work = tmp_path / "work" / "components" / "gone" / "123"
    work.mkdir(parents=True)
    (work / "f.txt").write_text("x")
    sup.cleanup_component("gone")
    assert not (tmp_path / "work" / "components" / "gone").exists()


def test_cleanup_all_stops_every_component(tmp_path):
    runner = BlockingRunner()
    sup, _, metrics = make_supervisor(tmp_path, runner)
    for name in ("a", "b"):
        wasm = tmp_path / f"{name}.wasm"
        wasm.write_bytes(b"module")
        sup.upsert_component(desired(name, wasm))
    sup.reconcile_once()
    assert wait_until(lambda: len(runner.calls) == 2)
    sup.cleanup_all()
    assert wait_until(lambda: metrics.components_running == 0)
    assert metrics.restarts_total == 2
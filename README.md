# meshagent

This package is the core of a node agent that keeps sandboxed components running on a small fleet. It uses only the standard library.

## Modules

- **`meshagent.storage`**: `ContentStore(data_dir)` is a blob store keyed by SHA-256.
  - Blobs are stored under `artifacts/blobs/sha256/aa/bb/<digest>`. Metadata is kept in `artifacts/index.json`.
  - Methods: `put_bytes`, `has`, `get_path` (which refreshes the access time), `list`, `pin`, `total_size_bytes` and `gc_to_target`.
  - `gc_to_target` evicts unpinned blobs, least recently used first, until the total size is at or below the target.
  - `pin` raises `KeyError` when the digest is not in the index.
  - `sha256_hex(data)` returns the hex digest.
- **`meshagent.types`**: the shared state.
  - `Metrics`: counters and gauges.
  - `LogBook`: a ring buffer per component. Each line has the form `"<unix> | <message>"`. The default capacity is 1000 lines.
  - `PeerStatus`: the status of one peer.
  - `Session`: a session that expires after 30 idle minutes.
  - `WebState`: holds metrics, logs, supervisor, peers and sessions. Its methods are `update_peer_status`, `create_session` and `authenticate_session`.
- **`meshagent.utils`**:
  - `format_timestamp(unix_seconds)` returns ISO 8601 UTC text, for example `1970-01-01T00:00:00.000000000Z`.
  - `parse_prometheus_metrics(text, metrics)` copies the values it knows from metrics text into a `Metrics`.
  - `find_available_port(host, start, end)` returns the first port it can bind and raises `OSError` if there is none.
- **`meshagent.supervisor`**: the data types are `MountSpec`, `ComponentSpec` and `DesiredComponent`. `Supervisor(logs, metrics, data_dir, runner)` manages desired state:
  - `restore_from_manifest(manifest_text)` parses TOML text. It keeps only components whose cached artifact `artifacts/<name>-<first 16 hex>.wasm` exists and matches the expected digest.
  - `set_desired`, `upsert_component`, `get_desired_snapshot` and `get_component` read and change the desired state.
  - `reconcile_once()` starts replicas in worker threads until each component has `replicas` of them (default 1). Scaling down is not performed. A replica that exits is counted as a restart, and the next reconcile starts it again.
  - Binaries that contain `wasi:http/incoming-handler` (see `is_http_component`) are only marked as running. No replica is started for them.
  - When a mount's host path is inside `work/components/<name>`, each replica gets its own subdirectory. That subdirectory is removed when the replica exits.
  - `cleanup_component(name)` and `cleanup_all()` signal replicas to stop.
- **`meshagent.overview`**: these functions return plain dicts and lists.
  - `api_status`, `api_nodes`, `api_components` and `api_log_components`.
  - `api_logs(state, tail, component)` returns the last `tail` lines (default 100). Without a component it merges all components by time.
- **`meshagent.history`**: `api_deploy_history(state)` builds deploy events from the 200 most recent log lines of each component. The helper is `parse_after`.
- **`meshagent.volumes`**: these work on state volumes under `state/components`.
  - `list_volumes(data_dir)` lists them.
  - `clear_volume(data_dir, name)` empties one. It raises `ValueError` for an empty name and `FileNotFoundError` for an unknown one.
  - `dir_stats(path)` returns the file count and byte total.
- **`meshagent.discover`**: these find peers by their metrics endpoint.
  - `check_agent_endpoint(address, timeout)` fetches `http://<address>/metrics`. It raises `ConnectionError` when no agent answers.
  - `parse_peer_info` builds a `PeerStatus` from the metrics text.
  - `perform_network_discovery()` probes localhost and every host of the local /24 subnet.
  - `api_discover(state)` runs discovery and records the peers it finds.
- **`meshagent.monitor`**: these report health as dataclasses.
  - `api_fleet_health(state, store)`, `api_node_health(state)` and `api_component_health(state)`.
  - The enums are `HealthStatus` and `AlertSeverity`.
  - The helpers are `get_running_replicas`, `get_component_metrics`, `check_storage_health` and `calculate_average_response_time`.

## Installation

```
pip install .
pip install ".[test]"   # with pytest
```

## Example

```python
import threading
from pathlib import Path

from meshagent.storage import ContentStore
from meshagent.supervisor import ComponentSpec, DesiredComponent, Supervisor
from meshagent.types import LogBook, Metrics, WebState
from meshagent.overview import api_status
from meshagent.monitor import api_fleet_health

data_dir = Path("/tmp/meshagent")

store = ContentStore(data_dir)
digest = store.put_bytes(b"component bytes")
store.pin(digest, True)
store.gc_to_target(10 * 1024 * 1024)


def runner(*, path, name, logs, stop: threading.Event, **limits):
    logs.push(name, f"running {path}")
    stop.wait()


metrics = Metrics()
logs = LogBook()
supervisor = Supervisor(logs, metrics, data_dir, runner)
supervisor.upsert_component(
    DesiredComponent(
        name="hello",
        path=store.get_path(digest),
        spec=ComponentSpec(source=f"cached:{digest}", sha256_hex=digest),
    )
)
supervisor.reconcile_once()

state = WebState(metrics, logs, supervisor)
print(api_status(state))
print(api_fleet_health(state, store).overall_status)

supervisor.cleanup_all()
```

The runner is called with these keyword arguments: `path`, `name`, `logs`, `memory_max_mb`, `fuel`, `epoch_ms`, `metrics`, `mounts` and `stop`. The replica counts as running until the runner returns.

## What this package does not do

- It contains no component runtime. You supply the `runner` that actually executes a component.
- It has no HTTP or WebSocket server. The `api_*` functions return the data, and serving it is up to you.
- It does not read or write a persisted manifest file. `restore_from_manifest` takes the text you pass it.
- It does not install packages, schedule jobs, sign manifests or take part in peer-to-peer messaging.

## Running the tests

```
pytest
```
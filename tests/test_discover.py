import threading
import time
import urllib.error
from contextlib import contextmanager
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from unittest.mock import patch

import pytest

from meshagent.discover import (
    PeerInfo,
    api_discover,
    check_agent_endpoint,
    parse_peer_info,
)
from meshagent.types import LogBook, Metrics, PeerStatus, WebState
from meshagent.utils import find_available_port


@contextmanager
def _agent_server(status, body):
    payload = body.encode()

    class Handler(BaseHTTPRequestHandler):
        def do_GET(self):
            self.send_response(status)
            self.send_header("Content-Length", str(len(payload)))
            self.end_headers()
            self.wfile.write(payload)

        def log_message(self, *args):
            pass

    server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"127.0.0.1:{server.server_address[1]}"
    finally:
        server.shutdown()
        server.server_close()


class _FakeResponse:
    status = 200

    def __init__(self, body):
        self._body = body

    def read(self):
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


@pytest.fixture
def state():
    return WebState(Metrics(), LogBook(), supervisor=None)


def test_parse_peer_info_reads_known_metrics():
    info = PeerInfo(
        address="10.0.0.2:9090",
        metrics="# HELP x\nagent_version 7\ncomponents_running 2\ncomponents_desired 5\nother 9\n",
    )
    status = parse_peer_info(info)
    assert status.node_id == "10.0.0.2:9090"
    assert status.agent_version == 7
    assert status.components_running == 2
    assert status.components_desired == 5
    assert status.drift == 3
    assert status.tags == ["discovered"]
    assert status.msg == "discovered"


def test_parse_peer_info_ignores_bad_values():
    info = PeerInfo(address="h:1", metrics="agent_version abc\ncomponents_running -1\n")
    status = parse_peer_info(info)
    assert status.agent_version == 0
    assert status.components_running == 0


def test_parse_peer_info_negative_drift():
    info = PeerInfo(address="h:1", metrics="components_running 4\ncomponents_desired 1")
    assert parse_peer_info(info).drift < 0


def test_check_agent_endpoint_finds_agent():
    body = "agent_version 1\ncomponents_running 0\n"
    with _agent_server(200, body) as address:
        peer = check_agent_endpoint(address, timeout=2.0)
    assert peer == PeerInfo(address=address, metrics=body)


def test_check_agent_endpoint_rejects_unrelated_service():
    with _agent_server(200, "just a web page") as address:
        with pytest.raises(ConnectionError):
            check_agent_endpoint(address, timeout=2.0)


def test_check_agent_endpoint_rejects_error_status():
    with _agent_server(404, "agent_version 1") as address:
        with pytest.raises(ConnectionError):
            check_agent_endpoint(address, timeout=2.0)


def test_check_agent_endpoint_closed_port():
    port = find_available_port()
    with pytest.raises(ConnectionError, match="No agent found at"):
        check_agent_endpoint(f"127.0.0.1:{port}", timeout=2.0)


def test_api_discover_records_found_agents(state):
    requested = []

    def fake_urlopen(url, timeout=None):
        requested.append(url)
        if url == "http://127.0.0.1:9090/metrics":
            return _FakeResponse(b"agent_version 3\ncomponents_running 1\ncomponents_desired 2\n")
        raise urllib.error.URLError("refused")

    with patch("urllib.request.urlopen", side_effect=fake_urlopen), patch(
        "socket.socket"
    ) as fake_socket:
        sock = fake_socket.return_value.__enter__.return_value
        sock.getsockname.return_value = ("192.0.2.10", 5000)
        result = api_discover(state)

    assert result["discovery_status"] == "Successfully discovered 1 peers"
    assert result["discovered_nodes"] == [
        {
            "node_id": "127.0.0.1:9090",
            "agent_version": 3,
            "components_running": 1,
            "components_desired": 2,
            "cpu_percent": 0,
            "mem_percent": 0,
            "tags": ["discovered"],
            "links": 0,
        }
    ]
    assert "127.0.0.1:9090" in state.peer_status
    assert "http://192.0.2.254:3030/metrics" in requested
    assert "http://192.0.2.255:9090/metrics" not in requested
    assert abs(result["discovery_time"] - time.time()) < 5
    assert state.logs.lines("system")[-1].endswith(
        "Network discovery triggered: Successfully discovered 1 peers"
    )


def test_api_discover_reports_network_errors(state):
    state.update_peer_status(PeerStatus(node_id="known"))

    def fake_urlopen(url, timeout=None):
        if url == "http://127.0.0.1:9090/metrics":
            return _FakeResponse(b"agent_version 3\n")
        raise urllib.error.URLError("refused")

    with patch("urllib.request.urlopen", side_effect=fake_urlopen), patch(
        "socket.socket"
    ) as fake_socket:
        sock = fake_socket.return_value.__enter__.return_value
        sock.connect.side_effect = OSError("unreachable")
        result = api_discover(state)

    assert result["discovery_status"].startswith(
        "Discovery completed with errors: Failed to connect"
    )
    assert [n["node_id"] for n in result["discovered_nodes"]] == ["known"]
    assert sorted(state.peer_status) == ["known"]
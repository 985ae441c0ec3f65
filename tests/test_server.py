from __future__ import annotations

import base64
import json
import threading
import urllib.error
import urllib.request
from collections import deque

import psutil
import pytest

from gpu_telemetry.core.config import SecurityConfig
from gpu_telemetry.web.collector import TelemetryCollector
from gpu_telemetry.web.server import TelemetryRequestHandler, create_app

from conftest import SYSTEM_PROFILER_OUTPUT, FakeRunner, nvidia_runner

OPEN = SecurityConfig(enable_rate_limit=False)


@pytest.fixture
def make_server(clock, process_names, mocker):
    servers = []
    TelemetryRequestHandler._request_log.clear()
    processes = {}

    def process_factory(pid):
        if pid not in processes:
            raise psutil.NoSuchProcess(pid)
        return processes[pid]

    for pid, name in ((1, "systemd"), (1234, "python3")):
        proc = mocker.Mock()
        proc.name.return_value = name
        proc.status.return_value = psutil.STATUS_RUNNING
        processes[pid] = proc

    def factory(security=OPEN, runner=None, platform="linux"):
        telemetry = TelemetryCollector(
            platform=platform,
            clock=clock,
            runner=runner if runner is not None else nvidia_runner(),
            nvml=None,
            enumerate_names=lambda: dict(process_names),
            process_factory=process_factory,
            parent_lookup=lambda pid: None,
        )
        server = create_app(port=0, telemetry=telemetry, security_config=security)
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        servers.append((server, thread))
        return server

    factory.processes = processes
    yield factory
    for server, thread in servers:
        server.stop()
        thread.join(timeout=5)


def call(server, path, *, method="GET", body=None, headers=None):
    data = json.dumps(body).encode("utf-8") if body is not None else None
    request = urllib.request.Request(server.server_address() + path, data=data, method=method)
    if data is not None:
        request.add_header("Content-Type", "application/json")
    for key, value in (headers or {}).items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=5) as response:
            raw = response.read()
            status = response.status
    except urllib.error.HTTPError as exc:
        raw = exc.read()
        status = exc.code
    return status, json.loads(raw.decode("utf-8")) if raw else None


def test_gpu_info_and_processes(make_server):
    server = make_server()
    status, info = call(server, "/api/gpu")
    assert status == 200
    assert info["name"] == "NVIDIA GeForce RTX 3080"

    status, page = call(server, "/api/gpu/processes?filter=usage&usage_threshold=20")
    assert status == 200
    assert [p["pid"] for p in page["processes"]] == [1234]
    assert page["total_count"] == 2
    assert page["has_more"] is False


def test_bad_query_is_400(make_server):
    status, body = call(make_server(), "/api/gpu/processes?sort=temperature")
    assert status == 400
    assert body["error"] == "bad_request"


def test_delta_round_trip(make_server):
    server = make_server()
    _, first = call(server, "/api/gpu/processes/delta")
    assert first["full_refresh"] is True
    assert first["delta"] is None
    _, second = call(server, f"/api/gpu/processes/delta?last_update_id={first['update_id']}")
    assert second["full_refresh"] is False
    assert second["delta"] == {"added": [], "updated": [], "removed": []}


def test_monitoring_toggle(make_server):
    server = make_server()
    assert call(server, "/api/gpu/monitoring") == (200, {"enabled": True})
    assert call(server, "/api/gpu/monitoring", method="POST", body={"enabled": False}) == (200, {"enabled": False})
    assert call(server, "/api/gpu/monitoring")[1] == {"enabled": False}
    status, _ = call(server, "/api/gpu/monitoring", method="POST", body={})
    assert status == 400


def test_control_errors_map_to_status_codes(make_server):
    server = make_server()
    status, body = call(server, "/api/gpu/processes/1/kill", method="POST")
    assert status == 403
    assert body["code"] == 1002
    assert body["protection"]["level"] == "critical"
    make_server.processes[1].kill.assert_not_called()

    status, body = call(server, "/api/gpu/processes/424242/suspend", method="POST")
    assert status == 404
    assert body["code"] == 1001

    status, body = call(server, "/api/gpu/processes/1234/priority", method="POST", body={"priority": "turbo"})
    assert status == 400
    assert body["code"] == 1004

    status, _ = call(server, "/api/gpu/processes/1234/priority", method="POST")
    assert status == 400

    status, body = call(server, "/api/gpu/processes/1234/resume", method="POST")
    assert status == 409
    assert body["code"] == 1006


def test_successful_priority_change(make_server):
    server = make_server()
    status, body = call(server, "/api/gpu/processes/1234/priority", method="POST", body={"priority": "high"})
    assert status == 200
    assert body == {"success": True, "pid": 1234, "action": "priority"}
    make_server.processes[1234].nice.assert_called_once_with(-10)


def test_unknown_route(make_server):
    assert call(make_server(), "/api/cpu")[0] == 404
    assert call(make_server(), "/api/gpu/processes/abc/kill", method="POST")[0] == 404


def test_collection_failure_is_503(make_server):
    runner = FakeRunner(missing=["nvidia-smi"]).add("system_profiler", ["SPDisplaysDataType"], SYSTEM_PROFILER_OUTPUT)
    status, body = call(make_server(runner=runner, platform="darwin"), "/api/gpu/processes")
    assert status == 503
    assert body["error"] == "UnsupportedPlatform"


def test_basic_auth(make_server):
    server = make_server(SecurityConfig(enable_rate_limit=False, basic_auth_username="ops", basic_auth_password="s3cret"))
    assert call(server, "/api/diagnostics")[0] == 401
    token = base64.b64encode(b"ops:s3cret").decode("ascii")
    status, body = call(server, "/api/diagnostics", headers={"Authorization": f"Basic {token}"})
    assert status == 200
    assert "operation_failures" in body


def test_rate_limit(make_server):
    server = make_server(SecurityConfig(rate_limit_requests=2, rate_limit_window_seconds=60))
    assert call(server, "/api/gpu/monitoring")[0] == 200
    assert call(server, "/api/gpu/monitoring")[0] == 200
    status, body = call(server, "/api/gpu/monitoring")
    assert status == 429
    assert body["error"] == "rate_limit"


def test_idle_clients_drop_out_of_rate_limit_log():
    log = TelemetryRequestHandler._request_log
    log.clear()
    log["10.0.0.1"] = deque([100.0, 150.0])
    log["10.0.0.2"] = deque([100.0, 200.0])
    try:
        TelemetryRequestHandler._prune_request_log(230.0, 60)
        assert list(log) == ["10.0.0.2"]
        assert list(log["10.0.0.2"]) == [200.0]
    finally:
        log.clear()


def test_cors_origin_allow_list(make_server):
    server = make_server()
    assert call(server, "/api/gpu/monitoring", headers={"Origin": "http://evil.example"})[0] == 403
    assert call(server, "/api/gpu/monitoring", headers={"Origin": "http://localhost:8080"})[0] == 200

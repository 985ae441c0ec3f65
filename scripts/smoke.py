"""Smoke test for the GPU telemetry web server."""

from __future__ import annotations

import json
import sys
import threading
import time
import urllib.error
import urllib.request
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from gpu_telemetry.web.server import create_app


def fetch_json(url: str) -> tuple[int, dict[str, object]]:
    try:
        with urllib.request.urlopen(url) as response:  # nosec - local smoke test
            return response.status, json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        return exc.code, json.loads(exc.read().decode("utf-8") or "{}")


def run_smoke() -> None:
    server = create_app(port=0)
    address = server.server_address()
    print(f"Starting server on {address}")

    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        time.sleep(0.5)
        status, monitoring = fetch_json(f"{address}/api/gpu/monitoring")
        assert status == 200 and monitoring.get("enabled") is True, "monitoring should start enabled"
        status, diagnostics = fetch_json(f"{address}/api/diagnostics")
        assert status == 200 and "operation_failures" in diagnostics, "diagnostics without failure counters"
        # machines without a GPU answer 503, which is still a well-formed response
        status, processes = fetch_json(f"{address}/api/gpu/processes?max_items=5")
        assert status in (200, 503), f"unexpected status {status}"
        print("SMOKE_OK", {
            "vendor": diagnostics.get("vendor"),
            "processes_status": status,
            "process_count": processes.get("total_count"),
        })
    finally:
        server.stop()
        thread.join()

if __name__ == "__main__":
    run_smoke()

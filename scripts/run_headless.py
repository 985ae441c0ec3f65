"""Serves the GPU telemetry API for a short while and prints what it reports."""

from __future__ import annotations

import json
import sys
import threading
import urllib.error
import urllib.request
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from gpu_telemetry.web.server import create_app

_PATHS = ("/api/gpu", "/api/gpu/processes?max_items=10&sort=gpu_memory&order=desc")


def _poll(address: str, path: str) -> None:
    try:
        with urllib.request.urlopen(f"{address}{path}", timeout=10) as response:  # nosec - local only
            status, body = response.status, response.read()
    except urllib.error.HTTPError as exc:
        status, body = exc.code, exc.read()
    print(f"[{status}] {path}")
    print(json.dumps(json.loads(body.decode("utf-8") or "{}"), indent=2))


def main(duration: float = 3.0, interval: float = 1.0) -> None:
    server = create_app(port=0)
    address = server.server_address()
    print(f"Serving GPU telemetry on {address} for {duration:.0f}s")
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    stop = threading.Event()
    timer = threading.Timer(duration, stop.set)
    timer.start()
    try:
        while not stop.is_set():
            for path in _PATHS:
                _poll(address, path)
            stop.wait(interval)
    finally:
        timer.cancel()
        server.stop()
        thread.join()
        print("Server stopped")


if __name__ == "__main__":
    main(float(sys.argv[1]) if len(sys.argv) > 1 else 3.0)

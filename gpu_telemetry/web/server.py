"""HTTP server exposing the GPU telemetry JSON API."""

from __future__ import annotations

import base64
import binascii
import errno
import json
import logging
import re
import threading
import time
from collections import deque
from functools import partial
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, ClassVar, Deque, Optional
from urllib.parse import parse_qs, urlsplit

from .collector import TelemetryCollector, _snapshot_to_dict, collector
from gpu_telemetry.core.config import APP_NAME, SECURITY, SecurityConfig
from gpu_telemetry.core.errors import (
    CriticalProcessProtected,
    GPUProcessError,
    InvalidPriority,
    PermissionDenied,
    ProcessAlreadyRunning,
    ProcessAlreadyStopped,
    ProcessNotFound,
    TelemetryError,
)
from gpu_telemetry.models import GPUProcessQuery

logger = logging.getLogger(__name__)

_ACTION_PATH = re.compile(r"^/api/gpu/processes/(\d+)/(kill|suspend|resume|priority)$")
_MAX_BODY_BYTES = 64 * 1024


def error_status(exc: Exception) -> HTTPStatus:
    """HTTP status used for an error raised by the collector."""
    if isinstance(exc, ProcessNotFound):
        return HTTPStatus.NOT_FOUND
    if isinstance(exc, (CriticalProcessProtected, PermissionDenied)):
        return HTTPStatus.FORBIDDEN
    if isinstance(exc, (InvalidPriority, ValueError)):
        return HTTPStatus.BAD_REQUEST
    if isinstance(exc, (ProcessAlreadyStopped, ProcessAlreadyRunning)):
        return HTTPStatus.CONFLICT
    return HTTPStatus.SERVICE_UNAVAILABLE


def error_body(exc: Exception) -> dict[str, Any]:
    if isinstance(exc, GPUProcessError):
        body: dict[str, Any] = exc.to_dict()
        if isinstance(exc, CriticalProcessProtected) and exc.protection is not None:
            body["protection"] = exc.protection.to_dict()
        return body
    if isinstance(exc, ValueError):
        return {"error": "bad_request", "message": str(exc)}
    return {"error": exc.__class__.__name__, "message": str(exc)}


def _first_values(query: str) -> dict[str, str]:
    return {key: values[0] for key, values in parse_qs(query).items() if values}


class TelemetryRequestHandler(BaseHTTPRequestHandler):
    """Routes JSON API requests to a :class:`TelemetryCollector`."""

    server_version: ClassVar[str] = "GPUTelemetry/1.0"
    _rate_lock: ClassVar[threading.Lock] = threading.Lock()
    _request_log: ClassVar[dict[str, Deque[float]]] = {}

    def __init__(
        self,
        *args: Any,
        telemetry: TelemetryCollector,
        security_config: SecurityConfig = SECURITY,
        **kwargs: Any,
    ) -> None:
        self._collector = telemetry
        self._security = security_config
        self._response_origin: Optional[str] = None
        super().__init__(*args, **kwargs)

    def do_GET(self) -> None:  # noqa: N802
        self._response_origin = None
        if not self._prepare_api_request():
            return
        url = urlsplit(self.path)
        params = _first_values(url.query)
        routes: dict[str, Callable[[], Any]] = {
            "/api/gpu": self._collector.get_gpu_info,
            "/api/gpu/processes": lambda: self._collector.get_gpu_processes_filtered(
                GPUProcessQuery.from_params(params)
            ),
            "/api/gpu/processes/delta": lambda: self._collector.get_gpu_processes_delta(
                params.get("last_update_id") or None
            ),
            "/api/gpu/monitoring": self._monitoring_state,
            "/api/battery": self._collector.get_battery,
            "/api/diagnostics": self._collector.diagnostics,
        }
        handler = routes.get(url.path)
        if handler is None:
            self._send_json({"error": "not_found", "path": url.path}, HTTPStatus.NOT_FOUND)
            return
        self._dispatch(handler)

    def do_POST(self) -> None:  # noqa: N802
        self._response_origin = None
        if not self._prepare_api_request():
            return
        url = urlsplit(self.path)
        try:
            payload = self._read_json_body()
        except ValueError as exc:
            self._send_json(error_body(exc), HTTPStatus.BAD_REQUEST)
            return

        if url.path == "/api/gpu/monitoring":
            if "enabled" not in payload:
                self._send_json({"error": "bad_request", "message": "missing 'enabled'"}, HTTPStatus.BAD_REQUEST)
                return

            def toggle() -> dict[str, Any]:
                self._collector.set_gpu_process_monitoring_enabled(bool(payload["enabled"]))
                return self._monitoring_state()

            self._dispatch(toggle)
            return

        match = _ACTION_PATH.match(url.path)
        if match is None:
            self._send_json({"error": "not_found", "path": url.path}, HTTPStatus.NOT_FOUND)
            return
        pid, action = int(match.group(1)), match.group(2)
        self._dispatch(lambda: self._control(pid, action, payload, _first_values(url.query)))

    def do_OPTIONS(self) -> None:  # noqa: N802
        allowed, origin = self._resolve_origin()
        if not allowed:
            return
        self._response_origin = origin
        self.send_response(HTTPStatus.NO_CONTENT)
        self._apply_cors_headers(origin)
        self.send_header("Access-Control-Allow-Methods", "GET, POST, OPTIONS")
        self.send_header("Access-Control-Allow-Headers", "Authorization, Content-Type")
        self.send_header("Access-Control-Max-Age", "600")
        self.end_headers()

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A003 - parity with BaseHTTPRequestHandler
        logger.debug("%s - %s", self.client_address[0], format % args)

    # -- API helpers ------------------------------------------------------

    def _monitoring_state(self) -> dict[str, Any]:
        return {"enabled": self._collector.is_gpu_process_monitoring_enabled()}

    def _control(self, pid: int, action: str, payload: dict[str, Any], params: dict[str, str]) -> dict[str, Any]:
        if action == "kill":
            self._collector.kill_gpu_process(pid)
        elif action == "suspend":
            self._collector.suspend_gpu_process(pid)
        elif action == "resume":
            self._collector.resume_gpu_process(pid)
        else:
            level = payload.get("priority") or params.get("priority")
            if not isinstance(level, str) or not level:
                raise ValueError("missing 'priority'")
            self._collector.set_gpu_process_priority(pid, level)
        return {"success": True, "pid": pid, "action": action}

    def _dispatch(self, handler: Callable[[], Any]) -> None:
        try:
            result = handler()
        except (TelemetryError, ValueError) as exc:
            status = error_status(exc)
            if status is HTTPStatus.SERVICE_UNAVAILABLE:
                logger.warning("Request %s failed: %s", self.path, exc)
            self._send_json(error_body(exc), status)
            return
        self._send_json(_snapshot_to_dict(result))

    def _read_json_body(self) -> dict[str, Any]:
        length = int(self.headers.get("Content-Length") or 0)
        if length <= 0:
            return {}
        if length > _MAX_BODY_BYTES:
            raise ValueError("request body too large")
        raw = self.rfile.read(length)
        try:
            payload = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValueError(f"invalid JSON body: {exc}") from exc
        if not isinstance(payload, dict):
            raise ValueError("JSON body must be an object")
        return payload

    def _send_json(self, payload: Any, status: HTTPStatus = HTTPStatus.OK) -> None:
        body = json.dumps(payload if payload is not None else {}).encode("utf-8")
        self.send_response(status)
        self._apply_cors_headers(self._response_origin)
        self.send_header("Content-Type", "application/json; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    # -- security ---------------------------------------------------------

    def _prepare_api_request(self) -> bool:
        allowed, origin = self._resolve_origin()
        if not allowed:
            return False
        self._response_origin = origin
        if not self._check_basic_auth():
            self._require_auth()
            return False
        if not self._enforce_rate_limit():
            return False
        return True

    def _resolve_origin(self) -> tuple[bool, Optional[str]]:
        origin = self.headers.get("Origin")
        allowed = self._security.allowed_origins
        wildcard = "*" in allowed and not self._security.allow_credentials
        if origin:
            if "*" in allowed or origin in allowed:
                return True, "*" if wildcard else origin
            self._respond_forbidden("origin not allowed")
            return False, None
        return True, "*" if wildcard else None

    def _apply_cors_headers(self, origin: Optional[str]) -> None:
        if origin:
            self.send_header("Access-Control-Allow-Origin", origin)
        if self._security.allow_credentials and origin and origin != "*":
            self.send_header("Access-Control-Allow-Credentials", "true")
        self.send_header("Vary", "Origin")

    def _check_basic_auth(self) -> bool:
        username = self._security.basic_auth_username
        password = self._security.basic_auth_password
        if not username or not password:
            return True
        header = self.headers.get("Authorization")
        if not header or not header.startswith("Basic "):
            return False
        try:
            decoded = base64.b64decode(header.split(" ", 1)[1], validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return False
        provided_user, _, provided_pass = decoded.partition(":")
        return provided_user == username and provided_pass == password

    def _require_auth(self) -> None:
        self.send_response(HTTPStatus.UNAUTHORIZED)
        self._apply_cors_headers(self._response_origin)
        self.send_header("WWW-Authenticate", f'Basic realm="{APP_NAME}", charset="UTF-8"')
        self.send_header("Content-Length", "0")
        self.end_headers()

    def _enforce_rate_limit(self) -> bool:
        if not self._security.enable_rate_limit:
            return True
        client_ip = self.client_address[0]
        now = time.monotonic()
        window = max(1, self._security.rate_limit_window_seconds)
        max_requests = max(1, self._security.rate_limit_requests)
        with self._rate_lock:
            self._prune_request_log(now, window)
            bucket = self._request_log.setdefault(client_ip, deque())
            if len(bucket) >= max_requests:
                self._too_many_requests()
                return False
            bucket.append(now)
        return True

    @classmethod
    def _prune_request_log(cls, now: float, window: float) -> None:
        # Callers hold _rate_lock; clients with no request inside the window are forgotten.
        for client_ip in list(cls._request_log):
            bucket = cls._request_log[client_ip]
            while bucket and now - bucket[0] > window:
                bucket.popleft()
            if not bucket:
                del cls._request_log[client_ip]

    def _too_many_requests(self) -> None:
        retry_after = str(self._security.rate_limit_window_seconds)
        logger.warning("Rate limit exceeded for %s", self.client_address[0])
        self.send_response(HTTPStatus.TOO_MANY_REQUESTS)
        self.send_header("Retry-After", retry_after)
        body = json.dumps({"error": "rate_limit", "retry_after": retry_after}).encode("utf-8")
        self._apply_cors_headers(self._response_origin)
        self.send_header("Content-Type", "application/json; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _respond_forbidden(self, message: str) -> None:
        logger.warning("Request from %s blocked by CORS: %s", self.client_address[0], message)
        body = json.dumps({"error": "forbidden", "message": message}).encode("utf-8")
        self.send_response(HTTPStatus.FORBIDDEN)
        self.send_header("Content-Type", "application/json; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)


class TelemetryServer:
    """Wraps the HTTP server around a telemetry collector."""

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 8080,
        *,
        telemetry: TelemetryCollector | None = None,
        security_config: SecurityConfig = SECURITY,
        max_attempts: int = 10,
    ) -> None:
        self._collector = telemetry if telemetry is not None else collector
        handler = partial(
            TelemetryRequestHandler,
            telemetry=self._collector,
            security_config=security_config,
        )
        # port 0 lets the OS pick, so only explicit ports are retried
        attempts = max_attempts if port else 1
        for attempt in range(attempts):
            try:
                self._httpd = ThreadingHTTPServer((host, port + attempt if port else 0), handler)
                break
            except OSError as exc:
                if exc.errno != errno.EADDRINUSE or attempt == attempts - 1:
                    raise
                logger.info("Port %d in use, trying %d", port + attempt, port + attempt + 1)
        self.host, self.port = self._httpd.server_address[:2]

    @property
    def collector(self) -> TelemetryCollector:
        return self._collector

    def serve_forever(self) -> None:
        try:
            self._httpd.serve_forever()
        finally:
            self._httpd.server_close()

    def stop(self) -> None:
        self._httpd.shutdown()
        self._httpd.server_close()

    def server_address(self) -> str:
        return f"http://{self.host}:{self.port}"


def create_app(
    host: str = "127.0.0.1",
    port: int = 8080,
    *,
    telemetry: TelemetryCollector | None = None,
    security_config: SecurityConfig = SECURITY,
) -> TelemetryServer:
    """Factory helper used by CLI scripts and tests."""

    return TelemetryServer(host=host, port=port, telemetry=telemetry, security_config=security_config)


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    server = create_app()
    print(f"{APP_NAME} API")
    print(f"Listening on {server.server_address()}")
    print("Press Ctrl+C to stop")
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        print("\nStopping server...")


if __name__ == "__main__":
    main()

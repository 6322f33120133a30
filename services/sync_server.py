# -*- coding: utf-8 -*-
"""
Local network sync server.

REST endpoint used by field tablets over LAN/Wi-Fi. Requests carry a
bearer token mapped to a field collector id (``SYNC_API_TOKENS``); the
server advertises itself over mDNS for discovery.

Routes:
    GET  /api/health
    POST /api/sync/sessions
    POST /api/sync/sessions/{id}/packages
    GET  /api/sync/sessions/{id}/assignments?since=
    POST /api/sync/sessions/{id}/acknowledge
    POST /api/sync/sessions/{id}/complete
"""

import json
import re
import socket
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from socketserver import ThreadingMixIn
from typing import Any, Dict, Optional, Tuple
from urllib.parse import parse_qs, urlparse

from zeroconf import Error as ZeroconfError, ServiceInfo, Zeroconf

from app.config import Config
from models.import_package import PackageManifest
from services.exceptions import (
    AuthorizationError, ImportPipelineError, IncompleteUploadError,
    InvalidStateTransitionError, NotFoundError, UploadTooLargeError, ValidationError,
)
from services.sync_service import SyncService
from utils.datetime_utils import parse_datetime, to_isoformat, utc_now
from utils.logger import get_logger

logger = get_logger(__name__)

SERVICE_TYPE = "_trrcms._tcp.local."
SERVICE_NAME = "TRRCMS-Import"
API_VERSION = "1.0"

_SESSION_ROUTE = re.compile(r'^/api/sync/sessions/([^/]+)/(packages|assignments|acknowledge|complete)$')

# Exception type -> HTTP status
_ERROR_STATUS = (
    (ValidationError, 400),
    (IncompleteUploadError, 400),
    (AuthorizationError, 403),
    (NotFoundError, 404),
    (InvalidStateTransitionError, 409),
    (UploadTooLargeError, 413),
)


def status_for(error: ImportPipelineError) -> int:
    for error_type, status in _ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 500


class SyncRequestHandler(BaseHTTPRequestHandler):
    """HTTP request handler for device sync."""

    server: 'SyncHTTPServer'

    def log_message(self, format: str, *args):
        logger.debug(f"Sync Server: {format % args}")

    def _send_json_response(self, data: Dict, status_code: int = 200):
        body = json.dumps(data, ensure_ascii=False, default=str).encode("utf-8")
        self.send_response(status_code)
        self.send_header("Content-Type", "application/json; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _send_error_response(self, message: str, status_code: int = 400, **extra):
        payload = {"error": message, "success": False}
        payload.update(extra)
        self._send_json_response(payload, status_code)

    def _authenticate_request(self) -> Optional[str]:
        """User id for the bearer token, or None."""
        auth_header = self.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return None
        return self.server.tokens.get(auth_header[7:].strip())

    def _read_json(self) -> Dict[str, Any]:
        length = int(self.headers.get("Content-Length", 0) or 0)
        if not length:
            return {}
        try:
            data = json.loads(self.rfile.read(length).decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValidationError(f"Invalid JSON body: {e}", field="body") from e
        if not isinstance(data, dict):
            raise ValidationError("JSON body must be an object", field="body")
        return data

    def do_GET(self):
        self._dispatch("GET")

    def do_POST(self):
        self._dispatch("POST")

    def _dispatch(self, method: str):
        parsed = urlparse(self.path)
        path = parsed.path

        if method == "GET" and path == "/api/health":
            self._send_json_response({
                "status": "healthy",
                "service": SERVICE_NAME,
                "version": API_VERSION,
                "timestamp": to_isoformat(utc_now()),
            })
            return

        user_id = self._authenticate_request()
        if not user_id:
            self._send_error_response("Missing or invalid authentication token", 401)
            return

        try:
            self._route(method, path, parse_qs(parsed.query), user_id)
        except ImportPipelineError as e:
            status = status_for(e)
            if status >= 500:
                logger.error(f"Sync request {method} {path} failed: {e}", exc_info=True)
            else:
                logger.info(f"Sync request {method} {path} rejected ({status}): {e}")
            extra = {}
            if isinstance(e, ValidationError) and e.errors:
                extra['details'] = e.errors
            self._send_error_response(e.message, status, **extra)
        except Exception as e:
            logger.error(f"Sync request {method} {path} failed: {e}", exc_info=True)
            self._send_error_response("Internal server error", 500)

    def _route(self, method: str, path: str, query: Dict[str, list], user_id: str):
        service = self.server.sync_service

        if method == "POST" and path == "/api/sync/sessions":
            data = self._read_json()
            session = service.open_session(user_id, data.get("device_id"),
                                           server_address=self.server.address_label)
            self._send_json_response(session.to_dict(), 201)
            return

        match = _SESSION_ROUTE.match(path)
        if not match:
            self._send_error_response("Endpoint not found", 404)
            return
        session_id, action = match.groups()

        if method == "POST" and action == "packages":
            self._handle_upload(session_id, user_id)
        elif method == "GET" and action == "assignments":
            since = None
            if query.get("since"):
                try:
                    since = parse_datetime(query["since"][0])
                except ValueError as e:
                    raise ValidationError("since must be an ISO-8601 timestamp", field="since") from e
            self._send_json_response(service.fetch_assignments(session_id, user_id, since))
        elif method == "POST" and action == "acknowledge":
            ids = self._read_json().get("assignment_ids") or []
            if not isinstance(ids, list):
                raise ValidationError("assignment_ids must be a list", field="assignment_ids")
            result = service.acknowledge(session_id, user_id, [str(i) for i in ids])
            self._send_json_response(result.to_dict())
        elif method == "POST" and action == "complete":
            self._send_json_response(service.close_session(session_id, user_id).to_dict())
        else:
            self._send_error_response("Method not allowed", 405)

    def _handle_upload(self, session_id: str, user_id: str):
        """Package bytes in the body, manifest in X-Package-* headers."""
        length = self.headers.get("Content-Length")
        length = int(length) if length else None
        if length is not None and length > Config.MAX_UPLOAD_BYTES:
            raise UploadTooLargeError(
                f"Upload exceeds {Config.MAX_UPLOAD_BYTES} bytes", limit=Config.MAX_UPLOAD_BYTES)

        manifest = self._manifest_from_headers()
        result = self.server.sync_service.upload(session_id, user_id, self.rfile, manifest, length=length)
        self._send_json_response(result, 200 if result['duplicate'] else 201)

    def _manifest_from_headers(self) -> PackageManifest:
        vocab_header = self.headers.get("X-Package-Vocab-Versions")
        try:
            vocab_versions = json.loads(vocab_header) if vocab_header else {}
        except json.JSONDecodeError as e:
            raise ValidationError(f"Invalid X-Package-Vocab-Versions: {e}", field="vocab_versions") from e
        return PackageManifest.from_dict({
            'package_id': self.headers.get("X-Package-Id"),
            'file_name': self.headers.get("X-Package-File-Name"),
            'checksum': self.headers.get("X-Package-Checksum"),
            'signature': self.headers.get("X-Package-Signature"),
            'device_id': self.headers.get("X-Device-Id"),
            'exported_at': self.headers.get("X-Package-Exported-At"),
            'schema_version': self.headers.get("X-Package-Schema-Version"),
            'vocab_versions': vocab_versions,
        })


class SyncHTTPServer(ThreadingMixIn, HTTPServer):
    """HTTPServer carrying the sync service and the token table."""

    daemon_threads = True

    def __init__(self, server_address, RequestHandlerClass, sync_service: SyncService,
                 tokens: Dict[str, str]):
        super().__init__(server_address, RequestHandlerClass)
        self.sync_service = sync_service
        self.tokens = tokens

    @property
    def address_label(self) -> str:
        host, port = self.server_address[:2]
        return f"{host}:{port}"


class LocalSyncServer:
    """Runs the sync endpoint in a background thread, optionally advertised over mDNS."""

    def __init__(self, sync_service: SyncService, host: Optional[str] = None,
                 port: Optional[int] = None, tokens: Optional[Dict[str, str]] = None,
                 enable_mdns: Optional[bool] = None):
        self.sync_service = sync_service
        self.host = host if host is not None else Config.SYNC_HOST
        self.port = port if port is not None else Config.SYNC_PORT
        self.tokens = tokens if tokens is not None else Config.sync_tokens()
        self.enable_mdns = Config.SYNC_ENABLE_MDNS if enable_mdns is None else enable_mdns

        self.server: Optional[SyncHTTPServer] = None
        self.server_thread: Optional[threading.Thread] = None
        self.zeroconf: Optional[Zeroconf] = None
        self.service_info: Optional[ServiceInfo] = None

    @property
    def address(self) -> Tuple[str, int]:
        if self.server is None:
            return self.host, self.port
        return self.server.server_address[:2]

    def start(self) -> None:
        if not self.tokens:
            logger.warning("No sync API tokens configured; every device request will be rejected")
        self.server = SyncHTTPServer((self.host, self.port), SyncRequestHandler,
                                     self.sync_service, self.tokens)
        self.server_thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        self.server_thread.start()

        host, port = self.address
        logger.info(f"Sync server started on {host}:{port}")
        if self.enable_mdns:
            self._register_mdns_service(port)

    def stop(self) -> None:
        if self.zeroconf and self.service_info:
            self.zeroconf.unregister_service(self.service_info)
            self.zeroconf.close()
            self.zeroconf = None
        if self.server:
            self.server.shutdown()
            self.server.server_close()
            self.server = None
        if self.server_thread:
            self.server_thread.join(timeout=5)
            self.server_thread = None
        logger.info("Sync server stopped")

    def serve_forever(self) -> None:
        """Blocking variant for the CLI."""
        self.start()
        try:
            self.server_thread.join()
        except KeyboardInterrupt:
            logger.info("Interrupted")
        finally:
            self.stop()

    def _local_ip(self) -> str:
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
                s.connect(("10.255.255.255", 1))
                return s.getsockname()[0]
        except OSError:
            return "127.0.0.1"

    def _register_mdns_service(self, port: int) -> None:
        try:
            self.zeroconf = Zeroconf()
            self.service_info = ServiceInfo(
                SERVICE_TYPE,
                f"{SERVICE_NAME}.{SERVICE_TYPE}",
                addresses=[socket.inet_aton(self._local_ip())],
                port=port,
                properties={"version": API_VERSION, "service": "TRRCMS"},
            )
            self.zeroconf.register_service(self.service_info)
            logger.info(f"mDNS service registered: {SERVICE_NAME}")
        except (OSError, ZeroconfError) as e:
            logger.warning(f"Could not register mDNS service: {e}")
            if self.zeroconf:
                self.zeroconf.close()
            self.zeroconf = None
            self.service_info = None

"""HTTP surface for uploads, media streaming and conversion status.

Routes:
    POST /upload                multipart form, field ``file``
    GET  /s/<id>                302 to /v/<id>, or the fallback embed page
    GET  /v/<id>  (and HEAD)    byte-range media stream, or the fallback embed page
    GET  /info/<id>             stored metadata and share URLs
    GET  /transcode-status/<id> current job state or {"status": "none"}
    POST /post-webhook          forward an embed to a third-party webhook
    GET  /invalid.png           placeholder image used by the fallback page

Thread-per-request server built on stdlib http.server + socketserver; a
slow or stalled client only ever holds its own thread.
"""
from __future__ import annotations

import base64
import html
import json
import logging
import socketserver
import threading
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler
from typing import TYPE_CHECKING, Any, List, Optional, Tuple
from urllib.parse import unquote

from python_multipart import parse_form

from vhoster.config.models import AppConfig
from vhoster.domain.errors import InvalidRange, NotFound, UploadError, WebhookDeliveryError
from vhoster.infrastructure.byte_range import parse_range
from vhoster.infrastructure.webhook import WebhookClient

if TYPE_CHECKING:
    from vhoster.pipeline.jobs import JobRegistry
    from vhoster.pipeline.orchestrator import Orchestrator

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3000

NO_CACHE = "no-cache, no-store, must-revalidate"

# 1x1 transparent PNG served when no placeholder image is configured
_FALLBACK_PNG = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR4nGNgYAAAAAMAAWgmWQ0AAAAASUVORK5CYII="
)

_STREAM_ERRORS = (BrokenPipeError, ConnectionResetError, ConnectionAbortedError)


def _esc(text: object) -> str:
    """HTML-escape a value. Always call this on data from requests or records."""
    return html.escape(str(text), quote=True)


def render_invalid_embed(image_url: str) -> str:
    """Preview-only page: image metadata and nothing else (no title/description)."""
    img = _esc(image_url)
    return (
        "<!doctype html><html><head>\n"
        f'<meta property="og:image" content="{img}" />\n'
        '<meta property="og:image:type" content="image/png" />\n'
        '<meta name="twitter:card" content="summary_large_image" />\n'
        f'<link rel="image_src" href="{img}" />\n'
        "</head><body></body></html>"
    )


def _client_filename(raw: Optional[bytes]) -> str:
    if not raw:
        return "upload"
    name = raw.decode("utf-8", "replace").replace("\\", "/").rsplit("/", 1)[-1]
    return name or "upload"


@dataclass
class WebContext:
    """Everything request handlers need, injected by MediaWebServer."""

    config: AppConfig
    orchestrator: "Orchestrator"
    jobs: "JobRegistry"
    webhook: WebhookClient


class MediaRequestHandler(BaseHTTPRequestHandler):
    """HTTP request handler for vhoster.

    Class attribute ``context`` is set on a per-server subclass by MediaWebServer.
    """

    context: WebContext

    def log_message(self, format: str, *args) -> None:  # noqa: A002
        """Route the access log through logging instead of stderr."""
        logger.debug("%s - %s", self.address_string(), format % args)

    # ------------------------------------------------------------------
    # Response helpers
    # ------------------------------------------------------------------

    def _send_json(self, payload: Any, status: int = 200) -> None:
        encoded = json.dumps(payload).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json; charset=utf-8")
        self.send_header("Content-Length", str(len(encoded)))
        self.end_headers()
        self.wfile.write(encoded)

    def _send_html(self, body: str, status: int = 200, head_only: bool = False) -> None:
        encoded = body.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(encoded)))
        self.send_header("Cache-Control", NO_CACHE)
        self.end_headers()
        if not head_only:
            self.wfile.write(encoded)

    def _base_url(self) -> str:
        configured = self.context.config.server.public_base_url
        if configured:
            return configured
        proto = (self.headers.get("X-Forwarded-Proto") or "http").split(",")[0].strip() or "http"
        host = self.headers.get("Host")
        if not host:
            server_host, server_port = self.server.server_address[:2]
            host = f"{server_host}:{server_port}"
        return f"{proto}://{host}"

    def _send_invalid_embed(self, head_only: bool = False) -> None:
        self._send_html(render_invalid_embed(f"{self._base_url()}/invalid.png"), head_only=head_only)

    def _route(self) -> Tuple[str, Optional[str]]:
        path = self.path.split("?", 1)[0]
        parts = [unquote(p) for p in path.strip("/").split("/")]
        if len(parts) == 2 and parts[1]:
            return parts[0], parts[1]
        return path, None

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def do_GET(self) -> None:
        route, media_id = self._route()
        try:
            if media_id is not None and route == "v":
                self._serve_media(media_id)
            elif media_id is not None and route == "s":
                self._redirect_short(media_id)
            elif media_id is not None and route == "info":
                self._send_info(media_id)
            elif media_id is not None and route == "transcode-status":
                self._send_json(self.context.jobs.snapshot(media_id))
            elif route == "/invalid.png":
                self._send_placeholder()
            else:
                self._send_json({"error": "not found"}, status=404)
        except Exception:
            self._fail_request()

    def do_HEAD(self) -> None:
        route, media_id = self._route()
        try:
            if media_id is not None and route == "v":
                self._serve_media(media_id, head_only=True)
            else:
                self.send_response(405)
                self.send_header("Allow", "GET")
                self.send_header("Content-Length", "0")
                self.end_headers()
        except Exception:
            self._fail_request()

    def do_POST(self) -> None:
        route, _ = self._route()
        try:
            if route == "/upload":
                self._handle_upload()
            elif route == "/post-webhook":
                self._handle_webhook()
            else:
                self._send_json({"error": "not found"}, status=404)
        except UploadError as exc:
            self._send_json({"error": str(exc)}, status=400)
        except Exception:
            self._fail_request()

    def _fail_request(self) -> None:
        logger.exception("Request failed: %s %s", self.command, self.path)
        try:
            self._send_json({"error": "internal server error"}, status=500)
        except Exception:
            pass

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------

    def _serve_media(self, media_id: str, head_only: bool = False) -> None:
        orchestrator = self.context.orchestrator
        handle = None
        record = None
        # The record may move to a converted file between lookup and open; retry once
        for _ in range(2):
            try:
                record = orchestrator.get_record(media_id)
                handle = orchestrator.store.open(record.stored_filename)
                break
            except NotFound:
                continue
        if handle is None or record is None:
            self._send_invalid_embed(head_only=head_only)
            return

        with handle:
            size = handle.size
            try:
                byte_range = parse_range(self.headers.get("Range"), size)
            except InvalidRange:
                self.send_response(416)
                self.send_header("Content-Range", f"bytes */{size}")
                self.send_header("Accept-Ranges", "bytes")
                self.send_header("Content-Length", "0")
                self.end_headers()
                return

            if byte_range is None:
                start, end, length = 0, size - 1, size
                self.send_response(200)
            else:
                start, end, length = byte_range.start, byte_range.end, byte_range.length
                self.send_response(206)
                self.send_header("Content-Range", byte_range.content_range)
            self.send_header("Accept-Ranges", "bytes")
            self.send_header("Content-Type", record.mime_type or "application/octet-stream")
            self.send_header("Content-Length", str(length))
            self.end_headers()

            if head_only or length <= 0:
                return
            chunk_size = self.context.config.storage.chunk_size
            try:
                for chunk in handle.iter_range(start, end, chunk_size):
                    self.wfile.write(chunk)
            except _STREAM_ERRORS as exc:
                # Scrubbing clients drop connections mid-transfer all the time
                logger.debug(f"STREAM_ABORTED: {media_id} bytes {start}-{end}: {exc}")
                self.close_connection = True

    def _redirect_short(self, media_id: str) -> None:
        try:
            self.context.orchestrator.get_record(media_id)
        except NotFound:
            self._send_invalid_embed()
            return
        self.send_response(302)
        self.send_header("Location", f"/v/{media_id}")
        self.send_header("Content-Length", "0")
        self.end_headers()

    def _send_info(self, media_id: str) -> None:
        orchestrator = self.context.orchestrator
        try:
            record = orchestrator.get_record(media_id)
        except NotFound:
            self._send_json({"error": "not found"}, status=404)
            return
        self._send_json(orchestrator.describe(record, self._base_url()))

    def _send_placeholder(self) -> None:
        image = self.context.config.storage.placeholder_image
        if image is not None and image.is_file():
            data = image.read_bytes()
            cache = "public, max-age=60"
        else:
            data = _FALLBACK_PNG
            cache = NO_CACHE
        self.send_response(200)
        self.send_header("Content-Type", "image/png")
        self.send_header("Content-Length", str(len(data)))
        self.send_header("Cache-Control", cache)
        self.end_headers()
        self.wfile.write(data)

    def _read_body(self) -> bytes:
        try:
            length = int(self.headers.get("Content-Length") or 0)
        except ValueError:
            length = 0
        return self.rfile.read(length) if length > 0 else b""

    def _handle_upload(self) -> None:
        content_type = self.headers.get("Content-Type")
        content_length = self.headers.get("Content-Length")
        if not content_type or not content_length:
            raise UploadError("No file uploaded")

        files: List[Any] = []
        try:
            parse_form(
                {"Content-Type": content_type, "Content-Length": content_length},
                self.rfile,
                lambda field: None,
                files.append,
            )
        except ValueError as exc:
            for part in files:
                part.close()
            raise UploadError(f"Malformed upload: {exc}") from exc

        try:
            upload = next((part for part in files if part.field_name == b"file"), None)
            if upload is None:
                raise UploadError("No file uploaded")
            stream = upload.file_object
            stream.seek(0)
            result = self.context.orchestrator.ingest(stream, _client_filename(upload.file_name))
        finally:
            for part in files:
                part.close()

        payload = self.context.orchestrator.describe(result.record, self._base_url())
        if result.job is not None:
            payload["job"] = result.job
        self._send_json(payload)

    def _handle_webhook(self) -> None:
        try:
            body = json.loads(self._read_body() or b"{}")
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        webhook_url = body.get("webhookUrl")
        media_id = body.get("id")
        if not webhook_url or not media_id:
            self._send_json({"error": "webhookUrl and id required"}, status=400)
            return

        try:
            record = self.context.orchestrator.get_record(str(media_id))
        except NotFound:
            self._send_json({"error": "id not found"}, status=404)
            return

        video_url = f"{self._base_url()}/v/{record.id}"
        label = body.get("label")
        title = (str(label).strip() if label is not None else "") or record.original_name or "Video"
        try:
            self.context.webhook.post_embed(str(webhook_url), title, video_url)
        except WebhookDeliveryError as exc:
            if exc.status is not None:
                self._send_json(
                    {"error": "Webhook request failed", "status": exc.status, "body": exc.body}, status=502
                )
            else:
                self._send_json({"error": str(exc)}, status=500)
            return
        self._send_json({"ok": True})


class _ThreadingHTTPServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    """Thread-per-request HTTP server with address reuse and daemon threads."""

    allow_reuse_address = True
    daemon_threads = True  # request threads die when main thread exits


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

class MediaWebServer:
    """vhoster HTTP server.

    Runs in a daemon thread so the caller decides how to wait.

    Usage::

        server = MediaWebServer(context, port=3000)
        server.start()   # non-blocking; raises OSError if the port is taken
        # ... serve ...
        server.stop()
    """

    def __init__(self, context: WebContext, port: int = DEFAULT_PORT, host: str = "0.0.0.0") -> None:
        self.context = context
        self.host = host
        self._requested_port = port
        self._server: Optional[_ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> int:
        if self._server is not None:
            return self._server.server_address[1]
        return self._requested_port

    def start(self) -> None:
        """Start the HTTP server in a daemon background thread."""
        handler = type("BoundMediaRequestHandler", (MediaRequestHandler,), {"context": self.context})
        try:
            self._server = _ThreadingHTTPServer((self.host, self._requested_port), handler)
        except OSError as exc:
            logger.error("HTTP server: could not bind to %s:%d: %s", self.host, self._requested_port, exc)
            raise

        self._thread = threading.Thread(
            target=self._server.serve_forever,
            name="vhoster-http",
            daemon=True,
        )
        self._thread.start()
        display_host = "localhost" if self.host in ("0.0.0.0", "::") else self.host
        logger.info("Server listening on http://%s:%d", display_host, self.port)

    def stop(self) -> None:
        """Gracefully stop the web server."""
        if self._server:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        if self._thread:
            self._thread.join(timeout=2.0)
            self._thread = None

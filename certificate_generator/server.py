"""HTTP server entrypoints for certificate generation."""

from __future__ import annotations

import json
import logging
import os
import shutil
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import parse_qs, urlsplit

from .config import (
    ARTIFACT_DIR,
    HEARTBEAT_INTERVAL_MS,
    HOST,
    LISTEN_BACKLOG,
    MAX_BODY_BYTES as MAX_BODY_BYTES_CONFIG,
    MAX_ROWS as MAX_ROWS_CONFIG,
    PORT,
    QUEUE_COOLDOWN_MS,
)
from .errors import CancellationError, InputError, RenderError, ResourceLoadError
from .fonts import load_font
from .generation_queue import GenerationQueue
from .jobs import GenerationJob
from .models import DocumentRenderer, Job, JobState, parse_fields, parse_row, parse_rows
from .net import is_client_disconnect
from .pool import RenderWorkerPool
from .progress import ProgressBus, format_sse
from .resources import check_template_ref, load_template

LOGGER = logging.getLogger(__name__)

ValidationError = Tuple[int, Dict[str, Any]]
ARCHIVE_FILENAME = "certificates.zip"


def decode_json_body(body: bytes) -> Tuple[Optional[Dict[str, Any]], Optional[ValidationError]]:
    try:
        payload = json.loads(body.decode("utf-8"))
    except UnicodeDecodeError:
        return None, (
            400,
            {"error": "invalid_encoding", "detail": "Body must be UTF-8 encoded JSON."},
        )
    except json.JSONDecodeError as exc:
        return None, (
            400,
            {
                "error": "invalid_json",
                "detail": f"{exc.msg} (line {exc.lineno}, column {exc.colno})",
            },
        )

    if not isinstance(payload, dict):
        return None, (
            400,
            {"error": "invalid_payload", "detail": "JSON root must be an object."},
        )
    return payload, None


def _pick(payload: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in payload:
            return payload[key]
    return None


def validate_generate_payload(
    body: bytes,
    max_rows: int,
) -> Tuple[Optional[Dict[str, Any]], Optional[ValidationError]]:
    payload, error = decode_json_body(body)
    if error is not None:
        return None, error

    raw_rows = _pick(payload, "rows", "participants")
    if isinstance(raw_rows, list) and len(raw_rows) > max_rows:
        return None, (
            413,
            {
                "error": "too_many_rows",
                "detail": f"Request has {len(raw_rows)} rows; maximum is {max_rows}.",
                "max_rows": max_rows,
            },
        )

    try:
        request = {
            "rows": parse_rows(raw_rows),
            "fields": parse_fields(payload.get("fields")),
            "template_ref": check_template_ref(_pick(payload, "templateRef", "templateUrl")),
        }
    except InputError as exc:
        return None, (400, {"error": "invalid_payload", "detail": str(exc)})
    return request, None


def validate_preview_payload(body: bytes) -> Tuple[Optional[Dict[str, Any]], Optional[ValidationError]]:
    payload, error = decode_json_body(body)
    if error is not None:
        return None, error

    try:
        request = {
            "row": parse_row(_pick(payload, "row", "participant"), 0),
            "fields": parse_fields(payload.get("fields")),
            "template_ref": check_template_ref(_pick(payload, "templateRef", "templateUrl")),
        }
    except InputError as exc:
        return None, (400, {"error": "invalid_payload", "detail": str(exc)})
    return request, None


class CertificateHandler(BaseHTTPRequestHandler):
    MAX_BODY_BYTES = MAX_BODY_BYTES_CONFIG
    MAX_ROWS = MAX_ROWS_CONFIG

    server: "CertificateHTTPServer"

    def _write_response(
        self,
        status: int,
        content_type: str,
        body: bytes,
        headers: Optional[Dict[str, str]] = None,
    ) -> bool:
        try:
            self.send_response(status)
            self.send_header("Content-Type", content_type)
            self.send_header("Content-Length", str(len(body)))
            for name, value in (headers or {}).items():
                self.send_header(name, value)
            self.end_headers()
            self.wfile.write(body)
            return True
        except Exception as exc:
            if is_client_disconnect(exc):
                return False
            raise

    def _send_json(self, status: int, payload: Dict[str, Any]) -> bool:
        body = json.dumps(payload).encode("utf-8")
        return self._write_response(status, "application/json", body)

    def _read_body(self) -> Optional[bytes]:
        header = self.headers.get("Content-Length")
        if header is None:
            self._send_json(
                411,
                {
                    "error": "missing_content_length",
                    "detail": "Content-Length header is required.",
                },
            )
            return None

        try:
            content_length = int(header)
        except ValueError:
            self._send_json(
                400,
                {
                    "error": "invalid_content_length",
                    "detail": "Content-Length must be an integer.",
                },
            )
            return None

        if content_length <= 0:
            self._send_json(400, {"error": "empty_body", "detail": "Request body cannot be empty."})
            return None

        if content_length > self.MAX_BODY_BYTES:
            self._send_json(
                413,
                {
                    "error": "payload_too_large",
                    "detail": f"Body exceeds {self.MAX_BODY_BYTES} bytes.",
                },
            )
            return None

        try:
            return self.rfile.read(content_length)
        except Exception as exc:
            if is_client_disconnect(exc):
                return None
            raise

    def _lookup_job(self, query: Dict[str, Any]) -> Optional[Job]:
        values = query.get("job") or query.get("jobId")
        if not values:
            self._send_json(400, {"error": "missing_job", "detail": "Query parameter 'job' is required."})
            return None
        job = self.server.generation_queue.get(values[0])
        if job is None:
            self._send_json(404, {"error": "not_found", "detail": "Unknown or expired job."})
        return job

    def do_POST(self) -> None:
        url = urlsplit(self.path)
        query = parse_qs(url.query)
        if url.path == "/generate":
            self._handle_generate()
        elif url.path == "/preview":
            self._handle_preview()
        elif url.path == "/stop-generate":
            result = self.server.generation_queue.cancel_active()
            self._send_json(200, result)
        elif url.path == "/cleanup":
            self._handle_cleanup(query)
        else:
            self._send_json(404, {"error": "not_found", "detail": "Unsupported endpoint."})

    def do_GET(self) -> None:
        url = urlsplit(self.path)
        query = parse_qs(url.query)
        if url.path in ("/", "/health", "/healthz", "/ready"):
            queue = self.server.generation_queue
            active = queue.active
            self._send_json(
                200,
                {
                    "status": "ok",
                    "active": active.id if active is not None else None,
                    "queued": queue.pending_count,
                },
            )
        elif url.path == "/progress":
            self._handle_progress(query)
        elif url.path == "/download":
            self._handle_download(query)
        elif url.path == "/status":
            job = self._lookup_job(query)
            if job is not None:
                self._send_json(200, job.to_dict())
        else:
            self._send_json(404, {"error": "not_found", "detail": "Unsupported endpoint."})

    def _handle_generate(self) -> None:
        body = self._read_body()
        if body is None:
            return

        request, validation_error = validate_generate_payload(body, self.MAX_ROWS)
        if validation_error is not None:
            status, payload_body = validation_error
            self._send_json(status, payload_body)
            return

        job = Job(request["rows"], request["fields"], request["template_ref"])
        queue = self.server.generation_queue
        try:
            queue.submit(job)
        except CancellationError as exc:
            self._send_json(503, {"error": "shutting_down", "detail": str(exc)})
            return
        self._send_json(
            202,
            {"jobId": job.id, "state": job.state.value, "position": queue.position(job.id)},
        )

    def _handle_preview(self) -> None:
        body = self._read_body()
        if body is None:
            return

        request, validation_error = validate_preview_payload(body)
        if validation_error is not None:
            status, payload_body = validation_error
            self._send_json(status, payload_body)
            return

        template = None
        if request["template_ref"]:
            try:
                template = self.server.template_loader(request["template_ref"])
            except ResourceLoadError as exc:
                LOGGER.warning("Preview template unavailable, rendering without background: %s", exc)
        try:
            font = self.server.font_loader()
        except ResourceLoadError as exc:
            self._send_json(503, {"error": "font_unavailable", "detail": str(exc)})
            return

        try:
            pdf_bytes = self.server.renderer(request["row"], request["fields"], template, font)
        except RenderError as exc:
            self._send_json(422, {"error": "render_failed", "detail": str(exc)})
            return
        except Exception:
            LOGGER.exception("Preview rendering failed")
            self._send_json(500, {"error": "render_failed", "detail": "Preview rendering failed."})
            return

        self._write_response(
            200,
            "application/pdf",
            pdf_bytes,
            {"Content-Disposition": "inline; filename=preview.pdf"},
        )

    def _handle_progress(self, query: Dict[str, Any]) -> None:
        job = self._lookup_job(query)
        if job is None:
            return

        subscription = self.server.progress_bus.subscribe(job.id)
        self.close_connection = True
        try:
            self.send_response(200)
            self.send_header("Content-Type", "text/event-stream")
            self.send_header("Cache-Control", "no-cache")
            self.send_header("X-Accel-Buffering", "no")
            self.end_headers()
            for item in subscription.events(self.server.heartbeat_interval_s):
                self.wfile.write(format_sse(item))
                self.wfile.flush()
        except Exception as exc:
            if is_client_disconnect(exc):
                LOGGER.debug("Progress subscriber for job %s disconnected", job.id)
                return
            raise
        finally:
            subscription.close()

    def _handle_download(self, query: Dict[str, Any]) -> None:
        job = self._lookup_job(query)
        if job is None:
            return
        if not job.state.terminal:
            self._send_json(409, {"error": "job_not_ready", "detail": f"Job is {job.state.value}."})
            return

        path = job.artifact_path
        if job.state not in (JobState.COMPLETED, JobState.PARTIAL) or not path:
            self._send_json(404, {"error": "not_found", "detail": job.message or "Job produced no archive."})
            return

        try:
            handle = open(path, "rb")
        except FileNotFoundError:
            self._send_json(404, {"error": "not_found", "detail": "Archive has expired."})
            return

        with handle:
            try:
                self.send_response(200)
                self.send_header("Content-Type", "application/zip")
                self.send_header("Content-Length", str(os.fstat(handle.fileno()).st_size))
                self.send_header("Content-Disposition", f"attachment; filename={ARCHIVE_FILENAME}")
                self.end_headers()
                shutil.copyfileobj(handle, self.wfile)
            except Exception as exc:
                if is_client_disconnect(exc):
                    return
                raise

    def _handle_cleanup(self, query: Dict[str, Any]) -> None:
        values = query.get("job") or query.get("jobId")
        if not values:
            self._send_json(400, {"error": "missing_job", "detail": "Query parameter 'job' is required."})
            return
        try:
            removed = self.server.generation_queue.discard(values[0])
        except ValueError as exc:
            self._send_json(409, {"error": "job_not_ready", "detail": str(exc)})
            return
        if not removed:
            self._send_json(404, {"error": "not_found", "detail": "Unknown or expired job."})
            return
        self._send_json(200, {"jobId": values[0], "deleted": True})

    def handle_one_request(self) -> None:
        try:
            super().handle_one_request()
        except Exception as exc:
            if is_client_disconnect(exc):
                return
            raise

    def log_message(self, format: str, *args: Any) -> None:
        LOGGER.debug("%s - %s", self.address_string(), format % args)


class CertificateHTTPServer(ThreadingHTTPServer):
    daemon_threads = True
    allow_reuse_address = True
    request_queue_size = LISTEN_BACKLOG

    def __init__(
        self,
        server_address: Tuple[str, int],
        pool: RenderWorkerPool,
        progress_bus: ProgressBus,
        artifact_dir: str = ARTIFACT_DIR,
        cooldown_ms: int = QUEUE_COOLDOWN_MS,
        heartbeat_interval_ms: int = HEARTBEAT_INTERVAL_MS,
        template_loader: Callable = load_template,
        font_loader: Callable = load_font,
        job_options: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(server_address, CertificateHandler)
        self.pool = pool
        self.renderer: DocumentRenderer = pool.renderer
        self.progress_bus = progress_bus
        self.artifact_dir = artifact_dir
        self.heartbeat_interval_s = heartbeat_interval_ms / 1000.0
        self.template_loader = template_loader
        self.font_loader = font_loader
        self.job_options = dict(job_options or {})
        self.generation_queue = GenerationQueue(self.run_job, progress_bus, cooldown_ms=cooldown_ms)

    def run_job(self, job: Job) -> Job:
        return GenerationJob(
            job,
            self.pool,
            self.progress_bus,
            artifact_dir=self.artifact_dir,
            template_loader=self.template_loader,
            font_loader=self.font_loader,
            **self.job_options,
        ).run()

    def close(self) -> None:
        self.generation_queue.shutdown()
        self.pool.shutdown()
        self.server_close()


def build_server(
    host: str = HOST,
    port: int = PORT,
    pool: Optional[RenderWorkerPool] = None,
    progress_bus: Optional[ProgressBus] = None,
    **options: Any,
) -> CertificateHTTPServer:
    return CertificateHTTPServer(
        (host, port),
        pool if pool is not None else RenderWorkerPool(),
        progress_bus if progress_bus is not None else ProgressBus(),
        **options,
    )


def run(host: str = HOST, port: int = PORT) -> None:
    server = build_server(host, port)
    server.pool.start()
    server.generation_queue.start_janitor()
    LOGGER.info("Certificate generator listening on http://%s:%d", host, server.server_address[1])
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        LOGGER.info("Shutting down")
    finally:
        server.close()

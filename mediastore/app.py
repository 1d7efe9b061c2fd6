import atexit
import logging
import os
import re
import threading
import time
import uuid
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterator

from apscheduler.schedulers.background import BackgroundScheduler
from flask import Flask, Response, g, has_request_context, jsonify, request, send_from_directory
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.exceptions import RequestEntityTooLarge

from .assets import AssetLibrary, DeleteOutcome
from .errors import AssetError, MetadataUnavailableError
from .storage import (
    DEFAULT_AUDIT_INTERVAL_MINUTES,
    DEFAULT_MAX_CONCURRENT_UPLOADS,
    DEFAULT_UPLOAD_RATE_LIMIT_PER_HOUR,
    LOGS_DIR,
    MAX_UPLOAD_BYTES,
    JournalError,
    ensure_directories,
    init_storage,
)
from .uploads import decode_upload, iter_multipart_parts, parse_boundary

LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5 MB max log file size
LOG_FILE_BACKUP_COUNT = 3  # Number of log file backups to keep

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, LOG_LEVEL, logging.INFO)
logging.basicConfig(
    level=numeric_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f\n\r]")


def sanitize_log_value(value: Any) -> Any:
    """Remove control characters from log values to prevent log injection."""

    if isinstance(value, str):
        escaped = value.replace("\n", "\\n").replace("\r", "\\r")
        return _CONTROL_CHAR_PATTERN.sub(
            lambda match: f"\\x{ord(match.group()):02x}", escaped
        )
    return value


class RequestAwareLogger:
    """Logger wrapper that injects request IDs into log messages."""

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def _with_request(self, message: str) -> str:
        if has_request_context():
            request_id = getattr(g, "request_id", None)
            if request_id:
                return f"request_id={request_id} {message}"
        return message

    def debug(self, msg: str, *args, **kwargs) -> None:
        self._logger.debug(self._with_request(msg), *args, **kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        self._logger.info(self._with_request(msg), *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._logger.warning(self._with_request(msg), *args, **kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        self._logger.error(self._with_request(msg), *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs) -> None:
        self._logger.exception(self._with_request(msg), *args, **kwargs)

    def __getattr__(self, name: str):  # pragma: no cover - passthrough
        return getattr(self._logger, name)


def _configure_file_logging() -> Path:
    """Attach a rotating file handler for application and lifecycle logs."""

    ensure_directories()
    log_path = LOGS_DIR / "application.log"
    root_logger = logging.getLogger()
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    for handler in root_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and getattr(handler, "baseFilename", "") == str(log_path):
            handler.setLevel(numeric_level)
            handler.setFormatter(formatter)
            return log_path

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)
    return log_path


APP_LOG_PATH = _configure_file_logging()

_base_lifecycle_logger = logging.getLogger("mediastore.lifecycle")
_base_lifecycle_logger.setLevel(numeric_level)
lifecycle_logger = RequestAwareLogger(_base_lifecycle_logger)

# Startup errors propagate: no degraded mode without durable storage.
asset_store, metadata_journal = init_storage()
library = AssetLibrary(asset_store, metadata_journal)


class UploadConcurrencyLimiter:
    """Track active uploads and enforce a configurable concurrency cap."""

    def __init__(self, limit: int) -> None:
        self._limit = max(1, int(limit))
        self._active = 0
        self._lock = threading.Lock()

    def acquire(self) -> bool:
        with self._lock:
            if self._active >= self._limit:
                return False
            self._active += 1
            return True

    def release(self) -> None:
        with self._lock:
            if self._active > 0:
                self._active -= 1

    @property
    def current_limit(self) -> int:
        return self._limit


upload_limiter = UploadConcurrencyLimiter(DEFAULT_MAX_CONCURRENT_UPLOADS)

app = Flask(__name__)
app.config["MAX_CONTENT_LENGTH"] = MAX_UPLOAD_BYTES

limiter = Limiter(
    app=app,
    key_func=get_remote_address,
    default_limits=[],
    storage_uri=os.environ.get("MEDIASTORE_RATE_LIMIT_STORAGE", "memory://"),
)


def upload_rate_limit_string() -> str:
    return f"{DEFAULT_UPLOAD_RATE_LIMIT_PER_HOUR} per hour"


@contextmanager
def upload_slot() -> Iterator[bool]:
    acquired = upload_limiter.acquire()
    try:
        yield acquired
    finally:
        if acquired:
            upload_limiter.release()


def text_response(message: str, status: int) -> Response:
    return Response(message, status=status, mimetype="text/plain")


@app.before_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    g.request_started = time.perf_counter()


@app.after_request
def log_request_completion(response: Response):
    """Emit lifecycle logs for every completed request."""

    started = getattr(g, "request_started", None)
    elapsed_ms = (time.perf_counter() - started) * 1000 if started is not None else 0.0
    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d elapsed_ms=%.1f",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
        elapsed_ms,
    )
    return response


@app.after_request
def add_security_headers(response: Response):
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@app.errorhandler(AssetError)
def handle_asset_error(error: AssetError):
    log = lifecycle_logger.error if error.status_code >= 500 else lifecycle_logger.warning
    log(
        "request_failed path=%s status=%d reason=%s detail=%s",
        sanitize_log_value(request.path),
        error.status_code,
        type(error).__name__,
        sanitize_log_value(error.detail or error.message),
    )
    return text_response(error.message, error.status_code)


@app.errorhandler(RequestEntityTooLarge)
def handle_file_too_large(error):
    lifecycle_logger.warning(
        "upload_rejected reason=too_large content_length=%s limit=%d",
        request.content_length,
        app.config["MAX_CONTENT_LENGTH"],
    )
    return text_response("File too large", 413)


@app.errorhandler(429)
def handle_rate_limit(error):
    description = getattr(error, "description", "Too many requests")
    lifecycle_logger.warning("rate_limited path=%s limit=%s", sanitize_log_value(request.path), description)
    return text_response("Too many requests", 429)


@app.route("/health")
def health_check():
    return text_response("OK", 200)


@app.route("/imageData", methods=["GET"])
def image_metadata():
    try:
        records = library.list_metadata()
    except MetadataUnavailableError:
        return jsonify([]), 500
    return jsonify([record.to_dict() for record in records])


@app.route("/image/<path:name>", methods=["GET"])
def get_image(name: str):
    safe_name = library.resolve(name)
    return send_from_directory(library.store.root, safe_name)


@app.route("/image", methods=["POST"])
@limiter.limit(lambda: upload_rate_limit_string())
def upload_image():
    with upload_slot() as acquired:
        if not acquired:
            lifecycle_logger.warning(
                "upload_rejected reason=concurrency_limit limit=%d", upload_limiter.current_limit
            )
            return text_response("Too many concurrent uploads", 503)

        boundary = parse_boundary(request.headers.get("Content-Type"))
        parts = iter_multipart_parts(request.stream, boundary, app.config["MAX_CONTENT_LENGTH"])
        upload = decode_upload(parts)
        outcome = library.ingest(upload)

    if not outcome.metadata_saved:
        lifecycle_logger.warning(
            "upload_metadata_missing file=%s error=%s",
            sanitize_log_value(outcome.record.file),
            sanitize_log_value(outcome.metadata_error),
        )
    lifecycle_logger.info(
        "file_uploaded file=%s size=%d",
        sanitize_log_value(outcome.record.file),
        outcome.record.size_bytes,
    )
    return text_response("Uploaded", 201)


@app.route("/image/<path:name>", methods=["DELETE"])
def delete_image(name: str):
    outcome = library.delete(name)
    if outcome is DeleteOutcome.DELETED_WITH_METADATA_WARNING:
        return text_response("File deleted but metadata update failed", 200)
    lifecycle_logger.info("file_deleted file=%s", sanitize_log_value(name))
    return text_response("File deleted", 200)


def run_consistency_audit() -> None:
    try:
        library.audit_consistency()
    except (JournalError, OSError) as error:
        logging.getLogger("mediastore.audit").error("consistency_audit_failed error=%s", error)


scheduler = BackgroundScheduler(daemon=True)
scheduler.add_job(
    func=run_consistency_audit,
    trigger="interval",
    minutes=DEFAULT_AUDIT_INTERVAL_MINUTES,
    id="consistency_audit",
    name="Compare metadata journal with content directory",
    replace_existing=True,
)
scheduler.start()
atexit.register(lambda: scheduler.shutdown(wait=False))

# Run a single audit on startup so divergence left by a crash is visible.
run_consistency_audit()


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", "8090")), threaded=True)

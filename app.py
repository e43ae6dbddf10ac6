from __future__ import annotations

import atexit
import json
import logging
import os
import queue
from pathlib import Path
from typing import Optional

from flask import Flask, Response, jsonify, request
from werkzeug.exceptions import HTTPException

from models import (
    CloneOptions,
    JobEvent,
    JobStatus,
    NotFoundError,
    PipelineStageError,
    QuickRunTimeoutError,
    ResourceError,
    ServerNotRunningError,
    ValidationError,
    DEFAULT_TIMEOUT_MS,
)
from registry import CloneService, QuickRunResult
from supervisor import DEFAULT_PREVIEW_PORT, ProcessSupervisor


BASE_DIR = Path(__file__).resolve().parent


def load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for raw in path.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _parse_int(value: Optional[str], default: int, min_value: int, max_value: int) -> int:
    raw = (value or "").strip()
    try:
        num = int(raw)
    except ValueError:
        num = default
    return max(min_value, min(num, max_value))


def _parse_float(value: Optional[str], default: float) -> float:
    try:
        return max(0.0, float((value or "").strip()))
    except ValueError:
        return default


load_env_file(BASE_DIR / ".env")

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").strip().upper() or "INFO"
logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

OUTPUT_ROOT_DIR = Path(os.environ.get("OUTPUT_ROOT_DIR", str(BASE_DIR / "output" / "clones"))).expanduser().resolve()
OUTPUT_ROOT_DIR.mkdir(parents=True, exist_ok=True)
ALLOW_UNSAFE_OUTPUT_ROOT = _parse_bool(os.environ.get("ALLOW_UNSAFE_OUTPUT_ROOT"), default=False)
PREVIEW_HOST = os.environ.get("PREVIEW_HOST", "127.0.0.1").strip() or "127.0.0.1"
PREVIEW_PORT = _parse_int(os.environ.get("PREVIEW_PORT"), DEFAULT_PREVIEW_PORT, 1024, 65000)
PORT_SETTLE_SECONDS = _parse_float(os.environ.get("PORT_SETTLE_SECONDS"), 0.5)
SERVER_START_TIMEOUT = _parse_float(os.environ.get("SERVER_START_TIMEOUT"), 10.0)
JOB_RETENTION_SECONDS = _parse_int(os.environ.get("JOB_RETENTION_SECONDS"), 3600, 60, 30 * 24 * 3600)
JOB_CLEANUP_INTERVAL_SECONDS = _parse_int(os.environ.get("JOB_CLEANUP_INTERVAL_SECONDS"), 60, 5, 24 * 3600)
SSE_KEEPALIVE_SECONDS = 15.0
CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}

app = Flask(__name__)
service = CloneService(
    OUTPUT_ROOT_DIR,
    supervisor=ProcessSupervisor(
        preview_host=PREVIEW_HOST,
        port_base=PREVIEW_PORT,
        settle_seconds=PORT_SETTLE_SECONDS,
        start_timeout=SERVER_START_TIMEOUT,
    ),
    allow_unsafe_output_root=ALLOW_UNSAFE_OUTPUT_ROOT,
    retention_seconds=JOB_RETENTION_SECONDS,
    cleanup_interval=JOB_CLEANUP_INTERVAL_SECONDS,
)
atexit.register(service.shutdown)


def quick_clone(url: str, timeout_ms: Optional[int] = None) -> QuickRunResult:
    return service.quick_run(url, timeout_ms=timeout_ms or DEFAULT_TIMEOUT_MS)


def _error(message: str, status: int):
    return jsonify({"ok": False, "error": message}), status


def _sse(payload: dict) -> str:
    return f"data: {json.dumps(payload)}\n\n"


def _dir_size_bytes(path: Path) -> int:
    total = 0
    if not path.exists():
        return 0
    for root, _, files in os.walk(path):
        for name in files:
            try:
                total += (Path(root) / name).stat().st_size
            except OSError:
                continue
    return total


@app.before_request
def before_each_request():
    service.maybe_reap()
    if request.method == "OPTIONS":
        return Response(status=204)
    return None


@app.after_request
def add_cors_headers(response: Response) -> Response:
    for key, value in CORS_HEADERS.items():
        response.headers.setdefault(key, value)
    return response


@app.errorhandler(Exception)
def handle_unexpected_error(exc: Exception):
    if isinstance(exc, HTTPException):
        return exc
    logger.exception("Unhandled error on %s %s", request.method, request.path)
    return _error(str(exc) or exc.__class__.__name__, 500)


@app.post("/jobs")
def create_job():
    try:
        options = CloneOptions.from_payload(request.get_json(silent=True))
        job = service.create(options)
    except ValidationError as exc:
        return _error(str(exc), 400)
    except ResourceError as exc:
        return _error(str(exc), 500)
    return jsonify({"ok": True, "jobId": job.id, "status": JobStatus.PENDING.value, "url": job.source_url, "outputDir": job.output_directory})


@app.post("/jobs/quick")
def quick_job():
    payload = request.get_json(silent=True) or {}
    try:
        options = CloneOptions.from_payload(payload)
        result = service.quick_run(options.url, timeout_ms=options.timeout_ms, port=options.port)
    except ValidationError as exc:
        return _error(str(exc), 400)
    except QuickRunTimeoutError as exc:
        return _error(str(exc), 504)
    except (PipelineStageError, ResourceError) as exc:
        logger.error("Quick clone failed: %s", exc)
        return _error(str(exc), 500)
    return jsonify({"ok": True, **result.to_dict(), "previewUrl": result.server.url})


@app.get("/jobs")
def list_jobs():
    return jsonify([job.to_dict() for job in service.list()])


@app.get("/jobs/<job_id>")
def get_job(job_id: str):
    job = service.get(job_id)
    if job is None:
        return _error("Job not found", 404)
    return jsonify(job.to_dict())


@app.delete("/jobs/<job_id>/server")
def stop_job_server(job_id: str):
    try:
        service.stop_server(job_id)
    except ServerNotRunningError as exc:
        return _error(str(exc), 400)
    except NotFoundError as exc:
        return _error(str(exc), 404)
    return jsonify({"success": True})


@app.get("/jobs/<job_id>/events")
def job_events(job_id: str):
    job = service.get(job_id)
    if job is None:
        return _error("Job not found", 404)

    # snapshot first: every queued event is then at least as new as it
    snapshot = job.to_dict()
    pending: "queue.Queue[JobEvent]" = queue.Queue()
    unsubscribe = service.subscribe(job_id, pending.put)

    def _stream():
        try:
            yield _sse({"type": "status", "jobId": job_id, "data": snapshot})
            while True:
                try:
                    event = pending.get(timeout=SSE_KEEPALIVE_SECONDS)
                except queue.Empty:
                    yield ": keep-alive\n\n"
                    continue
                yield _sse(event.to_dict())
                if event.terminal:
                    return
        finally:
            unsubscribe()

    return Response(
        _stream(),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.get("/diagnostics")
def diagnostics():
    payload = {
        "ok": True,
        "config": {
            "host": os.environ.get("HOST", "127.0.0.1"),
            "port": int(os.environ.get("PORT", "5000")),
            "output_root_dir": str(OUTPUT_ROOT_DIR),
            "allow_unsafe_output_root": ALLOW_UNSAFE_OUTPUT_ROOT,
            "preview_host": PREVIEW_HOST,
            "preview_port": PREVIEW_PORT,
            "job_retention_seconds": JOB_RETENTION_SECONDS,
        },
        "runtime": {
            "jobs": service.stats(),
        },
        "storage": {
            "output_size_bytes": _dir_size_bytes(OUTPUT_ROOT_DIR),
        },
    }
    return jsonify(payload)


if __name__ == "__main__":
    host = os.environ.get("HOST", "127.0.0.1")
    port = int(os.environ.get("PORT", "5000"))
    debug = _parse_bool(os.environ.get("FLASK_DEBUG"), default=False)
    app.run(host=host, port=port, debug=debug, use_reloader=False, threaded=True)

from http import HTTPStatus
from threading import Thread
from flask import Flask, g, jsonify, request

from nextcloud_sync import db
from nextcloud_sync.auth import require_internal_token
from nextcloud_sync.entity_hooks import ENTITY_CHANGES
from nextcloud_sync.jobs.runner import new_batch_context, process_batch
from nextcloud_sync.nextcloud_client import NextcloudApiError
from nextcloud_sync.runtime_logger import emit
from nextcloud_sync.scheduler import get_scheduler_status, run_sync_once
from nextcloud_sync.wiring import SyncServices, get_services

SUMMARY_MAX_LENGTH = 220


def _status_phrase(code: int) -> str:
    try:
        return HTTPStatus(code).phrase
    except ValueError:
        return "Unknown Status"


def _one_line(text, limit: int = SUMMARY_MAX_LENGTH) -> str:
    text = str(text).replace("\n", " ").replace("\r", " ").strip()
    if len(text) > limit:
        return text[: limit - 3] + "..."
    return text


def _response_error_summary(response) -> str:
    """Error code of a JSON error payload, with its message and batch progress.

    Error payloads look like {"error": code, "message": ..., "context": ...}.
    """
    payload = response.get_json(silent=True)
    if not isinstance(payload, dict) or not payload.get("error"):
        return _one_line(response.get_data(as_text=True) or "") or "unspecified_error"
    parts = [str(payload["error"])]
    if payload.get("message"):
        parts.append(f"message={payload['message']}")
    context = payload.get("context")
    sandbox = context.get("sandbox") if isinstance(context, dict) else None
    if isinstance(sandbox, dict):
        parts.append(f"processed={sandbox.get('processed')} total={sandbox.get('total')}")
    return _one_line(" ".join(parts))


def create_app(services: SyncServices | None = None):
    app = Flask(__name__)

    def _services() -> SyncServices:
        return services or get_services()

    @app.before_request
    def log_request_start():
        g._log_method = request.method
        g._log_path = request.path
        emit("INFO", "FLASK_API", f"Request received: {request.method} {request.path}")

    @app.after_request
    def log_request_end(response):
        method = getattr(g, "_log_method", request.method)
        path = getattr(g, "_log_path", request.path)
        status = response.status_code
        line = f"Response sent: {status} {_status_phrase(status)} for {method} {path}"
        if 200 <= status < 300:
            emit("INFO", "FLASK_API", line)
        else:
            # 4xx are caller errors, 5xx are ours or Nextcloud's.
            emit("WARN" if status < 500 else "ERROR", "FLASK_API", f"{line}; error={_response_error_summary(response)}")
        return response

    @app.teardown_request
    def log_request_exception(exc):
        if exc is None:
            return
        method = getattr(g, "_log_method", "UNKNOWN")
        path = getattr(g, "_log_path", "UNKNOWN")
        emit("ERROR", "FLASK_API", f"Unhandled exception during {method} {path}: error={_one_line(exc)}")

    @app.get("/health")
    @require_internal_token
    def health():
        try:
            db.fetch_one("SELECT 1 AS ok")
            db_ok = True
        except Exception as exc:
            emit("WARN", "DB_CONN", f"Health check database query failed: error={exc}")
            db_ok = False
        return jsonify(
            {
                "ok": db_ok,
                "db": db_ok,
                "scheduler": get_scheduler_status(),
            }
        )

    @app.get("/sync/status")
    @require_internal_token
    def sync_status():
        estimate = _services().build_job().estimate()
        return jsonify({"available": estimate is not None, "estimate": estimate})

    @app.post("/sync/batch")
    @require_internal_token
    def sync_batch():
        body = request.get_json(silent=True) or {}
        context = body.get("context") or new_batch_context()
        if not isinstance(context, dict) or not isinstance(context.get("sandbox", {}), dict):
            return jsonify({"error": "invalid_batch_context"}), 400
        try:
            context = process_batch(_services().build_job(), context)
        except NextcloudApiError as exc:
            return jsonify({"error": "nextcloud_api_error", "message": str(exc), "context": context}), 502
        return jsonify({"context": context, "finished": context["finished"], "message": context["message"]})

    @app.post("/sync/run-now")
    @require_internal_token
    def sync_run_now():
        thread = Thread(target=run_sync_once, kwargs={"trigger": "run_now", "services": services})
        thread.daemon = True
        thread.start()
        return jsonify({"status": "queued"}), 202

    @app.post("/entities/<kind>/<change>")
    @require_internal_token
    def entity_changed(kind, change):
        if change not in ENTITY_CHANGES:
            return jsonify({"error": "invalid_change", "message": f"Expected one of {', '.join(ENTITY_CHANGES)}"}), 400
        entity = request.get_json(silent=True)
        if not isinstance(entity, dict):
            return jsonify({"error": "entity_object_required"}), 400
        try:
            handled = _services().dispatcher.on_entity_changed(kind, entity, change)
        except (KeyError, ValueError) as exc:
            return jsonify({"error": "invalid_entity", "message": str(exc)}), 400
        return jsonify({"status": "queued", "kind": kind, "change": change, "callbacks": handled})

    return app
